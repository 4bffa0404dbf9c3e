"""
Create Task Handler.
POST /tasks
Creates an Open task and locks its reward in escrow.
"""
import traceback

from taskescrow.auth import require_user_sub
from taskescrow.errors import TaskEscrowError
from taskescrow.logging import logger, log_event
from taskescrow.services import get_services
from taskescrow.tasks import parse_task_spec
from taskescrow.utils import error_response, format_response, parse_body


def handler(event, context):
    """
    Expected body:
    {
        "title": "...",
        "description": "...",
        "rewardAmount": 12.50,
        "maxClaimants": 3,
        "claimDeadline": "2026-01-01T12:00:00Z",
        "ownerDeadline": "2026-01-03T12:00:00Z"
    }
    """
    log_event(event)

    try:
        owner_id = require_user_sub(event)
        spec = parse_task_spec(parse_body(event))
        task = get_services().lifecycle.create_task(owner_id, spec)
        return format_response(201, {'task': task.to_item()})

    except TaskEscrowError as e:
        logger.warning(f"Create task rejected: {e.message}")
        return error_response(e)
    except Exception as e:
        logger.error(f"Error creating task: {e}")
        traceback.print_exc()
        return format_response(500, {'error': 'Internal server error'})
