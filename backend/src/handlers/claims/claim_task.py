"""
Claim Task Handler.
POST /tasks/{taskId}/claims

Responds 201 with the new claim, or 200 with the caller's existing claim
when they already hold one on the task.
"""
import traceback

from taskescrow.auth import require_user_sub
from taskescrow.errors import TaskEscrowError, ValidationError
from taskescrow.logging import logger, log_event
from taskescrow.services import get_services
from taskescrow.utils import error_response, format_response, get_path_param


def handler(event, context):
    log_event(event)

    try:
        claimer_id = require_user_sub(event)
        task_id = get_path_param(event, 'taskId')
        if not task_id:
            raise ValidationError('taskId is required')

        result = get_services().admission.claim_task(task_id, claimer_id)
        return format_response(201 if result.created else 200, result.to_item())

    except TaskEscrowError as e:
        logger.warning(f"Claim on task rejected: {e.message}")
        return error_response(e)
    except Exception as e:
        logger.error(f"Error claiming task: {e}")
        traceback.print_exc()
        return format_response(500, {'error': 'Internal server error'})
