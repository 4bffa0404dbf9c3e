"""
List User Tasks Handler.
GET /tasks/my?limit=&offset=
Returns the caller's own tasks in every status, newest first.
"""
import traceback

from taskescrow.auth import require_user_sub
from taskescrow.errors import TaskEscrowError
from taskescrow.logging import logger, log_event
from taskescrow.services import get_services
from taskescrow.utils import error_response, format_response, get_int_query_param


def handler(event, context):
    log_event(event)

    try:
        owner_id = require_user_sub(event)
        limit = get_int_query_param(event, 'limit')
        offset = get_int_query_param(event, 'offset')

        tasks = get_services().lifecycle.get_user_tasks(owner_id, limit, offset)
        return format_response(200, {
            'tasks': [task.to_item() for task in tasks],
            'count': len(tasks),
            'offset': max(offset, 0),
        })

    except TaskEscrowError as e:
        return error_response(e)
    except Exception as e:
        logger.error(f"Error listing user tasks: {e}")
        traceback.print_exc()
        return format_response(500, {'error': 'Internal server error'})
