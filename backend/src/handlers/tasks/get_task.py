"""
Get Task Handler.
GET /tasks/{taskId}
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
        require_user_sub(event)
        task_id = get_path_param(event, 'taskId')
        if not task_id:
            raise ValidationError('taskId is required')

        task = get_services().lifecycle.get_task(task_id)
        return format_response(200, {'task': task.to_item()})

    except TaskEscrowError as e:
        return error_response(e)
    except Exception as e:
        logger.error(f"Error getting task: {e}")
        traceback.print_exc()
        return format_response(500, {'error': 'Internal server error'})
