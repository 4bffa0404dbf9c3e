"""
Submit Completion Handler.
POST /claims/{claimId}/submit
The claimer reports the work done; a chat channel with the owner is opened.

Expected body:
{
    "text": "Done, see photo",
    "imageUrl": "https://..."   (optional)
}
"""
import traceback

from taskescrow.auth import require_user_sub
from taskescrow.errors import TaskEscrowError, ValidationError
from taskescrow.logging import logger, log_event
from taskescrow.services import get_services
from taskescrow.utils import error_response, format_response, get_path_param, parse_body


def handler(event, context):
    log_event(event)

    try:
        user_id = require_user_sub(event)
        claim_id = get_path_param(event, 'claimId')
        if not claim_id:
            raise ValidationError('claimId is required')

        body = parse_body(event)
        text = body.get('text')
        if not isinstance(text, str):
            raise ValidationError('text is required')
        image_url = body.get('imageUrl')
        if image_url is not None and not isinstance(image_url, str):
            raise ValidationError('imageUrl must be a string')

        claim = get_services().admission.submit_completion(claim_id, user_id, text, image_url)
        return format_response(200, {'claim': claim.to_item()})

    except TaskEscrowError as e:
        logger.warning(f"Submission rejected: {e.message}")
        return error_response(e)
    except Exception as e:
        logger.error(f"Error submitting completion: {e}")
        traceback.print_exc()
        return format_response(500, {'error': 'Internal server error'})
