"""
Get Claim Handler.
GET /claims/{claimId}
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
        claim_id = get_path_param(event, 'claimId')
        if not claim_id:
            raise ValidationError('claimId is required')

        claim = get_services().admission.get_claim(claim_id)
        return format_response(200, {'claim': claim.to_item()})

    except TaskEscrowError as e:
        return error_response(e)
    except Exception as e:
        logger.error(f"Error getting claim: {e}")
        traceback.print_exc()
        return format_response(500, {'error': 'Internal server error'})
