"""
Approve Claim Handler.
POST /claims/{claimId}/approve
Task owner approves a submitted claim: escrow is released to the claimer and
the task is completed.
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
        owner_id = require_user_sub(event)
        claim_id = get_path_param(event, 'claimId')
        if not claim_id:
            raise ValidationError('claimId is required')

        claim = get_services().admission.approve_claim(claim_id, owner_id)
        return format_response(200, {'claim': claim.to_item()})

    except TaskEscrowError as e:
        logger.warning(f"Approval rejected: {e.message}")
        return error_response(e)
    except Exception as e:
        logger.error(f"Error approving claim: {e}")
        traceback.print_exc()
        return format_response(500, {'error': 'Internal server error'})
