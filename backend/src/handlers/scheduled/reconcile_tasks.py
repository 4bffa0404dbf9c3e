"""
Reconcile Tasks Handler.
Triggered by EventBridge every minute. Cancels and refunds Open tasks whose
claim deadline passed without claims, and escalates tasks past their owner
deadline according to OWNER_DEADLINE_POLICY.
"""
from taskescrow.logging import logger
from taskescrow.services import get_services


def handler(event, context):
    logger.info("Running task reconciliation...")

    report = get_services().reconciler.run_reconciliation_pass()

    result = report.to_item()
    if report.errors:
        result['errors'] = [{'taskId': task_id, 'error': error} for task_id, error in report.errors.items()]
    return result
