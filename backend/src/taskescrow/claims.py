"""
Claim Admission and Settlement.

Admits claims against a task up to its max_claimants, records completion
submissions, and settles approved claims:
claim → Approved, escrow Release, claimer credit, task → Completed.

Admission and settlement for a task run while holding the task's lock, so
concurrent claims see a consistent slot count and concurrent approvals
release escrow once. Settlement steps are idempotent: an approval that failed
part-way is resumed by approving the same claim again.
"""
import uuid
from typing import List, Optional

from .errors import (
    AlreadyClaimed,
    ClaimAlreadyResolved,
    ClaimLimitReached,
    ClaimNotFound,
    ClaimNotSubmitted,
    InvalidTransition,
    TaskAlreadySettled,
    TaskNotClaimable,
    UnauthorizedError,
    ValidationError,
)
from .ledger import Ledger
from .locks import task_lock_key
from .logging import logger
from .models import Claim, ClaimResult, ClaimStatus, Task, TaskStatus
from .ports import ChatChannels, ClaimStore, Clock, LockProvider, UserStore
from .tasks import TaskLifecycle
from .utils import utc_now

# Reputation awarded to a claimer per approved claim
APPROVAL_REPUTATION_DELTA = 1


class ClaimAdmission:
    """Creates claims and resolves them on behalf of task owners."""

    def __init__(
        self,
        lifecycle: TaskLifecycle,
        claims: ClaimStore,
        ledger: Ledger,
        users: UserStore,
        locks: LockProvider,
        chats: Optional[ChatChannels] = None,
        clock: Clock = utc_now,
    ):
        self.lifecycle = lifecycle
        self.claims = claims
        self.ledger = ledger
        self.users = users
        self.locks = locks
        self.chats = chats
        self.clock = clock

    def claim_task(self, task_id: str, claimer_id: str, timeout: Optional[float] = None) -> ClaimResult:
        """
        Claim a task for a user.

        Args:
            task_id: Task to claim
            claimer_id: User claiming it
            timeout: Seconds to wait for the task lock (provider default if None)

        Returns:
            ClaimResult with created=True for a new Pending claim, or
            created=False and the claimer's existing active claim

        Raises:
            TaskNotFound: if the task does not exist
            TaskNotClaimable: if the task is not accepting claims
            ClaimLimitReached: if every slot is taken
            OperationTimeout: if the task lock was not acquired in time
        """
        task = self.lifecycle.get_task(task_id)
        if not self.lifecycle.accepts_claims(task):
            raise TaskNotClaimable(f"Task {task_id} cannot be claimed")

        with self.locks.hold(task_lock_key(task_id), timeout):
            task = self.lifecycle.get_task(task_id)
            if not self.lifecycle.accepts_claims(task):
                raise TaskNotClaimable(f"Task {task_id} cannot be claimed")

            existing = self.claims.get_active_by_task_and_claimer(task_id, claimer_id)
            if existing is not None:
                logger.info(f"User {claimer_id} already holds claim {existing.claim_id} on task {task_id}")
                return ClaimResult(claim=existing, created=False)

            count = self.claims.count_active_by_task(task_id)
            if count >= task.max_claimants:
                raise ClaimLimitReached(f"Task {task_id} already has {count} of {task.max_claimants} claims")

            now = self.clock()
            claim = Claim(
                claim_id=str(uuid.uuid4()),
                task_id=task_id,
                claimer_id=claimer_id,
                status=ClaimStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            try:
                claim = self.claims.create(claim)
            except AlreadyClaimed as e:
                existing = e.claim or self.claims.get_active_by_task_and_claimer(task_id, claimer_id)
                if existing is None:
                    raise
                return ClaimResult(claim=existing, created=False)

            logger.info(f"Claim {claim.claim_id} admitted on task {task_id} for {claimer_id} "
                        f"({count + 1}/{task.max_claimants})")

            if count == 0:
                self.lifecycle.transition(task_id, TaskStatus.CLAIMED, task)

            return ClaimResult(claim=claim, created=True)

    def get_claim(self, claim_id: str) -> Claim:
        claim = self.claims.get(claim_id)
        if claim is None:
            raise ClaimNotFound(f"Claim {claim_id} not found")
        return claim

    def get_claims_by_task(self, task_id: str) -> List[Claim]:
        self.lifecycle.get_task(task_id)
        return self.claims.list_by_task(task_id)

    def submit_completion(
        self,
        claim_id: str,
        user_id: str,
        text: str,
        image_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Claim:
        """
        Record the claimer's completion and open a chat with the task owner.

        The chat channel is best-effort: failing to open it does not fail
        the submission.
        """
        claim = self.get_claim(claim_id)
        if claim.claimer_id != user_id:
            raise UnauthorizedError(f"User {user_id} is not the claimer of {claim_id}")
        if not text or not text.strip():
            raise ValidationError('completion text is required')

        with self.locks.hold(task_lock_key(claim.task_id), timeout):
            claim = self.get_claim(claim_id)
            if claim.status is not ClaimStatus.PENDING:
                raise ClaimAlreadyResolved(f"Claim {claim_id} is {claim.status.value}")
            self.claims.record_submission(claim_id, text, image_url or None, self.clock())

        logger.info(f"Completion submitted for claim {claim_id}")
        task = self.lifecycle.get_task(claim.task_id)
        self._open_chat(task, claim)
        return self.get_claim(claim_id)

    def approve_claim(self, claim_id: str, owner_id: str, timeout: Optional[float] = None) -> Claim:
        """
        Approve a submitted claim and pay out the task reward.

        Steps, in order: claim → Approved, escrow Release to the claimer,
        earnings and reputation credit, task → Completed. A claim found
        Approved on a task that is not yet Completed is a settlement that
        stopped part-way; it resumes from the release step.

        Raises:
            ClaimNotFound: if the claim does not exist
            UnauthorizedError: if the caller does not own the task
            ClaimNotSubmitted: if no completion was submitted
            ClaimAlreadyResolved: if the claim was already settled or rejected
            TaskAlreadySettled: if another claim already completed the task, or
                stopped part-way through settling it
        """
        claim = self.get_claim(claim_id)
        task = self.lifecycle.get_task(claim.task_id)
        if task.owner_id != owner_id:
            raise UnauthorizedError(f"User {owner_id} does not own task {task.task_id}")

        with self.locks.hold(task_lock_key(task.task_id), timeout):
            claim = self.get_claim(claim_id)
            task = self.lifecycle.get_task(claim.task_id)
            self._check_approvable(claim, task)
            return self._settle(claim, task)

    def reject_claim(self, claim_id: str, owner_id: str, timeout: Optional[float] = None) -> Claim:
        """Reject a pending claim. The task, its other claims and the ledger are untouched."""
        claim = self.get_claim(claim_id)
        task = self.lifecycle.get_task(claim.task_id)
        if task.owner_id != owner_id:
            raise UnauthorizedError(f"User {owner_id} does not own task {task.task_id}")

        with self.locks.hold(task_lock_key(task.task_id), timeout):
            claim = self.get_claim(claim_id)
            if claim.status is not ClaimStatus.PENDING:
                raise ClaimAlreadyResolved(f"Claim {claim_id} is {claim.status.value}")
            self.claims.update_status(claim_id, ClaimStatus.REJECTED, self.clock())

        logger.info(f"Claim {claim_id} rejected by {owner_id}")
        return self.get_claim(claim_id)

    def _check_approvable(self, claim: Claim, task: Task) -> None:
        if claim.status is ClaimStatus.REJECTED or claim.status is ClaimStatus.CANCELLED:
            raise ClaimAlreadyResolved(f"Claim {claim.claim_id} is {claim.status.value}")
        if claim.status is ClaimStatus.APPROVED:
            if task.status is TaskStatus.COMPLETED:
                raise ClaimAlreadyResolved(f"Claim {claim.claim_id} is already approved")
            logger.warning(f"Resuming settlement of claim {claim.claim_id} on task {task.task_id}")
            return
        if claim.status is not ClaimStatus.PENDING:
            raise ValueError(f"Unknown claim status: {claim.status!r}")

        if not claim.is_submitted:
            raise ClaimNotSubmitted(f"Claim {claim.claim_id} has not been submitted")
        if task.status is TaskStatus.COMPLETED:
            raise TaskAlreadySettled(f"Task {task.task_id} was already completed by another claim")
        if task.status is TaskStatus.CANCELLED:
            raise InvalidTransition(f"Task {task.task_id} is cancelled")

        other = self._settlement_in_progress(claim, task)
        if other is not None:
            raise TaskAlreadySettled(f"Task {task.task_id} is already being settled by {other}")

    def _settlement_in_progress(self, claim: Claim, task: Task) -> Optional[str]:
        """Another claim or payee a stopped settlement left on the task, if any."""
        for other in self.claims.list_by_task(task.task_id):
            if other.claim_id != claim.claim_id and other.status is ClaimStatus.APPROVED:
                return f"claim {other.claim_id}"
        release = self.ledger.find_release(task.task_id)
        if release is not None and release.user_id != claim.claimer_id:
            return f"release {release.transaction_id}"
        return None

    def _settle(self, claim: Claim, task: Task) -> Claim:
        reference = f"claim:{claim.claim_id}"
        step = 'approve'
        try:
            if claim.status is ClaimStatus.PENDING:
                self.claims.update_status(claim.claim_id, ClaimStatus.APPROVED, self.clock())

            step = 'release'
            self.ledger.release_escrow(task.task_id, claim.claimer_id, task.reward_amount)

            step = 'credit'
            self.users.credit_earnings(claim.claimer_id, task.reward_amount, reference)
            self.users.increment_reputation(claim.claimer_id, APPROVAL_REPUTATION_DELTA, reference)

            step = 'complete'
            self.lifecycle.transition(task.task_id, TaskStatus.COMPLETED, task)
        except Exception as e:
            logger.error(f"Settlement of claim {claim.claim_id} stopped at '{step}': {e}. "
                         f"Approving the claim again resumes it.")
            raise

        logger.info(f"Claim {claim.claim_id} approved; paid {task.reward_amount} to {claim.claimer_id}")
        return self.get_claim(claim.claim_id)

    def _open_chat(self, task: Task, claim: Claim) -> None:
        if self.chats is None:
            return
        try:
            self.chats.get_or_create_channel(task.task_id, claim.claimer_id, task.owner_id)
        except Exception as e:
            logger.warning(f"Could not open chat for claim {claim.claim_id} (non-critical): {e}")
