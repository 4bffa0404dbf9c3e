"""
Escrow Ledger.
Records lock/release/refund transactions for task rewards and keeps the
task's custody flag in step with them.

Every entry is appended as Pending and then marked Completed. Release and
refund are idempotent per task, so a settlement or cancellation that is
retried after a partial failure finishes the existing entry instead of
paying out twice.
"""
import uuid
from decimal import Decimal
from typing import List, Optional

from .errors import EscrowAlreadyLocked, TaskAlreadySettled, TaskNotFound
from .logging import logger
from .models import EscrowTransaction, EscrowTransactionStatus, EscrowTransactionType, Task
from .ports import Clock, EscrowStore, TaskStore
from .utils import utc_now


class Ledger:
    """Escrow custody for task rewards."""

    def __init__(self, tasks: TaskStore, escrow: EscrowStore, clock: Clock = utc_now):
        self.tasks = tasks
        self.escrow = escrow
        self.clock = clock

    def lock_escrow(self, task_id: str, user_id: str, amount: Decimal) -> EscrowTransaction:
        """
        Take custody of a task's reward.

        Args:
            task_id: Task whose reward is locked
            user_id: Owner funding the reward
            amount: Reward amount

        Returns:
            The completed Lock transaction

        Raises:
            EscrowAlreadyLocked: if the task is already locked, including when a
                concurrent lock wins the race (its own entry is marked Failed)
        """
        task = self._require_task(task_id)
        if task.escrow_locked:
            raise EscrowAlreadyLocked(f"Escrow for task {task_id} is already locked")

        txn = self._append(task_id, user_id, amount, EscrowTransactionType.LOCK)
        try:
            applied = self.tasks.set_escrow_locked(task_id, True, self.clock(), expected=False)
        except Exception:
            self._fail(txn)
            raise
        if not applied:
            self._fail(txn)
            raise EscrowAlreadyLocked(f"Escrow for task {task_id} is already locked")

        completed = self._complete(txn)
        logger.info(f"Locked {amount} in escrow for task {task_id} (owner: {user_id})")
        return completed

    def release_escrow(self, task_id: str, user_id: str, amount: Decimal) -> EscrowTransaction:
        """
        Pay the locked reward out to a claimer.

        The custody flag stays set: the funds are disbursed, not returned.

        Raises:
            TaskAlreadySettled: if the task's reward was already released to another user
        """
        self._require_task(task_id)
        existing = self._find_live(task_id, EscrowTransactionType.RELEASE)
        if existing is not None and existing.user_id != user_id:
            raise TaskAlreadySettled(f"Escrow for task {task_id} was released to another user")

        txn = existing or self._append(task_id, user_id, amount, EscrowTransactionType.RELEASE)
        if txn.status is EscrowTransactionStatus.COMPLETED:
            logger.info(f"Release for task {task_id} already completed ({txn.transaction_id})")
            return txn

        completed = self._complete(txn)
        logger.info(f"Released {txn.amount} from escrow for task {task_id} to {user_id}")
        return completed

    def refund_escrow(self, task_id: str, user_id: str, amount: Decimal) -> EscrowTransaction:
        """Return the locked reward to the owner and clear the custody flag."""
        self._require_task(task_id)
        existing = self._find_live(task_id, EscrowTransactionType.REFUND)
        txn = existing or self._append(task_id, user_id, amount, EscrowTransactionType.REFUND)
        if txn.status is not EscrowTransactionStatus.COMPLETED:
            txn = self._complete(txn)
            logger.info(f"Refunded {txn.amount} from escrow for task {task_id} to {user_id}")
        else:
            logger.info(f"Refund for task {task_id} already completed ({txn.transaction_id})")

        self.tasks.set_escrow_locked(task_id, False, self.clock())
        return txn

    def find_release(self, task_id: str) -> Optional[EscrowTransaction]:
        """The task's live (non-failed) Release entry, if any."""
        return self._find_live(task_id, EscrowTransactionType.RELEASE)

    def get_transactions(self, task_id: str) -> List[EscrowTransaction]:
        return self.escrow.list_by_task(task_id)

    def balance(self, task_id: str) -> Decimal:
        """Amount still in custody according to completed entries."""
        total = Decimal('0')
        for txn in self.escrow.list_by_task(task_id):
            if txn.status is not EscrowTransactionStatus.COMPLETED:
                continue
            if txn.transaction_type is EscrowTransactionType.LOCK:
                total += txn.amount
            elif txn.transaction_type is EscrowTransactionType.RELEASE:
                total -= txn.amount
            elif txn.transaction_type is EscrowTransactionType.REFUND:
                total -= txn.amount
            else:
                raise ValueError(f"Unknown transaction type: {txn.transaction_type!r}")
        return total

    def _require_task(self, task_id: str) -> Task:
        task = self.tasks.get(task_id)
        if task is None:
            raise TaskNotFound(f"Task {task_id} not found")
        return task

    def _find_live(
        self, task_id: str, txn_type: EscrowTransactionType
    ) -> Optional[EscrowTransaction]:
        """Most recent non-failed entry of a type for the task."""
        for txn in reversed(self.escrow.list_by_task(task_id)):
            if txn.transaction_type is txn_type and txn.status is not EscrowTransactionStatus.FAILED:
                return txn
        return None

    def _append(
        self, task_id: str, user_id: str, amount: Decimal, txn_type: EscrowTransactionType
    ) -> EscrowTransaction:
        txn = EscrowTransaction(
            transaction_id=str(uuid.uuid4()),
            task_id=task_id,
            user_id=user_id,
            amount=amount,
            transaction_type=txn_type,
            status=EscrowTransactionStatus.PENDING,
            created_at=self.clock(),
        )
        return self.escrow.append(txn)

    def _complete(self, txn: EscrowTransaction) -> EscrowTransaction:
        now = self.clock()
        self.escrow.update_status(txn.transaction_id, EscrowTransactionStatus.COMPLETED, now)
        return txn.copy(status=EscrowTransactionStatus.COMPLETED, completed_at=now)

    def _fail(self, txn: EscrowTransaction) -> None:
        try:
            self.escrow.update_status(txn.transaction_id, EscrowTransactionStatus.FAILED, self.clock())
        except Exception as e:
            logger.error(f"Could not mark escrow transaction {txn.transaction_id} failed: {e}")
