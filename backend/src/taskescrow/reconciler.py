"""
Task Reconciler.
Time-driven sweep that cancels and refunds tasks nobody claimed before their
claim deadline, and applies the owner-deadline policy to claimed tasks the
owner never resolved.

A pass is an explicit call (`run_reconciliation_pass`). Lambda deployments
trigger it from EventBridge every minute; long-lived hosts can drive it with
ReconciliationScheduler. Per-task failures are logged and skipped so one bad
task never stops the sweep; it is retried on the next pass.
"""
import threading
from typing import Optional

from .claims import ClaimAdmission
from .config import config
from .ledger import Ledger
from .locks import task_lock_key
from .logging import logger
from .models import OwnerDeadlinePolicy, ReconciliationReport, Task, TaskStatus
from .ports import ClaimStore, Clock, LockProvider
from .tasks import TaskLifecycle
from .utils import utc_now


class Reconciler:
    """Cancels abandoned tasks and escalates overdue ones."""

    def __init__(
        self,
        lifecycle: TaskLifecycle,
        claims: ClaimStore,
        ledger: Ledger,
        locks: LockProvider,
        clock: Clock = utc_now,
        owner_deadline_policy: Optional[OwnerDeadlinePolicy] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.lifecycle = lifecycle
        self.claims = claims
        self.ledger = ledger
        self.locks = locks
        self.clock = clock
        self.owner_deadline_policy = owner_deadline_policy or OwnerDeadlinePolicy(config.OWNER_DEADLINE_POLICY)
        self.lock_timeout = config.LOCK_TIMEOUT_SECONDS if lock_timeout is None else lock_timeout

    @classmethod
    def from_admission(cls, admission: ClaimAdmission, **kwargs) -> 'Reconciler':
        return cls(
            lifecycle=admission.lifecycle,
            claims=admission.claims,
            ledger=admission.ledger,
            locks=admission.locks,
            clock=admission.clock,
            **kwargs
        )

    def run_reconciliation_pass(self) -> ReconciliationReport:
        """
        Run one sweep over stale tasks.

        Returns:
            ReconciliationReport with per-outcome counters
        """
        report = ReconciliationReport()
        now = self.clock()

        stale = self.lifecycle.tasks.list_past_claim_deadline(now)
        logger.info(f"Found {len(stale)} open tasks past their claim deadline")
        for task in stale:
            report.checked += 1
            try:
                self._cancel_if_unclaimed(task, report)
            except Exception as e:
                report.failed += 1
                report.errors[task.task_id] = str(e)
                logger.error(f"Error reconciling task {task.task_id}: {e}")

        if self.owner_deadline_policy is OwnerDeadlinePolicy.DISPUTE:
            overdue = self.lifecycle.tasks.list_past_owner_deadline(now)
            logger.info(f"Found {len(overdue)} tasks past their owner deadline")
            for task in overdue:
                report.checked += 1
                try:
                    self._dispute_if_unresolved(task, report)
                except Exception as e:
                    report.failed += 1
                    report.errors[task.task_id] = str(e)
                    logger.error(f"Error escalating task {task.task_id}: {e}")
        elif self.owner_deadline_policy is not OwnerDeadlinePolicy.NONE:
            raise ValueError(f"Unknown owner deadline policy: {self.owner_deadline_policy!r}")

        logger.info(
            f"Reconciliation pass done: checked={report.checked} cancelled={report.cancelled} "
            f"refunded={report.refunded} disputed={report.disputed} skipped={report.skipped} "
            f"failed={report.failed}"
        )
        return report

    def _cancel_if_unclaimed(self, task: Task, report: ReconciliationReport) -> None:
        with self.locks.hold(task_lock_key(task.task_id), self.lock_timeout):
            task = self.lifecycle.get_task(task.task_id)
            if not self.lifecycle.should_auto_cancel(task):
                report.skipped += 1
                return

            active = self.claims.count_active_by_task(task.task_id)
            if active > 0:
                # Claims normally move the task to Claimed; an Open task with
                # claims is left for its owner.
                logger.warning(f"Task {task.task_id} is Open past its claim deadline with {active} claims")
                report.skipped += 1
                return

            # Refund first: the refund is idempotent, so a failure before the
            # status change is finished by the next pass.
            if task.escrow_locked:
                self.ledger.refund_escrow(task.task_id, task.owner_id, task.reward_amount)
                report.refunded += 1
            self.lifecycle.transition(task.task_id, TaskStatus.CANCELLED, task)
            report.cancelled += 1
            logger.info(f"Auto-cancelled task {task.task_id} (owner: {task.owner_id})")

    def _dispute_if_unresolved(self, task: Task, report: ReconciliationReport) -> None:
        with self.locks.hold(task_lock_key(task.task_id), self.lock_timeout):
            task = self.lifecycle.get_task(task.task_id)
            if task.status is TaskStatus.CLAIMED:
                pass
            elif task.status is TaskStatus.OPEN:
                if self.claims.count_active_by_task(task.task_id) == 0:
                    report.skipped += 1
                    return
            elif task.status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.DISPUTED):
                report.skipped += 1
                return
            else:
                raise ValueError(f"Unknown task status: {task.status!r}")

            if self.clock() < task.owner_deadline:
                report.skipped += 1
                return
            self.lifecycle.transition(task.task_id, TaskStatus.DISPUTED, task)
            report.disputed += 1
            logger.info(f"Task {task.task_id} passed its owner deadline unresolved; marked Disputed")


class ReconciliationScheduler:
    """Runs reconciliation passes on a fixed interval until stopped."""

    def __init__(self, reconciler: Reconciler, interval_seconds: Optional[float] = None):
        self.reconciler = reconciler
        self.interval_seconds = interval_seconds or config.RECONCILE_INTERVAL_SECONDS

    def tick(self) -> Optional[ReconciliationReport]:
        try:
            return self.reconciler.run_reconciliation_pass()
        except Exception as e:
            logger.error(f"Reconciliation pass failed: {e}")
            return None

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info(f"Reconciler scheduled every {self.interval_seconds}s")
        while not stop_event.wait(self.interval_seconds):
            self.tick()
        logger.info("Reconciler stopped")
