"""
Tests for the Reconciler sweep and its scheduler.
"""
import threading
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest

from taskescrow.errors import StorageError
from taskescrow.models import EscrowTransactionType, OwnerDeadlinePolicy, ReconciliationReport, TaskStatus
from taskescrow.reconciler import ReconciliationScheduler, Reconciler


def _refunds(services, task_id):
    return [t for t in services.ledger.get_transactions(task_id)
            if t.transaction_type is EscrowTransactionType.REFUND]


@pytest.fixture
def reconciler(services):
    return Reconciler.from_admission(services.admission, owner_deadline_policy=OwnerDeadlinePolicy.DISPUTE)


class TestAutoCancel:

    def test_unclaimed_task_is_cancelled_and_refunded(self, services, reconciler, make_spec, clock):
        task = services.lifecycle.create_task('owner', make_spec(max_claimants=1))
        clock.now = task.claim_deadline

        report = reconciler.run_reconciliation_pass()

        assert report.cancelled == 1
        assert report.refunded == 1
        stored = services.lifecycle.get_task(task.task_id)
        assert stored.status is TaskStatus.CANCELLED
        assert stored.escrow_locked is False
        refunds = _refunds(services, task.task_id)
        assert len(refunds) == 1
        assert refunds[0].user_id == 'owner'
        assert refunds[0].amount == Decimal('10.00')

    def test_second_pass_does_nothing(self, services, reconciler, make_spec, clock):
        task = services.lifecycle.create_task('owner', make_spec())
        clock.now = task.claim_deadline
        reconciler.run_reconciliation_pass()

        report = reconciler.run_reconciliation_pass()

        assert report.checked == 0
        assert len(_refunds(services, task.task_id)) == 1

    def test_task_inside_window_is_left_alone(self, services, reconciler, make_spec):
        task = services.lifecycle.create_task('owner', make_spec())

        report = reconciler.run_reconciliation_pass()

        assert report.cancelled == 0
        assert services.lifecycle.get_task(task.task_id).status is TaskStatus.OPEN

    def test_claimed_task_is_not_cancelled(self, services, reconciler, make_spec, clock):
        task = services.lifecycle.create_task('owner', make_spec())
        services.admission.claim_task(task.task_id, 'u1')
        clock.now = task.claim_deadline

        report = reconciler.run_reconciliation_pass()

        assert report.cancelled == 0
        assert services.lifecycle.get_task(task.task_id).status is TaskStatus.CLAIMED
        assert _refunds(services, task.task_id) == []

    def test_unlocked_task_is_cancelled_without_refund(self, services, reconciler, make_spec, clock):
        task = services.lifecycle.create_task('owner', make_spec())
        services.tasks.set_escrow_locked(task.task_id, False, clock.now)
        clock.now = task.claim_deadline

        report = reconciler.run_reconciliation_pass()

        assert report.cancelled == 1
        assert report.refunded == 0
        assert _refunds(services, task.task_id) == []

    def test_failure_on_one_task_does_not_stop_the_pass(self, services, reconciler, make_spec, clock):
        bad = services.lifecycle.create_task('owner', make_spec(title='bad'))
        good = services.lifecycle.create_task('owner', make_spec(title='good'))
        clock.now = bad.claim_deadline
        real_refund = services.ledger.refund_escrow

        def refund(task_id, user_id, amount):
            if task_id == bad.task_id:
                raise StorageError('escrow table unavailable')
            return real_refund(task_id, user_id, amount)

        with patch.object(services.ledger, 'refund_escrow', side_effect=refund):
            report = reconciler.run_reconciliation_pass()

        assert report.failed == 1
        assert report.cancelled == 1
        assert bad.task_id in report.errors
        assert services.lifecycle.get_task(good.task_id).status is TaskStatus.CANCELLED
        assert services.lifecycle.get_task(bad.task_id).status is TaskStatus.OPEN

        retry = reconciler.run_reconciliation_pass()

        assert retry.cancelled == 1
        assert services.lifecycle.get_task(bad.task_id).status is TaskStatus.CANCELLED
        assert len(_refunds(services, bad.task_id)) == 1

    def test_refund_is_not_repeated_after_failed_cancel(self, services, reconciler, make_spec, clock):
        task = services.lifecycle.create_task('owner', make_spec())
        clock.now = task.claim_deadline

        with patch.object(services.lifecycle, 'transition', side_effect=StorageError('tasks down')):
            first = reconciler.run_reconciliation_pass()
        assert first.failed == 1

        second = reconciler.run_reconciliation_pass()

        assert second.cancelled == 1
        assert second.refunded == 0
        assert len(_refunds(services, task.task_id)) == 1
        assert services.ledger.balance(task.task_id) == Decimal('0')


class TestOwnerDeadline:

    def test_overdue_claimed_task_is_disputed(self, services, reconciler, make_spec, clock):
        task = services.lifecycle.create_task('owner', make_spec())
        services.admission.claim_task(task.task_id, 'u1')
        clock.now = task.owner_deadline

        report = reconciler.run_reconciliation_pass()

        assert report.disputed == 1
        assert services.lifecycle.get_task(task.task_id).status is TaskStatus.DISPUTED
        assert services.ledger.balance(task.task_id) == Decimal('10.00')

    def test_disputed_task_can_still_be_approved(self, services, reconciler, make_spec, clock):
        task = services.lifecycle.create_task('owner', make_spec())
        claim = services.admission.claim_task(task.task_id, 'u1').claim
        services.admission.submit_completion(claim.claim_id, 'u1', 'Done')
        clock.now = task.owner_deadline
        reconciler.run_reconciliation_pass()

        services.admission.approve_claim(claim.claim_id, 'owner')

        assert services.lifecycle.get_task(task.task_id).status is TaskStatus.COMPLETED

    def test_policy_none_leaves_task_claimed(self, services, make_spec, clock):
        reconciler = Reconciler.from_admission(services.admission, owner_deadline_policy=OwnerDeadlinePolicy.NONE)
        task = services.lifecycle.create_task('owner', make_spec())
        services.admission.claim_task(task.task_id, 'u1')
        clock.now = task.owner_deadline

        report = reconciler.run_reconciliation_pass()

        assert report.disputed == 0
        assert services.lifecycle.get_task(task.task_id).status is TaskStatus.CLAIMED

    def test_completed_task_is_not_disputed(self, services, reconciler, make_spec, clock):
        task = services.lifecycle.create_task('owner', make_spec())
        claim = services.admission.claim_task(task.task_id, 'u1').claim
        services.admission.submit_completion(claim.claim_id, 'u1', 'Done')
        services.admission.approve_claim(claim.claim_id, 'owner')
        clock.now = task.owner_deadline

        report = reconciler.run_reconciliation_pass()

        assert report.disputed == 0
        assert services.lifecycle.get_task(task.task_id).status is TaskStatus.COMPLETED


class TestReconciliationScheduler:

    def test_tick_returns_report(self):
        reconciler = MagicMock()
        reconciler.run_reconciliation_pass.return_value = ReconciliationReport(checked=2, cancelled=1)

        report = ReconciliationScheduler(reconciler, interval_seconds=60).tick()

        assert report.checked == 2

    def test_tick_survives_failed_pass(self):
        reconciler = MagicMock()
        reconciler.run_reconciliation_pass.side_effect = StorageError('down')

        assert ReconciliationScheduler(reconciler, interval_seconds=60).tick() is None

    def test_run_forever_stops_on_event(self):
        reconciler = MagicMock()
        stop = threading.Event()
        stop.set()

        ReconciliationScheduler(reconciler, interval_seconds=60).run_forever(stop)

        reconciler.run_reconciliation_pass.assert_not_called()

    def test_run_forever_ticks_until_stopped(self):
        reconciler = MagicMock()
        stop = threading.Event()
        reconciler.run_reconciliation_pass.side_effect = lambda: stop.set() or ReconciliationReport()

        ReconciliationScheduler(reconciler, interval_seconds=0.01).run_forever(stop)

        assert reconciler.run_reconciliation_pass.call_count == 1
