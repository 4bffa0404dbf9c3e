"""
Tests for Claim Admission and Settlement.
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from taskescrow.claims import APPROVAL_REPUTATION_DELTA
from taskescrow.errors import (
    ClaimAlreadyResolved,
    ClaimLimitReached,
    ClaimNotFound,
    ClaimNotSubmitted,
    OperationTimeout,
    StorageError,
    TaskAlreadySettled,
    TaskNotClaimable,
    TaskNotFound,
    UnauthorizedError,
    ValidationError,
)
from taskescrow.locks import task_lock_key
from taskescrow.models import ClaimStatus, EscrowTransactionType, TaskStatus


def _releases(services, task_id):
    return [t for t in services.ledger.get_transactions(task_id)
            if t.transaction_type is EscrowTransactionType.RELEASE]


def _run_concurrently(fn, args_list):
    """Run fn for every args tuple at once; return results or raised exceptions."""
    barrier = threading.Barrier(len(args_list))

    def call(args):
        barrier.wait()
        try:
            return fn(*args)
        except Exception as e:
            return e

    with ThreadPoolExecutor(max_workers=len(args_list)) as pool:
        return list(pool.map(call, args_list))


class TestClaimAdmission:

    def test_limit_of_two_admits_two(self, services, make_spec):
        """Three claimers on a two-slot task: two Pending claims, one refusal."""
        task = services.lifecycle.create_task('owner', make_spec(max_claimants=2))

        first = services.admission.claim_task(task.task_id, 'u1')
        second = services.admission.claim_task(task.task_id, 'u2')
        with pytest.raises(ClaimLimitReached):
            services.admission.claim_task(task.task_id, 'u3')

        assert first.created and second.created
        assert first.claim.status is ClaimStatus.PENDING
        assert services.claims.count_active_by_task(task.task_id) == 2
        assert services.lifecycle.get_task(task.task_id).status is TaskStatus.CLAIMED

    def test_first_claim_moves_task_to_claimed(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec())
        services.admission.claim_task(task.task_id, 'u1')

        task = services.lifecycle.get_task(task.task_id)
        assert task.status is TaskStatus.CLAIMED
        assert task.escrow_locked is True

    def test_reclaim_returns_existing_claim(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec(max_claimants=1))

        first = services.admission.claim_task(task.task_id, 'u1')
        again = services.admission.claim_task(task.task_id, 'u1')

        assert first.created is True
        assert again.created is False
        assert again.claim.claim_id == first.claim.claim_id
        assert len(services.admission.get_claims_by_task(task.task_id)) == 1

    def test_rejected_claim_keeps_its_slot(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec(max_claimants=1))
        result = services.admission.claim_task(task.task_id, 'u1')
        services.admission.reject_claim(result.claim.claim_id, 'owner')

        with pytest.raises(ClaimLimitReached):
            services.admission.claim_task(task.task_id, 'u2')

    def test_unlocked_task_is_not_claimable(self, services, make_spec, clock):
        task = services.lifecycle.create_task('owner', make_spec())
        services.tasks.set_escrow_locked(task.task_id, False, clock.now)

        with pytest.raises(TaskNotClaimable):
            services.admission.claim_task(task.task_id, 'u1')

    def test_closed_window_is_not_claimable(self, services, make_spec, clock):
        task = services.lifecycle.create_task('owner', make_spec())
        clock.now = task.claim_deadline

        with pytest.raises(TaskNotClaimable):
            services.admission.claim_task(task.task_id, 'u1')

    def test_missing_task(self, services):
        with pytest.raises(TaskNotFound):
            services.admission.claim_task('missing', 'u1')

    def test_lock_timeout_writes_nothing(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec())

        with services.locks.hold(task_lock_key(task.task_id)):
            with pytest.raises(OperationTimeout):
                services.admission.claim_task(task.task_id, 'u1', timeout=0.05)

        assert services.claims.count_active_by_task(task.task_id) == 0
        assert services.lifecycle.get_task(task.task_id).status is TaskStatus.OPEN

    def test_claims_listed_oldest_first(self, services, make_spec, clock):
        task = services.lifecycle.create_task('owner', make_spec(max_claimants=3))
        ids = []
        for user in ('u1', 'u2', 'u3'):
            ids.append(services.admission.claim_task(task.task_id, user).claim.claim_id)
            clock.advance(seconds=1)

        assert [c.claim_id for c in services.admission.get_claims_by_task(task.task_id)] == ids

    def test_claims_for_missing_task(self, services):
        with pytest.raises(TaskNotFound):
            services.admission.get_claims_by_task('missing')

    def test_get_missing_claim(self, services):
        with pytest.raises(ClaimNotFound):
            services.admission.get_claim('missing')


class TestConcurrentAdmission:

    def test_limit_holds_under_concurrent_claimers(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec(max_claimants=3))

        results = _run_concurrently(
            services.admission.claim_task,
            [(task.task_id, f"user-{i}") for i in range(10)],
        )

        created = [r for r in results if not isinstance(r, Exception) and r.created]
        refused = [r for r in results if isinstance(r, ClaimLimitReached)]
        assert len(created) == 3
        assert len(refused) == 7
        assert services.claims.count_active_by_task(task.task_id) == 3

    def test_same_claimer_concurrently_gets_one_claim(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec(max_claimants=5))

        results = _run_concurrently(
            services.admission.claim_task,
            [(task.task_id, 'same-user') for _ in range(6)],
        )

        assert not any(isinstance(r, Exception) for r in results)
        assert sum(1 for r in results if r.created) == 1
        assert len({r.claim.claim_id for r in results}) == 1
        assert services.claims.count_active_by_task(task.task_id) == 1


class TestSubmitCompletion:

    def test_records_submission_and_opens_chat(self, services, make_spec, clock):
        task = services.lifecycle.create_task('owner', make_spec())
        claim = services.admission.claim_task(task.task_id, 'u1').claim

        submitted = services.admission.submit_completion(claim.claim_id, 'u1', 'Done', 'https://img/1.png')

        assert submitted.is_submitted
        assert submitted.submitted_at == clock.now
        assert submitted.completion_image_url == 'https://img/1.png'
        channels = services.chats.list_channels()
        assert len(channels) == 1
        assert channels[0].participant_id == 'u1'
        assert channels[0].other_participant_id == 'owner'

    def test_only_claimer_can_submit(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec())
        claim = services.admission.claim_task(task.task_id, 'u1').claim

        with pytest.raises(UnauthorizedError):
            services.admission.submit_completion(claim.claim_id, 'u2', 'Done')

    def test_text_is_required(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec())
        claim = services.admission.claim_task(task.task_id, 'u1').claim

        with pytest.raises(ValidationError):
            services.admission.submit_completion(claim.claim_id, 'u1', '  ')

    def test_chat_failure_does_not_fail_submission(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec())
        claim = services.admission.claim_task(task.task_id, 'u1').claim

        with patch.object(services.chats, 'get_or_create_channel', side_effect=StorageError('chat down')):
            submitted = services.admission.submit_completion(claim.claim_id, 'u1', 'Done')

        assert submitted.is_submitted

    def test_resolved_claim_cannot_be_resubmitted(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec())
        claim = services.admission.claim_task(task.task_id, 'u1').claim
        services.admission.reject_claim(claim.claim_id, 'owner')

        with pytest.raises(ClaimAlreadyResolved):
            services.admission.submit_completion(claim.claim_id, 'u1', 'Done')


class TestApproveClaim:

    def _submitted_claim(self, services, task, user):
        claim = services.admission.claim_task(task.task_id, user).claim
        services.admission.submit_completion(claim.claim_id, user, 'Done')
        return claim

    def test_approval_settles_task(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec(reward_amount=Decimal('7.50')))
        claim = self._submitted_claim(services, task, 'u1')

        approved = services.admission.approve_claim(claim.claim_id, 'owner')

        assert approved.status is ClaimStatus.APPROVED
        assert services.lifecycle.get_task(task.task_id).status is TaskStatus.COMPLETED
        releases = _releases(services, task.task_id)
        assert len(releases) == 1
        assert releases[0].user_id == 'u1'
        assert releases[0].amount == Decimal('7.50')
        user = services.users.get('u1')
        assert user.total_earned == Decimal('7.50')
        assert user.reputation == APPROVAL_REPUTATION_DELTA

    def test_second_claim_cannot_settle_completed_task(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec(max_claimants=2))
        first = self._submitted_claim(services, task, 'u1')
        second = self._submitted_claim(services, task, 'u2')
        services.admission.approve_claim(first.claim_id, 'owner')

        with pytest.raises(TaskAlreadySettled):
            services.admission.approve_claim(second.claim_id, 'owner')

        assert services.admission.get_claim(second.claim_id).status is ClaimStatus.PENDING
        assert len(_releases(services, task.task_id)) == 1

    def test_repeat_approval_is_rejected(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec())
        claim = self._submitted_claim(services, task, 'u1')
        services.admission.approve_claim(claim.claim_id, 'owner')

        with pytest.raises(ClaimAlreadyResolved):
            services.admission.approve_claim(claim.claim_id, 'owner')

        assert services.users.get('u1').total_earned == Decimal('10.00')

    def test_unsubmitted_claim_cannot_be_approved(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec())
        claim = services.admission.claim_task(task.task_id, 'u1').claim

        with pytest.raises(ClaimNotSubmitted):
            services.admission.approve_claim(claim.claim_id, 'owner')

    def test_only_owner_can_approve(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec())
        claim = self._submitted_claim(services, task, 'u1')

        with pytest.raises(UnauthorizedError):
            services.admission.approve_claim(claim.claim_id, 'u1')

    def test_rejected_claim_cannot_be_approved(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec())
        claim = self._submitted_claim(services, task, 'u1')
        services.admission.reject_claim(claim.claim_id, 'owner')

        with pytest.raises(ClaimAlreadyResolved):
            services.admission.approve_claim(claim.claim_id, 'owner')

    def test_failed_settlement_resumes_on_retry(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec())
        claim = self._submitted_claim(services, task, 'u1')

        with patch.object(services.users, 'credit_earnings', side_effect=StorageError('users down')):
            with pytest.raises(StorageError):
                services.admission.approve_claim(claim.claim_id, 'owner')

        assert services.admission.get_claim(claim.claim_id).status is ClaimStatus.APPROVED
        assert services.lifecycle.get_task(task.task_id).status is TaskStatus.CLAIMED

        services.admission.approve_claim(claim.claim_id, 'owner')

        assert services.lifecycle.get_task(task.task_id).status is TaskStatus.COMPLETED
        assert len(_releases(services, task.task_id)) == 1
        assert services.users.get('u1').total_earned == Decimal('10.00')

    def test_other_claim_cannot_approve_during_stopped_settlement(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec(max_claimants=2))
        first = self._submitted_claim(services, task, 'u1')
        second = self._submitted_claim(services, task, 'u2')

        with patch.object(services.users, 'credit_earnings', side_effect=StorageError('users down')):
            with pytest.raises(StorageError):
                services.admission.approve_claim(first.claim_id, 'owner')

        with pytest.raises(TaskAlreadySettled):
            services.admission.approve_claim(second.claim_id, 'owner')

        assert services.admission.get_claim(second.claim_id).status is ClaimStatus.PENDING
        releases = _releases(services, task.task_id)
        assert len(releases) == 1
        assert releases[0].user_id == 'u1'

        services.admission.approve_claim(first.claim_id, 'owner')

        assert services.lifecycle.get_task(task.task_id).status is TaskStatus.COMPLETED
        assert services.users.get('u2') is None

    def test_release_to_other_claimer_blocks_approval(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec(max_claimants=2))
        first = self._submitted_claim(services, task, 'u1')
        second = self._submitted_claim(services, task, 'u2')
        services.ledger.release_escrow(task.task_id, 'u1', task.reward_amount)

        with pytest.raises(TaskAlreadySettled):
            services.admission.approve_claim(second.claim_id, 'owner')

        assert services.admission.get_claim(second.claim_id).status is ClaimStatus.PENDING
        assert services.admission.get_claim(first.claim_id).status is ClaimStatus.PENDING

    def test_concurrent_approvals_settle_once(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec())
        claim = self._submitted_claim(services, task, 'u1')

        results = _run_concurrently(
            services.admission.approve_claim,
            [(claim.claim_id, 'owner') for _ in range(5)],
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        assert len(successes) == 1
        assert all(isinstance(r, ClaimAlreadyResolved) for r in results if isinstance(r, Exception))
        assert len(_releases(services, task.task_id)) == 1
        assert services.users.get('u1').total_earned == Decimal('10.00')

    def test_concurrent_approvals_of_different_claims(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec(max_claimants=2))
        first = self._submitted_claim(services, task, 'u1')
        second = self._submitted_claim(services, task, 'u2')

        results = _run_concurrently(
            services.admission.approve_claim,
            [(first.claim_id, 'owner'), (second.claim_id, 'owner')],
        )

        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert sum(1 for r in results if isinstance(r, TaskAlreadySettled)) == 1
        releases = _releases(services, task.task_id)
        assert len(releases) == 1
        assert services.ledger.balance(task.task_id) == Decimal('0')


class TestRejectClaim:

    def test_reject_leaves_task_and_ledger_alone(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec())
        claim = services.admission.claim_task(task.task_id, 'u1').claim

        rejected = services.admission.reject_claim(claim.claim_id, 'owner')

        assert rejected.status is ClaimStatus.REJECTED
        assert services.lifecycle.get_task(task.task_id).status is TaskStatus.CLAIMED
        assert len(services.ledger.get_transactions(task.task_id)) == 1

    def test_only_owner_can_reject(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec())
        claim = services.admission.claim_task(task.task_id, 'u1').claim

        with pytest.raises(UnauthorizedError):
            services.admission.reject_claim(claim.claim_id, 'someone-else')

    def test_cannot_reject_twice(self, services, make_spec):
        task = services.lifecycle.create_task('owner', make_spec())
        claim = services.admission.claim_task(task.task_id, 'u1').claim
        services.admission.reject_claim(claim.claim_id, 'owner')

        with pytest.raises(ClaimAlreadyResolved):
            services.admission.reject_claim(claim.claim_id, 'owner')


def test_claim_window_uses_injected_clock(services, make_spec, clock):
    task = services.lifecycle.create_task('owner', make_spec(claim_deadline=clock.now + timedelta(seconds=30)))
    clock.advance(seconds=29)
    assert services.admission.claim_task(task.task_id, 'u1').created
