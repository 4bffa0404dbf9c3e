"""
In-memory storage adapters.

Used by the test suite and by local runs with STORAGE_BACKEND=memory. Each
store guards its records with a re-entrant lock so concurrent handlers see
consistent reads; records are copied on the way in and out.
"""
import threading
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

from .errors import AlreadyClaimed, ClaimNotFound, StorageError, TaskNotFound
from .models import (
    ChatChannel,
    Claim,
    ClaimStatus,
    EscrowTransaction,
    EscrowTransactionStatus,
    Task,
    TaskStatus,
    User,
)
from .utils import utc_now


def _page(items: list, limit: int, offset: int) -> list:
    return items[offset:offset + limit]


class InMemoryTaskStore:
    def __init__(self):
        self._lock = threading.RLock()
        self._tasks: Dict[str, Task] = {}

    def create(self, task: Task) -> Task:
        with self._lock:
            if task.task_id in self._tasks:
                raise StorageError(f"Task {task.task_id} already exists")
            self._tasks[task.task_id] = task.copy()
            return task.copy()

    def get(self, task_id: str) -> Optional[Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.copy() if task else None

    def list_by_owner(self, owner_id: str, limit: int, offset: int) -> List[Task]:
        with self._lock:
            owned = [t for t in self._tasks.values() if t.owner_id == owner_id]
        owned.sort(key=lambda t: t.created_at, reverse=True)
        return [t.copy() for t in _page(owned, limit, offset)]

    def list_open(self, now: datetime, limit: int, offset: int) -> List[Task]:
        with self._lock:
            open_tasks = [
                t for t in self._tasks.values()
                if t.status is TaskStatus.OPEN and t.claim_deadline > now
            ]
        open_tasks.sort(key=lambda t: t.created_at, reverse=True)
        return [t.copy() for t in _page(open_tasks, limit, offset)]

    def update_status(self, task_id: str, status: TaskStatus, now: datetime) -> None:
        with self._lock:
            task = self._require(task_id)
            task.status = status
            task.updated_at = now

    def set_escrow_locked(
        self, task_id: str, locked: bool, now: datetime, expected: Optional[bool] = None
    ) -> bool:
        with self._lock:
            task = self._require(task_id)
            if expected is not None and task.escrow_locked != expected:
                return False
            task.escrow_locked = locked
            task.updated_at = now
            return True

    def list_past_claim_deadline(self, now: datetime) -> List[Task]:
        with self._lock:
            return [
                t.copy() for t in self._tasks.values()
                if t.status is TaskStatus.OPEN and t.claim_deadline <= now
            ]

    def list_past_owner_deadline(self, now: datetime) -> List[Task]:
        with self._lock:
            return [
                t.copy() for t in self._tasks.values()
                if t.status in (TaskStatus.OPEN, TaskStatus.CLAIMED) and t.owner_deadline <= now
            ]

    def _require(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFound(f"Task {task_id} not found")
        return task


class InMemoryClaimStore:
    def __init__(self):
        self._lock = threading.RLock()
        self._claims: Dict[str, Claim] = {}

    def create(self, claim: Claim) -> Claim:
        with self._lock:
            existing = self._find_active(claim.task_id, claim.claimer_id)
            if existing is not None:
                raise AlreadyClaimed(existing.copy())
            self._claims[claim.claim_id] = claim.copy()
            return claim.copy()

    def get(self, claim_id: str) -> Optional[Claim]:
        with self._lock:
            claim = self._claims.get(claim_id)
            return claim.copy() if claim else None

    def list_by_task(self, task_id: str) -> List[Claim]:
        with self._lock:
            claims = [c.copy() for c in self._claims.values() if c.task_id == task_id]
        claims.sort(key=lambda c: c.created_at)
        return claims

    def get_active_by_task_and_claimer(self, task_id: str, claimer_id: str) -> Optional[Claim]:
        with self._lock:
            claim = self._find_active(task_id, claimer_id)
            return claim.copy() if claim else None

    def count_active_by_task(self, task_id: str) -> int:
        with self._lock:
            return sum(1 for c in self._claims.values() if c.task_id == task_id and c.is_active)

    def update_status(self, claim_id: str, status: ClaimStatus, now: datetime) -> None:
        with self._lock:
            claim = self._require(claim_id)
            claim.status = status
            claim.updated_at = now

    def record_submission(
        self, claim_id: str, text: str, image_url: Optional[str], now: datetime
    ) -> None:
        with self._lock:
            claim = self._require(claim_id)
            claim.completion_text = text
            claim.completion_image_url = image_url
            claim.submitted_at = now
            claim.updated_at = now

    def _find_active(self, task_id: str, claimer_id: str) -> Optional[Claim]:
        for claim in self._claims.values():
            if claim.task_id == task_id and claim.claimer_id == claimer_id and claim.is_active:
                return claim
        return None

    def _require(self, claim_id: str) -> Claim:
        claim = self._claims.get(claim_id)
        if claim is None:
            raise ClaimNotFound(f"Claim {claim_id} not found")
        return claim


class InMemoryEscrowStore:
    def __init__(self):
        self._lock = threading.RLock()
        self._transactions: Dict[str, EscrowTransaction] = {}
        self._order: List[str] = []

    def append(self, transaction: EscrowTransaction) -> EscrowTransaction:
        with self._lock:
            if transaction.transaction_id in self._transactions:
                raise StorageError(f"Transaction {transaction.transaction_id} already exists")
            self._transactions[transaction.transaction_id] = transaction.copy()
            self._order.append(transaction.transaction_id)
            return transaction.copy()

    def list_by_task(self, task_id: str) -> List[EscrowTransaction]:
        with self._lock:
            return [
                self._transactions[txn_id].copy() for txn_id in self._order
                if self._transactions[txn_id].task_id == task_id
            ]

    def update_status(
        self, transaction_id: str, status: EscrowTransactionStatus, now: datetime
    ) -> None:
        with self._lock:
            txn = self._transactions.get(transaction_id)
            if txn is None:
                raise StorageError(f"Transaction {transaction_id} not found")
            txn.status = status
            if status is EscrowTransactionStatus.COMPLETED:
                txn.completed_at = now


class InMemoryUserStore:
    def __init__(self):
        self._lock = threading.RLock()
        self._users: Dict[str, User] = {}
        self._applied: Set[Tuple[str, str]] = set()

    def add(self, user: User) -> None:
        with self._lock:
            self._users[user.user_id] = user

    def get(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            return User(user.user_id, user.reputation, user.total_earned, user.total_spent)

    def credit_earnings(self, user_id: str, amount: Decimal, reference: str) -> bool:
        with self._lock:
            if ('earnings', reference) in self._applied:
                return False
            user = self._users.setdefault(user_id, User(user_id))
            user.total_earned += amount
            self._applied.add(('earnings', reference))
            return True

    def increment_reputation(self, user_id: str, delta: int, reference: str) -> bool:
        with self._lock:
            if ('reputation', reference) in self._applied:
                return False
            user = self._users.setdefault(user_id, User(user_id))
            user.reputation += delta
            self._applied.add(('reputation', reference))
            return True


class InMemoryChatChannels:
    def __init__(self):
        self._lock = threading.RLock()
        self._channels: Dict[Tuple[str, str, str], ChatChannel] = {}

    def get_or_create_channel(self, task_id: str, claimer_id: str, owner_id: str) -> ChatChannel:
        with self._lock:
            key = (task_id, claimer_id, owner_id)
            channel = self._channels.get(key)
            if channel is None:
                channel = ChatChannel(
                    channel_id=str(uuid.uuid4()),
                    task_id=task_id,
                    participant_id=claimer_id,
                    other_participant_id=owner_id,
                    created_at=utc_now(),
                )
                self._channels[key] = channel
            return channel

    def list_channels(self) -> List[ChatChannel]:
        with self._lock:
            return list(self._channels.values())
