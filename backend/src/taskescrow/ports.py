"""
Capability interfaces the engine consumes.

Adapters live in `taskescrow.memory` (in-process) and `taskescrow.dynamo`
(DynamoDB). Components depend only on these protocols.
"""
from contextlib import AbstractContextManager
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Protocol

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

Clock = Callable[[], datetime]


class TaskStore(Protocol):
    def create(self, task: Task) -> Task: ...

    def get(self, task_id: str) -> Optional[Task]: ...

    def list_by_owner(self, owner_id: str, limit: int, offset: int) -> List[Task]: ...

    def list_open(self, now: datetime, limit: int, offset: int) -> List[Task]: ...

    def update_status(self, task_id: str, status: TaskStatus, now: datetime) -> None: ...

    def set_escrow_locked(
        self, task_id: str, locked: bool, now: datetime, expected: Optional[bool] = None
    ) -> bool:
        """Set the custody flag; when `expected` is given, only if the flag currently equals it."""
        ...

    def list_past_claim_deadline(self, now: datetime) -> List[Task]: ...

    def list_past_owner_deadline(self, now: datetime) -> List[Task]: ...


class ClaimStore(Protocol):
    def create(self, claim: Claim) -> Claim:
        """
        Insert a claim.

        Raises AlreadyClaimed if the claimer already holds an active claim on the
        task. Adapters that keep a slot counter raise ClaimLimitReached when full.
        """
        ...

    def get(self, claim_id: str) -> Optional[Claim]: ...

    def list_by_task(self, task_id: str) -> List[Claim]: ...

    def get_active_by_task_and_claimer(self, task_id: str, claimer_id: str) -> Optional[Claim]: ...

    def count_active_by_task(self, task_id: str) -> int: ...

    def update_status(self, claim_id: str, status: ClaimStatus, now: datetime) -> None: ...

    def record_submission(
        self, claim_id: str, text: str, image_url: Optional[str], now: datetime
    ) -> None: ...


class EscrowStore(Protocol):
    def append(self, transaction: EscrowTransaction) -> EscrowTransaction: ...

    def list_by_task(self, task_id: str) -> List[EscrowTransaction]: ...

    def update_status(
        self, transaction_id: str, status: EscrowTransactionStatus, now: datetime
    ) -> None:
        """Flip a transaction's status, stamping completed_at when it becomes Completed."""
        ...


class UserStore(Protocol):
    def get(self, user_id: str) -> Optional[User]: ...

    def credit_earnings(self, user_id: str, amount: Decimal, reference: str) -> bool:
        """Add to total_earned once per reference. Returns False if already applied."""
        ...

    def increment_reputation(self, user_id: str, delta: int, reference: str) -> bool:
        """Adjust reputation once per reference. Returns False if already applied."""
        ...


class ChatChannels(Protocol):
    def get_or_create_channel(self, task_id: str, claimer_id: str, owner_id: str) -> ChatChannel: ...


class LockProvider(Protocol):
    def hold(self, key: str, timeout: Optional[float] = None) -> AbstractContextManager:
        """Exclusive section for `key`. Raises OperationTimeout if not acquired in time."""
        ...
