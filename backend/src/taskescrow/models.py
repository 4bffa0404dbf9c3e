"""
Data models and status constants for the task escrow engine.
Based on the task lifecycle: Open → Claimed → Completed, with Cancelled/Disputed exits.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from .utils import format_timestamp, parse_timestamp, to_decimal


class TaskStatus(str, Enum):
    """Task lifecycle statuses."""
    OPEN = 'Open'
    CLAIMED = 'Claimed'
    COMPLETED = 'Completed'
    CANCELLED = 'Cancelled'
    DISPUTED = 'Disputed'


class ClaimStatus(str, Enum):
    """Claim review statuses."""
    PENDING = 'Pending'
    APPROVED = 'Approved'
    REJECTED = 'Rejected'
    CANCELLED = 'Cancelled'


class EscrowTransactionType(str, Enum):
    """Escrow ledger entry types."""
    LOCK = 'Lock'
    RELEASE = 'Release'
    REFUND = 'Refund'


class EscrowTransactionStatus(str, Enum):
    """Escrow ledger entry statuses."""
    PENDING = 'Pending'
    COMPLETED = 'Completed'
    FAILED = 'Failed'


class OwnerDeadlinePolicy(str, Enum):
    """What the reconciler does with tasks the owner never resolved."""
    DISPUTE = 'dispute'
    NONE = 'none'


def is_active_claim_status(status: ClaimStatus) -> bool:
    """Active claims occupy a slot on their task. Rejected claims keep theirs."""
    if status is ClaimStatus.PENDING:
        return True
    if status is ClaimStatus.APPROVED:
        return True
    if status is ClaimStatus.REJECTED:
        return True
    if status is ClaimStatus.CANCELLED:
        return False
    raise ValueError(f"Unknown claim status: {status!r}")


@dataclass
class Task:
    task_id: str
    owner_id: str
    title: str
    description: str
    reward_amount: Decimal
    max_claimants: int
    claim_deadline: datetime
    owner_deadline: datetime
    status: TaskStatus = TaskStatus.OPEN
    escrow_locked: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_item(self) -> Dict[str, Any]:
        return {
            'taskId': self.task_id,
            'ownerId': self.owner_id,
            'title': self.title,
            'description': self.description,
            'rewardAmount': self.reward_amount,
            'maxClaimants': self.max_claimants,
            'claimDeadline': format_timestamp(self.claim_deadline),
            'ownerDeadline': format_timestamp(self.owner_deadline),
            'status': self.status.value,
            'escrowLocked': self.escrow_locked,
            'createdAt': format_timestamp(self.created_at),
            'updatedAt': format_timestamp(self.updated_at),
        }

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'Task':
        return cls(
            task_id=item['taskId'],
            owner_id=item['ownerId'],
            title=item['title'],
            description=item['description'],
            reward_amount=to_decimal(item['rewardAmount']),
            max_claimants=int(item['maxClaimants']),
            claim_deadline=parse_timestamp(item['claimDeadline']),
            owner_deadline=parse_timestamp(item['ownerDeadline']),
            status=TaskStatus(item['status']),
            escrow_locked=bool(item.get('escrowLocked', False)),
            created_at=parse_timestamp(item.get('createdAt')),
            updated_at=parse_timestamp(item.get('updatedAt')),
        )

    def copy(self, **changes) -> 'Task':
        return replace(self, **changes)


@dataclass
class Claim:
    claim_id: str
    task_id: str
    claimer_id: str
    status: ClaimStatus = ClaimStatus.PENDING
    submitted_at: Optional[datetime] = None
    completion_text: str = ''
    completion_image_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_submitted(self) -> bool:
        return self.submitted_at is not None and bool(self.completion_text)

    @property
    def is_active(self) -> bool:
        return is_active_claim_status(self.status)

    def to_item(self) -> Dict[str, Any]:
        item = {
            'claimId': self.claim_id,
            'taskId': self.task_id,
            'claimerId': self.claimer_id,
            'status': self.status.value,
            'completionText': self.completion_text,
            'createdAt': format_timestamp(self.created_at),
            'updatedAt': format_timestamp(self.updated_at),
        }
        # Optional fields are omitted rather than stored as NULL
        if self.submitted_at is not None:
            item['submittedAt'] = format_timestamp(self.submitted_at)
        if self.completion_image_url:
            item['completionImageUrl'] = self.completion_image_url
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'Claim':
        return cls(
            claim_id=item['claimId'],
            task_id=item['taskId'],
            claimer_id=item['claimerId'],
            status=ClaimStatus(item['status']),
            submitted_at=parse_timestamp(item.get('submittedAt')),
            completion_text=item.get('completionText', ''),
            completion_image_url=item.get('completionImageUrl'),
            created_at=parse_timestamp(item.get('createdAt')),
            updated_at=parse_timestamp(item.get('updatedAt')),
        )

    def copy(self, **changes) -> 'Claim':
        return replace(self, **changes)


@dataclass
class EscrowTransaction:
    transaction_id: str
    task_id: str
    user_id: str
    amount: Decimal
    transaction_type: EscrowTransactionType
    status: EscrowTransactionStatus = EscrowTransactionStatus.PENDING
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_item(self) -> Dict[str, Any]:
        item = {
            'transactionId': self.transaction_id,
            'taskId': self.task_id,
            'userId': self.user_id,
            'amount': self.amount,
            'type': self.transaction_type.value,
            'status': self.status.value,
            'createdAt': format_timestamp(self.created_at),
        }
        if self.completed_at is not None:
            item['completedAt'] = format_timestamp(self.completed_at)
        return item

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'EscrowTransaction':
        return cls(
            transaction_id=item['transactionId'],
            task_id=item['taskId'],
            user_id=item['userId'],
            amount=to_decimal(item['amount']),
            transaction_type=EscrowTransactionType(item['type']),
            status=EscrowTransactionStatus(item['status']),
            created_at=parse_timestamp(item.get('createdAt')),
            completed_at=parse_timestamp(item.get('completedAt')),
        )

    def copy(self, **changes) -> 'EscrowTransaction':
        return replace(self, **changes)


@dataclass
class User:
    user_id: str
    reputation: int = 0
    total_earned: Decimal = Decimal('0')
    total_spent: Decimal = Decimal('0')

    def to_item(self) -> Dict[str, Any]:
        return {
            'userId': self.user_id,
            'reputation': self.reputation,
            'totalEarned': self.total_earned,
            'totalSpent': self.total_spent,
        }

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'User':
        return cls(
            user_id=item['userId'],
            reputation=int(item.get('reputation', 0)),
            total_earned=to_decimal(item.get('totalEarned', 0)),
            total_spent=to_decimal(item.get('totalSpent', 0)),
        )


@dataclass
class ChatChannel:
    channel_id: str
    task_id: str
    participant_id: str
    other_participant_id: str
    created_at: Optional[datetime] = None

    def to_item(self) -> Dict[str, Any]:
        return {
            'channelId': self.channel_id,
            'taskId': self.task_id,
            'participantId': self.participant_id,
            'otherParticipantId': self.other_participant_id,
            'createdAt': format_timestamp(self.created_at),
        }

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'ChatChannel':
        return cls(
            channel_id=item['channelId'],
            task_id=item['taskId'],
            participant_id=item['participantId'],
            other_participant_id=item['otherParticipantId'],
            created_at=parse_timestamp(item.get('createdAt')),
        )


@dataclass
class TaskSpec:
    """Owner input for a new task, before validation."""
    title: str
    description: str
    reward_amount: Decimal
    max_claimants: int
    claim_deadline: datetime
    owner_deadline: datetime


@dataclass
class ClaimResult:
    """
    Outcome of a claim request.

    `created` is False when the claimer already held an active claim on the
    task; `claim` is then that existing claim rather than a new one.
    """
    claim: Claim
    created: bool

    def to_item(self) -> Dict[str, Any]:
        return {'claim': self.claim.to_item(), 'created': self.created, 'alreadyClaimed': not self.created}


@dataclass
class ReconciliationReport:
    """Counters for one reconciliation pass."""
    checked: int = 0
    cancelled: int = 0
    refunded: int = 0
    skipped: int = 0
    disputed: int = 0
    failed: int = 0
    errors: Dict[str, str] = field(default_factory=dict)

    def to_item(self) -> Dict[str, Any]:
        return {
            'checked': self.checked,
            'cancelled': self.cancelled,
            'refunded': self.refunded,
            'skipped': self.skipped,
            'disputed': self.disputed,
            'failed': self.failed,
        }
