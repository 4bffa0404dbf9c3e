"""
Task Lifecycle.
Creation and validation of tasks, reads and listings, and the status
state machine: Open → Claimed → Completed, with Cancelled and Disputed exits.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from .config import config
from .errors import InvalidTransition, TaskNotFound, ValidationError
from .ledger import Ledger
from .logging import logger
from .models import Task, TaskSpec, TaskStatus
from .ports import Clock, TaskStore
from .utils import parse_timestamp, to_decimal, utc_now


def can_be_claimed(task: Task, now: datetime) -> bool:
    """Open, inside the claim window, and with the reward already in escrow."""
    return (
        task.status is TaskStatus.OPEN
        and now < task.claim_deadline
        and task.escrow_locked
    )


def accepts_claims(task: Task, now: datetime) -> bool:
    """
    Whether admission may add another claim.

    A Claimed task keeps accepting claims until its slots or its claim window
    run out; the slot count itself is checked by admission.
    """
    if can_be_claimed(task, now):
        return True
    return (
        task.status is TaskStatus.CLAIMED
        and now < task.claim_deadline
        and task.escrow_locked
    )


def should_auto_cancel(task: Task, now: datetime) -> bool:
    """Open past the claim deadline, regardless of escrow state."""
    return task.status is TaskStatus.OPEN and now >= task.claim_deadline


def allowed_transitions(status: TaskStatus) -> frozenset:
    if status is TaskStatus.OPEN:
        return frozenset({TaskStatus.CLAIMED, TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.DISPUTED})
    if status is TaskStatus.CLAIMED:
        return frozenset({TaskStatus.COMPLETED, TaskStatus.DISPUTED})
    if status is TaskStatus.DISPUTED:
        return frozenset({TaskStatus.COMPLETED})
    if status is TaskStatus.COMPLETED:
        return frozenset()
    if status is TaskStatus.CANCELLED:
        return frozenset()
    raise ValueError(f"Unknown task status: {status!r}")


def parse_task_spec(body: Dict[str, Any]) -> TaskSpec:
    """
    Build a TaskSpec from a request body.

    Raises:
        ValidationError: on missing fields or values of the wrong type
    """
    missing = [
        name for name in ('title', 'description', 'rewardAmount', 'maxClaimants',
                          'claimDeadline', 'ownerDeadline')
        if body.get(name) in (None, '')
    ]
    if missing:
        raise ValidationError(f"Missing fields: {', '.join(missing)}")

    try:
        reward = to_decimal(body['rewardAmount'])
    except ValueError:
        raise ValidationError('rewardAmount must be a number')

    max_claimants = body['maxClaimants']
    if isinstance(max_claimants, bool):
        raise ValidationError('maxClaimants must be an integer')
    try:
        max_claimants = int(max_claimants)
    except (TypeError, ValueError):
        raise ValidationError('maxClaimants must be an integer')

    try:
        claim_deadline = parse_timestamp(body['claimDeadline'])
        owner_deadline = parse_timestamp(body['ownerDeadline'])
    except ValueError as e:
        raise ValidationError(f"Invalid deadline: {e}")

    return TaskSpec(
        title=str(body['title']),
        description=str(body['description']),
        reward_amount=reward,
        max_claimants=max_claimants,
        claim_deadline=claim_deadline,
        owner_deadline=owner_deadline,
    )


class TaskLifecycle:
    """Owns task creation, reads and status transitions."""

    def __init__(
        self,
        tasks: TaskStore,
        ledger: Ledger,
        clock: Clock = utc_now,
        title_max_length: int = None,
        default_page_size: int = None,
        max_page_size: int = None,
    ):
        self.tasks = tasks
        self.ledger = ledger
        self.clock = clock
        self.title_max_length = title_max_length or config.TITLE_MAX_LENGTH
        self.default_page_size = default_page_size or config.DEFAULT_PAGE_SIZE
        self.max_page_size = max_page_size or config.MAX_PAGE_SIZE

    def validate(self, spec: TaskSpec, now: datetime) -> None:
        title = (spec.title or '').strip()
        if not title or len(title) > self.title_max_length:
            raise ValidationError(f"title must be between 1 and {self.title_max_length} characters")
        if not (spec.description or '').strip():
            raise ValidationError('description is required')
        try:
            reward = to_decimal(spec.reward_amount)
        except ValueError:
            raise ValidationError('reward_amount must be a number')
        if reward <= 0:
            raise ValidationError('reward_amount must be positive')
        if spec.max_claimants <= 0:
            raise ValidationError('max_claimants must be positive')
        if spec.claim_deadline is None or spec.claim_deadline <= now:
            raise ValidationError('claim_deadline must be in the future')
        if spec.owner_deadline is None or spec.owner_deadline <= spec.claim_deadline:
            raise ValidationError('owner_deadline must be after claim_deadline')

    def create_task(self, owner_id: str, spec: TaskSpec) -> Task:
        """
        Validate and persist a task, then lock its reward in escrow.

        The task is stored Open and unlocked first. If the lock fails the task
        is moved to Cancelled and the lock error is re-raised.

        Returns:
            The stored task, with escrow_locked set
        """
        now = self.clock()
        self.validate(spec, now)

        task = Task(
            task_id=str(uuid.uuid4()),
            owner_id=owner_id,
            title=spec.title.strip(),
            description=spec.description,
            reward_amount=to_decimal(spec.reward_amount),
            max_claimants=spec.max_claimants,
            claim_deadline=spec.claim_deadline,
            owner_deadline=spec.owner_deadline,
            status=TaskStatus.OPEN,
            escrow_locked=False,
            created_at=now,
            updated_at=now,
        )
        self.tasks.create(task)
        logger.info(f"Created task {task.task_id} for owner {owner_id} (reward: {task.reward_amount})")

        try:
            self.ledger.lock_escrow(task.task_id, owner_id, task.reward_amount)
        except Exception as e:
            logger.error(f"Escrow lock failed for task {task.task_id}, cancelling: {e}")
            self.tasks.update_status(task.task_id, TaskStatus.CANCELLED, self.clock())
            raise

        return self.get_task(task.task_id)

    def get_task(self, task_id: str) -> Task:
        task = self.tasks.get(task_id)
        if task is None:
            raise TaskNotFound(f"Task {task_id} not found")
        return task

    def get_open_tasks(self, limit: int = 0, offset: int = 0) -> List[Task]:
        return self.tasks.list_open(self.clock(), self._clamp(limit), max(offset, 0))

    def get_user_tasks(self, owner_id: str, limit: int = 0, offset: int = 0) -> List[Task]:
        return self.tasks.list_by_owner(owner_id, self._clamp(limit), max(offset, 0))

    def can_be_claimed(self, task: Task) -> bool:
        return can_be_claimed(task, self.clock())

    def accepts_claims(self, task: Task) -> bool:
        return accepts_claims(task, self.clock())

    def should_auto_cancel(self, task: Task) -> bool:
        return should_auto_cancel(task, self.clock())

    def transition(self, task_id: str, new_status: TaskStatus, task: Optional[Task] = None) -> Task:
        """
        Move a task to a new status.

        Re-applying the current status is a no-op.

        Raises:
            TaskNotFound: if the task does not exist
            InvalidTransition: if the move is not part of the lifecycle
        """
        task = task or self.get_task(task_id)
        if task.status is new_status:
            return task
        if new_status not in allowed_transitions(task.status):
            raise InvalidTransition(
                f"Task {task_id} cannot move from {task.status.value} to {new_status.value}"
            )
        now = self.clock()
        self.tasks.update_status(task_id, new_status, now)
        logger.info(f"Task {task_id}: {task.status.value} -> {new_status.value}")
        return task.copy(status=new_status, updated_at=now)

    def _clamp(self, limit: int) -> int:
        if limit is None or limit <= 0 or limit > self.max_page_size:
            return self.default_page_size
        return limit
