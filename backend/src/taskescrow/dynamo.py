"""
DynamoDB storage adapters.

Table layout (all keys are strings):
    Tasks:   taskId;      GSIs StatusIndex (status, createdAt), OwnerIndex (ownerId, createdAt)
    Claims:  claimId;     GSI TaskIndex (taskId, createdAt)
    Escrow:  transactionId; GSI TaskIndex (taskId, createdAt)
    Users:   userId;      credit markers keyed <userId>#<kind>#<reference>
    Chats:   channelKey
    Locks:   lockKey      (expiresAt is the table's TTL attribute)

Claim admission is guarded in storage as well as by the task lock: creating
a claim is one transaction that bumps the task's activeClaims counter only
while it is below maxClaimants, and puts a guard item keyed by
(task, claimer) so a claimer can hold one active claim per task.
"""
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from .config import config
from .errors import (
    AlreadyClaimed,
    ClaimLimitReached,
    ClaimNotFound,
    OperationTimeout,
    StorageError,
    TaskNotFound,
)
from .logging import logger
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
from .utils import format_timestamp, utc_now

dynamodb = boto3.resource('dynamodb', region_name=config.AWS_REGION)

_serializer = TypeSerializer()

CONDITIONAL_CHECK_FAILED = 'ConditionalCheckFailedException'
TRANSACTION_CANCELED = 'TransactionCanceledException'


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


def _typed(item: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a plain item to the low-level attribute-value format used by the client."""
    return {k: _serializer.serialize(v) for k, v in item.items() if v is not None}


def query_all(table, limit: Optional[int] = None, **params) -> List[Dict[str, Any]]:
    """
    Query a table or index, following LastEvaluatedKey.

    Args:
        table: boto3 Table resource
        limit: Stop once this many items were collected (all items if None)
        **params: Query parameters (IndexName, KeyConditionExpression, ...)

    Returns:
        List of items in index order
    """
    items: List[Dict[str, Any]] = []
    while True:
        response = table.query(**params)
        items.extend(response.get('Items', []))
        last_key = response.get('LastEvaluatedKey')
        if not last_key or (limit is not None and len(items) >= limit):
            break
        params['ExclusiveStartKey'] = last_key
    return items if limit is None else items[:limit]


def count_all(table, **params) -> int:
    """Count matching items across all pages of a query."""
    total = 0
    params['Select'] = 'COUNT'
    while True:
        response = table.query(**params)
        total += response.get('Count', 0)
        last_key = response.get('LastEvaluatedKey')
        if not last_key:
            return total
        params['ExclusiveStartKey'] = last_key


class DynamoTaskStore:
    def __init__(self, table_name: str = None, resource=None):
        self.resource = resource or dynamodb
        self.table_name = table_name or config.TASKS_TABLE
        self.table = self.resource.Table(self.table_name)

    def create(self, task: Task) -> Task:
        item = task.to_item()
        item['activeClaims'] = 0
        try:
            self.table.put_item(Item=item, ConditionExpression='attribute_not_exists(taskId)')
        except ClientError as e:
            raise StorageError(f"Error creating task {task.task_id}: {e}")
        return task

    def get(self, task_id: str) -> Optional[Task]:
        try:
            response = self.table.get_item(Key={'taskId': task_id})
        except ClientError as e:
            raise StorageError(f"Error getting task {task_id}: {e}")
        item = response.get('Item')
        return Task.from_item(item) if item else None

    def list_by_owner(self, owner_id: str, limit: int, offset: int) -> List[Task]:
        items = self._query(
            limit=offset + limit,
            IndexName='OwnerIndex',
            KeyConditionExpression=Key('ownerId').eq(owner_id),
            ScanIndexForward=False,
        )
        return [Task.from_item(item) for item in items[offset:offset + limit]]

    def list_open(self, now: datetime, limit: int, offset: int) -> List[Task]:
        items = self._query(
            limit=offset + limit,
            IndexName='StatusIndex',
            KeyConditionExpression=Key('status').eq(TaskStatus.OPEN.value),
            FilterExpression=Attr('claimDeadline').gt(format_timestamp(now)),
            ScanIndexForward=False,
        )
        return [Task.from_item(item) for item in items[offset:offset + limit]]

    def update_status(self, task_id: str, status: TaskStatus, now: datetime) -> None:
        try:
            self.table.update_item(
                Key={'taskId': task_id},
                UpdateExpression='SET #status = :status, updatedAt = :ts',
                ConditionExpression='attribute_exists(taskId)',
                ExpressionAttributeNames={'#status': 'status'},
                ExpressionAttributeValues={':status': status.value, ':ts': format_timestamp(now)},
            )
        except ClientError as e:
            if _error_code(e) == CONDITIONAL_CHECK_FAILED:
                raise TaskNotFound(f"Task {task_id} not found")
            raise StorageError(f"Error updating task {task_id}: {e}")

    def set_escrow_locked(
        self, task_id: str, locked: bool, now: datetime, expected: Optional[bool] = None
    ) -> bool:
        condition = 'attribute_exists(taskId)'
        values = {':locked': locked, ':ts': format_timestamp(now)}
        if expected is not None:
            condition += ' AND escrowLocked = :expected'
            values[':expected'] = expected
        try:
            self.table.update_item(
                Key={'taskId': task_id},
                UpdateExpression='SET escrowLocked = :locked, updatedAt = :ts',
                ConditionExpression=condition,
                ExpressionAttributeValues=values,
            )
            return True
        except ClientError as e:
            if _error_code(e) == CONDITIONAL_CHECK_FAILED:
                return False
            raise StorageError(f"Error setting escrow flag on task {task_id}: {e}")

    def list_past_claim_deadline(self, now: datetime) -> List[Task]:
        items = self._query(
            IndexName='StatusIndex',
            KeyConditionExpression=Key('status').eq(TaskStatus.OPEN.value),
            FilterExpression=Attr('claimDeadline').lte(format_timestamp(now)),
        )
        return [Task.from_item(item) for item in items]

    def list_past_owner_deadline(self, now: datetime) -> List[Task]:
        tasks = []
        for status in (TaskStatus.OPEN, TaskStatus.CLAIMED):
            items = self._query(
                IndexName='StatusIndex',
                KeyConditionExpression=Key('status').eq(status.value),
                FilterExpression=Attr('ownerDeadline').lte(format_timestamp(now)),
            )
            tasks.extend(Task.from_item(item) for item in items)
        return tasks

    def _query(self, limit: Optional[int] = None, **params) -> List[Dict[str, Any]]:
        try:
            return query_all(self.table, limit=limit, **params)
        except ClientError as e:
            raise StorageError(f"Error querying {self.table_name}: {e}")


def _guard_key(task_id: str, claimer_id: str) -> str:
    return f"ACTIVE#{task_id}#{claimer_id}"


class DynamoClaimStore:
    def __init__(self, table_name: str = None, tasks_table_name: str = None, resource=None):
        self.resource = resource or dynamodb
        self.table_name = table_name or config.CLAIMS_TABLE
        self.tasks_table_name = tasks_table_name or config.TASKS_TABLE
        self.table = self.resource.Table(self.table_name)
        self.client = self.resource.meta.client

    def create(self, claim: Claim) -> Claim:
        """
        Insert a claim, taking a slot on its task in the same transaction.

        Transact items, in order (cancellation reasons follow this order):
        1. Task: activeClaims + 1 while below maxClaimants
        2. Claim record
        3. Guard item for (task, claimer)
        """
        ts = format_timestamp(claim.created_at or utc_now())
        guard = {
            'claimId': _guard_key(claim.task_id, claim.claimer_id),
            'activeClaimId': claim.claim_id,
            'createdAt': ts,
        }
        try:
            self.client.transact_write_items(
                TransactItems=[
                    {
                        'Update': {
                            'TableName': self.tasks_table_name,
                            'Key': {'taskId': {'S': claim.task_id}},
                            'UpdateExpression': 'SET activeClaims = if_not_exists(activeClaims, :zero) + :one, '
                                                'updatedAt = :ts',
                            'ConditionExpression': 'attribute_exists(taskId) AND '
                                                   '(attribute_not_exists(activeClaims) OR activeClaims < maxClaimants)',
                            'ExpressionAttributeValues': {
                                ':zero': {'N': '0'},
                                ':one': {'N': '1'},
                                ':ts': {'S': ts},
                            },
                        }
                    },
                    {
                        'Put': {
                            'TableName': self.table_name,
                            'Item': _typed(claim.to_item()),
                            'ConditionExpression': 'attribute_not_exists(claimId)',
                        }
                    },
                    {
                        'Put': {
                            'TableName': self.table_name,
                            'Item': _typed(guard),
                            'ConditionExpression': 'attribute_not_exists(claimId)',
                        }
                    },
                ]
            )
        except ClientError as e:
            if _error_code(e) != TRANSACTION_CANCELED:
                raise StorageError(f"Error creating claim {claim.claim_id}: {e}")
            reasons = [r.get('Code') for r in e.response.get('CancellationReasons', [])]
            if len(reasons) > 2 and reasons[2] == 'ConditionalCheckFailed':
                raise AlreadyClaimed(self.get_active_by_task_and_claimer(claim.task_id, claim.claimer_id))
            if reasons and reasons[0] == 'ConditionalCheckFailed':
                raise ClaimLimitReached(f"Task {claim.task_id} has no free claim slots")
            raise StorageError(f"Claim transaction for {claim.claim_id} was cancelled: {reasons}")
        return claim

    def get(self, claim_id: str) -> Optional[Claim]:
        try:
            response = self.table.get_item(Key={'claimId': claim_id})
        except ClientError as e:
            raise StorageError(f"Error getting claim {claim_id}: {e}")
        item = response.get('Item')
        # Guard items share the table but carry no taskId
        if not item or 'taskId' not in item:
            return None
        return Claim.from_item(item)

    def list_by_task(self, task_id: str) -> List[Claim]:
        try:
            items = query_all(
                self.table,
                IndexName='TaskIndex',
                KeyConditionExpression=Key('taskId').eq(task_id),
                ScanIndexForward=True,
            )
        except ClientError as e:
            raise StorageError(f"Error listing claims for task {task_id}: {e}")
        return [Claim.from_item(item) for item in items]

    def get_active_by_task_and_claimer(self, task_id: str, claimer_id: str) -> Optional[Claim]:
        try:
            response = self.table.get_item(Key={'claimId': _guard_key(task_id, claimer_id)})
        except ClientError as e:
            raise StorageError(f"Error reading claim guard for task {task_id}: {e}")
        guard = response.get('Item')
        if not guard:
            return None
        claim = self.get(guard['activeClaimId'])
        if claim is None or not claim.is_active:
            return None
        return claim

    def count_active_by_task(self, task_id: str) -> int:
        try:
            return count_all(
                self.table,
                IndexName='TaskIndex',
                KeyConditionExpression=Key('taskId').eq(task_id),
                FilterExpression=Attr('status').ne(ClaimStatus.CANCELLED.value),
            )
        except ClientError as e:
            raise StorageError(f"Error counting claims for task {task_id}: {e}")

    def update_status(self, claim_id: str, status: ClaimStatus, now: datetime) -> None:
        if status is ClaimStatus.CANCELLED:
            self._cancel(claim_id, now)
            return
        try:
            self.table.update_item(
                Key={'claimId': claim_id},
                UpdateExpression='SET #status = :status, updatedAt = :ts',
                ConditionExpression='attribute_exists(taskId)',
                ExpressionAttributeNames={'#status': 'status'},
                ExpressionAttributeValues={':status': status.value, ':ts': format_timestamp(now)},
            )
        except ClientError as e:
            if _error_code(e) == CONDITIONAL_CHECK_FAILED:
                raise ClaimNotFound(f"Claim {claim_id} not found")
            raise StorageError(f"Error updating claim {claim_id}: {e}")

    def _cancel(self, claim_id: str, now: datetime) -> None:
        """Cancelling frees the slot and the (task, claimer) guard together."""
        claim = self.get(claim_id)
        if claim is None:
            raise ClaimNotFound(f"Claim {claim_id} not found")
        if claim.status is ClaimStatus.CANCELLED:
            return
        ts = format_timestamp(now)
        try:
            self.client.transact_write_items(
                TransactItems=[
                    {
                        'Update': {
                            'TableName': self.table_name,
                            'Key': {'claimId': {'S': claim_id}},
                            'UpdateExpression': 'SET #status = :status, updatedAt = :ts',
                            'ConditionExpression': '#status <> :status',
                            'ExpressionAttributeNames': {'#status': 'status'},
                            'ExpressionAttributeValues': {
                                ':status': {'S': ClaimStatus.CANCELLED.value},
                                ':ts': {'S': ts},
                            },
                        }
                    },
                    {
                        'Delete': {
                            'TableName': self.table_name,
                            'Key': {'claimId': {'S': _guard_key(claim.task_id, claim.claimer_id)}},
                        }
                    },
                    {
                        'Update': {
                            'TableName': self.tasks_table_name,
                            'Key': {'taskId': {'S': claim.task_id}},
                            'UpdateExpression': 'SET activeClaims = activeClaims - :one, updatedAt = :ts',
                            'ConditionExpression': 'activeClaims > :zero',
                            'ExpressionAttributeValues': {
                                ':zero': {'N': '0'},
                                ':one': {'N': '1'},
                                ':ts': {'S': ts},
                            },
                        }
                    },
                ]
            )
        except ClientError as e:
            raise StorageError(f"Error cancelling claim {claim_id}: {e}")

    def record_submission(
        self, claim_id: str, text: str, image_url: Optional[str], now: datetime
    ) -> None:
        ts = format_timestamp(now)
        update = 'SET completionText = :text, submittedAt = :ts, updatedAt = :ts'
        values = {':text': text, ':ts': ts}
        if image_url:
            update += ', completionImageUrl = :image'
            values[':image'] = image_url
        else:
            update += ' REMOVE completionImageUrl'
        try:
            self.table.update_item(
                Key={'claimId': claim_id},
                UpdateExpression=update,
                ConditionExpression='attribute_exists(taskId)',
                ExpressionAttributeValues=values,
            )
        except ClientError as e:
            if _error_code(e) == CONDITIONAL_CHECK_FAILED:
                raise ClaimNotFound(f"Claim {claim_id} not found")
            raise StorageError(f"Error recording submission for claim {claim_id}: {e}")


class DynamoEscrowStore:
    def __init__(self, table_name: str = None, resource=None):
        self.resource = resource or dynamodb
        self.table_name = table_name or config.ESCROW_TABLE
        self.table = self.resource.Table(self.table_name)

    def append(self, transaction: EscrowTransaction) -> EscrowTransaction:
        try:
            self.table.put_item(
                Item=transaction.to_item(),
                ConditionExpression='attribute_not_exists(transactionId)',
            )
        except ClientError as e:
            raise StorageError(f"Error appending escrow transaction {transaction.transaction_id}: {e}")
        return transaction

    def list_by_task(self, task_id: str) -> List[EscrowTransaction]:
        try:
            items = query_all(
                self.table,
                IndexName='TaskIndex',
                KeyConditionExpression=Key('taskId').eq(task_id),
                ScanIndexForward=True,
            )
        except ClientError as e:
            raise StorageError(f"Error listing escrow for task {task_id}: {e}")
        return [EscrowTransaction.from_item(item) for item in items]

    def update_status(
        self, transaction_id: str, status: EscrowTransactionStatus, now: datetime
    ) -> None:
        update = 'SET #status = :status'
        values = {':status': status.value}
        if status is EscrowTransactionStatus.COMPLETED:
            update += ', completedAt = :ts'
            values[':ts'] = format_timestamp(now)
        try:
            self.table.update_item(
                Key={'transactionId': transaction_id},
                UpdateExpression=update,
                ConditionExpression='attribute_exists(transactionId)',
                ExpressionAttributeNames={'#status': 'status'},
                ExpressionAttributeValues=values,
            )
        except ClientError as e:
            raise StorageError(f"Error updating escrow transaction {transaction_id}: {e}")


class DynamoUserStore:
    def __init__(self, table_name: str = None, resource=None):
        self.resource = resource or dynamodb
        self.table_name = table_name or config.USERS_TABLE
        self.table = self.resource.Table(self.table_name)
        self.client = self.resource.meta.client

    def get(self, user_id: str) -> Optional[User]:
        try:
            response = self.table.get_item(Key={'userId': user_id})
        except ClientError as e:
            raise StorageError(f"Error getting user {user_id}: {e}")
        item = response.get('Item')
        return User.from_item(item) if item else None

    def credit_earnings(self, user_id: str, amount: Decimal, reference: str) -> bool:
        return self._apply_once(user_id, 'totalEarned', amount, 'earnings', reference)

    def increment_reputation(self, user_id: str, delta: int, reference: str) -> bool:
        return self._apply_once(user_id, 'reputation', Decimal(delta), 'reputation', reference)

    def _apply_once(self, user_id: str, attribute: str, amount: Decimal, kind: str, reference: str) -> bool:
        """
        ADD to a user counter once per reference.

        The reference is recorded as its own marker item keyed
        `<userId>#<kind>#<reference>`, written in the same transaction as the
        counter update, so the user item does not grow with every credit.
        Transact items, in order: 1. marker put, 2. counter update.
        """
        marker = {
            'userId': f"{user_id}#{kind}#{reference}",
            'appliedTo': user_id,
            'kind': kind,
            'reference': reference,
            'appliedAt': format_timestamp(utc_now()),
        }
        try:
            self.client.transact_write_items(
                TransactItems=[
                    {
                        'Put': {
                            'TableName': self.table_name,
                            'Item': _typed(marker),
                            'ConditionExpression': 'attribute_not_exists(userId)',
                        }
                    },
                    {
                        'Update': {
                            'TableName': self.table_name,
                            'Key': {'userId': {'S': user_id}},
                            'UpdateExpression': f'ADD {attribute} :amount',
                            'ExpressionAttributeValues': {':amount': _serializer.serialize(amount)},
                        }
                    },
                ]
            )
            return True
        except ClientError as e:
            if _error_code(e) == TRANSACTION_CANCELED:
                reasons = [r.get('Code') for r in e.response.get('CancellationReasons', [])]
                if reasons and reasons[0] == 'ConditionalCheckFailed':
                    logger.info(f"{attribute} for user {user_id} already applied for {reference}")
                    return False
            raise StorageError(f"Error updating {attribute} for user {user_id}: {e}")


class DynamoChatChannels:
    def __init__(self, table_name: str = None, resource=None):
        self.resource = resource or dynamodb
        self.table_name = table_name or config.CHATS_TABLE
        self.table = self.resource.Table(self.table_name)

    def get_or_create_channel(self, task_id: str, claimer_id: str, owner_id: str) -> ChatChannel:
        channel = ChatChannel(
            channel_id=str(uuid.uuid4()),
            task_id=task_id,
            participant_id=claimer_id,
            other_participant_id=owner_id,
            created_at=utc_now(),
        )
        channel_key = f"{task_id}#{claimer_id}#{owner_id}"
        try:
            self.table.put_item(
                Item={'channelKey': channel_key, **channel.to_item()},
                ConditionExpression='attribute_not_exists(channelKey)',
            )
            return channel
        except ClientError as e:
            if _error_code(e) != CONDITIONAL_CHECK_FAILED:
                raise StorageError(f"Error creating chat channel for task {task_id}: {e}")
        response = self.table.get_item(Key={'channelKey': channel_key})
        return ChatChannel.from_item(response['Item'])


class DynamoLeaseLockProvider:
    """
    Keyed locks held as lease items in a DynamoDB table.

    A lease expires after lease_seconds so a crashed holder cannot block a
    task forever; an expired lease is taken over by the next acquirer.
    """

    def __init__(
        self,
        table_name: str = None,
        resource=None,
        lease_seconds: int = None,
        default_timeout: float = None,
        poll_interval: float = 0.05,
    ):
        self.resource = resource or dynamodb
        self.table_name = table_name or config.LOCKS_TABLE
        self.table = self.resource.Table(self.table_name)
        self.lease_seconds = lease_seconds or config.LOCK_LEASE_SECONDS
        self.default_timeout = config.LOCK_TIMEOUT_SECONDS if default_timeout is None else default_timeout
        self.poll_interval = poll_interval

    def _try_acquire(self, key: str, owner: str) -> bool:
        now = int(time.time())
        try:
            self.table.put_item(
                Item={'lockKey': key, 'owner': owner, 'expiresAt': now + self.lease_seconds},
                ConditionExpression='attribute_not_exists(lockKey) OR expiresAt < :now',
                ExpressionAttributeValues={':now': now},
            )
            return True
        except ClientError as e:
            if _error_code(e) == CONDITIONAL_CHECK_FAILED:
                return False
            raise StorageError(f"Error acquiring lock {key}: {e}")

    def _release(self, key: str, owner: str) -> None:
        try:
            self.table.delete_item(
                Key={'lockKey': key},
                ConditionExpression='#owner = :owner',
                ExpressionAttributeNames={'#owner': 'owner'},
                ExpressionAttributeValues={':owner': owner},
            )
        except ClientError as e:
            if _error_code(e) == CONDITIONAL_CHECK_FAILED:
                logger.warning(f"Lease on {key} expired before release")
                return
            raise StorageError(f"Error releasing lock {key}: {e}")

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        wait = self.default_timeout if timeout is None else timeout
        owner = str(uuid.uuid4())
        deadline = time.monotonic() + wait
        while not self._try_acquire(key, owner):
            if time.monotonic() >= deadline:
                logger.warning(f"Timed out after {wait}s waiting for lock {key}")
                raise OperationTimeout(f"Timed out waiting for lock {key}")
            time.sleep(self.poll_interval)
        try:
            yield
        finally:
            self._release(key, owner)
