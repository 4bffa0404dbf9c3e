"""
Service wiring.

Builds the engine components over the configured storage backend. Lambda
handlers share one Services instance per container through get_services().
"""
from dataclasses import dataclass
from typing import Optional

from . import dynamo, memory
from .claims import ClaimAdmission
from .config import config
from .ledger import Ledger
from .locks import ThreadLockProvider
from .logging import logger
from .ports import ChatChannels, ClaimStore, Clock, EscrowStore, LockProvider, TaskStore, UserStore
from .reconciler import Reconciler
from .tasks import TaskLifecycle
from .utils import utc_now


@dataclass
class Services:
    tasks: TaskStore
    claims: ClaimStore
    escrow: EscrowStore
    users: UserStore
    chats: ChatChannels
    locks: LockProvider
    ledger: Ledger
    lifecycle: TaskLifecycle
    admission: ClaimAdmission
    reconciler: Reconciler


def assemble(
    tasks: TaskStore,
    claims: ClaimStore,
    escrow: EscrowStore,
    users: UserStore,
    chats: ChatChannels,
    locks: LockProvider,
    clock: Clock = utc_now,
) -> Services:
    """Wire the components over the given stores."""
    ledger = Ledger(tasks, escrow, clock=clock)
    lifecycle = TaskLifecycle(tasks, ledger, clock=clock)
    admission = ClaimAdmission(lifecycle, claims, ledger, users, locks, chats=chats, clock=clock)
    reconciler = Reconciler.from_admission(admission)
    return Services(
        tasks=tasks,
        claims=claims,
        escrow=escrow,
        users=users,
        chats=chats,
        locks=locks,
        ledger=ledger,
        lifecycle=lifecycle,
        admission=admission,
        reconciler=reconciler,
    )


def build_memory_services(clock: Clock = utc_now) -> Services:
    return assemble(
        tasks=memory.InMemoryTaskStore(),
        claims=memory.InMemoryClaimStore(),
        escrow=memory.InMemoryEscrowStore(),
        users=memory.InMemoryUserStore(),
        chats=memory.InMemoryChatChannels(),
        locks=ThreadLockProvider(),
        clock=clock,
    )


def build_dynamo_services(clock: Clock = utc_now) -> Services:
    return assemble(
        tasks=dynamo.DynamoTaskStore(),
        claims=dynamo.DynamoClaimStore(),
        escrow=dynamo.DynamoEscrowStore(),
        users=dynamo.DynamoUserStore(),
        chats=dynamo.DynamoChatChannels(),
        locks=dynamo.DynamoLeaseLockProvider(),
        clock=clock,
    )


def build_services(backend: Optional[str] = None, clock: Clock = utc_now) -> Services:
    """
    Build services for a storage backend.

    Args:
        backend: 'dynamodb' or 'memory' (config.STORAGE_BACKEND if None)
        clock: Time source shared by every component

    Raises:
        ValueError: for an unknown backend
    """
    backend = (backend or config.STORAGE_BACKEND).lower()
    if backend == 'dynamodb':
        return build_dynamo_services(clock)
    if backend == 'memory':
        return build_memory_services(clock)
    raise ValueError(f"Unknown storage backend: {backend!r}")


_services: Optional[Services] = None


def get_services() -> Services:
    global _services
    if _services is None:
        _services = build_services()
        logger.info(f"Initialized services with {config.STORAGE_BACKEND} storage")
    return _services


def set_services(services: Optional[Services]) -> None:
    """Replace the shared instance (None resets it)."""
    global _services
    _services = services
