"""
Error taxonomy for the task escrow engine.
Each error carries the HTTP status code the Lambda handlers respond with.
"""
from typing import Optional


class TaskEscrowError(Exception):
    """Base error for the engine."""
    status_code = 500

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__doc__)
        self.message = message or self.__doc__


class NotFoundError(TaskEscrowError):
    """Resource not found"""
    status_code = 404


class TaskNotFound(NotFoundError):
    """Task not found"""


class ClaimNotFound(NotFoundError):
    """Claim not found"""


class ValidationError(TaskEscrowError):
    """Invalid input"""
    status_code = 400


class StateConflictError(TaskEscrowError):
    """Operation not allowed in the current state"""
    status_code = 409


class TaskNotClaimable(StateConflictError):
    """Task cannot be claimed"""


class ClaimLimitReached(StateConflictError):
    """Claim limit reached"""


class AlreadyClaimed(StateConflictError):
    """Task already claimed by this user"""

    def __init__(self, claim=None, message: Optional[str] = None):
        super().__init__(message)
        self.claim = claim


class ClaimNotSubmitted(StateConflictError):
    """Claim has not been submitted"""


class ClaimAlreadyResolved(StateConflictError):
    """Claim has already been resolved"""


class TaskAlreadySettled(StateConflictError):
    """Task has already been settled"""


class EscrowAlreadyLocked(StateConflictError):
    """Task escrow already locked"""


class InvalidTransition(StateConflictError):
    """Invalid task status transition"""


class UnauthorizedError(TaskEscrowError):
    """Unauthorized"""
    status_code = 403


class InternalError(TaskEscrowError):
    """Internal error"""
    status_code = 500


class StorageError(InternalError):
    """Storage operation failed"""


class OperationTimeout(InternalError):
    """Operation timed out waiting for a lock"""
