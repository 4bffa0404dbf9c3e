"""
Authentication utilities for extracting user info from Cognito tokens.
"""
from typing import Optional

from .errors import TaskEscrowError


class AuthenticationRequired(TaskEscrowError):
    """Authentication required"""
    status_code = 401


def get_user_sub(event: dict) -> Optional[str]:
    """
    Extract user sub (unique ID) from Cognito authorizer claims.

    Args:
        event: API Gateway Lambda proxy event

    Returns:
        User sub string or None if not authenticated
    """
    try:
        return event['requestContext']['authorizer']['claims']['sub']
    except (KeyError, TypeError):
        return None


def require_user_sub(event: dict) -> str:
    """Caller's user sub, or AuthenticationRequired when the request carries none."""
    user_id = get_user_sub(event)
    if not user_id:
        raise AuthenticationRequired()
    return user_id
