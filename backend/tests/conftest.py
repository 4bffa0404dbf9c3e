"""
Shared fixtures for the task escrow tests.
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from taskescrow.models import TaskSpec  # noqa: E402
from taskescrow.services import build_memory_services, set_services  # noqa: E402


class FakeClock:
    """Controllable time source shared by every component under test."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def services(clock):
    return build_memory_services(clock=clock)


@pytest.fixture
def make_spec(clock):
    def _make(**overrides):
        values = {
            'title': 'Walk the dog',
            'description': 'Thirty minutes around the park',
            'reward_amount': Decimal('10.00'),
            'max_claimants': 2,
            'claim_deadline': clock.now + timedelta(hours=1),
            'owner_deadline': clock.now + timedelta(hours=3),
        }
        values.update(overrides)
        return TaskSpec(**values)
    return _make


@pytest.fixture
def api_services(services):
    """Install in-memory services for the Lambda handlers."""
    set_services(services)
    yield services
    set_services(None)


def api_event(user_id=None, path=None, query=None, body=None):
    """Build a minimal API Gateway proxy event."""
    event = {
        'httpMethod': 'POST',
        'pathParameters': path,
        'queryStringParameters': query,
        'body': body,
        'requestContext': {},
    }
    if user_id:
        event['requestContext'] = {'authorizer': {'claims': {'sub': user_id}}}
    return event
