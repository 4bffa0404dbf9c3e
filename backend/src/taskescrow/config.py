"""
Configuration module for the task escrow engine.
Loads all environment variables needed by the services and Lambda handlers.
"""
import os


class Config:
    """Centralized configuration from environment variables."""

    # AWS Region
    AWS_REGION = os.environ.get('AWS_REGION', 'us-east-1')

    # Storage backend: 'dynamodb' in deployed stacks, 'memory' for local runs
    STORAGE_BACKEND = os.environ.get('STORAGE_BACKEND', 'dynamodb')

    # DynamoDB Tables
    TASKS_TABLE = os.environ.get('TASKS_TABLE', '')
    CLAIMS_TABLE = os.environ.get('CLAIMS_TABLE', '')
    ESCROW_TABLE = os.environ.get('ESCROW_TABLE', '')
    USERS_TABLE = os.environ.get('USERS_TABLE', '')
    CHATS_TABLE = os.environ.get('CHATS_TABLE', '')
    LOCKS_TABLE = os.environ.get('LOCKS_TABLE', '')

    # Listing limits
    DEFAULT_PAGE_SIZE = int(os.environ.get('DEFAULT_PAGE_SIZE', '20'))
    MAX_PAGE_SIZE = int(os.environ.get('MAX_PAGE_SIZE', '100'))

    # Task validation
    TITLE_MAX_LENGTH = int(os.environ.get('TITLE_MAX_LENGTH', '500'))

    # Per-task locking
    LOCK_TIMEOUT_SECONDS = float(os.environ.get('LOCK_TIMEOUT_SECONDS', '5'))
    LOCK_LEASE_SECONDS = int(os.environ.get('LOCK_LEASE_SECONDS', '30'))

    # Reconciler
    RECONCILE_INTERVAL_SECONDS = int(os.environ.get('RECONCILE_INTERVAL_SECONDS', '60'))
    OWNER_DEADLINE_POLICY = os.environ.get('OWNER_DEADLINE_POLICY', 'dispute')  # 'dispute' or 'none'

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')


config = Config()
