"""Shared pytest configuration and fixtures for ColdStore tests.

Sets required environment variables before any coldstore module is imported,
so that ``coldstore.config.get_settings()`` succeeds in the test environment.
"""
from __future__ import annotations

import os

# Set required env vars before any coldstore module is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-at-least-32-chars-long!!")
os.environ.setdefault("NOTIFICATION_WEBHOOK_URL", "")
os.environ.setdefault("TRANSFER_RETRY_BASE_SECONDS", "0")
