"""Shared fixtures: an in-memory stand-in for the asyncpg pool."""

from unittest.mock import AsyncMock

import pytest

class _Transaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

class FakeConnection:
    """Connection whose query methods are AsyncMocks tests can script."""

    def __init__(self):
        self.fetchrow = AsyncMock(return_value=None)
        self.fetchval = AsyncMock(return_value=None)
        self.fetch = AsyncMock(return_value=[])
        self.execute = AsyncMock(return_value='UPDATE 0')
        self.add_listener = AsyncMock()
        self.remove_listener = AsyncMock()

    def transaction(self):
        return _Transaction()

class _Acquire:
    """Supports both ``async with pool.acquire()`` and ``await pool.acquire()``."""

    def __init__(self, conn):
        self.conn = conn

    def __await__(self):
        async def _get():
            return self.conn
        return _get().__await__()

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, exc_type, exc, tb):
        return False

class FakePool:
    def __init__(self, conn=None):
        self.conn = conn or FakeConnection()
        self.release = AsyncMock()

    def acquire(self):
        return _Acquire(self.conn)

@pytest.fixture
def conn():
    return FakeConnection()

@pytest.fixture
def pool(conn):
    return FakePool(conn)
