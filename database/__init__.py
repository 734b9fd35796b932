"""PostgreSQL access for the marketplace.

A single asyncpg pool is shared by every manager in the process. ``init_db``
creates the target database when missing, opens the pool and brings the
schema up to date; ``get_pool`` lazily does the same on first use.
"""

import logging
from typing import Optional, Dict, Any
from urllib.parse import urlparse, parse_qs, urlunparse

import backoff
import asyncpg

from .exceptions import DatabaseError, DatabaseSchemaError, DatabaseNotInitializedError
from .lib.schema_manager import SchemaManager

logger = logging.getLogger(__name__)

# Errors seen while Postgres is still starting or briefly unreachable
TRANSIENT_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    OSError
)

POOL_SIZE = (2, 20)
STATEMENT_TIMEOUT_MS = 60000

_pool: Optional[asyncpg.Pool] = None

def _pool_options(db_url: str) -> Dict[str, Any]:
    """Keyword arguments for ``asyncpg.create_pool``.

    asyncpg reads ``sslmode`` from the DSN itself; a bare ``ssl`` query
    parameter is passed through explicitly.
    """
    min_size, max_size = POOL_SIZE
    options = {
        'min_size': min_size,
        'max_size': max_size,
        'max_inactive_connection_lifetime': 300.0,
        'command_timeout': STATEMENT_TIMEOUT_MS / 1000,
        'server_settings': {
            'statement_timeout': str(STATEMENT_TIMEOUT_MS),
            'application_name': 'kikwetu'
        }
    }

    query = parse_qs(urlparse(db_url).query)
    if 'ssl' in query and 'sslmode' not in query:
        options['ssl'] = query['ssl'][0]

    return options

@backoff.on_exception(backoff.expo, TRANSIENT_ERRORS, max_tries=5)
async def ensure_database(db_url: str) -> None:
    """Create the marketplace database through the ``postgres`` maintenance DB.

    Does nothing when the URL already points at ``postgres``.
    """
    parsed = urlparse(db_url)
    name = parsed.path.strip('/') or 'postgres'
    if name == 'postgres':
        return

    conn = await asyncpg.connect(urlunparse(parsed._replace(path='/postgres')))
    try:
        found = await conn.fetchval('SELECT 1 FROM pg_database WHERE datname = $1', name)
        if not found:
            # Identifiers cannot be bound as parameters
            await conn.execute(f'CREATE DATABASE "{name}"')
            logger.info(f"Created database {name}")
    finally:
        await conn.close()

@backoff.on_exception(backoff.expo, TRANSIENT_ERRORS, max_tries=5)
async def init_db(db_url: Optional[str] = None) -> None:
    """Open the shared pool and apply schema migrations.

    Args:
        db_url: Connection URL; defaults to the ``db_url`` setting.

    Raises:
        ValueError: If no database URL is configured
        DatabaseSchemaError: If the schema cannot be migrated
    """
    global _pool

    # Imported lazily so the database package can load without settings.conf
    from config import settings_conf

    url = db_url or settings_conf.get('db_url')
    if not url:
        raise ValueError("Database URL not provided")

    await ensure_database(url)

    pool = await asyncpg.create_pool(url, **_pool_options(url))
    try:
        await SchemaManager(pool).initialize()
    except Exception as e:
        logger.error(f"Schema setup failed, closing pool: {e}")
        await pool.close()
        raise

    _pool = pool
    logger.info("Database pool ready")

async def get_pool() -> asyncpg.Pool:
    """Return the shared pool, initializing it on first use.

    Raises:
        DatabaseNotInitializedError: If the pool could not be opened
    """
    if _pool is None:
        await init_db()
    if _pool is None:
        raise DatabaseNotInitializedError("Failed to initialize database pool")
    return _pool

async def close() -> None:
    """Close the shared pool if it is open."""
    global _pool

    pool, _pool = _pool, None
    if pool is not None:
        await pool.close()

__all__ = [
    'init_db',
    'get_pool',
    'close',
    'ensure_database',
    'DatabaseError',
    'DatabaseSchemaError',
    'DatabaseNotInitializedError'
]
