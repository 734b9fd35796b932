"""Analytics module.

Events are recorded in the analytics_events table and, when a PostHog key
is configured, forwarded to PostHog's capture endpoint. Capturing is always
best-effort: failures are logged and reported as False, never raised.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from config import settings_conf
from database import get_pool

logger = logging.getLogger(__name__)

class AnalyticsClient:
    """Records product analytics events."""

    def __init__(self, pool=None, api_key: Optional[str] = None,
                 host: Optional[str] = None, timeout: Optional[int] = None,
                 session: Optional[requests.Session] = None):
        self.pool = pool
        self.api_key = api_key if api_key is not None else settings_conf['posthog_api_key']
        self.host = (host or settings_conf['posthog_host']).rstrip('/')
        self.timeout = timeout or settings_conf['gateway_timeout']
        self.session = session or requests.Session()

    async def ensure_pool(self):
        """Ensure database pool is available."""
        if not self.pool:
            self.pool = await get_pool()

    def _forward(self, event: str, distinct_id: str, properties: Dict[str, Any],
                 timestamp: datetime) -> None:
        response = self.session.post(
            f"{self.host}/capture/",
            json={
                'api_key': self.api_key,
                'event': event,
                'distinct_id': distinct_id,
                'properties': properties,
                'timestamp': timestamp.isoformat()
            },
            timeout=self.timeout
        )
        response.raise_for_status()

    async def capture(self, event: str, distinct_id: Optional[str] = None,
                      properties: Optional[Dict[str, Any]] = None) -> bool:
        """Record an event.

        Args:
            event: Event name, e.g. ``listing_moderated``
            distinct_id: Acting user
            properties: Event properties, must be JSON serializable

        Returns:
            True if every configured sink accepted the event
        """
        properties = properties or {}
        timestamp = datetime.now(timezone.utc)
        delivered = True

        try:
            await self.ensure_pool()
            async with self.pool.acquire() as conn:
                await conn.execute(
                    '''
                    INSERT INTO analytics_events (event, distinct_id, properties, created_at)
                    VALUES ($1, $2, $3::jsonb, $4)
                    ''',
                    event,
                    distinct_id,
                    json.dumps(properties, default=str),
                    timestamp
                )
        except Exception as e:
            logger.error(f"Failed to store analytics event {event}: {e}")
            delivered = False

        if self.api_key:
            try:
                await asyncio.to_thread(
                    self._forward, event, distinct_id or 'anonymous', properties, timestamp
                )
            except requests.exceptions.RequestException as e:
                logger.warning(f"Failed to forward analytics event {event} to PostHog: {e}")
                delivered = False

        return delivered

__all__ = ['AnalyticsClient']
