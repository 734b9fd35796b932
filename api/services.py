"""Service container shared by the API routers.

All managers are built once at startup around a single database pool and
stored on ``app.state.services``. Routers reach them through the
``get_services`` dependency, which tests override with fakes.
"""

from typing import Any, Dict, Optional

import requests
from fastapi import Request

from analytics import AnalyticsClient
from config import settings_conf
from listings import ListingManager
from media import MediaIngestor, StorageClient
from moderation import ModerationManager
from payments import (
    CallbackProcessor,
    DiscountCodeManager,
    DiscountResolver,
    PaymentManager,
    PostgresTransactionFeed,
    SubscriptionManager,
    TransactionLedger,
    build_gateways
)

class Services:
    """Application managers wired to one pool and one settings dict."""

    def __init__(self, pool, settings: Optional[Dict[str, Any]] = None,
                 session_factory=requests.Session):
        settings = settings or settings_conf
        self.pool = pool
        self.settings = settings

        self.gateways = build_gateways(settings, session_factory)
        self.ledger = TransactionLedger(pool)
        self.discounts = DiscountResolver(pool)
        self.discount_codes = DiscountCodeManager(pool)
        self.subscriptions = SubscriptionManager(pool)
        self.payments = PaymentManager(
            self.gateways,
            pool,
            ledger=self.ledger,
            discounts=self.discounts,
            subscriptions=self.subscriptions,
            reference_prefix=settings['reference_prefix'],
            currency=settings['currency']
        )
        self.callbacks = CallbackProcessor(
            ledger=self.ledger,
            discounts=self.discounts,
            subscriptions=self.subscriptions,
            gateways=self.gateways,
            pool=pool
        )
        self.feed = PostgresTransactionFeed(pool, self.ledger)

        self.storage = StorageClient(
            settings['storage_url'],
            settings['storage_service_key'],
            session=session_factory()
        )
        self.media = MediaIngestor(self.storage, image_quality=settings['image_quality'])

        self.analytics = AnalyticsClient(
            pool,
            api_key=settings['posthog_api_key'],
            host=settings['posthog_host'],
            timeout=settings['gateway_timeout'],
            session=session_factory()
        )
        self.listings = ListingManager(
            pool,
            max_images=settings['max_listing_images'],
            duration_days=settings['listing_duration_days']
        )
        self.moderation = ModerationManager(pool, self.analytics)

    async def close(self):
        await self.feed.close()

def get_services(request: Request) -> Services:
    """FastAPI dependency returning the app's service container."""
    return request.app.state.services

__all__ = ['Services', 'get_services']
