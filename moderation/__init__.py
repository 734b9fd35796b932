"""Moderation module.

Administrators approve or reject listings waiting in ``pending``. The
status change is a single conditional update; the analytics event that
follows is best-effort and never undoes the decision.
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional, Union
from uuid import UUID

from analytics import AnalyticsClient
from database import get_pool

logger = logging.getLogger(__name__)

class ModerationDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"

# Listing status each decision moves a pending listing to
DECISION_STATUS = {
    ModerationDecision.APPROVED: 'active',
    ModerationDecision.REJECTED: 'rejected'
}

class ModerationError(Exception):
    """Base exception for moderation errors."""
    pass

class InvalidDecisionError(ModerationError):
    """Raised when the requested decision is not approved or rejected."""
    pass

class ListingNotFoundError(ModerationError):
    """Raised when the listing does not exist."""
    pass

class InvalidTransitionError(ModerationError):
    """Raised when the listing is no longer pending."""

    def __init__(self, listing_id, current_status: str):
        self.current_status = current_status
        super().__init__(f"Listing {listing_id} is {current_status}, not pending")

class ModerationManager:
    """Applies moderation decisions to listings."""

    def __init__(self, pool=None, analytics: Optional[AnalyticsClient] = None):
        self.pool = pool
        self.analytics = analytics or AnalyticsClient(pool)

    async def ensure_pool(self):
        """Ensure database pool is available."""
        if not self.pool:
            self.pool = await get_pool()

    async def moderate(
        self,
        listing_id: Union[str, UUID],
        decision: Union[str, ModerationDecision],
        admin_id: str,
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """Approve or reject a pending listing.

        Args:
            listing_id: Listing to moderate
            decision: ``approved`` or ``rejected``
            admin_id: Acting administrator
            reason: Optional note, recorded with the analytics event

        Returns:
            The updated listing

        Raises:
            InvalidDecisionError: If decision is not recognised
            ListingNotFoundError: If the listing does not exist
            InvalidTransitionError: If the listing is not pending
        """
        try:
            decision = ModerationDecision(decision)
        except ValueError:
            raise InvalidDecisionError(
                f"Invalid decision {decision!r}, expected approved or rejected"
            )

        new_status = DECISION_STATUS[decision]

        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                '''
                UPDATE listings
                SET status = $2
                WHERE id = $1 AND status = 'pending'
                RETURNING *
                ''',
                listing_id,
                new_status
            )

            if not row:
                current = await conn.fetchval(
                    'SELECT status FROM listings WHERE id = $1',
                    listing_id
                )
                if current is None:
                    raise ListingNotFoundError(f"Listing {listing_id} not found")
                raise InvalidTransitionError(listing_id, current)

        logger.info(f"Admin {admin_id} {decision.value} listing {listing_id}")

        delivered = await self.analytics.capture(
            'listing_moderated',
            distinct_id=str(admin_id),
            properties={
                'listing_id': str(listing_id),
                'decision': decision.value,
                'status': new_status,
                'owner_id': str(row['user_id']),
                'reason': reason
            }
        )
        if not delivered:
            logger.warning(f"Moderation of listing {listing_id} saved but not fully recorded in analytics")

        return dict(row)

__all__ = [
    'ModerationManager',
    'ModerationDecision',
    'ModerationError',
    'InvalidDecisionError',
    'ListingNotFoundError',
    'InvalidTransitionError'
]
