"""Listings module for managing marketplace listings.

This module provides functionality for:
- Publishing a listing from a completed draft
- Reading and paginating active listings
- Owner edits and deletion
- Keeping the owner's listing counter in step
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Union, Any

from config import settings_conf
from database import get_pool
from media import is_buffered

from .exceptions import (
    ListingError,
    ListingNotFoundError,
    ListingPermissionError,
    InvalidListingError,
    DraftValidationError,
    InvalidCategoryError,
    InvalidSubcategoryError,
    InvalidPlanError,
    PaymentRequiredError
)
from .fields import sanitize_listing, slugify
from .draft import ListingDraft, DraftStep

logger = logging.getLogger(__name__)

# User-mutable fields for listings
MUTABLE_FIELDS = {
    'title',
    'description',
    'price',
    'category_id',
    'subcategory_id',
    'condition',
    'location',
    'latitude',
    'longitude',
    'negotiable',
    'tags',
    'images'
}

# System-managed fields (not directly mutable by users)
SYSTEM_FIELDS = {
    'id',
    'user_id',
    'slug',
    'plan_id',
    'status',
    'payment_status',
    'featured',
    'views',
    'expires_at',
    'created_at',
    'updated_at'
}

LIST_COLUMNS = '''
    l.id, l.title, l.slug, l.price, l.location, l.latitude, l.longitude,
    l.condition, l.status, l.featured, l.images, l.created_at,
    c.name AS category_name
'''

class ListingManager:
    """Manager class for handling listing operations."""

    def __init__(self, pool=None, max_images: Optional[int] = None,
                 duration_days: Optional[int] = None):
        """Initialize the listing manager.

        Args:
            pool: Optional database pool. If not provided, will get from database module.
            max_images: Maximum images per listing, defaults to settings
            duration_days: Listing lifetime for plans without one, defaults to settings
        """
        self.pool = pool
        self.max_images = max_images or settings_conf['max_listing_images']
        self.duration_days = duration_days or settings_conf['listing_duration_days']

    async def ensure_pool(self):
        """Ensure database pool is available."""
        if not self.pool:
            self.pool = await get_pool()

    def _check_images(self, images: List[str]) -> None:
        if not images:
            raise InvalidListingError({'images': "at least one image is required"})
        if len(images) > self.max_images:
            raise InvalidListingError({'images': f"at most {self.max_images} images are allowed"})
        if any(is_buffered(url) for url in images):
            raise InvalidListingError({'images': "all media must be uploaded before publishing"})

    async def _check_category(self, conn, category_id: int, subcategory_id: Optional[int]) -> None:
        exists = await conn.fetchval(
            'SELECT EXISTS(SELECT 1 FROM categories WHERE id = $1)',
            category_id
        )
        if not exists:
            raise InvalidCategoryError(f"Category '{category_id}' not found.")

        if subcategory_id is not None:
            parent = await conn.fetchval(
                'SELECT category_id FROM subcategories WHERE id = $1',
                subcategory_id
            )
            if parent != category_id:
                raise InvalidSubcategoryError(
                    f"Subcategory '{subcategory_id}' does not belong to category '{category_id}'."
                )

    async def _payment_status(self, conn, user_id: str, plan: Dict[str, Any],
                              transaction_id: Optional[uuid.UUID]) -> str:
        """Decide the payment status of a new listing.

        Free plans publish unpaid. Paid plans need either the completed, unused
        transaction named by transaction_id, which is claimed later inside the
        insert transaction, or an active subscription to the plan.

        Raises:
            PaymentRequiredError: If a paid plan has no subscription behind it
        """
        if plan['price'] <= 0:
            return 'unpaid'
        if transaction_id is not None:
            return 'paid'

        subscribed = await conn.fetchval(
            '''
            SELECT EXISTS(
                SELECT 1 FROM subscriptions
                WHERE user_id = $1
                AND plan_id = $2
                AND status = 'active'
                AND (ends_at IS NULL OR ends_at > now())
            )
            ''',
            user_id,
            plan['id']
        )
        if not subscribed:
            raise PaymentRequiredError(
                f"Plan '{plan['id']}' requires a completed payment before publishing"
            )
        return 'paid'

    async def _claim_payment(self, conn, listing_id: uuid.UUID, user_id: str,
                             plan_id: str, transaction_id: uuid.UUID) -> int:
        """Attach a completed payment to the new listing.

        The guarded UPDATE takes the row lock, so of two publishes racing for
        the same transaction only one gets a row back.

        Returns:
            Extra listing days granted by the payment's discount code

        Raises:
            PaymentRequiredError: If the transaction is not a completed, unused
                payment by this user for this plan
        """
        claimed = await conn.fetchrow(
            '''
            UPDATE transactions t
            SET listing_id = $1, updated_at = now()
            WHERE t.id = $2
            AND t.user_id = $3
            AND t.plan_id = $4
            AND t.status = 'completed'
            AND t.listing_id IS NULL
            RETURNING t.id, (
                SELECT d.value FROM discount_codes d
                WHERE d.id = t.discount_code_id
                AND d.type = 'EXTRA_LISTING_DAYS'
            ) AS extra_days
            ''',
            listing_id,
            transaction_id,
            user_id,
            plan_id
        )
        if claimed is None:
            raise PaymentRequiredError(
                f"Transaction {transaction_id} is not an unused completed payment for plan '{plan_id}'"
            )
        return int(claimed['extra_days'] or 0)

    async def publish(
        self,
        user_id: str,
        fields: Union[Dict[str, Any], ListingDraft],
        transaction_id: Optional[uuid.UUID] = None
    ) -> Dict[str, Any]:
        """Create a listing from draft fields.

        The listing starts ``pending`` until moderated. A transaction_id is
        claimed in the same database transaction as the insert, so a payment
        pays for one listing only and a failed claim leaves no listing behind.
        The owner's listing counter is bumped afterwards; a counter failure
        is logged only.

        Args:
            user_id: Owner
            fields: Draft fields or a ListingDraft
            transaction_id: Completed payment for a paid plan

        Returns:
            The created listing

        Raises:
            InvalidListingError: If fields fail validation
            InvalidCategoryError: If the category does not exist
            InvalidSubcategoryError: If the subcategory does not match the category
            InvalidPlanError: If the plan does not exist
            PaymentRequiredError: If a paid plan has not been paid for,
                or its payment was already used
            ListingError: If the insert fails
        """
        if isinstance(fields, ListingDraft):
            fields = fields.listing_fields()

        data = sanitize_listing(fields)
        self._check_images(data['images'])

        listing_id = uuid.uuid4()
        slug = f"{slugify(data['title'])}-{str(listing_id)[-8:]}"

        await self.ensure_pool()

        try:
            async with self.pool.acquire() as conn:
                await self._check_category(conn, data['category_id'], data['subcategory_id'])

                plan = await conn.fetchrow(
                    'SELECT id, price, duration_days FROM plans WHERE id = $1 AND is_active',
                    data['plan_id']
                )
                if not plan:
                    raise InvalidPlanError(f"Plan '{data['plan_id']}' not found.")

                payment_status = await self._payment_status(conn, user_id, dict(plan), transaction_id)
                expires_at = datetime.now(timezone.utc) + timedelta(
                    days=plan['duration_days'] or self.duration_days
                )

                async with conn.transaction():
                    row = await conn.fetchrow(
                        '''
                        INSERT INTO listings (
                            id, user_id, title, slug, description, price,
                            category_id, subcategory_id, condition, location,
                            latitude, longitude, images, tags, negotiable,
                            plan_id, status, payment_status, expires_at
                        ) VALUES (
                            $1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
                            $11, $12, $13, $14, $15, $16, 'pending', $17, $18
                        )
                        RETURNING *
                        ''',
                        listing_id,
                        user_id,
                        data['title'],
                        slug,
                        data['description'],
                        data['price'],
                        data['category_id'],
                        data['subcategory_id'],
                        data['condition'],
                        data['location'],
                        data['latitude'],
                        data['longitude'],
                        data['images'],
                        data['tags'],
                        data['negotiable'],
                        data['plan_id'],
                        payment_status,
                        expires_at
                    )

                    if transaction_id is not None and payment_status == 'paid':
                        extra_days = await self._claim_payment(
                            conn, listing_id, user_id, plan['id'], transaction_id
                        )
                        if extra_days:
                            row = await conn.fetchrow(
                                '''
                                UPDATE listings
                                SET expires_at = expires_at + make_interval(days => $2)
                                WHERE id = $1
                                RETURNING *
                                ''',
                                listing_id,
                                extra_days
                            )
                            logger.info(f"Listing {listing_id} granted {extra_days} extra days")

        except ListingError:
            raise
        except Exception as e:
            logger.error(f"Error creating listing: {e}")
            raise ListingError(f"Failed to create listing: {e}")

        logger.info(f"User {user_id} published listing {listing_id} ({payment_status})")
        await self._adjust_listing_count(user_id, 1)
        return dict(row)

    async def _adjust_listing_count(self, user_id: str, delta: int) -> None:
        """Best-effort update of the owner's listing counter, floored at zero."""
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    '''
                    UPDATE profiles
                    SET listing_count = GREATEST(listing_count + $2, 0),
                        updated_at = now()
                    WHERE id = $1
                    ''',
                    user_id,
                    delta
                )
        except Exception as e:
            logger.error(f"Error updating listing count for user {user_id}: {e}")

    async def get_listing(self, listing_id: Union[str, uuid.UUID]) -> Dict[str, Any]:
        """Get a listing by id.

        Raises:
            ListingNotFoundError: If listing doesn't exist
        """
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                '''
                SELECT l.*, c.name AS category_name
                FROM listings l
                LEFT JOIN categories c ON c.id = l.category_id
                WHERE l.id = $1
                ''',
                listing_id
            )

        if not row:
            raise ListingNotFoundError(f"Listing {listing_id} not found")
        return dict(row)

    async def list_listings(self, page: int = 1, limit: int = 8) -> Dict[str, Any]:
        """Get a page of active listings, newest first.

        Returns:
            Dict with listings, total_count, has_more, current_page and limit
        """
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        offset = (page - 1) * limit

        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            total = await conn.fetchval(
                "SELECT COUNT(*) FROM listings WHERE status = 'active'"
            )
            rows = await conn.fetch(
                f'''
                SELECT {LIST_COLUMNS}
                FROM listings l
                LEFT JOIN categories c ON c.id = l.category_id
                WHERE l.status = 'active'
                ORDER BY l.featured DESC, l.created_at DESC
                LIMIT $1 OFFSET $2
                ''',
                limit,
                offset
            )

        listings = [dict(row) for row in rows]
        return {
            'listings': listings,
            'total_count': total,
            'has_more': offset + len(listings) < total,
            'current_page': page,
            'limit': limit
        }

    async def list_categories(self) -> List[Dict[str, Any]]:
        """Get all categories ordered by name."""
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            rows = await conn.fetch('SELECT id, name, slug FROM categories ORDER BY name')
        return [dict(row) for row in rows]

    async def list_subcategories(self, category_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Get subcategories ordered by name, optionally for one category."""
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''
                SELECT id, category_id, name FROM subcategories
                WHERE $1::int8 IS NULL OR category_id = $1
                ORDER BY name
                ''',
                category_id
            )
        return [dict(row) for row in rows]

    async def get_user_listings(self, user_id: str) -> List[Dict[str, Any]]:
        """Get all of a user's listings regardless of status."""
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                'SELECT * FROM listings WHERE user_id = $1 ORDER BY created_at DESC',
                user_id
            )
        return [dict(row) for row in rows]

    async def _check_owner(self, conn, listing_id, user_id: str) -> None:
        owner = await conn.fetchval('SELECT user_id FROM listings WHERE id = $1', listing_id)
        if owner is None:
            raise ListingNotFoundError(f"Listing {listing_id} not found")
        if str(owner) != str(user_id):
            raise ListingPermissionError("You can only modify your own listings")

    async def update_listing(
        self,
        listing_id: Union[str, uuid.UUID],
        user_id: str,
        updates: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Update a listing's details.

        Args:
            listing_id: The listing UUID
            user_id: Acting user, must own the listing
            updates: Fields to change, limited to MUTABLE_FIELDS

        Returns:
            Updated listing details

        Raises:
            ListingNotFoundError: If listing doesn't exist
            ListingPermissionError: If the user does not own the listing
            InvalidListingError: If fields fail validation or are not editable
            ListingError: If the update fails
        """
        invalid_fields = set(updates) - MUTABLE_FIELDS
        if invalid_fields:
            raise InvalidListingError({field: "cannot be updated" for field in sorted(invalid_fields)})

        clean = sanitize_listing(updates, partial=True)
        if 'images' in clean:
            self._check_images(clean['images'])
        if not clean:
            raise InvalidListingError({'fields': "no fields to update"})

        await self.ensure_pool()

        try:
            async with self.pool.acquire() as conn:
                await self._check_owner(conn, listing_id, user_id)

                if 'category_id' in clean or 'subcategory_id' in clean:
                    current = await conn.fetchrow(
                        'SELECT category_id, subcategory_id FROM listings WHERE id = $1',
                        listing_id
                    )
                    await self._check_category(
                        conn,
                        clean.get('category_id', current['category_id']),
                        clean.get('subcategory_id', current['subcategory_id'])
                    )

                assignments = ', '.join(
                    f"{field} = ${i}" for i, field in enumerate(clean, start=2)
                )
                row = await conn.fetchrow(
                    f'''
                    UPDATE listings
                    SET {assignments}
                    WHERE id = $1
                    RETURNING *
                    ''',
                    listing_id,
                    *clean.values()
                )
        except ListingError:
            raise
        except Exception as e:
            logger.error(f"Error updating listing: {e}")
            raise ListingError(f"Failed to update listing: {e}")

        logger.info(f"User {user_id} updated listing {listing_id}: {', '.join(clean)}")
        return dict(row)

    async def delete_listing(self, listing_id: Union[str, uuid.UUID], user_id: str) -> None:
        """Delete a listing.

        Raises:
            ListingNotFoundError: If listing doesn't exist
            ListingPermissionError: If the user does not own the listing
        """
        await self.ensure_pool()

        try:
            async with self.pool.acquire() as conn:
                await self._check_owner(conn, listing_id, user_id)
                await conn.execute('DELETE FROM listings WHERE id = $1', listing_id)
        except ListingError:
            raise
        except Exception as e:
            logger.error(f"Error deleting listing: {e}")
            raise ListingError(f"Failed to delete listing: {e}")

        logger.info(f"User {user_id} deleted listing {listing_id}")
        await self._adjust_listing_count(user_id, -1)

    async def expire_listings(self) -> int:
        """Mark active listings past their expiry date as expired.

        Returns:
            Number of listings expired
        """
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            result = await conn.execute(
                '''
                UPDATE listings
                SET status = 'expired'
                WHERE status = 'active'
                AND expires_at IS NOT NULL
                AND expires_at <= now()
                '''
            )
        return int(result.split()[-1])

__all__ = [
    'ListingManager',
    'ListingDraft',
    'DraftStep',
    'MUTABLE_FIELDS',
    'SYSTEM_FIELDS',
    'ListingError',
    'ListingNotFoundError',
    'ListingPermissionError',
    'InvalidListingError',
    'DraftValidationError',
    'InvalidCategoryError',
    'InvalidSubcategoryError',
    'InvalidPlanError',
    'PaymentRequiredError'
]
