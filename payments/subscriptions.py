"""Plan subscriptions activated by completed payments."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from database import get_pool

from .exceptions import AuthError, ConflictError, NotFoundError, PersistenceError
from .models import TransactionStatus

logger = logging.getLogger(__name__)

class SubscriptionManager:
    """Reads plans and activates subscriptions."""

    def __init__(self, pool=None):
        """Initialize subscription manager.

        Args:
            pool: Optional database pool. If not provided, will get from database module.
        """
        self.pool = pool

    async def ensure_pool(self):
        """Ensure database pool is available."""
        if not self.pool:
            self.pool = await get_pool()

    async def list_plans(self) -> List[Dict[str, Any]]:
        """Get active plans, cheapest first."""
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                'SELECT * FROM plans WHERE is_active ORDER BY price'
            )
        return [dict(row) for row in rows]

    async def get_plan(self, plan_id: str) -> Dict[str, Any]:
        """Get a plan.

        Raises:
            NotFoundError: If the plan does not exist or is inactive
        """
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                'SELECT * FROM plans WHERE id = $1 AND is_active',
                plan_id
            )

        if not row:
            raise NotFoundError(f"Plan '{plan_id}' not found")
        return dict(row)

    async def activate(self, user_id: str, plan_id: str, transaction_id: UUID,
                       extra_days: int = 0) -> Dict[str, Any]:
        """Activate a subscription paid for by a completed transaction.

        Activating twice for the same transaction returns the existing
        subscription.

        Args:
            user_id: Paying user
            plan_id: Plan the transaction paid for
            transaction_id: Completed transaction
            extra_days: Days added on top of the plan duration, from an
                EXTRA_LISTING_DAYS discount code

        Raises:
            NotFoundError: If the transaction or plan does not exist
            AuthError: If the transaction belongs to another user
            ConflictError: If the transaction is not completed or is for another plan
            PersistenceError: If the insert fails
        """
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            txn = await conn.fetchrow(
                'SELECT user_id, plan_id, status FROM transactions WHERE id = $1',
                transaction_id
            )
            if not txn:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            if str(txn['user_id']) != str(user_id):
                raise AuthError("Transaction belongs to another user")
            if txn['status'] != TransactionStatus.COMPLETED.value:
                raise ConflictError(f"Transaction {transaction_id} is {txn['status']}, not completed")
            if txn['plan_id'] != plan_id:
                raise ConflictError(f"Transaction {transaction_id} did not pay for plan '{plan_id}'")

            plan = await conn.fetchrow('SELECT duration_days FROM plans WHERE id = $1', plan_id)
            if not plan:
                raise NotFoundError(f"Plan '{plan_id}' not found")

            ends_at = datetime.now(timezone.utc) + timedelta(
                days=plan['duration_days'] + max(0, int(extra_days or 0))
            )

            try:
                row = await conn.fetchrow(
                    '''
                    INSERT INTO subscriptions (user_id, plan_id, transaction_id, status, ends_at)
                    VALUES ($1, $2, $3, 'active', $4)
                    ON CONFLICT (transaction_id) DO NOTHING
                    RETURNING *
                    ''',
                    user_id,
                    plan_id,
                    transaction_id,
                    ends_at
                )
                if not row:
                    row = await conn.fetchrow(
                        'SELECT * FROM subscriptions WHERE transaction_id = $1',
                        transaction_id
                    )
                    logger.info(f"Subscription for transaction {transaction_id} already active")
                else:
                    logger.info(f"Activated plan '{plan_id}' for user {user_id}")
            except Exception as e:
                logger.error(f"Error activating subscription for {transaction_id}: {e}")
                raise PersistenceError(f"Failed to activate subscription: {e}")

        return dict(row)

    async def get_active(self, user_id: str) -> Optional[Dict[str, Any]]:
        """Get the user's current subscription, if any."""
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                '''
                SELECT * FROM subscriptions
                WHERE user_id = $1
                AND status = 'active'
                AND (ends_at IS NULL OR ends_at > now())
                ORDER BY starts_at DESC
                LIMIT 1
                ''',
                user_id
            )
        return dict(row) if row else None

__all__ = ['SubscriptionManager']
