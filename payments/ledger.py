"""Transaction ledger.

One row per payment attempt. Rows are created ``pending`` and moved to a
terminal status exactly once by a conditional update.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from database import get_pool

from .exceptions import ValidationError, NotFoundError, PersistenceError
from .models import TransactionStatus, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

class TransactionLedger:
    """Reads and writes payment transaction rows."""

    def __init__(self, pool=None):
        """Initialize transaction ledger.

        Args:
            pool: Optional database pool. If not provided, will get from database module.
        """
        self.pool = pool

    async def ensure_pool(self):
        """Ensure database pool is available."""
        if not self.pool:
            self.pool = await get_pool()

    async def create_pending(
        self,
        user_id: str,
        amount: Decimal,
        payment_method: str,
        reference: str,
        listing_id: Optional[UUID] = None,
        plan_id: Optional[str] = None,
        discount_code_id: Optional[int] = None,
        currency: str = 'KES',
        email: Optional[str] = None,
        phone_number: Optional[str] = None,
        psp_transaction_id: Optional[str] = None,
        merchant_request_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Write a single pending transaction row.

        Returns:
            The inserted row

        Raises:
            ValidationError: If neither or both of listing_id and plan_id are given
            PersistenceError: If the insert fails
        """
        if (listing_id is None) == (plan_id is None):
            raise ValidationError("Exactly one of listing_id or plan_id is required")

        await self.ensure_pool()

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    '''
                    INSERT INTO transactions (
                        user_id, amount, currency, status, payment_method,
                        reference, listing_id, plan_id, discount_code_id,
                        email, phone_number, psp_transaction_id, merchant_request_id
                    ) VALUES ($1, $2, $3, 'pending', $4, $5, $6, $7, $8, $9, $10, $11, $12)
                    RETURNING *
                    ''',
                    user_id,
                    amount,
                    currency,
                    payment_method,
                    reference,
                    listing_id,
                    plan_id,
                    discount_code_id,
                    email,
                    phone_number,
                    psp_transaction_id,
                    merchant_request_id
                )
        except Exception as e:
            logger.error(f"Error writing transaction {reference}: {e}")
            raise PersistenceError(f"Failed to record transaction: {e}")

        if not row:
            raise PersistenceError("Failed to record transaction: no row returned")

        logger.info(f"Recorded pending {payment_method} transaction {row['id']} ({reference})")
        return dict(row)

    async def get_transaction(self, transaction_id: UUID) -> Dict[str, Any]:
        """Get a transaction row.

        Raises:
            NotFoundError: If no such transaction exists
        """
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                'SELECT * FROM transactions WHERE id = $1',
                transaction_id
            )

        if not row:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return dict(row)

    async def get_status(self, transaction_id: UUID) -> TransactionStatus:
        """Get the current status of a transaction.

        Raises:
            NotFoundError: If no such transaction exists
        """
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            status = await conn.fetchval(
                'SELECT status FROM transactions WHERE id = $1',
                transaction_id
            )

        if status is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return TransactionStatus(status)

    async def find_pending_for_listing(self, listing_id: UUID) -> Optional[Dict[str, Any]]:
        """Get the pending transaction for a listing, if any."""
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                '''
                SELECT * FROM transactions
                WHERE listing_id = $1 AND status = 'pending'
                ORDER BY created_at DESC
                LIMIT 1
                ''',
                listing_id
            )
        return dict(row) if row else None

    async def has_completed_payment(
        self,
        user_id: str,
        plan_id: Optional[str] = None,
        transaction_id: Optional[UUID] = None
    ) -> bool:
        """Check whether a user has a completed payment for a plan.

        When transaction_id is given only that transaction is considered.
        """
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            return bool(await conn.fetchval(
                '''
                SELECT EXISTS(
                    SELECT 1 FROM transactions
                    WHERE user_id = $1
                    AND status = 'completed'
                    AND ($2::text IS NULL OR plan_id = $2)
                    AND ($3::uuid IS NULL OR id = $3)
                )
                ''',
                user_id,
                plan_id,
                transaction_id
            ))

    async def mark_terminal(
        self,
        status: TransactionStatus,
        transaction_id: Optional[UUID] = None,
        reference: Optional[str] = None,
        psp_transaction_id: Optional[str] = None,
        receipt_number: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Move a pending transaction to a terminal status.

        The row is located by id, reference or provider transaction id, in that
        order of preference. Only a row still ``pending`` is updated.

        Returns:
            The updated row, or None when no pending row matched

        Raises:
            ValidationError: If the status is not terminal or no key is given
            PersistenceError: If the update fails
        """
        status = TransactionStatus(status)
        if status not in TERMINAL_STATUSES:
            raise ValidationError(f"{status.value} is not a terminal status")

        if transaction_id is not None:
            key_column, key = 'id', transaction_id
        elif reference:
            key_column, key = 'reference', reference
        elif psp_transaction_id:
            key_column, key = 'psp_transaction_id', psp_transaction_id
        else:
            raise ValidationError("A transaction id, reference or provider id is required")

        await self.ensure_pool()

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f'''
                    UPDATE transactions
                    SET status = $1,
                        receipt_number = COALESCE($3, receipt_number)
                    WHERE {key_column} = $2
                    AND status = 'pending'
                    RETURNING *
                    ''',
                    status.value,
                    key,
                    receipt_number
                )
        except Exception as e:
            logger.error(f"Error updating transaction {key}: {e}")
            raise PersistenceError(f"Failed to update transaction: {e}")

        if row:
            logger.info(f"Transaction {row['id']} is now {status.value}")
            return dict(row)

        logger.info(f"No pending transaction for {key_column}={key}, update skipped")
        return None

    async def find_transaction(
        self,
        reference: Optional[str] = None,
        psp_transaction_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Look up a transaction by reference or provider transaction id."""
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                '''
                SELECT * FROM transactions
                WHERE ($1::text IS NOT NULL AND reference = $1)
                OR ($2::text IS NOT NULL AND psp_transaction_id = $2)
                LIMIT 1
                ''',
                reference,
                psp_transaction_id
            )
        return dict(row) if row else None

    async def list_stale_pending(self, older_than: datetime) -> list:
        """Get pending transactions created before a cutoff."""
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''
                SELECT * FROM transactions
                WHERE status = 'pending' AND created_at < $1
                ORDER BY created_at
                ''',
                older_than
            )
        return [dict(row) for row in rows]

    async def list_for_user(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 12,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Get a page of a user's transactions, newest first.

        Each row carries the linked listing's title when there is one.

        Returns:
            Dict with transactions, total_pages and current_page
        """
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        offset = (page - 1) * limit

        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            total = await conn.fetchval(
                '''
                SELECT COUNT(*) FROM transactions
                WHERE user_id = $1
                AND ($2::timestamptz IS NULL OR created_at >= $2)
                AND ($3::timestamptz IS NULL OR created_at <= $3)
                ''',
                user_id,
                start,
                end
            )
            rows = await conn.fetch(
                '''
                SELECT t.*, l.title AS listing_title
                FROM transactions t
                LEFT JOIN listings l ON l.id = t.listing_id
                WHERE t.user_id = $1
                AND ($2::timestamptz IS NULL OR t.created_at >= $2)
                AND ($3::timestamptz IS NULL OR t.created_at <= $3)
                ORDER BY t.created_at DESC
                LIMIT $4 OFFSET $5
                ''',
                user_id,
                start,
                end,
                limit,
                offset
            )

        return {
            'transactions': [dict(row) for row in rows],
            'total_pages': (total + limit - 1) // limit,
            'current_page': page
        }

__all__ = ['TransactionLedger']
