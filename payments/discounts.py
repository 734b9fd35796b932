"""Discount codes: resolution, amount adjustment and admin management.

A code is usable iff it is active, not expired and under its maximum uses.
Resolution reports the first rule a code breaks, checked in the order
existence, active, expiry, max uses. Resolving a code never consumes it;
``redeem`` is called only after the payment completes.
"""

import logging
import re
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from enum import Enum
from typing import Any, Dict, List, Optional

import asyncpg
from pydantic import BaseModel

from database import get_pool

from .exceptions import ValidationError, NotFoundError, ConflictError, PersistenceError

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')
CODE_PATTERN = re.compile(r'^[A-Za-z0-9_]{3,50}$')

class DiscountType(str, Enum):
    PERCENTAGE_DISCOUNT = "PERCENTAGE_DISCOUNT"
    FIXED_AMOUNT_DISCOUNT = "FIXED_AMOUNT_DISCOUNT"
    EXTRA_LISTING_DAYS = "EXTRA_LISTING_DAYS"

class DiscountRejection(str, Enum):
    REQUIRED = "required"
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    MAX_USES_REACHED = "max_uses_reached"

REJECTION_MESSAGES = {
    DiscountRejection.REQUIRED: "Discount code is required.",
    DiscountRejection.NOT_FOUND: "Invalid discount code.",
    DiscountRejection.INACTIVE: "Discount code is not active.",
    DiscountRejection.EXPIRED: "Discount code has expired.",
    DiscountRejection.MAX_USES_REACHED: "Discount code has reached its maximum uses."
}

class DiscountResolution(BaseModel):
    ok: bool
    type: Optional[DiscountType] = None
    value: Optional[Decimal] = None
    code_id: Optional[int] = None
    reason: Optional[DiscountRejection] = None
    message: Optional[str] = None

    @classmethod
    def rejected(cls, reason: DiscountRejection) -> "DiscountResolution":
        return cls(ok=False, reason=reason, message=REJECTION_MESSAGES[reason])

def check_usable(code: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> Optional[DiscountRejection]:
    """Return the first rule a discount code row breaks, or None if usable."""
    if not code:
        return DiscountRejection.NOT_FOUND
    if not code.get('is_active'):
        return DiscountRejection.INACTIVE

    now = now or datetime.now(timezone.utc)
    expires_at = code.get('expires_at')
    if expires_at is not None and now >= expires_at:
        return DiscountRejection.EXPIRED

    max_uses = code.get('max_uses')
    if max_uses is not None and (code.get('use_count') or 0) >= max_uses:
        return DiscountRejection.MAX_USES_REACHED

    return None

def compute_adjusted_amount(amount: Any, discount_type: DiscountType, value: Any) -> Decimal:
    """Apply a discount to an amount.

    Percentage discounts take ``value`` percent off, fixed discounts subtract
    ``value``. The result is clamped at zero and rounded to cents. Extra
    listing days leave the amount unchanged.

    Raises:
        ValidationError: If the amount or value is not a valid number
    """
    try:
        amount = Decimal(str(amount))
        value = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Invalid amount or discount value: {amount!r}, {value!r}")

    if not amount.is_finite() or not value.is_finite() or value < 0:
        raise ValidationError(f"Invalid amount or discount value: {amount}, {value}")

    discount_type = DiscountType(discount_type)
    if discount_type == DiscountType.PERCENTAGE_DISCOUNT:
        if value > 100:
            raise ValidationError("Percentage discount cannot exceed 100")
        adjusted = amount - amount * value / 100
    elif discount_type == DiscountType.FIXED_AMOUNT_DISCOUNT:
        adjusted = amount - value
    else:
        adjusted = amount

    return max(Decimal('0'), adjusted).quantize(CENT, rounding=ROUND_HALF_UP)

class DiscountResolver:
    """Looks up discount codes and checks whether they can be applied."""

    def __init__(self, pool=None):
        """Initialize discount resolver.

        Args:
            pool: Optional database pool. If not provided, will get from database module.
        """
        self.pool = pool

    async def ensure_pool(self):
        """Ensure database pool is available."""
        if not self.pool:
            self.pool = await get_pool()

    async def resolve(self, code: Optional[str], now: Optional[datetime] = None) -> DiscountResolution:
        """Resolve a user-entered code.

        Returns:
            Resolution with type, value and code_id, or the first failing reason
        """
        code = (code or '').strip()
        if not code:
            return DiscountResolution.rejected(DiscountRejection.REQUIRED)

        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                'SELECT * FROM discount_codes WHERE code = $1',
                code
            )

        return self._resolution(dict(row) if row else None, now)

    async def resolve_id(self, code_id: int, now: Optional[datetime] = None) -> DiscountResolution:
        """Resolve a code by id, as submitted with a payment."""
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                'SELECT * FROM discount_codes WHERE id = $1',
                code_id
            )

        return self._resolution(dict(row) if row else None, now)

    def _resolution(self, row: Optional[Dict[str, Any]], now: Optional[datetime]) -> DiscountResolution:
        rejection = check_usable(row, now)
        if rejection:
            return DiscountResolution.rejected(rejection)
        return DiscountResolution(
            ok=True,
            type=DiscountType(row['type']),
            value=row['value'],
            code_id=row['id']
        )

    async def redeem(self, code_id: int) -> bool:
        """Count one use of a code. Called after a payment completes.

        Returns:
            True if the use was counted, False if the code is exhausted or gone
        """
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                '''
                UPDATE discount_codes
                SET use_count = use_count + 1,
                    updated_at = now()
                WHERE id = $1
                AND (max_uses IS NULL OR use_count < max_uses)
                RETURNING use_count
                ''',
                code_id
            )

        if not row:
            logger.warning(f"Discount code {code_id} could not be redeemed")
            return False
        return True

    async def extra_days(self, code_id: int) -> int:
        """Days an EXTRA_LISTING_DAYS code grants, 0 for any other code."""
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            value = await conn.fetchval(
                'SELECT value FROM discount_codes WHERE id = $1 AND type = $2',
                code_id,
                DiscountType.EXTRA_LISTING_DAYS.value
            )
        return int(value or 0)

class DiscountCodeManager:
    """Admin management of discount codes."""

    MUTABLE_FIELDS = {
        'code', 'type', 'value', 'description', 'expires_at',
        'max_uses', 'is_active', 'created_by_user_id'
    }

    def __init__(self, pool=None):
        self.pool = pool

    async def ensure_pool(self):
        """Ensure database pool is available."""
        if not self.pool:
            self.pool = await get_pool()

    def _validate(self, fields: Dict[str, Any], current: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Normalize writable fields, checking them against the stored row.

        ``current`` supplies the stored type and value when an update
        changes only one of the two.
        """
        current = current or {}

        if 'code' in fields:
            code = str(fields['code']).strip()
            if not CODE_PATTERN.match(code):
                raise ValidationError(
                    "Code must be 3-50 characters and contain only letters, numbers, and underscores"
                )
            fields['code'] = code
        if 'type' in fields:
            try:
                fields['type'] = DiscountType(fields['type']).value
            except ValueError:
                raise ValidationError(f"Invalid discount type: {fields['type']}")
        if 'value' in fields:
            try:
                value = Decimal(str(fields['value']))
            except InvalidOperation:
                raise ValidationError(f"Invalid discount value: {fields['value']}")
            if not value.is_finite():
                raise ValidationError(f"Invalid discount value: {fields['value']}")
            if value < 0:
                raise ValidationError("Discount value must not be negative")
            fields['value'] = value

        discount_type = fields.get('type', current.get('type'))
        value = fields.get('value', current.get('value'))
        if discount_type == DiscountType.PERCENTAGE_DISCOUNT.value and value is not None and value > 100:
            raise ValidationError("Percentage discount cannot exceed 100")

        if fields.get('max_uses') is not None:
            try:
                max_uses = int(fields['max_uses'])
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid max_uses: {fields['max_uses']}")
            if max_uses < 0:
                raise ValidationError("max_uses must not be negative")
            fields['max_uses'] = max_uses
        return fields

    async def list_codes(self) -> List[Dict[str, Any]]:
        """Get all discount codes, newest first."""
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            rows = await conn.fetch('SELECT * FROM discount_codes ORDER BY created_at DESC')
        return [dict(row) for row in rows]

    async def create_code(self, **fields) -> Dict[str, Any]:
        """Create a discount code.

        Raises:
            ValidationError: If a field is invalid or required fields are missing
            ConflictError: If the code already exists
            PersistenceError: If the insert fails
        """
        missing = [key for key in ('code', 'type', 'value') if fields.get(key) is None]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        fields = self._validate({k: v for k, v in fields.items() if k in self.MUTABLE_FIELDS})
        fields.setdefault('is_active', True)

        columns = list(fields)
        placeholders = ', '.join(f'${i}' for i in range(1, len(columns) + 1))

        await self.ensure_pool()

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f'''
                    INSERT INTO discount_codes ({', '.join(columns)})
                    VALUES ({placeholders})
                    RETURNING *
                    ''',
                    *fields.values()
                )
        except asyncpg.exceptions.UniqueViolationError:
            raise ConflictError("Discount code already exists")
        except Exception as e:
            logger.error(f"Error creating discount code: {e}")
            raise PersistenceError(f"Failed to create discount code: {e}")

        logger.info(f"Created discount code {row['code']} ({row['type']})")
        return dict(row)

    async def update_code(self, code_id: int, **fields) -> Dict[str, Any]:
        """Update a discount code.

        A change to only the type or only the value is checked against the
        stored counterpart, so a percentage code never ends up above 100.

        Raises:
            ValidationError: If no valid fields are given or a field is invalid
            NotFoundError: If the code does not exist
            ConflictError: If the new code collides with another
        """
        updates = {k: v for k, v in fields.items() if k in self.MUTABLE_FIELDS}
        if not updates:
            raise ValidationError("No valid fields to update")

        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                current = None
                if ('type' in updates) != ('value' in updates):
                    current = await conn.fetchrow(
                        'SELECT type, value FROM discount_codes WHERE id = $1 FOR UPDATE',
                        code_id
                    )
                    if not current:
                        raise NotFoundError(f"Discount code {code_id} not found")

                updates = self._validate(updates, dict(current) if current else None)
                assignments = ', '.join(
                    f"{column} = ${i}" for i, column in enumerate(updates, start=2)
                )

                try:
                    row = await conn.fetchrow(
                        f'''
                        UPDATE discount_codes
                        SET {assignments}, updated_at = now()
                        WHERE id = $1
                        RETURNING *
                        ''',
                        code_id,
                        *updates.values()
                    )
                except asyncpg.exceptions.UniqueViolationError:
                    raise ConflictError("Discount code already exists")
                except Exception as e:
                    logger.error(f"Error updating discount code {code_id}: {e}")
                    raise PersistenceError(f"Failed to update discount code: {e}")

        if not row:
            raise NotFoundError(f"Discount code {code_id} not found")
        return dict(row)

__all__ = [
    'DiscountType',
    'DiscountRejection',
    'DiscountResolution',
    'DiscountResolver',
    'DiscountCodeManager',
    'check_usable',
    'compute_adjusted_amount'
]
