"""Tests for discount code resolution and management."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import asyncpg
import pytest

from payments import (
    DiscountType,
    DiscountResolver,
    DiscountCodeManager,
    compute_adjusted_amount,
    ValidationError,
    ConflictError,
    NotFoundError
)
from payments.discounts import DiscountRejection, check_usable

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)

def code_row(**overrides):
    row = {
        'id': 7,
        'code': 'SAVE15',
        'type': 'PERCENTAGE_DISCOUNT',
        'value': Decimal('15'),
        'is_active': True,
        'expires_at': None,
        'max_uses': None,
        'use_count': 0
    }
    row.update(overrides)
    return row

def test_usable_code():
    assert check_usable(code_row(), NOW) is None

@pytest.mark.parametrize('row, reason', [
    (None, DiscountRejection.NOT_FOUND),
    (code_row(is_active=False), DiscountRejection.INACTIVE),
    (code_row(expires_at=NOW - timedelta(seconds=1)), DiscountRejection.EXPIRED),
    (code_row(expires_at=NOW), DiscountRejection.EXPIRED),
    (code_row(max_uses=5, use_count=5), DiscountRejection.MAX_USES_REACHED)
])
def test_rejection_reasons(row, reason):
    assert check_usable(row, NOW) == reason

def test_first_failing_rule_wins():
    """An inactive, expired and exhausted code is reported as inactive."""
    row = code_row(is_active=False, expires_at=NOW - timedelta(days=1), max_uses=1, use_count=1)
    assert check_usable(row, NOW) == DiscountRejection.INACTIVE

    row = code_row(expires_at=NOW - timedelta(days=1), max_uses=1, use_count=1)
    assert check_usable(row, NOW) == DiscountRejection.EXPIRED

def test_future_expiry_and_remaining_uses_are_usable():
    row = code_row(expires_at=NOW + timedelta(days=1), max_uses=5, use_count=4)
    assert check_usable(row, NOW) is None

@pytest.mark.parametrize('amount, discount_type, value, expected', [
    ('200', DiscountType.PERCENTAGE_DISCOUNT, '15', Decimal('170.00')),
    ('99.99', DiscountType.PERCENTAGE_DISCOUNT, '10', Decimal('89.99')),
    ('100', DiscountType.PERCENTAGE_DISCOUNT, '100', Decimal('0.00')),
    ('150', DiscountType.FIXED_AMOUNT_DISCOUNT, '50', Decimal('100.00')),
    ('30', DiscountType.FIXED_AMOUNT_DISCOUNT, '50', Decimal('0.00')),
    ('150', DiscountType.EXTRA_LISTING_DAYS, '7', Decimal('150.00'))
])
def test_compute_adjusted_amount(amount, discount_type, value, expected):
    assert compute_adjusted_amount(amount, discount_type, value) == expected

def test_percentage_over_100_rejected():
    with pytest.raises(ValidationError):
        compute_adjusted_amount('100', DiscountType.PERCENTAGE_DISCOUNT, '101')

@pytest.mark.asyncio
async def test_resolve_valid_code(pool, conn):
    conn.fetchrow.return_value = code_row()

    resolution = await DiscountResolver(pool).resolve('  SAVE15 ', now=NOW)

    assert resolution.ok
    assert resolution.type == DiscountType.PERCENTAGE_DISCOUNT
    assert resolution.value == Decimal('15')
    assert resolution.code_id == 7
    assert conn.fetchrow.call_args.args[1] == 'SAVE15'

@pytest.mark.asyncio
async def test_resolve_is_case_sensitive(pool, conn):
    conn.fetchrow.return_value = None

    resolution = await DiscountResolver(pool).resolve('save15', now=NOW)

    assert not resolution.ok
    assert resolution.reason == DiscountRejection.NOT_FOUND
    assert conn.fetchrow.call_args.args[1] == 'save15'

@pytest.mark.asyncio
async def test_resolve_empty_code(pool, conn):
    resolution = await DiscountResolver(pool).resolve('   ')

    assert resolution.reason == DiscountRejection.REQUIRED
    conn.fetchrow.assert_not_called()

@pytest.mark.asyncio
async def test_resolve_exhausted_code_has_message(pool, conn):
    conn.fetchrow.return_value = code_row(max_uses=1, use_count=1)

    resolution = await DiscountResolver(pool).resolve('SAVE15', now=NOW)

    assert resolution.reason == DiscountRejection.MAX_USES_REACHED
    assert resolution.message == "Discount code has reached its maximum uses."

@pytest.mark.asyncio
async def test_redeem_is_conditional(pool, conn):
    conn.fetchrow.return_value = None

    assert not await DiscountResolver(pool).redeem(7)
    assert 'use_count < max_uses' in conn.fetchrow.call_args.args[0]

@pytest.mark.asyncio
async def test_create_code_validates(pool, conn):
    manager = DiscountCodeManager(pool)

    with pytest.raises(ValidationError):
        await manager.create_code(code='x', type='PERCENTAGE_DISCOUNT', value=10)
    with pytest.raises(ValidationError):
        await manager.create_code(code='SAVE', type='PERCENTAGE_DISCOUNT', value=120)
    with pytest.raises(ValidationError):
        await manager.create_code(code='SAVE', type='BOGUS', value=1)
    with pytest.raises(ValidationError):
        await manager.create_code(code='SAVE')

@pytest.mark.asyncio
async def test_create_code_conflict(pool, conn):
    conn.fetchrow.side_effect = asyncpg.exceptions.UniqueViolationError('duplicate')

    with pytest.raises(ConflictError):
        await DiscountCodeManager(pool).create_code(code='SAVE15', type='FIXED_AMOUNT_DISCOUNT', value=50)

@pytest.mark.asyncio
async def test_update_missing_code(pool, conn):
    conn.fetchrow.return_value = None

    with pytest.raises(NotFoundError):
        await DiscountCodeManager(pool).update_code(99, is_active=False)

@pytest.mark.asyncio
@pytest.mark.parametrize('fields', [
    {'value': 'ten'},
    {'value': []},
    {'value': 'NaN'},
    {'value': 10, 'max_uses': 'lots'},
    {'value': 10, 'max_uses': -1},
])
async def test_create_code_rejects_malformed_numbers(pool, conn, fields):
    fields = {'code': 'SAVE10', 'type': 'FIXED_AMOUNT_DISCOUNT', **fields}

    with pytest.raises(ValidationError):
        await DiscountCodeManager(pool).create_code(**fields)
    conn.fetchrow.assert_not_called()

@pytest.mark.asyncio
async def test_value_only_update_checks_stored_type(pool, conn):
    conn.fetchrow.return_value = {'type': 'PERCENTAGE_DISCOUNT', 'value': Decimal('10')}

    with pytest.raises(ValidationError):
        await DiscountCodeManager(pool).update_code(7, value=150)

    assert conn.fetchrow.await_count == 1
    assert 'FOR UPDATE' in conn.fetchrow.call_args.args[0]

@pytest.mark.asyncio
async def test_type_only_update_checks_stored_value(pool, conn):
    conn.fetchrow.return_value = {'type': 'FIXED_AMOUNT_DISCOUNT', 'value': Decimal('500')}

    with pytest.raises(ValidationError):
        await DiscountCodeManager(pool).update_code(7, type='PERCENTAGE_DISCOUNT')

@pytest.mark.asyncio
async def test_value_only_update_within_limit(pool, conn):
    updated = {'id': 7, 'type': 'PERCENTAGE_DISCOUNT', 'value': Decimal('40')}
    conn.fetchrow.side_effect = [{'type': 'PERCENTAGE_DISCOUNT', 'value': Decimal('10')}, updated]

    assert await DiscountCodeManager(pool).update_code(7, value='40') == updated
    query, code_id, value = conn.fetchrow.call_args.args
    assert 'SET value = $2' in query
    assert (code_id, value) == (7, Decimal('40'))

@pytest.mark.asyncio
async def test_value_only_update_unknown_code(pool, conn):
    conn.fetchrow.return_value = None

    with pytest.raises(NotFoundError):
        await DiscountCodeManager(pool).update_code(99, value=5)

@pytest.mark.asyncio
async def test_update_with_bad_max_uses(pool, conn):
    with pytest.raises(ValidationError):
        await DiscountCodeManager(pool).update_code(7, max_uses='many')
    conn.fetchrow.assert_not_called()
