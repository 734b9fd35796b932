"""Tests for the transaction ledger."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from payments import (
    TransactionLedger,
    TransactionStatus,
    ValidationError,
    NotFoundError,
    PersistenceError
)

USER_ID = str(uuid.uuid4())
LISTING_ID = uuid.uuid4()

@pytest.mark.asyncio
async def test_create_pending_writes_one_row(pool, conn):
    row = {'id': uuid.uuid4(), 'status': 'pending', 'reference': 'kikwetu_u_1_abcdef'}
    conn.fetchrow.return_value = row
    ledger = TransactionLedger(pool)

    result = await ledger.create_pending(
        user_id=USER_ID,
        amount=Decimal('150.00'),
        payment_method='paystack',
        reference='kikwetu_u_1_abcdef',
        listing_id=LISTING_ID
    )

    assert result == row
    assert conn.fetchrow.await_count == 1
    query, *args = conn.fetchrow.call_args.args
    assert 'INSERT INTO transactions' in query
    assert "'pending'" in query
    assert args[:5] == [USER_ID, Decimal('150.00'), 'KES', 'paystack', 'kikwetu_u_1_abcdef']
    assert args[5] == LISTING_ID

@pytest.mark.asyncio
@pytest.mark.parametrize('listing_id, plan_id', [(None, None), (LISTING_ID, 'premium')])
async def test_create_pending_needs_exactly_one_target(pool, conn, listing_id, plan_id):
    ledger = TransactionLedger(pool)

    with pytest.raises(ValidationError):
        await ledger.create_pending(
            user_id=USER_ID,
            amount=Decimal('10'),
            payment_method='mpesa',
            reference='ref',
            listing_id=listing_id,
            plan_id=plan_id
        )
    conn.fetchrow.assert_not_called()

@pytest.mark.asyncio
async def test_create_pending_wraps_insert_failure(pool, conn):
    conn.fetchrow.side_effect = RuntimeError('duplicate key value violates unique constraint')
    ledger = TransactionLedger(pool)

    with pytest.raises(PersistenceError):
        await ledger.create_pending(
            user_id=USER_ID,
            amount=Decimal('10'),
            payment_method='mpesa',
            reference='ref',
            plan_id='premium'
        )

@pytest.mark.asyncio
async def test_get_status(pool, conn):
    conn.fetchval.return_value = 'completed'

    status = await TransactionLedger(pool).get_status(uuid.uuid4())

    assert status == TransactionStatus.COMPLETED

@pytest.mark.asyncio
async def test_get_status_missing(pool, conn):
    conn.fetchval.return_value = None

    with pytest.raises(NotFoundError):
        await TransactionLedger(pool).get_status(uuid.uuid4())

@pytest.mark.asyncio
async def test_mark_terminal_only_updates_pending_rows(pool, conn):
    transaction_id = uuid.uuid4()
    conn.fetchrow.return_value = {'id': transaction_id, 'status': 'completed'}

    row = await TransactionLedger(pool).mark_terminal(
        TransactionStatus.COMPLETED,
        reference='ref',
        receipt_number='QK12345'
    )

    assert row['id'] == transaction_id
    query, status, key, receipt = conn.fetchrow.call_args.args
    assert "WHERE reference = $2" in query
    assert "AND status = 'pending'" in query
    assert (status, key, receipt) == ('completed', 'ref', 'QK12345')

@pytest.mark.asyncio
async def test_mark_terminal_returns_none_when_already_settled(pool, conn):
    conn.fetchrow.return_value = None

    row = await TransactionLedger(pool).mark_terminal(
        TransactionStatus.FAILED,
        psp_transaction_id='ws_CO_1'
    )

    assert row is None
    assert "WHERE psp_transaction_id = $2" in conn.fetchrow.call_args.args[0]

@pytest.mark.asyncio
async def test_mark_terminal_rejects_pending(pool, conn):
    with pytest.raises(ValidationError):
        await TransactionLedger(pool).mark_terminal(TransactionStatus.PENDING, reference='ref')

@pytest.mark.asyncio
async def test_mark_terminal_needs_a_key(pool, conn):
    with pytest.raises(ValidationError):
        await TransactionLedger(pool).mark_terminal(TransactionStatus.COMPLETED)

@pytest.mark.asyncio
async def test_list_for_user_pages_newest_first(pool, conn):
    conn.fetchval.return_value = 25
    conn.fetch.return_value = [{'id': uuid.uuid4(), 'listing_title': 'Toyota Vitz'}]

    result = await TransactionLedger(pool).list_for_user(USER_ID, page=2)

    assert result['total_pages'] == 3
    assert result['current_page'] == 2
    assert result['transactions'][0]['listing_title'] == 'Toyota Vitz'
    query, user_id, start, end, limit, offset = conn.fetch.call_args.args
    assert 'ORDER BY t.created_at DESC' in query
    assert (user_id, start, end, limit, offset) == (USER_ID, None, None, 12, 12)

@pytest.mark.asyncio
async def test_list_for_user_date_range(pool, conn):
    conn.fetchval.return_value = 0
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    end = datetime(2026, 2, 1, tzinfo=timezone.utc)

    result = await TransactionLedger(pool).list_for_user(USER_ID, start=start, end=end)

    assert result == {'transactions': [], 'total_pages': 0, 'current_page': 1}
    assert conn.fetchval.call_args.args[1:] == (USER_ID, start, end)
