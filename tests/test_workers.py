"""Tests for the maintenance worker."""

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest

from payments import PaymentMethod, TransactionStatus, ValidationError
from payments.exceptions import GatewayConnectionError
from workers.maintenance import reconcile_stale_transactions, expire_listings

def stale(method='paystack', **overrides):
    row = {
        'id': uuid.uuid4(),
        'reference': f"kikwetu_u_{uuid.uuid4().hex[:6]}",
        'payment_method': method,
        'psp_transaction_id': None
    }
    row.update(overrides)
    return row

@pytest.fixture
def ledger():
    ledger = MagicMock()
    ledger.list_stale_pending = AsyncMock(return_value=[])
    return ledger

@pytest.fixture
def processor():
    processor = MagicMock()
    processor.settle = AsyncMock(side_effect=lambda status, **keys: {'status': status.value, **keys})
    return processor

@pytest.fixture
def gateway():
    gateway = MagicMock()
    gateway.verify = AsyncMock(return_value=TransactionStatus.PENDING)
    return gateway

@pytest.mark.asyncio
async def test_lost_webhook_is_completed(ledger, processor, gateway):
    row = stale()
    ledger.list_stale_pending.return_value = [row]
    gateway.verify.return_value = TransactionStatus.COMPLETED

    settled = await reconcile_stale_transactions(ledger, processor, {PaymentMethod.PAYSTACK: gateway}, ttl_minutes=60)

    assert settled == 1
    processor.settle.assert_awaited_once_with(TransactionStatus.COMPLETED, transaction_id=row['id'])

@pytest.mark.asyncio
async def test_still_pending_is_cancelled(ledger, processor, gateway):
    row = stale()
    ledger.list_stale_pending.return_value = [row]

    await reconcile_stale_transactions(ledger, processor, {PaymentMethod.PAYSTACK: gateway}, ttl_minutes=60)

    processor.settle.assert_awaited_once_with(TransactionStatus.CANCELLED, transaction_id=row['id'])

@pytest.mark.asyncio
async def test_unverifiable_is_cancelled(ledger, processor, gateway):
    ledger.list_stale_pending.return_value = [stale('mpesa')]
    gateway.verify.side_effect = ValidationError('No checkout request id to query')

    await reconcile_stale_transactions(ledger, processor, {PaymentMethod.MPESA: gateway}, ttl_minutes=60)

    assert processor.settle.call_args.args[0] == TransactionStatus.CANCELLED

@pytest.mark.asyncio
async def test_unreachable_provider_is_retried_later(ledger, processor, gateway):
    ledger.list_stale_pending.return_value = [stale(), stale()]
    gateway.verify.side_effect = [GatewayConnectionError('timed out'), TransactionStatus.FAILED]

    settled = await reconcile_stale_transactions(ledger, processor, {PaymentMethod.PAYSTACK: gateway}, ttl_minutes=60)

    assert settled == 1
    assert processor.settle.call_args.args[0] == TransactionStatus.FAILED

@pytest.mark.asyncio
async def test_already_settled_rows_are_not_counted(ledger, processor, gateway):
    ledger.list_stale_pending.return_value = [stale()]
    processor.settle = AsyncMock(return_value=None)

    assert await reconcile_stale_transactions(ledger, processor, {PaymentMethod.PAYSTACK: gateway}, ttl_minutes=60) == 0

@pytest.mark.asyncio
async def test_expire_listings_swallows_errors():
    manager = MagicMock()
    manager.expire_listings = AsyncMock(side_effect=RuntimeError('db down'))

    assert await expire_listings(manager) == 0

    manager.expire_listings = AsyncMock(return_value=4)
    assert await expire_listings(manager) == 4
