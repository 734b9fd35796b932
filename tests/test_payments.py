"""Tests for the composed payment initiation flow."""

import re
import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from payments import (
    PaymentManager,
    PaymentMethod,
    PaystackGateway,
    TransactionLedger,
    GatewayResult,
    FailureStage,
    DiscountType,
    PersistenceError,
    NotFoundError
)
from payments.discounts import DiscountResolution, DiscountRejection

USER_ID = str(uuid.uuid4())
LISTING_ID = uuid.uuid4()

def fake_gateway(result=None):
    gateway = MagicMock()
    gateway.requests = []

    async def initialize(request):
        gateway.requests.append(request)
        return result or GatewayResult.success(
            reference=request.reference,
            authorization_url='https://checkout.example/abc'
        )

    gateway.initialize = AsyncMock(side_effect=initialize)
    gateway.refund = AsyncMock(return_value=GatewayResult.success('ref'))
    return gateway

def fake_ledger():
    ledger = MagicMock()
    ledger.find_pending_for_listing = AsyncMock(return_value=None)
    ledger.create_pending = AsyncMock(side_effect=lambda **fields: {'id': uuid.uuid4(), 'status': 'pending', **fields})
    return ledger

def fake_discounts(resolution=None):
    discounts = MagicMock()
    discounts.resolve_id = AsyncMock(return_value=resolution)
    return discounts

def fake_subscriptions(price='200'):
    subscriptions = MagicMock()
    subscriptions.get_plan = AsyncMock(return_value={'id': 'premium', 'price': Decimal(price)})
    return subscriptions

def manager(pool, gateway, ledger=None, discounts=None, subscriptions=None, method=PaymentMethod.PAYSTACK):
    return PaymentManager(
        {method: gateway},
        pool,
        ledger=ledger or fake_ledger(),
        discounts=discounts or fake_discounts(),
        subscriptions=subscriptions or fake_subscriptions(),
        reference_prefix='kikwetu',
        currency='KES'
    )

@pytest.mark.asyncio
async def test_listing_payment_end_to_end(pool, conn):
    """150.00 KES with no discount: gateway gets 15000 and one pending row is written."""
    session = MagicMock()
    session.headers = {}
    response = MagicMock(status_code=200)
    response.json.return_value = {
        'status': True,
        'data': {'authorization_url': 'https://checkout.paystack.com/x', 'access_code': 'x'}
    }
    session.request.return_value = response
    gateway = PaystackGateway('sk_test', 'http://localhost/cb', session=session)

    conn.fetchval.return_value = USER_ID
    conn.fetchrow.side_effect = [
        None,
        {'id': uuid.uuid4(), 'status': 'pending', 'reference': 'set-below'}
    ]
    payments = PaymentManager(
        {PaymentMethod.PAYSTACK: gateway},
        pool,
        ledger=TransactionLedger(pool),
        discounts=fake_discounts(),
        subscriptions=fake_subscriptions(),
        reference_prefix='kikwetu',
        currency='KES'
    )

    result = await payments.initiate(
        USER_ID, 'paystack', amount='150.00', listing_id=LISTING_ID, email='buyer@example.com'
    )

    assert result.success
    assert result.authorization_url == 'https://checkout.paystack.com/x'
    assert re.match(rf'^kikwetu_{USER_ID}_\d+_[a-z0-9]{{6}}$', result.reference)

    assert session.request.call_args.kwargs['json']['amount'] == 15000

    insert_calls = [call for call in conn.fetchrow.call_args_list if 'INSERT INTO transactions' in call.args[0]]
    assert len(insert_calls) == 1
    query, *args = insert_calls[0].args
    assert "'pending'" in query
    assert args[1] == Decimal('150.00')
    assert args[4] == result.reference

@pytest.mark.asyncio
async def test_plan_payment_with_percentage_discount(pool):
    """A 15% code on a 200 plan charges 170.00."""
    gateway = fake_gateway()
    ledger = fake_ledger()
    resolution = DiscountResolution(ok=True, type=DiscountType.PERCENTAGE_DISCOUNT, value=Decimal('15'), code_id=7)
    payments = manager(pool, gateway, ledger=ledger, discounts=fake_discounts(resolution))

    result = await payments.initiate(
        USER_ID, 'paystack', plan_id='premium', email='buyer@example.com', discount_code_id=7
    )

    assert result.success
    assert gateway.requests[0].amount == Decimal('170.00')
    fields = ledger.create_pending.call_args.kwargs
    assert fields['amount'] == Decimal('170.00')
    assert fields['discount_code_id'] == 7
    assert fields['plan_id'] == 'premium'
    assert fields['listing_id'] is None

@pytest.mark.asyncio
async def test_rejected_discount_stops_before_gateway(pool):
    gateway = fake_gateway()
    payments = manager(
        pool, gateway,
        discounts=fake_discounts(DiscountResolution.rejected(DiscountRejection.EXPIRED))
    )

    result = await payments.initiate(USER_ID, 'paystack', plan_id='premium', email='a@b.co', discount_code_id=7)

    assert not result.success
    assert result.error_type == 'validation'
    assert result.error == "Discount code has expired."
    gateway.initialize.assert_not_called()

@pytest.mark.asyncio
async def test_full_discount_leaves_nothing_to_pay(pool):
    gateway = fake_gateway()
    resolution = DiscountResolution(ok=True, type=DiscountType.PERCENTAGE_DISCOUNT, value=Decimal('100'), code_id=1)
    payments = manager(pool, gateway, discounts=fake_discounts(resolution))

    result = await payments.initiate(USER_ID, 'paystack', plan_id='premium', email='a@b.co', discount_code_id=1)

    assert not result.success
    assert result.error_type == 'validation'
    gateway.initialize.assert_not_called()

@pytest.mark.asyncio
async def test_gateway_failure_writes_nothing(pool, conn):
    conn.fetchval.return_value = USER_ID
    gateway = fake_gateway(GatewayResult.failure('ref', 'Failed to connect to Paystack', FailureStage.NETWORK))
    ledger = fake_ledger()
    payments = manager(pool, gateway, ledger=ledger)

    result = await payments.initiate(USER_ID, 'paystack', amount='50', listing_id=LISTING_ID, email='a@b.co')

    assert not result.success
    assert result.error_type == 'gateway'
    assert result.stage == FailureStage.NETWORK
    ledger.create_pending.assert_not_called()

@pytest.mark.asyncio
async def test_ledger_failure_reverses_gateway(pool, conn):
    conn.fetchval.return_value = USER_ID
    gateway = fake_gateway()
    ledger = fake_ledger()
    ledger.create_pending.side_effect = PersistenceError('insert failed')
    payments = manager(pool, gateway, ledger=ledger)

    result = await payments.initiate(USER_ID, 'paystack', amount='50', listing_id=LISTING_ID, email='a@b.co')

    assert not result.success
    assert result.error_type == 'persistence'
    assert result.stage == FailureStage.PERSISTENCE
    assert result.reversed
    gateway.refund.assert_awaited_once_with(result.reference, Decimal('50'))

@pytest.mark.asyncio
async def test_cannot_pay_for_someone_elses_listing(pool, conn):
    conn.fetchval.return_value = str(uuid.uuid4())
    gateway = fake_gateway()
    payments = manager(pool, gateway)

    result = await payments.initiate(USER_ID, 'paystack', amount='50', listing_id=LISTING_ID, email='a@b.co')

    assert result.error_type == 'auth'
    gateway.initialize.assert_not_called()

@pytest.mark.asyncio
async def test_missing_listing(pool, conn):
    conn.fetchval.return_value = None
    payments = manager(pool, fake_gateway())

    result = await payments.initiate(USER_ID, 'paystack', amount='50', listing_id=LISTING_ID, email='a@b.co')

    assert result.error_type == 'not_found'

@pytest.mark.asyncio
async def test_second_pending_payment_for_listing_conflicts(pool, conn):
    conn.fetchval.return_value = USER_ID
    ledger = fake_ledger()
    ledger.find_pending_for_listing.return_value = {'id': uuid.uuid4(), 'status': 'pending'}
    gateway = fake_gateway()
    payments = manager(pool, gateway, ledger=ledger)

    result = await payments.initiate(USER_ID, 'paystack', amount='50', listing_id=LISTING_ID, email='a@b.co')

    assert result.error_type == 'conflict'
    gateway.initialize.assert_not_called()

@pytest.mark.asyncio
@pytest.mark.parametrize('kwargs', [
    {'listing_id': LISTING_ID, 'plan_id': 'premium'},
    {}
])
async def test_exactly_one_target_required(pool, kwargs):
    payments = manager(pool, fake_gateway())

    result = await payments.initiate(USER_ID, 'paystack', amount='50', email='a@b.co', **kwargs)

    assert result.error_type == 'validation'

@pytest.mark.asyncio
async def test_unknown_method(pool):
    payments = manager(pool, fake_gateway())

    result = await payments.initiate(USER_ID, 'bitcoin', plan_id='premium')

    assert result.error_type == 'validation'
    assert 'bitcoin' in result.error

@pytest.mark.asyncio
async def test_unknown_plan(pool):
    subscriptions = fake_subscriptions()
    subscriptions.get_plan.side_effect = NotFoundError("Plan 'gold' not found")
    payments = manager(pool, fake_gateway(), subscriptions=subscriptions)

    result = await payments.initiate(USER_ID, 'paystack', plan_id='gold', email='a@b.co')

    assert result.error_type == 'not_found'
