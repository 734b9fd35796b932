"""Tests for the payment gateway adapters."""

import re
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from payments import (
    PaymentRequest,
    PaystackGateway,
    MpesaGateway,
    FailureStage,
    TransactionStatus,
    ValidationError,
    generate_reference,
    to_minor_units
)
from payments.gateway import normalize_msisdn

def make_response(body, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body
    return response

def make_session(*responses):
    session = MagicMock()
    session.headers = {}
    session.request.side_effect = list(responses)
    return session

def paystack(session):
    return PaystackGateway(
        secret_key='sk_test_123',
        callback_url='http://localhost:3000/payments/callback',
        session=session
    )

def mpesa(session):
    return MpesaGateway(
        consumer_key='ck',
        consumer_secret='cs',
        short_code='174379',
        passkey='passkey',
        callback_url='https://example.com/api/payments/callback/mpesa',
        session=session
    )

@pytest.mark.parametrize('amount, expected', [
    ('100.10', 10010),
    ('99.99', 9999),
    ('150.00', 15000),
    (Decimal('150'), 15000),
    (150, 15000),
    ('0.5', 50),
    ('0.01', 1)
])
def test_to_minor_units_is_exact(amount, expected):
    assert to_minor_units(amount) == expected

@pytest.mark.parametrize('amount', ['1.234', '-5', '0', '0.00', 'abc', '', None, True])
def test_to_minor_units_rejects_bad_amounts(amount):
    with pytest.raises(ValidationError):
        to_minor_units(amount)

def test_generate_reference_format():
    reference = generate_reference('kikwetu', 'user-1', now_ms=1700000000000)

    assert re.match(r'^kikwetu_user-1_1700000000000_[a-z0-9]{6}$', reference)

def test_generate_reference_is_unique_per_attempt():
    references = {generate_reference('kikwetu', 'user-1', now_ms=1) for _ in range(50)}
    assert len(references) == 50

@pytest.mark.parametrize('phone', ['0712345678', '+254 712 345 678', '254712345678', '712345678'])
def test_normalize_msisdn(phone):
    assert normalize_msisdn(phone) == '254712345678'

def test_normalize_msisdn_accepts_01_prefix():
    assert normalize_msisdn('0112345678') == '254112345678'

@pytest.mark.parametrize('phone', ['12345', '0812345678', '', None])
def test_normalize_msisdn_rejects_invalid(phone):
    with pytest.raises(ValidationError):
        normalize_msisdn(phone)

@pytest.mark.asyncio
async def test_paystack_initialize_sends_minor_units():
    session = make_session(make_response({
        'status': True,
        'data': {
            'authorization_url': 'https://checkout.paystack.com/abc',
            'access_code': 'abc',
            'reference': 'kikwetu_u_1_aaaaaa'
        }
    }))
    request = PaymentRequest(
        amount=Decimal('150.00'),
        reference='kikwetu_u_1_aaaaaa',
        email='buyer@example.com'
    )

    result = await paystack(session).initialize(request)

    assert result.ok
    assert result.authorization_url == 'https://checkout.paystack.com/abc'
    assert result.access_code == 'abc'

    method, url = session.request.call_args.args
    assert method == 'POST'
    assert url == 'https://api.paystack.co/transaction/initialize'
    body = session.request.call_args.kwargs['json']
    assert body['amount'] == 15000
    assert body['currency'] == 'KES'
    assert body['reference'] == 'kikwetu_u_1_aaaaaa'
    assert session.headers['Authorization'] == 'Bearer sk_test_123'

@pytest.mark.asyncio
async def test_paystack_requires_email():
    session = make_session()
    request = PaymentRequest(amount=Decimal('10'), reference='ref')

    result = await paystack(session).initialize(request)

    assert not result.ok
    assert result.stage == FailureStage.VALIDATION
    session.request.assert_not_called()

@pytest.mark.asyncio
async def test_paystack_timeout_is_network_failure():
    session = make_session(requests.exceptions.Timeout())
    request = PaymentRequest(amount=Decimal('10'), reference='ref', email='a@b.co')

    result = await paystack(session).initialize(request)

    assert not result.ok
    assert result.stage == FailureStage.NETWORK
    assert 'timed out' in result.error

@pytest.mark.asyncio
async def test_paystack_http_error_is_gateway_failure():
    session = make_session(make_response({'status': False, 'message': 'Invalid key'}, 401))
    request = PaymentRequest(amount=Decimal('10'), reference='ref', email='a@b.co')

    result = await paystack(session).initialize(request)

    assert not result.ok
    assert result.stage == FailureStage.GATEWAY
    assert result.error == 'Invalid key'

@pytest.mark.asyncio
async def test_paystack_verify_maps_status():
    session = make_session(make_response({'status': True, 'data': {'status': 'success'}}))

    status = await paystack(session).verify('ref')

    assert status == TransactionStatus.COMPLETED

@pytest.mark.asyncio
async def test_mpesa_stk_push():
    session = make_session(
        make_response({'access_token': 'token', 'expires_in': '3599'}),
        make_response({
            'ResponseCode': '0',
            'CheckoutRequestID': 'ws_CO_1',
            'MerchantRequestID': 'mr_1'
        })
    )
    request = PaymentRequest(
        amount=Decimal('99.50'),
        reference='kikwetu_u_1_aaaaaa',
        phone='0712345678',
        description='Listing payment',
        metadata={'account_reference': 'Kikwetu-premium-plan'}
    )

    result = await mpesa(session).initialize(request)

    assert result.ok
    assert result.psp_transaction_id == 'ws_CO_1'
    assert result.merchant_request_id == 'mr_1'

    payload = session.request.call_args.kwargs['json']
    assert payload['Amount'] == 100
    assert payload['PartyA'] == '254712345678'
    assert payload['PhoneNumber'] == '254712345678'
    assert payload['AccountReference'] == 'Kikwetu-prem'
    assert session.request.call_args.kwargs['headers']['Authorization'] == 'Bearer token'

@pytest.mark.asyncio
async def test_mpesa_reuses_access_token():
    session = make_session(
        make_response({'access_token': 'token', 'expires_in': '3599'}),
        make_response({'ResponseCode': '0', 'CheckoutRequestID': 'a'}),
        make_response({'ResponseCode': '0', 'CheckoutRequestID': 'b'})
    )
    gateway = mpesa(session)
    request = PaymentRequest(amount=Decimal('10'), reference='ref', phone='0712345678')

    await gateway.initialize(request)
    await gateway.initialize(request)

    assert session.request.call_count == 3

@pytest.mark.asyncio
async def test_mpesa_invalid_phone_is_validation_failure():
    session = make_session()
    request = PaymentRequest(amount=Decimal('10'), reference='ref', phone='123')

    result = await mpesa(session).initialize(request)

    assert not result.ok
    assert result.stage == FailureStage.VALIDATION

@pytest.mark.asyncio
async def test_mpesa_verify_cancelled():
    session = make_session(
        make_response({'access_token': 'token'}),
        make_response({'ResultCode': '1032', 'ResultDesc': 'Request cancelled by user'})
    )

    status = await mpesa(session).verify('ref', 'ws_CO_1')

    assert status == TransactionStatus.CANCELLED

@pytest.mark.asyncio
async def test_mpesa_refund_needs_receipt():
    result = await mpesa(make_session()).refund('ref', Decimal('10'))

    assert not result.ok
    assert result.stage == FailureStage.VALIDATION

@pytest.mark.asyncio
async def test_mpesa_reversal_reports_to_its_own_url():
    session = make_session(
        make_response({'access_token': 'token'}),
        make_response({'ResponseCode': '0', 'ConversationID': 'AG_1'})
    )

    result = await mpesa(session).refund('kikwetu_u_1_abcdef', Decimal('150'), 'QK1234567')

    assert result.ok
    payload = session.request.call_args.kwargs['json']
    assert payload['TransactionID'] == 'QK1234567'
    assert payload['Amount'] == 150
    assert payload['ResultURL'] == 'https://example.com/api/payments/callback/mpesa/reversal'
    assert payload['QueueTimeOutURL'] == payload['ResultURL']

def test_mpesa_reversal_url_is_configurable():
    gateway = MpesaGateway(
        consumer_key='ck',
        consumer_secret='cs',
        short_code='174379',
        passkey='passkey',
        callback_url='https://example.com/api/payments/callback/mpesa',
        reversal_url='https://example.com/hooks/reversal',
        session=make_session()
    )

    assert gateway.reversal_url == 'https://example.com/hooks/reversal'

@pytest.mark.asyncio
async def test_paystack_abandoned_stays_pending():
    session = make_session(make_response({'status': True, 'data': {'status': 'abandoned'}}))

    assert await paystack(session).verify('ref') == TransactionStatus.PENDING
