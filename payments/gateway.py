"""Payment gateway adapters.

Each adapter turns a PaymentRequest into a provider-specific initialization
call and parses the answer into a GatewayResult. Adapters never write to the
ledger. Expected failures come back as ``GatewayResult.failure`` with a
stage of ``validation``, ``network`` or ``gateway``.

Supported providers:
- Paystack (card, hosted checkout page)
- Safaricom M-Pesa (STK push to the payer's phone)
"""

import asyncio
import base64
import logging
import re
import secrets
import string
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import requests

from .exceptions import (
    ValidationError,
    GatewayError,
    GatewayConnectionError,
    GatewayRejectedError
)
from .models import (
    PaymentMethod,
    PaymentRequest,
    GatewayResult,
    FailureStage,
    TransactionStatus
)

logger = logging.getLogger(__name__)

REFERENCE_ALPHABET = string.ascii_lowercase + string.digits
REFERENCE_SUFFIX_LENGTH = 6

AMOUNT_PATTERN = re.compile(r'^(\d+)(?:\.(\d{1,2}))?$')
MSISDN_PATTERN = re.compile(r'^(?:\+?254|0)?([17]\d{8})$')

# Safaricom timestamps are East Africa Time
EAT = timezone(timedelta(hours=3))

MPESA_CANCELLED_CODES = {'1032'}
MPESA_PROCESSING_CODES = {'500.001.1001'}

PAYSTACK_STATUS_MAP = {
    'success': TransactionStatus.COMPLETED,
    'failed': TransactionStatus.FAILED,
    'reversed': TransactionStatus.FAILED,
    'abandoned': TransactionStatus.PENDING,
    'ongoing': TransactionStatus.PENDING,
    'pending': TransactionStatus.PENDING,
    'processing': TransactionStatus.PENDING,
    'queued': TransactionStatus.PENDING
}

def generate_reference(prefix: str, user_id: str, now_ms: Optional[int] = None) -> str:
    """Generate a payment reference of the form ``prefix_user_timestamp_random``.

    Args:
        prefix: Namespace for references issued by this service
        user_id: Initiating user
        now_ms: Unix time in milliseconds, defaults to the current time

    Returns:
        Reference string
    """
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    suffix = ''.join(
        secrets.choice(REFERENCE_ALPHABET) for _ in range(REFERENCE_SUFFIX_LENGTH)
    )
    return f"{prefix}_{user_id}_{timestamp}_{suffix}"

def _amount_text(amount: Any) -> str:
    if isinstance(amount, bool) or amount is None:
        raise ValidationError(f"Invalid amount: {amount!r}")
    if isinstance(amount, Decimal):
        if not amount.is_finite():
            raise ValidationError(f"Invalid amount: {amount}")
        return format(amount, 'f')
    return str(amount).strip()

def to_minor_units(amount: Any) -> int:
    """Convert a currency amount to minor units without float arithmetic.

    The amount is split on its decimal point as text, so ``100.10`` becomes
    ``10010`` and ``99.99`` becomes ``9999`` exactly.

    Args:
        amount: Amount as str, int, Decimal or float, at most 2 fractional digits

    Returns:
        Amount in minor units

    Raises:
        ValidationError: If the amount is malformed, too precise or not positive
    """
    text = _amount_text(amount)
    match = AMOUNT_PATTERN.match(text)
    if not match:
        raise ValidationError(
            f"Invalid amount: {text!r} (expected a positive number with at most 2 decimals)"
        )

    whole, fraction = match.groups()
    minor = int(whole) * 100 + int((fraction or '').ljust(2, '0'))
    if minor <= 0:
        raise ValidationError("Amount must be greater than zero")
    return minor

def normalize_msisdn(phone: Optional[str]) -> str:
    """Normalize a Kenyan mobile number to ``2547XXXXXXXX`` form.

    Raises:
        ValidationError: If the number is not a valid Kenyan mobile number
    """
    cleaned = re.sub(r'[\s\-()]', '', phone or '')
    match = MSISDN_PATTERN.match(cleaned)
    if not match:
        raise ValidationError(f"Invalid phone number: {phone!r}")
    return f"254{match.group(1)}"

class PaymentGateway:
    """Base class for HTTP payment gateway adapters."""

    method: PaymentMethod = None
    name = "gateway"

    def __init__(self, base_url: str, timeout: int = 10,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers['content-type'] = 'application/json'

    def _error_message(self, body: Dict[str, Any], response: requests.Response) -> str:
        return body.get('message') or f"HTTP {response.status_code}"

    def _request(self, http_method: str, path: str, **kwargs) -> Dict[str, Any]:
        """Make a request to the provider.

        Returns:
            Parsed JSON body

        Raises:
            GatewayConnectionError: Provider unreachable or timed out
            GatewayRejectedError: Provider answered with an HTTP error
        """
        url = f"{self.base_url}{path}"

        try:
            response = self.session.request(http_method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            raise GatewayConnectionError(
                f"Request to {self.name} timed out after {self.timeout} seconds"
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise GatewayConnectionError(f"Failed to connect to {self.name}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            raise GatewayRejectedError(
                self._error_message(body, response),
                response.status_code
            )

        return body

    def _initialize(self, request: PaymentRequest) -> GatewayResult:
        raise NotImplementedError

    def _refund(self, reference: str, amount: Optional[Decimal],
                receipt_number: Optional[str]) -> GatewayResult:
        raise NotImplementedError

    def _verify(self, reference: str, psp_transaction_id: Optional[str]) -> TransactionStatus:
        raise NotImplementedError

    async def _run(self, reference: str, action: str, func, *args) -> GatewayResult:
        try:
            return await asyncio.to_thread(func, *args)
        except ValidationError as e:
            return GatewayResult.failure(reference, str(e), FailureStage.VALIDATION)
        except GatewayError as e:
            logger.warning(f"{self.name} {action} failed for {reference}: {e}")
            return GatewayResult.failure(reference, str(e), FailureStage(e.stage))

    async def initialize(self, request: PaymentRequest) -> GatewayResult:
        """Start a payment with the provider."""
        return await self._run(request.reference, 'initialization', self._initialize, request)

    async def refund(self, reference: str, amount: Optional[Decimal] = None,
                     receipt_number: Optional[str] = None) -> GatewayResult:
        """Reverse a payment that has no matching ledger row."""
        return await self._run(reference, 'refund', self._refund, reference, amount, receipt_number)

    async def verify(self, reference: str,
                     psp_transaction_id: Optional[str] = None) -> TransactionStatus:
        """Ask the provider for the current status of a payment.

        Raises:
            GatewayError: If the provider cannot answer
        """
        return await asyncio.to_thread(self._verify, reference, psp_transaction_id)

class PaystackGateway(PaymentGateway):
    """Paystack hosted checkout adapter."""

    method = PaymentMethod.PAYSTACK
    name = "Paystack"

    def __init__(self, secret_key: str, callback_url: str,
                 base_url: str = 'https://api.paystack.co', timeout: int = 10,
                 session: Optional[requests.Session] = None):
        super().__init__(base_url, timeout, session)
        self.callback_url = callback_url
        self.session.headers['Authorization'] = f"Bearer {secret_key}"

    def _initialize(self, request: PaymentRequest) -> GatewayResult:
        if not request.email:
            raise ValidationError("Email is required for card payments")

        body = {
            'email': request.email,
            'amount': to_minor_units(request.amount),
            'currency': request.currency,
            'reference': request.reference,
            'callback_url': self.callback_url,
            'metadata': request.metadata
        }

        data = self._request('POST', '/transaction/initialize', json=body)
        if not data.get('status'):
            raise GatewayRejectedError(data.get('message') or "Paystack initialization failed")

        payload = data.get('data') or {}
        logger.info(f"Paystack initialized {request.reference}")
        return GatewayResult.success(
            reference=payload.get('reference') or request.reference,
            authorization_url=payload.get('authorization_url'),
            access_code=payload.get('access_code')
        )

    def _refund(self, reference, amount, receipt_number) -> GatewayResult:
        body = {'transaction': reference}
        if amount is not None:
            body['amount'] = to_minor_units(amount)

        data = self._request('POST', '/refund', json=body)
        if not data.get('status'):
            raise GatewayRejectedError(data.get('message') or "Paystack refund failed")

        logger.info(f"Paystack refund requested for {reference}")
        return GatewayResult.success(reference=reference)

    def _verify(self, reference, psp_transaction_id) -> TransactionStatus:
        data = self._request('GET', f'/transaction/verify/{reference}')
        gateway_status = (data.get('data') or {}).get('status', '')
        return PAYSTACK_STATUS_MAP.get(gateway_status, TransactionStatus.PENDING)

class MpesaGateway(PaymentGateway):
    """Safaricom Daraja STK push adapter."""

    method = PaymentMethod.MPESA
    name = "M-Pesa"

    def __init__(self, consumer_key: str, consumer_secret: str, short_code: str,
                 passkey: str, callback_url: str, party_b: Optional[str] = None,
                 transaction_type: str = 'CustomerBuyGoodsOnline',
                 initiator_name: str = '', security_credential: str = '',
                 reversal_url: str = '',
                 base_url: str = 'https://api.safaricom.co.ke', timeout: int = 10,
                 session: Optional[requests.Session] = None):
        super().__init__(base_url, timeout, session)
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.short_code = short_code
        self.passkey = passkey
        self.callback_url = callback_url
        self.reversal_url = reversal_url or f"{callback_url.rstrip('/')}/reversal"
        self.party_b = party_b or short_code
        self.transaction_type = transaction_type
        self.initiator_name = initiator_name
        self.security_credential = security_credential
        self._token: Optional[str] = None
        self._token_expires = 0.0

    def _error_message(self, body, response) -> str:
        return (
            body.get('errorMessage')
            or body.get('ResponseDescription')
            or f"HTTP {response.status_code}"
        )

    def _access_token(self) -> str:
        """Fetch an OAuth token, reusing it until shortly before expiry."""
        if self._token and time.monotonic() < self._token_expires:
            return self._token

        data = self._request(
            'GET',
            '/oauth/v1/generate',
            params={'grant_type': 'client_credentials'},
            auth=(self.consumer_key, self.consumer_secret)
        )
        token = data.get('access_token')
        if not token:
            raise GatewayRejectedError("M-Pesa did not return an access token")

        self._token = token
        self._token_expires = time.monotonic() + int(data.get('expires_in', 3599)) - 60
        return token

    def timestamp(self) -> str:
        return datetime.now(EAT).strftime('%Y%m%d%H%M%S')

    def password(self, timestamp: str) -> str:
        raw = f"{self.short_code}{self.passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    def _authorized(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {'Authorization': f"Bearer {self._access_token()}"}
        return self._request('POST', path, json=payload, headers=headers)

    def _initialize(self, request: PaymentRequest) -> GatewayResult:
        phone = normalize_msisdn(request.phone)
        # STK push only accepts whole shillings
        amount = max(1, (to_minor_units(request.amount) + 50) // 100)
        timestamp = self.timestamp()

        payload = {
            'BusinessShortCode': self.short_code,
            'Password': self.password(timestamp),
            'Timestamp': timestamp,
            'TransactionType': self.transaction_type,
            'Amount': amount,
            'PartyA': phone,
            'PartyB': self.party_b,
            'PhoneNumber': phone,
            'CallBackURL': self.callback_url,
            'AccountReference': request.metadata.get('account_reference', request.reference)[:12],
            'TransactionDesc': (request.description or 'Payment')[:13]
        }

        data = self._authorized('/mpesa/stkpush/v1/processrequest', payload)
        if str(data.get('ResponseCode')) != '0':
            raise GatewayRejectedError(
                data.get('ResponseDescription') or data.get('errorMessage') or "STK push rejected"
            )

        logger.info(f"M-Pesa STK push sent for {request.reference}")
        return GatewayResult.success(
            reference=request.reference,
            psp_transaction_id=data.get('CheckoutRequestID'),
            merchant_request_id=data.get('MerchantRequestID')
        )

    def _refund(self, reference, amount, receipt_number) -> GatewayResult:
        if not receipt_number:
            raise ValidationError("An M-Pesa receipt number is required to reverse a payment")
        if amount is None:
            raise ValidationError("An amount is required to reverse an M-Pesa payment")

        payload = {
            'Initiator': self.initiator_name,
            'SecurityCredential': self.security_credential,
            'CommandID': 'TransactionReversal',
            'TransactionID': receipt_number,
            'Amount': max(1, (to_minor_units(amount) + 50) // 100),
            'ReceiverParty': self.short_code,
            'RecieverIdentifierType': '11',
            'ResultURL': self.reversal_url,
            'QueueTimeOutURL': self.reversal_url,
            'Remarks': f"Reversal {reference}"[:100],
            'Occasion': reference[:100]
        }

        data = self._authorized('/mpesa/reversal/v1/request', payload)
        if str(data.get('ResponseCode')) != '0':
            raise GatewayRejectedError(data.get('ResponseDescription') or "Reversal rejected")

        logger.info(f"M-Pesa reversal requested for {reference} ({receipt_number})")
        return GatewayResult.success(reference=reference)

    def _verify(self, reference, psp_transaction_id) -> TransactionStatus:
        if not psp_transaction_id:
            raise ValidationError("CheckoutRequestID is required to query an STK push")

        timestamp = self.timestamp()
        payload = {
            'BusinessShortCode': self.short_code,
            'Password': self.password(timestamp),
            'Timestamp': timestamp,
            'CheckoutRequestID': psp_transaction_id
        }

        try:
            data = self._authorized('/mpesa/stkpushquery/v1/query', payload)
        except GatewayRejectedError as e:
            # The query endpoint answers 500 while the push is still in flight
            if any(code in str(e) for code in MPESA_PROCESSING_CODES) or 'being processed' in str(e):
                return TransactionStatus.PENDING
            raise

        result_code = str(data.get('ResultCode', ''))
        if result_code == '0':
            return TransactionStatus.COMPLETED
        if result_code in MPESA_CANCELLED_CODES:
            return TransactionStatus.CANCELLED
        if result_code == '':
            return TransactionStatus.PENDING
        return TransactionStatus.FAILED

def build_gateways(settings: Dict[str, Any],
                   session_factory=requests.Session) -> Dict[PaymentMethod, PaymentGateway]:
    """Create the configured gateway adapters.

    Args:
        settings: Loaded settings dictionary
        session_factory: Callable returning a requests session per adapter

    Returns:
        Dict mapping payment method to adapter
    """
    timeout = settings['gateway_timeout']
    return {
        PaymentMethod.PAYSTACK: PaystackGateway(
            secret_key=settings['paystack_secret_key'],
            callback_url=f"{settings['app_url'].rstrip('/')}/payments/callback",
            base_url=settings['paystack_base_url'],
            timeout=timeout,
            session=session_factory()
        ),
        PaymentMethod.MPESA: MpesaGateway(
            consumer_key=settings['mpesa_consumer_key'],
            consumer_secret=settings['mpesa_consumer_secret'],
            short_code=settings['mpesa_business_short_code'],
            passkey=settings['mpesa_passkey'],
            callback_url=settings['mpesa_callback_url'],
            party_b=settings['mpesa_party_b'],
            transaction_type=settings['mpesa_transaction_type'],
            initiator_name=settings['mpesa_initiator_name'],
            security_credential=settings['mpesa_security_credential'],
            reversal_url=settings['mpesa_reversal_url'],
            base_url=settings['mpesa_base_url'],
            timeout=timeout,
            session=session_factory()
        )
    }
