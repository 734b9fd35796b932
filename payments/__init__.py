"""Payments module.

This module provides:
1. Gateway adapters for Paystack and M-Pesa
2. The transaction ledger and confirmation watcher
3. Discount code resolution and management
4. Webhook processing and plan subscriptions
5. PaymentManager, which composes discount, gateway and ledger into one
   initiation step
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from config import settings_conf
from database import get_pool

from .exceptions import (
    PaymentError,
    ValidationError,
    AuthError,
    NotFoundError,
    ConflictError,
    GatewayError,
    PersistenceError
)
from .models import (
    TransactionStatus,
    TERMINAL_STATUSES,
    PaymentMethod,
    FailureStage,
    PaymentRequest,
    GatewayResult,
    InitiationResult
)
from .gateway import (
    PaymentGateway,
    PaystackGateway,
    MpesaGateway,
    build_gateways,
    generate_reference,
    to_minor_units
)
from .ledger import TransactionLedger
from .discounts import (
    DiscountType,
    DiscountResolver,
    DiscountCodeManager,
    compute_adjusted_amount
)
from .subscriptions import SubscriptionManager
from .callbacks import CallbackProcessor
from .watcher import ConfirmationWatcher, PostgresTransactionFeed, WatchState

logger = logging.getLogger(__name__)

ERROR_TYPES = {
    ValidationError: 'validation',
    AuthError: 'auth',
    NotFoundError: 'not_found',
    ConflictError: 'conflict',
    PersistenceError: 'persistence'
}

class PaymentManager:
    """Starts payments: discount, then gateway, then a single ledger write.

    The gateway is called before the ledger row exists, so a gateway failure
    leaves nothing behind. A ledger failure after a gateway success is closed
    by asking the gateway to reverse the payment.
    """

    def __init__(self, gateways: Dict[PaymentMethod, PaymentGateway], pool=None,
                 ledger: Optional[TransactionLedger] = None,
                 discounts: Optional[DiscountResolver] = None,
                 subscriptions: Optional[SubscriptionManager] = None,
                 reference_prefix: Optional[str] = None,
                 currency: Optional[str] = None):
        self.pool = pool
        self.gateways = gateways
        self.ledger = ledger or TransactionLedger(pool)
        self.discounts = discounts or DiscountResolver(pool)
        self.subscriptions = subscriptions or SubscriptionManager(pool)
        self.reference_prefix = reference_prefix or settings_conf['reference_prefix']
        self.currency = currency or settings_conf['currency']

    async def ensure_pool(self):
        """Ensure database pool is available."""
        if not self.pool:
            self.pool = await get_pool()

    async def _listing_owner(self, listing_id: UUID) -> str:
        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            owner = await conn.fetchval('SELECT user_id FROM listings WHERE id = $1', listing_id)
        if owner is None:
            raise NotFoundError(f"Listing {listing_id} not found")
        return str(owner)

    async def _resolve_amount(self, user_id: str, amount: Optional[Any],
                              listing_id: Optional[UUID], plan_id: Optional[str]) -> Decimal:
        if (listing_id is None) == (plan_id is None):
            raise ValidationError("Exactly one of listingId or planId is required")

        if plan_id is not None:
            plan = await self.subscriptions.get_plan(plan_id)
            return Decimal(plan['price'])

        if await self._listing_owner(listing_id) != str(user_id):
            raise AuthError("You can only pay for your own listings")

        if await self.ledger.find_pending_for_listing(listing_id):
            raise ConflictError("A payment for this listing is already pending")

        if amount is None:
            raise ValidationError("Amount is required")
        try:
            return Decimal(str(amount))
        except ArithmeticError:
            raise ValidationError(f"Invalid amount: {amount!r}")

    async def initiate(
        self,
        user_id: str,
        method: str,
        amount: Optional[Any] = None,
        listing_id: Optional[UUID] = None,
        plan_id: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        discount_code_id: Optional[int] = None,
        description: Optional[str] = None
    ) -> InitiationResult:
        """Start a payment.

        Args:
            user_id: Paying user
            method: ``paystack`` or ``mpesa``
            amount: Amount for listing payments; plan payments use the plan price
            listing_id: Listing being paid for
            plan_id: Plan being paid for
            email: Payer email, required for Paystack
            phone: Payer phone, required for M-Pesa
            discount_code_id: Discount to apply, re-checked here
            description: Text shown to the payer

        Returns:
            InitiationResult describing success or the failing step
        """
        try:
            try:
                method = PaymentMethod(method)
            except ValueError:
                raise ValidationError(f"Unsupported payment method: {method}")

            gateway = self.gateways.get(method)
            if gateway is None:
                raise ValidationError(f"Payment method {method.value} is not configured")

            amount = await self._resolve_amount(user_id, amount, listing_id, plan_id)
            if amount <= 0:
                raise ValidationError("Amount must be greater than zero")

            if discount_code_id is not None:
                discount = await self.discounts.resolve_id(discount_code_id)
                if not discount.ok:
                    raise ValidationError(discount.message)
                amount = compute_adjusted_amount(amount, discount.type, discount.value)
                if amount <= 0:
                    raise ValidationError("Discounted amount leaves nothing to pay")

        except (ValidationError, AuthError, NotFoundError, ConflictError) as e:
            return InitiationResult(
                success=False,
                error=str(e),
                error_type=ERROR_TYPES[type(e)],
                stage=FailureStage.VALIDATION
            )

        reference = generate_reference(self.reference_prefix, user_id)
        request = PaymentRequest(
            amount=amount,
            currency=self.currency,
            reference=reference,
            email=email,
            phone=phone,
            description=description or ('Plan subscription' if plan_id else 'Listing payment'),
            metadata={
                'user_id': str(user_id),
                'listing_id': str(listing_id) if listing_id else None,
                'plan_id': plan_id,
                'account_reference': f"Kikwetu-{listing_id or plan_id}"
            }
        )

        result = await gateway.initialize(request)
        if not result.ok:
            return InitiationResult(
                success=False,
                reference=reference,
                error=result.error,
                error_type='validation' if result.stage == FailureStage.VALIDATION else 'gateway',
                stage=result.stage
            )

        try:
            transaction = await self.ledger.create_pending(
                user_id=user_id,
                amount=amount,
                payment_method=method.value,
                reference=result.reference,
                listing_id=listing_id,
                plan_id=plan_id,
                discount_code_id=discount_code_id,
                currency=self.currency,
                email=email,
                phone_number=phone,
                psp_transaction_id=result.psp_transaction_id,
                merchant_request_id=result.merchant_request_id
            )
        except PersistenceError as e:
            logger.error(f"Ledger write failed after {method.value} accepted {reference}, reversing: {e}")
            reversal = await gateway.refund(result.reference, amount)
            if not reversal.ok:
                logger.error(
                    f"Reversal of {reference} failed ({reversal.error}), "
                    "manual follow-up required"
                )
            return InitiationResult(
                success=False,
                reference=reference,
                error="Could not record the payment. Please try again.",
                error_type='persistence',
                stage=FailureStage.PERSISTENCE,
                reversed=reversal.ok
            )

        return InitiationResult(
            success=True,
            reference=result.reference,
            authorization_url=result.authorization_url,
            access_code=result.access_code,
            transaction=transaction
        )

__all__ = [
    'PaymentManager',
    'PaymentError',
    'ValidationError',
    'AuthError',
    'NotFoundError',
    'ConflictError',
    'GatewayError',
    'PersistenceError',
    'TransactionStatus',
    'TERMINAL_STATUSES',
    'PaymentMethod',
    'FailureStage',
    'PaymentRequest',
    'GatewayResult',
    'InitiationResult',
    'PaymentGateway',
    'PaystackGateway',
    'MpesaGateway',
    'build_gateways',
    'generate_reference',
    'to_minor_units',
    'TransactionLedger',
    'DiscountType',
    'DiscountResolver',
    'DiscountCodeManager',
    'compute_adjusted_amount',
    'SubscriptionManager',
    'CallbackProcessor',
    'ConfirmationWatcher',
    'PostgresTransactionFeed',
    'WatchState'
]
