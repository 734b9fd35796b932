"""Gateway webhooks and manual confirmation.

Every path ends in ``CallbackProcessor.settle`` which moves a pending ledger
row to its terminal status. Follow-up writes (discount redemption, listing
payment flag, subscription, notification) run only for the call that
actually performed the transition, so duplicate deliveries are no-ops. A
successful charge that finds no pending row to complete is refunded unless
its row is already completed.
"""

import hashlib
import hmac
import json
import logging
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from database import get_pool

from .discounts import DiscountResolver
from .exceptions import ValidationError
from .ledger import TransactionLedger
from .models import PaymentMethod, TransactionStatus
from .subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)

MPESA_SUCCESS_CODE = 0
MPESA_CANCELLED_CODE = 1032

def _verify_hmac(body: bytes, signature: Optional[str], secret: str, digest) -> bool:
    if not signature or not secret:
        return False
    expected = hmac.new(secret.encode(), body, digest).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())

def verify_paystack_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Check the ``x-paystack-signature`` header (HMAC-SHA512 of the raw body)."""
    return _verify_hmac(body, signature, secret, hashlib.sha512)

def verify_mpesa_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    """Check the ``x-mpesa-signature`` header (HMAC-SHA256 of the raw body)."""
    return _verify_hmac(body, signature, secret, hashlib.sha256)

def parse_mpesa_callback(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Extract the fields we use from an STK push callback.

    Raises:
        ValidationError: If the payload is not an STK callback
    """
    callback = (payload.get('Body') or {}).get('stkCallback')
    if not callback or 'CheckoutRequestID' not in callback:
        raise ValidationError("Invalid M-Pesa callback payload")

    items = {
        item.get('Name'): item.get('Value')
        for item in (callback.get('CallbackMetadata') or {}).get('Item', [])
    }

    result_code = int(callback.get('ResultCode', -1))
    if result_code == MPESA_SUCCESS_CODE:
        status = TransactionStatus.COMPLETED
    elif result_code == MPESA_CANCELLED_CODE:
        status = TransactionStatus.CANCELLED
    else:
        status = TransactionStatus.FAILED

    return {
        'checkout_request_id': callback['CheckoutRequestID'],
        'merchant_request_id': callback.get('MerchantRequestID'),
        'result_code': result_code,
        'result_desc': callback.get('ResultDesc'),
        'status': status,
        'receipt_number': items.get('MpesaReceiptNumber'),
        'amount': items.get('Amount'),
        'phone': items.get('PhoneNumber')
    }

def parse_mpesa_reversal(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Extract the fields we use from a transaction reversal result.

    Raises:
        ValidationError: If the payload is not a reversal result
    """
    result = payload.get('Result')
    if not isinstance(result, dict) or 'ResultCode' not in result:
        raise ValidationError("Invalid M-Pesa reversal result payload")

    try:
        result_code = int(result['ResultCode'])
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid M-Pesa result code: {result['ResultCode']!r}")

    return {
        'reversed': result_code == MPESA_SUCCESS_CODE,
        'result_code': result_code,
        'result_desc': result.get('ResultDesc'),
        'conversation_id': result.get('ConversationID'),
        'originator_conversation_id': result.get('OriginatorConversationID'),
        'transaction_id': result.get('TransactionID')
    }

class CallbackProcessor:
    """Applies gateway outcomes to the ledger exactly once."""

    def __init__(self, ledger: Optional[TransactionLedger] = None,
                 discounts: Optional[DiscountResolver] = None,
                 subscriptions: Optional[SubscriptionManager] = None,
                 gateways: Optional[Dict[PaymentMethod, Any]] = None,
                 pool=None):
        self.pool = pool
        self.ledger = ledger or TransactionLedger(pool)
        self.discounts = discounts or DiscountResolver(pool)
        self.subscriptions = subscriptions or SubscriptionManager(pool)
        self.gateways = gateways or {}

    async def ensure_pool(self):
        """Ensure database pool is available."""
        if not self.pool:
            self.pool = await get_pool()

    async def handle_paystack(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Process a Paystack webhook event."""
        event = payload.get('event', '')
        data = payload.get('data') or {}
        reference = data.get('reference')

        if not event.startswith('charge.') or not reference:
            logger.info(f"Ignoring Paystack event {event!r}")
            return {'handled': False, 'event': event}

        if event == 'charge.success':
            status = TransactionStatus.COMPLETED
        else:
            status = TransactionStatus.FAILED

        row = await self.settle(status, reference=reference)
        refunded = False
        if row is None and status == TransactionStatus.COMPLETED:
            refunded = await self._reverse_unsettleable(
                PaymentMethod.PAYSTACK,
                reference=reference,
                amount=Decimal(data['amount']) / 100 if data.get('amount') else None
            )

        return {
            'handled': row is not None,
            'event': event,
            'transaction_id': str(row['id']) if row else None,
            'status': status.value,
            'reversed': refunded
        }

    async def handle_mpesa(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Process an M-Pesa STK push callback."""
        callback = parse_mpesa_callback(payload)
        status = callback['status']

        row = await self.settle(
            status,
            psp_transaction_id=callback['checkout_request_id'],
            receipt_number=callback['receipt_number']
        )
        refunded = False
        if row is None and status == TransactionStatus.COMPLETED:
            refunded = await self._reverse_unsettleable(
                PaymentMethod.MPESA,
                psp_transaction_id=callback['checkout_request_id'],
                amount=Decimal(str(callback['amount'])) if callback['amount'] is not None else None,
                receipt_number=callback['receipt_number']
            )

        return {
            'handled': row is not None,
            'transaction_id': str(row['id']) if row else None,
            'status': status.value,
            'result_desc': callback['result_desc'],
            'reversed': refunded
        }

    async def handle_mpesa_reversal(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Record the outcome of a reversal requested by ``_reverse_unsettleable``."""
        result = parse_mpesa_reversal(payload)

        if result['reversed']:
            logger.info(f"M-Pesa reversal {result['conversation_id']} completed "
                        f"(transaction {result['transaction_id']})")
        else:
            logger.error(f"M-Pesa reversal {result['conversation_id']} failed "
                         f"with code {result['result_code']}: {result['result_desc']}")
        return result

    async def confirm_manually(self, transaction_id: UUID, status: TransactionStatus,
                               admin_id: str) -> Optional[Dict[str, Any]]:
        """Settle a transaction on an administrator's word."""
        logger.info(f"Admin {admin_id} marking transaction {transaction_id} as {status}")
        return await self.settle(TransactionStatus(status), transaction_id=transaction_id)

    async def settle(self, status: TransactionStatus, transaction_id: Optional[UUID] = None,
                     reference: Optional[str] = None, psp_transaction_id: Optional[str] = None,
                     receipt_number: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Move a pending transaction to a terminal status and run follow-ups.

        Returns:
            The updated row, or None if nothing was pending
        """
        row = await self.ledger.mark_terminal(
            status,
            transaction_id=transaction_id,
            reference=reference,
            psp_transaction_id=psp_transaction_id,
            receipt_number=receipt_number
        )
        if row is None:
            return None

        if status == TransactionStatus.COMPLETED:
            await self._after_completion(row)
        else:
            await self._notify(
                row['user_id'],
                'payment_failed',
                'Payment not completed',
                f"Your payment {row['reference']} was {status.value}.",
                {'transaction_id': str(row['id']), 'status': status.value}
            )
        return row

    async def _after_completion(self, row: Dict[str, Any]) -> None:
        extra_days = 0
        if row.get('discount_code_id'):
            try:
                if await self.discounts.redeem(row['discount_code_id']):
                    extra_days = await self.discounts.extra_days(row['discount_code_id'])
            except Exception as e:
                logger.error(f"Failed to redeem discount code for transaction {row['id']}: {e}")

        if row.get('listing_id'):
            try:
                await self.ensure_pool()
                async with self.pool.acquire() as conn:
                    await conn.execute(
                        "UPDATE listings SET payment_status = 'paid' WHERE id = $1",
                        row['listing_id']
                    )
            except Exception as e:
                logger.error(f"Failed to mark listing {row['listing_id']} as paid: {e}")

        if row.get('plan_id'):
            try:
                await self.subscriptions.activate(
                    row['user_id'], row['plan_id'], row['id'], extra_days=extra_days
                )
            except Exception as e:
                logger.error(f"Failed to activate plan for transaction {row['id']}: {e}")

        await self._notify(
            row['user_id'],
            'payment_success',
            'Payment received',
            f"Your payment of {row['currency']} {row['amount']} was successful.",
            {'transaction_id': str(row['id']), 'reference': row['reference']}
        )

    async def _reverse_unsettleable(self, method: PaymentMethod, reference: Optional[str] = None,
                                    psp_transaction_id: Optional[str] = None,
                                    amount: Optional[Decimal] = None,
                                    receipt_number: Optional[str] = None) -> bool:
        """Refund a successful charge that can no longer complete a transaction.

        That is a charge with no ledger row at all, or one whose row already
        ended failed or cancelled, e.g. cancelled by the stale-payment reaper
        before the provider reported success. A row that is already completed
        means a duplicate delivery and is left alone.

        Returns:
            True if a refund was accepted by the gateway
        """
        existing = await self.ledger.find_transaction(reference, psp_transaction_id)
        key = reference or psp_transaction_id

        if existing is not None:
            if existing['status'] == TransactionStatus.COMPLETED.value:
                logger.info(f"Duplicate callback for transaction {existing['id']}, ignoring")
                return False
            if existing['status'] == TransactionStatus.PENDING.value:
                # Settled by a concurrent delivery between the two reads
                return False
            logger.warning(
                f"Payment {key} succeeded after transaction {existing['id']} "
                f"was {existing['status']}, refunding"
            )
            if amount is None:
                amount = existing.get('amount')
            receipt_number = receipt_number or existing.get('receipt_number')
            reference = reference or existing.get('reference')

        gateway = self.gateways.get(method)
        if gateway is None:
            logger.error(f"Payment {key} cannot be settled and there is no {method.value} gateway to reverse it")
            return False

        result = await gateway.refund(reference or psp_transaction_id, amount, receipt_number)
        if result.ok:
            logger.warning(f"Reversed unsettleable {method.value} payment {key}")
        else:
            logger.error(f"Could not reverse {method.value} payment {key}: {result.error}")
        return result.ok

    async def _notify(self, user_id, kind: str, title: str, message: str,
                      data: Dict[str, Any]) -> None:
        try:
            await self.ensure_pool()
            async with self.pool.acquire() as conn:
                await conn.execute(
                    '''
                    INSERT INTO notifications (user_id, type, title, message, data)
                    VALUES ($1, $2, $3, $4, $5::jsonb)
                    ''',
                    user_id,
                    kind,
                    title,
                    message,
                    json.dumps(data)
                )
        except Exception as e:
            logger.error(f"Failed to notify user {user_id}: {e}")

__all__ = [
    'CallbackProcessor',
    'verify_paystack_signature',
    'verify_mpesa_signature',
    'parse_mpesa_callback',
    'parse_mpesa_reversal'
]
