"""Payment API endpoints.

Initiation, status checks, discount application, plan subscriptions and
the provider webhooks.
"""

import json
import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Request, Security, Depends, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from payments import (
    PaymentMethod,
    NotFoundError,
    ValidationError,
    AuthError,
    ConflictError,
    PersistenceError,
    compute_adjusted_amount
)
from payments.discounts import DiscountRejection
from payments.callbacks import verify_paystack_signature, verify_mpesa_signature
from auth import get_current_user

from ..services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/payments",
    tags=["Payments"]
)

# HTTP status for each initiation failure type
ERROR_STATUS = {
    'validation': status.HTTP_400_BAD_REQUEST,
    'auth': status.HTTP_403_FORBIDDEN,
    'not_found': status.HTTP_404_NOT_FOUND,
    'conflict': status.HTTP_409_CONFLICT,
    'gateway': status.HTTP_500_INTERNAL_SERVER_ERROR,
    'persistence': status.HTTP_500_INTERNAL_SERVER_ERROR
}

class PaymentTarget(BaseModel):
    """What is being paid for. Exactly one of listing_id or plan_id."""
    model_config = ConfigDict(populate_by_name=True)

    amount: Optional[Decimal] = None
    listing_id: Optional[UUID] = Field(None, alias="listingId")
    plan_id: Optional[str] = Field(None, alias="planId")
    discount_code_id: Optional[int] = Field(None, alias="discountCodeId")
    description: Optional[str] = None

class PaystackPaymentRequest(PaymentTarget):
    email: str

class MpesaPaymentRequest(PaymentTarget):
    phone: str = Field(..., alias="phoneNumber")

class ApplyDiscountRequest(BaseModel):
    code: Optional[str] = None
    amount: Optional[Decimal] = None

class ActivateSubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: str = Field(..., alias="planId")
    transaction_id: UUID = Field(..., alias="transactionId")

async def _initiate(services: Services, user_id: str, method: PaymentMethod,
                    body: PaymentTarget, email: Optional[str] = None,
                    phone: Optional[str] = None) -> JSONResponse:
    result = await services.payments.initiate(
        user_id=user_id,
        method=method.value,
        amount=body.amount,
        listing_id=body.listing_id,
        plan_id=body.plan_id,
        email=email,
        phone=phone,
        discount_code_id=body.discount_code_id,
        description=body.description
    )

    if result.success:
        return JSONResponse(
            status_code=status.HTTP_201_CREATED,
            content=jsonable_encoder(result.model_dump(
                include={'success', 'reference', 'authorization_url', 'access_code', 'transaction'}
            ))
        )

    return JSONResponse(
        status_code=ERROR_STATUS.get(result.error_type, status.HTTP_500_INTERNAL_SERVER_ERROR),
        content=jsonable_encoder(result.model_dump(
            include={'success', 'error', 'error_type', 'stage', 'reference', 'reversed'}
        ))
    )

@router.post("/paystack", status_code=status.HTTP_201_CREATED)
async def paystack_payment(
    body: PaystackPaymentRequest,
    user_id: str = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Start a Paystack checkout for a listing or a plan.

    Returns:
        The hosted checkout URL, the reference and the pending transaction
    """
    return await _initiate(services, user_id, PaymentMethod.PAYSTACK, body, email=body.email)

@router.post("/mpesa", status_code=status.HTTP_201_CREATED)
async def mpesa_payment(
    body: MpesaPaymentRequest,
    user_id: str = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Send an M-Pesa STK push prompt to the payer's phone."""
    return await _initiate(services, user_id, PaymentMethod.MPESA, body, phone=body.phone)

@router.get("/status")
async def payment_status(
    id: Optional[UUID] = Query(None),
    transaction_id: Optional[UUID] = Query(None, alias="transactionId"),
    user_id: str = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Get the status of one of the caller's transactions."""
    transaction_id = id or transaction_id
    if transaction_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Transaction ID is required"
        )

    try:
        transaction = await services.ledger.get_transaction(transaction_id)
    except NotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Transaction not found"
        )
    except Exception as e:
        logger.error(f"Error fetching transaction status: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to fetch transaction status"
        )

    # Other users' transactions are reported as missing
    if str(transaction['user_id']) != str(user_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Transaction not found"
        )

    return {
        'status': transaction['status'],
        'reference': transaction['reference']
    }

@router.post("/apply-discount")
async def apply_discount(
    body: ApplyDiscountRequest,
    user_id: str = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Check a discount code without redeeming it.

    Returns:
        The discount type, value and code id, plus the adjusted amount when
        an amount was supplied
    """
    resolution = await services.discounts.resolve(body.code)
    if not resolution.ok:
        return JSONResponse(
            status_code=(
                status.HTTP_404_NOT_FOUND
                if resolution.reason == DiscountRejection.NOT_FOUND
                else status.HTTP_400_BAD_REQUEST
            ),
            content={'error': resolution.message, 'reason': resolution.reason.value}
        )

    result = {
        'type': resolution.type.value,
        'value': resolution.value,
        'code_id': resolution.code_id
    }

    if body.amount is not None:
        try:
            result['adjusted_amount'] = compute_adjusted_amount(
                body.amount, resolution.type, resolution.value
            )
        except ValidationError as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=str(e)
            )

    return result

@router.get("/plans")
async def list_plans(services: Services = Depends(get_services)):
    """Get the active listing plans."""
    return await services.subscriptions.list_plans()

@router.get("/subscriptions")
async def get_subscription(
    user_id: str = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Get the caller's active subscription, if any."""
    return {'subscription': await services.subscriptions.get_active(user_id)}

@router.post("/subscriptions", status_code=status.HTTP_201_CREATED)
async def activate_subscription(
    body: ActivateSubscriptionRequest,
    user_id: str = Security(get_current_user),
    services: Services = Depends(get_services)
):
    """Activate a plan paid for by a completed transaction.

    Activation is idempotent: a transaction already used returns the
    subscription it created.
    """
    try:
        return await services.subscriptions.activate(user_id, body.plan_id, body.transaction_id)
    except AuthError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

async def _read_json(request: Request) -> dict:
    try:
        return json.loads(await request.body())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON body"
        )

@router.post("/callback/paystack")
async def paystack_callback(request: Request, services: Services = Depends(get_services)):
    """Paystack webhook. The raw body must carry a valid signature."""
    body = await request.body()
    signature = request.headers.get('x-paystack-signature')
    if not verify_paystack_signature(body, signature, services.settings['paystack_secret_key']):
        logger.warning("Rejected Paystack webhook with invalid signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature"
        )

    payload = await _read_json(request)
    try:
        return await services.callbacks.handle_paystack(payload)
    except PersistenceError as e:
        # Non-2xx makes Paystack retry the delivery
        logger.error(f"Failed to process Paystack webhook: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process callback"
        )

@router.post("/callback/mpesa")
async def mpesa_callback(request: Request, services: Services = Depends(get_services)):
    """M-Pesa STK push result callback."""
    body = await request.body()
    signature = request.headers.get('x-mpesa-signature')
    if not verify_mpesa_signature(body, signature, services.settings['mpesa_callback_secret']):
        logger.warning("Rejected M-Pesa callback with invalid signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature"
        )

    payload = await _read_json(request)
    try:
        result = await services.callbacks.handle_mpesa(payload)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except PersistenceError as e:
        logger.error(f"Failed to process M-Pesa callback: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process callback"
        )

    return {'ResultCode': 0, 'ResultDesc': 'Accepted', **result}

@router.post("/callback/mpesa/reversal")
async def mpesa_reversal_callback(request: Request, services: Services = Depends(get_services)):
    """M-Pesa transaction reversal result and queue timeout callback."""
    body = await request.body()
    signature = request.headers.get('x-mpesa-signature')
    if not verify_mpesa_signature(body, signature, services.settings['mpesa_callback_secret']):
        logger.warning("Rejected M-Pesa reversal result with invalid signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature"
        )

    payload = await _read_json(request)
    try:
        result = await services.callbacks.handle_mpesa_reversal(payload)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return {'ResultCode': 0, 'ResultDesc': 'Accepted', 'reversed': result['reversed']}
