from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED
})


class PaymentMethod(str, Enum):
    PAYSTACK = "paystack"
    MPESA = "mpesa"


class FailureStage(str, Enum):
    VALIDATION = "validation"
    NETWORK = "network"
    GATEWAY = "gateway"
    PERSISTENCE = "persistence"


class PaymentRequest(BaseModel):
    """Everything a gateway needs to start collecting a payment."""
    amount: Decimal
    currency: str = "KES"
    reference: str
    email: Optional[str] = None
    phone: Optional[str] = None
    description: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class GatewayResult(BaseModel):
    """Outcome of one gateway call. Either ``ok`` or carries ``error`` and ``stage``."""
    ok: bool
    reference: str
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None
    psp_transaction_id: Optional[str] = None
    merchant_request_id: Optional[str] = None
    error: Optional[str] = None
    stage: Optional[FailureStage] = None

    @classmethod
    def success(cls, reference: str, **fields) -> "GatewayResult":
        return cls(ok=True, reference=reference, **fields)

    @classmethod
    def failure(cls, reference: str, error: str, stage: FailureStage) -> "GatewayResult":
        return cls(ok=False, reference=reference, error=error, stage=stage)


class InitiationResult(BaseModel):
    """Outcome of the composed discount, gateway and ledger flow."""
    success: bool
    reference: Optional[str] = None
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None
    transaction: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    stage: Optional[FailureStage] = None
    reversed: bool = False
