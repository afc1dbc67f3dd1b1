from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
from datetime import datetime
from enum import Enum


class HoldStatus(str, Enum):
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


class HoldSource(str, Enum):
    WALLET = "wallet"
    PAYSTACK = "paystack"


class PaymentIntentStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class EscrowHold(BaseModel):
    order_id: str
    party: str
    payer_id: str
    amount_minor: int
    currency: str
    source: HoldSource
    reference: Optional[str] = None
    status: HoldStatus = HoldStatus.HELD
    created_at: datetime = Field(default_factory=datetime.utcnow)
    settled_at: Optional[datetime] = None

    model_config = ConfigDict(use_enum_values=True)


class PaymentIntent(BaseModel):
    reference: str
    order_id: str
    party: str
    user_id: str
    amount_minor: int
    currency: str
    status: PaymentIntentStatus = PaymentIntentStatus.PENDING
    authorization_url: Optional[str] = None
    paid_minor: Optional[int] = None
    # set when the payment is closed without being applied (underpaid, currency_mismatch)
    resolution: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(use_enum_values=True)


class GatewayVerification(BaseModel):
    reference: str
    status: str
    amount_minor: int
    currency: Optional[str] = None
    paid_at: Optional[datetime] = None
