from pydantic import BaseModel
from typing import List, Optional, Dict, Any
from datetime import datetime
from decimal import Decimal
from enum import Enum


class SwapOrderStatus(str, Enum):
    PENDING_REQUIREMENTS = "pending_requirements"
    REQUIREMENTS_SUBMITTED = "requirements_submitted"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Party(str, Enum):
    REQUESTER = "requester"
    OWNER = "owner"


class SwapAction(str, Enum):
    SUBMIT_REQUIREMENTS = "submit_requirements"
    APPROVE_REQUIREMENTS = "approve_requirements"
    PAY_FEE = "pay_commitment_fee"
    DISPATCH = "mark_dispatched"
    CONFIRM_RECEIPT = "confirm_receipt"
    CANCEL = "cancel"


class PaymentMethod(str, Enum):
    WALLET = "wallet"
    PAYSTACK = "paystack"


class CreateSwapOrder(BaseModel):
    requester_id: str
    owner_id: str
    requester_listing_id: str
    owner_listing_id: str
    swap_request_id: Optional[str] = None
    commitment_fee: Optional[Decimal] = None


class SubmitRequirements(BaseModel):
    meetup_location: str
    meetup_time: datetime
    additional_notes: Optional[str] = None


class CancelSwapOrder(BaseModel):
    reason: Optional[str] = None


class PayCommitmentFee(BaseModel):
    method: PaymentMethod = PaymentMethod.WALLET
    email: Optional[str] = None


class ListingSnapshot(BaseModel):
    id: str
    user_id: str
    title: Optional[str] = None


class SwapOrderProgress(BaseModel):
    """What one party sees: their own flags, the counterpart's, and what they can do next."""
    role: Party
    counterpart_id: str
    my_fee_paid: bool
    counterpart_fee_paid: bool
    my_book_dispatched: bool
    counterpart_book_dispatched: bool
    my_book_received: bool
    counterpart_book_received: bool
    available_actions: List[SwapAction] = []
    waiting_for: Optional[str] = None


class SwapOrderDetails(BaseModel):
    id: str
    order_number: str
    swap_request_id: Optional[str] = None
    requester_id: str
    owner_id: str
    requester_listing_id: str
    owner_listing_id: str
    requester_listing: Optional[ListingSnapshot] = None
    owner_listing: Optional[ListingSnapshot] = None
    status: SwapOrderStatus

    meetup_location: Optional[str] = None
    meetup_time: Optional[datetime] = None
    additional_notes: Optional[str] = None
    requirements_submitted: bool = False
    requirements_approved: bool = False

    commitment_fee: Decimal
    currency: str
    requester_paid_fee: bool = False
    owner_paid_fee: bool = False
    fee_settlement: Optional[str] = None

    requester_shipped: bool = False
    owner_shipped: bool = False
    requester_received_book: bool = False
    owner_received_book: bool = False

    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None

    created_at: datetime
    updated_at: Optional[datetime] = None
    timeline: Dict[str, datetime] = {}
    version: int = 0
    progress: Optional[SwapOrderProgress] = None


class SwapOrderCommandResponse(BaseModel):
    message: str
    already_done: bool = False
    swap_order: SwapOrderDetails
    data: Optional[Dict[str, Any]] = None
