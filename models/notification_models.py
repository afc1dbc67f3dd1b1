from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Dict, Any
from datetime import datetime
from enum import Enum

class NotificationType(str, Enum):
    SWAP_ORDER_CREATED = "swap_order_created"
    REQUIREMENTS_SUBMITTED = "requirements_submitted"
    REQUIREMENTS_APPROVED = "requirements_approved"
    COMMITMENT_FEE_PAID = "commitment_fee_paid"
    FEES_COMPLETE = "fees_complete"
    BOOK_DISPATCHED = "book_dispatched"
    BOTH_DISPATCHED = "both_dispatched"
    BOOK_RECEIVED = "book_received"
    SWAP_COMPLETED = "swap_completed"
    SWAP_CANCELLED = "swap_cancelled"

class Notification(BaseModel):
    user_id: str
    type: NotificationType
    title: str
    message: str
    data: Optional[Dict[str, Any]] = None
    read: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)

    model_config = ConfigDict(use_enum_values=True)

class NotificationPreferences(BaseModel):
    user_id: str
    email_notifications: bool = True
    push_notifications: bool = True
    notification_types: Dict[NotificationType, bool] = {}
