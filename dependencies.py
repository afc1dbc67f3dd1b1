from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from dataBase import db
from errors import AuthenticationError
from escrow_service import EscrowService
from notification_service import NotificationDispatcher
from payment_service import PaystackClient
from swap_order_service import SwapOrderService
from utils import verify_token

bearer_scheme = HTTPBearer(auto_error=False)

_gateway = PaystackClient()


def get_payment_gateway() -> PaystackClient:
    return _gateway


def get_swap_order_service(gateway: PaystackClient = Depends(get_payment_gateway)) -> SwapOrderService:
    return SwapOrderService(
        db,
        escrow=EscrowService(db),
        notifier=NotificationDispatcher(db),
        gateway=gateway,
    )


def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """Resolve the authenticated session to a user id"""
    if credentials is None:
        raise AuthenticationError("Authentication required")
    user_id = verify_token(credentials.credentials)
    if not user_id:
        raise AuthenticationError("Invalid or expired token")
    return user_id
