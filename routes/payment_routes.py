import json
from fastapi import APIRouter, Depends, HTTPException, Request

from dependencies import get_payment_gateway, get_swap_order_service
from errors import OrderNotFoundError, TerminalStateError
from logger import setup_logger
from payment_service import PaystackClient
from swap_order_service import SwapOrderService

router = APIRouter(prefix="/payments", tags=["payments"])
logger = setup_logger(__name__)


@router.post("/paystack/webhook")
async def paystack_webhook(
    request: Request,
    gateway: PaystackClient = Depends(get_payment_gateway),
    service: SwapOrderService = Depends(get_swap_order_service),
):
    """Gateway callback confirming a commitment fee charge.

    Payment and concurrency failures propagate as 5xx/409 so the gateway
    retries delivery; closed orders and unknown references are acknowledged.
    """
    payload = await request.body()
    if not gateway.verify_webhook_signature(payload, request.headers.get("x-paystack-signature")):
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        event = json.loads(payload or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Malformed webhook payload")

    data = event.get("data") or {}
    metadata = data.get("metadata")
    if event.get("event") != "charge.success" or not isinstance(metadata, dict) \
            or metadata.get("payment_type") != "commitment_fee":
        return {"received": True, "handled": False}

    reference = data.get("reference")
    if not reference:
        raise HTTPException(status_code=400, detail="Payment reference is required")

    try:
        result = await service.confirm_fee_payment(reference)
    except (OrderNotFoundError, TerminalStateError) as e:
        logger.warning("Webhook for %s not applied: %s", reference, e.message)
        return {"received": True, "handled": False, "detail": e.message}

    return {"received": True, "handled": True, "already_done": result.already_done}
