from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional

from dependencies import get_current_user_id, get_swap_order_service
from errors import SwapOrderError
from logger import setup_logger
from models.swap_order_models import (
    CancelSwapOrder,
    CreateSwapOrder,
    PayCommitmentFee,
    PaymentMethod,
    SubmitRequirements,
    SwapOrderCommandResponse,
    SwapOrderStatus,
)
from swap_order_service import CommandResult, SwapOrderService, serialize_swap_order

router = APIRouter(prefix="/swap-orders", tags=["swap-orders"])
logger = setup_logger(__name__)


def command_response(result: CommandResult, user_id: str) -> dict:
    return {
        "message": result.message,
        "already_done": result.already_done,
        "swap_order": serialize_swap_order(result.order, user_id),
        "data": result.data,
    }


@router.post("", response_model=SwapOrderCommandResponse)
async def create_swap_order(
    payload: CreateSwapOrder,
    user_id: str = Depends(get_current_user_id),
    service: SwapOrderService = Depends(get_swap_order_service),
):
    try:
        order = await service.create_swap_order(payload, user_id)
        return {
            "message": "Swap order created successfully",
            "swap_order": serialize_swap_order(order, user_id),
        }
    except SwapOrderError:
        raise
    except Exception as e:
        logger.exception("Create swap order failed")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("")
async def get_user_swap_orders(
    status: Optional[SwapOrderStatus] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    service: SwapOrderService = Depends(get_swap_order_service),
):
    try:
        orders = await service.list_user_orders(user_id, status=status, skip=skip, limit=limit)
        return {
            "message": f"Found {len(orders)} swap orders",
            "total_orders": len(orders),
            "orders": [serialize_swap_order(order, user_id) for order in orders],
        }
    except SwapOrderError:
        raise
    except Exception as e:
        logger.exception("Fetching swap orders failed")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{order_id}")
async def get_swap_order(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SwapOrderService = Depends(get_swap_order_service),
):
    try:
        order = await service.get_order(order_id, user_id)
        return {"swap_order": serialize_swap_order(order, user_id)}
    except SwapOrderError:
        raise
    except Exception as e:
        logger.exception("Fetching swap order %s failed", order_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{order_id}/requirements", response_model=SwapOrderCommandResponse)
async def submit_requirements(
    order_id: str,
    requirements: SubmitRequirements,
    user_id: str = Depends(get_current_user_id),
    service: SwapOrderService = Depends(get_swap_order_service),
):
    try:
        result = await service.submit_requirements(
            order_id,
            user_id,
            meetup_location=requirements.meetup_location,
            meetup_time=requirements.meetup_time,
            additional_notes=requirements.additional_notes,
        )
        return command_response(result, user_id)
    except SwapOrderError:
        raise
    except Exception as e:
        logger.exception("Submit requirements failed for %s", order_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{order_id}/approve-requirements", response_model=SwapOrderCommandResponse)
async def approve_requirements(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SwapOrderService = Depends(get_swap_order_service),
):
    try:
        result = await service.approve_requirements(order_id, user_id)
        return command_response(result, user_id)
    except SwapOrderError:
        raise
    except Exception as e:
        logger.exception("Approve requirements failed for %s", order_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{order_id}/pay-commitment-fee", response_model=SwapOrderCommandResponse)
async def pay_commitment_fee(
    order_id: str,
    payment: Optional[PayCommitmentFee] = None,
    user_id: str = Depends(get_current_user_id),
    service: SwapOrderService = Depends(get_swap_order_service),
):
    payment = payment or PayCommitmentFee()
    try:
        if payment.method == PaymentMethod.PAYSTACK:
            result = await service.initialize_fee_payment(order_id, user_id, payment.email)
        else:
            result = await service.pay_commitment_fee(order_id, user_id)
        return command_response(result, user_id)
    except SwapOrderError:
        raise
    except Exception as e:
        logger.exception("Commitment fee payment failed for %s", order_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{order_id}/pay-commitment-fee/verify/{reference}", response_model=SwapOrderCommandResponse)
async def verify_commitment_fee(
    order_id: str,
    reference: str,
    user_id: str = Depends(get_current_user_id),
    service: SwapOrderService = Depends(get_swap_order_service),
):
    try:
        result = await service.confirm_fee_payment(reference, user_id=user_id, order_id=order_id)
        return command_response(result, user_id)
    except SwapOrderError:
        raise
    except Exception as e:
        logger.exception("Verifying payment %s failed", reference)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{order_id}/dispatch", response_model=SwapOrderCommandResponse)
async def mark_dispatched(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SwapOrderService = Depends(get_swap_order_service),
):
    try:
        result = await service.mark_dispatched(order_id, user_id)
        return command_response(result, user_id)
    except SwapOrderError:
        raise
    except Exception as e:
        logger.exception("Dispatch failed for %s", order_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{order_id}/confirm-delivery", response_model=SwapOrderCommandResponse)
async def confirm_delivery(
    order_id: str,
    user_id: str = Depends(get_current_user_id),
    service: SwapOrderService = Depends(get_swap_order_service),
):
    try:
        result = await service.confirm_receipt(order_id, user_id)
        return command_response(result, user_id)
    except SwapOrderError:
        raise
    except Exception as e:
        logger.exception("Confirm delivery failed for %s", order_id)
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{order_id}/cancel", response_model=SwapOrderCommandResponse)
async def cancel_swap_order(
    order_id: str,
    cancellation: CancelSwapOrder,
    user_id: str = Depends(get_current_user_id),
    service: SwapOrderService = Depends(get_swap_order_service),
):
    try:
        result = await service.cancel(order_id, user_id, cancellation.reason)
        return command_response(result, user_id)
    except SwapOrderError:
        raise
    except Exception as e:
        logger.exception("Cancel failed for %s", order_id)
        raise HTTPException(status_code=500, detail=str(e))
