"""Swap order engine.

Every command runs the same loop against one order document:

1. load the current snapshot,
2. plan the transition (``swap_state.plan_transition``), guards only and no writes,
3. collect the commitment fee into escrow when the transition needs it,
4. commit with a compare-and-set on ``version``,
5. on success run the post-commit effects (escrow release / refund, listing
   updates, notifications); on a lost race go back to 1.

Two near-simultaneous commands on the same order therefore never both act on
a stale snapshot: the loser re-plans against the winner's result, which is
what lets the second receipt confirmation see the first and complete the
order exactly once.
"""
import secrets
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import CLIENT_URL, CURRENCY, DEFAULT_COMMITMENT_FEE, SWAP_COMMIT_RETRIES
from errors import (
    AuthorizationError,
    ConcurrentUpdateError,
    OrderNotFoundError,
    PaymentError,
    StateConflictError,
    SwapOrderError,
    TerminalStateError,
    ValidationError,
)
from escrow_service import EscrowService
from logger import setup_logger
from models.notification_models import NotificationType
from models.payment_models import PaymentIntent, PaymentIntentStatus
from models.swap_order_models import CreateSwapOrder, SwapAction, SwapOrderStatus
from notification_service import NotificationDispatcher
from payment_service import PaystackClient, generate_reference
from swap_state import TERMINAL_STATUSES, Transition, party_of, plan_transition, viewer_progress
from utils import CENT, parse_object_id, to_minor

logger = setup_logger(__name__)

TIMELINE_FIELDS = (
    "requirements_submitted_at",
    "requirements_approved_at",
    "requester_paid_fee_at",
    "owner_paid_fee_at",
    "requester_shipped_at",
    "owner_shipped_at",
    "requester_received_book_at",
    "owner_received_book_at",
    "delivered_at",
    "completed_at",
    "cancelled_at",
)

# Gateway statuses after which the payer has to start a new payment.
# "abandoned" is left out: Paystack reports it for checkouts that can still be completed.
FAILED_GATEWAY_STATUSES = {"failed", "reversed"}

# Intent statuses a confirmed payment may still be applied from
OPEN_INTENT_STATUSES = [PaymentIntentStatus.PENDING.value, PaymentIntentStatus.FAILED.value]

# Returns the escrow hold it created, or None when an existing hold covered the fee
FeeCollector = Callable[[Dict[str, Any], Transition], Awaitable[Optional[Dict[str, Any]]]]


@dataclass
class CommandResult:
    order: Dict[str, Any]
    message: str
    already_done: bool = False
    data: Optional[Dict[str, Any]] = None


def serialize_swap_order(order: Dict[str, Any], viewer_id: Optional[str] = None) -> Dict[str, Any]:
    data = {k: v for k, v in order.items() if k not in ("_id", "history")}
    data["id"] = str(order["_id"])
    data["commitment_fee"] = Decimal(order["commitment_fee"])
    data["timeline"] = {name: order[name] for name in TIMELINE_FIELDS if order.get(name)}
    if viewer_id:
        data["progress"] = viewer_progress(order, viewer_id)
    return data


def generate_order_number(now: datetime) -> str:
    return f"SWP-{now:%Y%m%d}-{secrets.token_hex(2).upper()}"


class SwapOrderService:
    def __init__(self, database, escrow: Optional[EscrowService] = None,
                 notifier: Optional[NotificationDispatcher] = None,
                 gateway: Optional[PaystackClient] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 max_retries: int = SWAP_COMMIT_RETRIES):
        self.db = database
        self.escrow = escrow or EscrowService(database)
        self.notifier = notifier or NotificationDispatcher(database)
        self.gateway = gateway or PaystackClient()
        self.clock = clock or datetime.utcnow
        self.max_retries = max_retries

    # Queries

    async def _load(self, oid: ObjectId) -> Dict[str, Any]:
        order = await self.db.swap_orders.find_one({"_id": oid})
        if not order:
            raise OrderNotFoundError("Swap order not found")
        return order

    async def get_order(self, order_id: str, user_id: str) -> Dict[str, Any]:
        order = await self._load(parse_object_id(order_id))
        party_of(order, user_id)
        await self._settle_terminal(order)
        return order

    async def list_user_orders(self, user_id: str, status: Optional[SwapOrderStatus] = None,
                               skip: int = 0, limit: int = 20) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {"$or": [{"requester_id": user_id}, {"owner_id": user_id}]}
        if status:
            query["status"] = SwapOrderStatus(status).value

        orders = []
        cursor = self.db.swap_orders.find(query).sort("created_at", -1).skip(skip).limit(limit)
        async for order in cursor:
            orders.append(order)
        return orders

    # Creation

    async def _load_listing(self, listing_id: str, expected_owner: str) -> Dict[str, Any]:
        try:
            book = await self.db.books.find_one({"_id": ObjectId(listing_id)})
        except (InvalidId, TypeError):
            book = None
        if not book:
            raise ValidationError(f"Listing {listing_id} not found")
        if str(book.get("user_id")) != expected_owner:
            raise ValidationError(f"Listing {listing_id} does not belong to user {expected_owner}")
        if book.get("is_taken", False):
            raise ValidationError(f"Listing {listing_id} is no longer available")
        return {
            "id": str(book["_id"]),
            "user_id": str(book["user_id"]),
            "title": book.get("bookName") or book.get("title"),
        }

    async def create_swap_order(self, payload: CreateSwapOrder, actor_id: str) -> Dict[str, Any]:
        """Open a swap order for an accepted swap proposal.

        Listing ownership is checked and snapshotted here once; later listing
        edits never invalidate the order.
        """
        if payload.requester_id == payload.owner_id:
            raise ValidationError("Requester and owner must be different users")
        if actor_id not in (payload.requester_id, payload.owner_id):
            raise AuthorizationError("Only a party to the swap can open its order")

        fee = DEFAULT_COMMITMENT_FEE if payload.commitment_fee is None else payload.commitment_fee
        if fee <= 0:
            raise ValidationError("Commitment fee must be greater than zero")

        if payload.swap_request_id:
            existing = await self.db.swap_orders.find_one({"swap_request_id": payload.swap_request_id})
            if existing:
                raise StateConflictError("Order already exists for this swap request")

        requester_listing = await self._load_listing(payload.requester_listing_id, payload.requester_id)
        owner_listing = await self._load_listing(payload.owner_listing_id, payload.owner_id)

        now = self.clock()
        order = {
            "swap_request_id": payload.swap_request_id,
            "requester_id": payload.requester_id,
            "owner_id": payload.owner_id,
            "requester_listing_id": requester_listing["id"],
            "owner_listing_id": owner_listing["id"],
            "requester_listing": requester_listing,
            "owner_listing": owner_listing,
            "status": SwapOrderStatus.PENDING_REQUIREMENTS.value,
            "meetup_location": None,
            "meetup_time": None,
            "additional_notes": None,
            "requirements_submitted": False,
            "requirements_approved": False,
            "commitment_fee": str(Decimal(fee).quantize(CENT)),
            "currency": CURRENCY,
            "requester_paid_fee": False,
            "owner_paid_fee": False,
            "requester_payment_reference": None,
            "owner_payment_reference": None,
            "fee_settlement": None,
            "requester_shipped": False,
            "owner_shipped": False,
            "requester_received_book": False,
            "owner_received_book": False,
            "cancellation_reason": None,
            "cancelled_by": None,
            "created_at": now,
            "updated_at": now,
            "version": 0,
            "history": [{"action": "create", "actor_id": actor_id, "status": SwapOrderStatus.PENDING_REQUIREMENTS.value, "at": now}],
        }

        for _ in range(3):
            order["order_number"] = generate_order_number(now)
            order.pop("_id", None)
            try:
                result = await self.db.swap_orders.insert_one(order)
                break
            except DuplicateKeyError:
                logger.debug("Order number %s taken, generating another", order["order_number"])
        else:
            raise ConcurrentUpdateError("Could not allocate an order number, please retry")

        order["_id"] = result.inserted_id
        logger.info("Created swap order %s (%s) between %s and %s",
                    order["order_number"], order["_id"], payload.requester_id, payload.owner_id)

        for user_id in (payload.requester_id, payload.owner_id):
            await self._notify(order, user_id, NotificationType.SWAP_ORDER_CREATED, "Swap Order Created",
                               "Your swap order is ready. The requester should submit the meetup details.")
        return order

    # Commands

    async def submit_requirements(self, order_id: str, user_id: str, meetup_location: Optional[str],
                                  meetup_time: Optional[datetime], additional_notes: Optional[str] = None) -> CommandResult:
        return await self._execute(order_id, user_id, SwapAction.SUBMIT_REQUIREMENTS,
                                   meetup_location=meetup_location, meetup_time=meetup_time,
                                   additional_notes=additional_notes)

    async def approve_requirements(self, order_id: str, user_id: str) -> CommandResult:
        return await self._execute(order_id, user_id, SwapAction.APPROVE_REQUIREMENTS)

    async def pay_commitment_fee(self, order_id: str, user_id: str) -> CommandResult:
        """Pay the caller's commitment fee from their wallet."""

        async def collect(order, transition):
            hold, created = await self.escrow.hold_from_wallet(
                str(order["_id"]), transition.party.value, user_id, to_minor(Decimal(order["commitment_fee"])))
            transition.changes[f"{transition.party.value}_payment_reference"] = hold.get("reference")
            return hold if created else None

        return await self._execute(order_id, user_id, SwapAction.PAY_FEE, collector=collect)

    async def initialize_fee_payment(self, order_id: str, user_id: str, email: Optional[str]) -> CommandResult:
        """Start a gateway payment for the caller's commitment fee.

        Nothing on the order changes here; the fee flag is only set once the
        gateway confirms the payment through ``confirm_fee_payment``.
        """
        order = await self.get_order(order_id, user_id)
        transition = plan_transition(order, SwapAction.PAY_FEE, user_id, self.clock())
        if transition.noop:
            return CommandResult(order, transition.message, already_done=True)
        if not email:
            raise ValidationError("An email address is required for card payments")

        order_key = str(order["_id"])
        amount_minor = to_minor(Decimal(order["commitment_fee"]))
        reference = generate_reference(order_key)
        intent = PaymentIntent(
            reference=reference,
            order_id=order_key,
            party=transition.party.value,
            user_id=user_id,
            amount_minor=amount_minor,
            currency=order.get("currency", CURRENCY),
        )
        await self.db.payment_intents.insert_one(intent.model_dump())

        callback_url = f"{CLIENT_URL}/orders/{order_key}/messages?payment=success&reference={reference}"
        try:
            authorization_url = await self.gateway.initialize_payment(
                email=email,
                amount_minor=amount_minor,
                reference=reference,
                callback_url=callback_url,
                metadata={
                    "swap_order_id": order_key,
                    "user_id": user_id,
                    "party": transition.party.value,
                    "payment_type": "commitment_fee",
                },
            )
        except PaymentError:
            await self._set_intent_status(reference, PaymentIntentStatus.FAILED)
            raise

        await self.db.payment_intents.update_one(
            {"reference": reference},
            {"$set": {"authorization_url": authorization_url, "updated_at": datetime.utcnow()}},
        )
        logger.info("Initialized gateway payment %s for order %s (%s)", reference, order_key, transition.party.value)
        return CommandResult(
            order,
            "Complete the payment to record your commitment fee",
            data={"authorization_url": authorization_url, "reference": reference},
        )

    async def confirm_fee_payment(self, reference: str, user_id: Optional[str] = None,
                                  order_id: Optional[str] = None) -> CommandResult:
        """Verify a gateway payment and, once confirmed, set the payer's fee flag.

        Called from the redirect verification endpoint (with the caller's id)
        and from the gateway webhook (without one). A reference is applied at
        most once no matter how many times it is verified.
        """
        intent = await self.db.payment_intents.find_one({"reference": reference})
        if intent is None:
            raise OrderNotFoundError("Payment reference not found")
        if order_id is not None and intent["order_id"] != str(parse_object_id(order_id)):
            raise OrderNotFoundError("Payment reference not found for this swap order")
        if user_id is not None and intent["user_id"] != user_id:
            raise AuthorizationError("This payment belongs to another user")

        if intent["status"] == PaymentIntentStatus.SUCCEEDED.value:
            order = await self._load(ObjectId(intent["order_id"]))
            return CommandResult(order, "Payment already recorded", already_done=True)

        verification = await self.gateway.verify_payment(reference)
        if verification.status != "success":
            if verification.status in FAILED_GATEWAY_STATUSES:
                await self._set_intent_status(reference, PaymentIntentStatus.FAILED)
            raise PaymentError(f"Payment not completed (status: {verification.status})")

        payer_id = intent["user_id"]
        order_key = intent["order_id"]
        amount_minor = intent["amount_minor"]
        currency = intent.get("currency") or CURRENCY
        if verification.currency and verification.currency != currency:
            if await self._close_intent(reference, "currency_mismatch"):
                logger.error("Payment %s settled in %s instead of %s; needs manual reconciliation",
                             reference, verification.currency, currency)
            raise PaymentError("Payment currency does not match the commitment fee")
        if verification.amount_minor < amount_minor:
            if await self._close_intent(reference, "underpaid"):
                await self.escrow.refund_payment(payer_id, verification.amount_minor, reference, order_key,
                                                 "Underpaid commitment fee returned")
            raise PaymentError("Paid amount does not cover the commitment fee")

        claimed = await self.db.payment_intents.find_one_and_update(
            {"reference": reference, "status": {"$in": OPEN_INTENT_STATUSES}, "resolution": None},
            {"$set": {
                "status": PaymentIntentStatus.SUCCEEDED.value,
                "paid_minor": verification.amount_minor,
                "updated_at": datetime.utcnow(),
            }},
        )
        if claimed is None:
            current = await self.db.payment_intents.find_one({"reference": reference})
            if current and current["status"] == PaymentIntentStatus.SUCCEEDED.value:
                order = await self._load(ObjectId(order_key))
                return CommandResult(order, "Payment already recorded", already_done=True)
            raise PaymentError("This payment can no longer be applied to the swap order")

        party = intent["party"]
        excess_minor = verification.amount_minor - amount_minor

        async def collect(order, transition):
            hold, created = await self.escrow.hold_from_gateway(order_key, party, payer_id, amount_minor, reference)
            transition.changes[f"{party}_payment_reference"] = hold.get("reference")
            return hold if created else None

        try:
            result = await self._execute(order_key, payer_id, SwapAction.PAY_FEE,
                                         collector=collect, reference=reference)
        except TerminalStateError:
            hold = await self.escrow.find_hold(order_key, party)
            if hold is None or hold.get("reference") != reference:
                await self.escrow.refund_payment(payer_id, amount_minor, reference, order_key,
                                                 "Commitment fee returned: swap order already closed")
            await self._return_excess(payer_id, excess_minor, reference, order_key)
            raise
        except ConcurrentUpdateError:
            # hand the reference back so the next verification retries the commit
            await self._set_intent_status(reference, PaymentIntentStatus.PENDING, expected=PaymentIntentStatus.SUCCEEDED)
            raise

        if result.already_done:
            # fee was already covered by another payment; hand this one back
            await self.escrow.hold_from_gateway(order_key, party, payer_id, amount_minor, reference)
        await self._return_excess(payer_id, excess_minor, reference, order_key)
        return result

    async def mark_dispatched(self, order_id: str, user_id: str) -> CommandResult:
        return await self._execute(order_id, user_id, SwapAction.DISPATCH)

    async def confirm_receipt(self, order_id: str, user_id: str) -> CommandResult:
        return await self._execute(order_id, user_id, SwapAction.CONFIRM_RECEIPT)

    async def cancel(self, order_id: str, user_id: str, reason: Optional[str]) -> CommandResult:
        return await self._execute(order_id, user_id, SwapAction.CANCEL, reason=reason)

    # Engine

    async def _execute(self, order_id: str, user_id: str, action: SwapAction,
                       collector: Optional[FeeCollector] = None, **params) -> CommandResult:
        oid = parse_object_id(order_id)
        created_hold = None

        for attempt in range(1, self.max_retries + 1):
            order = await self._load(oid)
            now = self.clock()
            try:
                transition = plan_transition(order, action, user_id, now, **params)
            except TerminalStateError:
                if created_hold is not None:
                    # closed while our fee was being collected
                    await self._return_stray_hold(order, created_hold)
                await self._settle_terminal(order)
                raise
            except SwapOrderError as e:
                logger.info("Rejected %s on swap order %s by %s: %s", action.value, oid, user_id, e)
                raise

            if transition.noop:
                return CommandResult(order, transition.message, already_done=True)

            if transition.collect_fee:
                if collector is None:
                    raise PaymentError("No payment method given for the commitment fee")
                created_hold = await collector(order, transition) or created_hold

            updated = await self._commit(order, transition, now)
            if updated is None:
                logger.debug("Swap order %s changed during %s (attempt %s), retrying", oid, action.value, attempt)
                continue

            logger.info("Swap order %s: %s by %s (%s -> %s)", oid, action.value, user_id,
                        order["status"], updated["status"])
            await self._after_commit(updated, transition)
            return CommandResult(updated, transition.message)

        raise ConcurrentUpdateError("The swap order is being updated by another request, please retry")

    async def _commit(self, order: Dict[str, Any], transition: Transition, now: datetime) -> Optional[Dict[str, Any]]:
        new_status = transition.new_status or SwapOrderStatus(order["status"])
        entry = {
            "action": transition.action.value,
            "actor_id": transition.actor_id,
            "party": transition.party.value,
            "status": new_status.value,
            "at": now,
        }
        return await self.db.swap_orders.find_one_and_update(
            {"_id": order["_id"], "version": order["version"]},
            {
                "$set": {**transition.changes, "updated_at": now},
                "$inc": {"version": 1},
                "$push": {"history": entry},
            },
            return_document=ReturnDocument.AFTER,
        )

    async def _after_commit(self, order: Dict[str, Any], transition: Transition) -> None:
        order_key = str(order["_id"])
        # The transition is committed; effects below are idempotent and only logged on failure
        try:
            if transition.release_fees:
                await self.escrow.release_order(order_key)
                await self._mark_listings_taken(order)
            if transition.refund_fees:
                await self.escrow.refund_order(order_key)
        except Exception:
            logger.exception("Escrow settlement for swap order %s failed; retried on next access", order_key)

        for event in transition.events:
            await self._notify(order, event.user_id, event.type, event.title, event.message)

    async def _settle_terminal(self, order: Dict[str, Any]) -> None:
        """Finish the escrow sweep of a closed order whose post-commit settlement did not complete."""
        status = SwapOrderStatus(order["status"])
        if status not in TERMINAL_STATUSES:
            return
        order_key = str(order["_id"])
        if not await self.escrow.has_held(order_key):
            return

        logger.warning("Swap order %s is %s with fees still held, settling now", order_key, status.value)
        if status == SwapOrderStatus.COMPLETED:
            await self.escrow.release_order(order_key)
            await self._mark_listings_taken(order)
        else:
            await self.escrow.refund_order(order_key)

    async def _return_stray_hold(self, order: Dict[str, Any], hold: Dict[str, Any]) -> None:
        # A cancelled order refunds every hold; a completed one keeps the hold its fee flag points at
        if order["status"] != SwapOrderStatus.COMPLETED.value:
            return
        if order.get(f"{hold['party']}_payment_reference") == hold.get("reference"):
            return
        hold = await self.escrow.find_hold(hold["order_id"], hold["party"])
        await self.escrow.refund_hold(hold, f"Commitment fee returned: swap order {order['_id']} already completed")

    async def _mark_listings_taken(self, order: Dict[str, Any]) -> None:
        listing_ids = [ObjectId(order["requester_listing_id"]), ObjectId(order["owner_listing_id"])]
        await self.db.books.update_many({"_id": {"$in": listing_ids}}, {"$set": {"is_taken": True}})

    async def _notify(self, order, user_id, type, title, message) -> None:
        try:
            await self.notifier.notify(
                user_id, type, title, message,
                data={"swap_order_id": str(order["_id"]), "order_number": order.get("order_number")},
            )
        except Exception:
            logger.exception("Failed to notify %s about swap order %s", user_id, order["_id"])

    async def _set_intent_status(self, reference: str, status: PaymentIntentStatus,
                                 expected: PaymentIntentStatus = PaymentIntentStatus.PENDING) -> None:
        await self.db.payment_intents.update_one(
            {"reference": reference, "status": expected.value},
            {"$set": {"status": status.value, "updated_at": datetime.utcnow()}},
        )

    async def _close_intent(self, reference: str, resolution: str) -> bool:
        """Fail an intent for good; True only for the call that closed it."""
        closed = await self.db.payment_intents.find_one_and_update(
            {"reference": reference, "status": {"$in": OPEN_INTENT_STATUSES}, "resolution": None},
            {"$set": {
                "status": PaymentIntentStatus.FAILED.value,
                "resolution": resolution,
                "updated_at": datetime.utcnow(),
            }},
        )
        return closed is not None

    async def _return_excess(self, payer_id: str, excess_minor: int, reference: str, order_key: str) -> None:
        if excess_minor > 0:
            await self.escrow.refund_payment(payer_id, excess_minor, reference, order_key,
                                             "Commitment fee overpayment returned")
