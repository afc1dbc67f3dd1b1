"""Swap order state machine.

Pure planning layer: given a stored order document, an action and the calling
user, work out whether the action is allowed and what it changes. Nothing in
here touches the database, the wallet ledger or the notification store; the
engine in ``swap_order_service`` applies the returned ``Transition``.

Lifecycle::

    pending_requirements -> requirements_submitted -> in_progress -> delivered -> completed
                                  (any non-terminal status) -> cancelled

Fee payment and dispatch are per-party sub-tracks inside ``in_progress`` (and
``delivered``, which only means one receipt confirmation is in). Every per-party
flag moves false -> true exactly once; asking for a flag that is already set
is reported back as a no-op instead of an error so client retries are safe.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from errors import (
    AuthorizationError,
    StateConflictError,
    TerminalStateError,
    ValidationError,
)
from models.notification_models import NotificationType
from models.swap_order_models import Party, SwapAction, SwapOrderProgress, SwapOrderStatus
from utils import as_utc_naive

TERMINAL_STATUSES = frozenset({SwapOrderStatus.COMPLETED, SwapOrderStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({SwapOrderStatus.IN_PROGRESS, SwapOrderStatus.DELIVERED})
ACTIVE_ACTIONS = frozenset({SwapAction.PAY_FEE, SwapAction.DISPATCH, SwapAction.CONFIRM_RECEIPT})

ALLOWED_FROM = {
    SwapAction.SUBMIT_REQUIREMENTS: frozenset({SwapOrderStatus.PENDING_REQUIREMENTS}),
    SwapAction.APPROVE_REQUIREMENTS: frozenset({SwapOrderStatus.REQUIREMENTS_SUBMITTED}),
    SwapAction.PAY_FEE: ACTIVE_STATUSES,
    SwapAction.DISPATCH: ACTIVE_STATUSES,
    SwapAction.CONFIRM_RECEIPT: ACTIVE_STATUSES,
    SwapAction.CANCEL: frozenset(SwapOrderStatus) - TERMINAL_STATUSES,
}

# Actions missing here may be taken by either party
ACTION_ROLES = {
    SwapAction.SUBMIT_REQUIREMENTS: Party.REQUESTER,
    SwapAction.APPROVE_REQUIREMENTS: Party.OWNER,
}

ACTION_LABELS = {
    SwapAction.SUBMIT_REQUIREMENTS: "submit the meetup requirements",
    SwapAction.APPROVE_REQUIREMENTS: "approve the meetup requirements",
    SwapAction.PAY_FEE: "paying the commitment fee",
    SwapAction.DISPATCH: "dispatching your book",
    SwapAction.CONFIRM_RECEIPT: "confirming receipt",
    SwapAction.CANCEL: "cancelling",
}


def fee_flag(party: Party) -> str:
    return f"{party.value}_paid_fee"


def ship_flag(party: Party) -> str:
    return f"{party.value}_shipped"


def receive_flag(party: Party) -> str:
    return f"{party.value}_received_book"


def other_party(party: Party) -> Party:
    return Party.OWNER if party == Party.REQUESTER else Party.REQUESTER


def party_id(order: Dict[str, Any], party: Party) -> str:
    return order[f"{party.value}_id"]


def party_of(order: Dict[str, Any], user_id: str) -> Party:
    if user_id == order["requester_id"]:
        return Party.REQUESTER
    if user_id == order["owner_id"]:
        return Party.OWNER
    raise AuthorizationError("You are not a party to this swap order")


@dataclass
class NotificationEvent:
    user_id: str
    type: NotificationType
    title: str
    message: str


@dataclass
class Transition:
    action: SwapAction
    party: Party
    actor_id: str
    changes: Dict[str, Any] = field(default_factory=dict)
    events: List[NotificationEvent] = field(default_factory=list)
    message: str = ""
    noop: bool = False
    collect_fee: bool = False
    release_fees: bool = False
    refund_fees: bool = False

    @property
    def new_status(self) -> Optional[SwapOrderStatus]:
        status = self.changes.get("status")
        return SwapOrderStatus(status) if status else None


def _noop(action: SwapAction, party: Party, actor_id: str, message: str) -> Transition:
    return Transition(action=action, party=party, actor_id=actor_id, message=message, noop=True)


def _require_status(action: SwapAction, status: SwapOrderStatus) -> None:
    if status in ALLOWED_FROM[action]:
        return
    if action == SwapAction.APPROVE_REQUIREMENTS and status == SwapOrderStatus.PENDING_REQUIREMENTS:
        raise StateConflictError("Requirements have not been submitted yet")
    if action in ACTIVE_ACTIONS and status in (
        SwapOrderStatus.PENDING_REQUIREMENTS,
        SwapOrderStatus.REQUIREMENTS_SUBMITTED,
    ):
        raise StateConflictError(f"Requirements must be approved before {ACTION_LABELS[action]}")
    raise StateConflictError(f"Cannot {action.value.replace('_', ' ')} while the order is {status.value}")


def _same_instant(a: Optional[datetime], b: Optional[datetime]) -> bool:
    # Mongo keeps millisecond precision
    if a is None or b is None:
        return a is b
    return abs(as_utc_naive(a) - as_utc_naive(b)) < timedelta(milliseconds=1)


def _plan_submit_requirements(order, status, party, actor_id, now, meetup_location=None,
                              meetup_time=None, additional_notes=None, **_):
    action = SwapAction.SUBMIT_REQUIREMENTS
    location = (meetup_location or "").strip()
    if not location:
        raise ValidationError("Meetup location is required")
    if meetup_time is None:
        raise ValidationError("Meetup time is required")
    meetup_time = as_utc_naive(meetup_time)
    notes = (additional_notes or "").strip() or None

    if order.get("requirements_submitted"):
        if (
            order.get("meetup_location") == location
            and _same_instant(order.get("meetup_time"), meetup_time)
            and order.get("additional_notes") == notes
        ):
            return _noop(action, party, actor_id, "Requirements already submitted")
        raise StateConflictError("Requirements already submitted; cancel the order to renegotiate")

    if meetup_time < now:
        raise ValidationError("Meetup time cannot be in the past")
    _require_status(action, status)

    return Transition(
        action=action,
        party=party,
        actor_id=actor_id,
        changes={
            "status": SwapOrderStatus.REQUIREMENTS_SUBMITTED.value,
            "meetup_location": location,
            "meetup_time": meetup_time,
            "additional_notes": notes,
            "requirements_submitted": True,
            "requirements_submitted_at": now,
        },
        events=[
            NotificationEvent(
                user_id=order["owner_id"],
                type=NotificationType.REQUIREMENTS_SUBMITTED,
                title="Requirements Submitted",
                message="The requester has submitted meetup details. Please review and approve.",
            )
        ],
        message="Requirements submitted successfully",
    )


def _plan_approve_requirements(order, status, party, actor_id, now, **_):
    action = SwapAction.APPROVE_REQUIREMENTS
    if order.get("requirements_approved"):
        return _noop(action, party, actor_id, "Requirements already approved")
    _require_status(action, status)
    if not order.get("requirements_submitted"):
        raise StateConflictError("Requirements have not been submitted yet")

    return Transition(
        action=action,
        party=party,
        actor_id=actor_id,
        changes={
            "status": SwapOrderStatus.IN_PROGRESS.value,
            "requirements_approved": True,
            "requirements_approved_at": now,
        },
        events=[
            NotificationEvent(
                user_id=order["requester_id"],
                type=NotificationType.REQUIREMENTS_APPROVED,
                title="Requirements Approved",
                message="The owner approved the meetup details. Both parties can now pay the commitment fee.",
            )
        ],
        message="Requirements approved successfully",
    )


def _plan_pay_fee(order, status, party, actor_id, now, reference=None, **_):
    action = SwapAction.PAY_FEE
    flag = fee_flag(party)
    if order.get(flag):
        return _noop(action, party, actor_id, "Commitment fee already paid")
    _require_status(action, status)

    changes = {flag: True, f"{flag}_at": now}
    if reference:
        changes[f"{party.value}_payment_reference"] = reference

    counterpart = other_party(party)
    if order.get(fee_flag(counterpart)):
        events = [
            NotificationEvent(
                user_id=party_id(order, p),
                type=NotificationType.FEES_COMPLETE,
                title="Commitment Fees Complete",
                message="Both commitment fees are in. You can now dispatch your book.",
            )
            for p in (Party.REQUESTER, Party.OWNER)
        ]
        message = "Both parties have paid. You can now dispatch your book."
    else:
        events = [
            NotificationEvent(
                user_id=party_id(order, counterpart),
                type=NotificationType.COMMITMENT_FEE_PAID,
                title="Commitment Fee Paid",
                message="The other party has paid their commitment fee.",
            )
        ]
        message = "Payment recorded. Waiting for the other party to pay their commitment fee."

    return Transition(
        action=action,
        party=party,
        actor_id=actor_id,
        changes=changes,
        events=events,
        message=message,
        collect_fee=True,
    )


def _plan_dispatch(order, status, party, actor_id, now, **_):
    action = SwapAction.DISPATCH
    flag = ship_flag(party)
    if order.get(flag):
        return _noop(action, party, actor_id, "You have already marked your book as dispatched")
    _require_status(action, status)
    if not order.get(fee_flag(party)):
        raise StateConflictError("Pay your commitment fee before dispatching your book")

    counterpart = other_party(party)
    events = [
        NotificationEvent(
            user_id=party_id(order, counterpart),
            type=NotificationType.BOOK_DISPATCHED,
            title="Book Dispatched",
            message="The other party has dispatched their book. Confirm once you receive it.",
        )
    ]
    message = "Book marked as dispatched"
    if order.get(ship_flag(counterpart)):
        events.extend(
            NotificationEvent(
                user_id=party_id(order, p),
                type=NotificationType.BOTH_DISPATCHED,
                title="Both Books Dispatched",
                message="Both books are on their way.",
            )
            for p in (Party.REQUESTER, Party.OWNER)
        )
        message = "Book marked as dispatched. Both books are on their way."

    return Transition(
        action=action,
        party=party,
        actor_id=actor_id,
        changes={flag: True, f"{flag}_at": now},
        events=events,
        message=message,
    )


def _plan_confirm_receipt(order, status, party, actor_id, now, **_):
    action = SwapAction.CONFIRM_RECEIPT
    flag = receive_flag(party)
    if order.get(flag):
        return _noop(action, party, actor_id, "You have already confirmed receiving your book")
    _require_status(action, status)

    counterpart = other_party(party)
    if not order.get(ship_flag(counterpart)):
        raise StateConflictError("Waiting for the other party to dispatch their book")

    changes = {flag: True, f"{flag}_at": now}
    if order.get(receive_flag(counterpart)):
        changes.update(
            status=SwapOrderStatus.COMPLETED.value,
            completed_at=now,
            fee_settlement="released",
        )
        return Transition(
            action=action,
            party=party,
            actor_id=actor_id,
            changes=changes,
            events=[
                NotificationEvent(
                    user_id=party_id(order, p),
                    type=NotificationType.SWAP_COMPLETED,
                    title="Swap Completed",
                    message="Both parties confirmed receiving their books. Your swap is complete.",
                )
                for p in (Party.REQUESTER, Party.OWNER)
            ],
            message="Swap completed successfully!",
            release_fees=True,
        )

    changes.update(status=SwapOrderStatus.DELIVERED.value, delivered_at=now)
    return Transition(
        action=action,
        party=party,
        actor_id=actor_id,
        changes=changes,
        events=[
            NotificationEvent(
                user_id=party_id(order, counterpart),
                type=NotificationType.BOOK_RECEIVED,
                title="Book Received",
                message="The other party confirmed receiving their book. Please confirm once you receive yours.",
            )
        ],
        message="Receipt confirmed. Waiting for the other party to confirm.",
    )


def _plan_cancel(order, status, party, actor_id, now, reason=None, **_):
    action = SwapAction.CANCEL
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Cancellation reason is required")
    _require_status(action, status)

    changes = {
        "status": SwapOrderStatus.CANCELLED.value,
        "cancellation_reason": reason,
        "cancelled_by": actor_id,
        "cancelled_at": now,
    }
    if order.get(fee_flag(Party.REQUESTER)) or order.get(fee_flag(Party.OWNER)):
        changes["fee_settlement"] = "refunded"

    return Transition(
        action=action,
        party=party,
        actor_id=actor_id,
        changes=changes,
        events=[
            NotificationEvent(
                user_id=party_id(order, other_party(party)),
                type=NotificationType.SWAP_CANCELLED,
                title="Swap Order Cancelled",
                message=f"The swap order has been cancelled. Reason: {reason}",
            )
        ],
        message="Swap order cancelled successfully",
        # always sweep: a fee collected by a request that lost the race still has to go back
        refund_fees=True,
    )


_PLANNERS: Dict[SwapAction, Callable[..., Transition]] = {
    SwapAction.SUBMIT_REQUIREMENTS: _plan_submit_requirements,
    SwapAction.APPROVE_REQUIREMENTS: _plan_approve_requirements,
    SwapAction.PAY_FEE: _plan_pay_fee,
    SwapAction.DISPATCH: _plan_dispatch,
    SwapAction.CONFIRM_RECEIPT: _plan_confirm_receipt,
    SwapAction.CANCEL: _plan_cancel,
}


def plan_transition(order: Dict[str, Any], action: SwapAction, actor_id: str,
                    now: datetime, **params) -> Transition:
    """Check every guard for ``action`` and return the resulting transition.

    Raises AuthorizationError, TerminalStateError, ValidationError or
    StateConflictError without side effects. Already-satisfied actions come
    back with ``noop=True``.
    """
    party = party_of(order, actor_id)
    status = SwapOrderStatus(order["status"])
    if status in TERMINAL_STATUSES:
        raise TerminalStateError(f"Swap order is already {status.value}; no further changes are allowed")

    required_role = ACTION_ROLES.get(action)
    if required_role is not None and party != required_role:
        raise AuthorizationError(f"Only the {required_role.value} can {ACTION_LABELS[action]}")

    return _PLANNERS[action](order, status, party, actor_id, now, **params)


def viewer_progress(order: Dict[str, Any], user_id: str) -> SwapOrderProgress:
    """Partial-progress view of the order from one party's side."""
    party = party_of(order, user_id)
    counterpart = other_party(party)
    status = SwapOrderStatus(order["status"])

    mine = {name: bool(order.get(flag(party))) for name, flag in
            (("fee", fee_flag), ("ship", ship_flag), ("recv", receive_flag))}
    theirs = {name: bool(order.get(flag(counterpart))) for name, flag in
              (("fee", fee_flag), ("ship", ship_flag), ("recv", receive_flag))}

    actions: List[SwapAction] = []
    waiting_for = None
    if status not in TERMINAL_STATUSES:
        if status == SwapOrderStatus.PENDING_REQUIREMENTS:
            if party == Party.REQUESTER:
                actions.append(SwapAction.SUBMIT_REQUIREMENTS)
            else:
                waiting_for = "Waiting for the requester to submit meetup details"
        elif status == SwapOrderStatus.REQUIREMENTS_SUBMITTED:
            if party == Party.OWNER:
                actions.append(SwapAction.APPROVE_REQUIREMENTS)
            else:
                waiting_for = "Waiting for the owner to approve the meetup details"
        else:
            if not mine["fee"]:
                actions.append(SwapAction.PAY_FEE)
            elif not mine["ship"]:
                actions.append(SwapAction.DISPATCH)
            if theirs["ship"] and not mine["recv"]:
                actions.append(SwapAction.CONFIRM_RECEIPT)

            if not theirs["fee"]:
                waiting_for = "Waiting for the other party to pay their commitment fee"
            elif not theirs["ship"]:
                waiting_for = "Waiting for the other party to dispatch their book"
            elif mine["recv"] and not theirs["recv"]:
                waiting_for = "Waiting for the other party to confirm receipt"
        actions.append(SwapAction.CANCEL)

    return SwapOrderProgress(
        role=party,
        counterpart_id=party_id(order, counterpart),
        my_fee_paid=mine["fee"],
        counterpart_fee_paid=theirs["fee"],
        my_book_dispatched=mine["ship"],
        counterpart_book_dispatched=theirs["ship"],
        my_book_received=mine["recv"],
        counterpart_book_received=theirs["recv"],
        available_actions=actions,
        waiting_for=waiting_for,
    )
