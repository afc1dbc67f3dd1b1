from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from errors import AuthorizationError, StateConflictError, TerminalStateError, ValidationError
from models.swap_order_models import SwapAction, SwapOrderStatus
from swap_state import plan_transition, viewer_progress

REQUESTER = "requester-1"
OWNER = "owner-1"
NOW = datetime(2026, 3, 1, 9, 0)
MEETUP = NOW + timedelta(days=3)


def make_order(**overrides):
    order = {
        "_id": ObjectId(),
        "order_number": "SWP-20260301-ABCD",
        "requester_id": REQUESTER,
        "owner_id": OWNER,
        "status": SwapOrderStatus.PENDING_REQUIREMENTS.value,
        "meetup_location": None,
        "meetup_time": None,
        "additional_notes": None,
        "requirements_submitted": False,
        "requirements_approved": False,
        "commitment_fee": "200.00",
        "requester_paid_fee": False,
        "owner_paid_fee": False,
        "requester_shipped": False,
        "owner_shipped": False,
        "requester_received_book": False,
        "owner_received_book": False,
        "version": 0,
    }
    order.update(overrides)
    return order


def active_order(**overrides):
    fields = dict(
        status=SwapOrderStatus.IN_PROGRESS.value,
        meetup_location="Library",
        meetup_time=MEETUP,
        requirements_submitted=True,
        requirements_approved=True,
    )
    fields.update(overrides)
    return make_order(**fields)


def shipped_order(**overrides):
    fields = dict(requester_paid_fee=True, owner_paid_fee=True, requester_shipped=True, owner_shipped=True)
    fields.update(overrides)
    return active_order(**fields)


def test_submit_requirements_moves_to_submitted():
    transition = plan_transition(make_order(), SwapAction.SUBMIT_REQUIREMENTS, REQUESTER, NOW,
                                 meetup_location="  Library  ", meetup_time=MEETUP, additional_notes="")

    assert transition.new_status == SwapOrderStatus.REQUIREMENTS_SUBMITTED
    assert transition.changes["meetup_location"] == "Library"
    assert transition.changes["additional_notes"] is None
    assert transition.changes["requirements_submitted_at"] == NOW
    assert [event.user_id for event in transition.events] == [OWNER]


def test_non_party_is_rejected():
    with pytest.raises(AuthorizationError):
        plan_transition(make_order(), SwapAction.CANCEL, "stranger", NOW, reason="No longer needed")


def test_owner_cannot_submit_requirements():
    with pytest.raises(AuthorizationError):
        plan_transition(make_order(), SwapAction.SUBMIT_REQUIREMENTS, OWNER, NOW,
                        meetup_location="Library", meetup_time=MEETUP)


def test_requester_cannot_approve_requirements():
    order = make_order(status=SwapOrderStatus.REQUIREMENTS_SUBMITTED.value, requirements_submitted=True)
    with pytest.raises(AuthorizationError):
        plan_transition(order, SwapAction.APPROVE_REQUIREMENTS, REQUESTER, NOW)


@pytest.mark.parametrize("location,meetup_time", [
    ("", MEETUP),
    ("   ", MEETUP),
    ("Library", None),
    ("Library", NOW - timedelta(hours=1)),
])
def test_submit_requirements_validation(location, meetup_time):
    with pytest.raises(ValidationError):
        plan_transition(make_order(), SwapAction.SUBMIT_REQUIREMENTS, REQUESTER, NOW,
                        meetup_location=location, meetup_time=meetup_time)


def test_identical_resubmission_is_noop():
    order = make_order(status=SwapOrderStatus.REQUIREMENTS_SUBMITTED.value, requirements_submitted=True,
                       meetup_location="Library", meetup_time=MEETUP)

    transition = plan_transition(order, SwapAction.SUBMIT_REQUIREMENTS, REQUESTER, NOW,
                                 meetup_location="Library", meetup_time=MEETUP)

    assert transition.noop
    assert transition.changes == {}


def test_different_resubmission_conflicts():
    order = make_order(status=SwapOrderStatus.REQUIREMENTS_SUBMITTED.value, requirements_submitted=True,
                       meetup_location="Library", meetup_time=MEETUP)
    with pytest.raises(StateConflictError):
        plan_transition(order, SwapAction.SUBMIT_REQUIREMENTS, REQUESTER, NOW,
                        meetup_location="Cafeteria", meetup_time=MEETUP)


def test_approve_before_submission_conflicts():
    with pytest.raises(StateConflictError, match="not been submitted"):
        plan_transition(make_order(), SwapAction.APPROVE_REQUIREMENTS, OWNER, NOW)


def test_approve_moves_to_in_progress():
    order = make_order(status=SwapOrderStatus.REQUIREMENTS_SUBMITTED.value, requirements_submitted=True)
    transition = plan_transition(order, SwapAction.APPROVE_REQUIREMENTS, OWNER, NOW)

    assert transition.new_status == SwapOrderStatus.IN_PROGRESS
    assert transition.changes["requirements_approved"] is True


@pytest.mark.parametrize("action", [SwapAction.PAY_FEE, SwapAction.DISPATCH, SwapAction.CONFIRM_RECEIPT])
def test_active_actions_need_approved_requirements(action):
    with pytest.raises(StateConflictError, match="Requirements must be approved"):
        plan_transition(make_order(), action, REQUESTER, NOW)


def test_pay_fee_asks_for_collection():
    transition = plan_transition(active_order(), SwapAction.PAY_FEE, OWNER, NOW, reference="ref-1")

    assert transition.collect_fee
    assert transition.new_status is None
    assert transition.changes["owner_paid_fee"] is True
    assert transition.changes["owner_payment_reference"] == "ref-1"
    assert [event.user_id for event in transition.events] == [REQUESTER]


def test_second_fee_notifies_both_parties():
    transition = plan_transition(active_order(requester_paid_fee=True), SwapAction.PAY_FEE, OWNER, NOW)

    assert {event.user_id for event in transition.events} == {REQUESTER, OWNER}
    assert "Both parties have paid" in transition.message


def test_paying_twice_is_noop():
    transition = plan_transition(active_order(requester_paid_fee=True), SwapAction.PAY_FEE, REQUESTER, NOW)

    assert transition.noop
    assert not transition.collect_fee


def test_dispatch_requires_own_fee():
    with pytest.raises(StateConflictError, match="Pay your commitment fee"):
        plan_transition(active_order(owner_paid_fee=True), SwapAction.DISPATCH, REQUESTER, NOW)


def test_dispatch_does_not_wait_for_counterpart_fee():
    transition = plan_transition(active_order(requester_paid_fee=True), SwapAction.DISPATCH, REQUESTER, NOW)

    assert transition.changes["requester_shipped"] is True
    assert transition.changes["requester_shipped_at"] == NOW


def test_confirm_receipt_waits_for_counterpart_dispatch():
    order = active_order(requester_paid_fee=True, owner_paid_fee=True, owner_shipped=True)
    with pytest.raises(StateConflictError, match="dispatch their book"):
        plan_transition(order, SwapAction.CONFIRM_RECEIPT, OWNER, NOW)


def test_first_receipt_marks_delivered():
    transition = plan_transition(shipped_order(), SwapAction.CONFIRM_RECEIPT, OWNER, NOW)

    assert transition.new_status == SwapOrderStatus.DELIVERED
    assert transition.changes["delivered_at"] == NOW
    assert not transition.release_fees


def test_second_receipt_completes_and_releases():
    order = shipped_order(status=SwapOrderStatus.DELIVERED.value, owner_received_book=True)
    transition = plan_transition(order, SwapAction.CONFIRM_RECEIPT, REQUESTER, NOW)

    assert transition.new_status == SwapOrderStatus.COMPLETED
    assert transition.changes["completed_at"] == NOW
    assert transition.changes["fee_settlement"] == "released"
    assert transition.release_fees
    assert {event.user_id for event in transition.events} == {REQUESTER, OWNER}


def test_pay_and_dispatch_still_allowed_when_delivered():
    order = active_order(status=SwapOrderStatus.DELIVERED.value, requester_paid_fee=True,
                         requester_shipped=True, owner_received_book=True)

    pay = plan_transition(order, SwapAction.PAY_FEE, OWNER, NOW)
    assert pay.collect_fee

    order["owner_paid_fee"] = True
    dispatch = plan_transition(order, SwapAction.DISPATCH, OWNER, NOW)
    assert dispatch.changes["owner_shipped"] is True


@pytest.mark.parametrize("reason", [None, "", "   "])
def test_cancel_requires_reason(reason):
    with pytest.raises(ValidationError):
        plan_transition(make_order(), SwapAction.CANCEL, OWNER, NOW, reason=reason)


def test_cancel_before_fees():
    transition = plan_transition(make_order(), SwapAction.CANCEL, OWNER, NOW, reason="Found the book elsewhere")

    assert transition.new_status == SwapOrderStatus.CANCELLED
    assert transition.changes["cancelled_by"] == OWNER
    assert "fee_settlement" not in transition.changes
    assert [event.user_id for event in transition.events] == [REQUESTER]


def test_cancel_after_fee_marks_refund():
    transition = plan_transition(active_order(requester_paid_fee=True), SwapAction.CANCEL, REQUESTER, NOW,
                                 reason="Moving schools")

    assert transition.changes["fee_settlement"] == "refunded"
    assert transition.refund_fees


@pytest.mark.parametrize("status", [SwapOrderStatus.COMPLETED, SwapOrderStatus.CANCELLED])
@pytest.mark.parametrize("action", list(SwapAction))
def test_terminal_orders_reject_every_action(status, action):
    order = shipped_order(status=status.value)
    with pytest.raises(TerminalStateError):
        plan_transition(order, action, REQUESTER, NOW, reason="again",
                        meetup_location="Library", meetup_time=MEETUP)


def test_terminal_check_comes_after_party_check():
    with pytest.raises(AuthorizationError):
        plan_transition(shipped_order(status=SwapOrderStatus.COMPLETED.value), SwapAction.CANCEL,
                        "stranger", NOW, reason="x")


def test_progress_for_requester_before_requirements():
    progress = viewer_progress(make_order(), REQUESTER)

    assert progress.role == "requester"
    assert progress.counterpart_id == OWNER
    assert progress.available_actions == [SwapAction.SUBMIT_REQUIREMENTS, SwapAction.CANCEL]


def test_progress_shows_counterpart_flags():
    order = active_order(requester_paid_fee=True, requester_shipped=True)
    progress = viewer_progress(order, OWNER)

    assert progress.counterpart_fee_paid
    assert progress.counterpart_book_dispatched
    assert not progress.my_fee_paid
    assert SwapAction.PAY_FEE in progress.available_actions
    assert SwapAction.CONFIRM_RECEIPT in progress.available_actions


def test_progress_on_completed_order_has_no_actions():
    progress = viewer_progress(shipped_order(status=SwapOrderStatus.COMPLETED.value,
                                             requester_received_book=True, owner_received_book=True), OWNER)

    assert progress.available_actions == []
    assert progress.waiting_for is None
