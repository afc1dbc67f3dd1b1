import httpx
import pytest
from bson import ObjectId

from dependencies import get_payment_gateway, get_swap_order_service
from main import app
from tests.conftest import FEE_MINOR, OWNER, REQUESTER, STRANGER, auth_headers, meetup_time


@pytest.fixture
async def client(service, gateway):
    app.dependency_overrides[get_swap_order_service] = lambda: service
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


def requirements_body(**overrides):
    body = {"meetup_location": "School Library", "meetup_time": meetup_time().isoformat()}
    body.update(overrides)
    return body


async def test_requires_authentication(client, order):
    response = await client.get(f"/swap-orders/{order}")
    assert response.status_code == 401

    response = await client.get(f"/swap-orders/{order}", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


async def test_create_and_get(client, books):
    response = await client.post(
        "/swap-orders",
        json={"requester_id": REQUESTER, "owner_id": OWNER, "requester_listing_id": books[0],
              "owner_listing_id": books[1], "commitment_fee": "200.00"},
        headers=auth_headers(REQUESTER),
    )
    assert response.status_code == 200
    order = response.json()["swap_order"]
    assert order["status"] == "pending_requirements"
    assert order["progress"]["role"] == "requester"

    response = await client.get(f"/swap-orders/{order['id']}", headers=auth_headers(OWNER))
    assert response.status_code == 200
    assert response.json()["swap_order"]["order_number"] == order["order_number"]


async def test_list_orders(client, order):
    response = await client.get("/swap-orders", headers=auth_headers(OWNER))

    assert response.status_code == 200
    assert response.json()["total_orders"] == 1
    assert response.json()["orders"][0]["id"] == order


async def test_stranger_cannot_read_order(client, order):
    response = await client.get(f"/swap-orders/{order}", headers=auth_headers(STRANGER))
    assert response.status_code == 403


async def test_unknown_order(client):
    for order_id in (str(ObjectId()), "not-an-id"):
        response = await client.get(f"/swap-orders/{order_id}", headers=auth_headers(OWNER))
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"


async def test_submit_requirements(client, order):
    response = await client.post(f"/swap-orders/{order}/requirements", json=requirements_body(),
                                 headers=auth_headers(REQUESTER))

    assert response.status_code == 200
    body = response.json()
    assert body["swap_order"]["status"] == "requirements_submitted"
    assert body["swap_order"]["meetup_location"] == "School Library"
    assert "requirements_submitted_at" in body["swap_order"]["timeline"]


async def test_submit_requirements_in_the_past(client, order):
    response = await client.post(f"/swap-orders/{order}/requirements",
                                 json=requirements_body(meetup_time="2020-01-01T10:00:00"),
                                 headers=auth_headers(REQUESTER))
    assert response.status_code == 400


async def test_submit_requirements_missing_fields(client, order):
    response = await client.post(f"/swap-orders/{order}/requirements", json={"meetup_location": "Library"},
                                 headers=auth_headers(REQUESTER))
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


async def test_requester_cannot_approve(client, db, order):
    await client.post(f"/swap-orders/{order}/requirements", json=requirements_body(),
                      headers=auth_headers(REQUESTER))

    response = await client.post(f"/swap-orders/{order}/approve-requirements", headers=auth_headers(REQUESTER))

    assert response.status_code == 403
    doc = await db.swap_orders.find_one({"_id": ObjectId(order)})
    assert doc["status"] == "requirements_submitted"


async def test_cancel_needs_reason(client, order):
    response = await client.post(f"/swap-orders/{order}/cancel", json={"reason": " "},
                                 headers=auth_headers(OWNER))
    assert response.status_code == 400


async def test_cancelled_order_conflicts(client, order):
    response = await client.post(f"/swap-orders/{order}/cancel", json={"reason": "Found another copy"},
                                 headers=auth_headers(OWNER))
    assert response.status_code == 200
    assert response.json()["swap_order"]["status"] == "cancelled"

    response = await client.post(f"/swap-orders/{order}/dispatch", headers=auth_headers(REQUESTER))
    assert response.status_code == 409
    assert response.json()["error"] == "terminal_state"


async def test_wallet_payment_without_funds(client, active_order):
    response = await client.post(f"/swap-orders/{active_order}/pay-commitment-fee",
                                 headers=auth_headers(REQUESTER))
    assert response.status_code == 502


async def test_full_swap_over_http(client, order, funded):
    requester, owner = auth_headers(REQUESTER), auth_headers(OWNER)

    steps = [
        (f"/swap-orders/{order}/requirements", requester, requirements_body()),
        (f"/swap-orders/{order}/approve-requirements", owner, None),
        (f"/swap-orders/{order}/pay-commitment-fee", requester, {"method": "wallet"}),
        (f"/swap-orders/{order}/pay-commitment-fee", owner, None),
        (f"/swap-orders/{order}/dispatch", requester, None),
        (f"/swap-orders/{order}/dispatch", owner, None),
        (f"/swap-orders/{order}/confirm-delivery", owner, None),
        (f"/swap-orders/{order}/confirm-delivery", requester, None),
    ]
    for url, headers, body in steps:
        response = await client.post(url, json=body, headers=headers)
        assert response.status_code == 200, (url, response.json())

    swap_order = response.json()["swap_order"]
    assert response.json()["message"] == "Swap completed successfully!"
    assert swap_order["status"] == "completed"
    assert swap_order["progress"]["available_actions"] == []

    repeat = await client.post(f"/swap-orders/{order}/dispatch", headers=owner)
    assert repeat.status_code == 409


async def test_repeated_dispatch_reports_already_done(client, active_order, funded):
    headers = auth_headers(REQUESTER)
    await client.post(f"/swap-orders/{active_order}/pay-commitment-fee", headers=headers)
    await client.post(f"/swap-orders/{active_order}/dispatch", headers=headers)

    response = await client.post(f"/swap-orders/{active_order}/dispatch", headers=headers)

    assert response.status_code == 200
    assert response.json()["already_done"] is True


async def test_paystack_payment_over_http(client, gateway, active_order):
    headers = auth_headers(OWNER)
    response = await client.post(f"/swap-orders/{active_order}/pay-commitment-fee",
                                 json={"method": "paystack", "email": "owner@example.com"}, headers=headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["authorization_url"].startswith("https://checkout.paystack.test")
    assert response.json()["swap_order"]["owner_paid_fee"] is False

    response = await client.get(f"/swap-orders/{active_order}/pay-commitment-fee/verify/{data['reference']}",
                                headers=headers)
    assert response.status_code == 200
    assert response.json()["swap_order"]["owner_paid_fee"] is True
    assert gateway.initialize_payment.await_args.kwargs["amount_minor"] == FEE_MINOR
