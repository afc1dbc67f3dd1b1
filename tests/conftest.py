import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from mongomock_motor import AsyncMongoMockClient

from dataBase import ensure_indexes
from escrow_service import EscrowService
from models.payment_models import GatewayVerification
from models.swap_order_models import CreateSwapOrder
from notification_service import NotificationDispatcher
from payment_service import PaystackClient
from swap_order_service import SwapOrderService
from utils import create_access_token

REQUESTER = "user-requester"
OWNER = "user-owner"
STRANGER = "user-stranger"
SETTLEMENT = "platform-settlement"
WEBHOOK_SECRET = "sk_test_webhook_secret"

FEE = Decimal("200.00")
FEE_MINOR = 20000


def meetup_time(days: int = 2) -> datetime:
    return datetime.utcnow() + timedelta(days=days)


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'user_id': user_id})}"}


@pytest.fixture
async def db():
    database = AsyncMongoMockClient()[f"bookwise_test_{uuid.uuid4().hex}"]
    await ensure_indexes(database)
    return database


@pytest.fixture
def gateway():
    client = PaystackClient(secret_key=WEBHOOK_SECRET, base_url="https://paystack.test")
    client.initialize_payment = AsyncMock(return_value="https://checkout.paystack.test/abc123")
    client.verify_payment = AsyncMock(side_effect=lambda reference: GatewayVerification(
        reference=reference, status="success", amount_minor=FEE_MINOR, currency="KES"))
    return client


@pytest.fixture
def escrow(db):
    return EscrowService(db, settlement_account_id=SETTLEMENT, currency="KES")


@pytest.fixture
def service(db, escrow, gateway):
    return SwapOrderService(db, escrow=escrow, notifier=NotificationDispatcher(db), gateway=gateway)


@pytest.fixture
async def books(db):
    requester_book = await db.books.insert_one({
        "bookName": "Mathematics Form 2",
        "authorName": "KLB",
        "user_id": REQUESTER,
        "is_taken": False,
    })
    owner_book = await db.books.insert_one({
        "bookName": "English Form 2",
        "authorName": "Longhorn",
        "user_id": OWNER,
        "is_taken": False,
    })
    return str(requester_book.inserted_id), str(owner_book.inserted_id)


@pytest.fixture
async def funded(escrow):
    await escrow.credit(REQUESTER, 50000, "Test top-up")
    await escrow.credit(OWNER, 50000, "Test top-up")


@pytest.fixture
async def order(service, books):
    requester_listing_id, owner_listing_id = books
    created = await service.create_swap_order(
        CreateSwapOrder(
            requester_id=REQUESTER,
            owner_id=OWNER,
            requester_listing_id=requester_listing_id,
            owner_listing_id=owner_listing_id,
            swap_request_id="swap-request-1",
            commitment_fee=FEE,
        ),
        actor_id=OWNER,
    )
    return str(created["_id"])


@pytest.fixture
async def active_order(service, order):
    await service.submit_requirements(order, REQUESTER, "Library", meetup_time())
    await service.approve_requirements(order, OWNER)
    return order


@pytest.fixture
async def dispatched_order(service, active_order, funded):
    for user_id in (REQUESTER, OWNER):
        await service.pay_commitment_fee(active_order, user_id)
    for user_id in (REQUESTER, OWNER):
        await service.mark_dispatched(active_order, user_id)
    return active_order
