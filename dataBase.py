import motor.motor_asyncio
from pymongo import ASCENDING, DESCENDING

from config import MONGO_URL, MONGO_DB_NAME

client = motor.motor_asyncio.AsyncIOMotorClient(MONGO_URL)
db = client[MONGO_DB_NAME]


async def ensure_indexes(database) -> None:
    """Create the indexes the swap order engine relies on."""
    await database.swap_orders.create_index("order_number", unique=True)
    await database.swap_orders.create_index("swap_request_id")
    await database.swap_orders.create_index([("requester_id", ASCENDING), ("created_at", DESCENDING)])
    await database.swap_orders.create_index([("owner_id", ASCENDING), ("created_at", DESCENDING)])

    # one hold per party per order
    await database.escrow_holds.create_index([("order_id", ASCENDING), ("party", ASCENDING)], unique=True)
    await database.payment_intents.create_index("reference", unique=True)
    await database.wallets.create_index("user_id", unique=True)
    await database.wallet_transactions.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    await database.notifications.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
