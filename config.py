import os
from decimal import Decimal
from dotenv import load_dotenv

# Load environment variables from .env
load_dotenv()

MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "bookwisedb")

SECRET_KEY = os.getenv("SECRET_KEY", "d3c1f0b7a6e24f5c9b8a7d6e5f4c3b2a1f0e9d8c7b6a5f4e3d2c1b0a9f8e7d6c")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24 * 7  # 7 days

# Swap orders
DEFAULT_COMMITMENT_FEE = Decimal(os.getenv("DEFAULT_COMMITMENT_FEE", "50.00"))
CURRENCY = os.getenv("CURRENCY", "KES")
SETTLEMENT_ACCOUNT_ID = os.getenv("SETTLEMENT_ACCOUNT_ID", "platform-settlement")
SWAP_COMMIT_RETRIES = int(os.getenv("SWAP_COMMIT_RETRIES", "5"))

# Paystack
PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY", "")
PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
PAYSTACK_TIMEOUT_SECONDS = float(os.getenv("PAYSTACK_TIMEOUT_SECONDS", "10"))
CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:5000")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
