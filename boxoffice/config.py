import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./boxoffice.db")

JWT_SECRET = os.environ.get("JWT_SECRET", "dev-secret-change-me")

# 'mock' | 'stripe'
PAYMENT_PROVIDER = os.environ.get("PAYMENT_PROVIDER", "mock").lower()
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)
STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")

PUBLIC_URL = os.environ.get("PUBLIC_URL", "http://localhost:5173")
CURRENCY = os.environ.get("CURRENCY", "clp").lower()
SERVICE_FEE_BPS = int(os.environ.get("SERVICE_FEE_BPS", "0"))
MIN_LINE_QTY = 1
MAX_LINE_QTY = 20

# empty -> QR payloads are not signed
QR_SECRET_KEY = os.environ.get("QR_SECRET_KEY", "")

# 'sql' | 'redis'
EVENTLOG_BACKEND = os.environ.get("EVENTLOG_BACKEND", "sql").lower()
REDIS_URL = os.environ.get("REDIS_URL", "redis://127.0.0.1:6379")
EVENTLOG_TTL_SECONDS = 7 * 24 * 3600

SETTLE_MAX_ATTEMPTS = int(os.environ.get("SETTLE_MAX_ATTEMPTS", "5"))
SETTLE_BACKOFF_SECONDS = 0.05

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
