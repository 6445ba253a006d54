import os

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./confshop.db")

CART_BACKEND = os.getenv("CART_BACKEND", "pg").lower()  # 'pg' | 'redis'
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "64"))
CART_TTL_SECONDS = int(os.getenv("CART_TTL_SECONDS", str(7 * 24 * 3600)))

PAYMENT_GATEWAY = os.getenv("PAYMENT_GATEWAY", "mock").lower()  # 'mock' | 'stripe'

# test mode picks the test key, same switch the storefront had in
# site settings
STRIPE_TEST_MODE = os.getenv("STRIPE_TEST_MODE", "true").lower() in (
    "1", "true", "yes"
)
STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_TEST_SECRET_KEY = os.environ.get("STRIPE_TEST_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")

MAILER = os.getenv("MAILER", "log").lower()  # 'log' | 'resend'
RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
MAIL_FROM = os.environ.get("MAIL_FROM", "tickets@confshop.local")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = os.getenv("LOG_JSON", "true").lower() in ("1", "true", "yes")


def stripe_api_key() -> str:
    return STRIPE_TEST_SECRET_KEY if STRIPE_TEST_MODE else STRIPE_SECRET_KEY
