import os


def _flag(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


# ----------------------------
# Storage
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./boxoffice.db")
REDIS_URL = os.environ.get("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.environ.get("REDIS_MAX_CONN", "128"))

# ----------------------------
# Payments
# ----------------------------
PAYMENT_BACKEND = os.environ.get("PAYMENT_BACKEND", "mock").lower()  # mock | stripe
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)
STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
PLATFORM_FEE_BASIS_POINTS = int(
    os.environ.get("PLATFORM_FEE_BASIS_POINTS", "300")
)  # 3%

# ----------------------------
# Orders & tickets
# ----------------------------
MAX_TICKETS_PER_ORDER = 10
ENTRY_OPENS_BEFORE_SECONDS = 60 * 60
ENTRY_CLOSES_AFTER_SECONDS = 30 * 60
QR_DEFAULT_SIZE = 200  # px
QR_MIN_SIZE = 100
QR_MAX_SIZE = 1000
QR_BORDER = 2  # modules

# ----------------------------
# OTP
# ----------------------------
OTP_TTL_SECONDS = int(os.environ.get("OTP_TTL_SECONDS", str(5 * 60)))
OTP_MAX_ATTEMPTS = int(os.environ.get("OTP_MAX_ATTEMPTS", "3"))
OTP_LENGTH = int(os.environ.get("OTP_LENGTH", "6"))
# dev only: return the code in the /api/otp/send response
OTP_ECHO = _flag("OTP_ECHO")

# ----------------------------
# Rate limits: (limit, window seconds)
# ----------------------------
LIMIT_OTP_SEND = (5, 60 * 60)
LIMIT_OTP_VERIFY = (10, 15 * 60)
LIMIT_PURCHASE = (10, 15 * 60)
LIMIT_SCAN = (50, 5 * 60)

# ----------------------------
# Logging
# ----------------------------
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
LOG_DIR = os.environ.get("LOG_DIR", "")
