import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./consultbook.db")

# Redis (ARQ broker for the scheduler sweeps)
REDIS_URL = os.getenv("REDIS_URL")

# Identity collaborator - tokens are HS256-signed by the identity service
IDENTITY_TOKEN_SECRET = os.getenv("IDENTITY_TOKEN_SECRET")
IDENTITY_TOKEN_ISSUER = os.getenv("IDENTITY_TOKEN_ISSUER", "consultbook-identity")

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

if not IDENTITY_TOKEN_SECRET:
    IDENTITY_TOKEN_SECRET = SECRET_KEY

# Dodo Payments Configuration
DODO_PAYMENTS_API_KEY = os.getenv("DODO_PAYMENTS_API_KEY")
DODO_PAYMENTS_WEBHOOK_SECRET = os.getenv("DODO_PAYMENTS_WEBHOOK_SECRET")
# "test_mode" or "live_mode" - default to test for safety
DODO_PAYMENTS_ENVIRONMENT = os.getenv("DODO_PAYMENTS_ENVIRONMENT", "test_mode")
# Pay-what-you-want product used for every session/plan checkout (amount is set per order)
DODO_ADHOC_PRODUCT_ID = os.getenv("DODO_ADHOC_PRODUCT_ID")
# Upper bound for any single gateway call, in seconds
PAYMENT_GATEWAY_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_GATEWAY_TIMEOUT_SECONDS", "10"))
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "INR")

# Frontend base URL for checkout return links
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# Notification collaborator (receives outbox facts)
NOTIFICATION_SERVICE_URL = os.getenv("NOTIFICATION_SERVICE_URL")
NOTIFICATION_SERVICE_TOKEN = os.getenv("NOTIFICATION_SERVICE_TOKEN")
NOTIFICATION_BATCH_SIZE = int(os.getenv("NOTIFICATION_BATCH_SIZE", "100"))
NOTIFICATION_MAX_ATTEMPTS = int(os.getenv("NOTIFICATION_MAX_ATTEMPTS", "5"))

# Booking rules
DURATION_TOLERANCE_MINUTES = int(os.getenv("DURATION_TOLERANCE_MINUTES", "5"))
MIN_SESSION_MINUTES = int(os.getenv("MIN_SESSION_MINUTES", "15"))
MAX_SESSION_MINUTES = int(os.getenv("MAX_SESSION_MINUTES", "480"))
SLOT_STEP_MINUTES = int(os.getenv("SLOT_STEP_MINUTES", "15"))

# Scheduler windows
SESSION_REMINDER_MINUTES = max(int(os.getenv("SESSION_REMINDER_MINUTES", "10")), 1)
JOIN_WINDOW_MINUTES = max(int(os.getenv("JOIN_WINDOW_MINUTES", "2")), 0)
SUBSCRIPTION_REMINDER_DAYS = int(os.getenv("SUBSCRIPTION_REMINDER_DAYS", "3"))
STALE_PENDING_GRACE_MINUTES = int(os.getenv("STALE_PENDING_GRACE_MINUTES", "30"))
SUBSCRIPTION_PERIOD_DAYS = int(os.getenv("SUBSCRIPTION_PERIOD_DAYS", "30"))

# CORS
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", FRONTEND_URL).split(",") if o.strip()]
