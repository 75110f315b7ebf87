import os
from dotenv import load_dotenv

from cloudbox.models import BillingCycle, PlanId

load_dotenv()

STORAGE_DIR = os.getenv(
    "STORAGE_DIR", os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "storage"))
)
DB_URL = os.getenv("DB_URL", "sqlite:///./cloudbox.db")
DB_TIMEOUT_SECONDS = float(os.getenv("DB_TIMEOUT_SECONDS", "10"))
DB_CONNECT_ARGS = (
    {"check_same_thread": False, "timeout": DB_TIMEOUT_SECONDS}
    if DB_URL.startswith("sqlite")
    else {"connect_timeout": int(DB_TIMEOUT_SECONDS)}
)

CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")
APP_URL = os.getenv("APP_URL", "").rstrip("/")
MAX_FILE_SIZE = int(os.getenv("MAX_FILE_SIZE_BYTES", str(50 * 1024 * 1024)))
STORAGE_KEY_LENGTH = max(12, min(64, int(os.getenv("STORAGE_KEY_LENGTH", "20"))))

# Sessions
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")
USER_DATA_COOKIE_NAME = os.getenv("USER_DATA_COOKIE_NAME", "user_data")
CUSTOM_SESSION_PREFIX = os.getenv("CUSTOM_SESSION_PREFIX", "custom_")
AUTH_PROVIDER_URL = os.getenv("AUTH_PROVIDER_URL", "").rstrip("/")
AUTH_PROVIDER_PROJECT = os.getenv("AUTH_PROVIDER_PROJECT", "")
EXTERNAL_CALL_TIMEOUT_SECONDS = float(os.getenv("EXTERNAL_CALL_TIMEOUT_SECONDS", "10"))

# Billing
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com").rstrip("/")
STRIPE_WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE_SECONDS", "300"))

# Per-user locking (Redis is optional)
REDIS_URL = os.getenv("REDIS_URL", "")
USER_LOCK_TIMEOUT_SECONDS = float(os.getenv("USER_LOCK_TIMEOUT_SECONDS", "30"))

# Orphan sweep
ENABLE_CLEANER = os.getenv("ENABLE_CLEANER", "true").lower() in {"true", "1", "yes"}
ORPHAN_GRACE_MINUTES = int(os.getenv("ORPHAN_GRACE_MINUTES", "60"))
CLEANER_INTERVAL_MINUTES = int(os.getenv("CLEANER_INTERVAL_MINUTES", "60"))

_PRICE_ENV = {
    BillingCycle.MONTHLY: {
        PlanId.BASIC: "STRIPE_BASIC_PRICE_ID",
        PlanId.PRO: "STRIPE_PRO_PRICE_ID",
        PlanId.ENTERPRISE: "STRIPE_ENTERPRISE_PRICE_ID",
    },
    BillingCycle.YEARLY: {
        PlanId.BASIC: "STRIPE_BASIC_ANNUAL_PRICE_ID",
        PlanId.PRO: "STRIPE_PRO_ANNUAL_PRICE_ID",
        PlanId.ENTERPRISE: "STRIPE_ENTERPRISE_ANNUAL_PRICE_ID",
    },
}

_REQUIRED_BILLING_VARS = [
    "STRIPE_SECRET_KEY",
    "STRIPE_WEBHOOK_SECRET",
    "STRIPE_BASIC_PRICE_ID",
    "STRIPE_PRO_PRICE_ID",
    "STRIPE_ENTERPRISE_PRICE_ID",
]


def validate_billing_config() -> list[str]:
    """Return the names of required billing variables that are not set."""
    return [name for name in _REQUIRED_BILLING_VARS if not os.getenv(name)]


def load_plan_price_table():
    from cloudbox.services.billing import PlanPriceTable

    return PlanPriceTable(
        monthly={plan: os.getenv(var, "") for plan, var in _PRICE_ENV[BillingCycle.MONTHLY].items()},
        yearly={plan: os.getenv(var, "") for plan, var in _PRICE_ENV[BillingCycle.YEARLY].items()},
    )
