import os


def _env_int_list(name, default):
    """Parse a comma-separated env var like "1,3,5,7" into a list of ints."""
    raw = os.environ.get(name)
    if not raw:
        return list(default)
    return [int(part) for part in raw.split(",") if part.strip()]


def _env_bool(name, default):
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in ("1", "true", "yes")


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    APP_BASE_URL = os.environ.get("APP_BASE_URL", "http://localhost:5000")

    # --- Dunning (payment retry + grace period) ---
    BILLING_RETRY_INTERVALS = _env_int_list("BILLING_RETRY_INTERVALS", [1, 3, 5, 7])
    BILLING_RETRY_MAX_ATTEMPTS = int(os.environ.get("BILLING_RETRY_MAX_ATTEMPTS", 4))
    BILLING_GRACE_PERIOD_DAYS = int(os.environ.get("BILLING_GRACE_PERIOD_DAYS", 7))
    BILLING_GRACE_WARNING_DAYS = _env_int_list("BILLING_GRACE_WARNING_DAYS", [2, 1])
    # Status a past_due subscription lands in once grace runs out: unpaid | canceled
    BILLING_DUNNING_FINAL_STATUS = os.environ.get("BILLING_DUNNING_FINAL_STATUS", "unpaid")

    # --- Card expiry reminders ---
    CARD_EXPIRY_WARNING_DAYS = _env_int_list("CARD_EXPIRY_WARNING_DAYS", [30, 7, 1])

    # --- Invoice numbering ---
    INVOICE_NUMBER_PREFIX = os.environ.get("INVOICE_NUMBER_PREFIX", "INV")
    INVOICE_SEQUENCE_DIGITS = int(os.environ.get("INVOICE_SEQUENCE_DIGITS", 6))
    INVOICE_INCLUDE_YEAR = _env_bool("INVOICE_INCLUDE_YEAR", True)
    INVOICE_NUMBER_SEPARATOR = os.environ.get("INVOICE_NUMBER_SEPARATOR", "-")

    # --- Webhook security ---
    WEBHOOK_TOLERANCE_SECONDS = int(os.environ.get("WEBHOOK_TOLERANCE_SECONDS", 300))
    WEBHOOK_REPLAY_TTL_SECONDS = int(os.environ.get("WEBHOOK_REPLAY_TTL_SECONDS", 3600))
    WEBHOOK_RATE_LIMIT_MAX = int(os.environ.get("WEBHOOK_RATE_LIMIT_MAX", 1000))
    WEBHOOK_RATE_LIMIT_WINDOW_SECONDS = int(
        os.environ.get("WEBHOOK_RATE_LIMIT_WINDOW_SECONDS", 60)
    )
    WEBHOOK_MAX_PAYLOAD_BYTES = int(
        os.environ.get("WEBHOOK_MAX_PAYLOAD_BYTES", 1024 * 1024)
    )
    # Comma-separated CIDRs allowed to deliver webhooks; empty = any source
    WEBHOOK_ALLOWED_CIDRS = [
        c.strip() for c in os.environ.get("WEBHOOK_ALLOWED_CIDRS", "").split(",") if c.strip()
    ]

    # --- Promo codes ---
    PROMO_STACKING_MODE = os.environ.get("PROMO_STACKING_MODE", "best")  # none | best | additive

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- JSON API ---
    API_RATE_LIMIT = os.environ.get("API_RATE_LIMIT", "120 per minute")

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True


class TestConfig(Config):
    """Testing — in-memory SQLite, provider keys faked."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    APP_BASE_URL = "http://localhost:5000"
    BILLING_RETRY_INTERVALS = [1, 3, 5, 7]
    BILLING_RETRY_MAX_ATTEMPTS = 4
    BILLING_GRACE_PERIOD_DAYS = 7
    BILLING_DUNNING_FINAL_STATUS = "unpaid"
    INVOICE_NUMBER_PREFIX = "INV"
    INVOICE_SEQUENCE_DIGITS = 6
    INVOICE_INCLUDE_YEAR = True
    WEBHOOK_TOLERANCE_SECONDS = 300
    WEBHOOK_REPLAY_TTL_SECONDS = 3600
    WEBHOOK_RATE_LIMIT_MAX = 1000
    WEBHOOK_MAX_PAYLOAD_BYTES = 1024 * 1024
    RATELIMIT_ENABLED = False  # disable flask-limiter in tests
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
