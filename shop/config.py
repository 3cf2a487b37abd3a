import os


def _csv(value, upper=False):
    """Split a comma-separated env value into a tuple of trimmed entries."""
    items = [part.strip() for part in (value or "").split(",") if part.strip()]
    if upper:
        return tuple(part.upper() for part in items)
    return tuple(part.lower() for part in items)


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
    # Upper bound on any single Stripe API call, in seconds.
    STRIPE_TIMEOUT_SECONDS = float(os.environ.get("STRIPE_TIMEOUT_SECONDS", 20))
    PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:5173")

    # Bearer token for the admin order/stock routes.
    ADMIN_API_TOKEN = os.environ.get("ADMIN_API_TOKEN")

    # --- Checkout ---
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "eur").lower()
    ALLOWED_CURRENCIES = _csv(os.environ.get("ALLOWED_CURRENCIES", "eur"))
    # Countries served by Stripe-hosted checkout. Anything else goes through
    # the manual (bank transfer) flow.
    HOSTED_CHECKOUT_COUNTRIES = _csv(
        os.environ.get(
            "HOSTED_CHECKOUT_COUNTRIES", "AU,BR,CA,CR,DE,MX,NL,NZ,PT,ZA,UY"
        ),
        upper=True,
    )
    FEW_STOCK_THRESHOLD = int(os.environ.get("FEW_STOCK_THRESHOLD", 20))

    # --- Email (SMTP) ---
    MAIL_SMTP_HOST = os.environ.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    MAIL_SMTP_PORT = int(os.environ.get("MAIL_SMTP_PORT", 587))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")          # App Password
    MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "Shop Orders")
    MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS")  # defaults to MAIL_USERNAME
    MAIL_ADMIN_TO = os.environ.get("MAIL_ADMIN_TO")
    # Bank details printed in "awaiting payment" emails for manual orders.
    BANK_TRANSFER_IBAN = os.environ.get("BANK_TRANSFER_IBAN", "")
    BANK_TRANSFER_HOLDER = os.environ.get("BANK_TRANSFER_HOLDER", "")

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Rate limiting ---
    RATELIMIT_ENABLED = True

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
            "PUBLIC_BASE_URL",
            "ADMIN_API_TOKEN",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True
    SQLALCHEMY_DATABASE_URI = Config.SQLALCHEMY_DATABASE_URI or "sqlite:///shop-dev.db"


class TestConfig(Config):
    """Testing — in-memory SQLite, fake Stripe keys."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ENGINE_OPTIONS = {}
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    STRIPE_TIMEOUT_SECONDS = 5
    PUBLIC_BASE_URL = "http://localhost:5173"
    ADMIN_API_TOKEN = "admin-test-token"
    DEFAULT_CURRENCY = "eur"
    ALLOWED_CURRENCIES = ("eur",)
    HOSTED_CHECKOUT_COUNTRIES = (
        "AU", "BR", "CA", "CR", "DE", "MX", "NL", "NZ", "PT", "ZA", "UY",
    )
    FEW_STOCK_THRESHOLD = 20
    MAIL_USERNAME = None  # emails are rendered but never sent in tests
    MAIL_PASSWORD = None
    MAIL_ADMIN_TO = "admin@shop.test"
    RATELIMIT_ENABLED = False  # disable rate limiting in tests

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
