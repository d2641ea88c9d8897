import os


def _normalize_database_url(url: str) -> str:
    # Render/Heroku sometimes provide postgres:// which SQLAlchemy expects as postgresql://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def _float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


class Config:
    """Settings read from the environment at import time.

    ``create_app`` copies these onto ``app.config`` and then applies any
    overrides passed in (tests use that to point at in-memory SQLite).
    """

    # Base directory of the backend (one level above this package)
    BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    INSTANCE_DIR = os.path.join(BACKEND_DIR, "instance")

    ENV = (os.getenv("CRAFTSMART_ENV", "dev") or "dev").strip().lower()
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
    LOG_LEVEL = (os.getenv("LOG_LEVEL", "INFO") or "INFO").strip().upper()

    _default_sqlite_path = os.path.join(INSTANCE_DIR, "craftsmart.db").replace("\\", "/")
    _db_url = os.getenv("SQLALCHEMY_DATABASE_URI") or os.getenv("DATABASE_URL") or f"sqlite:///{_default_sqlite_path}"
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(_db_url)
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CORS: comma-separated origins for web builds
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")

    # Escrow / payments
    PAYMENT_PROVIDER = (os.getenv("PAYMENT_PROVIDER", "flutterwave") or "flutterwave").strip().lower()
    PAYMENT_CURRENCY = (os.getenv("PAYMENT_CURRENCY", "UGX") or "UGX").strip().upper()
    ADMIN_COMMISSION_RATE = _float_env("ADMIN_COMMISSION_RATE", 0.10)
    # 0 disables the cap (Flutterwave test mode rejects large mobile money charges)
    PAYMENT_MAX_AMOUNT = _float_env("PAYMENT_MAX_AMOUNT", 0.0)
    DISBURSEMENT_MAX_ATTEMPTS = _int_env("DISBURSEMENT_MAX_ATTEMPTS", 3)
    PENDING_PAYMENT_TTL_MINUTES = _int_env("PENDING_PAYMENT_TTL_MINUTES", 30)
    PAYMENT_REDIRECT_URL = os.getenv("PAYMENT_REDIRECT_URL", "")
    WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
    FLW_SECRET_HASH = os.getenv("FLW_SECRET_HASH", "")


def production_errors() -> list[str]:
    """Return the reasons a production boot must be refused (empty when OK)."""
    errors = []
    secret = (os.getenv("SECRET_KEY") or "").strip()
    if not secret or len(secret) < 16:
        errors.append("SECRET_KEY must be set and at least 16 chars in production")
    if not (os.getenv("DATABASE_URL") or "").strip() and not (os.getenv("SQLALCHEMY_DATABASE_URI") or "").strip():
        errors.append("DATABASE_URL (or SQLALCHEMY_DATABASE_URI) must be set in production")
    return errors
