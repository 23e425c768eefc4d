import os
from typing import Optional


def get_setting(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return an environment setting with an optional default."""
    return os.getenv(name, default)


def get_required_setting(name: str) -> str:
    """Return a required environment setting or raise a ValueError."""
    value = os.getenv(name)
    if not value:
        raise ValueError(f"Missing required environment variable: {name}")
    return value


def get_int_setting(name: str, default: int, *, minimum: Optional[int] = None, maximum: Optional[int] = None) -> int:
    """Return an integer setting, falling back to ``default`` on bad input and clamping to the bounds."""
    raw = str(os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    if minimum is not None:
        value = max(minimum, value)
    if maximum is not None:
        value = min(maximum, value)
    return value


def get_database_url() -> str:
    """
    Return the database URL for SQLAlchemy.
    Defaults to a local SQLite file for development if not provided.
    """
    return os.getenv("DATABASE_URL") or os.getenv("POSTGRES_CONNECTION_STRING") or "sqlite:///./data/crm.db"


def get_auth_settings() -> dict:
    """
    Session and lockout settings for CRM sign-in.
    Sessions default to 4 hours; five failed attempts lock the account for 5 minutes.
    """
    return {
        "session_ttl_seconds": get_int_setting(
            "AUTH_SESSION_TTL_SECONDS", 4 * 60 * 60, minimum=15 * 60, maximum=7 * 24 * 60 * 60
        ),
        "max_failed_logins": get_int_setting("AUTH_MAX_FAILED_LOGINS", 5, minimum=1),
        "lockout_seconds": get_int_setting("AUTH_LOCKOUT_SECONDS", 5 * 60, minimum=0),
    }


def get_pipeline_settings() -> dict:
    """Defaults applied when the pipeline creates deals on its own."""
    return {
        "deal_default_days": get_int_setting("CRM_DEAL_DEFAULT_DAYS", 30, minimum=1),
        "default_currency": (os.getenv("CRM_DEFAULT_CURRENCY") or "USD").strip().upper() or "USD",
    }
