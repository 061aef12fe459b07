"""Application settings resolved from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

APP_NAME = "Prontivus"

_DEVELOPMENT_ENVIRONMENTS = {"development", "dev", "local", "test"}


@dataclass(frozen=True)
class Settings:
    """Resolved runtime configuration for the service."""

    environment: str = "development"
    jwt_secret: str = "dev-secret"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 480
    clinic_timezone: str = "America/Sao_Paulo"
    business_day_start: int = 8
    business_day_end: int = 18
    slot_minutes: int = 30
    booking_margin_minutes: int = 10
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    payment_grace_days: int = 7
    log_level: str = "INFO"
    use_offline_model: bool = False

    @property
    def is_development(self) -> bool:
        return self.environment.lower() in _DEVELOPMENT_ENVIRONMENTS


def _get_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the active settings derived from the environment."""

    environment = os.getenv("ENVIRONMENT", "development")
    jwt_secret = os.getenv("JWT_SECRET")
    if not jwt_secret:
        if environment.lower() not in _DEVELOPMENT_ENVIRONMENTS:
            raise RuntimeError("JWT_SECRET must be set outside development environments")
        jwt_secret = "dev-secret"

    start = _get_int_env("BUSINESS_DAY_START", 8)
    end = _get_int_env("BUSINESS_DAY_END", 18)
    if not 0 <= start < end <= 24:
        raise ValueError("BUSINESS_DAY_START must be before BUSINESS_DAY_END")
    slot_minutes = _get_int_env("SLOT_MINUTES", 30)
    if slot_minutes <= 0:
        raise ValueError("SLOT_MINUTES must be positive")

    return Settings(
        environment=environment,
        jwt_secret=jwt_secret,
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        access_token_expire_minutes=_get_int_env("ACCESS_TOKEN_EXPIRE_MINUTES", 480),
        clinic_timezone=os.getenv("CLINIC_TIMEZONE", "America/Sao_Paulo"),
        business_day_start=start,
        business_day_end=end,
        slot_minutes=slot_minutes,
        booking_margin_minutes=_get_int_env("BOOKING_MARGIN_MINUTES", 10),
        openai_api_key=os.getenv("OPENAI_API_KEY") or None,
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
        payment_grace_days=_get_int_env("PAYMENT_GRACE_DAYS", 7),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        use_offline_model=os.getenv("USE_OFFLINE_MODEL", "").lower() in {"1", "true", "yes"},
    )


__all__ = ["APP_NAME", "Settings", "get_settings"]
