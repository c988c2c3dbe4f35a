from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

logger = logging.getLogger("reviewreply.config")


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value


def _bool_env(name: str, default: str | None = None) -> bool:
    raw = _env(name, default)
    if raw is None:
        return False
    return raw.strip().lower() in {"1", "true", "yes"}


def _parse_origins(value: str | None) -> list[str]:
    if not value:
        return []
    origins: list[str] = []
    for origin in value.split(","):
        origin = origin.strip()
        if not origin or origin == "*":
            continue
        origins.append(origin.rstrip("/"))
    return origins


@dataclass(frozen=True)
class Settings:
    auth_secret: str
    environment: str = "development"
    token_ttl_seconds: int = 30 * 24 * 3600
    database_url: str | None = None
    frontend_url: str = "http://localhost:3000"
    cors_origins: tuple[str, ...] = ()
    admin_secret: str | None = None
    payments_enabled: bool = False
    openai_api_key: str | None = None
    openai_base_url: str | None = None
    openai_model: str = "gpt-4"
    openai_timeout_seconds: float = 30.0
    price_per_input_token: float = 0.00003
    price_per_output_token: float = 0.00006
    rate_limit_window_minutes: int = 15
    rate_limit_ip: int = 100
    rate_limit_auth: int = 20
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_price_ids: dict[str, str] = field(default_factory=dict)
    alert_email_to: str | None = None
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_from: str | None = None
    smtp_use_tls: bool = True

    @property
    def is_development(self) -> bool:
        return self.environment in {"development", "dev"}

    @property
    def allowed_origins(self) -> list[str]:
        origins = [self.frontend_url.rstrip("/")]
        for origin in self.cors_origins:
            if origin not in origins:
                origins.append(origin)
        return origins


def _environment() -> str:
    return (_env("ENVIRONMENT", "development") or "development").strip().lower()


def _strict_env() -> bool:
    if os.getenv("STRICT_ENV_VALIDATION") is not None:
        return _bool_env("STRICT_ENV_VALIDATION", "true")
    return _environment() in {"production", "prod"}


def _payments_enabled() -> bool:
    if os.getenv("PAYMENTS_ENABLED") is not None:
        return _bool_env("PAYMENTS_ENABLED", "true")
    return _environment() in {"production", "prod"}


def load_settings() -> Settings:
    """Read settings from the environment (and .env) and validate them."""
    load_dotenv()
    errors: list[str] = []
    warnings: list[str] = []
    strict = _strict_env()
    payments_enabled = _payments_enabled()

    auth_secret = _env("AUTH_SECRET")
    if not auth_secret:
        errors.append("AUTH_SECRET is required.")
    elif strict and len(auth_secret) < 32:
        errors.append("AUTH_SECRET must be at least 32 characters.")

    admin_secret = _env("ADMIN_SECRET")
    if not admin_secret:
        if strict:
            errors.append("ADMIN_SECRET is required.")
        else:
            warnings.append("ADMIN_SECRET is not set; admin endpoints disabled.")
    elif strict and len(admin_secret) < 16:
        errors.append("ADMIN_SECRET must be at least 16 characters.")

    if strict and not _env("DATABASE_URL"):
        errors.append("DATABASE_URL is required.")

    if not _env("OPENAI_API_KEY"):
        warnings.append("OPENAI_API_KEY not set; replies will use fallback text.")

    price_ids = {
        "basic": _env("STRIPE_BASIC_PRICE_ID", "price_basic") or "price_basic",
        "premium": _env("STRIPE_PREMIUM_PRICE_ID", "price_premium") or "price_premium",
        "enterprise": _env("STRIPE_ENTERPRISE_PRICE_ID", "price_enterprise") or "price_enterprise",
    }
    if payments_enabled:
        if not _env("STRIPE_SECRET_KEY"):
            errors.append("STRIPE_SECRET_KEY is required.")
        if not _env("STRIPE_WEBHOOK_SECRET"):
            errors.append("STRIPE_WEBHOOK_SECRET is required.")
        for tier, price_id in price_ids.items():
            if price_id == f"price_{tier}":
                warnings.append(f"Stripe price id for {tier} looks like a placeholder.")
    else:
        warnings.append("Payments disabled; Stripe keys not required.")

    numbers: dict[str, float] = {}
    for name, default, cast in (
        ("AUTH_TOKEN_TTL_SECONDS", "2592000", int),
        ("OPENAI_TIMEOUT_SECONDS", "30", float),
        ("PRICE_PER_INPUT_TOKEN", "0.00003", float),
        ("PRICE_PER_OUTPUT_TOKEN", "0.00006", float),
        ("RATE_LIMIT_WINDOW_MINUTES", "15", int),
        ("RATE_LIMIT_IP_PER_WINDOW", "100", int),
        ("RATE_LIMIT_AUTH_PER_WINDOW", "20", int),
        ("SMTP_PORT", "587", int),
    ):
        try:
            numbers[name] = cast(_env(name, default) or default)
        except ValueError:
            errors.append(f"{name} must be a number.")

    window = numbers.get("RATE_LIMIT_WINDOW_MINUTES")
    if window is not None and (window < 1 or 60 % window):
        errors.append("RATE_LIMIT_WINDOW_MINUTES must divide 60.")

    if errors:
        raise RuntimeError("Config errors: " + "; ".join(errors))
    for warning in warnings:
        logger.warning(warning)

    return Settings(
        auth_secret=auth_secret or "",
        environment=_environment(),
        token_ttl_seconds=int(numbers["AUTH_TOKEN_TTL_SECONDS"]),
        database_url=_env("DATABASE_URL"),
        frontend_url=(_env("FRONTEND_URL", "http://localhost:3000") or "").rstrip("/"),
        cors_origins=tuple(_parse_origins(_env("CORS_ORIGINS"))),
        admin_secret=admin_secret,
        payments_enabled=payments_enabled,
        openai_api_key=_env("OPENAI_API_KEY"),
        openai_base_url=_env("OPENAI_BASE_URL"),
        openai_model=_env("OPENAI_MODEL", "gpt-4") or "gpt-4",
        openai_timeout_seconds=numbers["OPENAI_TIMEOUT_SECONDS"],
        price_per_input_token=numbers["PRICE_PER_INPUT_TOKEN"],
        price_per_output_token=numbers["PRICE_PER_OUTPUT_TOKEN"],
        rate_limit_window_minutes=int(numbers["RATE_LIMIT_WINDOW_MINUTES"]),
        rate_limit_ip=int(numbers["RATE_LIMIT_IP_PER_WINDOW"]),
        rate_limit_auth=int(numbers["RATE_LIMIT_AUTH_PER_WINDOW"]),
        stripe_secret_key=_env("STRIPE_SECRET_KEY"),
        stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET"),
        stripe_price_ids=price_ids,
        alert_email_to=_env("ALERT_EMAIL_TO"),
        smtp_host=_env("SMTP_HOST"),
        smtp_port=int(numbers["SMTP_PORT"]),
        smtp_user=_env("SMTP_USER"),
        smtp_password=_env("SMTP_PASSWORD"),
        smtp_from=_env("SMTP_FROM"),
        smtp_use_tls=_bool_env("SMTP_USE_TLS", "true"),
    )
