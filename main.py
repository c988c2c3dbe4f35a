from __future__ import annotations

import hmac
import logging
import math
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, Callable, Literal

from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from starlette.concurrency import run_in_threadpool

from alerts import Alerter
from auth import IdentityVerifier, bearer_token, hash_password, verify_password
from billing import BillingReconciler, BillingService, StripeGateway
from business import (
    BRAND_VOICES,
    RESPONSE_LENGTHS,
    BUSINESS_TYPES,
    business_type_catalog,
    default_templates,
    profile_response,
)
from config import Settings, load_settings
from db import Database
from entitlements import EntitlementResolver, current_period, is_subscription_active, monthly_limit
from errors import (
    Conflict,
    Forbidden,
    NotFound,
    RateLimited,
    StorageError,
    Unauthenticated,
    ValidationFailed,
    install_error_handlers,
)
from generation import (
    DEFAULT_BUSINESS_TYPE,
    DEFAULT_LANGUAGE,
    CompletionProvider,
    GenerationGateway,
)
from metering import UsageMeter, usage_summary
from plans import PlanTier, SubscriptionStatus, get_plan, normalize_tier, parse_tier, public_plans

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("reviewreply")

APP_VERSION = "1.0.0"
EMAIL_PATTERN = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")
MIN_PASSWORD_LENGTH = 8
RATE_LIMIT_EXEMPT_PATHS = frozenset({"/", "/health", "/api/subscriptions/webhook"})

Tone = Literal["professional", "friendly", "apologetic", "grateful"]
Language = Literal["en", "ro", "es", "fr", "de", "it"]
Trimmed = Annotated[str, StringConstraints(strip_whitespace=True)]


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RegisterRequest(ApiModel):
    email: Trimmed
    password: str
    name: Annotated[str, StringConstraints(strip_whitespace=True, min_length=2, max_length=50)]
    business_name: Trimmed | None = Field(default=None, alias="businessName", max_length=100)


class LoginRequest(ApiModel):
    email: Trimmed
    password: str = Field(min_length=1)


class GenerateRequest(ApiModel):
    review_text: Annotated[str, StringConstraints(strip_whitespace=True, min_length=10, max_length=5000)] = Field(
        alias="reviewText"
    )
    tone: Tone
    language: Language = DEFAULT_LANGUAGE
    business_type: Trimmed = Field(default=DEFAULT_BUSINESS_TYPE, alias="businessType", max_length=50)


class CheckoutRequest(ApiModel):
    plan_id: str = Field(alias="planId")


class BusinessProfileRequest(ApiModel):
    business_type: str = Field(alias="businessType")
    business_name: Annotated[str, StringConstraints(strip_whitespace=True, min_length=2, max_length=100)] = Field(
        alias="businessName"
    )
    description: Trimmed | None = Field(default=None, max_length=500)
    brand_voice: str = Field(default="professional", alias="brandVoice")
    response_length: str = Field(default="medium", alias="responseLength")
    special_instructions: Trimmed | None = Field(default=None, alias="specialInstructions", max_length=1000)
    custom_keywords: list[str] = Field(default_factory=list, alias="customKeywords")


class TemplateRequest(ApiModel):
    name: Annotated[str, StringConstraints(strip_whitespace=True, min_length=3, max_length=100)]
    category: Literal["positive", "negative", "neutral", "custom"]
    template: Annotated[str, StringConstraints(strip_whitespace=True, min_length=20, max_length=1000)]
    description: Trimmed | None = Field(default=None, max_length=200)


class AdminPlanRequest(ApiModel):
    user_id: str
    plan: str
    days: int | None = Field(default=None, ge=1)
    monthly_limit: int | None = Field(default=None, ge=-1)
    is_active: bool | None = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Any) -> str | None:
    return value.isoformat() if isinstance(value, datetime) else None


@dataclass
class Services:
    settings: Settings
    store: Any
    clock: Callable[[], datetime]
    verifier: IdentityVerifier
    resolver: EntitlementResolver
    meter: UsageMeter
    gateway: GenerationGateway
    billing: BillingService
    reconciler: BillingReconciler


def build_services(
    settings: Settings,
    *,
    store: Any = None,
    completion: Any = None,
    payments: Any = None,
    clock: Callable[[], datetime] | None = None,
    alerter: Alerter | None = None,
) -> Services:
    clock = clock or _now_utc
    store = store if store is not None else Database(settings.database_url)
    alerter = alerter or Alerter(settings)
    completion = completion or CompletionProvider(
        api_key=settings.openai_api_key,
        model=settings.openai_model,
        base_url=settings.openai_base_url,
        timeout=settings.openai_timeout_seconds,
    )
    payments = payments or StripeGateway(settings.stripe_secret_key, settings.stripe_webhook_secret)
    return Services(
        settings=settings,
        store=store,
        clock=clock,
        verifier=IdentityVerifier(store, settings.auth_secret, settings.token_ttl_seconds, clock),
        resolver=EntitlementResolver(store, clock),
        meter=UsageMeter(store, clock, alerter),
        gateway=GenerationGateway(
            completion,
            settings.price_per_input_token,
            settings.price_per_output_token,
        ),
        billing=BillingService(
            store,
            payments,
            price_ids=settings.stripe_price_ids,
            frontend_url=settings.frontend_url,
            enabled=settings.payments_enabled,
        ),
        reconciler=BillingReconciler(store, payments, clock, alerter),
    )


def _services(request: Request) -> Services:
    return request.app.state.services


def _require_user(request: Request) -> dict[str, Any]:
    token = bearer_token(request.headers.get("authorization"))
    return _services(request).verifier.verify(token)


def _public_user(user: dict[str, Any], now: datetime) -> dict[str, Any]:
    return {
        "id": user["id"],
        "email": user["email"],
        "name": user.get("name"),
        "businessName": user.get("business_name"),
        "subscriptionPlan": normalize_tier(user.get("subscription_plan")).value,
        "subscriptionStatus": user.get("subscription_status"),
        "subscriptionExpiresAt": _iso(user.get("subscription_expires_at")),
        "subscriptionActive": is_subscription_active(user, now),
        "monthlyLimit": monthly_limit(user),
        "isActive": bool(user.get("is_active")),
        "lastLoginAt": _iso(user.get("last_login_at")),
        "createdAt": _iso(user.get("created_at")),
    }


def _usage_payload(summary: dict[str, Any]) -> dict[str, Any]:
    payload = {key: summary[key] for key in ("current", "limit", "remaining")}
    payload["resetDate"] = summary["reset_date"]
    return payload


def _template_payload(template: dict[str, Any]) -> dict[str, Any]:
    payload = {key: value for key, value in template.items() if key != "user_id"}
    for key in ("created_at", "updated_at"):
        payload[key] = _iso(payload.get(key))
    payload["isDefault"] = False
    return payload


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client:
        return request.client.host
    return "unknown"


def _window_start(now: datetime, minutes: int) -> datetime:
    bucket = (now.minute // minutes) * minutes
    return now.replace(minute=bucket, second=0, microsecond=0)


def _count_hit(request: Request, scope: str, limit: int, message: str) -> None:
    if limit <= 0:
        return
    services = _services(request)
    window_start = _window_start(services.clock(), services.settings.rate_limit_window_minutes)
    count = services.store.increment_rate_limit(f"{scope}:{_client_ip(request)}", window_start)
    if count > limit:
        raise RateLimited(message)


def _rate_limit_ip(request: Request) -> None:
    if request.url.path in RATE_LIMIT_EXEMPT_PATHS:
        return
    _count_hit(
        request,
        "ip",
        _services(request).settings.rate_limit_ip,
        "Too many requests from this network. Please try again later.",
    )


def _rate_limit_auth(request: Request) -> None:
    _count_hit(
        request,
        "auth",
        _services(request).settings.rate_limit_auth,
        "Too many authentication attempts. Please try again shortly.",
    )


def _check_admin(request: Request) -> None:
    expected = _services(request).settings.admin_secret
    provided = request.headers.get("x-admin-secret") or ""
    if not expected or not hmac.compare_digest(provided, expected):
        raise Forbidden("Forbidden.")


def create_app(
    settings: Settings | None = None,
    *,
    store: Any = None,
    completion: Any = None,
    payments: Any = None,
    clock: Callable[[], datetime] | None = None,
    alerter: Alerter | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    app = FastAPI(
        title="ReviewReply Backend",
        version=APP_VERSION,
        dependencies=[Depends(_rate_limit_ip)],
    )
    app.state.services = build_services(
        settings,
        store=store,
        completion=completion,
        payments=payments,
        clock=clock,
        alerter=alerter,
    )
    install_error_handlers(app, development=settings.is_development)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    def root() -> dict[str, str]:
        return {"message": "ReviewReply API", "version": APP_VERSION, "status": "active"}

    @app.get("/health")
    def health_check(raw_request: Request) -> dict[str, str]:
        return {"status": "healthy", "timestamp": _services(raw_request).clock().isoformat()}

    # auth

    @app.post("/api/auth/register", status_code=201)
    def register(payload: RegisterRequest, raw_request: Request) -> dict[str, Any]:
        _rate_limit_auth(raw_request)
        services = _services(raw_request)
        email = payload.email.lower()
        details: list[dict[str, str]] = []
        if not EMAIL_PATTERN.fullmatch(email):
            details.append({"field": "email", "message": "Valid email is required"})
        if len(payload.password) < MIN_PASSWORD_LENGTH:
            details.append(
                {"field": "password", "message": f"Password must be at least {MIN_PASSWORD_LENGTH} characters"}
            )
        if details:
            raise ValidationFailed(details=details)
        if services.store.get_user_by_email(email):
            raise Conflict("Account with this email already exists")

        plan = get_plan(PlanTier.FREE)
        month, year = current_period(services.clock())
        try:
            user = services.store.create_user(
                user_id=str(uuid.uuid4()),
                email=email,
                password_hash=hash_password(payload.password),
                name=payload.name,
                business_name=payload.business_name or None,
                plan=plan.tier.value,
                status=SubscriptionStatus.ACTIVE.value,
                monthly_limit=plan.quota,
                month=month,
                year=year,
            )
        except StorageError as exc:
            raise Conflict("Account with this email already exists") from exc

        logger.info("Registered user %s on the free plan.", user["id"])
        return {
            "success": True,
            "message": "Account created successfully",
            "user": _public_user(user, services.clock()),
            "token": services.verifier.issue(user),
            "plan": {"name": plan.name, "limit": plan.quota, "current": 0},
        }

    @app.post("/api/auth/login")
    def login(payload: LoginRequest, raw_request: Request) -> dict[str, Any]:
        _rate_limit_auth(raw_request)
        services = _services(raw_request)
        user = services.store.get_user_by_email(payload.email.lower())
        if not user or not verify_password(payload.password, user["password_hash"]):
            raise Unauthenticated("Invalid email or password")
        if not user.get("is_active"):
            raise Forbidden("Account is deactivated")

        now = services.clock()
        user = services.store.update_user(user["id"], last_login_at=now) or user
        return {
            "success": True,
            "message": "Login successful",
            "user": _public_user(user, now),
            "token": services.verifier.issue(user),
            "usage": _usage_payload(services.meter.snapshot(user)),
        }

    @app.post("/api/auth/verify")
    def verify(raw_request: Request) -> dict[str, Any]:
        services = _services(raw_request)
        user = _require_user(raw_request)
        return {
            "success": True,
            "valid": True,
            "user": _public_user(user, services.clock()),
            "usage": _usage_payload(services.meter.snapshot(user)),
        }

    @app.get("/api/auth/stats")
    def auth_stats(raw_request: Request) -> dict[str, Any]:
        services = _services(raw_request)
        user = _require_user(raw_request)
        snapshot = services.meter.snapshot(user)
        plan = get_plan(user.get("subscription_plan"))
        return {
            "success": True,
            "stats": {
                "plan": plan.tier.value,
                "status": user.get("subscription_status"),
                "usage": {key: snapshot[key] for key in ("current", "limit", "remaining", "percentage")},
                "subscription": {
                    "active": is_subscription_active(user, services.clock()),
                    "expiresAt": _iso(user.get("subscription_expires_at")),
                    "canUpgrade": plan.tier is not PlanTier.ENTERPRISE,
                },
            },
        }

    @app.post("/api/auth/logout")
    def logout() -> dict[str, Any]:
        return {"success": True, "message": "Logged out successfully"}

    # reviews

    @app.post("/api/reviews/generate")
    def generate(payload: GenerateRequest, raw_request: Request) -> dict[str, Any]:
        services = _services(raw_request)
        user = _require_user(raw_request)
        entitlement = services.resolver.resolve(user)

        result = services.gateway.generate(
            payload.review_text,
            payload.tone,
            payload.language,
            payload.business_type or DEFAULT_BUSINESS_TYPE,
            user.get("business_name"),
        )
        usage = services.meter.record_generation(
            user,
            payload.review_text,
            result,
            month=entitlement.month,
            year=entitlement.year,
            language=payload.language,
            tone=payload.tone,
            business_type=payload.business_type or DEFAULT_BUSINESS_TYPE,
        )
        summary = usage_summary(int(usage["request_count"]), entitlement.limit)
        return {
            "success": True,
            "response": result.text,
            "metadata": {
                "tokensUsed": result.tokens_used,
                "cost": f"{result.cost:.6f}",
                "duration": result.duration_ms,
                "language": payload.language,
                "tone": payload.tone,
                "model": result.model,
                "fallback": not result.success,
            },
            "usage": summary,
        }

    @app.get("/api/reviews/history")
    def history(
        raw_request: Request,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=10, ge=1),
    ) -> dict[str, Any]:
        services = _services(raw_request)
        user = _require_user(raw_request)
        limit = min(limit, 50)
        records = services.store.fetch_generation_records(user["id"], limit, (page - 1) * limit)
        total = services.store.count_generation_records(user["id"])
        return {
            "success": True,
            "data": [
                {
                    "id": record["id"],
                    "reviewText": record["review_text"],
                    "responseText": record["response_text"],
                    "language": record["language"],
                    "tone": record["tone"],
                    "businessType": record["business_type"],
                    "success": record["success"],
                    "createdAt": _iso(record.get("created_at")),
                }
                for record in records
            ],
            "pagination": {
                "page": page,
                "limit": limit,
                "totalCount": total,
                "totalPages": math.ceil(total / limit),
                "hasNext": page * limit < total,
                "hasPrev": page > 1,
            },
        }

    @app.get("/api/reviews/stats")
    def stats(raw_request: Request) -> dict[str, Any]:
        services = _services(raw_request)
        user = _require_user(raw_request)
        snapshot = services.meter.snapshot(user)
        plan = get_plan(user.get("subscription_plan"))
        return {
            "success": True,
            "currentMonth": {
                "requests": snapshot["current"],
                "limit": snapshot["limit"],
                "remaining": snapshot["remaining"],
                "percentage": snapshot["percentage"],
                "resetDate": snapshot["reset_date"],
            },
            "allTime": {
                "totalRequests": services.store.count_generation_records(user["id"], success_only=True),
            },
            "plan": {
                "name": plan.tier.value,
                "status": user.get("subscription_status"),
                "canUpgrade": plan.tier is not PlanTier.ENTERPRISE,
            },
        }

    # business profile and templates

    @app.get("/api/business/types")
    def business_types() -> dict[str, Any]:
        return {"businessTypes": business_type_catalog()}

    @app.post("/api/business/profile")
    def save_business_profile(payload: BusinessProfileRequest, raw_request: Request) -> dict[str, Any]:
        services = _services(raw_request)
        user = _require_user(raw_request)
        details: list[dict[str, str]] = []
        if payload.business_type not in BUSINESS_TYPES:
            details.append({"field": "businessType", "message": "Invalid business type"})
        if payload.brand_voice not in BRAND_VOICES:
            details.append({"field": "brandVoice", "message": "Invalid brand voice"})
        if payload.response_length not in RESPONSE_LENGTHS:
            details.append({"field": "responseLength", "message": "Invalid response length"})
        if details:
            raise ValidationFailed(details=details)

        profile = services.store.upsert_business_profile(
            user["id"],
            {
                "business_type": payload.business_type,
                "business_name": payload.business_name,
                "description": payload.description,
                "brand_voice": payload.brand_voice,
                "response_length": payload.response_length,
                "special_instructions": payload.special_instructions,
                "custom_keywords": [keyword.strip() for keyword in payload.custom_keywords if keyword.strip()],
            },
        )
        return {"message": "Business profile saved", "profile": profile_response(profile)}

    @app.get("/api/business/profile")
    def get_business_profile(raw_request: Request) -> dict[str, Any]:
        services = _services(raw_request)
        user = _require_user(raw_request)
        profile = services.store.get_business_profile(user["id"])
        if not profile:
            return {"profile": None, "message": "No business profile configured yet"}
        return {"profile": profile_response(profile)}

    @app.get("/api/business/templates")
    def list_templates(raw_request: Request, category: str | None = None) -> dict[str, Any]:
        services = _services(raw_request)
        user = _require_user(raw_request)
        custom = services.store.list_templates(user["id"])
        if category and category != "all":
            custom = [template for template in custom if template["category"] == category]
        return {
            "templates": {
                "default": default_templates(category),
                "custom": [_template_payload(template) for template in custom],
            }
        }

    @app.post("/api/business/templates", status_code=201)
    def create_template(payload: TemplateRequest, raw_request: Request) -> dict[str, Any]:
        services = _services(raw_request)
        user = _require_user(raw_request)
        template = services.store.insert_template(
            template_id=str(uuid.uuid4()),
            user_id=user["id"],
            template=payload.model_dump(),
        )
        return {"message": "Template created", "template": _template_payload(template)}

    @app.put("/api/business/templates/{template_id}")
    def update_template(template_id: str, payload: TemplateRequest, raw_request: Request) -> dict[str, Any]:
        services = _services(raw_request)
        user = _require_user(raw_request)
        template = services.store.update_template(user["id"], template_id, payload.model_dump())
        if not template:
            raise NotFound("Template not found")
        return {"message": "Template updated", "template": _template_payload(template)}

    @app.delete("/api/business/templates/{template_id}")
    def delete_template(template_id: str, raw_request: Request) -> dict[str, Any]:
        services = _services(raw_request)
        user = _require_user(raw_request)
        if not services.store.delete_template(user["id"], template_id):
            raise NotFound("Template not found")
        return {"message": "Template deleted"}

    # subscriptions

    @app.get("/api/subscriptions/plans")
    def plans() -> dict[str, Any]:
        return {"plans": public_plans()}

    @app.post("/api/subscriptions/create-checkout-session")
    def create_checkout_session(payload: CheckoutRequest, raw_request: Request) -> dict[str, Any]:
        user = _require_user(raw_request)
        return _services(raw_request).billing.create_checkout(user, payload.plan_id)

    @app.get("/api/subscriptions/checkout-session/{session_id}")
    def checkout_session(session_id: str, raw_request: Request) -> dict[str, Any]:
        user = _require_user(raw_request)
        return _services(raw_request).billing.checkout_status(user, session_id)

    @app.get("/api/subscriptions/status")
    def subscription_status(raw_request: Request) -> dict[str, Any]:
        services = _services(raw_request)
        user = _require_user(raw_request)
        snapshot = services.meter.snapshot(user)
        return {
            "plan": normalize_tier(user.get("subscription_plan")).value,
            "status": user.get("subscription_status"),
            "isActive": is_subscription_active(user, services.clock()),
            "expiresAt": _iso(user.get("subscription_expires_at")),
            "usage": {key: snapshot[key] for key in ("current", "limit", "remaining")},
            "billing": {
                "stripeCustomerId": user.get("stripe_customer_id"),
                "subscriptionId": user.get("stripe_subscription_id"),
            },
        }

    @app.post("/api/subscriptions/cancel")
    def cancel_subscription(raw_request: Request) -> dict[str, str]:
        user = _require_user(raw_request)
        status = _services(raw_request).billing.cancel(user)
        return {
            "message": "Subscription will be cancelled at the end of the billing period",
            "status": status.value,
        }

    @app.post("/api/subscriptions/reactivate")
    def reactivate_subscription(raw_request: Request) -> dict[str, str]:
        user = _require_user(raw_request)
        status = _services(raw_request).billing.reactivate(user)
        return {"message": "Subscription reactivated", "status": status.value}

    @app.post("/api/subscriptions/webhook")
    async def stripe_webhook(request: Request) -> dict[str, bool]:
        services = _services(request)
        if not services.settings.payments_enabled:
            return {"received": False}
        raw_body = await request.body()
        return await run_in_threadpool(
            services.reconciler.handle,
            raw_body,
            request.headers.get("stripe-signature"),
        )

    # admin

    @app.post("/api/admin/account/plan")
    def admin_update_plan(payload: AdminPlanRequest, raw_request: Request) -> dict[str, Any]:
        _check_admin(raw_request)
        services = _services(raw_request)
        if not services.store.get_user_by_id(payload.user_id):
            raise NotFound("User not found")
        tier = parse_tier(payload.plan)
        if tier is None:
            raise ValidationFailed(
                "Unknown plan",
                details=[{"field": "plan", "message": f"Unknown plan {payload.plan!r}"}],
            )
        plan = get_plan(tier)
        now = services.clock()
        fields: dict[str, Any] = {
            "subscription_plan": plan.tier.value,
            "subscription_status": SubscriptionStatus.ACTIVE.value,
            "monthly_limit": plan.quota if payload.monthly_limit is None else payload.monthly_limit,
            "subscription_expires_at": now + timedelta(days=payload.days or 30) if plan.is_paid else None,
        }
        if payload.is_active is not None:
            fields["is_active"] = payload.is_active
        user = services.store.update_user(payload.user_id, **fields)
        logger.info("Admin set user %s to plan %s.", payload.user_id, plan.tier.value)
        return {"success": True, "user": _public_user(user, now)}

    return app


app = create_app()
