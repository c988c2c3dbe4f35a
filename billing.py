"""Stripe integration: outbound subscription calls and webhook reconciliation.

Local subscription status is a small state machine over
``none -> active <-> past_due -> cancelled``. Webhooks are the only writer
besides explicit cancel/reactivate requests and admin provisioning.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

import stripe

from alerts import Alerter
from errors import (
    Forbidden,
    InternalError,
    InvalidSignature,
    NotFound,
    PaymentProviderError,
    PaymentsDisabled,
    ValidationFailed,
)
from plans import PLANS, PlanTier, SubscriptionStatus, get_plan, parse_paid_tier

logger = logging.getLogger("reviewreply.billing")

CHECKOUT_COMPLETED = "checkout.session.completed"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
}


def _plain(obj: Any) -> dict[str, Any]:
    """Plain nested dict from a StripeObject; it is not a dict subclass."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def _id_of(value: Any) -> str | None:
    if isinstance(value, dict):
        value = value.get("id")
    return str(value) if value else None


def period_end(subscription: dict[str, Any]) -> datetime:
    """Current period end; newer API versions carry it on subscription items."""
    value = subscription.get("current_period_end")
    if value is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            value = items[0].get("current_period_end")
    if value is None:
        raise ValueError(f"Subscription {subscription.get('id')} has no current period end.")
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    subscription = invoice.get("subscription")
    if not subscription:
        parent = invoice.get("parent") or {}
        subscription = (parent.get("subscription_details") or {}).get("subscription")
    return _id_of(subscription)


def local_status(subscription: dict[str, Any]) -> SubscriptionStatus | None:
    """Map provider status onto local status; pending cancellation reads as cancelled."""
    if subscription.get("cancel_at_period_end"):
        return SubscriptionStatus.CANCELLED
    return PROVIDER_STATUS_MAP.get(str(subscription.get("status") or "").lower())


class StripeGateway:
    """Thin Stripe client bound to one API key; no module-level ``stripe.api_key``."""

    def __init__(self, api_key: str | None, webhook_secret: str | None) -> None:
        self._api_key = api_key
        self._webhook_secret = webhook_secret

    def _key(self) -> str:
        if not self._api_key:
            raise PaymentsDisabled("Stripe is not configured.")
        return self._api_key

    def construct_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        if not self._webhook_secret:
            raise InvalidSignature("Webhook secret is not configured.")
        if not signature:
            raise InvalidSignature("Missing Stripe-Signature header.")
        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignature(str(exc)) from exc
        except ValueError as exc:
            raise InvalidSignature("Invalid webhook payload.") from exc
        return json.loads(payload.decode("utf-8"))

    def create_customer(self, *, email: str, name: str, user_id: str) -> str:
        try:
            customer = stripe.Customer.create(
                api_key=self._key(),
                email=email,
                name=name,
                metadata={"userId": user_id},
            )
        except stripe.StripeError as exc:
            logger.exception("Stripe customer creation failed.")
            raise PaymentProviderError() from exc
        return customer["id"]

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        user_id: str,
        plan_id: str,
        success_url: str,
        cancel_url: str,
    ) -> dict[str, Any]:
        try:
            session = stripe.checkout.Session.create(
                api_key=self._key(),
                customer=customer_id,
                payment_method_types=["card"],
                billing_address_collection="required",
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                client_reference_id=user_id,
                metadata={"userId": user_id, "planId": plan_id},
            )
        except stripe.StripeError as exc:
            logger.exception("Stripe checkout session creation failed.")
            raise PaymentProviderError() from exc
        return _plain(session)

    def retrieve_checkout_session(self, session_id: str) -> dict[str, Any]:
        try:
            return _plain(stripe.checkout.Session.retrieve(session_id, api_key=self._key()))
        except stripe.InvalidRequestError as exc:
            raise NotFound("Checkout session not found") from exc
        except stripe.StripeError as exc:
            logger.exception("Stripe checkout session lookup failed.")
            raise PaymentProviderError() from exc

    def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        try:
            return _plain(stripe.Subscription.retrieve(subscription_id, api_key=self._key()))
        except stripe.StripeError as exc:
            raise PaymentProviderError(f"Subscription lookup failed: {exc}") from exc

    def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> dict[str, Any]:
        try:
            return _plain(
                stripe.Subscription.modify(
                    subscription_id,
                    api_key=self._key(),
                    cancel_at_period_end=cancel,
                )
            )
        except stripe.StripeError as exc:
            logger.exception("Stripe subscription update failed.")
            raise PaymentProviderError() from exc


class BillingService:
    """User-initiated subscription operations."""

    def __init__(
        self,
        store: Any,
        payments: Any,
        *,
        price_ids: dict[str, str],
        frontend_url: str,
        enabled: bool,
    ) -> None:
        self._store = store
        self._payments = payments
        self._price_ids = price_ids
        self._frontend_url = frontend_url.rstrip("/")
        self._enabled = enabled

    def _require_enabled(self) -> None:
        if not self._enabled:
            raise PaymentsDisabled()

    def create_checkout(self, user: dict[str, Any], plan_id: str | None) -> dict[str, str]:
        self._require_enabled()
        tier = parse_paid_tier(plan_id)
        if tier is None:
            raise ValidationFailed("Invalid plan", details=[{"field": "planId", "message": "Unknown plan"}])

        customer_id = user.get("stripe_customer_id")
        if not customer_id:
            customer_id = self._payments.create_customer(
                email=user["email"],
                name=user["name"],
                user_id=user["id"],
            )
            self._store.update_user(user["id"], stripe_customer_id=customer_id)

        session = self._payments.create_checkout_session(
            customer_id=customer_id,
            price_id=self._price_ids[tier.value],
            user_id=user["id"],
            plan_id=tier.value,
            success_url=f"{self._frontend_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self._frontend_url}/cancel",
        )
        return {"checkoutUrl": session.get("url"), "sessionId": session.get("id")}

    def checkout_status(self, user: dict[str, Any], session_id: str) -> dict[str, Any]:
        self._require_enabled()
        session = self._payments.retrieve_checkout_session(session_id)
        if (session.get("metadata") or {}).get("userId") != user["id"]:
            raise Forbidden("Access denied")
        return {
            "status": session.get("payment_status"),
            "customerEmail": (session.get("customer_details") or {}).get("email"),
            "amountTotal": session.get("amount_total"),
        }

    def _set_cancellation(self, user: dict[str, Any], cancel: bool) -> SubscriptionStatus:
        self._require_enabled()
        subscription_id = user.get("stripe_subscription_id")
        if not subscription_id:
            raise ValidationFailed("No active subscription")
        self._payments.set_cancel_at_period_end(subscription_id, cancel)
        status = SubscriptionStatus.CANCELLED if cancel else SubscriptionStatus.ACTIVE
        self._store.update_user(user["id"], subscription_status=status.value)
        return status

    def cancel(self, user: dict[str, Any]) -> SubscriptionStatus:
        return self._set_cancellation(user, True)

    def reactivate(self, user: dict[str, Any]) -> SubscriptionStatus:
        return self._set_cancellation(user, False)


class BillingReconciler:
    """Applies verified Stripe webhook events to local subscription state."""

    def __init__(
        self,
        store: Any,
        payments: Any,
        clock: Callable[[], datetime],
        alerter: Alerter,
    ) -> None:
        self._store = store
        self._payments = payments
        self._clock = clock
        self._alerter = alerter
        self._handlers: dict[str, Callable[[dict[str, Any], dict[str, Any]], None]] = {
            CHECKOUT_COMPLETED: self.checkout_completed,
            INVOICE_PAYMENT_SUCCEEDED: self.invoice_payment_succeeded,
            INVOICE_PAYMENT_FAILED: self.invoice_payment_failed,
            SUBSCRIPTION_UPDATED: self.subscription_updated,
            SUBSCRIPTION_DELETED: self.subscription_deleted,
        }

    def handle(self, payload: bytes, signature: str | None) -> dict[str, bool]:
        try:
            event = self._payments.construct_event(payload, signature)
        except InvalidSignature as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc.message)
            raise

        event_id = str(event.get("id") or uuid.uuid4())
        event_type = str(event.get("type") or "")
        if self._store.record_webhook_event(
            event_id=event_id,
            provider="stripe",
            event_type=event_type or None,
            raw=event,
        ):
            logger.info("Stripe event %s already processed; skipping.", event_id)
            return {"received": True}

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info("Unhandled Stripe event type: %s", event_type)
            self._store.mark_webhook_event(event_id, status="ignored", processed_at=self._clock())
            return {"received": True}

        obj = (event.get("data") or {}).get("object") or {}
        try:
            handler(obj, event)
        except Exception as exc:
            logger.exception("Stripe webhook %s (%s) failed.", event_id, event_type)
            self._store.mark_webhook_event(event_id, status="failed", error=str(exc))
            self._alerter.alert("Stripe webhook processing failed", f"{event_type} {event_id}: {exc}")
            raise InternalError("Webhook processing failed") from exc

        self._store.mark_webhook_event(event_id, status="processed", processed_at=self._clock())
        return {"received": True}

    def _unmatched(self, event: dict[str, Any], customer_id: str | None, reason: str) -> None:
        logger.warning("Stripe event %s unmatched: %s (customer=%s)", event.get("id"), reason, customer_id)
        self._store.insert_unmatched_webhook(
            entry_id=str(uuid.uuid4()),
            event_id=event.get("id"),
            event_type=event.get("type"),
            customer_id=customer_id,
            reason=reason,
            raw=event,
        )

    def _user_for_customer(self, customer_id: str | None, event: dict[str, Any]) -> dict[str, Any] | None:
        if not customer_id:
            self._unmatched(event, None, "Event has no customer id.")
            return None
        user = self._store.get_user_by_stripe_customer(customer_id)
        if not user:
            self._unmatched(event, customer_id, "No local user for customer.")
        return user

    def _is_stale(self, user: dict[str, Any], subscription_id: str | None) -> bool:
        current = user.get("stripe_subscription_id")
        if not current and subscription_id and get_plan(user.get("subscription_plan")).tier is PlanTier.FREE:
            # Late event for a subscription that was already deleted.
            logger.info("Ignoring event for subscription %s; user %s is on free.", subscription_id, user["id"])
            return True
        if current and subscription_id and current != subscription_id:
            logger.info(
                "Ignoring event for subscription %s; user %s is on %s.",
                subscription_id,
                user["id"],
                current,
            )
            return True
        return False

    def _superseded(self, user: dict[str, Any], subscription_id: str, expires_at: datetime) -> bool:
        """True when the user already holds a different active subscription that runs longer."""
        current = user.get("stripe_subscription_id")
        current_end = user.get("subscription_expires_at")
        if (
            current
            and current != subscription_id
            and user.get("subscription_status") == SubscriptionStatus.ACTIVE.value
            and isinstance(current_end, datetime)
            and current_end > expires_at
        ):
            logger.info(
                "Ignoring checkout for subscription %s; user %s holds %s until %s.",
                subscription_id,
                user["id"],
                current,
                current_end.isoformat(),
            )
            return True
        return False

    def checkout_completed(self, session: dict[str, Any], event: dict[str, Any]) -> None:
        metadata = session.get("metadata") or {}
        user_id = metadata.get("userId") or session.get("client_reference_id")
        customer_id = _id_of(session.get("customer"))
        user = self._store.get_user_by_id(str(user_id)) if user_id else None
        if not user:
            self._unmatched(event, customer_id, "Checkout session has no matching user.")
            return
        tier = parse_paid_tier(metadata.get("planId"))
        if tier is None:
            self._unmatched(event, customer_id, f"Unknown plan {metadata.get('planId')!r}.")
            return
        subscription_id = _id_of(session.get("subscription"))
        if not subscription_id:
            self._unmatched(event, customer_id, "Checkout session has no subscription.")
            return

        subscription = self._payments.retrieve_subscription(subscription_id)
        expires_at = period_end(subscription)
        if self._superseded(user, subscription_id, expires_at):
            return
        fields: dict[str, Any] = {
            "subscription_plan": tier.value,
            "monthly_limit": PLANS[tier].quota,
            "subscription_status": SubscriptionStatus.ACTIVE.value,
            "subscription_expires_at": expires_at,
            "stripe_subscription_id": subscription.get("id") or subscription_id,
        }
        customer_id = customer_id or _id_of(subscription.get("customer"))
        if customer_id and user.get("stripe_customer_id") != customer_id:
            fields["stripe_customer_id"] = customer_id
        self._store.update_user(user["id"], **fields)
        logger.info("User %s subscribed to %s.", user["id"], tier.value)

    def _invoice_target(
        self, invoice: dict[str, Any], event: dict[str, Any]
    ) -> tuple[dict[str, Any], dict[str, Any]] | None:
        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info("Invoice %s is not for a subscription; ignoring.", invoice.get("id"))
            return None
        subscription = self._payments.retrieve_subscription(subscription_id)
        customer_id = _id_of(subscription.get("customer")) or _id_of(invoice.get("customer"))
        user = self._user_for_customer(customer_id, event)
        if not user or self._is_stale(user, subscription_id):
            return None
        return user, subscription

    def invoice_payment_succeeded(self, invoice: dict[str, Any], event: dict[str, Any]) -> None:
        target = self._invoice_target(invoice, event)
        if target is None:
            return
        user, subscription = target
        self._store.update_user(
            user["id"],
            subscription_status=SubscriptionStatus.ACTIVE.value,
            subscription_expires_at=period_end(subscription),
        )

    def invoice_payment_failed(self, invoice: dict[str, Any], event: dict[str, Any]) -> None:
        target = self._invoice_target(invoice, event)
        if target is None:
            return
        user, _ = target
        # Access continues until the existing expiry.
        self._store.update_user(user["id"], subscription_status=SubscriptionStatus.PAST_DUE.value)

    def subscription_updated(self, subscription: dict[str, Any], event: dict[str, Any]) -> None:
        user = self._user_for_customer(_id_of(subscription.get("customer")), event)
        if not user or self._is_stale(user, _id_of(subscription.get("id"))):
            return
        fields: dict[str, Any] = {"subscription_expires_at": period_end(subscription)}
        status = local_status(subscription)
        if status is None:
            logger.warning(
                "Unknown Stripe subscription status %r for user %s; keeping %s.",
                subscription.get("status"),
                user["id"],
                user.get("subscription_status"),
            )
        else:
            fields["subscription_status"] = status.value
        self._store.update_user(user["id"], **fields)

    def subscription_deleted(self, subscription: dict[str, Any], event: dict[str, Any]) -> None:
        user = self._user_for_customer(_id_of(subscription.get("customer")), event)
        if not user or self._is_stale(user, _id_of(subscription.get("id"))):
            return
        self._store.update_user(
            user["id"],
            subscription_plan=PlanTier.FREE.value,
            monthly_limit=get_plan(PlanTier.FREE).quota,
            subscription_status=SubscriptionStatus.CANCELLED.value,
            subscription_expires_at=self._clock(),
            stripe_subscription_id=None,
        )
        logger.info("User %s reverted to free after subscription deletion.", user["id"])
