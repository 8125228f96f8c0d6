# payments.py
"""
Stripe adapter.

- create_checkout_session: hosted Checkout session for a single line item.
- verify_payment: paid/not-paid lookup with a 24h memo cache.
- construct_webhook_event: signature verification that fails closed in
  production.

The stripe SDK is synchronous, so every network call is pushed to a worker
thread with asyncio.to_thread to keep the event loop free.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import stripe

from mapmarked.errors import GatewayUnavailable, InvalidSignature, WebhookMisconfigured
from mapmarked.settings import Settings, settings as default_settings

log = logging.getLogger(__name__)

CACHE_CLEANUP_THRESHOLD = 100
PAID_SUBSCRIPTION_STATUSES = ("active", "trialing")


@dataclass
class CheckoutSessionResult:
    session_id: str
    url: str


@dataclass
class _CacheEntry:
    verified: bool
    timestamp: float


class VerifiedPaymentCache:
    """Memoizes verify_payment results per session id for `ttl_seconds`."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _CacheEntry] = {}

    def get(self, session_id: str) -> Optional[bool]:
        entry = self._entries.get(session_id)
        if entry and self._clock() - entry.timestamp < self.ttl_seconds:
            return entry.verified
        return None

    def set(self, session_id: str, verified: bool) -> None:
        self._entries[session_id] = _CacheEntry(verified=verified, timestamp=self._clock())

    def discard(self, session_id: str) -> None:
        self._entries.pop(session_id, None)

    def cleanup(self) -> None:
        now = self._clock()
        expired = [k for k, v in self._entries.items() if now - v.timestamp >= self.ttl_seconds]
        for key in expired:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)


def stripe_field(obj: Any, name: str, default: Any = None) -> Any:
    """Reads a field from a StripeObject or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


class PaymentGateway:

    def __init__(self, config: Optional[Settings] = None, cache: Optional[VerifiedPaymentCache] = None):
        self.config = config or default_settings
        self.cache = cache or VerifiedPaymentCache(ttl_seconds=self.config.PAYMENT_CACHE_TTL_SECONDS)

    # --- helpers ---

    def _api_key(self) -> str:
        key = self.config.STRIPE_SECRET_KEY.strip()
        if not key:
            log.error("STRIPE_SECRET_KEY is not configured.")
            raise GatewayUnavailable("Stripe secret key missing")
        return key

    # --- session creation ---

    async def create_checkout_session(
        self,
        line_item: Dict[str, Any],
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
        mode: str = "payment",
        shipping: Optional[Dict[str, Any]] = None,
    ) -> CheckoutSessionResult:
        """
        Creates a hosted Checkout session.

        `shipping` may carry `shipping_address_collection` and
        `shipping_options` for physical goods.
        """
        api_key = self._api_key()
        params: Dict[str, Any] = {
            "payment_method_types": ["card"],
            "line_items": [line_item],
            "mode": mode,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata or {},
        }
        if shipping:
            params.update(shipping)

        try:
            session = await asyncio.to_thread(stripe.checkout.Session.create, api_key=api_key, **params)
        except stripe.StripeError as e:
            log.error(f"Stripe checkout session create failed: {e}")
            raise GatewayUnavailable(str(e)) from e

        session_id = stripe_field(session, "id")
        url = stripe_field(session, "url")
        if not session_id or not url:
            log.error(f"Stripe returned an incomplete checkout session: id={session_id!r}")
            raise GatewayUnavailable("Incomplete checkout session")

        log.info(f"Checkout session created: {session_id} (mode={mode})")
        return CheckoutSessionResult(session_id=session_id, url=url)

    async def retrieve_session(self, session_id: str) -> Any:
        api_key = self._api_key()
        try:
            return await asyncio.to_thread(stripe.checkout.Session.retrieve, session_id, api_key=api_key)
        except stripe.StripeError as e:
            log.error(f"Stripe session retrieve failed for {session_id}: {e}")
            raise GatewayUnavailable(str(e)) from e

    # --- verification ---

    async def verify_payment(self, session_id: str) -> bool:
        """
        True only if Stripe confirms payment.

        One-time sessions must report payment_status == "paid". Subscription
        sessions are paid while the subscription is active or trialing, so
        access survives renewals. Any error is cached as "not paid".
        """
        if not session_id:
            log.info("[PaymentVerification] No session ID provided")
            return False

        cached = self.cache.get(session_id)
        if cached is not None:
            log.info(f"[PaymentVerification] Cache hit for {session_id}: {cached}")
            return cached

        if len(self.cache) > CACHE_CLEANUP_THRESHOLD:
            self.cache.cleanup()

        try:
            api_key = self._api_key()
            session = await asyncio.to_thread(stripe.checkout.Session.retrieve, session_id, api_key=api_key)
            mode = stripe_field(session, "mode")
            log.info(f"[PaymentVerification] Session {session_id}: payment_status={stripe_field(session, 'payment_status')} mode={mode}")

            is_paid = False
            if mode == "subscription":
                subscription = stripe_field(session, "subscription")
                subscription_id = subscription if isinstance(subscription, str) else stripe_field(subscription, "id")
                if subscription_id:
                    sub = await asyncio.to_thread(stripe.Subscription.retrieve, subscription_id, api_key=api_key)
                    sub_status = stripe_field(sub, "status")
                    is_paid = sub_status in PAID_SUBSCRIPTION_STATUSES
                    log.info(f"[PaymentVerification] subscription {subscription_id} status: {sub_status}")
            else:
                is_paid = stripe_field(session, "payment_status") == "paid"
        except Exception as e:
            log.error(f"[PaymentVerification] Error verifying payment for {session_id}: {e}")
            # cache the failure too, so a flapping gateway is not hammered
            self.cache.set(session_id, False)
            return False

        self.cache.set(session_id, is_paid)
        log.info(f"[PaymentVerification] Result for {session_id}: {'PAID' if is_paid else 'NOT PAID'}")
        return is_paid

    def clear_session_cache(self, session_id: str) -> None:
        """Forget a cached verification (e.g. after a refund)."""
        self.cache.discard(session_id)

    # --- webhooks ---

    def construct_webhook_event(self, payload: bytes, sig_header: Optional[str]) -> stripe.Event:
        """
        Verifies and parses a webhook payload.

        Production without a real signing secret raises WebhookMisconfigured.
        Outside production, a missing secret falls back to parsing the body
        unverified.
        """
        if not self.config.webhook_secret_configured:
            if self.config.is_production:
                log.critical("STRIPE_WEBHOOK_SECRET missing in production; refusing webhook.")
                raise WebhookMisconfigured("Webhook signing secret not configured")

            if not sig_header:
                raise InvalidSignature("No signature header")
            log.warning("Webhook signature verification skipped (no secret configured, non-production).")
            try:
                data = json.loads(payload)
            except ValueError as e:
                raise InvalidSignature("Invalid payload") from e
            return stripe.Event.construct_from(data, self.config.STRIPE_SECRET_KEY or None)

        if not sig_header:
            raise InvalidSignature("No signature header")
        try:
            return stripe.Webhook.construct_event(payload, sig_header, self.config.STRIPE_WEBHOOK_SECRET.strip())
        except ValueError as e:
            log.warning("Stripe webhook invalid payload.")
            raise InvalidSignature("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            log.warning("Stripe webhook invalid signature.")
            raise InvalidSignature("Invalid signature") from e
