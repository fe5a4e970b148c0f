"""
app/services/stripe_service.py
───────────────────────────────
Stripe Checkout + Billing Portal integration over the REST API (httpx).

Flow:
  1. Company author hits POST /payment/checkout → a Stripe Checkout session
  2. User is redirected to Stripe's hosted checkout page
  3. Stripe sends checkout.session.completed / customer.subscription.* /
     invoice.* webhooks to POST /api/v1/payment/webhook
  4. The webhook processor reconciles them into our Subscription rows

Cancellation goes the same way: DELETE /subscription/cancel asks Stripe,
and the customer.subscription.* webhook that follows updates our rows.

Every request pins STRIPE_API_VERSION via the Stripe-Version header, so
payload shapes match what the reconciler parses. Public methods never raise
on Stripe or network failures; they return {"ok": False, "error": ...}.

Configuration in .env:
  STRIPE_SECRET_KEY=sk_live_...      (unset or "disabled*" → mock mode)
  STRIPE_WEBHOOK_SECRET=whsec_...
  STRIPE_API_VERSION=2025-02-24.acacia
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

import httpx

from app.models.models import Plan

log = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com/v1"


class StripeService:

    def __init__(
        self,
        secret_key: Optional[str],
        api_version: str,
        app_url: str,
        currency: str = "usd",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.api_version = api_version
        self.app_url = app_url
        self.currency = currency
        self._transport = transport
        self.enabled = bool(secret_key and not secret_key.startswith("disabled"))

    async def _request(
        self,
        method: str,
        path: str,
        *,
        timeout: float = 10.0,
        params: Optional[dict] = None,
        data: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> tuple[bool, Any]:
        """Returns (True, json_body) or (False, error_message)."""
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Stripe-Version": self.api_version,
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                resp = await client.request(
                    method, f"{STRIPE_API_BASE}{path}", headers=headers, params=params, data=data
                )
        except httpx.HTTPError as e:
            log.error(f"[Stripe] {method} {path} failed: {e}")
            return False, str(e)

        if resp.status_code in (200, 201):
            return True, resp.json()

        try:
            message = resp.json().get("error", {}).get("message", resp.text)
        except ValueError:
            message = resp.text
        log.error(f"[Stripe] {method} {path} returned {resp.status_code}: {message}")
        return False, message

    def _checkout_params(
        self,
        company_id: str,
        company_name: str,
        user_id: str,
        plan: Plan,
        customer_id: Optional[str],
        customer_email: Optional[str],
    ) -> dict:
        # company_id / plan_id go on the session and on the subscription; the
        # reconciler reads either
        params = {
            "mode": "subscription",
            "line_items[0][quantity]": "1",
            "success_url": f"{self.app_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.app_url}/settings/billing?cancelled=1",
            "metadata[company_id]": company_id,
            "metadata[plan_id]": str(plan.id),
            "metadata[user_id]": user_id,
            "metadata[company_name]": company_name,
            "subscription_data[metadata][company_id]": company_id,
            "subscription_data[metadata][plan_id]": str(plan.id),
        }
        if plan.stripe_price_id:
            params["line_items[0][price]"] = plan.stripe_price_id
        else:
            params.update({
                "line_items[0][price_data][currency]": plan.currency or self.currency,
                "line_items[0][price_data][unit_amount]": str(plan.price),
                "line_items[0][price_data][recurring][interval]": "month",
                "line_items[0][price_data][product_data][name]": plan.name,
            })
        if plan.trial_days:
            params["subscription_data[trial_period_days]"] = str(plan.trial_days)
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email
        return params

    async def create_checkout_session(
        self,
        *,
        company_id: str,
        company_name: str,
        user_id: str,
        plan: Plan,
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> dict:
        """
        Creates a subscription Checkout session for `plan`.

        Returns {"ok": True, "checkout_url": ..., "session_id": ...}
        or {"ok": False, "error": ...}.
        """
        if not self.enabled:
            fake_url = f"{self.app_url}/billing/mock-checkout?company_id={company_id}&plan_id={plan.id}"
            log.info(f"[Stripe] DISABLED — mock checkout for company {company_id} → plan {plan.id}")
            return {"ok": True, "checkout_url": fake_url, "session_id": "mock_session"}

        ok, body = await self._request(
            "POST",
            "/checkout/sessions",
            timeout=15.0,
            data=self._checkout_params(company_id, company_name, user_id, plan, customer_id, customer_email),
            idempotency_key=f"checkout-{company_id}-{uuid.uuid4().hex}",
        )
        if not ok:
            return {"ok": False, "error": body}
        return {"ok": True, "checkout_url": body["url"], "session_id": body["id"]}

    async def get_or_create_customer(self, email: str, company_id: str, company_name: str) -> Optional[str]:
        """Stripe customer id for `email`, creating the customer when none exists."""
        if not self.enabled:
            return f"cus_mock_{company_id}"

        ok, body = await self._request("GET", "/customers", params={"email": email})
        if ok and body.get("data"):
            return body["data"][0]["id"]

        ok, body = await self._request(
            "POST",
            "/customers",
            data={"email": email, "name": company_name, "metadata[company_id]": company_id},
        )
        return body.get("id") if ok else None

    async def create_portal_session(self, customer_id: str) -> dict:
        if not self.enabled:
            return {"ok": True, "portal_url": f"{self.app_url}/billing/mock-portal?customer_id={customer_id}"}

        ok, body = await self._request(
            "POST",
            "/billing_portal/sessions",
            data={"customer": customer_id, "return_url": f"{self.app_url}/settings/billing"},
        )
        if not ok:
            return {"ok": False, "error": body}
        return {"ok": True, "portal_url": body.get("url")}

    async def cancel_subscription(self, provider_subscription_id: str, immediate: bool = False) -> dict:
        """
        Asks Stripe to cancel now (DELETE) or at the end of the current period.
        Local state changes only when the resulting webhook arrives.

        Returns {"ok": True, "status": ..., "cancel_at_period_end": ...}
        or {"ok": False, "error": ...}.
        """
        if not self.enabled:
            log.info(f"[Stripe] DISABLED — mock cancel for {provider_subscription_id} (immediate={immediate})")
            return {
                "ok": True,
                "status": "canceled" if immediate else "active",
                "cancel_at_period_end": not immediate,
            }

        if immediate:
            ok, body = await self._request("DELETE", f"/subscriptions/{provider_subscription_id}")
        else:
            ok, body = await self._request(
                "POST",
                f"/subscriptions/{provider_subscription_id}",
                data={"cancel_at_period_end": "true"},
            )
        if not ok:
            return {"ok": False, "error": body}
        return {
            "ok": True,
            "status": body.get("status"),
            "cancel_at_period_end": bool(body.get("cancel_at_period_end")),
        }

    async def ping(self) -> dict:
        """Connectivity check used by the payment health endpoint."""
        if not self.enabled:
            return {"status": "disabled"}
        ok, body = await self._request("GET", "/balance", timeout=5.0)
        if ok:
            return {"status": "healthy"}
        return {"status": "unhealthy", "message": f"Stripe check failed: {body}"}
