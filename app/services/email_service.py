"""
app/services/email_service.py
───────────────────────────────
Billing notification email via Resend (https://resend.com).

Configuration:
  Set RESEND_API_KEY in environment/.env
  Set EMAIL_FROM in environment/.env (e.g. "Eventify <noreply@eventify.app>")

All methods are fire-and-forget friendly:
  Use `asyncio.create_task(email.send_payment_failed(...))` to not block
  request handlers. Sends never raise; callers get {"ok": False, ...}.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from app.core.config import settings

log = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

_LAYOUT = """
<div style="font-family: -apple-system, sans-serif; max-width: 560px; margin: 0 auto; color: #1e293b;">
  <div style="background: #111827; padding: 24px; border-radius: 12px 12px 0 0;">
    <span style="color: #e5e7eb; font-size: 14px;">{product}</span>
  </div>
  <div style="background: #f9fafb; padding: 32px; border-radius: 0 0 12px 12px; border: 1px solid #e5e7eb;">
    {body}
    <a href="{cta_url}"
       style="display: inline-block; background: {cta_color}; color: #fff;
              font-weight: 700; padding: 12px 28px; border-radius: 8px;
              text-decoration: none; font-size: 15px;">
      {cta_label}
    </a>
  </div>
</div>
"""


def format_amount(amount_cents: Optional[int], currency: Optional[str]) -> str:
    if amount_cents is None:
        return "your subscription payment"
    return f"{amount_cents / 100:.2f} {(currency or settings.STRIPE_CURRENCY).upper()}"


class EmailService:

    def __init__(
        self,
        api_key: Optional[str] = None,
        from_addr: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.RESEND_API_KEY
        self.from_addr = from_addr or settings.EMAIL_FROM
        self.base_url = base_url or settings.APP_BASE_URL
        self.enabled = bool(self.api_key and self.api_key != "disabled")

    async def _send(self, to: str, subject: str, html: str) -> dict:
        """
        Core send. Returns {"id": "...", "ok": True} on success.
        Returns {"ok": False, "error": "..."} on failure (never raises).
        """
        if not self.enabled:
            log.info(f"[EmailService] DISABLED — would send to {to}: {subject}")
            return {"ok": True, "id": "disabled", "skipped": True}

        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                resp = await client.post(
                    RESEND_API_URL,
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Content-Type": "application/json",
                    },
                    json={
                        "from": self.from_addr,
                        "to": [to],
                        "subject": subject,
                        "html": html,
                    },
                )
                if resp.status_code in (200, 201):
                    data = resp.json()
                    return {"ok": True, "id": data.get("id", "unknown")}
                log.error(f"[EmailService] Resend error {resp.status_code}: {resp.text}")
                return {"ok": False, "error": resp.text, "status": resp.status_code}
        except httpx.HTTPError as e:
            log.error(f"[EmailService] Exception sending to {to}: {e}")
            return {"ok": False, "error": str(e)}

    def _render(self, body: str, cta_label: str, cta_color: str = "#2563eb") -> str:
        return _LAYOUT.format(
            product=settings.PROJECT_NAME,
            body=body,
            cta_url=f"{self.base_url}/settings/billing",
            cta_label=cta_label,
            cta_color=cta_color,
        )

    # ── Email Templates ───────────────────────────────────────────────────

    async def send_payment_failed(
        self,
        to_email: str,
        company_name: str,
        amount: str,
        failed_attempts: int,
        grace_attempts: int,
    ) -> dict:
        """Stripe payment failure notification."""
        remaining = max(grace_attempts - failed_attempts, 0)
        if remaining:
            warning = (
                f"Your team keeps access for now; after {remaining} more failed "
                f"attempt{'s' if remaining != 1 else ''} members will lose access."
            )
        else:
            warning = "Member access has been suspended until the payment succeeds."
        subject = f"Payment failed for {company_name} — action required"
        body = f"""
            <h2 style="margin: 0 0 8px; color: #dc2626;">Payment failed</h2>
            <p style="color: #4b5563; margin: 0 0 8px;">
              We couldn't process a payment of <strong>{amount}</strong> for <strong>{company_name}</strong>.
            </p>
            <p style="color: #4b5563; margin: 0 0 24px;">{warning}</p>
        """
        return await self._send(to_email, subject, self._render(body, "Update Payment Method", "#dc2626"))

    async def send_subscription_canceled(self, to_email: str, company_name: str) -> dict:
        subject = f"Your {company_name} subscription was canceled"
        body = f"""
            <h2 style="margin: 0 0 8px;">Subscription canceled</h2>
            <p style="color: #4b5563; margin: 0 0 24px;">
              The subscription for <strong>{company_name}</strong> has ended and
              members no longer have access to paid features.
            </p>
        """
        return await self._send(to_email, subject, self._render(body, "Resubscribe"))

    async def send_trial_ending(self, to_email: str, company_name: str, days_remaining: int) -> dict:
        """Sent TRIAL_WARNING_DAYS before the trial ends."""
        plural = "s" if days_remaining != 1 else ""
        subject = f"Your trial ends in {days_remaining} day{plural}"
        body = f"""
            <h2 style="margin: 0 0 8px;">{days_remaining} day{plural} left on your trial</h2>
            <p style="color: #4b5563; margin: 0 0 24px;">
              The free trial for <strong>{company_name}</strong> ends soon.
              Add a payment method to keep your workspaces running.
            </p>
        """
        return await self._send(to_email, subject, self._render(body, "Choose a Plan"))
