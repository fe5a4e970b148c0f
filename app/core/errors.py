"""
app/core/errors.py
───────────────────
Typed billing errors.

Every error carries a machine-readable `code`, an HTTP `status_code` and a
`retryable` flag. The app-level handler in app/main.py renders them as:

    {"statusCode": 401, "message": "...", "error": "INVALID_SIGNATURE",
     "retryable": false, "timestamp": "..."}

Retryable errors additionally get a `Retry-After` header so Stripe redelivers.
"""

from __future__ import annotations


class BillingError(Exception):
    code = "BILLING_ERROR"
    status_code = 400
    retryable = False
    default_message = "Billing error"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        retryable: bool | None = None,
    ):
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "statusCode": self.status_code,
            "message": self.message,
            "error": self.code,
            "retryable": self.retryable,
        }


# ── Webhook ingress ───────────────────────────────────────────────────────

class InvalidSignature(BillingError):
    code = "INVALID_SIGNATURE"
    status_code = 401
    default_message = "Invalid Stripe signature"


class MalformedEvent(BillingError):
    code = "MALFORMED_EVENT"
    status_code = 400
    default_message = "Webhook payload is not a valid event"


class WebhookMisconfigured(BillingError):
    code = "WEBHOOK_MISCONFIGURED"
    status_code = 500
    default_message = "Webhook secret is not configured"


# ── Data inconsistencies (recoverable, reported as failed outcomes) ───────

class SubscriptionNotFound(BillingError):
    code = "SUBSCRIPTION_NOT_FOUND"
    status_code = 404
    default_message = "Subscription not found"


class DuplicateSubscription(BillingError):
    code = "ACTIVE_SUBSCRIPTION_EXISTS"
    status_code = 409
    default_message = "Company already owns a subscription"


class CompanyNotFound(BillingError):
    code = "COMPANY_NOT_FOUND"
    status_code = 404
    default_message = "Company not found"


# ── Transient ─────────────────────────────────────────────────────────────

class PersistenceTimeout(BillingError):
    code = "PERSISTENCE_TIMEOUT"
    status_code = 503
    retryable = True
    default_message = "Database operation timed out"


class PersistenceUnavailable(BillingError):
    code = "PERSISTENCE_UNAVAILABLE"
    status_code = 503
    retryable = True
    default_message = "Database unavailable"


class ReconciliationFailed(BillingError):
    code = "PAYMENT_PROCESSING_FAILED"
    status_code = 500
    retryable = True
    default_message = "Payment processing failed"


# ── Entitlement / plan limits ─────────────────────────────────────────────

class NoActiveSubscription(BillingError):
    code = "NO_ACTIVE_SUBSCRIPTION"
    status_code = 403
    default_message = "No active subscription found"


class PlanNotFound(BillingError):
    code = "PLAN_NOT_FOUND"
    status_code = 404
    default_message = "Plan not found"


class LimitReached(BillingError):
    code = "LIMIT_REACHED"
    status_code = 403
    default_message = "Plan limit reached"
