"""
app/services/webhook_verifier.py
─────────────────────────────────
Stripe webhook signature verification.

Stripe's Stripe-Signature header format:
  t=<timestamp>,v1=<hmac_sha256>[,v1=<hmac_sha256>...][,v0=<legacy>]

We verify: HMAC-SHA256(webhook_secret, b"<timestamp>." + raw_body) against
every v1 entry (Stripe sends several while a secret is being rolled).

The HMAC is computed over the request bytes exactly as received. JSON
decoding happens only after the signature matched.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from typing import Callable, Optional

from app.core.errors import InvalidSignature, MalformedEvent
from app.services.events import BillingEvent

log = logging.getLogger(__name__)
security_log = logging.getLogger("app.security")


def compute_signature(secret: str, timestamp: int | str, payload: bytes) -> str:
    signed_payload = f"{timestamp}.".encode("utf-8") + payload
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def _parse_header(sig_header: str) -> tuple[Optional[str], list[str]]:
    timestamp = None
    signatures: list[str] = []
    for item in sig_header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


class WebhookVerifier:

    def __init__(
        self,
        secret: str,
        tolerance_seconds: int = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds
        self._clock = clock

    def _reject(self, reason: str) -> InvalidSignature:
        security_log.warning(f"[Webhook] Signature rejected: {reason}")
        return InvalidSignature(f"Invalid Stripe signature: {reason}")

    def verify(self, payload: bytes, sig_header: Optional[str]) -> BillingEvent:
        """
        Returns the typed event on success.
        Raises InvalidSignature for any authenticity failure and
        MalformedEvent when an authentic body is not a usable event.
        """
        if not sig_header:
            raise self._reject("missing header")

        timestamp, signatures = _parse_header(sig_header)
        if not timestamp or not signatures:
            raise self._reject("malformed header")

        try:
            ts = int(timestamp)
        except ValueError:
            raise self._reject("non-numeric timestamp") from None

        # Replay protection
        if abs(self._clock() - ts) > self.tolerance_seconds:
            raise self._reject(f"timestamp {ts} outside tolerance")

        expected = compute_signature(self.secret, timestamp, payload)
        if not any(hmac.compare_digest(expected, sig) for sig in signatures):
            raise self._reject("signature mismatch")

        try:
            data = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            log.error(f"[Webhook] Verified payload is not JSON: {e}")
            raise MalformedEvent("Webhook payload is not valid JSON") from e

        return BillingEvent.from_stripe(data)
