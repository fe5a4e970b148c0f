"""
Signature verification: exact bytes, secret and clock skew.
"""

import json

import pytest

from app.core.errors import InvalidSignature, MalformedEvent
from app.services.events import BillingEventType
from app.services.webhook_verifier import WebhookVerifier, compute_signature

SECRET = "whsec_unit"
NOW = 1_760_000_000


def _verifier(tolerance=300, now=NOW):
    return WebhookVerifier(SECRET, tolerance_seconds=tolerance, clock=lambda: now)


def _body(event_id="evt_unit", event_type="invoice.payment_failed"):
    return json.dumps({
        "id": event_id,
        "type": event_type,
        "created": NOW,
        "data": {"object": {"id": "in_1", "subscription": "sub_1"}},
    }).encode()


def _header(body, secret=SECRET, ts=NOW):
    return f"t={ts},v1={compute_signature(secret, ts, body)}"


def test_valid_signature_returns_typed_event():
    body = _body()
    event = _verifier().verify(body, _header(body))
    assert event.id == "evt_unit"
    assert event.type == BillingEventType.payment_failed
    assert event.provider_type == "invoice.payment_failed"
    assert int(event.occurred_at.timestamp()) == NOW
    assert event.payload["subscription"] == "sub_1"


@pytest.mark.parametrize("position", [0, 10, -1])
def test_any_byte_mutation_fails(position):
    body = _body()
    header = _header(body)
    mutated = bytearray(body)
    mutated[position] ^= 0x01
    with pytest.raises(InvalidSignature):
        _verifier().verify(bytes(mutated), header)


def test_whitespace_change_fails():
    body = _body()
    header = _header(body)
    reformatted = json.dumps(json.loads(body), indent=2).encode()
    with pytest.raises(InvalidSignature):
        _verifier().verify(reformatted, header)


def test_wrong_secret_fails():
    body = _body()
    with pytest.raises(InvalidSignature):
        _verifier().verify(body, _header(body, secret="whsec_other"))


@pytest.mark.parametrize("skew", [301, -301, 3600])
def test_timestamp_outside_tolerance_fails(skew):
    body = _body()
    with pytest.raises(InvalidSignature):
        _verifier(now=NOW + skew).verify(body, _header(body))


@pytest.mark.parametrize("skew", [0, 299, -299])
def test_timestamp_within_tolerance_passes(skew):
    body = _body()
    assert _verifier(now=NOW + skew).verify(body, _header(body)).id == "evt_unit"


def test_any_matching_v1_entry_is_accepted():
    body = _body()
    good = compute_signature(SECRET, NOW, body)
    header = f"t={NOW},v1={'0' * 64},v1={good},v0=legacy"
    assert _verifier().verify(body, header).id == "evt_unit"


@pytest.mark.parametrize("header", [None, "", "garbage", "t=abc,v1=deadbeef", f"t={NOW}", "v1=deadbeef"])
def test_malformed_headers_fail(header):
    with pytest.raises(InvalidSignature):
        _verifier().verify(_body(), header)


def test_signature_failures_are_logged_to_security_logger(caplog):
    body = _body()
    with caplog.at_level("WARNING", logger="app.security"):
        with pytest.raises(InvalidSignature):
            _verifier().verify(body + b" ", _header(body))
    assert any(r.name == "app.security" for r in caplog.records)


def test_authentic_non_json_is_malformed():
    body = b"not json"
    with pytest.raises(MalformedEvent):
        _verifier().verify(body, _header(body))


@pytest.mark.parametrize("payload", [
    {"type": "invoice.paid", "created": NOW},
    {"id": "evt_1", "created": NOW},
    {"id": "evt_1", "type": "invoice.paid"},
    {"id": "evt_1", "type": "invoice.paid", "created": NOW, "data": {"object": []}},
    {"id": "evt_1", "type": "invoice.paid", "created": NOW, "data": {"object": None}},
    {"id": "evt_1", "type": "invoice.paid", "created": NOW, "data": None},
    {"id": "evt_1", "type": "invoice.paid", "created": NOW},
    ["not", "an", "object"],
])
def test_authentic_incomplete_event_is_malformed(payload):
    body = json.dumps(payload).encode()
    with pytest.raises(MalformedEvent):
        _verifier().verify(body, _header(body))


def test_unknown_event_type_maps_to_unhandled():
    body = _body(event_type="customer.created")
    event = _verifier().verify(body, _header(body))
    assert event.type == BillingEventType.unhandled
