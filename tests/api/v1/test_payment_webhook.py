"""
tests/api/v1/test_payment_webhook.py
──────────────────────────────────────
Integration tests for POST /payment/webhook.

Coverage:
  - fresh company + subscription created → active, members entitled
  - duplicate delivery of payment_failed → past_due once, second ack is a no-op
  - reordered delivery → newer canceled wins, older active is ignored
  - tampered body with a valid header from another event → 401, no ledger row
  - missing / garbage signature → 401
  - malformed verified body → 400
  - grace period: members keep access until the failure limit
  - payment succeeded restores access and resets the failure count
  - unknown company / unknown subscription → acknowledged as failed
  - second subscription while one is live → failed + webhook.failed audit
  - resubscribe after cancellation reuses the company's row
  - trial checkout (no_payment_required) → trialing, not paid
  - unhandled event types → acknowledged as ignored
  - reconciliation crash → 500 + Retry-After, nothing persisted
"""

import json
import time

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from app.core.config import settings
from app.models.audit import AuditLog
from app.models.billing import ProcessedEvent
from app.models.models import Member, Subscription, SubscriptionStatus
from app.repositories.repositories import MemberRepository
from app.services.reconciler import as_utc

API = settings.API_V1_PREFIX
WEBHOOK = f"{API}/payment/webhook"


# ─────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────

async def _subscription(db, company_id):
    result = await db.execute(
        select(Subscription)
        .where(Subscription.company_id == company_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _entitlements(db, company_id):
    result = await db.execute(
        select(Member.is_entitled)
        .where(Member.company_id == company_id)
    )
    return [row[0] for row in result.all()]


async def _ledger(db, event_id):
    result = await db.execute(select(ProcessedEvent).where(ProcessedEvent.event_id == event_id))
    return result.scalars().all()


async def _create_subscription(post_webhook, stripe_event, subscription_object, created=None):
    event = stripe_event(
        "customer.subscription.created",
        subscription_object("active"),
        event_id="evt_created",
        created=created or int(time.time()) - 3600,
    )
    res = await post_webhook(event)
    assert res.status_code == 200, res.text
    return res


# ─────────────────────────────────────────────────────────────────────────
# Scenarios
# ─────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_subscription_created_entitles_members(
    client: AsyncClient, db_session, workspace, post_webhook, stripe_event, subscription_object
):
    event = stripe_event("customer.subscription.created", subscription_object("active"), event_id="evt_1")
    res = await post_webhook(event)

    assert res.status_code == 200
    body = res.json()
    assert body == {"received": True, "event_id": "evt_1", "outcome": "applied", "duplicate": False}

    sub = await _subscription(db_session, workspace.company_id)
    assert sub is not None
    assert sub.status == SubscriptionStatus.active
    assert sub.provider_subscription_id == "sub_test_1"
    assert sub.plan_id == workspace.plan_id
    assert all(await _entitlements(db_session, workspace.company_id))

    ledger = await _ledger(db_session, "evt_1")
    assert len(ledger) == 1
    assert ledger[0].outcome.value == "applied"


@pytest.mark.asyncio
async def test_checkout_session_completed_creates_subscription(
    client: AsyncClient, db_session, workspace, post_webhook, stripe_event
):
    session = {
        "id": "cs_test_1",
        "object": "checkout.session",
        "mode": "subscription",
        "payment_status": "paid",
        "subscription": "sub_checkout_1",
        "metadata": {"company_id": str(workspace.company_id), "plan_id": str(workspace.plan_id)},
    }
    res = await post_webhook(stripe_event("checkout.session.completed", session))

    assert res.status_code == 200
    assert res.json()["outcome"] == "applied"
    sub = await _subscription(db_session, workspace.company_id)
    assert sub.status == SubscriptionStatus.active
    assert sub.provider_subscription_id == "sub_checkout_1"
    assert sub.current_period_end is not None


@pytest.mark.asyncio
async def test_duplicate_payment_failed_applies_once(
    client: AsyncClient, db_session, workspace, post_webhook, stripe_event,
    subscription_object, invoice_object, notifier,
):
    await _create_subscription(post_webhook, stripe_event, subscription_object)

    event = stripe_event("invoice.payment_failed", invoice_object(), event_id="evt_2")
    first = await post_webhook(event)
    second = await post_webhook(event)

    assert first.status_code == 200
    assert first.json()["outcome"] == "applied"
    assert first.json()["duplicate"] is False

    assert second.status_code == 200
    assert second.json()["duplicate"] is True
    assert second.json()["outcome"] is None

    sub = await _subscription(db_session, workspace.company_id)
    assert sub.status == SubscriptionStatus.past_due
    assert sub.failed_payment_count == 1
    assert len(await _ledger(db_session, "evt_2")) == 1

    # Only the first delivery schedules an email
    assert notifier.scheduled == [("evt_2", "payment_failed")]


@pytest.mark.asyncio
async def test_out_of_order_events_newer_wins(
    client: AsyncClient, db_session, workspace, post_webhook, stripe_event, subscription_object
):
    now = int(time.time())
    await _create_subscription(post_webhook, stripe_event, subscription_object, created=now - 600)

    t1, t2 = now - 120, now - 60
    canceled = stripe_event(
        "customer.subscription.updated", subscription_object("canceled"), event_id="evt_3", created=t2
    )
    reactivated = stripe_event(
        "customer.subscription.updated", subscription_object("active"), event_id="evt_4", created=t1
    )

    res3 = await post_webhook(canceled)
    res4 = await post_webhook(reactivated)

    assert res3.json()["outcome"] == "applied"
    assert res4.status_code == 200
    assert res4.json()["outcome"] == "ignored"

    sub = await _subscription(db_session, workspace.company_id)
    assert sub.status == SubscriptionStatus.canceled
    assert not any(await _entitlements(db_session, workspace.company_id))

    ledger = await _ledger(db_session, "evt_4")
    assert ledger[0].detail == "out_of_order"


@pytest.mark.asyncio
async def test_tampered_body_is_rejected_without_ledger_row(
    client: AsyncClient, db_session, workspace, sign, stripe_event, subscription_object
):
    genuine = json.dumps(stripe_event("customer.subscription.created", subscription_object())).encode()
    header = sign(genuine)

    forged = stripe_event("customer.subscription.created", subscription_object(), event_id="evt_forged")
    res = await client.post(
        WEBHOOK,
        content=json.dumps(forged).encode(),
        headers={"stripe-signature": header, "content-type": "application/json"},
    )

    assert res.status_code == 401
    assert res.json()["error"] == "INVALID_SIGNATURE"
    assert await _ledger(db_session, "evt_forged") == []
    assert await _subscription(db_session, workspace.company_id) is None


@pytest.mark.asyncio
async def test_missing_signature_header(client: AsyncClient):
    res = await client.post(WEBHOOK, content=b'{"id": "evt_x"}')
    assert res.status_code == 401
    body = res.json()
    assert body["retryable"] is False
    assert "timestamp" in body


@pytest.mark.asyncio
async def test_signature_with_wrong_secret(client: AsyncClient, sign, stripe_event):
    body = json.dumps(stripe_event("invoice.paid", {})).encode()
    res = await client.post(WEBHOOK, content=body, headers={"stripe-signature": sign(body, secret="whsec_other")})
    assert res.status_code == 401


@pytest.mark.asyncio
async def test_signed_but_malformed_event(client: AsyncClient, sign):
    body = b'{"type": "invoice.paid"}'
    res = await client.post(WEBHOOK, content=body, headers={"stripe-signature": sign(body)})
    assert res.status_code == 400
    assert res.json()["error"] == "MALFORMED_EVENT"


@pytest.mark.asyncio
async def test_unhandled_event_type_is_acknowledged(client: AsyncClient, db_session, post_webhook, stripe_event):
    res = await post_webhook(stripe_event("customer.created", {"id": "cus_1"}, event_id="evt_other"))
    assert res.status_code == 200
    assert res.json()["outcome"] == "ignored"
    assert len(await _ledger(db_session, "evt_other")) == 1


# ─────────────────────────────────────────────────────────────────────────
# Grace period / recovery
# ─────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_grace_period_demotes_after_limit(
    client: AsyncClient, db_session, workspace, post_webhook, stripe_event,
    subscription_object, invoice_object,
):
    await _create_subscription(post_webhook, stripe_event, subscription_object)

    for attempt in range(1, settings.GRACE_PERIOD_FAILURE_COUNT):
        res = await post_webhook(stripe_event("invoice.payment_failed", invoice_object()))
        assert res.json()["outcome"] == "applied"
        sub = await _subscription(db_session, workspace.company_id)
        assert sub.failed_payment_count == attempt
        assert all(await _entitlements(db_session, workspace.company_id))

    await post_webhook(stripe_event("invoice.payment_failed", invoice_object()))
    sub = await _subscription(db_session, workspace.company_id)
    assert sub.status == SubscriptionStatus.past_due
    assert sub.failed_payment_count == settings.GRACE_PERIOD_FAILURE_COUNT
    assert not any(await _entitlements(db_session, workspace.company_id))

    demoted = await db_session.execute(
        select(AuditLog).where(AuditLog.event_type == "entitlement.members_demoted")
    )
    assert len(demoted.scalars().all()) == 1


@pytest.mark.asyncio
async def test_payment_succeeded_restores_access(
    client: AsyncClient, db_session, workspace, post_webhook, stripe_event,
    subscription_object, invoice_object,
):
    await _create_subscription(post_webhook, stripe_event, subscription_object)
    for _ in range(settings.GRACE_PERIOD_FAILURE_COUNT):
        await post_webhook(stripe_event("invoice.payment_failed", invoice_object()))
    assert not any(await _entitlements(db_session, workspace.company_id))

    period_end = int(time.time()) + 31 * 86400
    res = await post_webhook(stripe_event("invoice.payment_succeeded", invoice_object(period_end=period_end)))

    assert res.json()["outcome"] == "applied"
    sub = await _subscription(db_session, workspace.company_id)
    assert sub.status == SubscriptionStatus.active
    assert sub.failed_payment_count == 0
    assert int(as_utc(sub.current_period_end).timestamp()) == period_end
    assert all(await _entitlements(db_session, workspace.company_id))


@pytest.mark.asyncio
async def test_cancellation_schedules_email(
    client: AsyncClient, workspace, post_webhook, stripe_event, subscription_object, notifier
):
    await _create_subscription(post_webhook, stripe_event, subscription_object)
    res = await post_webhook(
        stripe_event("customer.subscription.deleted", subscription_object("canceled"), event_id="evt_del")
    )
    assert res.json()["outcome"] == "applied"
    assert ("evt_del", "subscription_canceled") in notifier.scheduled


# ─────────────────────────────────────────────────────────────────────────
# Data inconsistencies are acknowledged, not retried
# ─────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_unknown_company_is_failed_outcome(client: AsyncClient, db_session, post_webhook, stripe_event):
    obj = {
        "id": "sub_orphan",
        "status": "active",
        "metadata": {"company_id": "00000000-0000-0000-0000-000000000000"},
    }
    res = await post_webhook(stripe_event("customer.subscription.created", obj, event_id="evt_orphan"))

    assert res.status_code == 200
    assert res.json()["outcome"] == "failed"
    ledger = await _ledger(db_session, "evt_orphan")
    assert ledger[0].detail == "COMPANY_NOT_FOUND"


@pytest.mark.asyncio
async def test_update_for_unknown_subscription_is_failed_outcome(
    client: AsyncClient, post_webhook, stripe_event
):
    res = await post_webhook(
        stripe_event("customer.subscription.updated", {"id": "sub_missing", "status": "active"})
    )
    assert res.status_code == 200
    assert res.json()["outcome"] == "failed"


@pytest.mark.asyncio
async def test_second_subscription_for_company_is_rejected(
    client: AsyncClient, db_session, workspace, post_webhook, stripe_event, subscription_object
):
    await _create_subscription(post_webhook, stripe_event, subscription_object)
    res = await post_webhook(stripe_event(
        "customer.subscription.created", subscription_object("active", sub_id="sub_test_2"), event_id="evt_dup_sub"
    ))
    assert res.json()["outcome"] == "failed"

    sub = await _subscription(db_session, workspace.company_id)
    assert sub.provider_subscription_id == "sub_test_1"

    entry = (await db_session.execute(
        select(AuditLog).where(AuditLog.subject_id == "evt_dup_sub")
    )).scalar_one()
    assert entry.event_type == "webhook.failed"
    assert entry.company_id == workspace.company_id
    assert entry.metadata_["reason"] == "ACTIVE_SUBSCRIPTION_EXISTS"


@pytest.mark.asyncio
async def test_resubscribe_after_cancellation(
    client: AsyncClient, db_session, workspace, post_webhook, stripe_event, subscription_object
):
    now = int(time.time())
    await _create_subscription(post_webhook, stripe_event, subscription_object, created=now - 3600)
    deleted = await post_webhook(stripe_event(
        "customer.subscription.deleted", subscription_object("canceled"), event_id="evt_deleted", created=now - 1800
    ))
    assert deleted.json()["outcome"] == "applied"
    assert not any(await _entitlements(db_session, workspace.company_id))

    checkout = await client.post(
        f"{API}/payment/checkout",
        headers=workspace.author_headers,
        json={"plan_id": str(workspace.plan_id)},
    )
    assert checkout.status_code == 200, checkout.text

    session = {
        "id": "cs_again",
        "object": "checkout.session",
        "mode": "subscription",
        "payment_status": "paid",
        "subscription": "sub_new_2",
        "metadata": {"company_id": str(workspace.company_id), "plan_id": str(workspace.plan_id)},
    }
    res = await post_webhook(stripe_event("checkout.session.completed", session, event_id="evt_again", created=now))

    assert res.status_code == 200
    assert res.json()["outcome"] == "applied"
    sub = await _subscription(db_session, workspace.company_id)
    assert sub.status == SubscriptionStatus.active
    assert sub.provider_subscription_id == "sub_new_2"
    assert sub.failed_payment_count == 0
    assert all(await _entitlements(db_session, workspace.company_id))

    # The old Stripe subscription no longer maps to the company
    stale = await post_webhook(stripe_event(
        "customer.subscription.updated", subscription_object("canceled"), event_id="evt_old_sub", created=now + 1
    ))
    assert stale.json()["outcome"] == "failed"
    assert (await _subscription(db_session, workspace.company_id)).status == SubscriptionStatus.active


@pytest.mark.asyncio
async def test_trial_checkout_is_trialing_not_paid(
    client: AsyncClient, db_session, workspace, post_webhook, stripe_event
):
    session = {
        "id": "cs_trial",
        "object": "checkout.session",
        "mode": "subscription",
        "payment_status": "no_payment_required",
        "subscription": "sub_trial_1",
        "metadata": {"company_id": str(workspace.company_id), "plan_id": str(workspace.plan_id)},
    }
    res = await post_webhook(stripe_event("checkout.session.completed", session))

    assert res.json()["outcome"] == "applied"
    sub = await _subscription(db_session, workspace.company_id)
    assert sub.status == SubscriptionStatus.trialing
    assert sub.current_period_end is not None
    assert all(await _entitlements(db_session, workspace.company_id))


@pytest.mark.asyncio
async def test_checkout_then_subscription_created_refreshes_same_row(
    client: AsyncClient, db_session, workspace, post_webhook, stripe_event, subscription_object
):
    now = int(time.time())
    session = {
        "id": "cs_1",
        "object": "checkout.session",
        "mode": "subscription",
        "payment_status": "no_payment_required",
        "subscription": "sub_test_1",
        "metadata": {"company_id": str(workspace.company_id), "plan_id": str(workspace.plan_id)},
    }
    await post_webhook(stripe_event("checkout.session.completed", session, created=now - 10))

    trial_end = now + 7 * 86400
    res = await post_webhook(stripe_event(
        "customer.subscription.created",
        subscription_object("trialing", trial_end=trial_end, period_end=trial_end),
        created=now,
    ))

    assert res.json()["outcome"] == "applied"
    sub = await _subscription(db_session, workspace.company_id)
    assert sub.status == SubscriptionStatus.trialing
    assert int(as_utc(sub.trial_ends_at).timestamp()) == trial_end
    rows = (await db_session.execute(
        select(Subscription).where(Subscription.company_id == workspace.company_id)
    )).scalars().all()
    assert len(rows) == 1


# ─────────────────────────────────────────────────────────────────────────
# Atomicity
# ─────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_failure_mid_reconcile_leaves_no_partial_state(
    client: AsyncClient, db_session, workspace, post_webhook, stripe_event,
    subscription_object, invoice_object, monkeypatch,
):
    await _create_subscription(post_webhook, stripe_event, subscription_object)

    original = MemberRepository.set_entitlement

    async def _boom(self, company_id, entitled):
        raise RuntimeError("connection reset while updating members")

    monkeypatch.setattr(MemberRepository, "set_entitlement", _boom)
    res = await post_webhook(stripe_event("invoice.payment_failed", invoice_object(), event_id="evt_crash"))

    assert res.status_code == 500
    assert res.headers["Retry-After"] == "60"
    assert res.json()["retryable"] is True
    assert res.json()["error"] == "PAYMENT_PROCESSING_FAILED"

    # Neither the subscription change nor the claim survived
    sub = await _subscription(db_session, workspace.company_id)
    assert sub.status == SubscriptionStatus.active
    assert sub.failed_payment_count == 0
    assert all(await _entitlements(db_session, workspace.company_id))
    assert await _ledger(db_session, "evt_crash") == []

    # Stripe's retry is processed from scratch
    monkeypatch.setattr(MemberRepository, "set_entitlement", original)
    retry = await post_webhook(stripe_event("invoice.payment_failed", invoice_object(), event_id="evt_crash"))
    assert retry.json()["outcome"] == "applied"
    assert retry.json()["duplicate"] is False
