import os
import importlib
import json
import time
import uuid
from types import SimpleNamespace

# ── Environment Overrides ───────────────────────────────────────────
os.environ["SCHEDULER_ENABLED"] = "False"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///file:memdb1?mode=memory&cache=shared&uri=true"
os.environ["SECRET_KEY"] = "test-secret-key-that-is-long-enough-for-hs256"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["RESEND_API_KEY"] = ""
os.environ["GRACE_PERIOD_FAILURE_COUNT"] = "3"
# ────────────────────────────────────────────────────────────────────

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.main import app
from app.core.database import Base, get_db
from app.core.deps import get_billing_notifier
from app.core.security import create_access_token
from app.services.webhook_verifier import compute_signature

# Force all models to register with Base.metadata before create_all runs.
# Using importlib to avoid the `import app.models.X` syntax which would
# shadow the `app` FastAPI instance imported above.
importlib.import_module("app.models.models")
importlib.import_module("app.models.billing")
importlib.import_module("app.models.audit")

from app.models.models import MemberPermission, MemberRole  # noqa: E402
from app.repositories.repositories import (  # noqa: E402
    CompanyRepository, MemberRepository, PlanRepository, UserRepository
)

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
async def engine():
    # Use a unique in-memory database name per test to avoid cross-test interference
    unique_db_name = f"memdb_{uuid.uuid4().hex}"
    url = f"sqlite+aiosqlite:///file:{unique_db_name}?mode=memory&cache=shared&uri=true"
    _engine = create_async_engine(
        url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield _engine
    await _engine.dispose()


@pytest.fixture
def TestingSessionLocal(engine):
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture(autouse=True)
async def init_db(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
async def db_session(TestingSessionLocal):
    async with TestingSessionLocal() as session:
        yield session


@pytest.fixture(autouse=True)
def override_database_internals(monkeypatch, engine, TestingSessionLocal):
    """Force all modules that imported AsyncSessionLocal to use our localized test sessionmaker."""
    import app.core.database
    import app.services.scheduler
    import app.services.billing_notifier

    monkeypatch.setattr("app.core.database.engine", engine)
    monkeypatch.setattr("app.core.database.AsyncSessionLocal", TestingSessionLocal)
    monkeypatch.setattr("app.services.scheduler.AsyncSessionLocal", TestingSessionLocal)
    monkeypatch.setattr("app.services.billing_notifier.AsyncSessionLocal", TestingSessionLocal)


class RecordingNotifier:
    """Stands in for BillingNotifier: records what would be emailed after commit."""

    def __init__(self):
        self.scheduled = []

    def schedule(self, event, result):
        if result is not None and result.notify:
            self.scheduled.append((event.id, result.notify))
        return None


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture(autouse=True)
async def override_get_db(db_session, notifier):
    async def _get_test_db():
        yield db_session
    app.dependency_overrides[get_db] = _get_test_db
    app.dependency_overrides[get_billing_notifier] = lambda: notifier
    yield
    app.dependency_overrides.clear()


@pytest.fixture
async def client():
    # Explicitly using ASGITransport with the app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# ── Stripe webhook helpers ──────────────────────────────────────────

@pytest.fixture
def sign():
    """Builds a Stripe-Signature header for a raw body."""
    def _sign(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
        ts = int(time.time()) if timestamp is None else timestamp
        return f"t={ts},v1={compute_signature(secret, ts, body)}"
    return _sign


@pytest.fixture
def stripe_event():
    """Builds a Stripe event envelope."""
    def _event(event_type: str, obj: dict, *, event_id: str | None = None, created: int | None = None) -> dict:
        return {
            "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "created": int(time.time()) if created is None else created,
            "data": {"object": obj},
        }
    return _event


@pytest.fixture
def post_webhook(client, sign):
    async def _post(event: dict):
        body = json.dumps(event).encode()
        return await client.post(
            "/api/v1/payment/webhook",
            content=body,
            headers={"stripe-signature": sign(body), "content-type": "application/json"},
        )
    return _post


# ── Tenant fixtures ─────────────────────────────────────────────────

@pytest.fixture
async def workspace(db_session):
    """
    A company with an author, one member and one viewer, plus a plan.
    No subscription: those only come from webhooks.

    Ids are captured as plain values: a rollback in the shared session
    expires ORM instances, and touching them afterwards would lazy-load.
    """
    users = UserRepository(db_session)
    members = MemberRepository(db_session)
    suffix = uuid.uuid4().hex[:6]

    author = await users.create(f"author_{suffix}@test.com", "x", "Ada")
    company = await CompanyRepository(db_session).create(name=f"Company {suffix}", author_id=author.id)
    await members.create(company.id, author.id, MemberRole.author, [MemberPermission.ALL.value])

    worker = await users.create(f"member_{suffix}@test.com", "x", "Max")
    await members.create(company.id, worker.id, MemberRole.member)

    viewer = await users.create(f"viewer_{suffix}@test.com", "x", "Vi")
    await members.create(company.id, viewer.id, MemberRole.viewer)

    plan = await PlanRepository(db_session).create(
        name="Team", price=1900, max_sheets=5, max_members=2, max_viewers=1
    )

    def headers_for(user_id):
        return {"Authorization": f"Bearer {create_access_token(user_id, company.id)}"}

    return SimpleNamespace(
        company_id=company.id,
        company_name=company.name,
        plan_id=plan.id,
        author_id=author.id,
        author_email=author.email,
        worker_id=worker.id,
        viewer_id=viewer.id,
        author_headers=headers_for(author.id),
        worker_headers=headers_for(worker.id),
        viewer_headers=headers_for(viewer.id),
    )


@pytest.fixture
def subscription_object(workspace):
    """A Stripe subscription object for the workspace company."""
    metadata = {"company_id": str(workspace.company_id), "plan_id": str(workspace.plan_id)}

    def _obj(status: str = "active", sub_id: str = "sub_test_1", period_end: int | None = None, **extra) -> dict:
        obj = {
            "id": sub_id,
            "object": "subscription",
            "status": status,
            "customer": "cus_test_1",
            "current_period_end": period_end or int(time.time()) + 30 * 86400,
            "metadata": dict(metadata),
        }
        obj.update(extra)
        return obj
    return _obj


@pytest.fixture
def invoice_object():
    def _invoice(sub_id: str = "sub_test_1", amount: int = 1900, period_end: int | None = None) -> dict:
        end = period_end or int(time.time()) + 30 * 86400
        return {
            "id": f"in_{uuid.uuid4().hex[:10]}",
            "object": "invoice",
            "subscription": sub_id,
            "amount_due": amount,
            "amount_paid": amount,
            "currency": "usd",
            "lines": {"data": [{"period": {"start": end - 30 * 86400, "end": end}}]},
        }
    return _invoice
