"""
app/services/scheduler.py
──────────────────────────
APScheduler setup for trial warnings and lapsed-period reporting.

Jobs only read subscriptions and write audit rows / emails. Subscription
state changes come from Stripe webhooks alone.
"""
import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from app.core.config import settings
from app.core.database import AsyncSessionLocal
from app.repositories.repositories import CompanyRepository, SubscriptionRepository, UserRepository
from app.repositories.audit_repository import AuditRepository
from app.services.email_service import EmailService
from app.services.reconciler import as_utc
from app.models.audit import AuditEventType

log = logging.getLogger(__name__)

scheduler = AsyncIOScheduler(timezone="UTC")


def _today_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


async def trial_ending_job(session_factory=AsyncSessionLocal, email: EmailService | None = None) -> int:
    """Emails the author of every company whose trial ends within TRIAL_WARNING_DAYS."""
    log.info("[Scheduler] Starting trial_ending_job")
    email = email or EmailService()
    now = datetime.now(timezone.utc)
    sent = 0
    async with session_factory() as db:
        subscription_repo = SubscriptionRepository(db)
        company_repo = CompanyRepository(db)
        user_repo = UserRepository(db)
        audit_repo = AuditRepository(db)

        trials = await subscription_repo.get_trials_ending_within(
            now, now + timedelta(days=settings.TRIAL_WARNING_DAYS)
        )
        for subscription in trials:
            # Dedup: skip if already sent today
            if await audit_repo.has_event_since(
                subscription.company_id, AuditEventType.TRIAL_WARNING_SENT, _today_start(now)
            ):
                continue

            company = await company_repo.get(subscription.company_id)
            author = await user_repo.get_by_id(company.author_id) if company else None
            if not author:
                log.warning(f"[Scheduler] Company {subscription.company_id} has no author, skipping warning")
                continue

            days_left = max((as_utc(subscription.trial_ends_at) - now).days + 1, 1)
            log.info(f"[Scheduler] Sending trial warning to {author.email} for company {company.id}")
            email_res = await email.send_trial_ending(
                to_email=author.email,
                company_name=company.name,
                days_remaining=days_left,
            )

            if email_res.get("ok"):
                await audit_repo.log(
                    AuditEventType.TRIAL_WARNING_SENT,
                    company_id=company.id,
                    subject_id=str(subscription.id),
                    metadata={"to": author.email, "days_remaining": days_left},
                )
                sent += 1
    return sent


async def lapsed_period_job(session_factory=AsyncSessionLocal) -> int:
    """
    Records active subscriptions whose period ended without a renewal event.
    Usually means a missed invoice webhook; status is left for Stripe to settle.
    """
    log.info("[Scheduler] Starting lapsed_period_job")
    now = datetime.now(timezone.utc)
    flagged = 0
    async with session_factory() as db:
        subscription_repo = SubscriptionRepository(db)
        audit_repo = AuditRepository(db)

        for subscription in await subscription_repo.get_lapsed_active(now):
            if await audit_repo.has_event_since(
                subscription.company_id, AuditEventType.PERIOD_LAPSED, _today_start(now)
            ):
                continue

            overdue = (now - as_utc(subscription.current_period_end)).days
            log.warning(
                f"[Scheduler] Subscription {subscription.id} active past period end ({overdue}d)"
            )
            await audit_repo.log(
                AuditEventType.PERIOD_LAPSED,
                company_id=subscription.company_id,
                subject_id=subscription.provider_subscription_id,
                metadata={"days_overdue": overdue},
            )
            flagged += 1
    return flagged


def setup_scheduler():
    """Registers jobs with the scheduler."""
    if not settings.SCHEDULER_ENABLED:
        log.info("APScheduler disabled via config.")
        return

    # Trial warning at 08:00 UTC
    scheduler.add_job(
        trial_ending_job,
        CronTrigger(hour=8, minute=0),
        id="trial_ending",
        misfire_grace_time=3600,
        replace_existing=True
    )

    # Lapsed periods at 08:05 UTC
    scheduler.add_job(
        lapsed_period_job,
        CronTrigger(hour=8, minute=5),
        id="lapsed_period",
        misfire_grace_time=3600,
        replace_existing=True
    )

    log.info("APScheduler configured with trial_ending and lapsed_period jobs.")
