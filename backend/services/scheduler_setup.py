"""
scheduler_setup.py
------------------
APScheduler wiring for the metering gateway.

SCHEDULE (UTC):
  00:00         → daily usage summary: rolls the last 24h of usage_records
                  into usage_summaries, one document per account per day
  every 10 min  → pending charge sweep: settles or refunds debits whose
                  request died between debit and settlement

STARTUP USAGE:
    from services.scheduler_setup import setup_scheduler
    scheduler = AsyncIOScheduler()
    setup_scheduler(scheduler, db)
    scheduler.start()
"""

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from metering.config import PENDING_CHARGE_GRACE_MINUTES
from metering.ledger import TokenLedger
from metering.usage import UsageRecorder

logger = logging.getLogger(__name__)

PENDING_SWEEP_INTERVAL_MINUTES = 10


# ---------------------------------------------------------------------------
# Public entry point, called once at app startup
# ---------------------------------------------------------------------------

def setup_scheduler(scheduler, db) -> None:
    """
    Register all metering jobs with the provided APScheduler instance.

    Call this BEFORE scheduler.start().
    """
    scheduler.add_job(
        _make_usage_summary_job(db),
        CronTrigger(hour=0, minute=0, timezone=timezone.utc),
        id="daily_usage_summary",
        replace_existing=True,
        misfire_grace_time=3600,
    )

    scheduler.add_job(
        _make_pending_sweep_job(db),
        IntervalTrigger(minutes=PENDING_SWEEP_INTERVAL_MINUTES),
        id="pending_charge_sweep",
        replace_existing=True,
        max_instances=1,
    )

    logger.info(
        f"Metering scheduler registered: usage summary@00:00 UTC | "
        f"pending sweep@every {PENDING_SWEEP_INTERVAL_MINUTES} min"
    )


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

async def run_daily_usage_summary(db, now: datetime = None) -> int:
    """
    Summarize the last 24 hours of usage per account.

    Re-running for the same day overwrites that day's summaries.

    Returns:
        Number of accounts summarized
    """
    now = now or datetime.now(timezone.utc)
    since = now - timedelta(days=1)
    summary_date = since.strftime("%Y-%m-%d")

    summary = await UsageRecorder(db).summarize(since)

    for account_id, totals in summary.items():
        await db.usage_summaries.update_one(
            {"account_id": account_id, "date": summary_date},
            {"$set": {
                "account_id": account_id,
                "date": summary_date,
                "total_tokens": totals["total_tokens"],
                "request_count": totals["request_count"],
                "model_usage": totals["model_usage"],
                "created_at": now.isoformat()
            }},
            upsert=True
        )

    logger.info(f"Daily usage summary for {summary_date}: {len(summary)} accounts")
    return len(summary)


async def run_pending_charge_sweep(db, older_than: timedelta = None):
    """Settle or refund pending charges older than the grace period."""
    if older_than is None:
        older_than = timedelta(minutes=PENDING_CHARGE_GRACE_MINUTES)
    recorder = UsageRecorder(db)
    return await TokenLedger(db).reconcile_pending_charges(recorder.exists, older_than)


# ---------------------------------------------------------------------------
# Job factories
# ---------------------------------------------------------------------------

def _make_usage_summary_job(db):
    async def usage_summary_job():
        logger.info("=== USAGE SUMMARY JOB STARTING ===")
        try:
            count = await run_daily_usage_summary(db)
            logger.info("=== USAGE SUMMARY JOB COMPLETE: %s accounts ===", count)
        except Exception as e:
            logger.error("=== USAGE SUMMARY JOB FAILED: %s ===", e, exc_info=True)

    return usage_summary_job


def _make_pending_sweep_job(db):
    async def pending_sweep_job():
        try:
            result = await run_pending_charge_sweep(db)
            logger.debug("Pending charge sweep: %s", result)
        except Exception as e:
            logger.error("Pending charge sweep failed: %s", e, exc_info=True)

    return pending_sweep_job
