"""
Daily cold-lead compliance sweep.

Records one ``rule_violation`` activity entry per cold lead that has fallen
behind on its check-ins, so the accountability trail survives even when no
admin opens the dashboard that day.
"""

import asyncio
import logging
from datetime import date, datetime, time, timedelta, timezone

from celery import shared_task

from leadtrack.config import build_context
from leadtrack.schemas import ActivityAction
from leadtrack.services.accountability import AccountabilityDetector
from leadtrack.services.gateway import PersistenceGateway
from leadtrack.services.scheduling import local_today, to_local_date

logger = logging.getLogger(__name__)

VIOLATION_PREFIX = "Cold check-in missed"


def _day_start(today: date, tz) -> datetime:
    start = datetime.combine(today, time.min, tzinfo=tz or timezone.utc)
    # One extra day of slack; exact day matching happens on the local date
    return start.astimezone(timezone.utc) - timedelta(days=1)


async def sweep_cold_violations(gateway, today: date = None, tz=None, detector: AccountabilityDetector = None) -> int:
    """Returns the number of violation entries written."""
    today = today or local_today(tz)
    detector = detector or AccountabilityDetector(tz=tz)

    leads = await gateway.fetch_leads()
    existing = await gateway.fetch_activity_logs(
        limit=None,
        action=ActivityAction.RULE_VIOLATION,
        since=_day_start(today, tz),
    )
    already_logged = {
        log.lead_id
        for log in existing
        if (log.details or "").startswith(VIOLATION_PREFIX) and to_local_date(log.created_at, tz) == today
    }

    written = 0
    for lead in leads:
        if not detector.is_cold_violation(lead, today) or lead.id in already_logged:
            continue
        await gateway.append_activity_log(
            lead.id,
            lead.assigned_agent_id,
            ActivityAction.RULE_VIOLATION,
            detector.violation_detail(lead, today),
        )
        written += 1

    logger.info(f"[Compliance] Sweep for {today.isoformat()} logged {written} cold violation(s)")
    return written


async def _run_sweep():
    context = build_context()
    try:
        gateway = PersistenceGateway.from_context(context)
        return await sweep_cold_violations(gateway, tz=context.settings.tz)
    finally:
        await context.engine.dispose()


@shared_task(name="leadtrack.sweep_cold_violations")
def sweep_cold_violations_task():
    """
    Celery task wrapper to run the async sweep synchronously
    """
    return asyncio.run(_run_sweep())
