"""
Cron expression helpers on top of APScheduler's CronTrigger.

Standard 5-field crontab syntax (minute hour day month day_of_week).
Invalid expressions raise the engine's ValidationError so callers can
reject a registration without knowing about APScheduler.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from apscheduler.triggers.cron import CronTrigger

from core.errors import ValidationError


def parse_cron(expression: str, tz: str = "UTC") -> CronTrigger:
    if not isinstance(expression, str) or len(expression.split()) != 5:
        raise ValidationError(f"Invalid cron expression: {expression!r}", field="cron")
    try:
        return CronTrigger.from_crontab(expression, timezone=tz)
    except (ValueError, TypeError, LookupError) as e:
        raise ValidationError(f"Invalid cron expression {expression!r}: {e}", field="cron") from e


def next_fire_time(
    trigger: CronTrigger,
    after: datetime = None,
    previous: datetime = None,
) -> Optional[datetime]:
    """Next fire time strictly after ``previous`` (when given) and not before ``after``."""
    after = after or datetime.now(timezone.utc)
    return trigger.get_next_fire_time(previous, after)
