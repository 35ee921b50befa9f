"""
Housekeeping and reporting.

Daily:  failed → archived after ``archive_failed_after_days``;
        sent/archived rows deleted after ``delete_sent_after_days``;
        finished queue jobs older than ``queue_clean_after_hours`` removed.
Weekly: per-status / per-channel counts for the last 7 days and a success rate.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Optional

from config.settings import MaintenanceConfig
from database.store_base import BaseFollowUpStore
from job_queue.base import JobQueue
from models.schemas import FollowUpStatus, utcnow

logger = structlog.get_logger()


class MaintenanceService:

    def __init__(
        self,
        store: BaseFollowUpStore,
        queue: Optional[JobQueue] = None,
        config: MaintenanceConfig = None,
    ):
        self.store = store
        self.queue = queue
        self.config = config or MaintenanceConfig()

    async def run_daily(self, now: datetime = None) -> dict[str, Any]:
        now = now or utcnow()
        archived = await self.store.archive_failed(
            now - timedelta(days=self.config.archive_failed_after_days))
        purged = await self.store.purge(
            [FollowUpStatus.SENT, FollowUpStatus.ARCHIVED],
            now - timedelta(days=self.config.delete_sent_after_days),
        )
        cleaned: dict[str, int] = {}
        if self.queue is not None:
            cleaned = await self.queue.clean_all(self.config.queue_clean_after_hours * 3600)

        summary = {"archived": archived, "purged": purged, "jobs_cleaned": cleaned}
        logger.info("daily_maintenance_completed", **summary)
        return summary

    async def weekly_report(self, now: datetime = None, company_id: str = None) -> dict[str, Any]:
        now = now or utcnow()
        since = now - timedelta(days=7)
        counts = await self.store.count_by_status(since=since, company_id=company_id)

        totals = {status: sum(by_channel.values()) for status, by_channel in counts.items()}
        by_channel: dict[str, dict[str, int]] = {}
        for status, channels in counts.items():
            for channel, n in channels.items():
                by_channel.setdefault(channel, {})[status] = n

        sent = totals.get(FollowUpStatus.SENT.value, 0)
        # archived rows were failures before the sweep
        failed = totals.get(FollowUpStatus.FAILED.value, 0) + totals.get(FollowUpStatus.ARCHIVED.value, 0)
        attempted = sent + failed
        report = {
            "period_start": since.isoformat(),
            "period_end": now.isoformat(),
            "company_id": company_id,
            "totals": totals,
            "by_channel": by_channel,
            "success_rate": round(sent / attempted, 4) if attempted else None,
        }
        logger.info("weekly_report",
                    company_id=company_id,
                    totals=totals,
                    success_rate=report["success_rate"])
        return report
