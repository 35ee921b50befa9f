"""
Invoice sync: pulls open invoices for a company from billing and recomputes
their follow-up schedules. Runs as the processor of the ``sync`` queue so a
billing outage is retried with the queue's backoff.
"""
from __future__ import annotations

import structlog
from typing import Any, Iterable

from billing.connector import BillingConnector
from core.errors import ValidationError
from job_queue.base import Job, JobOptions, JobQueue
from job_queue.definitions import Queues
from models.schemas import SyncSummary
from rules.engine import FollowUpRuleEngine

logger = structlog.get_logger()


class InvoiceSyncService:

    def __init__(self, billing: BillingConnector, engine: FollowUpRuleEngine, queue: JobQueue = None):
        self.billing = billing
        self.engine = engine
        self.queue = queue

    async def sync_company(self, company_id: str) -> SyncSummary:
        invoices = await self.billing.list_open_invoices(company_id)
        summary = await self.engine.recompute_many(company_id, invoices)
        logger.info("invoice_sync_completed",
                    company_id=company_id,
                    invoices=summary.invoices,
                    created=summary.created,
                    deleted=summary.deleted,
                    errors=len(summary.errors))
        return summary

    async def handle_job(self, job: Job) -> dict[str, Any]:
        company_id = job.payload.get("company_id")
        if not company_id:
            raise ValidationError("sync job without company_id", field="company_id")
        summary = await self.sync_company(str(company_id))
        return summary.model_dump()

    async def start(self) -> None:
        await self.queue.process(Queues.SYNC, self.handle_job)

    async def enqueue(self, company_ids: Iterable[str], delay: float = None) -> list[Job]:
        """One sync job per company; ``delay`` None uses the queue's default start delay."""
        jobs = []
        for company_id in company_ids:
            jobs.append(await self.queue.add(
                Queues.SYNC, {"company_id": company_id}, JobOptions(delay=delay),
            ))
        logger.info("invoice_sync_enqueued", companies=len(jobs))
        return jobs
