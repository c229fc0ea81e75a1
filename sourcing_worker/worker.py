from __future__ import annotations

import asyncio
import logging
import random
import time
from datetime import date
from typing import Any

from opentelemetry import trace

from sourcing_worker.core.config import Settings, get_settings
from sourcing_worker.core.telemetry import configure_logging, setup_worker_telemetry, shutdown_worker_telemetry
from sourcing_worker.jobs.executor import JOB_HANDLERS, JobContext, execute_job
from sourcing_worker.jobs.schedule import (
    daily_energy_diagnostics_payloads,
    monthly_ingest_window,
    recent_listings_payload,
)
from sourcing_worker.schemas.jobs import (
    DECEASES_CSV_PROCESS_QUEUE,
    DECEASES_INGEST_QUEUE,
    ENERGY_DIAGNOSTICS_QUEUE,
    LISTINGS_QUEUE,
)
from sourcing_worker.services.http_client import RateLimitedHttpClient
from sourcing_worker.services.job_queue import JobQueue
from sourcing_worker.services.repository import get_repository
from sourcing_worker.services.storage import get_storage

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def queue_concurrency(settings: Settings, queue: str) -> int:
    if queue == DECEASES_CSV_PROCESS_QUEUE:
        return max(1, settings.csv_process_concurrency)
    return max(1, settings.default_queue_concurrency)


async def process_claimed_job(
    repository: Any,
    job: dict[str, Any],
    ctx: JobContext,
    *,
    timeout_seconds: float | None = None,
) -> bool:
    with tracer.start_as_current_span("worker.process_job") as job_span:
        job_span.set_attribute("job.id", job["id"])
        job_span.set_attribute("job.queue", job["queue"])
        job_span.set_attribute("job.attempt", job.get("attempt", 0))
        deadline: asyncio.Timeout | None = None
        try:
            if timeout_seconds:
                async with asyncio.timeout(timeout_seconds) as deadline:
                    result = await execute_job(job, ctx)
            else:
                result = await execute_job(job, ctx)
        except Exception as exc:
            # only the job deadline counts as a timeout; a TimeoutError from a query is an ordinary failure
            if deadline is not None and deadline.expired():
                failed = await repository.fail_job(
                    job["id"],
                    {"error": f"job timed out after {timeout_seconds:g}s", "type": "timeout"},
                )
                logger.error(
                    "job timed out id=%s queue=%s next_status=%s",
                    job["id"],
                    job["queue"],
                    failed["status"],
                )
                return False
            failed = await repository.fail_job(job["id"], {"error": str(exc), "type": exc.__class__.__name__})
            logger.exception(
                "job execution failed id=%s queue=%s next_status=%s",
                job["id"],
                job["queue"],
                failed["status"],
            )
            return False

        await repository.complete_job(job["id"], result)
        logger.info("job completed id=%s queue=%s", job["id"], job["queue"])
        return True


async def poll_queue(repository: Any, queue: str, ctx: JobContext) -> int:
    jobs = await repository.claim_next_jobs(
        queue,
        limit=queue_concurrency(ctx.settings, queue),
        lease_seconds=ctx.settings.claim_lease_seconds,
    )
    if not jobs:
        return 0
    await asyncio.gather(
        *(
            process_claimed_job(repository, job, ctx, timeout_seconds=ctx.settings.job_timeout_seconds)
            for job in jobs
        )
    )
    return len(jobs)


async def poll_once(repository: Any, ctx: JobContext) -> int:
    counts = await asyncio.gather(*(poll_queue(repository, queue, ctx) for queue in JOB_HANDLERS))
    return sum(counts)


async def enqueue_scheduled_ingest(queue: JobQueue, *, today: date) -> str:
    window = monthly_ingest_window(today)
    job_id = await queue.add(DECEASES_INGEST_QUEUE, "scheduled-deceases-ingest", window)
    logger.info("enqueued scheduled ingest job_id=%s year=%s month=%s", job_id, window.year, window.month)
    return job_id


async def enqueue_scheduled_energy_diagnostics(queue: JobQueue, *, today: date) -> int:
    enqueued = 0
    for payload in daily_energy_diagnostics_payloads(today):
        try:
            await queue.add(ENERGY_DIAGNOSTICS_QUEUE, "scheduled-energy-diagnostics", payload)
        except Exception:
            logger.exception(
                "failed to enqueue energy diagnostics department=%s classes=%s",
                payload.department,
                ",".join(payload.energy_classes),
            )
            continue
        enqueued += 1
    logger.info("enqueued scheduled energy diagnostics jobs=%s", enqueued)
    return enqueued


async def enqueue_scheduled_listings(queue: JobQueue, *, today: date, lookback_months: int) -> str:
    payload = recent_listings_payload(today, lookback_months=lookback_months)
    job_id = await queue.add(LISTINGS_QUEUE, "scheduled-listings", payload)
    logger.info("enqueued scheduled listings job_id=%s after=%s", job_id, payload.after_date)
    return job_id


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_worker_telemetry(settings)
    repository = get_repository()
    http = RateLimitedHttpClient(
        min_interval_seconds=settings.http_min_request_interval_seconds,
        max_attempts=settings.http_max_attempts,
        retry_base_seconds=settings.http_retry_base_seconds,
        timeout_seconds=settings.http_timeout_seconds,
    )
    queue = JobQueue(
        repository,
        remove_on_complete=settings.job_remove_on_complete,
        remove_on_fail=settings.job_remove_on_fail,
    )
    ctx = JobContext(settings=settings, repository=repository, storage=get_storage(), http=http, queue=queue)

    backoff = settings.poll_interval_seconds
    last_reap_at = 0.0
    last_ingest_schedule_at = 0.0
    last_energy_schedule_at = 0.0
    last_listings_schedule_at = 0.0

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if now - last_reap_at >= settings.lease_reaper_interval_seconds:
                        requeued = await repository.requeue_expired_jobs(limit=settings.lease_reaper_batch_size)
                        if requeued:
                            logger.info("requeued expired leases: %s", requeued)
                        last_reap_at = now

                    if (
                        settings.scheduled_ingest_enabled
                        and now - last_ingest_schedule_at >= settings.scheduled_ingest_interval_seconds
                    ):
                        await enqueue_scheduled_ingest(queue, today=date.today())
                        last_ingest_schedule_at = now

                    if (
                        settings.scheduled_energy_diagnostics_enabled
                        and now - last_energy_schedule_at >= settings.scheduled_energy_diagnostics_interval_seconds
                    ):
                        await enqueue_scheduled_energy_diagnostics(queue, today=date.today())
                        last_energy_schedule_at = now

                    if (
                        settings.scheduled_listings_enabled
                        and now - last_listings_schedule_at >= settings.scheduled_listings_interval_seconds
                    ):
                        await enqueue_scheduled_listings(
                            queue,
                            today=date.today(),
                            lookback_months=settings.scheduled_listings_lookback_months,
                        )
                        last_listings_schedule_at = now

                    processed = await poll_once(repository, ctx)
                    if not processed:
                        await asyncio.sleep(settings.poll_interval_seconds)
                        continue

                    backoff = settings.poll_interval_seconds
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await http.close()
        await repository.close()
        shutdown_worker_telemetry(telemetry_runtime)


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
