from __future__ import annotations

import logging
from collections.abc import Callable
from functools import lru_cache
from typing import Any, Protocol

from pydantic import BaseModel, ValidationError

from sourcing_worker.core.config import get_settings
from sourcing_worker.schemas.jobs import QUEUE_NAMES, TriggerResult
from sourcing_worker.services.repository import RepositoryValidationError, get_repository

logger = logging.getLogger(__name__)


class JobStore(Protocol):
    async def enqueue_job(
        self,
        queue: str,
        name: str,
        payload: dict[str, Any],
        *,
        max_attempts: int | None = None,
        remove_on_complete: int | None = None,
        remove_on_fail: int | None = None,
        delay_seconds: float = 0.0,
    ) -> dict[str, Any]: ...


class JobQueue:
    """Adds jobs to the durable queue with the configured retention."""

    def __init__(self, store: JobStore, *, remove_on_complete: int | None, remove_on_fail: int | None) -> None:
        self.store = store
        self.remove_on_complete = remove_on_complete
        self.remove_on_fail = remove_on_fail

    async def add(self, queue: str, name: str, payload: BaseModel, *, delay_seconds: float = 0.0) -> str:
        if queue not in QUEUE_NAMES:
            raise RepositoryValidationError(f"unknown queue: {queue}")
        job = await self.store.enqueue_job(
            queue,
            name,
            payload.model_dump(mode="json"),
            remove_on_complete=self.remove_on_complete,
            remove_on_fail=self.remove_on_fail,
            delay_seconds=delay_seconds,
        )
        return str(job["id"])


@lru_cache
def get_job_queue() -> JobQueue:
    settings = get_settings()
    return JobQueue(
        get_repository(),
        remove_on_complete=settings.job_remove_on_complete,
        remove_on_fail=settings.job_remove_on_fail,
    )


def validation_message(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        message = str(error.get("msg", "invalid value")).removeprefix("Value error, ")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "invalid payload"


async def trigger_job(
    job_queue: JobQueue,
    queue: str,
    name: str,
    build_payload: Callable[[], BaseModel],
) -> TriggerResult:
    """Validate and enqueue one job; failures come back as ``success=False``."""
    try:
        payload = build_payload()
        job_id = await job_queue.add(queue, name, payload)
    except ValidationError as exc:
        logger.warning("rejected job trigger queue=%s error=%s", queue, exc)
        return TriggerResult(success=False, error=validation_message(exc))
    except Exception as exc:
        logger.exception("failed to enqueue job queue=%s", queue)
        return TriggerResult(success=False, error=str(exc) or exc.__class__.__name__)

    logger.info("enqueued job queue=%s name=%s job_id=%s", queue, name, job_id)
    return TriggerResult(success=True, job_id=job_id, message=f"{name} job enqueued")
