from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from sourcing_worker.core.config import get_settings
from sourcing_worker.schemas.addresses import DiagnosticLink, DiagnosticLinkInput, EnergyDiagnostic, OpportunityType

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_]*$")

JOB_STATUSES = {"queued", "claimed", "done", "failed"}
LINK_TABLES: dict[str, tuple[str, str]] = {
    "auction": ("auction_energy_diagnostic_links", "auction_id"),
    "listing": ("listing_energy_diagnostic_links", "listing_id"),
}
MAX_ADDRESS_SEARCH_RESULTS = 100

_JOB_COLUMNS = """
  {alias}id::text as id,
  queue,
  name,
  payload,
  status,
  attempt,
  max_attempts,
  remove_on_complete,
  remove_on_fail,
  result_json,
  error_json,
  next_run_at,
  created_at
"""


def _job_columns(alias: str = "") -> str:
    return _JOB_COLUMNS.format(alias=f"{alias}." if alias else "")


@dataclass(frozen=True, slots=True)
class ConflictPolicy:
    """What an upsert does when the business key already exists.

    ``update_columns`` empty means first write wins (``do nothing``), otherwise
    the listed columns are overwritten from the incoming row.
    """

    target: str
    update_columns: tuple[str, ...] = ()

    @classmethod
    def do_nothing(cls, target: str) -> "ConflictPolicy":
        return cls(target=target)

    @classmethod
    def overwrite(cls, target: str, columns: tuple[str, ...] | list[str]) -> "ConflictPolicy":
        if not columns:
            raise ValueError("overwrite policy needs at least one column")
        return cls(target=target, update_columns=tuple(columns))

    @property
    def overwrites(self) -> bool:
        return bool(self.update_columns)


def build_upsert_sql(table: str, columns: list[str], policy: ConflictPolicy) -> str:
    for identifier in (table, policy.target, *columns, *policy.update_columns):
        if not _IDENTIFIER_RE.match(identifier):
            raise RepositoryValidationError(f"invalid SQL identifier: {identifier!r}")

    placeholders = ", ".join(f"${index}" for index in range(1, len(columns) + 1))
    statement = f"insert into {table} ({', '.join(columns)}) values ({placeholders}) on conflict ({policy.target}) "
    if not policy.overwrites:
        return statement + "do nothing"
    assignments = ", ".join(f"{column} = excluded.{column}" for column in policy.update_columns)
    return statement + f"do update set {assignments}, updated_at = now()"


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        job_max_attempts: int,
        job_retry_base_seconds: int,
        job_retry_max_seconds: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.job_max_attempts = max(1, job_max_attempts)
        self.job_retry_base_seconds = max(0, job_retry_base_seconds)
        self.job_retry_max_seconds = max(0, job_retry_max_seconds)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def upsert_rows(self, table: str, rows: list[dict[str, Any]], policy: ConflictPolicy) -> int:
        if not rows:
            return 0
        columns = list(rows[0].keys())
        statement = build_upsert_sql(table, columns, policy)
        args = [tuple(self._encode_value(row.get(column)) for column in columns) for row in rows]

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(statement, args)
        return len(rows)

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
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into jobs (
              queue,
              name,
              payload,
              max_attempts,
              remove_on_complete,
              remove_on_fail,
              next_run_at
            )
            values ($1, $2, $3::jsonb, $4, $5, $6, now() + ($7::float8 * interval '1 second'))
            returning {_job_columns()}
            """,
            queue,
            name,
            json.dumps(payload),
            max_attempts or self.job_max_attempts,
            remove_on_complete,
            remove_on_fail,
            max(0.0, delay_seconds),
        )
        job = self._job_row_to_dict(row)
        logger.info("enqueued job id=%s queue=%s name=%s", job["id"], queue, name)
        return job

    async def get_job(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_job_columns()} from jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_dict(row)

    async def count_jobs(self, queue: str, *, status: str | None = None) -> int:
        if status is not None and status not in JOB_STATUSES:
            raise RepositoryValidationError(f"unknown job status: {status}")
        pool = await self._get_pool()
        value = await pool.fetchval(
            "select count(*) from jobs where queue = $1 and ($2::text is null or status = $2)",
            queue,
            status,
        )
        return int(value or 0)

    async def claim_next_jobs(self, queue: str, *, limit: int, lease_seconds: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 100))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    f"""
                    with next_jobs as (
                      select id
                      from jobs
                      where queue = $1 and status = 'queued' and next_run_at <= now()
                      order by next_run_at asc, created_at asc
                      limit $2
                      for update skip locked
                    )
                    update jobs j
                    set
                      status = 'claimed',
                      attempt = j.attempt + 1,
                      lease_expires_at = now() + ($3::int * interval '1 second'),
                      updated_at = now()
                    from next_jobs n
                    where j.id = n.id
                    returning {_job_columns("j")}
                    """,
                    queue,
                    bounded_limit,
                    lease_seconds,
                )
        return [self._job_row_to_dict(row) for row in rows]

    async def complete_job(self, job_id: str, result: dict[str, Any] | None) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update jobs
                    set
                      status = 'done',
                      result_json = $2::jsonb,
                      lease_expires_at = null,
                      finished_at = now(),
                      updated_at = now()
                    where id = $1::uuid and status = 'claimed'
                    returning {_job_columns()}
                    """,
                    job_id,
                    json.dumps(result) if result is not None else None,
                )
                if not row:
                    await self._raise_for_missing_claim(conn=conn, job_id=job_id)
                job = self._job_row_to_dict(row)
                await self._prune_finished_jobs(conn=conn, queue=job["queue"], status="done", keep=job["remove_on_complete"])
                return job

    async def fail_job(self, job_id: str, error: dict[str, Any]) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                claimed = await conn.fetchrow(
                    "select status, attempt, max_attempts from jobs where id = $1::uuid for update",
                    job_id,
                )
                if not claimed:
                    raise RepositoryNotFoundError("job not found")
                if claimed["status"] != "claimed":
                    raise RepositoryConflictError("job is not in claimed state")

                attempt = int(claimed["attempt"])
                max_attempts = int(claimed["max_attempts"] or self.job_max_attempts)
                next_run_at: datetime | None = None
                resolved_status = "failed"
                if attempt < max_attempts:
                    retry_delay_seconds = self._compute_retry_delay_seconds(attempt=attempt)
                    next_run_at = datetime.now(timezone.utc) + timedelta(seconds=retry_delay_seconds)
                    resolved_status = "queued"

                row = await conn.fetchrow(
                    f"""
                    update jobs
                    set
                      status = $2::text,
                      error_json = $3::jsonb,
                      lease_expires_at = null,
                      next_run_at = coalesce($4::timestamptz, next_run_at),
                      finished_at = case when $2::text = 'failed' then now() else null end,
                      updated_at = now()
                    where id = $1::uuid
                    returning {_job_columns()}
                    """,
                    job_id,
                    resolved_status,
                    json.dumps(error),
                    next_run_at,
                )
                job = self._job_row_to_dict(row)
                if resolved_status == "failed":
                    await self._prune_finished_jobs(conn=conn, queue=job["queue"], status="failed", keep=job["remove_on_fail"])
                return job

    async def requeue_expired_jobs(self, *, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with expired as (
                      select id
                      from jobs
                      where status = 'claimed'
                        and lease_expires_at is not null
                        and lease_expires_at <= now()
                      order by lease_expires_at asc
                      limit $1
                      for update skip locked
                    )
                    update jobs j
                    set
                      status = 'queued',
                      lease_expires_at = null,
                      next_run_at = now(),
                      updated_at = now()
                    from expired e
                    where j.id = e.id
                    returning j.id::text as id
                    """,
                    bounded_limit,
                )
                return len(rows)

    async def find_for_address_search(
        self,
        *,
        zip_code: str,
        energy_class: str,
        square_footage_min: float,
        square_footage_max: float,
        limit: int = MAX_ADDRESS_SEARCH_RESULTS,
    ) -> list[EnergyDiagnostic]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id,
              external_id,
              label,
              address,
              zip_code,
              department,
              energy_class,
              square_footage::float8 as square_footage,
              opportunity_date,
              latitude,
              longitude
            from energy_diagnostics
            where zip_code = $1
              and energy_class = $2
              and square_footage >= $3
              and square_footage <= $4
            order by created_at asc, id asc
            limit $5
            """,
            zip_code,
            energy_class,
            square_footage_min,
            square_footage_max,
            max(1, limit),
        )
        return [EnergyDiagnostic(**dict(row)) for row in rows]

    async def save_diagnostic_links(self, opportunity_type: OpportunityType, links: list[DiagnosticLinkInput]) -> None:
        if not links:
            return
        table, owner_column = self._link_table(opportunity_type)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    f"""
                    insert into {table} ({owner_column}, energy_diagnostic_id, match_score)
                    values ($1, $2::uuid, $3)
                    on conflict ({owner_column}, energy_diagnostic_id) do nothing
                    """,
                    [(link.opportunity_id, link.energy_diagnostic_id, link.match_score) for link in links],
                )

    async def get_diagnostic_links(self, opportunity_type: OpportunityType, opportunity_id: str) -> list[DiagnosticLink]:
        table, owner_column = self._link_table(opportunity_type)
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select
              l.id::text as id,
              l.{owner_column} as opportunity_id,
              l.energy_diagnostic_id::text as energy_diagnostic_id,
              l.match_score,
              d.external_id,
              d.label,
              d.address,
              d.zip_code,
              d.department,
              d.energy_class,
              d.square_footage::float8 as square_footage,
              d.opportunity_date,
              d.latitude,
              d.longitude
            from {table} l
            join energy_diagnostics d on d.id = l.energy_diagnostic_id
            where l.{owner_column} = $1
            order by l.match_score desc, l.created_at asc
            """,
            opportunity_id,
        )
        return [self._link_row_to_model(row) for row in rows]

    async def _prune_finished_jobs(
        self,
        *,
        conn: asyncpg.Connection,
        queue: str,
        status: str,
        keep: int | None,
    ) -> None:
        if keep is None:
            return
        await conn.execute(
            """
            delete from jobs
            where id in (
              select id
              from jobs
              where queue = $1 and status = $2
              order by finished_at desc nulls last, created_at desc
              offset $3
            )
            """,
            queue,
            status,
            max(0, keep),
        )

    async def _raise_for_missing_claim(self, *, conn: asyncpg.Connection, job_id: str) -> None:
        exists = await conn.fetchval("select 1 from jobs where id = $1::uuid", job_id)
        if not exists:
            raise RepositoryNotFoundError("job not found")
        raise RepositoryConflictError("job is not in claimed state")

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("SW_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=60,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    def _compute_retry_delay_seconds(self, *, attempt: int) -> int:
        if self.job_retry_base_seconds <= 0:
            return 0
        multiplier = max(0, attempt - 1)
        delay = self.job_retry_base_seconds * (2**multiplier)
        return min(delay, self.job_retry_max_seconds)

    @staticmethod
    def _link_table(opportunity_type: str) -> tuple[str, str]:
        try:
            return LINK_TABLES[opportunity_type]
        except KeyError as exc:
            raise RepositoryValidationError(f"unsupported opportunity type: {opportunity_type}") from exc

    @staticmethod
    def _encode_value(value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        return value

    @staticmethod
    def _link_row_to_model(row: asyncpg.Record) -> DiagnosticLink:
        return DiagnosticLink(
            id=row["id"],
            opportunity_id=row["opportunity_id"],
            energy_diagnostic_id=row["energy_diagnostic_id"],
            match_score=int(row["match_score"]),
            energy_diagnostic=EnergyDiagnostic(
                id=row["energy_diagnostic_id"],
                external_id=row["external_id"],
                label=row["label"],
                address=row["address"],
                zip_code=row["zip_code"],
                department=row["department"],
                energy_class=row["energy_class"],
                square_footage=row["square_footage"],
                opportunity_date=row["opportunity_date"],
                latitude=row["latitude"],
                longitude=row["longitude"],
            ),
        )

    @staticmethod
    def _job_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        payload = row["payload"]
        if isinstance(payload, str):
            try:
                payload = json.loads(payload)
            except json.JSONDecodeError:
                payload = {}
        if payload is None:
            payload = {}

        return {
            "id": row["id"],
            "queue": row["queue"],
            "name": row["name"],
            "payload": payload,
            "status": row["status"],
            "attempt": int(row["attempt"]),
            "max_attempts": int(row["max_attempts"]),
            "remove_on_complete": row["remove_on_complete"],
            "remove_on_fail": row["remove_on_fail"],
            "next_run_at": row["next_run_at"],
            "created_at": row["created_at"],
        }


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        job_max_attempts=settings.job_max_attempts,
        job_retry_base_seconds=settings.job_retry_base_seconds,
        job_retry_max_seconds=settings.job_retry_max_seconds,
    )
