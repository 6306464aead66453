# fieldops/infra/pg_job_store_async.py
"""
Async PostgreSQL job store (asyncpg).

Conditional writes lock the job row with ``SELECT ... FOR UPDATE`` inside
one transaction, so capacity and state checks hold across processes that
share the database.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Optional

from fieldops.core.domain import (
    CLAIMABLE_STATUSES,
    WORKING_STATUSES,
    ApprovalStatus,
    Assignment,
    Job,
    JobKind,
    JobStatus,
)
from fieldops.infra.db_async import safe_db_conn
from fieldops.infra.logging_config import get_logger
from fieldops.infra.metrics import AppMetrics

logger = get_logger(__name__)

_JOB_COLUMNS = (
    "id, number, kind, address, customer_name, customer_phone, sub_category, "
    "description, approval_status, status, created_at, approved_at, rejected_at, "
    "completed_at, cancelled_at, rejection_reason, cancel_reason, completion_evidence"
)

# Columns a status transition may set besides ``status``
_UPDATABLE_JOB_FIELDS = frozenset({
    "approval_status", "approved_at", "rejected_at", "completed_at", "cancelled_at",
    "rejection_reason", "cancel_reason", "completion_evidence",
})
_UPDATABLE_ASSIGNMENT_FIELDS = frozenset({"started_at", "completed_at"})
_CLAIMABLE_VALUES = frozenset(s.value for s in CLAIMABLE_STATUSES)


def _row_to_job(row) -> Job:
    return Job(
        id=row["id"],
        number=row["number"],
        kind=JobKind(row["kind"]),
        address=row["address"],
        customer_name=row["customer_name"],
        customer_phone=row["customer_phone"],
        sub_category=row["sub_category"],
        description=row["description"],
        approval_status=ApprovalStatus(row["approval_status"]),
        status=JobStatus(row["status"]),
        created_at=row["created_at"],
        approved_at=row["approved_at"],
        rejected_at=row["rejected_at"],
        completed_at=row["completed_at"],
        cancelled_at=row["cancelled_at"],
        rejection_reason=row["rejection_reason"],
        cancel_reason=row["cancel_reason"],
        completion_evidence=row["completion_evidence"],
    )


def _row_to_assignment(row) -> Assignment:
    return Assignment(
        job_id=row["job_id"],
        technician_id=row["technician_id"],
        accepted_at=row["accepted_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


def _db_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def _set_clause(fields: dict[str, Any], allowed: frozenset[str], start: int) -> tuple[str, list[Any]]:
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Fields not updatable: {sorted(unknown)}")
    parts, values = [], []
    for offset, (name, value) in enumerate(sorted(fields.items())):
        parts.append(f"{name} = ${start + offset}")
        values.append(_db_value(value))
    return ", ".join(parts), values


class AsyncPostgresJobStore:
    """JobStore on the ``jobs`` and ``job_assignments`` tables."""

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = $1", job_id)
        return _row_to_job(row) if row else None

    async def get_job_by_number(self, number: str) -> Optional[Job]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE number = $1", number)
        return _row_to_job(row) if row else None

    async def save_job(self, job: Job) -> Job:
        try:
            async with safe_db_conn() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO jobs ({_JOB_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17, $18)
                    ON CONFLICT (id) DO UPDATE SET
                      address = EXCLUDED.address,
                      customer_name = EXCLUDED.customer_name,
                      customer_phone = EXCLUDED.customer_phone,
                      sub_category = EXCLUDED.sub_category,
                      description = EXCLUDED.description
                    """,
                    job.id, job.number, job.kind.value, job.address, job.customer_name,
                    job.customer_phone, job.sub_category, job.description,
                    job.approval_status.value, job.status.value, job.created_at,
                    job.approved_at, job.rejected_at, job.completed_at, job.cancelled_at,
                    job.rejection_reason, job.cancel_reason, job.completion_evidence,
                )
        except Exception:
            logger.error("Failed to save job", extra={"job_id": job.id}, exc_info=True)
            AppMetrics.database_error("job_save")
            raise
        return job

    async def list_jobs(self, statuses: Optional[Iterable[JobStatus]] = None) -> list[Job]:
        async with safe_db_conn() as conn:
            if statuses is None:
                rows = await conn.fetch(f"SELECT {_JOB_COLUMNS} FROM jobs ORDER BY created_at")
            else:
                rows = await conn.fetch(
                    f"SELECT {_JOB_COLUMNS} FROM jobs WHERE status = ANY($1::text[]) ORDER BY created_at",
                    [s.value for s in statuses],
                )
        return [_row_to_job(r) for r in rows]

    async def update_job_status(
        self,
        job_id: str,
        expected_status: JobStatus,
        new_status: JobStatus,
        **fields: Any,
    ) -> bool:
        extra_set, values = _set_clause(fields, _UPDATABLE_JOB_FIELDS, start=4)
        set_sql = "status = $3" + (f", {extra_set}" if extra_set else "")
        try:
            async with safe_db_conn() as conn:
                result = await conn.execute(
                    f"UPDATE jobs SET {set_sql} WHERE id = $1 AND status = $2",
                    job_id, expected_status.value, new_status.value, *values,
                )
        except Exception:
            logger.error("Failed to update job status", extra={"job_id": job_id}, exc_info=True)
            AppMetrics.database_error("job_update_status")
            raise
        # asyncpg execute returns "UPDATE N"
        return result.split()[-1] == "1"

    async def create_assignment(self, assignment: Assignment, *, max_active: int) -> bool:
        try:
            async with safe_db_conn(autocommit=False) as conn:
                # Serialise claims on this job across processes
                job = await conn.fetchrow(
                    "SELECT status, approval_status FROM jobs WHERE id = $1 FOR UPDATE",
                    assignment.job_id,
                )
                if job is None:
                    return False
                if job["approval_status"] != ApprovalStatus.APPROVED.value:
                    return False
                if job["status"] not in _CLAIMABLE_VALUES:
                    return False
                active = await conn.fetchval(
                    "SELECT count(*) FROM job_assignments WHERE job_id = $1 AND completed_at IS NULL",
                    assignment.job_id,
                )
                if active >= max_active:
                    return False
                result = await conn.execute(
                    """
                    INSERT INTO job_assignments (job_id, technician_id, accepted_at, started_at, completed_at)
                    VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT (job_id, technician_id) DO NOTHING
                    """,
                    assignment.job_id, assignment.technician_id, assignment.accepted_at,
                    assignment.started_at, assignment.completed_at,
                )
                if result.split()[-1] != "1":
                    return False
                if job["status"] == JobStatus.OPEN.value:
                    await conn.execute(
                        "UPDATE jobs SET status = $2 WHERE id = $1",
                        assignment.job_id, JobStatus.ASSIGNED.value,
                    )
                return True
        except Exception:
            logger.error(
                "Failed to create assignment",
                extra={"job_id": assignment.job_id, "technician_id": assignment.technician_id},
                exc_info=True,
            )
            AppMetrics.database_error("assignment_create")
            raise

    async def list_assignments(self, job_id: str) -> list[Assignment]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM job_assignments WHERE job_id = $1 ORDER BY accepted_at", job_id,
            )
        return [_row_to_assignment(r) for r in rows]

    async def count_active_assignments(self, job_id: str) -> int:
        async with safe_db_conn() as conn:
            return await conn.fetchval(
                "SELECT count(*) FROM job_assignments WHERE job_id = $1 AND completed_at IS NULL",
                job_id,
            )

    async def update_assignment(self, job_id: str, technician_id: str, **fields: Any) -> None:
        if not fields:
            return
        set_sql, values = _set_clause(fields, _UPDATABLE_ASSIGNMENT_FIELDS, start=3)
        async with safe_db_conn() as conn:
            await conn.execute(
                f"UPDATE job_assignments SET {set_sql} WHERE job_id = $1 AND technician_id = $2",
                job_id, technician_id, *values,
            )

    async def complete_assignments(self, job_id: str, completed_at: datetime) -> int:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                "UPDATE job_assignments SET completed_at = $2 WHERE job_id = $1 AND completed_at IS NULL",
                job_id, completed_at,
            )
        return int(result.split()[-1])

    async def list_technician_assignments(self, technician_id: str) -> list[Assignment]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM job_assignments WHERE technician_id = $1 ORDER BY accepted_at",
                technician_id,
            )
        return [_row_to_assignment(r) for r in rows]

    async def list_stale_assignments(self, cutoff: datetime) -> list[tuple[Assignment, Job]]:
        job_cols = ", ".join(f"j.{c.strip()} AS j_{c.strip()}" for c in _JOB_COLUMNS.split(","))
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"""
                SELECT a.job_id, a.technician_id, a.accepted_at, a.started_at, a.completed_at, {job_cols}
                FROM job_assignments a
                JOIN jobs j ON j.id = a.job_id
                WHERE a.completed_at IS NULL
                  AND j.status = ANY($1::text[])
                  AND j.created_at < $2
                ORDER BY a.technician_id, j.created_at
                """,
                [s.value for s in WORKING_STATUSES], cutoff,
            )
        result = []
        for row in rows:
            job_row = {key[2:]: row[key] for key in row.keys() if key.startswith("j_")}
            result.append((_row_to_assignment(row), _row_to_job(job_row)))
        return result
