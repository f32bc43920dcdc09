"""Single-flight transcription job queue."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from .database import SQLiteStore, utcnow_iso
from .errors import ConflictError, NotFoundError, StoreFailure, ValidationError


LOGGER = logging.getLogger(__name__)

JOB_STATUSES = ("pending", "running", "succeeded", "failed")
CANCELLED_OUTPUT = "[Cancelled by user]"

_CLAIM_ATTEMPTS = 3


@dataclass
class UploadJob:
    id: int
    course_id: int
    lecture_number: int
    r2_dir: str
    status: str
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    output: Optional[str] = None
    retry_count: int = 0


def reconcile_status(job: UploadJob, lecture_keys: Set[Tuple[int, int]]) -> str:
    """Return the status operators should see for *job*.

    A job the worker reported as succeeded only counts as succeeded when the
    lecture it was meant to produce exists.
    """

    if job.status == "succeeded" and (job.course_id, job.lecture_number) not in lecture_keys:
        return "failed"
    return job.status


class UploadJobQueue(SQLiteStore):
    """Queue of upload jobs claimed one at a time by an external worker."""

    _COLUMNS = (
        "id, course_id, lecture_number, r2_dir, status, created_at, "
        "started_at, completed_at, output, retry_count"
    )

    @staticmethod
    def _job_from_row(row: sqlite3.Row) -> UploadJob:
        return UploadJob(**row)

    def _fetch(self, connection: sqlite3.Connection, job_id: int) -> Optional[UploadJob]:
        row = self._execute(
            connection,
            f"SELECT {self._COLUMNS} FROM upload_jobs WHERE id = ?",
            (job_id,),
            action="upload_jobs.get",
            table="upload_jobs",
        ).fetchone()
        return self._job_from_row(row) if row else None

    def get(self, job_id: int) -> Optional[UploadJob]:
        with self._session() as conn:
            return self._fetch(conn, job_id)

    def list_jobs(self, *, status: Optional[str] = None) -> List[UploadJob]:
        if status is not None and status not in JOB_STATUSES:
            raise ValidationError(f"Unknown job status: {status!r}")
        query = f"SELECT {self._COLUMNS} FROM upload_jobs"
        params: Tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status,)
        query += " ORDER BY created_at, id"
        with self._session() as conn:
            rows = self._execute(
                conn, query, params, action="upload_jobs.list", table="upload_jobs"
            ).fetchall()
        return [self._job_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------
    def claim_next(self) -> Optional[UploadJob]:
        """Move the oldest pending job to ``running`` and return it.

        Returns ``None`` when a job is already running anywhere or when
        nothing is pending.
        """

        for attempt in range(1, _CLAIM_ATTEMPTS + 1):
            with self.transaction(immediate=True) as conn:
                running = self._execute(
                    conn,
                    "SELECT id FROM upload_jobs WHERE status = 'running' LIMIT 1",
                    action="upload_jobs.running_check",
                    table="upload_jobs",
                ).fetchone()
                if running is not None:
                    LOGGER.debug("Job #%s is still running; nothing claimed", running["id"])
                    return None

                candidate = self._execute(
                    conn,
                    """
                    SELECT id FROM upload_jobs
                    WHERE status = 'pending'
                    ORDER BY created_at, id
                    LIMIT 1
                    """,
                    action="upload_jobs.oldest_pending",
                    table="upload_jobs",
                ).fetchone()
                if candidate is None:
                    return None

                cursor = self._execute(
                    conn,
                    """
                    UPDATE upload_jobs
                    SET status = 'running', started_at = ?
                    WHERE id = ?
                      AND status = 'pending'
                      AND NOT EXISTS (
                          SELECT 1 FROM upload_jobs WHERE status = 'running'
                      )
                    """,
                    (utcnow_iso(), candidate["id"]),
                    action="upload_jobs.claim",
                    table="upload_jobs",
                )
                if cursor.rowcount == 1:
                    job = self._fetch(conn, int(candidate["id"]))
                    assert job is not None
                    LOGGER.info(
                        "Claimed job #%s (course_id=%s, lecture=%s)",
                        job.id,
                        job.course_id,
                        job.lecture_number,
                    )
                    self._emit_event(
                        "TASK_STATE",
                        "claimed",
                        phase="running",
                        job_id=job.id,
                        course_id=job.course_id,
                        lecture_number=job.lecture_number,
                    )
                    return job

            LOGGER.debug("Claim of job #%s lost a race (attempt %s)", candidate["id"], attempt)
        return None

    def report_result(self, job_id: int, *, succeeded: bool, output: Optional[str] = None) -> UploadJob:
        """Record the worker's verdict for a running job."""

        status = "succeeded" if succeeded else "failed"
        with self.transaction(immediate=True) as conn:
            cursor = self._execute(
                conn,
                """
                UPDATE upload_jobs
                SET status = ?,
                    output = ?,
                    completed_at = ?,
                    retry_count = retry_count + ?
                WHERE id = ? AND status = 'running'
                """,
                (status, output, utcnow_iso(), 0 if succeeded else 1, job_id),
                action="upload_jobs.report",
                table="upload_jobs",
            )
            job = self._fetch(conn, job_id)
            if job is None:
                raise NotFoundError(f"Job #{job_id} not found")
            if cursor.rowcount == 0:
                raise ConflictError(
                    f"Cannot report a result for job with status: {job.status}"
                )

        LOGGER.info("Job #%s finished with status %s", job_id, status)
        self._emit_event(
            "TASK_STATE",
            "finished",
            phase=status,
            job_id=job_id,
            retry_count=job.retry_count,
        )
        return job

    # ------------------------------------------------------------------
    # Operator side
    # ------------------------------------------------------------------
    def enqueue(self, course_id: int, lecture_number: int) -> int:
        """Queue one lecture for transcription and return the job id.

        A failed job for the same lecture is re-queued in place.
        """

        if not course_id or not lecture_number or course_id < 0 or lecture_number < 0:
            raise ValidationError("courseId and lectureNumber required")

        with self.transaction(immediate=True) as conn:
            course = self._execute(
                conn,
                "SELECT r2_dir FROM courses WHERE id = ?",
                (course_id,),
                action="courses.r2_dir",
                table="courses",
            ).fetchone()
            if course is None or not course["r2_dir"]:
                raise NotFoundError("Course not found or has no r2_dir")

            existing = self._execute(
                conn,
                "SELECT id, status FROM upload_jobs WHERE course_id = ? AND lecture_number = ?",
                (course_id, lecture_number),
                action="upload_jobs.lookup",
                table="upload_jobs",
            ).fetchone()

            if existing is not None and existing["status"] != "failed":
                raise ConflictError(f"Job already exists (status: {existing['status']})")

            if existing is not None:
                job_id = int(existing["id"])
                self._execute(
                    conn,
                    """
                    UPDATE upload_jobs
                    SET status = 'pending',
                        retry_count = 0,
                        output = NULL,
                        completed_at = NULL,
                        started_at = NULL
                    WHERE id = ?
                    """,
                    (job_id,),
                    action="upload_jobs.requeue",
                    table="upload_jobs",
                )
                phase = "requeued"
            else:
                try:
                    cursor = self._execute(
                        conn,
                        """
                        INSERT INTO upload_jobs(course_id, lecture_number, r2_dir, status, created_at)
                        VALUES (?, ?, ?, 'pending', ?)
                        """,
                        (course_id, lecture_number, course["r2_dir"], utcnow_iso()),
                        action="upload_jobs.insert",
                        table="upload_jobs",
                    )
                except StoreFailure as error:
                    if isinstance(error.__cause__, sqlite3.IntegrityError):
                        raise ConflictError("Job already exists") from error
                    raise
                job_id = int(cursor.lastrowid)
                phase = "queued"

        LOGGER.info(
            "Job #%s %s for course_id=%s lecture=%s", job_id, phase, course_id, lecture_number
        )
        self._emit_event(
            "TASK_STATE",
            phase,
            phase="pending",
            job_id=job_id,
            course_id=course_id,
            lecture_number=lecture_number,
        )
        return job_id

    def cancel(self, job_id: int) -> str:
        """Cancel a job and return ``"deleted"`` or ``"cancelled"``."""

        if not job_id:
            raise ValidationError("jobId required")

        with self.transaction(immediate=True) as conn:
            job = self._fetch(conn, job_id)
            if job is None:
                raise NotFoundError("Job not found")

            if job.status == "pending":
                self._execute(
                    conn,
                    "DELETE FROM upload_jobs WHERE id = ? AND status = 'pending'",
                    (job_id,),
                    action="upload_jobs.delete",
                    table="upload_jobs",
                )
                outcome = "deleted"
            elif job.status == "running":
                # The worker process cannot be stopped from here.
                self._execute(
                    conn,
                    """
                    UPDATE upload_jobs
                    SET status = 'failed', output = ?, completed_at = ?
                    WHERE id = ? AND status = 'running'
                    """,
                    (CANCELLED_OUTPUT, utcnow_iso(), job_id),
                    action="upload_jobs.cancel",
                    table="upload_jobs",
                )
                outcome = "cancelled"
            else:
                raise ConflictError(f"Cannot cancel job with status: {job.status}")

        LOGGER.info("Job #%s %s", job_id, outcome)
        self._emit_event("TASK_STATE", outcome, phase=outcome, job_id=job_id)
        return outcome

    def summarize(self) -> Dict[str, Any]:
        """Return progress grouped by course for the dashboard."""

        with self._session() as conn:
            rows = self._execute(
                conn,
                f"SELECT {self._COLUMNS} FROM upload_jobs ORDER BY created_at DESC, id DESC",
                action="upload_jobs.summary",
                table="upload_jobs",
            ).fetchall()
        jobs = [self._job_from_row(row) for row in rows]
        if not jobs:
            return {"jobs": [], "active": [], "lastCompleted": None, "succeededPerCourse": {}}

        course_ids = {job.course_id for job in jobs}
        titles = self._course_titles(course_ids)
        lecture_keys = self._lecture_keys(course_ids)

        def title_for(course_id: int) -> str:
            return titles.get(course_id) or f"Course {course_id}"

        groups: Dict[int, Dict[str, Any]] = {}
        for job in jobs:
            group = groups.setdefault(
                job.course_id,
                {
                    "courseId": job.course_id,
                    "courseTitle": title_for(job.course_id),
                    "total": 0,
                    "succeeded": 0,
                    "failed": 0,
                    "running": 0,
                    "pending": 0,
                },
            )
            group["total"] += 1
            group[reconcile_status(job, lecture_keys)] += 1

        active = [
            {
                "jobId": job.id,
                "courseId": job.course_id,
                "courseTitle": title_for(job.course_id),
                "lectureNumber": job.lecture_number,
                "status": job.status,
                "startedAt": job.started_at,
            }
            for job in sorted(jobs, key=lambda item: (item.created_at or "", item.id))
            if job.status in {"running", "pending"}
        ]

        terminal = sorted(
            (job for job in jobs if job.status in {"succeeded", "failed"}),
            key=lambda item: (item.completed_at or item.created_at or "", item.id),
            reverse=True,
        )
        last_completed = None
        if terminal:
            latest = terminal[0]
            last_completed = {
                "jobId": latest.id,
                "courseId": latest.course_id,
                "courseTitle": title_for(latest.course_id),
                "lectureNumber": latest.lecture_number,
                "status": reconcile_status(latest, lecture_keys),
                "completedAt": latest.completed_at or latest.created_at,
            }

        succeeded_per_course: Dict[int, int] = {}
        for job in jobs:
            if reconcile_status(job, lecture_keys) == "succeeded":
                succeeded_per_course[job.course_id] = succeeded_per_course.get(job.course_id, 0) + 1

        return {
            "jobs": list(groups.values()),
            "active": active,
            "lastCompleted": last_completed,
            "succeededPerCourse": succeeded_per_course,
        }

    def _course_titles(self, course_ids: Set[int]) -> Dict[int, str]:
        placeholders = ", ".join("?" for _ in course_ids)
        with self._session() as conn:
            rows = self._execute(
                conn,
                f"SELECT id, title FROM courses WHERE id IN ({placeholders})",
                sorted(course_ids),
                action="courses.titles",
                table="courses",
            ).fetchall()
        return {int(row["id"]): row["title"] for row in rows}

    def _lecture_keys(self, course_ids: Set[int]) -> Set[Tuple[int, int]]:
        placeholders = ", ".join("?" for _ in course_ids)
        with self._session() as conn:
            rows = self._execute(
                conn,
                f"""
                SELECT course_id, order_in_course FROM lectures
                WHERE course_id IN ({placeholders}) AND order_in_course IS NOT NULL
                """,
                sorted(course_ids),
                action="lectures.keys",
                table="lectures",
            ).fetchall()
        return {(int(row["course_id"]), int(row["order_in_course"])) for row in rows}


__all__ = [
    "CANCELLED_OUTPUT",
    "JOB_STATUSES",
    "UploadJob",
    "UploadJobQueue",
    "reconcile_status",
]
