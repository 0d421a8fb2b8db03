"""Lifecycle of a processing job.

Status moves ``pending -> processing -> completed | failed``. While processing,
``current_step`` walks the pipeline steps and ``progress`` follows the step,
never decreasing. ``completed`` and ``failed`` are terminal: any further
mutation raises ``InvalidJobTransitionError``. Every write is a conditional
update on the status the tracker last read, so two workers cannot both move
the same job out of ``pending``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from app.schemas.job import JobStatus, JobStep, ProcessingJobRecord
from app.services.job_store import ProcessingJobStore

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.pending: frozenset({JobStatus.processing, JobStatus.failed}),
    JobStatus.processing: frozenset({JobStatus.processing, JobStatus.completed, JobStatus.failed}),
    JobStatus.completed: frozenset(),
    JobStatus.failed: frozenset(),
}

STEP_ORDER: tuple[JobStep, ...] = (
    JobStep.queued,
    JobStep.fetching,
    JobStep.analyzing,
    JobStep.extracting,
    JobStep.generating,
    JobStep.saving,
    JobStep.completed,
)

STEP_PROGRESS: dict[JobStep, int] = {
    JobStep.queued: 0,
    JobStep.fetching: 10,
    JobStep.analyzing: 30,
    JobStep.extracting: 50,
    JobStep.generating: 70,
    JobStep.saving: 90,
    JobStep.completed: 100,
}

TERMINAL_STATUSES = frozenset({JobStatus.completed, JobStatus.failed})


class InvalidJobTransitionError(Exception):
    pass


@dataclass(frozen=True)
class JobState:
    status: JobStatus
    current_step: JobStep
    progress: int

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> JobState:
        return cls(
            status=JobStatus(record["status"]),
            current_step=JobStep(record.get("current_step") or JobStep.queued),
            progress=int(record.get("progress") or 0),
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def transition(state: JobState, target: JobStatus, step: JobStep | None = None) -> JobState:
    if state.is_terminal:
        raise InvalidJobTransitionError(f"Job is already {state.status}.")
    if target not in ALLOWED_TRANSITIONS[state.status]:
        raise InvalidJobTransitionError(f"Cannot move job from {state.status} to {target}.")

    if target == JobStatus.failed:
        return JobState(status=target, current_step=state.current_step, progress=state.progress)

    if target == JobStatus.completed:
        return JobState(status=target, current_step=JobStep.completed, progress=100)

    next_step = step or JobStep.fetching
    if next_step == JobStep.completed:
        raise InvalidJobTransitionError("Use completion to reach the completed step.")
    if STEP_ORDER.index(next_step) < STEP_ORDER.index(state.current_step):
        raise InvalidJobTransitionError(
            f"Cannot move job step backwards from {state.current_step} to {next_step}.",
        )
    return JobState(
        status=target,
        current_step=next_step,
        progress=max(state.progress, STEP_PROGRESS[next_step]),
    )


class JobTracker:
    def __init__(self, store: ProcessingJobStore) -> None:
        self.store = store

    def create(
        self,
        *,
        user_id: str,
        source: str,
        source_external_id: str | None,
        metadata: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        now = datetime.now(UTC)
        record = self.store.insert(
            {
                "user_id": user_id,
                "source": source,
                "source_external_id": source_external_id,
                "status": JobStatus.pending.value,
                "current_step": JobStep.queued.value,
                "progress": STEP_PROGRESS[JobStep.queued],
                "result": {},
                "error": None,
                "metadata": dict(metadata or {}),
                "created_at": now,
                "updated_at": now,
            },
        )
        logger.info(
            "Job created job_id=%s user_id=%s source=%s external_id=%s",
            record["_id"],
            user_id,
            source,
            source_external_id,
        )
        return record

    def get(self, job_id: str) -> dict[str, Any] | None:
        return self.store.get_by_id(job_id)

    def find_active(
        self,
        *,
        user_id: str,
        source: str,
        source_external_id: str,
    ) -> dict[str, Any] | None:
        return self.store.find_active(
            user_id=user_id,
            source=source,
            source_external_id=source_external_id,
        )

    def claim(self, job_id: str) -> dict[str, Any] | None:
        """Move a pending job into processing; ``None`` when it is not pending anymore."""
        record = self.store.get_by_id(job_id)
        if not record or record.get("status") != JobStatus.pending:
            return None

        next_state = transition(JobState.from_record(record), JobStatus.processing, JobStep.fetching)
        claimed = self.store.update_if_status(
            job_id,
            expected_statuses=[JobStatus.pending.value],
            updates=_state_updates(next_state),
        )
        if claimed:
            logger.info("Job claimed job_id=%s", job_id)
        else:
            logger.info("Job claim skipped job_id=%s reason=not_pending", job_id)
        return claimed

    def advance(
        self,
        job_id: str,
        step: JobStep,
        *,
        metadata: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        record = self._require(job_id)
        next_state = transition(JobState.from_record(record), JobStatus.processing, step)
        updates = _state_updates(next_state)
        if metadata:
            updates["metadata"] = {**(record.get("metadata") or {}), **metadata}
        updated = self._write(job_id, record, updates)
        logger.info("Job step job_id=%s step=%s progress=%s", job_id, step, next_state.progress)
        return updated

    def complete(self, job_id: str, result: Mapping[str, Any]) -> dict[str, Any]:
        if not result.get("memo_id"):
            raise InvalidJobTransitionError("A completed job requires a memo_id in its result.")
        record = self._require(job_id)
        next_state = transition(JobState.from_record(record), JobStatus.completed)
        updates = _state_updates(next_state)
        updates["result"] = dict(result)
        updates["error"] = None
        updated = self._write(job_id, record, updates)
        logger.info("Job completed job_id=%s memo_id=%s", job_id, result.get("memo_id"))
        return updated

    def fail(self, job_id: str, error: str) -> dict[str, Any]:
        record = self._require(job_id)
        next_state = transition(JobState.from_record(record), JobStatus.failed)
        updates = _state_updates(next_state)
        updates["error"] = error or "Unknown error"
        updated = self._write(job_id, record, updates)
        logger.warning(
            "Job failed job_id=%s step=%s error=%s",
            job_id,
            next_state.current_step,
            updates["error"],
        )
        return updated

    def list_jobs(self, user_id: str, *, limit: int = 50) -> list[dict[str, Any]]:
        return self.store.list_by_user(user_id, limit=limit)

    def list_pending(self, user_id: str, *, limit: int) -> list[dict[str, Any]]:
        return self.store.list_by_user(
            user_id,
            limit=limit,
            statuses=[JobStatus.pending.value],
            oldest_first=True,
        )

    def clear(
        self,
        *,
        user_id: str | None,
        pending_ttl: timedelta,
        completed_ttl: timedelta,
        processing_ttl: timedelta,
        now: datetime | None = None,
    ) -> dict[str, int]:
        reference = now or datetime.now(UTC)
        cleared = {
            "failed": self.store.delete_many(user_id=user_id, status=JobStatus.failed.value),
            "stale_pending": self.store.delete_many(
                user_id=user_id,
                status=JobStatus.pending.value,
                older_than=reference - pending_ttl,
            ),
            "old_completed": self.store.delete_many(
                user_id=user_id,
                status=JobStatus.completed.value,
                older_than=reference - completed_ttl,
                timestamp_field="updated_at",
            ),
            "stuck_processing": self.store.delete_many(
                user_id=user_id,
                status=JobStatus.processing.value,
                older_than=reference - processing_ttl,
                timestamp_field="updated_at",
            ),
        }
        logger.info("Jobs cleared user_id=%s cleared=%s", user_id, cleared)
        return cleared

    def _require(self, job_id: str) -> dict[str, Any]:
        record = self.store.get_by_id(job_id)
        if not record:
            raise InvalidJobTransitionError(f"Job not found job_id={job_id}.")
        return record

    def _write(
        self,
        job_id: str,
        record: Mapping[str, Any],
        updates: dict[str, Any],
    ) -> dict[str, Any]:
        updated = self.store.update_if_status(
            job_id,
            expected_statuses=[record["status"]],
            updates=updates,
        )
        if not updated:
            raise InvalidJobTransitionError(f"Job changed concurrently job_id={job_id}.")
        return updated


def to_job_record(record: Mapping[str, Any]) -> ProcessingJobRecord:
    return ProcessingJobRecord(
        id=str(record["_id"]),
        user_id=str(record.get("user_id")),
        source=str(record.get("source")),
        source_external_id=record.get("source_external_id"),
        status=record["status"],
        current_step=record.get("current_step") or JobStep.queued,
        progress=int(record.get("progress") or 0),
        result=dict(record.get("result") or {}),
        error=record.get("error"),
        metadata=dict(record.get("metadata") or {}),
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )


def _state_updates(state: JobState) -> dict[str, Any]:
    return {
        "status": state.status.value,
        "current_step": state.current_step.value,
        "progress": state.progress,
        "updated_at": datetime.now(UTC),
    }
