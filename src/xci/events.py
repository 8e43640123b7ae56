from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, ClassVar, Union

from xci.models import (
    STATUS_CANCELED,
    STATUS_PENDING,
    STATUS_RUNNING,
    TERMINAL_STATUSES,
    ConfigError,
    EventSpec,
    JobRun,
    RunRecord,
)

RUNTIME_EVENT_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class PlannedJobRef:
    job_id: str
    matrix: tuple[str, ...] | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "matrix": list(self.matrix) if self.matrix is not None else None,
        }


@dataclass(frozen=True)
class RunStarted:
    type: ClassVar[str] = "run-started"
    run_id: str
    workflow_id: str
    event: EventSpec
    jobs: tuple[PlannedJobRef, ...]
    created_at: str
    logs_dir: str | None = None
    artifacts_dir: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "event": self.event.to_json(),
            "jobs": [job.to_json() for job in self.jobs],
            "created_at": self.created_at,
            "logs_dir": self.logs_dir,
            "artifacts_dir": self.artifacts_dir,
        }


@dataclass(frozen=True)
class JobStarted:
    type: ClassVar[str] = "job-started"
    run_id: str
    job_id: str
    started_at: str

    def to_json(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "run_id": self.run_id,
            "job_id": self.job_id,
            "started_at": self.started_at,
        }


@dataclass(frozen=True)
class JobFinished:
    type: ClassVar[str] = "job-finished"
    run_id: str
    job_id: str
    status: str
    exit_code: int
    finished_at: str
    duration_ms: int
    started_at: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "run_id": self.run_id,
            "job_id": self.job_id,
            "status": self.status,
            "exit_code": self.exit_code,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class JobsCanceled:
    type: ClassVar[str] = "jobs-canceled"
    run_id: str
    job_ids: tuple[str, ...]

    def to_json(self) -> dict[str, Any]:
        return {"type": self.type, "run_id": self.run_id, "job_ids": list(self.job_ids)}


@dataclass(frozen=True)
class RunFinished:
    type: ClassVar[str] = "run-finished"
    run_id: str
    status: str
    finished_at: str

    def to_json(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "run_id": self.run_id,
            "status": self.status,
            "finished_at": self.finished_at,
        }


RuntimeEvent = Union[RunStarted, JobStarted, JobFinished, JobsCanceled, RunFinished]

_EVENT_REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    RunStarted.type: ("workflow_id", "event", "jobs", "created_at"),
    JobStarted.type: ("job_id", "started_at"),
    JobFinished.type: ("job_id", "status", "exit_code", "finished_at", "duration_ms"),
    JobsCanceled.type: ("job_ids",),
    RunFinished.type: ("status", "finished_at"),
}
_FINISHED_STATUSES = frozenset(TERMINAL_STATUSES)


def event_to_json(event: RuntimeEvent) -> dict[str, Any]:
    return {"schema_version": RUNTIME_EVENT_SCHEMA_VERSION, **event.to_json()}


def _require_str_list(event_type: str, field: str, value: Any) -> None:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(
            f"Runtime event '{event_type}' field '{field}' must be a list of strings"
        )


def _validate_nested_fields(event_type: str, payload: Mapping[str, Any]) -> None:
    if event_type == RunStarted.type:
        event = payload["event"]
        name = event.get("name") if isinstance(event, Mapping) else None
        if not isinstance(name, str) or not name:
            raise ConfigError(
                f"Runtime event '{event_type}' field 'event' must be a mapping with a 'name'"
            )
        jobs = payload["jobs"]
        if not isinstance(jobs, list):
            raise ConfigError(f"Runtime event '{event_type}' field 'jobs' must be a list")
        for index, item in enumerate(jobs):
            if not isinstance(item, Mapping) or not isinstance(item.get("job_id"), str):
                raise ConfigError(
                    f"Runtime event '{event_type}' field 'jobs[{index}]' must be a mapping "
                    "with a string 'job_id'"
                )
            if item.get("matrix") is not None:
                _require_str_list(event_type, f"jobs[{index}].matrix", item["matrix"])
    elif event_type == JobFinished.type:
        for field in ("exit_code", "duration_ms"):
            value = payload[field]
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(
                    f"Runtime event '{event_type}' field '{field}' must be an integer"
                )
    elif event_type == JobsCanceled.type:
        _require_str_list(event_type, "job_ids", payload["job_ids"])


def validate_runtime_event(event: Mapping[str, Any]) -> dict[str, Any]:
    if not isinstance(event, Mapping):
        raise ConfigError(f"Runtime event must be a JSON object, got {type(event).__name__}")
    payload = dict(event)
    event_type = payload.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise ConfigError("Runtime event is missing a non-empty 'type' field")

    required_fields = _EVENT_REQUIRED_FIELDS.get(event_type)
    if required_fields is None:
        raise ConfigError(f"Unsupported runtime event '{event_type}'")

    schema_version = payload.get("schema_version", RUNTIME_EVENT_SCHEMA_VERSION)
    if schema_version != RUNTIME_EVENT_SCHEMA_VERSION:
        raise ConfigError(
            f"Runtime event '{event_type}' must use schema_version="
            f"{RUNTIME_EVENT_SCHEMA_VERSION}, got {schema_version!r}"
        )

    missing = [field for field in ("run_id", *required_fields) if field not in payload]
    if missing:
        raise ConfigError(
            f"Runtime event '{event_type}' is missing required fields: {sorted(missing)}"
        )
    if not isinstance(payload["run_id"], str) or not payload["run_id"].strip():
        raise ConfigError(f"Runtime event '{event_type}' has invalid 'run_id'")
    status = payload.get("status")
    if status is not None and status not in _FINISHED_STATUSES:
        raise ConfigError(
            f"Runtime event '{event_type}' has invalid 'status': {status!r}"
        )
    _validate_nested_fields(event_type, payload)
    return payload


def event_from_json(event: Mapping[str, Any]) -> RuntimeEvent:
    payload = validate_runtime_event(event)
    event_type = payload["type"]
    run_id = str(payload["run_id"])
    if event_type == RunStarted.type:
        jobs = []
        for item in payload["jobs"]:
            raw_matrix = item.get("matrix")
            jobs.append(
                PlannedJobRef(
                    job_id=str(item["job_id"]),
                    matrix=tuple(raw_matrix) if raw_matrix is not None else None,
                )
            )
        return RunStarted(
            run_id=run_id,
            workflow_id=str(payload["workflow_id"]),
            event=EventSpec.from_json(payload["event"]),
            jobs=tuple(jobs),
            created_at=str(payload["created_at"]),
            logs_dir=payload.get("logs_dir"),
            artifacts_dir=payload.get("artifacts_dir"),
        )
    if event_type == JobStarted.type:
        return JobStarted(
            run_id=run_id,
            job_id=str(payload["job_id"]),
            started_at=str(payload["started_at"]),
        )
    if event_type == JobFinished.type:
        return JobFinished(
            run_id=run_id,
            job_id=str(payload["job_id"]),
            status=str(payload["status"]),
            exit_code=int(payload["exit_code"]),
            started_at=payload.get("started_at"),
            finished_at=str(payload["finished_at"]),
            duration_ms=int(payload["duration_ms"]),
        )
    if event_type == JobsCanceled.type:
        return JobsCanceled(
            run_id=run_id, job_ids=tuple(str(item) for item in payload["job_ids"])
        )
    return RunFinished(
        run_id=run_id,
        status=str(payload["status"]),
        finished_at=str(payload["finished_at"]),
    )


def apply_event(record: RunRecord | None, event: RuntimeEvent) -> RunRecord | None:
    """Fold one runtime event into *record* and return the result.

    ``run-started`` builds a fresh record. Every other event mutates *record*
    in place and is ignored when it belongs to another run or arrives before
    ``run-started``. Job statuses only move forward.
    """
    if isinstance(event, RunStarted):
        return RunRecord(
            id=event.run_id,
            workflow_id=event.workflow_id,
            event=event.event,
            status=STATUS_RUNNING,
            created_at=event.created_at,
            logs_dir=event.logs_dir,
            artifacts_dir=event.artifacts_dir,
            jobs=[JobRun(job_id=job.job_id, matrix=job.matrix) for job in event.jobs],
        )
    if record is None or record.id != event.run_id:
        return record

    if isinstance(event, JobStarted):
        job = record.job(event.job_id)
        if job is not None and job.status == STATUS_PENDING:
            job.status = STATUS_RUNNING
            job.started_at = event.started_at
    elif isinstance(event, JobFinished):
        job = record.job(event.job_id)
        if job is not None and job.status not in TERMINAL_STATUSES:
            job.status = event.status
            job.exit_code = event.exit_code
            job.started_at = event.started_at or job.started_at
            job.finished_at = event.finished_at
            job.duration_ms = event.duration_ms
    elif isinstance(event, JobsCanceled):
        for job_id in event.job_ids:
            job = record.job(job_id)
            if job is not None and job.status == STATUS_PENDING:
                job.status = STATUS_CANCELED
    elif isinstance(event, RunFinished):
        if record.status == STATUS_RUNNING:
            record.status = event.status
            record.finished_at = event.finished_at
    return record
