from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

RUN_RECORD_SCHEMA_VERSION = 1

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_CANCELED = "canceled"

TERMINAL_STATUSES = frozenset({STATUS_SUCCESS, STATUS_FAILED, STATUS_CANCELED})


class XciError(RuntimeError):
    """Base error for orchestrator failures."""


class ConfigError(XciError):
    """Raised when configuration or job selection is invalid."""


class WorkflowError(XciError):
    """Raised when a workflow file cannot be read or parsed."""


class EngineNotFoundError(ConfigError):
    """Raised when an unknown execution backend is requested."""


@dataclass(frozen=True)
class Step:
    id: str
    name: str


@dataclass(frozen=True)
class Job:
    id: str
    name: str
    needs: tuple[str, ...] = ()
    runs_on: tuple[str, ...] = ()
    steps: tuple[Step, ...] = ()
    condition: str | None = None  # raw `if:` expression, never evaluated


@dataclass(frozen=True)
class Workflow:
    id: str
    name: str
    path: str
    events: tuple[str, ...]
    jobs: tuple[Job, ...]

    def job(self, job_id: str) -> Job | None:
        for job in self.jobs:
            if job.id == job_id:
                return job
        return None

    @property
    def job_ids(self) -> list[str]:
        return [job.id for job in self.jobs]


@dataclass(frozen=True)
class EventSpec:
    name: str
    payload_path: str | None = None

    def to_json(self) -> dict[str, Any]:
        return {"name": self.name, "payload_path": self.payload_path}

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "EventSpec":
        raw_path = payload.get("payload_path")
        return cls(
            name=str(payload["name"]),
            payload_path=str(raw_path) if raw_path else None,
        )


@dataclass(frozen=True)
class RunPreset:
    id: str
    label: str
    job_ids: tuple[str, ...]
    event: EventSpec | None = None
    matrix: tuple[str, ...] | None = None


@dataclass(frozen=True)
class PlannedJob:
    job_id: str
    matrix: tuple[str, ...] | None = None
    engine_args: tuple[str, ...] = ()


@dataclass(frozen=True)
class RunPlan:
    run_id: str
    workflow: Workflow
    jobs: tuple[PlannedJob, ...]
    event: EventSpec
    preset_id: str | None = None

    @property
    def job_ids(self) -> list[str]:
        return [job.job_id for job in self.jobs]


@dataclass
class JobRun:
    job_id: str
    status: str = STATUS_PENDING
    started_at: str | None = None
    finished_at: str | None = None
    duration_ms: int | None = None
    exit_code: int | None = None
    matrix: tuple[str, ...] | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "duration_ms": self.duration_ms,
            "exit_code": self.exit_code,
            "matrix": list(self.matrix) if self.matrix is not None else None,
        }

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "JobRun":
        raw_matrix = payload.get("matrix")
        raw_duration = payload.get("duration_ms")
        raw_exit = payload.get("exit_code")
        return cls(
            job_id=str(payload["job_id"]),
            status=str(payload.get("status", STATUS_PENDING)),
            started_at=payload.get("started_at"),
            finished_at=payload.get("finished_at"),
            duration_ms=int(raw_duration) if raw_duration is not None else None,
            exit_code=int(raw_exit) if raw_exit is not None else None,
            matrix=tuple(raw_matrix) if raw_matrix is not None else None,
        )


@dataclass
class RunRecord:
    id: str
    workflow_id: str
    event: EventSpec
    status: str = STATUS_RUNNING
    created_at: str | None = None
    finished_at: str | None = None
    logs_dir: str | None = None
    artifacts_dir: str | None = None
    jobs: list[JobRun] = field(default_factory=list)
    schema_version: int = RUN_RECORD_SCHEMA_VERSION

    def job(self, job_id: str) -> JobRun | None:
        for job in self.jobs:
            if job.job_id == job_id:
                return job
        return None

    def to_json(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "id": self.id,
            "workflow_id": self.workflow_id,
            "event": self.event.to_json(),
            "status": self.status,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
            "logs_dir": self.logs_dir,
            "artifacts_dir": self.artifacts_dir,
            "jobs": [job.to_json() for job in self.jobs],
        }

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "RunRecord":
        raw_event = payload.get("event")
        event = (
            EventSpec.from_json(raw_event)
            if isinstance(raw_event, Mapping) and "name" in raw_event
            else EventSpec(name="push")
        )
        return cls(
            id=str(payload["id"]),
            workflow_id=str(payload.get("workflow_id", "")),
            event=event,
            status=str(payload.get("status", STATUS_RUNNING)),
            created_at=payload.get("created_at"),
            finished_at=payload.get("finished_at"),
            logs_dir=payload.get("logs_dir"),
            artifacts_dir=payload.get("artifacts_dir"),
            jobs=[JobRun.from_json(item) for item in payload.get("jobs", [])],
            schema_version=int(
                payload.get("schema_version", RUN_RECORD_SCHEMA_VERSION)
            ),
        )


def status_for_exit_code(exit_code: int) -> str:
    if exit_code == 0:
        return STATUS_SUCCESS
    if exit_code == 130:
        return STATUS_CANCELED
    return STATUS_FAILED


def aggregate_run_status(statuses: Iterable[str]) -> str:
    """Derive the overall run status from its job statuses.

    ``running`` while any job runs, otherwise ``failed`` beats ``canceled``
    beats ``success``. Jobs still ``pending`` count as neither.
    """
    seen = set(statuses)
    if STATUS_RUNNING in seen:
        return STATUS_RUNNING
    if STATUS_FAILED in seen:
        return STATUS_FAILED
    if STATUS_CANCELED in seen:
        return STATUS_CANCELED
    return STATUS_SUCCESS
