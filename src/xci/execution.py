from __future__ import annotations

from dataclasses import dataclass, field, replace
import json
import logging
from pathlib import Path
import sys
import threading
import time
from typing import Any, Callable, Sequence, TextIO

from xci.events import (
    JobFinished,
    JobsCanceled,
    JobStarted,
    PlannedJobRef,
    RunFinished,
    RunStarted,
    RuntimeEvent,
)
from xci.executors.base import (
    OutputChunk,
    ProcessLaunch,
    ProcessLauncher,
    StreamKind,
    SupervisedProcess,
    describe_spawn_error,
)
from xci.executors.process import SubprocessLauncher
from xci.formatter import (
    DOCKER_STORAGE_HINT,
    ActOutputFormatter,
    looks_like_docker_storage_error,
)
from xci.models import (
    STATUS_CANCELED,
    STATUS_PENDING,
    STATUS_RUNNING,
    STATUS_SUCCESS,
    EngineNotFoundError,
    EventSpec,
    PlannedJob,
    RunPlan,
    aggregate_run_status,
    status_for_exit_code,
)
from xci.store import RunEventPersister, RunStore
from xci.utils import format_command, utc_now_iso

_log = logging.getLogger("xci.execution")

CANCELED_EXIT_CODE = 130
SPAWN_FAILED_EXIT_CODE = 1
ARTIFACT_SERVER_ADDR = "127.0.0.1"
ARTIFACT_SERVER_PORT = "0"

OutputCallback = Callable[[str, StreamKind, str], None]
EventCallback = Callable[[RuntimeEvent], None]


class CancellationToken:
    """Shared cancel flag checked at job boundaries and while a job runs."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


@dataclass(frozen=True)
class EngineContext:
    repo_root: Path
    workflows_path: str
    event_name: str
    runs_dir: Path | None = None
    artifact_dir: str | None = None
    event_payload_path: str | None = None
    container_architecture: str | None = None
    platform_map: dict[str, str] = field(default_factory=dict)
    env_file: str | None = None
    vars_file: str | None = None
    secrets_file: str | None = None
    extra_args: tuple[str, ...] = ()
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    on_output: OutputCallback | None = None
    on_event: EventCallback | None = None

    def run_store(self) -> RunStore:
        if self.runs_dir is not None:
            return RunStore(self.runs_dir)
        return RunStore.for_repo(self.repo_root)


@dataclass(frozen=True)
class EngineRunResult:
    exit_code: int
    logs_path: str


@dataclass(frozen=True)
class EngineCapabilities:
    matrix: bool
    artifacts: bool
    event_payloads: bool
    services: bool


def build_act_args(
    context: EngineContext,
    job_id: str,
    matrix: Sequence[str] | None = None,
    *,
    executable: str = "act",
) -> list[str]:
    args = [
        executable,
        context.event_name,
        "--workflows",
        context.workflows_path,
        "--job",
        job_id,
        "--rm",
    ]
    if context.event_payload_path:
        args.extend(["--eventpath", context.event_payload_path])
    for item in matrix or ():
        args.extend(["--matrix", item])
    if context.artifact_dir:
        args.extend(["--artifact-server-path", context.artifact_dir])
        args.extend(["--artifact-server-addr", ARTIFACT_SERVER_ADDR])
        args.extend(["--artifact-server-port", ARTIFACT_SERVER_PORT])
    if context.container_architecture:
        arch = context.container_architecture
        if "/" not in arch:
            arch = f"linux/{arch}"
        args.extend(["--container-architecture", arch])
    for label, image in context.platform_map.items():
        args.extend(["--platform", f"{label}={image}"])
    if context.env_file:
        args.extend(["--env-file", context.env_file])
    if context.vars_file:
        args.extend(["--var-file", context.vars_file])
    if context.secrets_file:
        args.extend(["--secret-file", context.secrets_file])
    args.extend(context.extra_args)
    return args


def build_event_payload(event_name: str) -> dict[str, Any]:
    repository = {"full_name": "local/local", "name": "local", "owner": {"login": "local"}}
    if event_name == "pull_request":
        return {
            "action": "opened",
            "repository": repository,
            "pull_request": {
                "number": 1,
                "head": {"ref": "local"},
                "base": {"ref": "main"},
            },
        }
    if event_name == "workflow_dispatch":
        return {"repository": repository, "inputs": {}}
    return {"ref": "refs/heads/main", "repository": repository}


def ensure_event_payload(event_name: str, event_path: str | None, run_dir: Path) -> str:
    """Return a usable payload path, writing ``<run_dir>/event.json`` if needed."""
    if event_path and Path(event_path).exists():
        return event_path
    out_path = Path(run_dir) / "event.json"
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(
        json.dumps(build_event_payload(event_name), indent=2), encoding="utf-8"
    )
    return str(out_path)


def _normalize_returncode(returncode: int) -> int:
    # Popen reports death-by-signal as -N; shells report 128 + N.
    return 128 - returncode if returncode < 0 else returncode


class ActEngine:
    """Runs planned jobs one at a time through the ``act`` CLI."""

    id = "act"

    def __init__(
        self,
        *,
        launcher: ProcessLauncher | None = None,
        executable: str = "act",
        poll_interval_sec: float = 0.05,
        drain_timeout_sec: float = 1.0,
        cancel_grace_sec: float = 10.0,
    ):
        self.launcher: ProcessLauncher = launcher or SubprocessLauncher()
        self.executable = executable
        self.poll_interval_sec = poll_interval_sec
        self.drain_timeout_sec = drain_timeout_sec
        self.cancel_grace_sec = cancel_grace_sec

    def capabilities(self) -> EngineCapabilities:
        return EngineCapabilities(
            matrix=True, artifacts=True, event_payloads=True, services=True
        )

    def _prepare(self, context: EngineContext, plan: RunPlan) -> EngineContext:
        store = context.run_store()
        run_dir = store.create_run_dir(plan.run_id)
        artifact_dir = context.artifact_dir or str(store.create_artifacts_dir(plan.run_id))
        requested = context.event_payload_path or plan.event.payload_path
        if requested and not Path(requested).is_absolute():
            requested = str(Path(context.repo_root) / requested)
        event_path = ensure_event_payload(plan.event.name, requested, run_dir)
        return replace(context, event_payload_path=event_path, artifact_dir=artifact_dir)

    def plan(self, context: EngineContext, plan: RunPlan) -> RunPlan:
        """Attach act arguments to every job and materialize the event payload."""
        prepared = self._prepare(context, plan)
        jobs = tuple(
            replace(
                job,
                engine_args=tuple(
                    build_act_args(
                        prepared, job.job_id, job.matrix, executable=self.executable
                    )
                ),
            )
            for job in plan.jobs
        )
        return replace(
            plan,
            jobs=jobs,
            event=EventSpec(name=plan.event.name, payload_path=prepared.event_payload_path),
        )

    def run(self, plan: RunPlan, context: EngineContext) -> EngineRunResult:
        if not plan.jobs:
            return EngineRunResult(exit_code=1, logs_path="")

        store = context.run_store()
        prepared = self._prepare(context, plan)
        logs_dir = store.create_logs_dir(plan.run_id)
        sinks: list[EventCallback] = [RunEventPersister(store)]
        if context.on_event is not None:
            sinks.append(context.on_event)
        token = context.cancel_token
        statuses = {job.job_id: STATUS_PENDING for job in plan.jobs}

        def emit(event: RuntimeEvent) -> None:
            self._dispatch(sinks, event)

        def cancel_remaining(jobs: Sequence[PlannedJob]) -> None:
            job_ids = tuple(job.job_id for job in jobs)
            if not job_ids:
                return
            for job_id in job_ids:
                statuses[job_id] = STATUS_CANCELED
            emit(JobsCanceled(run_id=plan.run_id, job_ids=job_ids))

        emit(
            RunStarted(
                run_id=plan.run_id,
                workflow_id=plan.workflow.id,
                event=EventSpec(plan.event.name, prepared.event_payload_path),
                jobs=tuple(PlannedJobRef(job.job_id, job.matrix) for job in plan.jobs),
                created_at=utc_now_iso(),
                logs_dir=str(logs_dir),
                artifacts_dir=prepared.artifact_dir,
            )
        )

        exit_code = 0
        last_logs_path = ""
        for index, job in enumerate(plan.jobs):
            if token.cancelled:
                cancel_remaining(plan.jobs[index:])
                exit_code = CANCELED_EXIT_CODE
                break

            log_path = store.create_log_file(plan.run_id, job.job_id)
            last_logs_path = str(log_path)
            args = list(job.engine_args) or build_act_args(
                prepared, job.job_id, job.matrix, executable=self.executable
            )

            started_at = utc_now_iso()
            started = time.perf_counter()
            statuses[job.job_id] = STATUS_RUNNING
            emit(JobStarted(run_id=plan.run_id, job_id=job.job_id, started_at=started_at))

            exit_code = self._run_job(args, prepared, job.job_id, log_path)
            status = status_for_exit_code(exit_code)
            statuses[job.job_id] = status
            emit(
                JobFinished(
                    run_id=plan.run_id,
                    job_id=job.job_id,
                    status=status,
                    exit_code=exit_code,
                    started_at=started_at,
                    finished_at=utc_now_iso(),
                    duration_ms=int((time.perf_counter() - started) * 1000),
                )
            )
            if status != STATUS_SUCCESS:
                cancel_remaining(plan.jobs[index + 1 :])
                break

        emit(
            RunFinished(
                run_id=plan.run_id,
                status=aggregate_run_status(statuses.values()),
                finished_at=utc_now_iso(),
            )
        )
        return EngineRunResult(exit_code=exit_code, logs_path=last_logs_path)

    def _dispatch(self, sinks: Sequence[EventCallback], event: RuntimeEvent) -> None:
        _log.info(
            "%s run_id=%s%s",
            event.type.replace("-", "_"),
            event.run_id,
            f" job_id={event.job_id}" if isinstance(event, (JobStarted, JobFinished)) else "",
        )
        for sink in sinks:
            try:
                sink(event)
            except Exception as exc:
                _log.warning("event_sink_failed type=%s error=%s", event.type, exc)

    def _forward(
        self, context: EngineContext, text: str, stream: StreamKind, job_id: str
    ) -> None:
        if not text:
            return
        if context.on_output is None:
            target: TextIO = sys.stdout if stream == "stdout" else sys.stderr
            target.write(text)
            target.flush()
            return
        try:
            context.on_output(text, stream, job_id)
        except Exception as exc:
            _log.warning("output_callback_failed job_id=%s error=%s", job_id, exc)

    def _run_job(
        self, args: list[str], context: EngineContext, job_id: str, log_path: Path
    ) -> int:
        with log_path.open("a", encoding="utf-8") as log:
            command_line = f"$ {format_command(args)}\n"
            log.write(command_line)
            log.flush()
            self._forward(context, command_line, "stdout", job_id)

            try:
                process = self.launcher.start(
                    ProcessLaunch(args=tuple(args), cwd=Path(context.repo_root))
                )
            except OSError as exc:
                message = describe_spawn_error(args[0], exc)
                _log.error("spawn_failed job_id=%s error=%s", job_id, exc)
                log.write(message)
                self._forward(context, message, "stderr", job_id)
                return SPAWN_FAILED_EXIT_CODE

            return self._supervise(process, context, job_id, log)

    def _supervise(
        self,
        process: SupervisedProcess,
        context: EngineContext,
        job_id: str,
        log: TextIO,
    ) -> int:
        token = context.cancel_token
        formatters: dict[StreamKind, ActOutputFormatter] = {
            "stdout": ActOutputFormatter(),
            "stderr": ActOutputFormatter(),
        }
        hinted = False
        cancel_requested_at: float | None = None
        exited_at: float | None = None

        while True:
            if token.cancelled and cancel_requested_at is None:
                cancel_requested_at = time.monotonic()
                process.terminate()
            elif (
                cancel_requested_at is not None
                and time.monotonic() - cancel_requested_at >= self.cancel_grace_sec
            ):
                _log.warning(
                    "process_ignored_termination job_id=%s pid=%s", job_id, process.pid
                )
                break

            chunk = process.read_chunk(self.poll_interval_sec)
            if chunk is not None:
                log.write(chunk.text)
                log.flush()
                if (
                    not hinted
                    and chunk.stream == "stderr"
                    and looks_like_docker_storage_error(chunk.text)
                ):
                    hinted = True
                    log.write(DOCKER_STORAGE_HINT)
                    self._forward(context, DOCKER_STORAGE_HINT, "stderr", job_id)
                self._emit_chunk(context, formatters, chunk, job_id)
                continue

            now = time.monotonic()
            if process.poll() is not None:
                if process.streams_closed:
                    break
                # Grandchildren may keep the pipes open after the process exits.
                exited_at = exited_at or now
                if now - exited_at >= self.drain_timeout_sec:
                    break
            elif process.streams_closed:
                time.sleep(self.poll_interval_sec)

        for stream, formatter in formatters.items():
            remainder = formatter.flush()
            if context.on_output is not None:
                self._forward(context, remainder, stream, job_id)

        if cancel_requested_at is not None:
            return CANCELED_EXIT_CODE
        returncode = process.poll()
        if returncode is None:
            returncode = process.wait()
        return _normalize_returncode(returncode)

    def _emit_chunk(
        self,
        context: EngineContext,
        formatters: dict[StreamKind, ActOutputFormatter],
        chunk: OutputChunk,
        job_id: str,
    ) -> None:
        if context.on_output is None:
            self._forward(context, chunk.text, chunk.stream, job_id)
            return
        self._forward(context, formatters[chunk.stream].push(chunk.text), chunk.stream, job_id)


ENGINE_REGISTRY: dict[str, Callable[..., ActEngine]] = {ActEngine.id: ActEngine}


def create_engine(engine_id: str, **kwargs: Any) -> ActEngine:
    factory = ENGINE_REGISTRY.get(engine_id)
    if factory is None:
        supported = ", ".join(sorted(ENGINE_REGISTRY))
        raise EngineNotFoundError(
            f"Unknown engine '{engine_id}'. Supported engines: {supported}"
        )
    return factory(**kwargs)
