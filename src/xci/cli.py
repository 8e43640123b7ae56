from __future__ import annotations

import argparse
import contextlib
import json
import logging
from pathlib import Path
import signal
import sys
import threading
import time
from typing import Any, Iterator, Sequence

from rich import box
from rich.console import Console, Group
from rich.live import Live
from rich.table import Table

from xci._logging import run_log, setup_logging
from xci.config import XciConfig, load_config, prepare_input_files
from xci.events import JobFinished, JobsCanceled, JobStarted, RunFinished, RuntimeEvent
from xci.execution import CancellationToken, EngineContext, create_engine
from xci.executors.base import StreamKind
from xci.models import (
    STATUS_CANCELED,
    STATUS_PENDING,
    STATUS_RUNNING,
    ConfigError,
    RunPreset,
    Workflow,
    XciError,
)
from xci.planner import (
    build_run_plan,
    expand_job_ids_with_needs,
    filter_jobs_for_event,
    resolve_container_architecture,
    resolve_platform_map,
    resolve_presets,
    resolve_supported_events,
    resolve_unrunnable_jobs,
    resolve_workflow,
    sort_jobs_by_needs,
)
from xci.status import build_run_summary, poll_run_record
from xci.step_parser import StepChunkParser, merge_step_statuses
from xci.store import RunStore
from xci.workflow import discover_workflows, workflows_dir

_cli_log = logging.getLogger("xci.cli")

GITIGNORE_ENTRY = ".xci"
DEFAULT_EVENT = "push"
_STATUS_STYLES = {
    "success": "[green]success[/green]",
    "failed": "[red]failed[/red]",
    "canceled": "[yellow]canceled[/yellow]",
    "running": "[cyan]running[/cyan]",
    "pending": "[dim]pending[/dim]",
}


def _console(stderr: bool = False) -> Console:
    return Console(highlight=False, stderr=stderr)


def _styled_status(status: str) -> str:
    return _STATUS_STYLES.get(status, status)


def _format_duration(duration_ms: Any) -> str:
    if duration_ms is None:
        return "-"
    value = int(duration_ms)
    if value < 1000:
        return f"{value}ms"
    seconds = value / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, remainder = divmod(round(seconds), 60)
    return f"{minutes}m{remainder}s"


def _split_job_args(values: Sequence[str] | None) -> list[str]:
    job_ids: list[str] = []
    for value in values or ():
        job_ids.extend(part.strip() for part in value.split(",") if part.strip())
    return list(dict.fromkeys(job_ids))


def ensure_gitignore(repo_root: Path) -> str:
    """Add ``.xci`` to the repository's .gitignore.

    Returns ``added``, ``present``, or ``skipped`` when *repo_root* is not a
    git checkout.
    """
    if not (repo_root / ".git").exists():
        return "skipped"
    ignore_path = repo_root / ".gitignore"
    current = ignore_path.read_text(encoding="utf-8") if ignore_path.exists() else ""
    for line in current.splitlines():
        if line.strip().strip("/") == GITIGNORE_ENTRY:
            return "present"
    if not current.strip():
        updated = f"{GITIGNORE_ENTRY}\n"
    else:
        prefix = current if current.endswith("\n") else f"{current}\n"
        updated = f"{prefix}{GITIGNORE_ENTRY}\n"
    ignore_path.write_text(updated, encoding="utf-8")
    return "added"


@contextlib.contextmanager
def _cancel_on_sigint(token: CancellationToken) -> Iterator[None]:
    """First Ctrl-C cancels the run; a second one interrupts immediately."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: Any) -> None:
        if token.cancelled:
            raise KeyboardInterrupt
        _cli_log.info("run_cancel_requested signal=%s", signum)
        print("\n[canceling] press Ctrl-C again to abort", file=sys.stderr)
        token.cancel()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


class _ProgressView:
    """Live job and step table fed by runtime events and job output."""

    def __init__(self, workflow: Workflow, job_ids: Sequence[str]):
        self.workflow = workflow
        self.job_ids = list(job_ids)
        self.job_status = {job_id: STATUS_PENDING for job_id in job_ids}
        self.job_duration: dict[str, int] = {}
        self.current_job: str | None = None
        self.run_status = STATUS_RUNNING
        self._parser: StepChunkParser | None = None
        self.step_statuses: dict[str, str] = {}
        self.step_outputs: dict[str, list[str]] = {}
        self.live: Live | None = None

    def _refresh(self) -> None:
        if self.live is not None:
            self.live.update(self.render())

    def on_event(self, event: RuntimeEvent) -> None:
        if isinstance(event, JobStarted):
            self.job_status[event.job_id] = STATUS_RUNNING
            self.current_job = event.job_id
            job = self.workflow.job(event.job_id)
            self._parser = StepChunkParser(job.steps if job is not None else ())
            self.step_statuses = {}
            self.step_outputs = {}
        elif isinstance(event, JobFinished):
            self.job_status[event.job_id] = event.status
            self.job_duration[event.job_id] = event.duration_ms
            if self._parser is not None and event.job_id == self.current_job:
                result = self._parser.finalize(event.status)
                self.step_statuses = merge_step_statuses(
                    self.step_statuses, result.statuses
                )
                self.step_outputs = result.outputs
        elif isinstance(event, JobsCanceled):
            for job_id in event.job_ids:
                if self.job_status.get(job_id) == STATUS_PENDING:
                    self.job_status[job_id] = STATUS_CANCELED
        elif isinstance(event, RunFinished):
            self.run_status = event.status
        self._refresh()

    def on_output(self, chunk: str, stream: StreamKind, job_id: str) -> None:
        if self._parser is None or job_id != self.current_job:
            return
        result = self._parser.push(chunk)
        self.step_statuses = merge_step_statuses(self.step_statuses, result.statuses)
        self.step_outputs = result.outputs
        self._refresh()

    def render(self) -> Group:
        jobs = Table(title=f"{self.workflow.name} ({self.run_status})", box=box.SIMPLE)
        jobs.add_column("Job", style="bold")
        jobs.add_column("Status")
        jobs.add_column("Dur", justify="right")
        for job_id in self.job_ids:
            jobs.add_row(
                job_id,
                _styled_status(self.job_status.get(job_id, STATUS_PENDING)),
                _format_duration(self.job_duration.get(job_id)),
            )

        steps = Table(title=f"Steps: {self.current_job or '-'}", box=box.SIMPLE)
        steps.add_column("Step")
        steps.add_column("Status")
        steps.add_column("Last output")
        job = self.workflow.job(self.current_job) if self.current_job else None
        for step in job.steps if job is not None else ():
            output = self.step_outputs.get(step.id) or []
            steps.add_row(
                step.name,
                _styled_status(self.step_statuses.get(step.id, STATUS_PENDING)),
                output[-1] if output else "",
            )
        if job is None:
            steps.add_row("<none>", "-", "")
        return Group(jobs, steps)


def _write_output(chunk: str, stream: StreamKind, job_id: str) -> None:
    target = sys.stdout if stream == "stdout" else sys.stderr
    target.write(chunk)
    target.flush()


def _discard_output(chunk: str, stream: StreamKind, job_id: str) -> None:
    return None


def _select_preset(
    config: XciConfig, workflow: Workflow, requested: str | None
) -> RunPreset | None:
    presets = resolve_presets(config.presets, workflow.jobs, config.default_preset)
    preset_id = requested or config.default_preset
    if not preset_id:
        return None
    for preset in presets:
        if preset.id == preset_id:
            return preset
    raise ConfigError(
        f"Unknown preset '{preset_id}'. Available: "
        f"{', '.join(preset.id for preset in presets)}"
    )


def _select_job_ids(
    args: argparse.Namespace, workflow: Workflow, preset: RunPreset | None
) -> list[str]:
    if args.all:
        return workflow.job_ids
    requested = _split_job_args(args.job)
    if requested:
        unknown = [job_id for job_id in requested if workflow.job(job_id) is None]
        if unknown:
            raise ConfigError(
                f"Unknown job id(s) in {workflow.name}: {', '.join(unknown)}"
            )
        return requested
    if args.preset and preset is not None and preset.job_ids:
        return list(preset.job_ids)
    return workflow.job_ids


def _render_summary_table(summary: dict[str, Any]) -> None:
    console = _console()
    overview = Table(title="Run Summary", show_header=False)
    overview.add_column("Field", style="bold cyan")
    overview.add_column("Value")
    overview.add_row("Run ID", str(summary.get("run_id", "")))
    workflow = summary.get("workflow") or {}
    overview.add_row("Workflow", str(workflow.get("name") or workflow.get("id", "-")))
    overview.add_row("Status", _styled_status(str(summary.get("status", ""))))
    overview.add_row("Logs", str(summary.get("logs_dir") or "-"))
    overview.add_row("Artifacts", str(summary.get("artifacts_dir") or "-"))
    console.print(overview)

    jobs = Table(title="Jobs")
    jobs.add_column("Job", style="bold")
    jobs.add_column("Status")
    jobs.add_column("Exit", justify="right")
    jobs.add_column("Dur", justify="right")
    for item in summary.get("jobs", []):
        exit_code = item.get("exit_code")
        jobs.add_row(
            str(item.get("job_id", "")),
            _styled_status(str(item.get("status", ""))),
            "-" if exit_code is None else str(exit_code),
            _format_duration(item.get("duration_ms")),
        )
    if not summary.get("jobs"):
        jobs.add_row("<none>", "-", "-", "-")
    console.print(jobs)


def _cmd_run(args: argparse.Namespace) -> int:
    repo_root = Path(args.repo_root).expanduser().resolve()
    config = load_config(repo_root)

    workflows = discover_workflows(repo_root)
    if not workflows:
        raise XciError(f"No workflows found in {workflows_dir(repo_root)}")
    workflow = resolve_workflow(workflows, args.workflow)
    if workflow is None:
        names = ", ".join(Path(item.path).name for item in workflows)
        raise ConfigError(f"No workflow selected. Use --workflow with one of: {names}")

    preset = _select_preset(config, workflow, args.preset)
    preset_event = preset.event if preset is not None else None
    event_name = args.event or (preset_event.name if preset_event else DEFAULT_EVENT)
    supported = resolve_supported_events(workflow)
    if event_name not in supported:
        raise ConfigError(
            f"Event '{event_name}' is not supported by {workflow.name}. "
            f"Supported: {', '.join(supported)}"
        )
    event_path = args.event_path or (preset_event.payload_path if preset_event else None)

    allowed = {job.id for job in filter_jobs_for_event(workflow.jobs, event_name)}
    selected = [job_id for job_id in _select_job_ids(args, workflow, preset) if job_id in allowed]
    expanded = [
        job_id
        for job_id in expand_job_ids_with_needs(workflow, selected)
        if job_id in allowed
    ]
    ordered = sort_jobs_by_needs(workflow, expanded)

    platform_map = resolve_platform_map(
        workflow, ordered, config.runtime.image, config.runtime.platform_map
    )
    unrunnable = resolve_unrunnable_jobs(workflow, ordered, platform_map)
    for job_id, reason in unrunnable.items():
        print(f"[skip] {job_id}: {reason}", file=sys.stderr)
    runnable = [job_id for job_id in ordered if job_id not in unrunnable]
    if not runnable:
        raise ConfigError(f"No runnable jobs selected for event '{event_name}'")

    matrix = args.matrix or (list(preset.matrix) if preset and preset.matrix else None)
    plan = build_run_plan(
        workflow,
        runnable,
        event_name,
        event_payload_path=event_path,
        preset=preset,
        matrix_override=matrix,
    )
    store = RunStore.for_repo(repo_root)
    run_dir = store.create_run_dir(plan.run_id)
    inputs = prepare_input_files(run_dir, config, cwd=repo_root)

    progress = _ProgressView(workflow, runnable) if args.progress else None
    if progress is not None:
        on_output = progress.on_output
    elif args.format == "json":
        on_output = _discard_output
    else:
        on_output = _write_output

    token = CancellationToken()
    context = EngineContext(
        repo_root=repo_root,
        workflows_path=workflow.path,
        event_name=event_name,
        runs_dir=store.base_dir,
        event_payload_path=event_path,
        container_architecture=resolve_container_architecture(
            config.runtime.architecture
        ),
        platform_map=platform_map,
        env_file=inputs.env_file,
        vars_file=inputs.vars_file,
        secrets_file=inputs.secrets_file,
        cancel_token=token,
        on_output=on_output,
        on_event=progress.on_event if progress is not None else None,
    )
    engine = create_engine(config.engine)
    live_console = _console(stderr=args.format == "json")
    with run_log(run_dir), _cancel_on_sigint(token):
        plan = engine.plan(context, plan)
        _cli_log.info(
            "run_planned run_id=%s workflow=%s jobs=%s event=%s preset=%s",
            plan.run_id,
            workflow.path,
            ",".join(plan.job_ids),
            event_name,
            plan.preset_id or "-",
        )
        if progress is not None:
            with Live(progress.render(), console=live_console, refresh_per_second=8) as live:
                progress.live = live
                result = engine.run(plan, context)
        else:
            result = engine.run(plan, context)

    summary = build_run_summary(
        poll_run_record(store, plan.run_id), plan.run_id, workflow, plan.job_ids
    )
    if args.format == "json":
        print(json.dumps(summary, indent=2, sort_keys=True))
    else:
        _render_summary_table(summary)
    return result.exit_code


def _cmd_status(args: argparse.Namespace) -> int:
    repo_root = Path(args.repo_root).expanduser().resolve()
    store = RunStore.for_repo(repo_root)
    run_id = args.run_id or store.latest_run_id()
    if run_id is None:
        print(f"[status] no runs found under {store.base_dir}", file=sys.stderr)
        return 1

    if args.rebuild:
        record = store.recover_run(run_id)
    else:
        record = poll_run_record(store, run_id)
    if record is None:
        print(f"[status] run record not available for {run_id}", file=sys.stderr)
        return 1

    summary = build_run_summary(record, run_id)
    if args.format == "json":
        print(json.dumps(summary, indent=2, sort_keys=True))
    else:
        _render_summary_table(summary)
    return 0


def _cmd_init(args: argparse.Namespace) -> int:
    repo_root = Path(args.repo_root).expanduser().resolve()
    result = ensure_gitignore(repo_root)
    if result == "added":
        print(f"Added '{GITIGNORE_ENTRY}' to .gitignore.")
    elif result == "present":
        print(f"'{GITIGNORE_ENTRY}' is already in .gitignore.")
    else:
        print("Skipped: not a git repository.")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="xci", description="Run GitHub Actions workflows locally"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Plan and run workflow jobs")
    run.add_argument("--repo-root", default=".", help="Repository root (default: .)")
    run.add_argument("--workflow", default=None, help="Workflow file name or name")
    selection = run.add_mutually_exclusive_group()
    selection.add_argument(
        "--job",
        action="append",
        default=None,
        help="Job id to run (repeatable, comma-separated allowed)",
    )
    selection.add_argument("--all", action="store_true", help="Run every job")
    run.add_argument("--event", default=None, help="Triggering event name")
    run.add_argument("--event-path", default=None, help="Event payload JSON file")
    run.add_argument(
        "--matrix",
        action="append",
        default=None,
        help="Matrix filter KEY:VALUE passed to act (repeatable)",
    )
    run.add_argument("--preset", default=None, help="Preset from .xci.yml")
    run.add_argument("--format", choices=["json", "table"], default="table")
    run.add_argument(
        "--progress", action="store_true", help="Show a live job and step view"
    )
    run.set_defaults(handler=_cmd_run)

    status = sub.add_parser("status", help="Show the persisted state of a run")
    status.add_argument("--repo-root", default=".")
    status.add_argument("--run-id", default=None, help="Run id (default: latest)")
    status.add_argument(
        "--rebuild",
        action="store_true",
        help="Rebuild run.json from the run's event journal first",
    )
    status.add_argument("--format", choices=["json", "table"], default="table")
    status.set_defaults(handler=_cmd_status)

    init = sub.add_parser("init", help="Ignore the .xci directory in git")
    init.add_argument("--repo-root", default=".")
    init.set_defaults(handler=_cmd_init)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    setup_logging()
    parser = _build_parser()
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    args = parser.parse_args(raw_argv)
    command = str(getattr(args, "command", "unknown"))
    started = time.perf_counter()
    _cli_log.info("cli_command_start command=%s argv=%s", command, " ".join(raw_argv))

    exit_code = 1
    try:
        exit_code = int(args.handler(args))
    except ConfigError as exc:
        _cli_log.error("cli_command_error command=%s kind=config error=%s", command, exc)
        print(f"[config error] {exc}", file=sys.stderr)
        exit_code = 2
    except KeyboardInterrupt:
        _cli_log.error("cli_command_error command=%s kind=interrupted", command)
        print("\n[interrupted]", file=sys.stderr)
        exit_code = 130
    except RuntimeError as exc:
        _cli_log.error("cli_command_error command=%s kind=runtime error=%s", command, exc)
        print(f"[runtime error] {exc}", file=sys.stderr)
        exit_code = 1
    except (OSError, json.JSONDecodeError, KeyError, ValueError) as exc:
        _cli_log.error(
            "cli_command_error command=%s kind=%s error=%s",
            command,
            type(exc).__name__,
            exc,
        )
        print(f"[error] {type(exc).__name__}: {exc}", file=sys.stderr)
        exit_code = 1
    finally:
        _cli_log.info(
            "cli_command_end command=%s exit_code=%s duration_sec=%.3f",
            command,
            exit_code,
            time.perf_counter() - started,
        )

    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
