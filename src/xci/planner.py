from __future__ import annotations

from collections import deque
import logging
import platform
import secrets
from typing import Iterable, Mapping, Sequence

from xci.models import EventSpec, Job, PlannedJob, RunPlan, RunPreset, Workflow
from xci.utils import utc_now

_log = logging.getLogger("xci.planner")

DEFAULT_RUNNER_IMAGE = "ghcr.io/catthehacker/ubuntu:act-latest"
DEFAULT_EVENTS = ("push", "pull_request", "workflow_dispatch")
PULL_REQUEST_EVENT = "pull_request"


def _job_map(workflow: Workflow) -> dict[str, Job]:
    return {job.id: job for job in workflow.jobs}


def expand_job_ids_with_needs(
    workflow: Workflow, selected: Iterable[str]
) -> list[str]:
    """Close *selected* over ``needs`` edges.

    Dependencies are listed before the jobs that need them. Ids unknown to the
    workflow are dropped, and each id is visited once so cycles terminate.
    """
    jobs = _job_map(workflow)
    visited: set[str] = set()
    expanded: list[str] = []

    def _visit(job_id: str) -> None:
        if job_id in visited:
            return
        job = jobs.get(job_id)
        if job is None:
            return
        visited.add(job_id)
        for need in job.needs:
            _visit(need)
        expanded.append(job_id)

    for job_id in selected:
        _visit(job_id)
    return expanded


def sort_jobs_by_needs(workflow: Workflow, job_ids: Sequence[str]) -> list[str]:
    """Order *job_ids* so every dependency runs before its dependents.

    Kahn's algorithm over the subgraph induced by *job_ids*, with a FIFO ready
    queue seeded in input order. Jobs caught in a cycle never become ready;
    they are appended afterwards in their original input order.
    """
    jobs = _job_map(workflow)
    requested = list(dict.fromkeys(job_ids))
    in_degree: dict[str, int] = {job_id: 0 for job_id in requested}
    dependents: dict[str, list[str]] = {job_id: [] for job_id in requested}

    for job_id in requested:
        job = jobs.get(job_id)
        if job is None:
            continue
        for need in dict.fromkeys(job.needs):
            if need not in in_degree:
                continue
            in_degree[job_id] += 1
            dependents[need].append(job_id)

    queue = deque(job_id for job_id in requested if in_degree[job_id] == 0)
    ordered: list[str] = []
    while queue:
        job_id = queue.popleft()
        ordered.append(job_id)
        for dependent in dependents[job_id]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    placed = set(ordered)
    leftover = [job_id for job_id in requested if job_id not in placed]
    if leftover:
        _log.warning("dependency_cycle job_ids=%s", ",".join(leftover))
    return ordered + leftover


def is_pull_request_only(job: Job) -> bool:
    return bool(job.condition) and PULL_REQUEST_EVENT in str(job.condition)


def filter_jobs_for_event(jobs: Iterable[Job], event_name: str) -> list[Job]:
    if event_name == PULL_REQUEST_EVENT:
        return list(jobs)
    return [job for job in jobs if not is_pull_request_only(job)]


def create_run_id() -> str:
    stamp = utc_now().strftime("%Y%m%dT%H%M%S")
    return f"{stamp}-{secrets.token_hex(3)}"


def build_run_plan(
    workflow: Workflow,
    job_ids: Sequence[str],
    event_name: str,
    *,
    event_payload_path: str | None = None,
    preset: RunPreset | None = None,
    matrix_override: Sequence[str] | None = None,
    run_id: str | None = None,
) -> RunPlan:
    matrix = tuple(matrix_override) if matrix_override is not None else None
    return RunPlan(
        run_id=run_id or create_run_id(),
        workflow=workflow,
        jobs=tuple(PlannedJob(job_id=job_id, matrix=matrix) for job_id in job_ids),
        event=EventSpec(name=event_name, payload_path=event_payload_path),
        preset_id=preset.id if preset is not None else None,
    )


def resolve_workflow(
    workflows: Sequence[Workflow], selector: str | None
) -> Workflow | None:
    if not selector:
        return workflows[0] if len(workflows) == 1 else None
    for workflow in workflows:
        if workflow.id.endswith(selector) or workflow.name == selector:
            return workflow
    return None


def resolve_supported_events(workflow: Workflow) -> list[str]:
    if workflow.events:
        return list(workflow.events)
    return list(DEFAULT_EVENTS)


def resolve_presets(
    presets: Mapping[str, RunPreset],
    jobs: Sequence[Job],
    default_preset: str | None = None,
) -> list[RunPreset]:
    """Configured presets plus the built-in ``quick`` and ``full`` ones."""
    resolved = list(presets.values())
    known = {preset.id for preset in resolved}
    all_job_ids = tuple(job.id for job in jobs)
    if "quick" not in known:
        resolved.append(RunPreset(id="quick", label="quick", job_ids=all_job_ids[:2]))
    if "full" not in known:
        resolved.append(RunPreset(id="full", label="full", job_ids=all_job_ids))
    if default_preset and default_preset not in known | {"quick", "full"}:
        resolved.insert(
            0, RunPreset(id=default_preset, label=default_preset, job_ids=all_job_ids)
        )
    return resolved


def _is_linux_runner_label(label: str) -> bool:
    value = label.lower()
    return value in ("linux", "ubuntu") or value.startswith("ubuntu-")


def resolve_platform_map(
    workflow: Workflow,
    job_ids: Sequence[str],
    image_map: Mapping[str, str],
    platform_map: Mapping[str, str],
) -> dict[str, str]:
    """Map runner labels to container images.

    Linux-like labels without an explicit mapping get the default runner
    image. Explicit ``platform_map`` entries override ``image_map`` entries.
    """
    jobs = _job_map(workflow)
    inferred: dict[str, str] = {}
    for job_id in job_ids:
        job = jobs.get(job_id)
        if job is None:
            continue
        for label in job.runs_on:
            if label in image_map or label in platform_map or label in inferred:
                continue
            if _is_linux_runner_label(label):
                inferred[label] = DEFAULT_RUNNER_IMAGE

    merged = {**inferred, **image_map, **platform_map}
    if merged:
        return merged
    return {"ubuntu-latest": DEFAULT_RUNNER_IMAGE}


def resolve_unrunnable_jobs(
    workflow: Workflow,
    job_ids: Sequence[str],
    platform_map: Mapping[str, str],
) -> dict[str, str]:
    """Return ``job_id -> reason`` for jobs that cannot run locally."""
    jobs = _job_map(workflow)
    selected = set(job_ids)
    mapped = {label.lower() for label in platform_map}
    reasons: dict[str, str] = {}

    for job_id in job_ids:
        job = jobs.get(job_id)
        if job is None:
            continue
        if not job.runs_on:
            reasons[job_id] = "missing runs-on configuration"
            continue
        unsupported = [
            label
            for label in job.runs_on
            if label.lower() not in mapped and not _is_linux_runner_label(label)
        ]
        if unsupported:
            reasons[job_id] = f"unsupported runner labels: {', '.join(unsupported)}"

    changed = True
    while changed:
        changed = False
        for job_id in job_ids:
            job = jobs.get(job_id)
            if job is None or job_id in reasons:
                continue
            blocking = [need for need in job.needs if need in selected and need in reasons]
            if blocking:
                reasons[job_id] = f"depends on skipped job(s): {', '.join(blocking)}"
                changed = True
    return reasons


def resolve_container_architecture(configured: str | None) -> str | None:
    if configured and configured != "auto":
        return configured
    machine = platform.machine().lower()
    if machine in ("arm64", "aarch64"):
        return "arm64"
    if machine in ("x86_64", "amd64"):
        return "amd64"
    return None

