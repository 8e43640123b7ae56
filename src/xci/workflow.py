from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from xci.models import Job, Step, Workflow, WorkflowError

_log = logging.getLogger("xci.workflow")

WORKFLOWS_DIR_PARTS = (".github", "workflows")
_WORKFLOW_SUFFIXES = (".yml", ".yaml")


def workflows_dir(repo_root: str | Path) -> Path:
    return Path(repo_root).joinpath(*WORKFLOWS_DIR_PARTS)


def find_workflow_files(repo_root: str | Path) -> list[Path]:
    directory = workflows_dir(repo_root)
    if not directory.is_dir():
        return []
    return sorted(
        path
        for path in directory.iterdir()
        if path.is_file() and path.suffix in _WORKFLOW_SUFFIXES
    )


def discover_workflows(repo_root: str | Path) -> list[Workflow]:
    return [parse_workflow(path) for path in find_workflow_files(repo_root)]


def _as_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, list):
        return [str(item) for item in value]
    return [str(value)]


def _parse_runs_on(value: Any) -> tuple[str, ...]:
    labels: list[str] = []
    for item in _as_list(value):
        labels.extend(part.strip() for part in item.split(",") if part.strip())
    return tuple(labels)


def _parse_events(value: Any) -> tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, dict):
        return tuple(str(key) for key in value)
    return tuple(_as_list(value))


def _parse_step(job_id: str, raw: Any, index: int) -> Step:
    data = raw if isinstance(raw, dict) else {}
    name = data.get("name") or data.get("uses") or data.get("run") or f"Step {index + 1}"
    return Step(id=f"{job_id}-step-{index + 1}", name=str(name))


def _parse_job(job_id: str, raw: Any) -> Job:
    data = raw if isinstance(raw, dict) else {}
    steps = data.get("steps") or []
    return Job(
        id=job_id,
        name=str(data.get("name") or job_id),
        needs=tuple(_as_list(data.get("needs"))),
        runs_on=_parse_runs_on(data.get("runs-on")),
        steps=tuple(_parse_step(job_id, step, index) for index, step in enumerate(steps)),
        condition=str(data["if"]) if data.get("if") is not None else None,
    )


def parse_workflow(path: str | Path) -> Workflow:
    """Read the subset of a GitHub Actions workflow needed to plan a run."""
    workflow_path = Path(path)
    try:
        text = workflow_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise WorkflowError(f"{workflow_path}: {exc}") from exc
    try:
        document = yaml.safe_load(text)
    except yaml.MarkedYAMLError as exc:
        mark = exc.problem_mark
        line = mark.line + 1 if mark is not None else 0
        column = mark.column + 1 if mark is not None else 0
        raise WorkflowError(
            f"{workflow_path}:{line}:{column} {exc.problem or exc}"
        ) from exc
    except yaml.YAMLError as exc:
        raise WorkflowError(f"{workflow_path}:0:0 {exc}") from exc

    data = document if isinstance(document, dict) else {}
    # YAML 1.1 reads a bare `on:` key as boolean True.
    trigger = data.get("on", data.get(True))
    raw_jobs = data.get("jobs") or {}
    if not isinstance(raw_jobs, dict):
        raise WorkflowError(f"{workflow_path}: 'jobs' must be a mapping")
    jobs = tuple(_parse_job(str(job_id), raw) for job_id, raw in raw_jobs.items())
    _log.debug("workflow_parsed path=%s jobs=%d", workflow_path, len(jobs))
    return Workflow(
        id=str(workflow_path),
        name=str(data.get("name") or workflow_path.name),
        path=str(workflow_path),
        events=_parse_events(trigger),
        jobs=jobs,
    )
