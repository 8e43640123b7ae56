from __future__ import annotations

from pathlib import Path

import pytest

from conftest import write_file
from xci.models import WorkflowError
from xci.workflow import discover_workflows, find_workflow_files, parse_workflow


def test_parse_workflow_reads_jobs_steps_and_triggers(tmp_path: Path) -> None:
    path = tmp_path / ".github" / "workflows" / "ci.yml"
    write_file(
        path,
        """
name: CI
on:
  push:
    branches: [main]
  pull_request:
jobs:
  build:
    runs-on: ubuntu-latest
    strategy:
      matrix:
        node: [18, 20]
    steps:
      - uses: actions/checkout@v4
      - name: Install deps
        run: npm ci
      - run: npm test
      - {}
  deploy:
    name: Deploy site
    needs: build
    if: github.event_name == 'push'
    runs-on: [self-hosted, "linux, x64"]
""",
    )

    workflow = parse_workflow(path)

    assert workflow.name == "CI"
    assert workflow.path == str(path)
    assert workflow.events == ("push", "pull_request")
    assert workflow.job_ids == ["build", "deploy"]
    build = workflow.job("build")
    assert [step.id for step in build.steps] == [
        "build-step-1",
        "build-step-2",
        "build-step-3",
        "build-step-4",
    ]
    assert [step.name for step in build.steps] == [
        "actions/checkout@v4",
        "Install deps",
        "npm test",
        "Step 4",
    ]
    deploy = workflow.job("deploy")
    assert deploy.name == "Deploy site"
    assert deploy.needs == ("build",)
    assert deploy.runs_on == ("self-hosted", "linux", "x64")
    assert deploy.condition == "github.event_name == 'push'"


def test_parse_workflow_accepts_list_and_scalar_triggers(tmp_path: Path) -> None:
    listed = tmp_path / "listed.yml"
    write_file(listed, "on: [push, workflow_dispatch]\njobs: {}")
    scalar = tmp_path / "scalar.yml"
    write_file(scalar, "on: push\njobs:\n  lint:\n    runs-on: ubuntu-latest")

    assert parse_workflow(listed).events == ("push", "workflow_dispatch")
    assert parse_workflow(listed).jobs == ()
    assert parse_workflow(scalar).events == ("push",)
    assert parse_workflow(scalar).name == "scalar.yml"


def test_parse_workflow_reports_yaml_position(tmp_path: Path) -> None:
    path = tmp_path / "broken.yml"
    write_file(path, "on: push\njobs:\n  build: [unclosed\n")

    with pytest.raises(WorkflowError, match=r"broken\.yml:\d+:\d+ "):
        parse_workflow(path)


def test_parse_workflow_rejects_non_mapping_jobs(tmp_path: Path) -> None:
    path = tmp_path / "odd.yml"
    write_file(path, "on: push\njobs: [build]")

    with pytest.raises(WorkflowError, match="'jobs' must be a mapping"):
        parse_workflow(path)


def test_discover_workflows_lists_yaml_files_in_order(tmp_path: Path) -> None:
    directory = tmp_path / ".github" / "workflows"
    write_file(directory / "b.yaml", "on: push\njobs: {}")
    write_file(directory / "a.yml", "on: push\njobs: {}")
    write_file(directory / "notes.md", "# not a workflow")

    assert [path.name for path in find_workflow_files(tmp_path)] == ["a.yml", "b.yaml"]
    assert [workflow.name for workflow in discover_workflows(tmp_path)] == ["a.yml", "b.yaml"]
    assert discover_workflows(tmp_path / "elsewhere") == []
