from __future__ import annotations

import random
import re

import pytest

from xci.models import Job, RunPreset, Workflow
from xci.planner import (
    DEFAULT_RUNNER_IMAGE,
    build_run_plan,
    create_run_id,
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


def _workflow(*jobs: Job, events: tuple[str, ...] = ("push",)) -> Workflow:
    return Workflow(
        id=".github/workflows/ci.yml",
        name="CI",
        path=".github/workflows/ci.yml",
        events=events,
        jobs=tuple(jobs),
    )


def _job(job_id: str, *needs: str, **kwargs) -> Job:
    kwargs.setdefault("runs_on", ("ubuntu-latest",))
    return Job(id=job_id, name=job_id, needs=tuple(needs), **kwargs)


@pytest.fixture
def pipeline() -> Workflow:
    return _workflow(
        _job("build"),
        _job("test", "build"),
        _job("deploy", "test"),
        _job("pr-only", condition="github.event_name == 'pull_request'"),
    )


def test_expand_pulls_in_transitive_needs_before_dependents(pipeline: Workflow) -> None:
    assert expand_job_ids_with_needs(pipeline, ["deploy"]) == ["build", "test", "deploy"]


def test_expand_skips_unknown_ids_and_duplicates(pipeline: Workflow) -> None:
    assert expand_job_ids_with_needs(pipeline, ["test", "missing", "build", "test"]) == [
        "build",
        "test",
    ]


def test_expand_terminates_on_cycles() -> None:
    workflow = _workflow(_job("a", "b"), _job("b", "a"))
    assert expand_job_ids_with_needs(workflow, ["a"]) == ["b", "a"]


def test_filter_drops_pull_request_only_jobs_for_other_events(pipeline: Workflow) -> None:
    push_ids = [job.id for job in filter_jobs_for_event(pipeline.jobs, "push")]
    pr_ids = [job.id for job in filter_jobs_for_event(pipeline.jobs, "pull_request")]

    assert "pr-only" not in push_ids
    assert push_ids == ["build", "test", "deploy"]
    assert "pr-only" in pr_ids


def test_sort_orders_dependencies_first(pipeline: Workflow) -> None:
    assert sort_jobs_by_needs(pipeline, ["deploy", "test", "build"]) == [
        "build",
        "test",
        "deploy",
    ]


def test_sort_ignores_edges_outside_the_requested_set(pipeline: Workflow) -> None:
    assert sort_jobs_by_needs(pipeline, ["deploy", "pr-only"]) == ["deploy", "pr-only"]


def test_sort_appends_cyclic_jobs_in_input_order() -> None:
    workflow = _workflow(_job("a", "b"), _job("b", "a"), _job("c"))
    assert sort_jobs_by_needs(workflow, ["a", "b", "c"]) == ["c", "a", "b"]


def test_sort_tolerates_duplicate_needs() -> None:
    workflow = _workflow(_job("a"), _job("b", "a", "a"))
    assert sort_jobs_by_needs(workflow, ["b", "a"]) == ["a", "b"]


def test_sort_respects_every_edge_of_random_dags() -> None:
    rng = random.Random(1234)
    for _ in range(50):
        count = rng.randint(1, 12)
        ids = [f"job{i}" for i in range(count)]
        jobs = [
            _job(job_id, *rng.sample(ids[:index], rng.randint(0, index)))
            for index, job_id in enumerate(ids)
        ]
        workflow = _workflow(*jobs)
        requested = rng.sample(ids, rng.randint(1, count))

        ordered = sort_jobs_by_needs(workflow, requested)

        assert sorted(ordered) == sorted(requested)
        position = {job_id: index for index, job_id in enumerate(ordered)}
        for job in jobs:
            if job.id not in position:
                continue
            for need in job.needs:
                if need in position:
                    assert position[need] < position[job.id]


def test_create_run_id_is_timestamp_plus_random_suffix() -> None:
    first = create_run_id()
    second = create_run_id()

    assert re.fullmatch(r"\d{8}T\d{6}-[0-9a-f]{6}", first)
    assert first != second


def test_build_run_plan_copies_matrix_to_every_job(pipeline: Workflow) -> None:
    plan = build_run_plan(
        pipeline,
        ["build", "test"],
        "push",
        event_payload_path="payload.json",
        matrix_override=["node:20"],
        run_id="run-1",
    )

    assert plan.run_id == "run-1"
    assert plan.job_ids == ["build", "test"]
    assert all(job.matrix == ("node:20",) for job in plan.jobs)
    assert all(job.engine_args == () for job in plan.jobs)
    assert plan.event.name == "push"
    assert plan.event.payload_path == "payload.json"


def test_resolve_presets_adds_builtins_and_default(pipeline: Workflow) -> None:
    configured = {"smoke": RunPreset(id="smoke", label="smoke", job_ids=("build",))}

    presets = resolve_presets(configured, pipeline.jobs, default_preset="nightly")

    assert [preset.id for preset in presets] == ["nightly", "smoke", "quick", "full"]
    by_id = {preset.id: preset for preset in presets}
    assert by_id["quick"].job_ids == ("build", "test")
    assert by_id["full"].job_ids == ("build", "test", "deploy", "pr-only")


def test_resolve_supported_events_falls_back_to_common_triggers() -> None:
    assert resolve_supported_events(_workflow(_job("a"), events=())) == [
        "push",
        "pull_request",
        "workflow_dispatch",
    ]
    assert resolve_supported_events(_workflow(_job("a"), events=("push",))) == ["push"]


def test_resolve_workflow_by_file_suffix_or_name() -> None:
    ci = _workflow(_job("a"))
    other = Workflow(id="/r/.github/workflows/lint.yml", name="Lint", path="", events=(), jobs=())

    assert resolve_workflow([ci], None) is ci
    assert resolve_workflow([ci, other], None) is None
    assert resolve_workflow([ci, other], "lint.yml") is other
    assert resolve_workflow([ci, other], "CI") is ci


def test_resolve_platform_map_infers_linux_labels() -> None:
    workflow = _workflow(
        _job("a", runs_on=("ubuntu-22.04",)),
        _job("b", runs_on=("self-hosted",)),
    )

    mapping = resolve_platform_map(
        workflow, ["a", "b"], {"self-hosted": "img:custom"}, {"ubuntu-22.04": "img:pinned"}
    )

    assert mapping == {"self-hosted": "img:custom", "ubuntu-22.04": "img:pinned"}
    assert resolve_platform_map(workflow, ["a"], {}, {}) == {
        "ubuntu-22.04": DEFAULT_RUNNER_IMAGE
    }
    assert resolve_platform_map(workflow, ["b"], {}, {}) == {
        "ubuntu-latest": DEFAULT_RUNNER_IMAGE
    }


def test_resolve_unrunnable_jobs_propagates_to_dependents() -> None:
    workflow = _workflow(
        _job("mac", runs_on=("macos-latest",)),
        _job("bare", runs_on=()),
        _job("after-mac", "mac"),
        _job("after-after", "after-mac"),
        _job("fine"),
    )

    reasons = resolve_unrunnable_jobs(
        workflow, ["mac", "bare", "after-mac", "after-after", "fine"], {}
    )

    assert reasons == {
        "mac": "unsupported runner labels: macos-latest",
        "bare": "missing runs-on configuration",
        "after-mac": "depends on skipped job(s): mac",
        "after-after": "depends on skipped job(s): after-mac",
    }


def test_resolve_container_architecture(monkeypatch: pytest.MonkeyPatch) -> None:
    assert resolve_container_architecture("arm64") == "arm64"
    monkeypatch.setattr("xci.planner.platform.machine", lambda: "aarch64")
    assert resolve_container_architecture("auto") == "arm64"
    monkeypatch.setattr("xci.planner.platform.machine", lambda: "x86_64")
    assert resolve_container_architecture(None) == "amd64"
    monkeypatch.setattr("xci.planner.platform.machine", lambda: "riscv64")
    assert resolve_container_architecture("auto") is None
