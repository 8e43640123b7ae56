from __future__ import annotations

from xci.models import Step
from xci.step_parser import (
    MAX_STEP_OUTPUT_LINES,
    StepChunkParser,
    merge_step_statuses,
    normalize_step_name,
    parse_step_data,
)


def _steps(*names: str) -> list[Step]:
    return [Step(id=f"job-step-{index}", name=name) for index, name in enumerate(names, 1)]


def test_normalize_step_name_drops_phase_and_qualifier() -> None:
    assert normalize_step_name("Main Install deps") == "install deps"
    assert normalize_step_name("Post Checkout [linux]") == "checkout"
    assert normalize_step_name("  Run tests ") == "run tests"


def test_push_tracks_statuses_and_output_across_partial_chunks() -> None:
    parser = StepChunkParser(_steps("Install deps", "Run tests"))

    first = parser.push(
        "[CI/build] ⭐ Run Main Install deps\n"
        "[CI/build]   | added 10 packages\n"
        "[CI/build]   ✅  Success - Main Install deps\n"
        "[CI/build] ⭐ Run Main Run tests\n"
        "[CI/build]   | ok 1 - pa"
    )

    assert first.statuses == {"job-step-1": "success", "job-step-2": "running"}
    assert first.outputs == {"job-step-1": ["added 10 packages"], "job-step-2": []}

    second = parser.push("ss\n[CI/build]   ❌  Failure - Main Run tests\n")

    assert second.statuses == {"job-step-1": "success", "job-step-2": "failed"}
    assert second.outputs["job-step-2"] == ["ok 1 - pass"]
    assert parser.finalize("failed").statuses == second.statuses


def test_finalize_flushes_trailing_line_without_newline() -> None:
    parser = StepChunkParser(_steps("Build"))
    parser.push("[CI/build] ⭐ Run Main Build\n[CI/build] ✅ Success - Main Build")

    assert parser.snapshot().statuses == {"job-step-1": "running"}
    assert parser.finalize("success").statuses == {"job-step-1": "success"}


def test_reconcile_failed_job_marks_last_running_step() -> None:
    result = parse_step_data(
        _steps("Checkout", "Build", "Test"),
        "[CI/build] ⭐ Run Main Build\n[CI/build]   | compiling\n",
        "failed",
    )

    assert result.statuses == {
        "job-step-1": "success",
        "job-step-2": "failed",
        "job-step-3": "canceled",
    }


def test_reconcile_failed_job_without_markers_cancels_everything() -> None:
    result = parse_step_data(_steps("Checkout", "Build"), "no markers here\n", "failed")

    assert result.statuses == {"job-step-1": "canceled", "job-step-2": "canceled"}


def test_reconcile_success_and_canceled_jobs() -> None:
    steps = _steps("Checkout", "Build", "Test")

    assert set(parse_step_data(steps, "", "success").statuses.values()) == {"success"}

    canceled = parse_step_data(
        steps, "[CI/build] ✅ Success - Main Checkout\n", "canceled"
    )
    assert canceled.statuses == {
        "job-step-1": "success",
        "job-step-2": "canceled",
        "job-step-3": "canceled",
    }


def test_repeated_step_names_resolve_in_order() -> None:
    raw = (
        "[CI/build] ⭐ Run Main Build\n"
        "[CI/build] ✅ Success - Main Build\n"
        "[CI/build] ⭐ Run Main Build\n"
        "[CI/build] ❌ Failure - Main Build\n"
    )

    result = parse_step_data(_steps("Build", "Build"), raw, "failed")

    assert result.statuses == {"job-step-1": "success", "job-step-2": "failed"}


def test_formatted_markers_only_count_for_known_steps() -> None:
    parser = StepChunkParser(_steps("Install deps"))

    result = parser.push(
        "▾ Run Main Install deps\n"
        "✓ Something unrelated\n"
        "✓ Main Install deps\n"
    )

    assert result.statuses == {"job-step-1": "success"}
    assert result.outputs["job-step-1"] == ["✓ Something unrelated"]


def test_step_output_is_capped() -> None:
    parser = StepChunkParser(_steps("Build"))
    lines = "".join(f"[CI/build]   | line {index}\n" for index in range(100))

    result = parser.push("[CI/build] ⭐ Run Main Build\n" + lines)

    output = result.outputs["job-step-1"]
    assert len(output) == MAX_STEP_OUTPUT_LINES
    assert output[0] == "line 20"
    assert output[-1] == "line 99"


def test_parser_without_steps_returns_empty_results() -> None:
    parser = StepChunkParser([])

    assert parser.push("[CI/build] ⭐ Run Main Build\n").statuses == {}
    assert parser.finalize("success").statuses == {}


def test_merge_step_statuses_never_regresses_terminal_states() -> None:
    previous = {"a": "success", "b": "running"}
    incoming = {"a": "running", "b": "failed", "c": "running"}

    merged = merge_step_statuses(previous, incoming)

    assert merged == {"a": "success", "b": "failed", "c": "running"}
    assert merge_step_statuses(merged, merged) == merged
    assert merge_step_statuses({"a": "success"}, {"a": "failed"}) == {"a": "failed"}
    assert previous == {"a": "success", "b": "running"}


def test_push_without_job_prefix_on_output_lines() -> None:
    parser = StepChunkParser(_steps("Install deps", "Run tests"))

    first = parser.push("[job] ⭐ Run Install deps\n")
    assert first.statuses == {"job-step-1": "running"}
    assert first.outputs == {"job-step-1": []}

    second = parser.push("npm ci\n✅ Success - Install deps\n")
    assert second.statuses == {"job-step-1": "success"}
    assert second.outputs["job-step-1"] == ["npm ci"]

    third = parser.push("⭐ Run Run tests\nnode --test\n")
    assert third.statuses == {"job-step-1": "success", "job-step-2": "running"}
    assert third.outputs["job-step-2"] == ["node --test"]
