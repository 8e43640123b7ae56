from __future__ import annotations

from xci.formatter import ActOutputFormatter, looks_like_docker_storage_error


def test_formatter_rewrites_step_markers_and_drops_noise() -> None:
    formatter = ActOutputFormatter()

    output = formatter.push(
        "[CI/build] 🚀  Start image=node:20\n"
        "[CI/build] 🐳  docker pull image=node:20\n"
        "[CI/build]   docker exec cmd=[bash -e]\n"
        "\x1b[32m[CI/build]\x1b[0m ⭐ Run Main Install deps\n"
        "[CI/build]   | added 10 packages\n"
        "[CI/build]   ✅  Success - Main Install deps\n"
        "[CI/build]   ❌  Failure - Main Run tests\n"
    )

    assert output.splitlines() == [
        "🚀  Start image=node:20",
        "▾ Run Main Install deps",
        "added 10 packages",
        "✓ Main Install deps",
        "✗ Main Run tests",
    ]


def test_formatter_indents_groups_and_with_blocks() -> None:
    formatter = ActOutputFormatter()

    output = formatter.push(
        "[CI/build]   ❓  ::group::Setup node\n"
        "[CI/build]   | resolving version\n"
        "[CI/build]   ❓  ::endgroup::\n"
        "[CI/build]   | with:\n"
        "[CI/build]   | node-version: 20\n"
        "[CI/build]   | plain text again\n"
        "[CI/build]   ❓  add-matcher /run/act/matcher.json\n"
    )

    assert output.splitlines() == [
        "▾ Setup node",
        "   resolving version",
        "   with:",
        "     node-version: 20",
        "plain text again",
    ]


def test_formatter_holds_partial_lines_until_flush() -> None:
    formatter = ActOutputFormatter()

    assert formatter.push("[CI/build]   | par") == ""
    assert formatter.push("tial") == ""
    assert formatter.flush() == "partial\n"
    assert formatter.flush() == ""


def test_formatter_drops_blank_lines() -> None:
    formatter = ActOutputFormatter()

    assert formatter.push("\n\r\n[CI/build]   \n") == ""


def test_docker_storage_error_detection() -> None:
    assert looks_like_docker_storage_error(
        "Error response from daemon: write /var/lib/docker: input/output error"
    )
    assert looks_like_docker_storage_error("Error response from daemon: I/O error")
    assert not looks_like_docker_storage_error("input/output error")
    assert not looks_like_docker_storage_error("Error response from daemon: no such image")
