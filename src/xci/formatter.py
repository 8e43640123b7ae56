from __future__ import annotations

import re

from xci.utils import strip_ansi

DOCKER_STORAGE_HINT = (
    "xci note: Docker reported a storage I/O error. "
    "Try restarting Docker Desktop and check disk space.\n"
)

_JOB_PREFIX_RE = re.compile(r"^\[[^\]]+\]\s+")
_GROUP_RE = re.compile(r"^(?:❓\s+)?::group::\s*(.+)$")
_PIPE_RE = re.compile(r"^\|\s?(.*)$")
_QUESTION_RE = re.compile(r"^❓\s+")
_RUN_RE = re.compile(r"^⭐\s+Run\s+(.+)$")
_SUCCESS_RE = re.compile(r"^✅\s+Success\s+-\s+(.+)$")
_FAILURE_RE = re.compile(r"^❌\s+Failure\s+-\s+(.+)$")
_WITH_ENTRY_RE = re.compile(r"^[a-zA-Z0-9_.-]+:\s+.+$")
_DOCKER_OP_RE = re.compile(r"\bdocker\s+(cp|exec|run|pull)\b")
_MATCHER_RE = re.compile(r"^(?:❓\s+)?(?:add|remove)-matcher\s+", re.IGNORECASE)

_GROUP_INDENT = "   "
_WITH_ENTRY_INDENT = "     "


def looks_like_docker_storage_error(text: str) -> bool:
    return "Error response from daemon" in text and (
        "input/output error" in text or "I/O error" in text
    )


def _is_noise(line: str) -> bool:
    return (
        line.startswith("🐳")
        or _DOCKER_OP_RE.search(line) is not None
        or _MATCHER_RE.match(line) is not None
    )


class ActOutputFormatter:
    """Turn raw act output into compact, human-oriented lines.

    One instance per output stream. Partial lines are held back until the
    next newline or until :meth:`flush`.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._in_group = False
        self._in_with_block = False

    def push(self, chunk: str) -> str:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return self._render(lines)

    def flush(self) -> str:
        remainder, self._buffer = self._buffer, ""
        return self._render([remainder] if remainder else [])

    def _render(self, lines: list[str]) -> str:
        formatted = [value for value in map(self._format_line, lines) if value]
        if not formatted:
            return ""
        return "\n".join(formatted) + "\n"

    def _format_line(self, raw: str) -> str | None:
        line = strip_ansi(raw).replace("\r", "")
        body = _JOB_PREFIX_RE.sub("", line, count=1).lstrip()
        if not body:
            self._in_with_block = False
            return None

        if "::endgroup::" in body:
            self._in_group = False
            self._in_with_block = False
            return None

        match = _GROUP_RE.match(body)
        if match:
            self._in_group = True
            self._in_with_block = False
            return f"▾ {match.group(1).strip()}"

        if _is_noise(body):
            return None

        pipe = _PIPE_RE.match(body)
        content = pipe.group(1) if pipe else _QUESTION_RE.sub("", body, count=1)

        for pattern, template in (
            (_RUN_RE, "▾ Run {}"),
            (_SUCCESS_RE, "✓ {}"),
            (_FAILURE_RE, "✗ {}"),
        ):
            match = pattern.match(content)
            if match:
                self._in_with_block = False
                content = template.format(match.group(1).strip())
                break

        if content == "with:":
            self._in_with_block = True
            return f"{_GROUP_INDENT}{content}"

        if self._in_with_block:
            if _WITH_ENTRY_RE.match(content):
                return f"{_WITH_ENTRY_INDENT}{content}"
            self._in_with_block = False

        if self._in_group:
            return f"{_GROUP_INDENT}{content}"
        return content
