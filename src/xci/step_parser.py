"""Reconstruct per-step status from live backend output.

The parser recognises the backend's own step markers (``⭐ Run``,
``✅ Success -``, ``❌ Failure -``) as well as the normalized lines produced by
:class:`xci.formatter.ActOutputFormatter` (``▾ Run``, ``✓``, ``✗``), so it can
be fed either the raw log file or the live-output callback.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import re
from typing import Mapping, Sequence

from xci.models import (
    STATUS_CANCELED,
    STATUS_FAILED,
    STATUS_RUNNING,
    STATUS_SUCCESS,
    TERMINAL_STATUSES,
    Step,
)
from xci.utils import strip_ansi

MAX_STEP_OUTPUT_LINES = 80

_JOB_PREFIX_RE = re.compile(r"^\[[^\]]+\]\s+")
_PIPE_PREFIX_RE = re.compile(r"^\|\s?")
_QUALIFIER_RE = re.compile(r"\s*\[[^\]]+]\s*$")
_PHASE_RE = re.compile(r"^(main|post)\s+", re.IGNORECASE)

_RAW_START_RE = re.compile(r"⭐\s+Run\s+(.+)$")
_RAW_SUCCESS_RE = re.compile(r"✅\s+Success\s+-\s+(.+)$")
_RAW_FAILURE_RE = re.compile(r"❌\s+Failure\s+-\s+(.+)$")
_FMT_START_RE = re.compile(r"^▾\s+Run\s+(.+)$")
_FMT_SUCCESS_RE = re.compile(r"^✓\s+(.+)$")
_FMT_FAILURE_RE = re.compile(r"^✗\s+(.+)$")


@dataclass
class StepParseResult:
    statuses: dict[str, str] = field(default_factory=dict)
    outputs: dict[str, list[str]] = field(default_factory=dict)


def normalize_step_name(name: str) -> str:
    value = _QUALIFIER_RE.sub("", name)
    value = _PHASE_RE.sub("", value)
    return value.strip().lower()


def _clean_line(raw: str) -> str:
    line = strip_ansi(raw).replace("\r", "")
    return _JOB_PREFIX_RE.sub("", line.strip(), count=1)


class StepChunkParser:
    """Incremental step-status scanner for one job.

    ``push`` accepts arbitrary chunks, keeps any trailing partial line for the
    next call and returns a snapshot of everything seen so far.
    """

    def __init__(self, steps: Sequence[Step]):
        self.steps = tuple(steps)
        self._indices: dict[str, list[int]] = {}
        for index, step in enumerate(self.steps):
            self._indices.setdefault(normalize_step_name(step.name), []).append(index)
        self._cursor: dict[str, int] = {}
        self._last_index: dict[str, int] = {}
        self._statuses: dict[str, str] = {}
        self._outputs: dict[str, deque[str]] = {}
        self._buffer = ""
        self._current: int | None = None
        self._last_running: int | None = None
        self._failed: int | None = None

    def push(self, chunk: str) -> StepParseResult:
        if not self.steps:
            return StepParseResult()
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        for line in lines:
            self._scan_line(line)
        return self.snapshot()

    def snapshot(self) -> StepParseResult:
        return StepParseResult(
            statuses=dict(self._statuses),
            outputs={step_id: list(lines) for step_id, lines in self._outputs.items()},
        )

    def finalize(self, job_status: str) -> StepParseResult:
        """Flush the partial line and reconcile against the job's final status."""
        if self._buffer:
            remainder, self._buffer = self._buffer, ""
            self._scan_line(remainder)
        result = self.snapshot()
        result.statuses = self._reconcile(result.statuses, job_status)
        return result

    def _resolve(self, key: str) -> int | None:
        indices = self._indices.get(key)
        if not indices:
            return None
        cursor = self._cursor.get(key, 0)
        if cursor >= len(indices):
            return self._last_index.get(key)
        self._cursor[key] = cursor + 1
        self._last_index[key] = indices[cursor]
        return indices[cursor]

    def _resolve_terminal(self, key: str) -> int | None:
        index = self._last_index.get(key)
        return index if index is not None else self._resolve(key)

    def _mark_start(self, name: str) -> None:
        key = normalize_step_name(name)
        index = self._resolve(key)
        if index is None:
            self._current = None
            return
        step_id = self.steps[index].id
        self._statuses[step_id] = STATUS_RUNNING
        self._outputs.setdefault(step_id, deque(maxlen=MAX_STEP_OUTPUT_LINES))
        self._last_running = index
        self._last_index[key] = index
        self._current = index

    def _mark_finished(self, name: str, status: str) -> None:
        key = normalize_step_name(name)
        index = self._resolve_terminal(key)
        if index is None:
            return
        self._statuses[self.steps[index].id] = status
        if status == STATUS_FAILED:
            self._failed = index
            self._last_index[key] = index
        if self._last_running == index:
            self._last_running = None
        if self._current == index:
            self._current = None

    def _scan_line(self, raw: str) -> None:
        line = _clean_line(raw)

        match = _RAW_START_RE.search(line)
        if match:
            self._mark_start(match.group(1))
            return
        match = _RAW_SUCCESS_RE.search(line)
        if match:
            self._mark_finished(match.group(1), STATUS_SUCCESS)
            return
        match = _RAW_FAILURE_RE.search(line)
        if match:
            self._mark_finished(match.group(1), STATUS_FAILED)
            return

        match = _FMT_START_RE.match(line)
        if match and normalize_step_name(match.group(1)) in self._indices:
            self._mark_start(match.group(1))
            return
        for pattern, status in (
            (_FMT_SUCCESS_RE, STATUS_SUCCESS),
            (_FMT_FAILURE_RE, STATUS_FAILED),
        ):
            match = pattern.match(line)
            if match and normalize_step_name(match.group(1)) in self._indices:
                self._mark_finished(match.group(1), status)
                return

        if self._current is None:
            return
        text = _PIPE_PREFIX_RE.sub("", line, count=1).strip()
        if text:
            self._outputs[self.steps[self._current].id].append(text)

    def _reconcile(self, statuses: dict[str, str], job_status: str) -> dict[str, str]:
        if job_status == STATUS_SUCCESS:
            for step in self.steps:
                statuses.setdefault(step.id, STATUS_SUCCESS)
        elif job_status == STATUS_FAILED:
            failed_index = self._failed
            if failed_index is None and self._last_running is not None:
                statuses[self.steps[self._last_running].id] = STATUS_FAILED
                failed_index = self._last_running
            for index, step in enumerate(self.steps):
                if failed_index is None or index > failed_index:
                    statuses.setdefault(step.id, STATUS_CANCELED)
                else:
                    statuses.setdefault(step.id, STATUS_SUCCESS)
        elif job_status == STATUS_CANCELED:
            for step in self.steps:
                statuses.setdefault(step.id, STATUS_CANCELED)
        return statuses


def parse_step_data(steps: Sequence[Step], raw: str, job_status: str) -> StepParseResult:
    parser = StepChunkParser(steps)
    parser.push(raw)
    return parser.finalize(job_status)


def merge_step_statuses(
    previous: Mapping[str, str], next_statuses: Mapping[str, str]
) -> dict[str, str]:
    """Combine two status maps without letting a terminal status regress.

    A terminal status is only replaced by a different terminal status; a
    non-terminal one is replaced by whatever arrives next.
    """
    merged = dict(previous)
    for step_id, status in next_statuses.items():
        current = merged.get(step_id)
        if current in TERMINAL_STATUSES and status not in TERMINAL_STATUSES:
            continue
        merged[step_id] = status
    return merged
