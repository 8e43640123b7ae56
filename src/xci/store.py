from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Iterable, Iterator

from xci.events import (
    RunStarted,
    RuntimeEvent,
    apply_event,
    event_from_json,
    event_to_json,
)
from xci.models import ConfigError, RunRecord
from xci.utils import (
    append_jsonl,
    atomic_write_text,
    ensure_within_base,
    read_jsonl,
    sanitize_path_segment,
    sha1_hex,
)

_log = logging.getLogger("xci.store")

RUNS_DIR_PARTS = (".xci", "runs")
RUN_RECORD_FILE = "run.json"
EVENTS_FILE = "events.jsonl"


def default_runs_dir(repo_root: Path) -> Path:
    return Path(repo_root).joinpath(*RUNS_DIR_PARTS)


def job_log_file_name(job_id: str) -> str:
    base = sanitize_path_segment(job_id.lower(), "job")
    return f"{base}-{sha1_hex(job_id)[:8]}.log"


class RunStore:
    """On-disk layout for runs under ``<repo>/.xci/runs/<run_id>/``."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)

    @classmethod
    def for_repo(cls, repo_root: str | Path) -> "RunStore":
        return cls(default_runs_dir(Path(repo_root).resolve()))

    def ensure_base_dir(self) -> Path:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        return self.base_dir

    def run_dir(self, run_id: str) -> Path:
        return ensure_within_base(self.base_dir, self.base_dir / run_id, label="run id")

    def run_record_path(self, run_id: str) -> Path:
        return self.run_dir(run_id) / RUN_RECORD_FILE

    def events_path(self, run_id: str) -> Path:
        return self.run_dir(run_id) / EVENTS_FILE

    def create_run_dir(self, run_id: str) -> Path:
        self.ensure_base_dir()
        run_dir = self.run_dir(run_id)
        run_dir.mkdir(parents=True, exist_ok=True)
        return run_dir

    def _create_subdir(self, run_id: str, name: str) -> Path:
        path = self.create_run_dir(run_id) / name
        path.mkdir(parents=True, exist_ok=True)
        return path

    def create_logs_dir(self, run_id: str) -> Path:
        return self._create_subdir(run_id, "logs")

    def create_artifacts_dir(self, run_id: str) -> Path:
        return self._create_subdir(run_id, "artifacts")

    def create_log_file(self, run_id: str, job_id: str) -> Path:
        logs_dir = self.create_logs_dir(run_id)
        return ensure_within_base(
            logs_dir, logs_dir / job_log_file_name(job_id), label="job log file"
        )

    def write_run(self, record: RunRecord) -> Path:
        path = self.create_run_dir(record.id) / RUN_RECORD_FILE
        atomic_write_text(path, json.dumps(record.to_json(), indent=2) + "\n")
        return path

    def read_run(self, run_id: str) -> RunRecord | None:
        """Load a run record, or ``None`` if it is absent or mid-write."""
        path = self.run_record_path(run_id)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as exc:
            _log.debug("run_record_unreadable path=%s error=%s", path, exc)
            return None
        return RunRecord.from_json(payload)

    def append_event(self, event: RuntimeEvent) -> None:
        path = self.create_run_dir(event.run_id) / EVENTS_FILE
        append_jsonl(path, event_to_json(event))

    def read_events(self, run_id: str) -> Iterator[RuntimeEvent]:
        for payload in read_jsonl(self.events_path(run_id)):
            try:
                yield event_from_json(payload)
            except ConfigError as exc:
                _log.warning("Skipping invalid runtime event in run %s: %s", run_id, exc)

    def recover_run(self, run_id: str) -> RunRecord | None:
        """Rebuild the run record from the event journal and persist it."""
        record = rebuild_run_record(self.read_events(run_id))
        if record is not None:
            self.write_run(record)
        return record

    def list_run_ids(self) -> list[str]:
        if not self.base_dir.is_dir():
            return []
        return sorted(
            path.name
            for path in self.base_dir.iterdir()
            if path.is_dir() and not path.name.startswith(".")
        )

    def latest_run_id(self) -> str | None:
        run_ids = self.list_run_ids()
        return run_ids[-1] if run_ids else None


def rebuild_run_record(events: Iterable[RuntimeEvent]) -> RunRecord | None:
    record: RunRecord | None = None
    for event in events:
        record = apply_event(record, event)
    return record


class RunEventPersister:
    """Fold runtime events for one run into ``run.json`` after each event.

    The first ``run-started`` pins the run id; events for other runs are
    ignored. Every applied event is also appended to ``events.jsonl``.
    """

    def __init__(self, store: RunStore):
        self.store = store
        self.record: RunRecord | None = None

    def __call__(self, event: RuntimeEvent) -> None:
        if self.record is not None and event.run_id != self.record.id:
            _log.debug(
                "ignoring_event type=%s run_id=%s expected=%s",
                event.type,
                event.run_id,
                self.record.id,
            )
            return
        if self.record is None and not isinstance(event, RunStarted):
            return
        self.record = apply_event(self.record, event)
        self.store.append_event(event)
        if self.record is not None:
            self.store.write_run(self.record)

