from __future__ import annotations

import logging
import time
from typing import Any, Sequence

from xci.models import RunRecord, Workflow
from xci.store import RunStore

_log = logging.getLogger("xci.status")

UNKNOWN_STATUS = "unknown"


def summarize_job_counts(record: RunRecord) -> dict[str, int]:
    counts: dict[str, int] = {}
    for job in record.jobs:
        counts[job.status] = counts.get(job.status, 0) + 1
    return dict(sorted(counts.items()))


def build_run_summary(
    record: RunRecord | None,
    run_id: str,
    workflow: Workflow | None = None,
    ordered_job_ids: Sequence[str] | None = None,
) -> dict[str, Any]:
    """JSON-ready summary of one run.

    Jobs listed in *ordered_job_ids* but missing from the record report
    ``unknown``; without an explicit order the record's own job order is used.
    """
    job_ids = list(ordered_job_ids) if ordered_job_ids is not None else []
    if not job_ids and record is not None:
        job_ids = [job.job_id for job in record.jobs]

    jobs: list[dict[str, Any]] = []
    for job_id in job_ids:
        job = record.job(job_id) if record is not None else None
        jobs.append(
            {
                "job_id": job_id,
                "status": job.status if job is not None else UNKNOWN_STATUS,
                "exit_code": job.exit_code if job is not None else None,
                "duration_ms": job.duration_ms if job is not None else None,
            }
        )

    summary: dict[str, Any] = {
        "run_id": run_id,
        "status": record.status if record is not None else UNKNOWN_STATUS,
        "jobs": jobs,
        "logs_dir": record.logs_dir if record is not None else None,
        "artifacts_dir": record.artifacts_dir if record is not None else None,
    }
    if workflow is not None:
        summary["workflow"] = {
            "id": workflow.id,
            "name": workflow.name,
            "path": workflow.path,
        }
    elif record is not None:
        summary["workflow"] = {"id": record.workflow_id}
    if record is not None:
        summary["event"] = record.event.to_json()
        summary["created_at"] = record.created_at
        summary["finished_at"] = record.finished_at
        summary["job_counts"] = summarize_job_counts(record)
    return summary


def poll_run_record(
    store: RunStore,
    run_id: str,
    *,
    attempts: int = 5,
    interval_sec: float = 0.1,
) -> RunRecord | None:
    """Read ``run.json``, retrying while it is absent or mid-write."""
    for attempt in range(max(1, attempts)):
        record = store.read_run(run_id)
        if record is not None:
            return record
        if attempt + 1 < attempts:
            _log.debug("run_record_retry run_id=%s attempt=%d", run_id, attempt + 1)
            time.sleep(interval_sec)
    return None
