"""Local GitHub Actions workflow runner."""

from xci.execution import ActEngine, CancellationToken, EngineContext, create_engine
from xci.planner import build_run_plan, expand_job_ids_with_needs, sort_jobs_by_needs
from xci.store import RunStore

__all__ = [
    "ActEngine",
    "CancellationToken",
    "EngineContext",
    "RunStore",
    "build_run_plan",
    "create_engine",
    "expand_job_ids_with_needs",
    "sort_jobs_by_needs",
]
