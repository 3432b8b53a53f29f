"""Database models, queue store and storage utilities."""

from .models import (
    Project,
    Scan,
    Job,
    SerpResult,
    Analysis,
    Tag,
    TagScan,
    TagBlacklist,
    JobStatus,
    ScanStatus,
    SerpSource,
    TriggerType,
)
from .database import get_session, get_db, init_db, close_db
from .job_queue import (
    claim_next_job,
    complete_job,
    retry_job,
    fail_job,
    reclaim_stale_jobs,
    increment_scan_progress,
    count_pending_jobs,
)

__all__ = [
    "Project",
    "Scan",
    "Job",
    "SerpResult",
    "Analysis",
    "Tag",
    "TagScan",
    "TagBlacklist",
    "JobStatus",
    "ScanStatus",
    "SerpSource",
    "TriggerType",
    "get_session",
    "get_db",
    "init_db",
    "close_db",
    "claim_next_job",
    "complete_job",
    "retry_job",
    "fail_job",
    "reclaim_stale_jobs",
    "increment_scan_progress",
    "count_pending_jobs",
]
