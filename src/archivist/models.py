"""
Database models using SQLModel (SQLAlchemy + Pydantic).

Schema:
- Project: A monitored brand (keywords, competitors, sources, schedule)
- Scan: One execution run over a project's keyword x source task list
- Job: One (keyword, source) unit of work - the job_queue table IS the queue
- SerpResult: One fetched search result
- Analysis: AI analysis of a SerpResult (themes, sentiment, entities, off-topic verdict)
- Tag: Per-project canonical theme with running count
- TagScan: Per-(tag, scan) occurrence count for trend sparklines
- TagBlacklist: Per-project banned tag names
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON, Text, UniqueConstraint


def utc_now_naive() -> datetime:
    """Return current UTC time as timezone-naive datetime.

    PostgreSQL TIMESTAMP WITHOUT TIME ZONE columns require naive datetimes.
    Using timezone-aware datetimes causes asyncpg DataError.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStatus(str, Enum):
    """Queue row lifecycle. completed/failed are terminal."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ScanStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SerpSource(str, Enum):
    GOOGLE_ORGANIC = "google_organic"
    GOOGLE_NEWS = "google_news"


class TriggerType(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    API = "api"


TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


class Project(SQLModel, table=True):
    """A monitored brand. Managed by administration, read by the engine."""
    __tablename__ = "projects"

    id: Optional[int] = Field(default=None, primary_key=True)
    slug: str = Field(unique=True, index=True)
    name: str
    industry: str = ""
    description: Optional[str] = Field(default=None, sa_column=Column(Text))

    keywords: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    competitors: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    alert_keywords: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    sources: List[str] = Field(
        default_factory=lambda: [SerpSource.GOOGLE_ORGANIC.value, SerpSource.GOOGLE_NEWS.value],
        sa_column=Column(JSON, nullable=False),
    )

    language: str = "it"
    location_code: int = 2380  # DataForSEO location code (2380 = Italy)

    # weekly | monthly | manual
    schedule: str = Field(default="manual")
    schedule_day: int = 1  # weekly: 0=Sunday..6=Saturday, monthly: day of month

    is_active: bool = Field(default=True, index=True)

    # Maintenance agent bookkeeping
    last_filter_at: Optional[datetime] = None
    last_normalize_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utc_now_naive)


class Scan(SQLModel, table=True):
    """One run over a project's keyword x source task list.

    completed_tasks is only ever incremented with an SQL expression
    (see archivist.job_queue.increment_scan_progress), never read-modify-write.
    """
    __tablename__ = "scans"

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: int = Field(foreign_key="projects.id", index=True)

    trigger_type: str = Field(default=TriggerType.MANUAL.value)
    status: str = Field(default=ScanStatus.RUNNING.value, index=True)

    started_at: Optional[datetime] = Field(default_factory=utc_now_naive)
    completed_at: Optional[datetime] = Field(default=None, index=True)

    total_tasks: int = Field(default=0)
    completed_tasks: int = Field(default=0)

    # Incremental window: date_from is the previous completed scan's date_to
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None

    ai_briefing: Optional[str] = Field(default=None, sa_column=Column(Text))

    created_at: datetime = Field(default_factory=utc_now_naive)


class Job(SQLModel, table=True):
    """One (keyword, source) task. The table is the queue."""
    __tablename__ = "job_queue"

    id: Optional[int] = Field(default=None, primary_key=True)
    scan_id: int = Field(foreign_key="scans.id", index=True)
    keyword: str
    source: str

    status: str = Field(default=JobStatus.PENDING.value, index=True)
    retry_count: int = Field(default=0)
    error_message: Optional[str] = Field(default=None, sa_column=Column(Text))

    created_at: datetime = Field(default_factory=utc_now_naive, index=True)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class SerpResult(SQLModel, table=True):
    """A single search result as returned by the provider."""
    __tablename__ = "serp_results"

    id: Optional[int] = Field(default=None, primary_key=True)
    scan_id: int = Field(foreign_key="scans.id", index=True)
    keyword: str
    source: str
    position: int
    url: str = Field(sa_column=Column(Text, nullable=False, index=True))
    title: str = ""
    snippet: str = Field(default="", sa_column=Column(Text))
    domain: str = Field(default="", index=True)
    is_competitor: bool = Field(default=False)
    excerpt: Optional[str] = Field(default=None, sa_column=Column(Text))
    fetched_at: datetime = Field(default_factory=utc_now_naive)


class Analysis(SQLModel, table=True):
    """AI analysis of one SerpResult.

    themes:   [{"name": str, "confidence": float}]
    entities: [{"name": str, "type": str}]
    """
    __tablename__ = "ai_analysis"

    id: Optional[int] = Field(default=None, primary_key=True)
    serp_result_id: int = Field(foreign_key="serp_results.id", unique=True, index=True)

    themes: List[dict] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    sentiment: str = "neutral"
    sentiment_score: float = 0.0
    entities: List[dict] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    summary: str = Field(default="", sa_column=Column(Text))
    language_detected: Optional[str] = None

    is_hi_priority: bool = Field(default=False)
    priority_reason: Optional[str] = Field(default=None, sa_column=Column(Text))

    # Context filter verdict. off_topic_reason IS NULL means "never evaluated".
    is_off_topic: bool = Field(default=False, index=True)
    off_topic_reason: Optional[str] = Field(default=None, sa_column=Column(Text))

    analyzed_at: datetime = Field(default_factory=utc_now_naive)


class Tag(SQLModel, table=True):
    """Per-project canonical theme."""
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("project_id", "slug", name="uq_tags_project_slug"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: int = Field(foreign_key="projects.id", index=True)
    name: str
    slug: str = Field(index=True)
    count: int = Field(default=0)
    last_seen_at: datetime = Field(default_factory=utc_now_naive)


class TagScan(SQLModel, table=True):
    """How many results in a scan carried a tag."""
    __tablename__ = "tag_scans"
    __table_args__ = (UniqueConstraint("tag_id", "scan_id", name="uq_tag_scans_tag_scan"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    tag_id: int = Field(foreign_key="tags.id", index=True)
    scan_id: int = Field(foreign_key="scans.id", index=True)
    count: int = Field(default=0)


class TagBlacklist(SQLModel, table=True):
    """Banned tag names. Results carrying one are deleted."""
    __tablename__ = "tag_blacklist"
    __table_args__ = (UniqueConstraint("project_id", "tag_name", name="uq_tag_blacklist_project_tag"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    project_id: int = Field(foreign_key="projects.id", index=True)
    tag_name: str
    created_at: datetime = Field(default_factory=utc_now_naive)
