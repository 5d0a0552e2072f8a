from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class Provider(str, Enum):
    GITHUB = "github"
    GITLAB = "gitlab"
    GERRIT = "gerrit"
    JIRA = "jira"
    BUGZILLA = "bugzilla"


class EntityKind(str, Enum):
    CHANGE = "change"
    ISSUE = "issue"


class CrawlStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    ERRORED = "errored"


class ChangeState(str, Enum):
    OPEN = "Open"
    MERGED = "Merged"
    CLOSED = "Closed"


class IssueState(str, Enum):
    OPEN = "Open"
    CLOSED = "Closed"


class ChangeEventType(str, Enum):
    CREATED = "ChangeCreatedEvent"
    MERGED = "ChangeMergedEvent"
    ABANDONED = "ChangeAbandonedEvent"
    REVIEWED = "ChangeReviewedEvent"
    COMMENTED = "ChangeCommentedEvent"
    COMMIT_PUSHED = "ChangeCommitPushedEvent"


class IssueEventType(str, Enum):
    CREATED = "IssueCreatedEvent"
    COMMENTED = "IssueCommentedEvent"
    CLOSED = "IssueClosedEvent"


def as_utc(value: Any) -> Any:
    """Coerce dates, ISO strings and naive datetimes to timezone-aware UTC datetimes."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            # Left for pydantic to report
            return value
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    return value


def _sorted_unique(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    return tuple(sorted(set(value)))


class EntityKey(NamedTuple):
    workspace: str
    crawler: str
    kind: str
    name: str

    def __str__(self) -> str:
        return f"{self.workspace}/{self.crawler}/{self.kind}:{self.name}"


class CrawlerEntity(BaseModel):
    """
    One crawl target: a repository, organization or project under a
    configured provider instance, for one entity kind.
    """
    model_config = ConfigDict(frozen=True)

    workspace: str = Field(..., description="Tenant the entity belongs to")
    crawler: str = Field(..., description="Name of the configured provider instance")
    provider: Provider
    host: str = Field(..., description="Provider host, used in identifiers and rate limiting")
    kind: EntityKind
    name: str = Field(..., description="Natural name, e.g. 'acme/widget' or a project key")
    crawl_interval: int = Field(default=600, gt=0, description="Seconds between two crawls")
    update_since: datetime = Field(..., description="Lower bound used on the very first crawl")

    @field_validator("update_since", mode="before")
    @classmethod
    def normalize_update_since(cls, value: Any) -> Any:
        return as_utc(value)

    @property
    def key(self) -> EntityKey:
        return EntityKey(self.workspace, self.crawler, self.kind.value, self.name)

    def __str__(self) -> str:
        return str(self.key)


class CrawlState(BaseModel):
    """
    Persisted crawl position and health of a CrawlerEntity.
    """
    last_commit_at: datetime = Field(..., description="High-water mark of processed activity")
    status: CrawlStatus = CrawlStatus.IDLE
    error_message: Optional[str] = None
    pagination_cursor: Optional[str] = Field(
        default=None, description="Opaque provider cursor of the next page in an unfinished window"
    )
    cursor_since: Optional[datetime] = Field(
        default=None, description="Window lower bound the pagination cursor was issued for"
    )
    consecutive_failures: int = Field(default=0, ge=0)
    last_attempt_at: Optional[datetime] = None

    @field_validator("last_commit_at", "cursor_since", "last_attempt_at", mode="before")
    @classmethod
    def normalize_timestamps(cls, value: Any) -> Any:
        return as_utc(value)

    @computed_field
    @property
    def last_commit_age_days(self) -> int:
        return max((datetime.now(timezone.utc) - self.last_commit_at).days, 0)


class Ident(BaseModel):
    model_config = ConfigDict(frozen=True)

    uid: str = Field(..., description="Raw provider login")
    muid: str = Field(..., description="Canonical identity across providers")
    groups: Tuple[str, ...] = ()

    @field_validator("groups", mode="before")
    @classmethod
    def normalize_groups(cls, value: Any) -> Tuple[str, ...]:
        return _sorted_unique(value)


class Change(BaseModel):
    """
    Normalized pull/merge request. Upserted on every crawl that observes it.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Deterministic hash of provider host, repository and number")
    provider: Provider
    host: str
    repository: str
    number: int
    title: str = ""
    url: str = ""
    author: Ident
    merged_by: Optional[Ident] = None
    state: ChangeState
    approvals: Tuple[str, ...] = ()
    labels: Tuple[str, ...] = ()
    assignees: Tuple[str, ...] = ()
    branch: str = ""
    target_branch: str = ""
    draft: bool = False
    commit_count: int = Field(default=0, ge=0)
    additions: int = Field(default=0, ge=0)
    deletions: int = Field(default=0, ge=0)
    changed_files_count: int = Field(default=0, ge=0)
    created_at: datetime
    updated_at: datetime
    merged_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @field_validator("approvals", "labels", "assignees", mode="before")
    @classmethod
    def normalize_sets(cls, value: Any) -> Tuple[str, ...]:
        return _sorted_unique(value)

    @computed_field
    @property
    def self_merged(self) -> bool:
        return self.merged_by is not None and self.merged_by.muid == self.author.muid

    @computed_field
    @property
    def duration(self) -> Optional[int]:
        if self.merged_at is None:
            return None
        return int((self.merged_at - self.created_at).total_seconds())

    @property
    def doc_type(self) -> str:
        return "Change"

    @property
    def on_id(self) -> Optional[str]:
        return None

    @property
    def activity_at(self) -> datetime:
        return self.updated_at


class Issue(BaseModel):
    """
    Normalized issue or bug report.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    provider: Provider
    host: str
    project: str
    key: str = Field(..., description="Issue number or tracker key, e.g. 'WID-12'")
    title: str = ""
    url: str = ""
    author: Ident
    state: IssueState
    labels: Tuple[str, ...] = ()
    assignees: Tuple[str, ...] = ()
    priority: Optional[str] = None
    severity: Optional[str] = None
    linked_change_urls: Tuple[str, ...] = ()
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None

    @field_validator("labels", "assignees", "linked_change_urls", mode="before")
    @classmethod
    def normalize_sets(cls, value: Any) -> Tuple[str, ...]:
        return _sorted_unique(value)

    @property
    def doc_type(self) -> str:
        return "Issue"

    @property
    def on_id(self) -> Optional[str]:
        return None

    @property
    def activity_at(self) -> datetime:
        return self.updated_at


class ChangeEvent(BaseModel):
    """
    A timestamped action on a Change, attributed to the actor who performed it.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Deterministic hash of provider host, event type and natural key")
    type: ChangeEventType
    natural_key: str
    author: Ident
    on_change_id: str
    on_author: Ident
    repository: str
    approval: Optional[str] = None
    created_at: datetime
    on_created_at: datetime

    @property
    def doc_type(self) -> str:
        return self.type.value

    @property
    def on_id(self) -> Optional[str]:
        return self.on_change_id

    @property
    def activity_at(self) -> datetime:
        return self.created_at


class IssueEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: IssueEventType
    natural_key: str
    author: Ident
    on_issue_id: str
    on_author: Ident
    project: str
    created_at: datetime
    on_created_at: datetime

    @property
    def doc_type(self) -> str:
        return self.type.value

    @property
    def on_id(self) -> Optional[str]:
        return self.on_issue_id

    @property
    def activity_at(self) -> datetime:
        return self.created_at


Document = Union[Change, Issue, ChangeEvent, IssueEvent]


class RateLimitHint(BaseModel):
    """Quota information surfaced by a provider alongside a page."""
    model_config = ConfigDict(frozen=True)

    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None
    throttled: bool = False


class ProviderPage(BaseModel):
    """
    One page of raw provider records. A missing next_cursor means the
    crawl window is exhausted.
    """
    records: List[Any] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    rate_limit: Optional[RateLimitHint] = None

    @property
    def done(self) -> bool:
        return self.next_cursor is None


class CrawlResult(BaseModel):
    """Counters reported at the end of a single-entity crawl."""
    entity: str
    pages: int = 0
    changes: int = 0
    issues: int = 0
    events: int = 0
    skipped: int = 0
    rejected: int = 0
    schema_errors: int = 0
    last_commit_at: Optional[datetime] = None
