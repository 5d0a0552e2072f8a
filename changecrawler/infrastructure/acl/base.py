from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from changecrawler.domain.identifiers import event_id
from changecrawler.domain.models import (
    Change,
    ChangeEvent,
    ChangeEventType,
    ChangeState,
    CrawlerEntity,
    Document,
    Ident,
    Issue,
    IssueEvent,
    IssueEventType,
)
from changecrawler.infrastructure.ident_resolver import IdentResolver


def parse_timestamp(raw: Optional[str], field: str = "timestamp") -> datetime:
    """
    Parses an ISO-8601 provider timestamp into an aware UTC datetime.

    Raises:
        ValueError: If the value is missing or unparseable.
    """
    if not raw:
        raise ValueError(f"{field} is required.")
    parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_optional_timestamp(raw: Optional[str], field: str = "timestamp") -> Optional[datetime]:
    return parse_timestamp(raw, field) if raw else None


class RecordTranslator(ABC):
    """
    Anti-corruption layer base: turns one raw provider record into
    normalized documents for a given crawler entity.
    """

    def __init__(self, entity: CrawlerEntity, resolver: IdentResolver):
        self.entity = entity
        self.resolver = resolver

    @abstractmethod
    def to_domain(self, raw: Dict[str, Any]) -> List[Document]:
        """
        Raises:
            UnsupportedRecord: For raw subtypes the translator does not model.
            ValueError, KeyError, TypeError: When the record is malformed.
        """

    def natural_key(self, raw: Dict[str, Any]) -> str:
        """Short description of a raw record for log lines."""
        return str(raw.get("id") or raw.get("number") or raw.get("key") or "?")

    def ident(self, login: Optional[str]) -> Ident:
        return self.resolver.resolve(self.entity.host, login)

    def change_event(
        self,
        change: Change,
        event_type: ChangeEventType,
        natural_key: str,
        author: Ident,
        created_at: datetime,
        approval: Optional[str] = None,
    ) -> ChangeEvent:
        return ChangeEvent(
            id=event_id(self.entity.host, event_type.value, natural_key),
            type=event_type,
            natural_key=natural_key,
            author=author,
            on_change_id=change.id,
            on_author=change.author,
            repository=change.repository,
            approval=approval,
            created_at=created_at,
            on_created_at=change.created_at,
        )

    def issue_event(
        self,
        issue: Issue,
        event_type: IssueEventType,
        natural_key: str,
        author: Ident,
        created_at: datetime,
    ) -> IssueEvent:
        return IssueEvent(
            id=event_id(self.entity.host, event_type.value, natural_key),
            type=event_type,
            natural_key=natural_key,
            author=author,
            on_issue_id=issue.id,
            on_author=issue.author,
            project=issue.project,
            created_at=created_at,
            on_created_at=issue.created_at,
        )

    def lifecycle_events(
        self,
        change: Change,
        closed_by: Optional[Ident] = None,
    ) -> List[ChangeEvent]:
        """Created, merged and abandoned events, keyed on the change itself."""
        key = f"{change.repository}#{change.number}"
        events = [self.change_event(change, ChangeEventType.CREATED, key, change.author, change.created_at)]
        if change.merged_at is not None:
            events.append(self.change_event(
                change, ChangeEventType.MERGED, key, change.merged_by or change.author, change.merged_at,
            ))
        elif change.closed_at is not None and change.state == ChangeState.CLOSED:
            events.append(self.change_event(
                change, ChangeEventType.ABANDONED, key, closed_by or change.author, change.closed_at,
            ))
        return events
