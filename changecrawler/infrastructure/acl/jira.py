from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from changecrawler.domain.exceptions import UnsupportedRecord
from changecrawler.domain.identifiers import issue_id
from changecrawler.domain.models import Document, Ident, Issue, IssueEventType, IssueState, Provider
from changecrawler.infrastructure.acl.base import RecordTranslator, parse_timestamp

DONE_CATEGORY = "done"


def parse_jira_timestamp(raw: Optional[str], field: str = "timestamp") -> datetime:
    """Jira renders offsets without a colon: '2024-01-02T03:04:05.000+0000'."""
    if not raw:
        raise ValueError(f"{field} is required.")
    try:
        return datetime.strptime(raw, "%Y-%m-%dT%H:%M:%S.%f%z").astimezone(timezone.utc)
    except ValueError:
        return parse_timestamp(raw, field)


def jira_login(user: Optional[Dict[str, Any]]) -> Optional[str]:
    if not user:
        return None
    return user.get("name") or user.get("accountId") or user.get("emailAddress")


class JiraTranslator(RecordTranslator):
    """
    Translates Jira search results (fields plus expanded changelog) into
    Issues with created, commented and closed events.
    """

    def to_domain(self, raw_issue: Dict[str, Any]) -> List[Document]:
        fields = raw_issue.get("fields")
        if not isinstance(fields, dict) or not raw_issue.get("key"):
            raise UnsupportedRecord("<not a Jira issue>")

        key = raw_issue["key"]
        project = (fields.get("project") or {}).get("key") or self.entity.name
        status = fields.get("status") or {}
        done = (status.get("statusCategory") or {}).get("key") == DONE_CATEGORY
        updated_at = parse_jira_timestamp(fields.get("updated") or fields.get("created"), "updated")
        closed_at = None
        if done:
            closed_at = parse_jira_timestamp(fields.get("resolutiondate") or fields.get("updated"), "resolutiondate")

        issue = Issue(
            id=issue_id(self.entity.host, project, key),
            provider=Provider.JIRA,
            host=self.entity.host,
            project=project,
            key=key,
            title=fields.get("summary") or "",
            url=f"https://{self.entity.host}/browse/{key}",
            author=self.ident(jira_login(fields.get("reporter") or fields.get("creator"))),
            state=IssueState.CLOSED if done else IssueState.OPEN,
            labels=fields.get("labels") or [],
            assignees=[login for login in [jira_login(fields.get("assignee"))] if login],
            priority=(fields.get("priority") or {}).get("name"),
            severity=(fields.get("issuetype") or {}).get("name"),
            created_at=parse_jira_timestamp(fields.get("created"), "created"),
            updated_at=updated_at,
            closed_at=closed_at,
        )

        documents: List[Document] = [
            issue,
            self.issue_event(issue, IssueEventType.CREATED, key, issue.author, issue.created_at),
        ]
        for comment in (fields.get("comment") or {}).get("comments") or []:
            documents.append(self.issue_event(
                issue,
                IssueEventType.COMMENTED,
                f"{key}/comment/{comment['id']}",
                self.ident(jira_login(comment.get("author"))),
                parse_jira_timestamp(comment.get("created"), "created"),
            ))
        if closed_at is not None:
            documents.append(self.issue_event(
                issue, IssueEventType.CLOSED, key, self._resolved_by(raw_issue) or issue.author, closed_at,
            ))
        return documents

    def natural_key(self, raw_issue: Dict[str, Any]) -> str:
        return str(raw_issue.get("key") or raw_issue.get("id") or "?")

    def _resolved_by(self, raw_issue: Dict[str, Any]) -> Optional[Ident]:
        histories = (raw_issue.get("changelog") or {}).get("histories") or []
        for history in sorted(histories, key=lambda h: h.get("created") or "", reverse=True):
            for item in history.get("items") or []:
                if item.get("field") == "resolution" and (item.get("to") or item.get("toString")):
                    return self.ident(jira_login(history.get("author")))
        return None
