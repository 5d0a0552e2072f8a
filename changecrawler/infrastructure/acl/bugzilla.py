from typing import Any, Dict, List

from changecrawler.domain.exceptions import UnsupportedRecord
from changecrawler.domain.identifiers import issue_id
from changecrawler.domain.models import Document, Issue, IssueEventType, IssueState, Provider
from changecrawler.infrastructure.acl.base import RecordTranslator, parse_timestamp

# Hosts whose URLs in see_also/external bugs point at code review changes
CHANGE_URL_MARKERS = ("/pull/", "/merge_requests/", "/c/", "/+/")


class BugzillaTranslator(RecordTranslator):
    """
    Translates BugZilla REST bug objects. Links to code review changes found
    in see_also and external bug references are kept on the Issue.
    """

    def to_domain(self, raw_bug: Dict[str, Any]) -> List[Document]:
        if "id" not in raw_bug or "creation_time" not in raw_bug:
            raise UnsupportedRecord("<not a BugZilla bug>")

        key = str(int(raw_bug["id"]))
        project = raw_bug.get("product") or self.entity.name
        is_open = bool(raw_bug.get("is_open", True))
        updated_at = parse_timestamp(raw_bug.get("last_change_time") or raw_bug.get("creation_time"), "last_change_time")

        issue = Issue(
            id=issue_id(self.entity.host, project, key),
            provider=Provider.BUGZILLA,
            host=self.entity.host,
            project=project,
            key=key,
            title=raw_bug.get("summary") or "",
            url=f"https://{self.entity.host}/show_bug.cgi?id={key}",
            author=self.ident(raw_bug.get("creator")),
            state=IssueState.OPEN if is_open else IssueState.CLOSED,
            labels=raw_bug.get("keywords") or [],
            assignees=[raw_bug["assigned_to"]] if raw_bug.get("assigned_to") else [],
            priority=raw_bug.get("priority"),
            severity=raw_bug.get("severity"),
            linked_change_urls=self._change_urls(raw_bug),
            created_at=parse_timestamp(raw_bug.get("creation_time"), "creation_time"),
            updated_at=updated_at,
            closed_at=None if is_open else updated_at,
        )

        natural_key = f"{project}#{key}"
        documents: List[Document] = [
            issue,
            self.issue_event(issue, IssueEventType.CREATED, natural_key, issue.author, issue.created_at),
        ]
        if not is_open:
            closer = raw_bug.get("assigned_to") or raw_bug.get("creator")
            documents.append(self.issue_event(
                issue, IssueEventType.CLOSED, natural_key, self.ident(closer), updated_at,
            ))
        return documents

    def natural_key(self, raw_bug: Dict[str, Any]) -> str:
        return str(raw_bug.get("id", "?"))

    @staticmethod
    def _change_urls(raw_bug: Dict[str, Any]) -> List[str]:
        urls = list(raw_bug.get("see_also") or [])
        for external in raw_bug.get("external_bugs") or []:
            url = (external.get("type") or {}).get("url")
            if url and external.get("ext_bz_bug_id"):
                urls.append(f"{url.rstrip('/')}/{external['ext_bz_bug_id']}")
        return [url for url in urls if any(marker in url for marker in CHANGE_URL_MARKERS)]
