from typing import Any, Dict, List, Optional

from changecrawler.domain.exceptions import UnsupportedRecord
from changecrawler.domain.identifiers import change_id
from changecrawler.domain.models import Change, ChangeEventType, ChangeState, Document, Ident, Provider
from changecrawler.infrastructure.acl.base import RecordTranslator, parse_optional_timestamp, parse_timestamp

CHANGE_STATES = {
    "opened": ChangeState.OPEN,
    "locked": ChangeState.OPEN,
    "merged": ChangeState.MERGED,
    "closed": ChangeState.CLOSED,
}

# System notes GitLab writes when a reviewer takes a formal decision
REVIEW_NOTES = {
    "approved this merge request": "APPROVED",
    "requested changes": "CHANGES_REQUESTED",
}


def _username(actor: Optional[Dict[str, Any]]) -> Optional[str]:
    return (actor or {}).get("username")


def _nodes(raw: Dict[str, Any], field: str) -> List[Dict[str, Any]]:
    return [node for node in ((raw.get(field) or {}).get("nodes") or []) if node]


def _review_decision(body: str) -> Optional[str]:
    body = (body or "").strip().lower()
    for prefix, decision in REVIEW_NOTES.items():
        if body.startswith(prefix):
            return decision
    return None


class GitLabTranslator(RecordTranslator):
    """
    Translates GitLab GraphQL MergeRequest nodes. Formal reviews are derived
    from approval system notes, discussion comments from user notes.
    """

    def to_domain(self, raw_mr: Dict[str, Any]) -> List[Document]:
        typename = raw_mr.get("__typename", "MergeRequest")
        if typename != "MergeRequest":
            raise UnsupportedRecord(typename)

        change = self._change(raw_mr)
        notes = sorted(_nodes(raw_mr, "notes"), key=lambda note: note.get("createdAt") or "")

        closed_by: Optional[Ident] = None
        documents: List[Document] = [change]
        for note in notes:
            author = self.ident(_username(note.get("author")))
            if note.get("system"):
                decision = _review_decision(note.get("body", ""))
                if decision is not None:
                    documents.append(self.change_event(
                        change, ChangeEventType.REVIEWED, note["id"], author,
                        parse_timestamp(note.get("createdAt"), "createdAt"), approval=decision,
                    ))
                elif (note.get("body") or "").strip() == "closed":
                    closed_by = author
                continue
            documents.append(self.change_event(
                change, ChangeEventType.COMMENTED, note["id"], author,
                parse_timestamp(note.get("createdAt"), "createdAt"),
            ))

        documents[1:1] = self.lifecycle_events(change, closed_by=closed_by)

        for commit in _nodes(raw_mr, "commits"):
            if not commit.get("sha"):
                continue
            documents.append(self.change_event(
                change,
                ChangeEventType.COMMIT_PUSHED,
                f"{change.repository}!{change.number}@{commit['sha']}",
                self.ident(_username(commit.get("author"))),
                parse_timestamp(commit.get("committedDate") or commit.get("authoredDate"), "committedDate"),
            ))
        return documents

    def natural_key(self, raw_mr: Dict[str, Any]) -> str:
        return f"{self.entity.name}!{raw_mr.get('iid', '?')}"

    def _change(self, raw_mr: Dict[str, Any]) -> Change:
        repository = (raw_mr.get("project") or {}).get("fullPath") or self.entity.name
        number = int(raw_mr["iid"])
        raw_state = raw_mr.get("state", "opened")
        if raw_state not in CHANGE_STATES:
            raise ValueError(f"Unknown merge request state {raw_state!r}.")

        stats = raw_mr.get("diffStatsSummary") or {}
        merge_user = raw_mr.get("mergeUser")
        approvers = _nodes(raw_mr, "approvedBy")
        return Change(
            id=change_id(self.entity.host, repository, number),
            provider=Provider.GITLAB,
            host=self.entity.host,
            repository=repository,
            number=number,
            title=raw_mr.get("title", ""),
            url=raw_mr.get("webUrl", ""),
            author=self.ident(_username(raw_mr.get("author"))),
            merged_by=self.ident(_username(merge_user)) if merge_user else None,
            state=CHANGE_STATES[raw_state],
            approvals=["APPROVED"] if approvers else [],
            labels=[label.get("title") for label in _nodes(raw_mr, "labels")],
            assignees=[assignee.get("username") for assignee in _nodes(raw_mr, "assignees")],
            branch=raw_mr.get("sourceBranch", ""),
            target_branch=raw_mr.get("targetBranch", ""),
            draft=bool(raw_mr.get("draft", False)),
            commit_count=int(raw_mr.get("commitCount") or 0),
            additions=int(stats.get("additions") or 0),
            deletions=int(stats.get("deletions") or 0),
            changed_files_count=int(stats.get("fileCount") or 0),
            created_at=parse_timestamp(raw_mr.get("createdAt"), "createdAt"),
            updated_at=parse_timestamp(raw_mr.get("updatedAt") or raw_mr.get("createdAt"), "updatedAt"),
            merged_at=parse_optional_timestamp(raw_mr.get("mergedAt"), "mergedAt"),
            closed_at=parse_optional_timestamp(raw_mr.get("closedAt"), "closedAt"),
        )
