from typing import Any, Dict, List, Optional

from changecrawler.domain.exceptions import UnsupportedRecord
from changecrawler.domain.identifiers import change_id, issue_id
from changecrawler.domain.models import (
    Change,
    ChangeEvent,
    ChangeEventType,
    ChangeState,
    Document,
    Ident,
    Issue,
    IssueEventType,
    IssueState,
    Provider,
)
from changecrawler.infrastructure.acl.base import RecordTranslator, parse_optional_timestamp, parse_timestamp

CHANGE_STATES = {
    "OPEN": ChangeState.OPEN,
    "MERGED": ChangeState.MERGED,
    "CLOSED": ChangeState.CLOSED,
}

# Reviews still being drafted have no submission and are not events yet
UNSUBMITTED_REVIEW_STATES = {"PENDING"}


def _login(actor: Optional[Dict[str, Any]]) -> Optional[str]:
    return (actor or {}).get("login")


def _nodes(raw: Dict[str, Any], field: str) -> List[Dict[str, Any]]:
    return [node for node in ((raw.get(field) or {}).get("nodes") or []) if node]


class GitHubTranslator(RecordTranslator):
    """
    Anti-corruption layer that translates raw GitHub GraphQL nodes into
    Changes, Issues and their events. Nodes are dispatched on __typename.
    """

    def to_domain(self, raw_node: Dict[str, Any]) -> List[Document]:
        typename = raw_node.get("__typename")
        if typename == "PullRequest":
            return self._pull_request(raw_node)
        if typename == "PullRequestReview":
            return [self._standalone_review(raw_node)]
        if typename == "IssueComment" and raw_node.get("pullRequest"):
            return [self._standalone_comment(raw_node)]
        if typename == "Issue":
            return self._issue(raw_node)
        raise UnsupportedRecord(typename or "<missing __typename>")

    def natural_key(self, raw_node: Dict[str, Any]) -> str:
        repository = (raw_node.get("repository") or {}).get("nameWithOwner", "")
        if raw_node.get("number") is not None:
            return f"{repository}#{raw_node['number']}"
        return str(raw_node.get("id", "?"))

    def _change(self, raw_pr: Dict[str, Any]) -> Change:
        """
        Builds the Change document of a PullRequest node.

        Args:
            raw_pr (Dict[str, Any]): PullRequest node, possibly without its nested connections.

        Returns:
            Change: The normalized change.
        """
        repository = raw_pr["repository"]["nameWithOwner"]
        number = int(raw_pr["number"])
        raw_state = raw_pr.get("state", "OPEN")
        if raw_state not in CHANGE_STATES:
            raise ValueError(f"Unknown pull request state {raw_state!r}.")

        merged_by = raw_pr.get("mergedBy")
        return Change(
            id=change_id(self.entity.host, repository, number),
            provider=Provider.GITHUB,
            host=self.entity.host,
            repository=repository,
            number=number,
            title=raw_pr.get("title", ""),
            url=raw_pr.get("url", ""),
            author=self.ident(_login(raw_pr.get("author"))),
            merged_by=self.ident(_login(merged_by)) if merged_by else None,
            state=CHANGE_STATES[raw_state],
            approvals=[review.get("state") for review in _nodes(raw_pr, "latestOpinionatedReviews")],
            labels=[label.get("name") for label in _nodes(raw_pr, "labels")],
            assignees=[assignee.get("login") for assignee in _nodes(raw_pr, "assignees")],
            branch=raw_pr.get("headRefName", ""),
            target_branch=raw_pr.get("baseRefName", ""),
            draft=bool(raw_pr.get("isDraft", False)),
            commit_count=(raw_pr.get("commits") or {}).get("totalCount", 0),
            additions=raw_pr.get("additions", 0),
            deletions=raw_pr.get("deletions", 0),
            changed_files_count=raw_pr.get("changedFiles", 0),
            created_at=parse_timestamp(raw_pr.get("createdAt"), "createdAt"),
            updated_at=parse_timestamp(raw_pr.get("updatedAt") or raw_pr.get("createdAt"), "updatedAt"),
            merged_at=parse_optional_timestamp(raw_pr.get("mergedAt"), "mergedAt"),
            closed_at=parse_optional_timestamp(raw_pr.get("closedAt"), "closedAt"),
        )

    def _closed_by(self, raw: Dict[str, Any]) -> Optional[Ident]:
        closed_events = [node for node in _nodes(raw, "timelineItems") if node.get("__typename", "ClosedEvent") == "ClosedEvent"]
        if not closed_events:
            return None
        return self.ident(_login(closed_events[-1].get("actor")))

    def _review_event(self, change: Change, raw_review: Dict[str, Any]) -> Optional[ChangeEvent]:
        # One event per submission, however many inline comments it bundles
        if raw_review.get("state") in UNSUBMITTED_REVIEW_STATES:
            return None
        return self.change_event(
            change,
            ChangeEventType.REVIEWED,
            natural_key=raw_review["id"],
            author=self.ident(_login(raw_review.get("author"))),
            created_at=parse_timestamp(raw_review.get("submittedAt"), "submittedAt"),
            approval=raw_review.get("state"),
        )

    def _comment_event(self, change: Change, raw_comment: Dict[str, Any]) -> ChangeEvent:
        return self.change_event(
            change,
            ChangeEventType.COMMENTED,
            natural_key=raw_comment["id"],
            author=self.ident(_login(raw_comment.get("author"))),
            created_at=parse_timestamp(raw_comment.get("createdAt"), "createdAt"),
        )

    def _commit_events(self, change: Change, raw_pr: Dict[str, Any]) -> List[ChangeEvent]:
        events = []
        for node in _nodes(raw_pr, "commits"):
            commit = node.get("commit") or {}
            if not commit.get("oid"):
                continue
            pushed_at = commit.get("pushedDate") or commit.get("committedDate")
            committer = (commit.get("committer") or {}).get("user") or (commit.get("author") or {}).get("user")
            events.append(self.change_event(
                change,
                ChangeEventType.COMMIT_PUSHED,
                natural_key=f"{change.repository}#{change.number}@{commit['oid']}",
                author=self.ident(_login(committer)),
                created_at=parse_timestamp(pushed_at, "pushedDate"),
            ))
        return events

    def _pull_request(self, raw_pr: Dict[str, Any]) -> List[Document]:
        change = self._change(raw_pr)
        documents: List[Document] = [change]
        documents.extend(self.lifecycle_events(change, closed_by=self._closed_by(raw_pr)))
        for raw_review in _nodes(raw_pr, "reviews"):
            event = self._review_event(change, raw_review)
            if event is not None:
                documents.append(event)
        documents.extend(self._comment_event(change, raw_comment) for raw_comment in _nodes(raw_pr, "comments"))
        documents.extend(self._commit_events(change, raw_pr))
        return documents

    def _standalone_review(self, raw_review: Dict[str, Any]) -> ChangeEvent:
        """A review delivered on its own, with its pull request as a reference."""
        change = self._change(raw_review["pullRequest"])
        event = self._review_event(change, raw_review)
        if event is None:
            raise UnsupportedRecord(f"PullRequestReview[{raw_review.get('state')}]")
        return event

    def _standalone_comment(self, raw_comment: Dict[str, Any]) -> ChangeEvent:
        change = self._change(raw_comment["pullRequest"])
        return self._comment_event(change, raw_comment)

    def _issue(self, raw_issue: Dict[str, Any]) -> List[Document]:
        project = raw_issue["repository"]["nameWithOwner"]
        key = str(int(raw_issue["number"]))
        state = IssueState.CLOSED if raw_issue.get("state") == "CLOSED" else IssueState.OPEN
        issue = Issue(
            id=issue_id(self.entity.host, project, key),
            provider=Provider.GITHUB,
            host=self.entity.host,
            project=project,
            key=key,
            title=raw_issue.get("title", ""),
            url=raw_issue.get("url", ""),
            author=self.ident(_login(raw_issue.get("author"))),
            state=state,
            labels=[label.get("name") for label in _nodes(raw_issue, "labels")],
            assignees=[assignee.get("login") for assignee in _nodes(raw_issue, "assignees")],
            created_at=parse_timestamp(raw_issue.get("createdAt"), "createdAt"),
            updated_at=parse_timestamp(raw_issue.get("updatedAt") or raw_issue.get("createdAt"), "updatedAt"),
            closed_at=parse_optional_timestamp(raw_issue.get("closedAt"), "closedAt"),
        )

        natural_key = f"{project}#{key}"
        documents: List[Document] = [
            issue,
            self.issue_event(issue, IssueEventType.CREATED, natural_key, issue.author, issue.created_at),
        ]
        for raw_comment in _nodes(raw_issue, "comments"):
            documents.append(self.issue_event(
                issue,
                IssueEventType.COMMENTED,
                raw_comment["id"],
                self.ident(_login(raw_comment.get("author"))),
                parse_timestamp(raw_comment.get("createdAt"), "createdAt"),
            ))
        if state == IssueState.CLOSED and issue.closed_at is not None:
            documents.append(self.issue_event(
                issue,
                IssueEventType.CLOSED,
                natural_key,
                self._closed_by(raw_issue) or issue.author,
                issue.closed_at,
            ))
        return documents
