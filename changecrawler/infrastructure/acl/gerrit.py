from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from changecrawler.domain.exceptions import UnsupportedRecord
from changecrawler.domain.identifiers import change_id
from changecrawler.domain.models import Change, ChangeEventType, ChangeState, Document, Ident, Provider
from changecrawler.infrastructure.acl.base import RecordTranslator

CHANGE_STATES = {
    "NEW": ChangeState.OPEN,
    "MERGED": ChangeState.MERGED,
    "ABANDONED": ChangeState.CLOSED,
}

ABANDON_TAG = "autogenerated:gerrit:abandon"


def parse_gerrit_timestamp(raw: Optional[str], field: str = "timestamp") -> datetime:
    """Gerrit timestamps are UTC, 'YYYY-MM-DD hh:mm:ss.fffffffff'."""
    if not raw:
        raise ValueError(f"{field} is required.")
    return datetime.strptime(raw.split(".")[0], "%Y-%m-%d %H:%M:%S").replace(tzinfo=timezone.utc)


def account_login(account: Optional[Dict[str, Any]]) -> Optional[str]:
    if not account:
        return None
    if account.get("username"):
        return account["username"]
    name = account.get("name", "")
    return f"{name}/{account.get('_account_id', '')}".strip("/") or None


def is_comment(message: Dict[str, Any]) -> bool:
    """Human discussion, as opposed to robot messages and bare vote notifications."""
    if (message.get("tag") or "").startswith("autogenerated:"):
        return False
    lines = (message.get("message") or "").splitlines()
    if not lines:
        return False
    if lines[0].startswith("Patch Set"):
        return bool("\n".join(lines[1:]).strip())
    return True


class GerritTranslator(RecordTranslator):
    """
    Translates Gerrit ChangeInfo objects (with MESSAGES, DETAILED_LABELS,
    DETAILED_ACCOUNTS and ALL_REVISIONS options). Every non-zero label vote
    is one review submission.
    """

    def to_domain(self, raw_change: Dict[str, Any]) -> List[Document]:
        if "_number" not in raw_change:
            raise UnsupportedRecord(raw_change.get("kind", "<not a ChangeInfo>"))

        change = self._change(raw_change)
        documents: List[Document] = [change]
        documents.extend(self.lifecycle_events(change, closed_by=self._abandoned_by(raw_change)))

        for label, info in sorted((raw_change.get("labels") or {}).items()):
            for vote in info.get("all") or []:
                value = int(vote.get("value") or 0)
                if value == 0 or not vote.get("date"):
                    continue
                documents.append(self.change_event(
                    change,
                    ChangeEventType.REVIEWED,
                    f"{raw_change['id']}/{label}/{vote.get('_account_id')}/{vote['date']}",
                    self.ident(account_login(vote)),
                    parse_gerrit_timestamp(vote["date"], "date"),
                    approval=f"{label}{value:+d}",
                ))

        for message in raw_change.get("messages") or []:
            if not is_comment(message):
                continue
            documents.append(self.change_event(
                change,
                ChangeEventType.COMMENTED,
                message["id"],
                self.ident(account_login(message.get("author"))),
                parse_gerrit_timestamp(message.get("date"), "date"),
            ))

        for sha, revision in sorted((raw_change.get("revisions") or {}).items()):
            documents.append(self.change_event(
                change,
                ChangeEventType.COMMIT_PUSHED,
                f"{raw_change['id']}@{sha}",
                self.ident(account_login(revision.get("uploader"))),
                parse_gerrit_timestamp(revision.get("created"), "created"),
            ))
        return documents

    def natural_key(self, raw_change: Dict[str, Any]) -> str:
        return f"{raw_change.get('project', self.entity.name)}/{raw_change.get('_number', '?')}"

    def _abandoned_by(self, raw_change: Dict[str, Any]) -> Optional[Ident]:
        for message in reversed(raw_change.get("messages") or []):
            if message.get("tag") == ABANDON_TAG:
                return self.ident(account_login(message.get("author")))
        return None

    def _abandoned_at(self, raw_change: Dict[str, Any]) -> datetime:
        for message in reversed(raw_change.get("messages") or []):
            if message.get("tag") == ABANDON_TAG:
                return parse_gerrit_timestamp(message.get("date"), "date")
        return parse_gerrit_timestamp(raw_change.get("updated"), "updated")

    def _change(self, raw_change: Dict[str, Any]) -> Change:
        repository = raw_change.get("project") or self.entity.name
        number = int(raw_change["_number"])
        raw_state = raw_change.get("status", "NEW")
        if raw_state not in CHANGE_STATES:
            raise ValueError(f"Unknown change status {raw_state!r}.")
        state = CHANGE_STATES[raw_state]

        approvals = []
        for label, info in (raw_change.get("labels") or {}).items():
            for vote in info.get("all") or []:
                value = int(vote.get("value") or 0)
                if value:
                    approvals.append(f"{label}{value:+d}")

        merged_at = None
        merged_by = None
        if state == ChangeState.MERGED:
            merged_at = parse_gerrit_timestamp(raw_change.get("submitted") or raw_change.get("updated"), "submitted")
            merged_by = self.ident(account_login(raw_change.get("submitter") or raw_change.get("owner")))

        revisions = raw_change.get("revisions") or {}
        current = revisions.get(raw_change.get("current_revision") or "", {})
        return Change(
            id=change_id(self.entity.host, repository, number),
            provider=Provider.GERRIT,
            host=self.entity.host,
            repository=repository,
            number=number,
            title=raw_change.get("subject", ""),
            url=f"https://{self.entity.host}/c/{repository}/+/{number}",
            author=self.ident(account_login(raw_change.get("owner"))),
            merged_by=merged_by,
            state=state,
            approvals=approvals,
            labels=raw_change.get("hashtags") or [],
            assignees=[login for login in [account_login(raw_change.get("assignee"))] if login],
            branch=raw_change.get("change_id", ""),
            target_branch=raw_change.get("branch", ""),
            draft=bool(raw_change.get("work_in_progress", False)),
            commit_count=1,
            additions=int(raw_change.get("insertions") or 0),
            deletions=int(raw_change.get("deletions") or 0),
            changed_files_count=len(current.get("files") or {}),
            created_at=parse_gerrit_timestamp(raw_change.get("created"), "created"),
            updated_at=parse_gerrit_timestamp(raw_change.get("updated"), "updated"),
            merged_at=merged_at,
            closed_at=merged_at if state == ChangeState.MERGED else (
                self._abandoned_at(raw_change) if state == ChangeState.CLOSED else None
            ),
        )
