import unittest
from datetime import datetime, timezone

from changecrawler.domain.exceptions import UnsupportedRecord
from changecrawler.domain.identifiers import change_id
from changecrawler.domain.models import (
    Change,
    ChangeEventType,
    ChangeState,
    CrawlerEntity,
    EntityKind,
    Issue,
    IssueEventType,
    IssueState,
    Provider,
)
from changecrawler.infrastructure.acl.base import parse_timestamp
from changecrawler.infrastructure.acl.github import GitHubTranslator
from changecrawler.infrastructure.config import IdentConfig
from changecrawler.infrastructure.ident_resolver import IdentResolver


def _entity(kind: EntityKind = EntityKind.CHANGE) -> CrawlerEntity:
    return CrawlerEntity(
        workspace="acme",
        crawler="github-acme",
        provider=Provider.GITHUB,
        host="github.com",
        kind=kind,
        name="acme/widget",
        update_since=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


def _resolver() -> IdentResolver:
    return IdentResolver([IdentConfig(ident="Alice A", aliases=["github.com/alice"], groups=["core"])])


def _pull_request(**overrides):
    node = {
        "__typename": "PullRequest",
        "id": "PR_1",
        "number": 7,
        "title": "Add gears",
        "url": "https://github.com/acme/widget/pull/7",
        "state": "MERGED",
        "createdAt": "2024-01-01T10:00:00Z",
        "updatedAt": "2024-01-03T10:00:00Z",
        "mergedAt": "2024-01-02T10:00:00Z",
        "closedAt": "2024-01-02T10:00:00Z",
        "additions": 10,
        "deletions": 2,
        "changedFiles": 3,
        "repository": {"nameWithOwner": "acme/widget"},
        "author": {"login": "alice"},
        "mergedBy": {"login": "alice"},
        "labels": {"nodes": [{"name": "bug"}, {"name": "bug"}]},
        "latestOpinionatedReviews": {"nodes": [{"state": "APPROVED"}]},
        "commits": {
            "totalCount": 1,
            "nodes": [{"commit": {
                "oid": "abc123",
                "pushedDate": "2024-01-01T11:00:00Z",
                "committer": {"user": {"login": "alice"}},
            }}],
        },
        "reviews": {"nodes": [
            {"id": "R_1", "state": "APPROVED", "submittedAt": "2024-01-01T12:00:00Z", "author": {"login": "bob"}},
            {"id": "R_2", "state": "PENDING", "submittedAt": None, "author": {"login": "carol"}},
        ]},
        "comments": {"nodes": [{"id": "C_1", "createdAt": "2024-01-01T13:00:00Z", "author": {"login": "bob"}}]},
    }
    node.update(overrides)
    return node


class TestParseTimestamp(unittest.TestCase):
    def test_parses_zulu_suffix(self) -> None:
        self.assertEqual(
            parse_timestamp("2024-01-02T03:04:05Z"),
            datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        )

    def test_converts_offsets_to_utc(self) -> None:
        self.assertEqual(
            parse_timestamp("2024-01-02T05:04:05+02:00"),
            datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        )

    def test_missing_value_raises(self) -> None:
        with self.assertRaises(ValueError):
            parse_timestamp(None, "createdAt")


class TestGitHubTranslator(unittest.TestCase):
    def setUp(self) -> None:
        self.translator = GitHubTranslator(_entity(), _resolver())

    def test_pull_request_becomes_change_and_events(self) -> None:
        documents = self.translator.to_domain(_pull_request())

        change = documents[0]
        self.assertIsInstance(change, Change)
        self.assertEqual(change.id, change_id("github.com", "acme/widget", 7))
        self.assertEqual(change.state, ChangeState.MERGED)
        self.assertEqual(change.labels, ("bug",))
        self.assertEqual(change.approvals, ("APPROVED",))
        self.assertEqual(change.author.muid, "Alice A")
        self.assertEqual(change.author.uid, "alice")
        self.assertEqual(change.author.groups, ("core",))
        self.assertTrue(change.self_merged)
        self.assertEqual(change.duration, 86400)

        types = [document.type for document in documents[1:]]
        self.assertEqual(types, [
            ChangeEventType.CREATED,
            ChangeEventType.MERGED,
            ChangeEventType.REVIEWED,
            ChangeEventType.COMMENTED,
            ChangeEventType.COMMIT_PUSHED,
        ])

    def test_pending_reviews_are_not_events(self) -> None:
        documents = self.translator.to_domain(_pull_request())

        reviews = [d for d in documents if getattr(d, "type", None) == ChangeEventType.REVIEWED]
        self.assertEqual(len(reviews), 1)
        self.assertEqual(reviews[0].approval, "APPROVED")
        self.assertEqual(reviews[0].author.muid, "bob")
        self.assertEqual(reviews[0].on_author.muid, "Alice A")

    def test_unmerged_closed_pull_request_is_abandoned_by_closer(self) -> None:
        raw = _pull_request(
            state="CLOSED",
            mergedAt=None,
            mergedBy=None,
            timelineItems={"nodes": [
                {"__typename": "ClosedEvent", "createdAt": "2024-01-02T10:00:00Z", "actor": {"login": "dave"}},
            ]},
        )

        documents = self.translator.to_domain(raw)

        abandoned = [d for d in documents if getattr(d, "type", None) == ChangeEventType.ABANDONED]
        self.assertEqual(len(abandoned), 1)
        self.assertEqual(abandoned[0].author.muid, "dave")
        self.assertFalse(documents[0].self_merged)
        self.assertIsNone(documents[0].duration)

    def test_standalone_review_references_its_pull_request(self) -> None:
        raw = {
            "__typename": "PullRequestReview",
            "id": "R_9",
            "state": "CHANGES_REQUESTED",
            "submittedAt": "2024-01-05T09:00:00Z",
            "author": {"login": "bob"},
            "pullRequest": {
                "number": 7,
                "state": "OPEN",
                "createdAt": "2024-01-01T10:00:00Z",
                "repository": {"nameWithOwner": "acme/widget"},
                "author": {"login": "alice"},
            },
        }

        documents = self.translator.to_domain(raw)

        self.assertEqual(len(documents), 1)
        self.assertEqual(documents[0].type, ChangeEventType.REVIEWED)
        self.assertEqual(documents[0].on_change_id, change_id("github.com", "acme/widget", 7))
        self.assertEqual(documents[0].approval, "CHANGES_REQUESTED")

    def test_same_node_maps_to_same_ids(self) -> None:
        first = [d.id for d in self.translator.to_domain(_pull_request())]
        second = [d.id for d in self.translator.to_domain(_pull_request(title="Renamed"))]

        self.assertEqual(first, second)
        self.assertEqual(len(set(first)), len(first))

    def test_unknown_typename_is_unsupported(self) -> None:
        with self.assertRaises(UnsupportedRecord):
            self.translator.to_domain({"__typename": "Commit", "id": "x"})

    def test_missing_created_at_raises(self) -> None:
        raw = _pull_request()
        del raw["createdAt"]

        with self.assertRaises(ValueError):
            self.translator.to_domain(raw)

    def test_closed_issue_has_lifecycle_and_comment_events(self) -> None:
        translator = GitHubTranslator(_entity(EntityKind.ISSUE), _resolver())
        raw = {
            "__typename": "Issue",
            "id": "I_1",
            "number": 3,
            "state": "CLOSED",
            "createdAt": "2024-01-01T10:00:00Z",
            "updatedAt": "2024-01-04T10:00:00Z",
            "closedAt": "2024-01-04T10:00:00Z",
            "repository": {"nameWithOwner": "acme/widget"},
            "author": {"login": "alice"},
            "comments": {"nodes": [{"id": "IC_1", "createdAt": "2024-01-02T10:00:00Z", "author": {"login": "bob"}}]},
            "timelineItems": {"nodes": [
                {"__typename": "ClosedEvent", "createdAt": "2024-01-04T10:00:00Z", "actor": {"login": "bob"}},
            ]},
        }

        documents = translator.to_domain(raw)

        issue = documents[0]
        self.assertIsInstance(issue, Issue)
        self.assertEqual(issue.state, IssueState.CLOSED)
        self.assertEqual(issue.key, "3")
        self.assertEqual(
            [d.type for d in documents[1:]],
            [IssueEventType.CREATED, IssueEventType.COMMENTED, IssueEventType.CLOSED],
        )
        self.assertEqual(documents[-1].author.muid, "bob")
