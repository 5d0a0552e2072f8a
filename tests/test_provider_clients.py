import json
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

from changecrawler.domain.exceptions import AuthError, ConfigError, CrawlerException, SchemaError
from changecrawler.domain.models import CrawlerEntity, EntityKind, Provider
from changecrawler.infrastructure.config import CrawlerConfig
from changecrawler.infrastructure.providers.bugzilla_client import BugzillaClient
from changecrawler.infrastructure.providers.gerrit_client import XSSI_PREFIX, GerritClient
from changecrawler.infrastructure.providers.gitlab_client import GitLabGraphQLClient
from changecrawler.infrastructure.providers.jira_client import JiraClient
from changecrawler.infrastructure.providers.registry import build_client

SINCE = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _entity(provider: Provider, name: str, kind: EntityKind, host: str = "example.org") -> CrawlerEntity:
    return CrawlerEntity(
        workspace="acme",
        crawler="crawler",
        provider=provider,
        host=host,
        kind=kind,
        name=name,
        update_since=SINCE,
    )


def mock_response(status: int = 200, body=None, headers=None):
    response = AsyncMock()
    response.status = status
    response.headers = headers or {}
    response.text = AsyncMock(return_value=body if isinstance(body, str) else json.dumps(body))
    response.__aenter__ = AsyncMock(return_value=response)
    response.__aexit__ = AsyncMock(return_value=False)
    return response


def mock_session(*responses):
    session = AsyncMock()
    session.request = MagicMock(side_effect=list(responses))
    return session


class TestRegistry(unittest.TestCase):
    def test_build_client_per_provider(self) -> None:
        cases = {
            Provider.GITLAB: GitLabGraphQLClient,
            Provider.GERRIT: GerritClient,
            Provider.JIRA: JiraClient,
            Provider.BUGZILLA: BugzillaClient,
        }
        for provider, expected in cases.items():
            crawler = CrawlerConfig(name="c", provider=provider, url="https://example.org", update_since=SINCE)
            self.assertIsInstance(build_client(crawler, page_size=10), expected)


class TestGitLabGraphQLClient(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        crawler = CrawlerConfig(name="gitlab", provider=Provider.GITLAB, update_since=SINCE)
        self.client = GitLabGraphQLClient(crawler)
        self.entity = _entity(Provider.GITLAB, "acme/widget", EntityKind.CHANGE, host="gitlab.com")

    async def test_reads_merge_requests_and_rate_limit_headers(self) -> None:
        body = {"data": {"project": {"mergeRequests": {
            "pageInfo": {"endCursor": "c1", "hasNextPage": True},
            "nodes": [{"iid": "1"}],
        }}}}
        session = mock_session(mock_response(body=body, headers={"RateLimit-Remaining": "3", "RateLimit-Reset": "1893456000"}))

        page = await self.client.fetch_page(session, self.entity, SINCE)

        self.assertEqual(page.records, [{"iid": "1"}])
        self.assertEqual(page.next_cursor, "c1")
        self.assertEqual(page.rate_limit.remaining, 3)
        self.assertEqual(self.client.api_url, "https://gitlab.com/api/graphql")
        variables = session.request.call_args.kwargs["json"]["variables"]
        self.assertEqual(variables["project"], "acme/widget")

    async def test_missing_project_is_an_error(self) -> None:
        session = mock_session(mock_response(body={"data": {"project": None}}))

        with self.assertRaises(CrawlerException):
            await self.client.fetch_page(session, self.entity, SINCE)


class TestGerritClient(unittest.IsolatedAsyncioTestCase):
    def _client(self, login=None, token_env=None) -> GerritClient:
        crawler = CrawlerConfig(
            name="opendev", provider=Provider.GERRIT, url="https://review.opendev.org/",
            login=login, token_env=token_env, update_since=SINCE,
        )
        return GerritClient(crawler, page_size=2)

    def test_query_and_params(self) -> None:
        client = self._client()
        entity = _entity(Provider.GERRIT, "zuul/zuul", EntityKind.CHANGE)

        params = client.build_params(entity, SINCE, 4)

        self.assertIn(("q", 'project:zuul/zuul after:"2024-01-01 12:00:00"'), params)
        self.assertIn(("S", "4"), params)
        self.assertIn(("o", "MESSAGES"), params)
        self.assertEqual(client.changes_url, "https://review.opendev.org/changes/")

    def test_authenticated_endpoint(self) -> None:
        with patch.dict("os.environ", {"GERRIT_PASSWORD": "secret"}):
            client = self._client(login="bot", token_env="GERRIT_PASSWORD")
            self.assertEqual(client.changes_url, "https://review.opendev.org/a/changes/")
            self.assertEqual(client.auth().login, "bot")

    async def test_strips_xssi_prefix_and_follows_more_changes(self) -> None:
        client = self._client()
        entity = _entity(Provider.GERRIT, "zuul/zuul", EntityKind.CHANGE)
        body = XSSI_PREFIX + "\n" + json.dumps([{"_number": 1}, {"_number": 2, "_more_changes": True}])

        page = await client.fetch_page(mock_session(mock_response(body=body)), entity, SINCE, cursor="4")

        self.assertEqual(len(page.records), 2)
        self.assertEqual(page.next_cursor, "6")

    def test_last_page(self) -> None:
        page = GerritClient.parse_response([{"_number": 1}], 0)

        self.assertTrue(page.done)

    def test_object_body_is_schema_error(self) -> None:
        with self.assertRaises(SchemaError):
            GerritClient.parse_response({"message": "nope"}, 0)


class TestJiraClient(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        crawler = CrawlerConfig(name="jira", provider=Provider.JIRA, url="https://acme.atlassian.net", update_since=SINCE)
        self.client = JiraClient(crawler, page_size=2)
        self.entity = _entity(Provider.JIRA, "WID", EntityKind.ISSUE)

    def test_jql_is_ordered_by_update(self) -> None:
        self.assertEqual(
            JiraClient.build_jql(self.entity, SINCE),
            'project = "WID" AND updated >= "2024/01/01 12:00" ORDER BY updated ASC',
        )

    def test_jql_dates_are_rendered_in_profile_zone(self) -> None:
        eastern = timezone(timedelta(hours=-5))

        self.assertEqual(
            JiraClient.build_jql(self.entity, datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc), eastern),
            'project = "WID" AND updated >= "2024/01/01 05:00" ORDER BY updated ASC',
        )

    async def test_search_uses_profile_time_zone_fetched_once(self) -> None:
        body = {"startAt": 0, "maxResults": 2, "total": 3, "issues": [{"key": "WID-1"}, {"key": "WID-2"}]}
        session = mock_session(
            mock_response(body={"name": "crawler", "timeZone": "America/New_York"}),
            mock_response(body=body),
            mock_response(body=body),
        )

        await self.client.fetch_page(session, self.entity, datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc))
        await self.client.fetch_page(session, self.entity, SINCE, cursor="2")

        urls = [call.args[1] for call in session.request.call_args_list]
        self.assertEqual(urls.count("https://acme.atlassian.net/rest/api/2/myself"), 1)
        jql = session.request.call_args_list[1].kwargs["params"]["jql"]
        self.assertIn('updated >= "2024/01/01 05:00"', jql)

    async def test_anonymous_access_assumes_utc(self) -> None:
        body = {"startAt": 0, "maxResults": 2, "total": 0, "issues": []}
        session = mock_session(mock_response(status=401), mock_response(body=body))

        with self.assertLogs("changecrawler.infrastructure.providers.jira_client", level="WARNING"):
            page = await self.client.fetch_page(session, self.entity, SINCE)

        self.assertTrue(page.done)
        self.assertIn('updated >= "2024/01/01 12:00"', session.request.call_args.kwargs["params"]["jql"])

    async def test_offset_pagination(self) -> None:
        body = {"startAt": 0, "maxResults": 2, "total": 3, "issues": [{"key": "WID-1"}, {"key": "WID-2"}]}
        session = mock_session(mock_response(body={"timeZone": "UTC"}), mock_response(body=body))

        page = await self.client.fetch_page(session, self.entity, SINCE)

        self.assertEqual(page.next_cursor, "2")

        body = {"startAt": 2, "maxResults": 2, "total": 3, "issues": [{"key": "WID-3"}]}
        page = await self.client.fetch_page(mock_session(mock_response(body=body)), self.entity, SINCE, cursor="2")

        self.assertTrue(page.done)

    async def test_change_entities_are_refused(self) -> None:
        with self.assertRaises(ConfigError):
            await self.client.fetch_page(mock_session(), _entity(Provider.JIRA, "WID", EntityKind.CHANGE), SINCE)


class TestBugzillaClient(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        with patch.dict("os.environ", {"BUGZILLA_API_KEY": "key"}):
            crawler = CrawlerConfig(
                name="rhbz", provider=Provider.BUGZILLA, url="https://bugzilla.redhat.com",
                token_env="BUGZILLA_API_KEY", update_since=SINCE,
            )
            self.client = BugzillaClient(crawler, page_size=2)
        self.entity = _entity(Provider.BUGZILLA, "Fedora", EntityKind.ISSUE)

    def test_api_key_header(self) -> None:
        self.assertEqual(self.client.headers["X-BUGZILLA-API-KEY"], "key")

    async def test_full_page_has_next_offset(self) -> None:
        body = {"bugs": [{"id": 1}, {"id": 2}]}
        session = mock_session(mock_response(body=body))

        page = await self.client.fetch_page(session, self.entity, SINCE, cursor="2")

        self.assertEqual(page.next_cursor, "4")
        params = session.request.call_args.kwargs["params"]
        self.assertEqual(params["last_change_time"], "2024-01-01T12:00:00Z")
        self.assertEqual(params["offset"], "2")

    async def test_invalid_api_key_is_auth_error(self) -> None:
        body = {"error": True, "code": 306, "message": "The API key you specified is invalid."}

        with self.assertRaises(AuthError):
            await self.client.fetch_page(mock_session(mock_response(body=body)), self.entity, SINCE)
