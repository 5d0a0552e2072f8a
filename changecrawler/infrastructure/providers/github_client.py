import logging
from datetime import datetime
from typing import Any, Dict, Optional

import aiohttp

from changecrawler.domain.exceptions import CrawlerException, RateLimitExceededException, SchemaError, TransientError
from changecrawler.domain.models import CrawlerEntity, EntityKind, ProviderPage, RateLimitHint
from changecrawler.infrastructure.acl.base import parse_optional_timestamp
from changecrawler.infrastructure.config import CrawlerConfig
from changecrawler.infrastructure.providers.base import DEFAULT_PAGE_SIZE, DEFAULT_TIMEOUT, ProviderClient

logger = logging.getLogger(__name__)

# Wait applied when GitHub answers a secondary rate limit without Retry-After
SECONDARY_RATE_LIMIT_WAIT = 60

PULL_REQUEST_FIELDS = """
      ... on PullRequest {
        id
        number
        title
        url
        state
        isDraft
        createdAt
        updatedAt
        mergedAt
        closedAt
        additions
        deletions
        changedFiles
        headRefName
        baseRefName
        repository { nameWithOwner }
        author { login }
        mergedBy { login }
        labels(first: 20) { nodes { name } }
        assignees(first: 10) { nodes { login } }
        latestOpinionatedReviews(first: 20) { nodes { state } }
        commits(first: 50) {
          totalCount
          nodes { commit { oid pushedDate committedDate author { user { login } } committer { user { login } } } }
        }
        reviews(first: 50) { nodes { id state submittedAt author { login } comments { totalCount } } }
        comments(first: 50) { nodes { id createdAt author { login } } }
        timelineItems(first: 5, itemTypes: [CLOSED_EVENT]) {
          nodes { __typename ... on ClosedEvent { createdAt actor { login } } }
        }
      }
"""

ISSUE_FIELDS = """
      ... on Issue {
        id
        number
        title
        url
        state
        createdAt
        updatedAt
        closedAt
        repository { nameWithOwner }
        author { login }
        labels(first: 20) { nodes { name } }
        assignees(first: 10) { nodes { login } }
        comments(first: 50) { nodes { id createdAt author { login } } }
        timelineItems(first: 5, itemTypes: [CLOSED_EVENT]) {
          nodes { __typename ... on ClosedEvent { createdAt actor { login } } }
        }
      }
"""

# search_query and page_size are parameterised; the search runs oldest update
# first so a window that hits the 1,000-result cap resumes from its last
# update on the next crawl.
GRAPHQL_QUERY = """
query ($cursor: String, $searchQuery: String!, $pageSize: Int!) {
  search(query: $searchQuery, type: ISSUE, first: $pageSize, after: $cursor) {
    issueCount
    pageInfo {
      endCursor
      hasNextPage
    }
    nodes {
      __typename
%s
    }
  }
  rateLimit {
    cost
    remaining
    resetAt
  }
}
"""


class GitHubGraphQLClient(ProviderClient):
    """
    Client for the GitHub GraphQL API.
    Crawls pull requests (changes) and issues of a repository or a whole organization.
    """

    kinds = frozenset({EntityKind.CHANGE, EntityKind.ISSUE})

    def __init__(self, crawler: CrawlerConfig, page_size: int = DEFAULT_PAGE_SIZE, timeout: float = DEFAULT_TIMEOUT):
        super().__init__(crawler, page_size=page_size, timeout=timeout)
        if crawler.token:
            self.headers["Authorization"] = f"Bearer {crawler.token}"
        else:
            logger.warning(f"{crawler.name}: no GitHub token configured; the GraphQL API will refuse requests.")
        self.headers.update({
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        })
        self.api_url = crawler.url or "https://api.github.com/graphql"

    def forbidden(self, url: str) -> CrawlerException:
        # Secondary (abuse) rate limits come back as a bare 403; only 401 means bad credentials
        logger.warning(f"Secondary rate limit (403) from {url}. Waiting {SECONDARY_RATE_LIMIT_WAIT}s.")
        return RateLimitExceededException(
            retry_after=SECONDARY_RATE_LIMIT_WAIT,
            message="GitHub secondary rate limit exceeded.",
        )

    @staticmethod
    def build_search_query(entity: CrawlerEntity, since: datetime) -> str:
        scope = f"repo:{entity.name}" if "/" in entity.name else f"org:{entity.name}"
        kind = "is:pr" if entity.kind == EntityKind.CHANGE else "is:issue"
        return f"{scope} {kind} updated:>={since:%Y-%m-%dT%H:%M:%SZ} sort:updated-asc"

    async def fetch_page(
        self,
        session: aiohttp.ClientSession,
        entity: CrawlerEntity,
        since: datetime,
        cursor: Optional[str] = None,
    ) -> ProviderPage:
        """
        Fetches a single page of search results.

        Returns:
            ProviderPage with the search nodes, the next cursor (None when done)
            and the rateLimit block as hint.
        """
        self.check_kind(entity)
        fields = PULL_REQUEST_FIELDS if entity.kind == EntityKind.CHANGE else ISSUE_FIELDS
        payload = {
            "query": GRAPHQL_QUERY % fields,
            "variables": {
                "cursor": cursor,
                "searchQuery": self.build_search_query(entity, since),
                "pageSize": self.page_size,
            },
        }
        data, _ = await self.request_json(session, "POST", self.api_url, json=payload)
        return self.parse_response(data)

    def parse_response(self, data: Any) -> ProviderPage:
        if not isinstance(data, dict):
            raise SchemaError("GraphQL response is not an object.")

        # GraphQL-level errors can occur even with HTTP 200
        if data.get("errors"):
            errors = data["errors"]
            if any(error.get("type") == "RATE_LIMITED" for error in errors):
                raise RateLimitExceededException(reset_at=self._reset_at(data))
            error_msg = errors[0].get("message", "Unknown GraphQL error")
            if not data.get("data"):
                self.reduce_page_size()
                raise TransientError(f"GraphQL error: {error_msg}. Page size reduced to {self.page_size}.")
            logger.warning(f"GraphQL partial error: {error_msg}")

        search_data = (data.get("data") or {}).get("search")
        if not isinstance(search_data, dict):
            raise SchemaError("GraphQL response has no search block.")

        page_info = search_data.get("pageInfo") or {}
        nodes = search_data.get("nodes")
        if not isinstance(nodes, list):
            raise SchemaError("GraphQL search block has no nodes list.")

        next_cursor = page_info.get("endCursor") if page_info.get("hasNextPage") else None
        return ProviderPage(records=nodes, next_cursor=next_cursor, rate_limit=self._hint(data))

    @staticmethod
    def _reset_at(data: Dict[str, Any]) -> Optional[str]:
        return ((data.get("data") or {}).get("rateLimit") or {}).get("resetAt")

    @staticmethod
    def _hint(data: Dict[str, Any]) -> Optional[RateLimitHint]:
        rate_limit = (data.get("data") or {}).get("rateLimit")
        if not rate_limit:
            return None
        return RateLimitHint(
            remaining=rate_limit.get("remaining"),
            reset_at=parse_optional_timestamp(rate_limit.get("resetAt"), "resetAt"),
        )
