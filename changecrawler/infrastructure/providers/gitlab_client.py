import logging
from datetime import datetime
from typing import Any, Optional

import aiohttp

from changecrawler.domain.exceptions import CrawlerException, SchemaError, TransientError
from changecrawler.domain.models import CrawlerEntity, ProviderPage
from changecrawler.infrastructure.config import CrawlerConfig
from changecrawler.infrastructure.providers.base import (
    DEFAULT_PAGE_SIZE,
    DEFAULT_TIMEOUT,
    ProviderClient,
    hint_from_headers,
)

logger = logging.getLogger(__name__)

GRAPHQL_QUERY = """
query ($project: ID!, $updatedAfter: Time, $cursor: String, $pageSize: Int!) {
  project(fullPath: $project) {
    mergeRequests(updatedAfter: $updatedAfter, sort: UPDATED_ASC, first: $pageSize, after: $cursor) {
      pageInfo {
        endCursor
        hasNextPage
      }
      nodes {
        __typename
        id
        iid
        title
        webUrl
        state
        draft
        createdAt
        updatedAt
        mergedAt
        closedAt
        sourceBranch
        targetBranch
        commitCount
        project { fullPath }
        diffStatsSummary { additions deletions fileCount }
        author { username }
        mergeUser { username }
        approvedBy { nodes { username } }
        labels { nodes { title } }
        assignees { nodes { username } }
        notes(first: 100) { nodes { id body system createdAt author { username } } }
        commits(first: 100) { nodes { sha committedDate authoredDate author { username } } }
      }
    }
  }
}
"""


class GitLabGraphQLClient(ProviderClient):
    """Client for the GitLab GraphQL API, crawling merge requests of one project."""

    def __init__(self, crawler: CrawlerConfig, page_size: int = DEFAULT_PAGE_SIZE, timeout: float = DEFAULT_TIMEOUT):
        super().__init__(crawler, page_size=page_size, timeout=timeout)
        if crawler.token:
            self.headers["Authorization"] = f"Bearer {crawler.token}"
        base_url = (crawler.url or "https://gitlab.com").rstrip("/")
        self.api_url = f"{base_url}/api/graphql"

    async def fetch_page(
        self,
        session: aiohttp.ClientSession,
        entity: CrawlerEntity,
        since: datetime,
        cursor: Optional[str] = None,
    ) -> ProviderPage:
        self.check_kind(entity)
        payload = {
            "query": GRAPHQL_QUERY,
            "variables": {
                "project": entity.name,
                "updatedAfter": since.isoformat(),
                "cursor": cursor,
                "pageSize": self.page_size,
            },
        }
        data, headers = await self.request_json(session, "POST", self.api_url, json=payload)
        page = self.parse_response(entity, data)
        page.rate_limit = hint_from_headers(headers, "RateLimit-Remaining", "RateLimit-Reset")
        return page

    def parse_response(self, entity: CrawlerEntity, data: Any) -> ProviderPage:
        if not isinstance(data, dict):
            raise SchemaError("GraphQL response is not an object.")

        if data.get("errors") and not data.get("data"):
            error_msg = data["errors"][0].get("message", "Unknown GraphQL error")
            self.reduce_page_size()
            raise TransientError(f"GraphQL error: {error_msg}. Page size reduced to {self.page_size}.")

        project = (data.get("data") or {}).get("project", {})
        if project is None:
            raise CrawlerException(f"GitLab project '{entity.name}' does not exist or is not visible.")

        merge_requests = (project or {}).get("mergeRequests")
        if not isinstance(merge_requests, dict) or not isinstance(merge_requests.get("nodes"), list):
            raise SchemaError("GraphQL response has no mergeRequests nodes.")

        page_info = merge_requests.get("pageInfo") or {}
        next_cursor = page_info.get("endCursor") if page_info.get("hasNextPage") else None
        return ProviderPage(records=merge_requests["nodes"], next_cursor=next_cursor)
