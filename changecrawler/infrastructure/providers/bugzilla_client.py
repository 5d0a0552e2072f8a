import logging
from datetime import datetime
from typing import Any, Dict, Optional

import aiohttp

from changecrawler.domain.exceptions import AuthError, SchemaError
from changecrawler.domain.models import CrawlerEntity, EntityKind, ProviderPage
from changecrawler.infrastructure.config import CrawlerConfig
from changecrawler.infrastructure.providers.base import DEFAULT_PAGE_SIZE, DEFAULT_TIMEOUT, OffsetProviderClient

logger = logging.getLogger(__name__)

INCLUDE_FIELDS = (
    "id,product,summary,creator,assigned_to,is_open,status,priority,severity,keywords,"
    "see_also,external_bugs,creation_time,last_change_time"
)

# BugZilla error codes for an invalid or expired API key
AUTH_ERROR_CODES = {306, 410}


class BugzillaClient(OffsetProviderClient):
    """Client for the BugZilla REST API, crawling the bugs of one product."""

    kinds = frozenset({EntityKind.ISSUE})

    def __init__(self, crawler: CrawlerConfig, page_size: int = DEFAULT_PAGE_SIZE, timeout: float = DEFAULT_TIMEOUT):
        super().__init__(crawler, page_size=page_size, timeout=timeout)
        self.bug_url = f"{crawler.url.rstrip('/')}/rest/bug"
        if crawler.token:
            self.headers["X-BUGZILLA-API-KEY"] = crawler.token

    def build_params(self, entity: CrawlerEntity, since: datetime, offset: int) -> Dict[str, str]:
        return {
            "product": entity.name,
            "last_change_time": f"{since:%Y-%m-%dT%H:%M:%SZ}",
            "include_fields": INCLUDE_FIELDS,
            "order": "changeddate",
            "limit": str(self.page_size),
            "offset": str(offset),
        }

    async def fetch_page(
        self,
        session: aiohttp.ClientSession,
        entity: CrawlerEntity,
        since: datetime,
        cursor: Optional[str] = None,
    ) -> ProviderPage:
        self.check_kind(entity)
        offset = self.parse_offset(cursor)

        data, _ = await self.request_json(session, "GET", self.bug_url, params=self.build_params(entity, since, offset))
        return self.parse_response(data, offset)

    def parse_response(self, data: Any, offset: int) -> ProviderPage:
        if not isinstance(data, dict):
            raise SchemaError("BugZilla response is not an object.")
        if data.get("error"):
            if data.get("code") in AUTH_ERROR_CODES:
                raise AuthError(f"{self.crawler.name}: {data.get('message', 'API key refused')}")
            raise SchemaError(f"BugZilla error {data.get('code')}: {data.get('message')}")
        bugs = data.get("bugs")
        if not isinstance(bugs, list):
            raise SchemaError("BugZilla response has no bugs list.")
        next_cursor = str(offset + len(bugs)) if len(bugs) >= self.page_size else None
        return ProviderPage(records=bugs, next_cursor=next_cursor)
