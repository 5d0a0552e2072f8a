import logging
from datetime import datetime
from typing import Any, List, Optional, Tuple

import aiohttp

from changecrawler.domain.exceptions import SchemaError
from changecrawler.domain.models import CrawlerEntity, ProviderPage
from changecrawler.infrastructure.config import CrawlerConfig
from changecrawler.infrastructure.providers.base import DEFAULT_PAGE_SIZE, DEFAULT_TIMEOUT, OffsetProviderClient

logger = logging.getLogger(__name__)

# Gerrit prefixes JSON bodies to defeat cross-site script inclusion
XSSI_PREFIX = ")]}'"

QUERY_OPTIONS = (
    "MESSAGES",
    "DETAILED_ACCOUNTS",
    "DETAILED_LABELS",
    "ALL_REVISIONS",
    "CURRENT_FILES",
)


class GerritClient(OffsetProviderClient):
    """
    Client for the Gerrit REST API. Pages are offsets into the change query,
    which Gerrit returns most recently updated first.
    """

    def __init__(self, crawler: CrawlerConfig, page_size: int = DEFAULT_PAGE_SIZE, timeout: float = DEFAULT_TIMEOUT):
        super().__init__(crawler, page_size=page_size, timeout=timeout)
        self.base_url = crawler.url.rstrip("/")
        self.authenticated = bool(crawler.login and crawler.token)

    def auth(self) -> Optional[aiohttp.BasicAuth]:
        if not self.authenticated:
            return None
        return aiohttp.BasicAuth(self.crawler.login, self.crawler.token)

    @property
    def changes_url(self) -> str:
        # Authenticated endpoints live under /a/
        return f"{self.base_url}/a/changes/" if self.authenticated else f"{self.base_url}/changes/"

    @staticmethod
    def build_query(entity: CrawlerEntity, since: datetime) -> str:
        return f'project:{entity.name} after:"{since:%Y-%m-%d %H:%M:%S}"'

    def build_params(self, entity: CrawlerEntity, since: datetime, offset: int) -> List[Tuple[str, str]]:
        params = [("q", self.build_query(entity, since)), ("n", str(self.page_size)), ("S", str(offset))]
        params.extend(("o", option) for option in QUERY_OPTIONS)
        return params

    async def fetch_page(
        self,
        session: aiohttp.ClientSession,
        entity: CrawlerEntity,
        since: datetime,
        cursor: Optional[str] = None,
    ) -> ProviderPage:
        self.check_kind(entity)
        offset = self.parse_offset(cursor)

        data, _ = await self.request_json(
            session, "GET", self.changes_url, strip_prefix=XSSI_PREFIX, params=self.build_params(entity, since, offset),
        )
        return self.parse_response(data, offset)

    @staticmethod
    def parse_response(data: Any, offset: int) -> ProviderPage:
        if not isinstance(data, list):
            raise SchemaError("Gerrit change query did not return a list.")
        more = bool(data) and isinstance(data[-1], dict) and bool(data[-1].get("_more_changes"))
        next_cursor = str(offset + len(data)) if more else None
        return ProviderPage(records=data, next_cursor=next_cursor)
