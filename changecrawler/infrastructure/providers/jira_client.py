import logging
from datetime import datetime, timezone, tzinfo
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import aiohttp

from changecrawler.domain.exceptions import AuthError, SchemaError
from changecrawler.domain.models import CrawlerEntity, EntityKind, ProviderPage
from changecrawler.infrastructure.config import CrawlerConfig
from changecrawler.infrastructure.providers.base import (
    DEFAULT_PAGE_SIZE,
    DEFAULT_TIMEOUT,
    OffsetProviderClient,
    hint_from_headers,
)

logger = logging.getLogger(__name__)

REQUEST_FIELDS = "summary,status,created,updated,resolutiondate,reporter,creator,assignee,priority,labels,issuetype,comment,project"


class JiraClient(OffsetProviderClient):
    """Client for the Jira REST search API, crawling the issues of one project."""

    kinds = frozenset({EntityKind.ISSUE})

    def __init__(self, crawler: CrawlerConfig, page_size: int = DEFAULT_PAGE_SIZE, timeout: float = DEFAULT_TIMEOUT):
        super().__init__(crawler, page_size=page_size, timeout=timeout)
        base_url = crawler.url.rstrip("/")
        self.search_url = f"{base_url}/rest/api/2/search"
        self.myself_url = f"{base_url}/rest/api/2/myself"
        self.zone: Optional[tzinfo] = None
        self.headers["Accept"] = "application/json"
        if crawler.token and not crawler.login:
            self.headers["Authorization"] = f"Bearer {crawler.token}"

    def auth(self) -> Optional[aiohttp.BasicAuth]:
        # Jira Cloud takes '<email>:<api token>' basic auth, Server a bearer PAT
        if self.crawler.login and self.crawler.token:
            return aiohttp.BasicAuth(self.crawler.login, self.crawler.token)
        return None

    @staticmethod
    def build_jql(entity: CrawlerEntity, since: datetime, zone: tzinfo = timezone.utc) -> str:
        # JQL dates carry no offset and are read in the API user's profile zone
        local = since.astimezone(zone)
        return f'project = "{entity.name}" AND updated >= "{local:%Y/%m/%d %H:%M}" ORDER BY updated ASC'

    def build_params(
        self, entity: CrawlerEntity, since: datetime, start_at: int, zone: tzinfo = timezone.utc,
    ) -> Dict[str, str]:
        return {
            "jql": self.build_jql(entity, since, zone),
            "startAt": str(start_at),
            "maxResults": str(self.page_size),
            "fields": REQUEST_FIELDS,
            "expand": "changelog",
        }

    async def fetch_page(
        self,
        session: aiohttp.ClientSession,
        entity: CrawlerEntity,
        since: datetime,
        cursor: Optional[str] = None,
    ) -> ProviderPage:
        self.check_kind(entity)
        start_at = self.parse_offset(cursor)
        zone = await self.profile_zone(session)

        data, headers = await self.request_json(
            session, "GET", self.search_url, params=self.build_params(entity, since, start_at, zone),
        )
        page = self.parse_response(data, start_at)
        page.rate_limit = hint_from_headers(headers)
        return page

    @staticmethod
    def parse_response(data: Any, start_at: int) -> ProviderPage:
        if not isinstance(data, dict) or not isinstance(data.get("issues"), list):
            raise SchemaError("Jira search response has no issues list.")
        issues = data["issues"]
        total = int(data.get("total") or 0)
        next_start = start_at + len(issues)
        next_cursor = str(next_start) if issues and next_start < total else None
        return ProviderPage(records=issues, next_cursor=next_cursor)

    async def profile_zone(self, session: aiohttp.ClientSession) -> tzinfo:
        """Time zone of the API user's profile, fetched once per client."""
        if self.zone is None:
            self.zone = await self._fetch_profile_zone(session)
        return self.zone

    async def _fetch_profile_zone(self, session: aiohttp.ClientSession) -> tzinfo:
        try:
            data, _ = await self.request_json(session, "GET", self.myself_url)
        except AuthError:
            if self.crawler.token:
                raise
            logger.warning(f"{self.crawler.name}: anonymous access has no profile time zone; assuming UTC.")
            return timezone.utc

        name = data.get("timeZone") if isinstance(data, dict) else None
        if not name:
            logger.warning(f"{self.crawler.name}: Jira profile has no time zone; assuming UTC.")
            return timezone.utc
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(f"{self.crawler.name}: unknown Jira time zone {name!r}; assuming UTC.")
            return timezone.utc
