import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

import aiohttp

from changecrawler.domain.exceptions import (
    AuthError,
    ConfigError,
    CrawlerException,
    RateLimitExceededException,
    SchemaError,
    TransientError,
)
from changecrawler.domain.models import CrawlerEntity, EntityKind, ProviderPage, RateLimitHint
from changecrawler.infrastructure.config import CrawlerConfig

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 25
MIN_PAGE_SIZE = 5
DEFAULT_TIMEOUT = 60.0
USER_AGENT = "change-crawler"
SERVER_ERRORS = {500, 502, 503, 504}


def _header_float(headers: Mapping[str, str], key: str) -> Optional[float]:
    try:
        value = headers.get(key)
        return float(value) if value is not None else None
    except ValueError:
        return None


def hint_from_headers(
    headers: Mapping[str, str],
    remaining_header: str = "X-RateLimit-Remaining",
    reset_header: str = "X-RateLimit-Reset",
) -> Optional[RateLimitHint]:
    """Reads the common '<remaining>/<reset epoch>' rate limit header pair."""
    remaining = _header_float(headers, remaining_header)
    reset = _header_float(headers, reset_header)
    if remaining is None and reset is None:
        return None
    return RateLimitHint(
        remaining=int(remaining) if remaining is not None else None,
        reset_at=datetime.fromtimestamp(reset, tz=timezone.utc) if reset is not None else None,
    )


class ProviderClient(ABC):
    """
    Fetches one page of raw activity for a crawler entity. Implementations
    only map the provider wire format; retries, pacing and checkpointing
    are applied by the caller.
    """

    kinds: FrozenSet[EntityKind] = frozenset({EntityKind.CHANGE})

    def __init__(self, crawler: CrawlerConfig, page_size: int = DEFAULT_PAGE_SIZE, timeout: float = DEFAULT_TIMEOUT):
        self.crawler = crawler
        self.page_size = page_size
        self.timeout = aiohttp.ClientTimeout(total=timeout, connect=min(10.0, timeout))
        self.headers: Dict[str, str] = {"User-Agent": USER_AGENT}

    @abstractmethod
    async def fetch_page(
        self,
        session: aiohttp.ClientSession,
        entity: CrawlerEntity,
        since: datetime,
        cursor: Optional[str] = None,
    ) -> ProviderPage:
        """
        Fetches the page that starts at cursor in the window opened at since.

        Raises:
            AuthError: Credentials were refused.
            TransientError: Network failure, timeout or server error.
            RateLimitExceededException: The provider quota is exhausted.
            SchemaError: The payload does not have the expected shape.
        """

    def check_kind(self, entity: CrawlerEntity) -> None:
        if entity.kind not in self.kinds:
            raise ConfigError(f"{entity.provider.value} crawler cannot crawl {entity.kind.value} entities.")

    def auth(self) -> Optional[aiohttp.BasicAuth]:
        return None

    def skip_cursor(self, cursor: Optional[str]) -> Optional[str]:
        """Cursor of the page after the one at cursor, or None when pages cannot be skipped."""
        return None

    def forbidden(self, url: str) -> CrawlerException:
        return AuthError(f"{self.crawler.name}: access to {url} forbidden (403).")

    def reduce_page_size(self) -> None:
        # Large pages are the usual cause of provider-side timeouts
        self.page_size = max(self.page_size // 2, MIN_PAGE_SIZE)

    async def request_json(
        self,
        session: aiohttp.ClientSession,
        method: str,
        url: str,
        strip_prefix: str = "",
        **kwargs: Any,
    ) -> Tuple[Any, Mapping[str, str]]:
        """
        Performs one HTTP request and decodes its JSON body, mapping failures
        onto the crawler error taxonomy.

        Returns:
            Tuple of (decoded body, response headers).
        """
        try:
            async with session.request(
                method, url, headers=self.headers, timeout=self.timeout, auth=self.auth(), **kwargs
            ) as response:
                headers = response.headers
                if response.status == 401:
                    raise AuthError(f"{self.crawler.name}: credentials refused by {url} (401).")

                if response.status in (403, 429):
                    retry_after = _header_float(headers, "Retry-After")
                    hint = hint_from_headers(headers)
                    if response.status == 429 or retry_after is not None or (hint and hint.remaining == 0):
                        reset_at = hint.reset_at.isoformat() if hint and hint.reset_at else None
                        raise RateLimitExceededException(reset_at=reset_at, retry_after=retry_after)
                    raise self.forbidden(url)

                if response.status in SERVER_ERRORS:
                    self.reduce_page_size()
                    raise TransientError(
                        f"Server error ({response.status}) from {url}. Page size reduced to {self.page_size}."
                    )

                if response.status >= 400:
                    body = await response.text()
                    raise CrawlerException(f"Unexpected HTTP {response.status} from {url}: {body[:200]}")

                text = await response.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientError(f"Request to {url} failed: {type(e).__name__}: {e}") from e

        if strip_prefix and text.startswith(strip_prefix):
            text = text[len(strip_prefix):]
        try:
            return json.loads(text), headers
        except ValueError as e:
            raise SchemaError(f"Response from {url} is not valid JSON: {e}") from e


class OffsetProviderClient(ProviderClient):
    """
    Provider paged by a numeric offset into the window's result list. An
    unreadable page can be stepped over by moving the offset one page on.
    """

    def parse_offset(self, cursor: Optional[str]) -> int:
        try:
            return int(cursor) if cursor else 0
        except ValueError as e:
            raise SchemaError(f"Invalid {self.crawler.provider.value} cursor {cursor!r}.") from e

    def skip_cursor(self, cursor: Optional[str]) -> Optional[str]:
        try:
            offset = int(cursor) if cursor else 0
        except ValueError:
            return None
        return str(offset + self.page_size)
