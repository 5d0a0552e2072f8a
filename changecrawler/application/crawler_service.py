import asyncio
import logging
from datetime import datetime, timedelta
from typing import Mapping, Optional, Tuple

import aiohttp

from changecrawler.application.retry import BackoffPolicy, with_backoff
from changecrawler.application.transformer import TransformResult, build_translator, transform_page
from changecrawler.domain.exceptions import (
    CrawlCancelled,
    RateLimitExceededException,
    SchemaError,
    StoreUnavailable,
)
from changecrawler.domain.models import CrawlerEntity, CrawlResult, ProviderPage
from changecrawler.infrastructure.checkpoint_store import PostgresCheckpointStore
from changecrawler.infrastructure.database import PostgresDocumentStore
from changecrawler.infrastructure.ident_resolver import IdentResolver
from changecrawler.infrastructure.providers.base import ProviderClient
from changecrawler.infrastructure.rate_limiter import RateLimiterRegistry

logger = logging.getLogger(__name__)

DEFAULT_OVERLAP = timedelta(hours=1)
# Consecutive unreadable pages skipped before the crawl gives up
MAX_UNREADABLE_PAGES = 3


class CrawlerService:
    """
    Runs the crawl loop of a single entity:
    read checkpoint, then for each page fetch, transform, write and advance.

    The checkpoint only advances after every document of a page is
    committed. A crash in between makes the next run fetch and write the
    same page again, which the idempotent writer absorbs.
    """

    def __init__(
        self,
        clients: Mapping[Tuple[str, str], ProviderClient],
        resolvers: Mapping[str, IdentResolver],
        document_store: PostgresDocumentStore,
        checkpoint_store: PostgresCheckpointStore,
        rate_limiters: Optional[RateLimiterRegistry] = None,
        policy: Optional[BackoffPolicy] = None,
        overlap: timedelta = DEFAULT_OVERLAP,
    ):
        self.clients = clients
        self.resolvers = resolvers
        self.document_store = document_store
        self.checkpoint_store = checkpoint_store
        self.rate_limiters = rate_limiters or RateLimiterRegistry()
        self.policy = policy or BackoffPolicy()
        self.overlap = overlap

    def client_for(self, entity: CrawlerEntity) -> ProviderClient:
        return self.clients[(entity.workspace, entity.crawler)]

    def resolver_for(self, entity: CrawlerEntity) -> IdentResolver:
        return self.resolvers.get(entity.workspace) or IdentResolver()

    async def crawl_entity(
        self,
        session: aiohttp.ClientSession,
        entity: CrawlerEntity,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> CrawlResult:
        """
        Crawls one entity until its provider reports no more pages.

        Raises:
            CrawlCancelled: If cancel_event is set between two pages.
            AuthError, TransientError, RateLimitExceededException, StoreUnavailable:
                When a step fails for good; the checkpoint stays at its last advance.
            SchemaError: When a page cannot be read and the provider cannot page past it.
        """
        client = self.client_for(entity)
        translator = build_translator(entity, self.resolver_for(entity))
        state = await with_backoff(
            lambda: self.checkpoint_store.get(entity),
            self.policy,
            description=f"[{entity}] checkpoint read",
            retry_on=(StoreUnavailable,),
        )

        # Resume an unfinished window with the exact query its cursor was issued for
        if state.pagination_cursor is not None and state.cursor_since is not None:
            since = state.cursor_since
            cursor: Optional[str] = state.pagination_cursor
            logger.info(f"[{entity}] Resuming window since {since.isoformat()} at cursor {cursor}.")
        else:
            since = state.last_commit_at - self.overlap
            cursor = None
            logger.info(f"[{entity}] Starting crawl since {since.isoformat()}.")

        result = CrawlResult(entity=str(entity), last_commit_at=state.last_commit_at)
        unreadable = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise CrawlCancelled(f"[{entity}] Crawl cancelled after {result.pages} page(s).")

            try:
                page = await with_backoff(
                    lambda: self._fetch(session, client, entity, since, cursor),
                    self.policy,
                    description=f"[{entity}] fetch",
                )
            except SchemaError as e:
                result.schema_errors += 1
                unreadable += 1
                skip_to = client.skip_cursor(cursor)
                if skip_to is None or unreadable > MAX_UNREADABLE_PAGES:
                    # The checkpoint stays at the unreadable page so the entity shows as errored
                    logger.error(f"[{entity}] Unreadable page at cursor {cursor}: {e}")
                    raise
                # Only the next committed page moves the stored cursor past this one
                logger.warning(f"[{entity}] Skipping unreadable page at cursor {cursor}, resuming at {skip_to}: {e}")
                cursor = skip_to
                continue
            unreadable = 0

            transformed = transform_page(translator, page.records)
            result.skipped += transformed.skipped

            commit = asyncio.ensure_future(self._commit_page(entity, transformed, page, since, result))
            try:
                await asyncio.shield(commit)
            except asyncio.CancelledError:
                # Write-then-advance is never interrupted half way
                await commit
                raise

            result.pages += 1
            logger.info(
                f"[{entity}] Page {result.pages}: {len(page.records)} records, "
                f"{len(transformed.documents)} documents, {transformed.skipped} skipped. "
                f"Checkpoint at {result.last_commit_at.isoformat()}."
            )

            if page.done:
                break
            cursor = page.next_cursor

        logger.info(
            f"[{entity}] Crawl completed: {result.pages} page(s), {result.changes} changes, "
            f"{result.issues} issues, {result.events} events, {result.skipped} skipped, "
            f"{result.rejected} rejected."
        )
        return result

    async def _fetch(
        self,
        session: aiohttp.ClientSession,
        client: ProviderClient,
        entity: CrawlerEntity,
        since: datetime,
        cursor: Optional[str],
    ) -> ProviderPage:
        limiter = self.rate_limiters.for_host(entity.host)
        try:
            async with limiter.lease():
                page = await client.fetch_page(session, entity, since, cursor)
        except RateLimitExceededException as e:
            limiter.observe_error(e)
            raise
        limiter.observe(page.rate_limit)
        return page

    async def _commit_page(
        self,
        entity: CrawlerEntity,
        transformed: TransformResult,
        page: ProviderPage,
        since: datetime,
        result: CrawlResult,
    ) -> None:
        upsert = await with_backoff(
            lambda: self.document_store.bulk_upsert(transformed.documents),
            self.policy,
            description=f"[{entity}] write",
            retry_on=(StoreUnavailable,),
        )

        committed = transformed.without(error.document_id for error in upsert.rejected)
        result.rejected += len(upsert.rejected)
        result.changes += committed.changes
        result.issues += committed.issues
        result.events += committed.events

        last_commit_at = result.last_commit_at
        if committed.high_water_mark is not None:
            last_commit_at = max(last_commit_at, committed.high_water_mark)

        await with_backoff(
            lambda: self.checkpoint_store.advance(
                entity,
                last_commit_at,
                page.next_cursor,
                since if page.next_cursor is not None else None,
            ),
            self.policy,
            description=f"[{entity}] checkpoint advance",
            retry_on=(StoreUnavailable,),
        )
        result.last_commit_at = last_commit_at
