import asyncio
import logging
import traceback
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Dict, Iterable, List, Optional, Set, Tuple

import aiohttp

from changecrawler.application.crawler_service import CrawlerService
from changecrawler.domain.exceptions import CrawlCancelled, CrawlerException
from changecrawler.domain.models import CrawlerEntity, CrawlResult, CrawlState, CrawlStatus, EntityKey
from changecrawler.infrastructure.checkpoint_store import PostgresCheckpointStore

logger = logging.getLogger(__name__)

# Limit concurrent connections to avoid overwhelming provider servers
CONNECTOR_LIMIT = 10
DEFAULT_CONCURRENCY = 4
DEFAULT_POLL_INTERVAL = 60.0
DEFAULT_MAX_FAILURES = 5


def default_session_factory() -> aiohttp.ClientSession:
    return aiohttp.ClientSession(connector=aiohttp.TCPConnector(limit=CONNECTOR_LIMIT))


class CrawlScheduler:
    """
    Polls crawler entities and dispatches the due ones to a fixed pool of
    worker tasks. An entity is never in flight on two workers at once.
    """

    def __init__(
        self,
        entities: Iterable[CrawlerEntity],
        crawler_service: CrawlerService,
        checkpoint_store: PostgresCheckpointStore,
        concurrency: int = DEFAULT_CONCURRENCY,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_consecutive_failures: int = DEFAULT_MAX_FAILURES,
        drain_timeout: Optional[float] = None,
        session_factory: Callable[[], aiohttp.ClientSession] = default_session_factory,
    ):
        self.entities: List[CrawlerEntity] = list(entities)
        self.crawler_service = crawler_service
        self.checkpoint_store = checkpoint_store
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.max_consecutive_failures = max_consecutive_failures
        self.drain_timeout = drain_timeout
        self.session_factory = session_factory

        self.results: Dict[EntityKey, CrawlResult] = {}
        self._queue: "asyncio.Queue[CrawlerEntity]" = asyncio.Queue()
        self._in_flight: Set[EntityKey] = set()
        self._cancel_event = asyncio.Event()
        self._session: Optional[aiohttp.ClientSession] = None

    def is_due(self, entity: CrawlerEntity, state: CrawlState, now: datetime) -> bool:
        if entity.key in self._in_flight or state.status == CrawlStatus.RUNNING:
            return False
        if state.status == CrawlStatus.ERRORED:
            return state.consecutive_failures < self.max_consecutive_failures
        if state.last_attempt_at is None:
            return True
        return now - state.last_attempt_at >= timedelta(seconds=entity.crawl_interval)

    async def poll_once(self, now: Optional[datetime] = None) -> int:
        """Marks every due entity running and queues it. Returns the number dispatched."""
        now = now or datetime.now(timezone.utc)
        states = dict(await self.checkpoint_store.list_states())
        dispatched = 0
        for entity in self.entities:
            state = states.get(entity.key) or CrawlState(last_commit_at=entity.update_since)
            if not self.is_due(entity, state, now):
                continue
            await self.checkpoint_store.mark_running(entity, at=now)
            self._in_flight.add(entity.key)
            self._queue.put_nowait(entity)
            dispatched += 1
        if dispatched:
            logger.info(f"Dispatched {dispatched} crawler entities ({len(self._in_flight)} in flight).")
        return dispatched

    async def run(self, stop_event: asyncio.Event) -> None:
        """Polls every poll_interval seconds until stop_event is set, then drains the pool."""
        async with self._pool():
            while not stop_event.is_set():
                try:
                    await self.poll_once()
                except CrawlerException as e:
                    logger.error(f"Poll failed: {e}")
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
            logger.info("Stop requested. Cancelling crawls at the next page boundary.")

    async def run_once(self) -> Dict[EntityKey, CrawlResult]:
        """Dispatches every due entity once and waits until all of them are done."""
        async with self._pool():
            await self.poll_once()
            await self._queue.join()
        return self.results

    async def status(self) -> List[Tuple[EntityKey, CrawlState]]:
        return await self.checkpoint_store.list_states()

    async def reset(self, key: EntityKey) -> bool:
        found = await self.checkpoint_store.reset(key)
        if found:
            logger.info(f"[{key}] Reset; due on the next poll.")
        else:
            logger.warning(f"[{key}] No crawl state to reset.")
        return found

    @asynccontextmanager
    async def _pool(self) -> AsyncIterator[None]:
        await self.checkpoint_store.recover_running()
        for entity in self.entities:
            await self.checkpoint_store.ensure(entity)

        self._cancel_event.clear()
        async with self.session_factory() as session:
            self._session = session
            workers = [asyncio.create_task(self._worker(n)) for n in range(self.concurrency)]
            try:
                yield
            finally:
                self._cancel_event.set()
                try:
                    await asyncio.wait_for(self._queue.join(), timeout=self.drain_timeout)
                except asyncio.TimeoutError:
                    logger.warning(f"{len(self._in_flight)} crawls still running after drain timeout.")
                for worker in workers:
                    worker.cancel()
                await asyncio.gather(*workers, return_exceptions=True)
                self._session = None

    async def _worker(self, n: int) -> None:
        while True:
            entity = await self._queue.get()
            try:
                await self._crawl(entity)
            finally:
                self._in_flight.discard(entity.key)
                self._queue.task_done()

    async def _crawl(self, entity: CrawlerEntity) -> None:
        try:
            result = await self.crawler_service.crawl_entity(self._session, entity, self._cancel_event)
        except CrawlCancelled as e:
            logger.info(str(e))
            await self._set_status(self.checkpoint_store.mark_idle(entity, succeeded=False), entity)
        except CrawlerException as e:
            logger.error(f"[{entity}] Crawl failed: {type(e).__name__}: {e}")
            await self._set_status(self.checkpoint_store.mark_errored(entity, f"{type(e).__name__}: {e}"), entity)
        except Exception as e:
            logger.exception(f"[{entity}] Unexpected error during crawl: {e}")
            message = "".join(traceback.format_exception_only(type(e), e)).strip()
            await self._set_status(self.checkpoint_store.mark_errored(entity, message), entity)
        else:
            self.results[entity.key] = result
            message = None
            if result.schema_errors:
                message = f"SchemaError: skipped {result.schema_errors} unreadable page(s)"
                logger.warning(f"[{entity}] {message}.")
            await self._set_status(self.checkpoint_store.mark_idle(entity, error_message=message), entity)

    @staticmethod
    async def _set_status(update, entity: CrawlerEntity) -> None:
        # A row left running is recovered at the next startup
        try:
            await update
        except CrawlerException as e:
            logger.error(f"[{entity}] Could not record crawl status: {e}")
