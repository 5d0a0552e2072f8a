import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import Column, DateTime, Integer, String, Table, Text, and_, func, select, text, update
from sqlalchemy.dialects.postgresql import insert

from changecrawler.domain.models import CrawlerEntity, CrawlState, CrawlStatus, EntityKey
from changecrawler.infrastructure.database import PostgresStore, metadata

logger = logging.getLogger(__name__)

crawler_states_table = Table(
    'crawler_states', metadata,
    Column('workspace', String, primary_key=True),
    Column('crawler', String, primary_key=True),
    Column('entity_kind', String, primary_key=True),
    Column('name', String, primary_key=True),
    Column('last_commit_at', DateTime(timezone=True), nullable=False),
    Column('status', String, nullable=False, server_default=CrawlStatus.IDLE.value),
    Column('error_message', Text, nullable=True),
    Column('pagination_cursor', Text, nullable=True),
    Column('cursor_since', DateTime(timezone=True), nullable=True),
    Column('consecutive_failures', Integer, nullable=False, server_default=text('0')),
    Column('last_attempt_at', DateTime(timezone=True), nullable=True),
    Column('updated_at', DateTime(timezone=True), server_default=text('NOW()')),
)

_c = crawler_states_table.c


def _key_values(key: EntityKey) -> Dict[str, str]:
    return {'workspace': key.workspace, 'crawler': key.crawler, 'entity_kind': key.kind, 'name': key.name}


def _key_clause(key: EntityKey):
    return and_(
        _c.workspace == key.workspace,
        _c.crawler == key.crawler,
        _c.entity_kind == key.kind,
        _c.name == key.name,
    )


def _to_state(row: Any) -> CrawlState:
    return CrawlState(
        last_commit_at=row['last_commit_at'],
        status=CrawlStatus(row['status']),
        error_message=row['error_message'],
        pagination_cursor=row['pagination_cursor'],
        cursor_since=row['cursor_since'],
        consecutive_failures=row['consecutive_failures'],
        last_attempt_at=row['last_attempt_at'],
    )


class PostgresCheckpointStore(PostgresStore):
    """
    Persists one CrawlState row per crawler entity.
    Each entity is owned by a single in-flight worker, so rows are never
    contended; last_commit_at only moves forward, enforced in SQL.
    """

    def _upsert(self, entity: CrawlerEntity, values: Dict[str, Any], set_: Dict[str, Any]):
        row = {**_key_values(entity.key), 'last_commit_at': entity.update_since, **values}
        stmt = insert(crawler_states_table).values(row)
        return stmt.on_conflict_do_update(
            index_elements=['workspace', 'crawler', 'entity_kind', 'name'],
            set_={**set_, 'updated_at': text('NOW()')},
        )

    async def ensure(self, entity: CrawlerEntity) -> None:
        """Creates the entity's row from its configured update_since if missing."""
        stmt = insert(crawler_states_table).values(
            {**_key_values(entity.key), 'last_commit_at': entity.update_since}
        ).on_conflict_do_nothing(index_elements=['workspace', 'crawler', 'entity_kind', 'name'])
        await self.execute(stmt)

    async def get(self, entity: CrawlerEntity) -> CrawlState:
        result = await self.execute(select(crawler_states_table).where(_key_clause(entity.key)))
        row = result.mappings().first()
        if row is None:
            return CrawlState(last_commit_at=entity.update_since)
        return _to_state(row)

    def build_advance(
        self,
        entity: CrawlerEntity,
        last_commit_at: datetime,
        cursor: Optional[str],
        cursor_since: Optional[datetime],
    ):
        stmt = insert(crawler_states_table).values({
            **_key_values(entity.key),
            'last_commit_at': last_commit_at,
            'pagination_cursor': cursor,
            'cursor_since': cursor_since,
        })
        return stmt.on_conflict_do_update(
            index_elements=['workspace', 'crawler', 'entity_kind', 'name'],
            set_={
                'last_commit_at': func.greatest(_c.last_commit_at, stmt.excluded.last_commit_at),
                'pagination_cursor': stmt.excluded.pagination_cursor,
                'cursor_since': stmt.excluded.cursor_since,
                'updated_at': text('NOW()'),
            },
        )

    async def advance(
        self,
        entity: CrawlerEntity,
        last_commit_at: datetime,
        cursor: Optional[str],
        cursor_since: Optional[datetime],
    ) -> None:
        """Persists the crawl position reached after a fully committed page."""
        await self.execute(self.build_advance(entity, last_commit_at, cursor, cursor_since))

    async def mark_running(self, entity: CrawlerEntity, at: Optional[datetime] = None) -> None:
        at = at or datetime.now(timezone.utc)
        values = {'status': CrawlStatus.RUNNING.value, 'last_attempt_at': at}
        await self.execute(self._upsert(entity, values, values))

    async def mark_idle(
        self, entity: CrawlerEntity, succeeded: bool = True, error_message: Optional[str] = None,
    ) -> None:
        values: Dict[str, Any] = {'status': CrawlStatus.IDLE.value}
        if succeeded:
            values.update({'error_message': error_message, 'consecutive_failures': 0})
        await self.execute(self._upsert(entity, values, values))

    def build_mark_errored(self, entity: CrawlerEntity, message: str):
        return self._upsert(
            entity,
            {'status': CrawlStatus.ERRORED.value, 'error_message': message, 'consecutive_failures': 1},
            {
                'status': CrawlStatus.ERRORED.value,
                'error_message': message,
                'consecutive_failures': _c.consecutive_failures + 1,
            },
        )

    async def mark_errored(self, entity: CrawlerEntity, message: str) -> None:
        await self.execute(self.build_mark_errored(entity, message))

    async def recover_running(self) -> int:
        """Resets entities left running by a process that died mid-crawl."""
        result = await self.execute(
            update(crawler_states_table)
            .where(_c.status == CrawlStatus.RUNNING.value)
            .values(status=CrawlStatus.IDLE.value, updated_at=text('NOW()'))
        )
        count = result.rowcount or 0
        if count:
            logger.warning(f"Recovered {count} crawler entities left running by a previous process.")
        return count

    async def reset(self, key: EntityKey) -> bool:
        """Clears an errored entity and makes it due on the next poll."""
        result = await self.execute(
            update(crawler_states_table)
            .where(_key_clause(key))
            .values(
                status=CrawlStatus.IDLE.value,
                error_message=None,
                consecutive_failures=0,
                last_attempt_at=None,
                updated_at=text('NOW()'),
            )
        )
        return bool(result.rowcount)

    async def list_states(self) -> List[Tuple[EntityKey, CrawlState]]:
        result = await self.execute(
            select(crawler_states_table).order_by(_c.workspace, _c.crawler, _c.entity_kind, _c.name)
        )
        return [
            (EntityKey(row['workspace'], row['crawler'], row['entity_kind'], row['name']), _to_state(row))
            for row in result.mappings().all()
        ]
