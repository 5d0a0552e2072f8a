import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import Column, DateTime, MetaData, String, Table, text
from sqlalchemy.dialects.postgresql import JSONB, insert
from sqlalchemy.exc import DataError, DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from changecrawler.domain.exceptions import StoreRejected, StoreUnavailable
from changecrawler.domain.models import Document

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 500
DEFAULT_WRITE_TIMEOUT = 30.0
# Keep single statements well under the server's request limits
MAX_DOCUMENT_BYTES = 1_000_000

# SQLAlchemy core Table definitions
metadata = MetaData()
documents_table = Table(
    'crawled_documents', metadata,
    Column('id', String, primary_key=True),
    Column('doc_type', String, nullable=False, index=True),
    Column('on_id', String, nullable=True, index=True),
    Column('author_muid', String, nullable=False),
    Column('activity_at', DateTime(timezone=True), nullable=False),
    Column('body', JSONB, nullable=False),
    Column('crawled_at', DateTime(timezone=True), server_default=text('NOW()')),
)


@dataclass
class UpsertResult:
    committed: int = 0
    rejected: List[StoreRejected] = field(default_factory=list)


class PostgresStore:
    """
    Shared engine handling: every statement runs in its own transaction,
    under a timeout, with driver failures mapped to StoreUnavailable.
    """

    def __init__(
        self,
        db_url: Optional[str] = None,
        engine: Optional[AsyncEngine] = None,
        write_timeout: float = DEFAULT_WRITE_TIMEOUT,
    ):
        self.engine = engine if engine is not None else create_async_engine(db_url, echo=False)
        self.write_timeout = write_timeout

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def _run(self, stmt) -> Any:
        async with self.engine.begin() as conn:
            return await conn.execute(stmt)

    async def execute(self, stmt) -> Any:
        try:
            return await asyncio.wait_for(self._run(stmt), timeout=self.write_timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailable(f"Store did not answer within {self.write_timeout:.0f}s.") from e
        except (OperationalError, InterfaceError, OSError) as e:
            raise StoreUnavailable(f"Store unavailable: {e}") from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise StoreUnavailable(f"Store connection lost: {e}") from e
            raise


class PostgresDocumentStore(PostgresStore):
    """
    Idempotent writer for normalized documents.
    Each document's deterministic id is the upsert key, so repeated delivery
    overwrites in place.
    """

    def __init__(
        self,
        db_url: Optional[str] = None,
        engine: Optional[AsyncEngine] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        write_timeout: float = DEFAULT_WRITE_TIMEOUT,
    ):
        super().__init__(db_url=db_url, engine=engine, write_timeout=write_timeout)
        self.batch_size = batch_size

    @staticmethod
    def to_row(document: Document) -> Dict[str, Any]:
        """
        Serializes a document into a table row.

        Raises:
            StoreRejected: If the document cannot be stored as JSONB.
        """
        body = document.model_dump(mode="json")
        encoded = json.dumps(body)
        if "\\u0000" in encoded:
            raise StoreRejected(document.id, "JSONB cannot hold NUL characters")
        if len(encoded.encode("utf-8")) > MAX_DOCUMENT_BYTES:
            raise StoreRejected(document.id, f"document larger than {MAX_DOCUMENT_BYTES} bytes")
        return {
            'id': document.id,
            'doc_type': document.doc_type,
            'on_id': document.on_id,
            'author_muid': document.author.muid,
            'activity_at': document.activity_at,
            'body': body,
        }

    @staticmethod
    def build_upsert(rows: List[Dict[str, Any]]):
        stmt = insert(documents_table).values(rows)

        # Only rewrite rows whose content changed, so re-delivery is a no-op.
        return stmt.on_conflict_do_update(
            index_elements=['id'],
            set_={
                'doc_type': stmt.excluded.doc_type,
                'on_id': stmt.excluded.on_id,
                'author_muid': stmt.excluded.author_muid,
                'activity_at': stmt.excluded.activity_at,
                'body': stmt.excluded.body,
                'crawled_at': text('NOW()'),
            },
            where=documents_table.c.body.is_distinct_from(stmt.excluded.body),
        )

    async def bulk_upsert(self, documents: Iterable[Document]) -> UpsertResult:
        """
        Upserts documents in batches of at most batch_size rows.

        Documents the store refuses are dropped and reported in the result;
        the rest of their batch still commits.

        Raises:
            StoreUnavailable: If a batch cannot be written. Earlier batches
                stay committed, which is safe because writes are idempotent.
        """
        result = UpsertResult()
        rows: Dict[str, Dict[str, Any]] = {}
        for document in documents:
            try:
                rows[document.id] = self.to_row(document)
            except StoreRejected as e:
                logger.warning(str(e))
                result.rejected.append(e)

        pending = list(rows.values())
        for start in range(0, len(pending), self.batch_size):
            batch = pending[start:start + self.batch_size]
            result.committed += await self._write_batch(batch, result.rejected)
        return result

    async def _write_batch(self, batch: List[Dict[str, Any]], rejected: List[StoreRejected]) -> int:
        try:
            await self.execute(self.build_upsert(batch))
            return len(batch)
        except (DataError, IntegrityError) as e:
            if len(batch) == 1:
                error = StoreRejected(batch[0]['id'], str(getattr(e, 'orig', e)))
                logger.warning(str(error))
                rejected.append(error)
                return 0
            # Isolate the offending documents one row at a time
            logger.warning(f"Batch of {len(batch)} documents refused ({type(e).__name__}). Retrying row by row.")
            committed = 0
            for row in batch:
                committed += await self._write_batch([row], rejected)
            return committed
