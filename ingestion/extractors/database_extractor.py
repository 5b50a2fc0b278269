"""
Relational table extractor with keyset pagination on the watermark column
"""

from typing import Any, AsyncIterator, Optional
from datetime import datetime
import logging

from sqlalchemy import column, literal_column, select, table
from sqlalchemy.exc import DBAPIError, NoSuchTableError, OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from core.exceptions import ConfigurationError, SchemaMismatch, SourceUnavailable
from ingestion.base import Page, SourceExtractor
from models.base import WatermarkKind
from schemas.watermark import Watermark

logger = logging.getLogger(__name__)


class DatabaseTableExtractor(SourceExtractor):
    """
    Extract rows from a database table.

    connection:
        url:    SQLAlchemy async URL of the source database
        table:  Table name
        schema: Optional schema name

    Incremental reads use `WHERE <watermark_field> > :watermark ORDER BY
    <watermark_field> LIMIT batch_size`, page after page up to page_cap.
    Full refresh pages through the table ordered by primary key.
    """

    def __init__(self, source, timeout: Optional[float] = None, engine=None):
        super().__init__(source, timeout)
        self.url = source.connection.get("url")
        self.table_name = source.connection.get("table")
        self.schema = source.connection.get("schema")
        if not self.table_name or (engine is None and not self.url):
            raise ConfigurationError(
                f"Source {source.source_id}: database_table requires connection.url and connection.table",
                context={"source_id": source.source_id}
            )
        self._engine = engine

    def _native(self, watermark: Watermark) -> Any:
        if watermark.kind == WatermarkKind.INTEGER:
            return int(watermark.value)
        if watermark.kind == WatermarkKind.TIMESTAMP:
            return datetime.fromisoformat(watermark.value)
        return watermark.value

    def _query(self, after: Optional[Watermark], offset: int):
        tbl = table(self.table_name, schema=self.schema)
        stmt = select(literal_column("*")).select_from(tbl)

        if self.source.incremental:
            field = column(self.source.watermark_field)
            if after is not None:
                stmt = stmt.where(field > self._native(after))
            stmt = stmt.order_by(field)
        else:
            stmt = stmt.order_by(*[column(k) for k in self.source.primary_key]).offset(offset)

        # One extra row tells whether another page follows
        return stmt.limit(self.source.batch_size + 1)

    def _group_query(self, position: Watermark):
        """Every row sharing one watermark value"""
        tbl = table(self.table_name, schema=self.schema)
        return (
            select(literal_column("*"))
            .select_from(tbl)
            .where(column(self.source.watermark_field) == self._native(position))
            .order_by(*[column(k) for k in self.source.primary_key])
        )

    async def read_pages(self, from_watermark: Optional[Watermark]) -> AsyncIterator[Page]:
        engine = self._engine or create_async_engine(self.url, poolclass=NullPool)
        batch_size = self.source.batch_size
        after = from_watermark
        offset = 0

        try:
            async with engine.connect() as conn:
                for page_number in range(self.source.page_cap):
                    result = await conn.execute(self._query(after, offset))
                    rows = [dict(row) for row in result.mappings().all()]
                    if not rows:
                        break

                    records = rows[:batch_size]
                    full_page = len(rows) > batch_size
                    if self.source.incremental and full_page:
                        trimmed = self.trim_trailing_ties(records, rows[batch_size])
                        if not trimmed:
                            # The page is one group of equal positions; read all of it
                            position = self.source.record_watermark(records[-1])
                            group = await conn.execute(self._group_query(position))
                            trimmed = [dict(row) for row in group.mappings().all()]
                        records = trimmed

                    watermark = self.page_watermark(records) if self.source.incremental else None
                    logger.debug(
                        f"Read {len(records)} rows from {self.table_name} "
                        f"(page {page_number + 1}, watermark {watermark})"
                    )
                    yield Page(records=records, watermark=watermark)

                    if not full_page:
                        break
                    after = watermark
                    offset += len(records)

        except (NoSuchTableError, ProgrammingError) as e:
            raise SchemaMismatch(
                f"Table {self.table_name} does not match the expected contract",
                context={"source_id": self.source_id, "table": self.table_name},
                original_exception=e
            )
        except (OperationalError, DBAPIError, OSError) as e:
            raise SourceUnavailable(
                f"Source database for {self.source_id} is unavailable",
                context={
                    "source_id": self.source_id,
                    "table": self.table_name,
                    "from_watermark": str(from_watermark)
                },
                original_exception=e
            )
        finally:
            if self._engine is None:
                await engine.dispose()
