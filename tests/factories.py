"""
Test doubles and record factories shared by the test modules
"""

from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional

from core.exceptions import SourceUnavailable
from ingestion.base import Page, SourceExtractor
from models.base import SourceType, WatermarkKind
from schemas.source import SourceConfig
from schemas.watermark import Watermark


class FakeClock:
    """Controllable replacement for datetime.utcnow"""

    def __init__(self, start: datetime = datetime(2024, 1, 15, 10, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class ListExtractor(SourceExtractor):
    """
    Extractor over an in-memory list, paged by batch_size.

    fail_times: how many extract() attempts raise SourceUnavailable
    fail_after_pages: pages yielded before the failure
    """

    def __init__(
        self,
        source: SourceConfig,
        records: List[Dict[str, Any]],
        fail_times: int = 0,
        fail_after_pages: int = 0,
        timeout: Optional[float] = None
    ):
        super().__init__(source, timeout)
        self.records = records
        self.fail_times = fail_times
        self.fail_after_pages = fail_after_pages
        self.calls: List[Optional[Watermark]] = []

    async def read_pages(self, from_watermark: Optional[Watermark]) -> AsyncIterator[Page]:
        self.calls.append(from_watermark)
        failing = len(self.calls) <= self.fail_times

        selected = [
            r for r in self.records
            if from_watermark is None or self.source.record_watermark(r) > from_watermark
        ]
        size = self.source.batch_size
        for number, start in enumerate(range(0, len(selected), size)):
            if failing and number == self.fail_after_pages:
                raise SourceUnavailable(
                    f"{self.source_id} connection reset",
                    context={"source_id": self.source_id}
                )
            chunk = selected[start:start + size]
            yield Page(records=chunk, watermark=self.page_watermark(chunk))
        if failing and len(selected) <= self.fail_after_pages * size:
            raise SourceUnavailable(
                f"{self.source_id} connection reset",
                context={"source_id": self.source_id}
            )


def make_source(source_id: str = "orders", **overrides) -> SourceConfig:
    fields = {
        "source_id": source_id,
        "source_type": SourceType.DATABASE_TABLE,
        "connection": {"url": "sqlite+aiosqlite://", "table": source_id},
        "watermark_field": "id",
        "watermark_kind": WatermarkKind.INTEGER,
        "primary_key": ["id"],
        "batch_size": 100,
        "page_cap": 10,
    }
    fields.update(overrides)
    return SourceConfig(**fields)


def order_rows(first: int, last: int, **extra) -> List[Dict[str, Any]]:
    return [{"id": i, "amount": i * 10, **extra} for i in range(first, last + 1)]


