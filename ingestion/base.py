"""
Abstract base class for source extractors
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
import asyncio
import logging

from core.exceptions import ETLException, SourceUnavailable
from schemas.source import SourceConfig
from schemas.watermark import Watermark

logger = logging.getLogger(__name__)


@dataclass
class Page:
    """A bounded chunk of records and the position reached after it"""
    records: List[Dict[str, Any]]
    watermark: Optional[Watermark]
    cursor: Optional[str] = None


@dataclass
class Extraction:
    """
    Lazy, finite sequence of records read from one source.

    Iterating yields records; `watermark` always holds the position of the
    last *fully consumed* page, so when iteration fails mid-way it is the
    point a retry can resume from.
    """
    source: SourceConfig
    from_watermark: Optional[Watermark]
    _pages: AsyncIterator[Page]
    watermark: Optional[Watermark] = None
    pages_consumed: int = 0
    records_consumed: int = 0
    consumed: List[Dict[str, Any]] = field(default_factory=list, repr=False)

    def __post_init__(self):
        if self.watermark is None:
            self.watermark = self.from_watermark

    async def pages(self) -> AsyncIterator[Page]:
        async for page in self._pages:
            yield page
            # Only reached once the consumer asked for the next page
            self.consumed.extend(page.records)
            self.records_consumed += len(page.records)
            self.pages_consumed += 1
            if page.watermark is not None:
                self.watermark = page.watermark

    def __aiter__(self):
        return self._records()

    async def _records(self):
        async for page in self.pages():
            for record in page.records:
                yield record

    async def collect(self) -> Tuple[List[Dict[str, Any]], Optional[Watermark]]:
        """Drain the extraction; returns (records, new watermark)"""
        try:
            async for _ in self.pages():
                pass
        except SourceUnavailable as e:
            # Expose what was fully consumed so the caller can spool it
            if e.resume_watermark is None:
                e.resume_watermark = self.watermark
            if not e.records:
                e.records = list(self.consumed)
            raise
        return list(self.consumed), self.watermark


class SourceExtractor(ABC):
    """
    Abstract base class for all source adapters.

    Responsibilities:
    - Read records strictly after a watermark, in watermark order
    - Bound every extraction (batch size, page cap)
    - Report unreachable sources as SourceUnavailable and contract
      violations as SchemaMismatch

    Adapters differ only in how they read pages; the orchestrator consumes
    the same extract() contract for every source type.
    """

    def __init__(self, source: SourceConfig, timeout: Optional[float] = None):
        self.source = source
        self.timeout = timeout

    @property
    def source_id(self) -> str:
        return self.source.source_id

    @abstractmethod
    def read_pages(self, from_watermark: Optional[Watermark]) -> AsyncIterator[Page]:
        """
        Yield pages of records after from_watermark.

        Args:
            from_watermark: Last loaded position (None: from the beginning)
        """
        pass

    def extract(self, from_watermark: Optional[Watermark] = None) -> Extraction:
        """Start a bounded, resumable extraction"""
        if not self.source.incremental:
            from_watermark = None

        logger.info(
            f"Starting extraction for {self.source_id} "
            f"(watermark: {from_watermark})"
        )
        return Extraction(
            source=self.source,
            from_watermark=from_watermark,
            _pages=self._guarded_pages(from_watermark),
        )

    async def _guarded_pages(self, from_watermark: Optional[Watermark]) -> AsyncIterator[Page]:
        """Apply the per-page deadline and wrap unexpected errors"""
        pages = self.read_pages(from_watermark).__aiter__()
        while True:
            try:
                if self.timeout:
                    page = await asyncio.wait_for(pages.__anext__(), timeout=self.timeout)
                else:
                    page = await pages.__anext__()
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError as e:
                raise SourceUnavailable(
                    f"Extraction from {self.source_id} exceeded deadline",
                    context={"source_id": self.source_id, "timeout": self.timeout},
                    original_exception=e
                )
            except ETLException:
                raise
            except (OSError, ConnectionError) as e:
                raise SourceUnavailable(
                    f"Source {self.source_id} is unreachable",
                    context={"source_id": self.source_id, "from_watermark": str(from_watermark)},
                    original_exception=e
                )
            yield page

    def page_watermark(self, records: List[Dict[str, Any]]) -> Optional[Watermark]:
        """Highest record position in a page (non-cursor sources)"""
        positions = [self.source.record_watermark(r) for r in records]
        positions = [p for p in positions if p is not None]
        return max(positions) if positions else None

    def trim_trailing_ties(
        self,
        records: List[Dict[str, Any]],
        next_record: Optional[Dict[str, Any]]
    ) -> List[Dict[str, Any]]:
        """
        Drop the trailing group of records sharing the page's last position
        when the group continues past the page (into next_record).

        Keyset paging reads `position > watermark`; a page cut inside a
        group of equal positions would otherwise skip the rest of the group.
        The dropped records are read again by the next page. When the whole
        page is one such group an empty list is returned, and the caller
        must read the group in full before moving the watermark past it.
        """
        if not records or next_record is None:
            return records
        last = self.source.record_watermark(records[-1])
        if self.source.record_watermark(next_record) != last:
            return records
        cut = len(records)
        while cut > 0 and self.source.record_watermark(records[cut - 1]) == last:
            cut -= 1
        return records[:cut]
