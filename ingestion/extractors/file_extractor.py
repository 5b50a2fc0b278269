"""
File batch extractor (CSV / JSON lines) with incremental loading
"""

import asyncio
import glob
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

import pandas as pd

from core.exceptions import ConfigurationError, SchemaMismatch, SourceUnavailable
from ingestion.base import Page, SourceExtractor
from schemas.watermark import Watermark

logger = logging.getLogger(__name__)


class FileGlobExtractor(SourceExtractor):
    """
    Extract records from every file matching a glob pattern.

    connection:
        pattern: Glob pattern, e.g. /data/orders/*.csv
        format:  "csv" (default) or "jsonl"

    Supports:
    - Incremental loading via the watermark column
    - Header normalization
    - Paging in batch_size chunks up to page_cap
    """

    FORMATS = ("csv", "jsonl")

    def __init__(self, source, timeout: Optional[float] = None):
        super().__init__(source, timeout)
        self.pattern = source.connection.get("pattern")
        self.file_format = source.connection.get("format", "csv")
        if not self.pattern:
            raise ConfigurationError(
                f"Source {source.source_id}: file_glob requires connection.pattern",
                context={"source_id": source.source_id}
            )
        if self.file_format not in self.FORMATS:
            raise ConfigurationError(
                f"Source {source.source_id}: unsupported file format {self.file_format}",
                context={"source_id": source.source_id, "format": self.file_format}
            )

    def matching_files(self) -> List[Path]:
        return [Path(p) for p in sorted(glob.glob(self.pattern)) if Path(p).is_file()]

    def _read_file(self, path: Path) -> pd.DataFrame:
        if self.file_format == "csv":
            df = pd.read_csv(path, dtype=str, keep_default_na=False)
        else:
            df = pd.read_json(path, lines=True, dtype=False, convert_dates=False)

        # Normalize column names (strip whitespace, lowercase)
        df.columns = df.columns.str.strip().str.lower().str.replace(' ', '_')
        return df

    def _read_all(self) -> List[Dict[str, Any]]:
        files = self.matching_files()
        if not files:
            logger.warning(f"No files match {self.pattern}")
            return []

        frames = []
        for path in files:
            logger.info(f"Reading {self.file_format} from {path}")
            try:
                frames.append(self._read_file(path))
            except (pd.errors.ParserError, pd.errors.EmptyDataError, ValueError) as e:
                raise SchemaMismatch(
                    f"Cannot parse {path}",
                    context={"source_id": self.source_id, "file_path": str(path)},
                    original_exception=e
                )
            except OSError as e:
                raise SourceUnavailable(
                    f"Cannot read {path}",
                    context={"source_id": self.source_id, "file_path": str(path)},
                    original_exception=e
                )

        df = pd.concat(frames, ignore_index=True)
        # NaN is not valid JSON
        df = df.astype(object).where(df.notna(), None)
        return df.to_dict(orient="records")

    def _select(
        self,
        records: List[Dict[str, Any]],
        from_watermark: Optional[Watermark]
    ) -> List[Dict[str, Any]]:
        if not self.source.incremental:
            return records

        positioned = [(self.source.record_watermark(r), i, r) for i, r in enumerate(records)]
        if from_watermark is not None:
            positioned = [p for p in positioned if p[0] > from_watermark]
        positioned.sort(key=lambda p: (p[0].sort_key(), p[1]))
        return [r for _, _, r in positioned]

    async def read_pages(self, from_watermark: Optional[Watermark]) -> AsyncIterator[Page]:
        records = await asyncio.to_thread(self._read_all)
        records = self._select(records, from_watermark)

        batch_size = self.source.batch_size
        start = 0
        for _ in range(self.source.page_cap):
            chunk = records[start:start + batch_size]
            if not chunk:
                break
            end = start + len(chunk)
            if self.source.incremental and end < len(records):
                trimmed = self.trim_trailing_ties(chunk, records[end])
                if not trimmed:
                    # Extend a single tie group to its last record
                    last = self.source.record_watermark(chunk[-1])
                    while end < len(records) and self.source.record_watermark(records[end]) == last:
                        end += 1
                    trimmed = records[start:end]
                chunk = trimmed

            watermark = self.page_watermark(chunk) if self.source.incremental else None
            yield Page(records=chunk, watermark=watermark)
            start += len(chunk)

        logger.info(f"Read {start} of {len(records)} new records from {self.pattern}")
