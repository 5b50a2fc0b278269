"""
Pydantic schemas for staged objects
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from schemas.watermark import WatermarkRange


class StagedRecord(BaseModel):
    """One line of a staged payload"""

    key: str
    position: Optional[str] = None
    extracted_at: datetime
    data: Dict[str, Any]


class StagedManifest(BaseModel):
    """
    Immutable description of a committed staged object.

    A visible manifest implies a complete payload whose SHA-256 equals
    checksum.
    """

    source_id: str
    watermark_range: WatermarkRange
    data_key: str
    manifest_key: str
    checksum: str = Field(..., min_length=64, max_length=64)
    row_count: int = Field(..., ge=0)
    extracted_at: datetime
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def range_low(self) -> str:
        return self.watermark_range.low_key

    @property
    def range_high(self) -> str:
        return self.watermark_range.high_key
