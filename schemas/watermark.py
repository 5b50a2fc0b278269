"""
Watermark values and watermark ranges.

A watermark is an ordered, comparable position in a source: an
auto-increment id, a timestamp, or an API cursor token. Cursor tokens are
opaque, so they are ordered by the page sequence they were reached at.
"""

from datetime import datetime, timezone
from functools import total_ordering
from typing import Any, Dict, Optional
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict

from models.base import WatermarkKind

_INT_OFFSET = 10 ** 19


def _parse_timestamp(value: Any) -> datetime:
    if hasattr(value, "to_pydatetime"):  # pandas.Timestamp
        value = value.to_pydatetime()
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@total_ordering
class Watermark(BaseModel):
    """Normalized watermark value. Compare only watermarks of the same kind."""

    model_config = ConfigDict(frozen=True)

    kind: WatermarkKind
    value: str
    sequence: int = 0

    @classmethod
    def of(cls, kind: WatermarkKind, value: Any, sequence: int = 0) -> "Watermark":
        """
        Build a watermark from a raw source value.

        Raises:
            ValueError: If the value cannot be interpreted as the given kind
        """
        kind = WatermarkKind(kind)
        if kind == WatermarkKind.INTEGER:
            if isinstance(value, float) and not value.is_integer():
                raise ValueError(f"Integer watermark expected, got {value!r}")
            normalized = str(int(value))
        elif kind == WatermarkKind.TIMESTAMP:
            normalized = _parse_timestamp(value).isoformat(timespec="microseconds")
        else:
            normalized = str(value)
        return cls(kind=kind, value=normalized, sequence=sequence)

    def sort_key(self):
        if self.kind == WatermarkKind.INTEGER:
            return int(self.value)
        if self.kind == WatermarkKind.TIMESTAMP:
            return _parse_timestamp(self.value)
        return self.sequence

    def sortable(self) -> str:
        """Order-preserving string encoding, used in SQL and storage keys."""
        if self.kind == WatermarkKind.INTEGER:
            number = int(self.value)
            if number >= 0:
                return f"1{number:019d}"
            return f"0{number + _INT_OFFSET:019d}"
        if self.kind == WatermarkKind.TIMESTAMP:
            return self.value
        return f"{self.sequence:012d}"

    def _check_kind(self, other: "Watermark"):
        if not isinstance(other, Watermark):
            return NotImplemented
        if other.kind != self.kind:
            raise TypeError(
                f"Cannot compare {self.kind.value} watermark with {other.kind.value} watermark"
            )
        return None

    def __lt__(self, other: "Watermark") -> bool:
        if self._check_kind(other) is NotImplemented:
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Watermark):
            return NotImplemented
        return (
            self.kind == other.kind
            and self.sort_key() == other.sort_key()
            and self.value == other.value
        )

    def __hash__(self) -> int:
        return hash((self.kind, self.value, self.sequence))

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "value": self.value, "sequence": self.sequence}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Watermark"]:
        if not data:
            return None
        return cls(kind=data["kind"], value=data["value"], sequence=data.get("sequence", 0))

    def __str__(self) -> str:
        if self.kind == WatermarkKind.CURSOR:
            return f"{self.value}#{self.sequence}"
        return self.value


class WatermarkRange(BaseModel):
    """
    Half-open extraction range: low < position <= high.

    low is the watermark the extraction started from (None for a first or
    full-refresh extraction); high is the last fully consumed position.
    """

    model_config = ConfigDict(frozen=True)

    low: Optional[Watermark] = None
    high: Watermark

    @property
    def low_key(self) -> str:
        return self.low.sortable() if self.low is not None else ""

    @property
    def high_key(self) -> str:
        return self.high.sortable()

    @property
    def is_empty(self) -> bool:
        return self.low is not None and self.low == self.high

    def storage_token(self) -> str:
        """Deterministic, path-safe token for object keys."""
        low = quote(self.low_key, safe="") or "start"
        return f"{low}__{quote(self.high_key, safe='')}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "low": self.low.to_dict() if self.low else None,
            "high": self.high.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WatermarkRange":
        return cls(low=Watermark.from_dict(data.get("low")), high=Watermark.from_dict(data["high"]))

    def __str__(self) -> str:
        return f"({self.low or ''}, {self.high}]"
