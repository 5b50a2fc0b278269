"""
Pydantic schemas for sources, transforms and run requests.

A pipeline definition (YAML) lists sources and transforms; every trigger
(schedule, file sensor, manual API call) turns it into a RunRequest that is
handed to TaskScheduler.submit().
"""

from pathlib import Path
from typing import Any, Dict, List, Optional
from datetime import datetime

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from core.config import settings
from core.exceptions import ConfigurationError, SchemaMismatch
from models.base import ExtractionMode, SourceType, TriggerType, WatermarkKind
from schemas.watermark import Watermark


class SourceConfig(BaseModel):
    """
    Source definition.

    connection is opaque to the orchestrator and owned by the adapter:
        database_table: {"url": ..., "table": ..., "schema": ...}
        file_glob:      {"pattern": ..., "format": "csv" | "jsonl"}
        api_endpoint:   {"url": ..., "api_key": ..., "cursor_param": ..., ...}
    """

    source_id: str = Field(..., min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_.\-]+$")
    source_type: SourceType
    connection: Dict[str, Any] = Field(default_factory=dict)
    extraction_mode: ExtractionMode = ExtractionMode.INCREMENTAL

    watermark_field: Optional[str] = None
    watermark_kind: WatermarkKind = WatermarkKind.INTEGER
    primary_key: List[str] = Field(default_factory=lambda: ["id"], min_length=1)
    extracted_at_field: Optional[str] = None

    batch_size: int = Field(default_factory=lambda: settings.ETL_BATCH_SIZE, gt=0)
    page_cap: int = Field(default_factory=lambda: settings.ETL_PAGE_CAP, gt=0)

    @model_validator(mode="after")
    def check_watermark_settings(self):
        """Incremental, non-cursor sources need a field to read positions from"""
        if (
            self.extraction_mode == ExtractionMode.INCREMENTAL
            and self.watermark_kind != WatermarkKind.CURSOR
            and not self.watermark_field
        ):
            raise ValueError(
                f"Source {self.source_id}: incremental {self.watermark_kind.value} "
                "extraction requires watermark_field"
            )
        if self.source_type == SourceType.API_ENDPOINT and "url" not in self.connection:
            raise ValueError(f"Source {self.source_id}: api_endpoint requires connection.url")
        return self

    @property
    def incremental(self) -> bool:
        return self.extraction_mode == ExtractionMode.INCREMENTAL

    def record_key(self, record: Dict[str, Any]) -> str:
        """Joined primary key of a record"""
        parts = []
        for field in self.primary_key:
            value = record.get(field)
            if value is None or value == "":
                raise SchemaMismatch(
                    f"Record is missing primary key field '{field}'",
                    context={"source_id": self.source_id, "field_name": field}
                )
            parts.append(str(value))
        return "|".join(parts)

    def record_watermark(self, record: Dict[str, Any]) -> Optional[Watermark]:
        """Position of a record, or None for cursor-paginated sources"""
        if self.watermark_kind == WatermarkKind.CURSOR or not self.watermark_field:
            return None
        value = record.get(self.watermark_field)
        if value is None or value == "":
            raise SchemaMismatch(
                f"Record is missing watermark field '{self.watermark_field}'",
                context={"source_id": self.source_id, "field_name": self.watermark_field}
            )
        try:
            return Watermark.of(self.watermark_kind, value)
        except (TypeError, ValueError) as e:
            raise SchemaMismatch(
                f"Watermark field '{self.watermark_field}' is not a valid {self.watermark_kind.value}",
                context={
                    "source_id": self.source_id,
                    "field_name": self.watermark_field,
                    "field_value": value
                },
                original_exception=e
            )


class TransformConfig(BaseModel):
    """SQL transformation executed once all loads it depends on succeeded"""

    name: str = Field(..., min_length=1, max_length=100)
    sql: List[str] = Field(..., min_length=1)
    depends_on_sources: Optional[List[str]] = None  # None: every source of the run


class RunRequest(BaseModel):
    """One trigger's worth of work"""

    sources: List[SourceConfig] = Field(..., min_length=1)
    transforms: List[TransformConfig] = Field(default_factory=list)
    trigger: TriggerType = TriggerType.MANUAL
    trigger_ref: Optional[str] = None
    logical_date: Optional[datetime] = None
    max_attempts: Optional[int] = Field(None, gt=0)

    @field_validator("sources")
    @classmethod
    def unique_sources(cls, v):
        ids = [s.source_id for s in v]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate source ids in run: {duplicates}")
        return v

    @model_validator(mode="after")
    def transforms_reference_known_sources(self):
        known = {s.source_id for s in self.sources}
        for transform in self.transforms:
            missing = set(transform.depends_on_sources or []) - known
            if missing:
                raise ValueError(
                    f"Transform {transform.name} depends on unknown sources: {sorted(missing)}"
                )
        return self


class PipelineDefinition(BaseModel):
    """Contents of the pipeline YAML file"""

    sources: List[SourceConfig] = Field(..., min_length=1)
    transforms: List[TransformConfig] = Field(default_factory=list)

    def to_run_request(
        self,
        trigger: TriggerType,
        trigger_ref: Optional[str] = None,
        source_ids: Optional[List[str]] = None,
        logical_date: Optional[datetime] = None,
    ) -> RunRequest:
        sources = self.sources
        transforms = self.transforms
        if source_ids is not None:
            sources = [s for s in self.sources if s.source_id in source_ids]
            selected = {s.source_id for s in sources}
            # Keep only transforms whose inputs are all part of this run
            transforms = [
                t for t in self.transforms
                if t.depends_on_sources and set(t.depends_on_sources) <= selected
            ]
        return RunRequest(
            sources=sources,
            transforms=transforms,
            trigger=trigger,
            trigger_ref=trigger_ref,
            logical_date=logical_date or datetime.utcnow(),
        )


def load_pipeline_definition(path: Optional[str] = None) -> PipelineDefinition:
    """Load and validate the pipeline YAML file"""
    path = Path(path or settings.SOURCES_FILE)
    if not path.exists():
        raise ConfigurationError(
            f"Pipeline definition not found: {path}",
            context={"path": str(path)}
        )
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        return PipelineDefinition(**raw)
    except (yaml.YAMLError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid pipeline definition: {path}",
            context={"path": str(path)},
            original_exception=e
        )
