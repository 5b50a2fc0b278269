"""
Pydantic schemas for configuration, pipeline values and the API.

Schemas:
    watermark: Watermark values and (low, high] watermark ranges
    source: Source / transform definitions, run requests, the pipeline YAML
    staging: Staged records and manifests
    api: API endpoint request/response schemas

Usage:
    from schemas.source import SourceConfig, load_pipeline_definition
    from schemas.watermark import Watermark, WatermarkRange

Example:
    source = SourceConfig(
        source_id="orders",
        source_type="database_table",
        connection={"url": "postgresql+asyncpg://...", "table": "orders"},
        watermark_field="id",
        watermark_kind="integer",
        primary_key=["id"]
    )
    assert source.record_watermark({"id": 150}) > Watermark.of("integer", 100)
"""

__all__ = [
    "Watermark",
    "WatermarkRange",
    "SourceConfig",
    "TransformConfig",
    "RunRequest",
    "PipelineDefinition",
    "StagedRecord",
    "StagedManifest",
]
