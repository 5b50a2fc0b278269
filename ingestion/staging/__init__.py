"""
Object storage and staged object writing.
"""

from ingestion.staging.object_store import (
    ObjectStore,
    LocalObjectStore,
    S3ObjectStore,
    build_object_store,
)
from ingestion.staging.stage_writer import StageWriter

__all__ = [
    "ObjectStore",
    "LocalObjectStore",
    "S3ObjectStore",
    "build_object_store",
    "StageWriter",
]
