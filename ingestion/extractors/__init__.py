"""
Source adapters, selected by source_type.
"""

from typing import Dict, Optional, Type

from core.exceptions import ConfigurationError
from ingestion.base import SourceExtractor
from ingestion.extractors.api_extractor import APIExtractor
from ingestion.extractors.database_extractor import DatabaseTableExtractor
from ingestion.extractors.file_extractor import FileGlobExtractor
from models.base import SourceType
from schemas.source import SourceConfig

EXTRACTORS: Dict[SourceType, Type[SourceExtractor]] = {
    SourceType.DATABASE_TABLE: DatabaseTableExtractor,
    SourceType.FILE_GLOB: FileGlobExtractor,
    SourceType.API_ENDPOINT: APIExtractor,
}


def build_extractor(source: SourceConfig, timeout: Optional[float] = None) -> SourceExtractor:
    """Instantiate the adapter registered for the source's type"""
    extractor_class = EXTRACTORS.get(source.source_type)
    if extractor_class is None:
        raise ConfigurationError(
            f"No extractor registered for source type {source.source_type}",
            context={"source_id": source.source_id, "source_type": str(source.source_type)}
        )
    return extractor_class(source, timeout=timeout)


__all__ = [
    "EXTRACTORS",
    "build_extractor",
    "APIExtractor",
    "DatabaseTableExtractor",
    "FileGlobExtractor",
]
