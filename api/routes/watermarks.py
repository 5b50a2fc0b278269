"""
Watermark inspection and operator rewind
"""

from fastapi import APIRouter, Depends, HTTPException
from typing import List
import logging

from api.dependencies import get_watermark_store
from ingestion.watermarks import WatermarkStore
from schemas.api import WatermarkResetRequest, WatermarkResetResponse, WatermarkResponse
from schemas.watermark import Watermark

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Watermarks"])


@router.get("/watermarks", response_model=List[WatermarkResponse])
async def list_watermarks(store: WatermarkStore = Depends(get_watermark_store)):
    return [WatermarkResponse.model_validate(row) for row in await store.list()]


@router.get("/watermarks/{source_id}", response_model=WatermarkResponse)
async def get_watermark(source_id: str, store: WatermarkStore = Depends(get_watermark_store)):
    rows = [row for row in await store.list() if row.source_id == source_id]
    if not rows:
        raise HTTPException(status_code=404, detail=f"No watermark for source {source_id}")
    return WatermarkResponse.model_validate(rows[0])


@router.post("/watermarks/{source_id}/reset", response_model=WatermarkResetResponse)
async def reset_watermark(
    source_id: str,
    body: WatermarkResetRequest,
    store: WatermarkStore = Depends(get_watermark_store)
):
    """
    Operator action: set, rewind or clear a source's watermark.

    The next run re-extracts everything after the new value.
    """
    watermark = None
    if body.value is not None:
        try:
            watermark = Watermark.of(body.kind, body.value, sequence=body.sequence)
        except (TypeError, ValueError) as e:
            raise HTTPException(status_code=422, detail=f"Invalid watermark value: {e}")

    previous = await store.reset(source_id, watermark, reason=body.reason)
    logger.warning(f"Watermark reset for {source_id} via API: {previous} -> {watermark}")
    return WatermarkResetResponse(
        source_id=source_id,
        previous=previous.to_dict() if previous else None,
        current=watermark.to_dict() if watermark else None
    )
