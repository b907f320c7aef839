# sitetelemetry/routers/telemetry.py
# Ingestion endpoints: site batches, queue messages, per-equipment readings,
# ingestion sessions and the rejected-reading log.

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from .. import deps, schemas
from ..adapters import QueueAdapter, ingest_request
from ..errors import ValidationFailure
from ..ingest import IngestBatch, TelemetryIngestor
from ..normalization import RawReading
from ..tenancy import site_scope
from ..units import DEFAULT_CATALOG

logger = logging.getLogger(__name__)

router = APIRouter(tags=["telemetry"])


def to_raw(reading: schemas.ReadingIn) -> RawReading:
    unit = DEFAULT_CATALOG.parse_unit_code(reading.unit)
    if unit is None:
        raise ValidationFailure(f"Unsupported unit {reading.unit!r} for stream {reading.stream_id}")
    return RawReading(
        stream_id=reading.stream_id,
        value=reading.value,
        unit=unit,
        source_timestamp=reading.source_timestamp,
        message_id=reading.message_id,
        metadata=reading.metadata,
    )


@router.post(
    "/sites/{site_id}/telemetry",
    response_model=schemas.IngestResultOut,
    summary="Ingest a batch of readings for one piece of equipment",
)
def ingest_site_batch(
    site_id: UUID,
    body: schemas.TelemetryBatchIn,
    ingestor: TelemetryIngestor = Depends(deps.get_ingestor),
    _api_key: str = Depends(deps.get_api_key),
):
    batch = IngestBatch(
        site_id=site_id,
        equipment_id=body.equipment_id,
        protocol=body.protocol,
        readings=tuple(to_raw(r) for r in body.readings),
        session_id=body.session_id,
    )
    return ingestor.ingest_batch(site_id, batch)


@router.post(
    "/telemetry/queue",
    response_model=schemas.IngestResultOut,
    summary="Ingest one message-queue payload (topic carries site and equipment)",
)
def ingest_queue_message(
    body: schemas.QueueMessageIn,
    adapter: QueueAdapter = Depends(deps.get_queue_adapter),
    _api_key: str = Depends(deps.get_api_key),
):
    return adapter.ingest(body.topic, body.payload)


@router.post(
    "/equipment/{equipment_id}/readings",
    response_model=schemas.IngestResultOut,
    summary="Ingest readings for equipment; site comes from X-Site-Id",
)
def ingest_equipment_readings(
    equipment_id: UUID,
    body: schemas.EquipmentReadingsIn,
    site_id: UUID = Depends(deps.get_site_header),
    ingestor: TelemetryIngestor = Depends(deps.get_ingestor),
    _api_key: str = Depends(deps.get_api_key),
):
    readings = [to_raw(r) for r in body.readings]
    with site_scope(site_id):
        return ingest_request(ingestor, equipment_id, readings, session_id=body.session_id)


# ---------- sessions ----------
@router.post(
    "/sites/{site_id}/sessions",
    response_model=schemas.SessionOut,
    status_code=status.HTTP_201_CREATED,
)
def start_session(
    site_id: UUID,
    body: schemas.SessionIn,
    ingestor: TelemetryIngestor = Depends(deps.get_ingestor),
    _api_key: str = Depends(deps.get_api_key),
):
    return ingestor.start_session(site_id, body.equipment_id, body.protocol)


@router.post("/sites/{site_id}/sessions/{session_id}/heartbeat", response_model=schemas.SessionOut)
def session_heartbeat(
    site_id: UUID,
    session_id: UUID,
    ingestor: TelemetryIngestor = Depends(deps.get_ingestor),
    _api_key: str = Depends(deps.get_api_key),
):
    session = ingestor.heartbeat(site_id, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Ingestion session not found")
    return session


@router.post("/sites/{site_id}/sessions/{session_id}/end", response_model=schemas.SessionOut)
def end_session(
    site_id: UUID,
    session_id: UUID,
    ingestor: TelemetryIngestor = Depends(deps.get_ingestor),
    _api_key: str = Depends(deps.get_api_key),
):
    session = ingestor.end_session(site_id, session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Ingestion session not found")
    return session


@router.get("/sites/{site_id}/ingestion-errors", response_model=List[schemas.IngestionErrorOut])
def recent_ingestion_errors(
    site_id: UUID,
    limit: int = 50,
    ingestor: TelemetryIngestor = Depends(deps.get_ingestor),
    _api_key: str = Depends(deps.get_api_key),
):
    """Newest first. ``limit`` is clamped to 1..200."""
    return ingestor.recent_errors(site_id, limit)
