# sitetelemetry/routers/streams.py
import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .. import deps, models, repository, schemas
from ..database import get_db
from ..normalization import utcnow
from ..tenancy import site_scope
from ..units import DEFAULT_CATALOG

logger = logging.getLogger(__name__)

router = APIRouter(tags=["streams"])


@router.post("/sites/{site_id}/streams", response_model=schemas.StreamOut)
def register_stream(
    site_id: UUID,
    body: schemas.StreamIn,
    db: Session = Depends(get_db),
    _api_key: str = Depends(deps.get_api_key),
):
    """
    Upsert by ``id``. An existing stream keeps its equipment and type (stored
    readings depend on them); only the display name can change here.
    """
    # readings are always stored in the canonical unit for the stream type
    canonical = DEFAULT_CATALOG.canonical_unit(body.stream_type)
    if body.unit is not None and body.unit != canonical:
        logger.info(
            "Stream %s declared unit %s; readings will be stored as %s",
            body.display_name, body.unit, canonical,
        )
    now = utcnow()

    with site_scope(site_id):
        existing = repository.get_stream(db, body.id) if body.id is not None else None
        if existing:
            if existing.stream_type != body.stream_type.value or existing.equipment_id != body.equipment_id:
                logger.warning(
                    "Rejected change of type/equipment for stream %s (%s on %s)",
                    existing.id, existing.stream_type, existing.equipment_id,
                )
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail="Stream type and equipment cannot change once the stream exists",
                )
            existing.display_name = body.display_name
            existing.updated_at = now
            db.commit()
            return existing

        stream = models.SensorStream(
            site_id=site_id,
            equipment_id=body.equipment_id,
            stream_type=body.stream_type.value,
            unit=canonical.value,
            display_name=body.display_name,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        if body.id is not None:
            stream.id = body.id
        try:
            db.add(stream)
            db.commit()
        except IntegrityError:
            # the id exists, but under another site
            db.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Stream id already in use")
        return stream


@router.patch("/sites/{site_id}/streams/{stream_id}", response_model=schemas.StreamOut)
def update_stream(
    site_id: UUID,
    stream_id: UUID,
    body: schemas.StreamPatch,
    db: Session = Depends(get_db),
    _api_key: str = Depends(deps.get_api_key),
):
    with site_scope(site_id):
        stream = repository.get_stream(db, stream_id)
        if stream is None:
            raise HTTPException(status_code=404, detail="Sensor stream not found")
        if body.display_name is not None:
            stream.display_name = body.display_name
        if body.is_active is not None:
            stream.is_active = body.is_active
        stream.updated_at = utcnow()
        db.commit()
        return stream


@router.get("/sites/{site_id}/streams", response_model=List[schemas.StreamOut])
def list_streams(
    site_id: UUID,
    include_inactive: bool = False,
    db: Session = Depends(get_db),
    _api_key: str = Depends(deps.get_api_key),
):
    with site_scope(site_id):
        return repository.list_streams(db, active_only=not include_inactive)
