# sitetelemetry/routers/readings.py
# Read side for stored readings: latest value per stream on a piece of
# equipment and a stream's history. The site comes from X-Site-Id.

from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from .. import deps, repository, schemas
from ..database import get_db
from ..normalization import as_utc, utcnow
from ..tenancy import site_scope

router = APIRouter(tags=["readings"])

HISTORY_MAX_ROWS = 5000


@router.get("/equipment/{equipment_id}/latest", response_model=List[schemas.LatestReadingOut])
def get_latest_per_stream(
    equipment_id: UUID,
    site_id: UUID = Depends(deps.get_site_header),
    db: Session = Depends(get_db),
    _api_key: str = Depends(deps.get_api_key),
):
    """Most recent stored reading for each stream on this equipment."""
    with site_scope(site_id):
        rows = repository.latest_per_stream(db, equipment_id)
    if not rows:
        raise HTTPException(status_code=404, detail="No readings found for this equipment")

    return [
        schemas.LatestReadingOut(
            stream_id=stream.id,
            display_name=stream.display_name,
            stream_type=stream.stream_type,
            unit=stream.unit,
            time=reading.time,
            value=reading.value,
            quality_code=reading.quality_code,
        )
        for stream, reading in rows
    ]


@router.get(
    "/streams/{stream_id}/history",
    response_model=List[schemas.ReadingOut],
    summary="Fetch recent readings for a stream",
)
def get_history(
    stream_id: UUID,
    minutes: Optional[int] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = 500,
    site_id: UUID = Depends(deps.get_site_header),
    db: Session = Depends(get_db),
    _api_key: str = Depends(deps.get_api_key),
):
    """Newest first. Explicit since/until win over ``minutes``; default is the last hour."""
    end = as_utc(until) if until else utcnow()
    if since:
        start = as_utc(since)
    else:
        start = end - timedelta(minutes=minutes if minutes and minutes > 0 else 60)

    with site_scope(site_id):
        if repository.get_stream(db, stream_id) is None:
            raise HTTPException(status_code=404, detail="Sensor stream not found")
        return repository.get_readings(
            db, stream_id, start, end, limit=max(1, min(limit, HISTORY_MAX_ROWS)), newest_first=True
        )
