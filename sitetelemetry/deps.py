from datetime import datetime
from typing import Callable
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from . import live
from .adapters import QueueAdapter
from .alerts import AlertEvaluator
from .anomaly import AnomalyDetector
from .database import get_db
from .errors import TenantContextMissing, ValidationFailure
from .ingest import TelemetryIngestor
from .models import APIKey
from .normalization import utcnow


def api_key_is_valid(db: Session, key: str | None) -> bool:
    if not key:
        return False
    api_key = db.query(APIKey).filter_by(key=key).first()
    return api_key is not None and not api_key.revoked


def get_api_key(authorization: str | None = Header(default=None), db: Session = Depends(get_db)) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or invalid Authorization header")
    key = authorization.split(" ", 1)[1]
    if not api_key_is_valid(db, key):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
    return key


def get_site_header(x_site_id: str | None = Header(default=None)) -> UUID:
    """Site for routes that don't carry it in the path (X-Site-Id)."""
    if not x_site_id or not x_site_id.strip():
        raise TenantContextMissing("X-Site-Id header is required")
    try:
        return UUID(x_site_id.strip())
    except ValueError as exc:
        raise ValidationFailure(f"X-Site-Id is not a valid id: {x_site_id}") from exc


def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_publisher() -> live.Publisher:
    return live.hub


def get_ingestor(
    db: Session = Depends(get_db),
    publisher: live.Publisher = Depends(get_publisher),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> TelemetryIngestor:
    return TelemetryIngestor(db, publisher, clock=clock)


def get_queue_adapter(ingestor: TelemetryIngestor = Depends(get_ingestor)) -> QueueAdapter:
    return QueueAdapter(ingestor)


def get_alert_evaluator(
    db: Session = Depends(get_db), clock: Callable[[], datetime] = Depends(get_clock)
) -> AlertEvaluator:
    return AlertEvaluator(db, clock)


def get_anomaly_detector(
    db: Session = Depends(get_db), clock: Callable[[], datetime] = Depends(get_clock)
) -> AnomalyDetector:
    return AnomalyDetector(db, clock=clock)
