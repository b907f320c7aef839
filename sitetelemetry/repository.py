# sitetelemetry/repository.py
# Storage helpers. Every function reads the bound site from tenancy and
# scopes its query to it; calling one without a bound site raises.

import logging
import math
from datetime import datetime
from typing import Iterable, Mapping, Optional, Sequence
from uuid import UUID

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .normalization import NormalizedReading
from .quality import QualityCode
from .tenancy import require_site

logger = logging.getLogger(__name__)


# ---------- streams ----------
def get_streams(db: Session, stream_ids: Iterable[UUID]) -> dict[UUID, models.SensorStream]:
    ids = list(set(stream_ids))
    if not ids:
        return {}
    rows = (
        db.query(models.SensorStream)
        .filter(models.SensorStream.site_id == require_site())
        .filter(models.SensorStream.id.in_(ids))
        .all()
    )
    return {row.id: row for row in rows}


def get_stream(db: Session, stream_id: UUID) -> Optional[models.SensorStream]:
    return (
        db.query(models.SensorStream)
        .filter(models.SensorStream.site_id == require_site())
        .filter(models.SensorStream.id == stream_id)
        .one_or_none()
    )


def list_streams(db: Session, active_only: bool = True) -> list[models.SensorStream]:
    q = db.query(models.SensorStream).filter(models.SensorStream.site_id == require_site())
    if active_only:
        q = q.filter(models.SensorStream.is_active.is_(True))
    return q.order_by(models.SensorStream.created_at).all()


# ---------- readings ----------
def existing_message_keys(
    db: Session, message_ids_by_stream: Mapping[UUID, Sequence[str]]
) -> set[tuple[UUID, str]]:
    """One round trip for every (stream, message id) pair in the batch."""
    clauses = [
        and_(models.SensorReading.stream_id == stream_id, models.SensorReading.message_id.in_(list(ids)))
        for stream_id, ids in message_ids_by_stream.items()
        if ids
    ]
    if not clauses:
        return set()
    rows = (
        db.query(models.SensorReading.stream_id, models.SensorReading.message_id)
        .join(models.SensorStream, models.SensorStream.id == models.SensorReading.stream_id)
        .filter(models.SensorStream.site_id == require_site())
        .filter(or_(*clauses))
        .all()
    )
    return {(stream_id, message_id) for stream_id, message_id in rows}


def _reading_row(reading: NormalizedReading, ingested_at: datetime) -> models.SensorReading:
    return models.SensorReading(
        stream_id=reading.stream_id,
        time=reading.time,
        value=reading.value,
        quality_code=reading.quality.value,
        source_timestamp=reading.source_timestamp,
        ingestion_timestamp=ingested_at,
        message_id=reading.message_id,
        meta=dict(reading.metadata) if reading.metadata is not None else None,
    )


def insert_readings(
    db: Session, readings: Sequence[NormalizedReading], ingested_at: datetime
) -> tuple[list[models.SensorReading], list[NormalizedReading]]:
    """
    Bulk insert. If the unique (stream_id, message_id) constraint trips because
    another batch won the race, retry row by row and hand back the losers.
    Returns (stored rows, readings rejected as duplicates).
    """
    require_site()
    if not readings:
        return [], []

    rows = [_reading_row(r, ingested_at) for r in readings]
    try:
        db.add_all(rows)
        db.commit()
        return rows, []
    except IntegrityError:
        db.rollback()
        logger.warning(
            "Bulk insert of %d readings hit the idempotency constraint; retrying one by one",
            len(rows),
        )

    stored: list[models.SensorReading] = []
    raced: list[NormalizedReading] = []
    for reading in readings:
        row = _reading_row(reading, ingested_at)
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.debug(
                "Duplicate reading rejected by storage: StreamId=%s, MessageId=%s",
                reading.stream_id, reading.message_id,
            )
            raced.append(reading)
        else:
            stored.append(row)
    return stored, raced


def get_readings(
    db: Session,
    stream_id: UUID,
    start: datetime,
    end: datetime,
    limit: Optional[int] = None,
    newest_first: bool = False,
    quality: Optional[QualityCode] = None,
) -> list[models.SensorReading]:
    q = (
        db.query(models.SensorReading)
        .join(models.SensorStream, models.SensorStream.id == models.SensorReading.stream_id)
        .filter(models.SensorStream.site_id == require_site())
        .filter(models.SensorReading.stream_id == stream_id)
        .filter(models.SensorReading.time >= start)
        .filter(models.SensorReading.time <= end)
    )
    if quality is not None:
        q = q.filter(models.SensorReading.quality_code == quality.value)
    if newest_first:
        q = q.order_by(models.SensorReading.time.desc(), models.SensorReading.id.desc())
    else:
        q = q.order_by(models.SensorReading.time, models.SensorReading.id)
    if limit is not None:
        q = q.limit(limit)
    return q.all()


def latest_per_stream(db: Session, equipment_id: UUID) -> list[tuple[models.SensorStream, models.SensorReading]]:
    site_id = require_site()
    # subquery: max(time) per stream for this equipment
    subq = (
        db.query(
            models.SensorReading.stream_id.label("stream_id"),
            func.max(models.SensorReading.time).label("max_t"),
        )
        .join(models.SensorStream, models.SensorStream.id == models.SensorReading.stream_id)
        .filter(models.SensorStream.site_id == site_id)
        .filter(models.SensorStream.equipment_id == equipment_id)
        .group_by(models.SensorReading.stream_id)
        .subquery()
    )
    rows = (
        db.query(models.SensorStream, models.SensorReading)
        .join(models.SensorReading, models.SensorReading.stream_id == models.SensorStream.id)
        .join(
            subq,
            and_(
                models.SensorReading.stream_id == subq.c.stream_id,
                models.SensorReading.time == subq.c.max_t,
            ),
        )
        .order_by(models.SensorStream.display_name)
        .all()
    )
    # ties on time: keep one row per stream
    seen: dict[UUID, tuple[models.SensorStream, models.SensorReading]] = {}
    for stream, reading in rows:
        seen.setdefault(stream.id, (stream, reading))
    return list(seen.values())


# ---------- ingestion errors / sessions ----------
def json_safe(value):
    """Raw payloads land in JSON columns: stringify UUIDs and non-finite floats."""
    if isinstance(value, float) and not math.isfinite(value):
        return str(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


def log_errors(db: Session, errors: Sequence[models.IngestionError]) -> None:
    site_id = require_site()
    for err in errors:
        if err.site_id != site_id:
            raise ValueError(f"Ingestion error for site {err.site_id} logged under site {site_id}")
    db.add_all(errors)
    db.commit()


def recent_errors(db: Session, limit: int) -> list[models.IngestionError]:
    return (
        db.query(models.IngestionError)
        .filter(models.IngestionError.site_id == require_site())
        .order_by(models.IngestionError.occurred_at.desc())
        .limit(limit)
        .all()
    )


def get_session(db: Session, session_id: UUID) -> Optional[models.IngestionSession]:
    return (
        db.query(models.IngestionSession)
        .filter(models.IngestionSession.site_id == require_site())
        .filter(models.IngestionSession.id == session_id)
        .one_or_none()
    )


# ---------- alert rules / instances ----------
def active_rules(db: Session) -> list[models.AlertRule]:
    return (
        db.query(models.AlertRule)
        .filter(models.AlertRule.site_id == require_site())
        .filter(models.AlertRule.is_active.is_(True))
        .order_by(models.AlertRule.created_at)
        .all()
    )


def list_rules(db: Session, include_inactive: bool = False) -> list[models.AlertRule]:
    if not include_inactive:
        return active_rules(db)
    return (
        db.query(models.AlertRule)
        .filter(models.AlertRule.site_id == require_site())
        .order_by(models.AlertRule.created_at)
        .all()
    )


def get_rule(db: Session, rule_id: UUID) -> Optional[models.AlertRule]:
    return (
        db.query(models.AlertRule)
        .filter(models.AlertRule.site_id == require_site())
        .filter(models.AlertRule.id == rule_id)
        .one_or_none()
    )


def active_instance(db: Session, rule_id: UUID, stream_id: UUID) -> Optional[models.AlertInstance]:
    return (
        db.query(models.AlertInstance)
        .filter(models.AlertInstance.site_id == require_site())
        .filter(models.AlertInstance.rule_id == rule_id)
        .filter(models.AlertInstance.stream_id == stream_id)
        .filter(models.AlertInstance.cleared_at.is_(None))
        .one_or_none()
    )


def get_instance(db: Session, alert_id: UUID) -> Optional[models.AlertInstance]:
    return (
        db.query(models.AlertInstance)
        .filter(models.AlertInstance.site_id == require_site())
        .filter(models.AlertInstance.id == alert_id)
        .one_or_none()
    )


def active_instances(db: Session) -> list[models.AlertInstance]:
    return (
        db.query(models.AlertInstance)
        .filter(models.AlertInstance.site_id == require_site())
        .filter(models.AlertInstance.cleared_at.is_(None))
        .order_by(models.AlertInstance.fired_at.desc())
        .all()
    )


def instances_for(db: Session, rule_id: UUID, stream_id: UUID) -> list[models.AlertInstance]:
    return (
        db.query(models.AlertInstance)
        .filter(models.AlertInstance.site_id == require_site())
        .filter(models.AlertInstance.rule_id == rule_id)
        .filter(models.AlertInstance.stream_id == stream_id)
        .order_by(models.AlertInstance.fired_at)
        .all()
    )
