"""Telemetry ingestion orchestrator.

Single entry point for every protocol:
dedup -> resolve streams -> normalize -> split by quality -> persist ->
publish -> log rejected readings.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Callable, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from . import config, models, repository
from .dedup import deduplicate
from .errors import ProcessingError, TelemetryError, ValidationFailure
from .live import Publisher
from .normalization import NormalizedReading, Normalizer, RawReading, StreamProfile, utcnow
from .quality import IngestionErrorType, QualityCode, error_type_for
from .tenancy import site_scope
from .units import StreamType

logger = logging.getLogger(__name__)


class IngestionProtocol(StrEnum):
    MQTT = "mqtt"
    HTTP = "http"
    SDI12 = "sdi12"


class ReadingOutcome(StrEnum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    DUPLICATE = "duplicate"


@dataclass(frozen=True, slots=True)
class IngestBatch:
    site_id: UUID
    equipment_id: UUID
    protocol: IngestionProtocol
    readings: tuple[RawReading, ...]
    session_id: UUID | None = None


@dataclass(frozen=True, slots=True)
class ItemResult:
    position: int
    stream_id: UUID
    message_id: str | None
    outcome: ReadingOutcome
    quality: QualityCode | None = None


@dataclass(frozen=True, slots=True)
class IngestResult:
    total_received: int = 0
    accepted: int = 0
    rejected: int = 0
    duplicates: int = 0
    processing_time_ms: int = 0
    items: tuple[ItemResult, ...] = field(default=())


class TelemetryIngestor:
    def __init__(
        self,
        db: Session,
        publisher: Publisher,
        normalizer: Normalizer | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.publisher = publisher
        self.normalizer = normalizer or Normalizer(clock=clock)
        self.clock = clock

    # ---------- batches ----------
    def ingest_batch(self, site_id: UUID, batch: IngestBatch) -> IngestResult:
        if batch.site_id != site_id:
            raise ValidationFailure("site_id parameter must match the batch site_id")

        started = time.perf_counter()
        with site_scope(site_id):
            logger.info(
                "Starting ingestion batch: SiteId=%s, EquipmentId=%s, Protocol=%s, Count=%d",
                site_id, batch.equipment_id, batch.protocol, len(batch.readings),
            )
            try:
                result = self._run(batch, started)
            except TelemetryError:
                raise
            except Exception as exc:
                logger.exception(
                    "Critical error during telemetry ingestion: SiteId=%s, EquipmentId=%s, Count=%d",
                    site_id, batch.equipment_id, len(batch.readings),
                )
                self._record_failure(batch, exc)
                raise ProcessingError(
                    f"Ingestion batch failed: {exc}",
                    site_id=site_id,
                    equipment_id=batch.equipment_id,
                    reading_count=len(batch.readings),
                ) from exc

        logger.info(
            "Completed ingestion batch: Accepted=%d, Rejected=%d, Duplicates=%d, ProcessingTime=%dms",
            result.accepted, result.rejected, result.duplicates, result.processing_time_ms,
        )
        return result

    def _run(self, batch: IngestBatch, started: float) -> IngestResult:
        now = self.clock()
        readings = batch.readings
        items: dict[int, ItemResult] = {}

        dedup = deduplicate(readings, lambda grouped: repository.existing_message_keys(self.db, grouped))
        for pos in dedup.duplicate_positions:
            items[pos] = _item(pos, readings[pos], ReadingOutcome.DUPLICATE)

        if not dedup.unique_positions:
            if readings:
                logger.warning("All readings in batch were duplicates")
            return self._summary(readings, items, started)

        streams = repository.get_streams(self.db, {readings[pos].stream_id for pos in dedup.unique_positions})

        valid: list[tuple[int, NormalizedReading]] = []
        invalid: list[tuple[int, NormalizedReading]] = []
        for pos in dedup.unique_positions:
            raw = readings[pos]
            normalized = self.normalizer.normalize(raw, _profile(streams.get(raw.stream_id), raw), now)
            if normalized.quality.is_bad:
                invalid.append((pos, normalized))
            else:
                valid.append((pos, normalized))

        if valid:
            stored, raced = repository.insert_readings(self.db, [r for _, r in valid], now)
            raced_ids = {id(r) for r in raced}
            for pos, reading in valid:
                outcome = ReadingOutcome.DUPLICATE if id(reading) in raced_ids else ReadingOutcome.ACCEPTED
                items[pos] = _item(pos, readings[pos], outcome, reading.quality)
            if stored:
                self.publisher.publish(batch.site_id, stored)

        if invalid:
            self._log_rejections(batch, invalid, now)
            for pos, reading in invalid:
                items[pos] = _item(pos, readings[pos], ReadingOutcome.REJECTED, reading.quality)

        if batch.session_id is not None:
            self._touch_session(batch, now)

        return self._summary(readings, items, started)

    def _log_rejections(
        self, batch: IngestBatch, invalid: Sequence[tuple[int, NormalizedReading]], now: datetime
    ) -> None:
        errors = [
            models.IngestionError(
                site_id=batch.site_id,
                session_id=batch.session_id,
                equipment_id=batch.equipment_id,
                protocol=batch.protocol.value,
                error_type=error_type_for(reading.quality).value,
                error_message=f"Invalid reading with quality code: {reading.quality}",
                raw_payload=repository.json_safe(
                    {
                        "streamId": reading.stream_id,
                        "value": reading.value,
                        "unit": reading.unit.value,
                        "qualityCode": reading.quality.value,
                        "messageId": reading.message_id,
                        "sourceTimestamp": reading.source_timestamp,
                    }
                ),
                occurred_at=now,
            )
            for _, reading in invalid
        ]
        repository.log_errors(self.db, errors)

    def _record_failure(self, batch: IngestBatch, exc: Exception) -> None:
        self.db.rollback()
        try:
            repository.log_errors(
                self.db,
                [
                    models.IngestionError(
                        site_id=batch.site_id,
                        session_id=batch.session_id,
                        equipment_id=batch.equipment_id,
                        protocol=batch.protocol.value,
                        error_type=IngestionErrorType.PROCESSING_ERROR.value,
                        error_message=f"{type(exc).__name__}: {exc}",
                        raw_payload={"readingCount": len(batch.readings)},
                        occurred_at=self.clock(),
                    )
                ],
            )
        except Exception:
            self.db.rollback()
            logger.exception("Could not record processing error for site %s", batch.site_id)

    def _touch_session(self, batch: IngestBatch, now: datetime) -> None:
        session = repository.get_session(self.db, batch.session_id)
        if session is None:
            logger.warning("Ingestion session %s not found for site %s", batch.session_id, batch.site_id)
            return
        session.batches_received += 1
        session.readings_received += len(batch.readings)
        session.last_heartbeat_at = now
        self.db.commit()

    def _summary(self, readings: Sequence[RawReading], items: dict[int, ItemResult], started: float) -> IngestResult:
        ordered = tuple(items[pos] for pos in sorted(items))
        return IngestResult(
            total_received=len(readings),
            accepted=sum(1 for i in ordered if i.outcome is ReadingOutcome.ACCEPTED),
            rejected=sum(1 for i in ordered if i.outcome is ReadingOutcome.REJECTED),
            duplicates=sum(1 for i in ordered if i.outcome is ReadingOutcome.DUPLICATE),
            processing_time_ms=int((time.perf_counter() - started) * 1000),
            items=ordered,
        )

    # ---------- sessions ----------
    def start_session(self, site_id: UUID, equipment_id: UUID, protocol: IngestionProtocol) -> models.IngestionSession:
        now = self.clock()
        with site_scope(site_id):
            session = models.IngestionSession(
                site_id=site_id,
                equipment_id=equipment_id,
                protocol=IngestionProtocol(protocol).value,
                started_at=now,
                last_heartbeat_at=now,
                batches_received=0,
                readings_received=0,
            )
            self.db.add(session)
            self.db.commit()
            logger.info("Ingestion session %s started: SiteId=%s, EquipmentId=%s", session.id, site_id, equipment_id)
            return session

    def heartbeat(self, site_id: UUID, session_id: UUID) -> models.IngestionSession | None:
        with site_scope(site_id):
            session = repository.get_session(self.db, session_id)
            if session is None:
                logger.warning("Heartbeat for unknown ingestion session %s", session_id)
                return None
            session.last_heartbeat_at = self.clock()
            self.db.commit()
            return session

    def end_session(self, site_id: UUID, session_id: UUID) -> models.IngestionSession | None:
        with site_scope(site_id):
            session = repository.get_session(self.db, session_id)
            if session is None:
                logger.warning("End requested for unknown ingestion session %s", session_id)
                return None
            if session.ended_at is None:
                session.ended_at = self.clock()
                self.db.commit()
            return session

    # ---------- errors ----------
    def recent_errors(self, site_id: UUID, limit: int) -> list[models.IngestionError]:
        take = max(config.ERROR_LIMIT_MIN, min(limit, config.ERROR_LIMIT_MAX))
        with site_scope(site_id):
            return repository.recent_errors(self.db, take)


def _profile(stream: models.SensorStream | None, raw: RawReading) -> StreamProfile | None:
    if stream is None:
        logger.warning("Sensor stream not found: StreamId=%s", raw.stream_id)
        return None
    try:
        stream_type = StreamType(stream.stream_type)
    except ValueError:
        logger.warning("Sensor stream %s has unknown stream type %r", stream.id, stream.stream_type)
        return None
    return StreamProfile(stream_id=stream.id, stream_type=stream_type)


def _item(
    position: int, raw: RawReading, outcome: ReadingOutcome, quality: QualityCode | None = None
) -> ItemResult:
    key = raw.idempotency_key
    return ItemResult(
        position=position,
        stream_id=raw.stream_id,
        message_id=key[1] if key else None,
        outcome=outcome,
        quality=quality,
    )

