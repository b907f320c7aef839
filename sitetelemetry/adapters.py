"""Protocol adapters: turn queue messages and request bodies into ingest batches."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, Mapping, Sequence
from uuid import UUID

from .errors import TenantContextMissing, ValidationFailure
from .ingest import IngestBatch, IngestionProtocol, IngestResult, TelemetryIngestor
from .normalization import RawReading, as_utc
from .tenancy import current_site
from .units import DEFAULT_CATALOG, UnitCatalog

logger = logging.getLogger(__name__)


class TopicKind(StrEnum):
    TELEMETRY = "telemetry"
    SENSOR = "sensor"


@dataclass(frozen=True, slots=True)
class QueueTopic:
    site_id: UUID
    equipment_id: UUID
    kind: TopicKind
    stream_id: UUID | None = None


def _uuid(value: Any) -> UUID | None:
    if isinstance(value, UUID):
        return value
    if not isinstance(value, str):
        return None
    try:
        return UUID(value.strip())
    except ValueError:
        return None


def parse_topic(topic: str) -> QueueTopic:
    """
    site/{siteId}/equipment/{equipmentId}/telemetry
    site/{siteId}/equipment/{equipmentId}/sensor/{streamId}
    """
    if not topic or not topic.strip():
        raise ValidationFailure("Queue topic cannot be empty")

    segments = [s for s in topic.strip().split("/") if s]
    if len(segments) < 5 or segments[0].lower() != "site" or segments[2].lower() != "equipment":
        raise ValidationFailure(f"Unsupported queue topic format: {topic}")

    site_id = _uuid(segments[1])
    equipment_id = _uuid(segments[3])
    if site_id is None or equipment_id is None:
        raise ValidationFailure(f"Unsupported queue topic format: {topic}")

    kind = segments[4].lower()
    if kind == TopicKind.TELEMETRY and len(segments) == 5:
        return QueueTopic(site_id, equipment_id, TopicKind.TELEMETRY)
    if kind == TopicKind.SENSOR and len(segments) == 6:
        stream_id = _uuid(segments[5])
        if stream_id is not None:
            return QueueTopic(site_id, equipment_id, TopicKind.SENSOR, stream_id)
    raise ValidationFailure(f"Unsupported queue topic format: {topic}")


def _numeric(value: Any) -> float | None:
    # bools are ints in Python; a device sending true is not a reading
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _timestamp(value: Any, fallback: datetime) -> datetime:
    # only an absent timestamp inherits; a malformed one is never replaced
    if value is None:
        return fallback
    if not isinstance(value, str) or not value.strip():
        raise ValidationFailure(f"Unparseable timestamp {value!r} in queue payload")
    try:
        return as_utc(datetime.fromisoformat(value.strip()))
    except ValueError as exc:
        raise ValidationFailure(f"Unparseable timestamp {value!r} in queue payload") from exc


def _metadata(value: Any) -> Mapping[str, Any] | None:
    return dict(value) if isinstance(value, Mapping) else None


def _message_id(value: Any) -> str | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (str, int)):
        text = str(value).strip()
        return text or None
    return None


class QueueAdapter:
    """Message-queue ingestion (MQTT style topics with JSON payloads)."""

    def __init__(self, ingestor: TelemetryIngestor, catalog: UnitCatalog = DEFAULT_CATALOG) -> None:
        self.ingestor = ingestor
        self.catalog = catalog

    def decode(self, payload: bytes | str | Mapping[str, Any] | Sequence[Any]) -> Any:
        if isinstance(payload, (bytes, bytearray)):
            if not payload:
                raise ValidationFailure("Queue payload cannot be empty")
            payload = payload.decode("utf-8")
        if isinstance(payload, str):
            if not payload.strip():
                raise ValidationFailure("Queue payload cannot be empty")
            try:
                return json.loads(payload)
            except json.JSONDecodeError as exc:
                raise ValidationFailure(f"Queue payload is not valid JSON: {exc}") from exc
        return payload

    def parse(self, topic: QueueTopic, document: Any, now: datetime) -> list[RawReading]:
        if topic.kind is TopicKind.SENSOR:
            if not isinstance(document, Mapping):
                raise ValidationFailure("Sensor payload must be a JSON object")
            message_ts = _timestamp(document.get("timestamp"), now)
            return [self._single(topic, document, message_ts)]

        # telemetry: bare array, or an object carrying a readings array
        if isinstance(document, list):
            items, message_ts, message_meta = document, now, None
        elif isinstance(document, Mapping) and isinstance(document.get("readings"), list):
            items = document["readings"]
            message_ts = _timestamp(document.get("timestamp"), now)
            message_meta = _metadata(document.get("metadata"))
        else:
            raise ValidationFailure("Telemetry payload must include a readings array")

        readings: list[RawReading] = []
        for element in items:
            reading = self._array_item(element, message_ts, message_meta)
            if reading is not None:
                readings.append(reading)
        return readings

    def _single(self, topic: QueueTopic, document: Mapping[str, Any], message_ts: datetime) -> RawReading:
        value = _numeric(document.get("value"))
        if value is None:
            raise ValidationFailure("Queue payload missing numeric value")
        raw_unit = document.get("unit")
        unit = self.catalog.parse_unit_code(raw_unit if isinstance(raw_unit, str) else None)
        if unit is None:
            raise ValidationFailure(f"Unsupported unit {raw_unit!r} in queue payload")
        return RawReading(
            stream_id=topic.stream_id,
            value=value,
            unit=unit,
            source_timestamp=message_ts,
            message_id=_message_id(document.get("message_id")),
            metadata=_metadata(document.get("metadata")),
        )

    def _array_item(
        self, element: Any, message_ts: datetime, message_meta: Mapping[str, Any] | None
    ) -> RawReading | None:
        if not isinstance(element, Mapping):
            logger.warning("Skipping queue reading that is not an object")
            return None
        stream_id = _uuid(element.get("stream_id"))
        if stream_id is None:
            logger.warning("Skipping queue reading without stream_id")
            return None
        value = _numeric(element.get("value"))
        if value is None:
            logger.warning("Skipping queue reading with invalid value (stream: %s)", stream_id)
            return None
        raw_unit = element.get("unit")
        unit = self.catalog.parse_unit_code(raw_unit if isinstance(raw_unit, str) else None)
        if unit is None:
            logger.warning("Skipping queue reading with unsupported unit %r (stream: %s)", raw_unit, stream_id)
            return None
        try:
            source_timestamp = _timestamp(element.get("timestamp"), message_ts)
        except ValidationFailure:
            logger.warning(
                "Skipping queue reading with unparseable timestamp %r (stream: %s)", element.get("timestamp"), stream_id
            )
            return None
        return RawReading(
            stream_id=stream_id,
            value=value,
            unit=unit,
            source_timestamp=source_timestamp,
            message_id=_message_id(element.get("message_id")),
            metadata=_metadata(element.get("metadata")) or message_meta,
        )

    def ingest(self, topic: str, payload: bytes | str | Mapping[str, Any] | Sequence[Any]) -> IngestResult:
        parsed_topic = parse_topic(topic)
        document = self.decode(payload)
        readings = self.parse(parsed_topic, document, self.ingestor.clock())
        if not readings:
            logger.warning("No valid readings parsed from queue payload (topic: %s)", topic)
            return IngestResult()

        batch = IngestBatch(
            site_id=parsed_topic.site_id,
            equipment_id=parsed_topic.equipment_id,
            protocol=IngestionProtocol.MQTT,
            readings=tuple(readings),
        )
        return self.ingestor.ingest_batch(parsed_topic.site_id, batch)


def ingest_request(
    ingestor: TelemetryIngestor,
    equipment_id: UUID,
    readings: Sequence[RawReading],
    session_id: UUID | None = None,
) -> IngestResult:
    """Request/response ingestion. The site comes from the caller's bound scope."""
    site_id = current_site()
    if site_id is None:
        raise TenantContextMissing("A site must be bound before ingesting request telemetry")
    if not readings:
        raise ValidationFailure("At least one reading is required")
    for reading in readings:
        if not isinstance(reading.value, (int, float)) or isinstance(reading.value, bool):
            raise ValidationFailure(f"Reading for stream {reading.stream_id} has no numeric value")

    batch = IngestBatch(
        site_id=site_id,
        equipment_id=equipment_id,
        protocol=IngestionProtocol.HTTP,
        readings=tuple(readings),
        session_id=session_id,
    )
    return ingestor.ingest_batch(site_id, batch)
