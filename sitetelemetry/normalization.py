"""Convert raw readings to their stream's canonical unit and grade them."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping
from uuid import UUID

from . import config
from .quality import QualityCode
from .units import DEFAULT_CATALOG, StreamType, Unit, UnitCatalog

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (MySQL/SQLite hand them back naive)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True, slots=True)
class RawReading:
    """One reading as submitted by a device, before dedup/normalization."""

    stream_id: UUID
    value: float
    unit: Unit
    source_timestamp: datetime | None = None
    message_id: str | None = None
    metadata: Mapping[str, Any] | None = None

    @property
    def idempotency_key(self) -> tuple[UUID, str] | None:
        if self.message_id is None or not self.message_id.strip():
            return None
        return (self.stream_id, self.message_id.strip())


@dataclass(frozen=True, slots=True)
class StreamProfile:
    """What the normalizer needs to know about a resolved stream."""

    stream_id: UUID
    stream_type: StreamType


@dataclass(frozen=True, slots=True)
class NormalizedReading:
    stream_id: UUID
    time: datetime
    value: float
    unit: Unit
    quality: QualityCode
    source_timestamp: datetime | None
    message_id: str | None
    metadata: Mapping[str, Any] | None = field(default=None)


@dataclass(frozen=True, slots=True)
class QualityPolicy:
    future_skew: timedelta = timedelta(minutes=config.FUTURE_SKEW_MINUTES)
    stale_after: timedelta = timedelta(hours=config.STALE_AFTER_HOURS)

    def __post_init__(self) -> None:
        if self.future_skew < timedelta(0):
            raise ValueError("future_skew must be >= 0")
        if self.stale_after <= timedelta(0):
            raise ValueError("stale_after must be > 0")


class Normalizer:
    def __init__(
        self,
        catalog: UnitCatalog = DEFAULT_CATALOG,
        policy: QualityPolicy | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.catalog = catalog
        self.policy = policy or QualityPolicy()
        self._clock = clock

    def convert(self, value: float, source: Unit, stream_type: StreamType) -> tuple[float, Unit, bool]:
        """
        Returns (value, unit, converted_ok). When no formula exists for the
        pair, the value comes back untouched in its source unit.
        """
        target = self.catalog.canonical_unit(stream_type)
        if source == target:
            return value, target, True
        if not self.catalog.supports(source, target):
            logger.warning("No conversion from %s to %s for %s stream", source, target, stream_type)
            return value, source, False
        return self.catalog.convert(value, source, target), target, True

    def in_range(self, canonical_value: float, stream_type: StreamType) -> bool:
        low, high = self.catalog.expected_range(stream_type)
        return low <= canonical_value <= high

    def determine_quality(
        self,
        value: float,
        canonical_value: float,
        stream_type: StreamType,
        source_timestamp: datetime | None,
        now: datetime,
    ) -> QualityCode:
        # first match wins
        if not math.isfinite(value):
            return QualityCode.BAD
        ts = as_utc(source_timestamp) if source_timestamp is not None else None
        if ts is not None and ts > now + self.policy.future_skew:
            return QualityCode.BAD_FUTURE_TIMESTAMP
        if not self.in_range(canonical_value, stream_type):
            return QualityCode.BAD_OUT_OF_RANGE
        if ts is not None and now - ts > self.policy.stale_after:
            return QualityCode.BAD_STALE
        return QualityCode.GOOD

    def normalize(
        self,
        raw: RawReading,
        stream: StreamProfile | None,
        now: datetime | None = None,
    ) -> NormalizedReading:
        now = as_utc(now) if now is not None else self._clock()
        ts = as_utc(raw.source_timestamp) if raw.source_timestamp is not None else None

        if stream is None:
            return NormalizedReading(
                stream_id=raw.stream_id,
                time=ts or now,
                value=raw.value,
                unit=raw.unit,
                quality=QualityCode.BAD_CONFIGURATION_ERROR,
                source_timestamp=ts,
                message_id=_clean_message_id(raw.message_id),
                metadata=raw.metadata,
            )

        if math.isfinite(raw.value):
            value, unit, converted = self.convert(raw.value, raw.unit, stream.stream_type)
        else:
            value, unit, converted = raw.value, raw.unit, True

        quality = self.determine_quality(raw.value, value, stream.stream_type, ts, now)
        if quality is QualityCode.GOOD and not converted:
            quality = QualityCode.UNCERTAIN

        return NormalizedReading(
            stream_id=raw.stream_id,
            time=ts or now,
            value=value,
            unit=unit,
            quality=quality,
            source_timestamp=ts,
            message_id=_clean_message_id(raw.message_id),
            metadata=raw.metadata,
        )


def _clean_message_id(message_id: str | None) -> str | None:
    if message_id is None:
        return None
    message_id = message_id.strip()
    return message_id or None
