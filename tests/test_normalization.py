"""Unit tests for unit normalization and quality derivation."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from sitetelemetry.normalization import Normalizer, QualityPolicy, RawReading, StreamProfile, as_utc
from sitetelemetry.quality import IngestionErrorType, QualityCode, error_type_for
from sitetelemetry.units import StreamType, Unit

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
STREAM_ID = uuid.uuid4()


def _normalizer() -> Normalizer:
    return Normalizer(clock=lambda: NOW)


def _raw(value: float, unit: Unit = Unit.DEGREES_FAHRENHEIT, ts: datetime | None = None, **kwargs) -> RawReading:
    return RawReading(stream_id=STREAM_ID, value=value, unit=unit, source_timestamp=ts, **kwargs)


def _profile(stream_type: StreamType = StreamType.TEMPERATURE) -> StreamProfile:
    return StreamProfile(stream_id=STREAM_ID, stream_type=stream_type)


def test_converts_to_canonical_unit() -> None:
    result = _normalizer().normalize(_raw(25.0, Unit.DEGREES_CELSIUS, NOW), _profile())

    assert result.value == pytest.approx(77.0)
    assert result.unit is Unit.DEGREES_FAHRENHEIT
    assert result.quality is QualityCode.GOOD
    assert result.time == NOW


def test_out_of_range_after_conversion() -> None:
    result = _normalizer().normalize(_raw(200.0, ts=NOW), _profile())
    assert result.quality is QualityCode.BAD_OUT_OF_RANGE


def test_range_bounds_are_inclusive() -> None:
    n = _normalizer()
    assert n.normalize(_raw(150.0, ts=NOW), _profile()).quality is QualityCode.GOOD
    assert n.normalize(_raw(-50.0, ts=NOW), _profile()).quality is QualityCode.GOOD


@pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_value_is_bad(value: float) -> None:
    result = _normalizer().normalize(_raw(value, ts=NOW), _profile())
    assert result.quality is QualityCode.BAD


def test_future_timestamp_beyond_skew() -> None:
    n = _normalizer()
    assert n.normalize(_raw(70.0, ts=NOW + timedelta(minutes=10)), _profile()).quality is QualityCode.BAD_FUTURE_TIMESTAMP
    assert n.normalize(_raw(70.0, ts=NOW + timedelta(minutes=4)), _profile()).quality is QualityCode.GOOD


def test_stale_timestamp() -> None:
    result = _normalizer().normalize(_raw(70.0, ts=NOW - timedelta(hours=25)), _profile())
    assert result.quality is QualityCode.BAD_STALE


def test_future_check_wins_over_range_check() -> None:
    result = _normalizer().normalize(_raw(500.0, ts=NOW + timedelta(hours=1)), _profile())
    assert result.quality is QualityCode.BAD_FUTURE_TIMESTAMP


def test_range_check_wins_over_staleness() -> None:
    result = _normalizer().normalize(_raw(500.0, ts=NOW - timedelta(days=3)), _profile())
    assert result.quality is QualityCode.BAD_OUT_OF_RANGE


def test_unknown_stream_is_configuration_error() -> None:
    result = _normalizer().normalize(_raw(70.0, ts=NOW), None)
    assert result.quality is QualityCode.BAD_CONFIGURATION_ERROR
    assert result.value == 70.0


def test_unsupported_unit_pair_is_uncertain() -> None:
    result = _normalizer().normalize(_raw(50.0, Unit.PARTS_PER_MILLION, NOW), _profile())

    assert result.quality is QualityCode.UNCERTAIN
    assert result.unit is Unit.PARTS_PER_MILLION
    assert result.value == 50.0


def test_unsupported_unit_pair_still_range_checked() -> None:
    result = _normalizer().normalize(_raw(900.0, Unit.PARTS_PER_MILLION, NOW), _profile())
    assert result.quality is QualityCode.BAD_OUT_OF_RANGE


def test_missing_source_timestamp_uses_now() -> None:
    result = _normalizer().normalize(_raw(70.0), _profile())
    assert result.time == NOW
    assert result.source_timestamp is None


def test_naive_timestamps_are_treated_as_utc() -> None:
    naive = datetime(2026, 3, 2, 11, 30)
    result = _normalizer().normalize(_raw(70.0, ts=naive), _profile())
    assert result.time == as_utc(naive)
    assert result.time.tzinfo is timezone.utc


def test_blank_message_id_is_dropped() -> None:
    result = _normalizer().normalize(_raw(70.0, ts=NOW, message_id="   "), _profile())
    assert result.message_id is None
    assert _raw(70.0, message_id="  ").idempotency_key is None
    assert _raw(70.0, message_id=" m1 ").idempotency_key == (STREAM_ID, "m1")


def test_policy_rejects_negative_windows() -> None:
    with pytest.raises(ValueError):
        QualityPolicy(future_skew=timedelta(minutes=-1))
    with pytest.raises(ValueError):
        QualityPolicy(stale_after=timedelta(0))


def test_custom_policy_is_honoured() -> None:
    n = Normalizer(policy=QualityPolicy(stale_after=timedelta(minutes=30)), clock=lambda: NOW)
    assert n.normalize(_raw(70.0, ts=NOW - timedelta(hours=1)), _profile()).quality is QualityCode.BAD_STALE


def test_quality_families() -> None:
    assert not QualityCode.GOOD.is_bad
    assert not QualityCode.UNCERTAIN.is_bad
    assert QualityCode.GOOD.is_good
    assert not QualityCode.UNCERTAIN.is_good
    assert all(
        q.is_bad for q in QualityCode if q not in (QualityCode.GOOD, QualityCode.UNCERTAIN)
    )


@pytest.mark.parametrize(
    ("quality", "expected"),
    [
        (QualityCode.BAD_OUT_OF_RANGE, IngestionErrorType.OUT_OF_RANGE),
        (QualityCode.BAD_STALE, IngestionErrorType.STALE_DATA),
        (QualityCode.BAD_FUTURE_TIMESTAMP, IngestionErrorType.FUTURE_TIMESTAMP),
        (QualityCode.BAD_CONFIGURATION_ERROR, IngestionErrorType.VALIDATION_FAILURE),
        (QualityCode.BAD, IngestionErrorType.PROCESSING_ERROR),
    ],
)
def test_error_type_for_bad_quality(quality: QualityCode, expected: IngestionErrorType) -> None:
    assert error_type_for(quality) is expected


def test_error_type_for_good_quality_raises() -> None:
    with pytest.raises(ValueError):
        error_type_for(QualityCode.GOOD)
