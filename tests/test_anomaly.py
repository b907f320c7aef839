"""Baseline statistics, spike/drift detection and the site rollup."""

from __future__ import annotations

import uuid
from datetime import timedelta

import pytest

from conftest import NOW, make_stream, store_reading
from sitetelemetry import config
from sitetelemetry.anomaly import (
    AnalysisStatus,
    AnomalyDetector,
    AnomalySeverity,
    AnomalyType,
    RecommendationCategory,
    population_stats,
    spike_severity,
)
from sitetelemetry.quality import QualityCode
from sitetelemetry.units import StreamType


@pytest.fixture
def detector(db) -> AnomalyDetector:
    return AnomalyDetector(db, clock=lambda: NOW)


def _series(db, stream_id, values, start_minutes_ago: float, step_minutes: float = 1.0) -> None:
    for i, value in enumerate(values):
        store_reading(db, stream_id, value, NOW - timedelta(minutes=start_minutes_ago - i * step_minutes))


def test_population_stats() -> None:
    mean, std = population_stats([2, 4, 4, 4, 5, 5, 7, 9])
    assert mean == pytest.approx(5.0)
    assert std == pytest.approx(2.0)
    assert population_stats([]) == (0.0, 0.0)


@pytest.mark.parametrize(
    ("z", "expected"),
    [
        (4.5, AnomalySeverity.CRITICAL),
        (-4.1, AnomalySeverity.CRITICAL),
        (3.5, AnomalySeverity.HIGH),
        (2.7, AnomalySeverity.MEDIUM),
        (1.0, AnomalySeverity.LOW),
    ],
)
def test_spike_severity(z: float, expected: AnomalySeverity) -> None:
    assert spike_severity(z) is expected


def test_single_large_spike_is_critical(db, seed, detector) -> None:
    t = seed.temperature.id
    _series(db, t, [70.0] * 20, start_minutes_ago=40)
    store_reading(db, t, 95.0, NOW - timedelta(minutes=5))

    result = detector.analyze_stream(seed.site_id, t)

    assert result.status is AnalysisStatus.OK
    assert result.sample_count == 21
    assert result.stream_type is StreamType.TEMPERATURE
    (anomaly,) = result.anomalies
    assert anomaly.anomaly_type is AnomalyType.HIGH_SPIKE
    assert anomaly.severity is AnomalySeverity.CRITICAL
    assert anomaly.value == 95.0
    assert anomaly.z_score > 4

    (rec,) = result.recommendations
    assert rec.category is RecommendationCategory.SPIKE
    assert rec.priority == int(AnomalySeverity.CRITICAL)
    assert rec.action.startswith("Check HVAC system")


def test_low_spike_on_unmapped_stream_uses_fallback_text(db, seed, detector) -> None:
    co2 = make_stream(db, seed.site_id, seed.equipment_id, StreamType.CO2, "CO2")
    _series(db, co2.id, [800.0] * 20, start_minutes_ago=40)
    store_reading(db, co2.id, 400.0, NOW - timedelta(minutes=5))

    result = detector.analyze_stream(seed.site_id, co2.id)

    assert [a.anomaly_type for a in result.anomalies] == [AnomalyType.LOW_SPIKE]
    assert result.recommendations[0].action.startswith("Investigate sensor readings")


def test_insufficient_data(db, seed, detector) -> None:
    _series(db, seed.temperature.id, [70.0] * 9, start_minutes_ago=20)

    result = detector.analyze_stream(seed.site_id, seed.temperature.id)

    assert result.status is AnalysisStatus.INSUFFICIENT_DATA
    assert result.sample_count == 9
    assert result.anomalies == ()
    assert result.baseline_mean is None


def test_flat_signal_has_no_anomalies(db, seed, detector) -> None:
    _series(db, seed.temperature.id, [70.0] * 15, start_minutes_ago=30)

    result = detector.analyze_stream(seed.site_id, seed.temperature.id)

    assert result.baseline_stddev == 0
    assert result.anomalies == ()
    assert result.recommendations == ()


def test_upward_drift(db, seed, detector) -> None:
    t = seed.temperature.id
    _series(db, t, [50.0] * 20, start_minutes_ago=300)
    _series(db, t, [70.0] * 5, start_minutes_ago=30, step_minutes=5)

    result = detector.analyze_stream(seed.site_id, t)

    assert result.baseline_mean == pytest.approx(54.0)
    assert result.baseline_stddev == pytest.approx(8.0)
    (drift,) = result.anomalies
    assert drift.anomaly_type is AnomalyType.UPWARD_DRIFT
    assert drift.severity is AnomalySeverity.HIGH
    assert drift.value == pytest.approx(70.0)
    (rec,) = result.recommendations
    assert rec.category is RecommendationCategory.DRIFT
    assert rec.action.startswith("Gradual temperature increase")
    assert "54.00" in rec.impact


def test_high_variability_adds_stability_recommendation(db, seed, detector) -> None:
    h = seed.humidity.id
    _series(db, h, [10.0, 30.0] * 10, start_minutes_ago=300)
    _series(db, h, [60.0] * 5, start_minutes_ago=30, step_minutes=5)

    result = detector.analyze_stream(seed.site_id, h)

    assert [a.anomaly_type for a in result.anomalies] == [AnomalyType.UPWARD_DRIFT]
    categories = [r.category for r in result.recommendations]
    assert categories == [RecommendationCategory.DRIFT, RecommendationCategory.STABILITY]
    assert result.recommendations[1].action.startswith("High humidity variability")


def test_custom_window_narrows_spike_search(db, seed, detector) -> None:
    t = seed.temperature.id
    _series(db, t, [70.0] * 20, start_minutes_ago=40)
    store_reading(db, t, 95.0, NOW - timedelta(minutes=30))

    wide = detector.analyze_stream(seed.site_id, t)
    narrow = detector.analyze_stream(seed.site_id, t, window=timedelta(minutes=10))

    assert len(wide.anomalies) == 1
    assert all(a.anomaly_type.is_drift or a.timestamp >= NOW - timedelta(minutes=10) for a in narrow.anomalies)
    assert not any(a.anomaly_type.is_spike for a in narrow.anomalies)


def test_baseline_keeps_most_recent_samples(db, seed, detector, monkeypatch) -> None:
    monkeypatch.setattr(config, "BASELINE_SAMPLE_CAP", 10)
    t = seed.temperature.id
    _series(db, t, [100.0] * 10, start_minutes_ago=600)
    _series(db, t, [50.0] * 10, start_minutes_ago=30)

    result = detector.analyze_stream(seed.site_id, t)

    assert result.sample_count == 10
    assert result.baseline_mean == pytest.approx(50.0)


def test_readings_older_than_baseline_are_ignored(db, seed, detector) -> None:
    _series(db, seed.temperature.id, [70.0] * 12, start_minutes_ago=60 * 30)

    result = detector.analyze_stream(seed.site_id, seed.temperature.id)

    assert result.status is AnalysisStatus.INSUFFICIENT_DATA
    assert result.sample_count == 0


def test_other_site_stream_is_invisible(db, seed, detector) -> None:
    _series(db, seed.foreign.id, [70.0] * 12, start_minutes_ago=30)

    result = detector.analyze_stream(seed.site_id, seed.foreign.id)

    assert result.status is AnalysisStatus.INSUFFICIENT_DATA


def test_site_rollup(db, seed, detector) -> None:
    _series(db, seed.temperature.id, [70.0] * 20, start_minutes_ago=40)
    store_reading(db, seed.temperature.id, 95.0, NOW - timedelta(minutes=5))
    _series(db, seed.humidity.id, [10.0, 30.0] * 10, start_minutes_ago=300)
    _series(db, seed.humidity.id, [60.0] * 5, start_minutes_ago=30, step_minutes=5)
    _series(db, seed.ec.id, [1500.0] * 3, start_minutes_ago=10)

    idle = make_stream(db, seed.site_id, seed.equipment_id, StreamType.PH, "Retired pH", active=False)
    _series(db, idle.id, [6.0] * 20 + [2.0], start_minutes_ago=30)

    report = detector.analyze_site(seed.site_id)

    assert report.streams_analyzed == 3
    assert {r.stream_id for r in report.stream_results} == {seed.temperature.id, seed.humidity.id}
    assert report.streams_with_anomalies == 2
    assert report.total_anomalies == 2
    assert report.failed_streams == ()

    by_category = {r.category: r for r in report.top_recommendations}
    assert len(by_category) == len(report.top_recommendations) <= config.MAX_TOP_RECOMMENDATIONS
    assert set(by_category) == {
        RecommendationCategory.SPIKE,
        RecommendationCategory.DRIFT,
        RecommendationCategory.STABILITY,
    }
    assert by_category[RecommendationCategory.SPIKE].priority == int(AnomalySeverity.CRITICAL)


def test_site_rollup_with_no_streams(detector) -> None:
    report = detector.analyze_site(uuid.uuid4())
    assert report.streams_analyzed == 0
    assert report.top_recommendations == ()


def test_window_must_be_positive(seed, detector) -> None:
    with pytest.raises(ValueError):
        detector.analyze_stream(seed.site_id, seed.temperature.id, window=timedelta(0))


def test_uncertain_readings_stay_out_of_the_baseline(db, seed, detector) -> None:
    t = seed.temperature.id
    _series(db, t, [70.0] * 20, start_minutes_ago=40)
    # a device reporting Celsius into a Fahrenheit stream
    for i in range(5):
        store_reading(db, t, 21.0, NOW - timedelta(minutes=10 - i), quality=QualityCode.UNCERTAIN)

    result = detector.analyze_stream(seed.site_id, t)

    assert result.sample_count == 20
    assert result.baseline_mean == pytest.approx(70.0)
    assert result.anomalies == ()
