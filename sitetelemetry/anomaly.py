"""Statistical anomaly detection over a stream's recent readings.

A 24h baseline gives the population mean and standard deviation. Readings in
the shorter analysis window are z-scored against it (spikes), the window mean
is compared to the baseline mean (drift), and a high coefficient of variation
adds a stability recommendation.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import IntEnum, StrEnum
from types import MappingProxyType
from typing import Callable, Mapping, Sequence
from uuid import UUID

from sqlalchemy.orm import Session

from . import config, repository
from .normalization import as_utc, utcnow
from .quality import QualityCode
from .tenancy import site_scope
from .units import StreamType

logger = logging.getLogger(__name__)


class AnomalyType(StrEnum):
    HIGH_SPIKE = "high_spike"
    LOW_SPIKE = "low_spike"
    UPWARD_DRIFT = "upward_drift"
    DOWNWARD_DRIFT = "downward_drift"

    @property
    def is_spike(self) -> bool:
        return self in (AnomalyType.HIGH_SPIKE, AnomalyType.LOW_SPIKE)

    @property
    def is_drift(self) -> bool:
        return self in (AnomalyType.UPWARD_DRIFT, AnomalyType.DOWNWARD_DRIFT)


class AnomalySeverity(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class AnalysisStatus(StrEnum):
    OK = "ok"
    INSUFFICIENT_DATA = "insufficient_data"


class RecommendationCategory(StrEnum):
    SPIKE = "Spike Detection"
    DRIFT = "Drift Detection"
    STABILITY = "Stability"


@dataclass(frozen=True, slots=True)
class DetectedAnomaly:
    timestamp: datetime
    value: float
    expected_value: float
    z_score: float
    anomaly_type: AnomalyType
    severity: AnomalySeverity


@dataclass(frozen=True, slots=True)
class Recommendation:
    category: RecommendationCategory
    priority: int
    action: str
    impact: str


@dataclass(frozen=True)
class StreamAnalysis:
    stream_id: UUID
    analyzed_at: datetime
    status: AnalysisStatus
    sample_count: int
    stream_type: StreamType = StreamType.GENERIC
    baseline_mean: float | None = None
    baseline_stddev: float | None = None
    anomalies: tuple[DetectedAnomaly, ...] = field(default=())
    recommendations: tuple[Recommendation, ...] = field(default=())

    @property
    def anomalies_detected(self) -> int:
        return len(self.anomalies)


@dataclass(frozen=True)
class SiteAnomalyReport:
    site_id: UUID
    generated_at: datetime
    streams_analyzed: int
    stream_results: tuple[StreamAnalysis, ...] = field(default=())
    top_recommendations: tuple[Recommendation, ...] = field(default=())
    failed_streams: tuple[UUID, ...] = field(default=())

    @property
    def streams_with_anomalies(self) -> int:
        return len(self.stream_results)

    @property
    def total_anomalies(self) -> int:
        return sum(r.anomalies_detected for r in self.stream_results)


# ---------- recommendation text ----------
_SPIKE_ACTIONS = {
    (StreamType.TEMPERATURE, AnomalyType.HIGH_SPIKE): "Check HVAC system and verify ventilation. High temperature spikes may indicate cooling failure or blocked airflow.",
    (StreamType.TEMPERATURE, AnomalyType.LOW_SPIKE): "Check heating system and insulation. Low temperature spikes may indicate heating failure or draft infiltration.",
    (StreamType.HUMIDITY, AnomalyType.HIGH_SPIKE): "Check dehumidification system. High humidity spikes increase disease risk.",
    (StreamType.HUMIDITY, AnomalyType.LOW_SPIKE): "Check humidification system and irrigation schedule. Low humidity may stress plants.",
    (StreamType.EC, AnomalyType.HIGH_SPIKE): "Review nutrient dosing. High EC spikes may indicate over-feeding or concentration issues.",
    (StreamType.PH, AnomalyType.HIGH_SPIKE): "Check pH adjustment system and source water. pH instability affects nutrient uptake.",
    (StreamType.PH, AnomalyType.LOW_SPIKE): "Check pH adjustment system and source water. pH instability affects nutrient uptake.",
    (StreamType.CO2, AnomalyType.HIGH_SPIKE): "Check CO2 enrichment system controls. Excessive CO2 can be harmful.",
}

_DRIFT_ACTIONS = {
    (StreamType.TEMPERATURE, AnomalyType.UPWARD_DRIFT): "Gradual temperature increase detected. Check cooling capacity and lighting heat output.",
    (StreamType.TEMPERATURE, AnomalyType.DOWNWARD_DRIFT): "Gradual temperature decrease detected. Check heating system efficiency.",
    (StreamType.HUMIDITY, AnomalyType.UPWARD_DRIFT): "Humidity trending upward. May indicate dehumidifier degradation or increased plant transpiration.",
    (StreamType.HUMIDITY, AnomalyType.DOWNWARD_DRIFT): "Humidity trending downward. Check humidification system and irrigation coverage.",
    (StreamType.EC, AnomalyType.UPWARD_DRIFT): "EC trending upward. May indicate salt buildup, consider a flush cycle.",
    (StreamType.EC, AnomalyType.DOWNWARD_DRIFT): "EC trending downward. Check nutrient dosing system calibration.",
    (StreamType.VPD, AnomalyType.UPWARD_DRIFT): "VPD drift detected. Review temperature and humidity setpoints for optimal plant stress levels.",
    (StreamType.VPD, AnomalyType.DOWNWARD_DRIFT): "VPD drift detected. Review temperature and humidity setpoints for optimal plant stress levels.",
}

_STABILITY_ACTIONS = {
    StreamType.TEMPERATURE: "High temperature variability. Consider adding thermal mass or improving HVAC response time.",
    StreamType.HUMIDITY: "High humidity variability. Check dehumidifier cycling and room air circulation.",
    StreamType.EC: "High EC variability. Review mixing tank and injection system consistency.",
    StreamType.PH: "High pH variability. Check buffer capacity and adjustment system calibration.",
}


@dataclass(frozen=True)
class RecommendationCatalog:
    spike_actions: Mapping[tuple[StreamType, AnomalyType], str] = field(
        default_factory=lambda: MappingProxyType(_SPIKE_ACTIONS)
    )
    drift_actions: Mapping[tuple[StreamType, AnomalyType], str] = field(
        default_factory=lambda: MappingProxyType(_DRIFT_ACTIONS)
    )
    stability_actions: Mapping[StreamType, str] = field(
        default_factory=lambda: MappingProxyType(_STABILITY_ACTIONS)
    )
    spike_fallback: str = "Investigate sensor readings and environmental controls for the detected anomalies."
    drift_fallback: str = "Environmental parameter showing gradual drift. Review system calibration and setpoints."
    stability_fallback: str = "High measurement variability detected. Review control system tuning."

    def spike(self, stream_type: StreamType, spikes: Sequence[DetectedAnomaly]) -> Recommendation:
        # high spikes take precedence when both directions are present
        directions = [AnomalyType.HIGH_SPIKE, AnomalyType.LOW_SPIKE]
        present = {a.anomaly_type for a in spikes}
        action = next(
            (
                self.spike_actions[(stream_type, d)]
                for d in directions
                if d in present and (stream_type, d) in self.spike_actions
            ),
            self.spike_fallback,
        )
        return Recommendation(
            category=RecommendationCategory.SPIKE,
            priority=int(max(a.severity for a in spikes)),
            action=action,
            impact=f"Detected {len(spikes)} spike(s) that deviate significantly from baseline.",
        )

    def drift(self, stream_type: StreamType, drifts: Sequence[DetectedAnomaly], mean: float) -> Recommendation:
        direction = (
            AnomalyType.UPWARD_DRIFT
            if any(a.anomaly_type is AnomalyType.UPWARD_DRIFT for a in drifts)
            else AnomalyType.DOWNWARD_DRIFT
        )
        return Recommendation(
            category=RecommendationCategory.DRIFT,
            priority=int(AnomalySeverity.MEDIUM),
            action=self.drift_actions.get((stream_type, direction), self.drift_fallback),
            impact=f"Parameter drifting from baseline of {mean:.2f}. Early intervention prevents larger issues.",
        )

    def stability(self, stream_type: StreamType) -> Recommendation:
        return Recommendation(
            category=RecommendationCategory.STABILITY,
            priority=int(AnomalySeverity.MEDIUM),
            action=self.stability_actions.get(stream_type, self.stability_fallback),
            impact="High variability creates plant stress. Tighter control improves consistency and yields.",
        )


DEFAULT_RECOMMENDATIONS = RecommendationCatalog()


# ---------- statistics ----------
def population_stats(values: Sequence[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return mean, math.sqrt(variance)


def spike_severity(z_score: float) -> AnomalySeverity:
    magnitude = abs(z_score)
    if magnitude > 4.0:
        return AnomalySeverity.CRITICAL
    if magnitude > 3.0:
        return AnomalySeverity.HIGH
    if magnitude > config.ZSCORE_THRESHOLD:
        return AnomalySeverity.MEDIUM
    return AnomalySeverity.LOW


def coefficient_of_variation(mean: float, stddev: float) -> float:
    if mean == 0:
        return math.inf if stddev > 0 else 0.0
    return stddev / abs(mean)


class AnomalyDetector:
    def __init__(
        self,
        db: Session,
        catalog: RecommendationCatalog = DEFAULT_RECOMMENDATIONS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.catalog = catalog
        self.clock = clock

    def analyze_stream(self, site_id: UUID, stream_id: UUID, window: timedelta | None = None) -> StreamAnalysis:
        window = window or config.DEFAULT_ANALYSIS_WINDOW
        if window <= timedelta(0):
            raise ValueError("Analysis window must be positive")
        now = self.clock()
        baseline_start = now - timedelta(hours=config.BASELINE_HOURS)

        with site_scope(site_id):
            # newest first so the cap keeps the most recent samples; uncertain
            # readings may be in a foreign unit, so only good ones count
            readings = repository.get_readings(
                self.db,
                stream_id,
                baseline_start,
                now,
                limit=config.BASELINE_SAMPLE_CAP,
                newest_first=True,
                quality=QualityCode.GOOD,
            )
            readings.reverse()
            stream = repository.get_stream(self.db, stream_id)

        stream_type = _stream_type(stream.stream_type) if stream is not None else StreamType.GENERIC
        if len(readings) < config.MIN_BASELINE_SAMPLES:
            logger.debug("Insufficient baseline for stream %s: %d samples", stream_id, len(readings))
            return StreamAnalysis(
                stream_id=stream_id,
                analyzed_at=now,
                status=AnalysisStatus.INSUFFICIENT_DATA,
                sample_count=len(readings),
                stream_type=stream_type,
            )

        mean, stddev = population_stats([r.value for r in readings])
        window_start = now - window
        recent = [r for r in readings if as_utc(r.time) >= window_start]

        anomalies: list[DetectedAnomaly] = []
        for reading in recent:
            z = (reading.value - mean) / stddev if stddev > 0 else 0.0
            if abs(z) > config.ZSCORE_THRESHOLD:
                anomalies.append(
                    DetectedAnomaly(
                        timestamp=as_utc(reading.time),
                        value=reading.value,
                        expected_value=mean,
                        z_score=z,
                        anomaly_type=AnomalyType.HIGH_SPIKE if z > 0 else AnomalyType.LOW_SPIKE,
                        severity=spike_severity(z),
                    )
                )

        recent_mean = sum(r.value for r in recent) / len(recent) if recent else mean
        drift_percent = (recent_mean - mean) / abs(mean) * 100 if mean != 0 else 0.0
        if abs(drift_percent) > config.DRIFT_PERCENT_THRESHOLD:
            anomalies.append(
                DetectedAnomaly(
                    timestamp=now,
                    value=recent_mean,
                    expected_value=mean,
                    z_score=drift_percent / config.DRIFT_PERCENT_THRESHOLD,
                    anomaly_type=AnomalyType.UPWARD_DRIFT if drift_percent > 0 else AnomalyType.DOWNWARD_DRIFT,
                    severity=AnomalySeverity.HIGH if abs(drift_percent) > 25 else AnomalySeverity.MEDIUM,
                )
            )

        return StreamAnalysis(
            stream_id=stream_id,
            analyzed_at=now,
            status=AnalysisStatus.OK,
            sample_count=len(readings),
            stream_type=stream_type,
            baseline_mean=mean,
            baseline_stddev=stddev,
            anomalies=tuple(anomalies),
            recommendations=tuple(self._recommend(stream_type, anomalies, mean, stddev)),
        )

    def _recommend(
        self, stream_type: StreamType, anomalies: Sequence[DetectedAnomaly], mean: float, stddev: float
    ) -> list[Recommendation]:
        if not anomalies:
            return []
        out: list[Recommendation] = []
        spikes = [a for a in anomalies if a.anomaly_type.is_spike]
        drifts = [a for a in anomalies if a.anomaly_type.is_drift]
        if spikes:
            out.append(self.catalog.spike(stream_type, spikes))
        if drifts:
            out.append(self.catalog.drift(stream_type, drifts, mean))
        if coefficient_of_variation(mean, stddev) > config.VARIABILITY_CV_THRESHOLD:
            out.append(self.catalog.stability(stream_type))
        return out

    def analyze_site(self, site_id: UUID) -> SiteAnomalyReport:
        with site_scope(site_id):
            streams = repository.list_streams(self.db, active_only=True)

        results: list[StreamAnalysis] = []
        failed: list[UUID] = []
        for stream in streams:
            try:
                analysis = self.analyze_stream(site_id, stream.id)
            except Exception:
                self.db.rollback()
                logger.warning("Failed to analyze stream %s for anomalies", stream.id, exc_info=True)
                failed.append(stream.id)
                continue
            if analysis.anomalies_detected > 0:
                results.append(analysis)

        best: dict[RecommendationCategory, Recommendation] = {}
        for analysis in results:
            for rec in analysis.recommendations:
                current = best.get(rec.category)
                if current is None or rec.priority > current.priority:
                    best[rec.category] = rec

        report = SiteAnomalyReport(
            site_id=site_id,
            generated_at=self.clock(),
            streams_analyzed=len(streams),
            stream_results=tuple(results),
            top_recommendations=tuple(list(best.values())[: config.MAX_TOP_RECOMMENDATIONS]),
            failed_streams=tuple(failed),
        )
        logger.info(
            "Anomaly rollup for site %s: analyzed=%d, with_anomalies=%d, total=%d",
            site_id, report.streams_analyzed, report.streams_with_anomalies, report.total_anomalies,
        )
        return report


def _stream_type(value: str) -> StreamType:
    try:
        return StreamType(value)
    except ValueError:
        return StreamType.GENERIC
