# sitetelemetry/schemas.py
from datetime import datetime
from typing import Any, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from .alerts import AlertRuleType, AlertSeverity
from .anomaly import AnomalySeverity
from .ingest import IngestionProtocol
from .units import StreamType, Unit


# ---------- ingestion input ----------
class ReadingIn(BaseModel):
    stream_id: UUID
    value: float
    # any accepted unit spelling ("°C", "degc", "DegreesCelsius" ...)
    unit: str = Field(min_length=1, max_length=32)
    source_timestamp: Optional[datetime] = None
    message_id: Optional[str] = Field(default=None, max_length=128)
    metadata: Optional[dict[str, Any]] = None


class TelemetryBatchIn(BaseModel):
    equipment_id: UUID
    protocol: IngestionProtocol = IngestionProtocol.HTTP
    session_id: Optional[UUID] = None
    readings: List[ReadingIn] = Field(min_length=1)


class EquipmentReadingsIn(BaseModel):
    session_id: Optional[UUID] = None
    readings: List[ReadingIn] = Field(min_length=1)


class QueueMessageIn(BaseModel):
    topic: str = Field(min_length=1, max_length=256)
    # raw JSON text, or an already-decoded object / array
    payload: Any


# ---------- ingestion output ----------
class ItemResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    position: int
    stream_id: UUID
    message_id: Optional[str] = None
    outcome: str
    quality: Optional[str] = None


class IngestResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_received: int
    accepted: int
    rejected: int
    duplicates: int
    processing_time_ms: int
    items: List[ItemResultOut] = []


class SessionIn(BaseModel):
    equipment_id: UUID
    protocol: IngestionProtocol = IngestionProtocol.HTTP


class SessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    site_id: UUID
    equipment_id: UUID
    protocol: str
    started_at: datetime
    last_heartbeat_at: datetime
    ended_at: Optional[datetime] = None
    batches_received: int
    readings_received: int


class IngestionErrorOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    session_id: Optional[UUID] = None
    equipment_id: Optional[UUID] = None
    protocol: str
    error_type: str
    error_message: str
    raw_payload: Optional[dict[str, Any]] = None
    occurred_at: datetime


# ---------- streams / readings ----------
class StreamIn(BaseModel):
    # supply an id to rename an existing stream
    id: Optional[UUID] = None
    equipment_id: UUID
    stream_type: StreamType
    unit: Optional[Unit] = None
    display_name: str = Field(min_length=1, max_length=128)


class StreamPatch(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    is_active: Optional[bool] = None


class StreamOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    site_id: UUID
    equipment_id: UUID
    stream_type: str
    unit: str
    display_name: str
    is_active: bool


class ReadingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    stream_id: UUID
    time: datetime
    value: float
    quality_code: str
    message_id: Optional[str] = None
    source_timestamp: Optional[datetime] = None


class LatestReadingOut(BaseModel):
    stream_id: UUID
    display_name: str
    stream_type: str
    unit: str
    time: datetime
    value: float
    quality_code: str


# ---------- alerts ----------
class AlertRuleIn(BaseModel):
    rule_name: str = Field(min_length=1, max_length=128)
    rule_type: AlertRuleType
    stream_ids: List[UUID] = Field(min_length=1)
    threshold_config: dict[str, float]
    evaluation_window_minutes: int = Field(default=5, gt=0)
    cooldown_minutes: int = Field(default=15, ge=0)
    severity: AlertSeverity = AlertSeverity.WARNING


class AlertRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    rule_name: str
    rule_type: str
    stream_ids: List[UUID]
    threshold_config: dict[str, float]
    evaluation_window_minutes: int
    cooldown_minutes: int
    severity: str
    is_active: bool


class AlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    rule_id: UUID
    stream_id: UUID
    severity: str
    current_value: Optional[float] = None
    threshold_value: Optional[float] = None
    message: str
    fired_at: datetime
    updated_at: datetime
    cleared_at: Optional[datetime] = None
    acknowledged_at: Optional[datetime] = None
    acknowledged_by: Optional[UUID] = None
    acknowledgement_notes: Optional[str] = None


class AcknowledgeIn(BaseModel):
    user_id: UUID
    notes: Optional[str] = Field(default=None, max_length=1000)


class RuleFailureOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rule_id: UUID
    error: str


class SweepOut(BaseModel):
    site_id: UUID
    evaluated_at: datetime
    rules_evaluated: int
    created: int
    refreshed: int
    cleared: int
    failures: List[RuleFailureOut] = []


# ---------- anomalies ----------
class AnomalyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    timestamp: datetime
    value: float
    expected_value: float
    z_score: float
    anomaly_type: str
    severity: AnomalySeverity

    @field_serializer("severity", when_used="json")
    def _severity_name(self, severity: AnomalySeverity) -> str:
        return severity.name.lower()


class RecommendationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    category: str
    priority: int
    action: str
    impact: str


class StreamAnalysisOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    stream_id: UUID
    analyzed_at: datetime
    status: str
    stream_type: str
    sample_count: int
    baseline_mean: Optional[float] = None
    baseline_stddev: Optional[float] = None
    anomalies_detected: int
    anomalies: List[AnomalyOut] = []
    recommendations: List[RecommendationOut] = []


class SiteAnomalyReportOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    site_id: UUID
    generated_at: datetime
    streams_analyzed: int
    streams_with_anomalies: int
    total_anomalies: int
    stream_results: List[StreamAnalysisOut] = []
    top_recommendations: List[RecommendationOut] = []
    failed_streams: List[UUID] = []
