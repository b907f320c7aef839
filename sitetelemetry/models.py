import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class APIKey(Base):
    __tablename__ = "api_keys"
    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner: Mapped[str] = mapped_column(String(128))
    revoked: Mapped[bool] = mapped_column(Boolean, default=False)


class SensorStream(Base):
    __tablename__ = "sensor_streams"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    site_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    equipment_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    stream_type: Mapped[str] = mapped_column(String(32))
    unit: Mapped[str] = mapped_column(String(16))
    display_name: Mapped[str] = mapped_column(String(128))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_streams_site_active", "site_id", "is_active"),
    )


class SensorReading(Base):
    """Append-only. Value is in the stream's canonical unit."""

    __tablename__ = "sensor_readings"
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    stream_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("sensor_streams.id"))
    time: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    value: Mapped[float] = mapped_column(Float)
    quality_code: Mapped[str] = mapped_column(String(32))
    source_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ingestion_timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    message_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)

    __table_args__ = (
        # idempotency key; NULL message ids are exempt
        UniqueConstraint("stream_id", "message_id", name="uq_reading_stream_message"),
        Index("idx_readings_stream_time", "stream_id", "time"),
    )


class AlertRule(Base):
    __tablename__ = "alert_rules"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    site_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    rule_name: Mapped[str] = mapped_column(String(128))
    rule_type: Mapped[str] = mapped_column(String(32))
    stream_ids: Mapped[list] = mapped_column(JSON)
    threshold_config: Mapped[dict] = mapped_column(JSON)
    evaluation_window_minutes: Mapped[int] = mapped_column(Integer, default=5)
    cooldown_minutes: Mapped[int] = mapped_column(Integer, default=15)
    severity: Mapped[str] = mapped_column(String(16), default="warning")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    @property
    def stream_uuids(self) -> list[uuid.UUID]:
        return [uuid.UUID(str(s)) for s in self.stream_ids or []]


class AlertInstance(Base):
    __tablename__ = "alert_instances"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    site_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    rule_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("alert_rules.id"))
    stream_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    severity: Mapped[str] = mapped_column(String(16))
    current_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    threshold_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    message: Mapped[str] = mapped_column(Text)
    fired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    cleared_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    acknowledgement_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    # "rule_id:stream_id" while active, NULL once cleared; unique NULLs never collide
    active_key: Mapped[str | None] = mapped_column(String(80), nullable=True)

    __table_args__ = (
        UniqueConstraint("active_key", name="uq_alert_active_rule_stream"),
        Index("idx_alerts_site_cleared", "site_id", "cleared_at"),
    )

    @staticmethod
    def active_key_for(rule_id: uuid.UUID, stream_id: uuid.UUID) -> str:
        return f"{rule_id}:{stream_id}"

    def mark_cleared(self, at: datetime) -> None:
        self.cleared_at = at
        self.updated_at = at
        self.active_key = None

    @property
    def is_active(self) -> bool:
        return self.cleared_at is None

    @property
    def is_acknowledged(self) -> bool:
        return self.acknowledged_at is not None


class IngestionSession(Base):
    __tablename__ = "ingestion_sessions"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    site_id: Mapped[uuid.UUID] = mapped_column(Uuid, index=True)
    equipment_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    protocol: Mapped[str] = mapped_column(String(16))
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    last_heartbeat_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    batches_received: Mapped[int] = mapped_column(Integer, default=0)
    readings_received: Mapped[int] = mapped_column(Integer, default=0)


class IngestionError(Base):
    __tablename__ = "ingestion_errors"
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    site_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    session_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    equipment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    protocol: Mapped[str] = mapped_column(String(16))
    error_type: Mapped[str] = mapped_column(String(32))
    error_message: Mapped[str] = mapped_column(Text)
    raw_payload: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_ingestion_errors_site_time", "site_id", "occurred_at"),
    )
