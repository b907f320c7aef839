"""Shared fixtures: in-memory SQLite, seeded streams, a fixed clock and an API client."""

from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from sitetelemetry import deps, models
from sitetelemetry.database import get_db
from sitetelemetry.ingest import TelemetryIngestor
from sitetelemetry.main import app
from sitetelemetry.quality import QualityCode
from sitetelemetry.tenancy import site_scope
from sitetelemetry.units import CANONICAL_UNITS, StreamType

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
API_KEY = "test-key"


def fixed_clock() -> datetime:
    return NOW


@dataclass
class RecordingPublisher:
    published: list[tuple[uuid.UUID, list[models.SensorReading]]] = field(default_factory=list)

    def publish(self, site_id, readings) -> int:
        self.published.append((site_id, list(readings)))
        return len(readings)

    @property
    def reading_count(self) -> int:
        return sum(len(r) for _, r in self.published)


@dataclass
class Seed:
    site_id: uuid.UUID
    other_site_id: uuid.UUID
    equipment_id: uuid.UUID
    temperature: models.SensorStream
    humidity: models.SensorStream
    ec: models.SensorStream
    foreign: models.SensorStream


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    models.Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    yield session
    session.close()


def make_stream(db, site_id, equipment_id, stream_type: StreamType, name: str, active: bool = True):
    stream = models.SensorStream(
        site_id=site_id,
        equipment_id=equipment_id,
        stream_type=stream_type.value,
        unit=CANONICAL_UNITS[stream_type].value,
        display_name=name,
        is_active=active,
        created_at=NOW,
        updated_at=NOW,
    )
    db.add(stream)
    db.commit()
    return stream


def store_reading(
    db,
    stream_id: uuid.UUID,
    value: float,
    time: datetime,
    quality: QualityCode = QualityCode.GOOD,
    message_id: str | None = None,
) -> models.SensorReading:
    row = models.SensorReading(
        stream_id=stream_id,
        time=time,
        value=value,
        quality_code=quality.value,
        source_timestamp=time,
        ingestion_timestamp=time,
        message_id=message_id,
    )
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def seed(db) -> Seed:
    site_id, other_site_id, equipment_id = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    db.add(models.APIKey(key=API_KEY, owner="tests", revoked=False))
    db.commit()
    return Seed(
        site_id=site_id,
        other_site_id=other_site_id,
        equipment_id=equipment_id,
        temperature=make_stream(db, site_id, equipment_id, StreamType.TEMPERATURE, "Room temp"),
        humidity=make_stream(db, site_id, equipment_id, StreamType.HUMIDITY, "Room RH"),
        ec=make_stream(db, site_id, equipment_id, StreamType.EC, "Feed EC"),
        foreign=make_stream(db, other_site_id, uuid.uuid4(), StreamType.TEMPERATURE, "Other site temp"),
    )


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def ingestor(db, publisher) -> TelemetryIngestor:
    return TelemetryIngestor(db, publisher, clock=fixed_clock)


@pytest.fixture
def client(db, seed):
    def _db_override():
        yield db

    app.dependency_overrides[get_db] = _db_override
    app.dependency_overrides[deps.get_clock] = lambda: fixed_clock
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth() -> dict[str, str]:
    return {"Authorization": f"Bearer {API_KEY}"}


def all_readings(db, site_id: uuid.UUID) -> list[models.SensorReading]:
    with site_scope(site_id):
        return (
            db.query(models.SensorReading)
            .join(models.SensorStream, models.SensorStream.id == models.SensorReading.stream_id)
            .filter(models.SensorStream.site_id == site_id)
            .all()
        )


def minutes_ago(minutes: float) -> datetime:
    return NOW - timedelta(minutes=minutes)


def payload_reading(stream_id: uuid.UUID, value: Any, unit: str = "degF", **extra: Any) -> dict[str, Any]:
    body = {"stream_id": str(stream_id), "value": value, "unit": unit}
    body.update(extra)
    return body
