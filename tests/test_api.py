"""HTTP surface through the FastAPI test client."""

from __future__ import annotations

import uuid

from conftest import NOW, minutes_ago, payload_reading, store_reading
from sitetelemetry import models


def _telemetry(seed, *readings, **extra):
    body = {"equipment_id": str(seed.equipment_id), "readings": list(readings)}
    body.update(extra)
    return body


def test_healthz(client) -> None:
    res = client.get("/healthz")
    assert res.status_code == 200
    assert res.json()["status"] == "ok"


def test_requests_need_an_api_key(client, seed) -> None:
    res = client.post(f"/v1/sites/{seed.site_id}/telemetry", json=_telemetry(seed))
    assert res.status_code == 401

    res = client.get(
        f"/v1/sites/{seed.site_id}/alerts", headers={"Authorization": "Bearer nope"}
    )
    assert res.status_code == 401


def test_ingest_site_batch(client, seed, auth) -> None:
    t = seed.temperature.id
    body = _telemetry(
        seed,
        payload_reading(t, 25, "degC", message_id="m1", source_timestamp=minutes_ago(1).isoformat()),
        payload_reading(t, 25, "degC", message_id="m1", source_timestamp=minutes_ago(1).isoformat()),
        payload_reading(t, 250, "degF", source_timestamp=minutes_ago(1).isoformat()),
    )

    res = client.post(f"/v1/sites/{seed.site_id}/telemetry", json=body, headers=auth)

    assert res.status_code == 200
    data = res.json()
    assert (data["total_received"], data["accepted"], data["rejected"], data["duplicates"]) == (3, 1, 1, 1)
    assert [i["outcome"] for i in data["items"]] == ["accepted", "duplicate", "rejected"]
    assert data["items"][2]["quality"] == "bad_out_of_range"

    errors = client.get(f"/v1/sites/{seed.site_id}/ingestion-errors", headers=auth).json()
    assert [e["error_type"] for e in errors] == ["out_of_range"]


def test_unknown_unit_is_unprocessable(client, seed, auth) -> None:
    body = _telemetry(seed, payload_reading(seed.temperature.id, 70, "furlongs"))
    res = client.post(f"/v1/sites/{seed.site_id}/telemetry", json=body, headers=auth)
    assert res.status_code == 422


def test_empty_reading_list_is_unprocessable(client, seed, auth) -> None:
    res = client.post(f"/v1/sites/{seed.site_id}/telemetry", json=_telemetry(seed), headers=auth)
    assert res.status_code == 422


def test_equipment_readings_need_site_header(client, seed, auth) -> None:
    body = {"readings": [payload_reading(seed.temperature.id, 70, source_timestamp=minutes_ago(1).isoformat())]}
    url = f"/v1/equipment/{seed.equipment_id}/readings"

    assert client.post(url, json=body, headers=auth).status_code == 400
    assert client.post(url, json=body, headers={**auth, "X-Site-Id": "nope"}).status_code == 422

    res = client.post(url, json=body, headers={**auth, "X-Site-Id": str(seed.site_id)})
    assert res.status_code == 200
    assert res.json()["accepted"] == 1


def test_queue_endpoint(client, seed, auth) -> None:
    topic = f"site/{seed.site_id}/equipment/{seed.equipment_id}/sensor/{seed.humidity.id}"
    res = client.post(
        "/v1/telemetry/queue",
        json={"topic": topic, "payload": '{"value": 55, "unit": "pct", "message_id": "abc"}'},
        headers=auth,
    )
    assert res.status_code == 200
    assert res.json()["accepted"] == 1

    res = client.post("/v1/telemetry/queue", json={"topic": "bad/topic", "payload": {}}, headers=auth)
    assert res.status_code == 422


def test_session_lifecycle(client, seed, auth) -> None:
    res = client.post(
        f"/v1/sites/{seed.site_id}/sessions",
        json={"equipment_id": str(seed.equipment_id), "protocol": "sdi12"},
        headers=auth,
    )
    assert res.status_code == 201
    session_id = res.json()["id"]

    body = _telemetry(
        seed,
        payload_reading(seed.temperature.id, 70, source_timestamp=minutes_ago(1).isoformat()),
        session_id=session_id,
    )
    client.post(f"/v1/sites/{seed.site_id}/telemetry", json=body, headers=auth)

    res = client.post(f"/v1/sites/{seed.site_id}/sessions/{session_id}/heartbeat", headers=auth)
    assert res.json()["batches_received"] == 1

    res = client.post(f"/v1/sites/{seed.site_id}/sessions/{session_id}/end", headers=auth)
    assert res.json()["ended_at"] is not None

    res = client.post(f"/v1/sites/{seed.other_site_id}/sessions/{session_id}/end", headers=auth)
    assert res.status_code == 404


def test_latest_and_history(client, seed, auth, db) -> None:
    site = {**auth, "X-Site-Id": str(seed.site_id)}
    store_reading(db, seed.temperature.id, 71.0, minutes_ago(10))
    store_reading(db, seed.temperature.id, 72.0, minutes_ago(2))
    store_reading(db, seed.humidity.id, 55.0, minutes_ago(3))

    latest = client.get(f"/v1/equipment/{seed.equipment_id}/latest", headers=site).json()
    assert {row["display_name"]: row["value"] for row in latest} == {"Room temp": 72.0, "Room RH": 55.0}

    # history is relative to the wall clock; ask for an explicit range
    history = client.get(
        f"/v1/streams/{seed.temperature.id}/history",
        params={"since": minutes_ago(60).isoformat(), "until": NOW.isoformat()},
        headers=site,
    ).json()
    assert [row["value"] for row in history] == [72.0, 71.0]

    res = client.get(f"/v1/streams/{seed.foreign.id}/history", headers=site)
    assert res.status_code == 404


def test_stream_registry(client, seed, auth) -> None:
    res = client.post(
        f"/v1/sites/{seed.site_id}/streams",
        json={
            "equipment_id": str(seed.equipment_id),
            "stream_type": "temperature",
            "unit": "degc",
            "display_name": "Canopy temp",
        },
        headers=auth,
    )
    assert res.status_code == 200
    created = res.json()
    assert created["unit"] == "degf"

    res = client.patch(
        f"/v1/sites/{seed.site_id}/streams/{created['id']}", json={"is_active": False}, headers=auth
    )
    assert res.json()["is_active"] is False

    active = client.get(f"/v1/sites/{seed.site_id}/streams", headers=auth).json()
    assert created["id"] not in {s["id"] for s in active}

    res = client.patch(
        f"/v1/sites/{seed.other_site_id}/streams/{created['id']}", json={"is_active": True}, headers=auth
    )
    assert res.status_code == 404


def test_existing_stream_keeps_its_type_and_equipment(client, seed, auth, db) -> None:
    url = f"/v1/sites/{seed.site_id}/streams"
    t = seed.temperature

    res = client.post(
        url,
        json={"id": str(t.id), "equipment_id": str(seed.equipment_id), "stream_type": "humidity", "display_name": "RH"},
        headers=auth,
    )
    assert res.status_code == 409

    res = client.post(
        url,
        json={"id": str(t.id), "equipment_id": str(uuid.uuid4()), "stream_type": "temperature", "display_name": "T"},
        headers=auth,
    )
    assert res.status_code == 409

    res = client.post(
        url,
        json={
            "id": str(t.id),
            "equipment_id": str(seed.equipment_id),
            "stream_type": "temperature",
            "display_name": "Bench temp",
        },
        headers=auth,
    )
    assert res.status_code == 200
    assert (res.json()["stream_type"], res.json()["unit"], res.json()["display_name"]) == (
        "temperature",
        "degf",
        "Bench temp",
    )

    db.expire_all()
    stored = db.get(models.SensorStream, t.id)
    assert (stored.stream_type, stored.equipment_id) == ("temperature", seed.equipment_id)


def test_alert_endpoints(client, seed, auth, db) -> None:
    res = client.post(
        f"/v1/sites/{seed.site_id}/alert-rules",
        json={
            "rule_name": "Hot room",
            "rule_type": "threshold_above",
            "stream_ids": [str(seed.temperature.id)],
            "threshold_config": {"threshold_value": 80},
            "severity": "critical",
        },
        headers=auth,
    )
    assert res.status_code == 201
    assert client.get(f"/v1/sites/{seed.site_id}/alert-rules", headers=auth).json()[0]["rule_name"] == "Hot room"

    store_reading(db, seed.temperature.id, 88.0, minutes_ago(1))
    sweep = client.post(f"/v1/sites/{seed.site_id}/alerts/evaluate", headers=auth).json()
    assert (sweep["rules_evaluated"], sweep["created"], sweep["failures"]) == (1, 1, [])

    (alert,) = client.get(f"/v1/sites/{seed.site_id}/alerts", headers=auth).json()
    assert alert["severity"] == "critical"

    user = str(uuid.uuid4())
    res = client.post(
        f"/v1/sites/{seed.site_id}/alerts/{alert['id']}/acknowledge",
        json={"user_id": user, "notes": "checking HVAC"},
        headers=auth,
    )
    assert res.json()["acknowledged_by"] == user

    res = client.post(f"/v1/sites/{seed.site_id}/alerts/{alert['id']}/clear", headers=auth)
    assert res.json()["cleared_at"] is not None
    assert client.get(f"/v1/sites/{seed.site_id}/alerts", headers=auth).json() == []

    res = client.post(f"/v1/sites/{seed.other_site_id}/alerts/{alert['id']}/clear", headers=auth)
    assert res.status_code == 404


def test_invalid_rule_is_unprocessable(client, seed, auth) -> None:
    res = client.post(
        f"/v1/sites/{seed.site_id}/alert-rules",
        json={
            "rule_name": "Broken range",
            "rule_type": "threshold_range",
            "stream_ids": [str(seed.temperature.id)],
            "threshold_config": {"min_value": 90, "max_value": 10},
        },
        headers=auth,
    )
    assert res.status_code == 422


def test_anomaly_endpoints(client, seed, auth, db) -> None:
    for i in range(20):
        store_reading(db, seed.temperature.id, 70.0, minutes_ago(40 - i))
    store_reading(db, seed.temperature.id, 95.0, minutes_ago(5))

    res = client.get(
        f"/v1/streams/{seed.temperature.id}/anomalies",
        headers={**auth, "X-Site-Id": str(seed.site_id)},
    )
    assert res.status_code == 200
    data = res.json()
    assert data["status"] == "ok"
    assert data["anomalies"][0]["severity"] == "critical"
    assert data["anomalies"][0]["anomaly_type"] == "high_spike"

    report = client.get(f"/v1/sites/{seed.site_id}/anomalies", headers=auth).json()
    assert report["streams_with_anomalies"] == 1
    assert report["top_recommendations"][0]["category"] == "Spike Detection"


def test_live_feed_receives_accepted_readings(client, seed, auth) -> None:
    with client.websocket_connect(f"/v1/sites/{seed.site_id}/live?token=test-key") as ws:
        body = _telemetry(
            seed,
            payload_reading(seed.humidity.id, 48.5, "pct", message_id="live-1",
                            source_timestamp=minutes_ago(1).isoformat()),
        )
        client.post(f"/v1/sites/{seed.site_id}/telemetry", json=body, headers=auth)

        message = ws.receive_json()

    assert message["type"] == "reading"
    assert message["stream_id"] == str(seed.humidity.id)
    assert message["value"] == 48.5
    assert message["message_id"] == "live-1"
