"""Tests for the report endpoints and the read-only API."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from probewatch.api.reports import MAX_HEARTBEAT_MINUTES
from probewatch.clock import as_naive_utc
from probewatch.config import Settings
from probewatch.liveness.models import ProbeStatus
from probewatch.main import create_app

HEARTBEAT = {
    "MAC Address": "08:00:27:AA:BB:CC",
    "API key": "k",
    "WAN IP": "1.2.3.4",
    "LAN IP": "10.0.0.2",
    "Ping server": "8.8.8.8",
    "Success": "True",
    "Error": "",
    "Latency": "12.5",
    "Next heartbeat": "2",
}

SPEEDTEST = {
    "MAC Address": "08:00:27:AA:BB:CC",
    "API key": "k",
    "WAN IP": "1.2.3.4",
    "LAN IP": "10.0.0.2",
    "Speedtest server": "speedtest.example.net",
    "Success": "True",
    "Error": "",
    "Latency": "20",
    "Down": "95.5",
    "Up": "10.1",
}


class TestHealthEndpoint:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}


class TestHeartbeatEndpoint:
    def test_first_heartbeat_enrolls_and_marks_up(self, client, store, clock):
        resp = client.post("/heartbeat", json=HEARTBEAT)

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["state"] == "Up"

        probe = store.get_probe(data["probe_id"])
        assert probe.state == ProbeStatus.up
        assert probe.wan_ip == "1.2.3.4"
        assert probe.next_heartbeat_at == as_naive_utc(clock.now() + timedelta(minutes=2))
        types = [e.type for e in store.list_events(probe_id=probe.id)]
        assert sorted(types) == ["probe.created", "probe.linked", "probe.up"]
        heartbeats = store.list_heartbeats(probe_id=probe.id)
        assert len(heartbeats) == 1
        assert heartbeats[0].success is True
        assert heartbeats[0].error is None

    def test_repeat_heartbeat_adds_row_without_new_event(self, client, store, clock):
        first = client.post("/heartbeat", json=HEARTBEAT).json()
        clock.advance(minutes=1)
        second = client.post("/heartbeat", json=HEARTBEAT).json()

        assert second["probe_id"] == first["probe_id"]
        assert len(store.list_events(probe_id=first["probe_id"])) == 3
        assert len(store.list_heartbeats(probe_id=first["probe_id"])) == 2

    def test_snake_case_fields_accepted(self, client):
        body = {
            "mac_address": "080027aabbcc",
            "success": True,
            "next_heartbeat": 1,
        }
        resp = client.post("/heartbeat", json=body)
        assert resp.status_code == 200

    @pytest.mark.parametrize(
        "override",
        [
            {"MAC Address": "not-a-mac"},
            {"Next heartbeat": "0"},
            {"Next heartbeat": "soon"},
            {"Success": "maybe"},
        ],
    )
    def test_invalid_report_rejected(self, client, override):
        resp = client.post("/heartbeat", json={**HEARTBEAT, **override})
        assert resp.status_code == 422

    def test_missing_field_rejected(self, client):
        body = {k: v for k, v in HEARTBEAT.items() if k != "Next heartbeat"}
        assert client.post("/heartbeat", json=body).status_code == 422

    @pytest.mark.parametrize("minutes", [1e10, MAX_HEARTBEAT_MINUTES + 1, "inf", "nan"])
    def test_out_of_range_interval_rejected_without_side_effects(self, client, store, minutes):
        resp = client.post("/heartbeat", data={**HEARTBEAT, "Next heartbeat": str(minutes)})

        assert resp.status_code == 422
        assert store.list_heartbeats() == []
        assert store.list_devices() == []

    def test_longest_interval_accepted(self, client, store, clock):
        body = {**HEARTBEAT, "Next heartbeat": str(MAX_HEARTBEAT_MINUTES)}
        probe_id = client.post("/heartbeat", json=body).json()["probe_id"]

        expected = as_naive_utc(clock.now() + timedelta(minutes=MAX_HEARTBEAT_MINUTES))
        assert store.get_probe(probe_id).next_heartbeat_at == expected

    def test_form_encoded_report(self, client, store):
        resp = client.post("/heartbeat", data=HEARTBEAT)

        assert resp.status_code == 200
        assert resp.json()["state"] == "Up"
        heartbeats = store.list_heartbeats(probe_id=resp.json()["probe_id"])
        assert heartbeats[0].latency == 12.5
        assert heartbeats[0].server == "8.8.8.8"

    def test_form_encoded_invalid_report(self, client):
        resp = client.post("/heartbeat", data={**HEARTBEAT, "MAC Address": "nope"})
        assert resp.status_code == 422

    def test_malformed_json_rejected(self, client):
        resp = client.post(
            "/heartbeat",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 422


class TestSpeedTestEndpoint:
    def test_speedtest_stored_without_state_change(self, client, store):
        resp = client.post("/speedtest", json=SPEEDTEST)

        assert resp.status_code == 200
        data = resp.json()
        assert data["state"] == "New"
        speedtests = store.list_speedtests(probe_id=data["probe_id"])
        assert len(speedtests) == 1
        assert speedtests[0].down == 95.5
        assert speedtests[0].server == "speedtest.example.net"

    def test_form_encoded_speedtest(self, client, store):
        resp = client.post("/speedtest", data=SPEEDTEST)

        assert resp.status_code == 200
        speedtests = store.list_speedtests(probe_id=resp.json()["probe_id"])
        assert speedtests[0].up == 10.1

    def test_infinite_rate_rejected(self, client, store):
        resp = client.post("/speedtest", data={**SPEEDTEST, "Down": "inf"})
        assert resp.status_code == 422
        assert store.list_speedtests() == []


class TestApiKey:
    @pytest.fixture
    def keyed_client(self, engine, clock):
        cfg = Settings(sweeper_enabled=False, api_key="secret-key", auth_password=None)
        with TestClient(create_app(cfg=cfg, engine=engine, clock=clock)) as c:
            yield c

    def test_wrong_key_rejected(self, keyed_client):
        resp = keyed_client.post("/heartbeat", json=HEARTBEAT)
        assert resp.status_code == 401

    def test_missing_key_rejected(self, keyed_client):
        body = {k: v for k, v in SPEEDTEST.items() if k != "API key"}
        assert keyed_client.post("/speedtest", json=body).status_code == 401

    def test_correct_key_accepted(self, keyed_client):
        resp = keyed_client.post("/heartbeat", json={**HEARTBEAT, "API key": "secret-key"})
        assert resp.status_code == 200


class TestReadApi:
    def test_lists_empty(self, client):
        for path in (
            "/api/devices",
            "/api/probes",
            "/api/states",
            "/api/events",
            "/api/heartbeats",
            "/api/speedtests",
        ):
            resp = client.get(path)
            assert resp.status_code == 200, path
            assert resp.json() == [], path

    def test_lists_after_reports(self, client):
        client.post("/heartbeat", json=HEARTBEAT)
        client.post("/speedtest", json=SPEEDTEST)

        devices = client.get("/api/devices").json()
        assert [d["mac_address"] for d in devices] == ["08:00:27:AA:BB:CC"]
        probes = client.get("/api/probes").json()
        assert probes[0]["state"] == "Up"
        assert len(client.get("/api/heartbeats").json()) == 1
        assert len(client.get("/api/speedtests").json()) == 1

        events = client.get("/api/events").json()
        assert {e["type"] for e in events} == {"probe.created", "probe.linked", "probe.up"}

    def test_probe_detail_and_history(self, client):
        probe_id = client.post("/heartbeat", json=HEARTBEAT).json()["probe_id"]

        detail = client.get(f"/api/probes/{probe_id}").json()
        assert detail["probe"]["id"] == probe_id
        assert detail["device"]["mac_address"] == "08:00:27:AA:BB:CC"

        states = client.get(f"/api/probes/{probe_id}/states").json()
        assert [s["state"] for s in states] == ["New", "Up"]
        assert states[-1]["ended_at"] is None

        events = client.get(f"/api/probes/{probe_id}/events").json()
        assert events[0]["type"] == "probe.up"

    def test_probe_not_found(self, client):
        resp = client.get("/api/probes/999")
        assert resp.status_code == 404
        assert resp.json()["type"] == "NotFoundError"

    def test_probe_history_not_found(self, client):
        assert client.get("/api/probes/999/states").status_code == 404
        assert client.get("/api/probes/999/events").status_code == 404

    def test_limit_validated(self, client):
        assert client.get("/api/events?limit=0").status_code == 422
