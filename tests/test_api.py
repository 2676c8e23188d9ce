import itertools
import threading

import pytest
from fastapi.testclient import TestClient

import api
from api import NOTHING_TO_UNDO, create_app
from export import NOTHING_TO_EXPORT
from monitor import PLACEHOLDER, MonitorState, TickOrchestrator
from risk_engine import RuleBook


@pytest.fixture
def client():
    with TestClient(create_app(db_url="sqlite://")) as c:
        yield c


def test_patients(client):
    res = client.get("/patients")
    assert res.status_code == 200
    body = res.json()
    assert [p["id"] for p in body] == ["P001", "P002", "P003"]
    assert body[0]["baseline"]["hr"] == 78


def test_state_before_start(client):
    body = client.get("/state", params={"patient_id": "P001"}).json()
    assert body["status"] == "idle"
    assert body["latest"]["hr"] == PLACEHOLDER
    assert body["tick"] == 0


def test_state_unknown_patient(client):
    assert client.get("/state", params={"patient_id": "P404"}).status_code == 404


def test_start_stop_idempotent(client):
    first = client.post("/start").json()
    assert first == {"status": "running", "changed": True}
    assert client.post("/start").json()["changed"] is False
    assert client.get("/state", params={"patient_id": "P002"}).json()["tick"] >= 1

    assert client.post("/stop").json() == {"status": "idle", "changed": True}
    assert client.post("/stop").json()["changed"] is False


def test_inject_event(client):
    res = client.post("/patients/P003/event")
    assert res.status_code == 200
    assert res.json()["patient_id"] == "P003"
    assert client.post("/patients/P404/event").status_code == 404


def test_rule_edit_and_undo(client):
    res = client.put("/rules/hrHigh", json={"value": 130})
    assert res.status_code == 200
    assert res.json()["rules"]["hrHigh"] == 130
    assert res.json()["can_undo"] is True

    client.put("/rules/spo2_low", json={"value": 94})

    body = client.post("/rules/undo").json()
    assert body["undone"] is True
    assert body["rules"]["spo2Low"] == 92
    assert body["rules"]["hrHigh"] == 130

    body = client.post("/rules/undo").json()
    assert body["rules"]["hrHigh"] == 120

    body = client.post("/rules/undo").json()
    assert body == {
        "undone": False,
        "notice": NOTHING_TO_UNDO,
        "rules": client.get("/rules").json()["rules"],
        "can_undo": False,
    }


def test_rule_edit_validation(client):
    assert client.put("/rules/bpHigh", json={"value": 140}).status_code == 404
    assert client.put("/rules/hrHigh", json={"value": "fast"}).status_code == 422
    assert client.get("/rules").json()["can_undo"] is False


def test_save_rules(client):
    client.put("/rules/tempHigh", json={"value": 100.0})
    body = client.post("/rules/save").json()
    assert body["saved"] is True
    assert body["rules"]["tempHigh"] == 100.0


def test_theme(client):
    assert client.get("/theme").json() == {"theme": "light"}
    assert client.put("/theme", json={"theme": "dark"}).json() == {"theme": "dark"}
    assert client.get("/theme").json() == {"theme": "dark"}
    assert client.put("/theme", json={"theme": "blue"}).status_code == 422


def test_export_empty(client):
    res = client.get("/export.csv")
    assert res.status_code == 204
    assert res.headers["x-notice"] == NOTHING_TO_EXPORT


def test_export_after_tick(client):
    client.post("/start")
    client.post("/stop")

    res = client.get("/export.csv")
    assert res.status_code == 200
    assert res.headers["content-type"].startswith("text/csv")
    assert "vitalstream_run_" in res.headers["content-disposition"]

    lines = res.text.splitlines()
    assert lines[0] == "ts,time,patientId,hr,spo2,temp,inEvent,alertCount"
    assert len(lines) >= 4 and (len(lines) - 1) % 3 == 0


def test_websocket_snapshot_and_patient_switch(client):
    with client.websocket_connect("/ws?patient_id=P001") as ws:
        first = ws.receive_json()
        assert first["patient_id"] == "P001"
        assert first["status"] == "idle"

        ws.send_text("P002")
        assert ws.receive_json()["patient_id"] == "P002"


def test_websocket_unknown_patient(client):
    with client.websocket_connect("/ws?patient_id=P404") as ws:
        assert ws.receive_json() == {"error": "Unknown patient_id"}


@pytest.mark.parametrize("raw", ['{"value": NaN}', '{"value": Infinity}', '{"value": -Infinity}'])
def test_rule_edit_rejects_non_finite(client, raw):
    res = client.put("/rules/hrHigh", content=raw, headers={"content-type": "application/json"})
    assert res.status_code == 422

    body = client.get("/rules").json()
    assert body["rules"]["hrHigh"] == 120
    assert body["can_undo"] is False
    assert client.get("/state", params={"patient_id": "P001"}).status_code == 200


def test_mutations_run_on_the_ticker_thread(client, monkeypatch):
    threads = {"tick": set(), "rule": set(), "event": set()}
    tick = TickOrchestrator.tick
    set_threshold = RuleBook.set_threshold
    inject_event = MonitorState.inject_event

    def recording_tick(self, t_ms):
        threads["tick"].add(threading.get_ident())
        return tick(self, t_ms)

    def recording_set_threshold(self, name, value):
        threads["rule"].add(threading.get_ident())
        return set_threshold(self, name, value)

    def recording_inject_event(self, patient_id, at_ms=None):
        threads["event"].add(threading.get_ident())
        return inject_event(self, patient_id, at_ms)

    monkeypatch.setattr(TickOrchestrator, "tick", recording_tick)
    monkeypatch.setattr(RuleBook, "set_threshold", recording_set_threshold)
    monkeypatch.setattr(MonitorState, "inject_event", recording_inject_event)

    client.post("/start")
    client.put("/rules/hrHigh", json={"value": 130})
    client.post("/patients/P001/event")
    client.post("/stop")

    assert len(threads["tick"]) == 1
    assert threads["rule"] == threads["tick"]
    assert threads["event"] == threads["tick"]


class LogRecorder:
    def __init__(self):
        self.events = []
        self.failed = threading.Event()

    def info(self, event, **kw):
        self.events.append(event)

    def exception(self, event, **kw):
        self.events.append(event)
        self.failed.set()


def test_websocket_send_failure_is_logged_and_cleaned_up(client, monkeypatch):
    recorder = LogRecorder()
    monkeypatch.setattr(api, "log", recorder)
    real_snapshot = api.snapshot
    calls = itertools.count()

    def snapshot(monitor, patient_id):
        # only the first frame serializes
        if next(calls) == 0:
            return real_snapshot(monitor, patient_id)
        return {"unserializable": object()}

    monkeypatch.setattr(api, "snapshot", snapshot)
    ticker = client.app.state.ticker

    with client.websocket_connect("/ws?patient_id=P001") as ws:
        assert ws.receive_json()["patient_id"] == "P001"
        ws.send_text("P002")
        assert recorder.failed.wait(timeout=5)

    assert recorder.events[0] == "ws_send_failed"
    assert ticker._listeners == []
