"""
Tests for liveness tracking: heartbeats and larvae.
Idle windows are exercised by back-dating last_seen instead of sleeping.
"""
from datetime import timedelta

import pytest

from conftest import FULL, LARVA
from nervecord.db import crud
from nervecord.db.models import utc_now
from nervecord.errors import ValidationError, NotFoundError


# ─────────────────────────────────────────────
# Helper: back-date a record's last activity
# ─────────────────────────────────────────────

def _backdate(record, minutes: float = 0, seconds: float = 0) -> None:
    record.last_seen = utc_now() - timedelta(minutes=minutes, seconds=seconds)


# ─────────────────────────────────────────────
# Heartbeats
# ─────────────────────────────────────────────

def test_heartbeat_records_and_reports_online(state):
    crud.heartbeat_record(state, "clawd", ip="10.0.0.2", version="1.2", skill_version="013")
    [hb] = crud.heartbeat_list(state)
    assert hb["name"] == "clawd"
    assert hb["ip"] == "10.0.0.2"
    assert hb["skillVersion"] == "013"
    assert hb["online"] is True
    assert hb["ageMs"] >= 0


def test_heartbeat_goes_offline_after_30s(state):
    hb = crud.heartbeat_record(state, "clawd", ip=None)
    _backdate(hb, seconds=31)
    [row] = crud.heartbeat_list(state)
    assert row["online"] is False
    assert row["ageMs"] >= 31000


def test_heartbeat_requires_name(state):
    with pytest.raises(ValidationError, match="name required"):
        crud.heartbeat_record(state, "", ip=None)


def test_heartbeat_refreshes_matching_larva(state):
    larva = crud.larva_register(state, "l1", ip="1.1.1.1", task="scan")
    _backdate(larva, minutes=30)
    crud.heartbeat_record(state, "l1", ip="2.2.2.2", status="working", task="scan 2")
    assert larva.ip == "2.2.2.2"
    assert larva.status == "working"
    assert larva.task == "scan 2"
    assert larva.idle_seconds(utc_now()) < 5


def test_plain_bot_heartbeat_ignores_status(state):
    crud.heartbeat_record(state, "bot1", ip=None, status="idle", skill_version=13)
    [hb] = crud.heartbeat_list(state)
    assert hb["name"] == "bot1"
    assert hb["skillVersion"] == 13
    assert len(state.larvae) == 0


def test_larva_heartbeat_rejects_bad_status(state):
    larva = crud.larva_register(state, "l1", ip=None)
    with pytest.raises(ValidationError):
        crud.heartbeat_record(state, "l1", ip=None, status="sleeping")
    assert larva.status == "starting"
    assert crud.heartbeat_list(state) == []


def test_heartbeat_accepts_free_form_fields_over_http(client):
    resp = client.post("/heartbeat", json={"name": "bot1", "status": "idle", "skillVersion": 13,
                                           "version": 2.5}, headers=FULL)
    assert resp.status_code == 200
    [hb] = client.get("/heartbeat").json()
    assert hb["skillVersion"] == 13
    assert hb["version"] == 2.5


def test_heartbeat_over_http(client):
    resp = client.post("/heartbeat", json={"name": "clawd", "version": "1.0"}, headers=FULL)
    assert resp.json() == {"ok": True}
    [hb] = client.get("/heartbeat").json()
    assert hb["name"] == "clawd"
    assert hb["version"] == "1.0"
    assert hb["ip"] == "testclient"
    assert hb["online"] is True


# ─────────────────────────────────────────────
# Larvae
# ─────────────────────────────────────────────

def test_register_defaults_to_starting(state):
    larva = crud.larva_register(state, "l1", ip=None)
    assert larva.status == "starting"
    assert larva.task == ""


def test_reregister_keeps_original_registration_time(state):
    first = crud.larva_register(state, "l1", ip=None, task="a")
    first.registered -= timedelta(minutes=10)
    original = first.registered
    second = crud.larva_register(state, "l1", ip=None, task="b", status="working")
    assert second.registered == original
    assert second.task == "b"
    assert len(state.larvae) == 1


def test_invalid_larva_status(state):
    with pytest.raises(ValidationError):
        crud.larva_register(state, "l1", ip=None, status="zombie")
    crud.larva_register(state, "l1", ip=None)
    with pytest.raises(ValidationError):
        crud.larva_update(state, "l1", status="zombie")


def test_idle_larva_drops_out_of_active_list(state):
    idle = crud.larva_register(state, "idle", ip=None)
    crud.larva_register(state, "busy", ip=None)
    _backdate(idle, minutes=61)

    assert [l.name for l in crud.larva_list(state, active_only=True)] == ["busy"]
    assert {l.name for l in crud.larva_list(state)} == {"idle", "busy"}


def test_long_idle_larva_is_purged(state):
    stale = crud.larva_register(state, "stale", ip=None)
    _backdate(stale, minutes=121)
    assert crud.larva_purge(state) == ["stale"]
    with pytest.raises(NotFoundError, match="larva not found"):
        crud.larva_get(state, "stale")


def test_update_refreshes_last_seen(state):
    larva = crud.larva_register(state, "l1", ip=None)
    _backdate(larva, minutes=50)
    crud.larva_update(state, "l1", status="done")
    assert larva.status == "done"
    assert larva.is_active(utc_now())


def test_sweep_purges_larvae_and_expires_messages(state):
    stale = crud.larva_register(state, "stale", ip=None)
    _backdate(stale, minutes=130)
    msg = crud.msg_send(state, sender="a", to="b", body="x", encrypted=True)
    msg.expires = utc_now() - timedelta(seconds=1)
    expired, purged = crud.sweep(state)
    assert expired == [msg.id]
    assert purged == ["stale"]


def test_larvae_over_http(client):
    resp = client.post("/larvae", json={"name": "l1", "task": "index"}, headers=LARVA)
    assert resp.status_code == 201
    assert resp.json()["status"] == "starting"
    resp = client.patch("/larvae/l1", json={"status": "working"}, headers=LARVA)
    assert resp.json()["status"] == "working"
    assert [l["name"] for l in client.get("/larvae?active=true", headers=LARVA).json()] == ["l1"]
    assert client.patch("/larvae/ghost", json={}, headers=LARVA).status_code == 404
    assert client.post("/larvae", json={"name": "l2", "status": "bogus"}, headers=LARVA).status_code == 400
    assert client.delete("/larvae/l1", headers=FULL).json() == {"deleted": "l1"}
    assert client.get("/larvae/l1", headers=FULL).status_code == 404
