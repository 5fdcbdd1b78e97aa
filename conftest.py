"""
Shared fixtures for the Nerve Cord test suite.

Each test gets its own app built on a tmp_path data directory, so nothing leaks
between tests and no server process is needed.
"""
import pytest
from fastapi.testclient import TestClient

from nervecord.config import Settings
from nervecord.db.activity_log import ActivityLog
from nervecord.db.store import BrokerState
from nervecord.main import create_app

FULL_TOKEN = "test-full-token"
LARVA_TOKEN = "test-larva-token"
READONLY_TOKEN = "test-readonly-token"
ADMIN_TOKEN = "test-admin-token"

FULL = {"Authorization": f"Bearer {FULL_TOKEN}"}
LARVA = {"Authorization": f"Bearer {LARVA_TOKEN}"}
READONLY = {"Authorization": f"Bearer {READONLY_TOKEN}"}
ADMIN = {**FULL, "X-Admin-Token": ADMIN_TOKEN}


def make_settings(tmp_path, **overrides) -> Settings:
    skill = tmp_path / "SKILL.md"
    if not skill.exists():
        skill.write_text("# Nerve Cord\n\nVERSION: 7\n\nHello bots.\n", encoding="utf-8")
    values = dict(
        data_dir=tmp_path / "data",
        token=FULL_TOKEN,
        larva_token=LARVA_TOKEN,
        readonly_token=READONLY_TOKEN,
        admin_token=ADMIN_TOKEN,
        save_interval=3600,      # keep the maintenance loop out of the way
        skill_file=skill,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as c:
        yield c


@pytest.fixture
def state() -> BrokerState:
    return BrokerState()


@pytest.fixture
def activity_log(tmp_path) -> ActivityLog:
    return ActivityLog(tmp_path / "log")


def send(client, sender="a", to="b", body="ct", **extra):
    """POST an encrypted message with the full token and return the created record."""
    resp = client.post(
        "/messages",
        json={"from": sender, "to": to, "body": body, "encrypted": True, **extra},
        headers=FULL,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()
