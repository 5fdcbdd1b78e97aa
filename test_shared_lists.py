"""
Tests for the shared lists: priorities, projects, suggestions and the activity log.
"""
import json
from datetime import timedelta

import pytest

from conftest import FULL, READONLY
from nervecord.db import crud
from nervecord.db.activity_log import ActivityLog
from nervecord.db.models import LogEntry, utc_now, new_id
from nervecord.errors import ValidationError, NotFoundError


def _texts(state):
    return [p.text for p in crud.priority_list(state)]


# ─────────────────────────────────────────────
# Priorities
# ─────────────────────────────────────────────

class TestPriorities:
    def test_create_appends_or_inserts_at_rank(self, state):
        crud.priority_create(state, "a")
        crud.priority_create(state, "b")
        crud.priority_create(state, "c", rank=1)
        crud.priority_create(state, "z", rank=99)
        assert _texts(state) == ["c", "a", "b", "z"]
        assert [p.rank for p in crud.priority_list(state)] == [1, 2, 3, 4]

    def test_create_requires_text(self, state):
        with pytest.raises(ValidationError, match="text required"):
            crud.priority_create(state, "")

    def test_top_dedupes_by_text(self, state):
        for t in ("a", "b", "c"):
            crud.priority_create(state, t)
        crud.priority_top(state, "c", set_by="boss")
        assert _texts(state) == ["c", "a", "b"]
        assert crud.priority_list(state)[0].set_by == "boss"

    def test_done_removes_and_logs(self, state, activity_log):
        prio = crud.priority_create(state, "ship it", set_by="a")
        crud.priority_create(state, "next")
        completed, entry = crud.priority_done(state, activity_log, prio.id)
        assert completed.id == prio.id
        assert _texts(state) == ["next"]
        assert crud.priority_list(state)[0].rank == 1
        assert entry.text == "Priority completed: ship it"
        assert entry.tags == ["priority", "done"]
        assert [e.id for e in activity_log.query(tag="done")] == [entry.id]

    def test_update_moves_rank(self, state):
        a = crud.priority_create(state, "a")
        crud.priority_create(state, "b")
        crud.priority_create(state, "c")
        crud.priority_update(state, a.id, text="a2", rank=3)
        assert _texts(state) == ["b", "c", "a2"]
        assert a.rank == 3

    def test_delete_by_id_and_rank(self, state):
        a = crud.priority_create(state, "a")
        crud.priority_create(state, "b")
        crud.priority_create(state, "c")
        crud.priority_delete(state, a.id)
        assert _texts(state) == ["b", "c"]
        crud.priority_delete_rank(state, 2)
        assert _texts(state) == ["b"]
        with pytest.raises(NotFoundError, match="rank out of range"):
            crud.priority_delete_rank(state, 5)
        with pytest.raises(NotFoundError, match="priority not found"):
            crud.priority_delete(state, a.id)

    def test_http_delete_dispatches_on_reference(self, client):
        first = client.post("/priorities", json={"text": "a", "from": "x"}, headers=FULL).json()
        client.post("/priorities", json={"text": "b"}, headers=FULL)
        client.post("/priorities", json={"text": "c"}, headers=FULL)

        remaining = client.delete(f"/priorities/{first['id']}", headers=FULL).json()
        assert [p["text"] for p in remaining] == ["b", "c"]
        remaining = client.delete("/priorities/1", headers=FULL).json()
        assert [p["text"] for p in remaining] == ["c"]
        assert client.delete("/priorities/7", headers=FULL).json() == {"error": "rank out of range"}
        assert client.delete("/priorities/bogus", headers=FULL).status_code == 404

    def test_http_done(self, client):
        prio = client.post("/priorities", json={"text": "ship", "from": "x"}, headers=FULL).json()
        resp = client.post(f"/priorities/{prio['id']}/done", headers=FULL)
        assert resp.status_code == 200
        body = resp.json()
        assert body["completed"]["id"] == prio["id"]
        assert body["logged"]["from"] == "x"
        assert client.get("/priorities", headers=FULL).json() == []


# ─────────────────────────────────────────────
# Projects
# ─────────────────────────────────────────────

class TestProjects:
    def test_create_defaults(self, state):
        project = crud.project_create(state, "bus")
        assert project.id.startswith("proj_")
        assert project.status == "idea"
        assert project.created_by == "unknown"
        assert project.metadata == {}

    def test_create_requires_name(self, state):
        with pytest.raises(ValidationError, match="name required"):
            crud.project_create(state, None)

    def test_update_merges_metadata(self, state):
        project = crud.project_create(state, "bus", metadata={"a": 1, "b": 2})
        before = project.updated
        project.updated -= timedelta(seconds=5)
        crud.project_update(state, project.id, {"status": "live", "metadata": {"b": 3, "c": 4},
                                                "nextSteps": ["deploy"]})
        assert project.status == "live"
        assert project.metadata == {"a": 1, "b": 3, "c": 4}
        assert project.next_steps == ["deploy"]
        assert project.updated >= before

    def test_list_filters_by_status(self, state):
        crud.project_create(state, "one", status="live")
        crud.project_create(state, "two")
        assert [p.name for p in crud.project_list(state, status="live")] == ["one"]
        assert len(crud.project_list(state)) == 2

    def test_http_crud(self, client):
        resp = client.post("/projects", json={"name": "bus", "metadata": {"x": 1}, "from": "a"},
                           headers=FULL)
        assert resp.status_code == 201
        project = resp.json()
        assert project["createdBy"] == "a"

        patched = client.patch(f"/projects/{project['id']}", json={"metadata": {"y": 2}},
                               headers=FULL).json()
        assert patched["metadata"] == {"x": 1, "y": 2}
        assert patched["name"] == "bus"

        deleted = client.delete(f"/projects/{project['id']}", headers=FULL).json()
        assert deleted["deleted"]["id"] == project["id"]
        resp = client.get(f"/projects/{project['id']}", headers=FULL)
        assert resp.json() == {"error": "project not found"}


# ─────────────────────────────────────────────
# Suggestions
# ─────────────────────────────────────────────

class TestSuggestions:
    def test_sender_defaults_to_anonymous(self, state):
        suggestion = crud.suggestion_create(state, "idea")
        assert suggestion.sender == "anonymous"
        assert suggestion.body == ""

    def test_update_and_delete(self, state):
        suggestion = crud.suggestion_create(state, "idea", body="x", sender="a")
        crud.suggestion_update(state, suggestion.id, body="y")
        assert suggestion.title == "idea"
        assert suggestion.body == "y"
        crud.suggestion_delete(state, suggestion.id)
        with pytest.raises(NotFoundError, match="suggestion not found"):
            crud.suggestion_get(state, suggestion.id)

    def test_http_readonly_round(self, client):
        resp = client.post("/suggestions", json={"body": "no title"}, headers=READONLY)
        assert resp.json() == {"error": "title required"}
        created = client.post("/suggestions", json={"title": "t", "from": "ro"}, headers=READONLY).json()
        assert client.get(f"/suggestions/{created['id']}", headers=READONLY).json() == created
        assert client.delete(f"/suggestions/{created['id']}", headers=READONLY).status_code == 200


# ─────────────────────────────────────────────
# Activity log
# ─────────────────────────────────────────────

def _entry(sender="a", text="hi", tags=(), days_ago=0):
    return LogEntry(id=new_id("log"), sender=sender, text=text, tags=list(tags), details=None,
                    created=utc_now() - timedelta(days=days_ago))


class TestActivityLog:
    def test_append_requires_from_and_text(self, activity_log):
        with pytest.raises(ValidationError, match="from, text required"):
            crud.log_append(activity_log, "a", "")

    @pytest.mark.parametrize("details", [0, "", False, None])
    def test_empty_details_are_stored_as_null(self, activity_log, details):
        entry = crud.log_append(activity_log, "a", "hi", details=details)
        assert entry.details is None
        assert activity_log.query()[0].to_dict()["details"] is None

    def test_empty_container_details_are_kept(self, activity_log):
        assert crud.log_append(activity_log, "a", "hi", details={}).details == {}
        assert crud.log_append(activity_log, "a", "hi", details=[]).details == []

    def test_entries_are_sharded_by_day(self, activity_log):
        today = activity_log.append(_entry(text="today"))
        old = activity_log.append(_entry(text="old", days_ago=3))
        assert activity_log.date_keys() == [ActivityLog.date_key(today), ActivityLog.date_key(old)]
        assert [e.text for e in activity_log.query(date=ActivityLog.date_key(old))] == ["old"]
        assert [e.text for e in activity_log.query()] == ["today", "old"]

    def test_query_filters_and_limit(self, activity_log):
        activity_log.append(_entry(sender="a", tags=["deploy"], text="1"))
        activity_log.append(_entry(sender="b", tags=["deploy"], text="2", days_ago=1))
        activity_log.append(_entry(sender="a", text="3", days_ago=2))
        assert [e.text for e in activity_log.query(sender="a")] == ["1", "3"]
        assert [e.text for e in activity_log.query(tag="deploy")] == ["1", "2"]
        assert [e.text for e in activity_log.query(limit=1)] == ["1"]
        assert len(activity_log.query(limit=0)) == 3

    def test_malformed_date_matches_nothing(self, activity_log):
        activity_log.append(_entry())
        assert activity_log.query(date="../etc") == []

    def test_unreadable_shard_reads_as_empty(self, activity_log):
        entry = activity_log.append(_entry())
        activity_log.shard_path(ActivityLog.date_key(entry)).write_text("garbage", encoding="utf-8")
        assert activity_log.query() == []
        activity_log.append(_entry(text="after"))
        assert [e.text for e in activity_log.query()] == ["after"]

    def test_delete(self, activity_log):
        entry = activity_log.append(_entry())
        crud.log_delete(activity_log, entry.id)
        assert activity_log.query() == []
        with pytest.raises(NotFoundError):
            crud.log_delete(activity_log, entry.id)

    def test_http_log(self, client, settings):
        resp = client.post("/log", json={"from": "a", "text": "deployed", "tags": ["ops"],
                                         "details": {"v": 2}}, headers=FULL)
        assert resp.status_code == 201
        entry = resp.json()
        shard = settings.data_dir / "log" / f"{entry['created'][:10]}.json"
        assert json.loads(shard.read_text(encoding="utf-8"))[0]["id"] == entry["id"]
        assert client.get("/log?tag=ops", headers=READONLY).json() == [entry]
        resp = client.get("/log?limit=nope", headers=FULL)
        assert resp.status_code == 200
        assert resp.json() == [entry]
        assert client.delete(f"/log/{entry['id']}", headers=FULL).json() == {"deleted": True}
