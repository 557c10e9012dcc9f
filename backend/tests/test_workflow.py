from __future__ import annotations

import datetime as dt
import webbrowser

from fastapi.testclient import TestClient


def _create(client: TestClient, **payload) -> dict:
    payload.setdefault("title", "Aufgabe")
    response = client.post("/tasks", json=payload)
    assert response.status_code == 201, response.text
    return response.json()


def test_healthz(client: TestClient):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_task_lifecycle_flow(client: TestClient):
    task = _create(client, title="Angebot prüfen", start_local="2024-01-17T09:00:00", tags="kunde")
    assert task["status"] == "Planned"
    assert task["start_local"] == "2024-01-17T09:00:00"
    assert task["created_utc"].endswith("+00:00")
    task_id = task["id"]

    assert client.post(f"/tasks/{task_id}/start").json()["status"] == "Running"
    assert client.post(f"/tasks/{task_id}/pause").json()["status"] == "Planned"
    assert client.post(f"/tasks/{task_id}/stop").json()["status"] == "Planned"

    tracked = client.get(f"/tasks/{task_id}/tracked").json()
    assert tracked["task_id"] == task_id
    assert tracked["seconds"] >= 0
    assert len(tracked["text"]) == 8

    booked = client.post(f"/tasks/{task_id}/ticket-minutes", json={"minutes": 30}).json()
    assert booked["ticket_minutes_booked"] == 30
    assert booked["ticket_seconds_booked"] == 1800

    assert client.post(f"/tasks/{task_id}/done").json()["status"] == "Done"
    assert client.get("/tasks/search", params={"q": "angebot", "done": True}).json()[0]["id"] == task_id
    assert client.post(f"/tasks/{task_id}/reopen").json()["status"] == "Planned"

    patched = client.patch(f"/tasks/{task_id}", json={"description": "Version 2", "priority": 1})
    assert patched.status_code == 200
    assert patched.json()["description"] == "Version 2"
    assert patched.json()["priority"] == 1

    assert client.delete(f"/tasks/{task_id}").status_code == 204
    assert client.get(f"/tasks/{task_id}").status_code == 404


def test_validation_errors(client: TestClient):
    response = client.post("/tasks", json={"title": "  "})
    assert response.status_code == 400
    assert response.json() == {"detail": "Titel fehlt."}

    assert client.post("/tasks/unknown/start").status_code == 404
    assert client.post("/tasks", json={"title": "X", "status": "Archived"}).status_code == 422


def test_quick_add_and_day_listing(client: TestClient):
    response = client.post("/tasks/quick-add", json={"text": "Fix bug|2024-01-15 09:00|45m|http://x"})
    assert response.status_code == 201
    task = response.json()
    assert task["title"] == "Fix bug"
    assert task["start_local"] == "2024-01-15T09:00:00"
    assert task["end_local"] == "2024-01-15T09:45:00"
    assert task["ticket_url"] == "http://x"

    default = client.post("/tasks/quick-add", json={"text": ""}).json()
    assert default["title"] == "Neue Aufgabe"

    day_ids = {row["id"] for row in client.get("/tasks/day/2024-01-15").json()}
    assert day_ids == {task["id"], default["id"]}
    ranged = client.get("/tasks/range", params={"start": "2024-01-15T00:00:00", "end": "2024-01-16T00:00:00"})
    assert [row["id"] for row in ranged.json()] == [task["id"]]
    # No start: ordered by creation time, which is newer than the 2024 start.
    assert [row["title"] for row in client.get("/tasks").json()] == ["Neue Aufgabe", "Fix bug"]


def test_segment_sync_flow(client: TestClient, calendar_backend):
    task = _create(client, title="Migration")
    task_id = task["id"]
    segment_ids = []
    for day in (17, 18, 19):
        response = client.post(
            f"/tasks/{task_id}/segments",
            json={"start_local": f"2024-01-{day}T09:00:00", "end_local": f"2024-01-{day}T11:00:00", "note": f"Tag {day}"},
        )
        assert response.status_code == 201
        assert response.json()["planned_minutes"] == 120
        segment_ids.append(response.json()["id"])

    calendar_backend.fail_calls.add(2)
    summary = client.post(f"/tasks/{task_id}/segments/calendar").json()
    assert summary["total"] == 3
    assert summary["failed"] == 1
    assert summary["ok"] is False

    segments = client.get(f"/tasks/{task_id}/segments").json()
    assert [bool(row["calendar_entry_id"]) for row in segments] == [True, False, True]
    assert "1 von 3" in client.get("/settings").json()["last_error"]

    retried = client.post(f"/segments/{segment_ids[1]}/calendar").json()
    assert retried["ok"] is True
    assert retried["entry_id"]

    updated = client.patch(f"/segments/{segment_ids[0]}", json={"end_local": "2024-01-17T08:00:00"}).json()
    assert updated["planned_minutes"] == -60
    assert updated["validation_hint"] == "Startzeit muss vor Endzeit liegen."
    invalid = client.post(f"/segments/{segment_ids[0]}/calendar").json()
    assert invalid["ok"] is False
    assert invalid["entry_id"] == segments[0]["calendar_entry_id"]

    removed = client.delete(f"/segments/{segment_ids[2]}/calendar").json()
    assert removed == {"ok": True, "error": ""}
    assert client.delete(f"/segments/{segment_ids[2]}").status_code == 204
    assert len(client.get(f"/tasks/{task_id}/segments").json()) == 2


def test_task_block_and_connection_test(client: TestClient, calendar_backend):
    task = _create(client, title="Fokus", start_local="2024-01-17T13:00:00", end_local="2024-01-17T14:30:00")
    synced = client.post(f"/tasks/{task['id']}/calendar").json()
    assert synced == {"ok": True, "entry_id": "block-1", "error": ""}
    assert client.get(f"/tasks/{task['id']}").json()["calendar_entry_id"] == "block-1"

    cleared = client.delete(f"/tasks/{task['id']}/calendar").json()
    assert cleared["ok"] is True
    assert client.get(f"/tasks/{task['id']}").json()["calendar_entry_id"] == ""

    assert client.post("/calendar/test").json() == {"ok": True, "error": ""}


def test_work_day_flow(client: TestClient):
    day = "2024-01-17"
    come = client.post("/days/come", json={"at": f"{day}T08:00:00"})
    assert come.status_code == 200
    assert come.json()["come_local"] == f"{day}T08:00:00"

    started = client.post(f"/days/{day}/breaks/start", json={"at": f"{day}T12:00:00"})
    assert started.status_code == 201
    ended = client.post(f"/days/{day}/breaks/end", json={"at": f"{day}T12:30:00"}).json()
    assert ended["end_local"] == f"{day}T12:30:00"
    assert client.post(f"/days/{day}/breaks/end", json={"at": f"{day}T12:40:00"}).json() is None

    client.post("/days/go", json={"at": f"{day}T17:00:00"})
    report = client.get(f"/reports/day/{day}").json()
    assert report["net_minutes"] == 510
    assert report["pause_minutes"] == 30
    assert report["overtime_minutes"] == 30
    assert report["overtime_minutes_text"] == "0h 30m"

    manual = client.put(
        f"/days/{day}/manual",
        json={
            "come_local": f"{day}T07:00:00",
            "go_local": f"{day}T15:00:00",
            "breaks": [{"start_local": f"{day}T11:00:00", "end_local": f"{day}T11:45:00"}],
        },
    )
    assert manual.status_code == 200
    assert [entry["note"] for entry in manual.json()["breaks"]] == ["pause"]
    assert client.get(f"/reports/day/{day}").json()["net_minutes"] == 435

    markers = client.put(f"/days/{day}/markers", json={"day_type": "UL", "is_br": False, "is_ho": True}).json()
    assert markers["day_type"] == "UL"
    assert markers["is_ho"] is True
    assert client.get(f"/reports/day/{day}").json()["target_minutes"] == 0

    bad_break = client.put(
        f"/days/{day}/manual",
        json={"breaks": [{"start_local": f"{day}T11:00:00", "end_local": f"{day}T10:00:00"}]},
    )
    assert bad_break.status_code == 422


def test_week_and_month_reports(client: TestClient):
    task = _create(client, title="Workshop", start_local="2024-01-16T09:00:00", end_local="2024-01-16T12:00:00")
    client.post(f"/tasks/{task['id']}/ticket-minutes", json={"minutes": 90})

    week = client.get("/reports/week/2024-01-17").json()
    assert week["week_start"] == "2024-01-15"
    assert len(week["days"]) == 7
    assert [row["title"] for row in week["days"][1]["tasks"]] == ["Workshop"]
    assert week["target_minutes_text"] == "37h 00m"

    month = client.get("/reports/month/2024/1", params={"top": 3}).json()
    assert month["month"] == "2024-01"
    assert month["ticket_minutes"] == 90
    assert month["top_tasks"] == [{"title": "Workshop", "minutes": 90, "minutes_text": "1h 30m"}]
    assert client.get("/reports/month/2024/13").status_code == 400


def test_settings_roundtrip(client: TestClient, state):
    current = client.get("/settings").json()
    assert current["friday_target_minutes"] == 300
    assert current["last_error"] == ""

    updated = client.put("/settings", json={"reminder_lead_minutes": 7, "friday_target_minutes": 0}).json()
    assert updated["reminder_lead_minutes"] == 7
    assert updated["friday_target_minutes"] == 300
    assert state.settings.reminder_lead_minutes == 7
    assert client.put("/settings", json={"monday_target_minutes": -1}).status_code == 422


def test_open_ticket_reports_invalid_url(client: TestClient, monkeypatch):
    opened = []
    monkeypatch.setattr(webbrowser, "open", lambda target: opened.append(target) or True)
    empty = _create(client, title="Ohne Link")
    linked = _create(client, title="Mit Link", ticket_url="https://tracker.example/TT-9")

    response = client.post(f"/tasks/{empty['id']}/open-ticket").json()
    assert response == {"ok": False, "error": "Ticket URL ist leer."}
    assert client.get("/settings").json()["last_error"] == "Ticket URL ist leer."

    assert client.post(f"/tasks/{linked['id']}/open-ticket").json() == {"ok": True, "error": ""}
    assert opened == ["https://tracker.example/TT-9"]


def test_reminder_endpoints(client: TestClient):
    task = _create(client, title="Später")
    response = client.post(f"/reminders/{task['id']}/snooze", json={"minutes": 10})
    assert response.status_code == 200
    assert response.json()["task_id"] == task["id"]
    assert client.post("/reminders/check").json() == []


def _wall_clock(value: str) -> dt.datetime:
    return dt.datetime.fromisoformat(value).astimezone().replace(tzinfo=None)


def test_offset_timestamps_are_stored_as_wall_clock(client: TestClient):
    task = _create(client, title="Zeitzonen", start_local="2024-01-17T08:00:00Z")
    assert task["start_local"] == _wall_clock("2024-01-17T08:00:00+00:00").isoformat()

    start = _wall_clock("2024-01-17T09:00:00+01:00")
    end = start + dt.timedelta(hours=1)
    response = client.post(
        f"/tasks/{task['id']}/segments",
        json={"start_local": "2024-01-17T09:00:00+01:00", "end_local": end.isoformat()},
    )
    assert response.status_code == 201, response.text
    assert response.json()["start_local"] == start.isoformat()
    assert response.json()["planned_minutes"] == 60


def test_manual_break_with_offset_is_compared_as_wall_clock(client: TestClient):
    start = _wall_clock("2024-01-17T12:00:00+00:00")
    day = start.date().isoformat()
    saved = client.put(
        f"/days/{day}/manual",
        json={"breaks": [{"start_local": "2024-01-17T12:00:00Z", "end_local": (start + dt.timedelta(minutes=30)).isoformat()}]},
    )
    assert saved.status_code == 200, saved.text
    assert saved.json()["breaks"][0]["start_local"] == start.isoformat()

    rejected = client.put(
        f"/days/{day}/manual",
        json={"breaks": [{"start_local": "2024-01-17T12:00:00Z", "end_local": (start - dt.timedelta(minutes=10)).isoformat()}]},
    )
    assert rejected.status_code == 422
    assert "Pausenende muss nach Pausenbeginn liegen." in rejected.text
