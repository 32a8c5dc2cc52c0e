from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from panelrunner.browser import BrowserSessions
from panelrunner.main import _event_payload, create_app
from panelrunner.models import LogUpdate, ScreenshotFrame

from conftest import FakePlaywright


@pytest.fixture
def client(store, registry):
    sessions = BrowserSessions(registry, playwright=FakePlaywright(), headless=True)
    app = create_app(store=store, registry=registry, sessions=sessions, start_workers=False)
    with TestClient(app) as client:
        yield client


def _job(credential, **overrides):
    job = {
        "user_id": "u-1",
        "team_id": 1,
        "game_name": "firekirin",
        "action": "recharge",
        "game_credential_id": credential.id,
        "params": {"account_name": "PlayerOne", "amount": "10"},
    }
    job.update(overrides)
    return job


def test_job_lifecycle(client, credential):
    resp = client.post("/jobs", json=_job(credential))
    assert resp.status_code == 200
    job_id = resp.json()["job_id"]

    resp = client.get(f"/jobs/{job_id}", params={"team_id": 1})
    assert resp.status_code == 200
    assert resp.json()["status"] == "waiting"
    assert client.get(f"/jobs/{job_id}", params={"team_id": 2}).status_code == 404

    resp = client.delete(f"/jobs/{job_id}", params={"team_id": 1})
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"

    resp = client.delete(f"/jobs/{job_id}", params={"team_id": 1})
    assert resp.status_code == 409

    stats = client.get("/queues/1/stats").json()
    assert stats["cancelled"] == 1
    assert stats["total"] == 1


def test_batch_submit_and_listing(client, credential):
    resp = client.post("/jobs", json=[_job(credential), _job(credential, action="redeem")])
    assert len(resp.json()["job_ids"]) == 2

    jobs = client.get("/jobs", params={"team_id": 1}).json()
    assert [j["status"] for j in jobs] == ["waiting", "waiting"]


def test_invalid_job_is_400(client, credential):
    job = _job(credential)
    del job["action"]
    resp = client.post("/jobs", json=job)
    assert resp.status_code == 400
    assert "Invalid job data" in resp.json()["detail"]


def test_cancel_unknown_or_foreign_job_is_404(client, credential):
    assert client.delete("/jobs/recharge-1-nothing", params={"team_id": 1}).status_code == 404
    job_id = client.post("/jobs", json=_job(credential)).json()["job_id"]
    assert client.delete(f"/jobs/{job_id}", params={"team_id": 2}).status_code == 404


def test_session_endpoints(client, credential):
    resp = client.post("/sessions", json={
        "user_id": "u-1",
        "game_credential_id": credential.id,
        "session_data": {"cookies": []},
    })
    assert resp.status_code == 200
    token = resp.json()["session_token"]

    check = client.get("/sessions/check", params={"game_credential_id": credential.id, "user_id": "u-1"}).json()
    assert check["has_session"] is True
    assert check["session_token"] == token

    resp = client.delete("/sessions", params={"user_id": "u-1", "game_credential_id": credential.id})
    assert resp.json()["invalidated"] == 1

    check = client.get("/sessions/check", params={"game_credential_id": credential.id, "user_id": "u-1"}).json()
    assert check["has_session"] is False
    assert check["has_credentials"] is True


def test_saving_session_for_unknown_credential_is_404(client):
    resp = client.post("/sessions", json={"user_id": "u-1", "game_credential_id": 999})
    assert resp.status_code == 404


def test_team_status_and_browser_stats(client, store, game):
    store.record_action_status(1, game.id, "recharge", "success", message="Recharge successful")

    status = client.get("/teams/1/status").json()
    assert status["games"][0]["actions"]["recharge"]["status"] == "success"
    assert status["queue"]["total"] == 0

    stats = client.get("/browser/stats").json()
    assert stats["workers"]["running"] is False
    assert stats["sessions"]["pages"] == 0
    assert stats["subscribers"] == 0


def test_websocket_rejects_bad_filter(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/screenshots?team_id=abc") as ws:
            ws.receive_json()


def test_event_payloads():
    now = datetime.now(timezone.utc)
    frame = ScreenshotFrame(image=b"png", game_id=3, game_name="firekirin", action="recharge",
                            team_id=1, session_id="s-1", timestamp=now)
    payload = _event_payload(frame)
    assert payload["type"] == "screenshot"
    assert payload["image"] == "cG5n"
    assert payload["timestamp"] == now.isoformat()

    update = LogUpdate(game_id=3, game_name="firekirin", team_id=1, is_executing=True,
                       current_log="Processing recharge...", all_logs=["Processing recharge..."], timestamp=now)
    payload = _event_payload(update)
    assert payload["type"] == "log_update"
    assert payload["is_executing"] is True
    assert payload["current_log"] == "Processing recharge..."
