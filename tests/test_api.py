import json

import pytest
from starlette.websockets import WebSocketDisconnect

from fakes import COOKIE_NAME
from todo_sync.generate_openapi import generate_openapi

LIVE_URL = "/api/v1/tasks/live"


def credentials_payload(email: str = "ada@example.com", password: str = "secret123"):
    return {"email": email, "password": password}


def sign_up_and_in(client, email: str = "ada@example.com"):
    resp = client.post("/api/v1/auth/sign-up", json=credentials_payload(email))
    assert resp.status_code == 201, resp.text
    resp = client.post("/api/v1/auth/sign-in", json=credentials_payload(email))
    assert resp.status_code == 200, resp.text
    return resp.json()


def add_task(client, text: str):
    resp = client.post("/api/v1/tasks/", params={"wait": "true"}, json={"text": text})
    assert resp.status_code == 200, resp.text
    return resp.json()


def cookie_header(client):
    return {"cookie": f"{COOKIE_NAME}={client.cookies.get(COOKIE_NAME)}"}


class TestHealth:
    def test_health_check(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        assert resp.json() == {"message": "Healthy", "backend": "memory"}


class TestAuth:
    def test_sign_up_sets_client_cookie(self, client):
        resp = client.post("/api/v1/auth/sign-up", json=credentials_payload())
        assert resp.status_code == 201
        assert resp.json() == {"message": "Registered"}
        assert client.cookies.get(COOKIE_NAME)

    def test_duplicate_sign_up_is_rejected(self, client):
        client.post("/api/v1/auth/sign-up", json=credentials_payload())
        resp = client.post("/api/v1/auth/sign-up", json=credentials_payload())
        assert resp.status_code == 401
        body = resp.json()
        assert body["error"] == "AuthError"
        assert "already registered" in body["message"]

    def test_invalid_email_returns_validation_error(self, client):
        resp = client.post("/api/v1/auth/sign-in", json=credentials_payload(email="not-an-email"))
        assert resp.status_code == 422
        body = resp.json()
        assert body["error"] == "ValidationError"
        assert body["message"] == "Request validation failed"
        assert isinstance(body["detail"], list)

    def test_short_password_returns_validation_error(self, client):
        resp = client.post("/api/v1/auth/sign-up", json=credentials_payload(password="123"))
        assert resp.status_code == 422

    def test_wrong_password_returns_401(self, client):
        client.post("/api/v1/auth/sign-up", json=credentials_payload())
        resp = client.post("/api/v1/auth/sign-in", json=credentials_payload(password="wrong-password"))
        assert resp.status_code == 401
        assert resp.json()["message"] == "Invalid login credentials"

    def test_session_lifecycle(self, client):
        resp = client.get("/api/v1/auth/session")
        assert resp.json() == {"authenticated": False, "session": None}

        session = sign_up_and_in(client)
        assert session["email"] == "ada@example.com"
        assert "access_token" not in session

        resp = client.get("/api/v1/auth/session")
        body = resp.json()
        assert body["authenticated"] is True
        assert body["session"]["user_id"] == session["user_id"]

        resp = client.post("/api/v1/auth/session/refresh")
        assert resp.status_code == 200
        assert resp.json()["authenticated"] is True

        resp = client.post("/api/v1/auth/sign-out")
        assert resp.status_code == 204
        assert client.get("/api/v1/auth/session").json()["authenticated"] is False

    def test_task_routes_require_sign_in(self, client):
        assert client.get("/api/v1/tasks/").status_code == 401
        assert client.post("/api/v1/tasks/", json={"text": "x"}).status_code == 401
        assert client.delete("/api/v1/tasks/some-id").status_code == 401

    def test_sign_out_hides_tasks(self, client):
        sign_up_and_in(client)
        add_task(client, "private")
        assert client.post("/api/v1/auth/sign-out").status_code == 204
        assert client.get("/api/v1/tasks/").status_code == 401


class TestTasks:
    def test_view_after_sign_in_is_loaded_and_empty(self, client):
        sign_up_and_in(client)
        resp = client.get("/api/v1/tasks/")
        assert resp.status_code == 200
        body = resp.json()
        assert body["tasks"] == []
        assert body["loading"] is False
        assert body["input"] == ""

    def test_add_task_and_wait(self, client):
        sign_up_and_in(client)
        body = add_task(client, "Buy milk")
        assert body["outcome"] == "confirmed"
        (task,) = body["view"]["tasks"]
        assert task["text"] == "Buy milk"
        assert task["is_complete"] is False
        assert task["pending"] is False
        assert not task["id"].startswith("temp-")

    def test_add_without_wait_returns_optimistic_view(self, client):
        sign_up_and_in(client)
        resp = client.post("/api/v1/tasks/", json={"text": "Buy milk"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["outcome"] is None
        (task,) = body["view"]["tasks"]
        assert task["pending"] is True
        assert task["id"].startswith("temp-")

    def test_blank_add_is_rejected_without_change(self, client):
        sign_up_and_in(client)
        body = add_task(client, "   ")
        assert body["outcome"] == "rejected"
        assert body["view"]["tasks"] == []

    def test_too_long_text_returns_validation_error(self, client):
        sign_up_and_in(client)
        resp = client.post("/api/v1/tasks/", json={"text": "x" * 501})
        assert resp.status_code == 422
        assert resp.json()["error"] == "ValidationError"

    def test_toggle_and_delete(self, client):
        sign_up_and_in(client)
        add_task(client, "first")
        body = add_task(client, "second")
        newest, older = body["view"]["tasks"]
        assert [newest["text"], older["text"]] == ["second", "first"]

        resp = client.post(f"/api/v1/tasks/{older['id']}/toggle", params={"wait": "true"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["outcome"] == "confirmed"
        assert {t["text"]: t["is_complete"] for t in body["view"]["tasks"]} == {"second": False, "first": True}

        resp = client.delete(f"/api/v1/tasks/{older['id']}", params={"wait": "true"})
        body = resp.json()
        assert body["outcome"] == "confirmed"
        assert [t["text"] for t in body["view"]["tasks"]] == ["second"]

    def test_unknown_task_is_rejected(self, client):
        sign_up_and_in(client)
        resp = client.post("/api/v1/tasks/missing/toggle", params={"wait": "true"})
        assert resp.json()["outcome"] == "rejected"
        resp = client.delete("/api/v1/tasks/missing", params={"wait": "true"})
        assert resp.json()["outcome"] == "rejected"

    def test_update_input_and_reload(self, client):
        sign_up_and_in(client)
        resp = client.put("/api/v1/tasks/input", json={"text": "Buy m"})
        assert resp.json()["input"] == "Buy m"

        add_task(client, "Buy milk")
        resp = client.post("/api/v1/tasks/reload")
        assert resp.status_code == 200
        body = resp.json()
        assert [t["text"] for t in body["tasks"]] == ["Buy milk"]
        assert body["loading"] is False

    def test_clients_do_not_share_views(self, client):
        sign_up_and_in(client)
        add_task(client, "ada's")

        client.cookies.clear()
        sign_up_and_in(client, "grace@example.com")
        resp = client.get("/api/v1/tasks/")
        assert resp.json()["tasks"] == []


class TestNotifications:
    def test_notifications_are_drained(self, client):
        sign_up_and_in(client)
        add_task(client, "Buy milk")

        resp = client.get("/api/v1/notifications/")
        assert resp.status_code == 200
        messages = [(n["level"], n["message"]) for n in resp.json()]
        assert ("success", "Signed in.") in messages
        assert ("success", "Task added.") in messages

        assert client.get("/api/v1/notifications/").json() == []

    def test_failed_sign_in_produces_error_notification(self, client):
        # Any request establishes the client cookie; error responses do not carry it.
        client.get("/api/v1/auth/session")
        client.post("/api/v1/auth/sign-in", json=credentials_payload())
        (item,) = client.get("/api/v1/notifications/").json()
        assert item["level"] == "error"
        assert item["message"] == "Invalid login credentials"


class TestLiveView:
    def test_connect_without_session_is_refused(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(LIVE_URL) as ws:
                ws.receive_json()
        assert exc_info.value.code == 4401

    def test_pushes_view_after_changes(self, client):
        sign_up_and_in(client)
        with client.websocket_connect(LIVE_URL, headers=cookie_header(client)) as ws:
            initial = ws.receive_json()
            assert initial["tasks"] == []

            add_task(client, "Buy milk")
            for _ in range(20):
                snapshot = ws.receive_json()
                tasks = snapshot["tasks"]
                if tasks and not tasks[0]["pending"]:
                    break
            assert [t["text"] for t in tasks] == ["Buy milk"]
            assert tasks[0]["pending"] is False

    def test_open_live_view_counts_as_a_connection(self, client):
        sign_up_and_in(client)
        registry = client.app.state.registry
        with client.websocket_connect(LIVE_URL, headers=cookie_header(client)) as ws:
            ws.receive_json()
            context = registry.get(client.cookies.get(COOKIE_NAME))
            assert context.live_connections == 1

    def test_sign_out_closes_live_view(self, client):
        sign_up_and_in(client)
        with client.websocket_connect(LIVE_URL, headers=cookie_header(client)) as ws:
            ws.receive_json()
            assert client.post("/api/v1/auth/sign-out").status_code == 204
            with pytest.raises(WebSocketDisconnect) as exc_info:
                while True:
                    ws.receive_json()
            assert exc_info.value.code == 4401


class TestOpenAPI:
    def test_schema_written_with_tags(self, client, tmp_path):
        out = tmp_path / "interfaces" / "openapi.json"
        path = generate_openapi(str(out), app=client.app)
        schema = json.loads(out.read_text(encoding="utf-8"))
        assert path == str(out)
        assert {t["name"] for t in schema["tags"]} >= {"health", "auth", "tasks", "notifications"}
        assert "/api/v1/tasks/{task_id}/toggle" in schema["paths"]
