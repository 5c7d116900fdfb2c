"""Tests for main.py: the local JSON API."""

import pytest
from fastapi.testclient import TestClient

from main import MIGRATION_NOTICE, app, app_state


@pytest.fixture
def client(store):
    with TestClient(app) as client:
        app_state.configure(store)
        yield client


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def login(client, username: str, password: str) -> str:
    response = client.post("/api/auth/login", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["token"]


def signup(client, username: str, password: str) -> str:
    response = client.post("/api/auth/signup", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["token"]


@pytest.fixture
def admin_token(client) -> str:
    return signup(client, "alice", "alice-pw")


@pytest.fixture
def owner_token(client) -> str:
    response = client.post("/api/setup/owner", json={"username": "root", "password": "root-pw"})
    assert response.status_code == 200
    return login(client, "root", "root-pw")


class TestAuthEndpoints:
    def test_signup_and_workspace(self, client, admin_token):
        response = client.get("/api/workspace", headers=auth(admin_token))
        assert response.status_code == 200
        assert response.json() == {"workspace": "alice", "payload": {"sites": [], "workers": [], "tasks": []}}

    def test_duplicate_signup(self, client, admin_token):
        response = client.post("/api/auth/signup", json={"username": "alice", "password": "x"})
        assert response.status_code == 409
        assert response.json()["error"] == "IdentityConflict"

    def test_wrong_password(self, client, admin_token):
        response = client.post("/api/auth/login", json={"username": "alice", "password": "nope"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid username/email or password."

    def test_missing_fields(self, client):
        assert client.post("/api/auth/login", json={"username": "alice"}).status_code == 400

    def test_invalid_json(self, client):
        response = client.post("/api/auth/login", content=b"{nope", headers={"Content-Type": "application/json"})
        assert response.status_code == 400

    def test_requires_token(self, client, admin_token):
        assert client.get("/api/workspace").status_code == 401
        assert client.get("/api/workspace", headers=auth("bogus")).status_code == 401

    def test_logout(self, client, admin_token):
        assert client.post("/api/auth/logout", headers=auth(admin_token)).status_code == 200
        assert client.get("/api/workspace", headers=auth(admin_token)).status_code == 401

    def test_legacy_login_reports_migration(self, client, plant_legacy_tenant, legacy_payload):
        plant_legacy_tenant("dave", "dave-pw")
        response = client.post("/api/auth/login", json={"username": "dave", "password": "dave-pw"})
        assert response.status_code == 200
        assert response.json()["message"] == MIGRATION_NOTICE

        token = response.json()["token"]
        assert client.get("/api/workspace", headers=auth(token)).json()["payload"] == legacy_payload


class TestWorkspaceEndpoints:
    def test_save_and_reload(self, client, admin_token):
        payload = {"sites": [{"id": 1}], "workers": [], "tasks": []}
        assert client.put("/api/workspace", json={"payload": payload}, headers=auth(admin_token)).status_code == 200
        assert client.get("/api/workspace", headers=auth(admin_token)).json()["payload"] == payload

    def test_payload_must_be_object(self, client, admin_token):
        response = client.put("/api/workspace", json={"payload": [1]}, headers=auth(admin_token))
        assert response.status_code == 400


class TestWorkerEndpoints:
    def test_worker_shares_workspace(self, client, admin_token):
        client.put("/api/workspace", json={"payload": {"sites": ["a"], "workers": [], "tasks": []}},
                   headers=auth(admin_token))
        response = client.post("/api/workers", json={"username": "bob", "password": "bob-pw"},
                               headers=auth(admin_token))
        assert response.status_code == 200
        assert response.json()["identity"]["admin_username"] == "alice"

        worker = login(client, "bob", "bob-pw")
        assert client.get("/api/workspace", headers=auth(worker)).json()["payload"]["sites"] == ["a"]

    def test_admin_password_change_then_reset(self, client, admin_token):
        client.post("/api/workers", json={"username": "bob", "password": "bob-pw"}, headers=auth(admin_token))
        response = client.post("/api/password", json={"current_password": "alice-pw", "new_password": "alice-new"},
                               headers=auth(admin_token))
        assert response.status_code == 200

        response = client.post("/api/auth/login", json={"username": "bob", "password": "bob-pw"})
        assert response.status_code == 403
        assert response.json()["error"] == "StaleRegistration"

        response = client.put("/api/workers/bob", json={"password": "bob-new"}, headers=auth(admin_token))
        assert response.status_code == 200
        login(client, "bob", "bob-new")

    def test_reset_logs_worker_out(self, client, admin_token):
        client.post("/api/workers", json={"username": "bob", "password": "bob-pw"}, headers=auth(admin_token))
        worker = login(client, "bob", "bob-pw")
        client.put("/api/workers/bob", json={"password": "bob-new"}, headers=auth(admin_token))
        assert client.get("/api/workspace", headers=auth(worker)).status_code == 401

    def test_worker_cannot_add_workers(self, client, admin_token):
        client.post("/api/workers", json={"username": "bob", "password": "bob-pw"}, headers=auth(admin_token))
        worker = login(client, "bob", "bob-pw")
        response = client.post("/api/workers", json={"username": "carol", "password": "x"}, headers=auth(worker))
        assert response.status_code == 403

    def test_delete_worker(self, client, admin_token):
        client.post("/api/workers", json={"username": "bob", "password": "bob-pw"}, headers=auth(admin_token))
        worker = login(client, "bob", "bob-pw")
        response = client.delete("/api/identities/bob", headers=auth(admin_token))
        assert response.json()["deleted"] == ["bob"]
        assert client.get("/api/workspace", headers=auth(worker)).status_code == 401
        assert client.post("/api/auth/login", json={"username": "bob", "password": "bob-pw"}).status_code == 401


class TestOwnerEndpoints:
    def test_single_owner(self, client, owner_token):
        response = client.post("/api/setup/owner", json={"username": "root2", "password": "x"})
        assert response.status_code == 409

    def test_owner_has_no_workspace(self, client, owner_token):
        assert client.get("/api/workspace", headers=auth(owner_token)).status_code == 403

    def test_add_admin_and_oversight(self, client, owner_token):
        response = client.post("/api/admins", json={"username": "dave", "password": "dave-pw"},
                               headers=auth(owner_token))
        assert response.status_code == 200
        login(client, "dave", "dave-pw")

        report = client.get("/api/oversight", headers=auth(owner_token)).json()
        assert report["total_admins"] == 1
        assert report["admins"][0]["username"] == "dave"

    def test_admin_cannot_oversee(self, client, admin_token):
        assert client.get("/api/oversight", headers=auth(admin_token)).status_code == 403

    def test_delete_admin_closes_sessions(self, client, owner_token, admin_token):
        response = client.delete("/api/identities/alice", headers=auth(owner_token))
        assert response.json()["deleted"] == ["alice"]
        assert client.get("/api/workspace", headers=auth(admin_token)).status_code == 401

    def test_import_users(self, client, owner_token):
        response = client.post("/api/admins/import", json={"users": [
            {"username": "erin", "role": "admin", "password": "erin-pw"},
        ]}, headers=auth(owner_token))
        assert response.json()["imported"] == ["erin"]
        login(client, "erin", "erin-pw")

    def test_import_skips_malformed_records(self, client, owner_token):
        response = client.post("/api/admins/import", json={"users": [
            "x",
            {"username": 5, "role": "admin", "password": "p"},
            {"username": "frank", "role": ["admin"], "password": "p"},
            {"username": "erin", "role": "admin", "password": "erin-pw"},
        ]}, headers=auth(owner_token))
        assert response.status_code == 200
        assert response.json()["imported"] == ["erin"]

    def test_import_requires_owner(self, client, admin_token):
        response = client.post("/api/admins/import", json={"users": []}, headers=auth(admin_token))
        assert response.status_code == 403


class TestActivityLog:
    def test_logs_newest_first(self, client, admin_token, owner_token):
        client.post("/api/auth/login", json={"username": "alice", "password": "nope"})
        logs = client.get("/api/logs", headers=auth(owner_token)).json()["logs"]
        assert logs[0]["message"] == "InvalidCredentials"
        assert any(entry["message"] == "Sign-up successful" for entry in logs)

    def test_other_workspaces_cannot_read_log(self, client, admin_token):
        client.post("/api/workers", json={"username": "carol", "password": "carol-pw"}, headers=auth(admin_token))
        bob_token = signup(client, "bob", "bob-pw")
        client.post("/api/workers", json={"username": "dave", "password": "dave-pw"}, headers=auth(bob_token))
        dave_token = login(client, "dave", "dave-pw")

        for token in (dave_token, bob_token, admin_token):
            response = client.get("/api/logs", headers=auth(token))
            assert response.status_code == 403
            assert "logs" not in response.json()

    def test_requires_token(self, client):
        assert client.get("/api/logs").status_code == 401
