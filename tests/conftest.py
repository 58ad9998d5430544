# tests/conftest.py
from __future__ import annotations
import time

import pytest
from fastapi.testclient import TestClient

from crm_server import config
from crm_server.main import app
from crm_server.services.customer_service import CustomerService

TERMINAL_WAIT_SECONDS = 15


@pytest.fixture
def server_env(tmp_path, monkeypatch):
    # Every test gets its own database file and working directories
    monkeypatch.setattr(config, "DB_PATH", str(tmp_path / "crm.db"))
    monkeypatch.setattr(config, "UPLOAD_DIR", str(tmp_path / "uploads"))
    monkeypatch.setattr(config, "CHUNK_DIR", str(tmp_path / "chunks"))
    monkeypatch.setattr(config, "BACKUP_DIR", str(tmp_path / "backups"))
    monkeypatch.setattr(config, "IMPORT_WORKERS", 2)
    CustomerService.invalidate_count_cache()
    yield tmp_path
    CustomerService.invalidate_count_cache()


@pytest.fixture
def client(server_env):
    with TestClient(app) as c:
        yield c


def _login(client, username, password):
    resp = client.post("/api/auth/login", json={"username": username, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()["data"]["token"]


@pytest.fixture
def admin_headers(client):
    return {"Authorization": f"Bearer {_login(client, 'admin', 'admin123')}"}


@pytest.fixture
def viewer_headers(client):
    return {"Authorization": f"Bearer {_login(client, 'viewer', 'viewer123')}"}


def wait_for_task(client, headers, task_id, timeout=TERMINAL_WAIT_SECONDS):
    """Poll an upload task until it leaves the processing status."""
    deadline = time.monotonic() + timeout
    while True:
        resp = client.get(f"/api/upload-tasks/{task_id}", headers=headers)
        assert resp.status_code == 200, resp.text
        task = resp.json()["data"]
        if task["status"] != "处理中":
            return task
        assert time.monotonic() < deadline, f"task {task_id} still processing"
        time.sleep(0.05)


@pytest.fixture
def crm_factory(client, tmp_path):
    """Client library wired to the in-process app."""
    from crm_client import CrmClient

    def make(**options):
        options.setdefault("poll_interval", 0.05)
        return CrmClient(
            "http://testserver", session=client, state_file=str(tmp_path / "state.json"), **options
        )

    return make


@pytest.fixture
def fake_crm(tmp_path):
    """Client library on a scripted session, already signed in as admin."""
    from crm_client import CrmClient, UserSession
    from fake_http import FakeSession

    def make(**options):
        session = FakeSession()
        options.setdefault("poll_interval", 0.01)
        options.setdefault("retry_delay", 0)
        crm = CrmClient(
            "http://fake", session=session, state_file=str(tmp_path / "fake_state.json"), **options
        )
        crm.api.set_token("fake-token")
        crm.session.user = UserSession(username="admin", realName="系统管理员", role="ADMIN")
        return crm, session

    return make
