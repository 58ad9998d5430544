# tests/test_upload_tasks_and_logs.py
from __future__ import annotations
import io

import pytest

from conftest import wait_for_task
from crm_server.database import get_pool
from crm_server.services.operation_log_service import OperationLogService
from crm_server.services.upload_task_service import UploadTaskService

pytestmark = pytest.mark.unit


def _import_csv(client, headers, name, body):
    files = {"file": (name, io.BytesIO(body.encode("utf-8")), "text/csv")}
    task_id = client.post("/api/customers/import", files=files, headers=headers).json()["data"]["taskId"]
    return wait_for_task(client, headers, task_id)


def test_task_list_is_newest_first(client, admin_headers, viewer_headers):
    first = _import_csv(client, admin_headers, "a.csv", "姓名,电话\n甲,13600000001\n")
    second = _import_csv(client, admin_headers, "b.csv", "姓名,电话\n乙,13600000002\n")

    resp = client.get("/api/upload-tasks", headers=viewer_headers)
    data = resp.json()["data"]
    assert data["total"] == 2
    assert [t["id"] for t in data["items"]] == [second["id"], first["id"]]


def test_get_missing_task_is_404(client, viewer_headers):
    assert client.get("/api/upload-tasks/999", headers=viewer_headers).status_code == 404


def test_latest_processing(client, viewer_headers):
    resp = client.get("/api/upload-tasks/processing/latest", headers=viewer_headers)
    assert resp.status_code == 200
    assert resp.json()["data"] is None

    task_id = UploadTaskService.create_task("pending.csv")
    resp = client.get("/api/upload-tasks/processing/latest", headers=viewer_headers)
    assert resp.json()["data"]["id"] == task_id
    assert resp.json()["data"]["status"] == "处理中"


def test_task_remark_and_delete_keeps_customers(client, admin_headers, viewer_headers):
    task = _import_csv(client, admin_headers, "keep.csv", "姓名,电话\n保留,13600000003\n")
    task_id = task["id"]

    assert client.put(f"/api/upload-tasks/{task_id}/remark", json={"remarks": "x"}, headers=viewer_headers).status_code == 403
    resp = client.put(f"/api/upload-tasks/{task_id}/remark", json={"remarks": "首批"}, headers=admin_headers)
    assert resp.json()["data"]["remarks"] == "首批"

    assert client.delete(f"/api/upload-tasks/{task_id}", headers=viewer_headers).status_code == 403
    assert client.delete(f"/api/upload-tasks/{task_id}", headers=admin_headers).status_code == 200
    assert client.get(f"/api/upload-tasks/{task_id}", headers=admin_headers).status_code == 404

    resp = client.get("/api/customers/search", params={"keyword": "保留"}, headers=admin_headers)
    customer = resp.json()["data"]["items"][0]
    assert customer["uploadTaskId"] is None
    assert customer["uploadFileName"] is None


def test_batch_delete_tasks(client, admin_headers):
    ids = [UploadTaskService.create_task(f"t{i}.csv") for i in range(3)]
    resp = client.request("DELETE", "/api/upload-tasks/batch", json=ids[:2], headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["deletedCount"] == 2
    assert client.request("DELETE", "/api/upload-tasks/batch", json=[], headers=admin_headers).status_code == 400


def test_operation_logs_admin_only(client, viewer_headers):
    assert client.get("/api/operation-logs", headers=viewer_headers).status_code == 403


def test_operation_log_records_forwarded_ip(client, admin_headers):
    headers = dict(admin_headers)
    headers["X-Forwarded-For"] = "10.1.2.3, 172.16.0.1"
    client.post("/api/customers", json={"name": "代理"}, headers=headers)

    resp = client.get("/api/operation-logs/search", params={"operation": "CREATE"}, headers=admin_headers)
    assert resp.json()["data"]["items"][0]["ipAddress"] == "10.1.2.3"


def test_operation_log_search_filters(client, admin_headers):
    resp = client.get(
        "/api/operation-logs/search",
        params={"username": "adm", "operation": "LOGIN", "startTime": "2000-01-01", "endTime": "2999-12-31"},
        headers=admin_headers
    )
    items = resp.json()["data"]["items"]
    assert items
    assert all(item["operation"] == "LOGIN" and item["username"] == "admin" for item in items)

    resp = client.get("/api/operation-logs/search", params={"endTime": "2000-01-01"}, headers=admin_headers)
    assert resp.json()["data"]["total"] == 0


def test_operation_log_cleanup(client, admin_headers):
    with get_pool().get_connection() as conn:
        conn.execute(
            "INSERT INTO operation_logs (username, operation, module, result, operation_time) "
            "VALUES ('old', 'LOGIN', 'AUTH', 'SUCCESS', '2001-01-01 00:00:00')"
        )
    resp = client.delete("/api/operation-logs/cleanup", params={"days": 30}, headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["deletedCount"] == 1


def test_log_failure_never_raises(server_env, monkeypatch):
    def broken_pool():
        raise RuntimeError("pool gone")

    monkeypatch.setattr("crm_server.services.operation_log_service.get_pool", broken_pool)
    assert OperationLogService.log_operation(username="x", operation="LOGIN", module="AUTH") == 0
