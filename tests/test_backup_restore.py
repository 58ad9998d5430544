# tests/test_backup_restore.py
from __future__ import annotations
import io

import pytest

from crm_server.services.backup_service import BackupService, BackupError

pytestmark = pytest.mark.unit


def _restore(client, headers, content, name="restore.sql"):
    files = {"file": (name, io.BytesIO(content.encode("utf-8")), "application/sql")}
    return client.post("/api/backup/restore", files=files, headers=headers)


def test_backup_create_list_download_delete(client, admin_headers, server_env):
    resp = client.post("/api/backup/create", headers=admin_headers)
    assert resp.status_code == 200, resp.text
    data = resp.json()["data"]
    file_name = data["fileName"]
    assert file_name.startswith("customer_db_backup_") and file_name.endswith(".sql")
    assert data["fileSize"] > 0
    assert (server_env / "backups" / file_name).is_file()

    listing = client.get("/api/backup/list", headers=admin_headers).json()["data"]
    assert [b["fileName"] for b in listing] == [file_name]
    assert listing[0]["createTime"]

    resp = client.get(f"/api/backup/download/{file_name}", headers=admin_headers)
    assert resp.status_code == 200
    text = resp.content.decode("utf-8")
    assert 'DELETE FROM "customers";' in text
    assert "张三" in text

    assert client.delete(f"/api/backup/{file_name}", headers=admin_headers).status_code == 200
    assert client.get("/api/backup/list", headers=admin_headers).json()["data"] == []
    assert client.delete(f"/api/backup/{file_name}", headers=admin_headers).status_code == 404


def test_backup_admin_only(client, viewer_headers):
    assert client.post("/api/backup/create", headers=viewer_headers).status_code == 403
    assert client.get("/api/backup/list", headers=viewer_headers).status_code == 403


def test_download_rejects_bad_names(client, admin_headers):
    assert client.get("/api/backup/download/notes.txt", headers=admin_headers).status_code == 400
    assert client.get("/api/backup/download/missing.sql", headers=admin_headers).status_code == 404


def test_restore_round_trip(client, admin_headers):
    file_name = client.post("/api/backup/create", headers=admin_headers).json()["data"]["fileName"]
    backup_text = client.get(f"/api/backup/download/{file_name}", headers=admin_headers).content.decode("utf-8")

    client.request("DELETE", "/api/customers/batch", json={"ids": [1, 2, 3]}, headers=admin_headers)
    client.post("/api/customers", json={"name": "恢复后消失"}, headers=admin_headers)
    assert client.get("/api/customers/count", headers=admin_headers).json()["data"]["count"] == 3

    resp = _restore(client, admin_headers, backup_text)
    assert resp.status_code == 200, resp.text
    assert resp.json()["data"]["executed"] > 0

    names = [c["name"] for c in client.get("/api/customers/all", headers=admin_headers).json()["data"]]
    assert names == ["张三", "李四", "王五", "赵六", "钱七"]
    assert client.get("/api/customers/count", headers=admin_headers).json()["data"]["count"] == 5

    resp = client.get("/api/operation-logs/search", params={"operation": "RESTORE"}, headers=admin_headers)
    assert resp.json()["data"]["total"] >= 1


def test_restore_rejects_foreign_statements(client, admin_headers):
    resp = _restore(client, admin_headers, "DROP TABLE customers;\n")
    assert resp.status_code == 400
    assert client.get("/api/customers/count", headers=admin_headers).json()["data"]["count"] == 5


def test_restore_rolls_back_on_error(client, admin_headers):
    script = (
        "-- partial script\n"
        'DELETE FROM "customers";\n'
        "INSERT INTO \"customers\" (\"id\", \"name\") VALUES(1, 'a');\n"
        "INSERT INTO \"customers\" (\"id\", \"name\") VALUES(1, 'dup');\n"
    )
    resp = _restore(client, admin_headers, script)
    assert resp.status_code == 400
    names = [c["name"] for c in client.get("/api/customers/all", headers=admin_headers).json()["data"]]
    assert names[0] == "张三"
    assert len(names) == 5


def test_restore_requires_sql_extension(client, admin_headers):
    assert _restore(client, admin_headers, "DELETE FROM customers;", name="dump.txt").status_code == 400


def test_split_statements_keeps_semicolons_in_strings():
    script = (
        "-- header\n"
        "\n"
        "INSERT INTO \"customers\" (\"name\") VALUES('a;b');\n"
        "INSERT INTO \"customers\" (\"name\") VALUES('multi\nline');\n"
    )
    statements = BackupService.split_statements(script)
    assert len(statements) == 2
    assert "'a;b'" in statements[0]


def test_split_statements_unterminated():
    with pytest.raises(BackupError):
        BackupService.split_statements("INSERT INTO \"customers\" (\"name\") VALUES('x')")
