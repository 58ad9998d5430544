# tests/test_client_library.py
from __future__ import annotations
import csv
import json

import pytest

from crm_client import (
    AuthenticationError,
    PermissionDeniedError,
    NotFoundError,
    ValidationError,
    NetworkError,
    RequestTimeoutError,
    GatewayTimeoutError,
)
from crm_client.customers import EXPORT_HEADERS
from fake_http import FakeResponse, ok, error

pytestmark = pytest.mark.unit


# ==================== session ====================

def test_login_persists_token(crm_factory, tmp_path):
    crm = crm_factory()
    user = crm.login("admin", "admin123")
    assert user.is_admin
    assert user.role_label == "管理员"

    with open(tmp_path / "state.json", encoding="utf-8") as f:
        assert json.load(f)["token"] == crm.api.token

    # A new client reads the saved token
    again = crm_factory()
    assert again.session.current().username == "admin"


def test_viewer_session(crm_factory):
    crm = crm_factory()
    user = crm.login("viewer", "viewer123")
    assert not user.is_admin
    assert user.role_label == "查看者"
    assert crm.customers.count() == 5


def test_bad_login(crm_factory):
    crm = crm_factory()
    with pytest.raises(AuthenticationError) as excinfo:
        crm.login("admin", "wrong")
    assert excinfo.value.message == "用户名或密码错误"
    with pytest.raises(ValidationError):
        crm.login("", "")


def test_logout_forgets_token(crm_factory):
    crm = crm_factory()
    crm.login("admin", "admin123")
    crm.logout()
    assert crm.api.token is None
    with pytest.raises(AuthenticationError):
        crm.session.current()


def test_invalid_token_is_dropped(crm_factory):
    crm = crm_factory()
    crm.api.set_token("garbage")
    with pytest.raises(AuthenticationError):
        crm.customers.list()
    assert crm.api.token is None


def test_viewer_blocked_locally(fake_crm):
    crm, session = fake_crm()
    crm.session.user = crm.session.user.model_copy(update={"role": "VIEWER"})
    with pytest.raises(PermissionDeniedError):
        crm.customers.create("甲")
    with pytest.raises(PermissionDeniedError):
        crm.backups.create()
    with pytest.raises(PermissionDeniedError):
        crm.importer.import_file("whatever.csv")
    assert session.calls == []


# ==================== transport errors ====================

def test_error_mapping(fake_crm):
    import requests

    crm, session = fake_crm()
    session.route("GET", "/api/customers/1", lambda call: error(404, "客户不存在: 1"))
    session.route("GET", "/api/customers/2", lambda call: FakeResponse(504, None))
    session.route("GET", "/api/customers/3", lambda call: FakeResponse(503, {"success": False, "message": "数据库繁忙"}))

    def timeout(call):
        raise requests.Timeout("slow")

    def refused(call):
        raise requests.ConnectionError("refused")

    session.route("GET", "/api/customers/4", timeout)
    session.route("GET", "/api/customers/5", refused)

    with pytest.raises(NotFoundError) as excinfo:
        crm.customers.get(1)
    assert excinfo.value.message == "客户不存在: 1"
    with pytest.raises(GatewayTimeoutError):
        crm.customers.get(2)
    with pytest.raises(Exception) as excinfo:
        crm.customers.get(3)
    assert excinfo.value.status_code == 503
    assert excinfo.value.message == "数据库繁忙"
    with pytest.raises(RequestTimeoutError):
        crm.customers.get(4)
    with pytest.raises(NetworkError):
        crm.customers.get(5)


def test_validation_detail_list_is_readable(crm_factory):
    crm = crm_factory()
    crm.login("admin", "admin123")
    with pytest.raises(ValidationError) as excinfo:
        crm.customers.create("甲", email="bad")
    assert "email" in excinfo.value.message


# ==================== customers ====================

def test_list_and_pager(crm_factory):
    crm = crm_factory()
    crm.login("viewer", "viewer123")
    pager = crm.customers.pager(page_size=2)

    first = pager.first()
    assert [c.name for c in first.items] == ["张三", "李四"]
    assert first.has_next and not first.has_previous
    assert pager.next().page == 2
    last = pager.last()
    assert last.page == 3
    assert [c.name for c in last.items] == ["钱七"]
    assert not last.has_next
    assert pager.next().page == 3
    assert pager.previous().page == 2


def test_customer_crud_and_remarks(crm_factory):
    crm = crm_factory()
    crm.login("admin", "admin123")

    created = crm.customers.create("孙八", phone="13900000008", address="天津")
    assert crm.customers.get(created.id).address == "天津"

    updated = crm.customers.update(created.id, "孙八", phone="13900000018")
    assert updated.phone == "13900000018"
    assert updated.address is None

    assert crm.customers.save_remark(created.id, " 老客户 ") == "老客户"
    assert crm.customers.get_remark(created.id) == "老客户"
    assert crm.customers.save_remark(created.id, "") is None
    assert crm.customers.get_remark(created.id) is None

    crm.customers.delete(created.id)
    with pytest.raises(NotFoundError):
        crm.customers.get(created.id)

    assert crm.customers.batch_delete([1, 2]) == 2
    assert crm.customers.count() == 3


def test_search_and_batch_query(crm_factory):
    crm = crm_factory()
    crm.login("viewer", "viewer123")

    assert crm.customers.search("李").total == 1
    assert crm.customers.search("").total == 5
    assert crm.customers.advanced_search(address="杭州").items[0].name == "钱七"

    results = crm.customers.batch_query_text("13800138003\n\n张 00000\n无名 111 某地 某街\n")
    assert [r.matched for r in results] == [True, True, False]
    assert results[0].customer.name == "王五"
    assert results[1].customer.name == "张三"
    assert results[2].queryItem["address"] == "某地 某街"


def test_export_csv(crm_factory, tmp_path):
    crm = crm_factory()
    crm.login("admin", "admin123")
    crm.customers.save_remark(1, "VIP")

    path = crm.customers.export_csv(str(tmp_path))
    assert path.startswith(str(tmp_path))
    assert "客户数据_" in path and path.endswith(".csv")

    with open(path, "rb") as f:
        assert f.read(3) == b"\xef\xbb\xbf"
    with open(path, encoding="utf-8-sig", newline="") as f:
        rows = list(csv.reader(f))
    assert rows[0] == EXPORT_HEADERS
    assert len(rows) == 6
    assert rows[1][1] == "张三"
    assert rows[1][6] == "VIP"


# ==================== viewers ====================

def test_log_viewer(crm_factory):
    crm = crm_factory()
    crm.login("admin", "admin123")
    crm.customers.create("日志客户")

    page = crm.logs.list()
    assert page.items[0].operation == "CREATE"
    assert crm.logs.search(operation="LOGIN").total >= 1
    assert crm.logs.cleanup(365) == 0
    with pytest.raises(ValidationError):
        crm.logs.cleanup(0)


def test_log_viewer_admin_only(crm_factory):
    crm = crm_factory()
    crm.login("viewer", "viewer123")
    with pytest.raises(PermissionDeniedError):
        crm.logs.list()


def test_task_viewer(crm_factory, tmp_path):
    crm = crm_factory()
    crm.login("admin", "admin123")
    path = tmp_path / "t.csv"
    path.write_text("姓名,电话\n任务客户,13300000001\n", encoding="utf-8")
    finished = crm.importer.import_file(str(path))

    assert crm.tasks.list().items[0].id == finished.id
    assert crm.tasks.latest_processing() is None
    assert crm.tasks.update_remark(finished.id, "备注").remarks == "备注"
    assert crm.tasks.batch_delete([finished.id]) == 1
    with pytest.raises(NotFoundError):
        crm.tasks.get(finished.id)


# ==================== backup ====================

def test_backup_confirmations(crm_factory, tmp_path):
    answers = []
    crm = crm_factory(confirm=lambda message: answers.pop(0))
    crm.login("admin", "admin123")

    backup = crm.backups.create()
    assert [b.fileName for b in crm.backups.list()] == [backup.fileName]
    local = crm.backups.download(backup.fileName, str(tmp_path))

    crm.customers.batch_delete([1, 2, 3, 4, 5])

    answers[:] = [True, False]
    assert crm.backups.restore(local) is None
    assert crm.customers.count() == 0

    answers[:] = [True, True]
    assert crm.backups.restore(local) > 0
    assert crm.customers.count() == 5

    answers[:] = [False]
    assert crm.backups.delete(backup.fileName) is False
    answers[:] = [True]
    assert crm.backups.delete(backup.fileName) is True
    assert crm.backups.list() == []


def test_restore_validates_locally(fake_crm, tmp_path):
    crm, session = fake_crm(confirm=lambda message: True)
    with pytest.raises(ValidationError):
        crm.backups.restore(str(tmp_path / "dump.txt"))
    with pytest.raises(ValidationError):
        crm.backups.restore(str(tmp_path / "missing.sql"))
    assert session.calls == []


def test_envelope_failure_raises(fake_crm):
    crm, session = fake_crm()
    session.route("GET", "/api/customers/count", lambda call: FakeResponse(200, {"success": False, "message": "坏了"}))
    with pytest.raises(Exception) as excinfo:
        crm.customers.count()
    assert excinfo.value.message == "坏了"


def test_ok_helper_roundtrip(fake_crm):
    crm, session = fake_crm()
    session.route("GET", "/api/customers/count/today", lambda call: ok({"count": 7}))
    assert crm.customers.count_today() == 7
    call = session.calls_to("GET", "/api/customers/count/today")[0]
    assert call.headers["Authorization"] == "Bearer fake-token"
