# tests/test_client_importer.py
from __future__ import annotations
import threading
import time

import pytest

from crm_client import (
    ImportStage,
    ImportFailedError,
    ImportCancelledError,
    ImportTimeoutError,
    ValidationError,
)
from crm_client.importer import concurrency_for_size, new_upload_id, validate_file
from fake_http import FakeResponse, ok, error, task

pytestmark = pytest.mark.unit

MB = 1024 * 1024


def _csv(tmp_path, name="客户.csv", rows=3, start=0):
    path = tmp_path / name
    lines = ["姓名,电话"] + [f"导入{i},1310000{i:04d}" for i in range(start, start + rows)]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return str(path)


# ==================== helpers ====================

def test_concurrency_for_size():
    assert concurrency_for_size(10 * MB) == 10
    assert concurrency_for_size(100 * MB) == 10
    assert concurrency_for_size(100 * MB + 1) == 15
    assert concurrency_for_size(500 * MB + 1) == 20


def test_new_upload_id_format():
    upload_id = new_upload_id()
    millis, suffix = upload_id.split("_")
    assert millis.isdigit() and abs(int(millis) - time.time() * 1000) < 60000
    assert suffix.isalnum()
    assert new_upload_id() != upload_id


def test_validate_file(tmp_path):
    path = _csv(tmp_path)
    name, size = validate_file(path)
    assert name == "客户.csv" and size > 0

    (tmp_path / "a.xls").write_bytes(b"x")
    with pytest.raises(ValidationError):
        validate_file(str(tmp_path / "a.xls"))
    (tmp_path / "empty.csv").write_bytes(b"")
    with pytest.raises(ValidationError):
        validate_file(str(tmp_path / "empty.csv"))
    with pytest.raises(ValidationError):
        validate_file(str(tmp_path / "missing.xlsx"))
    with pytest.raises(ValidationError):
        validate_file(path, max_size=1)


# ==================== against the app ====================

def test_direct_import_end_to_end(crm_factory, tmp_path):
    stages = []
    crm = crm_factory(on_stage=stages.append)
    crm.login("admin", "admin123")

    result = crm.importer.import_file(_csv(tmp_path, rows=3))
    assert result.status == "完成"
    assert result.addedCount == 3
    assert stages == [
        ImportStage.VALIDATING, ImportStage.UPLOADING, ImportStage.POLLING, ImportStage.COMPLETED
    ]
    assert crm.state.get_task_id() is None
    assert crm.state.get("currentUploadInfo") is None
    assert crm.customers.advanced_search(upload_task_id=result.id).total == 3


def test_chunked_import_end_to_end(crm_factory, tmp_path):
    progress = []
    stages = []
    crm = crm_factory(
        chunk_size=64, chunk_threshold=100, concurrency=1,
        on_progress=lambda done, total: progress.append((done, total)),
        on_stage=stages.append
    )
    crm.login("admin", "admin123")

    path = _csv(tmp_path, rows=20)
    result = crm.importer.import_file(path)
    assert result.addedCount == 20
    total_chunks = progress[-1][1]
    assert total_chunks > 1
    assert progress[-1] == (total_chunks, total_chunks)
    assert ImportStage.MERGING in stages
    assert stages[-1] == ImportStage.COMPLETED


def test_import_files_summary(crm_factory, tmp_path):
    crm = crm_factory()
    crm.login("admin", "admin123")
    first = _csv(tmp_path, "a.csv", rows=2, start=0)
    second = _csv(tmp_path, "b.csv", rows=2, start=2)
    bad = str(tmp_path / "c.xls")

    summary = crm.importer.import_files([first, second, bad])
    assert summary.added == 4
    assert summary.existing == 0
    assert list(summary.failed_files) == [bad]
    assert len(summary.tasks) == 2


# ==================== scripted session ====================

def _chunk_routes(session, fail_indexes=(), fail_times=99, task_id=7):
    attempts = {}
    lock = threading.Lock()

    def chunk(call):
        index = int(call.data["chunkIndex"])
        with lock:
            attempts[index] = attempts.get(index, 0) + 1
            count = attempts[index]
        if index in fail_indexes and count <= fail_times:
            return FakeResponse(500, {"detail": "磁盘已满"})
        return ok({"received": 1})

    session.route("POST", "/api/customers/import/chunk/cleanup", lambda call: ok({"removed": True}))
    session.route("POST", "/api/customers/import/chunk", chunk)
    session.route("POST", "/api/customers/import/merge", lambda call: ok({"taskId": task_id}))
    session.route("GET", f"/api/upload-tasks/{task_id}", lambda call: ok(task(task_id, "完成", added=1)))
    return attempts


def test_failed_chunk_triggers_cleanup(fake_crm, tmp_path):
    crm, session = fake_crm(chunk_size=10, chunk_threshold=10, concurrency=3)
    attempts = _chunk_routes(session, fail_indexes={2})
    path = tmp_path / "big.csv"
    path.write_bytes(b"x" * 55)

    with pytest.raises(ImportFailedError) as excinfo:
        crm.importer.import_file(str(path))
    assert "部分块上传失败" in str(excinfo.value)
    assert attempts[2] == 3
    assert all(attempts[i] == 1 for i in range(6) if i != 2)

    cleanup = session.calls_to("POST", "/api/customers/import/chunk/cleanup")
    assert len(cleanup) == 1
    assert cleanup[0].json["uploadId"] == crm.importer.upload_id
    assert session.calls_to("POST", "/api/customers/import/merge") == []
    assert crm.importer.stage == ImportStage.FAILED


def test_chunk_retry_recovers(fake_crm, tmp_path):
    crm, session = fake_crm(chunk_size=10, chunk_threshold=10, concurrency=2)
    attempts = _chunk_routes(session, fail_indexes={0, 1}, fail_times=2)
    path = tmp_path / "big.csv"
    path.write_bytes(b"y" * 25)

    result = crm.importer.import_file(str(path))
    assert result.status == "完成"
    assert attempts == {0: 3, 1: 3, 2: 1}
    merge = session.calls_to("POST", "/api/customers/import/merge")[0]
    assert merge.json == {"uploadId": crm.importer.upload_id, "fileName": "big.csv"}


def test_chunks_sent_in_bounded_batches(fake_crm, tmp_path):
    crm, session = fake_crm(chunk_size=4, chunk_threshold=4, concurrency=3)
    in_flight = {"now": 0, "max": 0}
    lock = threading.Lock()
    seen = []

    def chunk(call):
        with lock:
            in_flight["now"] += 1
            in_flight["max"] = max(in_flight["max"], in_flight["now"])
            seen.append((int(call.data["chunkIndex"]), len(call.files["chunk"][1])))
        time.sleep(0.02)
        with lock:
            in_flight["now"] -= 1
        return ok({"received": 1})

    session.route("POST", "/api/customers/import/chunk", chunk)
    session.route("POST", "/api/customers/import/merge", lambda call: ok({"taskId": 3}))
    session.route("GET", "/api/upload-tasks/3", lambda call: ok(task(3, "完成", added=1)))

    path = tmp_path / "big.csv"
    path.write_bytes(b"z" * 30)
    crm.importer.import_file(str(path))

    assert in_flight["max"] <= 3
    assert sorted(seen) == [(i, 4) for i in range(7)] + [(7, 2)]
    first = session.calls_to("POST", "/api/customers/import/chunk")[0]
    assert first.data["totalChunks"] == "8"
    assert first.data["totalSize"] == "30"


def test_cancel_during_chunk_upload(fake_crm, tmp_path):
    crm, session = fake_crm(chunk_size=10, chunk_threshold=10, concurrency=1)
    _chunk_routes(session)
    crm.importer.on_progress = lambda done, total: crm.importer.cancel()
    path = tmp_path / "big.csv"
    path.write_bytes(b"x" * 50)

    with pytest.raises(ImportCancelledError):
        crm.importer.import_file(str(path))
    assert len(session.calls_to("POST", "/api/customers/import/chunk")) == 1
    assert len(session.calls_to("POST", "/api/customers/import/chunk/cleanup")) == 1
    assert crm.importer.stage == ImportStage.CANCELLED


def test_direct_timeout_falls_back_to_latest_task(fake_crm, tmp_path):
    import requests

    crm, session = fake_crm()
    polls = {"count": 0}

    def upload(call):
        raise requests.Timeout("gateway too slow")

    def poll(call):
        polls["count"] += 1
        return ok(task(11, "处理中" if polls["count"] < 3 else "部分跳过", added=2, existing=1))

    session.route("POST", "/api/customers/import", upload)
    session.route("GET", "/api/upload-tasks/processing/latest", lambda call: ok(task(11)))
    session.route("GET", "/api/upload-tasks/11", poll)

    result = crm.importer.import_file(_csv(tmp_path))
    assert result.id == 11
    assert result.status == "部分跳过"
    assert polls["count"] == 3
    assert crm.state.get_task_id() is None


def test_gateway_timeout_without_task_fails(fake_crm, tmp_path):
    crm, session = fake_crm()
    session.route("POST", "/api/customers/import", lambda call: FakeResponse(524, None))
    session.route("GET", "/api/upload-tasks/processing/latest", lambda call: ok(None))

    with pytest.raises(ImportFailedError):
        crm.importer.import_file(_csv(tmp_path))
    assert crm.importer.stage == ImportStage.FAILED


def test_missing_task_stops_polling(fake_crm, tmp_path):
    crm, session = fake_crm()
    session.route("POST", "/api/customers/import", lambda call: ok({"taskId": 5}))
    session.route("GET", "/api/upload-tasks/5", lambda call: error(404, "任务不存在: 5"))

    with pytest.raises(ImportFailedError):
        crm.importer.import_file(_csv(tmp_path))
    assert crm.state.get_task_id() is None
    assert len(session.calls_to("GET", "/api/upload-tasks/5")) == 1


def test_transient_poll_errors_are_retried(fake_crm, tmp_path):
    import requests

    crm, session = fake_crm()
    polls = {"count": 0}

    def poll(call):
        polls["count"] += 1
        if polls["count"] == 1:
            raise requests.ConnectionError("reset")
        return ok(task(6, "完成", added=3))

    session.route("POST", "/api/customers/import", lambda call: ok({"taskId": 6}))
    session.route("GET", "/api/upload-tasks/6", poll)

    assert crm.importer.import_file(_csv(tmp_path)).addedCount == 3
    assert polls["count"] == 2


def test_failed_status_is_terminal(fake_crm, tmp_path):
    crm, session = fake_crm()
    session.route("POST", "/api/customers/import", lambda call: ok({"taskId": 8}))
    session.route("GET", "/api/upload-tasks/8", lambda call: ok(task(8, "失败")))

    result = crm.importer.import_file(_csv(tmp_path))
    assert result.status == "失败"
    assert crm.importer.stage == ImportStage.FAILED


def test_cancel_while_polling(fake_crm):
    crm, session = fake_crm()
    session.route("GET", "/api/upload-tasks/9", lambda call: ok(task(9)))
    crm.state.save_task(9)

    with pytest.raises(ImportCancelledError):
        crm.importer.wait_for_task(9, on_update=lambda t: crm.importer.cancel())
    assert crm.state.get_task_id() is None
    assert crm.importer.stage == ImportStage.CANCELLED


def test_wait_timeout_keeps_task_id(fake_crm):
    crm, session = fake_crm()
    session.route("GET", "/api/upload-tasks/10", lambda call: ok(task(10)))
    crm.state.save_task(10)

    with pytest.raises(ImportTimeoutError):
        crm.importer.wait_for_task(10, max_wait=0)
    assert crm.state.get_task_id() == 10


def test_resume_saved_task(fake_crm):
    crm, session = fake_crm()
    polls = {"count": 0}

    def poll(call):
        polls["count"] += 1
        return ok(task(12, "处理中" if polls["count"] < 2 else "完成", added=4))

    session.route("GET", "/api/upload-tasks/12", poll)
    crm.state.save_task(12, "old.csv", 100)

    result = crm.importer.resume()
    assert result.addedCount == 4
    assert crm.state.get_task_id() is None
    assert session.calls_to("GET", "/api/upload-tasks/processing/latest") == []


def test_resume_finds_latest_processing(fake_crm):
    crm, session = fake_crm()
    session.route("GET", "/api/upload-tasks/processing/latest", lambda call: ok(task(13)))
    session.route("GET", "/api/upload-tasks/13", lambda call: ok(task(13, "完成", added=1)))

    assert crm.importer.resume().id == 13


def test_resume_nothing_to_do(fake_crm):
    crm, session = fake_crm()
    session.route("GET", "/api/upload-tasks/14", lambda call: error(404, "任务不存在"))
    session.route("GET", "/api/upload-tasks/processing/latest", lambda call: ok(None))
    crm.state.save_task(14)

    assert crm.importer.resume() is None
    assert crm.state.get_task_id() is None


def test_wait_for_all_tasks(fake_crm):
    crm, session = fake_crm()
    polls = {"count": 0}

    def slow(call):
        polls["count"] += 1
        return ok(task(21, "处理中" if polls["count"] < 3 else "完成", added=5))

    session.route("GET", "/api/upload-tasks/20", lambda call: ok(task(20, "部分失败", added=1, errors=1)))
    session.route("GET", "/api/upload-tasks/21", slow)
    session.route("GET", "/api/upload-tasks/22", lambda call: error(404, "任务不存在"))

    tasks = crm.importer.wait_for_all_tasks([20, 21, 22])
    assert [t.id for t in tasks] == [20, 21]
    assert sum(t.addedCount for t in tasks) == 6
    assert len(session.calls_to("GET", "/api/upload-tasks/20")) == 1
    assert polls["count"] == 3


# ==================== slow uploads and busy server ====================

@pytest.fixture
def clock(monkeypatch):
    """Controls the wall clock the local state uses for upload info age."""
    from types import SimpleNamespace
    from crm_client import state as state_module

    now = {"value": 1_700_000_000.0}
    monkeypatch.setattr(state_module, "time", SimpleNamespace(time=lambda: now["value"]))
    return now


def test_slow_direct_upload_timeout_still_recovers(fake_crm, tmp_path, clock):
    import requests
    from crm_client import config

    crm, session = fake_crm()

    def upload(call):
        clock["value"] += config.UPLOAD_TIMEOUT
        raise requests.Timeout("read timed out")

    session.route("POST", "/api/customers/import", upload)
    session.route("GET", "/api/upload-tasks/processing/latest", lambda call: ok(task(11)))
    session.route("GET", "/api/upload-tasks/11", lambda call: ok(task(11, "完成", added=3)))

    result = crm.importer.import_file(_csv(tmp_path))
    assert result.id == 11
    assert result.addedCount == 3
    assert len(session.calls_to("GET", "/api/upload-tasks/processing/latest")) == 1


def test_upload_info_older_than_recover_window_is_ignored(fake_crm, tmp_path, clock):
    import requests
    from crm_client import config

    crm, session = fake_crm()

    def upload(call):
        clock["value"] += config.RECOVER_WINDOW + 1
        raise requests.Timeout("read timed out")

    session.route("POST", "/api/customers/import", upload)
    session.route("GET", "/api/upload-tasks/processing/latest", lambda call: ok(task(11)))

    with pytest.raises(ImportFailedError):
        crm.importer.import_file(_csv(tmp_path))
    assert session.calls_to("GET", "/api/upload-tasks/processing/latest") == []


def test_merge_timeout_after_long_chunk_upload_recovers(fake_crm, tmp_path, clock):
    import requests
    from crm_client import config

    crm, session = fake_crm(chunk_size=10, chunk_threshold=10, concurrency=1)

    def chunk(call):
        clock["value"] += 200
        return ok({"received": 1})

    def merge(call):
        clock["value"] += config.UPLOAD_TIMEOUT
        raise requests.Timeout("read timed out")

    session.route("POST", "/api/customers/import/chunk", chunk)
    session.route("POST", "/api/customers/import/merge", merge)
    session.route("GET", "/api/upload-tasks/processing/latest", lambda call: ok(task(15)))
    session.route("GET", "/api/upload-tasks/15", lambda call: ok(task(15, "完成", added=2)))

    path = tmp_path / "big.csv"
    path.write_bytes(b"x" * 30)
    result = crm.importer.import_file(str(path))
    assert result.id == 15
    assert session.calls_to("POST", "/api/customers/import/chunk/cleanup") == []


def test_poll_survives_database_busy(fake_crm, tmp_path):
    crm, session = fake_crm()
    polls = {"count": 0}

    def poll(call):
        polls["count"] += 1
        if polls["count"] == 1:
            return FakeResponse(503, {"success": False, "message": "数据库暂时繁忙，请稍后重试"})
        if polls["count"] == 2:
            return FakeResponse(500, {"detail": "查询失败"})
        return ok(task(16, "完成", added=1))

    session.route("POST", "/api/customers/import", lambda call: ok({"taskId": 16}))
    session.route("GET", "/api/upload-tasks/16", poll)

    result = crm.importer.import_file(_csv(tmp_path))
    assert result.status == "完成"
    assert polls["count"] == 3
    assert crm.importer.stage == ImportStage.COMPLETED


def test_poll_stops_on_expired_login(fake_crm):
    from crm_client import AuthenticationError

    crm, session = fake_crm()
    session.route("GET", "/api/upload-tasks/17", lambda call: error(401, "无效的认证令牌"))
    crm.state.save_task(17)

    with pytest.raises(AuthenticationError):
        crm.importer.wait_for_task(17)
    assert crm.importer.stage == ImportStage.FAILED
    assert crm.state.get_task_id() == 17


def test_wait_for_all_tasks_deadline_returns_snapshots(fake_crm):
    crm, session = fake_crm()
    session.route("GET", "/api/upload-tasks/30", lambda call: ok(task(30, "完成", added=2)))
    session.route("GET", "/api/upload-tasks/31", lambda call: ok(task(31, "处理中", added=1)))
    crm.state.save_task(31)

    tasks = crm.importer.wait_for_all_tasks([30, 31], max_wait=0)
    assert [(t.id, t.status) for t in tasks] == [(30, "完成"), (31, "处理中")]
    assert crm.importer.stage == ImportStage.POLLING
    assert crm.state.get_task_id() == 31
    assert len(session.calls_to("GET", "/api/upload-tasks/31")) == 1
