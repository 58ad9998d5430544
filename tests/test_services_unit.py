# tests/test_services_unit.py
from __future__ import annotations
import os
import time
from datetime import datetime

import pytest
from openpyxl import Workbook

from crm_server.database import normalize_time_param, DatabaseBusyError
from crm_server.models import UploadTaskStatus
from crm_server.services import import_service
from crm_server.services.chunk_upload_service import ChunkUploadService, ChunkIncompleteError
from crm_server.services.import_service import (
    ImportValidationError,
    validate_import_file_name,
    iter_customer_rows,
    _cell_to_str
)
from crm_server.services.upload_task_service import UploadTaskService, resolve_final_status

pytestmark = pytest.mark.unit


@pytest.mark.parametrize("added, existing, errors, expected", [
    (5, 0, 1, UploadTaskStatus.PARTIAL_FAILED),
    (5, 2, 0, UploadTaskStatus.PARTIAL_SKIPPED),
    (5, 0, 0, UploadTaskStatus.COMPLETED),
    (0, 3, 0, UploadTaskStatus.FAILED),
    (0, 0, 0, UploadTaskStatus.FAILED),
])
def test_resolve_final_status(added, existing, errors, expected):
    assert resolve_final_status(added, existing, errors) == expected


def test_validate_import_file_name():
    assert validate_import_file_name("C:\\data\\客户.XLSX") == "客户.XLSX"
    assert validate_import_file_name("dir/list.csv") == "list.csv"
    with pytest.raises(ImportValidationError):
        validate_import_file_name("old.xls")
    with pytest.raises(ImportValidationError):
        validate_import_file_name("  ")


def test_cell_to_str():
    assert _cell_to_str(13800138001.0) == "13800138001"
    assert _cell_to_str("  a  ") == "a"
    assert _cell_to_str("   ") is None
    assert _cell_to_str(datetime(2025, 1, 2, 3, 4, 5)) == "2025-01-02 03:04:05"


def test_iter_xlsx_reads_first_sheet_only(tmp_path):
    workbook = Workbook()
    sheet = workbook.active
    sheet.append(["姓名", "电话", "邮箱", "地址", "多余列"])
    sheet.append(["甲", 13500000001, None, "西安", "ignored"])
    sheet.append([None, "13500000002"])
    sheet.append(["乙"])
    other = workbook.create_sheet("第二页")
    other.append(["姓名"])
    other.append(["不读"])
    path = tmp_path / "rows.xlsx"
    workbook.save(path)

    rows = list(iter_customer_rows(str(path), "rows.xlsx"))
    assert rows == [("甲", "13500000001", None, "西安"), ("乙", None, None, None)]


def test_iter_csv_handles_quotes(tmp_path):
    path = tmp_path / "rows.csv"
    path.write_text('姓名,电话,邮箱,地址\n"王, 小二",135,"a@b.c","路""1""号"\n', encoding="utf-8-sig")
    rows = list(iter_customer_rows(str(path), "rows.csv"))
    assert rows == [("王, 小二", "135", "a@b.c", '路"1"号')]


def test_normalize_time_param():
    assert normalize_time_param("2025-01-01") == "2025-01-01 00:00:00"
    assert normalize_time_param("2025-01-01", end_of_day=True) == "2025-01-01 23:59:59"
    assert normalize_time_param("2025-01-01T08:30") == "2025-01-01 08:30:00"
    assert normalize_time_param("") is None


def test_chunk_service_merge_in_order(server_env):
    upload_id = "1700000000000_unit"
    ChunkUploadService.save_chunk(upload_id, 1, 2, "x.csv", 6, b"def")
    with pytest.raises(ChunkIncompleteError) as excinfo:
        ChunkUploadService.merge(upload_id, "x.csv")
    assert excinfo.value.missing == [0]

    ChunkUploadService.save_chunk(upload_id, 0, 2, "x.csv", 6, b"abc")
    assert ChunkUploadService.is_complete(upload_id)
    path = ChunkUploadService.merge(upload_id, "x.csv")
    with open(path, "rb") as f:
        assert f.read() == b"abcdef"
    assert ChunkUploadService.received_chunks(upload_id) == []


def test_chunk_service_rejects_inconsistent_chunks(server_env):
    upload_id = "1700000000000_bad"
    ChunkUploadService.save_chunk(upload_id, 0, 2, "x.csv", 0, b"a")
    with pytest.raises(ImportValidationError):
        ChunkUploadService.save_chunk(upload_id, 1, 3, "x.csv", 0, b"b")
    with pytest.raises(ImportValidationError):
        ChunkUploadService.save_chunk(upload_id, 5, 2, "x.csv", 0, b"b")
    with pytest.raises(ImportValidationError):
        ChunkUploadService.save_chunk(upload_id, 1, 2, "x.csv", 0, b"")


def test_chunk_service_size_mismatch(server_env):
    upload_id = "1700000000000_size"
    ChunkUploadService.save_chunk(upload_id, 0, 1, "x.csv", 10, b"abc")
    with pytest.raises(ImportValidationError):
        ChunkUploadService.merge(upload_id, "x.csv")


def test_sweep_expired(server_env):
    ChunkUploadService.save_chunk("1_old", 0, 2, "x.csv", 0, b"a")
    ChunkUploadService.save_chunk("2_new", 0, 2, "x.csv", 0, b"a")
    old_dir = server_env / "chunks" / "1_old"
    past = time.time() - 2 * 86400
    os.utime(old_dir, (past, past))

    assert ChunkUploadService.sweep_expired() == 1
    assert not old_dir.exists()
    assert (server_env / "chunks" / "2_new").exists()


def _flaky_finish(monkeypatch, failures):
    original = UploadTaskService.finish_task
    calls = []

    def finish(*args, **kwargs):
        calls.append(kwargs.get("status"))
        if len(calls) <= failures:
            raise DatabaseBusyError("数据库暂时繁忙")
        return original(*args, **kwargs)

    monkeypatch.setattr(import_service, "FINISH_RETRY_DELAY", 0)
    monkeypatch.setattr(UploadTaskService, "finish_task", staticmethod(finish))
    return calls


def _import_csv(tmp_path):
    path = tmp_path / "busy.csv"
    path.write_text("姓名,电话\n甲,13500000001\n乙,13500000002\n", encoding="utf-8")
    task_id = UploadTaskService.create_task("busy.csv")
    return task_id, import_service.process_import(task_id, str(path), "busy.csv", "admin")


def test_finish_retried_once_when_busy(client, monkeypatch, tmp_path):
    calls = _flaky_finish(monkeypatch, failures=1)
    task_id, status = _import_csv(tmp_path)

    assert status == UploadTaskStatus.COMPLETED
    assert len(calls) == 2
    row = UploadTaskService.get_task(task_id)
    assert row["status"] == "完成"
    assert row["added_count"] == 2


def test_finish_marks_failed_when_still_busy(client, monkeypatch, tmp_path):
    calls = _flaky_finish(monkeypatch, failures=2)
    task_id, status = _import_csv(tmp_path)

    assert status == UploadTaskStatus.FAILED
    assert calls == [None, None, UploadTaskStatus.FAILED]
    row = UploadTaskService.get_task(task_id)
    assert row["status"] == "失败"
    assert row["remarks"] == "写入导入结果失败"
    assert row["complete_time"] is not None
