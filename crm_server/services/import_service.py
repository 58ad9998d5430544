"""
客户批量导入服务
负责保存上传文件、解析 xlsx/csv 以及在后台线程中分批入库
"""

import codecs
import csv
import io
import logging
import os
import time
import uuid
from datetime import datetime, date
from typing import BinaryIO, Iterator, Optional, Tuple

from openpyxl import Workbook, load_workbook

from crm_server import config
from crm_server.constants import ALLOWED_IMPORT_EXTENSIONS, IMPORT_BATCH_SIZE, MAX_UPLOAD_SIZE
from crm_server.models import OperationModule, OperationType, OperationResult, UploadTaskStatus
from crm_server.services.customer_service import CustomerService
from crm_server.services.operation_log_service import OperationLogService
from crm_server.services.task_executor import TaskExecutor
from crm_server.services.upload_task_service import UploadTaskService

logger = logging.getLogger(__name__)

CustomerRow = Tuple[str, Optional[str], Optional[str], Optional[str]]

# 写入最终状态失败后的重试等待（秒）
FINISH_RETRY_DELAY = 1.0


class ImportValidationError(ValueError):
    """导入文件校验失败"""
    pass


def validate_import_file_name(file_name: Optional[str]) -> str:
    """
    校验导入文件名，返回去掉路径部分的文件名

    Raises:
        ImportValidationError: 文件名为空或格式不支持
    """
    if not file_name or not file_name.strip():
        raise ImportValidationError("文件名不能为空")
    base_name = os.path.basename(file_name.replace("\\", "/")).strip()
    if not base_name.lower().endswith(ALLOWED_IMPORT_EXTENSIONS):
        raise ImportValidationError("只支持 .xlsx 和 .csv 格式的文件")
    return base_name


def get_upload_dir() -> str:
    upload_dir = os.path.abspath(config.UPLOAD_DIR)
    os.makedirs(upload_dir, exist_ok=True)
    return upload_dir


def new_upload_path(file_name: str) -> str:
    """为上传文件生成不冲突的保存路径"""
    return os.path.join(get_upload_dir(), f"{uuid.uuid4().hex}_{file_name}")


def save_upload(source: BinaryIO, file_name: str) -> str:
    """
    将上传文件流保存到上传目录

    Raises:
        ImportValidationError: 文件为空或超过大小限制
    """
    target_path = new_upload_path(file_name)
    written = 0
    try:
        with open(target_path, "wb") as target:
            while True:
                block = source.read(1024 * 1024)
                if not block:
                    break
                written += len(block)
                if written > MAX_UPLOAD_SIZE:
                    raise ImportValidationError("文件大小不能超过1GB")
                target.write(block)
        if written == 0:
            raise ImportValidationError("上传的文件为空")
    except Exception:
        _remove_quietly(target_path)
        raise
    logger.info(f"上传文件已保存: {file_name} ({written} 字节)")
    return target_path


def _remove_quietly(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"删除临时文件失败: {path}, {e}")


# ==================== 文件解析 ====================

def _cell_to_str(value) -> Optional[str]:
    """单元格值转字符串，Excel 中的整数电话号码不带小数点"""
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    elif isinstance(value, datetime):
        value = value.strftime('%Y-%m-%d %H:%M:%S')
    elif isinstance(value, date):
        value = value.strftime('%Y-%m-%d')
    text = str(value).strip()
    return text or None


def _to_customer_row(values) -> Optional[CustomerRow]:
    """取前四列（姓名、电话、邮箱、地址），姓名为空返回 None"""
    cells = [_cell_to_str(v) for v in list(values)[:4]]
    cells += [None] * (4 - len(cells))
    if not cells[0]:
        return None
    return cells[0], cells[1], cells[2], cells[3]


def _iter_xlsx(file_path: str) -> Iterator[CustomerRow]:
    workbook = load_workbook(file_path, read_only=True, data_only=True)
    try:
        sheet = workbook.worksheets[0]
        for index, values in enumerate(sheet.iter_rows(values_only=True)):
            if index == 0:
                continue
            row = _to_customer_row(values)
            if row:
                yield row
    finally:
        workbook.close()


def _detect_csv_encoding(file_path: str) -> str:
    """UTF-8（可带 BOM）解码失败时按 GBK 读取"""
    decoder = codecs.getincrementaldecoder("utf-8")()
    with open(file_path, "rb") as f:
        try:
            while True:
                block = f.read(1024 * 1024)
                if not block:
                    decoder.decode(b"", final=True)
                    return "utf-8-sig"
                decoder.decode(block)
        except UnicodeDecodeError:
            return "gbk"


def _iter_csv(file_path: str) -> Iterator[CustomerRow]:
    encoding = _detect_csv_encoding(file_path)
    with open(file_path, "r", encoding=encoding, newline="") as f:
        reader = csv.reader(f)
        for index, values in enumerate(reader):
            if index == 0:
                continue
            row = _to_customer_row(values)
            if row:
                yield row


def iter_customer_rows(file_path: str, file_name: str) -> Iterator[CustomerRow]:
    """
    逐行读取导入文件

    只读取第一个工作表，跳过表头和姓名为空的行

    Args:
        file_path: 文件路径
        file_name: 原始文件名（用于判断格式）
    """
    if file_name.lower().endswith(".csv"):
        return _iter_csv(file_path)
    return _iter_xlsx(file_path)


# ==================== 导入任务 ====================

def start_import(file_path: str, file_name: str, username: Optional[str],
                 ip_address: Optional[str]) -> int:
    """
    创建上传任务并提交到后台线程池

    Returns:
        任务 ID
    """
    task_id = UploadTaskService.create_task(file_name)
    TaskExecutor.submit(process_import, task_id, file_path, file_name, username, ip_address)
    logger.info(f"导入任务已提交: {file_name} (任务ID: {task_id})")
    return task_id


def finish_task_safely(task_id: int, total: int, added: int, existing: int, errors: int,
                       status: Optional[UploadTaskStatus] = None,
                       remarks: Optional[str] = None) -> UploadTaskStatus:
    """
    写入任务最终状态

    失败时等待后重试一次；仍失败则尝试只标记为失败，避免任务一直处于处理中

    Returns:
        最终状态
    """
    try:
        return UploadTaskService.finish_task(task_id, total, added, existing, errors, status, remarks)
    except Exception as e:
        logger.warning(f"写入任务结果失败，{FINISH_RETRY_DELAY} 秒后重试 (任务ID: {task_id}): {e}")
    time.sleep(FINISH_RETRY_DELAY)

    try:
        return UploadTaskService.finish_task(task_id, total, added, existing, errors, status, remarks)
    except Exception as e:
        logger.error(f"写入任务结果再次失败 (任务ID: {task_id}): {e}", exc_info=True)

    try:
        return UploadTaskService.finish_task(
            task_id, total, added, existing, errors,
            status=UploadTaskStatus.FAILED, remarks="写入导入结果失败"
        )
    except Exception as e:
        logger.error(f"无法将任务标记为失败 (任务ID: {task_id}): {e}", exc_info=True)
        return UploadTaskStatus.FAILED


def process_import(task_id: int, file_path: str, file_name: str,
                   username: Optional[str] = None, ip_address: Optional[str] = None) -> UploadTaskStatus:
    """
    后台执行导入：按批次入库并更新任务进度，结束后写入最终状态和操作日志

    导入文件处理完成后删除
    """
    total = added = existing = errors = 0
    batch = []
    logger.info(f"开始处理导入文件: {file_name} (任务ID: {task_id})")

    def flush():
        nonlocal added, existing, errors
        try:
            result = CustomerService.batch_import(batch, task_id)
            added += result["added"]
            existing += result["existing"]
            errors += len(result["errors"])
        except Exception as e:
            logger.error(f"批量入库失败 (任务ID: {task_id}): {e}", exc_info=True)
            errors += len(batch)
        batch.clear()
        UploadTaskService.update_progress(task_id, total, added, existing, errors)

    try:
        for row in iter_customer_rows(file_path, file_name):
            batch.append(row)
            total += 1
            if len(batch) >= IMPORT_BATCH_SIZE:
                flush()
        if batch:
            flush()
    except Exception as e:
        logger.error(f"解析导入文件失败: {file_name}, {e}", exc_info=True)
        status = finish_task_safely(
            task_id, total, added, existing, errors + len(batch),
            status=UploadTaskStatus.FAILED if added == 0 else UploadTaskStatus.PARTIAL_FAILED,
            remarks=f"文件解析失败: {e}"
        )
        OperationLogService.log_operation(
            username=username,
            operation=OperationType.IMPORT.value,
            module=OperationModule.CUSTOMER.value,
            description=f"导入文件 {file_name}",
            ip_address=ip_address,
            target_id=task_id,
            result=OperationResult.FAILURE.value,
            error_message=str(e)
        )
        return status
    finally:
        _remove_quietly(file_path)

    status = finish_task_safely(task_id, total, added, existing, errors)
    OperationLogService.log_operation(
        username=username,
        operation=OperationType.IMPORT.value,
        module=OperationModule.CUSTOMER.value,
        description=(
            f"导入文件 {file_name}: 共 {total} 条，新增 {added} 条，"
            f"已存在 {existing} 条，失败 {errors} 条"
        ),
        ip_address=ip_address,
        target_id=task_id,
        result=OperationResult.FAILURE.value if status == UploadTaskStatus.FAILED else OperationResult.SUCCESS.value
    )
    return status


def build_template() -> bytes:
    """
    生成导入模板（xlsx）

    表头为 姓名/电话/邮箱/地址，附一行示例数据
    """
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "客户数据"
    sheet.append(["姓名", "电话", "邮箱", "地址"])
    sheet.append(["张三", "13800138001", "zhangsan@example.com", "北京市朝阳区建国路88号"])
    for column, width in zip("ABCD", (12, 16, 26, 36)):
        sheet.column_dimensions[column].width = width
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()
