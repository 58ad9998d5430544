"""
客户导入
小文件直传，大文件分块并发上传后由服务端合并；服务端在后台解析入库，客户端轮询任务状态直到结束

状态流转：
    idle → validating → uploading → merging → polling → completed | failed | cancelled

任务 ID 与上传信息写入本地状态文件，进程重启后可通过 resume() 继续跟踪
"""

import logging
import math
import os
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from crm_client import config
from crm_client.api import ApiClient
from crm_client.errors import (
    ApiError,
    AuthenticationError,
    PermissionDeniedError,
    ValidationError,
    NotFoundError,
    GatewayTimeoutError,
    NetworkError,
    RequestTimeoutError,
    ImportFailedError,
    ImportCancelledError,
    ImportTimeoutError
)
from crm_client.models import UploadTask, TASK_FAILED
from crm_client.session import SessionManager, admin_only
from crm_client.state import StateStore

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".csv": "text/csv",
}


class ImportStage(str, Enum):
    """导入流程阶段"""
    IDLE = "idle"
    VALIDATING = "validating"
    UPLOADING = "uploading"
    MERGING = "merging"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def concurrency_for_size(size: int) -> int:
    """按文件大小决定分块并发数"""
    if size > 500 * 1024 * 1024:
        return 20
    if size > 100 * 1024 * 1024:
        return 15
    return 10


def new_upload_id() -> str:
    """生成上传 ID：<毫秒时间戳>_<随机串>"""
    return f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def is_transient(error: ApiError) -> bool:
    """网络错误、网关超时和 5xx（如数据库繁忙 503）视为暂时性错误"""
    if isinstance(error, (NetworkError, GatewayTimeoutError)):
        return True
    return (error.status_code or 0) >= 500


def validate_file(path: str, max_size: int = config.MAX_CLIENT_FILE_SIZE) -> Tuple[str, int]:
    """
    校验待导入文件

    Returns:
        (文件名, 文件大小)

    Raises:
        ValidationError: 格式不支持、文件不存在、为空或过大
    """
    file_name = os.path.basename(path)
    ext = os.path.splitext(file_name)[1].lower()
    if ext not in config.ALLOWED_EXTENSIONS:
        raise ValidationError("只支持 .xlsx 和 .csv 格式的文件")
    if not os.path.isfile(path):
        raise ValidationError(f"文件不存在: {path}")

    size = os.path.getsize(path)
    if size == 0:
        raise ValidationError("文件为空")
    if size > max_size:
        raise ValidationError(f"文件大小不能超过{max_size // (1024 * 1024)}MB")
    return file_name, size


class ImportSummary:
    """多文件导入的汇总结果"""

    def __init__(self, tasks: List[UploadTask], failed_files: Dict[str, str]):
        self.tasks = tasks
        self.failed_files = failed_files

    @property
    def added(self) -> int:
        return sum(t.addedCount for t in self.tasks)

    @property
    def existing(self) -> int:
        return sum(t.existingCount for t in self.tasks)

    @property
    def errors(self) -> int:
        return sum(t.errorCount for t in self.tasks)

    def __repr__(self):
        return (f"ImportSummary(tasks={len(self.tasks)}, added={self.added}, "
                f"existing={self.existing}, errors={self.errors}, failed_files={len(self.failed_files)})")


class CustomerImporter:
    """
    导入流程

    Args:
        api: 接口客户端
        session: 会话（导入需要管理员）
        state: 本地状态，默认与 api 共用
        chunk_size: 分块大小
        chunk_threshold: 超过该大小使用分块上传
        concurrency: 分块并发数，为空时按文件大小决定
        poll_interval: 轮询间隔（秒）
        retry_delay: 分块重试前等待的基础时间（秒）
        on_progress: 分块进度回调 (已上传块数, 总块数)
        on_stage: 阶段变化回调
    """

    def __init__(
        self,
        api: ApiClient,
        session: SessionManager,
        state: Optional[StateStore] = None,
        chunk_size: int = config.CHUNK_SIZE,
        chunk_threshold: int = config.CHUNK_THRESHOLD,
        concurrency: Optional[int] = None,
        poll_interval: float = config.POLL_INTERVAL,
        max_wait: float = config.MAX_WAIT_SECONDS,
        retries: int = config.CHUNK_RETRIES,
        retry_delay: float = 1.0,
        on_progress: Optional[Callable[[int, int], None]] = None,
        on_stage: Optional[Callable[[ImportStage], None]] = None
    ):
        self.api = api
        self.session = session
        self.state = state if state is not None else api.state
        self.chunk_size = chunk_size
        self.chunk_threshold = chunk_threshold
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.max_wait = max_wait
        self.retries = max(1, retries)
        self.retry_delay = retry_delay
        self.on_progress = on_progress
        self.on_stage = on_stage

        self.cancel_event = threading.Event()
        self.stage = ImportStage.IDLE
        self.upload_id: Optional[str] = None
        self.task_id: Optional[int] = None

    def _set_stage(self, stage: ImportStage):
        if stage != self.stage:
            logger.debug(f"导入阶段: {self.stage.value} -> {stage.value}")
        self.stage = stage
        if self.on_stage:
            self.on_stage(stage)

    def cancel(self):
        """取消导入：停止提交分块和轮询，已上传的分块由上传线程清理"""
        logger.info("导入已取消")
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def _raise_cancelled(self):
        self.state.clear_task()
        self._set_stage(ImportStage.CANCELLED)
        raise ImportCancelledError("导入已取消")

    # ==================== 入口 ====================

    @admin_only
    def import_file(self, path: str) -> UploadTask:
        """
        导入单个文件并等待处理结束

        Returns:
            结束状态的任务（状态为 失败 时阶段为 failed）

        Raises:
            ValidationError: 文件校验失败
            ImportFailedError: 上传、合并失败或任务丢失
            ImportCancelledError: 被取消
            ImportTimeoutError: 等待超时
            ApiError: 登录失效等不可重试的接口错误
        """
        self.cancel_event.clear()
        task_id = self.upload(path)
        return self.wait_for_task(task_id)

    @admin_only
    def import_files(self, paths: List[str]) -> ImportSummary:
        """
        依次上传多个文件，全部上传后统一等待处理结束

        单个文件上传失败不影响其它文件
        """
        self.cancel_event.clear()
        task_ids = []
        failed_files = {}
        for index, path in enumerate(paths, start=1):
            if self.cancelled:
                self._raise_cancelled()
            logger.info(f"正在上传文件 ({index}/{len(paths)}): {path}")
            try:
                task_ids.append(self.upload(path))
            except ImportCancelledError:
                raise
            except (ApiError, ImportFailedError) as e:
                logger.warning(f"文件上传失败: {path}, {e}")
                failed_files[path] = str(e)

        tasks = self.wait_for_all_tasks(task_ids) if task_ids else []
        summary = ImportSummary(tasks, failed_files)
        logger.info(f"导入完成: {summary}")
        return summary

    def upload(self, path: str) -> int:
        """
        校验并上传文件，返回服务端任务 ID（不等待处理）
        """
        try:
            self._set_stage(ImportStage.VALIDATING)
            file_name, size = validate_file(path)

            self.state.clear_task()
            self.state.save_upload_info(file_name, size)
            self._set_stage(ImportStage.UPLOADING)

            if size <= self.chunk_threshold:
                task_id = self._upload_direct(path, file_name, size)
            else:
                task_id = self._upload_chunked(path, file_name, size)
        except ImportCancelledError:
            raise
        except (ApiError, ImportFailedError):
            if self.stage != ImportStage.CANCELLED:
                self._set_stage(ImportStage.FAILED)
            raise

        self.task_id = task_id
        self.state.save_task(task_id)
        if self.cancelled:
            self._raise_cancelled()
        logger.info(f"文件已提交，任务ID: {task_id}")
        return task_id

    # ==================== 直传 ====================

    def _upload_direct(self, path: str, file_name: str, size: int) -> int:
        content_type = CONTENT_TYPES.get(os.path.splitext(file_name)[1].lower(), "application/octet-stream")
        try:
            with open(path, "rb") as f:
                data = self.api.post(
                    "/api/customers/import",
                    files={"file": (file_name, f, content_type)},
                    timeout=config.UPLOAD_TIMEOUT
                )
        except (RequestTimeoutError, GatewayTimeoutError) as e:
            # 服务端可能已保存文件并开始处理
            logger.warning(f"直传超时，尝试找回后台任务: {file_name}, {e}")
            task_id = self.recover_task_id()
            if task_id is None:
                raise ImportFailedError(f"上传超时，未找到处理中的任务: {e}")
            return task_id
        return int(data["taskId"])

    def recover_task_id(self) -> Optional[int]:
        """
        上传或合并超时后找回任务：优先使用已保存的任务 ID，其次查询最新的处理中任务
        """
        task_id = self.state.get_task_id()
        if task_id is not None:
            return task_id
        if self.state.get_upload_info(max_age=config.RECOVER_WINDOW) is None:
            return None
        try:
            latest = self.api.get("/api/upload-tasks/processing/latest")
        except ApiError as e:
            if not is_transient(e):
                raise
            logger.warning(f"查询处理中任务失败: {e}")
            return None
        return int(latest["id"]) if latest else None

    # ==================== 分块上传 ====================

    def _upload_chunked(self, path: str, file_name: str, size: int) -> int:
        upload_id = new_upload_id()
        self.upload_id = upload_id
        total_chunks = math.ceil(size / self.chunk_size)
        concurrency = self.concurrency or concurrency_for_size(size)
        logger.info(f"分块上传: {file_name}, {total_chunks} 块, 并发 {concurrency}, uploadId={upload_id}")

        uploaded = 0
        failed: List[int] = []
        with open(path, "rb") as f, ThreadPoolExecutor(max_workers=concurrency) as executor:
            for batch_start in range(0, total_chunks, concurrency):
                if self.cancelled:
                    break
                futures = {}
                for index in range(batch_start, min(batch_start + concurrency, total_chunks)):
                    f.seek(index * self.chunk_size)
                    chunk = f.read(self.chunk_size)
                    future = executor.submit(
                        self._send_chunk, upload_id, index, total_chunks, file_name, size, chunk
                    )
                    futures[future] = index

                for future in as_completed(futures):
                    index = futures[future]
                    try:
                        future.result()
                    except ImportCancelledError:
                        continue
                    except ApiError as e:
                        logger.warning(f"分块上传失败: #{index}, {e}")
                        failed.append(index)
                        continue
                    uploaded += 1
                    if self.on_progress:
                        self.on_progress(uploaded, total_chunks)

        if self.cancelled:
            self.cleanup_chunks(upload_id)
            self._raise_cancelled()
        if failed:
            self.cleanup_chunks(upload_id)
            raise ImportFailedError(f"部分块上传失败: {len(failed)}/{total_chunks} 块")

        # 合并超时的找回窗口从这里开始计算
        self.state.save_upload_info(file_name, size)
        return self.merge(upload_id, file_name)

    def _send_chunk(self, upload_id: str, index: int, total_chunks: int,
                    file_name: str, total_size: int, chunk: bytes):
        """上传单个分块，网络错误和服务端错误时重试"""
        form = {
            "chunkIndex": str(index),
            "totalChunks": str(total_chunks),
            "uploadId": upload_id,
            "fileName": file_name,
            "totalSize": str(total_size)
        }
        for attempt in range(1, self.retries + 1):
            if self.cancelled:
                raise ImportCancelledError("导入已取消")
            try:
                return self.api.post(
                    "/api/customers/import/chunk",
                    data=form,
                    files={"chunk": (f"{file_name}.part{index}", chunk, "application/octet-stream")}
                )
            except (AuthenticationError, PermissionDeniedError, ValidationError, NotFoundError):
                raise
            except ApiError as e:
                if attempt >= self.retries:
                    raise
                logger.info(f"分块 #{index} 第 {attempt} 次上传失败，重试: {e}")
                if self.cancel_event.wait(self.retry_delay * attempt):
                    raise ImportCancelledError("导入已取消")

    def merge(self, upload_id: str, file_name: str) -> int:
        """通知服务端合并分块，返回任务 ID"""
        self._set_stage(ImportStage.MERGING)
        try:
            data = self.api.post(
                "/api/customers/import/merge",
                json={"uploadId": upload_id, "fileName": file_name},
                timeout=config.UPLOAD_TIMEOUT
            )
        except (RequestTimeoutError, GatewayTimeoutError) as e:
            logger.warning(f"合并超时，尝试找回后台任务: {upload_id}, {e}")
            task_id = self.recover_task_id()
            if task_id is None:
                raise ImportFailedError(f"合并超时，未找到处理中的任务: {e}")
            return task_id
        except ApiError as e:
            self.cleanup_chunks(upload_id)
            raise ImportFailedError(f"合并文件失败: {e.message}")
        return int(data["taskId"])

    def cleanup_chunks(self, upload_id: str) -> bool:
        """清理服务端的分块，失败只记录日志"""
        try:
            data = self.api.post("/api/customers/import/chunk/cleanup", json={"uploadId": upload_id})
            return bool((data or {}).get("removed"))
        except ApiError as e:
            logger.warning(f"清理分块失败: {upload_id}, {e}")
            return False

    # ==================== 轮询 ====================

    def wait_for_task(self, task_id: int, max_wait: Optional[float] = None,
                      on_update: Optional[Callable[[UploadTask], None]] = None) -> UploadTask:
        """
        轮询任务直到结束

        Raises:
            ImportFailedError: 任务不存在
            ImportCancelledError: 被取消
            ImportTimeoutError: 超过最长等待时间，任务 ID 保留在本地状态中
            ApiError: 登录失效等不可重试的接口错误（网络错误和 5xx 会继续轮询）
        """
        self._set_stage(ImportStage.POLLING)
        self.task_id = task_id
        deadline = time.monotonic() + (max_wait if max_wait is not None else self.max_wait)

        while True:
            if self.cancelled:
                self._raise_cancelled()

            task = None
            try:
                task = UploadTask(**self.api.get(f"/api/upload-tasks/{task_id}"))
            except NotFoundError:
                self.state.clear_task()
                self._set_stage(ImportStage.FAILED)
                raise ImportFailedError(f"任务不存在: {task_id}")
            except ApiError as e:
                if not is_transient(e):
                    self._set_stage(ImportStage.FAILED)
                    raise
                logger.warning(f"查询任务状态失败，稍后重试: {task_id}, {e}")

            if task is not None:
                if not task.is_processing:
                    self.state.clear_task()
                    self._set_stage(ImportStage.FAILED if task.status == TASK_FAILED else ImportStage.COMPLETED)
                    logger.info(
                        f"任务结束: {task_id} {task.status}，新增 {task.addedCount}，"
                        f"已存在 {task.existingCount}，失败 {task.errorCount}"
                    )
                    return task
                if on_update:
                    on_update(task)

            if time.monotonic() >= deadline:
                raise ImportTimeoutError(f"等待任务超时: {task_id}")
            self.cancel_event.wait(self.poll_interval)

    def wait_for_all_tasks(self, task_ids: List[int], max_wait: Optional[float] = None) -> List[UploadTask]:
        """
        等待多个任务全部结束（最长 1 小时）

        超时只记录警告，返回各任务最后一次查询到的状态
        """
        self._set_stage(ImportStage.POLLING)
        deadline = time.monotonic() + (max_wait if max_wait is not None else self.max_wait)
        latest: Dict[int, UploadTask] = {}
        pending = list(task_ids)

        while pending:
            if self.cancelled:
                self._raise_cancelled()
            for task_id in list(pending):
                try:
                    task = UploadTask(**self.api.get(f"/api/upload-tasks/{task_id}"))
                except NotFoundError:
                    logger.warning(f"任务不存在，跳过: {task_id}")
                    pending.remove(task_id)
                    continue
                except ApiError as e:
                    if not is_transient(e):
                        self._set_stage(ImportStage.FAILED)
                        raise
                    logger.warning(f"查询任务状态失败，稍后重试: {task_id}, {e}")
                    continue
                latest[task_id] = task
                if not task.is_processing:
                    pending.remove(task_id)

            if not pending:
                break
            logger.info(f"正在处理... ({len(task_ids) - len(pending)}/{len(task_ids)} 完成)")
            if time.monotonic() >= deadline:
                logger.warning(f"等待超时，{len(pending)} 个任务可能未完成")
                break
            self.cancel_event.wait(self.poll_interval)

        if not pending:
            self.state.clear_task()
            self._set_stage(ImportStage.COMPLETED)
        return [latest[task_id] for task_id in task_ids if task_id in latest]

    def resume(self) -> Optional[UploadTask]:
        """
        继续跟踪上次未结束的导入

        有保存的任务 ID 时查询它，仍在处理则继续轮询；
        没有时查询最新的处理中任务。都没有时返回 None
        """
        self.cancel_event.clear()
        task_id = self.state.get_task_id()
        if task_id is not None:
            try:
                task = UploadTask(**self.api.get(f"/api/upload-tasks/{task_id}"))
            except NotFoundError:
                logger.info(f"已保存的任务不存在: {task_id}")
                self.state.clear_task()
            else:
                if task.is_processing:
                    logger.info(f"继续跟踪任务: {task_id}")
                    return self.wait_for_task(task_id)
                self.state.clear_task()
                return task

        latest = self.api.get("/api/upload-tasks/processing/latest")
        if not latest:
            return None
        task_id = int(latest["id"])
        self.state.save_task(task_id)
        logger.info(f"发现处理中的任务: {task_id}")
        return self.wait_for_task(task_id)

    # ==================== 模板 ====================

    def download_template(self, path: str = "客户导入模板.xlsx") -> str:
        """下载导入模板到本地"""
        response = self.api.get("/api/customers/import/template", raw=True)
        with open(path, "wb") as f:
            f.write(response.content)
        return path
