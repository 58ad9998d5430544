"""
操作日志与上传任务查看
"""

import logging
from typing import Iterable, Optional

from crm_client.api import ApiClient
from crm_client.errors import ValidationError
from crm_client.models import OperationLog, UploadTask, Page, Pager, parse_page
from crm_client.session import SessionManager, admin_only

logger = logging.getLogger(__name__)


class OperationLogViewer:
    """操作日志（仅管理员）"""

    def __init__(self, api: ApiClient, session: SessionManager):
        self.api = api
        self.session = session

    @admin_only
    def list(self, page: int = 1, page_size: int = 20) -> Page[OperationLog]:
        data = self.api.get("/api/operation-logs", params={"page": page, "page_size": page_size})
        return parse_page(data, OperationLog)

    @admin_only
    def search(
        self,
        username: Optional[str] = None,
        operation: Optional[str] = None,
        module: Optional[str] = None,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Page[OperationLog]:
        params = {
            "username": username,
            "operation": operation,
            "module": module,
            "startTime": start_time,
            "endTime": end_time,
            "page": page,
            "page_size": page_size
        }
        return parse_page(self.api.get("/api/operation-logs/search", params=params), OperationLog)

    def pager(self, page_size: int = 20, **filters) -> Pager[OperationLog]:
        if filters:
            return Pager(lambda page, size: self.search(page=page, page_size=size, **filters), page_size)
        return Pager(self.list, page_size)

    @admin_only
    def cleanup(self, days: int) -> int:
        """删除 days 天之前的日志，返回删除条数"""
        if days < 1:
            raise ValidationError("保留天数必须大于 0")
        data = self.api.delete("/api/operation-logs/cleanup", params={"days": days})
        return (data or {}).get("deletedCount", 0)


class UploadTaskViewer:
    """上传任务"""

    def __init__(self, api: ApiClient, session: SessionManager):
        self.api = api
        self.session = session

    def list(self, page: int = 1, page_size: int = 20) -> Page[UploadTask]:
        data = self.api.get("/api/upload-tasks", params={"page": page, "page_size": page_size})
        return parse_page(data, UploadTask)

    def pager(self, page_size: int = 20) -> Pager[UploadTask]:
        return Pager(self.list, page_size)

    def get(self, task_id: int) -> UploadTask:
        return UploadTask(**self.api.get(f"/api/upload-tasks/{task_id}"))

    def latest_processing(self) -> Optional[UploadTask]:
        data = self.api.get("/api/upload-tasks/processing/latest")
        return UploadTask(**data) if data else None

    @admin_only
    def delete(self, task_id: int):
        self.api.delete(f"/api/upload-tasks/{task_id}")

    @admin_only
    def batch_delete(self, task_ids: Iterable[int]) -> int:
        task_ids = [int(task_id) for task_id in task_ids]
        if not task_ids:
            raise ValidationError("请选择要删除的任务")
        data = self.api.delete("/api/upload-tasks/batch", json=task_ids)
        return (data or {}).get("deletedCount", 0)

    @admin_only
    def update_remark(self, task_id: int, remarks: str) -> UploadTask:
        return UploadTask(**self.api.put(f"/api/upload-tasks/{task_id}/remark", json={"remarks": remarks}))
