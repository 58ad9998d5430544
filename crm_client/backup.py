"""
数据库备份
创建、列出、下载、恢复和删除备份（仅管理员）
"""

import logging
import os
from typing import Callable, List, Optional

from crm_client.api import ApiClient
from crm_client.errors import ValidationError
from crm_client.models import BackupFile
from crm_client.session import SessionManager, admin_only

logger = logging.getLogger(__name__)

RESTORE_CONFIRM_FIRST = "确定要恢复数据库吗？当前数据将被备份文件中的数据覆盖！"
RESTORE_CONFIRM_SECOND = "此操作不可撤销，请再次确认是否继续恢复？"
DELETE_CONFIRM = "确定要删除备份文件 {file_name} 吗？"

Confirm = Callable[[str], bool]


class BackupClient:
    """
    备份接口

    Args:
        confirm: 确认函数，接收提示文字，返回是否继续；恢复需确认两次，删除确认一次
    """

    def __init__(self, api: ApiClient, session: SessionManager, confirm: Optional[Confirm] = None):
        self.api = api
        self.session = session
        self.confirm = confirm or (lambda message: False)

    @admin_only
    def create(self) -> BackupFile:
        data = self.api.post("/api/backup/create")
        logger.info(f"备份已创建: {data['fileName']}")
        return BackupFile(**data)

    @admin_only
    def list(self) -> List[BackupFile]:
        return [BackupFile(**item) for item in self.api.get("/api/backup/list") or []]

    @admin_only
    def download(self, file_name: str, path: Optional[str] = None) -> str:
        """下载备份到本地，path 为目录或文件路径，默认当前目录"""
        if not path:
            path = file_name
        elif os.path.isdir(path):
            path = os.path.join(path, file_name)
        response = self.api.get(f"/api/backup/download/{file_name}", raw=True)
        with open(path, "wb") as f:
            f.write(response.content)
        logger.info(f"备份已下载: {path}")
        return path

    @admin_only
    def restore(self, path: str) -> Optional[int]:
        """
        从本地 .sql 文件恢复数据库

        Returns:
            执行的语句数；任一次确认被拒绝时返回 None，不发送请求
        """
        if not path.lower().endswith(".sql"):
            raise ValidationError("只支持 .sql 格式的备份文件")
        if not os.path.isfile(path):
            raise ValidationError(f"文件不存在: {path}")
        if not self.confirm(RESTORE_CONFIRM_FIRST) or not self.confirm(RESTORE_CONFIRM_SECOND):
            logger.info("已取消恢复")
            return None

        with open(path, "rb") as f:
            data = self.api.post(
                "/api/backup/restore",
                files={"file": (os.path.basename(path), f, "application/sql")}
            )
        executed = (data or {}).get("executed", 0)
        logger.info(f"数据库已恢复: {path}，执行 {executed} 条语句")
        return executed

    @admin_only
    def delete(self, file_name: str) -> bool:
        """删除备份，确认被拒绝时返回 False"""
        if not self.confirm(DELETE_CONFIRM.format(file_name=file_name)):
            logger.info("已取消删除")
            return False
        self.api.delete(f"/api/backup/{file_name}")
        logger.info(f"备份已删除: {file_name}")
        return True
