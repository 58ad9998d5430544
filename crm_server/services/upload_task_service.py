"""
上传任务服务
记录每次批量导入的文件、进度和结果
"""

import logging
import sqlite3
from typing import Optional, List, Tuple, Iterable

from crm_server.database import get_pool, get_local_time_str
from crm_server.models import UploadTaskStatus

logger = logging.getLogger(__name__)

TASK_COLUMNS = """
    id, file_name, total_count, added_count, existing_count, error_count,
    status, remarks, upload_time, complete_time
"""


def resolve_final_status(added: int, existing: int, errors: int) -> UploadTaskStatus:
    """
    根据导入统计计算最终状态

    有失败记录为部分失败；有重复且有新增为部分跳过；有新增为完成；否则为失败
    """
    if errors > 0:
        return UploadTaskStatus.PARTIAL_FAILED
    if existing > 0 and added > 0:
        return UploadTaskStatus.PARTIAL_SKIPPED
    if added > 0:
        return UploadTaskStatus.COMPLETED
    return UploadTaskStatus.FAILED


class UploadTaskService:
    """上传任务服务类"""

    @staticmethod
    def create_task(file_name: str) -> int:
        """创建处理中的任务，返回任务 ID"""
        with get_pool().get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO upload_tasks (file_name, status, upload_time)
                VALUES (?, ?, ?)
                """,
                (file_name, UploadTaskStatus.PROCESSING.value, get_local_time_str())
            )
            task_id = cursor.lastrowid
        logger.info(f"创建上传任务: {file_name} (ID: {task_id})")
        return task_id

    @staticmethod
    def get_task(task_id: int) -> Optional[sqlite3.Row]:
        """按 ID 获取任务"""
        with get_pool().get_connection() as conn:
            return conn.execute(
                f"SELECT {TASK_COLUMNS} FROM upload_tasks WHERE id = ?",
                (task_id,)
            ).fetchone()

    @staticmethod
    def list_tasks(page: int = 1, page_size: int = 20) -> Tuple[List[sqlite3.Row], int]:
        """分页获取任务（按 ID 倒序）"""
        with get_pool().get_connection() as conn:
            total = conn.execute("SELECT COUNT(*) FROM upload_tasks").fetchone()[0]
            rows = conn.execute(
                f"SELECT {TASK_COLUMNS} FROM upload_tasks ORDER BY id DESC LIMIT ? OFFSET ?",
                (page_size, (page - 1) * page_size)
            ).fetchall()
        return rows, total

    @staticmethod
    def get_latest_processing() -> Optional[sqlite3.Row]:
        """获取最新的处理中任务"""
        with get_pool().get_connection() as conn:
            return conn.execute(
                f"""
                SELECT {TASK_COLUMNS} FROM upload_tasks
                WHERE status = ?
                ORDER BY id DESC LIMIT 1
                """,
                (UploadTaskStatus.PROCESSING.value,)
            ).fetchone()

    @staticmethod
    def update_progress(task_id: int, total: int, added: int, existing: int, errors: int):
        """更新任务进度（处理中）"""
        with get_pool().get_connection() as conn:
            conn.execute(
                """
                UPDATE upload_tasks
                SET total_count = ?, added_count = ?, existing_count = ?, error_count = ?
                WHERE id = ?
                """,
                (total, added, existing, errors, task_id)
            )

    @staticmethod
    def finish_task(task_id: int, total: int, added: int, existing: int, errors: int,
                    status: Optional[UploadTaskStatus] = None,
                    remarks: Optional[str] = None) -> UploadTaskStatus:
        """
        结束任务，写入统计和完成时间

        Args:
            status: 指定最终状态，默认按统计计算
            remarks: 附加说明（例如解析失败原因），为空时保留原备注

        Returns:
            最终状态
        """
        final_status = status or resolve_final_status(added, existing, errors)
        with get_pool().get_connection() as conn:
            conn.execute(
                """
                UPDATE upload_tasks
                SET total_count = ?, added_count = ?, existing_count = ?, error_count = ?,
                    status = ?, complete_time = ?, remarks = COALESCE(?, remarks)
                WHERE id = ?
                """,
                (total, added, existing, errors, final_status.value,
                 get_local_time_str(), remarks, task_id)
            )
        logger.info(
            f"上传任务结束 (ID: {task_id}): 状态 {final_status.value}, 总数 {total}, "
            f"新增 {added}, 已存在 {existing}, 失败 {errors}"
        )
        return final_status

    @staticmethod
    def update_remark(task_id: int, remarks: Optional[str]) -> bool:
        """更新任务备注，内容为空时清除"""
        text = (remarks or "").strip() or None
        with get_pool().get_connection() as conn:
            return conn.execute(
                "UPDATE upload_tasks SET remarks = ? WHERE id = ?",
                (text, task_id)
            ).rowcount > 0

    @staticmethod
    def delete_task(task_id: int) -> bool:
        """删除任务（已导入客户保留，关联置空）"""
        with get_pool().get_connection() as conn:
            return conn.execute("DELETE FROM upload_tasks WHERE id = ?", (task_id,)).rowcount > 0

    @staticmethod
    def delete_tasks(task_ids: Iterable[int]) -> int:
        """批量删除任务，返回删除数量"""
        ids = list(dict.fromkeys(task_ids))
        if not ids:
            return 0
        placeholders = ",".join("?" * len(ids))
        with get_pool().get_connection() as conn:
            return conn.execute(
                f"DELETE FROM upload_tasks WHERE id IN ({placeholders})",
                ids
            ).rowcount
