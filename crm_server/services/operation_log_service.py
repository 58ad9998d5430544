"""
操作日志服务
提供日志记录、查询、清理等功能
"""

import logging
from typing import Optional, Dict, Any, List, Tuple
from datetime import datetime, timedelta

from fastapi import Request

from crm_server.database import get_pool, get_local_time_str, normalize_time_param
from crm_server.middleware import get_client_ip
from crm_server.models import OperationResult

logger = logging.getLogger(__name__)


class OperationLogService:
    """操作日志服务类"""

    @staticmethod
    def log_operation(
        username: Optional[str],
        operation: str,
        module: str,
        description: Optional[str] = None,
        ip_address: Optional[str] = None,
        target_id: Optional[int] = None,
        result: str = OperationResult.SUCCESS.value,
        error_message: Optional[str] = None
    ) -> int:
        """
        记录操作日志

        记录失败只写应用日志，不影响业务操作

        Args:
            username: 操作用户
            operation: 操作类型（LOGIN/CREATE/IMPORT 等）
            module: 操作模块（CUSTOMER/DATABASE 等）
            description: 操作描述
            ip_address: 客户端 IP
            target_id: 操作对象 ID
            result: SUCCESS / FAILURE
            error_message: 失败原因

        Returns:
            日志ID，失败返回 0
        """
        try:
            pool = get_pool()
            with pool.get_connection() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO operation_logs
                    (username, operation, module, description, ip_address, target_id,
                     result, error_message, operation_time)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        username,
                        operation,
                        module,
                        description,
                        ip_address,
                        target_id,
                        result,
                        error_message,
                        get_local_time_str()
                    )
                )
                log_id = cursor.lastrowid
            logger.debug(f"记录操作日志: {username} {operation} {module} (ID: {log_id})")
            return log_id
        except Exception as e:
            logger.error(f"记录操作日志失败: {e}", exc_info=True)
            return 0

    @staticmethod
    def log_success(
        request: Optional[Request],
        username: Optional[str],
        operation: str,
        module: str,
        description: Optional[str] = None,
        target_id: Optional[int] = None
    ) -> int:
        """记录成功的操作"""
        return OperationLogService.log_operation(
            username=username,
            operation=operation,
            module=module,
            description=description,
            ip_address=get_client_ip(request) if request is not None else None,
            target_id=target_id
        )

    @staticmethod
    def log_failure(
        request: Optional[Request],
        username: Optional[str],
        operation: str,
        module: str,
        description: Optional[str] = None,
        error_message: Optional[str] = None,
        target_id: Optional[int] = None
    ) -> int:
        """记录失败的操作"""
        return OperationLogService.log_operation(
            username=username,
            operation=operation,
            module=module,
            description=description,
            ip_address=get_client_ip(request) if request is not None else None,
            target_id=target_id,
            result=OperationResult.FAILURE.value,
            error_message=error_message
        )

    @staticmethod
    def get_logs(
        page: int = 1,
        page_size: int = 20,
        username: Optional[str] = None,
        operation: Optional[str] = None,
        module: Optional[str] = None,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        获取操作日志列表（按操作时间倒序）

        Args:
            page: 页码（从1开始）
            page_size: 每页数量
            username: 用户名（模糊匹配）
            operation: 操作类型（精确匹配）
            module: 操作模块（精确匹配）
            start_time: 开始时间
            end_time: 结束时间

        Returns:
            (日志行列表, 总数)
        """
        conditions = []
        params: List[Any] = []

        if username:
            conditions.append("username LIKE ?")
            params.append(f"%{username}%")
        if operation:
            conditions.append("operation = ?")
            params.append(operation)
        if module:
            conditions.append("module = ?")
            params.append(module)

        start = normalize_time_param(start_time)
        end = normalize_time_param(end_time, end_of_day=True)
        if start:
            conditions.append("operation_time >= ?")
            params.append(start)
        if end:
            conditions.append("operation_time <= ?")
            params.append(end)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        pool = get_pool()
        with pool.get_connection() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM operation_logs {where_clause}",
                params
            ).fetchone()[0]

            offset = (page - 1) * page_size
            rows = conn.execute(
                f"""
                SELECT id, username, operation, module, description, ip_address, target_id,
                       result, error_message, operation_time
                FROM operation_logs
                {where_clause}
                ORDER BY operation_time DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                params + [page_size, offset]
            ).fetchall()

        return rows, total

    @staticmethod
    def cleanup_old_logs(days: int = 730) -> int:
        """
        清理指定天数之前的旧日志

        Args:
            days: 保留天数（默认730天，即2年）

        Returns:
            删除的记录数
        """
        cutoff = (datetime.now() - timedelta(days=days)).strftime('%Y-%m-%d %H:%M:%S')
        pool = get_pool()
        with pool.get_connection() as conn:
            deleted_count = conn.execute(
                "DELETE FROM operation_logs WHERE operation_time < ?",
                (cutoff,)
            ).rowcount

        logger.info(f"清理了 {deleted_count} 条 {days} 天前的操作日志")
        return deleted_count
