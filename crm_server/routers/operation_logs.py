"""
操作日志路由
提供操作日志的分页查询、条件搜索和清理（仅管理员）
"""

import logging
from typing import Optional
from fastapi import APIRouter, HTTPException, status, Depends, Query
from math import ceil

from crm_server.middleware import require_admin
from crm_server.models import BaseResponse, PaginatedResponse, log_from_row
from crm_server.services.operation_log_service import OperationLogService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/operation-logs", tags=["操作日志"])


def _query_logs(page: int, page_size: int, **filters) -> BaseResponse:
    logs, total = OperationLogService.get_logs(page=page, page_size=page_size, **filters)
    return BaseResponse(
        success=True,
        message="查询成功",
        data=PaginatedResponse(
            items=[log_from_row(row).model_dump() for row in logs],
            total=total,
            page=page,
            page_size=page_size,
            total_pages=ceil(total / page_size) if page_size > 0 else 0
        ).model_dump()
    )


@router.get("", response_model=BaseResponse)
async def get_operation_logs(
    page: int = Query(1, ge=1, description="页码，从1开始"),
    page_size: int = Query(20, ge=1, le=100, description="每页数量（最大100）"),
    current_user: dict = Depends(require_admin)
):
    """
    获取操作日志列表（按时间倒序）
    """
    try:
        return _query_logs(page, page_size)
    except Exception as e:
        logger.error(f"查询操作日志失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"查询操作日志失败: {str(e)}"
        )


@router.get("/search", response_model=BaseResponse)
async def search_operation_logs(
    username: Optional[str] = Query(None, description="用户名（模糊匹配）"),
    operation: Optional[str] = Query(None, description="操作类型，如 LOGIN、IMPORT"),
    module: Optional[str] = Query(None, description="模块，如 CUSTOMER、DATABASE"),
    startTime: Optional[str] = Query(None, description="开始时间，如 2025-01-01 或 2025-01-01T08:00:00"),
    endTime: Optional[str] = Query(None, description="结束时间"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: dict = Depends(require_admin)
):
    """
    按条件搜索操作日志
    """
    try:
        return _query_logs(
            page,
            page_size,
            username=username,
            operation=operation,
            module=module,
            start_time=startTime,
            end_time=endTime
        )
    except Exception as e:
        logger.error(f"搜索操作日志失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"搜索操作日志失败: {str(e)}"
        )


@router.delete("/cleanup", response_model=BaseResponse)
async def cleanup_operation_logs(
    days: int = Query(730, ge=1, description="保留最近多少天的日志"),
    current_user: dict = Depends(require_admin)
):
    """
    清理旧日志
    """
    try:
        deleted_count = OperationLogService.cleanup_old_logs(days)
        return BaseResponse(
            success=True,
            message=f"已清理 {deleted_count} 条日志",
            data={"deletedCount": deleted_count}
        )
    except Exception as e:
        logger.error(f"清理操作日志失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"清理操作日志失败: {str(e)}"
        )
