"""
上传任务路由
提供导入任务的查询、删除与备注
"""

import logging
from math import ceil
from typing import List
from fastapi import APIRouter, HTTPException, status, Depends, Query, Body, Request

from crm_server.middleware import get_current_user, require_admin
from crm_server.models import (
    BaseResponse,
    PaginatedResponse,
    RemarkRequest,
    OperationType,
    OperationModule,
    task_from_row
)
from crm_server.services.operation_log_service import OperationLogService
from crm_server.services.upload_task_service import UploadTaskService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/upload-tasks", tags=["上传任务"])

MODULE = OperationModule.UPLOAD_TASK.value


@router.get("", response_model=BaseResponse)
async def get_upload_tasks(
    page: int = Query(1, ge=1, description="页码"),
    page_size: int = Query(20, ge=1, le=200, description="每页数量"),
    current_user: dict = Depends(get_current_user)
):
    """
    获取上传任务列表（按 ID 倒序）
    """
    try:
        rows, total = UploadTaskService.list_tasks(page, page_size)
        return BaseResponse(
            success=True,
            message="获取任务列表成功",
            data=PaginatedResponse(
                items=[task_from_row(row).model_dump() for row in rows],
                total=total,
                page=page,
                page_size=page_size,
                total_pages=ceil(total / page_size) if page_size > 0 else 0
            ).model_dump()
        )
    except Exception as e:
        logger.error(f"获取任务列表失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"获取任务列表失败: {str(e)}"
        )


@router.get("/processing/latest", response_model=BaseResponse)
async def get_latest_processing_task(current_user: dict = Depends(get_current_user)):
    """
    获取最新的处理中任务，没有时 data 为 null
    """
    row = UploadTaskService.get_latest_processing()
    return BaseResponse(
        success=True,
        message="获取成功" if row else "没有处理中的任务",
        data=task_from_row(row).model_dump() if row else None
    )


@router.delete("/batch", response_model=BaseResponse)
async def batch_delete_tasks(
    request: Request,
    task_ids: List[int] = Body(..., description="任务 ID 列表"),
    current_user: dict = Depends(require_admin)
):
    """
    批量删除任务（管理员），已导入的客户保留
    """
    if not task_ids:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="请选择要删除的任务")

    deleted_count = UploadTaskService.delete_tasks(task_ids)
    OperationLogService.log_success(
        request, current_user["username"], OperationType.BATCH_DELETE.value, MODULE,
        description=f"批量删除上传任务 {deleted_count} 条"
    )
    return BaseResponse(
        success=True,
        message=f"成功删除 {deleted_count} 个任务",
        data={"deletedCount": deleted_count}
    )


@router.get("/{task_id}", response_model=BaseResponse)
async def get_upload_task(task_id: int, current_user: dict = Depends(get_current_user)):
    """
    获取单个任务（客户端轮询使用）
    """
    row = UploadTaskService.get_task(task_id)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"任务不存在: {task_id}")
    return BaseResponse(success=True, message="获取任务成功", data=task_from_row(row).model_dump())


@router.delete("/{task_id}", response_model=BaseResponse)
async def delete_upload_task(
    task_id: int,
    request: Request,
    current_user: dict = Depends(require_admin)
):
    """
    删除任务（管理员）
    """
    if not UploadTaskService.delete_task(task_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"任务不存在: {task_id}")

    OperationLogService.log_success(
        request, current_user["username"], OperationType.DELETE.value, MODULE,
        description="删除上传任务", target_id=task_id
    )
    return BaseResponse(success=True, message="删除任务成功")


@router.put("/{task_id}/remark", response_model=BaseResponse)
async def update_task_remark(
    task_id: int,
    remark: RemarkRequest,
    request: Request,
    current_user: dict = Depends(require_admin)
):
    """
    更新任务备注（管理员）
    """
    if not UploadTaskService.update_remark(task_id, remark.remarks):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"任务不存在: {task_id}")

    OperationLogService.log_success(
        request, current_user["username"], OperationType.REMARK.value, MODULE,
        description="更新任务备注", target_id=task_id
    )
    row = UploadTaskService.get_task(task_id)
    return BaseResponse(success=True, message="备注保存成功", data=task_from_row(row).model_dump())
