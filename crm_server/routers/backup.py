"""
数据库备份路由
创建、列出、下载、删除备份以及从备份恢复（仅管理员）
"""

import logging
import os
from fastapi import APIRouter, HTTPException, status, Depends, Request, UploadFile, File
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse

from crm_server.middleware import require_admin
from crm_server.models import BaseResponse, BackupFileResponse, OperationType, OperationModule
from crm_server.services.backup_service import BackupService, BackupError, resolve_backup_path
from crm_server.services.operation_log_service import OperationLogService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/backup", tags=["数据库备份"])

MODULE = OperationModule.DATABASE.value


@router.post("/create", response_model=BaseResponse)
async def create_backup(request: Request, current_user: dict = Depends(require_admin)):
    """
    创建数据库备份

    Returns:
        备份文件名与大小
    """
    try:
        backup = await run_in_threadpool(BackupService.create_backup)
        OperationLogService.log_success(
            request, current_user["username"], OperationType.BACKUP.value, MODULE,
            description=f"创建备份: {backup['fileName']}"
        )
        return BaseResponse(
            success=True,
            message="备份创建成功",
            data={"fileName": backup["fileName"], "fileSize": backup["fileSize"]}
        )
    except Exception as e:
        OperationLogService.log_failure(
            request, current_user["username"], OperationType.BACKUP.value, MODULE,
            description="创建备份", error_message=str(e)
        )
        logger.error(f"创建备份失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"创建备份失败: {str(e)}"
        )


@router.get("/list", response_model=BaseResponse)
async def list_backups(current_user: dict = Depends(require_admin)):
    """
    获取备份文件列表（最新在前）
    """
    backups = [BackupFileResponse(**item).model_dump() for item in BackupService.list_backups()]
    return BaseResponse(success=True, message="获取备份列表成功", data=backups)


@router.get("/download/{file_name}")
async def download_backup(file_name: str, current_user: dict = Depends(require_admin)):
    """
    下载备份文件
    """
    try:
        path = resolve_backup_path(file_name)
    except BackupError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if not os.path.isfile(path):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="备份文件不存在")
    return FileResponse(path, media_type="application/sql", filename=file_name)


@router.post("/restore", response_model=BaseResponse)
async def restore_backup(
    request: Request,
    file: UploadFile = File(..., description=".sql 备份文件"),
    current_user: dict = Depends(require_admin)
):
    """
    从上传的备份文件恢复数据库

    全部语句在一个事务中执行，失败时整体回滚
    """
    file_name = file.filename or ""
    try:
        if not file_name.lower().endswith(".sql"):
            raise BackupError("只支持 .sql 格式的备份文件")
        content = await file.read()
        try:
            sql_text = content.decode("utf-8-sig")
        except UnicodeDecodeError:
            raise BackupError("备份文件编码必须为 UTF-8")

        executed = await run_in_threadpool(BackupService.restore, sql_text)
        OperationLogService.log_success(
            request, current_user["username"], OperationType.RESTORE.value, MODULE,
            description=f"恢复备份: {file_name}，执行 {executed} 条语句"
        )
        return BaseResponse(success=True, message="数据库恢复成功", data={"executed": executed})
    except BackupError as e:
        OperationLogService.log_failure(
            request, current_user["username"], OperationType.RESTORE.value, MODULE,
            description=f"恢复备份: {file_name}", error_message=str(e)
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"恢复数据库失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"恢复数据库失败: {str(e)}"
        )
    finally:
        await file.close()


@router.delete("/{file_name}", response_model=BaseResponse)
async def delete_backup(
    file_name: str,
    request: Request,
    current_user: dict = Depends(require_admin)
):
    """
    删除备份文件
    """
    try:
        deleted = BackupService.delete_backup(file_name)
    except BackupError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="备份文件不存在")

    OperationLogService.log_success(
        request, current_user["username"], OperationType.DELETE.value, MODULE,
        description=f"删除备份: {file_name}"
    )
    return BaseResponse(success=True, message="备份删除成功")
