"""
客户导入路由
处理直传导入、分块上传、分块合并与清理、导入模板下载
"""

import logging
from urllib.parse import quote
from fastapi import APIRouter, HTTPException, status, Depends, Request, UploadFile, File, Form
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response

from crm_server.middleware import get_current_user, require_admin, get_client_ip
from crm_server.models import (
    BaseResponse,
    ChunkMergeRequest,
    ChunkCleanupRequest,
    OperationType,
    OperationModule
)
from crm_server.services.chunk_upload_service import ChunkUploadService, ChunkIncompleteError
from crm_server.services.import_service import (
    ImportValidationError,
    validate_import_file_name,
    save_upload,
    start_import,
    build_template
)
from crm_server.services.operation_log_service import OperationLogService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/customers/import", tags=["客户导入"])

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@router.post("", response_model=BaseResponse)
async def import_customers(
    request: Request,
    file: UploadFile = File(..., description="xlsx 或 csv 文件"),
    current_user: dict = Depends(require_admin)
):
    """
    直传导入（管理员）

    文件保存后立即返回任务 ID，解析入库在后台线程执行

    Returns:
        {"taskId": 任务ID}
    """
    try:
        file_name = validate_import_file_name(file.filename)
        file_path = await run_in_threadpool(save_upload, file.file, file_name)
        task_id = start_import(file_path, file_name, current_user["username"], get_client_ip(request))
        return BaseResponse(
            success=True,
            message="文件上传成功，正在后台处理",
            data={"taskId": task_id, "fileName": file_name}
        )
    except ImportValidationError as e:
        OperationLogService.log_failure(
            request, current_user["username"], OperationType.IMPORT.value, OperationModule.CUSTOMER.value,
            description=f"导入文件 {file.filename}", error_message=str(e)
        )
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"导入文件失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"导入失败: {str(e)}"
        )
    finally:
        await file.close()


@router.post("/chunk", response_model=BaseResponse)
async def upload_chunk(
    chunk: UploadFile = File(..., description="分块内容"),
    chunkIndex: int = Form(..., ge=0),
    totalChunks: int = Form(..., ge=1),
    uploadId: str = Form(...),
    fileName: str = Form(...),
    totalSize: int = Form(0, ge=0),
    current_user: dict = Depends(require_admin)
):
    """
    上传单个分块（管理员）

    Returns:
        已接收分块数
    """
    try:
        validate_import_file_name(fileName)
        data = await chunk.read()
        received = await run_in_threadpool(
            ChunkUploadService.save_chunk, uploadId, chunkIndex, totalChunks, fileName, totalSize, data
        )
        return BaseResponse(
            success=True,
            message="分块上传成功",
            data={"uploadId": uploadId, "chunkIndex": chunkIndex, "received": received, "totalChunks": totalChunks}
        )
    except ImportValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"分块上传失败: {uploadId}#{chunkIndex}, {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"分块上传失败: {str(e)}"
        )
    finally:
        await chunk.close()


@router.post("/merge", response_model=BaseResponse)
async def merge_chunks(
    merge_data: ChunkMergeRequest,
    request: Request,
    current_user: dict = Depends(require_admin)
):
    """
    合并分块并开始导入（管理员）

    未收齐全部分块时返回 400

    Returns:
        {"taskId": 任务ID}
    """
    try:
        file_name = validate_import_file_name(merge_data.fileName)
        file_path = await run_in_threadpool(ChunkUploadService.merge, merge_data.uploadId, file_name)
        task_id = start_import(file_path, file_name, current_user["username"], get_client_ip(request))
        return BaseResponse(
            success=True,
            message="文件合并成功，正在后台处理",
            data={"taskId": task_id, "fileName": file_name}
        )
    except ChunkIncompleteError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"文件块未全部上传，缺少 {len(e.missing)} 块"
        )
    except ImportValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        logger.error(f"合并分块失败: {merge_data.uploadId}, {e}", exc_info=True)
        ChunkUploadService.cleanup(merge_data.uploadId)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"合并文件失败: {str(e)}"
        )


@router.post("/chunk/cleanup", response_model=BaseResponse)
async def cleanup_chunks(
    cleanup_data: ChunkCleanupRequest,
    current_user: dict = Depends(require_admin)
):
    """
    清理分块（上传失败或取消时由客户端调用）
    """
    try:
        removed = ChunkUploadService.cleanup(cleanup_data.uploadId)
        return BaseResponse(success=True, message="清理完成", data={"removed": removed})
    except ImportValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/template")
async def download_template(current_user: dict = Depends(get_current_user)):
    """
    下载导入模板（xlsx）
    """
    content = build_template()
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote('客户导入模板.xlsx')}"}
    )
