"""
客户管理路由
处理客户的查询、搜索、批量查询、增删改和备注
"""

import logging
from math import ceil
from typing import Optional
from fastapi import APIRouter, HTTPException, status, Depends, Query, Request

from crm_server.constants import MAX_BATCH_QUERY_ITEMS
from crm_server.middleware import get_current_user, require_admin
from crm_server.models import (
    CustomerCreate,
    CustomerUpdate,
    BatchDeleteRequest,
    BatchQueryRequest,
    RemarkRequest,
    BaseResponse,
    PaginatedResponse,
    OperationType,
    OperationModule,
    customer_from_row
)
from crm_server.services.customer_service import CustomerService
from crm_server.services.operation_log_service import OperationLogService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/customers", tags=["客户管理"])

MODULE = OperationModule.CUSTOMER.value


def _paged(rows, total: int, page: int, page_size: int) -> dict:
    return PaginatedResponse(
        items=[customer_from_row(row).model_dump() for row in rows],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=ceil(total / page_size) if page_size > 0 else 0
    ).model_dump()


def _not_found(customer_id: int) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"客户不存在: {customer_id}"
    )


@router.get("", response_model=BaseResponse)
async def get_customers(
    page: int = Query(1, ge=1, description="页码"),
    page_size: int = Query(20, ge=1, le=1000, description="每页数量"),
    current_user: dict = Depends(get_current_user)
):
    """
    获取客户列表（按 ID 升序分页）

    Args:
        page: 页码
        page_size: 每页数量

    Returns:
        客户列表（分页），每条带导入文件名和备注
    """
    try:
        rows, total = CustomerService.list_customers(page, page_size)
        return BaseResponse(success=True, message="获取客户列表成功", data=_paged(rows, total, page, page_size))
    except Exception as e:
        logger.error(f"获取客户列表失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"获取客户列表失败: {str(e)}"
        )


@router.get("/all", response_model=BaseResponse)
async def get_all_customers(current_user: dict = Depends(get_current_user)):
    """
    获取所有客户（不分页，用于导出）
    """
    try:
        rows = CustomerService.list_all()
        return BaseResponse(
            success=True,
            message="获取客户列表成功",
            data=[customer_from_row(row).model_dump() for row in rows]
        )
    except Exception as e:
        logger.error(f"获取所有客户失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"获取所有客户失败: {str(e)}"
        )


@router.get("/count", response_model=BaseResponse)
async def get_customer_count(current_user: dict = Depends(get_current_user)):
    """
    获取客户总数，出错时返回 0
    """
    try:
        count = CustomerService.get_total_count()
    except Exception as e:
        logger.error(f"获取客户总数失败: {e}", exc_info=True)
        count = 0
    return BaseResponse(success=True, message="获取客户总数成功", data={"count": count})


@router.get("/count/today", response_model=BaseResponse)
async def get_today_count(current_user: dict = Depends(get_current_user)):
    """
    获取今日新增客户数，出错时返回 0
    """
    try:
        count = CustomerService.get_today_count()
    except Exception as e:
        logger.error(f"获取今日新增客户数失败: {e}", exc_info=True)
        count = 0
    return BaseResponse(success=True, message="获取今日新增客户数成功", data={"count": count})


@router.get("/search", response_model=BaseResponse)
async def search_customers(
    request: Request,
    keyword: Optional[str] = Query(None, description="姓名关键词"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=1000),
    current_user: dict = Depends(get_current_user)
):
    """
    按姓名搜索客户，关键词为空时返回全部
    """
    try:
        rows, total = CustomerService.search(keyword, page, page_size)
        OperationLogService.log_success(
            request, current_user["username"], OperationType.SEARCH.value, MODULE,
            description=f"搜索客户: {keyword or ''}"
        )
        return BaseResponse(success=True, message="搜索成功", data=_paged(rows, total, page, page_size))
    except Exception as e:
        logger.error(f"搜索客户失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"搜索客户失败: {str(e)}"
        )


@router.get("/advanced-search", response_model=BaseResponse)
async def advanced_search(
    request: Request,
    name: Optional[str] = Query(None),
    phone: Optional[str] = Query(None),
    email: Optional[str] = Query(None),
    address: Optional[str] = Query(None),
    startTime: Optional[str] = Query(None, description="创建时间起（含）"),
    endTime: Optional[str] = Query(None, description="创建时间止（含）"),
    uploadTaskId: Optional[int] = Query(None, description="导入任务 ID"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=1000),
    current_user: dict = Depends(get_current_user)
):
    """
    高级搜索：姓名、电话、邮箱、地址包含匹配，创建时间范围，导入任务
    """
    try:
        rows, total = CustomerService.advanced_search(
            name=name,
            phone=phone,
            email=email,
            address=address,
            start_time=startTime,
            end_time=endTime,
            upload_task_id=uploadTaskId,
            page=page,
            page_size=page_size
        )
        conditions = {
            "name": name, "phone": phone, "email": email, "address": address,
            "startTime": startTime, "endTime": endTime, "uploadTaskId": uploadTaskId
        }
        summary = ", ".join(f"{k}={v}" for k, v in conditions.items() if v not in (None, ""))
        OperationLogService.log_success(
            request, current_user["username"], OperationType.ADVANCED_SEARCH.value, MODULE,
            description=f"高级搜索: {summary}"
        )
        return BaseResponse(success=True, message="搜索成功", data=_paged(rows, total, page, page_size))
    except Exception as e:
        logger.error(f"高级搜索失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"高级搜索失败: {str(e)}"
        )


@router.post("/batch-query", response_model=BaseResponse)
async def batch_query(
    query: BatchQueryRequest,
    request: Request,
    current_user: dict = Depends(get_current_user)
):
    """
    批量查询客户（最多 500 条）

    每条查询优先按电话精确匹配，其次按姓名包含匹配
    """
    if not query.items:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="查询条件不能为空")
    if len(query.items) > MAX_BATCH_QUERY_ITEMS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"单次最多查询 {MAX_BATCH_QUERY_ITEMS} 条"
        )

    try:
        results = []
        for result in CustomerService.batch_query([item.model_dump() for item in query.items]):
            customer = customer_from_row(result["customer"]).model_dump() if result["matched"] else None
            results.append({
                "queryItem": result["queryItem"],
                "matched": result["matched"],
                "customer": customer,
                "uploadFileName": customer["uploadFileName"] if customer else None
            })
        matched_count = sum(1 for r in results if r["matched"])

        OperationLogService.log_success(
            request, current_user["username"], OperationType.BATCH_QUERY.value, MODULE,
            description=f"批量查询 {len(results)} 条，匹配 {matched_count} 条"
        )
        return BaseResponse(
            success=True,
            message=f"查询完成，匹配 {matched_count}/{len(results)} 条",
            data={"results": results, "total": len(results), "matchedCount": matched_count}
        )
    except Exception as e:
        logger.error(f"批量查询失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"批量查询失败: {str(e)}"
        )


@router.delete("/batch", response_model=BaseResponse)
async def batch_delete_customers(
    delete_data: BatchDeleteRequest,
    request: Request,
    current_user: dict = Depends(require_admin)
):
    """
    批量删除客户（管理员）
    """
    if not delete_data.ids:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="请选择要删除的客户")

    try:
        deleted_count = CustomerService.batch_delete(delete_data.ids)
        OperationLogService.log_success(
            request, current_user["username"], OperationType.BATCH_DELETE.value, MODULE,
            description=f"批量删除客户 {deleted_count} 条"
        )
        logger.info(f"批量删除客户: {deleted_count}/{len(delete_data.ids)}")
        return BaseResponse(
            success=True,
            message=f"成功删除 {deleted_count} 条客户",
            data={"deletedCount": deleted_count}
        )
    except Exception as e:
        OperationLogService.log_failure(
            request, current_user["username"], OperationType.BATCH_DELETE.value, MODULE,
            description="批量删除客户", error_message=str(e)
        )
        logger.error(f"批量删除客户失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"批量删除客户失败: {str(e)}"
        )


@router.get("/{customer_id}", response_model=BaseResponse)
async def get_customer(customer_id: int, current_user: dict = Depends(get_current_user)):
    """
    获取单个客户
    """
    row = CustomerService.get_customer(customer_id)
    if row is None:
        raise _not_found(customer_id)
    return BaseResponse(success=True, message="获取客户成功", data=customer_from_row(row).model_dump())


@router.post("", response_model=BaseResponse, status_code=status.HTTP_201_CREATED)
async def create_customer(
    customer: CustomerCreate,
    request: Request,
    current_user: dict = Depends(require_admin)
):
    """
    创建客户（管理员）

    Args:
        customer: 客户数据

    Returns:
        创建的客户
    """
    try:
        customer_id = CustomerService.create_customer(
            customer.name, customer.phone, customer.email, customer.address
        )
        OperationLogService.log_success(
            request, current_user["username"], OperationType.CREATE.value, MODULE,
            description=f"创建客户: {customer.name}", target_id=customer_id
        )
        logger.info(f"创建客户成功: {customer.name} (ID: {customer_id})")
        created = customer_from_row(CustomerService.get_customer(customer_id))
        return BaseResponse(success=True, message="创建客户成功", data=created.model_dump())
    except Exception as e:
        OperationLogService.log_failure(
            request, current_user["username"], OperationType.CREATE.value, MODULE,
            description=f"创建客户: {customer.name}", error_message=str(e)
        )
        logger.error(f"创建客户失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"创建客户失败: {str(e)}"
        )


@router.put("/{customer_id}", response_model=BaseResponse)
async def update_customer(
    customer_id: int,
    customer: CustomerUpdate,
    request: Request,
    current_user: dict = Depends(require_admin)
):
    """
    更新客户（管理员）
    """
    try:
        updated = CustomerService.update_customer(
            customer_id, customer.name, customer.phone, customer.email, customer.address
        )
        if not updated:
            raise _not_found(customer_id)

        OperationLogService.log_success(
            request, current_user["username"], OperationType.UPDATE.value, MODULE,
            description=f"更新客户: {customer.name}", target_id=customer_id
        )
        row = CustomerService.get_customer(customer_id)
        return BaseResponse(success=True, message="更新客户成功", data=customer_from_row(row).model_dump())
    except HTTPException:
        raise
    except Exception as e:
        OperationLogService.log_failure(
            request, current_user["username"], OperationType.UPDATE.value, MODULE,
            description=f"更新客户: {customer.name}", error_message=str(e), target_id=customer_id
        )
        logger.error(f"更新客户失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"更新客户失败: {str(e)}"
        )


@router.delete("/{customer_id}", response_model=BaseResponse)
async def delete_customer(
    customer_id: int,
    request: Request,
    current_user: dict = Depends(require_admin)
):
    """
    删除客户（管理员）
    """
    try:
        row = CustomerService.get_customer(customer_id)
        if row is None or not CustomerService.delete_customer(customer_id):
            raise _not_found(customer_id)

        OperationLogService.log_success(
            request, current_user["username"], OperationType.DELETE.value, MODULE,
            description=f"删除客户: {row['name']}", target_id=customer_id
        )
        logger.info(f"删除客户成功: {row['name']} (ID: {customer_id})")
        return BaseResponse(success=True, message="删除客户成功")
    except HTTPException:
        raise
    except Exception as e:
        OperationLogService.log_failure(
            request, current_user["username"], OperationType.DELETE.value, MODULE,
            description="删除客户", error_message=str(e), target_id=customer_id
        )
        logger.error(f"删除客户失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"删除客户失败: {str(e)}"
        )


# ==================== 备注 ====================

@router.get("/{customer_id}/remark", response_model=BaseResponse)
async def get_customer_remark(customer_id: int, current_user: dict = Depends(get_current_user)):
    """
    获取客户备注
    """
    remarks = CustomerService.get_remark(customer_id)
    return BaseResponse(
        success=True,
        message="获取备注成功",
        data={"customerId": customer_id, "remarks": remarks, "hasRemark": remarks is not None}
    )


@router.post("/{customer_id}/remark", response_model=BaseResponse)
async def save_customer_remark(
    customer_id: int,
    remark: RemarkRequest,
    request: Request,
    current_user: dict = Depends(require_admin)
):
    """
    保存客户备注（管理员），内容去除首尾空白，为空时删除备注
    """
    if CustomerService.get_customer(customer_id) is None:
        raise _not_found(customer_id)

    try:
        saved = CustomerService.save_remark(customer_id, remark.remarks)
        OperationLogService.log_success(
            request, current_user["username"], OperationType.REMARK.value, MODULE,
            description="保存客户备注" if saved else "清除客户备注", target_id=customer_id
        )
        return BaseResponse(
            success=True,
            message="备注保存成功" if saved else "备注已清除",
            data={"customerId": customer_id, "remarks": saved, "hasRemark": saved is not None}
        )
    except Exception as e:
        logger.error(f"保存客户备注失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"保存备注失败: {str(e)}"
        )


@router.delete("/{customer_id}/remark", response_model=BaseResponse)
async def delete_customer_remark(
    customer_id: int,
    request: Request,
    current_user: dict = Depends(require_admin)
):
    """
    删除客户备注（管理员）
    """
    try:
        deleted = CustomerService.delete_remark(customer_id)
        if deleted:
            OperationLogService.log_success(
                request, current_user["username"], OperationType.REMARK.value, MODULE,
                description="删除客户备注", target_id=customer_id
            )
        return BaseResponse(success=True, message="备注已删除", data={"deleted": deleted})
    except Exception as e:
        logger.error(f"删除客户备注失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"删除备注失败: {str(e)}"
        )
