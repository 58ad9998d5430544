"""
数据模型定义
使用 Pydantic 进行数据验证和序列化
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from enum import Enum
import re


# ==================== 枚举类型 ====================

class UserRole(str, Enum):
    """用户角色"""
    ADMIN = "ADMIN"
    VIEWER = "VIEWER"


class UploadTaskStatus(str, Enum):
    """上传任务状态"""
    PROCESSING = "处理中"
    COMPLETED = "完成"
    PARTIAL_FAILED = "部分失败"
    PARTIAL_SKIPPED = "部分跳过"
    FAILED = "失败"


class OperationResult(str, Enum):
    """操作结果"""
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


class OperationType(str, Enum):
    """操作类型"""
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    BATCH_DELETE = "BATCH_DELETE"
    SEARCH = "SEARCH"
    ADVANCED_SEARCH = "ADVANCED_SEARCH"
    BATCH_QUERY = "BATCH_QUERY"
    IMPORT = "IMPORT"
    BACKUP = "BACKUP"
    RESTORE = "RESTORE"
    REMARK = "REMARK"


class OperationModule(str, Enum):
    """操作模块"""
    AUTH = "AUTH"
    CUSTOMER = "CUSTOMER"
    UPLOAD_TASK = "UPLOAD_TASK"
    DATABASE = "DATABASE"


# ==================== 基础模型 ====================

class BaseResponse(BaseModel):
    """基础响应模型"""
    success: bool = True
    message: str = "操作成功"
    data: Optional[Any] = None


class ErrorResponse(BaseModel):
    """错误响应模型"""
    success: bool = False
    message: str
    error_code: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class PaginatedResponse(BaseModel):
    """分页响应"""
    items: List[Any]
    total: int
    page: int
    page_size: int
    total_pages: int


# ==================== 用户相关模型 ====================

class UserLogin(BaseModel):
    """用户登录请求（允许空值，由接口返回 400）"""
    username: Optional[str] = Field(None, description="用户名")
    password: Optional[str] = Field(None, description="密码")


class CurrentUserResponse(BaseModel):
    """当前用户信息"""
    username: str
    realName: Optional[str] = None
    role: UserRole = UserRole.VIEWER


class LoginResponse(CurrentUserResponse):
    """登录结果（包含 Token）"""
    token: str
    expires_in: int = 24 * 60 * 60


# ==================== 客户相关模型 ====================

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class CustomerCreate(BaseModel):
    """创建客户请求"""
    name: str = Field(..., min_length=1, max_length=100, description="客户姓名")
    phone: Optional[str] = Field(None, max_length=50, description="电话")
    email: Optional[str] = Field(None, max_length=100, description="邮箱")
    address: Optional[str] = Field(None, max_length=500, description="地址")

    @validator('name')
    def validate_name(cls, v):
        """姓名不能为空白"""
        if not v.strip():
            raise ValueError('客户姓名不能为空')
        return v.strip()

    @validator('email')
    def validate_email(cls, v):
        """邮箱格式校验（允许为空）"""
        if v is None or not v.strip():
            return None
        if not EMAIL_PATTERN.match(v.strip()):
            raise ValueError('邮箱格式不正确')
        return v.strip()


class CustomerUpdate(CustomerCreate):
    """更新客户请求"""
    pass


class CustomerResponse(BaseModel):
    """客户响应"""
    id: int
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    uploadTaskId: Optional[int] = None
    uploadFileName: Optional[str] = None
    remarks: Optional[str] = None
    createTime: Optional[str] = None
    updateTime: Optional[str] = None

    model_config = {"from_attributes": True}


class BatchDeleteRequest(BaseModel):
    """批量删除请求"""
    ids: List[int] = Field(default_factory=list, description="ID 列表")


class BatchQueryItem(BaseModel):
    """批量查询条目"""
    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class BatchQueryRequest(BaseModel):
    """批量查询请求"""
    items: List[BatchQueryItem] = Field(default_factory=list)


class RemarkRequest(BaseModel):
    """备注请求"""
    remarks: Optional[str] = Field(None, max_length=2000, description="备注内容")


# ==================== 导入相关模型 ====================

class ChunkMergeRequest(BaseModel):
    """合并分块请求"""
    uploadId: str = Field(..., min_length=1, max_length=100)
    fileName: str = Field(..., min_length=1, max_length=255)


class ChunkCleanupRequest(BaseModel):
    """清理分块请求"""
    uploadId: str = Field(..., min_length=1, max_length=100)


# ==================== 上传任务相关模型 ====================

class UploadTaskResponse(BaseModel):
    """上传任务响应"""
    id: int
    fileName: str
    totalCount: int = 0
    addedCount: int = 0
    existingCount: int = 0
    errorCount: int = 0
    status: UploadTaskStatus
    remarks: Optional[str] = None
    uploadTime: Optional[str] = None
    completeTime: Optional[str] = None

    model_config = {"from_attributes": True}


# ==================== 操作日志相关模型 ====================

class OperationLogResponse(BaseModel):
    """操作日志响应"""
    id: int
    username: Optional[str] = None
    operation: str
    module: str
    description: Optional[str] = None
    ipAddress: Optional[str] = None
    targetId: Optional[int] = None
    result: OperationResult = OperationResult.SUCCESS
    errorMessage: Optional[str] = None
    operationTime: Optional[str] = None


# ==================== 备份相关模型 ====================

class BackupFileResponse(BaseModel):
    """备份文件信息"""
    fileName: str
    fileSize: int
    createTime: Optional[str] = None


# ==================== 辅助函数 ====================

def row_to_dict(row) -> dict:
    """
    将 SQLite Row 对象转换为字典

    Args:
        row: SQLite Row 对象

    Returns:
        字典
    """
    if row is None:
        return {}
    return {key: row[key] for key in row.keys()}


def customer_from_row(row) -> CustomerResponse:
    """将 customers 查询行（含任务文件名、备注连接列）转换为响应模型"""
    data = row_to_dict(row)
    return CustomerResponse(
        id=data["id"],
        name=data["name"],
        phone=data.get("phone"),
        email=data.get("email"),
        address=data.get("address"),
        uploadTaskId=data.get("upload_task_id"),
        uploadFileName=data.get("upload_file_name"),
        remarks=data.get("remarks"),
        createTime=data.get("create_time"),
        updateTime=data.get("update_time")
    )


def task_from_row(row) -> UploadTaskResponse:
    """将 upload_tasks 行转换为响应模型"""
    return UploadTaskResponse(
        id=row["id"],
        fileName=row["file_name"],
        totalCount=row["total_count"] or 0,
        addedCount=row["added_count"] or 0,
        existingCount=row["existing_count"] or 0,
        errorCount=row["error_count"] or 0,
        status=row["status"],
        remarks=row["remarks"],
        uploadTime=row["upload_time"],
        completeTime=row["complete_time"]
    )


def log_from_row(row) -> OperationLogResponse:
    """将 operation_logs 行转换为响应模型"""
    return OperationLogResponse(
        id=row["id"],
        username=row["username"],
        operation=row["operation"],
        module=row["module"],
        description=row["description"],
        ipAddress=row["ip_address"],
        targetId=row["target_id"],
        result=row["result"],
        errorMessage=row["error_message"],
        operationTime=row["operation_time"]
    )
