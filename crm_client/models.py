"""
客户端数据模型
与服务端响应字段一致，多余字段忽略
"""

from typing import Any, Callable, Generic, List, Optional, TypeVar

from pydantic import BaseModel

ROLE_ADMIN = "ADMIN"
ROLE_VIEWER = "VIEWER"
ROLE_LABELS = {ROLE_ADMIN: "管理员", ROLE_VIEWER: "查看者"}

TASK_PROCESSING = "处理中"
TASK_FAILED = "失败"

T = TypeVar("T")


class UserSession(BaseModel):
    """当前登录用户"""
    username: str
    realName: Optional[str] = None
    role: str = ROLE_VIEWER

    model_config = {"extra": "ignore"}

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def role_label(self) -> str:
        return ROLE_LABELS.get(self.role, ROLE_LABELS[ROLE_VIEWER])

    @property
    def display_name(self) -> str:
        return self.realName or self.username


class Customer(BaseModel):
    """客户"""
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

    model_config = {"extra": "ignore"}


class UploadTask(BaseModel):
    """导入任务"""
    id: int
    fileName: str
    totalCount: int = 0
    addedCount: int = 0
    existingCount: int = 0
    errorCount: int = 0
    status: str
    remarks: Optional[str] = None
    uploadTime: Optional[str] = None
    completeTime: Optional[str] = None

    model_config = {"extra": "ignore"}

    @property
    def is_processing(self) -> bool:
        return self.status == TASK_PROCESSING


class OperationLog(BaseModel):
    """操作日志"""
    id: int
    username: Optional[str] = None
    operation: str
    module: str
    description: Optional[str] = None
    ipAddress: Optional[str] = None
    targetId: Optional[int] = None
    result: str = "SUCCESS"
    errorMessage: Optional[str] = None
    operationTime: Optional[str] = None

    model_config = {"extra": "ignore"}


class BackupFile(BaseModel):
    """备份文件"""
    fileName: str
    fileSize: int = 0
    createTime: Optional[str] = None

    model_config = {"extra": "ignore"}


class BatchQueryResult(BaseModel):
    """批量查询的单条结果"""
    queryItem: dict
    matched: bool = False
    customer: Optional[Customer] = None
    uploadFileName: Optional[str] = None

    model_config = {"extra": "ignore"}


class Page(BaseModel, Generic[T]):
    """分页结果（页码从 1 开始）"""
    items: List[T]
    total: int = 0
    page: int = 1
    page_size: int = 20
    total_pages: int = 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_previous(self) -> bool:
        return self.page > 1


class Pager(Generic[T]):
    """
    翻页器

    包装一个 fetch(page, page_size) 函数，记住当前页，提供首页/上一页/下一页/末页
    """

    def __init__(self, fetch: Callable[[int, int], Page[T]], page_size: int = 20):
        self._fetch = fetch
        self.page_size = page_size
        self.current: Optional[Page[T]] = None

    def goto(self, page: int) -> Page[T]:
        if self.current is not None and self.current.total_pages:
            page = min(page, self.current.total_pages)
        self.current = self._fetch(max(1, page), self.page_size)
        return self.current

    def first(self) -> Page[T]:
        return self.goto(1)

    def last(self) -> Page[T]:
        if self.current is None:
            self.first()
        return self.goto(max(1, self.current.total_pages))

    def next(self) -> Page[T]:
        if self.current is None:
            return self.first()
        return self.goto(self.current.page + 1) if self.current.has_next else self.current

    def previous(self) -> Page[T]:
        if self.current is None:
            return self.first()
        return self.goto(self.current.page - 1) if self.current.has_previous else self.current

    def refresh(self) -> Page[T]:
        return self.goto(self.current.page if self.current else 1)


def parse_page(data: Any, item_type: Callable[..., T]) -> Page[T]:
    """将服务端分页数据转换为 Page"""
    data = data or {}
    return Page[Any](
        items=[item_type(**item) for item in data.get("items", [])],
        total=data.get("total", 0),
        page=data.get("page", 1),
        page_size=data.get("page_size", 20),
        total_pages=data.get("total_pages", 0)
    )
