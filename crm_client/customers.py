"""
客户操作
列表、搜索、批量查询、增删改、备注与 CSV 导出
"""

import csv
import logging
import os
from datetime import date
from typing import Dict, Iterable, List, Optional

from crm_client.api import ApiClient
from crm_client.batch_query import parse_batch_input
from crm_client.errors import ValidationError
from crm_client.models import Customer, BatchQueryResult, Page, Pager, parse_page
from crm_client.session import SessionManager, admin_only

logger = logging.getLogger(__name__)

EXPORT_HEADERS = ["ID", "姓名", "电话", "邮箱", "地址", "导入文件", "备注", "创建时间", "更新时间"]


class CustomerClient:
    """客户接口"""

    def __init__(self, api: ApiClient, session: SessionManager):
        self.api = api
        self.session = session

    # ==================== 查询 ====================

    def list(self, page: int = 1, page_size: int = 20) -> Page[Customer]:
        data = self.api.get("/api/customers", params={"page": page, "page_size": page_size})
        return parse_page(data, Customer)

    def list_all(self) -> List[Customer]:
        return [Customer(**item) for item in self.api.get("/api/customers/all") or []]

    def pager(self, page_size: int = 20) -> Pager[Customer]:
        return Pager(self.list, page_size)

    def get(self, customer_id: int) -> Customer:
        return Customer(**self.api.get(f"/api/customers/{customer_id}"))

    def count(self) -> int:
        return (self.api.get("/api/customers/count") or {}).get("count", 0)

    def count_today(self) -> int:
        return (self.api.get("/api/customers/count/today") or {}).get("count", 0)

    def search(self, keyword: Optional[str] = None, page: int = 1, page_size: int = 20) -> Page[Customer]:
        """按姓名关键词搜索，关键词为空时等同于列表"""
        data = self.api.get(
            "/api/customers/search",
            params={"keyword": (keyword or "").strip(), "page": page, "page_size": page_size}
        )
        return parse_page(data, Customer)

    def advanced_search(
        self,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        address: Optional[str] = None,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
        upload_task_id: Optional[int] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Page[Customer]:
        """高级搜索，所有条件为 AND 关系"""
        params = {
            "name": name,
            "phone": phone,
            "email": email,
            "address": address,
            "startTime": start_time,
            "endTime": end_time,
            "uploadTaskId": upload_task_id,
            "page": page,
            "page_size": page_size
        }
        return parse_page(self.api.get("/api/customers/advanced-search", params=params), Customer)

    def batch_query(self, items: List[Dict[str, str]]) -> List[BatchQueryResult]:
        if not items:
            raise ValidationError("请输入查询条件")
        data = self.api.post("/api/customers/batch-query", json={"items": items})
        return [BatchQueryResult(**item) for item in data.get("results", [])]

    def batch_query_text(self, text: str) -> List[BatchQueryResult]:
        """解析多行文本后批量查询"""
        return self.batch_query(parse_batch_input(text))

    # ==================== 增删改（管理员） ====================

    @admin_only
    def create(self, name: str, phone: Optional[str] = None, email: Optional[str] = None,
               address: Optional[str] = None) -> Customer:
        payload = {"name": name, "phone": phone, "email": email, "address": address}
        return Customer(**self.api.post("/api/customers", json=payload))

    @admin_only
    def update(self, customer_id: int, name: str, phone: Optional[str] = None,
               email: Optional[str] = None, address: Optional[str] = None) -> Customer:
        """整体更新客户，未传的字段会被清空"""
        payload = {"name": name, "phone": phone, "email": email, "address": address}
        return Customer(**self.api.put(f"/api/customers/{customer_id}", json=payload))

    @admin_only
    def delete(self, customer_id: int):
        self.api.delete(f"/api/customers/{customer_id}")

    @admin_only
    def batch_delete(self, ids: Iterable[int]) -> int:
        ids = list(ids)
        if not ids:
            raise ValidationError("请选择要删除的客户")
        data = self.api.delete("/api/customers/batch", json={"ids": ids})
        return data.get("deletedCount", 0)

    # ==================== 备注 ====================

    def get_remark(self, customer_id: int) -> Optional[str]:
        return self.api.get(f"/api/customers/{customer_id}/remark").get("remarks")

    @admin_only
    def save_remark(self, customer_id: int, remarks: str) -> Optional[str]:
        """保存备注，内容为空时服务端删除备注并返回 None"""
        data = self.api.post(f"/api/customers/{customer_id}/remark", json={"remarks": remarks})
        return data.get("remarks")

    @admin_only
    def delete_remark(self, customer_id: int):
        self.api.delete(f"/api/customers/{customer_id}/remark")

    # ==================== 导出 ====================

    def export_csv(self, path: Optional[str] = None) -> str:
        """导出全部客户到 CSV，返回文件路径"""
        return export_customers_csv(self.list_all(), path)


def default_export_name(today: Optional[date] = None) -> str:
    return f"客户数据_{(today or date.today()).isoformat()}.csv"


def export_customers_csv(customers: Iterable[Customer], path: Optional[str] = None) -> str:
    """
    导出客户到 CSV（UTF-8 BOM，Excel 可直接打开）

    Args:
        customers: 客户列表
        path: 文件路径或目录，为空时写到当前目录下的默认文件名

    Returns:
        写入的文件路径
    """
    if not path:
        path = default_export_name()
    elif os.path.isdir(path):
        path = os.path.join(path, default_export_name())

    count = 0
    with open(path, "w", encoding="utf-8-sig", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(EXPORT_HEADERS)
        for customer in customers:
            writer.writerow([
                customer.id,
                customer.name,
                customer.phone or "",
                customer.email or "",
                customer.address or "",
                customer.uploadFileName or "",
                customer.remarks or "",
                customer.createTime or "",
                customer.updateTime or ""
            ])
            count += 1
    logger.info(f"导出客户 {count} 条: {path}")
    return path
