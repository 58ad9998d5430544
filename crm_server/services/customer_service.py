"""
客户数据服务
封装客户的查询、增删改、批量查询、批量导入以及备注管理
"""

import logging
import sqlite3
import threading
import time
from typing import Optional, Dict, Any, List, Tuple, Iterable

from crm_server.constants import COUNT_CACHE_TTL
from crm_server.database import get_pool, get_local_time_str, normalize_time_param

logger = logging.getLogger(__name__)

# 客户查询统一带出导入文件名和备注
CUSTOMER_SELECT = """
    SELECT c.id, c.name, c.phone, c.email, c.address, c.upload_task_id,
           c.create_time, c.update_time,
           t.file_name AS upload_file_name,
           r.remarks AS remarks
    FROM customers c
    LEFT JOIN upload_tasks t ON t.id = c.upload_task_id
    LEFT JOIN customer_remarks r ON r.customer_id = c.id
"""

# SQLite 单条语句参数上限为 999，IN 查询按此分段
_IN_CLAUSE_LIMIT = 900

_count_cache: Dict[str, Tuple[int, float]] = {}
_count_cache_lock = threading.Lock()


def _paginate(conn: sqlite3.Connection, where_clause: str, params: List[Any],
              page: int, page_size: int) -> Tuple[List[sqlite3.Row], int]:
    """按 id 升序分页查询客户"""
    total = conn.execute(
        f"SELECT COUNT(*) FROM customers c {where_clause}",
        params
    ).fetchone()[0]
    rows = conn.execute(
        f"{CUSTOMER_SELECT} {where_clause} ORDER BY c.id ASC LIMIT ? OFFSET ?",
        params + [page_size, (page - 1) * page_size]
    ).fetchall()
    return rows, total


class CustomerService:
    """客户服务类"""

    # ==================== 查询 ====================

    @staticmethod
    def list_customers(page: int = 1, page_size: int = 20) -> Tuple[List[sqlite3.Row], int]:
        """分页获取客户列表（按 ID 升序，保持导入顺序）"""
        with get_pool().get_connection() as conn:
            return _paginate(conn, "", [], page, page_size)

    @staticmethod
    def list_all() -> List[sqlite3.Row]:
        """获取全部客户"""
        with get_pool().get_connection() as conn:
            return conn.execute(f"{CUSTOMER_SELECT} ORDER BY c.id ASC").fetchall()

    @staticmethod
    def get_customer(customer_id: int) -> Optional[sqlite3.Row]:
        """按 ID 获取客户，不存在返回 None"""
        with get_pool().get_connection() as conn:
            return conn.execute(
                f"{CUSTOMER_SELECT} WHERE c.id = ?",
                (customer_id,)
            ).fetchone()

    @staticmethod
    def search(keyword: Optional[str], page: int = 1, page_size: int = 20) -> Tuple[List[sqlite3.Row], int]:
        """按姓名关键词搜索，关键词为空时返回全部"""
        if keyword is None or not keyword.strip():
            return CustomerService.list_customers(page, page_size)
        with get_pool().get_connection() as conn:
            return _paginate(conn, "WHERE c.name LIKE ?", [f"%{keyword.strip()}%"], page, page_size)

    @staticmethod
    def advanced_search(
        name: Optional[str] = None,
        phone: Optional[str] = None,
        email: Optional[str] = None,
        address: Optional[str] = None,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
        upload_task_id: Optional[int] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[sqlite3.Row], int]:
        """
        高级搜索

        文本条件为包含匹配，空字符串视为未填写；时间条件作用于创建时间，两端包含

        Returns:
            (客户行列表, 总数)
        """
        conditions = []
        params: List[Any] = []

        for column, value in (("name", name), ("phone", phone), ("email", email), ("address", address)):
            if value is not None and value.strip():
                conditions.append(f"c.{column} LIKE ?")
                params.append(f"%{value.strip()}%")

        start = normalize_time_param(start_time)
        end = normalize_time_param(end_time, end_of_day=True)
        if start:
            conditions.append("c.create_time >= ?")
            params.append(start)
        if end:
            conditions.append("c.create_time <= ?")
            params.append(end)
        if upload_task_id is not None:
            conditions.append("c.upload_task_id = ?")
            params.append(upload_task_id)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        with get_pool().get_connection() as conn:
            return _paginate(conn, where_clause, params, page, page_size)

    @staticmethod
    def batch_query(items: List[Dict[str, Optional[str]]]) -> List[Dict[str, Any]]:
        """
        批量查询客户

        每个查询项优先按电话精确匹配，未命中再按姓名包含匹配，取 ID 最小的一条

        Args:
            items: 查询项列表（name、phone、address）

        Returns:
            结果列表，每项包含 queryItem、customer（行或 None）、matched
        """
        results = []
        with get_pool().get_connection() as conn:
            for item in items:
                phone = (item.get("phone") or "").strip()
                name = (item.get("name") or "").strip()
                matched = None

                if phone:
                    matched = conn.execute(
                        f"{CUSTOMER_SELECT} WHERE c.phone = ? ORDER BY c.id ASC LIMIT 1",
                        (phone,)
                    ).fetchone()

                if matched is None and name:
                    matched = conn.execute(
                        f"{CUSTOMER_SELECT} WHERE c.name LIKE ? ORDER BY c.id ASC LIMIT 1",
                        (f"%{name}%",)
                    ).fetchone()

                results.append({
                    "queryItem": item,
                    "customer": matched,
                    "matched": matched is not None
                })
        return results

    # ==================== 统计 ====================

    @staticmethod
    def get_total_count() -> int:
        """获取客户总数（缓存 5 分钟，写操作后失效）"""
        with _count_cache_lock:
            cached = _count_cache.get("total")
            if cached and time.time() - cached[1] < COUNT_CACHE_TTL:
                return cached[0]

        with get_pool().get_connection() as conn:
            total = conn.execute("SELECT COUNT(*) FROM customers").fetchone()[0]

        with _count_cache_lock:
            _count_cache["total"] = (total, time.time())
        return total

    @staticmethod
    def invalidate_count_cache():
        """清除总数缓存"""
        with _count_cache_lock:
            _count_cache.pop("total", None)

    @staticmethod
    def get_today_count() -> int:
        """获取今日新增客户数"""
        today = get_local_time_str()[:10]
        with get_pool().get_connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM customers WHERE create_time BETWEEN ? AND ?",
                (f"{today} 00:00:00", f"{today} 23:59:59")
            ).fetchone()[0]

    # ==================== 增删改 ====================

    @staticmethod
    def create_customer(name: str, phone: Optional[str], email: Optional[str],
                        address: Optional[str], upload_task_id: Optional[int] = None) -> int:
        """创建客户，返回新 ID"""
        now = get_local_time_str()
        with get_pool().get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO customers (name, phone, email, address, upload_task_id, create_time, update_time)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (name, phone, email, address, upload_task_id, now, now)
            )
            customer_id = cursor.lastrowid
        CustomerService.invalidate_count_cache()
        return customer_id

    @staticmethod
    def update_customer(customer_id: int, name: str, phone: Optional[str],
                        email: Optional[str], address: Optional[str]) -> bool:
        """更新客户，不存在返回 False"""
        with get_pool().get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE customers
                SET name = ?, phone = ?, email = ?, address = ?, update_time = ?
                WHERE id = ?
                """,
                (name, phone, email, address, get_local_time_str(), customer_id)
            )
            return cursor.rowcount > 0

    @staticmethod
    def delete_customer(customer_id: int) -> bool:
        """删除客户（备注随外键级联删除），不存在返回 False"""
        with get_pool().get_connection() as conn:
            deleted = conn.execute("DELETE FROM customers WHERE id = ?", (customer_id,)).rowcount > 0
        if deleted:
            CustomerService.invalidate_count_cache()
        return deleted

    @staticmethod
    def batch_delete(ids: Iterable[int]) -> int:
        """批量删除客户，返回实际删除数量"""
        id_list = list(dict.fromkeys(ids))
        deleted = 0
        with get_pool().get_connection() as conn:
            for start in range(0, len(id_list), _IN_CLAUSE_LIMIT):
                part = id_list[start:start + _IN_CLAUSE_LIMIT]
                placeholders = ",".join("?" * len(part))
                deleted += conn.execute(
                    f"DELETE FROM customers WHERE id IN ({placeholders})",
                    part
                ).rowcount
        CustomerService.invalidate_count_cache()
        return deleted

    # ==================== 批量导入 ====================

    @staticmethod
    def batch_import(
        rows: List[Tuple[str, Optional[str], Optional[str], Optional[str]]],
        upload_task_id: Optional[int]
    ) -> Dict[str, Any]:
        """
        批量导入一批客户

        按电话去重：数据库中已存在或本批次内重复的电话计为已存在，不写入。
        整批写入失败时逐条重试，单条失败计入错误数。

        Args:
            rows: (姓名, 电话, 邮箱, 地址) 列表
            upload_task_id: 关联的上传任务

        Returns:
            {"added": int, "existing": int, "errors": [错误信息]}
        """
        started = time.time()
        phones = list({phone for _, phone, _, _ in rows if phone})
        existing_phones = set()
        pool = get_pool()

        with pool.get_connection() as conn:
            for start in range(0, len(phones), _IN_CLAUSE_LIMIT):
                part = phones[start:start + _IN_CLAUSE_LIMIT]
                placeholders = ",".join("?" * len(part))
                for row in conn.execute(
                    f"SELECT phone FROM customers WHERE phone IN ({placeholders})",
                    part
                ):
                    existing_phones.add(row[0])

        now = get_local_time_str()
        to_insert = []
        existing = 0
        seen = set()
        for name, phone, email, address in rows:
            if phone and (phone in existing_phones or phone in seen):
                existing += 1
                continue
            if phone:
                seen.add(phone)
            to_insert.append((name, phone, email, address, upload_task_id, now, now))

        insert_sql = """
            INSERT INTO customers (name, phone, email, address, upload_task_id, create_time, update_time)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """
        errors: List[str] = []
        added = 0
        try:
            with pool.get_connection() as conn:
                conn.executemany(insert_sql, to_insert)
            added = len(to_insert)
        except sqlite3.DatabaseError as e:
            logger.warning(f"批量写入失败，改为逐条写入: {e}")
            for record in to_insert:
                try:
                    with pool.get_connection() as conn:
                        conn.execute(insert_sql, record)
                    added += 1
                except sqlite3.DatabaseError as row_error:
                    errors.append(f"{record[0]}: {row_error}")

        if added:
            CustomerService.invalidate_count_cache()
        logger.info(
            f"批量导入完成: 新增 {added}, 已存在 {existing}, 失败 {len(errors)}, "
            f"耗时 {time.time() - started:.2f}秒"
        )
        return {"added": added, "existing": existing, "errors": errors}

    # ==================== 备注 ====================

    @staticmethod
    def get_remark(customer_id: int) -> Optional[str]:
        """获取客户备注"""
        with get_pool().get_connection() as conn:
            row = conn.execute(
                "SELECT remarks FROM customer_remarks WHERE customer_id = ?",
                (customer_id,)
            ).fetchone()
        return row["remarks"] if row else None

    @staticmethod
    def save_remark(customer_id: int, remarks: Optional[str]) -> Optional[str]:
        """
        保存客户备注

        内容会去除首尾空白，为空时删除备注

        Returns:
            保存后的备注，删除时返回 None
        """
        text = (remarks or "").strip()
        if not text:
            CustomerService.delete_remark(customer_id)
            return None

        now = get_local_time_str()
        with get_pool().get_connection() as conn:
            conn.execute(
                """
                INSERT INTO customer_remarks (customer_id, remarks, create_time, update_time)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(customer_id) DO UPDATE SET remarks = excluded.remarks,
                                                       update_time = excluded.update_time
                """,
                (customer_id, text, now, now)
            )
        return text

    @staticmethod
    def delete_remark(customer_id: int) -> bool:
        """删除客户备注"""
        with get_pool().get_connection() as conn:
            return conn.execute(
                "DELETE FROM customer_remarks WHERE customer_id = ?",
                (customer_id,)
            ).rowcount > 0
