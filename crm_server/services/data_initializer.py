"""
初始数据
首次启动时创建默认账号，客户表为空时写入示例客户
"""

import logging

from crm_server.constants import ROLE_ADMIN, ROLE_VIEWER
from crm_server.database import get_pool, get_local_time_str
from crm_server.middleware import get_password_hash
from crm_server.services.customer_service import CustomerService

logger = logging.getLogger(__name__)

DEFAULT_USERS = [
    ("admin", "admin123", "系统管理员", ROLE_ADMIN),
    ("viewer", "viewer123", "查看者", ROLE_VIEWER),
]

SAMPLE_CUSTOMERS = [
    ("张三", "13800138001", "zhangsan@example.com", "北京市朝阳区建国路88号"),
    ("李四", "13800138002", "lisi@example.com", "上海市浦东新区世纪大道100号"),
    ("王五", "13800138003", "wangwu@example.com", "广州市天河区天河路385号"),
    ("赵六", "13800138004", "zhaoliu@example.com", "深圳市南山区科技园南路18号"),
    ("钱七", "13800138005", "qianqi@example.com", "杭州市西湖区文三路90号"),
]


def initialize_data(seed_customers: bool = True):
    """
    写入初始数据（可重复调用）

    Args:
        seed_customers: 客户表为空时是否写入示例客户
    """
    pool = get_pool()
    now = get_local_time_str()

    with pool.get_connection() as conn:
        for username, password, real_name, role in DEFAULT_USERS:
            exists = conn.execute("SELECT id FROM users WHERE username = ?", (username,)).fetchone()
            if exists:
                continue
            conn.execute(
                """
                INSERT INTO users (username, password, real_name, role, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (username, get_password_hash(password), real_name, role, now)
            )
            logger.info(f"已创建默认用户: {username} ({role})")

        customer_count = conn.execute("SELECT COUNT(*) FROM customers").fetchone()[0]

    if seed_customers and customer_count == 0:
        logger.info("正在创建示例客户数据...")
        for name, phone, email, address in SAMPLE_CUSTOMERS:
            CustomerService.create_customer(name, phone, email, address)
        logger.info(f"已创建 {len(SAMPLE_CUSTOMERS)} 条示例客户数据")
