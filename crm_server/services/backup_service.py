"""
数据库备份服务
备份文件为 SQL 文本：每张表先 DELETE 再逐行 INSERT，恢复时在一个事务内顺序执行
"""

import logging
import os
import re
import sqlite3
from datetime import datetime
from typing import List, Dict, Any

from crm_server import config
from crm_server.database import get_pool
from crm_server.services.customer_service import CustomerService

logger = logging.getLogger(__name__)

# 父表在前，恢复时插入顺序满足外键约束
BACKUP_TABLES = ["users", "upload_tasks", "customers", "customer_remarks", "operation_logs"]

BACKUP_FILE_PATTERN = re.compile(r"^[\w.-]+\.sql$")
ALLOWED_STATEMENT = re.compile(
    r'^\s*(DELETE\s+FROM|INSERT\s+INTO)\s+"?(%s)"?[\s(;]' % "|".join(BACKUP_TABLES),
    re.IGNORECASE
)


class BackupError(Exception):
    """备份/恢复失败"""
    pass


def get_backup_dir() -> str:
    backup_dir = os.path.abspath(config.BACKUP_DIR)
    os.makedirs(backup_dir, exist_ok=True)
    return backup_dir


def resolve_backup_path(file_name: str) -> str:
    """
    校验备份文件名并返回完整路径

    Raises:
        BackupError: 文件名不合法（路径穿越或非 .sql）
    """
    if not file_name or ".." in file_name or not BACKUP_FILE_PATTERN.match(file_name):
        raise BackupError("无效的备份文件名")
    return os.path.join(get_backup_dir(), file_name)


def _dump_table(conn: sqlite3.Connection, table: str) -> List[str]:
    columns = [row["name"] for row in conn.execute(f'PRAGMA table_info("{table}")')]
    column_list = ", ".join(f'"{c}"' for c in columns)
    values_expr = " || ',' || ".join(f'quote("{c}")' for c in columns)
    statements = [f'DELETE FROM "{table}";']
    for row in conn.execute(
        f"""SELECT 'INSERT INTO "{table}" ({column_list}) VALUES(' || {values_expr} || ');'
            FROM "{table}" ORDER BY rowid"""
    ):
        statements.append(row[0])
    return statements


class BackupService:
    """备份服务类"""

    @staticmethod
    def create_backup() -> Dict[str, Any]:
        """
        创建备份文件 customer_db_backup_YYYYMMDD_HHMMSS.sql

        Returns:
            {"fileName", "fileSize", "filePath"}
        """
        now = datetime.now()
        file_name = f"customer_db_backup_{now.strftime('%Y%m%d_%H%M%S')}.sql"
        file_path = os.path.join(get_backup_dir(), file_name)

        with get_pool().get_connection() as conn:
            with open(file_path, "w", encoding="utf-8") as f:
                f.write("-- Kehu CRM 数据库备份\n")
                f.write(f"-- 备份时间: {now.strftime('%Y-%m-%d %H:%M:%S')}\n\n")
                for table in BACKUP_TABLES:
                    f.write(f"-- 表: {table}\n")
                    for statement in _dump_table(conn, table):
                        f.write(statement)
                        f.write("\n")
                    f.write("\n")

        file_size = os.path.getsize(file_path)
        logger.info(f"数据库备份完成: {file_name} ({file_size} 字节)")
        return {"fileName": file_name, "fileSize": file_size, "filePath": file_path}

    @staticmethod
    def list_backups() -> List[Dict[str, Any]]:
        """列出备份文件（按修改时间倒序）"""
        backup_dir = get_backup_dir()
        backups = []
        for name in os.listdir(backup_dir):
            path = os.path.join(backup_dir, name)
            if not name.endswith(".sql") or not os.path.isfile(path):
                continue
            stat = os.stat(path)
            backups.append({
                "fileName": name,
                "fileSize": stat.st_size,
                "createTime": datetime.fromtimestamp(stat.st_mtime).strftime('%Y-%m-%d %H:%M:%S'),
                "_mtime": stat.st_mtime
            })
        backups.sort(key=lambda item: (item["_mtime"], item["fileName"]), reverse=True)
        for item in backups:
            item.pop("_mtime")
        return backups

    @staticmethod
    def delete_backup(file_name: str) -> bool:
        """删除备份文件，不存在返回 False"""
        path = resolve_backup_path(file_name)
        if not os.path.isfile(path):
            return False
        os.remove(path)
        logger.info(f"已删除备份文件: {file_name}")
        return True

    @staticmethod
    def split_statements(sql_text: str) -> List[str]:
        """
        拆分备份脚本为语句列表

        跳过 -- 开头的注释行，语句是否完整由 sqlite3.complete_statement 判断，
        字符串内的换行和分号不会被误拆
        """
        statements = []
        buffer = ""
        for line in sql_text.splitlines(keepends=True):
            if not buffer and (not line.strip() or line.lstrip().startswith("--")):
                continue
            buffer += line
            if sqlite3.complete_statement(buffer):
                statements.append(buffer.strip())
                buffer = ""
        if buffer.strip():
            raise BackupError("备份文件不完整：最后一条语句未结束")
        return statements

    @staticmethod
    def restore(sql_text: str) -> int:
        """
        从备份脚本恢复数据

        只允许针对业务表的 DELETE/INSERT 语句，全部语句在一个事务中执行，
        任一语句失败则整体回滚

        Returns:
            执行的语句数

        Raises:
            BackupError: 脚本为空、包含不允许的语句或执行失败
        """
        statements = BackupService.split_statements(sql_text)
        if not statements:
            raise BackupError("备份文件中没有可执行的语句")

        for statement in statements:
            if not ALLOWED_STATEMENT.match(statement):
                raise BackupError(f"备份文件包含不允许的语句: {statement[:60]}")

        try:
            with get_pool().get_connection() as conn:
                for statement in statements:
                    conn.execute(statement)
        except sqlite3.Error as e:
            logger.error(f"恢复数据库失败: {e}")
            raise BackupError(f"恢复失败: {e}")

        CustomerService.invalidate_count_cache()
        logger.info(f"数据库恢复完成，共执行 {len(statements)} 条语句")
        return len(statements)
