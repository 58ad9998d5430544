"""
数据库连接池和并发控制管理
支持 SQLite 多连接并发访问，后台导入线程与请求处理共享同一个连接池
"""

import sqlite3
import threading
import time
import logging
from contextlib import contextmanager
from datetime import datetime
from queue import Queue, Empty, Full
from typing import Optional, Any
import os
import sys

logger = logging.getLogger(__name__)

# 当前数据库结构版本
SCHEMA_VERSION = 2


def get_local_time_str() -> str:
    """
    获取本地时间字符串（格式：YYYY-MM-DD HH:MM:SS）

    SQLite 的 datetime('now') 返回 UTC 时间，业务数据统一存本地时间
    """
    return datetime.now().strftime('%Y-%m-%d %H:%M:%S')


def normalize_time_param(value: Optional[str], end_of_day: bool = False) -> Optional[str]:
    """
    将查询参数中的时间转换为数据库存储格式

    支持 "2025-01-01"、"2025-01-01T08:00"、"2025-01-01 08:00:00" 等写法，
    只有日期时按一天的开始或结束补全
    """
    if value is None or not value.strip():
        return None
    value = value.strip().replace("T", " ")
    if len(value) == 10:
        return value + (" 23:59:59" if end_of_day else " 00:00:00")
    if len(value) == 16:
        return value + (":59" if end_of_day else ":00")
    return value[:19]


class SQLiteConnectionPool:
    """
    SQLite 连接池管理器
    解决 SQLite 并发访问问题，提供连接池和繁忙检测
    """

    def __init__(
        self,
        db_path: str,
        max_connections: int = 10,
        timeout: float = 30.0,
        busy_timeout: int = 5000  # SQLite busy timeout (毫秒)
    ):
        """
        初始化连接池

        Args:
            db_path: 数据库文件路径
            max_connections: 最大连接数
            timeout: 获取连接的超时时间（秒）
            busy_timeout: SQLite busy timeout（毫秒）
        """
        self.db_path = db_path
        self.max_connections = max_connections
        self.timeout = timeout
        self.busy_timeout = busy_timeout

        self._pool: Queue = Queue(maxsize=max_connections)
        self._active_connections = 0
        self._lock = threading.Lock()
        self._stats = {
            'total_connections': 0,
            'active_connections': 0,
            'pool_size': 0,
            'busy_errors': 0
        }

        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)

        self._initialize_pool()
        self._initialize_database()

        logger.info(f"SQLite 连接池初始化完成: {db_path}, 最大连接数: {max_connections}")

    def _initialize_pool(self):
        """预创建少量连接"""
        for _ in range(min(3, self.max_connections)):
            conn = self._create_connection()
            if conn:
                self._pool.put(conn)
                self._stats['total_connections'] += 1

    def _create_connection(self) -> Optional[sqlite3.Connection]:
        """
        创建新的数据库连接

        Returns:
            SQLite 连接对象，失败返回 None
        """
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout / 1000.0,
                check_same_thread=False  # 后台导入线程也会使用连接
            )
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout}")
            conn.row_factory = sqlite3.Row
            return conn
        except sqlite3.Error as e:
            logger.error(f"创建数据库连接失败: {e}")
            return None

    def _initialize_database(self):
        """初始化或升级数据库结构"""
        with self.get_connection() as conn:
            version = conn.execute("PRAGMA user_version").fetchone()[0]

            if version == 0:
                logger.info("首次创建数据库，执行初始化脚本...")
                self._create_tables(conn)
                self._set_version(conn, SCHEMA_VERSION)
            elif version < SCHEMA_VERSION:
                logger.info(f"数据库版本: {version}, 升级到 {SCHEMA_VERSION}")
                self._upgrade_database(conn, version)
                self._set_version(conn, SCHEMA_VERSION)

    def _create_tables(self, conn: sqlite3.Connection):
        """创建所有表"""
        # 用户表
        conn.execute('''
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT NOT NULL UNIQUE,
                password TEXT NOT NULL,
                real_name TEXT,
                role TEXT NOT NULL DEFAULT 'VIEWER' CHECK(role IN ('ADMIN', 'VIEWER')),
                created_at TEXT,
                last_login_at TEXT
            )
        ''')

        # 上传任务表
        conn.execute('''
            CREATE TABLE IF NOT EXISTS upload_tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                file_name TEXT NOT NULL,
                total_count INTEGER DEFAULT 0,
                added_count INTEGER DEFAULT 0,
                existing_count INTEGER DEFAULT 0,
                error_count INTEGER DEFAULT 0,
                status TEXT NOT NULL DEFAULT '处理中',
                remarks TEXT,
                upload_time TEXT,
                complete_time TEXT
            )
        ''')

        # 客户表
        conn.execute('''
            CREATE TABLE IF NOT EXISTS customers (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                phone TEXT,
                email TEXT,
                address TEXT,
                upload_task_id INTEGER,
                create_time TEXT,
                update_time TEXT,
                FOREIGN KEY (upload_task_id) REFERENCES upload_tasks (id) ON DELETE SET NULL
            )
        ''')

        # 客户备注表（每个客户一条）
        conn.execute('''
            CREATE TABLE IF NOT EXISTS customer_remarks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                customer_id INTEGER NOT NULL UNIQUE,
                remarks TEXT NOT NULL,
                create_time TEXT,
                update_time TEXT,
                FOREIGN KEY (customer_id) REFERENCES customers (id) ON DELETE CASCADE
            )
        ''')

        # 操作日志表
        conn.execute('''
            CREATE TABLE IF NOT EXISTS operation_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                username TEXT,
                operation TEXT NOT NULL,
                module TEXT NOT NULL,
                description TEXT,
                ip_address TEXT,
                target_id INTEGER,
                result TEXT NOT NULL DEFAULT 'SUCCESS' CHECK(result IN ('SUCCESS', 'FAILURE')),
                error_message TEXT,
                operation_time TEXT
            )
        ''')

        self._create_indexes(conn)
        conn.commit()
        logger.info("数据库表创建完成")

    def _create_indexes(self, conn: sqlite3.Connection):
        """创建索引"""
        conn.execute('CREATE INDEX IF NOT EXISTS idx_customers_phone ON customers(phone)')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_customers_name ON customers(name)')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_customers_create_time ON customers(create_time)')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_customers_task ON customers(upload_task_id)')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_tasks_status ON upload_tasks(status)')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_logs_time ON operation_logs(operation_time DESC)')
        conn.execute('CREATE INDEX IF NOT EXISTS idx_logs_user_op ON operation_logs(username, operation)')

    def _upgrade_database(self, conn: sqlite3.Connection, old_version: int):
        """
        升级数据库结构

        版本 1 -> 2：新增 customer_remarks 表与查询索引
        """
        if old_version < 2:
            self._create_tables(conn)
        conn.commit()
        logger.info("数据库升级完成")

    def _set_version(self, conn: sqlite3.Connection, version: int):
        """设置数据库版本"""
        conn.execute(f"PRAGMA user_version = {version}")
        conn.commit()

    @contextmanager
    def get_connection(self):
        """
        获取数据库连接的上下文管理器
        自动处理连接的获取、归还、提交和回滚

        Usage:
            with pool.get_connection() as conn:
                rows = conn.execute("SELECT * FROM customers").fetchall()
        """
        conn = None
        try:
            conn = self._acquire_connection()
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            if conn:
                conn.rollback()
            if "database is locked" in str(e).lower():
                self._stats['busy_errors'] += 1
                logger.warning(f"数据库锁定错误: {e}")
                raise DatabaseBusyError(f"数据库暂时繁忙，请稍后重试: {e}")
            logger.error(f"数据库操作错误: {e}")
            raise
        except Exception:
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                self._release_connection(conn)

    def _acquire_connection(self) -> sqlite3.Connection:
        """从连接池获取连接，池空时按需新建，超时抛出 ConnectionTimeoutError"""
        start_time = time.time()

        while True:
            try:
                conn = self._pool.get(timeout=0.1)
                with self._lock:
                    self._active_connections += 1
                    self._stats['active_connections'] = self._active_connections
                    self._stats['pool_size'] = self._pool.qsize()
                return conn
            except Empty:
                with self._lock:
                    if self._active_connections < self.max_connections:
                        conn = self._create_connection()
                        if conn:
                            self._active_connections += 1
                            self._stats['total_connections'] += 1
                            self._stats['active_connections'] = self._active_connections
                            return conn

                if time.time() - start_time >= self.timeout:
                    raise ConnectionTimeoutError(
                        f"获取数据库连接超时 ({self.timeout}秒)，当前活跃连接: "
                        f"{self._active_connections}/{self.max_connections}"
                    )
                time.sleep(0.05)

    def _release_connection(self, conn: sqlite3.Connection):
        """将连接归还到连接池"""
        with self._lock:
            self._active_connections -= 1
            self._stats['active_connections'] = self._active_connections

        try:
            conn.rollback()
            conn.execute("SELECT 1")
        except sqlite3.Error:
            logger.warning("检测到损坏的连接，丢弃")
            conn.close()
            return

        try:
            self._pool.put_nowait(conn)
            self._stats['pool_size'] = self._pool.qsize()
        except Full:
            conn.close()

    def get_stats(self) -> dict:
        """获取连接池统计信息"""
        with self._lock:
            return {
                **self._stats,
                'pool_size': self._pool.qsize(),
                'active_connections': self._active_connections,
                'max_connections': self.max_connections
            }

    def close_all(self):
        """关闭所有空闲连接"""
        logger.info("关闭所有数据库连接...")
        while True:
            try:
                conn = self._pool.get_nowait()
            except Empty:
                break
            conn.close()

        with self._lock:
            self._active_connections = 0
            self._stats['active_connections'] = 0
            self._stats['pool_size'] = 0


# 全局连接池实例
_pool: Optional[SQLiteConnectionPool] = None


def _resolve_db_path(db_path: str) -> str:
    """
    解析数据库路径

    以 "data/" 开头的相对路径相对于 crm_server 包目录，其余相对于当前工作目录
    """
    if os.path.isabs(db_path):
        return db_path

    if db_path.startswith("data/"):
        module = sys.modules.get('crm_server')
        if module and getattr(module, '__file__', None):
            package_dir = os.path.dirname(os.path.abspath(module.__file__))
            return os.path.join(package_dir, db_path)

    return os.path.abspath(db_path)


def init_database(
    db_path: str = "data/kehu_crm.db",
    max_connections: int = 10,
    **kwargs
) -> SQLiteConnectionPool:
    """
    初始化全局数据库连接池（重复调用返回已有实例）

    Args:
        db_path: 数据库文件路径
        max_connections: 最大连接数
        **kwargs: 其他连接池参数

    Returns:
        连接池实例
    """
    global _pool
    if _pool is None:
        _pool = SQLiteConnectionPool(_resolve_db_path(db_path), max_connections, **kwargs)
    return _pool


def get_pool() -> SQLiteConnectionPool:
    """
    获取全局连接池实例

    Raises:
        RuntimeError: 如果连接池未初始化
    """
    if _pool is None:
        raise RuntimeError("数据库连接池未初始化，请先调用 init_database()")
    return _pool


def close_database():
    """关闭并释放全局连接池"""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


# 自定义异常类
class DatabaseBusyError(Exception):
    """数据库繁忙错误"""
    pass


class ConnectionTimeoutError(Exception):
    """连接超时错误"""
    pass
