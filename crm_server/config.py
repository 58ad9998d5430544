"""
运行配置
从环境变量读取，未设置时使用默认值
"""

import os

# 默认路径为 data/kehu_crm.db，相对于 crm_server 目录
DB_PATH = os.getenv("DB_PATH", "data/kehu_crm.db")
DB_MAX_CONNECTIONS = int(os.getenv("DB_MAX_CONNECTIONS", "10"))
DB_BUSY_TIMEOUT = int(os.getenv("DB_BUSY_TIMEOUT", "5000"))
SECRET_KEY = os.getenv("SECRET_KEY", "your-secret-key-change-this-in-production")
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "9000"))

# 文件目录：直传/合并后的文件、分块临时目录、备份目录
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "data/uploads")
CHUNK_DIR = os.getenv("CHUNK_DIR", "data/chunk_uploads")
BACKUP_DIR = os.getenv("BACKUP_DIR", "backups")

# 后台导入线程数
IMPORT_WORKERS = int(os.getenv("IMPORT_WORKERS", "4"))

# 分块目录清理间隔（秒）
CHUNK_SWEEP_INTERVAL = int(os.getenv("CHUNK_SWEEP_INTERVAL", "3600"))
