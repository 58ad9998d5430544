"""
应用常量
"""

APP_NAME = "Kehu CRM API"
APP_VERSION = "1.0.0"

# 角色
ROLE_ADMIN = "ADMIN"
ROLE_VIEWER = "VIEWER"

# 导入相关限制
MAX_UPLOAD_SIZE = 1024 * 1024 * 1024  # 服务端单文件上限 1GB
ALLOWED_IMPORT_EXTENSIONS = (".xlsx", ".csv")
IMPORT_BATCH_SIZE = 10000
MAX_BATCH_QUERY_ITEMS = 500

# 客户总数缓存有效期（秒）
COUNT_CACHE_TTL = 5 * 60

# 分块上传临时目录过期时间（秒）
CHUNK_EXPIRE_SECONDS = 24 * 60 * 60
