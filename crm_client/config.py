"""
客户端配置
从环境变量读取，命令行参数可覆盖
"""

import os

BASE_URL = os.getenv("CRM_BASE_URL", "http://127.0.0.1:9000")
STATE_FILE = os.getenv("CRM_STATE_FILE", os.path.join(os.path.expanduser("~"), ".kehu_crm", "state.json"))
REQUEST_TIMEOUT = float(os.getenv("CRM_REQUEST_TIMEOUT", "30"))
# 直传大文件时服务端保存耗时较长，单独设置超时
UPLOAD_TIMEOUT = float(os.getenv("CRM_UPLOAD_TIMEOUT", "600"))

# 导入相关
MAX_CLIENT_FILE_SIZE = 500 * 1024 * 1024
CHUNK_SIZE = 5 * 1024 * 1024
CHUNK_THRESHOLD = 10 * 1024 * 1024
ALLOWED_EXTENSIONS = (".xlsx", ".csv")
POLL_INTERVAL = float(os.getenv("CRM_POLL_INTERVAL", "3"))
MAX_WAIT_SECONDS = 60 * 60
CHUNK_RETRIES = 3
UPLOAD_INFO_TTL = 5 * 60
# 上传或合并超时后找回任务的时间窗口，需覆盖整个上传超时
RECOVER_WINDOW = UPLOAD_TIMEOUT + UPLOAD_INFO_TTL

MAX_BATCH_QUERY_ITEMS = 500
