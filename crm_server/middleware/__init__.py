"""
中间件模块
"""

# 从 core.py 导入所有必要的函数和类
# 这样其他模块可以从 crm_server.middleware 包中导入这些函数
from crm_server.middleware.core import (
    # 密码加密
    verify_password,
    get_password_hash,
    # JWT Token 管理
    create_access_token,
    decode_access_token,
    # 认证依赖
    get_current_user,
    require_admin,
    security,
    # 请求辅助
    get_client_ip,
    # 中间件
    logging_middleware,
    error_handler_middleware,
    # 配置函数
    setup_middleware,
    update_secret_key,
)

__all__ = [
    # 密码加密
    "verify_password",
    "get_password_hash",
    # JWT Token 管理
    "create_access_token",
    "decode_access_token",
    # 认证依赖
    "get_current_user",
    "require_admin",
    "security",
    # 请求辅助
    "get_client_ip",
    # 中间件
    "logging_middleware",
    "error_handler_middleware",
    # 配置函数
    "setup_middleware",
    "update_secret_key",
]
