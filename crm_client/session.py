"""
会话与角色
登录、登出、当前用户，以及管理员操作的本地权限检查
"""

import functools
import logging
from typing import Optional

from crm_client.api import ApiClient
from crm_client.errors import AuthenticationError, PermissionDeniedError
from crm_client.models import UserSession

logger = logging.getLogger(__name__)

ADMIN_ONLY_MESSAGE = "权限不足，仅管理员可执行此操作"


class SessionManager:
    """管理当前登录用户，Token 保存在本地状态文件中"""

    def __init__(self, api: ApiClient):
        self.api = api
        self.user: Optional[UserSession] = None

    def login(self, username: str, password: str) -> UserSession:
        """
        登录并保存 Token

        Raises:
            ValidationError: 用户名或密码为空
            AuthenticationError: 用户名或密码错误
        """
        data = self.api.post("/api/auth/login", json={"username": username, "password": password})
        self.api.set_token(data["token"])
        self.user = UserSession(**data)
        logger.info(f"登录成功: {self.user.username} ({self.user.role_label})")
        return self.user

    def current(self, refresh: bool = False) -> UserSession:
        """
        获取当前用户，未缓存时向服务端查询

        Raises:
            AuthenticationError: 未登录或 Token 已失效
        """
        if self.user is not None and not refresh:
            return self.user
        if not self.api.token:
            raise AuthenticationError("未登录", 401)
        self.user = UserSession(**self.api.get("/api/auth/current"))
        return self.user

    def logout(self):
        """登出：通知服务端记录日志，并丢弃本地 Token"""
        try:
            if self.api.token:
                self.api.post("/api/auth/logout")
        except AuthenticationError:
            pass
        finally:
            self.api.set_token(None)
            self.user = None
        logger.info("已登出")

    @property
    def is_admin(self) -> bool:
        try:
            return self.current().is_admin
        except AuthenticationError:
            return False

    def require_admin(self):
        """非管理员时在本地拒绝，不发送请求"""
        if not self.current().is_admin:
            raise PermissionDeniedError(ADMIN_ONLY_MESSAGE, 403)


def admin_only(func):
    """装饰器：方法所属对象需有 session 属性，调用前检查管理员权限"""

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        self.session.require_admin()
        return func(self, *args, **kwargs)

    return wrapper
