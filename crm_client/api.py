"""
HTTP 客户端
封装 requests 会话：携带 Bearer Token、拆开 {success, message, data} 响应、把错误状态码转换为异常
"""

import logging
from typing import Any, Dict, Optional

import requests

from crm_client import config
from crm_client.errors import (
    ApiError,
    AuthenticationError,
    PermissionDeniedError,
    NotFoundError,
    ValidationError,
    GatewayTimeoutError,
    NetworkError,
    RequestTimeoutError
)
from crm_client.state import StateStore, KEY_TOKEN

logger = logging.getLogger(__name__)

STATUS_ERRORS = {
    400: ValidationError,
    401: AuthenticationError,
    403: PermissionDeniedError,
    404: NotFoundError,
    422: ValidationError,
    504: GatewayTimeoutError,
    524: GatewayTimeoutError,
}


def _error_message(response) -> str:
    """从错误响应中取出可读信息，优先 message，其次 detail"""
    try:
        body = response.json()
    except ValueError:
        text = (response.text or "").strip()
        return text[:200] or f"HTTP {response.status_code}"

    if isinstance(body, dict):
        message = body.get("message") or body.get("detail")
        if isinstance(message, list):
            # 参数校验错误：[{loc, msg, ...}]
            parts = []
            for item in message:
                if isinstance(item, dict):
                    loc = ".".join(str(p) for p in item.get("loc", []) if p != "body")
                    parts.append(f"{loc}: {item.get('msg')}" if loc else str(item.get("msg")))
                else:
                    parts.append(str(item))
            return "; ".join(parts)
        if message:
            return str(message)
    return f"HTTP {response.status_code}"


class ApiClient:
    """
    后端接口客户端

    Args:
        base_url: 服务地址，如 http://127.0.0.1:9000
        session: requests.Session 兼容对象（测试时可注入 TestClient）
        state: 本地状态存储，Token 从这里读写
        timeout: 默认请求超时（秒）
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        session=None,
        state: Optional[StateStore] = None,
        timeout: float = config.REQUEST_TIMEOUT
    ):
        self.base_url = (base_url or config.BASE_URL).rstrip("/")
        self.session = session if session is not None else requests.Session()
        self.state = state if state is not None else StateStore()
        self.timeout = timeout

    # ==================== Token ====================

    @property
    def token(self) -> Optional[str]:
        return self.state.get(KEY_TOKEN)

    def set_token(self, token: Optional[str]):
        if token:
            self.state.set(KEY_TOKEN, token)
        else:
            self.state.delete(KEY_TOKEN)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        token = self.token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    # ==================== 请求 ====================

    def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        data: Optional[Dict[str, str]] = None,
        files: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
        raw: bool = False
    ) -> Any:
        """
        发送请求

        Args:
            raw: 为 True 时返回响应对象本身（下载文件用）

        Returns:
            响应体中的 data 字段

        Raises:
            ApiError 及其子类
        """
        url = f"{self.base_url}{path}"
        if params:
            params = {k: v for k, v in params.items() if v is not None and v != ""}

        try:
            response = self.session.request(
                method,
                url,
                params=params or None,
                json=json,
                data=data,
                files=files,
                headers=self._headers(),
                timeout=timeout or self.timeout
            )
        except requests.Timeout as e:
            logger.warning(f"请求超时: {method} {path}")
            raise RequestTimeoutError(f"请求超时: {e}")
        except requests.RequestException as e:
            logger.warning(f"网络错误: {method} {path}, {e}")
            raise NetworkError(f"网络错误: {e}")

        status_code = response.status_code
        if status_code >= 400:
            message = _error_message(response)
            error_class = STATUS_ERRORS.get(status_code, ApiError)
            if status_code == 401:
                # Token 失效后不再携带
                self.set_token(None)
            logger.debug(f"{method} {path} -> {status_code}: {message}")
            raise error_class(message, status_code)

        if raw:
            return response

        try:
            body = response.json()
        except ValueError:
            raise ApiError("服务器返回了无法解析的响应", status_code)

        if isinstance(body, dict) and "success" in body:
            if not body.get("success"):
                raise ApiError(body.get("message") or "请求失败", status_code)
            return body.get("data")
        return body

    def get(self, path: str, **kwargs) -> Any:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, **kwargs) -> Any:
        return self.request("POST", path, **kwargs)

    def put(self, path: str, **kwargs) -> Any:
        return self.request("PUT", path, **kwargs)

    def delete(self, path: str, **kwargs) -> Any:
        return self.request("DELETE", path, **kwargs)
