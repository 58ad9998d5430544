"""
客户端异常
"""

from typing import Optional


class ApiError(Exception):
    """接口返回错误"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message if status_code is None else f"[{status_code}] {message}")


class AuthenticationError(ApiError):
    """未登录或登录已失效（401）"""
    pass


class PermissionDeniedError(ApiError):
    """权限不足（403），查看者执行管理员操作时也在本地抛出"""
    pass


class NotFoundError(ApiError):
    """资源不存在（404）"""
    pass


class ValidationError(ApiError):
    """请求参数错误（400/422）"""
    pass


class GatewayTimeoutError(ApiError):
    """网关超时（504/524），服务端可能仍在处理"""
    pass


class NetworkError(ApiError):
    """网络错误，未收到响应"""
    pass


class RequestTimeoutError(NetworkError):
    """请求超时"""
    pass


class ImportFailedError(Exception):
    """导入失败"""
    pass


class ImportCancelledError(ImportFailedError):
    """导入被取消"""
    pass


class ImportTimeoutError(ImportFailedError):
    """等待导入任务超时，任务 ID 仍保留以便恢复"""
    pass
