"""
中间件和依赖注入
包含认证、角色校验、错误处理、请求日志等
"""

import time
import logging
import traceback
from typing import Optional
from datetime import datetime, timedelta, timezone

from fastapi import Request, HTTPException, status, Depends
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
from passlib.context import CryptContext

from crm_server.constants import ROLE_ADMIN, ROLE_VIEWER
from crm_server.database import get_pool, DatabaseBusyError, ConnectionTimeoutError
from crm_server.models import ErrorResponse

logger = logging.getLogger(__name__)

# JWT 配置
SECRET_KEY = "your-secret-key-change-this-in-production"  # 生产环境必须更改
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24  # 24 小时

# 密码加密上下文
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# HTTP Bearer Token 安全方案（缺少 Token 时由 get_current_user 返回 401）
security = HTTPBearer(auto_error=False)


# ==================== 密码加密 ====================

def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    验证密码

    Args:
        plain_password: 明文密码
        hashed_password: 哈希密码

    Returns:
        是否匹配
    """
    return pwd_context.verify(_truncate_password(plain_password), hashed_password)


def get_password_hash(password: str) -> str:
    """
    生成密码哈希

    Note:
        bcrypt 限制密码最大长度为 72 字节，超长密码会被截断
    """
    return pwd_context.hash(_truncate_password(password))


def _truncate_password(password: str) -> str:
    """按 UTF-8 字符边界截断到 72 字节以内"""
    truncated = password.encode('utf-8')[:72]
    while truncated:
        try:
            return truncated.decode('utf-8')
        except UnicodeDecodeError:
            truncated = truncated[:-1]
    return ""


# ==================== JWT Token 管理 ====================

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    创建 JWT 访问令牌

    Args:
        data: 要编码的数据（user_id、username、role）
        expires_delta: 过期时间增量

    Returns:
        JWT Token 字符串
    """
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire, "iat": now})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    """
    解码 JWT 访问令牌

    Returns:
        解码后的数据，失败返回 None
    """
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.warning(f"JWT 解码失败: {e}")
        return None


# ==================== 认证依赖 ====================

def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> dict:
    """
    从 Token 获取当前用户信息（依赖注入）

    角色以数据库为准，恢复备份后权限变化立即生效

    Returns:
        用户信息字典（user_id、username、real_name、role）

    Raises:
        HTTPException: 未登录、Token 无效或用户不存在时返回 401
    """
    if credentials is None:
        raise _unauthorized("请先登录")

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise _unauthorized("无效的认证令牌")

    user_id = payload.get("user_id")
    username = payload.get("username")
    if user_id is None or username is None:
        raise _unauthorized("令牌中缺少用户信息")

    pool = get_pool()
    with pool.get_connection() as conn:
        user = conn.execute(
            "SELECT id, username, real_name, role FROM users WHERE id = ? AND username = ?",
            (user_id, username)
        ).fetchone()

    if user is None:
        raise _unauthorized("用户不存在或已被删除")

    return {
        "user_id": user["id"],
        "username": user["username"],
        "real_name": user["real_name"],
        "role": user["role"] or ROLE_VIEWER
    }


async def require_admin(current_user: dict = Depends(get_current_user)) -> dict:
    """
    管理员权限依赖

    Raises:
        HTTPException: 非管理员返回 403
    """
    if current_user.get("role") != ROLE_ADMIN:
        logger.warning(f"用户 {current_user.get('username')} 尝试执行管理员操作")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="权限不足，仅管理员可执行此操作"
        )
    return current_user


def get_client_ip(request: Request) -> str:
    """
    获取客户端 IP，优先使用代理转发的 X-Forwarded-For 第一个地址
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first and first.lower() != "unknown":
            return first
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


# ==================== 中间件 ====================

async def logging_middleware(request: Request, call_next):
    """
    请求日志中间件
    记录请求方法、路径、状态码和耗时
    """
    start_time = time.time()
    logger.info(f"请求: {request.method} {request.url.path} - 客户端: {get_client_ip(request)}")

    try:
        response = await call_next(request)
    except Exception as e:
        process_time = time.time() - start_time
        logger.error(
            f"请求处理异常: {request.method} {request.url.path} - "
            f"错误: {str(e)} - 耗时: {process_time:.3f}秒"
        )
        raise

    process_time = time.time() - start_time
    logger.info(
        f"响应: {request.method} {request.url.path} - "
        f"状态码: {response.status_code} - 耗时: {process_time:.3f}秒"
    )
    response.headers["X-Process-Time"] = str(process_time)
    return response


async def error_handler_middleware(request: Request, call_next):
    """
    全局错误处理中间件
    捕获未处理异常并返回统一的错误响应
    """
    try:
        return await call_next(request)
    except DatabaseBusyError as e:
        logger.warning(f"数据库繁忙: {e}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=ErrorResponse(
                message="数据库暂时繁忙，请稍后重试",
                error_code="DATABASE_BUSY",
                details={"retry_after": 1}
            ).model_dump()
        )
    except ConnectionTimeoutError as e:
        logger.error(f"连接超时: {e}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=ErrorResponse(
                message="数据库连接超时，请稍后重试",
                error_code="CONNECTION_TIMEOUT"
            ).model_dump()
        )
    except Exception as e:
        logger.error(f"未处理的异常: {e}\n{traceback.format_exc()}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                message="服务器内部错误",
                error_code="INTERNAL_SERVER_ERROR"
            ).model_dump()
        )


# ==================== 配置函数 ====================

def setup_middleware(app):
    """
    设置所有中间件到 FastAPI 应用

    Args:
        app: FastAPI 应用实例
    """
    # 后添加的中间件先执行：日志在最外层，错误处理在内层
    app.middleware("http")(error_handler_middleware)
    app.middleware("http")(logging_middleware)
    logger.info("中间件设置完成")


def update_secret_key(new_secret_key: str):
    """
    更新 JWT 密钥（用于生产环境配置）
    """
    global SECRET_KEY
    SECRET_KEY = new_secret_key
    logger.info("JWT 密钥已更新")
