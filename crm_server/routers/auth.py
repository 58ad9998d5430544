"""
认证路由
处理登录、登出、当前用户查询
"""

import logging
from fastapi import APIRouter, HTTPException, status, Depends, Request

from crm_server.database import get_pool, get_local_time_str
from crm_server.middleware import verify_password, create_access_token, get_current_user
from crm_server.models import (
    UserLogin,
    LoginResponse,
    CurrentUserResponse,
    BaseResponse,
    OperationType,
    OperationModule,
    UserRole
)
from crm_server.services.operation_log_service import OperationLogService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["认证"])


@router.post("/login", response_model=BaseResponse)
async def login(login_data: UserLogin, request: Request):
    """
    用户登录

    Args:
        login_data: 登录数据（用户名和密码）

    Returns:
        Token 与用户信息（username、realName、role）
    """
    username = (login_data.username or "").strip()
    password = login_data.password or ""
    if not username or not password:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="用户名和密码不能为空"
        )

    pool = get_pool()
    try:
        with pool.get_connection() as conn:
            user = conn.execute(
                "SELECT id, username, password, real_name, role FROM users WHERE username = ?",
                (username,)
            ).fetchone()

            if user is None or not verify_password(password, user["password"]):
                OperationLogService.log_failure(
                    request, username, OperationType.LOGIN.value, OperationModule.AUTH.value,
                    description="用户登录", error_message="用户名或密码错误"
                )
                logger.warning(f"登录失败: {username}")
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail="用户名或密码错误"
                )

            conn.execute(
                "UPDATE users SET last_login_at = ? WHERE id = ?",
                (get_local_time_str(), user["id"])
            )

        role = user["role"] or UserRole.VIEWER.value
        token = create_access_token(data={
            "user_id": user["id"],
            "username": user["username"],
            "role": role
        })

        OperationLogService.log_success(
            request, username, OperationType.LOGIN.value, OperationModule.AUTH.value,
            description="用户登录", target_id=user["id"]
        )
        logger.info(f"用户登录成功: {username} ({role})")

        return BaseResponse(
            success=True,
            message="登录成功",
            data=LoginResponse(
                token=token,
                username=user["username"],
                realName=user["real_name"],
                role=role
            ).model_dump()
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"用户登录失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"登录失败: {str(e)}"
        )


@router.post("/logout", response_model=BaseResponse)
async def logout(request: Request, current_user: dict = Depends(get_current_user)):
    """
    用户登出

    Token 为无状态令牌，登出只记录日志，由客户端丢弃 Token
    """
    OperationLogService.log_success(
        request, current_user["username"], OperationType.LOGOUT.value, OperationModule.AUTH.value,
        description="用户登出", target_id=current_user["user_id"]
    )
    logger.info(f"用户登出: {current_user['username']}")
    return BaseResponse(success=True, message="登出成功")


@router.get("/current", response_model=BaseResponse)
async def get_current_user_info(current_user: dict = Depends(get_current_user)):
    """
    获取当前登录用户信息
    """
    return BaseResponse(
        success=True,
        message="获取用户信息成功",
        data=CurrentUserResponse(
            username=current_user["username"],
            realName=current_user["real_name"],
            role=current_user["role"]
        ).model_dump()
    )


@router.get("/users/count", response_model=BaseResponse)
async def get_user_count(current_user: dict = Depends(get_current_user)):
    """
    获取用户总数
    """
    pool = get_pool()
    try:
        with pool.get_connection() as conn:
            count = conn.execute("SELECT COUNT(*) FROM users").fetchone()[0]
        return BaseResponse(success=True, message="获取用户总数成功", data={"count": count})
    except Exception as e:
        logger.error(f"获取用户总数失败: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"获取用户总数失败: {str(e)}"
        )
