"""
FastAPI 应用主文件
整合所有路由、中间件和配置
"""

import logging
import asyncio
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.cors import CORSMiddleware

from crm_server import config
from crm_server.constants import APP_NAME, APP_VERSION
from crm_server.database import init_database, get_pool, close_database
from crm_server.middleware import setup_middleware, update_secret_key
from crm_server.routers import (
    auth,
    customers,
    imports,
    upload_tasks,
    operation_logs,
    backup
)
from crm_server.services.chunk_upload_service import ChunkUploadService
from crm_server.services.data_initializer import initialize_data
from crm_server.services.task_executor import TaskExecutor

logger = logging.getLogger(__name__)

DEFAULT_SECRET_KEY = "your-secret-key-change-this-in-production"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    应用生命周期管理
    启动时初始化数据库和默认数据，关闭时等待后台导入结束并释放连接
    """
    logger.info("正在启动应用...")

    try:
        init_database(
            db_path=config.DB_PATH,
            max_connections=config.DB_MAX_CONNECTIONS,
            busy_timeout=config.DB_BUSY_TIMEOUT
        )
        logger.info(f"数据库连接池初始化成功: {config.DB_PATH}")
        initialize_data()
    except Exception as e:
        logger.error(f"数据库初始化失败: {e}", exc_info=True)
        raise

    if config.SECRET_KEY != DEFAULT_SECRET_KEY:
        update_secret_key(config.SECRET_KEY)
        logger.info("JWT 密钥已从环境变量更新")
    else:
        logger.warning("⚠️  警告: 使用默认 JWT 密钥，生产环境请设置 SECRET_KEY 环境变量")

    async def sweep_task():
        """后台任务：定期清理未合并的过期分块"""
        while True:
            await asyncio.sleep(config.CHUNK_SWEEP_INTERVAL)
            try:
                await asyncio.to_thread(ChunkUploadService.sweep_expired)
            except Exception as e:
                logger.error(f"清理过期分块出错: {e}", exc_info=True)

    sweep_handle = asyncio.create_task(sweep_task())
    logger.info(f"分块清理任务已启动（每 {config.CHUNK_SWEEP_INTERVAL} 秒）")

    yield

    sweep_handle.cancel()
    try:
        await sweep_handle
    except asyncio.CancelledError:
        logger.info("分块清理任务已停止")

    logger.info("正在关闭应用...")
    TaskExecutor.shutdown(wait=True)
    close_database()
    logger.info("数据库连接池已关闭")


app = FastAPI(
    title=APP_NAME,
    description="客户管理系统后端 API 服务",
    version=APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

setup_middleware(app)

app.add_middleware(GZipMiddleware, minimum_size=1000)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # 生产环境应该限制具体域名
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 导入路由在客户路由之前注册，/api/customers/import 不会被 /{customer_id} 抢先匹配
app.include_router(auth.router)
app.include_router(imports.router)
app.include_router(customers.router)
app.include_router(upload_tasks.router)
app.include_router(operation_logs.router)
app.include_router(backup.router)

logger.info("所有路由已注册")


@app.get("/", tags=["系统"])
async def root():
    """
    根路径，返回 API 信息
    """
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "status": "running",
        "docs": "/docs",
        "redoc": "/redoc"
    }


@app.get("/health", tags=["系统"])
async def health_check():
    """
    健康检查端点
    """
    try:
        pool = get_pool()
        with pool.get_connection() as conn:
            conn.execute("SELECT 1").fetchone()
        return JSONResponse(
            status_code=200,
            content={
                "status": "healthy",
                "database": "connected",
                "version": APP_VERSION,
                "pool": pool.get_stats()
            }
        )
    except Exception as e:
        logger.error(f"健康检查失败: {e}")
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(e)
            }
        )


@app.get("/api/info", tags=["系统"])
async def api_info():
    """
    获取 API 信息
    """
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "description": "客户管理系统后端 API 服务",
        "endpoints": {
            "auth": "/api/auth",
            "customers": "/api/customers",
            "import": "/api/customers/import",
            "upload-tasks": "/api/upload-tasks",
            "operation-logs": "/api/operation-logs",
            "backup": "/api/backup"
        },
        "docs": "/docs",
        "redoc": "/redoc"
    }


def run():
    """命令行入口：启动 uvicorn"""
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logger.info(f"启动服务器: {config.HOST}:{config.PORT}")
    logger.info(f"数据库路径: {config.DB_PATH}")
    logger.info(f"API 文档: http://{config.HOST}:{config.PORT}/docs")

    uvicorn.run(
        "crm_server.main:app",
        host=config.HOST,
        port=config.PORT,
        log_level="info"
    )


if __name__ == "__main__":
    run()
