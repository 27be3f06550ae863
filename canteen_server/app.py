"""
食堂预订与取餐服务 - 主应用入口

主要功能模块：
- 时段容量预订
- 预订状态流转（备餐、取餐、未取）
- 支付网关对账
- 信用分管理
- 取餐码/二维码核销

技术栈：FastAPI + DuckDB + JWT认证
"""

import asyncio
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from .api import api_router
from .config.settings import settings
from .core.database import db_manager
from .core.error_handler import (
    application_error_handler,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from .core.exceptions import BaseApplicationError, DatabaseError
from .core.logger import get_logger
from .services.sweeper import start_sweep_scheduler

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    try:
        db_manager.init_database()
        logger.info("Database initialized successfully")
    except DatabaseError as e:
        # 不要让应用启动失败，允许在运行时重试
        logger.error(f"Database initialization failed: {e.message}")

    sweeper = None
    if settings.sweep_interval_seconds > 0:
        sweeper = asyncio.create_task(start_sweep_scheduler())

    yield

    if sweeper is not None:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper


def create_app() -> FastAPI:
    """创建FastAPI应用"""
    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="食堂预订与取餐系统API",
        debug=settings.debug,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 注册异常处理器
    app.add_exception_handler(BaseApplicationError, application_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/health")
    def health_check():
        try:
            db_manager.execute_one("SELECT 1 AS ok")
            return {
                "status": "healthy",
                "version": settings.api_version,
                "database": "connected"
            }
        except DatabaseError as e:
            return {
                "status": "unhealthy",
                "version": settings.api_version,
                "database": f"error: {e.message}"
            }

    @app.get("/")
    def root():
        return {
            "name": settings.api_title,
            "version": settings.api_version,
            "description": "食堂预订与取餐系统API"
        }

    return app


# 应用实例
app = create_app()
