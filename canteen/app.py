"""
食堂订餐后端服务 - 主应用入口

主要功能模块：
- 员工订餐、取餐申请、取餐码核验
- 食堂付款计算、出餐、拒绝出餐
- 赊账账本和按时间顺序的欠款冲抵
- 考勤机/自助机登录
- 看板统计、审计日志、访客用餐
- WebSocket 实时通知

技术栈：FastAPI + DuckDB + JWT认证
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from .api import api_router, device_router
from .config.logging import setup_logging
from .config.settings import settings
from .core.clock import Clock
from .core.database import DatabaseManager
from .core.error_handler import (
    application_error_handler,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from .core.exceptions import BaseApplicationError
from .services.notification_service import Publisher
from .services.registry import ServiceRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    setup_logging(settings.log_level, settings.log_json)
    services: ServiceRegistry = app.state.services
    services.db.init_database()
    logger.info("database initialized at %s", services.db.db_path)

    yield

    services.db.close()
    logger.info("database connection closed")


def create_app(db: Optional[DatabaseManager] = None, clock: Optional[Clock] = None,
               publisher: Optional[Publisher] = None) -> FastAPI:
    """创建FastAPI应用，测试时可注入数据库、时钟和发布者"""
    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="Canteen meal booking and loan ledger API",
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.services = ServiceRegistry.build(db=db, clock=clock, publisher=publisher)

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

    # 注册路由
    app.include_router(api_router, prefix=settings.api_prefix)
    app.include_router(device_router)

    @app.get("/health")
    def health_check():
        try:
            app.state.services.db.execute_one("SELECT 1")
            return {
                "status": "healthy",
                "version": settings.api_version,
                "database": "connected",
            }
        except Exception as e:
            logger.warning("health check failed: %s", e)
            return {
                "status": "unhealthy",
                "version": settings.api_version,
                "database": f"error: {e}",
            }

    @app.get("/")
    async def root():
        return {
            "name": settings.api_title,
            "version": settings.api_version,
        }

    return app


# 应用实例
app = create_app()
