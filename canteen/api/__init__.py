"""
API routes and endpoints.
"""

from fastapi import APIRouter
from ..schemas.common import ERROR_RESPONSES
from .v1 import analytics, audit, kiosk, meals, users, visitors, wallet, ws

api_router = APIRouter(responses=ERROR_RESPONSES)

# 包含所有v1路由
api_router.include_router(meals.router, prefix="/meals", tags=["订餐"])
api_router.include_router(wallet.router, prefix="/wallet", tags=["钱包"])
api_router.include_router(analytics.router, prefix="/analytics", tags=["统计"])
api_router.include_router(audit.router, prefix="/audit", tags=["审计"])
api_router.include_router(visitors.router, prefix="/visitors", tags=["访客"])
api_router.include_router(users.router, prefix="/users", tags=["用户"])
api_router.include_router(kiosk.router, prefix="/kiosk", tags=["自助机"])

# 设备协议和 WebSocket 不带 API 前缀
device_router = APIRouter()
device_router.include_router(kiosk.iclock_router, prefix="/iclock", tags=["考勤机"])
device_router.include_router(ws.router, tags=["实时通知"])
