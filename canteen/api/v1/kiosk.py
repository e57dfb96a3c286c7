"""
自助机与考勤机路由模块

/iclock/* 是考勤机的推送协议，返回纯文本，不走统一的 JSON 响应格式。
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse

from ...core.error_handler import create_success_response
from ...schemas.user import KioskLoginRequest
from ...services.registry import ServiceRegistry, get_services

logger = logging.getLogger(__name__)

router = APIRouter()
iclock_router = APIRouter()


@router.post("/login")
def kiosk_login(req: KioskLoginRequest, services: ServiceRegistry = Depends(get_services)):
    """按考勤编号登录（自助机手动输入）"""
    return create_success_response(services.kiosk.resolve_login(req.bio_id), "Login successful.")


@iclock_router.get("/cdata", response_class=PlainTextResponse)
def handshake(SN: Optional[str] = None, services: ServiceRegistry = Depends(get_services)):
    return services.kiosk.handshake(SN)


@iclock_router.post("/cdata", response_class=PlainTextResponse)
async def receive_logs(request: Request, table: Optional[str] = None, SN: Optional[str] = None,
                       services: ServiceRegistry = Depends(get_services)):
    """接收设备推送，任何情况下都尽量回复 OK 让设备停止重发"""
    body = (await request.body()).decode("utf-8", errors="replace")
    try:
        await run_in_threadpool(services.kiosk.handle_attendance_log, table, SN, body)
    except Exception:
        logger.exception("failed to process push from device %s", SN)
        return PlainTextResponse("ERROR", status_code=500)
    return "OK"


@iclock_router.get("/getrequest", response_class=PlainTextResponse)
def keep_alive(SN: Optional[str] = None):
    return "OK"
