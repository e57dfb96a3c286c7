"""
实时通知 WebSocket
客户端连接 /ws/{channel}?token=<JWT> 后接收该频道的所有事件，
自助机可以改用 ?key=<设备密钥> 订阅 kiosk_<SN> 频道
"""

import asyncio
import contextlib
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from ...core.exceptions import AuthenticationError
from ...core.security import security_manager
from ...services.notification_service import can_subscribe, notification_hub

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/{channel}")
async def subscribe(websocket: WebSocket, channel: str, token: Optional[str] = None, key: Optional[str] = None):
    principal = None
    if token:
        try:
            principal = security_manager.principal_from_token(token)
        except AuthenticationError as e:
            logger.info("websocket rejected for %s: %s", channel, e.message)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

    if not can_subscribe(principal, channel, key):
        logger.info("websocket denied for %s (user %s)", channel, principal.id if principal else None)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    subscriber = notification_hub.subscribe(channel)
    sender = None
    try:
        await websocket.accept()
        logger.info("websocket subscribed to %s", channel)

        async def forward():
            while True:
                message = await subscriber.queue.get()
                await websocket.send_json(message)

        sender = asyncio.create_task(forward())
        # 客户端发来的消息忽略，只用来感知断开
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        notification_hub.unsubscribe(channel, subscriber)
        if sender is not None:
            sender.cancel()
            with contextlib.suppress(Exception, asyncio.CancelledError):
                await sender
        logger.info("websocket left %s", channel)
