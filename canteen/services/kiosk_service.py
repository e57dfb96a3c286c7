"""
自助机 / 考勤机登录服务

员工在考勤机上按指纹后，设备把考勤记录推送到 /iclock/cdata，
这里解析出考勤编号、校验停用状态、签发令牌，并通知设备所在房间的自助机。
"""

import logging
from typing import Any, Dict, List, Optional

from ..config.settings import settings
from ..core.clock import Clock, system_clock
from ..core.exceptions import AccountSuspendedError, UserNotFoundError, ValidationError
from ..core.security import SecurityManager, security_manager
from ..models.user import Principal
from .notification_service import Event, EventDispatcher, RecordingPublisher, kiosk_channel
from .user_service import UserService

logger = logging.getLogger(__name__)

# 设备轮询参数，按设备协议原样下发
HANDSHAKE_OPTIONS = (
    ("ATTLOGStamp", "None"),
    ("OPERLOGStamp", "None"),
    ("ATTPHOTOStamp", "None"),
    ("ErrorDelay", "30"),
    ("Delay", "10"),
    ("TransTimes", "00:00;14:05"),
    ("TransInterval", "1"),
    ("TransFlag", "1111000000"),
    ("TimeZone", "6"),
    ("Realtime", "1"),
    ("Encrypt", "0"),
)


class KioskService:
    """自助机登录服务"""

    def __init__(self, users: Optional[UserService] = None, clock: Optional[Clock] = None,
                 dispatcher: Optional[EventDispatcher] = None, security: Optional[SecurityManager] = None):
        self.clock = clock or system_clock
        self.users = users or UserService(clock=self.clock)
        self.dispatcher = dispatcher or EventDispatcher(RecordingPublisher())
        self.security = security or security_manager

    def resolve_login(self, bio_id: str) -> Dict[str, Any]:
        """
        根据考勤编号登录

        Raises:
            UserNotFoundError: 没有绑定该编号的用户
            AccountSuspendedError: 用户处于停用期
        """
        bio_id = str(bio_id or "").strip()
        if not bio_id:
            raise ValidationError("Biometric id is required.")

        user = self.users.get_by_bio_id(bio_id)
        if user is None:
            raise UserNotFoundError(f"No user registered for biometric id {bio_id}.", details={"bio_id": bio_id})

        until = self.users.check_suspension(user, self.clock.now())
        if until is not None:
            local_until = self.clock.local_now(until)
            raise AccountSuspendedError(
                f"Account suspended until {local_until.date().isoformat()}",
                details={"suspended_until": until.isoformat(), "reason": user.suspension_reason},
            )

        token = self.security.create_jwt_token(Principal(id=user.id, role=user.role, sub_role=user.sub_role))
        logger.info("kiosk login for user %s (bio id %s)", user.id, bio_id)
        return {
            "token": token,
            "user": {"id": user.id, "name": user.full_name, "role": user.role, "sub_role": user.sub_role},
        }

    def handshake(self, serial: Optional[str]) -> str:
        """设备握手，返回设备配置文本"""
        serial = serial or settings.default_device_serial
        lines = [f"GET OPTION FROM: {serial}"]
        lines.extend(f"{key}={value}" for key, value in HANDSHAKE_OPTIONS)
        logger.debug("device %s handshake", serial)
        return "\n".join(lines)

    def handle_attendance_log(self, table: Optional[str], serial: Optional[str], body: str) -> List[Event]:
        """
        处理设备推送的数据

        只处理 ATTLOG：每行 "编号\\t时间\\t状态\\t验证方式"，一次可以推送多行。
        配置和操作日志直接确认，不做处理。
        """
        if table != "ATTLOG":
            return []

        serial = serial or settings.default_device_serial
        channel = kiosk_channel(serial)
        events: List[Event] = []
        for line in (body or "").splitlines():
            if not line.strip():
                continue
            bio_id = line.split("\t")[0].strip()
            if not bio_id:
                continue
            try:
                login = self.resolve_login(bio_id)
            except UserNotFoundError:
                logger.warning("scan from device %s for unknown bio id %s", serial, bio_id)
                continue
            except AccountSuspendedError as e:
                events.append(Event(channel, "kiosk_login", {"success": False, "message": e.message}))
                continue
            events.append(Event(channel, "kiosk_login", {"success": True, **login}))

        self.dispatcher.dispatch(events)
        logger.info("device %s pushed %d scans", serial, len(events))
        return events
