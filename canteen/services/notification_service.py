"""
实时通知模块

业务操作只负责产生"待发布事件"列表，写库成功后由 EventDispatcher 统一投递。
投递失败只记录日志，不影响已经完成的业务操作。

频道命名：
- canteen          食堂工作台
- user_<id>        某个员工的私有频道
- kiosk_<serial>   考勤机/自助机所在的房间
"""

import asyncio
import logging
import secrets
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set

from ..config.settings import settings
from ..models.user import Principal, Role

logger = logging.getLogger(__name__)

CANTEEN_CHANNEL = "canteen"


def user_channel(user_id: int) -> str:
    return f"user_{user_id}"


def kiosk_channel(serial: str) -> str:
    return f"kiosk_{serial}"


def can_subscribe(principal: Optional[Principal], channel: str, device_key: Optional[str] = None) -> bool:
    """
    频道订阅权限

    - user_<id> 只有本人可以订阅（取餐码只发到这里）
    - canteen 限食堂和管理员
    - kiosk_<serial> 限食堂和管理员，或者持有设备密钥的自助机
    """
    if channel.startswith("kiosk_"):
        if device_key and settings.kiosk_device_key and secrets.compare_digest(device_key, settings.kiosk_device_key):
            return True
        return principal is not None and Role(principal.role) in (Role.CANTEEN, Role.ADMIN)
    if principal is None:
        return False
    if channel == CANTEEN_CHANNEL:
        return Role(principal.role) in (Role.CANTEEN, Role.ADMIN)
    if channel.startswith("user_"):
        return channel == user_channel(principal.id)
    return False


@dataclass
class Event:
    """一条待发布的通知"""
    channel: str
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)


class Publisher(Protocol):
    def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        ...


class _Subscriber:
    """一个 WebSocket 连接对应的消息队列"""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue()

    def deliver(self, message: Dict[str, Any]) -> None:
        self.loop.call_soon_threadsafe(self.queue.put_nowait, message)


class NotificationHub:
    """进程内的发布/订阅中心，向订阅了频道的 WebSocket 连接广播消息"""

    def __init__(self):
        self._lock = threading.Lock()
        self._channels: Dict[str, Set[_Subscriber]] = {}

    def subscribe(self, channel: str) -> _Subscriber:
        subscriber = _Subscriber(asyncio.get_running_loop())
        with self._lock:
            self._channels.setdefault(channel, set()).add(subscriber)
        return subscriber

    def unsubscribe(self, channel: str, subscriber: _Subscriber) -> None:
        with self._lock:
            subscribers = self._channels.get(channel)
            if subscribers is not None:
                subscribers.discard(subscriber)
                if not subscribers:
                    del self._channels[channel]

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._channels.get(channel, ()))

    def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            subscribers = list(self._channels.get(channel, ()))
        message = {"event": event, "channel": channel, "payload": payload}
        for subscriber in subscribers:
            subscriber.deliver(message)
        logger.debug("published %s to %s (%d subscribers)", event, channel, len(subscribers))


class RecordingPublisher:
    """只记录不投递的发布者"""

    def __init__(self):
        self.events: List[Event] = []

    def publish(self, channel: str, event: str, payload: Dict[str, Any]) -> None:
        self.events.append(Event(channel, event, dict(payload)))

    def names(self, channel: str = None) -> List[str]:
        return [e.name for e in self.events if channel is None or e.channel == channel]

    def clear(self) -> None:
        self.events.clear()


class EventDispatcher:
    """在业务写入提交之后投递事件"""

    def __init__(self, publisher: Publisher):
        self.publisher = publisher

    def dispatch(self, events: Iterable[Event]) -> None:
        for event in events:
            try:
                self.publisher.publish(event.channel, event.name, event.payload)
            except Exception:
                logger.warning("failed to deliver %s to %s", event.name, event.channel, exc_info=True)


# 全局通知中心
notification_hub = NotificationHub()
