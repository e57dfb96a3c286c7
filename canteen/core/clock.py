"""
时间基准模块
所有"现在几点 / 今天是哪天"的判断都经过这里，统一使用食堂所在地的民用时区。

- 订餐日期以食堂本地日历日保存（DATE，无时间部分）
- 时间戳以 UTC 保存（不带时区的 TIMESTAMP）
- 取餐时间段、取消截止时间都按本地时间计算
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from ..config.settings import settings


class Clock:
    """系统时钟，每次操作只取一次当前时间"""

    def __init__(self, tz_name: Optional[str] = None):
        self.tz = ZoneInfo(tz_name or settings.canteen_timezone)

    def now(self) -> datetime:
        """当前时刻（带UTC时区）"""
        return datetime.now(timezone.utc)

    def local_now(self, instant: Optional[datetime] = None) -> datetime:
        """当前时刻在食堂时区的民用时间"""
        return (instant or self.now()).astimezone(self.tz)

    def local_today(self, instant: Optional[datetime] = None) -> date:
        """食堂时区的今天"""
        return self.local_now(instant).date()

    def local_datetime(self, day: date, at: time) -> datetime:
        """某天某个本地时间对应的时刻"""
        return datetime.combine(day, at, tzinfo=self.tz)

    def local_midnight(self, day: date) -> datetime:
        return self.local_datetime(day, time(0, 0))


class FixedClock(Clock):
    """可手动设置时间的时钟，用于测试"""

    def __init__(self, instant: datetime, tz_name: Optional[str] = None):
        super().__init__(tz_name)
        self._instant = instant

    def now(self) -> datetime:
        return self._instant.astimezone(timezone.utc)

    def set(self, instant: datetime) -> None:
        self._instant = instant

    def set_local(self, day: date, at: time) -> None:
        """把时间设置为本地某天的某个时刻"""
        self._instant = self.local_datetime(day, at)

    def advance(self, **kwargs) -> None:
        self._instant = self._instant + timedelta(**kwargs)


def to_storage(instant: Optional[datetime]) -> Optional[datetime]:
    """转换为数据库保存格式（UTC，去掉时区）"""
    if instant is None:
        return None
    if instant.tzinfo is None:
        return instant
    return instant.astimezone(timezone.utc).replace(tzinfo=None)


def from_storage(value: Optional[datetime]) -> Optional[datetime]:
    """把数据库中的UTC时间还原为带时区的时刻"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# 全局时钟实例
system_clock = Clock()
