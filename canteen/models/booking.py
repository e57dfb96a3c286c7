"""
订餐相关数据模型
"""

from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import Field

from .base import BaseEntity


class MealType(str, Enum):
    """餐别"""
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"


class BookingStatus(str, Enum):
    """订餐状态"""
    BOOKED = "booked"         # 已预订
    REQUESTED = "requested"   # 已向食堂申请取餐
    ACCEPTED = "accepted"     # 食堂已接受，取餐码待核验
    VERIFIED = "verified"     # 取餐码核验通过
    PAID = "paid"             # 已计算付款
    SERVED = "served"         # 已出餐（终态）
    REJECTED = "rejected"     # 食堂拒绝


class PaymentType(str, Enum):
    """付款方式"""
    FREE = "free"
    PAY_NOW = "pay_now"
    PAY_LATER = "pay_later"


# 取餐时间段（本地时间，含开始不含结束）
MEAL_REQUEST_WINDOWS: Dict[MealType, Tuple[time, time]] = {
    MealType.BREAKFAST: (time(7, 0), time(11, 0)),
    MealType.LUNCH: (time(12, 0), time(16, 0)),
    MealType.DINNER: (time(18, 0), time(22, 0)),
}

# 取消截止时间（用餐前一天的本地时间）
CANCELLATION_CUTOFFS: Dict[MealType, time] = {
    MealType.BREAKFAST: time(10, 0),
    MealType.LUNCH: time(14, 0),
    MealType.DINNER: time(18, 0),
}

# 合法的状态转换
ALLOWED_TRANSITIONS: Dict[BookingStatus, Tuple[BookingStatus, ...]] = {
    BookingStatus.BOOKED: (BookingStatus.REQUESTED,),
    BookingStatus.REQUESTED: (BookingStatus.ACCEPTED, BookingStatus.REJECTED, BookingStatus.BOOKED),
    BookingStatus.ACCEPTED: (BookingStatus.VERIFIED, BookingStatus.BOOKED),
    BookingStatus.VERIFIED: (BookingStatus.PAID, BookingStatus.BOOKED),
    BookingStatus.PAID: (BookingStatus.PAID, BookingStatus.SERVED, BookingStatus.BOOKED),
    BookingStatus.SERVED: (),
    BookingStatus.REJECTED: (BookingStatus.BOOKED,),
}

# 可以被"拒绝出餐"重置回 booked 的状态
RESETTABLE_STATUSES = (
    BookingStatus.REQUESTED,
    BookingStatus.ACCEPTED,
    BookingStatus.VERIFIED,
    BookingStatus.PAID,
)


def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(BookingStatus(current), ())


def is_within_request_window(meal_type: MealType, local_time: time) -> bool:
    start, end = MEAL_REQUEST_WINDOWS[MealType(meal_type)]
    return start <= local_time < end


def cancellation_deadline(clock, booking_date: date, meal_type: MealType) -> datetime:
    """用餐日前一天的截止时刻"""
    cutoff = CANCELLATION_CUTOFFS[MealType(meal_type)]
    return clock.local_datetime(booking_date - timedelta(days=1), cutoff)


class Booking(BaseEntity):
    """订餐记录"""
    booking_id: int = Field(..., description="订餐ID")
    user_id: int = Field(..., description="用户ID")
    booking_date: date = Field(..., description="用餐日期")
    meal_type: MealType = Field(..., description="餐别")
    status: BookingStatus = Field(..., description="状态")
    verification_code: Optional[str] = Field(None, description="取餐码")
    payment_type: Optional[PaymentType] = Field(None, description="付款方式")
    total_price_cents: int = Field(0, description="总价（分）")
    amount_paid_cents: int = Field(0, description="已付（分）")
    balance_cents: int = Field(0, description="未付余额（分）")
    booked_at: datetime = Field(..., description="预订时间")
    requested_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    served_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True, "use_enum_values": False}

    def public_dict(self) -> dict:
        """对外展示，不包含取餐码"""
        return self.model_dump(mode="json", exclude={"verification_code"})
