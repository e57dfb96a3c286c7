"""
订餐相关的请求/响应模式
"""

from datetime import date
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from ..models.booking import MealType, PaymentType


class MealSelection(BaseModel):
    """一项订餐选择"""
    booking_date: date = Field(..., alias="date", description="用餐日期（本地日历日）")
    meal_type: MealType = Field(..., description="餐别")

    model_config = {"populate_by_name": True}


class BookMealsRequest(BaseModel):
    """批量预订请求"""
    selections: List[MealSelection] = Field(..., min_length=1, description="订餐选择列表")


class MealRequestRequest(BaseModel):
    """取餐申请"""
    meal_type: MealType = Field(..., description="餐别")


class RespondRequest(BaseModel):
    """食堂响应取餐申请"""
    booking_id: int = Field(..., description="订餐ID")
    action: Literal["accept", "reject"] = Field(..., description="接受或拒绝")


class VerifyCodeRequest(BaseModel):
    """取餐码核验"""
    booking_id: int = Field(..., description="订餐ID")
    otp: str = Field(..., pattern=r"^\d{4}$", description="4位取餐码")


class ProcessPaymentRequest(BaseModel):
    """付款计算请求"""
    booking_id: int = Field(..., description="订餐ID")
    payment_type: Optional[PaymentType] = Field(None, description="付款方式，不传按员工类别默认")
    amount_paid_cents: Optional[int] = Field(None, ge=0, description="赊账时先付的金额（分）")


class IssueRequest(BaseModel):
    """出餐请求"""
    booking_id: int = Field(..., description="订餐ID")
    collected_amount_cents: Optional[int] = Field(None, ge=0, description="实际收取金额（分）")
    settle_excess_to_loan: bool = Field(False, description="多收部分是否冲抵历史欠款")


class BookingIdRequest(BaseModel):
    """只带订餐ID的请求"""
    booking_id: int = Field(..., description="订餐ID")


class AdminCancelRequest(BaseModel):
    """强制取消请求"""
    reason: str = Field(..., min_length=1, max_length=500, description="取消原因")


class PriceUpdateRequest(BaseModel):
    """餐价修改请求（分）"""
    breakfast_cents: int = Field(..., ge=0, description="早餐价格")
    lunch_cents: int = Field(..., ge=0, description="午餐价格")
    dinner_cents: int = Field(..., ge=0, description="晚餐价格")
