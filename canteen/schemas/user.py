"""
用户、钱包与访客相关的请求模式
"""

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from ..models.booking import MealType
from ..models.user import Role, SubRole


class UserCreateRequest(BaseModel):
    """创建用户"""
    username: str = Field(..., min_length=1, max_length=64, description="用户名")
    first_name: str = Field(..., min_length=1, description="名")
    last_name: str = Field(..., min_length=1, description="姓")
    role: Role = Field(..., description="角色")
    sub_role: Optional[SubRole] = Field(None, description="员工类别")
    mobile_number: Optional[str] = Field(None, description="手机号")
    company_name: Optional[str] = Field(None, description="外包公司")
    bio_id: Optional[str] = Field(None, description="考勤机用户编号")


class SuspendRequest(BaseModel):
    """停用请求，区间为 [suspended_from, suspended_until)"""
    suspended_from: datetime = Field(..., description="开始时间（带时区）")
    suspended_until: datetime = Field(..., description="结束时间（带时区）")
    reason: Optional[str] = Field(None, max_length=500, description="原因")


class RepayRequest(BaseModel):
    """手工还款"""
    user_id: int = Field(..., description="欠款员工ID")
    amount_cents: int = Field(..., gt=0, description="还款金额（分）")
    note: Optional[str] = Field(None, max_length=500, description="备注")


class KioskLoginRequest(BaseModel):
    """自助机按考勤编号登录"""
    bio_id: str = Field(..., min_length=1, description="考勤机用户编号")


class VisitorCreateRequest(BaseModel):
    """登记访客用餐"""
    visitor_name: str = Field(..., min_length=1, description="访客姓名")
    contact_number: str = Field(..., min_length=1, description="联系电话")
    company: Optional[str] = Field(None, description="来访单位")
    meal_types: List[MealType] = Field(..., min_length=1, description="餐别列表")
    booking_date: date = Field(..., alias="date", description="用餐日期")

    model_config = {"populate_by_name": True}
