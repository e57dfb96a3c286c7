"""
用户相关数据模型
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .base import BaseEntity, TimestampMixin


class Role(str, Enum):
    """角色"""
    EMPLOYEE = "employee"
    CANTEEN = "canteen"
    ADMIN = "admin"
    HRMANAGER = "hrmanager"


class SubRole(str, Enum):
    """员工类别，决定付款策略和赊账额度"""
    INTERN = "intern"         # 实习生：免费
    PERMANENT = "permanent"   # 正式员工：当场付清
    CASUAL = "casual"         # 临时工：可当场付或赊账
    MANPOWER = "manpower"     # 外包人员：同临时工


# 各类别的赊账额度（分）
LOAN_LIMITS_CENTS = {
    SubRole.INTERN: 0,
    SubRole.PERMANENT: 1_000_000,
    SubRole.CASUAL: 500_000,
    SubRole.MANPOWER: 500_000,
}


def loan_limit_for(sub_role: Optional[str]) -> int:
    if not sub_role:
        return 0
    return LOAN_LIMITS_CENTS.get(SubRole(sub_role), 0)


class Principal(BaseModel):
    """已认证的调用者"""
    id: int
    role: Role
    sub_role: Optional[SubRole] = None

    model_config = {"use_enum_values": False}


class User(BaseEntity, TimestampMixin):
    """用户完整模型"""
    id: int = Field(..., description="用户ID")
    username: str = Field(..., description="用户名")
    first_name: str = Field(..., description="名")
    last_name: str = Field(..., description="姓")
    mobile_number: Optional[str] = Field(None, description="手机号")
    role: Role = Field(..., description="角色")
    sub_role: Optional[SubRole] = Field(None, description="员工类别")
    company_name: Optional[str] = Field(None, description="外包公司")
    bio_id: Optional[str] = Field(None, description="考勤机用户编号")
    loan_amount_cents: int = Field(0, description="赊账总额（分）")
    loan_limit_cents: int = Field(0, description="赊账额度（分）")
    suspended_from: Optional[datetime] = Field(None, description="停用开始时间")
    suspended_until: Optional[datetime] = Field(None, description="停用结束时间")
    suspension_reason: Optional[str] = Field(None, description="停用原因")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class FinancialState(BaseModel):
    """用户财务状态"""
    user_id: int
    loan_amount_cents: int
    loan_limit_cents: int
    healed: bool = Field(False, description="读取时是否修正了缓存值")
