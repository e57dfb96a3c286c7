"""
账务相关数据模型
"""

from datetime import date
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class LedgerType(str, Enum):
    """流水类型"""
    PAYMENT = "payment"       # 取餐时收取的现金
    DEBT = "debt"             # 形成的欠款
    REPAYMENT = "repayment"   # 冲抵历史欠款


class SettlementLine(BaseModel):
    """一笔欠款被冲抵的明细"""
    booking_id: int
    booking_date: date
    meal_type: str
    applied_cents: int
    balance_before_cents: int
    balance_after_cents: int


class WaterfallResult(BaseModel):
    """按时间顺序冲抵欠款的结果"""
    user_id: int
    amount_cents: int = Field(..., description="本次收到的金额")
    applied_cents: int = Field(..., description="实际冲抵的金额")
    unused_cents: int = Field(..., description="欠款已清、未使用的金额")
    loan_before_cents: int
    loan_after_cents: int
    excluded_booking_id: Optional[int] = None
    settlements: List[SettlementLine] = Field(default_factory=list)

    @property
    def bookings_affected(self) -> int:
        return len(self.settlements)


class WalletStats(BaseModel):
    """员工钱包概览"""
    user_id: int
    success_meals: int
    missed_meals: int
    loan_amount_cents: int
    loan_limit_cents: int
    sub_role: Optional[str] = None
