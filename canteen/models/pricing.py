"""
餐价数据模型
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from .booking import MealType


class MealPrices(BaseModel):
    """当前餐价（分），未设置时全部为0"""
    breakfast_cents: int = Field(0, ge=0, description="早餐价格（分）")
    lunch_cents: int = Field(0, ge=0, description="午餐价格（分）")
    dinner_cents: int = Field(0, ge=0, description="晚餐价格（分）")
    updated_by: Optional[int] = Field(None, description="最后修改人")
    updated_at: Optional[datetime] = Field(None, description="最后修改时间")

    def price_for(self, meal_type: MealType) -> int:
        return getattr(self, f"{MealType(meal_type).value}_cents")
