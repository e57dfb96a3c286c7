"""
餐价服务
全局只有一条餐价记录：写入时 upsert，读取时不存在则视为全部为0
"""

import logging
from typing import Optional

from ..core.clock import Clock, system_clock, to_storage, from_storage
from ..core.database import DatabaseManager, db_manager, row_to_dict
from ..core.exceptions import ValidationError
from ..core.security import ensure_role
from ..models.booking import MealType
from ..models.pricing import MealPrices
from ..models.user import Principal, Role
from .audit_service import AuditService, PRICE_UPDATED

logger = logging.getLogger(__name__)


class PricingService:
    """餐价服务"""

    def __init__(self, db: Optional[DatabaseManager] = None, clock: Optional[Clock] = None,
                 audit: Optional[AuditService] = None):
        self.db = db or db_manager
        self.clock = clock or system_clock
        self.audit = audit or AuditService(self.db, self.clock)

    def get_current_prices(self, conn=None) -> MealPrices:
        """获取当前餐价"""
        query = """SELECT breakfast_cents, lunch_cents, dinner_cents, updated_by, updated_at
                   FROM meal_prices WHERE price_id = 1"""
        if conn is not None:
            row = row_to_dict(conn.execute(query))
        else:
            row = self.db.query_dict(query)
        if row is None:
            return MealPrices()
        row["updated_at"] = from_storage(row["updated_at"])
        return MealPrices(**row)

    def price_for(self, meal_type: MealType, conn=None) -> int:
        return self.get_current_prices(conn).price_for(meal_type)

    def update_prices(self, principal: Principal, breakfast_cents: int, lunch_cents: int,
                      dinner_cents: int) -> MealPrices:
        """修改餐价（仅管理员和人事经理）"""
        ensure_role(principal, Role.ADMIN, Role.HRMANAGER)
        for name, value in (("breakfast", breakfast_cents), ("lunch", lunch_cents), ("dinner", dinner_cents)):
            if value is None or value < 0:
                raise ValidationError(f"Price for {name} must be a non-negative amount.")

        with self.db.transaction() as conn:
            before = self.get_current_prices(conn)
            conn.execute(
                """
                INSERT INTO meal_prices(price_id, breakfast_cents, lunch_cents, dinner_cents, updated_by, updated_at)
                VALUES (1, ?, ?, ?, ?, ?)
                ON CONFLICT (price_id) DO UPDATE SET
                    breakfast_cents = excluded.breakfast_cents,
                    lunch_cents = excluded.lunch_cents,
                    dinner_cents = excluded.dinner_cents,
                    updated_by = excluded.updated_by,
                    updated_at = excluded.updated_at
                """,
                [breakfast_cents, lunch_cents, dinner_cents, principal.id, to_storage(self.clock.now())],
            )
            after = self.get_current_prices(conn)
            self.audit.append(
                PRICE_UPDATED,
                performed_by=principal.id,
                details="Meal prices updated.",
                metadata={
                    "before": before.model_dump(include={"breakfast_cents", "lunch_cents", "dinner_cents"}),
                    "after": after.model_dump(include={"breakfast_cents", "lunch_cents", "dinner_cents"}),
                },
            )

        logger.info("prices updated by %s: %s", principal.id, after.model_dump(mode="json"))
        return after
