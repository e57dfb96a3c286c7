"""
访客用餐服务
工作人员代访客登记，按当前餐价定价，出餐和取消都记录审计
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from ..core.clock import Clock, system_clock, to_storage, from_storage
from ..core.database import DatabaseManager, db_manager, row_to_dict
from ..core.exceptions import ConflictError, NotFoundError, ValidationError
from ..core.security import ensure_role
from ..models.booking import MealType
from ..models.user import Principal, Role
from .audit_service import AuditService, VISITOR_ADD, VISITOR_CANCEL, VISITOR_ISSUE
from .pricing_service import PricingService

logger = logging.getLogger(__name__)

VISITOR_COLUMNS = """visitor_booking_id, visitor_name, contact_number, company, meal_type, booking_date,
                     price_cents, status, added_by, created_at"""
QUALIFIED_COLUMNS = ", ".join("v." + c.strip() for c in VISITOR_COLUMNS.split(","))


def _visitor_dict(row: Dict[str, Any]) -> Dict[str, Any]:
    row["booking_date"] = row["booking_date"].isoformat()
    created = from_storage(row.get("created_at"))
    row["created_at"] = created.isoformat() if created else None
    return row


class VisitorService:
    """访客用餐服务"""

    def __init__(self, db: Optional[DatabaseManager] = None, clock: Optional[Clock] = None,
                 pricing: Optional[PricingService] = None, audit: Optional[AuditService] = None):
        self.db = db or db_manager
        self.clock = clock or system_clock
        self.audit = audit or AuditService(self.db, self.clock)
        self.pricing = pricing or PricingService(self.db, self.clock, self.audit)

    def add_visitor(self, principal: Principal, visitor_name: str, contact_number: str,
                    meal_types: List[str], booking_date: date, company: Optional[str] = None) -> Dict[str, Any]:
        """登记访客的一餐或多餐"""
        ensure_role(principal, Role.ADMIN, Role.HRMANAGER, Role.CANTEEN)
        visitor_name = (visitor_name or "").strip()
        contact_number = (contact_number or "").strip()
        if not visitor_name or not contact_number:
            raise ValidationError("Visitor name and contact number are required.")
        if not meal_types:
            raise ValidationError("At least one meal type is required.")
        try:
            types = list(dict.fromkeys(MealType(t) for t in meal_types))
        except ValueError:
            raise ValidationError("Unknown meal type.", details={"meal_types": list(meal_types)})
        if booking_date < self.clock.local_today():
            raise ValidationError("Visitor meals cannot be booked for a past date.")

        created_at = to_storage(self.clock.now())
        with self.db.transaction() as conn:
            prices = self.pricing.get_current_prices(conn)
            ids = []
            total = 0
            for meal_type in types:
                price = prices.price_for(meal_type)
                total += price
                row = conn.execute(
                    """INSERT INTO visitor_bookings(visitor_name, contact_number, company, meal_type, booking_date,
                                                    price_cents, status, added_by, created_at)
                       VALUES (?,?,?,?,?,?,'booked',?,?) RETURNING visitor_booking_id""",
                    [visitor_name, contact_number, company or "", meal_type.value, booking_date, price,
                     principal.id, created_at],
                ).fetchone()
                ids.append(row[0])
            self.audit.append(
                VISITOR_ADD,
                performed_by=principal.id,
                details=f"Added Visitor: {visitor_name} ({company or 'No Company'}). Booked {len(ids)} meals.",
                metadata={"date": booking_date.isoformat(), "meals": [t.value for t in types], "total_cost": total},
            )

        logger.info("visitor %s booked %d meals on %s", visitor_name, len(ids), booking_date)
        return {"visitor_booking_ids": ids, "total_cost_cents": total,
                "message": f"{len(ids)} meals booked successfully."}

    def list_visitor_bookings(self, principal: Principal, booking_date: Optional[date] = None) -> List[Dict[str, Any]]:
        """某天的访客餐（默认今天）"""
        ensure_role(principal, Role.ADMIN, Role.HRMANAGER, Role.CANTEEN)
        booking_date = booking_date or self.clock.local_today()
        rows = self.db.query_dicts(
            f"""SELECT {QUALIFIED_COLUMNS}, u.first_name || ' ' || u.last_name AS added_by_name
                FROM visitor_bookings v LEFT JOIN users u ON u.id = v.added_by
                WHERE v.booking_date = ?
                ORDER BY v.visitor_booking_id""",
            [booking_date],
        )
        return [_visitor_dict(r) for r in rows]

    def issue_visitor_meal(self, principal: Principal, visitor_booking_id: int) -> Dict[str, Any]:
        ensure_role(principal, Role.CANTEEN, Role.ADMIN, Role.HRMANAGER)
        with self.db.transaction() as conn:
            booking = self._load(conn, visitor_booking_id)
            if booking["status"] == "served":
                raise ConflictError("Visitor meal already issued.", details={"visitor_booking_id": visitor_booking_id})
            conn.execute("UPDATE visitor_bookings SET status = 'served' WHERE visitor_booking_id = ?",
                         [visitor_booking_id])
            self.audit.append(
                VISITOR_ISSUE,
                performed_by=principal.id,
                details=f"Issued {booking['meal_type']} to Visitor: {booking['visitor_name']}",
                metadata={"price": booking["price_cents"], "company": booking["company"],
                          "visitor_booking_id": visitor_booking_id},
            )
            booking["status"] = "served"
        return _visitor_dict(booking)

    def cancel_visitor_booking(self, principal: Principal, visitor_booking_id: int) -> Dict[str, Any]:
        ensure_role(principal, Role.ADMIN, Role.HRMANAGER)
        with self.db.transaction() as conn:
            booking = self._load(conn, visitor_booking_id)
            conn.execute("DELETE FROM visitor_bookings WHERE visitor_booking_id = ?", [visitor_booking_id])
            self.audit.append(
                VISITOR_CANCEL,
                performed_by=principal.id,
                details=f"Cancelled {booking['meal_type']} for Visitor: {booking['visitor_name']}",
                metadata={"booking": _visitor_dict(dict(booking))},
            )
        logger.info("visitor booking %s cancelled by %s", visitor_booking_id, principal.id)
        return {"visitor_booking_id": visitor_booking_id, "deleted": True}

    def _load(self, conn, visitor_booking_id: int) -> Dict[str, Any]:
        row = row_to_dict(conn.execute(
            f"SELECT {VISITOR_COLUMNS} FROM visitor_bookings WHERE visitor_booking_id = ?", [visitor_booking_id]
        ))
        if row is None:
            raise NotFoundError("Visitor booking not found.", details={"visitor_booking_id": visitor_booking_id})
        return row
