"""
统计报表服务
看板汇总、员工财务报表、按日期区间的订餐明细
"""

import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from ..core.clock import Clock, system_clock, from_storage
from ..core.database import DatabaseManager, db_manager
from ..core.exceptions import ValidationError
from ..core.security import ensure_role
from ..models.user import Principal, Role
from .audit_service import AuditService, MEAL_CANCELLED

logger = logging.getLogger(__name__)

# 报表查询的最大跨度
MAX_REPORT_DAYS = 366


class ReportService:
    """统计报表服务（只读）"""

    def __init__(self, db: Optional[DatabaseManager] = None, clock: Optional[Clock] = None,
                 audit: Optional[AuditService] = None):
        self.db = db or db_manager
        self.clock = clock or system_clock
        self.audit = audit or AuditService(self.db, self.clock)

    def dashboard(self, principal: Principal) -> Dict[str, Any]:
        """
        看板汇总

        - 赊账总额按未结清余额实时汇总，不读缓存
        - 取消数量来自审计记录（取消的订餐已被删除）
        - 浪费：日期已过仍是 booked 的订餐
        - 收入：已出餐订餐的总价，加上访客餐已出餐部分
        """
        ensure_role(principal, Role.ADMIN, Role.HRMANAGER)
        today = self.clock.local_today()

        employee_count = self.db.execute_one("SELECT COUNT(*) FROM users WHERE role = 'employee'")[0]
        outstanding = self.db.execute_one(
            "SELECT COALESCE(SUM(balance_cents), 0) FROM meal_bookings WHERE balance_cents > 0"
        )[0]
        bookings = self.db.query_dict(
            """
            SELECT
                COUNT(*) AS total,
                COUNT(CASE WHEN status = 'booked' AND booking_date < ? THEN 1 END) AS wastage_all_time,
                COALESCE(SUM(CASE WHEN status = 'served' THEN total_price_cents END), 0) AS revenue,
                COALESCE(SUM(CASE WHEN status = 'served' THEN amount_paid_cents END), 0) AS collected,
                COUNT(CASE WHEN status = 'served' AND booking_date = ? THEN 1 END) AS issued_today,
                COUNT(CASE WHEN status = 'booked' AND booking_date = ? THEN 1 END) AS potential_wastage_today
            FROM meal_bookings
            """,
            [today, today, today],
        )
        visitor_revenue = self.db.execute_one(
            "SELECT COALESCE(SUM(price_cents), 0) FROM visitor_bookings WHERE status = 'served'"
        )[0]

        return {
            "employee_count": employee_count,
            "loan_amount_cents": outstanding,
            "bookings_summary": {
                "total": bookings["total"],
                "cancelled": self.audit.count(MEAL_CANCELLED),
                "wastage_all_time": bookings["wastage_all_time"],
            },
            "financials": {
                "revenue_cents": bookings["revenue"],
                "collected_cents": bookings["collected"],
                "visitor_revenue_cents": visitor_revenue,
                "outstanding_loans_cents": outstanding,
            },
            "today": {
                "date": today.isoformat(),
                "issued": bookings["issued_today"],
                "potential_wastage": bookings["potential_wastage_today"],
            },
        }

    def financial_report(self, principal: Principal) -> List[Dict[str, Any]]:
        """每个员工的欠款、额度、累计已付和最近用餐日，欠款多的在前"""
        ensure_role(principal, Role.ADMIN, Role.HRMANAGER)
        rows = self.db.query_dicts(
            """
            SELECT
                u.id AS user_id,
                u.first_name,
                u.last_name,
                u.mobile_number,
                u.sub_role,
                u.loan_limit_cents,
                COALESCE(SUM(CASE WHEN b.balance_cents > 0 THEN b.balance_cents END), 0) AS loan_amount_cents,
                COALESCE(SUM(b.amount_paid_cents), 0) AS total_paid_lifetime_cents,
                MAX(b.booking_date) AS last_active
            FROM users u
            LEFT JOIN meal_bookings b ON b.user_id = u.id
            WHERE u.role = 'employee'
            GROUP BY u.id, u.first_name, u.last_name, u.mobile_number, u.sub_role, u.loan_limit_cents
            ORDER BY COALESCE(SUM(CASE WHEN b.balance_cents > 0 THEN b.balance_cents END), 0) DESC, u.id ASC
            """
        )
        for row in rows:
            if row["last_active"] is not None:
                row["last_active"] = row["last_active"].isoformat()
        return rows

    def daily_report(self, principal: Principal, start: date, end: date) -> Dict[str, Any]:
        """区间内（含两端）的订餐明细，按日期倒序"""
        ensure_role(principal, Role.ADMIN, Role.HRMANAGER, Role.CANTEEN)
        if start is None or end is None:
            raise ValidationError("Start date and end date are required (YYYY-MM-DD).")
        if end < start:
            raise ValidationError("End date must not be before start date.")
        if end - start > timedelta(days=MAX_REPORT_DAYS):
            raise ValidationError(f"Report range cannot exceed {MAX_REPORT_DAYS} days.")

        rows = self.db.query_dicts(
            """
            SELECT b.booking_id, b.booking_date, b.meal_type, b.status, b.booked_at,
                   u.first_name, u.last_name, u.mobile_number, u.sub_role, u.company_name
            FROM meal_bookings b
            LEFT JOIN users u ON u.id = b.user_id
            WHERE b.booking_date BETWEEN ? AND ?
            ORDER BY b.booking_date DESC,
                     CASE b.meal_type WHEN 'breakfast' THEN 0 WHEN 'lunch' THEN 1 ELSE 2 END,
                     b.booking_id
            """,
            [start, end],
        )

        data = []
        for row in rows:
            if row["first_name"] is None:
                name = "Unknown User"
            else:
                name = f"{row['first_name']} {row['last_name']}"
            if row["sub_role"] == "manpower":
                company = row["company_name"] or "Unknown Agency"
            else:
                company = "Internal"
            data.append({
                "booking_id": row["booking_id"],
                "date": row["booking_date"].isoformat(),
                "name": name,
                "mobile": row["mobile_number"] or "N/A",
                "type": row["sub_role"] or "Unknown",
                "company": company,
                "meal": row["meal_type"],
                "status": row["status"],
                "booked_at": from_storage(row["booked_at"]).isoformat() if row["booked_at"] else None,
            })

        return {"count": len(data), "start": start.isoformat(), "end": end.isoformat(), "data": data}
