"""
数据一致性检查和修复服务
检查赊账缓存、订餐金额和唯一性约束是否被破坏，并提供单个用户的赊账修复
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.clock import Clock, system_clock
from ..core.database import DatabaseManager, db_manager
from ..core.locks import ledger_locks
from ..core.security import ensure_role
from ..models.user import Principal, Role
from .audit_service import AuditService, LOAN_CACHE_FIXED
from .ledger_service import LedgerService

logger = logging.getLogger(__name__)


class ConsistencyCheckResult:
    """一致性检查结果"""

    def __init__(self):
        self.issues: List[Dict[str, Any]] = []
        self.warnings: List[Dict[str, Any]] = []
        self.statistics: Dict[str, Any] = {}

    def add_issue(self, issue_type: str, description: str, details: Dict[str, Any] = None):
        self.issues.append({
            "type": issue_type,
            "description": description,
            "details": details or {},
            "severity": "error",
        })

    def add_warning(self, warning_type: str, description: str, details: Dict[str, Any] = None):
        self.warnings.append({
            "type": warning_type,
            "description": description,
            "details": details or {},
            "severity": "warning",
        })

    def to_dict(self, checked_at: datetime) -> Dict[str, Any]:
        return {
            "issues": self.issues,
            "warnings": self.warnings,
            "statistics": self.statistics,
            "summary": {
                "total_issues": len(self.issues),
                "total_warnings": len(self.warnings),
                "status": "healthy" if not self.issues else "issues_found",
                "checked_at": checked_at.isoformat(),
            },
        }


class ConsistencyService:
    """数据一致性服务"""

    def __init__(self, db: Optional[DatabaseManager] = None, clock: Optional[Clock] = None,
                 ledger: Optional[LedgerService] = None, audit: Optional[AuditService] = None):
        self.db = db or db_manager
        self.clock = clock or system_clock
        self.audit = audit or AuditService(self.db, self.clock)
        self.ledger = ledger or LedgerService(self.db, self.clock, self.audit)

    def check(self, principal: Principal, include_warnings: bool = True) -> Dict[str, Any]:
        """
        全面的数据一致性检查（只读）

        Returns:
            issues / warnings / statistics / summary
        """
        ensure_role(principal, Role.ADMIN, Role.HRMANAGER)
        result = ConsistencyCheckResult()

        with self.db.transaction() as conn:
            result.statistics = self._collect_statistics(conn)
            self._check_loan_cache(conn, result)
            self._check_booking_amounts(conn, result)
            self._check_duplicate_bookings(conn, result)
            if include_warnings:
                self._check_potential_issues(conn, result)

        logger.info("consistency check by %s: %d issues, %d warnings",
                    principal.id, len(result.issues), len(result.warnings))
        return result.to_dict(self.clock.now())

    def _collect_statistics(self, conn) -> Dict[str, Any]:
        users = conn.execute("""
            SELECT COUNT(*), COUNT(CASE WHEN role = 'employee' THEN 1 END), COALESCE(SUM(loan_amount_cents), 0)
            FROM users
        """).fetchone()
        bookings = conn.execute("""
            SELECT COUNT(*),
                   COUNT(CASE WHEN status = 'served' THEN 1 END),
                   COALESCE(SUM(CASE WHEN balance_cents > 0 THEN balance_cents END), 0)
            FROM meal_bookings
        """).fetchone()
        ledger = conn.execute("SELECT COUNT(*) FROM ledger").fetchone()
        return {
            "users": {"total": users[0], "employees": users[1], "cached_loan_cents": users[2]},
            "bookings": {"total": bookings[0], "served": bookings[1], "outstanding_cents": bookings[2]},
            "ledger": {"entries": ledger[0]},
        }

    def _check_loan_cache(self, conn, result: ConsistencyCheckResult):
        """赊账缓存必须等于未结清余额之和"""
        rows = conn.execute("""
            SELECT u.id, u.username, u.loan_amount_cents,
                   COALESCE(SUM(CASE WHEN b.balance_cents > 0 THEN b.balance_cents END), 0) AS actual
            FROM users u
            LEFT JOIN meal_bookings b ON b.user_id = u.id
            GROUP BY u.id, u.username, u.loan_amount_cents
            HAVING u.loan_amount_cents <> COALESCE(SUM(CASE WHEN b.balance_cents > 0 THEN b.balance_cents END), 0)
        """).fetchall()
        for user_id, username, cached, actual in rows:
            result.add_issue(
                "loan_cache_drift",
                f"User {username} loan cache {cached} differs from outstanding {actual}",
                {"user_id": user_id, "cached_cents": cached, "actual_cents": actual, "difference": cached - actual},
            )

    def _check_booking_amounts(self, conn, result: ConsistencyCheckResult):
        """已付 + 余额 = 总价，且金额都不为负"""
        rows = conn.execute("""
            SELECT booking_id, user_id, status, total_price_cents, amount_paid_cents, balance_cents
            FROM meal_bookings
            WHERE amount_paid_cents < 0 OR balance_cents < 0 OR total_price_cents < 0
               OR (status IN ('paid', 'served') AND amount_paid_cents + balance_cents <> total_price_cents)
        """).fetchall()
        for booking_id, user_id, status, total, paid, balance in rows:
            result.add_issue(
                "booking_amount_mismatch",
                f"Booking {booking_id} amounts do not add up",
                {"booking_id": booking_id, "user_id": user_id, "status": status,
                 "total_cents": total, "paid_cents": paid, "balance_cents": balance},
            )

        rows = conn.execute("""
            SELECT booking_id, user_id, status, balance_cents FROM meal_bookings
            WHERE balance_cents > 0 AND status NOT IN ('paid', 'served')
        """).fetchall()
        for booking_id, user_id, status, balance in rows:
            result.add_issue(
                "balance_on_open_booking",
                f"Booking {booking_id} in status {status} carries a balance",
                {"booking_id": booking_id, "user_id": user_id, "balance_cents": balance},
            )

    def _check_duplicate_bookings(self, conn, result: ConsistencyCheckResult):
        rows = conn.execute("""
            SELECT user_id, booking_date, meal_type, COUNT(*) FROM meal_bookings
            GROUP BY user_id, booking_date, meal_type HAVING COUNT(*) > 1
        """).fetchall()
        for user_id, booking_date, meal_type, count in rows:
            result.add_issue(
                "duplicate_booking",
                f"User {user_id} has {count} {meal_type} bookings on {booking_date}",
                {"user_id": user_id, "date": str(booking_date), "meal_type": meal_type, "count": count},
            )

    def _check_potential_issues(self, conn, result: ConsistencyCheckResult):
        rows = conn.execute("""
            SELECT id, username, loan_amount_cents, loan_limit_cents FROM users
            WHERE loan_amount_cents > loan_limit_cents
        """).fetchall()
        for user_id, username, loan, limit in rows:
            result.add_warning(
                "over_loan_limit",
                f"User {username} owes {loan}, above the limit {limit}",
                {"user_id": user_id, "loan_cents": loan, "limit_cents": limit},
            )

        # 强制取消会删除订餐，遗留的流水只作提示
        orphaned = conn.execute("""
            SELECT COUNT(*) FROM ledger l
            WHERE l.booking_id IS NOT NULL
              AND NOT EXISTS (SELECT 1 FROM meal_bookings b WHERE b.booking_id = l.booking_id)
        """).fetchone()[0]
        if orphaned:
            result.add_warning(
                "orphaned_ledger_entries",
                f"{orphaned} ledger entries reference deleted bookings",
                {"count": orphaned},
            )

    def fix_loan(self, principal: Principal, user_id: int) -> Dict[str, Any]:
        """重算一个用户的赊账缓存并记录审计"""
        ensure_role(principal, Role.ADMIN, Role.HRMANAGER)
        with ledger_locks.hold(user_id):
            with self.db.transaction() as conn:
                before = self.ledger.get_financial_state(user_id)
                after = self.ledger.recompute_loan(conn, user_id)
                self.audit.append(
                    LOAN_CACHE_FIXED,
                    performed_by=principal.id,
                    target_user=user_id,
                    details="Loan cache recomputed from outstanding balances.",
                    metadata={"healed_on_read": before.healed, "loan_after": after},
                )

        logger.info("loan cache of user %s fixed by %s", user_id, principal.id)
        return {
            "user_id": user_id,
            "loan_amount_cents": after,
            "was_drifted": before.healed,
            "fixed_at": self.clock.now().isoformat(),
        }
