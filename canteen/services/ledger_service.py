"""
赊账账本服务
提供欠款冲抵（瀑布式结算）、赊账总额重算和钱包概览

业务规则：
- 用户的 loan_amount_cents 只是缓存，真实值永远是其所有订餐 balance_cents > 0 之和
- 所有改变余额的路径在写入后都重新计算并覆盖缓存，不做增量加减
- 同一用户的结算串行执行（按用户加锁），先加锁再开事务
- 冲抵顺序：用餐日期从早到晚，同一天按早餐、午餐、晚餐
"""

import logging
from typing import List, Optional

from ..core.clock import Clock, system_clock, to_storage
from ..core.database import DatabaseManager, db_manager, rows_to_dicts
from ..core.exceptions import UserNotFoundError, ValidationError
from ..core.locks import ledger_locks
from ..core.security import ensure_role
from ..models.booking import BookingStatus
from ..models.ledger import LedgerType, SettlementLine, WaterfallResult, WalletStats
from ..models.user import FinancialState, Principal, Role
from .audit_service import AuditService, LOAN_REPAYMENT

logger = logging.getLogger(__name__)

MEAL_ORDER_SQL = "CASE meal_type WHEN 'breakfast' THEN 0 WHEN 'lunch' THEN 1 ELSE 2 END"


class LedgerService:
    """赊账账本服务"""

    def __init__(self, db: Optional[DatabaseManager] = None, clock: Optional[Clock] = None,
                 audit: Optional[AuditService] = None):
        self.db = db or db_manager
        self.clock = clock or system_clock
        self.audit = audit or AuditService(self.db, self.clock)

    # ------------------------------------------------------------------
    # 汇总值
    # ------------------------------------------------------------------

    def outstanding_total(self, conn, user_id: int) -> int:
        """用户所有未结清余额之和"""
        return conn.execute(
            "SELECT COALESCE(SUM(balance_cents), 0) FROM meal_bookings WHERE user_id = ? AND balance_cents > 0",
            [user_id],
        ).fetchone()[0]

    def recompute_loan(self, conn, user_id: int) -> int:
        """重新计算赊账总额并覆盖缓存"""
        total = self.outstanding_total(conn, user_id)
        conn.execute("UPDATE users SET loan_amount_cents = ? WHERE id = ?", [total, user_id])
        return total

    def get_financial_state(self, user_id: int) -> FinancialState:
        """读取财务状态，缓存与真实值不一致时就地修正"""
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT loan_amount_cents, loan_limit_cents FROM users WHERE id = ?", [user_id]
            ).fetchone()
            if row is None:
                raise UserNotFoundError(details={"user_id": user_id})
            cached, limit = row
            actual = self.outstanding_total(conn, user_id)
            healed = cached != actual
            if healed:
                conn.execute("UPDATE users SET loan_amount_cents = ? WHERE id = ?", [actual, user_id])
                logger.warning("loan cache of user %s drifted (%s -> %s), healed", user_id, cached, actual)

        return FinancialState(user_id=user_id, loan_amount_cents=actual, loan_limit_cents=limit, healed=healed)

    def record_entry(self, conn, user_id: int, entry_type: LedgerType, amount_cents: int,
                     booking_id: Optional[int], remark: str) -> None:
        """记一笔流水"""
        if amount_cents <= 0:
            return
        conn.execute(
            "INSERT INTO ledger(user_id, type, amount_cents, booking_id, remark, created_at) VALUES (?,?,?,?,?,?)",
            [user_id, LedgerType(entry_type).value, amount_cents, booking_id, remark, to_storage(self.clock.now())],
        )

    # ------------------------------------------------------------------
    # 瀑布式冲抵
    # ------------------------------------------------------------------

    def apply_payment(self, user_id: int, amount_cents: int, performed_by: Optional[int],
                      exclude_booking_id: Optional[int] = None, action: str = LOAN_REPAYMENT,
                      note: Optional[str] = None) -> WaterfallResult:
        """
        用一笔款项按时间顺序冲抵用户的历史欠款

        Args:
            user_id: 欠款用户
            amount_cents: 收到的金额（分），必须为正
            performed_by: 操作人
            exclude_booking_id: 不参与冲抵的订餐（取餐时多付的钱不冲抵当前这一餐）
            action: 审计动作
            note: 备注

        Returns:
            WaterfallResult: 冲抵明细，用不完的金额记在 unused_cents，不另行保存

        Raises:
            ValidationError: 金额非法
            UserNotFoundError: 用户不存在
        """
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
            raise ValidationError("Payment amount must be a positive number.", details={"amount_cents": amount_cents})

        with ledger_locks.hold(user_id):
            with self.db.transaction() as conn:
                if conn.execute("SELECT 1 FROM users WHERE id = ?", [user_id]).fetchone() is None:
                    raise UserNotFoundError(details={"user_id": user_id})

                loan_before = self.outstanding_total(conn, user_id)
                debts = self._unpaid_bookings(conn, user_id, exclude_booking_id)

                remaining = amount_cents
                settlements: List[SettlementLine] = []
                for debt in debts:
                    if remaining <= 0:
                        break
                    payment = min(remaining, debt["balance_cents"])
                    new_balance = debt["balance_cents"] - payment
                    conn.execute(
                        """UPDATE meal_bookings
                           SET amount_paid_cents = amount_paid_cents + ?, balance_cents = ?
                           WHERE booking_id = ?""",
                        [payment, new_balance, debt["booking_id"]],
                    )
                    self.record_entry(conn, user_id, LedgerType.REPAYMENT, payment, debt["booking_id"],
                                      note or action.lower())
                    settlements.append(SettlementLine(
                        booking_id=debt["booking_id"],
                        booking_date=debt["booking_date"],
                        meal_type=debt["meal_type"],
                        applied_cents=payment,
                        balance_before_cents=debt["balance_cents"],
                        balance_after_cents=new_balance,
                    ))
                    remaining -= payment

                loan_after = self.recompute_loan(conn, user_id)
                result = WaterfallResult(
                    user_id=user_id,
                    amount_cents=amount_cents,
                    applied_cents=amount_cents - remaining,
                    unused_cents=remaining,
                    loan_before_cents=loan_before,
                    loan_after_cents=loan_after,
                    excluded_booking_id=exclude_booking_id,
                    settlements=settlements,
                )
                self.audit.append(
                    action,
                    performed_by=performed_by,
                    target_user=user_id,
                    details=note or f"Applied {result.applied_cents} of {amount_cents} to outstanding meals.",
                    metadata={
                        "amount": amount_cents,
                        "applied": result.applied_cents,
                        "unused": result.unused_cents,
                        "bookings_affected": [s.booking_id for s in settlements],
                        "loan_before": loan_before,
                        "loan_after": loan_after,
                        "excluded_booking_id": exclude_booking_id,
                    },
                )

        logger.info(
            "waterfall for user %s: amount=%s applied=%s bookings=%s loan %s -> %s",
            user_id, amount_cents, result.applied_cents, result.bookings_affected, loan_before, loan_after,
        )
        return result

    def _unpaid_bookings(self, conn, user_id: int, exclude_booking_id: Optional[int]):
        query = f"""
            SELECT booking_id, booking_date, meal_type, amount_paid_cents, balance_cents
            FROM meal_bookings
            WHERE user_id = ? AND balance_cents > 0
        """
        params = [user_id]
        if exclude_booking_id is not None:
            query += " AND booking_id <> ?"
            params.append(exclude_booking_id)
        query += f" ORDER BY booking_date ASC, {MEAL_ORDER_SQL} ASC, booking_id ASC"
        return rows_to_dicts(conn.execute(query, params))

    def repay_loan(self, principal: Principal, user_id: int, amount_cents: int,
                   note: Optional[str] = None) -> WaterfallResult:
        """工作人员登记的手工还款"""
        ensure_role(principal, Role.ADMIN, Role.HRMANAGER, Role.CANTEEN)
        return self.apply_payment(user_id, amount_cents, performed_by=principal.id,
                                  action=LOAN_REPAYMENT, note=note)

    # ------------------------------------------------------------------
    # 钱包概览
    # ------------------------------------------------------------------

    def get_wallet_stats(self, user_id: int) -> WalletStats:
        """员工钱包：成功取餐数、错过的餐数、赊账总额和额度"""
        state = self.get_financial_state(user_id)
        today = self.clock.local_today()
        row = self.db.execute_one(
            """
            SELECT
                COUNT(CASE WHEN status = ? THEN 1 END) AS served,
                COUNT(CASE WHEN status = ? AND booking_date < ? THEN 1 END) AS missed
            FROM meal_bookings WHERE user_id = ?
            """,
            [BookingStatus.SERVED.value, BookingStatus.BOOKED.value, today, user_id],
        )
        sub_role = self.db.execute_one("SELECT sub_role FROM users WHERE id = ?", [user_id])[0]
        return WalletStats(
            user_id=user_id,
            success_meals=row[0],
            missed_meals=row[1],
            loan_amount_cents=state.loan_amount_cents,
            loan_limit_cents=state.loan_limit_cents,
            sub_role=sub_role,
        )
