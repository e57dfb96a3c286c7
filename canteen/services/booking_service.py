r"""
订餐服务模块
管理一份订餐从预订到出餐的完整状态流转

状态流转：
    booked -> requested -> accepted -> verified -> paid -> served
                       \-> rejected
    requested / accepted / verified / paid --(拒绝出餐)--> booked

业务规则：
- 每个 (用户, 日期, 餐别) 只有一条记录，重复预订原地覆盖
- 只能预订今天起 7 天内的餐（按食堂本地日期，含两端）
- 取餐申请只能在该餐别的取餐时间段内发起
- 取餐码单次有效，核验成功后立即清除
- 已出餐的记录不能再核验、付款、出餐或重置
- 改变余额的操作先按用户加锁、再开事务，写入后重算赊账总额
- 通知在事务提交后统一投递，投递失败不影响业务结果
"""

import logging
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from ..config.settings import settings
from ..core.clock import Clock, system_clock, to_storage, from_storage
from ..core.database import DatabaseManager, db_manager, row_to_dict, rows_to_dicts
from ..core.exceptions import (
    AlreadyCollectedError,
    BookingNotFoundError,
    DeadlineExceededError,
    InvalidTransitionError,
    LoanLimitExceededError,
    PaymentPolicyError,
    TimeWindowError,
    ValidationError,
    VerificationCodeMismatchError,
)
from ..core.locks import ledger_locks
from ..core.security import ensure_role
from ..models.booking import (
    MEAL_REQUEST_WINDOWS,
    RESETTABLE_STATUSES,
    Booking,
    BookingStatus,
    MealType,
    PaymentType,
    can_transition,
    cancellation_deadline,
    is_within_request_window,
)
from ..models.ledger import LedgerType, WaterfallResult
from ..models.user import Principal, Role, SubRole
from .audit_service import AuditService, MEAL_CANCELLED, LOAN_SETTLEMENT_FROM_ISSUE
from .ledger_service import LedgerService
from .notification_service import (
    CANTEEN_CHANNEL,
    Event,
    EventDispatcher,
    RecordingPublisher,
    user_channel,
)
from .pricing_service import PricingService

logger = logging.getLogger(__name__)

BOOKING_COLUMNS = """booking_id, user_id, booking_date, meal_type, status, verification_code, payment_type,
                     total_price_cents, amount_paid_cents, balance_cents, booked_at, requested_at,
                     verified_at, served_at, created_at"""


@dataclass
class OperationResult:
    """业务操作结果：返回数据以及已投递的事件"""
    data: Dict[str, Any]
    events: List[Event] = field(default_factory=list)


def booking_from_row(row: Dict[str, Any]) -> Booking:
    data = dict(row)
    for key in ("booked_at", "requested_at", "verified_at", "served_at", "created_at"):
        data[key] = from_storage(data.get(key))
    return Booking(**data)


def _parse_meal_type(value: Union[str, MealType]) -> MealType:
    try:
        return MealType(value)
    except ValueError:
        raise ValidationError(f"Unknown meal type '{value}'.", details={"meal_type": str(value)})


class BookingService:
    """订餐服务，封装订餐状态机的全部业务逻辑"""

    def __init__(self, db: Optional[DatabaseManager] = None, clock: Optional[Clock] = None,
                 dispatcher: Optional[EventDispatcher] = None, pricing: Optional[PricingService] = None,
                 ledger: Optional[LedgerService] = None, audit: Optional[AuditService] = None):
        self.db = db or db_manager
        self.clock = clock or system_clock
        self.dispatcher = dispatcher or EventDispatcher(RecordingPublisher())
        self.audit = audit or AuditService(self.db, self.clock)
        self.pricing = pricing or PricingService(self.db, self.clock, self.audit)
        self.ledger = ledger or LedgerService(self.db, self.clock, self.audit)

    # ------------------------------------------------------------------
    # 预订与查询
    # ------------------------------------------------------------------

    def book_meals(self, principal: Principal,
                   selections: Iterable[Tuple[Union[date, datetime, str], Union[str, MealType]]]) -> OperationResult:
        """
        批量预订（先全部校验、再统一写入）

        Args:
            principal: 调用者（员工）
            selections: (日期, 餐别) 列表，日期可以是 date、datetime 或 ISO 字符串

        Returns:
            OperationResult: 处理数量和最新的订餐记录

        Raises:
            ValidationError: 任何一项日期超出范围或餐别非法时整批失败
        """
        ensure_role(principal, Role.EMPLOYEE)
        selections = list(selections)
        if not selections:
            raise ValidationError("At least one meal selection is required.")

        now = self.clock.now()
        today = self.clock.local_today(now)
        max_date = today + timedelta(days=settings.booking_horizon_days)

        keys: Dict[Tuple[date, MealType], None] = {}
        for raw_date, raw_type in selections:
            meal_type = _parse_meal_type(raw_type)
            booking_date = self._normalize_date(raw_date)
            if booking_date < today or booking_date > max_date:
                raise ValidationError(
                    f"Date {booking_date.isoformat()} is out of the allowed {settings.booking_horizon_days}-day range.",
                    details={"date": booking_date.isoformat(), "min": today.isoformat(), "max": max_date.isoformat()},
                )
            keys[(booking_date, meal_type)] = None

        booked_at = to_storage(now)
        with self.db.transaction() as conn:
            for booking_date, meal_type in keys:
                existing = conn.execute(
                    "SELECT booking_id, status FROM meal_bookings WHERE user_id = ? AND booking_date = ? AND meal_type = ?",
                    [principal.id, booking_date, meal_type.value],
                ).fetchone()
                if existing is None:
                    conn.execute(
                        """INSERT INTO meal_bookings(user_id, booking_date, meal_type, status, booked_at, created_at)
                           VALUES (?, ?, ?, 'booked', ?, ?)""",
                        [principal.id, booking_date, meal_type.value, booked_at, booked_at],
                    )
                elif existing[1] in (BookingStatus.BOOKED.value, BookingStatus.REJECTED.value):
                    # 已经在流程中的记录保持原样
                    conn.execute(
                        """UPDATE meal_bookings SET status = 'booked', booked_at = ?, verification_code = NULL
                           WHERE booking_id = ?""",
                        [booked_at, existing[0]],
                    )
            rows = rows_to_dicts(conn.execute(
                f"""SELECT {BOOKING_COLUMNS} FROM meal_bookings
                    WHERE user_id = ? AND booking_date BETWEEN ? AND ?
                    ORDER BY booking_date, meal_type""",
                [principal.id, today, max_date],
            ))

        wanted = {(d, m.value) for d, m in keys}
        bookings = [booking_from_row(r) for r in rows if (r["booking_date"], r["meal_type"]) in wanted]
        logger.info("user %s booked %d meal selections", principal.id, len(keys))
        return OperationResult({
            "processed": len(keys),
            "message": f"Successfully processed {len(keys)} meal selections.",
            "bookings": [b.public_dict() for b in bookings],
        })

    def _normalize_date(self, value: Union[date, datetime, str]) -> date:
        """把输入统一成食堂本地的日历日"""
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                raise ValidationError(f"Invalid date '{value}'.")
        if isinstance(value, datetime):
            if value.tzinfo is not None:
                return self.clock.local_today(value)
            return value.date()
        if isinstance(value, date):
            return value
        raise ValidationError(f"Invalid date '{value}'.")

    def get_today_meals(self, principal: Principal) -> List[Booking]:
        """员工今天的订餐"""
        ensure_role(principal, Role.EMPLOYEE)
        today = self.clock.local_today()
        rows = self.db.query_dicts(
            f"SELECT {BOOKING_COLUMNS} FROM meal_bookings WHERE user_id = ? AND booking_date = ? ORDER BY meal_type",
            [principal.id, today],
        )
        return [booking_from_row(r) for r in rows]

    def list_my_bookings(self, principal: Principal, start: Optional[date] = None,
                         end: Optional[date] = None) -> List[Booking]:
        """员工自己的订餐记录（默认从今天起的预订窗口）"""
        ensure_role(principal, Role.EMPLOYEE)
        today = self.clock.local_today()
        start = start or today
        end = end or today + timedelta(days=settings.booking_horizon_days)
        if end < start:
            raise ValidationError("End date must not be before start date.")
        rows = self.db.query_dicts(
            f"""SELECT {BOOKING_COLUMNS} FROM meal_bookings
                WHERE user_id = ? AND booking_date BETWEEN ? AND ?
                ORDER BY booking_date, meal_type""",
            [principal.id, start, end],
        )
        return [booking_from_row(r) for r in rows]

    def get_booking(self, booking_id: int) -> Booking:
        row = self.db.query_dict(f"SELECT {BOOKING_COLUMNS} FROM meal_bookings WHERE booking_id = ?", [booking_id])
        if row is None:
            raise BookingNotFoundError(details={"booking_id": booking_id})
        return booking_from_row(row)

    # ------------------------------------------------------------------
    # 取餐申请 / 食堂响应 / 取餐码核验
    # ------------------------------------------------------------------

    def request_meal(self, principal: Principal, meal_type: Union[str, MealType]) -> OperationResult:
        """在取餐时间段内申请取今天预订的餐"""
        ensure_role(principal, Role.EMPLOYEE)
        meal_type = _parse_meal_type(meal_type)
        now = self.clock.now()
        local_now = self.clock.local_now(now)

        if not is_within_request_window(meal_type, local_now.time()):
            start, end = MEAL_REQUEST_WINDOWS[meal_type]
            raise TimeWindowError(
                f"It is not {meal_type.value} time yet.",
                details={"meal_type": meal_type.value, "window_start": start.isoformat(),
                         "window_end": end.isoformat(), "local_time": local_now.time().isoformat("minutes")},
            )

        today = local_now.date()
        with self.db.transaction() as conn:
            row = row_to_dict(conn.execute(
                f"SELECT {BOOKING_COLUMNS} FROM meal_bookings WHERE user_id = ? AND booking_date = ? AND meal_type = ?",
                [principal.id, today, meal_type.value],
            ))
            if row is None:
                raise BookingNotFoundError("No booking found for this meal today.",
                                           details={"meal_type": meal_type.value, "date": today.isoformat()})
            booking = booking_from_row(row)
            self._check_transition(booking, BookingStatus.REQUESTED, "request")
            conn.execute(
                "UPDATE meal_bookings SET status = ?, requested_at = ? WHERE booking_id = ?",
                [BookingStatus.REQUESTED.value, to_storage(now), booking.booking_id],
            )
            employee_name = self._display_name(conn, principal.id)

        events = [Event(CANTEEN_CHANNEL, "new_meal_request", {
            "bookingId": booking.booking_id,
            "employeeName": employee_name,
            "mealType": meal_type.value,
        })]
        self._log_transition(booking, BookingStatus.REQUESTED)
        return self._finish({"booking_id": booking.booking_id, "status": BookingStatus.REQUESTED.value,
                             "message": "Request sent to canteen."}, events)

    def respond_to_request(self, principal: Principal, booking_id: int, action: str) -> OperationResult:
        """食堂接受（生成取餐码）或拒绝取餐申请"""
        ensure_role(principal, Role.CANTEEN)
        if action not in ("accept", "reject"):
            raise ValidationError("Action must be 'accept' or 'reject'.", details={"action": action})

        with self.db.transaction() as conn:
            booking = self._load(conn, booking_id)
            if action == "accept":
                self._check_transition(booking, BookingStatus.ACCEPTED, "accept")
                code = self._generate_code()
                conn.execute(
                    "UPDATE meal_bookings SET status = ?, verification_code = ? WHERE booking_id = ?",
                    [BookingStatus.ACCEPTED.value, code, booking_id],
                )
            else:
                self._check_transition(booking, BookingStatus.REJECTED, "reject")
                conn.execute(
                    "UPDATE meal_bookings SET status = ?, verification_code = NULL WHERE booking_id = ?",
                    [BookingStatus.REJECTED.value, booking_id],
                )

        owner = user_channel(booking.user_id)
        if action == "accept":
            self._log_transition(booking, BookingStatus.ACCEPTED)
            events = [Event(owner, "meal_accepted", {"bookingId": booking_id, "otp": code})]
            return self._finish({"booking_id": booking_id, "status": BookingStatus.ACCEPTED.value, "otp": code},
                                events)

        self._log_transition(booking, BookingStatus.REJECTED)
        events = [
            Event(owner, "meal_rejected", {"bookingId": booking_id, "message": "Request denied by canteen."}),
            Event(CANTEEN_CHANNEL, "remove_request", {"bookingId": booking_id}),
        ]
        return self._finish({"booking_id": booking_id, "status": BookingStatus.REJECTED.value,
                             "message": "Request rejected."}, events)

    def verify_code(self, principal: Principal, booking_id: int, code: str) -> OperationResult:
        """员工提交取餐码，核验成功后进入付款步骤"""
        ensure_role(principal, Role.EMPLOYEE)
        digits = settings.verification_code_digits
        code = (code or "").strip()
        if len(code) != digits or not code.isdigit():
            raise ValidationError(f"Verification code must be {digits} digits.")

        now = self.clock.now()
        with self.db.transaction() as conn:
            booking = self._load(conn, booking_id, user_id=principal.id)
            if booking.status == BookingStatus.SERVED:
                raise AlreadyCollectedError(booking_id)
            stored = booking.verification_code
            if booking.status != BookingStatus.ACCEPTED or not stored or not secrets.compare_digest(stored, code):
                raise VerificationCodeMismatchError(booking_id)
            conn.execute(
                "UPDATE meal_bookings SET status = ?, verified_at = ?, verification_code = NULL WHERE booking_id = ?",
                [BookingStatus.VERIFIED.value, to_storage(now), booking_id],
            )

        self._log_transition(booking, BookingStatus.VERIFIED)
        events = [Event(CANTEEN_CHANNEL, "meal_verified", {"bookingId": booking_id})]
        return self._finish({"booking_id": booking_id, "status": BookingStatus.VERIFIED.value,
                             "verified_at": now.isoformat(), "next_step": "payment"}, events)

    # ------------------------------------------------------------------
    # 付款计算
    # ------------------------------------------------------------------

    def compute_payment(self, principal: Principal, booking_id: int,
                        payment_type: Optional[Union[str, PaymentType]] = None,
                        amount_paid_cents: Optional[int] = None) -> OperationResult:
        """
        按当前餐价和员工类别计算付款

        - 实习生：免费，总价为0
        - 正式员工：只能当场付清
        - 临时工/外包：可当场付清或赊账，赊账部分计入欠款（不能超过赊账额度）

        状态变为 paid，等待食堂出餐。
        """
        ensure_role(principal, Role.EMPLOYEE, Role.CANTEEN)
        requested_type = None
        if payment_type is not None:
            try:
                requested_type = PaymentType(payment_type)
            except ValueError:
                raise ValidationError(f"Unknown payment type '{payment_type}'.")
        if amount_paid_cents is not None and amount_paid_cents < 0:
            raise ValidationError("Amount paid must not be negative.")

        owner_id = self._owner_of(booking_id, principal)
        with ledger_locks.hold(owner_id):
            with self.db.transaction() as conn:
                booking = self._load(conn, booking_id)
                self._check_transition(booking, BookingStatus.PAID, "pay for")
                owner = conn.execute(
                    "SELECT sub_role, loan_limit_cents, first_name || ' ' || last_name FROM users WHERE id = ?",
                    [owner_id],
                ).fetchone()
                sub_role, loan_limit, employee_name = owner
                price = self.pricing.price_for(booking.meal_type, conn)

                resolved_type, total, paid = self._apply_policy(sub_role, requested_type, price, amount_paid_cents)
                balance = max(0, total - paid)

                self._check_loan_limit(conn, booking, balance, loan_limit)

                conn.execute(
                    """UPDATE meal_bookings
                       SET status = ?, payment_type = ?, total_price_cents = ?, amount_paid_cents = ?, balance_cents = ?
                       WHERE booking_id = ?""",
                    [BookingStatus.PAID.value, resolved_type.value, total, paid, balance, booking_id],
                )
                loan = self.ledger.recompute_loan(conn, owner_id)

        self._log_transition(booking, BookingStatus.PAID)
        breakdown = {
            "bookingId": booking_id,
            "employeeName": employee_name,
            "mealType": booking.meal_type.value,
            "paymentType": resolved_type.value,
            "totalPrice": total,
            "amountPaid": paid,
            "balance": balance,
            "currentLoan": loan,
        }
        events = [Event(CANTEEN_CHANNEL, "payment_computed", breakdown)]
        return self._finish({
            "booking_id": booking_id,
            "status": BookingStatus.PAID.value,
            "payment_type": resolved_type.value,
            "total_price_cents": total,
            "amount_paid_cents": paid,
            "balance_cents": balance,
            "loan_amount_cents": loan,
        }, events)

    def _check_loan_limit(self, conn, booking: Booking, balance: int, loan_limit: int):
        """这份餐留下的余额加上其它欠款不能超过赊账额度"""
        if balance <= 0:
            return
        others = self.ledger.outstanding_total(conn, booking.user_id) - booking.balance_cents
        if others + balance > loan_limit:
            raise LoanLimitExceededError(
                "Loan limit exceeded.",
                details={"loan_amount": others, "requested": balance, "loan_limit": loan_limit},
            )

    def _apply_policy(self, sub_role: Optional[str], requested: Optional[PaymentType], price: int,
                      amount_paid: Optional[int]) -> Tuple[PaymentType, int, int]:
        """返回 (付款方式, 总价, 已付)"""
        sub_role = SubRole(sub_role) if sub_role else None
        if sub_role == SubRole.INTERN:
            return PaymentType.FREE, 0, 0

        if requested == PaymentType.FREE:
            raise PaymentPolicyError("Free meals are only available to interns.")

        if sub_role == SubRole.PERMANENT:
            if requested == PaymentType.PAY_LATER:
                raise PaymentPolicyError("Permanent employees must pay now.")
            return PaymentType.PAY_NOW, price, price

        if sub_role in (SubRole.CASUAL, SubRole.MANPOWER):
            if requested == PaymentType.PAY_LATER:
                paid = min(amount_paid or 0, price)
                return PaymentType.PAY_LATER, price, paid
            return PaymentType.PAY_NOW, price, price

        raise PaymentPolicyError("User has no payment policy.", details={"sub_role": sub_role})

    def get_payment_status(self, principal: Principal, booking_id: int) -> Dict[str, Any]:
        """食堂/管理员查看某份餐的付款明细"""
        ensure_role(principal, Role.CANTEEN, Role.ADMIN)
        booking = self.get_booking(booking_id)
        state = self.ledger.get_financial_state(booking.user_id)
        return {
            "booking_id": booking_id,
            "status": booking.status.value,
            "payment_type": booking.payment_type.value if booking.payment_type else None,
            "total_price_cents": booking.total_price_cents,
            "amount_paid_cents": booking.amount_paid_cents,
            "balance_cents": booking.balance_cents,
            "loan_amount_cents": state.loan_amount_cents,
            "loan_limit_cents": state.loan_limit_cents,
        }

    # ------------------------------------------------------------------
    # 出餐 / 拒绝出餐
    # ------------------------------------------------------------------

    def issue_meal(self, principal: Principal, booking_id: int, collected_amount_cents: Optional[int] = None,
                   settle_excess_to_loan: bool = False) -> OperationResult:
        """
        出餐（终态）

        Args:
            collected_amount_cents: 实际收取的现金；不传则按付款计算结果
            settle_excess_to_loan: 多收的部分是否用于冲抵该员工其它欠款

        收款不足时差额记为本餐欠款；多收且要求冲抵时，按时间顺序冲抵其它餐的欠款（本餐除外）。
        """
        ensure_role(principal, Role.CANTEEN)
        if collected_amount_cents is not None and collected_amount_cents < 0:
            raise ValidationError("Collected amount must not be negative.")

        owner_id = self._owner_of(booking_id, principal)
        now = self.clock.now()
        waterfall: Optional[WaterfallResult] = None
        change_due = 0

        with ledger_locks.hold(owner_id):
            with self.db.transaction() as conn:
                booking = self._load(conn, booking_id)
                self._check_transition(booking, BookingStatus.SERVED, "issue")
                total = booking.total_price_cents
                surplus = 0

                if collected_amount_cents is None:
                    paid, balance = booking.amount_paid_cents, booking.balance_cents
                elif collected_amount_cents >= total:
                    paid, balance = total, 0
                    surplus = collected_amount_cents - total
                else:
                    shortfall = total - collected_amount_cents
                    sub_role, loan_limit = conn.execute(
                        "SELECT sub_role, loan_limit_cents FROM users WHERE id = ?", [owner_id]
                    ).fetchone()
                    if settings.strict_permanent_pay_now and sub_role == SubRole.PERMANENT.value:
                        raise PaymentPolicyError(
                            "Permanent employees must pay in full.",
                            details={"total_price": total, "collected": collected_amount_cents},
                        )
                    paid, balance = collected_amount_cents, shortfall
                    self._check_loan_limit(conn, booking, balance, loan_limit)

                conn.execute(
                    """UPDATE meal_bookings
                       SET status = ?, amount_paid_cents = ?, balance_cents = ?, served_at = ?
                       WHERE booking_id = ?""",
                    [BookingStatus.SERVED.value, paid, balance, to_storage(now), booking_id],
                )
                self.ledger.record_entry(conn, owner_id, LedgerType.PAYMENT, paid, booking_id, "meal issued")
                self.ledger.record_entry(conn, owner_id, LedgerType.DEBT, balance, booking_id, "unpaid meal balance")
                loan = self.ledger.recompute_loan(conn, owner_id)

                if surplus > 0 and settle_excess_to_loan:
                    waterfall = self.ledger.apply_payment(
                        owner_id, surplus, performed_by=principal.id, exclude_booking_id=booking_id,
                        action=LOAN_SETTLEMENT_FROM_ISSUE,
                        note=f"Excess payment from booking {booking_id} applied to outstanding meals.",
                    )
                    loan = waterfall.loan_after_cents
                    change_due = waterfall.unused_cents
                else:
                    change_due = surplus

        self._log_transition(booking, BookingStatus.SERVED)
        owner = user_channel(owner_id)
        events = [
            Event(owner, "meal_issued", {"bookingId": booking_id, "mealType": booking.meal_type.value,
                                         "message": "Meal issued. Enjoy!"}),
            Event(CANTEEN_CHANNEL, "remove_from_queue", {"bookingId": booking_id}),
            Event(owner, "refresh_wallet", {"loanAmount": loan}),
        ]
        return self._finish({
            "booking_id": booking_id,
            "status": BookingStatus.SERVED.value,
            "total_price_cents": total,
            "amount_paid_cents": paid,
            "balance_cents": balance,
            "loan_amount_cents": loan,
            "change_due_cents": change_due,
            "settlement": waterfall.model_dump(mode="json") if waterfall else None,
        }, events)

    def reject_issue(self, principal: Principal, booking_id: int) -> OperationResult:
        """拒绝出餐：把流程中的记录重置为 booked，员工可以重新申请"""
        ensure_role(principal, Role.CANTEEN)
        owner_id = self._owner_of(booking_id, principal)

        with ledger_locks.hold(owner_id):
            with self.db.transaction() as conn:
                booking = self._load(conn, booking_id)
                if booking.status == BookingStatus.SERVED:
                    raise AlreadyCollectedError(booking_id)
                if booking.status not in RESETTABLE_STATUSES:
                    raise InvalidTransitionError(booking_id, booking.status.value, "reject issue of")
                conn.execute(
                    """UPDATE meal_bookings
                       SET status = 'booked', verification_code = NULL, requested_at = NULL, verified_at = NULL,
                           payment_type = NULL, total_price_cents = 0, amount_paid_cents = 0, balance_cents = 0
                       WHERE booking_id = ?""",
                    [booking_id],
                )
                loan = self.ledger.recompute_loan(conn, owner_id)

        self._log_transition(booking, BookingStatus.BOOKED)
        owner = user_channel(owner_id)
        events = [
            Event(owner, "issue_rejected", {"bookingId": booking_id,
                                            "message": "Issue rejected by canteen. Please request again."}),
            Event(CANTEEN_CHANNEL, "remove_from_queue", {"bookingId": booking_id}),
            Event(owner, "refresh_wallet", {"loanAmount": loan}),
        ]
        return self._finish({"booking_id": booking_id, "status": BookingStatus.BOOKED.value,
                             "loan_amount_cents": loan}, events)

    # ------------------------------------------------------------------
    # 取消
    # ------------------------------------------------------------------

    def cancel_booking(self, principal: Principal, booking_id: int) -> OperationResult:
        """员工在截止时间前取消自己的预订（直接删除）"""
        ensure_role(principal, Role.EMPLOYEE)
        now = self.clock.now()

        with self.db.transaction() as conn:
            booking = self._load(conn, booking_id, user_id=principal.id)
            if booking.status == BookingStatus.SERVED:
                raise AlreadyCollectedError(booking_id)
            if booking.status != BookingStatus.BOOKED:
                raise InvalidTransitionError(booking_id, booking.status.value, "cancel")

            deadline = cancellation_deadline(self.clock, booking.booking_date, booking.meal_type)
            if now > deadline:
                raise DeadlineExceededError(
                    f"Cancellation deadline for {booking.meal_type.value} has passed.",
                    details={"meal_type": booking.meal_type.value,
                             "deadline": deadline.isoformat()},
                )
            conn.execute("DELETE FROM meal_bookings WHERE booking_id = ?", [booking_id])
            self.audit.append(
                MEAL_CANCELLED,
                performed_by=principal.id,
                target_user=principal.id,
                details="Cancelled by employee.",
                metadata={"booking": booking.public_dict(), "self_service": True},
            )

        logger.info("booking %s cancelled by owner %s", booking_id, principal.id)
        return self._finish({"booking_id": booking_id, "deleted": True})

    def admin_cancel_booking(self, principal: Principal, booking_id: int, reason: str) -> OperationResult:
        """管理员强制取消：先写入带快照和原因的审计记录，再删除"""
        ensure_role(principal, Role.ADMIN, Role.HRMANAGER, Role.CANTEEN)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to cancel a booking.")

        owner_id = self._owner_of(booking_id, principal)
        with ledger_locks.hold(owner_id):
            with self.db.transaction() as conn:
                booking = self._load(conn, booking_id)
                self.audit.append(
                    MEAL_CANCELLED,
                    performed_by=principal.id,
                    target_user=booking.user_id,
                    details=reason,
                    metadata={"booking": booking.public_dict(), "self_service": False},
                )
                conn.execute("DELETE FROM meal_bookings WHERE booking_id = ?", [booking_id])
                loan = self.ledger.recompute_loan(conn, owner_id)

        logger.info("booking %s cancelled by %s: %s", booking_id, principal.id, reason)
        owner = user_channel(owner_id)
        events = [
            Event(owner, "booking_cancelled", {"bookingId": booking_id, "reason": reason}),
            Event(CANTEEN_CHANNEL, "remove_from_queue", {"bookingId": booking_id}),
            Event(owner, "refresh_wallet", {"loanAmount": loan}),
        ]
        return self._finish({"booking_id": booking_id, "deleted": True, "loan_amount_cents": loan}, events)

    # ------------------------------------------------------------------
    # 内部工具
    # ------------------------------------------------------------------

    def _load(self, conn, booking_id: int, user_id: Optional[int] = None) -> Booking:
        query = f"SELECT {BOOKING_COLUMNS} FROM meal_bookings WHERE booking_id = ?"
        params: List[Any] = [booking_id]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        row = row_to_dict(conn.execute(query, params))
        if row is None:
            raise BookingNotFoundError(details={"booking_id": booking_id})
        return booking_from_row(row)

    def _owner_of(self, booking_id: int, principal: Principal) -> int:
        """加锁前先确定订餐归属；员工只能操作自己的订餐"""
        row = self.db.execute_one("SELECT user_id FROM meal_bookings WHERE booking_id = ?", [booking_id])
        if row is None:
            raise BookingNotFoundError(details={"booking_id": booking_id})
        if Role(principal.role) == Role.EMPLOYEE and row[0] != principal.id:
            raise BookingNotFoundError(details={"booking_id": booking_id})
        return row[0]

    def _check_transition(self, booking: Booking, target: BookingStatus, operation: str) -> None:
        if booking.status == BookingStatus.SERVED:
            raise AlreadyCollectedError(booking.booking_id)
        if not can_transition(booking.status, target):
            raise InvalidTransitionError(booking.booking_id, booking.status.value, operation)

    def _generate_code(self) -> str:
        digits = settings.verification_code_digits
        return f"{secrets.randbelow(10 ** digits):0{digits}d}"

    def _display_name(self, conn, user_id: int) -> str:
        row = conn.execute("SELECT first_name, last_name FROM users WHERE id = ?", [user_id]).fetchone()
        return f"{row[0]} {row[1]}" if row else "Unknown"

    def _log_transition(self, booking: Booking, target: BookingStatus) -> None:
        logger.info("booking %s (user %s): %s -> %s", booking.booking_id, booking.user_id,
                    booking.status.value, target.value)

    def _finish(self, data: Dict[str, Any], events: Optional[List[Event]] = None) -> OperationResult:
        """事务已提交，投递通知"""
        events = events or []
        self.dispatcher.dispatch(events)
        return OperationResult(data, events)
