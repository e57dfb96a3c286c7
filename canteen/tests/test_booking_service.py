"""
订餐状态机测试
覆盖预订、取餐申请、取餐码、付款、出餐、拒绝出餐和取消
"""

from datetime import timedelta

import pytest

from ..core.exceptions import (
    AlreadyCollectedError,
    AuthorizationError,
    BookingNotFoundError,
    DeadlineExceededError,
    InvalidTransitionError,
    LoanLimitExceededError,
    PaymentPolicyError,
    TimeWindowError,
    ValidationError,
    VerificationCodeMismatchError,
)
from ..models.booking import BookingStatus, MealType, PaymentType, can_transition
from ..services.audit_service import MEAL_CANCELLED
from .conftest import TODAY, booking_row, loan_of, local


class TestBookMeals:
    """批量预订"""

    def test_book_within_horizon(self, services, employee):
        """今天到第7天都可以预订"""
        result = services.bookings.book_meals(employee, [
            (TODAY, MealType.LUNCH),
            (TODAY + timedelta(days=7), MealType.DINNER),
        ])

        assert result.data["processed"] == 2
        statuses = {b["status"] for b in result.data["bookings"]}
        assert statuses == {"booked"}
        assert all("verification_code" not in b for b in result.data["bookings"])

    def test_out_of_range_rejects_whole_batch(self, services, employee, test_db):
        """任何一项超出范围，整批都不写入"""
        with pytest.raises(ValidationError):
            services.bookings.book_meals(employee, [
                (TODAY + timedelta(days=1), MealType.LUNCH),
                (TODAY + timedelta(days=8), MealType.LUNCH),
            ])
        assert test_db.execute_one("SELECT COUNT(*) FROM meal_bookings")[0] == 0

    def test_past_date_rejected(self, services, employee):
        with pytest.raises(ValidationError):
            services.bookings.book_meals(employee, [(TODAY - timedelta(days=1), MealType.LUNCH)])

    def test_unknown_meal_type_rejected(self, services, employee):
        with pytest.raises(ValidationError):
            services.bookings.book_meals(employee, [(TODAY, "supper")])

    def test_empty_selection_rejected(self, services, employee):
        with pytest.raises(ValidationError):
            services.bookings.book_meals(employee, [])

    def test_rebooking_keeps_single_row(self, services, employee, test_db, clock):
        """同一天同一餐别只有一条记录，重复预订更新预订时间"""
        first = services.bookings.book_meals(employee, [(TODAY, MealType.LUNCH)])
        clock.advance(minutes=5)
        second = services.bookings.book_meals(employee, [(TODAY, MealType.LUNCH), (TODAY, MealType.LUNCH)])

        assert second.data["processed"] == 1
        assert first.data["bookings"][0]["booking_id"] == second.data["bookings"][0]["booking_id"]
        assert test_db.execute_one("SELECT COUNT(*) FROM meal_bookings")[0] == 1
        assert second.data["bookings"][0]["booked_at"] > first.data["bookings"][0]["booked_at"]

    def test_rebooking_rejected_resets_to_booked(self, services, employee, canteen_staff, booking_flow, test_db):
        booking_id = booking_flow(employee, stop_at="requested")
        services.bookings.respond_to_request(canteen_staff, booking_id, "reject")

        services.bookings.book_meals(employee, [(TODAY, MealType.LUNCH)])

        assert booking_row(test_db, booking_id)["status"] == "booked"

    def test_rebooking_in_progress_is_untouched(self, services, employee, booking_flow, test_db):
        booking_id = booking_flow(employee, stop_at="accepted")

        services.bookings.book_meals(employee, [(TODAY, MealType.LUNCH)])

        row = booking_row(test_db, booking_id)
        assert row["status"] == "accepted"
        assert row["verification_code"] is not None

    def test_only_employees_book(self, services, canteen_staff):
        with pytest.raises(AuthorizationError):
            services.bookings.book_meals(canteen_staff, [(TODAY, MealType.LUNCH)])


class TestRequestAndRespond:
    """取餐申请与食堂响应"""

    def test_request_inside_window(self, services, employee, booking_flow, publisher, test_db):
        booking_id = booking_flow(employee, stop_at="booked")

        services.bookings.request_meal(employee, MealType.LUNCH)

        assert booking_row(test_db, booking_id)["status"] == "requested"
        event = publisher.events[-1]
        assert event.channel == "canteen"
        assert event.name == "new_meal_request"
        assert event.payload == {"bookingId": booking_id, "employeeName": "Kamal Perera", "mealType": "lunch"}

    @pytest.mark.parametrize("hour, minute", [(11, 59), (16, 0), (17, 30)])
    def test_request_outside_window(self, services, employee, booking_flow, clock, hour, minute):
        booking_flow(employee, stop_at="booked")
        clock.set(local(TODAY, hour, minute))

        with pytest.raises(TimeWindowError) as exc:
            services.bookings.request_meal(employee, MealType.LUNCH)
        assert exc.value.message == "It is not lunch time yet."

    def test_window_start_is_inclusive(self, services, employee, booking_flow, clock, test_db):
        booking_id = booking_flow(employee, stop_at="booked")
        clock.set(local(TODAY, 12, 0))

        services.bookings.request_meal(employee, MealType.LUNCH)
        assert booking_row(test_db, booking_id)["status"] == "requested"

    def test_request_without_booking(self, services, employee):
        with pytest.raises(BookingNotFoundError):
            services.bookings.request_meal(employee, MealType.LUNCH)

    def test_request_twice_fails(self, services, employee, booking_flow):
        booking_flow(employee, stop_at="requested")
        with pytest.raises(InvalidTransitionError):
            services.bookings.request_meal(employee, MealType.LUNCH)

    def test_accept_sends_code_to_owner(self, services, employee, canteen_staff, booking_flow, publisher, test_db):
        booking_id = booking_flow(employee, stop_at="requested")

        result = services.bookings.respond_to_request(canteen_staff, booking_id, "accept")

        otp = result.data["otp"]
        assert len(otp) == 4 and otp.isdigit()
        row = booking_row(test_db, booking_id)
        assert row["status"] == "accepted"
        assert row["verification_code"] == otp
        assert publisher.events[-1].channel == f"user_{employee.id}"
        assert publisher.events[-1].name == "meal_accepted"
        assert publisher.events[-1].payload["otp"] == otp

    def test_reject_notifies_both_sides(self, services, employee, canteen_staff, booking_flow, publisher, test_db):
        booking_id = booking_flow(employee, stop_at="requested")
        publisher.clear()

        services.bookings.respond_to_request(canteen_staff, booking_id, "reject")

        assert booking_row(test_db, booking_id)["status"] == "rejected"
        assert publisher.names(f"user_{employee.id}") == ["meal_rejected"]
        assert publisher.names("canteen") == ["remove_request"]

    def test_respond_requires_requested_state(self, services, employee, canteen_staff, booking_flow):
        booking_id = booking_flow(employee, stop_at="booked")
        with pytest.raises(InvalidTransitionError):
            services.bookings.respond_to_request(canteen_staff, booking_id, "accept")

    def test_respond_unknown_action(self, services, employee, canteen_staff, booking_flow):
        booking_id = booking_flow(employee, stop_at="requested")
        with pytest.raises(ValidationError):
            services.bookings.respond_to_request(canteen_staff, booking_id, "maybe")

    def test_only_canteen_responds(self, services, employee, booking_flow):
        booking_id = booking_flow(employee, stop_at="requested")
        with pytest.raises(AuthorizationError):
            services.bookings.respond_to_request(employee, booking_id, "accept")


class TestVerifyCode:
    """取餐码核验"""

    def test_wrong_code_keeps_state(self, services, employee, booking_flow, test_db):
        booking_id = booking_flow(employee, stop_at="accepted")
        code = booking_row(test_db, booking_id)["verification_code"]
        wrong = f"{(int(code) + 1) % 10000:04d}"

        with pytest.raises(VerificationCodeMismatchError):
            services.bookings.verify_code(employee, booking_id, wrong)

        row = booking_row(test_db, booking_id)
        assert row["status"] == "accepted"
        assert row["verification_code"] == code

    def test_correct_code_clears_it(self, services, employee, booking_flow, test_db):
        booking_id = booking_flow(employee, stop_at="accepted")
        code = booking_row(test_db, booking_id)["verification_code"]

        result = services.bookings.verify_code(employee, booking_id, code)

        row = booking_row(test_db, booking_id)
        assert result.data["next_step"] == "payment"
        assert row["status"] == "verified"
        assert row["verification_code"] is None
        assert row["verified_at"] is not None

    def test_code_is_single_use(self, services, employee, booking_flow, test_db):
        booking_id = booking_flow(employee, stop_at="accepted")
        code = booking_row(test_db, booking_id)["verification_code"]
        services.bookings.verify_code(employee, booking_id, code)

        with pytest.raises(VerificationCodeMismatchError):
            services.bookings.verify_code(employee, booking_id, code)

    @pytest.mark.parametrize("code", ["123", "12345", "12a4", ""])
    def test_malformed_code(self, services, employee, booking_flow, code):
        booking_id = booking_flow(employee, stop_at="accepted")
        with pytest.raises(ValidationError):
            services.bookings.verify_code(employee, booking_id, code)

    def test_other_users_booking_is_not_found(self, services, employee, make_user, booking_flow, test_db):
        booking_id = booking_flow(employee, stop_at="accepted")
        other = make_user()
        code = booking_row(test_db, booking_id)["verification_code"]

        with pytest.raises(BookingNotFoundError):
            services.bookings.verify_code(other, booking_id, code)

    def test_served_booking_reports_collected(self, services, employee, canteen_staff, booking_flow):
        booking_id = booking_flow(employee)
        services.bookings.issue_meal(canteen_staff, booking_id)

        with pytest.raises(AlreadyCollectedError):
            services.bookings.verify_code(employee, booking_id, "0000")


class TestComputePayment:
    """付款计算"""

    def test_intern_is_free(self, services, intern, booking_flow, test_db):
        booking_id = booking_flow(intern, payment_type=PaymentType.PAY_NOW)

        row = booking_row(test_db, booking_id)
        assert row["status"] == "paid"
        assert row["payment_type"] == "free"
        assert (row["total_price_cents"], row["amount_paid_cents"], row["balance_cents"]) == (0, 0, 0)

    def test_permanent_pays_now(self, services, permanent, booking_flow, test_db, publisher):
        booking_id = booking_flow(permanent)

        row = booking_row(test_db, booking_id)
        assert row["payment_type"] == "pay_now"
        assert (row["total_price_cents"], row["amount_paid_cents"], row["balance_cents"]) == (5000, 5000, 0)
        event = publisher.events[-1]
        assert event.name == "payment_computed"
        assert event.payload["currentLoan"] == 0

    def test_permanent_cannot_pay_later(self, services, permanent, booking_flow):
        booking_id = booking_flow(permanent, stop_at="verified")
        with pytest.raises(PaymentPolicyError):
            services.bookings.compute_payment(permanent, booking_id, PaymentType.PAY_LATER)

    def test_casual_pay_later_creates_balance(self, services, employee, booking_flow, test_db):
        booking_id = booking_flow(employee, payment_type=PaymentType.PAY_LATER, amount_paid_cents=1500)

        row = booking_row(test_db, booking_id)
        assert row["payment_type"] == "pay_later"
        assert (row["amount_paid_cents"], row["balance_cents"]) == (1500, 3500)
        assert loan_of(test_db, employee.id) == 3500

    def test_casual_defaults_to_pay_now(self, services, employee, booking_flow, test_db):
        booking_id = booking_flow(employee)
        assert booking_row(test_db, booking_id)["payment_type"] == "pay_now"

    def test_free_is_only_for_interns(self, services, employee, booking_flow):
        booking_id = booking_flow(employee, stop_at="verified")
        with pytest.raises(PaymentPolicyError):
            services.bookings.compute_payment(employee, booking_id, PaymentType.FREE)

    def test_negative_amount_rejected(self, services, employee, booking_flow):
        booking_id = booking_flow(employee, stop_at="verified")
        with pytest.raises(ValidationError):
            services.bookings.compute_payment(employee, booking_id, PaymentType.PAY_LATER, -1)

    def test_loan_limit_enforced(self, services, employee, booking_flow, seed_debt, test_db):
        seed_debt(employee.id, TODAY - timedelta(days=3), MealType.LUNCH, 498_000)
        booking_id = booking_flow(employee, stop_at="verified")

        with pytest.raises(LoanLimitExceededError):
            services.bookings.compute_payment(employee, booking_id, PaymentType.PAY_LATER)
        assert booking_row(test_db, booking_id)["status"] == "verified"

    def test_payment_requires_verification(self, services, employee, booking_flow):
        booking_id = booking_flow(employee, stop_at="accepted")
        with pytest.raises(InvalidTransitionError):
            services.bookings.compute_payment(employee, booking_id)

    def test_uses_current_price(self, services, employee, admin, booking_flow, test_db):
        booking_id = booking_flow(employee, stop_at="verified")
        services.pricing.update_prices(admin, 3000, 6500, 2000)

        services.bookings.compute_payment(employee, booking_id)
        assert booking_row(test_db, booking_id)["total_price_cents"] == 6500


class TestIssueMeal:
    """出餐"""

    def test_short_collection_respects_loan_limit(self, services, employee, canteen_staff, booking_flow,
                                                  seed_debt, test_db):
        """付款计算时付清，出餐时少收，欠款同样不能超过额度"""
        seed_debt(employee.id, TODAY - timedelta(days=3), MealType.LUNCH, 499_000)
        booking_id = booking_flow(employee)

        with pytest.raises(LoanLimitExceededError):
            services.bookings.issue_meal(canteen_staff, booking_id, collected_amount_cents=0)

        row = booking_row(test_db, booking_id)
        assert row["status"] == "paid"
        assert row["balance_cents"] == 0
        assert loan_of(test_db, employee.id) == 499_000

    def test_issue_full_payment(self, services, permanent, canteen_staff, booking_flow, publisher, test_db):
        booking_id = booking_flow(permanent)
        publisher.clear()

        result = services.bookings.issue_meal(canteen_staff, booking_id)

        row = booking_row(test_db, booking_id)
        assert row["status"] == "served"
        assert row["served_at"] is not None
        assert result.data["balance_cents"] == 0
        assert publisher.names(f"user_{permanent.id}") == ["meal_issued", "refresh_wallet"]
        assert publisher.names("canteen") == ["remove_from_queue"]
        entries = test_db.query_dicts("SELECT type, amount_cents FROM ledger WHERE booking_id = ?", [booking_id])
        assert entries == [{"type": "payment", "amount_cents": 5000}]

    def test_shortfall_becomes_debt(self, services, employee, canteen_staff, booking_flow, test_db):
        booking_id = booking_flow(employee)

        services.bookings.issue_meal(canteen_staff, booking_id, collected_amount_cents=3000)

        row = booking_row(test_db, booking_id)
        assert (row["amount_paid_cents"], row["balance_cents"]) == (3000, 2000)
        assert loan_of(test_db, employee.id) == 2000
        types = [r[0] for r in test_db.execute_query(
            "SELECT type FROM ledger WHERE booking_id = ? ORDER BY ledger_id", [booking_id])]
        assert types == ["payment", "debt"]

    def test_permanent_shortfall_violates_policy(self, services, permanent, canteen_staff, booking_flow, test_db):
        booking_id = booking_flow(permanent)

        with pytest.raises(PaymentPolicyError):
            services.bookings.issue_meal(canteen_staff, booking_id, collected_amount_cents=3000)
        assert booking_row(test_db, booking_id)["status"] == "paid"

    def test_excess_settles_older_debts(self, services, employee, canteen_staff, booking_flow, seed_debt, test_db):
        old_id = seed_debt(employee.id, TODAY - timedelta(days=2), MealType.DINNER, 2500)
        booking_id = booking_flow(employee, payment_type=PaymentType.PAY_LATER)

        result = services.bookings.issue_meal(canteen_staff, booking_id, collected_amount_cents=6000,
                                              settle_excess_to_loan=True)

        settlement = result.data["settlement"]
        assert settlement["excluded_booking_id"] == booking_id
        assert settlement["applied_cents"] == 1000
        assert [s["booking_id"] for s in settlement["settlements"]] == [old_id]
        assert booking_row(test_db, booking_id)["balance_cents"] == 0
        assert booking_row(test_db, old_id)["balance_cents"] == 1500
        assert loan_of(test_db, employee.id) == 1500

    def test_excess_without_settlement_is_change(self, services, employee, canteen_staff, booking_flow, seed_debt,
                                                 test_db):
        old_id = seed_debt(employee.id, TODAY - timedelta(days=2), MealType.DINNER, 2500)
        booking_id = booking_flow(employee)

        result = services.bookings.issue_meal(canteen_staff, booking_id, collected_amount_cents=6000)

        assert result.data["change_due_cents"] == 1000
        assert result.data["settlement"] is None
        assert booking_row(test_db, old_id)["balance_cents"] == 2500

    def test_issue_twice(self, services, employee, canteen_staff, booking_flow):
        booking_id = booking_flow(employee)
        services.bookings.issue_meal(canteen_staff, booking_id)
        with pytest.raises(AlreadyCollectedError):
            services.bookings.issue_meal(canteen_staff, booking_id)

    def test_issue_requires_payment(self, services, employee, canteen_staff, booking_flow):
        booking_id = booking_flow(employee, stop_at="verified")
        with pytest.raises(InvalidTransitionError):
            services.bookings.issue_meal(canteen_staff, booking_id)


class TestRejectIssue:
    """拒绝出餐"""

    @pytest.mark.parametrize("stop_at", ["requested", "accepted", "verified", "paid"])
    def test_resets_to_booked(self, services, employee, canteen_staff, booking_flow, test_db, stop_at):
        booking_id = booking_flow(employee, stop_at=stop_at, payment_type=PaymentType.PAY_LATER)

        services.bookings.reject_issue(canteen_staff, booking_id)

        row = booking_row(test_db, booking_id)
        assert row["status"] == "booked"
        assert row["verification_code"] is None
        assert row["requested_at"] is None
        assert row["verified_at"] is None
        assert row["payment_type"] is None
        assert row["total_price_cents"] == 0
        assert row["amount_paid_cents"] == 0
        assert row["balance_cents"] == 0
        assert loan_of(test_db, employee.id) == 0

    def test_booking_can_be_requested_again(self, services, employee, canteen_staff, booking_flow, test_db):
        booking_id = booking_flow(employee)
        services.bookings.reject_issue(canteen_staff, booking_id)

        services.bookings.request_meal(employee, MealType.LUNCH)
        assert booking_row(test_db, booking_id)["status"] == "requested"

    def test_served_cannot_be_reset(self, services, employee, canteen_staff, booking_flow):
        booking_id = booking_flow(employee)
        services.bookings.issue_meal(canteen_staff, booking_id)
        with pytest.raises(AlreadyCollectedError):
            services.bookings.reject_issue(canteen_staff, booking_id)

    def test_booked_cannot_be_reset(self, services, employee, canteen_staff, booking_flow):
        booking_id = booking_flow(employee, stop_at="booked")
        with pytest.raises(InvalidTransitionError):
            services.bookings.reject_issue(canteen_staff, booking_id)


class TestCancellation:
    """取消预订"""

    def _book_tomorrow_lunch(self, services, employee):
        result = services.bookings.book_meals(employee, [(TODAY + timedelta(days=1), MealType.LUNCH)])
        return result.data["bookings"][0]["booking_id"]

    def test_cancel_at_exact_deadline(self, services, employee, clock, test_db):
        """截止时刻本身仍可取消"""
        booking_id = self._book_tomorrow_lunch(services, employee)
        clock.set(local(TODAY, 14, 0))

        services.bookings.cancel_booking(employee, booking_id)

        assert booking_row(test_db, booking_id) is None
        assert services.audit.count(MEAL_CANCELLED) == 1

    def test_cancel_after_deadline(self, services, employee, clock, test_db):
        booking_id = self._book_tomorrow_lunch(services, employee)
        clock.set(local(TODAY, 14, 0) + timedelta(seconds=1))

        with pytest.raises(DeadlineExceededError) as exc:
            services.bookings.cancel_booking(employee, booking_id)
        assert exc.value.message == "Cancellation deadline for lunch has passed."
        assert booking_row(test_db, booking_id) is not None

    def test_cancel_only_booked(self, services, employee, booking_flow, clock):
        booking_id = booking_flow(employee, stop_at="requested")
        with pytest.raises(InvalidTransitionError):
            services.bookings.cancel_booking(employee, booking_id)

    def test_cancel_others_booking(self, services, employee, make_user):
        booking_id = self._book_tomorrow_lunch(services, employee)
        with pytest.raises(BookingNotFoundError):
            services.bookings.cancel_booking(make_user(), booking_id)

    def test_admin_cancel_records_snapshot(self, services, employee, admin, seed_debt, test_db, publisher):
        booking_id = seed_debt(employee.id, TODAY - timedelta(days=1), MealType.LUNCH, 4000)
        assert loan_of(test_db, employee.id) == 4000

        services.bookings.admin_cancel_booking(admin, booking_id, "Duplicate entry")

        assert booking_row(test_db, booking_id) is None
        assert loan_of(test_db, employee.id) == 0
        log = services.audit.list_logs(action=MEAL_CANCELLED)["items"][0]
        assert log["details"] == "Duplicate entry"
        assert log["target_user"] == employee.id
        assert log["metadata"]["booking"]["booking_id"] == booking_id
        assert "booking_cancelled" in publisher.names(f"user_{employee.id}")

    def test_admin_cancel_requires_reason(self, services, employee, admin):
        booking_id = self._book_tomorrow_lunch(services, employee)
        with pytest.raises(ValidationError):
            services.bookings.admin_cancel_booking(admin, booking_id, "   ")


class TestStatusModel:
    """状态取值"""

    def test_served_is_terminal(self):
        for target in BookingStatus:
            assert not can_transition(BookingStatus.SERVED, target)
