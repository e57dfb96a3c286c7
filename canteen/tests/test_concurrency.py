"""
并发测试
同一用户的冲抵串行执行；同一 (用户, 日期, 餐别) 并发预订只留一条记录
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from ..models.booking import MealType
from .conftest import TODAY, booking_row, loan_of


def _outstanding(test_db, user_id):
    return test_db.execute_one(
        "SELECT COALESCE(SUM(balance_cents), 0) FROM meal_bookings WHERE user_id = ? AND balance_cents > 0",
        [user_id],
    )[0]


class TestLedgerSerialization:
    """手工还款与出餐多收同时冲抵"""

    def test_repay_and_issue_excess_in_parallel(self, services, employee, canteen_staff, booking_flow,
                                                seed_debt, test_db):
        debts = [
            seed_debt(employee.id, TODAY - timedelta(days=3), MealType.LUNCH, 3000),
            seed_debt(employee.id, TODAY - timedelta(days=2), MealType.DINNER, 5000),
        ]
        booking_id = booking_flow(employee)

        with ThreadPoolExecutor(max_workers=2) as pool:
            repay = pool.submit(services.ledger.repay_loan, canteen_staff, employee.id, 3000)
            issue = pool.submit(services.bookings.issue_meal, canteen_staff, booking_id, 9000, True)
            repaid = repay.result()
            issued = issue.result()

        # 3000 + 4000 冲抵 8000 欠款，无论先后都剩 1000
        assert repaid.applied_cents + issued.data["settlement"]["applied_cents"] == 7000
        assert loan_of(test_db, employee.id) == 1000
        assert _outstanding(test_db, employee.id) == 1000
        assert booking_row(test_db, booking_id)["balance_cents"] == 0
        assert [booking_row(test_db, b)["balance_cents"] for b in debts] == [0, 1000]

        repayments = test_db.execute_one(
            "SELECT COALESCE(SUM(amount_cents), 0) FROM ledger WHERE user_id = ? AND type = 'repayment'",
            [employee.id],
        )[0]
        assert repayments == 7000

    def test_parallel_repayments_never_overpay(self, services, employee, canteen_staff, seed_debt, test_db):
        seed_debt(employee.id, TODAY - timedelta(days=2), MealType.LUNCH, 4000)
        seed_debt(employee.id, TODAY - timedelta(days=1), MealType.LUNCH, 4000)

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(
                lambda _: services.ledger.repay_loan(canteen_staff, employee.id, 3000), range(4)
            ))

        assert sum(r.applied_cents for r in results) == 8000
        assert sum(r.unused_cents for r in results) == 4000
        assert loan_of(test_db, employee.id) == 0
        assert test_db.execute_one(
            "SELECT COUNT(*) FROM meal_bookings WHERE balance_cents < 0"
        )[0] == 0


class TestBookingUniqueness:
    """并发预订同一餐"""

    def test_single_row_per_triple(self, services, employee, test_db):
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda _: services.bookings.book_meals(employee, [(TODAY + timedelta(days=1), MealType.DINNER)]),
                range(8),
            ))

        rows = test_db.execute_query(
            "SELECT booking_id FROM meal_bookings WHERE user_id = ? AND booking_date = ? AND meal_type = 'dinner'",
            [employee.id, TODAY + timedelta(days=1)],
        )
        assert len(rows) == 1
        assert {r.data["bookings"][0]["booking_id"] for r in results} == {rows[0][0]}
