"""
测试配置文件
提供测试所需的fixtures：内存数据库、可控时钟、记录型通知发布者和各类用户
"""

import itertools
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

import pytest
from fastapi.testclient import TestClient

from ..app import create_app
from ..core.clock import FixedClock, to_storage
from ..core.database import DatabaseManager
from ..core.security import security_manager
from ..models.booking import MealType
from ..models.user import Principal, Role, SubRole
from ..services.notification_service import RecordingPublisher
from ..services.registry import ServiceRegistry

TZ = ZoneInfo("Asia/Colombo")

# 2026-03-10 12:30 当地时间，处于午餐取餐时间段
TODAY = date(2026, 3, 10)
NOON = datetime(2026, 3, 10, 12, 30, tzinfo=TZ)

PRICES = {"breakfast_cents": 3000, "lunch_cents": 5000, "dinner_cents": 2000}

_seq = itertools.count(1)


@pytest.fixture
def test_db():
    """内存数据库，每个测试独立"""
    db = DatabaseManager(":memory:")
    db.init_database()
    yield db
    db.close()


@pytest.fixture
def clock():
    return FixedClock(NOON, "Asia/Colombo")


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def services(test_db, clock, publisher):
    return ServiceRegistry.build(db=test_db, clock=clock, publisher=publisher)


@pytest.fixture
def make_user(services):
    """创建用户并返回对应的调用者"""

    def _make(role=Role.EMPLOYEE, sub_role=SubRole.CASUAL, bio_id=None, **fields):
        n = next(_seq)
        user = services.users.create_user(
            username=fields.pop("username", f"user{n}"),
            first_name=fields.pop("first_name", "Test"),
            last_name=fields.pop("last_name", f"User{n}"),
            role=role,
            sub_role=sub_role if role == Role.EMPLOYEE else None,
            bio_id=bio_id,
            **fields,
        )
        return Principal(id=user.id, role=role, sub_role=user.sub_role)

    return _make


@pytest.fixture
def employee(make_user):
    """临时工，可赊账"""
    return make_user(sub_role=SubRole.CASUAL, first_name="Kamal", last_name="Perera")


@pytest.fixture
def permanent(make_user):
    return make_user(sub_role=SubRole.PERMANENT)


@pytest.fixture
def intern(make_user):
    return make_user(sub_role=SubRole.INTERN)


@pytest.fixture
def canteen_staff(make_user):
    return make_user(role=Role.CANTEEN)


@pytest.fixture
def admin(make_user):
    return make_user(role=Role.ADMIN)


@pytest.fixture
def priced(services, admin):
    """设置餐价：早餐30、午餐50、晚餐20"""
    return services.pricing.update_prices(admin, **PRICES)


@pytest.fixture
def booking_flow(services, canteen_staff, priced):
    """
    把员工今天的一餐推进到指定状态，返回订餐ID

    stop_at: booked / requested / accepted / verified / paid
    """

    def _flow(principal, meal_type=MealType.LUNCH, stop_at="paid", payment_type=None, amount_paid_cents=None):
        result = services.bookings.book_meals(principal, [(TODAY, meal_type)])
        booking_id = result.data["bookings"][0]["booking_id"]
        if stop_at == "booked":
            return booking_id
        services.bookings.request_meal(principal, meal_type)
        if stop_at == "requested":
            return booking_id
        otp = services.bookings.respond_to_request(canteen_staff, booking_id, "accept").data["otp"]
        if stop_at == "accepted":
            return booking_id
        services.bookings.verify_code(principal, booking_id, otp)
        if stop_at == "verified":
            return booking_id
        services.bookings.compute_payment(principal, booking_id, payment_type, amount_paid_cents)
        return booking_id

    return _flow


@pytest.fixture
def seed_debt(services, test_db):
    """直接写入一条已出餐但未付清的订餐，并重算赊账"""

    def _seed(user_id, booking_date, meal_type, balance_cents):
        booked_at = to_storage(services.clock.now())
        with test_db.transaction() as conn:
            row = conn.execute(
                """INSERT INTO meal_bookings(user_id, booking_date, meal_type, status, payment_type,
                                             total_price_cents, amount_paid_cents, balance_cents, booked_at)
                   VALUES (?, ?, ?, 'served', 'pay_later', ?, 0, ?, ?) RETURNING booking_id""",
                [user_id, booking_date, MealType(meal_type).value, balance_cents, balance_cents, booked_at],
            ).fetchone()
            services.ledger.recompute_loan(conn, user_id)
        return row[0]

    return _seed


def booking_row(test_db, booking_id):
    return test_db.query_dict("SELECT * FROM meal_bookings WHERE booking_id = ?", [booking_id])


def loan_of(test_db, user_id):
    return test_db.execute_one("SELECT loan_amount_cents FROM users WHERE id = ?", [user_id])[0]


def local(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=TZ)


@pytest.fixture
def app_instance(test_db, clock, publisher):
    """测试应用，注入测试数据库、时钟和发布者"""
    return create_app(db=test_db, clock=clock, publisher=publisher)


@pytest.fixture
def client(app_instance):
    """测试客户端"""
    with TestClient(app_instance) as c:
        yield c


@pytest.fixture
def auth_headers():
    """为调用者签发令牌"""

    def _headers(principal):
        token = security_manager.create_jwt_token(principal)
        return {"Authorization": f"Bearer {token}"}

    return _headers
