"""
HTTP 接口测试
"""

import asyncio
import time
from datetime import timedelta

import pytest
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from ..app import create_app
from ..core.security import security_manager
from ..models.booking import MealType
from ..services.notification_service import CANTEEN_CHANNEL, kiosk_channel, notification_hub, user_channel
from .conftest import TODAY, booking_row

API = "/api/v1"


class TestAuth:
    """认证"""

    def test_missing_token(self, client):
        response = client.get(f"{API}/meals/today")
        assert response.status_code == 401
        assert response.json()["error_code"] == "AUTHENTICATION_FAILED"

    def test_invalid_token(self, client):
        response = client.get(f"{API}/meals/today", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    def test_wrong_role(self, client, employee, auth_headers):
        response = client.get(f"{API}/analytics/dashboard", headers=auth_headers(employee))
        assert response.status_code == 403
        assert response.json()["error_code"] == "PERMISSION_DENIED"


class TestMealFlow:
    """完整取餐流程"""

    def test_book_to_issue(self, client, employee, canteen_staff, priced, auth_headers, publisher):
        me = auth_headers(employee)
        staff = auth_headers(canteen_staff)

        response = client.post(f"{API}/meals/book", headers=me,
                               json={"selections": [{"date": TODAY.isoformat(), "meal_type": "lunch"}]})
        assert response.status_code == 200
        booking_id = response.json()["data"]["bookings"][0]["booking_id"]

        assert client.post(f"{API}/meals/request", headers=me, json={"meal_type": "lunch"}).status_code == 200
        assert "new_meal_request" in publisher.names("canteen")

        response = client.post(f"{API}/meals/respond", headers=staff,
                               json={"booking_id": booking_id, "action": "accept"})
        otp = response.json()["data"]["otp"]

        response = client.post(f"{API}/meals/verify-otp", headers=me, json={"booking_id": booking_id, "otp": otp})
        assert response.json()["data"]["next_step"] == "payment"

        response = client.post(f"{API}/meals/process-payment", headers=me, json={"booking_id": booking_id})
        assert response.json()["data"]["total_price_cents"] == 5000

        response = client.post(f"{API}/meals/issue", headers=staff, json={"booking_id": booking_id})
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "served"

        response = client.get(f"{API}/meals/today", headers=me)
        assert [b["status"] for b in response.json()["data"]] == ["served"]

    def test_wrong_code(self, client, employee, booking_flow, auth_headers, test_db):
        booking_id = booking_flow(employee, stop_at="accepted")
        wrong = "1111" if booking_row(test_db, booking_id)["verification_code"] == "0000" else "0000"
        response = client.post(f"{API}/meals/verify-otp", headers=auth_headers(employee),
                               json={"booking_id": booking_id, "otp": wrong})

        assert response.status_code == 401
        assert response.json()["error_code"] == "VERIFICATION_CODE_MISMATCH"

    def test_malformed_code(self, client, employee, booking_flow, auth_headers):
        booking_id = booking_flow(employee, stop_at="accepted")
        response = client.post(f"{API}/meals/verify-otp", headers=auth_headers(employee),
                               json={"booking_id": booking_id, "otp": "12a"})
        assert response.status_code == 422
        assert response.json()["details"]["validation_errors"][0]["field"] == "otp"

    def test_booking_out_of_range(self, client, employee, auth_headers):
        response = client.post(f"{API}/meals/book", headers=auth_headers(employee),
                               json={"selections": [{"date": (TODAY + timedelta(days=30)).isoformat(),
                                                     "meal_type": "dinner"}]})
        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_other_users_booking_hidden(self, client, employee, make_user, booking_flow, auth_headers):
        booking_id = booking_flow(employee, stop_at="booked")
        stranger = make_user()
        response = client.delete(f"{API}/meals/{booking_id}", headers=auth_headers(stranger))
        assert response.status_code == 404


class TestWalletApi:
    """钱包与还款"""

    def test_repay(self, client, employee, canteen_staff, seed_debt, auth_headers):
        seed_debt(employee.id, TODAY - timedelta(days=1), MealType.LUNCH, 4000)

        response = client.post(f"{API}/wallet/repay", headers=auth_headers(canteen_staff),
                               json={"user_id": employee.id, "amount_cents": 2500})
        data = response.json()["data"]
        assert data["loan_after_cents"] == 1500
        assert data["bookings_affected"] == 1

        wallet = client.get(f"{API}/wallet/me", headers=auth_headers(employee)).json()["data"]
        assert wallet["loan_amount_cents"] == 1500

    def test_repay_requires_positive_amount(self, client, employee, canteen_staff, auth_headers):
        response = client.post(f"{API}/wallet/repay", headers=auth_headers(canteen_staff),
                               json={"user_id": employee.id, "amount_cents": 0})
        assert response.status_code == 422


class TestKioskApi:
    """自助机与考勤机"""

    def test_login(self, client, make_user):
        user = make_user(bio_id="9001")
        response = client.post(f"{API}/kiosk/login", json={"bio_id": "9001"})
        assert response.status_code == 200
        assert response.json()["data"]["user"]["id"] == user.id

    def test_unknown_bio_id(self, client):
        response = client.post(f"{API}/kiosk/login", json={"bio_id": "404"})
        assert response.status_code == 404

    def test_handshake(self, client):
        response = client.get("/iclock/cdata", params={"SN": "ABC123"})
        assert response.status_code == 200
        assert response.text.startswith("GET OPTION FROM: ABC123")

    def test_push(self, client, make_user, publisher):
        make_user(bio_id="9001")
        response = client.post("/iclock/cdata", params={"SN": "ABC123", "table": "ATTLOG"},
                               content="9001\t2026-03-10 12:30:00\t0\t1\n")
        assert response.text == "OK"
        assert publisher.names("kiosk_ABC123") == ["kiosk_login"]

    def test_push_runs_off_event_loop(self, client, app_instance, make_user, monkeypatch):
        """设备推送要查库，不能占用事件循环"""
        kiosk = app_instance.state.services.kiosk
        handle = kiosk.handle_attendance_log
        seen = []

        def recording(*args):
            try:
                asyncio.get_running_loop()
                seen.append("event_loop")
            except RuntimeError:
                seen.append("worker")
            return handle(*args)

        monkeypatch.setattr(kiosk, "handle_attendance_log", recording)
        make_user(bio_id="9001")

        response = client.post("/iclock/cdata", params={"SN": "ABC123", "table": "ATTLOG"},
                               content="9001\t2026-03-10 12:30:00\t0\t1\n")

        assert response.text == "OK"
        assert seen == ["worker"]

    def test_getrequest(self, client):
        assert client.get("/iclock/getrequest").text == "OK"


class TestAdminApi:
    """管理接口"""

    def test_prices(self, client, admin, employee, auth_headers):
        response = client.post(f"{API}/meals/prices", headers=auth_headers(admin),
                               json={"breakfast_cents": 3000, "lunch_cents": 5000, "dinner_cents": 2000})
        assert response.status_code == 200

        prices = client.get(f"{API}/meals/prices", headers=auth_headers(employee)).json()["data"]
        assert prices["lunch_cents"] == 5000

    def test_daily_report_requires_dates(self, client, admin, auth_headers):
        response = client.get(f"{API}/analytics/daily-report", headers=auth_headers(admin))
        assert response.status_code == 422

    def test_audit_logs(self, client, admin, priced, auth_headers):
        response = client.get(f"{API}/audit/logs", headers=auth_headers(admin))
        items = response.json()["data"]["items"]
        assert items[0]["action"] == "PRICE_UPDATED"

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"


@pytest.fixture
def live_client(test_db, clock):
    """走全局通知中心的测试客户端，WebSocket 订阅者能收到真实推送"""
    with TestClient(create_app(db=test_db, clock=clock)) as c:
        yield c


def _wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.01)
    return True


class TestNotificationSocket:
    """WebSocket 订阅"""

    def test_anonymous_rejected(self, live_client, employee):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with live_client.websocket_connect(f"/ws/user_{employee.id}") as ws:
                ws.receive_json()
        assert exc_info.value.code == 1008

    def test_other_users_channel_rejected(self, live_client, employee, make_user):
        other = make_user()
        token = security_manager.create_jwt_token(other)

        with pytest.raises(WebSocketDisconnect):
            with live_client.websocket_connect(f"/ws/user_{employee.id}?token={token}") as ws:
                ws.receive_json()

    def test_bad_token_rejected(self, live_client):
        with pytest.raises(WebSocketDisconnect):
            with live_client.websocket_connect("/ws/canteen?token=nope") as ws:
                ws.receive_json()

    def test_employee_cannot_watch_kiosk(self, live_client, employee):
        token = security_manager.create_jwt_token(employee)

        with pytest.raises(WebSocketDisconnect):
            with live_client.websocket_connect(f"/ws/{kiosk_channel('ABC123')}?token={token}") as ws:
                ws.receive_json()

    def test_owner_receives_acceptance(self, live_client, employee, canteen_staff, booking_flow):
        booking_id = booking_flow(employee, stop_at="requested")
        token = security_manager.create_jwt_token(employee)
        channel = user_channel(employee.id)

        with live_client.websocket_connect(f"/ws/{channel}?token={token}") as ws:
            result = live_client.app.state.services.bookings.respond_to_request(canteen_staff, booking_id, "accept")
            message = ws.receive_json()

        assert message["event"] == "meal_accepted"
        assert message["channel"] == channel
        assert message["payload"] == {"bookingId": booking_id, "otp": result.data["otp"]}

    def test_disconnect_releases_subscription(self, live_client, canteen_staff):
        token = security_manager.create_jwt_token(canteen_staff)

        with live_client.websocket_connect(f"/ws/canteen?token={token}"):
            assert notification_hub.subscriber_count(CANTEEN_CHANNEL) == 1

        assert _wait_until(lambda: notification_hub.subscriber_count(CANTEEN_CHANNEL) == 0)
