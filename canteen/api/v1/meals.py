"""
订餐路由模块
员工预订/取消/申请取餐/核验取餐码，食堂响应/付款/出餐，以及餐价维护
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends

from ...core.error_handler import create_success_response
from ...core.security import get_principal
from ...models.user import Principal
from ...schemas.meal import (
    AdminCancelRequest,
    BookingIdRequest,
    BookMealsRequest,
    IssueRequest,
    MealRequestRequest,
    PriceUpdateRequest,
    ProcessPaymentRequest,
    RespondRequest,
    VerifyCodeRequest,
)
from ...services.registry import ServiceRegistry, get_services

router = APIRouter()


@router.post("/book")
def book_meals(req: BookMealsRequest, principal: Principal = Depends(get_principal),
               services: ServiceRegistry = Depends(get_services)):
    """批量预订，同一天同一餐别重复提交会覆盖原记录"""
    result = services.bookings.book_meals(
        principal, [(s.booking_date, s.meal_type) for s in req.selections]
    )
    return create_success_response(result.data, result.data["message"])


@router.get("/today")
def get_today_meals(principal: Principal = Depends(get_principal),
                    services: ServiceRegistry = Depends(get_services)):
    bookings = services.bookings.get_today_meals(principal)
    return create_success_response([b.public_dict() for b in bookings])


@router.get("/mine")
def list_my_bookings(start: Optional[date] = None, end: Optional[date] = None,
                     principal: Principal = Depends(get_principal),
                     services: ServiceRegistry = Depends(get_services)):
    """员工的订餐记录，默认为今天起的预订窗口"""
    bookings = services.bookings.list_my_bookings(principal, start, end)
    return create_success_response([b.public_dict() for b in bookings])


@router.post("/request")
def request_meal(req: MealRequestRequest, principal: Principal = Depends(get_principal),
                 services: ServiceRegistry = Depends(get_services)):
    result = services.bookings.request_meal(principal, req.meal_type)
    return create_success_response(result.data, result.data["message"])


@router.post("/respond")
def respond_to_request(req: RespondRequest, principal: Principal = Depends(get_principal),
                       services: ServiceRegistry = Depends(get_services)):
    result = services.bookings.respond_to_request(principal, req.booking_id, req.action)
    return create_success_response(result.data)


@router.post("/verify-otp")
def verify_code(req: VerifyCodeRequest, principal: Principal = Depends(get_principal),
                services: ServiceRegistry = Depends(get_services)):
    result = services.bookings.verify_code(principal, req.booking_id, req.otp)
    return create_success_response(result.data, "Code verified.")


@router.post("/process-payment")
def process_payment(req: ProcessPaymentRequest, principal: Principal = Depends(get_principal),
                    services: ServiceRegistry = Depends(get_services)):
    result = services.bookings.compute_payment(
        principal, req.booking_id, req.payment_type, req.amount_paid_cents
    )
    return create_success_response(result.data, "Payment computed.")


@router.get("/payment-status/{booking_id}")
def get_payment_status(booking_id: int, principal: Principal = Depends(get_principal),
                       services: ServiceRegistry = Depends(get_services)):
    return create_success_response(services.bookings.get_payment_status(principal, booking_id))


@router.post("/issue")
def issue_meal(req: IssueRequest, principal: Principal = Depends(get_principal),
               services: ServiceRegistry = Depends(get_services)):
    result = services.bookings.issue_meal(
        principal, req.booking_id, req.collected_amount_cents, req.settle_excess_to_loan
    )
    return create_success_response(result.data, "Meal issued.")


@router.post("/reject-issue")
def reject_issue(req: BookingIdRequest, principal: Principal = Depends(get_principal),
                 services: ServiceRegistry = Depends(get_services)):
    result = services.bookings.reject_issue(principal, req.booking_id)
    return create_success_response(result.data, "Issue rejected.")


@router.get("/prices")
def get_prices(principal: Principal = Depends(get_principal),
               services: ServiceRegistry = Depends(get_services)):
    return create_success_response(services.pricing.get_current_prices().model_dump(mode="json"))


@router.post("/prices")
def update_prices(req: PriceUpdateRequest, principal: Principal = Depends(get_principal),
                  services: ServiceRegistry = Depends(get_services)):
    prices = services.pricing.update_prices(principal, req.breakfast_cents, req.lunch_cents, req.dinner_cents)
    return create_success_response(prices.model_dump(mode="json"), "Prices updated.")


@router.delete("/{booking_id}")
def cancel_booking(booking_id: int, principal: Principal = Depends(get_principal),
                   services: ServiceRegistry = Depends(get_services)):
    """员工取消自己的预订（截止时间前）"""
    result = services.bookings.cancel_booking(principal, booking_id)
    return create_success_response(result.data, "Booking cancelled.")


@router.post("/{booking_id}/admin-cancel")
def admin_cancel_booking(booking_id: int, req: AdminCancelRequest, principal: Principal = Depends(get_principal),
                         services: ServiceRegistry = Depends(get_services)):
    result = services.bookings.admin_cancel_booking(principal, booking_id, req.reason)
    return create_success_response(result.data, "Booking cancelled.")
