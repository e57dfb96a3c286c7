"""
访客用餐路由模块
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...core.error_handler import create_success_response
from ...core.security import get_principal
from ...models.user import Principal
from ...schemas.user import VisitorCreateRequest
from ...services.registry import ServiceRegistry, get_services

router = APIRouter()


@router.post("")
def add_visitor(req: VisitorCreateRequest, principal: Principal = Depends(get_principal),
                services: ServiceRegistry = Depends(get_services)):
    data = services.visitors.add_visitor(
        principal, req.visitor_name, req.contact_number, [t.value for t in req.meal_types],
        req.booking_date, req.company,
    )
    return create_success_response(data, data["message"])


@router.get("")
def list_visitor_bookings(booking_date: Optional[date] = Query(None, alias="date"), principal: Principal = Depends(get_principal),
                          services: ServiceRegistry = Depends(get_services)):
    return create_success_response(services.visitors.list_visitor_bookings(principal, booking_date))


@router.post("/{visitor_booking_id}/issue")
def issue_visitor_meal(visitor_booking_id: int, principal: Principal = Depends(get_principal),
                       services: ServiceRegistry = Depends(get_services)):
    return create_success_response(services.visitors.issue_visitor_meal(principal, visitor_booking_id),
                                   "Visitor meal issued.")


@router.delete("/{visitor_booking_id}")
def cancel_visitor_booking(visitor_booking_id: int, principal: Principal = Depends(get_principal),
                           services: ServiceRegistry = Depends(get_services)):
    return create_success_response(services.visitors.cancel_visitor_booking(principal, visitor_booking_id),
                                   "Visitor booking cancelled.")
