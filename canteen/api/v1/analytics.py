"""
统计报表路由模块
"""

from datetime import date

from fastapi import APIRouter, Depends

from ...core.error_handler import create_success_response
from ...core.security import get_principal
from ...models.user import Principal
from ...services.registry import ServiceRegistry, get_services

router = APIRouter()


@router.get("/dashboard")
def get_dashboard(principal: Principal = Depends(get_principal),
                  services: ServiceRegistry = Depends(get_services)):
    return create_success_response(services.reports.dashboard(principal))


@router.get("/financials")
def get_financial_report(principal: Principal = Depends(get_principal),
                         services: ServiceRegistry = Depends(get_services)):
    return create_success_response(services.reports.financial_report(principal))


@router.get("/daily-report")
def get_daily_report(start_date: date, end_date: date, principal: Principal = Depends(get_principal),
                     services: ServiceRegistry = Depends(get_services)):
    """区间内的订餐明细，日期格式 YYYY-MM-DD"""
    return create_success_response(services.reports.daily_report(principal, start_date, end_date))


@router.get("/consistency")
def check_consistency(include_warnings: bool = True, principal: Principal = Depends(get_principal),
                      services: ServiceRegistry = Depends(get_services)):
    return create_success_response(services.consistency.check(principal, include_warnings))


@router.post("/consistency/fix-loan/{user_id}")
def fix_loan(user_id: int, principal: Principal = Depends(get_principal),
             services: ServiceRegistry = Depends(get_services)):
    return create_success_response(services.consistency.fix_loan(principal, user_id), "Loan cache fixed.")
