"""
钱包与还款路由模块
"""

from fastapi import APIRouter, Depends

from ...core.error_handler import create_success_response
from ...core.security import get_principal, require_roles
from ...models.user import Principal, Role
from ...schemas.user import RepayRequest
from ...services.registry import ServiceRegistry, get_services

router = APIRouter()


@router.get("/me")
def get_my_wallet(principal: Principal = Depends(require_roles(Role.EMPLOYEE)),
                  services: ServiceRegistry = Depends(get_services)):
    """员工自己的钱包概览"""
    return create_success_response(services.ledger.get_wallet_stats(principal.id).model_dump())


@router.post("/repay")
def repay_loan(req: RepayRequest, principal: Principal = Depends(get_principal),
               services: ServiceRegistry = Depends(get_services)):
    """登记手工还款，按时间顺序冲抵欠款"""
    result = services.ledger.repay_loan(principal, req.user_id, req.amount_cents, req.note)
    data = result.model_dump(mode="json")
    data["bookings_affected"] = result.bookings_affected
    return create_success_response(data, f"Repayment of {req.amount_cents} applied.")


@router.get("/{user_id}")
def get_user_wallet(user_id: int,
                    principal: Principal = Depends(require_roles(Role.ADMIN, Role.HRMANAGER, Role.CANTEEN)),
                    services: ServiceRegistry = Depends(get_services)):
    return create_success_response(services.ledger.get_wallet_stats(user_id).model_dump())
