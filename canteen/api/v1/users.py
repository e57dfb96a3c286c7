"""
用户管理路由模块
创建用户、停用与恢复
"""

from fastapi import APIRouter, Depends

from ...core.error_handler import create_success_response
from ...core.security import ensure_role, get_principal, require_roles
from ...models.user import Principal, Role
from ...schemas.user import SuspendRequest, UserCreateRequest
from ...services.registry import ServiceRegistry, get_services

router = APIRouter()


@router.post("")
def create_user(req: UserCreateRequest, principal: Principal = Depends(require_roles(Role.ADMIN, Role.HRMANAGER)),
                services: ServiceRegistry = Depends(get_services)):
    user = services.users.create_user(
        req.username, req.first_name, req.last_name, req.role, req.sub_role,
        req.mobile_number, req.company_name, req.bio_id,
    )
    return create_success_response(user.model_dump(mode="json"), "User created.")


@router.get("/{user_id}")
def get_user(user_id: int, principal: Principal = Depends(get_principal),
             services: ServiceRegistry = Depends(get_services)):
    if Role(principal.role) == Role.EMPLOYEE and principal.id != user_id:
        ensure_role(principal, Role.ADMIN, Role.HRMANAGER, Role.CANTEEN)
    return create_success_response(services.users.get_user(user_id).model_dump(mode="json"))


@router.post("/{user_id}/suspend")
def suspend_user(user_id: int, req: SuspendRequest, principal: Principal = Depends(get_principal),
                 services: ServiceRegistry = Depends(get_services)):
    user = services.users.suspend_user(principal, user_id, req.suspended_from, req.suspended_until, req.reason)
    return create_success_response(user.model_dump(mode="json"), "User suspended.")


@router.delete("/{user_id}/suspend")
def lift_suspension(user_id: int, principal: Principal = Depends(get_principal),
                    services: ServiceRegistry = Depends(get_services)):
    user = services.users.lift_suspension(principal, user_id)
    return create_success_response(user.model_dump(mode="json"), "Suspension lifted.")
