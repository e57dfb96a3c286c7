"""
审计日志路由模块
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...core.error_handler import create_success_response
from ...core.security import require_roles
from ...models.user import Principal, Role
from ...services.registry import ServiceRegistry, get_services

router = APIRouter()


@router.get("/logs")
def list_audit_logs(limit: int = Query(50, ge=1, le=200), offset: int = Query(0, ge=0),
                    action: Optional[str] = None,
                    principal: Principal = Depends(require_roles(Role.ADMIN, Role.HRMANAGER)),
                    services: ServiceRegistry = Depends(get_services)):
    """按时间倒序的审计记录"""
    return create_success_response(services.audit.list_logs(limit, offset, action))
