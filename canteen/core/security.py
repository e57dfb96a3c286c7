"""
安全相关功能
JWT 令牌签发/解析，以及基于角色的访问控制依赖
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..config.settings import settings
from ..models.user import Principal, Role
from .exceptions import AuthenticationError, AuthorizationError


class SecurityManager:
    """安全管理器"""

    def __init__(self, secret: Optional[str] = None, algorithm: Optional[str] = None):
        self.secret = secret or settings.jwt_secret_key
        self.algorithm = algorithm or settings.jwt_algorithm

    def create_jwt_token(self, principal: Principal, expires_hours: Optional[int] = None,
                         additional_claims: Dict[str, Any] = None) -> str:
        """创建JWT token"""
        now = datetime.now(timezone.utc)
        payload = {
            "id": principal.id,
            "role": Role(principal.role).value,
            "sub_role": principal.sub_role.value if principal.sub_role else None,
            "iat": now,
            "exp": now + timedelta(hours=expires_hours or settings.jwt_expire_hours),
        }
        if additional_claims:
            payload.update(additional_claims)
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode_jwt_token(self, token: str) -> Dict[str, Any]:
        """解码JWT token"""
        try:
            return jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token has expired.")
        except jwt.InvalidTokenError as e:
            raise AuthenticationError(f"Invalid token: {e}")

    def principal_from_token(self, token: str) -> Principal:
        """从token中还原调用者"""
        payload = self.decode_jwt_token(token)
        if payload.get("id") is None or not payload.get("role"):
            raise AuthenticationError("Token missing identity claims.")
        try:
            return Principal(id=payload["id"], role=payload["role"], sub_role=payload.get("sub_role"))
        except ValueError:
            raise AuthenticationError("Token carries an unknown role.")


# 全局安全管理器实例
security_manager = SecurityManager()

_bearer = HTTPBearer(auto_error=False)


async def get_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer)
) -> Principal:
    """从Authorization header中提取并验证调用者"""
    if credentials is None:
        raise AuthenticationError("Not authorized, no token.")
    return security_manager.principal_from_token(credentials.credentials)


def ensure_role(principal: Principal, *roles: Role) -> None:
    """服务层的角色检查"""
    if Role(principal.role) not in roles:
        raise AuthorizationError(
            f"Role {Role(principal.role).value} is not authorized.",
            details={"allowed_roles": [r.value for r in roles]},
        )


def require_roles(*roles: Role):
    """路由依赖：限制可访问的角色"""

    async def dependency(principal: Principal = Depends(get_principal)) -> Principal:
        ensure_role(principal, *roles)
        return principal

    return dependency
