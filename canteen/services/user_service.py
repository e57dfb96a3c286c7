"""
用户服务
只负责本系统需要的最小用户目录：创建、查询、考勤编号解析和停用管理
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ..core.clock import Clock, system_clock, to_storage, from_storage
from ..core.database import DatabaseManager, db_manager, row_to_dict
from ..core.exceptions import UserNotFoundError, ValidationError, ConflictError
from ..core.security import ensure_role
from ..models.user import Principal, Role, SubRole, User, loan_limit_for
from .audit_service import AuditService, USER_SUSPENDED, SUSPENSION_LIFTED

logger = logging.getLogger(__name__)

USER_COLUMNS = """id, username, first_name, last_name, mobile_number, role, sub_role, company_name,
                  bio_id, loan_amount_cents, loan_limit_cents, suspended_from, suspended_until,
                  suspension_reason, created_at"""


def user_from_row(row: Dict[str, Any]) -> User:
    data = dict(row)
    for key in ("suspended_from", "suspended_until", "created_at"):
        data[key] = from_storage(data.get(key))
    return User(**data)


class UserService:
    """用户服务"""

    def __init__(self, db: Optional[DatabaseManager] = None, clock: Optional[Clock] = None,
                 audit: Optional[AuditService] = None):
        self.db = db or db_manager
        self.clock = clock or system_clock
        self.audit = audit or AuditService(self.db, self.clock)

    def create_user(self, username: str, first_name: str, last_name: str, role: Role,
                    sub_role: Optional[SubRole] = None, mobile_number: Optional[str] = None,
                    company_name: Optional[str] = None, bio_id: Optional[str] = None) -> User:
        """创建用户，赊账额度由员工类别决定"""
        role = Role(role)
        if role == Role.EMPLOYEE and sub_role is None:
            raise ValidationError("Employees must have a sub role.")
        sub_role_value = SubRole(sub_role).value if sub_role else None

        with self.db.transaction() as conn:
            exists = conn.execute("SELECT 1 FROM users WHERE username = ?", [username]).fetchone()
            if exists:
                raise ConflictError(f"User '{username}' already exists.")
            row = conn.execute(
                f"""
                INSERT INTO users(username, first_name, last_name, mobile_number, role, sub_role,
                                  company_name, bio_id, loan_amount_cents, loan_limit_cents, created_at)
                VALUES (?,?,?,?,?,?,?,?,0,?,?)
                RETURNING {USER_COLUMNS}
                """,
                [username, first_name, last_name, mobile_number, role.value, sub_role_value,
                 company_name, bio_id, loan_limit_for(sub_role_value), to_storage(self.clock.now())],
            )
            user = user_from_row(row_to_dict(row))

        logger.info("user %s created (%s/%s)", user.id, role.value, sub_role_value)
        return user

    def get_user(self, user_id: int, conn=None) -> User:
        query = f"SELECT {USER_COLUMNS} FROM users WHERE id = ?"
        row = row_to_dict(conn.execute(query, [user_id])) if conn is not None else self.db.query_dict(query, [user_id])
        if row is None:
            raise UserNotFoundError(details={"user_id": user_id})
        return user_from_row(row)

    def get_by_bio_id(self, bio_id: str) -> Optional[User]:
        row = self.db.query_dict(f"SELECT {USER_COLUMNS} FROM users WHERE bio_id = ?", [str(bio_id)])
        return user_from_row(row) if row else None

    def suspend_user(self, principal: Principal, user_id: int, suspended_from: datetime,
                     suspended_until: datetime, reason: Optional[str] = None) -> User:
        """设置停用区间 [suspended_from, suspended_until)"""
        ensure_role(principal, Role.ADMIN, Role.HRMANAGER)
        if suspended_until <= suspended_from:
            raise ValidationError("Suspension end must be after its start.")

        with self.db.transaction() as conn:
            self.get_user(user_id, conn)
            conn.execute(
                "UPDATE users SET suspended_from = ?, suspended_until = ?, suspension_reason = ? WHERE id = ?",
                [to_storage(suspended_from), to_storage(suspended_until), reason, user_id],
            )
            self.audit.append(
                USER_SUSPENDED,
                performed_by=principal.id,
                target_user=user_id,
                details=reason or "Suspended.",
                metadata={"from": suspended_from.isoformat(), "until": suspended_until.isoformat()},
            )
            user = self.get_user(user_id, conn)
        return user

    def lift_suspension(self, principal: Principal, user_id: int) -> User:
        ensure_role(principal, Role.ADMIN, Role.HRMANAGER)
        with self.db.transaction() as conn:
            self.get_user(user_id, conn)
            self._clear_suspension(conn, user_id)
            self.audit.append(SUSPENSION_LIFTED, performed_by=principal.id, target_user=user_id,
                              details="Suspension lifted.")
            return self.get_user(user_id, conn)

    def check_suspension(self, user: User, now: datetime) -> Optional[datetime]:
        """
        判断用户当前是否处于停用期

        Returns:
            停用中返回结束时间；停用期已过则顺带清除停用字段并返回 None
        """
        if user.suspended_until is None:
            return None
        start = user.suspended_from or user.suspended_until
        if start <= now < user.suspended_until:
            return user.suspended_until
        if now >= user.suspended_until:
            with self.db.transaction() as conn:
                self._clear_suspension(conn, user.id)
            logger.info("suspension of user %s expired, cleared", user.id)
        return None

    def _clear_suspension(self, conn, user_id: int):
        conn.execute(
            "UPDATE users SET suspended_from = NULL, suspended_until = NULL, suspension_reason = NULL WHERE id = ?",
            [user_id],
        )
