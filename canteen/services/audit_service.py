"""
审计日志服务
只追加、不修改。写入发生在调用方的事务中，事务提交即代表审计已落库。
"""

import json
import logging
from typing import Any, Dict, List, Optional

from ..core.clock import Clock, system_clock, to_storage
from ..core.database import DatabaseManager, db_manager

logger = logging.getLogger(__name__)

# 审计动作
MEAL_CANCELLED = "MEAL_CANCELLED"
LOAN_REPAYMENT = "LOAN_REPAYMENT"
LOAN_SETTLEMENT_FROM_ISSUE = "LOAN_SETTLEMENT_FROM_ISSUE"
PRICE_UPDATED = "PRICE_UPDATED"
VISITOR_ADD = "VISITOR_ADD"
VISITOR_ISSUE = "VISITOR_ISSUE"
VISITOR_CANCEL = "VISITOR_CANCEL"
USER_SUSPENDED = "USER_SUSPENDED"
SUSPENSION_LIFTED = "SUSPENSION_LIFTED"
LOAN_CACHE_FIXED = "LOAN_CACHE_FIXED"


class AuditService:
    """审计日志服务"""

    def __init__(self, db: Optional[DatabaseManager] = None, clock: Optional[Clock] = None):
        self.db = db or db_manager
        self.clock = clock or system_clock

    def append(self, action: str, performed_by: Optional[int], details: str,
               target_user: Optional[int] = None, metadata: Optional[Dict[str, Any]] = None) -> int:
        """追加一条审计记录，返回记录ID"""
        with self.db.transaction() as conn:
            row = conn.execute(
                """INSERT INTO audit_logs(action, performed_by, target_user, details, metadata_json, created_at)
                   VALUES (?,?,?,?,?,?) RETURNING log_id""",
                [action, performed_by, target_user, details,
                 json.dumps(metadata or {}, ensure_ascii=False, default=str),
                 to_storage(self.clock.now())],
            ).fetchone()
        logger.info("audit %s by %s on %s", action, performed_by, target_user)
        return row[0]

    def list_logs(self, limit: int = 50, offset: int = 0, action: Optional[str] = None) -> Dict[str, Any]:
        """按时间倒序列出审计记录，附带操作人和对象的姓名"""
        where = "WHERE a.action = ?" if action else ""
        params: List[Any] = [action] if action else []

        total = self.db.execute_one(
            f"SELECT COUNT(*) FROM audit_logs a {where}", params
        )[0]
        items = self.db.query_dicts(
            f"""
            SELECT a.log_id, a.action, a.performed_by, a.target_user, a.details,
                   a.metadata_json, a.created_at,
                   p.first_name || ' ' || p.last_name AS performed_by_name,
                   p.role AS performed_by_role,
                   t.first_name || ' ' || t.last_name AS target_user_name,
                   t.mobile_number AS target_user_mobile
            FROM audit_logs a
            LEFT JOIN users p ON p.id = a.performed_by
            LEFT JOIN users t ON t.id = a.target_user
            {where}
            ORDER BY a.created_at DESC, a.log_id DESC
            LIMIT ? OFFSET ?
            """,
            params + [limit, offset],
        )
        for item in items:
            item["metadata"] = json.loads(item.pop("metadata_json") or "{}")

        return {
            "items": items,
            "total": total,
            "has_more": offset + len(items) < total,
        }

    def count(self, action: str) -> int:
        return self.db.execute_one("SELECT COUNT(*) FROM audit_logs WHERE action = ?", [action])[0]

