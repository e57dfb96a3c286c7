"""
数据库连接和管理模块
提供 DuckDB 单连接、表结构初始化和事务封装
"""

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

import duckdb

from .exceptions import BaseApplicationError, ConcurrencyError, DatabaseError
from ..config.settings import settings

logger = logging.getLogger(__name__)

# 数据文件存储目录
DATA_DIR = Path(__file__).parent.parent / "data"

# 完整的表结构定义
# 金额统一以分为单位（整数）保存，时间戳统一保存为UTC（不带时区）
SCHEMA_SQL = r"""
CREATE SEQUENCE IF NOT EXISTS users_id_seq;
CREATE TABLE IF NOT EXISTS users (
  id INTEGER DEFAULT nextval('users_id_seq') PRIMARY KEY,
  username TEXT UNIQUE NOT NULL,
  first_name TEXT NOT NULL,
  last_name TEXT NOT NULL,
  mobile_number TEXT,
  role TEXT CHECK(role IN ('employee','canteen','admin','hrmanager')) NOT NULL,
  sub_role TEXT CHECK(sub_role IN ('intern','casual','permanent','manpower')),
  company_name TEXT,
  bio_id TEXT,
  loan_amount_cents INTEGER DEFAULT 0,  -- 未结清余额之和的缓存
  loan_limit_cents INTEGER DEFAULT 0,
  suspended_from TIMESTAMP,
  suspended_until TIMESTAMP,
  suspension_reason TEXT,
  created_at TIMESTAMP DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_users_bio_id ON users(bio_id);

CREATE SEQUENCE IF NOT EXISTS meal_bookings_id_seq;
CREATE TABLE IF NOT EXISTS meal_bookings (
  booking_id INTEGER DEFAULT nextval('meal_bookings_id_seq') PRIMARY KEY,
  user_id INTEGER NOT NULL,
  booking_date DATE NOT NULL,
  meal_type TEXT CHECK(meal_type IN ('breakfast','lunch','dinner')) NOT NULL,
  status TEXT CHECK(status IN ('booked','requested','accepted','verified','paid','served','rejected')) NOT NULL,
  verification_code TEXT,  -- 单次有效的取餐码，仅在 accepted 状态存在
  payment_type TEXT CHECK(payment_type IN ('free','pay_now','pay_later')),
  total_price_cents INTEGER DEFAULT 0,
  amount_paid_cents INTEGER DEFAULT 0,
  balance_cents INTEGER DEFAULT 0,
  booked_at TIMESTAMP NOT NULL,
  requested_at TIMESTAMP,
  verified_at TIMESTAMP,
  served_at TIMESTAMP,
  created_at TIMESTAMP DEFAULT now(),
  UNIQUE(user_id, booking_date, meal_type)
);

CREATE INDEX IF NOT EXISTS idx_bookings_user ON meal_bookings(user_id);
CREATE INDEX IF NOT EXISTS idx_bookings_date ON meal_bookings(booking_date);

CREATE TABLE IF NOT EXISTS meal_prices (
  price_id INTEGER PRIMARY KEY CHECK(price_id = 1),  -- 全局只有一行
  breakfast_cents INTEGER NOT NULL DEFAULT 0,
  lunch_cents INTEGER NOT NULL DEFAULT 0,
  dinner_cents INTEGER NOT NULL DEFAULT 0,
  updated_by INTEGER,
  updated_at TIMESTAMP DEFAULT now()
);

CREATE SEQUENCE IF NOT EXISTS ledger_id_seq;
CREATE TABLE IF NOT EXISTS ledger (
  ledger_id INTEGER DEFAULT nextval('ledger_id_seq') PRIMARY KEY,
  user_id INTEGER,
  type TEXT CHECK(type IN ('payment','debt','repayment')) NOT NULL,
  amount_cents INTEGER NOT NULL,
  booking_id INTEGER,
  remark TEXT,
  created_at TIMESTAMP DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_ledger_user ON ledger(user_id);

CREATE SEQUENCE IF NOT EXISTS audit_logs_id_seq;
CREATE TABLE IF NOT EXISTS audit_logs (
  log_id INTEGER DEFAULT nextval('audit_logs_id_seq') PRIMARY KEY,
  action TEXT NOT NULL,
  performed_by INTEGER,
  target_user INTEGER,
  details TEXT,
  metadata_json TEXT,
  created_at TIMESTAMP DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_logs(action);

CREATE SEQUENCE IF NOT EXISTS visitor_bookings_id_seq;
CREATE TABLE IF NOT EXISTS visitor_bookings (
  visitor_booking_id INTEGER DEFAULT nextval('visitor_bookings_id_seq') PRIMARY KEY,
  visitor_name TEXT NOT NULL,
  contact_number TEXT NOT NULL,
  company TEXT NOT NULL,
  meal_type TEXT CHECK(meal_type IN ('breakfast','lunch','dinner')) NOT NULL,
  booking_date DATE NOT NULL,
  price_cents INTEGER NOT NULL,
  status TEXT CHECK(status IN ('booked','served')) NOT NULL,
  added_by INTEGER NOT NULL,
  created_at TIMESTAMP DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_visitor_date ON visitor_bookings(booking_date);
"""


def rows_to_dicts(cursor) -> List[Dict[str, Any]]:
    """把游标结果转换为字典列表"""
    columns = [col[0] for col in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


def row_to_dict(cursor) -> Optional[Dict[str, Any]]:
    """取一行并转换为字典，没有结果时返回 None"""
    row = cursor.fetchone()
    if row is None:
        return None
    columns = [col[0] for col in cursor.description]
    return dict(zip(columns, row))


class DatabaseManager:
    """数据库管理器，封装所有数据库操作"""

    def __init__(self, db_path: Optional[str] = None):
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()
        self._tx_depth = 0
        self.db_path = db_path or self._get_db_path_from_settings()

    def _get_db_path_from_settings(self) -> str:
        """从设置中获取数据库路径"""
        db_url = settings.database_url
        if db_url.startswith("duckdb:///:memory:"):
            return ":memory:"
        if db_url.startswith("duckdb://"):
            return db_url.replace("duckdb://", "")
        return db_url

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        """获取数据库连接"""
        with self._lock:
            if self._connection is None:
                if self.db_path != ":memory:":
                    Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                self._connection = duckdb.connect(self.db_path)
                self._init_schema()
            return self._connection

    def get_connection(self) -> duckdb.DuckDBPyConnection:
        """获取数据库连接 - 保持向后兼容"""
        return self.connection

    def _init_schema(self):
        """初始化数据库表结构"""
        try:
            self._connection.execute(SCHEMA_SQL)
        except duckdb.Error as e:
            raise DatabaseError(f"Failed to initialize schema: {e}")

    def init_database(self):
        """初始化数据库"""
        self.connection.execute(SCHEMA_SQL)
        logger.info("database ready at %s", self.db_path)

    def close(self):
        """关闭连接"""
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None

    @contextmanager
    def transaction(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """
        数据库事务上下文管理器

        同一线程内嵌套调用时复用外层事务，只有最外层负责提交或回滚。
        业务异常原样抛出，数据库异常统一转换为 DatabaseError / ConcurrencyError。
        """
        with self._lock:
            conn = self.connection
            if self._tx_depth > 0:
                self._tx_depth += 1
                try:
                    yield conn
                finally:
                    self._tx_depth -= 1
                return

            conn.execute("BEGIN")
            self._tx_depth = 1
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseApplicationError:
                self._rollback(conn)
                raise
            except duckdb.Error as e:
                self._rollback(conn)
                if "conflict" in str(e).lower() or "serialization" in str(e).lower():
                    raise ConcurrencyError("System busy, please retry.")
                raise DatabaseError(f"Database operation failed: {e}")
            except Exception:
                self._rollback(conn)
                raise
            finally:
                self._tx_depth = 0

    def _rollback(self, conn):
        try:
            conn.execute("ROLLBACK")
        except duckdb.Error:
            logger.warning("rollback failed", exc_info=True)

    def execute_query(self, query: str, params: list = None) -> list:
        """执行查询并返回结果"""
        with self._lock:
            try:
                return self.connection.execute(query, params or []).fetchall()
            except duckdb.Error as e:
                raise DatabaseError(f"Query execution failed: {e}")

    def execute_one(self, query: str, params: list = None) -> Optional[tuple]:
        """执行查询并返回单条结果"""
        with self._lock:
            try:
                return self.connection.execute(query, params or []).fetchone()
            except duckdb.Error as e:
                raise DatabaseError(f"Query execution failed: {e}")

    def query_dicts(self, query: str, params: list = None) -> List[Dict[str, Any]]:
        """执行查询并以字典列表返回"""
        with self._lock:
            try:
                return rows_to_dicts(self.connection.execute(query, params or []))
            except duckdb.Error as e:
                raise DatabaseError(f"Query execution failed: {e}")

    def query_dict(self, query: str, params: list = None) -> Optional[Dict[str, Any]]:
        """执行查询并以字典返回第一行"""
        with self._lock:
            try:
                return row_to_dict(self.connection.execute(query, params or []))
            except duckdb.Error as e:
                raise DatabaseError(f"Query execution failed: {e}")


# 全局数据库管理器实例
db_manager = DatabaseManager()
