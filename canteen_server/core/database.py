"""
数据库连接和管理模块
负责 DuckDB 数据库的初始化、连接管理、事务和表结构定义

数据库表说明：
- users: 用户、角色和信用分
- food_categories / foods: 菜品目录
- menu_items / time_slots: 每日菜单、模板菜单及其取餐时段
- slot_counters / day_counters: 时段与当日容量计数器（持久化）
- reservations: 预订
- delivery_tokens: 取餐码与二维码（只插入不修改）
- payments: 支付记录
- trust_score_events: 信用分扣减/恢复明细
- app_settings: 全局标量配置（餐券抵扣金额等）
- logs: 系统操作日志
"""

import duckdb
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional
from contextlib import contextmanager
import threading

from .exceptions import BaseApplicationError, ConcurrencyError, DatabaseError
from ..config.settings import settings


# 完整的表结构定义
# 使用序列生成自增主键；容量计数器和状态字段的更新一律使用条件写
SCHEMA_SQL = r"""
CREATE SEQUENCE IF NOT EXISTS users_id_seq;
CREATE TABLE IF NOT EXISTS users (
  id INTEGER DEFAULT nextval('users_id_seq') PRIMARY KEY,
  username TEXT UNIQUE NOT NULL,
  full_name TEXT,
  role TEXT CHECK(role IN ('student','chef','receiver','admin')) NOT NULL,
  trust_score INTEGER NOT NULL DEFAULT 0,
  created_at TIMESTAMP DEFAULT now()
);

CREATE SEQUENCE IF NOT EXISTS food_categories_id_seq;
CREATE TABLE IF NOT EXISTS food_categories (
  id INTEGER DEFAULT nextval('food_categories_id_seq') PRIMARY KEY,
  name TEXT UNIQUE NOT NULL
);

CREATE SEQUENCE IF NOT EXISTS foods_id_seq;
CREATE TABLE IF NOT EXISTS foods (
  id INTEGER DEFAULT nextval('foods_id_seq') PRIMARY KEY,
  name TEXT NOT NULL,
  description TEXT,
  price INTEGER NOT NULL CHECK(price >= 0),
  category_id INTEGER,
  image_url TEXT,
  created_at TIMESTAMP DEFAULT now()
);

CREATE SEQUENCE IF NOT EXISTS menu_items_id_seq;
CREATE TABLE IF NOT EXISTS menu_items (
  id INTEGER DEFAULT nextval('menu_items_id_seq') PRIMARY KEY,
  food_id INTEGER NOT NULL,
  menu_date DATE,     -- 每日菜单
  weekday TEXT,       -- 模板菜单（saturday..friday）
  meal_type TEXT CHECK(meal_type IN ('breakfast','lunch','dinner')) NOT NULL,
  start_time TIME NOT NULL,
  end_time TIME NOT NULL,
  time_slot_count INTEGER NOT NULL,
  time_slot_capacity INTEGER NOT NULL,
  daily_capacity INTEGER NOT NULL,  -- 独立于时段容量的当日上限
  is_available BOOLEAN DEFAULT TRUE,
  created_at TIMESTAMP DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_menu_items_date ON menu_items(menu_date);

CREATE SEQUENCE IF NOT EXISTS time_slots_id_seq;
CREATE TABLE IF NOT EXISTS time_slots (
  id INTEGER DEFAULT nextval('time_slots_id_seq') PRIMARY KEY,
  menu_item_id INTEGER NOT NULL,
  start_time TIME NOT NULL,
  end_time TIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_time_slots_menu_item ON time_slots(menu_item_id);

CREATE TABLE IF NOT EXISTS slot_counters (
  menu_item_id INTEGER NOT NULL,
  time_slot_id INTEGER NOT NULL,
  reserved_date DATE NOT NULL,
  reserved_count INTEGER NOT NULL DEFAULT 0,
  PRIMARY KEY (time_slot_id, reserved_date)
);

CREATE TABLE IF NOT EXISTS day_counters (
  menu_item_id INTEGER NOT NULL,
  reserved_date DATE NOT NULL,
  reserved_count INTEGER NOT NULL DEFAULT 0,
  PRIMARY KEY (menu_item_id, reserved_date)
);

CREATE SEQUENCE IF NOT EXISTS reservations_id_seq;
CREATE TABLE IF NOT EXISTS reservations (
  id INTEGER DEFAULT nextval('reservations_id_seq') PRIMARY KEY,
  student_id INTEGER NOT NULL,
  menu_item_id INTEGER NOT NULL,
  time_slot_id INTEGER NOT NULL,
  reserved_date DATE NOT NULL,
  meal_type TEXT NOT NULL,
  has_voucher BOOLEAN DEFAULT FALSE,
  price INTEGER NOT NULL,
  status TEXT CHECK(status IN ('pending_payment','waiting','preparing','ready_to_pickup','picked_up','not_picked_up')) NOT NULL,
  created_at TIMESTAMP DEFAULT now(),
  updated_at TIMESTAMP DEFAULT now(),
  UNIQUE (student_id, reserved_date, meal_type)
);

CREATE TABLE IF NOT EXISTS delivery_tokens (
  reservation_id INTEGER PRIMARY KEY,
  delivery_code TEXT UNIQUE NOT NULL,
  qr_payload TEXT NOT NULL,
  created_at TIMESTAMP DEFAULT now()
);

CREATE SEQUENCE IF NOT EXISTS payments_id_seq;
CREATE TABLE IF NOT EXISTS payments (
  id INTEGER DEFAULT nextval('payments_id_seq') PRIMARY KEY,
  reservation_id INTEGER NOT NULL,
  user_id INTEGER NOT NULL,
  amount INTEGER NOT NULL,
  authority TEXT,  -- 网关关联令牌，请求成功后写入
  ref_id TEXT,
  status TEXT CHECK(status IN ('pending','paid','failed','refunded')) NOT NULL,
  error_message TEXT,
  needs_review BOOLEAN DEFAULT FALSE,  -- 金额不符等需人工复核，后台对账跳过
  created_at TIMESTAMP DEFAULT now(),
  updated_at TIMESTAMP DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_payments_reservation ON payments(reservation_id);

CREATE SEQUENCE IF NOT EXISTS trust_score_events_id_seq;
CREATE TABLE IF NOT EXISTS trust_score_events (
  id INTEGER DEFAULT nextval('trust_score_events_id_seq') PRIMARY KEY,
  user_id INTEGER NOT NULL,
  reservation_id INTEGER,  -- 扣分时为关联预订，作为幂等键
  kind TEXT CHECK(kind IN ('penalty','recovery')) NOT NULL,
  points INTEGER NOT NULL,
  reason TEXT,
  actor_id INTEGER,
  created_at TIMESTAMP DEFAULT now(),
  UNIQUE (kind, reservation_id)
);

CREATE TABLE IF NOT EXISTS app_settings (
  key TEXT PRIMARY KEY,
  value TEXT,
  updated_at TIMESTAMP DEFAULT now()
);

CREATE SEQUENCE IF NOT EXISTS logs_id_seq;
CREATE TABLE IF NOT EXISTS logs (
  log_id INTEGER DEFAULT nextval('logs_id_seq') PRIMARY KEY,
  user_id INTEGER,  -- 操作涉及的用户
  actor_id INTEGER,  -- 实际执行操作的用户（如管理员）
  action TEXT,  -- 操作类型标识
  detail_json JSON,  -- 操作详情的结构化数据
  created_at TIMESTAMP DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_logs_user ON logs(user_id);
CREATE INDEX IF NOT EXISTS idx_logs_action ON logs(action);
"""


def rows_to_dicts(cursor) -> List[Dict[str, Any]]:
    """把 DuckDB 结果集转换为字典列表"""
    columns = [col[0] for col in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


def row_to_dict(cursor) -> Optional[Dict[str, Any]]:
    """把单行结果转换为字典，无结果返回 None"""
    row = cursor.fetchone()
    if row is None:
        return None
    columns = [col[0] for col in cursor.description]
    return dict(zip(columns, row))


class DatabaseManager:
    """数据库管理器，封装连接、建表和事务"""

    def __init__(self, db_path: Optional[str] = None):
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()
        self._local = threading.local()
        self.db_path = db_path or self._get_db_path_from_settings()

    def _get_db_path_from_settings(self) -> str:
        """从设置中获取数据库路径"""
        db_url = settings.database_url
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

    def _init_schema(self):
        """初始化数据库表结构"""
        try:
            try:
                self._connection.execute("INSTALL json")
                self._connection.execute("LOAD json")
            except duckdb.Error:
                pass  # JSON扩展可能已经安装，或离线环境内置
            self._connection.execute(SCHEMA_SQL)
        except duckdb.Error as e:
            raise DatabaseError(f"Failed to initialize schema: {e}")

    @contextmanager
    def transaction(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """
        数据库事务上下文管理器

        同一时刻只允许一个工作单元持有连接（可重入锁），
        嵌套调用直接加入外层事务。业务异常原样抛出，
        其他数据库异常包装为 DatabaseError / ConcurrencyError。
        """
        with self._lock:
            conn = self.connection
            depth = getattr(self._local, "depth", 0)
            if depth > 0:
                self._local.depth = depth + 1
                try:
                    yield conn
                finally:
                    self._local.depth = depth
                return

            conn.execute("BEGIN TRANSACTION")
            self._local.depth = 1
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException as e:
                try:
                    conn.execute("ROLLBACK")
                except duckdb.Error:
                    pass  # 事务可能已被 DuckDB 自动中止
                if isinstance(e, BaseApplicationError) or not isinstance(e, Exception):
                    raise
                if isinstance(e, duckdb.TransactionException) or "conflict" in str(e).lower():
                    raise ConcurrencyError("系统繁忙，请稍后重试") from e
                if isinstance(e, duckdb.Error):
                    raise DatabaseError(f"数据库操作失败: {e}") from e
                raise
            finally:
                self._local.depth = 0

    def init_database(self):
        """初始化数据库"""
        with self._lock:
            self.connection.execute(SCHEMA_SQL)

    def execute_query(self, query: str, params: list = None) -> List[Dict[str, Any]]:
        """执行查询并返回字典列表"""
        with self._lock:
            try:
                cursor = self.connection.execute(query, params or [])
                return rows_to_dicts(cursor)
            except duckdb.Error as e:
                raise DatabaseError(f"Query execution failed: {e}")

    def execute_one(self, query: str, params: list = None) -> Optional[Dict[str, Any]]:
        """执行查询并返回单条结果"""
        with self._lock:
            try:
                cursor = self.connection.execute(query, params or [])
                return row_to_dict(cursor)
            except duckdb.Error as e:
                raise DatabaseError(f"Query execution failed: {e}")

    def close(self):
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


# 全局数据库管理器实例
db_manager = DatabaseManager()


def get_db() -> DatabaseManager:
    """FastAPI 依赖：返回全局数据库管理器"""
    return db_manager
