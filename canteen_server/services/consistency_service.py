"""
数据一致性检查和修复服务
比对持久化的容量计数器与实际预订数，发现容量泄漏或超卖
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.audit import log_action
from ..core.database import DatabaseManager, db_manager
from ..core.security import CurrentUser, require_role
from ..models.payment import PaymentStatus
from ..models.reservation import ReservationStatus
from ..models.user import UserRole


class ConsistencyCheckResult:
    """一致性检查结果"""

    def __init__(self):
        self.issues: List[Dict[str, Any]] = []
        self.warnings: List[Dict[str, Any]] = []
        self.statistics: Dict[str, Any] = {}

    def add_issue(self, issue_type: str, description: str, details: Dict[str, Any] = None):
        self.issues.append({
            'type': issue_type,
            'description': description,
            'details': details or {},
            'severity': 'error',
        })

    def add_warning(self, warning_type: str, description: str, details: Dict[str, Any] = None):
        self.warnings.append({
            'type': warning_type,
            'description': description,
            'details': details or {},
            'severity': 'warning',
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            'issues': self.issues,
            'warnings': self.warnings,
            'statistics': self.statistics,
            'summary': {
                'total_issues': len(self.issues),
                'total_warnings': len(self.warnings),
                'status': 'healthy' if not self.issues else 'issues_found',
                'checked_at': datetime.now().isoformat(),
            },
        }


# 实际占用数：所有存在的预订都占用容量（取消即删除）
SLOT_DRIFT_SQL = """
SELECT c.menu_item_id, c.time_slot_id, c.reserved_date, c.reserved_count,
       COALESCE(r.live, 0) AS live, m.time_slot_capacity AS capacity
FROM slot_counters c
LEFT JOIN (
    SELECT time_slot_id, reserved_date, COUNT(*) AS live
    FROM reservations GROUP BY time_slot_id, reserved_date
) r ON r.time_slot_id = c.time_slot_id AND r.reserved_date = c.reserved_date
LEFT JOIN menu_items m ON m.id = c.menu_item_id
WHERE c.reserved_count <> COALESCE(r.live, 0) OR COALESCE(r.live, 0) > m.time_slot_capacity
"""

DAY_DRIFT_SQL = """
SELECT c.menu_item_id, c.reserved_date, c.reserved_count,
       COALESCE(r.live, 0) AS live, m.daily_capacity AS capacity
FROM day_counters c
LEFT JOIN (
    SELECT menu_item_id, reserved_date, COUNT(*) AS live
    FROM reservations GROUP BY menu_item_id, reserved_date
) r ON r.menu_item_id = c.menu_item_id AND r.reserved_date = c.reserved_date
LEFT JOIN menu_items m ON m.id = c.menu_item_id
WHERE c.reserved_count <> COALESCE(r.live, 0) OR COALESCE(r.live, 0) > m.daily_capacity
"""


class ConsistencyService:
    """数据一致性服务"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or db_manager

    def check_data_consistency(self, actor: CurrentUser, include_warnings: bool = True) -> Dict[str, Any]:
        """
        全面的数据一致性检查

        Returns:
            检查结果字典
        """
        require_role(actor, [UserRole.ADMIN], "需要管理员权限")
        result = ConsistencyCheckResult()

        with self.db.transaction() as conn:
            result.statistics = self._collect_basic_statistics(conn)
            self._check_slot_counters(conn, result)
            self._check_day_counters(conn, result)
            self._check_orphaned_reservations(conn, result)
            if include_warnings:
                self._check_potential_issues(conn, result)
            log_action(conn, "consistency_check", actor_id=actor.id, detail={
                "total_issues": len(result.issues),
                "total_warnings": len(result.warnings),
            })

        return result.to_dict()

    def _collect_basic_statistics(self, conn) -> Dict[str, Any]:
        by_status = dict(conn.execute(
            "SELECT status, COUNT(*) FROM reservations GROUP BY status"
        ).fetchall())
        payments = dict(conn.execute(
            "SELECT status, COUNT(*) FROM payments GROUP BY status"
        ).fetchall())
        blocked = conn.execute("SELECT COUNT(*) FROM users WHERE trust_score < 0").fetchone()[0]
        return {
            'reservations': {s.value: by_status.get(s.value, 0) for s in ReservationStatus},
            'payments': {s.value: payments.get(s.value, 0) for s in PaymentStatus},
            'blocked_students': blocked,
        }

    def _check_slot_counters(self, conn, result: ConsistencyCheckResult):
        for row in conn.execute(SLOT_DRIFT_SQL).fetchall():
            menu_item_id, slot_id, reserved_date, counted, live, capacity = row
            details = {
                'menu_item_id': menu_item_id, 'time_slot_id': slot_id,
                'reserved_date': str(reserved_date), 'counter': counted,
                'reservations': live, 'capacity': capacity,
            }
            if capacity is not None and live > capacity:
                result.add_issue('slot_overbooked', f"时段 {slot_id} 在 {reserved_date} 超卖", details)
            else:
                result.add_issue('slot_counter_drift', f"时段 {slot_id} 在 {reserved_date} 计数器与预订数不一致", details)

    def _check_day_counters(self, conn, result: ConsistencyCheckResult):
        for row in conn.execute(DAY_DRIFT_SQL).fetchall():
            menu_item_id, reserved_date, counted, live, capacity = row
            details = {
                'menu_item_id': menu_item_id, 'reserved_date': str(reserved_date),
                'counter': counted, 'reservations': live, 'capacity': capacity,
            }
            if capacity is not None and live > capacity:
                result.add_issue('daily_overbooked', f"菜单项 {menu_item_id} 在 {reserved_date} 超卖", details)
            else:
                result.add_issue('day_counter_drift',
                                 f"菜单项 {menu_item_id} 在 {reserved_date} 计数器与预订数不一致", details)

    def _check_orphaned_reservations(self, conn, result: ConsistencyCheckResult):
        # 没有计数器行的预订意味着绕过了容量分配
        rows = conn.execute("""
            SELECT r.id, r.time_slot_id, r.reserved_date
            FROM reservations r
            LEFT JOIN slot_counters c
              ON c.time_slot_id = r.time_slot_id AND c.reserved_date = r.reserved_date
            WHERE c.time_slot_id IS NULL
        """).fetchall()
        for reservation_id, slot_id, reserved_date in rows:
            result.add_issue('reservation_without_counter', f"预订 {reservation_id} 没有对应的容量计数器", {
                'reservation_id': reservation_id, 'time_slot_id': slot_id, 'reserved_date': str(reserved_date),
            })

    def _check_potential_issues(self, conn, result: ConsistencyCheckResult):
        review = conn.execute(
            "SELECT id, reservation_id, error_message FROM payments WHERE needs_review ORDER BY id"
        ).fetchall()
        for payment_id, reservation_id, message in review:
            result.add_warning('payment_needs_review', f"支付 {payment_id} 需要人工复核", {
                'payment_id': payment_id, 'reservation_id': reservation_id, 'message': message,
            })

        waiting_without_token = conn.execute("""
            SELECT r.id FROM reservations r
            LEFT JOIN delivery_tokens t ON t.reservation_id = r.id
            WHERE r.status <> ? AND t.reservation_id IS NULL
        """, [ReservationStatus.PENDING_PAYMENT.value]).fetchall()
        for (reservation_id,) in waiting_without_token:
            result.add_warning('missing_delivery_code', f"预订 {reservation_id} 已支付但没有取餐码", {
                'reservation_id': reservation_id,
            })

    def fix_capacity_counters(self, actor: CurrentUser) -> Dict[str, Any]:
        """按实际预订数重建容量计数器"""
        require_role(actor, [UserRole.ADMIN], "需要管理员权限")
        with self.db.transaction() as conn:
            slot_rows = conn.execute(SLOT_DRIFT_SQL).fetchall()
            day_rows = conn.execute(DAY_DRIFT_SQL).fetchall()
            for menu_item_id, slot_id, reserved_date, counted, live, _ in slot_rows:
                conn.execute(
                    "UPDATE slot_counters SET reserved_count = ? WHERE time_slot_id = ? AND reserved_date = ?",
                    [live, slot_id, reserved_date],
                )
            for menu_item_id, reserved_date, counted, live, _ in day_rows:
                conn.execute(
                    "UPDATE day_counters SET reserved_count = ? WHERE menu_item_id = ? AND reserved_date = ?",
                    [live, menu_item_id, reserved_date],
                )
            log_action(conn, "consistency_fix", actor_id=actor.id, detail={
                "slot_counters": len(slot_rows), "day_counters": len(day_rows),
            })
        return {"fixed": bool(slot_rows or day_rows),
                "slot_counters_fixed": len(slot_rows), "day_counters_fixed": len(day_rows)}
