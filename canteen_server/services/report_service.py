"""
报表服务
管理后台的预订日志和每日预订数统计
"""

import json
from datetime import date
from typing import Any, Dict, List, Optional

from ..core.database import DatabaseManager, db_manager
from ..core.security import CurrentUser, require_role
from ..models.user import UserRole

RESERVATION_ACTIONS = ("reservation_create", "reservation_status", "reservation_cancel", "delivery_redeem")


class ReportService:
    """报表服务"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or db_manager

    def reservation_logs(self, actor: CurrentUser, limit: int = 200) -> List[Dict[str, Any]]:
        """预订相关的操作日志，最新在前"""
        require_role(actor, [UserRole.ADMIN])
        placeholders = ",".join("?" for _ in RESERVATION_ACTIONS)
        rows = self.db.execute_query(
            f"""
            SELECT l.log_id, l.action, l.detail_json, l.created_at, l.actor_id,
                   COALESCE(u.full_name, u.username) AS user_name
            FROM logs l LEFT JOIN users u ON u.id = l.user_id
            WHERE l.action IN ({placeholders})
            ORDER BY l.log_id DESC
            LIMIT ?
            """,
            [*RESERVATION_ACTIONS, limit],
        )
        foods = {r["menu_item_id"]: r["name"] for r in self.db.execute_query(
            "SELECT m.id AS menu_item_id, f.name FROM menu_items m JOIN foods f ON f.id = m.food_id"
        )}
        live = {r["id"]: r for r in self.db.execute_query(
            "SELECT id, menu_item_id, reserved_date, status FROM reservations"
        )}

        logs = []
        for row in rows:
            detail = json.loads(row["detail_json"]) if row["detail_json"] else {}
            reservation = live.get(detail.get("reservation_id"), {})
            menu_item_id = detail.get("menu_item_id") or reservation.get("menu_item_id")
            logs.append({
                "id": row["log_id"],
                "user": row["user_name"],
                "food": foods.get(menu_item_id),
                "date": detail.get("reserved_date") or reservation.get("reserved_date"),
                "status": detail.get("to") or detail.get("status") or reservation.get("status"),
                "action": row["action"],
                "reservation_id": detail.get("reservation_id"),
                "actor_id": row["actor_id"],
                "created_at": row["created_at"],
            })
        return logs

    def daily_counts(self, actor: CurrentUser, start: Optional[date] = None,
                     end: Optional[date] = None) -> List[Dict[str, Any]]:
        """每日预订数"""
        require_role(actor, [UserRole.ADMIN])
        clauses, params = [], []
        if start is not None:
            clauses.append("reserved_date >= ?")
            params.append(start)
        if end is not None:
            clauses.append("reserved_date <= ?")
            params.append(end)
        where = " WHERE " + " AND ".join(clauses) if clauses else ""
        return self.db.execute_query(
            f"SELECT reserved_date AS date, COUNT(*) AS count FROM reservations{where} "
            "GROUP BY reserved_date ORDER BY reserved_date",
            params,
        )
