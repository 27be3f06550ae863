"""
预订查询工具
各服务共用的预订读取 SQL，附带取餐码、菜品、学生和时段信息
"""

from typing import List, Optional

from ..core.database import row_to_dict, rows_to_dicts
from ..models.reservation import Reservation

RESERVATION_SELECT = """
SELECT
    r.id, r.student_id, r.menu_item_id, r.time_slot_id, r.reserved_date, r.meal_type,
    r.has_voucher, r.price, r.status, r.created_at, r.updated_at,
    t.delivery_code, t.qr_payload,
    f.name AS food_name,
    u.full_name AS student_name,
    ts.start_time AS slot_start_time,
    ts.end_time AS slot_end_time
FROM reservations r
LEFT JOIN delivery_tokens t ON t.reservation_id = r.id
LEFT JOIN menu_items m ON m.id = r.menu_item_id
LEFT JOIN foods f ON f.id = m.food_id
LEFT JOIN users u ON u.id = r.student_id
LEFT JOIN time_slots ts ON ts.id = r.time_slot_id
"""


def fetch_reservation(conn, reservation_id: int) -> Optional[Reservation]:
    row = row_to_dict(conn.execute(RESERVATION_SELECT + " WHERE r.id = ?", [reservation_id]))
    return Reservation(**row) if row else None


def fetch_reservations(conn, where: str = "", params: Optional[list] = None,
                       order_by: str = "r.reserved_date, ts.start_time, r.id") -> List[Reservation]:
    query = RESERVATION_SELECT
    if where:
        query += " WHERE " + where
    query += " ORDER BY " + order_by
    return [Reservation(**row) for row in rows_to_dicts(conn.execute(query, params or []))]
