"""
时段容量分配器
为 (菜单项, 时段, 日期) 预留或释放一个容量单位

计数器持久化在 slot_counters / day_counters 中。每次占用都是带上限条件的
UPDATE ... RETURNING，只有写入成功才算分配成功；调用方负责提供事务，
任一计数器失败时整个事务回滚，不会留下预订记录。
"""

from datetime import date

from ..core.exceptions import CapacityExceededError, MenuItemUnavailableError, ValidationError
from ..core.logger import get_logger
from ..models.catalog import MenuItem

logger = get_logger(__name__)


class CapacityAllocator:
    """时段容量分配器"""

    def allocate(self, conn, menu_item: MenuItem, time_slot_id: int, reserved_date: date) -> None:
        """
        占用一个容量单位

        Raises:
            MenuItemUnavailableError: 菜单项不可预订或不适用于该日期
            ValidationError: 时段不属于该菜单项
            CapacityExceededError: 时段容量或当日容量已满
        """
        if not menu_item.is_available:
            raise MenuItemUnavailableError()
        if menu_item.menu_date is None:
            # 模板只用于生成每日菜单，容量计数器按每日菜单项记账
            raise MenuItemUnavailableError("模板菜单不能直接预订，请先生成当日菜单")
        if not menu_item.applies_to(reserved_date):
            raise MenuItemUnavailableError("该菜品在所选日期不提供")
        if time_slot_id not in {slot.id for slot in menu_item.time_slots}:
            raise ValidationError("所选时段不属于该菜品")

        self._ensure_counters(conn, menu_item.id, time_slot_id, reserved_date)

        slot_row = conn.execute(
            """
            UPDATE slot_counters SET reserved_count = reserved_count + 1
            WHERE time_slot_id = ? AND reserved_date = ? AND reserved_count < ?
            RETURNING reserved_count
            """,
            [time_slot_id, reserved_date, menu_item.time_slot_capacity],
        ).fetchone()
        if slot_row is None:
            raise CapacityExceededError(details={
                "scope": "time_slot", "time_slot_id": time_slot_id,
                "capacity": menu_item.time_slot_capacity,
            })

        day_row = conn.execute(
            """
            UPDATE day_counters SET reserved_count = reserved_count + 1
            WHERE menu_item_id = ? AND reserved_date = ? AND reserved_count < ?
            RETURNING reserved_count
            """,
            [menu_item.id, reserved_date, menu_item.daily_capacity],
        ).fetchone()
        if day_row is None:
            raise CapacityExceededError("该菜品当日容量已满", details={
                "scope": "daily", "menu_item_id": menu_item.id,
                "capacity": menu_item.daily_capacity,
            })

        logger.debug(
            f"allocated menu_item={menu_item.id} slot={time_slot_id} date={reserved_date} "
            f"slot_count={slot_row[0]} day_count={day_row[0]}"
        )

    def release(self, conn, menu_item_id: int, time_slot_id: int, reserved_date: date) -> None:
        """释放一个容量单位（取消、支付失败、超时、冲正时调用）"""
        slot_row = conn.execute(
            """
            UPDATE slot_counters SET reserved_count = reserved_count - 1
            WHERE time_slot_id = ? AND reserved_date = ? AND reserved_count > 0
            RETURNING reserved_count
            """,
            [time_slot_id, reserved_date],
        ).fetchone()
        day_row = conn.execute(
            """
            UPDATE day_counters SET reserved_count = reserved_count - 1
            WHERE menu_item_id = ? AND reserved_date = ? AND reserved_count > 0
            RETURNING reserved_count
            """,
            [menu_item_id, reserved_date],
        ).fetchone()
        if slot_row is None or day_row is None:
            # 计数器已为0说明之前存在泄漏或重复释放，由一致性检查报告
            logger.warning(
                f"release found empty counter menu_item={menu_item_id} slot={time_slot_id} date={reserved_date}"
            )

    def _ensure_counters(self, conn, menu_item_id: int, time_slot_id: int, reserved_date: date) -> None:
        conn.execute(
            """
            INSERT INTO slot_counters(menu_item_id, time_slot_id, reserved_date, reserved_count)
            VALUES (?, ?, ?, 0) ON CONFLICT DO NOTHING
            """,
            [menu_item_id, time_slot_id, reserved_date],
        )
        conn.execute(
            """
            INSERT INTO day_counters(menu_item_id, reserved_date, reserved_count)
            VALUES (?, ?, 0) ON CONFLICT DO NOTHING
            """,
            [menu_item_id, reserved_date],
        )
