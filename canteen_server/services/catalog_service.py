"""
菜品目录服务
提供菜品、分类、每日/模板菜单、取餐时段和餐券价格的维护与只读查询

预订引擎只通过 get_menu_item / get_food_price / get_voucher_price 读取目录数据
"""

from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

from ..core.audit import log_action
from ..core.database import DatabaseManager, db_manager, row_to_dict, rows_to_dicts
from ..core.exceptions import NotFoundError, ValidationError
from ..core.security import CurrentUser, require_role
from ..models.catalog import (
    Food, FoodCategory, FoodCreate, MealType, MenuItem, MenuItemCreate, TimeSlot, Weekday,
)
from ..models.user import UserRole

VOUCHER_PRICE_KEY = "voucher_price"


def split_time_slots(start: time, end: time, count: int) -> List[tuple]:
    """把 [start, end) 均分为 count 个时段，最后一个时段结束于 end"""
    if count <= 0:
        raise ValidationError("时段数量必须大于0")
    base = date(2000, 1, 1)
    start_dt = datetime.combine(base, start)
    end_dt = datetime.combine(base, end)
    total_seconds = (end_dt - start_dt).total_seconds()
    if total_seconds <= 0:
        raise ValidationError("结束时间必须晚于开始时间")

    step = total_seconds / count
    slots = []
    for i in range(count):
        slot_start = start_dt + timedelta(seconds=round(step * i))
        slot_end = end_dt if i == count - 1 else start_dt + timedelta(seconds=round(step * (i + 1)))
        slots.append((slot_start.time(), slot_end.time()))
    return slots


class CatalogService:
    """菜品目录服务"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or db_manager

    # 分类

    def create_category(self, name: str, actor: CurrentUser) -> FoodCategory:
        require_role(actor, [UserRole.ADMIN])
        with self.db.transaction() as conn:
            exists = conn.execute("SELECT 1 FROM food_categories WHERE name = ?", [name]).fetchone()
            if exists:
                raise ValidationError("分类已存在")
            row = conn.execute(
                "INSERT INTO food_categories(name) VALUES (?) RETURNING id, name", [name]
            ).fetchone()
            log_action(conn, "category_create", actor_id=actor.id, detail={"name": name})
        return FoodCategory(id=row[0], name=row[1])

    def list_categories(self) -> List[FoodCategory]:
        rows = self.db.execute_query("SELECT id, name FROM food_categories ORDER BY id")
        return [FoodCategory(**r) for r in rows]

    # 菜品

    def create_food(self, food: FoodCreate, actor: CurrentUser) -> Food:
        require_role(actor, [UserRole.ADMIN])
        with self.db.transaction() as conn:
            if food.category_id is not None:
                if not conn.execute("SELECT 1 FROM food_categories WHERE id = ?", [food.category_id]).fetchone():
                    raise NotFoundError("分类不存在")
            food_id = conn.execute(
                """
                INSERT INTO foods(name, description, price, category_id, image_url)
                VALUES (?,?,?,?,?) RETURNING id
                """,
                [food.name, food.description, food.price, food.category_id, food.image_url],
            ).fetchone()[0]
            log_action(conn, "food_create", actor_id=actor.id,
                       detail={"food_id": food_id, "name": food.name, "price": food.price})
        return self.get_food(food_id)

    def get_food(self, food_id: int) -> Food:
        row = self.db.execute_one("SELECT * FROM foods WHERE id = ?", [food_id])
        if not row:
            raise NotFoundError("菜品不存在")
        return Food(**row)

    def list_foods(self) -> List[Food]:
        return [Food(**r) for r in self.db.execute_query("SELECT * FROM foods ORDER BY id")]

    def get_food_price(self, conn, food_id: int) -> int:
        row = conn.execute("SELECT price FROM foods WHERE id = ?", [food_id]).fetchone()
        if not row:
            raise NotFoundError("菜品不存在")
        return row[0]

    # 菜单

    def create_menu_item(self, item: MenuItemCreate, actor: CurrentUser) -> MenuItem:
        """创建菜单项并按时段数量生成取餐时段"""
        require_role(actor, [UserRole.ADMIN])
        with self.db.transaction() as conn:
            menu_item_id = self._insert_menu_item(conn, item)
            log_action(conn, "menu_item_create", actor_id=actor.id,
                       detail={"menu_item_id": menu_item_id, **item.model_dump()})
            return self.get_menu_item(conn, menu_item_id)

    def _insert_menu_item(self, conn, item: MenuItemCreate) -> int:
        if not conn.execute("SELECT 1 FROM foods WHERE id = ?", [item.food_id]).fetchone():
            raise NotFoundError("菜品不存在")

        menu_item_id = conn.execute(
            """
            INSERT INTO menu_items(food_id, menu_date, weekday, meal_type, start_time, end_time,
                                   time_slot_count, time_slot_capacity, daily_capacity, is_available)
            VALUES (?,?,?,?,?,?,?,?,?,?) RETURNING id
            """,
            [
                item.food_id, item.menu_date,
                Weekday(item.weekday).value if item.weekday else None,
                MealType(item.meal_type).value, item.start_time, item.end_time,
                item.time_slot_count, item.time_slot_capacity, item.daily_capacity,
                item.is_available,
            ],
        ).fetchone()[0]

        for slot_start, slot_end in split_time_slots(item.start_time, item.end_time, item.time_slot_count):
            conn.execute(
                "INSERT INTO time_slots(menu_item_id, start_time, end_time) VALUES (?,?,?)",
                [menu_item_id, slot_start, slot_end],
            )
        return menu_item_id

    def get_menu_item(self, conn, menu_item_id: int) -> MenuItem:
        """在给定连接/事务内读取菜单项及其时段"""
        row = row_to_dict(conn.execute("SELECT * FROM menu_items WHERE id = ?", [menu_item_id]))
        if not row:
            raise NotFoundError("菜单项不存在")
        slots = rows_to_dicts(conn.execute(
            "SELECT id, menu_item_id, start_time, end_time FROM time_slots WHERE menu_item_id = ? ORDER BY start_time",
            [menu_item_id],
        ))
        return MenuItem(**row, time_slots=[TimeSlot(**s) for s in slots])

    def list_daily_menu(self, menu_date: date, meal_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """每日菜单，附带菜品信息和各时段剩余容量"""
        with self.db.transaction() as conn:
            query = "SELECT id FROM menu_items WHERE menu_date = ?"
            params: list = [menu_date]
            if meal_type:
                query += " AND meal_type = ?"
                params.append(MealType(meal_type).value)
            ids = [r[0] for r in conn.execute(query + " ORDER BY id", params).fetchall()]
            return [self._menu_entry(conn, self.get_menu_item(conn, i), menu_date) for i in ids]

    def list_template_menu(self, weekday: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.db.transaction() as conn:
            query = "SELECT id FROM menu_items WHERE weekday IS NOT NULL"
            params: list = []
            if weekday:
                query += " AND weekday = ?"
                params.append(Weekday(weekday).value)
            ids = [r[0] for r in conn.execute(query + " ORDER BY id", params).fetchall()]
            return [self._menu_entry(conn, self.get_menu_item(conn, i), None) for i in ids]

    def _menu_entry(self, conn, item: MenuItem, menu_date: Optional[date]) -> Dict[str, Any]:
        food = row_to_dict(conn.execute("SELECT id, name, price, image_url, category_id FROM foods WHERE id = ?",
                                        [item.food_id]))
        entry = item.model_dump()
        entry["food"] = food
        if menu_date is not None:
            used = dict(conn.execute(
                "SELECT time_slot_id, reserved_count FROM slot_counters WHERE menu_item_id = ? AND reserved_date = ?",
                [item.id, menu_date],
            ).fetchall())
            day_row = conn.execute(
                "SELECT reserved_count FROM day_counters WHERE menu_item_id = ? AND reserved_date = ?",
                [item.id, menu_date],
            ).fetchone()
            day_used = day_row[0] if day_row else 0
            entry["remaining_daily_capacity"] = max(item.daily_capacity - day_used, 0)
            for slot in entry["time_slots"]:
                slot["remaining_capacity"] = max(item.time_slot_capacity - used.get(slot["id"], 0), 0)
        return entry

    def set_availability(self, menu_item_id: int, is_available: bool, actor: CurrentUser) -> MenuItem:
        require_role(actor, [UserRole.ADMIN])
        with self.db.transaction() as conn:
            updated = conn.execute(
                "UPDATE menu_items SET is_available = ? WHERE id = ? RETURNING id",
                [is_available, menu_item_id],
            ).fetchone()
            if not updated:
                raise NotFoundError("菜单项不存在")
            log_action(conn, "menu_item_availability", actor_id=actor.id,
                       detail={"menu_item_id": menu_item_id, "is_available": is_available})
            return self.get_menu_item(conn, menu_item_id)

    def use_template_for_date(self, target_date: date, actor: CurrentUser) -> List[MenuItem]:
        """按星期模板生成指定日期的每日菜单，已存在的同菜品同餐次不重复生成"""
        require_role(actor, [UserRole.ADMIN])
        weekday = Weekday.from_date(target_date).value
        created = []
        with self.db.transaction() as conn:
            templates = rows_to_dicts(conn.execute(
                "SELECT * FROM menu_items WHERE weekday = ? ORDER BY id", [weekday]
            ))
            for tpl in templates:
                exists = conn.execute(
                    "SELECT 1 FROM menu_items WHERE menu_date = ? AND meal_type = ? AND food_id = ?",
                    [target_date, tpl["meal_type"], tpl["food_id"]],
                ).fetchone()
                if exists:
                    continue
                new_id = self._insert_menu_item(conn, MenuItemCreate(
                    food_id=tpl["food_id"],
                    menu_date=target_date,
                    meal_type=tpl["meal_type"],
                    start_time=tpl["start_time"],
                    end_time=tpl["end_time"],
                    time_slot_count=tpl["time_slot_count"],
                    time_slot_capacity=tpl["time_slot_capacity"],
                    daily_capacity=tpl["daily_capacity"],
                    is_available=tpl["is_available"],
                ))
                created.append(self.get_menu_item(conn, new_id))
            log_action(conn, "menu_use_template", actor_id=actor.id,
                       detail={"date": target_date, "weekday": weekday, "created": [m.id for m in created]})
        return created

    # 餐券

    def get_voucher_price(self, conn=None) -> int:
        query = "SELECT value FROM app_settings WHERE key = ?"
        if conn is not None:
            row = conn.execute(query, [VOUCHER_PRICE_KEY]).fetchone()
            value = row[0] if row else None
        else:
            row = self.db.execute_one(query, [VOUCHER_PRICE_KEY])
            value = row["value"] if row else None
        return int(value) if value is not None else 0

    def set_voucher_price(self, price: int, actor: CurrentUser) -> int:
        require_role(actor, [UserRole.ADMIN])
        if price < 0:
            raise ValidationError("餐券金额不能为负数")
        with self.db.transaction() as conn:
            old = self.get_voucher_price(conn)
            conn.execute(
                """
                INSERT INTO app_settings(key, value) VALUES (?, ?)
                ON CONFLICT (key) DO UPDATE SET value = excluded.value, updated_at = now()
                """,
                [VOUCHER_PRICE_KEY, str(price)],
            )
            log_action(conn, "voucher_price_update", actor_id=actor.id, detail={"old": old, "new": price})
        return price
