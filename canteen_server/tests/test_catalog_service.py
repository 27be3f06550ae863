"""
菜品目录测试
"""

from datetime import time, timedelta

import pytest

from ..core.exceptions import ForbiddenError, NotFoundError, ValidationError
from ..models.catalog import FoodCreate, MenuItemCreate, Weekday
from ..services.catalog_service import split_time_slots
from .conftest import MENU_DATE


class TestTimeSlots:

    def test_even_split(self):
        assert split_time_slots(time(12, 0), time(14, 0), 4) == [
            (time(12, 0), time(12, 30)),
            (time(12, 30), time(13, 0)),
            (time(13, 0), time(13, 30)),
            (time(13, 30), time(14, 0)),
        ]

    def test_last_slot_ends_at_end_time(self):
        slots = split_time_slots(time(7, 0), time(8, 0), 7)
        assert len(slots) == 7
        assert slots[0][0] == time(7, 0)
        assert slots[-1][1] == time(8, 0)
        for (_, prev_end), (next_start, _) in zip(slots, slots[1:]):
            assert prev_end == next_start

    def test_invalid_range(self):
        with pytest.raises(ValidationError):
            split_time_slots(time(14, 0), time(12, 0), 2)
        with pytest.raises(ValidationError):
            split_time_slots(time(12, 0), time(14, 0), 0)

    def test_menu_item_gets_slots(self, menu_item):
        assert [(s.start_time, s.end_time) for s in menu_item.time_slots] == [
            (time(12, 0), time(13, 0)),
            (time(13, 0), time(14, 0)),
        ]


class TestMenu:

    def test_only_admin_maintains_catalog(self, catalog_service, chef):
        with pytest.raises(ForbiddenError):
            catalog_service.create_food(FoodCreate(name="Soup", price=1000), chef)
        with pytest.raises(ForbiddenError):
            catalog_service.set_voucher_price(100, chef)

    def test_menu_item_requires_existing_food(self, catalog_service, admin):
        with pytest.raises(NotFoundError):
            catalog_service.create_menu_item(MenuItemCreate(
                food_id=9999, menu_date=MENU_DATE, meal_type="lunch",
                start_time=time(12, 0), end_time=time(13, 0),
                time_slot_capacity=5, daily_capacity=5,
            ), admin)

    def test_daily_menu_filters(self, catalog_service, make_menu_item):
        lunch = make_menu_item()
        make_menu_item(meal_type="dinner")
        make_menu_item(menu_date=MENU_DATE + timedelta(days=1))

        assert len(catalog_service.list_daily_menu(MENU_DATE)) == 2
        entries = catalog_service.list_daily_menu(MENU_DATE, "lunch")
        assert [e["id"] for e in entries] == [lunch.id]

    def test_remaining_capacity(self, catalog_service, place, menu_item, student, other_student):
        place(student, slot_index=0)
        place(other_student, slot_index=1)
        entry = catalog_service.list_daily_menu(MENU_DATE)[0]
        assert entry["remaining_daily_capacity"] == menu_item.daily_capacity - 2
        assert [s["remaining_capacity"] for s in entry["time_slots"]] == [
            menu_item.time_slot_capacity - 1, menu_item.time_slot_capacity - 1,
        ]

    def test_use_template_for_date(self, catalog_service, food, admin):
        weekday = Weekday.from_date(MENU_DATE)
        catalog_service.create_menu_item(MenuItemCreate(
            food_id=food.id, weekday=weekday, meal_type="lunch",
            start_time=time(12, 0), end_time=time(14, 0),
            time_slot_count=4, time_slot_capacity=3, daily_capacity=10,
        ), admin)

        created = catalog_service.use_template_for_date(MENU_DATE, admin)
        assert len(created) == 1
        assert created[0].menu_date == MENU_DATE
        assert len(created[0].time_slots) == 4
        assert created[0].daily_capacity == 10

        # 重复执行不会重复生成
        assert catalog_service.use_template_for_date(MENU_DATE, admin) == []
        # 其他星期没有模板
        assert catalog_service.use_template_for_date(MENU_DATE + timedelta(days=1), admin) == []

    def test_template_item_applies_by_weekday(self, catalog_service, food, admin):
        item = catalog_service.create_menu_item(MenuItemCreate(
            food_id=food.id, weekday=Weekday.from_date(MENU_DATE), meal_type="dinner",
            start_time=time(18, 0), end_time=time(20, 0),
            time_slot_capacity=3, daily_capacity=10,
        ), admin)
        assert item.applies_to(MENU_DATE)
        assert item.applies_to(MENU_DATE + timedelta(days=7))
        assert not item.applies_to(MENU_DATE + timedelta(days=1))

    def test_menu_item_needs_exactly_one_target(self, food):
        with pytest.raises(ValueError):
            MenuItemCreate(
                food_id=food.id, meal_type="lunch",
                start_time=time(12, 0), end_time=time(13, 0),
                time_slot_capacity=5, daily_capacity=5,
            )

    def test_voucher_price_defaults_to_zero(self, catalog_service, admin):
        assert catalog_service.get_voucher_price() == 0
        catalog_service.set_voucher_price(40000, admin)
        catalog_service.set_voucher_price(45000, admin)
        assert catalog_service.get_voucher_price() == 45000

    def test_categories(self, catalog_service, admin):
        category = catalog_service.create_category("Rice", admin)
        food = catalog_service.create_food(FoodCreate(name="Polo", price=90000, category_id=category.id), admin)
        assert food.category_id == category.id
        with pytest.raises(ValidationError):
            catalog_service.create_category("Rice", admin)
