"""
菜品与菜单相关数据模型
"""

from pydantic import BaseModel, Field, model_validator
from datetime import date, time
from typing import List, Optional
from enum import Enum
from .base import BaseEntity, TimestampMixin


class MealType(str, Enum):
    """餐次枚举"""
    BREAKFAST = "breakfast"
    LUNCH = "lunch"
    DINNER = "dinner"


class Weekday(str, Enum):
    """模板菜单使用的星期（以周六为一周开始）"""
    SATURDAY = "saturday"
    SUNDAY = "sunday"
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"

    @classmethod
    def from_date(cls, value: date) -> "Weekday":
        # date.weekday(): 周一为 0
        names = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
        return cls(names[value.weekday()])


class FoodCategory(BaseEntity):
    id: int
    name: str


class FoodBase(BaseModel):
    """菜品基础字段"""
    name: str = Field(..., max_length=200, description="菜品名称")
    description: Optional[str] = Field(None, max_length=1000, description="菜品描述")
    price: int = Field(..., ge=0, description="价格")
    category_id: Optional[int] = Field(None, description="分类ID")
    image_url: Optional[str] = Field(None, description="图片地址")


class FoodCreate(FoodBase):
    pass


class Food(FoodBase, BaseEntity, TimestampMixin):
    id: int = Field(..., description="菜品ID")


class TimeSlot(BaseEntity):
    """取餐时段"""
    id: int = Field(..., description="时段ID")
    menu_item_id: int = Field(..., description="菜单项ID")
    start_time: time = Field(..., description="开始时间")
    end_time: time = Field(..., description="结束时间")


class MenuItemCreate(BaseModel):
    """菜单项创建模型，menu_date 与 weekday 二选一"""
    food_id: int = Field(..., description="菜品ID")
    menu_date: Optional[date] = Field(None, description="日期（每日菜单）")
    weekday: Optional[Weekday] = Field(None, description="星期（模板菜单）")
    meal_type: MealType = Field(..., description="餐次")
    start_time: time = Field(..., description="取餐开始时间")
    end_time: time = Field(..., description="取餐结束时间")
    time_slot_count: int = Field(1, gt=0, description="时段数量")
    time_slot_capacity: int = Field(..., gt=0, description="每个时段容量")
    daily_capacity: int = Field(..., gt=0, description="当日总容量")
    is_available: bool = Field(True, description="是否可预订")

    @model_validator(mode="after")
    def validate_menu_target(self):
        if (self.menu_date is None) == (self.weekday is None):
            raise ValueError("menu_date 与 weekday 必须且只能提供一个")
        if self.end_time <= self.start_time:
            raise ValueError("结束时间必须晚于开始时间")
        return self


class MenuItem(BaseEntity, TimestampMixin):
    """菜单项完整模型"""
    id: int = Field(..., description="菜单项ID")
    food_id: int = Field(..., description="菜品ID")
    menu_date: Optional[date] = None
    weekday: Optional[Weekday] = None
    meal_type: MealType
    start_time: time
    end_time: time
    time_slot_count: int
    time_slot_capacity: int
    daily_capacity: int
    is_available: bool = True
    time_slots: List[TimeSlot] = Field(default_factory=list)

    def applies_to(self, reserved_date: date) -> bool:
        """菜单项是否适用于给定日期"""
        if self.menu_date is not None:
            return self.menu_date == reserved_date
        return Weekday(self.weekday) == Weekday.from_date(reserved_date)
