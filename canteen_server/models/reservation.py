"""
预订相关数据模型与状态机

状态流转（初始 → 终态）：
    (none) --create--> pending_payment --支付成功--> waiting
    (none) --create, price==0--> waiting
    waiting --开始备餐--> preparing
    preparing --备餐完成--> ready_to_pickup
    ready_to_pickup --核销取餐码--> picked_up
    ready_to_pickup --超时未取--> not_picked_up
"""

from pydantic import Field
from datetime import date, time
from typing import Dict, FrozenSet, Optional
from enum import Enum
from .base import BaseEntity, TimestampMixin
from .user import UserRole


class ReservationStatus(str, Enum):
    """预订状态枚举"""
    PENDING_PAYMENT = "pending_payment"   # 待支付
    WAITING = "waiting"                   # 等待备餐
    PREPARING = "preparing"               # 备餐中
    READY_TO_PICKUP = "ready_to_pickup"   # 待取餐
    PICKED_UP = "picked_up"               # 已取餐
    NOT_PICKED_UP = "not_picked_up"       # 未取餐


TRANSITIONS: Dict[ReservationStatus, FrozenSet[ReservationStatus]] = {
    ReservationStatus.PENDING_PAYMENT: frozenset({ReservationStatus.WAITING}),
    ReservationStatus.WAITING: frozenset({ReservationStatus.PREPARING}),
    ReservationStatus.PREPARING: frozenset({ReservationStatus.READY_TO_PICKUP}),
    ReservationStatus.READY_TO_PICKUP: frozenset({
        ReservationStatus.PICKED_UP,
        ReservationStatus.NOT_PICKED_UP,
    }),
    ReservationStatus.PICKED_UP: frozenset(),
    ReservationStatus.NOT_PICKED_UP: frozenset(),
}

# 工作人员可以直接写入的目标状态及其允许的角色。
# waiting 只能由支付流程进入，picked_up 只能通过核销进入。
STAFF_TRANSITION_ROLES: Dict[ReservationStatus, FrozenSet[UserRole]] = {
    ReservationStatus.PREPARING: frozenset({UserRole.CHEF, UserRole.RECEIVER, UserRole.ADMIN}),
    ReservationStatus.READY_TO_PICKUP: frozenset({UserRole.CHEF, UserRole.RECEIVER, UserRole.ADMIN}),
    ReservationStatus.NOT_PICKED_UP: frozenset({UserRole.RECEIVER, UserRole.ADMIN}),
}

TERMINAL_STATUSES = frozenset({ReservationStatus.PICKED_UP, ReservationStatus.NOT_PICKED_UP})

# 允许取消（删除并释放容量）的状态
CANCELLABLE_STATUSES = frozenset({ReservationStatus.PENDING_PAYMENT, ReservationStatus.WAITING})


def can_transition(current: ReservationStatus, target: ReservationStatus) -> bool:
    """判断状态变更是否合法"""
    return ReservationStatus(target) in TRANSITIONS[ReservationStatus(current)]


def compute_price(food_price: int, has_voucher: bool, voucher_price: int) -> int:
    """计算预订价格：使用餐券时抵扣，最低为0"""
    if not has_voucher:
        return food_price
    return max(food_price - voucher_price, 0)


class Reservation(BaseEntity, TimestampMixin):
    """预订完整模型"""
    id: int = Field(..., description="预订ID")
    student_id: int = Field(..., description="学生ID")
    menu_item_id: int = Field(..., description="菜单项ID")
    time_slot_id: int = Field(..., description="时段ID")
    reserved_date: date = Field(..., description="预订日期")
    meal_type: str = Field(..., description="餐次")
    has_voucher: bool = Field(False, description="是否使用餐券")
    price: int = Field(..., description="应付金额")
    status: ReservationStatus = Field(..., description="预订状态")
    delivery_code: Optional[str] = Field(None, description="取餐码")
    qr_payload: Optional[str] = Field(None, description="二维码内容")
    food_name: Optional[str] = Field(None, description="菜品名称")
    student_name: Optional[str] = Field(None, description="学生姓名")
    slot_start_time: Optional[time] = Field(None, description="取餐开始时间")
    slot_end_time: Optional[time] = Field(None, description="取餐结束时间")

    @property
    def is_terminal(self) -> bool:
        return ReservationStatus(self.status) in TERMINAL_STATUSES

