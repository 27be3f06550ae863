"""
预订服务模块
负责单个预订的完整生命周期：创建、状态流转、取消、超时清理和未取餐处理

业务规则：
- 每个学生同一天同一餐次只能有一个预订
- 信用分为负的学生不能创建预订
- 创建时原子地占用时段容量和当日容量，任一失败则不产生预订
- 价格为0（餐券全额抵扣）时直接进入 waiting 并生成取餐码
- 取消/支付失败/超时都会删除预订并释放容量
- picked_up 只能通过核销取餐码进入
"""

from datetime import date, datetime, timedelta
from typing import List, Optional

import duckdb

from ..config.settings import settings
from ..core.audit import log_action
from ..core.database import DatabaseManager, db_manager
from ..core.exceptions import (
    DuplicateReservationError, ForbiddenError, InvalidTransitionError, NotFoundError, ValidationError,
)
from ..core.logger import get_logger
from ..core.security import CurrentUser, require_role
from ..models.catalog import MealType
from ..models.payment import PaymentStatus
from ..models.reservation import (
    CANCELLABLE_STATUSES, STAFF_TRANSITION_ROLES, Reservation, ReservationStatus,
    can_transition, compute_price,
)
from ..models.user import UserRole
from .capacity_allocator import CapacityAllocator
from .catalog_service import CatalogService
from .delivery_service import DeliveryService
from .reservation_queries import fetch_reservation, fetch_reservations
from .trust_service import TrustService

logger = get_logger(__name__)

STAFF_ROLES = [UserRole.CHEF, UserRole.RECEIVER, UserRole.ADMIN]


class ReservationService:
    """预订服务类，封装预订状态机"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or db_manager
        self.allocator = CapacityAllocator()
        self.catalog = CatalogService(self.db)
        self.trust = TrustService(self.db)
        self.delivery = DeliveryService(self.db)

    def place_order(self, student_id: int, menu_item_id: int, time_slot_id: int,
                    meal_type: str, reserved_date: date, has_voucher: bool = False) -> Reservation:
        """
        创建预订

        Args:
            student_id: 学生ID
            menu_item_id: 菜单项ID
            time_slot_id: 取餐时段ID
            meal_type: 餐次
            reserved_date: 预订日期
            has_voucher: 是否使用餐券

        Returns:
            Reservation: 新预订（pending_payment，价格为0时为 waiting）

        Raises:
            NotFoundError: 学生或菜单项不存在
            ForbiddenError: 非学生账号
            TrustScoreBlockedError: 信用分为负
            DuplicateReservationError: 同日同餐次已有预订
            MenuItemUnavailableError / ValidationError: 菜单项不可预订或参数不匹配
            CapacityExceededError: 容量已满
        """
        meal_type = MealType(meal_type).value

        with self.db.transaction() as conn:
            user = conn.execute("SELECT role FROM users WHERE id = ?", [student_id]).fetchone()
            if not user:
                raise NotFoundError("用户不存在")
            if user[0] != UserRole.STUDENT.value:
                raise ForbiddenError("只有学生可以预订")

            self.trust.ensure_not_blocked(conn, student_id)

            duplicate = conn.execute(
                "SELECT id FROM reservations WHERE student_id = ? AND reserved_date = ? AND meal_type = ?",
                [student_id, reserved_date, meal_type],
            ).fetchone()
            if duplicate:
                raise DuplicateReservationError(details={"reservation_id": duplicate[0]})

            menu_item = self.catalog.get_menu_item(conn, menu_item_id)
            if MealType(menu_item.meal_type).value != meal_type:
                raise ValidationError("餐次与菜单项不一致")

            self.allocator.allocate(conn, menu_item, time_slot_id, reserved_date)

            food_price = self.catalog.get_food_price(conn, menu_item.food_id)
            voucher_price = self.catalog.get_voucher_price(conn) if has_voucher else 0
            price = compute_price(food_price, has_voucher, voucher_price)
            status = ReservationStatus.WAITING if price == 0 else ReservationStatus.PENDING_PAYMENT

            now = datetime.now()
            try:
                reservation_id = conn.execute(
                    """
                    INSERT INTO reservations(student_id, menu_item_id, time_slot_id, reserved_date,
                                             meal_type, has_voucher, price, status, created_at, updated_at)
                    VALUES (?,?,?,?,?,?,?,?,?,?) RETURNING id
                    """,
                    [student_id, menu_item_id, time_slot_id, reserved_date, meal_type,
                     has_voucher, price, status.value, now, now],
                ).fetchone()[0]
            except duckdb.ConstraintException as e:
                raise DuplicateReservationError() from e

            if status == ReservationStatus.WAITING:
                self.delivery.issue_token(conn, reservation_id)

            log_action(conn, "reservation_create", user_id=student_id, actor_id=student_id, detail={
                "reservation_id": reservation_id,
                "menu_item_id": menu_item_id,
                "time_slot_id": time_slot_id,
                "reserved_date": reserved_date,
                "meal_type": meal_type,
                "has_voucher": has_voucher,
                "food_price": food_price,
                "price": price,
                "status": status.value,
            })
            reservation = fetch_reservation(conn, reservation_id)

        logger.info(f"reservation {reservation_id} created for student {student_id} ({status.value}, price {price})")
        return reservation

    def update_status(self, reservation_id: int, new_status: str, actor: CurrentUser) -> Reservation:
        """
        工作人员推进预订状态

        Raises:
            ForbiddenError: 角色无权写入目标状态
            InvalidTransitionError: 状态流转不合法或并发修改
            NotFoundError: 预订不存在
        """
        require_role(actor, STAFF_ROLES)
        try:
            target = ReservationStatus(new_status)
        except ValueError:
            raise ValidationError(f"未知状态: {new_status}")

        allowed_roles = STAFF_TRANSITION_ROLES.get(target)
        if allowed_roles is None:
            # waiting 由支付流程进入，picked_up 由核销进入
            raise InvalidTransitionError(f"不能直接设置为 {target.value}", details={"target": target.value})
        require_role(actor, allowed_roles)

        with self.db.transaction() as conn:
            reservation = self._transition(conn, reservation_id, target, actor_id=actor.id)
        logger.info(f"reservation {reservation_id} -> {target.value} (actor {actor.id})")
        return reservation

    def mark_not_picked_up(self, reservation_id: int, actor: CurrentUser) -> Reservation:
        return self.update_status(reservation_id, ReservationStatus.NOT_PICKED_UP.value, actor)

    def _transition(self, conn, reservation_id: int, target: ReservationStatus,
                    actor_id: Optional[int] = None) -> Reservation:
        row = conn.execute("SELECT status, student_id FROM reservations WHERE id = ?", [reservation_id]).fetchone()
        if not row:
            raise NotFoundError("预订不存在")
        current, student_id = ReservationStatus(row[0]), row[1]
        if not can_transition(current, target):
            raise InvalidTransitionError(
                f"不能从 {current.value} 变更为 {target.value}",
                details={"from": current.value, "to": target.value},
            )

        updated = conn.execute(
            """
            UPDATE reservations SET status = ?, updated_at = ?
            WHERE id = ? AND status = ?
            RETURNING id
            """,
            [target.value, datetime.now(), reservation_id, current.value],
        ).fetchone()
        if updated is None:
            raise InvalidTransitionError("预订状态已被修改，请刷新后重试")

        if target == ReservationStatus.NOT_PICKED_UP:
            self.trust.penalize(conn, student_id, reservation_id, settings.no_show_penalty, actor_id=actor_id)

        log_action(conn, "reservation_status", user_id=student_id, actor_id=actor_id, detail={
            "reservation_id": reservation_id, "from": current.value, "to": target.value,
        })
        return fetch_reservation(conn, reservation_id)

    def cancel_reservation(self, reservation_id: int, actor: CurrentUser) -> dict:
        """学生本人或管理员取消预订（删除并释放容量）"""
        with self.db.transaction() as conn:
            reservation = fetch_reservation(conn, reservation_id)
            if reservation is None:
                raise NotFoundError("预订不存在")
            is_admin = UserRole(actor.role) == UserRole.ADMIN
            if not is_admin and reservation.student_id != actor.id:
                raise NotFoundError("预订不存在")

            status = ReservationStatus(reservation.status)
            if status not in CANCELLABLE_STATUSES:
                raise InvalidTransitionError(f"{status.value} 状态的预订不能取消")
            if status == ReservationStatus.WAITING:
                paid = conn.execute(
                    "SELECT 1 FROM payments WHERE reservation_id = ? AND status = ?",
                    [reservation_id, PaymentStatus.PAID.value],
                ).fetchone()
                if paid:
                    raise InvalidTransitionError("已支付的预订需由管理员退款后取消")

            self.cancel_in_transaction(conn, reservation, "cancelled", actor_id=actor.id)

        logger.info(f"reservation {reservation_id} cancelled by {actor.id}")
        return {"reservation_id": reservation_id, "cancelled": True}

    def cancel_in_transaction(self, conn, reservation: Reservation, reason: str,
                              actor_id: Optional[int] = None) -> None:
        """
        在调用方事务内删除预订：关闭待支付记录、释放容量、删除取餐码

        删除以预订当前状态为条件，状态已变化时抛出 InvalidTransitionError。
        """
        deleted = conn.execute(
            "DELETE FROM reservations WHERE id = ? AND status = ? RETURNING id",
            [reservation.id, ReservationStatus(reservation.status).value],
        ).fetchone()
        if deleted is None:
            raise InvalidTransitionError("预订状态已被修改，请刷新后重试")

        conn.execute(
            """
            UPDATE payments SET status = ?, error_message = ?, updated_at = ?
            WHERE reservation_id = ? AND status = ?
            """,
            [PaymentStatus.FAILED.value, reason, datetime.now(), reservation.id, PaymentStatus.PENDING.value],
        )
        conn.execute("DELETE FROM delivery_tokens WHERE reservation_id = ?", [reservation.id])
        self.allocator.release(conn, reservation.menu_item_id, reservation.time_slot_id, reservation.reserved_date)

        log_action(conn, "reservation_cancel", user_id=reservation.student_id, actor_id=actor_id, detail={
            "reservation_id": reservation.id,
            "status": ReservationStatus(reservation.status).value,
            "reason": reason,
            "menu_item_id": reservation.menu_item_id,
            "time_slot_id": reservation.time_slot_id,
            "reserved_date": reservation.reserved_date,
        })

    def mark_no_shows(self, now: Optional[datetime] = None) -> List[int]:
        """
        超时未取餐处理：取餐时段结束后超过 pickup_cutoff_minutes 仍为 ready_to_pickup
        的预订置为 not_picked_up 并扣信用分

        Returns:
            List[int]: 本次处理的预订ID
        """
        now = now or datetime.now()
        cutoff = timedelta(minutes=settings.pickup_cutoff_minutes)
        marked = []

        with self.db.transaction() as conn:
            candidates = fetch_reservations(
                conn, "r.status = ? AND r.reserved_date <= ?",
                [ReservationStatus.READY_TO_PICKUP.value, now.date()],
            )
            for reservation in candidates:
                if reservation.slot_end_time is None:
                    continue
                deadline = datetime.combine(reservation.reserved_date, reservation.slot_end_time) + cutoff
                if deadline >= now:
                    continue
                self._transition(conn, reservation.id, ReservationStatus.NOT_PICKED_UP)
                marked.append(reservation.id)

        if marked:
            logger.info(f"marked {len(marked)} reservations as not picked up: {marked}")
        return marked

    def expire_unpaid(self, now: Optional[datetime] = None) -> List[int]:
        """
        清理超时未支付的预订

        只处理没有 pending/paid 支付记录的预订；存在待支付记录的由对账流程处理。
        """
        now = now or datetime.now()
        threshold = now - timedelta(minutes=settings.payment_timeout_minutes)
        expired = []

        with self.db.transaction() as conn:
            candidates = fetch_reservations(
                conn,
                """
                r.status = ? AND r.created_at < ? AND NOT EXISTS (
                    SELECT 1 FROM payments p
                    WHERE p.reservation_id = r.id AND p.status IN (?, ?)
                )
                """,
                [ReservationStatus.PENDING_PAYMENT.value, threshold,
                 PaymentStatus.PENDING.value, PaymentStatus.PAID.value],
            )
            for reservation in candidates:
                self.cancel_in_transaction(conn, reservation, "payment timeout")
                expired.append(reservation.id)

        if expired:
            logger.info(f"expired {len(expired)} unpaid reservations: {expired}")
        return expired

    # 查询

    def get_reservation(self, reservation_id: int, actor: CurrentUser) -> Reservation:
        with self.db.transaction() as conn:
            reservation = fetch_reservation(conn, reservation_id)
        if reservation is None:
            raise NotFoundError("预订不存在")
        if UserRole(actor.role) == UserRole.STUDENT and reservation.student_id != actor.id:
            raise NotFoundError("预订不存在")
        return reservation

    def list_student_reservations(self, student_id: int) -> List[Reservation]:
        with self.db.transaction() as conn:
            return fetch_reservations(conn, "r.student_id = ?", [student_id],
                                      order_by="r.reserved_date DESC, r.id DESC")

    def list_reservations(self, actor: CurrentUser, reserved_date: Optional[date] = None,
                          meal_type: Optional[str] = None, status: Optional[str] = None) -> List[Reservation]:
        """厨房/取餐窗口看板"""
        require_role(actor, STAFF_ROLES)
        clauses, params = [], []
        if reserved_date is not None:
            clauses.append("r.reserved_date = ?")
            params.append(reserved_date)
        if meal_type:
            clauses.append("r.meal_type = ?")
            params.append(MealType(meal_type).value)
        if status:
            clauses.append("r.status = ?")
            params.append(ReservationStatus(status).value)
        with self.db.transaction() as conn:
            return fetch_reservations(conn, " AND ".join(clauses), params)
