"""
预订路由模块
学生下单/取消，厨房与取餐窗口推进状态，取餐码核销
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...core.error_handler import create_success_response
from ...core.security import CurrentUser, get_current_user, require_roles
from ...models.catalog import MealType
from ...models.reservation import ReservationStatus
from ...models.user import UserRole
from ...schemas.common import ApiResponse
from ...schemas.order import (
    CancelResponse, DeliveryCodeRequest, PlaceOrderRequest, QrCodeResponse, StatusUpdateRequest,
)
from ...services import DeliveryService, ReservationService
from ..deps import get_delivery_service, get_reservation_service

router = APIRouter()


@router.post("/place/")
def place_order(
    req: PlaceOrderRequest,
    current_user: CurrentUser = Depends(require_roles(UserRole.STUDENT)),
    service: ReservationService = Depends(get_reservation_service),
):
    """创建预订"""
    reservation = service.place_order(
        student_id=current_user.id,
        menu_item_id=req.menu_item_id,
        time_slot_id=req.time_slot_id,
        meal_type=req.meal_type,
        reserved_date=req.reserved_date,
        has_voucher=req.has_voucher,
    )
    return create_success_response(reservation, "预订成功")


@router.get("/student/")
def list_my_orders(
    current_user: CurrentUser = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service),
):
    return create_success_response(service.list_student_reservations(current_user.id))


@router.get("/")
def list_orders(
    reserved_date: Optional[date] = Query(None, alias="date"),
    meal_type: Optional[MealType] = Query(None),
    status: Optional[ReservationStatus] = Query(None),
    current_user: CurrentUser = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service),
):
    """厨房/取餐窗口看板"""
    reservations = service.list_reservations(
        current_user, reserved_date=reserved_date, meal_type=meal_type.value if meal_type else None,
        status=status.value if status else None,
    )
    return create_success_response(reservations)


@router.post("/delivery-code/")
def redeem_delivery_code(
    req: DeliveryCodeRequest,
    current_user: CurrentUser = Depends(get_current_user),
    service: DeliveryService = Depends(get_delivery_service),
):
    """核销取餐码或二维码"""
    reservation = service.redeem(req.code, current_user)
    return create_success_response(reservation, "取餐成功")


@router.post("/no-shows/sweep/")
def sweep_no_shows(
    current_user: CurrentUser = Depends(require_roles(UserRole.ADMIN)),
    service: ReservationService = Depends(get_reservation_service),
):
    return create_success_response({"marked": service.mark_no_shows()})


@router.post("/expire-unpaid/")
def expire_unpaid(
    current_user: CurrentUser = Depends(require_roles(UserRole.ADMIN)),
    service: ReservationService = Depends(get_reservation_service),
):
    return create_success_response({"expired": service.expire_unpaid()})


@router.get("/{reservation_id}/")
def get_order(
    reservation_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service),
):
    return create_success_response(service.get_reservation(reservation_id, current_user))


@router.patch("/{reservation_id}/status/")
def update_order_status(
    reservation_id: int,
    req: StatusUpdateRequest,
    current_user: CurrentUser = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service),
):
    reservation = service.update_status(reservation_id, req.status, current_user)
    return create_success_response(reservation, "状态已更新")


@router.patch("/{reservation_id}/not-picked-up/")
def mark_not_picked_up(
    reservation_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service),
):
    reservation = service.mark_not_picked_up(reservation_id, current_user)
    return create_success_response(reservation, "已标记为未取餐")


@router.post("/{reservation_id}/cancel/", response_model=ApiResponse[CancelResponse])
def cancel_order(
    reservation_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service),
):
    return create_success_response(service.cancel_reservation(reservation_id, current_user), "预订已取消")


@router.get("/{reservation_id}/qr/", response_model=ApiResponse[QrCodeResponse])
def get_order_qr(
    reservation_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    service: DeliveryService = Depends(get_delivery_service),
):
    return create_success_response(service.get_qr(reservation_id, current_user))
