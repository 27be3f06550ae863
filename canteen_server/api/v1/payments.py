"""
支付路由模块
发起支付、网关回调确认、查询对账和管理员退款
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...core.error_handler import create_success_response
from ...core.exceptions import NotFoundError
from ...core.security import CurrentUser, get_current_user, require_roles
from ...models.payment import PaymentStatus
from ...models.user import UserRole
from ...schemas.common import ApiResponse
from ...schemas.payment import (
    InquiryResponse, PaymentRequestBody, PaymentRequestResponse, VerifyResponse,
)
from ...services import PaymentService
from ..deps import get_payment_service

router = APIRouter()


@router.post("/request/", response_model=ApiResponse[PaymentRequestResponse])
def request_payment(
    req: PaymentRequestBody,
    current_user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """发起支付，返回网关跳转地址"""
    result = service.request_payment(req.reservation_id, current_user.id, req.amount, req.callback_url)
    return create_success_response(result)


@router.get("/verify/", response_model=ApiResponse[VerifyResponse])
def verify_payment(
    authority: str = Query(..., alias="Authority"),
    status: str = Query(..., alias="Status"),
    service: PaymentService = Depends(get_payment_service),
):
    """网关回调：浏览器从支付页跳回时携带 Authority 和 Status"""
    return create_success_response(service.verify_payment(authority, status), "支付成功")


@router.get("/history/")
def payment_history(
    current_user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return create_success_response(service.payment_history(current_user.id))


@router.get("/payments/")
def list_payments(
    status: Optional[PaymentStatus] = Query(None),
    needs_review: Optional[bool] = Query(None),
    current_user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    payments = service.list_payments(current_user, status=status.value if status else None,
                                     needs_review=needs_review)
    return create_success_response(payments)


@router.get("/payments/failed/")
def list_failed_payments(
    current_user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return create_success_response(service.list_failed_payments(current_user))


@router.get("/payments/inquire/{authority}/", response_model=ApiResponse[InquiryResponse])
def inquire_payment(
    authority: str,
    check_reversal: bool = Query(False),
    current_user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    """查询网关状态并修复本地记录（本人或管理员）"""
    payment = service.get_payment_by_authority(authority)
    if UserRole(current_user.role) != UserRole.ADMIN and payment.user_id != current_user.id:
        raise NotFoundError("支付记录不存在")
    return create_success_response(service.inquire_payment(authority, check_reversal=check_reversal))


@router.get("/payments/{payment_id}/")
def get_payment(
    payment_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return create_success_response(service.get_payment(payment_id, current_user))


@router.post("/payments/{payment_id}/refund/")
def refund_payment(
    payment_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return create_success_response(service.refund_payment(payment_id, current_user), "退款成功")


@router.post("/reconcile/")
def reconcile_payments(
    current_user: CurrentUser = Depends(require_roles(UserRole.ADMIN)),
    service: PaymentService = Depends(get_payment_service),
):
    return create_success_response(service.reconcile_pending())
