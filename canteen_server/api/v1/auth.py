"""
信用分与用户路由
登录/注册由外部认证服务负责，这里只提供当前用户、信用分和管理员登记用户
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...core.error_handler import create_success_response
from ...core.security import CurrentUser, get_current_user, require_role
from ...models.user import UserCreate, UserRole
from ...schemas.trust import TrustRecoverRequest
from ...services import TrustService, UserService
from ..deps import get_trust_service, get_user_service

router = APIRouter()


@router.get("/me/")
def get_me(
    current_user: CurrentUser = Depends(get_current_user),
    service: UserService = Depends(get_user_service),
):
    return create_success_response(service.get_user(current_user.id))


@router.get("/trust-score/")
def get_trust_score(
    student_id: Optional[int] = Query(None),
    current_user: CurrentUser = Depends(get_current_user),
    service: TrustService = Depends(get_trust_service),
):
    """查看信用分；管理员可以查看任意学生"""
    target = current_user.id
    if student_id is not None and student_id != current_user.id:
        require_role(current_user, [UserRole.ADMIN])
        target = student_id
    return create_success_response(service.get_trust_score(target))


@router.post("/trust-score/recover/")
def recover_trust_score(
    req: TrustRecoverRequest,
    current_user: CurrentUser = Depends(get_current_user),
    service: TrustService = Depends(get_trust_service),
):
    result = service.recover(req.student_id, req.points, req.reason, current_user)
    return create_success_response(result, "信用分已恢复")


@router.post("/users/")
def register_user(
    req: UserCreate,
    current_user: CurrentUser = Depends(get_current_user),
    service: UserService = Depends(get_user_service),
):
    return create_success_response(service.register_user(req, current_user), "用户已登记")


@router.get("/users/")
def list_users(
    role: Optional[UserRole] = Query(None),
    current_user: CurrentUser = Depends(get_current_user),
    service: UserService = Depends(get_user_service),
):
    return create_success_response(service.list_users(current_user, role=role.value if role else None))
