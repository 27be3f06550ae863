"""
API routes and endpoints.
"""

from fastapi import APIRouter
from ..schemas.common import ErrorResponse
from .v1 import auth, catalog, orders, payments, reports

# 业务异常统一返回 ErrorResponse 格式
api_router = APIRouter(responses={
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
})

# 包含所有v1路由
api_router.include_router(auth.router, prefix="/auth", tags=["信用分与用户"])
api_router.include_router(orders.router, prefix="/orders", tags=["预订"])
api_router.include_router(payments.router, prefix="/payments", tags=["支付"])
api_router.include_router(catalog.router, prefix="", tags=["菜品与菜单"])
api_router.include_router(reports.router, prefix="/reports", tags=["报表"])
