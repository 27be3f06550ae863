"""
统一错误处理模块
提供标准化的错误响应格式和错误处理中间件

主要功能：
- 统一的错误响应格式
- 自动异常捕获和日志记录
- HTTP状态码映射
"""

import traceback
from typing import Dict, Any, Optional
from fastapi import Request, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from .audit import log_action
from .exceptions import BaseApplicationError, DatabaseError
from .database import db_manager
from .logger import get_logger

logger = get_logger(__name__)


class ErrorResponse:
    """标准错误响应格式"""

    def __init__(self, error_code: str, message: str,
                 details: Optional[Dict[str, Any]] = None,
                 http_status: int = 400):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        self.http_status = http_status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }

    def to_json_response(self) -> JSONResponse:
        return JSONResponse(
            status_code=self.http_status,
            content=jsonable_encoder(self.to_dict())
        )


class ErrorHandler:
    """全局错误处理器"""

    # 错误代码到HTTP状态码的映射
    ERROR_CODE_STATUS_MAP = {
        "VALIDATION_ERROR": 400,
        "AUTHENTICATION_REQUIRED": 401,
        "FORBIDDEN": 403,
        "NOT_FOUND": 404,
        "BUSINESS_RULE_VIOLATION": 422,
        "DATABASE_ERROR": 500,
        "CONCURRENCY_CONFLICT": 409,
        "INTERNAL_ERROR": 500,

        # 容量/预订
        "CAPACITY_EXCEEDED": 409,
        "DUPLICATE_RESERVATION": 409,
        "MENU_ITEM_UNAVAILABLE": 409,
        "TRUST_SCORE_BLOCKED": 403,
        "INVALID_TRANSITION": 409,

        # 取餐
        "ALREADY_REDEEMED": 409,
        "INVALID_DELIVERY_CODE": 400,

        # 支付
        "GATEWAY_UNAVAILABLE": 503,
        "GATEWAY_REJECTED": 402,
        "ALREADY_PROCESSED": 409,
        "AMOUNT_MISMATCH": 422,
    }

    @classmethod
    def handle_application_error(cls, error: BaseApplicationError) -> ErrorResponse:
        """处理应用业务异常"""
        http_status = cls.ERROR_CODE_STATUS_MAP.get(error.error_code, 400)
        if http_status >= 500:
            logger.error(f"{error.error_code}: {error.message} {error.details}")

        return ErrorResponse(
            error_code=error.error_code,
            message=error.message,
            details=error.details,
            http_status=http_status
        )

    @classmethod
    def handle_http_exception(cls, error: HTTPException) -> ErrorResponse:
        """处理FastAPI HTTP异常"""
        return ErrorResponse(
            error_code="AUTHENTICATION_REQUIRED" if error.status_code == 401 else "HTTP_ERROR",
            message=str(error.detail),
            details={"status_code": error.status_code},
            http_status=error.status_code
        )

    @classmethod
    def handle_validation_error(cls, error: Exception) -> ErrorResponse:
        """处理Pydantic验证错误"""
        errors = jsonable_encoder(error.errors()) if hasattr(error, "errors") else str(error)
        return ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="请求参数验证失败",
            details={"validation_errors": errors},
            http_status=400
        )

    @classmethod
    def handle_unknown_error(cls, error: Exception) -> ErrorResponse:
        """处理未知异常"""
        error_details = {
            "type": type(error).__name__,
            "message": str(error),
            "traceback": traceback.format_exc()
        }
        logger.error(f"unhandled error: {error_details['type']}: {error_details['message']}")
        cls._log_system_error(error_details)

        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="系统内部错误",
            details={"error_type": type(error).__name__},
            http_status=500
        )

    @classmethod
    def _log_system_error(cls, error_details: Dict[str, Any]):
        """记录系统错误到数据库"""
        try:
            with db_manager.transaction() as conn:
                log_action(conn, "system_error", detail=error_details)
        except DatabaseError as e:
            # 数据库本身不可用时只能写进程日志
            logger.error(f"failed to write system_error log: {e.message}")


async def application_error_handler(request: Request, exc: BaseApplicationError) -> JSONResponse:
    return ErrorHandler.handle_application_error(exc).to_json_response()


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return ErrorHandler.handle_http_exception(exc).to_json_response()


async def validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    return ErrorHandler.handle_validation_error(exc).to_json_response()


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    return ErrorHandler.handle_unknown_error(exc).to_json_response()


def create_success_response(data: Any = None, message: str = "操作成功") -> Dict[str, Any]:
    """创建标准成功响应"""
    response = {
        "success": True,
        "message": message
    }

    if data is not None:
        response["data"] = data

    return response
