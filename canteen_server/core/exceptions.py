"""
自定义异常类
提供更精确的错误处理和异常信息

每个异常都带有机器可读的 error_code 和人类可读的 message，
由 core/error_handler.py 统一映射为 HTTP 响应。
"""

from typing import Any, Dict, Optional


class BaseApplicationError(Exception):
    """应用基础异常类"""

    default_code = "APPLICATION_ERROR"
    default_message = "操作失败"

    def __init__(
        self,
        message: Optional[str] = None,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message or self.default_message
        self.error_code = error_code or self.default_code
        self.details = details or {}
        super().__init__(self.message)


class DatabaseError(BaseApplicationError):
    """数据库相关异常"""
    default_code = "DATABASE_ERROR"
    default_message = "数据库操作失败"


class AuthenticationError(BaseApplicationError):
    """认证相关异常"""
    default_code = "AUTHENTICATION_REQUIRED"
    default_message = "需要登录"


class ForbiddenError(BaseApplicationError):
    """角色不匹配，无权执行该操作"""
    default_code = "FORBIDDEN"
    default_message = "无权执行该操作"


class ValidationError(BaseApplicationError):
    """数据验证异常"""
    default_code = "VALIDATION_ERROR"
    default_message = "请求参数无效"


class NotFoundError(BaseApplicationError):
    """资源不存在"""
    default_code = "NOT_FOUND"
    default_message = "资源不存在"


class ConcurrencyError(BaseApplicationError):
    """并发控制错误"""
    default_code = "CONCURRENCY_CONFLICT"
    default_message = "系统繁忙，请稍后重试"


class BusinessLogicError(BaseApplicationError):
    """业务逻辑异常"""
    default_code = "BUSINESS_RULE_VIOLATION"


# 容量类

class CapacityExceededError(BusinessLogicError):
    """时段或当日容量已满"""
    default_code = "CAPACITY_EXCEEDED"
    default_message = "所选时段容量已满"


class MenuItemUnavailableError(BusinessLogicError):
    """菜单项当前不可预订"""
    default_code = "MENU_ITEM_UNAVAILABLE"
    default_message = "该菜品当前不可预订"


# 身份/授权类

class TrustScoreBlockedError(BusinessLogicError):
    """信用分为负，禁止新预订"""
    default_code = "TRUST_SCORE_BLOCKED"
    default_message = "信用分不足，暂时无法预订"


class DuplicateReservationError(BusinessLogicError):
    """同一学生同一天同一餐次已有预订"""
    default_code = "DUPLICATE_RESERVATION"
    default_message = "您在该日期该餐次已有预订"


# 状态类

class InvalidTransitionError(BusinessLogicError):
    """当前状态不允许请求的状态变更"""
    default_code = "INVALID_TRANSITION"
    default_message = "当前状态不允许该操作"


class AlreadyRedeemedError(BusinessLogicError):
    """取餐码已被使用"""
    default_code = "ALREADY_REDEEMED"
    default_message = "该预订已取餐"


class InvalidDeliveryCodeError(BusinessLogicError):
    """取餐码或二维码签名无效"""
    default_code = "INVALID_DELIVERY_CODE"
    default_message = "取餐码无效"


# 支付类

class PaymentError(BusinessLogicError):
    """支付相关异常基类"""
    default_code = "PAYMENT_ERROR"


class GatewayUnavailableError(PaymentError):
    """网关暂不可用（可重试）"""
    default_code = "GATEWAY_UNAVAILABLE"
    default_message = "支付网关暂时不可用，请稍后重试"


class GatewayRejectedError(PaymentError):
    """网关拒绝（终态，支付失败）"""
    default_code = "GATEWAY_REJECTED"
    default_message = "支付未成功"


class AlreadyProcessedError(PaymentError):
    """重复处理（幂等，无副作用）"""
    default_code = "ALREADY_PROCESSED"
    default_message = "该支付已处理"


class AmountMismatchError(PaymentError):
    """金额不一致，必须人工复核，绝不自动结算"""
    default_code = "AMOUNT_MISMATCH"
    default_message = "支付金额与订单金额不一致，已提交人工复核"
