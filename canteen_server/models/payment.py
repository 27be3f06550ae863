"""
支付相关数据模型
"""

from pydantic import BaseModel, Field
from typing import Optional
from enum import Enum
from .base import BaseEntity, TimestampMixin


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"     # 待支付
    PAID = "paid"           # 已支付
    FAILED = "failed"       # 失败
    REFUNDED = "refunded"   # 已退款


class Payment(BaseEntity, TimestampMixin):
    """支付完整模型"""
    id: int = Field(..., description="支付ID")
    reservation_id: int = Field(..., description="预订ID")
    user_id: int = Field(..., description="用户ID")
    amount: int = Field(..., description="金额")
    authority: Optional[str] = Field(None, description="网关关联令牌")
    ref_id: Optional[str] = Field(None, description="网关流水号")
    status: PaymentStatus = Field(..., description="支付状态")
    error_message: Optional[str] = Field(None, description="错误信息")
    needs_review: bool = Field(False, description="是否需要人工复核")


class GatewayConfirmation(BaseModel):
    """网关确认结果"""
    ref_id: str
    already_verified: bool = False
    card_pan: Optional[str] = None


class GatewayInquiry(BaseModel):
    """网关查询结果

    status 取值：PAID（已扣款未确认）、VERIFIED（已确认结算）、
    IN_BANK（用户仍在银行页面）、FAILED、REVERSED
    """
    status: str
    ref_id: Optional[str] = None
    amount: Optional[int] = None

    @property
    def captured(self) -> bool:
        return self.status in ("PAID", "VERIFIED")

    @property
    def settled(self) -> bool:
        return self.status == "VERIFIED"

    @property
    def reversed(self) -> bool:
        return self.status == "REVERSED"

    @property
    def failed(self) -> bool:
        return self.status in ("FAILED", "REVERSED")
