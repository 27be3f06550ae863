"""
支付相关的请求/响应模式
"""

from pydantic import BaseModel, Field
from typing import Optional
from ..models.payment import Payment


class PaymentRequestBody(BaseModel):
    """发起支付请求"""
    reservation_id: int = Field(..., description="预订ID")
    amount: int = Field(..., ge=0, description="金额，必须与预订价格一致")
    callback_url: str = Field(..., min_length=1, description="网关回调地址")


class PaymentRequestResponse(BaseModel):
    payment_id: int
    authority: str
    redirect_url: str


class VerifyResponse(BaseModel):
    """回调确认结果"""
    payment_id: int
    amount: int
    ref_id: Optional[str] = None
    reservation_id: int
    already_processed: bool = False


class InquiryResponse(BaseModel):
    """网关查询结果"""
    status: str
    message: str
    payment: Payment
    reversed: bool = False
