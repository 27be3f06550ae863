"""
预订相关的请求/响应模式
"""

from pydantic import BaseModel, Field
from datetime import date
from typing import Optional
from ..models.catalog import MealType
from ..models.reservation import ReservationStatus


class PlaceOrderRequest(BaseModel):
    """创建预订请求"""
    menu_item_id: int = Field(..., description="菜单项ID")
    time_slot_id: int = Field(..., description="取餐时段ID")
    meal_type: MealType = Field(..., description="餐次")
    reserved_date: date = Field(..., description="预订日期")
    has_voucher: bool = Field(False, description="是否使用餐券")


class StatusUpdateRequest(BaseModel):
    """工作人员更新预订状态"""
    status: ReservationStatus = Field(..., description="目标状态")


class DeliveryCodeRequest(BaseModel):
    """取餐码核销请求：手动输入取餐码或扫描二维码内容"""
    code: str = Field(..., min_length=1, max_length=512, description="取餐码或二维码内容")


class CancelResponse(BaseModel):
    reservation_id: int
    cancelled: bool


class QrCodeResponse(BaseModel):
    """取餐二维码"""
    reservation_id: int
    delivery_code: str
    qr_payload: str
    qr_image_base64: Optional[str] = Field(None, description="PNG 图片 base64")
