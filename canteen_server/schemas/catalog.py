"""
菜品目录相关的请求模式
"""

from pydantic import BaseModel, Field
from datetime import date


class CategoryCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="分类名称")


class AvailabilityRequest(BaseModel):
    is_available: bool = Field(..., description="是否可预订")


class UseTemplateRequest(BaseModel):
    """按星期模板生成每日菜单"""
    target_date: date = Field(..., alias="date", description="目标日期")

    model_config = {"populate_by_name": True}


class VoucherPriceRequest(BaseModel):
    price: int = Field(..., ge=0, description="餐券抵扣金额")
