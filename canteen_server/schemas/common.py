from typing import Generic, TypeVar, Optional, Any, Dict
from pydantic import BaseModel, Field

T = TypeVar('T')


class ApiResponse(BaseModel, Generic[T]):
    """通用API响应格式"""
    success: bool = Field(description="请求是否成功")
    data: Optional[T] = Field(None, description="响应数据")
    message: Optional[str] = Field(None, description="响应消息")


class ErrorResponse(BaseModel):
    """错误响应格式"""
    success: bool = Field(False, description="请求失败")
    message: str = Field(description="错误消息")
    error_code: str = Field(description="错误码")
    details: Dict[str, Any] = Field(default_factory=dict, description="错误详情")

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": False,
                "message": "所选时段容量已满",
                "error_code": "CAPACITY_EXCEEDED",
                "details": {"scope": "time_slot", "time_slot_id": 3, "capacity": 1}
            }
        }
    }
