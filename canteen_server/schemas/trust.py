"""
信用分与用户登记相关的请求模式
"""

from pydantic import BaseModel, Field


class TrustRecoverRequest(BaseModel):
    """管理员恢复信用分"""
    student_id: int = Field(..., description="学生ID")
    points: int = Field(..., gt=0, description="恢复分数")
    reason: str = Field(..., min_length=1, max_length=500, description="恢复原因")
