"""
用户相关数据模型
"""

from pydantic import BaseModel, Field
from typing import Optional
from enum import Enum
from .base import BaseEntity, TimestampMixin


class UserRole(str, Enum):
    """用户角色枚举"""
    STUDENT = "student"      # 学生
    CHEF = "chef"            # 厨师
    RECEIVER = "receiver"    # 取餐窗口
    ADMIN = "admin"          # 管理员


class UserCreate(BaseModel):
    """用户创建模型（由外部认证服务同步）"""
    username: str = Field(..., min_length=1, max_length=100, description="用户名/学号")
    full_name: Optional[str] = Field(None, max_length=100, description="姓名")
    role: UserRole = Field(UserRole.STUDENT, description="角色")


class User(BaseEntity, TimestampMixin):
    """用户完整模型"""
    id: int = Field(..., description="用户ID")
    username: str = Field(..., description="用户名/学号")
    full_name: Optional[str] = Field(None, description="姓名")
    role: UserRole = Field(..., description="角色")
    trust_score: int = Field(0, description="信用分")
