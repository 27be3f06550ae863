"""
安全相关功能
JWT 令牌由外部认证服务签发，这里负责解码、加载当前用户和角色校验
"""

import jwt
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from ..config.settings import settings
from ..models.user import UserRole
from .exceptions import AuthenticationError, ForbiddenError
from .database import DatabaseManager, get_db


class CurrentUser(BaseModel):
    """当前请求的用户身份"""
    id: int
    role: UserRole

    model_config = {"use_enum_values": False}


class SecurityManager:
    """安全管理器"""

    def create_jwt_token(self, user_id: int, role: str,
                         additional_claims: Optional[Dict[str, Any]] = None) -> str:
        """创建JWT token（供测试和外部认证服务对接使用）"""
        now = datetime.now(timezone.utc)
        payload = {
            "user_id": user_id,
            "role": role,
            "exp": now + timedelta(hours=settings.jwt_expire_hours),
            "iat": now,
        }
        if additional_claims:
            payload.update(additional_claims)
        return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)

    def decode_jwt_token(self, token: str) -> Dict[str, Any]:
        """解码JWT token"""
        try:
            return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token has expired")
        except jwt.InvalidTokenError as e:
            raise AuthenticationError(f"Invalid token: {e}")

    def get_user_id_from_token(self, token: str) -> int:
        """从token中提取user_id"""
        payload = self.decode_jwt_token(token)
        user_id = payload.get("user_id")
        if user_id is None:
            raise AuthenticationError("Token missing user_id")
        return int(user_id)


# 全局安全管理器实例
security_manager = SecurityManager()


def require_role(actor: CurrentUser, roles: Iterable[UserRole], message: str = None):
    """校验操作者角色，不匹配时抛出 ForbiddenError"""
    allowed = {UserRole(r) for r in roles}
    if UserRole(actor.role) not in allowed:
        raise ForbiddenError(
            message or "无权执行该操作",
            details={"role": UserRole(actor.role).value, "allowed": sorted(r.value for r in allowed)},
        )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(HTTPBearer()),
    db: DatabaseManager = Depends(get_db),
) -> CurrentUser:
    """从Authorization header中解析当前用户，角色以数据库为准"""
    try:
        user_id = security_manager.get_user_id_from_token(credentials.credentials)
    except AuthenticationError as e:
        raise HTTPException(status_code=401, detail=e.message)

    row = db.execute_one("SELECT id, role FROM users WHERE id = ?", [user_id])
    if not row:
        raise HTTPException(status_code=401, detail="用户不存在")
    return CurrentUser(id=row["id"], role=row["role"])


def require_roles(*roles: UserRole):
    """FastAPI 依赖工厂：限定角色"""
    async def dependency(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        require_role(current_user, roles)
        return current_user
    return dependency
