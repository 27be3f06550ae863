"""
用户服务
账号由外部认证服务创建，这里只负责同步登记和资料查询
"""

from typing import List, Optional

from ..config.settings import settings
from ..core.audit import log_action
from ..core.database import DatabaseManager, db_manager
from ..core.exceptions import NotFoundError, ValidationError
from ..core.security import CurrentUser, require_role
from ..models.user import User, UserCreate, UserRole


class UserService:
    """用户服务"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or db_manager

    def register_user(self, user: UserCreate, actor: Optional[CurrentUser] = None) -> User:
        """登记用户，初始信用分取自配置"""
        if actor is not None:
            require_role(actor, [UserRole.ADMIN])
        with self.db.transaction() as conn:
            if conn.execute("SELECT 1 FROM users WHERE username = ?", [user.username]).fetchone():
                raise ValidationError("用户名已存在")
            user_id = conn.execute(
                "INSERT INTO users(username, full_name, role, trust_score) VALUES (?,?,?,?) RETURNING id",
                [user.username, user.full_name, UserRole(user.role).value, settings.initial_trust_score],
            ).fetchone()[0]
            log_action(conn, "user_register", user_id=user_id,
                       actor_id=actor.id if actor else None,
                       detail={"username": user.username, "role": UserRole(user.role).value})
        return self.get_user(user_id)

    def get_user(self, user_id: int) -> User:
        row = self.db.execute_one("SELECT * FROM users WHERE id = ?", [user_id])
        if not row:
            raise NotFoundError("用户不存在")
        return User(**row)

    def list_users(self, actor: CurrentUser, role: Optional[str] = None) -> List[User]:
        require_role(actor, [UserRole.ADMIN])
        if role:
            rows = self.db.execute_query("SELECT * FROM users WHERE role = ? ORDER BY id", [UserRole(role).value])
        else:
            rows = self.db.execute_query("SELECT * FROM users ORDER BY id")
        return [User(**r) for r in rows]
