"""
信用分服务
- 未取餐自动扣分（以预订ID为幂等键，同一预订只扣一次）
- 管理员手动恢复（必须为正数并记录原因）
- 创建预订时的信用分门槛：信用分为负禁止预订
"""

from typing import Any, Dict, Optional

from ..core.audit import log_action
from ..core.database import DatabaseManager, db_manager
from ..core.exceptions import NotFoundError, TrustScoreBlockedError, ValidationError
from ..core.logger import get_logger
from ..core.security import CurrentUser, require_role
from ..models.user import UserRole

logger = get_logger(__name__)


class TrustService:
    """信用分服务"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or db_manager

    def ensure_not_blocked(self, conn, student_id: int) -> int:
        """信用分门槛检查，返回当前信用分"""
        row = conn.execute("SELECT trust_score FROM users WHERE id = ?", [student_id]).fetchone()
        if not row:
            raise NotFoundError("用户不存在")
        if row[0] < 0:
            raise TrustScoreBlockedError(details={"trust_score": row[0]})
        return row[0]

    def penalize(self, conn, student_id: int, reservation_id: int, amount: int,
                 actor_id: Optional[int] = None) -> bool:
        """
        未取餐扣分

        Returns:
            bool: 本次是否实际扣分（重复调用返回 False）
        """
        inserted = conn.execute(
            """
            INSERT INTO trust_score_events(user_id, reservation_id, kind, points, reason, actor_id)
            VALUES (?, ?, 'penalty', ?, 'not picked up', ?)
            ON CONFLICT DO NOTHING
            RETURNING id
            """,
            [student_id, reservation_id, amount, actor_id],
        ).fetchone()
        if inserted is None:
            logger.info(f"penalty for reservation {reservation_id} already applied")
            return False

        row = conn.execute(
            "UPDATE users SET trust_score = trust_score - ? WHERE id = ? RETURNING trust_score",
            [amount, student_id],
        ).fetchone()
        if row is None:
            raise NotFoundError("用户不存在")
        log_action(conn, "trust_score_penalty", user_id=student_id, actor_id=actor_id, detail={
            "reservation_id": reservation_id, "points": amount, "trust_score_after": row[0],
        })
        return True

    def recover(self, student_id: int, points: int, reason: str, actor: CurrentUser) -> Dict[str, Any]:
        """管理员恢复信用分"""
        require_role(actor, [UserRole.ADMIN], "只有管理员可以恢复信用分")
        if points <= 0:
            raise ValidationError("恢复分数必须为正数")
        if not reason or not reason.strip():
            raise ValidationError("必须填写恢复原因")

        with self.db.transaction() as conn:
            row = conn.execute(
                "UPDATE users SET trust_score = trust_score + ? WHERE id = ? RETURNING trust_score",
                [points, student_id],
            ).fetchone()
            if row is None:
                raise NotFoundError("用户不存在")
            conn.execute(
                """
                INSERT INTO trust_score_events(user_id, reservation_id, kind, points, reason, actor_id)
                VALUES (?, NULL, 'recovery', ?, ?, ?)
                """,
                [student_id, points, reason.strip(), actor.id],
            )
            log_action(conn, "trust_score_recover", user_id=student_id, actor_id=actor.id, detail={
                "points": points, "reason": reason.strip(), "trust_score_after": row[0],
            })

        logger.info(f"trust score of user {student_id} recovered by {points} ({reason.strip()})")
        return {"student_id": student_id, "trust_score": row[0], "blocked": row[0] < 0}

    def get_trust_score(self, student_id: int) -> Dict[str, Any]:
        user = self.db.execute_one("SELECT id, trust_score FROM users WHERE id = ?", [student_id])
        if not user:
            raise NotFoundError("用户不存在")
        events = self.db.execute_query(
            """
            SELECT id, reservation_id, kind, points, reason, actor_id, created_at
            FROM trust_score_events WHERE user_id = ? ORDER BY id DESC
            """,
            [student_id],
        )
        return {
            "student_id": student_id,
            "trust_score": user["trust_score"],
            "blocked": user["trust_score"] < 0,
            "events": events,
        }
