"""
取餐确认服务
- 预订进入 waiting 时生成取餐码和签名二维码内容（终身不变）
- 取餐窗口手动输入取餐码或扫描二维码，共用同一核销路径
- 核销为条件写：只有 ready_to_pickup 才能变为 picked_up，重复核销必然失败
"""

import base64
import hashlib
import hmac
import secrets
from datetime import datetime
from io import BytesIO
from typing import Any, Dict, Optional, Tuple

import qrcode

from ..config.settings import settings
from ..core.audit import log_action
from ..core.database import DatabaseManager, db_manager
from ..core.exceptions import (
    AlreadyRedeemedError, InvalidDeliveryCodeError, InvalidTransitionError, NotFoundError,
)
from ..core.logger import get_logger
from ..core.security import CurrentUser, require_role
from ..models.reservation import Reservation, ReservationStatus
from ..models.user import UserRole
from .reservation_queries import fetch_reservation

logger = get_logger(__name__)

# 去掉易混淆字符 0/O、1/I/L
CODE_ALPHABET = "23456789ABCDEFGHJKMNPQRSTUVWXYZ"
CODE_LENGTH = 8
PAYLOAD_SEPARATOR = "|"


def generate_delivery_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def sign_payload(reservation_id: int, delivery_code: str) -> str:
    data = f"{reservation_id}{PAYLOAD_SEPARATOR}{delivery_code}"
    return hmac.new(settings.qr_secret.encode(), data.encode(), hashlib.sha256).hexdigest()


def build_qr_payload(reservation_id: int, delivery_code: str) -> str:
    """二维码内容：预订ID|取餐码|签名"""
    signature = sign_payload(reservation_id, delivery_code)
    return PAYLOAD_SEPARATOR.join([str(reservation_id), delivery_code, signature])


def parse_qr_payload(payload: str) -> Tuple[int, str]:
    """校验二维码签名，返回 (预订ID, 取餐码)"""
    parts = payload.strip().split(PAYLOAD_SEPARATOR)
    if len(parts) != 3 or not parts[0].isdigit():
        raise InvalidDeliveryCodeError("二维码格式无效")
    reservation_id, delivery_code, signature = int(parts[0]), parts[1], parts[2]
    expected = sign_payload(reservation_id, delivery_code)
    if not hmac.compare_digest(signature, expected):
        raise InvalidDeliveryCodeError("二维码签名无效")
    return reservation_id, delivery_code


def render_qr_png(payload: str) -> str:
    """生成二维码 PNG，返回 base64 字符串"""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=4,
    )
    qr.add_data(payload)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode()


class DeliveryService:
    """取餐确认服务"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or db_manager

    def issue_token(self, conn, reservation_id: int) -> Tuple[str, str]:
        """为预订生成取餐码和二维码内容；已存在则直接返回"""
        existing = conn.execute(
            "SELECT delivery_code, qr_payload FROM delivery_tokens WHERE reservation_id = ?",
            [reservation_id],
        ).fetchone()
        if existing:
            return existing[0], existing[1]

        for _ in range(10):
            code = generate_delivery_code()
            taken = conn.execute("SELECT 1 FROM delivery_tokens WHERE delivery_code = ?", [code]).fetchone()
            if not taken:
                break
        else:
            raise InvalidDeliveryCodeError("无法生成唯一取餐码", error_code="DELIVERY_CODE_EXHAUSTED")

        payload = build_qr_payload(reservation_id, code)
        conn.execute(
            "INSERT INTO delivery_tokens(reservation_id, delivery_code, qr_payload) VALUES (?,?,?)",
            [reservation_id, code, payload],
        )
        return code, payload

    def redeem(self, code_or_payload: str, actor: CurrentUser) -> Reservation:
        """
        核销取餐码或二维码

        Raises:
            ForbiddenError: 非取餐窗口/管理员
            InvalidDeliveryCodeError: 二维码签名无效
            NotFoundError: 取餐码不存在
            AlreadyRedeemedError: 已经取过餐
            InvalidTransitionError: 预订尚未备餐完成或已标记未取
        """
        require_role(actor, [UserRole.RECEIVER, UserRole.ADMIN])
        value = (code_or_payload or "").strip()
        if not value:
            raise InvalidDeliveryCodeError("取餐码不能为空")

        with self.db.transaction() as conn:
            reservation_id = self._resolve_reservation_id(conn, value)

            updated = conn.execute(
                """
                UPDATE reservations SET status = ?, updated_at = ?
                WHERE id = ? AND status = ?
                RETURNING id
                """,
                [ReservationStatus.PICKED_UP.value, datetime.now(), reservation_id,
                 ReservationStatus.READY_TO_PICKUP.value],
            ).fetchone()

            if updated is None:
                current = conn.execute("SELECT status FROM reservations WHERE id = ?", [reservation_id]).fetchone()
                if current is None:
                    raise NotFoundError("预订不存在")
                if current[0] == ReservationStatus.PICKED_UP.value:
                    raise AlreadyRedeemedError(details={"reservation_id": reservation_id})
                raise InvalidTransitionError(
                    "预订尚未可取餐",
                    details={"reservation_id": reservation_id, "status": current[0]},
                )

            reservation = fetch_reservation(conn, reservation_id)
            log_action(conn, "delivery_redeem", user_id=reservation.student_id, actor_id=actor.id, detail={
                "reservation_id": reservation_id,
                "via": "qr" if PAYLOAD_SEPARATOR in value else "code",
            })

        logger.info(f"reservation {reservation_id} picked up (actor {actor.id})")
        return reservation

    def _resolve_reservation_id(self, conn, value: str) -> int:
        if PAYLOAD_SEPARATOR in value:
            reservation_id, code = parse_qr_payload(value)
            row = conn.execute(
                "SELECT delivery_code FROM delivery_tokens WHERE reservation_id = ?", [reservation_id]
            ).fetchone()
            if row is None or not hmac.compare_digest(row[0], code):
                raise NotFoundError("取餐码不存在")
            return reservation_id

        row = conn.execute(
            "SELECT reservation_id FROM delivery_tokens WHERE delivery_code = ?", [value.upper()]
        ).fetchone()
        if row is None:
            raise NotFoundError("取餐码不存在")
        return row[0]

    def get_qr(self, reservation_id: int, actor: CurrentUser) -> Dict[str, Any]:
        """学生本人或工作人员查看取餐二维码"""
        with self.db.transaction() as conn:
            reservation = fetch_reservation(conn, reservation_id)
        if reservation is None:
            raise NotFoundError("预订不存在")
        if UserRole(actor.role) == UserRole.STUDENT and reservation.student_id != actor.id:
            raise NotFoundError("预订不存在")
        if not reservation.delivery_code:
            raise InvalidTransitionError("预订尚未支付，没有取餐码")
        return {
            "reservation_id": reservation.id,
            "delivery_code": reservation.delivery_code,
            "qr_payload": reservation.qr_payload,
            "qr_image_base64": render_qr_png(reservation.qr_payload),
        }
