"""
支付对账服务
驱动网关协议（发起 → 回调确认 → 查询 / 冲正），保持 Payment 与 Reservation 一致

处理原则：
- 网关调用一律在数据库事务之外进行，返回后用条件写重新校验状态，
  回调与查询并发时只会有一次状态变更
- 网关暂不可用时支付保持 pending，由后台对账处理
- 网关拒绝为终态：支付失败、预订删除、容量释放
- 金额不符或预订已失效时只标记人工复核，绝不自动结算
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..config.settings import settings
from ..core.audit import log_action
from ..core.database import DatabaseManager, db_manager, row_to_dict, rows_to_dicts
from ..core.exceptions import (
    AlreadyProcessedError, AmountMismatchError, ConcurrencyError, GatewayRejectedError,
    GatewayUnavailableError, InvalidTransitionError, NotFoundError,
)
from ..core.logger import get_logger
from ..core.security import CurrentUser, require_role
from ..models.payment import GatewayInquiry, Payment, PaymentStatus
from ..models.reservation import ReservationStatus
from ..models.user import UserRole
from .payment_gateway import PaymentGateway, get_gateway
from .reservation_queries import fetch_reservation
from .reservation_service import ReservationService

logger = get_logger(__name__)


class PaymentService:
    """支付对账服务"""

    def __init__(self, db: Optional[DatabaseManager] = None, gateway: Optional[PaymentGateway] = None):
        self.db = db or db_manager
        self.gateway = gateway or get_gateway()
        self.reservations = ReservationService(self.db)

    # 发起支付

    def request_payment(self, reservation_id: int, user_id: int, amount: int,
                        callback_url: str) -> Dict[str, Any]:
        """
        为待支付预订发起支付

        Returns:
            dict: payment_id、authority 和跳转地址

        Raises:
            NotFoundError: 预订不存在或不属于该用户
            InvalidTransitionError: 预订不在 pending_payment
            AmountMismatchError: 金额与预订价格不一致
            AlreadyProcessedError: 预订已有成功支付
            GatewayUnavailableError / GatewayRejectedError: 网关错误
        """
        with self.db.transaction() as conn:
            reservation = fetch_reservation(conn, reservation_id)
            if reservation is None or reservation.student_id != user_id:
                raise NotFoundError("预订不存在")
            if ReservationStatus(reservation.status) != ReservationStatus.PENDING_PAYMENT:
                raise InvalidTransitionError("该预订不需要支付", details={"status": reservation.status})
            if amount != reservation.price:
                raise AmountMismatchError(details={"amount": amount, "price": reservation.price})

            existing = rows_to_dicts(conn.execute(
                "SELECT id, status FROM payments WHERE reservation_id = ? AND status IN (?, ?)",
                [reservation_id, PaymentStatus.PENDING.value, PaymentStatus.PAID.value],
            ))
            if any(p["status"] == PaymentStatus.PAID.value for p in existing):
                raise AlreadyProcessedError()
            now = datetime.now()
            for p in existing:
                conn.execute(
                    "UPDATE payments SET status = ?, error_message = ?, updated_at = ? WHERE id = ? AND status = ?",
                    [PaymentStatus.FAILED.value, "superseded", now, p["id"], PaymentStatus.PENDING.value],
                )

            payment_id = conn.execute(
                """
                INSERT INTO payments(reservation_id, user_id, amount, status, created_at, updated_at)
                VALUES (?,?,?,?,?,?) RETURNING id
                """,
                [reservation_id, user_id, amount, PaymentStatus.PENDING.value, now, now],
            ).fetchone()[0]
            log_action(conn, "payment_request", user_id=user_id, actor_id=user_id, detail={
                "payment_id": payment_id, "reservation_id": reservation_id, "amount": amount,
                "superseded": [p["id"] for p in existing],
            })

        try:
            authority = self.gateway.authorize(amount, callback_url, settings.gateway_description)
        except GatewayUnavailableError:
            logger.warning(f"payment {payment_id} left pending, gateway unavailable")
            raise
        except GatewayRejectedError as e:
            with self.db.transaction() as conn:
                self._fail(conn, payment_id, f"authorize rejected: {e.message}", cancel_reservation=False)
            raise

        with self.db.transaction() as conn:
            updated = conn.execute(
                "UPDATE payments SET authority = ?, updated_at = ? WHERE id = ? AND status = ? RETURNING id",
                [authority, datetime.now(), payment_id, PaymentStatus.PENDING.value],
            ).fetchone()
            if updated is None:
                raise ConcurrencyError("支付记录已被关闭，请重新发起支付")

        logger.info(f"payment {payment_id} authorized, authority {authority}")
        return {
            "payment_id": payment_id,
            "authority": authority,
            "redirect_url": self.gateway.start_url(authority),
        }

    # 回调确认

    def verify_payment(self, authority: str, status_param: str) -> Dict[str, Any]:
        """
        处理网关回调

        Raises:
            NotFoundError: authority 未知
            GatewayRejectedError: 用户取消或网关拒绝确认（支付失败，预订删除）
            GatewayUnavailableError: 网关暂不可用（支付保持 pending）
            AmountMismatchError: 金额不符或预订已失效，已标记人工复核
        """
        payment = self.get_payment_by_authority(authority)
        status = PaymentStatus(payment.status)

        if status == PaymentStatus.PAID:
            return self._verify_result(payment, already_processed=True)
        if status == PaymentStatus.REFUNDED:
            raise AlreadyProcessedError("该支付已退款")
        if status == PaymentStatus.FAILED:
            raise GatewayRejectedError("该支付已失败", details={"payment_id": payment.id})

        if (status_param or "").upper() != "OK":
            with self.db.transaction() as conn:
                self._fail(conn, payment.id, f"callback status {status_param}")
            raise GatewayRejectedError("支付已取消", details={"payment_id": payment.id})

        # 确认前先校验预订，避免为已失效的预订结算；未确认的支付由网关自动退回
        with self.db.transaction() as conn:
            review_reason = self._check_settleable(conn, payment)
            if review_reason:
                self._flag_for_review(conn, payment.id, review_reason)
        if review_reason:
            raise AmountMismatchError(review_reason, details={"payment_id": payment.id})

        try:
            confirmation = self.gateway.confirm(authority, payment.amount)
        except GatewayRejectedError as e:
            with self.db.transaction() as conn:
                self._fail(conn, payment.id, f"verify rejected: {e.message}")
            raise

        with self.db.transaction() as conn:
            review_reason = self._settle(conn, payment.id, confirmation.ref_id)
        if review_reason:
            raise AmountMismatchError(review_reason, details={"payment_id": payment.id})

        payment = self.get_payment(payment.id)
        return self._verify_result(payment, already_processed=confirmation.already_verified)

    def _verify_result(self, payment: Payment, already_processed: bool) -> Dict[str, Any]:
        return {
            "payment_id": payment.id,
            "amount": payment.amount,
            "ref_id": payment.ref_id,
            "reservation_id": payment.reservation_id,
            "already_processed": already_processed,
        }

    # 查询与冲正

    def inquire_payment(self, authority: str, check_reversal: bool = False) -> Dict[str, Any]:
        """
        向网关查询真实状态并修复本地记录

        - 网关已确认（VERIFIED）、本地 pending：按回调流程结算
        - 网关已扣款未确认（PAID）、本地 pending：先向网关确认再结算，
          未确认的扣款会被网关自动退回
        - 网关扣款金额与支付金额不一致：标记人工复核，不结算
        - 本地已支付但预订仍待支付：推进预订
        - 网关失败、本地 pending：支付失败并释放容量
        - check_reversal 且本地已支付但网关未结算：标记退款并删除未开始备餐的预订

        Raises:
            GatewayUnavailableError: 查询或确认时网关暂不可用（支付保持 pending）
        """
        payment = self.get_payment_by_authority(authority)
        inquiry = self.gateway.inquire(authority)
        status = PaymentStatus(payment.status)
        reversed_now = False

        if status == PaymentStatus.PENDING and inquiry.status == "PAID":
            with self.db.transaction() as conn:
                review_reason = self._gateway_amount_mismatch(payment, inquiry) or \
                    self._check_settleable(conn, payment)
                if review_reason:
                    self._flag_for_review(conn, payment.id, review_reason, ref_id=inquiry.ref_id)
            if review_reason:
                return self._inquiry_result(payment, inquiry, review_reason)

            try:
                confirmation = self.gateway.confirm(authority, payment.amount)
            except GatewayRejectedError as e:
                with self.db.transaction() as conn:
                    self._fail(conn, payment.id, f"verify rejected: {e.message}")
                return self._inquiry_result(payment, inquiry, "failed")
            inquiry = inquiry.model_copy(update={"status": "VERIFIED", "ref_id": confirmation.ref_id})

        if check_reversal and status == PaymentStatus.PAID and not inquiry.settled and inquiry.status == "PAID":
            self.gateway.reverse(authority)
            reversed_now = True

        with self.db.transaction() as conn:
            message = self._apply_inquiry(conn, payment, inquiry, check_reversal)

        return self._inquiry_result(payment, inquiry, message, reversed_now)

    def _inquiry_result(self, payment: Payment, inquiry: GatewayInquiry, message: str,
                        reversed_now: bool = False) -> Dict[str, Any]:
        logger.info(f"inquiry {payment.authority}: gateway={inquiry.status} local={payment.status} -> {message}")
        return {
            "status": inquiry.status,
            "message": message,
            "payment": self.get_payment(payment.id),
            "reversed": inquiry.reversed or reversed_now,
        }

    def _gateway_amount_mismatch(self, payment: Payment, inquiry: GatewayInquiry) -> Optional[str]:
        if inquiry.amount is not None and inquiry.amount != payment.amount:
            return f"网关扣款金额 {inquiry.amount} 与支付金额 {payment.amount} 不一致"
        return None

    def _apply_inquiry(self, conn, payment: Payment, inquiry: GatewayInquiry, check_reversal: bool) -> str:
        row = conn.execute("SELECT status FROM payments WHERE id = ?", [payment.id]).fetchone()
        status = PaymentStatus(row[0])

        if status == PaymentStatus.PENDING:
            if inquiry.settled:
                reason = self._gateway_amount_mismatch(payment, inquiry)
                if reason:
                    self._flag_for_review(conn, payment.id, reason, ref_id=inquiry.ref_id)
                    return reason
                reason = self._settle(conn, payment.id, inquiry.ref_id)
                return reason or "settled"
            if inquiry.failed:
                self._fail(conn, payment.id, f"gateway status {inquiry.status}")
                return "failed"
            return "pending"

        if status == PaymentStatus.PAID:
            if check_reversal and not inquiry.settled:
                return self._refund_in_transaction(conn, payment.id, f"gateway status {inquiry.status}")
            if self._advance_reservation(conn, payment.reservation_id):
                log_action(conn, "payment_self_heal", user_id=payment.user_id, detail={
                    "payment_id": payment.id, "reservation_id": payment.reservation_id,
                })
                return "reservation advanced"
            return "paid"

        if status == PaymentStatus.FAILED and inquiry.captured:
            reason = "网关已扣款但本地支付已失败"
            self._flag_for_review(conn, payment.id, reason, ref_id=inquiry.ref_id)
            return reason

        return status.value

    def refund_payment(self, payment_id: int, actor: CurrentUser) -> Payment:
        """管理员退款：网关冲正后标记退款，未开始备餐的预订被删除"""
        require_role(actor, [UserRole.ADMIN], "只有管理员可以退款")
        payment = self.get_payment(payment_id)
        status = PaymentStatus(payment.status)
        if status == PaymentStatus.REFUNDED:
            raise AlreadyProcessedError("该支付已退款")
        if status != PaymentStatus.PAID:
            raise InvalidTransitionError("只有已支付的记录可以退款", details={"status": status.value})

        self.gateway.reverse(payment.authority)

        with self.db.transaction() as conn:
            result = self._refund_in_transaction(conn, payment_id, "refunded by admin", actor_id=actor.id)
        logger.info(f"payment {payment_id} refunded by {actor.id}: {result}")
        return self.get_payment(payment_id)

    def reconcile_pending(self, now: Optional[datetime] = None) -> Dict[str, List[int]]:
        """后台对账：处理超时仍为 pending 的支付"""
        now = now or datetime.now()
        threshold = now - timedelta(minutes=settings.payment_timeout_minutes)
        stale = self.db.execute_query(
            """
            SELECT id, authority FROM payments
            WHERE status = ? AND created_at < ? AND NOT needs_review
            ORDER BY id
            """,
            [PaymentStatus.PENDING.value, threshold],
        )

        resolved, unresolved = [], []
        for row in stale:
            if not row["authority"]:
                # 发起时网关不可用，从未拿到 authority
                with self.db.transaction() as conn:
                    self._fail(conn, row["id"], "authorization never completed", cancel_reservation=False)
                resolved.append(row["id"])
                continue
            try:
                self.inquire_payment(row["authority"])
            except (GatewayUnavailableError, GatewayRejectedError) as e:
                logger.warning(f"reconcile payment {row['id']} failed: {e.message}")
                unresolved.append(row["id"])
                continue
            if self.get_payment(row["id"]).status == PaymentStatus.PENDING.value:
                unresolved.append(row["id"])
            else:
                resolved.append(row["id"])

        if unresolved:
            logger.warning(f"payments still pending after reconcile: {unresolved}")
        return {"resolved": resolved, "unresolved": unresolved}

    # 事务内步骤

    def _check_settleable(self, conn, payment: Payment) -> Optional[str]:
        row = conn.execute("SELECT price FROM reservations WHERE id = ?", [payment.reservation_id]).fetchone()
        if row is None:
            return "预订已失效"
        if row[0] != payment.amount:
            return "支付金额与订单金额不一致"
        return None

    def _settle(self, conn, payment_id: int, ref_id: Optional[str]) -> Optional[str]:
        """
        结算：pending → paid，预订 pending_payment → waiting 并生成取餐码

        Returns:
            None 表示已结算（或早已结算）；否则为标记人工复核的原因
        """
        payment = Payment(**row_to_dict(conn.execute("SELECT * FROM payments WHERE id = ?", [payment_id])))
        status = PaymentStatus(payment.status)
        if status == PaymentStatus.PAID:
            return None
        if status != PaymentStatus.PENDING:
            reason = "网关已扣款但本地支付已关闭"
            self._flag_for_review(conn, payment_id, reason, ref_id=ref_id)
            return reason

        reason = self._check_settleable(conn, payment)
        if reason:
            self._flag_for_review(conn, payment_id, reason, ref_id=ref_id)
            return reason

        updated = conn.execute(
            """
            UPDATE payments SET status = ?, ref_id = ?, updated_at = ?
            WHERE id = ? AND status = ?
            RETURNING id
            """,
            [PaymentStatus.PAID.value, ref_id, datetime.now(), payment_id, PaymentStatus.PENDING.value],
        ).fetchone()
        if updated is None:
            raise ConcurrencyError("支付状态已被修改")

        self._advance_reservation(conn, payment.reservation_id)
        log_action(conn, "payment_paid", user_id=payment.user_id, detail={
            "payment_id": payment_id, "reservation_id": payment.reservation_id,
            "amount": payment.amount, "ref_id": ref_id,
        })
        return None

    def _advance_reservation(self, conn, reservation_id: int) -> bool:
        """预订 pending_payment → waiting 并生成取餐码，返回是否实际推进"""
        updated = conn.execute(
            "UPDATE reservations SET status = ?, updated_at = ? WHERE id = ? AND status = ? RETURNING id",
            [ReservationStatus.WAITING.value, datetime.now(), reservation_id,
             ReservationStatus.PENDING_PAYMENT.value],
        ).fetchone()
        if updated is None:
            return False
        self.reservations.delivery.issue_token(conn, reservation_id)
        return True

    def _fail(self, conn, payment_id: int, message: str, cancel_reservation: bool = True) -> bool:
        """pending → failed；需要时删除待支付的预订并释放容量"""
        row = conn.execute(
            """
            UPDATE payments SET status = ?, error_message = ?, updated_at = ?
            WHERE id = ? AND status = ?
            RETURNING reservation_id, user_id
            """,
            [PaymentStatus.FAILED.value, message, datetime.now(), payment_id, PaymentStatus.PENDING.value],
        ).fetchone()
        if row is None:
            return False

        reservation_id, user_id = row
        cancelled = False
        if cancel_reservation:
            reservation = fetch_reservation(conn, reservation_id)
            if reservation is not None and reservation.status == ReservationStatus.PENDING_PAYMENT.value:
                self.reservations.cancel_in_transaction(conn, reservation, "payment failed")
                cancelled = True

        log_action(conn, "payment_failed", user_id=user_id, detail={
            "payment_id": payment_id, "reservation_id": reservation_id,
            "message": message, "reservation_cancelled": cancelled,
        })
        logger.info(f"payment {payment_id} failed: {message}")
        return True

    def _refund_in_transaction(self, conn, payment_id: int, message: str,
                               actor_id: Optional[int] = None) -> str:
        row = conn.execute(
            """
            UPDATE payments SET status = ?, error_message = ?, updated_at = ?
            WHERE id = ? AND status = ?
            RETURNING reservation_id, user_id
            """,
            [PaymentStatus.REFUNDED.value, message, datetime.now(), payment_id, PaymentStatus.PAID.value],
        ).fetchone()
        if row is None:
            raise InvalidTransitionError("支付状态已被修改")
        reservation_id, user_id = row

        reservation = fetch_reservation(conn, reservation_id)
        if reservation is not None and reservation.status in (
            ReservationStatus.WAITING.value, ReservationStatus.PENDING_PAYMENT.value,
        ):
            self.reservations.cancel_in_transaction(conn, reservation, "payment refunded", actor_id=actor_id)
            outcome = "refunded, reservation cancelled"
        elif reservation is not None:
            # 已开始备餐或已结束，不能自动删除
            self._flag_for_review(conn, payment_id, f"refunded while reservation {reservation.status}")
            outcome = "refunded, flagged for review"
        else:
            outcome = "refunded"

        log_action(conn, "payment_refund", user_id=user_id, actor_id=actor_id, detail={
            "payment_id": payment_id, "reservation_id": reservation_id,
            "message": message, "outcome": outcome,
        })
        return outcome

    def _flag_for_review(self, conn, payment_id: int, reason: str, ref_id: Optional[str] = None):
        conn.execute(
            """
            UPDATE payments SET needs_review = TRUE, error_message = ?,
                   ref_id = COALESCE(?, ref_id), updated_at = ?
            WHERE id = ?
            """,
            [reason, ref_id, datetime.now(), payment_id],
        )
        log_action(conn, "payment_review", detail={"payment_id": payment_id, "reason": reason, "ref_id": ref_id})
        logger.error(f"payment {payment_id} flagged for review: {reason}")

    # 查询

    def get_payment_by_authority(self, authority: str) -> Payment:
        row = self.db.execute_one(
            "SELECT * FROM payments WHERE authority = ? ORDER BY id DESC LIMIT 1", [authority]
        )
        if not row:
            raise NotFoundError("支付记录不存在")
        return Payment(**row)

    def get_payment(self, payment_id: int, actor: Optional[CurrentUser] = None) -> Payment:
        row = self.db.execute_one("SELECT * FROM payments WHERE id = ?", [payment_id])
        if not row:
            raise NotFoundError("支付记录不存在")
        if actor is not None and UserRole(actor.role) != UserRole.ADMIN and row["user_id"] != actor.id:
            raise NotFoundError("支付记录不存在")
        return Payment(**row)

    def payment_history(self, user_id: int) -> List[Payment]:
        rows = self.db.execute_query(
            "SELECT * FROM payments WHERE user_id = ? ORDER BY id DESC", [user_id]
        )
        return [Payment(**r) for r in rows]

    def list_payments(self, actor: CurrentUser, status: Optional[str] = None,
                      needs_review: Optional[bool] = None) -> List[Payment]:
        require_role(actor, [UserRole.ADMIN])
        clauses, params = [], []
        if status:
            clauses.append("status = ?")
            params.append(PaymentStatus(status).value)
        if needs_review is not None:
            clauses.append("needs_review = ?")
            params.append(needs_review)
        query = "SELECT * FROM payments"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        return [Payment(**r) for r in self.db.execute_query(query + " ORDER BY id DESC", params)]

    def list_failed_payments(self, actor: CurrentUser) -> List[Payment]:
        return self.list_payments(actor, status=PaymentStatus.FAILED.value)
