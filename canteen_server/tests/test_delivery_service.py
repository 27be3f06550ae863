"""
取餐码核销测试
"""

import threading

import pytest

from ..core.exceptions import (
    AlreadyRedeemedError, ForbiddenError, InvalidDeliveryCodeError, InvalidTransitionError,
    NotFoundError,
)
from ..services.delivery_service import (
    CODE_ALPHABET, CODE_LENGTH, build_qr_payload, generate_delivery_code, parse_qr_payload,
)


class TestDeliveryCode:

    def test_generated_code_format(self):
        code = generate_delivery_code()
        assert len(code) == CODE_LENGTH
        assert set(code) <= set(CODE_ALPHABET)

    def test_payload_round_trip(self):
        payload = build_qr_payload(42, "ABCD2345")
        assert parse_qr_payload(payload) == (42, "ABCD2345")

    def test_tampered_payload_rejected(self):
        payload = build_qr_payload(42, "ABCD2345")
        tampered = payload.replace("42|", "43|", 1)
        with pytest.raises(InvalidDeliveryCodeError):
            parse_qr_payload(tampered)

    def test_malformed_payload_rejected(self):
        with pytest.raises(InvalidDeliveryCodeError):
            parse_qr_payload("abc|def")

    def test_code_is_stable_after_status_changes(self, place, pay, reservation_service, student, chef):
        reservation = place(student)
        pay(student, reservation)
        code = reservation_service.get_reservation(reservation.id, student).delivery_code
        reservation_service.update_status(reservation.id, "preparing", chef)
        ready = reservation_service.update_status(reservation.id, "ready_to_pickup", chef)
        assert ready.delivery_code == code


class TestRedeem:

    def test_redeem_by_code(self, test_db, ready_reservation, delivery_service, receiver):
        result = delivery_service.redeem(ready_reservation.delivery_code, receiver)
        assert result.status == "picked_up"
        log = test_db.execute_one("SELECT actor_id FROM logs WHERE action = 'delivery_redeem'")
        assert log["actor_id"] == receiver.id

    def test_second_redeem_fails(self, ready_reservation, delivery_service, receiver):
        delivery_service.redeem(ready_reservation.delivery_code, receiver)
        with pytest.raises(AlreadyRedeemedError):
            delivery_service.redeem(ready_reservation.delivery_code, receiver)

    def test_redeem_by_qr_payload(self, ready_reservation, delivery_service, admin):
        result = delivery_service.redeem(ready_reservation.qr_payload, admin)
        assert result.status == "picked_up"

    def test_code_is_case_insensitive(self, ready_reservation, delivery_service, receiver):
        result = delivery_service.redeem(f"  {ready_reservation.delivery_code.lower()} ", receiver)
        assert result.id == ready_reservation.id

    def test_forged_qr_rejected(self, ready_reservation, delivery_service, receiver):
        forged = f"{ready_reservation.id}|{ready_reservation.delivery_code}|{'0' * 64}"
        with pytest.raises(InvalidDeliveryCodeError):
            delivery_service.redeem(forged, receiver)

    def test_unknown_code(self, ready_reservation, delivery_service, receiver):
        with pytest.raises(NotFoundError):
            delivery_service.redeem("ZZZZZZZZ", receiver)

    def test_empty_code(self, delivery_service, receiver):
        with pytest.raises(InvalidDeliveryCodeError):
            delivery_service.redeem("  ", receiver)

    def test_redeem_before_ready(self, place, pay, reservation_service, delivery_service, student, receiver):
        reservation = place(student)
        pay(student, reservation)
        code = reservation_service.get_reservation(reservation.id, student).delivery_code
        with pytest.raises(InvalidTransitionError):
            delivery_service.redeem(code, receiver)

    def test_redeem_after_not_picked_up(self, ready_reservation, reservation_service, delivery_service, receiver):
        reservation_service.mark_not_picked_up(ready_reservation.id, receiver)
        with pytest.raises(InvalidTransitionError):
            delivery_service.redeem(ready_reservation.delivery_code, receiver)

    def test_only_receiver_or_admin(self, ready_reservation, delivery_service, student, chef):
        for actor in (student, chef):
            with pytest.raises(ForbiddenError):
                delivery_service.redeem(ready_reservation.delivery_code, actor)

    def test_concurrent_redeem_single_success(self, ready_reservation, delivery_service, receiver, admin):
        """两个窗口同时扫同一个码，只有一个成功"""
        actors = [receiver, admin, receiver, admin]
        barrier = threading.Barrier(len(actors))
        successes, already, unexpected = [], [], []

        def worker(actor, value):
            barrier.wait()
            try:
                successes.append(delivery_service.redeem(value, actor))
            except AlreadyRedeemedError:
                already.append(actor.id)
            except Exception as e:  # 任何其他异常都视为测试失败
                unexpected.append(e)

        values = [ready_reservation.delivery_code, ready_reservation.qr_payload] * 2
        threads = [threading.Thread(target=worker, args=args) for args in zip(actors, values)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert unexpected == []
        assert len(successes) == 1
        assert len(already) == len(actors) - 1


class TestQrCode:

    def test_owner_gets_qr_image(self, ready_reservation, delivery_service, student):
        result = delivery_service.get_qr(ready_reservation.id, student)
        assert result["delivery_code"] == ready_reservation.delivery_code
        assert result["qr_payload"] == ready_reservation.qr_payload
        # PNG 文件头的 base64
        assert result["qr_image_base64"].startswith("iVBOR")

    def test_other_student_cannot_see_qr(self, ready_reservation, delivery_service, other_student):
        with pytest.raises(NotFoundError):
            delivery_service.get_qr(ready_reservation.id, other_student)

    def test_unpaid_reservation_has_no_qr(self, place, delivery_service, student):
        reservation = place(student)
        with pytest.raises(InvalidTransitionError):
            delivery_service.get_qr(reservation.id, student)
