"""
API 端到端测试
通过 TestClient 走完整的 HTTP 流程：认证、错误响应格式和状态码映射
"""

from .conftest import MENU_DATE

API = "/api/v1"


def order_body(item, slot_index=0, **extra):
    body = {
        "menu_item_id": item.id,
        "time_slot_id": item.time_slots[slot_index].id,
        "meal_type": item.meal_type,
        "reserved_date": MENU_DATE.isoformat(),
    }
    body.update(extra)
    return body


class TestOrderFlow:
    """下单 → 支付 → 备餐 → 取餐"""

    def test_full_flow(self, client, auth_headers, menu_item, student, chef, receiver):
        resp = client.post(f"{API}/orders/place/", json=order_body(menu_item), headers=auth_headers(student))
        assert resp.status_code == 200
        reservation = resp.json()["data"]
        assert reservation["status"] == "pending_payment"

        resp = client.post(f"{API}/payments/request/", headers=auth_headers(student), json={
            "reservation_id": reservation["id"],
            "amount": reservation["price"],
            "callback_url": "https://canteen.test/callback",
        })
        assert resp.status_code == 200
        authority = resp.json()["data"]["authority"]

        resp = client.get(f"{API}/payments/verify/", params={"Authority": authority, "Status": "OK"})
        assert resp.status_code == 200
        assert resp.json()["data"]["reservation_id"] == reservation["id"]

        for status in ("preparing", "ready_to_pickup"):
            resp = client.patch(f"{API}/orders/{reservation['id']}/status/",
                                json={"status": status}, headers=auth_headers(chef))
            assert resp.status_code == 200
            assert resp.json()["data"]["status"] == status

        resp = client.get(f"{API}/orders/{reservation['id']}/", headers=auth_headers(student))
        code = resp.json()["data"]["delivery_code"]
        assert code

        resp = client.post(f"{API}/orders/delivery-code/", json={"code": code}, headers=auth_headers(receiver))
        assert resp.status_code == 200
        assert resp.json()["data"]["status"] == "picked_up"

        resp = client.post(f"{API}/orders/delivery-code/", json={"code": code}, headers=auth_headers(receiver))
        assert resp.status_code == 409
        assert resp.json()["error_code"] == "ALREADY_REDEEMED"

    def test_qr_endpoint(self, client, auth_headers, ready_reservation, student):
        resp = client.get(f"{API}/orders/{ready_reservation.id}/qr/", headers=auth_headers(student))
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["qr_payload"] == ready_reservation.qr_payload
        assert data["qr_image_base64"].startswith("iVBOR")

    def test_student_cancels(self, client, auth_headers, place, student):
        reservation = place(student)
        resp = client.post(f"{API}/orders/{reservation.id}/cancel/", headers=auth_headers(student))
        assert resp.status_code == 200
        assert resp.json()["data"] == {"reservation_id": reservation.id, "cancelled": True}

    def test_payment_cancelled_at_gateway(self, client, auth_headers, place, payment_service, student):
        reservation = place(student)
        started = payment_service.request_payment(reservation.id, student.id, reservation.price, "https://cb")
        resp = client.get(f"{API}/payments/verify/", params={"Authority": started["authority"], "Status": "NOK"})
        assert resp.status_code == 402
        assert resp.json()["error_code"] == "GATEWAY_REJECTED"


class TestErrorResponses:
    """错误码与HTTP状态码映射"""

    def test_capacity_exceeded(self, client, auth_headers, make_menu_item, student, other_student):
        item = make_menu_item(time_slot_count=1, time_slot_capacity=1, daily_capacity=1)
        assert client.post(f"{API}/orders/place/", json=order_body(item),
                           headers=auth_headers(student)).status_code == 200

        resp = client.post(f"{API}/orders/place/", json=order_body(item), headers=auth_headers(other_student))
        assert resp.status_code == 409
        body = resp.json()
        assert body["success"] is False
        assert body["error_code"] == "CAPACITY_EXCEEDED"
        assert body["message"]
        assert body["details"]["scope"] == "time_slot"

    def test_trust_blocked(self, client, auth_headers, test_db, menu_item, student):
        test_db.execute_query("UPDATE users SET trust_score = -1 WHERE id = ?", [student.id])
        resp = client.post(f"{API}/orders/place/", json=order_body(menu_item), headers=auth_headers(student))
        assert resp.status_code == 403
        assert resp.json()["error_code"] == "TRUST_SCORE_BLOCKED"

    def test_staff_cannot_place_orders(self, client, auth_headers, menu_item, chef):
        resp = client.post(f"{API}/orders/place/", json=order_body(menu_item), headers=auth_headers(chef))
        assert resp.status_code == 403
        assert resp.json()["error_code"] == "FORBIDDEN"

    def test_invalid_token(self, client):
        resp = client.get(f"{API}/orders/student/", headers={"Authorization": "Bearer not-a-token"})
        assert resp.status_code == 401
        assert resp.json()["error_code"] == "AUTHENTICATION_REQUIRED"

    def test_request_validation(self, client, auth_headers, student):
        resp = client.post(f"{API}/orders/place/", json={"menu_item_id": "x"}, headers=auth_headers(student))
        assert resp.status_code == 400
        body = resp.json()
        assert body["error_code"] == "VALIDATION_ERROR"
        assert body["details"]["validation_errors"]

    def test_order_board_rejects_unknown_meal_type(self, client, auth_headers, place, student, chef):
        """未知餐次返回参数错误，而不是空列表"""
        place(student)
        resp = client.get(f"{API}/orders/", params={"meal_type": "brunch"}, headers=auth_headers(chef))
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "VALIDATION_ERROR"

        resp = client.get(f"{API}/orders/", params={"meal_type": "lunch"}, headers=auth_headers(chef))
        assert resp.status_code == 200
        assert len(resp.json()["data"]) == 1

    def test_not_found(self, client, auth_headers, student):
        resp = client.get(f"{API}/orders/9999/", headers=auth_headers(student))
        assert resp.status_code == 404
        assert resp.json()["error_code"] == "NOT_FOUND"

    def test_invalid_transition(self, client, auth_headers, place, student, chef):
        reservation = place(student)
        resp = client.patch(f"{API}/orders/{reservation.id}/status/",
                            json={"status": "preparing"}, headers=auth_headers(chef))
        assert resp.status_code == 409
        assert resp.json()["error_code"] == "INVALID_TRANSITION"

    def test_amount_mismatch(self, client, auth_headers, place, student):
        reservation = place(student)
        resp = client.post(f"{API}/payments/request/", headers=auth_headers(student), json={
            "reservation_id": reservation.id,
            "amount": reservation.price + 1,
            "callback_url": "https://cb",
        })
        assert resp.status_code == 422
        assert resp.json()["error_code"] == "AMOUNT_MISMATCH"


class TestTrustApi:

    def test_admin_recovers_score(self, client, auth_headers, test_db, student, admin):
        test_db.execute_query("UPDATE users SET trust_score = -5 WHERE id = ?", [student.id])
        resp = client.post(f"{API}/auth/trust-score/recover/", headers=auth_headers(admin), json={
            "student_id": student.id, "points": 5, "reason": "manual review",
        })
        assert resp.status_code == 200
        assert resp.json()["data"]["trust_score"] == 0

        resp = client.get(f"{API}/auth/trust-score/", headers=auth_headers(student))
        assert resp.json()["data"]["blocked"] is False

    def test_student_cannot_recover(self, client, auth_headers, student):
        resp = client.post(f"{API}/auth/trust-score/recover/", headers=auth_headers(student), json={
            "student_id": student.id, "points": 5, "reason": "please",
        })
        assert resp.status_code == 403

    def test_points_must_be_positive(self, client, auth_headers, student, admin):
        resp = client.post(f"{API}/auth/trust-score/recover/", headers=auth_headers(admin), json={
            "student_id": student.id, "points": 0, "reason": "manual review",
        })
        assert resp.status_code == 400
        assert resp.json()["error_code"] == "VALIDATION_ERROR"

    def test_student_cannot_read_others_score(self, client, auth_headers, student, other_student):
        resp = client.get(f"{API}/auth/trust-score/", params={"student_id": other_student.id},
                          headers=auth_headers(student))
        assert resp.status_code == 403


class TestCatalogApi:

    def test_daily_menu_shows_remaining_capacity(self, client, auth_headers, place, menu_item, student):
        place(student)
        resp = client.get(f"{API}/menu/daily/", params={"date": MENU_DATE.isoformat()},
                          headers=auth_headers(student))
        assert resp.status_code == 200
        entry = resp.json()["data"][0]
        assert entry["remaining_daily_capacity"] == menu_item.daily_capacity - 1
        assert entry["time_slots"][0]["remaining_capacity"] == menu_item.time_slot_capacity - 1
        assert entry["food"]["name"] == "Kabab"

    def test_voucher_price(self, client, auth_headers, admin, student):
        resp = client.put(f"{API}/core/voucher/price/", json={"price": 30000}, headers=auth_headers(admin))
        assert resp.status_code == 200
        resp = client.get(f"{API}/core/voucher/price/", headers=auth_headers(student))
        assert resp.json()["data"] == {"price": 30000}

        resp = client.put(f"{API}/core/voucher/price/", json={"price": 1}, headers=auth_headers(student))
        assert resp.status_code == 403


class TestRoot:

    def test_root(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        assert resp.json()["version"] == "1.0.0"
