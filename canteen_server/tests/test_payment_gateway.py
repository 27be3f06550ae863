"""
ZarinPal 网关客户端测试：重试、错误分类
"""

from unittest.mock import Mock

import pytest
import requests

from ..core.exceptions import GatewayRejectedError, GatewayUnavailableError
from ..services.payment_gateway import PaymentGateway, ZarinpalGateway


def response(body, status_code=200):
    resp = Mock()
    resp.status_code = status_code
    resp.json.return_value = body
    return resp


def make_gateway(*results, max_retries=2):
    session = Mock()
    session.post.side_effect = list(results)
    gateway = ZarinpalGateway(
        merchant_id="merchant",
        sandbox=True,
        timeout=1,
        max_retries=max_retries,
        backoff_seconds=0,
        session=session,
    )
    return gateway, session


class TestZarinpalGateway:

    def test_authorize(self):
        gateway, session = make_gateway(response({"data": {"code": 100, "authority": "A0001"}, "errors": []}))
        assert gateway.authorize(1000, "https://cb", "lunch") == "A0001"

        url = session.post.call_args.args[0]
        payload = session.post.call_args.kwargs["json"]
        assert url == "https://sandbox.zarinpal.com/pg/v4/payment/request.json"
        assert payload == {
            "merchant_id": "merchant", "amount": 1000, "callback_url": "https://cb", "description": "lunch",
        }

    def test_retries_connection_errors(self):
        gateway, session = make_gateway(
            requests.ConnectionError("reset"),
            requests.Timeout("slow"),
            response({"data": {"code": 100, "ref_id": 555}, "errors": []}),
        )
        confirmation = gateway.confirm("A0001", 1000)
        assert confirmation.ref_id == "555"
        assert confirmation.already_verified is False
        assert session.post.call_count == 3

    def test_gives_up_after_max_retries(self):
        errors = [requests.ConnectionError("down")] * 3
        gateway, session = make_gateway(*errors)
        with pytest.raises(GatewayUnavailableError):
            gateway.authorize(1000, "https://cb")
        assert session.post.call_count == 3

    def test_server_error_is_retried(self):
        gateway, session = make_gateway(
            response({}, status_code=502),
            response({"data": {"code": 100, "authority": "A0002"}, "errors": []}),
        )
        assert gateway.authorize(1000, "https://cb") == "A0002"
        assert session.post.call_count == 2

    def test_non_json_response_is_retried(self):
        broken = response(None)
        broken.json.side_effect = ValueError("not json")
        gateway, session = make_gateway(broken, broken, broken)
        with pytest.raises(GatewayUnavailableError):
            gateway.inquire("A0001")

    def test_rejection_is_not_retried(self):
        gateway, session = make_gateway(
            response({"data": [], "errors": {"code": -9, "message": "validation error"}})
        )
        with pytest.raises(GatewayRejectedError) as exc_info:
            gateway.authorize(1000, "https://cb")
        assert exc_info.value.details["code"] == -9
        assert exc_info.value.message == "validation error"
        assert session.post.call_count == 1

    def test_already_verified(self):
        gateway, _ = make_gateway(response({"data": {"code": 101, "ref_id": 777}, "errors": []}))
        confirmation = gateway.confirm("A0001", 1000)
        assert confirmation.already_verified is True
        assert confirmation.ref_id == "777"

    def test_inquiry_status_normalized(self):
        gateway, _ = make_gateway(response({"data": {"code": 100, "status": "verified"}, "errors": []}))
        inquiry = gateway.inquire("A0001")
        assert inquiry.status == "VERIFIED"
        assert inquiry.settled is True
        assert inquiry.ref_id is None

    def test_start_url(self):
        gateway, _ = make_gateway()
        assert gateway.start_url("A0001") == "https://sandbox.zarinpal.com/pg/StartPay/A0001"


class TestGatewayInterface:
    """网关接口约束"""

    def test_interface_cannot_be_instantiated(self):
        with pytest.raises(TypeError):
            PaymentGateway()

    def test_incomplete_gateway_rejected_at_construction(self):
        """缺少确认/查询/冲正的实现在构造时就报错，而不是在支付途中"""
        class AuthorizeOnly(PaymentGateway):
            def authorize(self, amount, callback_url, description=""):
                return "A0001"

            def start_url(self, authority):
                return f"https://gateway.test/StartPay/{authority}"

        with pytest.raises(TypeError):
            AuthorizeOnly()
