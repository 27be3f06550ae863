"""
支付网关客户端
封装 ZarinPal v4 协议：request（授权）/ verify（确认）/ inquiry（查询）/ reverse（冲正）

临时性错误（连接失败、超时、HTTP 5xx）按指数退避重试，
重试耗尽后抛出 GatewayUnavailableError；网关明确拒绝时抛出 GatewayRejectedError。
"""

import random
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests

from ..config.settings import settings
from ..core.exceptions import GatewayRejectedError, GatewayUnavailableError
from ..core.logger import get_logger
from ..models.payment import GatewayConfirmation, GatewayInquiry

logger = get_logger(__name__)

# ZarinPal 成功码：100 成功，101 已确认过
CODE_OK = 100
CODE_ALREADY_VERIFIED = 101


class PaymentGateway(ABC):
    """支付网关接口"""

    @abstractmethod
    def authorize(self, amount: int, callback_url: str, description: str = "") -> str:
        """发起支付，返回 authority"""

    @abstractmethod
    def confirm(self, authority: str, amount: int) -> GatewayConfirmation:
        """确认扣款，返回网关流水号"""

    @abstractmethod
    def inquire(self, authority: str) -> GatewayInquiry:
        """查询支付在网关侧的真实状态"""

    @abstractmethod
    def reverse(self, authority: str) -> None:
        """冲正（退回已扣款项）"""

    @abstractmethod
    def start_url(self, authority: str) -> str:
        """用户跳转支付页面地址"""


class ZarinpalGateway(PaymentGateway):
    """ZarinPal 网关实现"""

    def __init__(
        self,
        merchant_id: Optional[str] = None,
        sandbox: Optional[bool] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.merchant_id = merchant_id or settings.gateway_merchant_id
        sandbox = settings.gateway_sandbox if sandbox is None else sandbox
        self.base_url = "https://sandbox.zarinpal.com" if sandbox else "https://payment.zarinpal.com"
        self.timeout = timeout if timeout is not None else settings.gateway_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.gateway_max_retries
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.gateway_backoff_seconds
        self.session = session or requests.Session()

    def authorize(self, amount: int, callback_url: str, description: str = "") -> str:
        data = self._call("request", {
            "merchant_id": self.merchant_id,
            "amount": amount,
            "callback_url": callback_url,
            "description": description or settings.gateway_description,
        })
        authority = data.get("authority")
        if not authority:
            raise GatewayRejectedError("网关未返回 authority", details={"response": data})
        return authority

    def confirm(self, authority: str, amount: int) -> GatewayConfirmation:
        data = self._call("verify", {
            "merchant_id": self.merchant_id,
            "amount": amount,
            "authority": authority,
        })
        return GatewayConfirmation(
            ref_id=str(data.get("ref_id")),
            already_verified=data.get("code") == CODE_ALREADY_VERIFIED,
            card_pan=data.get("card_pan"),
        )

    def inquire(self, authority: str) -> GatewayInquiry:
        data = self._call("inquiry", {
            "merchant_id": self.merchant_id,
            "authority": authority,
        })
        ref_id = data.get("ref_id")
        return GatewayInquiry(
            status=str(data.get("status", "")).upper(),
            ref_id=str(ref_id) if ref_id is not None else None,
            amount=data.get("amount"),
        )

    def reverse(self, authority: str) -> None:
        self._call("reverse", {
            "merchant_id": self.merchant_id,
            "authority": authority,
        })

    def start_url(self, authority: str) -> str:
        if settings.payment_start_url:
            return f"{settings.payment_start_url.rstrip('/')}/{authority}"
        return f"{self.base_url}/pg/StartPay/{authority}"

    def _call(self, action: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """调用网关接口并解析 data 字段"""
        url = f"{self.base_url}/pg/v4/payment/{action}.json"
        body = self._post_with_retry(url, payload)

        data = body.get("data")
        errors = body.get("errors")
        if isinstance(data, dict) and data.get("code") in (CODE_OK, CODE_ALREADY_VERIFIED):
            return data

        code = None
        message = "网关拒绝请求"
        if isinstance(errors, dict) and errors:
            code = errors.get("code")
            message = errors.get("message") or message
        elif isinstance(data, dict):
            code = data.get("code")
            message = data.get("message") or message
        raise GatewayRejectedError(message, details={"action": action, "code": code})

    def _post_with_retry(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries + 1):
            try:
                response = self.session.post(
                    url,
                    json=payload,
                    headers={"Accept": "application/json"},
                    timeout=self.timeout,
                )
                if response.status_code >= 500:
                    raise requests.HTTPError(f"gateway returned {response.status_code}", response=response)
                return response.json()
            except (requests.ConnectionError, requests.Timeout, requests.HTTPError) as e:
                last_error = e
            except ValueError as e:
                # 非 JSON 响应，通常是网关前置代理的错误页
                last_error = e

            if attempt < self.max_retries:
                backoff = self.backoff_seconds * (2 ** attempt) + random.random() * self.backoff_seconds
                logger.warning(f"gateway call {url} failed ({last_error}), retrying in {backoff:.2f}s")
                time.sleep(backoff)

        logger.error(f"gateway call {url} failed after {self.max_retries + 1} attempts: {last_error}")
        raise GatewayUnavailableError(details={"url": url, "error": str(last_error)})


# 全局网关实例
_gateway: Optional[PaymentGateway] = None


def get_gateway() -> PaymentGateway:
    """获取（按需创建）全局网关实例"""
    global _gateway
    if _gateway is None:
        _gateway = ZarinpalGateway()
    return _gateway
