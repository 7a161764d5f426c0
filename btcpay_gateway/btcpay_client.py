"""BitPay-compatible invoice API of a BTCPay Server.

BTCPay accepts a legacy API key on its BitPay endpoints, sent as
``Authorization: Basic base64(api_key)``. Keys are provided by a key store so
the client never reads credentials from ambient configuration.
"""
import base64
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import requests

from btcpay_gateway.errors import RemoteServiceError
from btcpay_gateway.money import Money

logger = logging.getLogger(__name__)

# Statuses that mean "no such invoice for these credentials".
_NOT_FOUND_CODES = (401, 403, 404)


@dataclass(frozen=True)
class Invoice:
    id: str
    order_id: str
    status: str
    price: Money
    url: str
    expiration_time: Optional[datetime] = None
    lightning: bool = False

    @classmethod
    def from_api(cls, data: Dict[str, Any]):
        expiration = data.get("expirationTime")
        if expiration is not None:
            # BitPay timestamps are milliseconds since the epoch.
            expiration = datetime.fromtimestamp(int(expiration) / 1000, tz=timezone.utc)
        return cls(
            id=str(data["id"]),
            order_id=str(data.get("orderId") or data.get("posData") or ""),
            status=str(data.get("status") or "").lower(),
            price=Money(_parse_price(data.get("price")), str(data.get("currency") or "")),
            url=str(data.get("url") or ""),
            expiration_time=expiration,
            lightning=_paid_over_lightning(data.get("cryptoInfo") or []),
        )


def _parse_price(raw) -> Decimal:
    try:
        price = Decimal(str(raw))
    except InvalidOperation as exc:
        raise ValueError(f"invoice price {raw!r} is not a number") from exc
    if not price.is_finite():
        raise ValueError(f"invoice price {raw!r} is not a number")
    return price


def _paid_over_lightning(crypto_info) -> bool:
    for info in crypto_info:
        if info.get("paymentType") != "LightningLike":
            continue
        try:
            if Decimal(str(info.get("cryptoPaid") or "0")) > 0:
                return True
        except InvalidOperation:
            continue
    return False


@dataclass(frozen=True)
class InvoiceRequest:
    order_id: str
    price: Money
    item_description: str = ""
    redirect_url: str = ""
    close_url: str = ""
    notification_url: str = ""
    transaction_speed: str = "medium"
    buyer: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        payload = {
            "price": str(self.price.number),
            "currency": self.price.currency_code,
            "orderId": self.order_id,
            "posData": self.order_id,
            "itemDesc": self.item_description,
            "transactionSpeed": self.transaction_speed,
            "fullNotifications": True,
        }
        if self.redirect_url:
            payload["redirectURL"] = self.redirect_url
        if self.close_url:
            payload["closeURL"] = self.close_url
        if self.notification_url:
            payload["notificationURL"] = self.notification_url
        if self.buyer:
            payload["buyer"] = self.buyer
        return payload


class EnvKeyStore:
    """Reads API keys from BTCPAY_API_KEY_LIVENET / BTCPAY_API_KEY_TESTNET."""

    def api_key(self, network: str) -> Optional[str]:
        return os.getenv(f"BTCPAY_API_KEY_{network.upper()}") or None


class BtcPayClient:
    def __init__(self, server_url: str, api_key: Optional[str], timeout: int = 30, http=None):
        self.server_url = server_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.http = http or requests.Session()

    @classmethod
    def from_settings(cls, settings, key_store=None):
        key_store = key_store or EnvKeyStore()
        return cls(
            settings.server_url,
            key_store.api_key(settings.network),
            timeout=settings.request_timeout,
        )

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "X-Accept-Version": "2.0.0",
        }
        if self.api_key:
            token = base64.b64encode(self.api_key.encode("utf-8")).decode("ascii")
            headers["Authorization"] = f"Basic {token}"
        return headers

    def create_invoice(self, request: InvoiceRequest) -> Optional[Invoice]:
        try:
            response = self.http.post(
                f"{self.server_url}/invoices",
                json=request.to_payload(),
                headers=self._headers(),
                timeout=self.timeout,
            )
            response.raise_for_status()
            return Invoice.from_api(_unwrap(response.json()))
        except (requests.RequestException, ValueError, KeyError) as exc:
            logger.error("BTCPay invoice creation failed for order %s: %s", request.order_id, exc)
            return None

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        try:
            response = self.http.get(
                f"{self.server_url}/invoices/{invoice_id}",
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise RemoteServiceError(f"BTCPay server unreachable: {exc}") from exc

        if response.status_code in _NOT_FOUND_CODES:
            logger.warning("BTCPay returned %s for invoice %s", response.status_code, invoice_id)
            return None
        try:
            response.raise_for_status()
            return Invoice.from_api(_unwrap(response.json()))
        except requests.HTTPError as exc:
            raise RemoteServiceError(f"BTCPay API error: {response.status_code}") from exc
        except (ValueError, KeyError) as exc:
            raise RemoteServiceError("BTCPay API returned an invalid invoice.") from exc


def _unwrap(body):
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        return body["data"]
    if not isinstance(body, dict):
        raise ValueError("invoice payload is not an object")
    return body
