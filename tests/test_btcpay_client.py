import base64
from datetime import datetime, timezone
from decimal import Decimal

import pytest
import requests

from btcpay_gateway.btcpay_client import BtcPayClient, EnvKeyStore, InvoiceRequest
from btcpay_gateway.config import GatewaySettings
from btcpay_gateway.errors import RemoteServiceError
from btcpay_gateway.money import Money

INVOICE_DATA = {
    "id": "INV1",
    "orderId": "O1",
    "status": "confirmed",
    "price": 10.0,
    "currency": "EUR",
    "url": "https://btcpay.test.example/invoice?id=INV1",
    "expirationTime": 1700000000000,
    "cryptoInfo": [
        {"paymentType": "BTCLike", "cryptoPaid": "0.00000000"},
        {"paymentType": "LightningLike", "cryptoPaid": "0.00021"},
    ],
}


def response(mocker, status_code=200, body=None):
    resp = mocker.Mock()
    resp.status_code = status_code
    resp.json.return_value = body
    if status_code >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status_code} error")
    return resp


@pytest.fixture
def http(mocker):
    return mocker.Mock()


@pytest.fixture
def client(http):
    return BtcPayClient("https://btcpay.test.example/", "secret-key", timeout=5, http=http)


def test_get_invoice_parses_data_envelope(client, http, mocker):
    http.get.return_value = response(mocker, body={"facade": "merchant/invoice", "data": INVOICE_DATA})

    invoice = client.get_invoice("INV1")

    url = http.get.call_args.args[0]
    assert url == "https://btcpay.test.example/invoices/INV1"
    assert invoice.id == "INV1"
    assert invoice.order_id == "O1"
    assert invoice.status == "confirmed"
    assert invoice.price == Money(Decimal("10.0"), "EUR")
    assert invoice.expiration_time == datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
    assert invoice.lightning


def test_on_chain_invoice_is_not_lightning(client, http, mocker):
    data = dict(INVOICE_DATA, cryptoInfo=[{"paymentType": "BTCLike", "cryptoPaid": "0.001"}])
    http.get.return_value = response(mocker, body={"data": data})

    assert not client.get_invoice("INV1").lightning


def test_api_key_is_sent_as_basic_auth(client, http, mocker):
    http.get.return_value = response(mocker, body={"data": INVOICE_DATA})

    client.get_invoice("INV1")

    headers = http.get.call_args.kwargs["headers"]
    assert headers["Authorization"] == "Basic " + base64.b64encode(b"secret-key").decode()
    assert http.get.call_args.kwargs["timeout"] == 5


@pytest.mark.parametrize("status_code", [401, 403, 404])
def test_unknown_invoice_returns_none(client, http, mocker, status_code):
    http.get.return_value = response(mocker, status_code=status_code)

    assert client.get_invoice("NOPE") is None


def test_server_error_raises(client, http, mocker):
    http.get.return_value = response(mocker, status_code=500)

    with pytest.raises(RemoteServiceError):
        client.get_invoice("INV1")


def test_transport_error_raises(client, http):
    http.get.side_effect = requests.ConnectionError("connection refused")

    with pytest.raises(RemoteServiceError):
        client.get_invoice("INV1")


def test_create_invoice_payload(client, http, mocker):
    http.post.return_value = response(mocker, body={"data": dict(INVOICE_DATA, status="new")})
    request = InvoiceRequest(
        order_id="O1",
        price=Money(Decimal("10.00"), "eur"),
        item_description="Demo Store",
        redirect_url="https://shop.example/return",
        close_url="https://shop.example/cancel",
        notification_url="https://gateway.example/payment/notify",
        transaction_speed="high",
        buyer={"email": "buyer@example.com"},
    )

    invoice = client.create_invoice(request)

    assert invoice.status == "new"
    assert http.post.call_args.args[0] == "https://btcpay.test.example/invoices"
    payload = http.post.call_args.kwargs["json"]
    assert payload["price"] == "10.00"
    assert payload["currency"] == "EUR"
    assert payload["orderId"] == "O1"
    assert payload["posData"] == "O1"
    assert payload["itemDesc"] == "Demo Store"
    assert payload["redirectURL"] == "https://shop.example/return"
    assert payload["closeURL"] == "https://shop.example/cancel"
    assert payload["notificationURL"] == "https://gateway.example/payment/notify"
    assert payload["transactionSpeed"] == "high"
    assert payload["buyer"] == {"email": "buyer@example.com"}


def test_create_invoice_failure_returns_none(client, http):
    http.post.side_effect = requests.Timeout("slow")
    request = InvoiceRequest(order_id="O1", price=Money(Decimal("1"), "EUR"))

    assert client.create_invoice(request) is None


@pytest.mark.parametrize("price", [None, "ten", "NaN"])
def test_created_invoice_without_usable_price_returns_none(client, http, mocker, price):
    http.post.return_value = response(mocker, body={"data": dict(INVOICE_DATA, price=price)})
    request = InvoiceRequest(order_id="O1", price=Money(Decimal("10"), "EUR"))

    assert client.create_invoice(request) is None


@pytest.mark.parametrize("price", [None, "ten"])
def test_fetched_invoice_without_usable_price_raises(client, http, mocker, price):
    http.get.return_value = response(mocker, body={"data": dict(INVOICE_DATA, price=price)})

    with pytest.raises(RemoteServiceError):
        client.get_invoice("INV1")


def test_client_from_settings_uses_network_key(monkeypatch):
    monkeypatch.setenv("BTCPAY_API_KEY_LIVENET", "live-key")
    settings = GatewaySettings(mode="live", server_livenet="btcpay.live.example")

    client = BtcPayClient.from_settings(settings, EnvKeyStore())

    assert client.server_url == "https://btcpay.live.example"
    assert client.api_key == "live-key"


def test_unknown_mode_is_rejected():
    with pytest.raises(ValueError):
        GatewaySettings(mode="staging")
