from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from btcpay_gateway.btcpay_client import Invoice
from btcpay_gateway.checkout import CheckoutRedirectController, build_invoice_request
from btcpay_gateway.config import ConfirmationPolicy, GatewaySettings
from btcpay_gateway.database import Base, make_engine
from btcpay_gateway.errors import InvalidOrderState
from btcpay_gateway.money import Money
from btcpay_gateway.orders import OrderRepository

SETTINGS = GatewaySettings(
    storefront_url="https://shop.example",
    notify_url="https://gateway.example/payment/notify",
    confirmation_policy=ConfirmationPolicy.LOW,
)


@pytest.fixture
def db(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'checkout.db'}")
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def order(db):
    return OrderRepository().create(
        db,
        id="O1",
        email="buyer@example.com",
        store_name="Demo Store",
        total_number=Decimal("10.00"),
        currency_code="EUR",
        given_name="Ada",
        family_name="Lovelace",
        address_line1="1 Main St",
        locality="Berlin",
        postal_code="10115",
        country_code="DE",
    )


@pytest.fixture
def client(mocker):
    return mocker.Mock()


def test_invoice_request_carries_order_and_buyer(order):
    request = build_invoice_request(order, SETTINGS, "https://shop.example/return", "https://shop.example/cancel")

    assert request.order_id == "O1"
    assert request.price == Money(Decimal("10.00"), "EUR")
    assert request.item_description == "Demo Store"
    assert request.transaction_speed == "low"
    assert request.notification_url == "https://gateway.example/payment/notify"
    assert request.buyer["name"] == "Ada Lovelace"
    assert request.buyer["email"] == "buyer@example.com"
    assert request.buyer["address1"] == "1 Main St"
    assert request.buyer["country"] == "DE"
    assert "address2" not in request.buyer


def test_privacy_toggles_strip_buyer_data(order):
    settings = GatewaySettings(send_buyer_email=False, send_buyer_address=False)

    request = build_invoice_request(order, settings, "https://shop.example/return")

    assert request.buyer == {"name": "Ada Lovelace"}


def test_prepare_redirect_stores_invoice_on_order(db, order, client):
    client.create_invoice.return_value = Invoice(
        id="INV1",
        order_id="O1",
        status="new",
        price=Money(Decimal("10.00"), "EUR"),
        url="https://btcpay.test.example/invoice?id=INV1",
        expiration_time=datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc),
    )
    controller = CheckoutRedirectController(client, SETTINGS)

    result = controller.prepare_redirect(db, order, "https://shop.example/return", "https://shop.example/cancel")

    assert result.url == "https://btcpay.test.example/invoice?id=INV1"
    assert not result.rerouted
    assert order.btcpay_data == {"invoice_id": "INV1", "expiration_time": 1700000000, "status": "new"}
    assert order.checkout_step == "payment"


def test_prepare_redirect_reroutes_when_invoice_fails(db, order, client):
    client.create_invoice.return_value = None
    order.checkout_step = "review"
    OrderRepository().save(db, order)
    controller = CheckoutRedirectController(client, SETTINGS)

    result = controller.prepare_redirect(db, order, "https://shop.example/return", "https://shop.example/cancel")

    assert result.rerouted
    assert result.url.startswith("https://shop.example/checkout/O1/order_information?message=")
    assert order.checkout_step == "order_information"
    assert order.btcpay_data is None


def test_prepare_redirect_refuses_placed_order(db, order, client):
    order.state = "placed"
    OrderRepository().save(db, order)
    controller = CheckoutRedirectController(client, SETTINGS)

    with pytest.raises(InvalidOrderState):
        controller.prepare_redirect(db, order, "https://shop.example/return", "https://shop.example/cancel")

    client.create_invoice.assert_not_called()


def test_cancel_sends_buyer_back(db, order, client):
    order.checkout_step = "payment"
    OrderRepository().save(db, order)
    controller = CheckoutRedirectController(client, SETTINGS)

    url = controller.on_cancel(db, order)

    assert url.startswith("https://shop.example/checkout/O1/order_information?message=You+have+canceled")
    assert order.checkout_step == "order_information"
