from typing import Mapping, Optional, Protocol, runtime_checkable

from btcpay_gateway.btcpay_client import BtcPayClient, Invoice, InvoiceRequest
from btcpay_gateway.checkout import CheckoutRedirectController, RedirectResult
from btcpay_gateway.config import GatewaySettings, get_settings
from btcpay_gateway.ledger import PaymentLedger
from btcpay_gateway.orders import CheckoutWorkflow, OrderRepository
from btcpay_gateway.reconciler import InvoiceReconciler, ReconcileOutcome


@runtime_checkable
class PaymentGateway(Protocol):
    """What the HTTP routes need from a payment provider."""

    settings: GatewaySettings
    ledger: PaymentLedger
    orders: OrderRepository
    workflow: CheckoutWorkflow

    def create_invoice(self, request: InvoiceRequest) -> Optional[Invoice]: ...

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]: ...

    def prepare_redirect(self, db, order, return_url: str, cancel_url: str) -> RedirectResult: ...

    def on_return(self, db, order, params: Mapping[str, str]) -> ReconcileOutcome: ...

    def on_notify(self, db, raw_body: bytes) -> ReconcileOutcome: ...

    def on_cancel(self, db, order) -> str: ...


class BtcPayGateway(PaymentGateway):
    def __init__(self, settings, client):
        self.settings = settings
        self.client = client
        self.ledger = PaymentLedger()
        self.orders = OrderRepository()
        self.workflow = CheckoutWorkflow(settings)
        self.reconciler = InvoiceReconciler(client, settings, self.ledger, self.orders, self.workflow)
        self.redirects = CheckoutRedirectController(client, settings, self.orders, self.workflow)

    def create_invoice(self, request):
        return self.client.create_invoice(request)

    def get_invoice(self, invoice_id):
        return self.client.get_invoice(invoice_id)

    def prepare_redirect(self, db, order, return_url, cancel_url) -> RedirectResult:
        return self.redirects.prepare_redirect(db, order, return_url, cancel_url)

    def on_return(self, db, order, params):
        return self.reconciler.on_return(db, order, params)

    def on_notify(self, db, raw_body):
        return self.reconciler.on_notify(db, raw_body)

    def on_cancel(self, db, order) -> str:
        return self.redirects.on_cancel(db, order)


def get_gateway() -> PaymentGateway:
    settings = get_settings()
    return BtcPayGateway(settings, BtcPayClient.from_settings(settings))
