"""Applies BTCPay invoice state to local orders and payments.

The buyer's return redirect and the BTCPay notification may arrive in any
order, more than once, and concurrently. Both re-fetch the invoice and go
through :meth:`InvoiceReconciler.reconcile`, which only ever moves payments
forward and places an order at most once.
"""
import json
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from btcpay_gateway.errors import (
    InvoiceNotFound,
    MalformedNotification,
    MissingInvoiceReference,
    OrderNotFound,
    RemoteServiceError,
)
from btcpay_gateway.ledger import PaymentLedger
from btcpay_gateway.models import Order, Payment
from btcpay_gateway.orders import CheckoutWorkflow, OrderRepository
from btcpay_gateway.states import (
    PaymentState,
    ReconcileStatus,
    is_failure,
    map_remote_state,
    settled_amount,
)

logger = logging.getLogger(__name__)


@dataclass
class ReconcileOutcome:
    order: Order
    invoice: object
    payment: Optional[Payment] = None
    applied: bool = True
    order_advanced: bool = False
    rerouted: bool = False

    @property
    def payment_failed(self) -> bool:
        return self.applied and is_failure(self.invoice.status)

    @property
    def status(self) -> ReconcileStatus:
        if self.payment_failed:
            return ReconcileStatus.PAYMENT_FAILED
        if self.payment is not None and self.payment.state == PaymentState.COMPLETED.value:
            return ReconcileStatus.PAYMENT_COMPLETED
        if self.payment is not None:
            return ReconcileStatus.PAYMENT_AUTHORIZED
        return ReconcileStatus.INVOICE_CREATED


class InvoiceReconciler:
    def __init__(self, client, settings, ledger=None, orders=None, workflow=None):
        self.client = client
        self.settings = settings
        self.ledger = ledger or PaymentLedger()
        self.orders = orders or OrderRepository()
        self.workflow = workflow or CheckoutWorkflow(settings)

    def on_return(self, db, order: Order, params: Mapping[str, str]) -> ReconcileOutcome:
        if self.settings.debug_log:
            logger.debug("BTCPay return for order %s: %s", order.id, dict(params))

        invoice_id = order.invoice_id
        if not invoice_id:
            raise MissingInvoiceReference(order.id)

        invoice = self._fetch_invoice(invoice_id)

        # Anonymous buyers may leave their email on the BTCPay payment page.
        buyer_email = params.get("buyerEmail")
        if not order.email and buyer_email:
            order.email = buyer_email
            self.orders.save(db, order)
        return self.reconcile(db, order, invoice)

    def on_notify(self, db, raw_body) -> ReconcileOutcome:
        if self.settings.debug_log:
            logger.debug("BTCPay notification: %r", raw_body)

        invoice_id = parse_notification(raw_body)
        # The body is not signed; only the invoice fetched from BTCPay is trusted.
        invoice = self._fetch_invoice(invoice_id)
        order = self.orders.load(db, invoice.order_id)
        if order is None:
            raise OrderNotFound(invoice.order_id)
        return self.reconcile(db, order, invoice)

    def reconcile(self, db, order: Order, invoice) -> ReconcileOutcome:
        target = map_remote_state(invoice.status, invoice.lightning)
        result = self.ledger.upsert(db, order.id, invoice.id, target, invoice.status, invoice.price)
        outcome = ReconcileOutcome(order=order, invoice=invoice, payment=result.payment, applied=result.applied)
        if not result.applied:
            return outcome
        self.orders.update_remote_status(db, order, invoice)

        if is_failure(invoice.status):
            if order.invoice_id == invoice.id:
                outcome.rerouted = self.workflow.rewind_to_step(db, order, self.settings.payment_step)
            logger.info(
                "BTCPay invoice %s for order %s is %s", invoice.id, order.id, invoice.status,
            )
            return outcome

        if result.payment.state == PaymentState.COMPLETED.value:
            self.orders.record_paid(db, order, settled_amount(invoice))
            outcome.order_advanced = self.workflow.advance(db, order)
        return outcome

    def _fetch_invoice(self, invoice_id):
        try:
            invoice = self.client.get_invoice(invoice_id)
        except RemoteServiceError as exc:
            logger.error("Fetching BTCPay invoice %s failed: %s", invoice_id, exc)
            raise InvoiceNotFound(invoice_id) from exc
        if invoice is None:
            raise InvoiceNotFound(invoice_id)
        return invoice


def parse_notification(raw_body) -> str:
    try:
        payload = json.loads(raw_body or b"")
    except (ValueError, UnicodeDecodeError) as exc:
        raise MalformedNotification("Notification body is not valid JSON.") from exc
    if not isinstance(payload, dict):
        raise MalformedNotification("Notification body is not a JSON object.")

    # Extended notifications wrap the invoice as {"event": ..., "data": {...}}.
    data = payload["data"] if isinstance(payload.get("data"), dict) else payload
    invoice_id = data.get("id")
    if not isinstance(invoice_id, str) or not invoice_id.strip():
        raise MalformedNotification("Notification does not carry an invoice id.")
    return invoice_id.strip()


def order_status(order: Order) -> ReconcileStatus:
    """Where the order's current BTCPay invoice stands, from local records only."""
    invoice_id = order.invoice_id
    if not invoice_id:
        return ReconcileStatus.NO_INVOICE
    payment = next((p for p in order.payments if p.remote_id == invoice_id), None)
    if payment is None or payment.state == PaymentState.NEW.value:
        return ReconcileStatus.INVOICE_CREATED
    if payment.state in (PaymentState.AUTHORIZATION_EXPIRED.value, PaymentState.AUTHORIZATION_VOIDED.value):
        return ReconcileStatus.PAYMENT_FAILED
    if payment.state == PaymentState.AUTHORIZATION.value:
        return ReconcileStatus.PAYMENT_AUTHORIZED
    return ReconcileStatus.PAYMENT_COMPLETED
