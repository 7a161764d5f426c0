import logging
from dataclasses import dataclass
from typing import Optional

from btcpay_gateway.btcpay_client import Invoice, InvoiceRequest
from btcpay_gateway.errors import InvalidOrderState
from btcpay_gateway.models import Order
from btcpay_gateway.orders import CheckoutWorkflow, OrderRepository
from btcpay_gateway.states import OrderState

logger = logging.getLogger(__name__)

INVOICE_FAILED_MESSAGE = "We could not reach the payment provider. Please try again."
CANCELED_MESSAGE = (
    "You have canceled checkout at BTCPay but may resume the checkout process here when you are ready."
)


@dataclass
class RedirectResult:
    url: str
    invoice: Optional[Invoice] = None
    rerouted: bool = False


def build_invoice_request(order: Order, settings, return_url: str, cancel_url: str = "") -> InvoiceRequest:
    buyer = {"name": " ".join(p for p in (order.given_name, order.family_name) if p)}
    if settings.send_buyer_email and order.email:
        buyer["email"] = order.email
    if settings.send_buyer_address:
        buyer.update({
            "address1": order.address_line1 or "",
            "address2": order.address_line2 or "",
            "locality": order.locality or "",
            "region": order.administrative_area or "",
            "postalCode": order.postal_code or "",
            "country": order.country_code or "",
        })
    # BitPay supports a single line item, so the store name describes the order.
    return InvoiceRequest(
        order_id=order.id,
        price=order.total_price,
        item_description=order.store_name or "",
        redirect_url=return_url,
        close_url=cancel_url,
        notification_url=settings.notify_url,
        transaction_speed=settings.confirmation_policy.value,
        buyer={k: v for k, v in buyer.items() if v},
    )


class CheckoutRedirectController:
    def __init__(self, client, settings, orders=None, workflow=None):
        self.client = client
        self.settings = settings
        self.orders = orders or OrderRepository()
        self.workflow = workflow or CheckoutWorkflow(settings)

    def prepare_redirect(self, db, order: Order, return_url: str, cancel_url: str) -> RedirectResult:
        if order.state != OrderState.DRAFT.value:
            raise InvalidOrderState(f"Order {order.id} is {order.state}, checkout is closed.")

        invoice = self.client.create_invoice(build_invoice_request(order, self.settings, return_url, cancel_url))
        if invoice is None:
            self.workflow.rewind_to_step(db, order, self.settings.payment_step)
            return RedirectResult(
                url=self.workflow.step_url(order, self.settings.payment_step, INVOICE_FAILED_MESSAGE),
                rerouted=True,
            )

        order.btcpay_data = {
            "invoice_id": invoice.id,
            "expiration_time": int(invoice.expiration_time.timestamp()) if invoice.expiration_time else None,
            "status": invoice.status,
        }
        order.checkout_step = "payment"
        self.orders.save(db, order)
        logger.info("Created BTCPay invoice %s for order %s", invoice.id, order.id)
        return RedirectResult(url=invoice.url, invoice=invoice)

    def on_cancel(self, db, order: Order) -> str:
        self.workflow.rewind_to_step(db, order, self.settings.payment_step)
        return self.workflow.step_url(order, self.settings.payment_step, CANCELED_MESSAGE)
