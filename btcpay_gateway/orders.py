import logging
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode

from sqlalchemy import update

from btcpay_gateway.models import Order
from btcpay_gateway.money import Money
from btcpay_gateway.states import OrderState

logger = logging.getLogger(__name__)

CHECKOUT_STEPS = ("order_information", "review", "payment", "complete")


class OrderRepository:
    def load(self, db, order_id: str) -> Optional[Order]:
        return db.get(Order, order_id)

    def create(self, db, **fields) -> Order:
        order = Order(**fields)
        db.add(order)
        db.commit()
        db.refresh(order)
        return order

    def save(self, db, order: Order) -> Order:
        db.add(order)
        db.commit()
        db.refresh(order)
        return order

    def record_paid(self, db, order: Order, paid: Money) -> None:
        if paid.currency_code != order.currency_code:
            logger.warning(
                "Order %s is in %s but BTCPay settled %s", order.id, order.currency_code, paid,
            )
            return
        if order.total_paid_number != paid.number:
            order.total_paid_number = paid.number
            self.save(db, order)

    def update_remote_status(self, db, order: Order, invoice) -> None:
        data = dict(order.btcpay_data or {})
        if data.get("invoice_id") != invoice.id or data.get("status") == invoice.status:
            return
        data["status"] = invoice.status
        order.btcpay_data = data
        self.save(db, order)


class CheckoutWorkflow:
    """Order progression and checkout step navigation.

    Both transitions are conditional updates, so only the first of several
    concurrent callers observes ``True``.
    """

    def __init__(self, settings):
        self.settings = settings

    def current_step(self, order: Order) -> str:
        return order.checkout_step

    def advance(self, db, order: Order) -> bool:
        result = db.execute(
            update(Order)
            .where(Order.id == order.id, Order.state == OrderState.DRAFT.value)
            .values(
                state=OrderState.PLACED.value,
                checkout_step="complete",
                placed_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(order)
        if result.rowcount != 1:
            logger.info("Order %s already left %s, not advancing", order.id, OrderState.DRAFT.value)
            return False
        logger.info("Order %s placed", order.id)
        return True

    def rewind_to_step(self, db, order: Order, step_id: str) -> bool:
        if step_id not in CHECKOUT_STEPS:
            raise ValueError(f"Unknown checkout step {step_id!r}")
        result = db.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.state == OrderState.DRAFT.value,
                Order.checkout_step != step_id,
            )
            .values(checkout_step=step_id)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(order)
        if result.rowcount == 1:
            logger.info("Order %s sent back to checkout step %s", order.id, step_id)
            return True
        return False

    def step_url(self, order: Order, step_id: str, message: Optional[str] = None) -> str:
        url = f"{self.settings.storefront_url}/checkout/{order.id}/{step_id}"
        if message:
            url = f"{url}?{urlencode({'message': message})}"
        return url
