from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON, Column, DateTime, ForeignKey, Integer, Numeric, String, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from btcpay_gateway.database import Base
from btcpay_gateway.money import Money
from btcpay_gateway.states import OrderState, PaymentState


def _now():
    return datetime.now(timezone.utc)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True)
    email = Column(String, nullable=True)
    store_name = Column(String, default="")
    state = Column(String, nullable=False, default=OrderState.DRAFT.value)   # draft | placed
    checkout_step = Column(String, nullable=False, default="order_information")
    total_number = Column(Numeric(19, 6), nullable=False)
    currency_code = Column(String(3), nullable=False)
    total_paid_number = Column(Numeric(19, 6), nullable=False, default=Decimal("0"))

    given_name = Column(String, default="")
    family_name = Column(String, default="")
    address_line1 = Column(String, default="")
    address_line2 = Column(String, default="")
    locality = Column(String, default="")
    administrative_area = Column(String, default="")
    postal_code = Column(String, default="")
    country_code = Column(String(2), default="")

    btcpay_data = Column(JSON, nullable=True)                      # invoice_id | expiration_time | status
    created_at = Column(DateTime, default=_now)
    placed_at = Column(DateTime, nullable=True)

    payments = relationship("Payment", back_populates="order", order_by="Payment.id")

    @property
    def total_price(self) -> Money:
        return Money(self.total_number, self.currency_code)

    @property
    def total_paid(self) -> Money:
        return Money(self.total_paid_number or Decimal("0"), self.currency_code)

    @property
    def invoice_id(self):
        return (self.btcpay_data or {}).get("invoice_id")


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("order_id", "remote_id", name="uq_payments_order_remote"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    remote_id = Column(String, nullable=False, index=True)        # BTCPay invoice ID
    state = Column(String, nullable=False, default=PaymentState.NEW.value)
    remote_state = Column(String, nullable=True)                   # raw BTCPay invoice status
    amount_number = Column(Numeric(19, 6), nullable=False)
    currency_code = Column(String(3), nullable=False)
    refunded_number = Column(Numeric(19, 6), nullable=False, default=Decimal("0"))
    created_at = Column(DateTime, default=_now)
    updated_at = Column(DateTime, default=_now, onupdate=_now)

    order = relationship("Order", back_populates="payments")

    @property
    def amount(self) -> Money:
        return Money(self.amount_number, self.currency_code)

    @property
    def refunded_amount(self) -> Money:
        return Money(self.refunded_number or Decimal("0"), self.currency_code)
