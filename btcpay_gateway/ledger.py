import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from btcpay_gateway.errors import InvalidPaymentState, InvalidRefundAmount, LedgerConflict
from btcpay_gateway.models import Payment
from btcpay_gateway.money import Money
from btcpay_gateway.states import PaymentState, can_transition

logger = logging.getLogger(__name__)


@dataclass
class LedgerResult:
    payment: Payment
    created: bool = False
    applied: bool = True
    previous_state: Optional[PaymentState] = None

    @property
    def state(self) -> PaymentState:
        return PaymentState(self.payment.state)

    @property
    def transitioned(self) -> bool:
        return self.applied and self.previous_state != self.state


class PaymentLedger:
    """Local payment records, one per (order, BTCPay invoice).

    Every write commits on its own. Updates are compare-and-swap on the
    current state, so concurrent deliveries for the same invoice converge
    without duplicate rows or regressions.
    """

    def __init__(self, max_attempts: int = 3):
        self.max_attempts = max_attempts

    def find(self, db, order_id: str, remote_id: str) -> Optional[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.order_id == order_id, Payment.remote_id == remote_id)
            .with_for_update()
        )
        return db.execute(stmt).scalars().first()

    def get(self, db, payment_id: int) -> Optional[Payment]:
        return db.get(Payment, payment_id)

    def upsert(self, db, order_id, remote_id, target_state: PaymentState, remote_state, amount: Money):
        target_state = PaymentState(target_state)
        for _ in range(self.max_attempts):
            payment = self.find(db, order_id, remote_id)
            if payment is None:
                payment = self._create(db, order_id, remote_id, target_state, remote_state, amount)
                if payment is not None:
                    return LedgerResult(payment, created=True)
                continue

            current = PaymentState(payment.state)
            if not can_transition(current, target_state):
                db.rollback()
                logger.warning(
                    "Ignoring %s -> %s for payment %s (order %s, invoice %s, remote status %s)",
                    current.value, target_state.value, payment.id, order_id, remote_id, remote_state,
                )
                return LedgerResult(payment, applied=False, previous_state=current)

            swapped = self._swap(db, payment, current, {
                "state": target_state.value,
                "remote_state": remote_state,
                "amount_number": amount.number,
                "currency_code": amount.currency_code,
            })
            if swapped:
                return LedgerResult(payment, previous_state=current)

        raise LedgerConflict(f"Payment for order {order_id} invoice {remote_id} kept changing.")

    def void(self, db, payment: Payment) -> Payment:
        current = PaymentState(payment.state)
        if current is not PaymentState.AUTHORIZATION:
            raise InvalidPaymentState(f"Payment {payment.id} is {current.value}, only authorizations can be voided.")
        if not self._swap(db, payment, current, {"state": PaymentState.AUTHORIZATION_VOIDED.value}):
            raise LedgerConflict(f"Payment {payment.id} changed while voiding.")
        logger.info("Voided payment %s", payment.id)
        return payment

    def refund(self, db, payment: Payment, amount: Optional[Decimal] = None) -> Payment:
        current = PaymentState(payment.state)
        if current not in (PaymentState.COMPLETED, PaymentState.PARTIALLY_REFUNDED):
            raise InvalidPaymentState(f"Payment {payment.id} is {current.value} and cannot be refunded.")

        total = Decimal(payment.amount_number)
        refunded = Decimal(payment.refunded_number or 0)
        balance = total - refunded
        amount = balance if amount is None else Decimal(str(amount))
        if amount <= 0 or amount > balance:
            raise InvalidRefundAmount(
                f"Cannot refund {amount} {payment.currency_code}, balance is {balance}."
            )

        new_refunded = refunded + amount
        target = PaymentState.PARTIALLY_REFUNDED if new_refunded < total else PaymentState.REFUNDED
        if not self._swap(db, payment, current, {"state": target.value, "refunded_number": new_refunded}):
            raise LedgerConflict(f"Payment {payment.id} changed while refunding.")
        logger.info("Refunded %s %s on payment %s", amount, payment.currency_code, payment.id)
        return payment

    def _create(self, db, order_id, remote_id, state, remote_state, amount):
        payment = Payment(
            order_id=order_id,
            remote_id=remote_id,
            state=state.value,
            remote_state=remote_state,
            amount_number=amount.number,
            currency_code=amount.currency_code,
        )
        db.add(payment)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.info("Payment for order %s invoice %s was created concurrently", order_id, remote_id)
            return None
        db.refresh(payment)
        logger.info("Created %s payment %s for order %s invoice %s", state.value, payment.id, order_id, remote_id)
        return payment

    def _swap(self, db, payment, expected: PaymentState, values) -> bool:
        result = db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.state == expected.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        db.refresh(payment)
        return result.rowcount == 1
