"""Remote invoice statuses, local payment states and the mapping between them.

BTCPay decides when an invoice is ``confirmed`` according to the
``transactionSpeed`` sent at creation time, so the mapping here is fixed and
does not depend on the confirmation policy. Lightning payments settle
instantly and count as completed as soon as the invoice is ``paid``.
"""
from enum import Enum

from btcpay_gateway.errors import UnmappedRemoteStatus
from btcpay_gateway.money import Money


class RemoteStatus(str, Enum):
    NEW = "new"
    PAID = "paid"
    CONFIRMED = "confirmed"
    COMPLETE = "complete"
    EXPIRED = "expired"
    INVALID = "invalid"


class PaymentState(str, Enum):
    NEW = "new"
    AUTHORIZATION = "authorization"
    COMPLETED = "completed"
    AUTHORIZATION_VOIDED = "authorization_voided"
    AUTHORIZATION_EXPIRED = "authorization_expired"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class OrderState(str, Enum):
    DRAFT = "draft"
    PLACED = "placed"


class ReconcileStatus(str, Enum):
    NO_INVOICE = "no-invoice"
    INVOICE_CREATED = "invoice-created"
    PAYMENT_AUTHORIZED = "payment-authorized"
    PAYMENT_COMPLETED = "payment-completed"
    PAYMENT_FAILED = "payment-failed"


SETTLED_STATUSES = frozenset({RemoteStatus.CONFIRMED, RemoteStatus.COMPLETE})
FAILURE_STATUSES = frozenset({RemoteStatus.EXPIRED, RemoteStatus.INVALID})

_REMOTE_TO_LOCAL = {
    RemoteStatus.PAID: PaymentState.AUTHORIZATION,
    RemoteStatus.CONFIRMED: PaymentState.COMPLETED,
    RemoteStatus.COMPLETE: PaymentState.COMPLETED,
    RemoteStatus.EXPIRED: PaymentState.AUTHORIZATION_EXPIRED,
    RemoteStatus.INVALID: PaymentState.AUTHORIZATION_VOIDED,
}

# Forward moves only; anything else would regress a payment.
ALLOWED_TRANSITIONS = {
    PaymentState.NEW: frozenset({
        PaymentState.AUTHORIZATION,
        PaymentState.COMPLETED,
        PaymentState.AUTHORIZATION_VOIDED,
        PaymentState.AUTHORIZATION_EXPIRED,
    }),
    PaymentState.AUTHORIZATION: frozenset({
        PaymentState.COMPLETED,
        PaymentState.AUTHORIZATION_VOIDED,
        PaymentState.AUTHORIZATION_EXPIRED,
    }),
    PaymentState.COMPLETED: frozenset({
        PaymentState.PARTIALLY_REFUNDED,
        PaymentState.REFUNDED,
    }),
    PaymentState.PARTIALLY_REFUNDED: frozenset({
        PaymentState.PARTIALLY_REFUNDED,
        PaymentState.REFUNDED,
    }),
    PaymentState.AUTHORIZATION_VOIDED: frozenset(),
    PaymentState.AUTHORIZATION_EXPIRED: frozenset(),
    PaymentState.REFUNDED: frozenset(),
}


def _remote_status(status):
    try:
        return RemoteStatus((status or "").strip().lower())
    except ValueError:
        return None


def map_remote_state(status, lightning: bool = False) -> PaymentState:
    remote = _remote_status(status)
    if remote not in _REMOTE_TO_LOCAL:
        raise UnmappedRemoteStatus(status)
    if lightning and remote is RemoteStatus.PAID:
        return PaymentState.COMPLETED
    return _REMOTE_TO_LOCAL[remote]


def is_settled(status, lightning: bool = False) -> bool:
    remote = _remote_status(status)
    if lightning and remote is RemoteStatus.PAID:
        return True
    return remote in SETTLED_STATUSES


def is_failure(status) -> bool:
    return _remote_status(status) in FAILURE_STATUSES


def can_transition(current: PaymentState, target: PaymentState) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS[current]


def settled_amount(invoice) -> Money:
    """Funds count as received only once the invoice reached the settled tier."""
    if is_settled(invoice.status, invoice.lightning):
        return invoice.price
    return Money.zero(invoice.price.currency_code)
