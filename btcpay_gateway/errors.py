class GatewayError(Exception):
    """Base class for failures reported to the caller of a gateway entry point."""

    status_code = 400

    def __init__(self, message=None):
        super().__init__(message or self.__doc__)
        self.message = message or self.__doc__


class MissingInvoiceReference(GatewayError):
    """Invoice id missing for this BTCPay transaction."""

    status_code = 409

    def __init__(self, order_id):
        super().__init__(f"Invoice id missing for order {order_id}.")
        self.order_id = order_id


class InvoiceNotFound(GatewayError):
    """BTCPay returned no invoice."""

    status_code = 502

    def __init__(self, invoice_id):
        super().__init__(f"Invoice {invoice_id} could not be fetched from BTCPay.")
        self.invoice_id = invoice_id


class MalformedNotification(GatewayError):
    """Notification body is not a usable invoice reference."""


class OrderNotFound(GatewayError):
    status_code = 404

    def __init__(self, order_id):
        super().__init__(f"Order {order_id} not found.")
        self.order_id = order_id


class UnmappedRemoteStatus(GatewayError):
    status_code = 422

    def __init__(self, status):
        super().__init__(f"No payment state for BTCPay invoice status {status!r}.")
        self.status = status


class RemoteServiceError(GatewayError):
    """BTCPay server is unreachable or answered with an error."""

    status_code = 502


class InvalidOrderState(GatewayError):
    status_code = 409


class InvalidPaymentState(GatewayError):
    status_code = 409


class InvalidRefundAmount(GatewayError):
    """Refund amount must be positive and within the unrefunded balance."""


class LedgerConflict(GatewayError):
    """Payment kept changing underneath the update."""

    status_code = 409
