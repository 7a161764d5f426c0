import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field

from btcpay_gateway.auth import verify_token
from btcpay_gateway.database import get_db
from btcpay_gateway.errors import GatewayError, UnmappedRemoteStatus
from btcpay_gateway.gateway import get_gateway
from btcpay_gateway.money import Money
from btcpay_gateway.reconciler import order_status

logger = logging.getLogger(__name__)

router = APIRouter()

PAYMENT_FAILED_MESSAGE = "Your BTCPay invoice expired or became invalid. Please try again."
PAYMENT_PENDING_MESSAGE = "BTCPay has not seen your payment yet. Please complete it on the invoice page or try again."


class OrderRequest(BaseModel):
    id: str
    total: Decimal = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)
    email: Optional[str] = None
    store_name: str = ""
    given_name: str = ""
    family_name: str = ""
    address_line1: str = ""
    address_line2: str = ""
    locality: str = ""
    administrative_area: str = ""
    postal_code: str = ""
    country_code: str = ""


class RedirectRequest(BaseModel):
    return_url: str
    cancel_url: str


class RefundRequest(BaseModel):
    amount: Optional[Decimal] = None


def _money(value: Money):
    return {"number": str(value.number), "currency_code": value.currency_code}


def _payment_body(payment):
    return {
        "id": payment.id,
        "order_id": payment.order_id,
        "remote_id": payment.remote_id,
        "state": payment.state,
        "remote_state": payment.remote_state,
        "amount": _money(payment.amount),
        "refunded_amount": _money(payment.refunded_amount),
    }


def _load_order(gateway, db, order_id):
    order = gateway.orders.load(db, order_id)
    if order is None:
        raise HTTPException(status_code=404, detail=f"Order {order_id} not found")
    return order


@router.post("/orders", status_code=201)
def create_order(
    request: OrderRequest,
    db=Depends(get_db),
    gateway=Depends(get_gateway),
    auth=Depends(verify_token),
):
    existing = gateway.orders.load(db, request.id)
    if existing:
        return {"id": existing.id, "state": existing.state}

    fields = request.model_dump(exclude={"total", "currency"})
    order = gateway.orders.create(
        db, total_number=request.total, currency_code=request.currency.upper(), **fields
    )
    return {"id": order.id, "state": order.state}


@router.get("/orders/{order_id}")
def read_order(order_id: str, db=Depends(get_db), gateway=Depends(get_gateway), auth=Depends(verify_token)):
    order = _load_order(gateway, db, order_id)
    return {
        "id": order.id,
        "state": order.state,
        "checkout_step": gateway.workflow.current_step(order),
        "email": order.email,
        "total": _money(order.total_price),
        "total_paid": _money(order.total_paid),
        "btcpay": order.btcpay_data,
        "payment_status": order_status(order).value,
        "payments": [_payment_body(p) for p in order.payments],
    }


@router.post("/checkout/{order_id}/redirect")
def checkout_redirect(
    order_id: str,
    request: RedirectRequest,
    db=Depends(get_db),
    gateway=Depends(get_gateway),
    auth=Depends(verify_token),
):
    order = _load_order(gateway, db, order_id)
    result = gateway.prepare_redirect(db, order, request.return_url, request.cancel_url)
    return {
        "redirect_url": result.url,
        "invoice_id": result.invoice.id if result.invoice else None,
        "rerouted": result.rerouted,
    }


@router.get("/payment/return/{order_id}")
def payment_return(order_id: str, request: Request, db=Depends(get_db), gateway=Depends(get_gateway)):
    order = _load_order(gateway, db, order_id)
    step = gateway.settings.payment_step
    try:
        outcome = gateway.on_return(db, order, request.query_params)
    except UnmappedRemoteStatus as exc:
        logger.info("Buyer returned for order %s before paying (%s)", order_id, exc.status)
        return RedirectResponse(gateway.workflow.step_url(order, step, PAYMENT_PENDING_MESSAGE), status_code=303)
    except GatewayError as exc:
        logger.warning("Return for order %s failed: %s", order_id, exc.message)
        return RedirectResponse(gateway.workflow.step_url(order, step, exc.message), status_code=303)

    if outcome.payment_failed:
        return RedirectResponse(gateway.workflow.step_url(order, step, PAYMENT_FAILED_MESSAGE), status_code=303)
    return RedirectResponse(gateway.workflow.step_url(order, "complete"), status_code=303)


@router.get("/payment/cancel/{order_id}")
def payment_cancel(order_id: str, db=Depends(get_db), gateway=Depends(get_gateway)):
    order = _load_order(gateway, db, order_id)
    return RedirectResponse(gateway.on_cancel(db, order), status_code=303)


@router.post("/payment/notify")
async def payment_notify(request: Request, db=Depends(get_db), gateway=Depends(get_gateway)):
    payload = await request.body()
    # Fetching the invoice blocks on BTCPay, keep it off the event loop.
    outcome = await run_in_threadpool(gateway.on_notify, db, payload)
    return {"ok": True, "status": outcome.status.value}


@router.post("/payments/{payment_id}/void")
def void_payment(payment_id: int, db=Depends(get_db), gateway=Depends(get_gateway), auth=Depends(verify_token)):
    payment = gateway.ledger.get(db, payment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail="Payment not found")
    return _payment_body(gateway.ledger.void(db, payment))


@router.post("/payments/{payment_id}/refund")
def refund_payment(
    payment_id: int,
    request: Optional[RefundRequest] = None,
    db=Depends(get_db),
    gateway=Depends(get_gateway),
    auth=Depends(verify_token),
):
    payment = gateway.ledger.get(db, payment_id)
    if payment is None:
        raise HTTPException(status_code=404, detail="Payment not found")
    amount = request.amount if request else None
    return _payment_body(gateway.ledger.refund(db, payment, amount))
