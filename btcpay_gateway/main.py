import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from btcpay_gateway.config import get_settings
from btcpay_gateway.database import Base, engine
from btcpay_gateway.errors import GatewayError
from btcpay_gateway.routes import router

settings = get_settings()

logging.basicConfig(
    level=logging.DEBUG if settings.debug_log else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("btcpay_gateway")

app = FastAPI(title="BTCPay Checkout Gateway")

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    # Non-2xx on /payment/notify makes BTCPay redeliver the notification.
    logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})
