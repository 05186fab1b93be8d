from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from order_engine.version import VERSION
from order_engine.api import routes
from order_engine.core.config import settings
from order_engine.core.errors import OrderEngineError
from order_engine.core.logging import setup_logging
from order_engine.jobs import expiry
from prometheus_fastapi_instrumentator import Instrumentator
import logging

setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Create instrumentator first
instrumentator = Instrumentator()

app = FastAPI(title="Order Engine", version=VERSION)

# Instrument the app BEFORE adding routes or middleware
instrumentator.instrument(app).expose(
    app,
    include_in_schema=False,
    endpoint="/order/metrics",
    should_gzip=True,
)

@app.exception_handler(OrderEngineError)
async def order_engine_error(_: Request, exc: OrderEngineError):
    return JSONResponse(status_code=exc.status_code, content={"detail": {"code": exc.code, "message": exc.message}})

# Health endpoints
@app.get("/health")
def health():
    return {"status": "ok"}

@app.get("/order/health")
def order_health():
    return {"status": "ok"}

@app.get("/v1/_info")
def info():
    return {"service": "order-engine", "version": VERSION}

@app.on_event("startup")
async def startup_event():
    if settings.EXPIRY_WORKER_ENABLED:
        expiry.start()
        logger.info("payment expiry worker started (every %ss)", settings.EXPIRY_SWEEP_SECONDS)

@app.on_event("shutdown")
async def shutdown_event():
    expiry.stop()

app.include_router(routes.router, prefix='/order', tags=["orders"])
