import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from fulfillment.config import settings
from fulfillment.errors import (
    AttachmentNotFound,
    CollaboratorFailure,
    EmptyAssignment,
    OrderNotEditable,
    OrderNotFound,
    UnknownStage,
)
from fulfillment.metrics import get_metrics_bytes, get_metrics_content_type, sqs_queue_messages_in_flight, sqs_queue_messages_waiting
from fulfillment.redis_client import close_redis
from fulfillment.routes import admin, dashboard, orders
from fulfillment.service import build_service
from fulfillment.sqs_client import get_queue_depth

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # tests install their own service before startup
    if getattr(app.state, "service", None) is None:
        app.state.service = await build_service()
    yield
    await app.state.service.notifier.drain(timeout=10)
    if settings.store_backend == "postgres":
        from fulfillment.db import close_pool
        await close_pool()
    await close_redis()


app = FastAPI(title="Fulfillment Board", lifespan=lifespan)
app.include_router(orders.router)
app.include_router(dashboard.router)
app.include_router(admin.router)

_ERROR_STATUS = {
    OrderNotFound: 404,
    AttachmentNotFound: 404,
    UnknownStage: 422,
    EmptyAssignment: 422,
    OrderNotEditable: 409,
    CollaboratorFailure: 503,
}


def _error_handler(status_code: int):
    async def handle(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"status": "error", "detail": str(exc)})
    return handle


for _exc, _status in _ERROR_STATUS.items():
    app.add_exception_handler(_exc, _error_handler(_status))


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus scrape endpoint: transitions, events published, overdue orders, SQS queue depth."""
    if settings.sqs_queue_url:
        try:
            waiting, in_flight = await get_queue_depth()
            sqs_queue_messages_waiting.set(waiting)
            sqs_queue_messages_in_flight.set(in_flight)
        except Exception as e:
            logger.warning("Could not read SQS queue depth: %s", e)
    return Response(
        content=get_metrics_bytes(),
        media_type=get_metrics_content_type(),
    )
