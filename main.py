import os
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

from core.celery import NOTIFICATIONS_QUEUE, celery_app
from core.config import settings
from core.db import Base, SessionLocal, engine
from core.errors import CheckoutError
from core.logging import configure_logging, get_logger
import models  # noqa: F401  registers every table on Base.metadata
from routes.cart import router as cart_router
from routes.orders import router as orders_router
from routes.payments import router as payments_router
from routes.promo_codes import router as promo_codes_router
from routes.wallet import router as wallet_router
from services.config_provider import SettingsTableConfigProvider
from services.notifications import NotificationDispatcher
from services.payments import build_registry

load_dotenv()
configure_logging()
logger = get_logger(__name__)

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# Add OpenAPI security schemes for Bearer token authentication on docs/redoc
from fastapi.openapi.utils import get_openapi

def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "BearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
        }
    }
    app.openapi_schema = openapi_schema
    return app.openapi_schema

app.openapi = custom_openapi


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = {".".join(str(part) for part in error["loc"]): error["msg"] for error in exc.errors()}
    return JSONResponse(
        status_code=422,
        content={
            "detail": "Invalid request",
            "kind": "validation",
            "code": "invalid_input",
            "retryable": False,
            "errors": errors,
        },
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error", extra={"path": request.url.path})
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "kind": "internal", "code": "internal_error", "retryable": True},
    )


# Ensure tables exist (for dev/test; no migrations yet)
Base.metadata.create_all(bind=engine)

config_provider = SettingsTableConfigProvider(SessionLocal, ttl_seconds=settings.PAYMENT_CONFIG_TTL_SECONDS)
app.state.config_provider = config_provider
app.state.payment_registry = build_registry(config_provider)
app.state.notification_dispatcher = NotificationDispatcher()

app.include_router(cart_router)
app.include_router(orders_router)
app.include_router(payments_router)
app.include_router(promo_codes_router)
app.include_router(wallet_router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
    }


@app.get("/celery-health")
def celery_health_check():
    """Report whether any worker consumes the notifications queue."""
    try:
        active = celery_app.control.inspect(timeout=1.0).active_queues() or {}
    except Exception as exc:
        logger.warning("Celery inspection failed", extra={"error": str(exc)})
        return {"status": "unhealthy", "error": str(exc)}
    consumers = [
        worker for worker, queues in active.items()
        if any(queue.get("name") == NOTIFICATIONS_QUEUE for queue in queues)
    ]
    if not consumers:
        return {"status": "no_workers", "message": f"No worker consumes the {NOTIFICATIONS_QUEUE} queue"}
    return {"status": "healthy", "workers": len(consumers)}


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=settings.DEBUG,
    )
