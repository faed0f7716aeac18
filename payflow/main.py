from sqlalchemy import text

from payflow.core.errors import CheckoutError
from payflow.core.observability import (
    checkout_exception_handler,
    http_exception_handler,
    request_logging_middleware,
    setup_observability,
    unhandled_exception_handler,
    validation_exception_handler,
)
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from payflow.core.config import settings
from payflow.db.session import engine
from payflow.routers import checkout, payment_webhooks, payments

app = FastAPI(
    title=settings.app_name,
    version="0.1.0",
    description=(
        "Checkout sessions and multi-tenant payment gateway reconciliation.\n\n"
        "Swagger quick test flow:\n"
        "1. Send `X-Tenant-ID` on every `/checkout` and `/payments` call.\n"
        "2. `POST /checkout/sessions`, then set the shipping address and shipping method.\n"
        "3. `PUT /checkout/sessions/{id}/payment-method` to start a payment; gateways confirm it "
        "through `POST /payment-webhooks/{tenant_id}/{provider}`."
    ),
    swagger_ui_parameters={
        "displayRequestDuration": True,
        "defaultModelsExpandDepth": 1,
    },
    openapi_tags=[
        {"name": "health", "description": "Service status and quick links."},
        {"name": "checkout", "description": "Checkout session state machine from cart to order hand-off."},
        {"name": "payments", "description": "Payment transactions, refunds, COD collection and gateway health."},
        {"name": "payment-webhooks", "description": "Gateway callbacks, deduplicated and reconciled."},
    ],
)

setup_observability()
app.middleware("http")(request_logging_middleware)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(CheckoutError, checkout_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

cors_origins = settings.cors_origins or ["http://localhost:3000"]
allow_all_origins = "*" in cors_origins
env_value = settings.env.lower().strip()
allow_origin_regex = settings.cors_origin_regex

if (
    not allow_origin_regex
    and env_value in {"dev", "development", "staging", "stage"}
):
    # Helps local checkout front-ends that run on dynamic localhost ports.
    allow_origin_regex = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if allow_all_origins else cors_origins,
    allow_origin_regex=allow_origin_regex,
    allow_credentials=not allow_all_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(checkout.router)
app.include_router(payments.router)
app.include_router(payment_webhooks.router)


@app.get("/", tags=["health"])
def root():
    return {
        "app": settings.app_name,
        "docs": "/docs",
        "redoc": "/redoc",
        "health": "/health",
        "ready": "/ready",
    }


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/ready", tags=["health"])
def ready():
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception:
        return {"ok": False}
    return {"ok": True}
