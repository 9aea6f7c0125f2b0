"""
FastAPI Application — Webhooks, manual UI triggers and dashboard JSON.

Provides:
- Voice-provider webhooks (order flow and generic flow), always 200 {"ok": true}
- WhatsApp reply webhook answering with TwiML, always 200
- Commerce order-created trigger (COD admission + first dial)
- Manual actions: create order, recall, confirm/cancel, upload/start/call-one
- Stats, recent orders/calls and a recent-webhook ring buffer
- Scheduler lifecycle (dispatcher + sweepers) bound to the app lifespan
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional, Union
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from api.services import ServiceContainer, build_services
from channels.base import PermanentProviderError, TransientProviderError
from channels.twilio_whatsapp import twiml_message
from config.settings import get_settings
from core.errors import NotFoundError, StoreError, ValidationError
from models.schemas import Intent

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class CreateOrderRequest(BaseModel):
    customer_name: str = ""
    phone: str = ""
    amount: Union[str, float, None] = None
    store_name: str = ""
    order_number: str = ""


class UploadCallsRequest(BaseModel):
    customers: list[Any] = []


# ──────────────────────────────────────────────────────────────
#  Helpers
# ──────────────────────────────────────────────────────────────

def _services(request: Request) -> ServiceContainer:
    return request.app.state.services


def _base_url(request: Request) -> str:
    return str(request.base_url).rstrip("/")


async def _read_payload(request: Request) -> dict[str, Any]:
    """JSON or form-encoded body; malformed bodies read as empty."""
    content_type = request.headers.get("content-type", "")
    try:
        if "application/json" in content_type:
            body = await request.json()
        else:
            body = dict(await request.form())
    except Exception as e:
        logger.warning("webhook_body_unreadable", path=request.url.path, error=str(e))
        return {}
    return body if isinstance(body, dict) else {}


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"error": message})


def _install_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError):
        return _error(400, str(exc))

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return _error(404, str(exc))

    @app.exception_handler(PermanentProviderError)
    async def provider_rejected(request: Request, exc: PermanentProviderError):
        logger.warning("provider_rejected_request", path=request.url.path, error=str(exc))
        return _error(422, str(exc))

    @app.exception_handler(TransientProviderError)
    async def provider_unavailable(request: Request, exc: TransientProviderError):
        logger.error("provider_unavailable", path=request.url.path, error=str(exc))
        return _error(500, f"{exc} (a retry has been scheduled)")

    @app.exception_handler(StoreError)
    async def store_error(request: Request, exc: StoreError):
        logger.error("store_error", path=request.url.path, error=str(exc))
        return _error(500, str(exc))


# ══════════════════════════════════════════════════════════════
#  App factory
# ══════════════════════════════════════════════════════════════

def create_app(services: ServiceContainer = None) -> FastAPI:
    services = services or build_services(get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.startup()
        logger.info("cod_confirm_started",
                    store_backend=services.store.backend_name,
                    scheduler=services.supervisor.started)
        yield
        await services.shutdown()
        logger.info("cod_confirm_stopped")

    app = FastAPI(
        title="CodConfirm API",
        description="COD order confirmation calls with WhatsApp fallback",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _install_error_handlers(app)
    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    # ══════════════════════════════════════════════════════════
    #  HEALTH & DASHBOARD
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health(request: Request):
        services = _services(request)
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "store_backend": services.store.backend_name,
            "scheduler": services.supervisor.status(),
        }

    @app.get("/api/v1/stats")
    async def get_stats(request: Request):
        store = _services(request).store
        return {
            "orders": await store.order_stats(),
            "customer_calls": await store.customer_call_stats(),
        }

    @app.get("/api/v1/orders")
    async def list_orders(request: Request, limit: int = Query(50, ge=1, le=500)):
        return await _services(request).store.list_recent_orders(limit)

    @app.get("/api/debug/webhook-events")
    async def recent_webhook_events(request: Request):
        return {"events": _services(request).order_webhooks.recent_events()}

    # ══════════════════════════════════════════════════════════
    #  MANUAL ORDER ACTIONS
    # ══════════════════════════════════════════════════════════

    @app.post("/api/v1/orders")
    async def create_order(req: CreateOrderRequest, request: Request):
        result = await _services(request).orchestrator.create_manual_order(
            customer_name=req.customer_name,
            phone=req.phone,
            amount=req.amount,
            store_name=req.store_name,
            order_number=req.order_number,
            request_base_url=_base_url(request),
        )
        return {"success": True, **result}

    @app.post("/api/v1/call-logs/{call_log_id}/recall")
    async def recall_call_log(call_log_id: str, request: Request):
        result = await _services(request).orchestrator.recall(call_log_id, _base_url(request))
        return {"success": result["recalled"], **result}

    @app.post("/api/v1/orders/{order_id}/confirm")
    async def confirm_order(order_id: str, request: Request):
        return await _services(request).orchestrator.manual_decision(order_id, Intent.CONFIRM)

    @app.post("/api/v1/orders/{order_id}/cancel")
    async def cancel_order(order_id: str, request: Request):
        return await _services(request).orchestrator.manual_decision(order_id, Intent.CANCEL)

    # ══════════════════════════════════════════════════════════
    #  GENERIC CUSTOMER CALLS
    # ══════════════════════════════════════════════════════════

    @app.get("/api/calls")
    async def list_calls(request: Request, limit: int = Query(50, ge=1, le=500)):
        return await _services(request).store.list_recent_customer_calls(limit)

    @app.post("/api/calls/upload")
    async def upload_calls(req: UploadCallsRequest, request: Request):
        result = await _services(request).customer_calls.upload(req.customers)
        return {
            "success": True,
            "created": len(result["created"]),
            "skipped": len(result["errors"]),
            "errors": result["errors"],
        }

    @app.post("/api/calls/start")
    async def start_calls(request: Request):
        return {"success": True, **await _services(request).customer_calls.start_all()}

    @app.post("/api/calls/{call_id}/call")
    async def call_one(call_id: str, request: Request):
        call = await _services(request).customer_calls.call_one(call_id)
        return {"success": True, "call": call}

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS — Voice provider
    # ══════════════════════════════════════════════════════════

    @app.post("/api/order-vapi-webhook")
    async def order_voice_webhook(request: Request):
        body = await _read_payload(request)
        return await _services(request).order_webhooks.handle(body)

    @app.get("/api/vapi-webhook")
    async def voice_webhook_probe():
        return {"ok": True}

    @app.post("/api/vapi-webhook")
    async def voice_webhook(request: Request):
        body = await _read_payload(request)
        return await _services(request).customer_webhooks.handle(body)

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS — WhatsApp replies
    # ══════════════════════════════════════════════════════════

    @app.post("/api/whatsapp-webhook")
    async def whatsapp_webhook(request: Request):
        form = await _read_payload(request)
        try:
            document = await _services(request).whatsapp_replies.handle(form)
        except Exception as e:
            logger.error("whatsapp_webhook_error", error=str(e))
            document = twiml_message()
        return Response(content=document, media_type="text/xml")

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS — Commerce platform
    # ══════════════════════════════════════════════════════════

    @app.post("/webhooks/orders/create")
    async def order_created(request: Request):
        payload = await _read_payload(request)
        shop: Optional[str] = request.headers.get("x-shopify-shop-domain") or payload.get("shop") or ""
        try:
            result = await _services(request).orchestrator.admit_commerce_order(
                shop, payload, _base_url(request),
            )
        except Exception as e:
            logger.error("order_created_webhook_error", order_id=payload.get("id"), error=str(e))
            return {"ok": True, "admitted": False}
        result.pop("result", None)
        return {"ok": True, **result}


app = create_app()


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
