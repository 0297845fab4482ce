from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional

import httpx
import redis.asyncio as redis
import structlog
from fastapi import FastAPI, HTTPException, Request, WebSocket
from fastapi import WebSocketDisconnect
from fastapi.responses import ORJSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from . import guestlist
from .config import Settings
from .errors import BoxOfficeError, FulfillmentError
from .fulfillment.transaction import Fulfiller, Gated
from .infra import timings
from .infra.sql import make_async_engine
from .infra.timings import timeit
from .logs import configure_logging
from .model import inventory
from .model.db import Base, CatalogEntity, InventoryTier, KIND_PRODUCT
from .notify import NotificationDispatcher, new_transport
from .payments import PaymentAdapter
from .payments.paypal import PayPalAdapter
from .payments.stripe_provider import StripeAdapter
from .propagate import AnyCache, Broadcaster, Propagator, cached, new_cache
from .propagate.keys import (
    k_event, k_events_all, k_guestlist, k_inventory, k_merch_all, k_product
)
from .router import ProviderEventRouter

log = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: AsyncEngine
    Session: async_sessionmaker[AsyncSession]
    gated: Gated
    http: httpx.AsyncClient
    redis: Optional[redis.Redis]
    cache: AnyCache
    broadcaster: Broadcaster
    fulfiller: Fulfiller
    router: ProviderEventRouter


def build_services(settings: Settings) -> Services:
    engine, Session, gated = make_async_engine(settings.database_url)

    http = httpx.AsyncClient(
        timeout=10.0,
        limits=httpx.Limits(max_connections=64, max_keepalive_connections=32),
    )

    r = None
    if settings.cache_backend == "redis":
        r = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=settings.redis_max_conn,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    cache = new_cache(settings.cache_backend, r=r,
                      ttl_seconds=settings.cache_ttl_seconds)
    broadcaster = Broadcaster()

    transport = new_transport(
        settings.mail_backend,
        **({
            "host": settings.smtp_host,
            "port": settings.smtp_port,
            "sender": settings.mail_from,
            "user": settings.smtp_user,
            "password": settings.smtp_password,
        } if settings.mail_backend == "smtp" else {})
    )

    fulfiller = Fulfiller(
        Session, gated,
        code_secret=settings.code_secret,
        dispatcher=NotificationDispatcher(transport),
        propagator=Propagator(cache, broadcaster),
    )

    adapters: Dict[str, PaymentAdapter] = {
        "stripe": StripeAdapter(
            api_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
        ),
        "paypal": PayPalAdapter(
            http,
            base_url=settings.paypal_api_url,
            client_id=settings.paypal_client_id,
            client_secret=settings.paypal_client_secret,
            webhook_id=settings.paypal_webhook_id,
        ),
    }

    return Services(
        settings=settings,
        engine=engine,
        Session=Session,
        gated=gated,
        http=http,
        redis=r,
        cache=cache,
        broadcaster=broadcaster,
        fulfiller=fulfiller,
        router=ProviderEventRouter(adapters, fulfiller),
    )


def _error_response(e: BoxOfficeError,
                    status: Optional[int] = None) -> ORJSONResponse:
    return ORJSONResponse(
        {"detail": e.message, "code": e.code},
        status_code=status or e.http_status,
    )


def create_app(settings: Optional[Settings] = None,
               services: Optional[Services] = None) -> FastAPI:
    """uvicorn boxoffice.server:create_app --factory"""
    if services is None:
        settings = settings or Settings.from_env()
        configure_logging(settings.log_level, settings.log_format)
        services = build_services(settings)
    svc = services

    app = FastAPI(
        title="BoxOffice",
        default_response_class=ORJSONResponse,
    )
    app.state.services = svc

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _db_init():
        async with svc.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        log.info("boxoffice_started",
                 cache_backend=svc.settings.cache_backend,
                 mail_backend=svc.settings.mail_backend,
                 providers=sorted(svc.router.adapters))

    @app.on_event("shutdown")
    async def _realtime_stop():
        await svc.broadcaster.close()

    @app.on_event("shutdown")
    async def _http_client_stop():
        await svc.http.aclose()

    @app.on_event("shutdown")
    async def _redis_stop():
        if svc.redis is not None:
            await svc.redis.aclose()

    @app.on_event("shutdown")
    async def _db_stop():
        await svc.engine.dispose()

    @app.exception_handler(BoxOfficeError)
    async def _boxoffice_error(request: Request, e: BoxOfficeError):
        return _error_response(e)

    # ----------------------------
    # Payment provider webhooks
    # ----------------------------
    @app.post("/payments/webhook/{provider}")
    async def payments_webhook(provider: str, request: Request):
        payload = await request.body()
        headers = dict(request.headers)
        try:
            async with timeit(f"webhook.{provider}"):
                outcome = await svc.router.handle_webhook(
                    provider, payload, headers
                )
        except FulfillmentError as e:
            # non-2xx so the provider redelivers and operators notice
            return _error_response(e, 500)
        return outcome.as_dict()

    # ----------------------------
    # Fallback: client asks us to verify its checkout session
    # ----------------------------
    @app.post("/payments/verify/{provider}")
    async def payments_verify(provider: str, payload: dict):
        reference = (payload.get("session_reference") or "").strip()
        if not reference:
            raise HTTPException(400, detail="session_reference is required")
        async with timeit(f"verify.{provider}"):
            result = await svc.router.verify_session(provider, reference)
        return result.as_dict()

    # ----------------------------
    # API: fulfillment status (polled by the success page)
    # ----------------------------
    @app.get("/api/fulfillments/{payment_reference}")
    async def get_fulfillment(payment_reference: str):
        async with timeit("db.get_fulfillment"):
            result = await svc.fulfiller.lookup(payment_reference)
        if result is None:
            # webhook may still be in flight: let the client keep polling
            raise HTTPException(404, detail="fulfillment not found")
        return result.as_dict()

    @app.get("/api/catalog/{catalog_id}/inventory")
    async def get_inventory(catalog_id: str):
        async def load():
            async with svc.gated():
                async with svc.Session() as session:
                    return await inventory.compute_inventory(
                        session, catalog_id
                    )
        return await cached(svc.cache, k_inventory(catalog_id), load,
                            ttl=svc.settings.inventory_cache_ttl_seconds)

    @app.post("/api/redeem")
    async def redeem(payload: dict):
        code = (payload.get("code") or "").strip()
        if not code:
            raise HTTPException(400, detail="code is required")
        unit = await svc.fulfiller.redeem(code, payload.get("catalog_id"))
        return {"ok": True, "unit_id": unit.unit_id,
                "catalog_id": unit.catalog_id, "tier_name": unit.tier_name,
                "sequence": unit.sequence, "status": unit.status}

    # ----------------------------
    # Guestlist
    # ----------------------------
    @app.get("/api/guestlist/{event_id}")
    async def get_guestlist(event_id: str):
        async def load():
            return await guestlist.list_guests(svc.fulfiller, event_id)
        return await cached(svc.cache, k_guestlist(event_id), load)

    @app.post("/api/guestlist/{entry_id}/ticket")
    async def issue_guest_ticket(entry_id: int,
                                 payload: Optional[dict] = None):
        email = ((payload or {}).get("email") or "").strip() or None
        result = await guestlist.issue_guest_ticket(
            svc.fulfiller, entry_id, email
        )
        return result.as_dict()

    @app.post("/api/guestlist/{entry_id}/checkin")
    async def guest_check_in(entry_id: int):
        return await guestlist.check_in(svc.fulfiller, entry_id)

    # ----------------------------
    # Admin
    # ----------------------------
    @app.post("/api/admin/guestlist/{event_id}")
    async def add_guest(event_id: str, payload: dict):
        return await guestlist.add_guest(
            svc.fulfiller, event_id, payload.get("name", ""),
            category=payload.get("category", "guest"),
            plus_one=bool(payload.get("plus_one", False)),
            email=(payload.get("email") or "").strip() or None,
        )

    @app.post("/api/admin/restock")
    async def restock(payload: dict):
        tier_id = payload.get("tier_id")
        try:
            quantity = int(payload.get("quantity", 0))
        except (TypeError, ValueError):
            raise HTTPException(400, detail="invalid quantity")
        if not tier_id or quantity <= 0:
            raise HTTPException(400, detail="tier_id and a positive "
                                            "quantity are required")
        async with svc.gated():
            async with svc.Session() as session:
                async with session.begin():
                    available = await inventory.restock(
                        session, tier_id, quantity
                    )
                    tier = await session.get(InventoryTier, tier_id)
                    entity = await session.get(CatalogEntity, tier.catalog_id)
                    catalog_id, kind = entity.id, entity.kind

        log.info("tier_restocked", tier_id=tier_id, quantity=quantity,
                 available=available)
        if kind == KIND_PRODUCT:
            keys = [k_merch_all(), k_product(catalog_id)]
            event = "merch_update"
        else:
            keys = [k_events_all(), k_event(catalog_id)]
            event = "inventory_update"
        await svc.fulfiller.announce(
            keys + [k_inventory(catalog_id)], event,
            {"type": "restocked", "catalog_id": catalog_id,
             "tier_id": tier_id, "available": available,
             "sold_out": available <= 0},
        )
        return {"ok": True, "tier_id": tier_id, "available": available}

    @app.get("/api/admin/timings")
    async def get_timings():
        return timings.snapshot()

    # ----------------------------
    # Realtime
    # ----------------------------
    @app.websocket("/ws")
    async def realtime(websocket: WebSocket):
        await svc.broadcaster.connect(websocket)
        try:
            while True:
                # observers only listen; reading detects the disconnect
                await websocket.receive_text()
        except WebSocketDisconnect:
            log.debug("websocket_closed_by_client")
        finally:
            svc.broadcaster.disconnect(websocket)

    return app
