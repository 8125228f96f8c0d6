# interface.py
"""
Service wiring for the web layer.

Holds the process-wide order store and the external-service adapters, and
exposes them as FastAPI dependencies. server.py opens/closes the store on
startup/shutdown; tests swap any of these through `app.dependency_overrides`.
"""

import logging
from datetime import timedelta
from functools import lru_cache
from typing import Optional

from mapmarked.db import create_tables, dispose_engine, get_session_maker
from mapmarked.mockup_storage import MockupStorage
from mapmarked.order_storage import MemoryOrderStorage, OrderStorage, SqlOrderStorage
from mapmarked.payments import PaymentGateway
from mapmarked.printful import PrintfulClient
from mapmarked.renderer import RendererClient
from mapmarked.settings import Settings, settings

log = logging.getLogger(__name__)

_order_storage: Optional[OrderStorage] = None


def build_order_storage(config: Settings) -> OrderStorage:
    ttls = dict(
        pending_ttl=timedelta(seconds=config.PENDING_ORDER_TTL_SECONDS),
        completed_ttl=timedelta(seconds=config.COMPLETED_ORDER_TTL_SECONDS),
    )
    backend = config.ORDER_STORE_BACKEND.strip().lower()
    if backend == "sql":
        log.info("Order store backend: SQL")
        return SqlOrderStorage(get_session_maker(), **ttls)
    if backend != "memory":
        log.warning(f"Unknown ORDER_STORE_BACKEND '{config.ORDER_STORE_BACKEND}', falling back to memory.")
    log.info("Order store backend: in-memory (orders are lost on restart)")
    return MemoryOrderStorage(**ttls)


async def open_order_storage(config: Settings = settings) -> OrderStorage:
    global _order_storage
    storage = build_order_storage(config)
    if isinstance(storage, SqlOrderStorage):
        await create_tables()
    _order_storage = storage
    return storage


async def close_order_storage() -> None:
    global _order_storage
    if _order_storage is not None:
        await _order_storage.close()
        if isinstance(_order_storage, SqlOrderStorage):
            await dispose_engine()
    _order_storage = None


# -----------------------
# FastAPI dependencies
# -----------------------

def get_order_storage() -> OrderStorage:
    global _order_storage
    if _order_storage is None:
        # app served without lifespan events (e.g. a bare TestClient)
        _order_storage = build_order_storage(settings)
    return _order_storage


@lru_cache
def get_payment_gateway() -> PaymentGateway:
    return PaymentGateway(settings)


@lru_cache
def get_printful_client() -> PrintfulClient:
    return PrintfulClient(settings)


@lru_cache
def get_renderer_client() -> RendererClient:
    return RendererClient(settings)


@lru_cache
def get_mockup_storage() -> MockupStorage:
    return MockupStorage(settings)


def get_settings() -> Settings:
    return settings
