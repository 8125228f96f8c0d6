# order_storage.py
"""
Order bookkeeping between checkout and the Stripe webhook.

Two stores keyed by the Stripe checkout session id:

  pending   - the design payload, written at checkout, consumed by the webhook.
              Kept 1 hour.
  completed - the fulfillment result (mockup URL + Printful order id),
              polled by the confirmation page. Kept 24 hours.

`MemoryOrderStorage` is process-local and loses everything on restart.
`SqlOrderStorage` keeps the same contract on top of SQLAlchemy so several
workers (or a restart) see the same orders. Writes are last-write-wins.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple

from pydantic import BaseModel, Field
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import async_sessionmaker

from mapmarked.models import CompletedOrderRecord, PendingOrderRecord

log = logging.getLogger(__name__)

STATUS_AWAITING_PAYMENT = "awaiting_payment"
STATUS_NEEDS_RETRY = "needs_retry"

MAX_ERROR_LENGTH = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PendingOrder(BaseModel):
    image_data: str  # data URI, or https URL of an already-hosted render
    city_name: str = ""
    state_name: str = ""
    theme_name: str = ""
    status: str = STATUS_AWAITING_PAYMENT
    failed_step: Optional[str] = None
    last_error: Optional[str] = None
    # set once the Printful draft order exists, so a retry resumes after it
    printful_order_id: Optional[int] = None
    printful_file_id: Optional[int] = None
    created_at: datetime = Field(default_factory=_utcnow)


class CompletedOrder(BaseModel):
    mockup_url: str = ""
    printful_order_id: int
    created_at: datetime = Field(default_factory=_utcnow)


class OrderStorage(ABC):
    """put/get/delete per store, keyed by session id, plus a TTL sweep."""

    def __init__(
        self,
        pending_ttl: timedelta = timedelta(hours=1),
        completed_ttl: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.pending_ttl = pending_ttl
        self.completed_ttl = completed_ttl
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    def is_expired(self, created_at: datetime, ttl: timedelta) -> bool:
        return self.now() - created_at > ttl

    @abstractmethod
    async def store_pending_order(self, session_id: str, order: PendingOrder) -> None: ...

    @abstractmethod
    async def get_pending_order(self, session_id: str) -> Optional[PendingOrder]: ...

    @abstractmethod
    async def delete_pending_order(self, session_id: str) -> None: ...

    @abstractmethod
    async def store_completed_order(self, session_id: str, order: CompletedOrder) -> None: ...

    @abstractmethod
    async def get_completed_order(self, session_id: str) -> Optional[CompletedOrder]: ...

    @abstractmethod
    async def sweep(self) -> Tuple[int, int]:
        """Drops expired entries. Returns (pending_removed, completed_removed)."""

    async def mark_pending_failed(self, session_id: str, step: str, error: str) -> None:
        """Flags a pending order whose fulfillment broke mid-way, keeping its payload."""
        order = await self.get_pending_order(session_id)
        if order is None:
            return
        updated = order.model_copy(update={
            "status": STATUS_NEEDS_RETRY,
            "failed_step": step,
            "last_error": error[:MAX_ERROR_LENGTH],
        })
        await self.store_pending_order(session_id, updated)

    async def record_printful_order(self, session_id: str, order_id: int, file_id: Optional[int]) -> None:
        order = await self.get_pending_order(session_id)
        if order is None:
            return
        await self.store_pending_order(session_id, order.model_copy(update={
            "printful_order_id": order_id,
            "printful_file_id": file_id,
        }))

    async def close(self) -> None:
        pass


class MemoryOrderStorage(OrderStorage):

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._pending: Dict[str, PendingOrder] = {}
        self._completed: Dict[str, CompletedOrder] = {}

    async def store_pending_order(self, session_id: str, order: PendingOrder) -> None:
        self._pending[session_id] = order

    async def get_pending_order(self, session_id: str) -> Optional[PendingOrder]:
        order = self._pending.get(session_id)
        if order is not None and self.is_expired(order.created_at, self.pending_ttl):
            self._pending.pop(session_id, None)
            return None
        return order

    async def delete_pending_order(self, session_id: str) -> None:
        self._pending.pop(session_id, None)

    async def store_completed_order(self, session_id: str, order: CompletedOrder) -> None:
        self._completed[session_id] = order

    async def get_completed_order(self, session_id: str) -> Optional[CompletedOrder]:
        order = self._completed.get(session_id)
        if order is not None and self.is_expired(order.created_at, self.completed_ttl):
            self._completed.pop(session_id, None)
            return None
        return order

    async def sweep(self) -> Tuple[int, int]:
        now = self.now()
        stale_pending = [k for k, v in self._pending.items() if now - v.created_at > self.pending_ttl]
        stale_completed = [k for k, v in self._completed.items() if now - v.created_at > self.completed_ttl]
        for key in stale_pending:
            self._pending.pop(key, None)
        for key in stale_completed:
            self._completed.pop(key, None)
        return len(stale_pending), len(stale_completed)


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_naive_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class SqlOrderStorage(OrderStorage):
    """Durable backend. Each call runs in its own short transaction."""

    def __init__(self, session_maker: async_sessionmaker, **kwargs):
        super().__init__(**kwargs)
        self._session_maker = session_maker

    async def store_pending_order(self, session_id: str, order: PendingOrder) -> None:
        record = PendingOrderRecord(
            session_id=session_id,
            image_data=order.image_data,
            city_name=order.city_name,
            state_name=order.state_name,
            theme_name=order.theme_name,
            status=order.status,
            failed_step=order.failed_step,
            last_error=order.last_error,
            printful_order_id=order.printful_order_id,
            printful_file_id=order.printful_file_id,
            created_at=_to_naive_utc(order.created_at),
        )
        async with self._session_maker() as db:
            await db.merge(record)
            await db.commit()

    async def get_pending_order(self, session_id: str) -> Optional[PendingOrder]:
        async with self._session_maker() as db:
            record = await db.get(PendingOrderRecord, session_id)
            if record is None:
                return None
            created_at = _from_naive_utc(record.created_at)
            if self.is_expired(created_at, self.pending_ttl):
                return None  # left for the sweeper
            return PendingOrder(
                image_data=record.image_data,
                city_name=record.city_name,
                state_name=record.state_name,
                theme_name=record.theme_name,
                status=record.status,
                failed_step=record.failed_step,
                last_error=record.last_error,
                printful_order_id=record.printful_order_id,
                printful_file_id=record.printful_file_id,
                created_at=created_at,
            )

    async def delete_pending_order(self, session_id: str) -> None:
        async with self._session_maker() as db:
            await db.execute(delete(PendingOrderRecord).where(PendingOrderRecord.session_id == session_id))
            await db.commit()

    async def store_completed_order(self, session_id: str, order: CompletedOrder) -> None:
        record = CompletedOrderRecord(
            session_id=session_id,
            mockup_url=order.mockup_url,
            printful_order_id=order.printful_order_id,
            created_at=_to_naive_utc(order.created_at),
        )
        async with self._session_maker() as db:
            await db.merge(record)
            await db.commit()

    async def get_completed_order(self, session_id: str) -> Optional[CompletedOrder]:
        async with self._session_maker() as db:
            record = await db.get(CompletedOrderRecord, session_id)
            if record is None:
                return None
            created_at = _from_naive_utc(record.created_at)
            if self.is_expired(created_at, self.completed_ttl):
                return None
            return CompletedOrder(
                mockup_url=record.mockup_url or "",
                printful_order_id=record.printful_order_id,
                created_at=created_at,
            )

    async def sweep(self) -> Tuple[int, int]:
        now = _to_naive_utc(self.now())
        async with self._session_maker() as db:
            r_pending = await db.execute(
                delete(PendingOrderRecord)
                .where(PendingOrderRecord.created_at < now - self.pending_ttl)
            )
            r_completed = await db.execute(
                delete(CompletedOrderRecord)
                .where(CompletedOrderRecord.created_at < now - self.completed_ttl)
            )
            removed = (r_pending.rowcount or 0, r_completed.rowcount or 0)
            await db.commit()
        return removed


async def run_sweeper(storage: OrderStorage, interval_seconds: float) -> None:
    """Background loop: sweeps expired orders every `interval_seconds` until cancelled."""
    log.info(f"Order sweeper started (every {interval_seconds}s).")
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            pending_removed, completed_removed = await storage.sweep()
            if pending_removed or completed_removed:
                log.info(f"Order sweep: removed {pending_removed} pending, {completed_removed} completed.")
        except Exception as e:
            log.error(f"Error during order sweep: {e}", exc_info=True)
