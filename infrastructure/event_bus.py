"""In-process publish/subscribe bus for domain events"""
import asyncio
import inspect
import threading
from collections import deque
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

import structlog

from domain.events import DomainEvent

logger = structlog.get_logger(__name__)

EventHandler = Callable[[DomainEvent], Union[None, Awaitable[None]]]


def _handler_name(handler: EventHandler) -> str:
    return getattr(handler, "__name__", repr(handler))


class EventBus:
    """Best-effort, fire-and-forget event delivery.

    Handlers may be plain functions or coroutines. A failing handler is
    logged and skipped; it never reaches the publisher and never stops the
    remaining handlers.

    ``dispatch`` records the events and hands delivery to background tasks,
    so the caller never waits on a subscriber. ``publish`` delivers inline.

    Usage:
        bus.subscribe("reservation.created", handler)
        bus.dispatch([event])
        await bus.drain()
    """

    def __init__(self, history_size: int = 100):
        self._subscribers: Dict[str, List[EventHandler]] = {}
        self._history: deque = deque(maxlen=history_size)
        self._subscriber_lock = threading.Lock()
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        with self._subscriber_lock:
            handlers = self._subscribers.setdefault(event_type, [])
            if handler not in handlers:
                handlers.append(handler)
                logger.debug("Handler subscribed", event_type=event_type,
                             handler=_handler_name(handler))

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        with self._subscriber_lock:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def _handlers_for(self, event: DomainEvent) -> List[EventHandler]:
        with self._subscriber_lock:
            return list(self._subscribers.get(event.event_type, []))

    async def _deliver(self, handler: EventHandler, event: DomainEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            logger.warning(
                "Event handler cancelled",
                event_type=event.event_type,
                reservation_id=str(event.reservation_id),
                handler=_handler_name(handler),
            )
            raise
        except Exception:
            logger.exception(
                "Event handler failed",
                event_type=event.event_type,
                reservation_id=str(event.reservation_id),
                handler=_handler_name(handler),
            )

    async def publish(self, event: DomainEvent) -> None:
        """Record the event and await every handler in turn"""
        self._history.append(event)
        for handler in self._handlers_for(event):
            await self._deliver(handler, event)

    def dispatch(self, events: Iterable[DomainEvent]) -> None:
        """Record the events and deliver them on background tasks.

        Must be called from a running event loop.
        """
        loop = asyncio.get_running_loop()
        for event in events:
            self._history.append(event)
            for handler in self._handlers_for(event):
                task = loop.create_task(self._deliver(handler, event))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    @property
    def pending_deliveries(self) -> int:
        return len(self._pending)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries; cancel whatever outlives the timeout"""
        if not self._pending:
            return
        pending = list(self._pending)
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            logger.warning("Event deliveries cancelled on drain", cancelled=len(not_done))
            await asyncio.gather(*not_done, return_exceptions=True)

    def get_history(self, event_type: Optional[str] = None, limit: int = 50) -> List[DomainEvent]:
        """Most recent events first (debugging aid)"""
        history = list(self._history)
        if event_type:
            history = [e for e in history if e.event_type == event_type]
        return list(reversed(history))[:limit]

    def get_subscribers(self) -> Dict[str, Any]:
        with self._subscriber_lock:
            return {
                event_type: [_handler_name(h) for h in handlers]
                for event_type, handlers in self._subscribers.items()
            }


def log_domain_event(event: DomainEvent) -> None:
    """Audit subscriber: writes every event to the structured log"""
    logger.info(
        "Domain event",
        event_type=event.event_type,
        reservation_id=str(event.reservation_id),
        resource_id=event.resource_id,
        **{k: v for k, v in event.payload.items() if k not in ("event", "event_type", "reservation_id", "resource_id")},
    )
