"""
Bridge Push Channel

Typed in-process event bus that broadcasts pipeline progress to subscribers
(status websockets, dashboards, tests). The bus is an explicit object owned by
the service and handed to each component; there is no module-level instance.

    Indexer ──LockObserved──────┐
    Builder ──ProofGenerated────┼──▶ EventBus ──▶ subscribers
    Relay ───CommitmentSubmitted┤
    Indexer ──AssetUnlocked─────┘

Handlers run synchronously on the publishing thread, after the publisher's
storage transaction has committed. A failing handler is reported to
``on_error`` and never breaks the pipeline.

Usage:

    bus = EventBus()

    @bus.subscribe(AssetUnlocked)
    def on_unlock(event):
        print(event.asset_id, event.chain)

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Type

from lockstep.bridge.observability import BridgeLayer, correlation_id_var, get_logger

_log = get_logger("events", BridgeLayer.SERVICE)


# ════════════════════════════════════════════════════════════════════════════
# EVENT BASE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class Event:
    """Base class for bridge events."""

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    correlation_id: Optional[str] = field(default_factory=lambda: correlation_id_var.get() or None)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, sort_keys=True)


# ════════════════════════════════════════════════════════════════════════════
# DOMAIN EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class LockObserved(Event):
    """A lock notification was recorded from a source ledger."""
    chain: str = ""
    asset_id: int = 0
    source_owner: str = ""
    recipient: str = ""
    lock_hash: str = ""
    block_number: int = 0
    tx_hash: str = ""


@dataclass
class ProofGenerated(Event):
    """A block's commitment and proofs were persisted."""
    chain: str = ""
    block_number: int = 0
    root: str = ""
    lock_count: int = 0


@dataclass
class CommitmentSubmitted(Event):
    """A block commitment is live on the destination verifier."""
    source_chain: str = ""
    destination_chain: str = ""
    block_number: int = 0
    root: str = ""
    tx_hash: str = ""
    already_present: bool = False


@dataclass
class AssetUnlocked(Event):
    """An unlock was observed on (or driven to) a destination ledger."""
    chain: str = ""
    asset_id: int = 0
    recipient: str = ""
    lock_hash: str = ""
    tx_hash: str = ""


# ════════════════════════════════════════════════════════════════════════════
# EVENT BUS
# ════════════════════════════════════════════════════════════════════════════


EventHandler = Callable[[Event], None]


@dataclass
class EventHandlerRegistration:
    handler: EventHandler
    event_types: Set[Type[Event]]
    priority: int = 0
    filter_func: Optional[Callable[[Event], bool]] = None


class EventHandlerError(Exception):
    """Error raised inside a subscriber."""
    def __init__(self, event: Event, handler: EventHandler, cause: Exception):
        self.event = event
        self.handler = handler
        self.cause = cause
        name = getattr(handler, "__name__", repr(handler))
        super().__init__(f"Handler {name} failed for {event.event_type}: {cause}")


def _log_handler_error(error: EventHandlerError) -> None:
    _log.error("event handler failed", error_code="EVENT_HANDLER", event_type=error.event.event_type, error=str(error))


class EventBus:
    """
    In-memory pub/sub with typed subscriptions, filters and priorities.

    Thread-safe for concurrent publishing and subscribing.
    """

    def __init__(self, on_error: Optional[Callable[[EventHandlerError], None]] = None):
        self._handlers: List[EventHandlerRegistration] = []
        self._lock = threading.RLock()
        self._on_error = on_error or _log_handler_error
        self._published_count = 0
        self._handled_count = 0
        self._error_count = 0

    def subscribe(
        self,
        *event_types: Type[Event],
        priority: int = 0,
        filter_func: Optional[Callable[[Event], bool]] = None,
    ) -> Callable[[EventHandler], EventHandler]:
        """Decorator subscribing a handler to ``event_types`` (all events if none given)."""
        def decorator(handler: EventHandler) -> EventHandler:
            registration = EventHandlerRegistration(
                handler=handler,
                event_types=set(event_types) if event_types else {Event},
                priority=priority,
                filter_func=filter_func,
            )
            with self._lock:
                self._handlers.append(registration)
                self._handlers.sort(key=lambda r: -r.priority)
            return handler
        return decorator

    def unsubscribe(self, handler: EventHandler) -> bool:
        with self._lock:
            original_len = len(self._handlers)
            self._handlers = [r for r in self._handlers if r.handler != handler]
            return len(self._handlers) < original_len

    def publish(self, event: Event) -> None:
        with self._lock:
            self._published_count += 1
            handlers_to_call = [
                r for r in self._handlers
                if any(isinstance(event, t) for t in r.event_types)
                and (r.filter_func is None or r.filter_func(event))
            ]

        # Outside the lock so handlers may publish or subscribe.
        for registration in handlers_to_call:
            self._call_handler(registration.handler, event)

    def _call_handler(self, handler: EventHandler, event: Event) -> None:
        try:
            handler(event)
            with self._lock:
                self._handled_count += 1
        except Exception as e:
            with self._lock:
                self._error_count += 1
            self._on_error(EventHandlerError(event, handler, e))

    @property
    def metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "published_count": self._published_count,
                "handled_count": self._handled_count,
                "error_count": self._error_count,
                "handler_count": len(self._handlers),
            }


class EventRecorder:
    """Subscriber that keeps every event it sees, in order."""

    def __init__(self, bus: Optional[EventBus] = None):
        self.events: List[Event] = []
        self._lock = threading.Lock()
        if bus is not None:
            bus.subscribe()(self)

    def __call__(self, event: Event) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: Type[Event]) -> List[Event]:
        with self._lock:
            return [e for e in self.events if isinstance(e, event_type)]
