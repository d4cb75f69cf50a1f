"""
In-process domain event hub.

The approval engine and the SLA sweeper announce *when* something
happened; subscribers (notifications today, webhooks or email later)
decide what to do about it.  Events are emitted after the primary commit,
and a failing subscriber never propagates to the emitter.

Usage:
    from procurement.services.events import subscribe, emit

    @subscribe("approval.stage_activated")
    def _notify(event):
        ...

    emit("approval.stage_activated", tenant_id=1, process_id=7, ...)

Event names:
    approval.process_initiated   process created, first stage pending
    approval.stage_activated     a request became pending (payload carries
                                 the stage conditions that fired)
    approval.request_decided     a pending request was approved or rejected
    approval.process_completed   last stage approved
    approval.process_rejected    any stage rejected
    approval.sla_breached        sweeper found a pending request past due_at
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Callable

from procurement.models import db

logger = logging.getLogger(__name__)

EVENT_NAMES = {
    "approval.process_initiated",
    "approval.stage_activated",
    "approval.request_decided",
    "approval.process_completed",
    "approval.process_rejected",
    "approval.sla_breached",
}

_subscribers: dict[str, list[Callable]] = defaultdict(list)


def subscribe(name: str):
    """Decorator registering *fn* as a handler for event *name*."""
    if name not in EVENT_NAMES:
        raise ValueError(f"Unknown event: {name}")

    def decorator(fn: Callable) -> Callable:
        if fn not in _subscribers[name]:
            _subscribers[name].append(fn)
        return fn
    return decorator


def unsubscribe(name: str, fn: Callable) -> None:
    handlers = _subscribers.get(name, [])
    if fn in handlers:
        handlers.remove(fn)


def emit(name: str, **payload) -> int:
    """
    Deliver an event to every subscriber.

    Returns the number of handlers that completed without raising.
    """
    event = {"name": name, **payload}
    delivered = 0
    for handler in list(_subscribers.get(name, [])):
        try:
            handler(event)
            delivered += 1
        except Exception:
            db.session.rollback()
            logger.warning(
                "Event handler %s failed for %s", getattr(handler, "__name__", handler), name,
                exc_info=True,
                extra={"event_type": name, "tenant_id": payload.get("tenant_id")},
            )
    logger.debug("Event %s delivered to %d handler(s)", name, delivered,
                 extra={"event_type": name, "tenant_id": payload.get("tenant_id")})
    return delivered
