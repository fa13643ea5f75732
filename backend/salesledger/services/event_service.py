# Overview: In-process domain event fan-out; listeners run after commit and never fail the caller.

from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable

from flask import current_app

from .concurrency import SideEffectResult, run_after_commit

EXTENSION_KEY = "salesledger_events"
ALL_EVENTS = "*"

TRANSACTION_CREATED = "transaction_created"
TRANSACTION_UPDATED = "transaction_updated"
STOCK_RECONCILED = "stock_reconciled"
DEPOSIT_RECORDED = "deposit_recorded"

Listener = Callable[[str, dict], Any]


class EventBus:
    """Listeners keyed by event name; ALL_EVENTS listeners receive everything."""

    def __init__(self):
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def subscribe(self, event_name: str, listener: Listener) -> None:
        if listener not in self._listeners[event_name]:
            self._listeners[event_name].append(listener)

    def unsubscribe(self, event_name: str, listener: Listener) -> None:
        if listener in self._listeners.get(event_name, []):
            self._listeners[event_name].remove(listener)

    def listeners_for(self, event_name: str) -> list[Listener]:
        return list(self._listeners.get(event_name, [])) + list(self._listeners.get(ALL_EVENTS, []))

    def emit(self, event_name: str, payload: dict) -> list[SideEffectResult]:
        results = []
        for listener in self.listeners_for(event_name):
            label = f"event:{event_name}:{getattr(listener, '__name__', 'listener')}"
            results.append(run_after_commit(listener, event_name, payload, label=label))
        return results


def _log_event(event_name: str, payload: dict) -> None:
    current_app.logger.info("event %s %s", event_name, payload)


def init_app(app) -> EventBus:
    bus = EventBus()
    bus.subscribe(ALL_EVENTS, _log_event)
    app.extensions[EXTENSION_KEY] = bus
    return bus


def get_bus() -> EventBus:
    return current_app.extensions[EXTENSION_KEY]


def subscribe(event_name: str, listener: Listener) -> None:
    get_bus().subscribe(event_name, listener)


def unsubscribe(event_name: str, listener: Listener) -> None:
    get_bus().unsubscribe(event_name, listener)


def emit(event_name: str, payload: dict) -> list[SideEffectResult]:
    """Fire-and-forget: listener failures are logged by run_after_commit."""
    return get_bus().emit(event_name, payload)
