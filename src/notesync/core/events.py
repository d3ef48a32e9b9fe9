"""Event bus for run observability.

A small synchronous bus that carries domain events from the coordinator
to CLI formatters, keeping presentation out of the engine.
"""

from collections.abc import Callable
from typing import Any, Protocol, TypeVar

T = TypeVar("T")


class EventBusProtocol(Protocol):
    """Interface shared by EventBus and NullEventBus."""

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None: ...

    def emit(self, event: T) -> None: ...


class EventBus:
    """Synchronous event bus.

    Handlers run in subscription order on the emitting thread. Handler
    exceptions propagate to the emitter.

    Example:
        bus = EventBus()
        bus.subscribe(PhaseStarted, lambda e: print(f"[{e.phase}] starting"))
        bus.emit(PhaseStarted(phase=RunPhase.FETCH, target=url))
    """

    def __init__(self) -> None:
        self._subscribers: dict[type, list[Callable[[Any], None]]] = {}

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None:
        self._subscribers.setdefault(event_type, []).append(handler)

    def emit(self, event: T) -> None:
        """Dispatch to every handler subscribed to the event's exact type.

        Events nobody subscribed to are dropped.
        """
        for handler in self._subscribers.get(type(event), []):
            handler(event)


class NullEventBus:
    """No-op bus for library use where no CLI is listening.

    Not an EventBus subclass: subscribing to it does nothing.
    """

    def subscribe(self, event_type: type[T], handler: Callable[[T], None]) -> None:
        pass

    def emit(self, event: T) -> None:
        pass
