"""Connection lifecycle events and the bus that fans them out."""

from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, Optional

LOGGER = logging.getLogger("addonrt.events")

EventHandler = Callable[["ClientEvent"], None]

ERROR = "error"
PROTOCOL_ERROR = "protocol-error"
UNEXPECTED_MESSAGE = "unexpected-message"
END = "end"
TIMEOUT = "timeout"
STATE = "state"


@dataclass
class ClientEvent:
    kind: str


@dataclass
class ErrorEvent(ClientEvent):
    error: Optional[BaseException] = None

    @property
    def fatal(self) -> bool:
        return bool(getattr(self.error, "fatal", False))


@dataclass
class ProtocolErrorEvent(ClientEvent):
    """A message arrived without a ``from`` actor."""

    message: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UnexpectedMessageEvent(ClientEvent):
    """A reply arrived from an actor with nothing in flight."""

    message: Dict[str, Any] = field(default_factory=dict)

    @property
    def actor(self) -> str:
        return str(self.message.get("from") or "")


@dataclass
class EndEvent(ClientEvent):
    pass


@dataclass
class TimeoutEvent(ClientEvent):
    idle_s: float = 0.0


@dataclass
class StateEvent(ClientEvent):
    previous: str = ""
    state: str = ""


def error_event(error: BaseException) -> ErrorEvent:
    return ErrorEvent(kind=ERROR, error=error)


def protocol_error_event(message: Dict[str, Any]) -> ProtocolErrorEvent:
    return ProtocolErrorEvent(kind=PROTOCOL_ERROR, message=message)


def unexpected_message_event(message: Dict[str, Any]) -> UnexpectedMessageEvent:
    return UnexpectedMessageEvent(kind=UNEXPECTED_MESSAGE, message=message)


def end_event() -> EndEvent:
    return EndEvent(kind=END)


def timeout_event(idle_s: float) -> TimeoutEvent:
    return TimeoutEvent(kind=TIMEOUT, idle_s=idle_s)


def state_event(previous: str, state: str) -> StateEvent:
    return StateEvent(kind=STATE, previous=previous, state=state)


@dataclass
class EventSubscription:
    handler: EventHandler
    kinds: Optional[Iterable[str]] = None

    def __post_init__(self) -> None:
        self.kinds = frozenset(self.kinds) if self.kinds else None

    def accepts(self, event: ClientEvent) -> bool:
        return self.kinds is None or event.kind in self.kinds


class EventBus:
    """Single-queue dispatcher: ``publish`` never blocks on a handler.

    Events wait in one bounded backlog (oldest dropped first) and are
    delivered in publish order, either by ``pump()`` in the caller's thread
    or by the dispatcher thread started with ``start()``.
    """

    def __init__(self, backlog: int = 256) -> None:
        self._backlog: Deque[ClientEvent] = deque(maxlen=backlog)
        self._subs: Dict[int, EventSubscription] = {}
        self._tokens = itertools.count(1)
        self._cond = threading.Condition()
        self._running = False
        self._worker: Optional[threading.Thread] = None
        self.dropped = 0

    def subscribe(self, sub: EventSubscription) -> int:
        with self._cond:
            token = next(self._tokens)
            self._subs[token] = sub
            return token

    def unsubscribe(self, token: int) -> None:
        with self._cond:
            self._subs.pop(token, None)

    def publish(self, event: ClientEvent) -> None:
        with self._cond:
            if len(self._backlog) == self._backlog.maxlen:
                self.dropped += 1
            self._backlog.append(event)
            self._cond.notify()

    def pump(self) -> int:
        """Deliver everything queued so far; returns the number of events."""
        count = 0
        while True:
            with self._cond:
                if not self._backlog:
                    return count
                event = self._backlog.popleft()
                subs = [sub for sub in self._subs.values() if sub.accepts(event)]
            count += 1
            for sub in subs:
                try:
                    sub.handler(event)
                except Exception:
                    LOGGER.exception("event handler failed for %s", event.kind)

    def start(self) -> None:
        with self._cond:
            if self._running:
                return
            self._running = True
        self._worker = threading.Thread(target=self._run, name="addonrt-events", daemon=True)
        self._worker.start()

    def stop(self) -> None:
        """Stop the dispatcher after it delivers what is already queued."""
        with self._cond:
            self._running = False
            self._cond.notify_all()
        worker, self._worker = self._worker, None
        if worker and worker.is_alive() and worker is not threading.current_thread():
            worker.join(timeout=0.5)

    def _run(self) -> None:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._backlog or not self._running)
                if not self._running and not self._backlog:
                    return
            self.pump()


__all__ = [
    "ClientEvent",
    "EndEvent",
    "ErrorEvent",
    "EventBus",
    "EventSubscription",
    "ProtocolErrorEvent",
    "StateEvent",
    "TimeoutEvent",
    "UnexpectedMessageEvent",
    "END",
    "ERROR",
    "PROTOCOL_ERROR",
    "STATE",
    "TIMEOUT",
    "UNEXPECTED_MESSAGE",
    "end_event",
    "error_event",
    "protocol_error_event",
    "state_event",
    "timeout_event",
    "unexpected_message_event",
]
