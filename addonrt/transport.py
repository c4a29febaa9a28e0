"""
Remote debugging protocol client.

Responsibilities:
    * Own the TCP connection to the target's debugger server.
    * Address requests to actors and correlate replies by the ``from`` field.
    * Keep at most one request in flight per actor; later requests to the
      same actor wait in a FIFO queue.
    * Publish connection lifecycle and protocol errors on an EventBus.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from collections import deque
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Mapping, Optional, Union

from .errors import RemoteConnectionError, RequestError
from .events import (
    EventBus,
    end_event,
    error_event,
    protocol_error_event,
    state_event,
    timeout_event,
    unexpected_message_event,
)
from .framing import FrameReader, encode_frame

LOGGER = logging.getLogger("addonrt.transport")

JsonDict = Dict[str, Any]
RequestSpec = Union[str, Mapping[str, Any]]

ROOT_ACTOR = "root"

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"
CLOSED = "closed"


@dataclass
class ClientConfig:
    host: str = "127.0.0.1"
    port: int = 6000
    connect_timeout: float = 5.0
    request_timeout: Optional[float] = 30.0
    idle_timeout: Optional[float] = None
    write_timeout: Optional[float] = 10.0
    recv_size: int = 65536


@dataclass
class PendingRequest:
    actor: str
    payload: JsonDict
    future: Future = field(default_factory=Future)

    def resolve(self, reply: JsonDict) -> None:
        if not self.future.done():
            self.future.set_result(reply)

    def reject(self, error: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(error)


def normalise_request(spec: RequestSpec) -> JsonDict:
    """Turn a bare request type or a request mapping into a wire payload."""
    if isinstance(spec, str):
        return {"to": ROOT_ACTOR, "type": spec}
    payload = dict(spec)
    if not payload.get("to"):
        raise RequestError(f"request without target actor: {payload.get('type')!r}")
    return payload


class ProtocolClient:
    """Actor-addressed request/response client over one socket.

    A client is single-use: once ``closed`` it cannot reconnect.
    """

    def __init__(self, config: Optional[ClientConfig] = None, *, event_bus: Optional[EventBus] = None) -> None:
        self.config = config or ClientConfig()
        self.events = event_bus if event_bus is not None else EventBus()
        self._lock = threading.RLock()
        self._send_lock = threading.Lock()
        self._sock: Optional[socket.socket] = None
        self._state = DISCONNECTED
        self._pending: Dict[str, Deque[PendingRequest]] = {}
        self._active: Dict[str, PendingRequest] = {}
        self._frames = FrameReader()
        self._reader_thread: Optional[threading.Thread] = None

    #
    # Connection lifecycle
    #
    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    @property
    def connected(self) -> bool:
        return self.state == CONNECTED

    def connect(self, port: Optional[int] = None) -> JsonDict:
        """Open the socket and wait for the root actor greeting."""
        target_port = port or self.config.port
        greeting = PendingRequest(ROOT_ACTOR, {"to": ROOT_ACTOR, "type": "connect"})
        with self._lock:
            if self._state != DISCONNECTED:
                raise RemoteConnectionError(f"cannot connect while {self._state}")
            self._set_state_locked(CONNECTING)
            self._active[ROOT_ACTOR] = greeting
        address = (self.config.host, target_port)
        try:
            sock = socket.create_connection(address, timeout=self.config.connect_timeout)
        except OSError as exc:
            error = RemoteConnectionError(f"connect to {address[0]}:{address[1]} failed: {exc}")
            self._close(error)
            raise error from exc
        sock.settimeout(self._socket_timeout())
        with self._lock:
            if self._state == CLOSED:
                sock.close()
                raise RemoteConnectionError("connection closed while connecting")
            self._sock = sock
        self._reader_thread = threading.Thread(
            target=self._read_loop,
            args=(sock,),
            name=f"addonrt-rdp-{target_port}",
            daemon=True,
        )
        self._reader_thread.start()
        try:
            reply = greeting.future.result(timeout=self.config.connect_timeout)
        except FutureTimeout:
            error = RemoteConnectionError(
                f"no greeting from {address[0]}:{address[1]} within {self.config.connect_timeout:.1f}s"
            )
            self._close(error)
            raise error from None
        except RequestError as exc:
            error = RemoteConnectionError(f"root actor refused connection: {exc}")
            self._close(error)
            raise error from exc
        with self._lock:
            if self._state == CONNECTING:
                self._set_state_locked(CONNECTED)
        LOGGER.debug("connected to %s:%s (%s)", address[0], address[1], reply.get("applicationType", "unknown"))
        self._flush()
        return reply

    def disconnect(self) -> None:
        """Close the socket and reject everything outstanding. Idempotent."""
        self._close(RemoteConnectionError("connection closed"))
        reader = self._reader_thread
        if reader and reader.is_alive() and reader is not threading.current_thread():
            reader.join(timeout=1.0)

    #
    # Requests
    #
    def send(self, spec: RequestSpec) -> Future:
        """Queue a request and return a future for its reply.

        Raises RequestError immediately when no target actor can be determined.
        """
        payload = normalise_request(spec)
        pending = PendingRequest(str(payload["to"]), payload)
        with self._lock:
            state = self._state
            if state in (DISCONNECTED, CLOSED):
                pending.reject(RemoteConnectionError("connection closed" if state == CLOSED else "not connected"))
                return pending.future
            self._pending.setdefault(pending.actor, deque()).append(pending)
        self._flush()
        return pending.future

    def request(self, spec: RequestSpec, timeout: Optional[float] = None) -> JsonDict:
        """Send a request and block until its reply arrives."""
        future = self.send(spec)
        wait = timeout if timeout is not None else self.config.request_timeout
        try:
            return future.result(timeout=wait)
        except FutureTimeout:
            payload = normalise_request(spec)
            raise RequestError(
                f"{payload.get('type')!r} to {payload['to']} timed out after {wait:.1f}s"
            ) from None

    def notify(self, spec: RequestSpec) -> None:
        """Write a one-way message; no reply is tracked."""
        payload = normalise_request(spec)
        with self._lock:
            sock = self._sock
            if self._state != CONNECTED or sock is None:
                raise RemoteConnectionError(f"cannot notify while {self._state}")
        error = self._write(sock, [encode_frame(payload)])
        if error is not None:
            raise error

    def in_flight(self, actor: str) -> Optional[JsonDict]:
        with self._lock:
            pending = self._active.get(actor)
            return dict(pending.payload) if pending else None

    def queued(self, actor: str) -> List[JsonDict]:
        with self._lock:
            return [dict(item.payload) for item in self._pending.get(actor, ())]

    #
    # Internal helpers
    #
    def _flush(self) -> None:
        frames: List[bytes] = []
        with self._lock:
            sock = self._sock
            if self._state != CONNECTED or sock is None:
                return
            for actor in list(self._pending):
                if actor in self._active:
                    continue
                waiting = self._pending[actor]
                item = waiting.popleft()
                if not waiting:
                    del self._pending[actor]
                self._active[actor] = item
                frames.append(encode_frame(item.payload))
        if frames:
            self._write(sock, frames)

    def _write(self, sock: socket.socket, frames: List[bytes]) -> Optional[RemoteConnectionError]:
        """Write whole frames outside the request lock.

        ``_close`` never takes the send lock, so shutting the socket down
        unblocks a writer stuck on a target that stopped reading.
        """
        with self._send_lock:
            try:
                for data in frames:
                    sock.sendall(data)
            except OSError as exc:
                error = RemoteConnectionError(f"send failed: {exc}")
                error.__cause__ = exc
                self._close(error)
                return error
        return None

    def _socket_timeout(self) -> Optional[float]:
        timeouts = [t for t in (self.config.idle_timeout, self.config.write_timeout) if t]
        return min(timeouts) if timeouts else None

    def _read_loop(self, sock: socket.socket) -> None:
        idle_timeout = self.config.idle_timeout
        last_data = time.monotonic()
        while True:
            try:
                chunk = sock.recv(self.config.recv_size)
            except socket.timeout:
                if idle_timeout and time.monotonic() - last_data >= idle_timeout:
                    self.events.publish(timeout_event(idle_timeout))
                    last_data = time.monotonic()
                continue
            except OSError as exc:
                if self.state != CLOSED:
                    LOGGER.warning("connection error: %s", exc)
                    self.events.publish(error_event(exc))
                    self._close(RemoteConnectionError(f"connection error: {exc}"))
                return
            if not chunk:
                if self.state != CLOSED:
                    self.events.publish(end_event())
                    self._close(RemoteConnectionError("connection ended by remote"))
                return
            last_data = time.monotonic()
            self._frames.feed(chunk)
            for result in self._frames.frames():
                if result.error is not None:
                    LOGGER.warning("error parsing packet: %s", result.error)
                    self.events.publish(error_event(result.error))
                    if result.fatal:
                        self._close(RemoteConnectionError(f"unrecoverable stream: {result.error}"))
                        return
                    continue
                assert result.message is not None  # mypy guard
                self._handle_message(result.message)

    def _handle_message(self, message: JsonDict) -> None:
        actor = message.get("from")
        if not actor:
            LOGGER.debug("protocol error message: %s", message)
            self.events.publish(protocol_error_event(message))
            return
        with self._lock:
            pending = self._active.pop(str(actor), None)
        if pending is None:
            LOGGER.debug("unexpected message from %s: %s", actor, message)
            self.events.publish(unexpected_message_event(message))
            return
        if message.get("error"):
            detail = message.get("message") or message.get("error")
            pending.reject(RequestError(f"{actor} rejected {pending.payload.get('type')!r}: {detail}", reply=message))
        else:
            pending.resolve(message)
        self._flush()

    def _close(self, error: BaseException) -> bool:
        with self._lock:
            if self._state == CLOSED:
                return False
            sock, self._sock = self._sock, None
            doomed = list(self._active.values())
            for waiting in self._pending.values():
                doomed.extend(waiting)
            self._active.clear()
            self._pending.clear()
            self._set_state_locked(CLOSED)
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()
        for pending in doomed:
            pending.reject(error)
        return True

    def _set_state_locked(self, new_state: str) -> None:
        previous = self._state
        if previous == new_state:
            return
        self._state = new_state
        self.events.publish(state_event(previous, new_state))


__all__ = [
    "ClientConfig",
    "PendingRequest",
    "ProtocolClient",
    "normalise_request",
    "ROOT_ACTOR",
    "DISCONNECTED",
    "CONNECTING",
    "CONNECTED",
    "CLOSED",
]
