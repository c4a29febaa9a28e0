"""
Short-lived HTTP listener that collects test lifecycle events.

Code running inside the target posts JSON events to ``/update``; the bridge
keeps the aggregate counters and decides the orchestrator's exit code.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, List, Optional

LOGGER = logging.getLogger("addonrt.bridge")

EVENT_TYPES = frozenset({"start", "suite", "suite-end", "pending", "pass", "fail", "end", "debug"})
_TYPE_ALIASES = {"suite end": "suite-end"}

MAX_BODY = 16 * 1024 * 1024


@dataclass
class BridgeEvent:
    type: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> str:
        return str(self.data.get("title") or "")

    @property
    def text(self) -> str:
        return str(self.data.get("str") or "")


@dataclass
class TestFailure:
    __test__ = False

    title: str
    stack: str = ""
    text: str = ""


@dataclass
class TestRun:
    __test__ = False

    passed: int = 0
    failed: int = 0
    pending: int = 0
    aborted: bool = False
    finished: bool = False
    failures: List[TestFailure] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.passed + self.failed

    @property
    def exit_code(self) -> int:
        return 0 if self.failed == 0 and not self.aborted else 1

    def summary(self) -> str:
        text = f"{self.passed}/{self.total} tests passed"
        if self.pending:
            text += f", {self.pending} pending"
        if self.aborted:
            text += " -- aborting"
        return text


Reporter = Callable[[BridgeEvent, TestRun], None]
ExitCallback = Callable[[int], None]


def parse_event(body: bytes) -> BridgeEvent:
    """Validate a POSTed body; raises ValueError when malformed."""
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise ValueError(f"Invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("event must be a JSON object")
    event_type = payload.get("type")
    if not isinstance(event_type, str):
        raise ValueError("event type missing")
    event_type = _TYPE_ALIASES.get(event_type, event_type)
    if event_type not in EVENT_TYPES:
        raise ValueError(f"unknown event type '{event_type}'")
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise ValueError("event data must be an object")
    return BridgeEvent(type=event_type, data=data)


def _log_reporter(event: BridgeEvent, run: TestRun) -> None:
    text = event.text.strip()
    if event.type == "fail":
        LOGGER.error("%s", text or event.title)
    elif event.type == "end":
        LOGGER.info("%s", run.summary())
    elif text:
        LOGGER.info("%s", text)


class _BridgeServer(ThreadingHTTPServer):
    daemon_threads = True
    allow_reuse_address = False

    def __init__(self, address, bridge: "ResultBridge") -> None:
        self.bridge = bridge
        super().__init__(address, _UpdateHandler)


class _UpdateHandler(BaseHTTPRequestHandler):
    server_version = "addon-dev-bridge/1"
    server: _BridgeServer

    def do_GET(self) -> None:  # noqa: N802
        if self.path == "/":
            self._send(200, b"Plugin test bridge is running", "text/plain")
            return
        self._send_json(404, {"error": "Not Found"})

    def do_POST(self) -> None:  # noqa: N802
        if self.path != "/update":
            self._send_json(404, {"error": "Not Found"})
            return
        try:
            length = int(self.headers.get("Content-Length") or 0)
        except ValueError:
            length = -1
        if length < 0 or length > MAX_BODY:
            self._send_json(400, {"error": "Invalid Content-Length"})
            return
        body = self.rfile.read(length)
        try:
            event = parse_event(body)
        except ValueError as exc:
            LOGGER.error("rejected update: %s", exc)
            self._send_json(400, {"error": str(exc)})
            return
        self.server.bridge.handle_event(event)
        self._send_json(200, {"message": "Results received successfully"})

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        LOGGER.debug("%s - %s", self.address_string(), format % args)

    def _send_json(self, status: int, payload: Dict[str, Any]) -> None:
        self._send(status, json.dumps(payload).encode("utf-8"), "application/json")

    def _send(self, status: int, body: bytes, content_type: str) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


class ResultBridge:
    """Collect test events and pick the exit code."""

    def __init__(
        self,
        *,
        exit_on_finish: bool = False,
        abort_on_fail: bool = False,
        on_exit: Optional[ExitCallback] = None,
        reporter: Optional[Reporter] = None,
        host: str = "127.0.0.1",
    ) -> None:
        self.exit_on_finish = exit_on_finish
        self.abort_on_fail = abort_on_fail
        self.on_exit = on_exit
        self.reporter = reporter or _log_reporter
        self.host = host
        self.run = TestRun()
        self.exit_code: Optional[int] = None
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._server: Optional[_BridgeServer] = None
        self._thread: Optional[threading.Thread] = None
        self._closed = False
        self._port: Optional[int] = None

    @property
    def port(self) -> int:
        if self._port is None:
            raise RuntimeError("bridge not started")
        return self._port

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def start(self) -> int:
        """Bind an OS-assigned port and start serving; returns the port."""
        if self._closed:
            raise RuntimeError("bridge already closed")
        if self._server is not None:
            return self.port
        server = _BridgeServer((self.host, 0), self)
        self._server = server
        self._port = int(server.server_address[1])
        self._thread = threading.Thread(
            target=server.serve_forever,
            kwargs={"poll_interval": 0.1},
            name="addonrt-bridge",
            daemon=True,
        )
        self._thread.start()
        LOGGER.info("result bridge listening on %s", self.url)
        return self.port

    def handle_event(self, event: BridgeEvent) -> None:
        decision: Optional[int] = None
        with self._lock:
            run = self.run
            if event.type == "pass":
                run.passed += 1
            elif event.type == "pending":
                run.pending += 1
            elif event.type == "fail":
                run.failed += 1
                run.failures.append(
                    TestFailure(
                        title=event.title,
                        stack=str(event.data.get("stack") or ""),
                        text=event.text,
                    )
                )
                if self.abort_on_fail:
                    run.aborted = True
                    decision = 1
            elif event.type == "end":
                run.finished = True
                if event.data.get("aborted"):
                    run.aborted = True
                if self.exit_on_finish:
                    decision = run.exit_code
        try:
            self.reporter(event, self.run)
        except Exception:
            LOGGER.exception("reporter failed for %s event", event.type)
        if decision is not None:
            if decision:
                LOGGER.error("aborting test run due to failure" if event.type == "fail" else "test run failed")
            self.finish(decision)
        elif event.type == "end":
            self.close()
            self._done.set()

    def finish(self, code: int) -> None:
        """Record the exit code once, close the listener and notify."""
        with self._lock:
            if self.exit_code is not None:
                return
            self.exit_code = code
        self.close()
        self._done.set()
        if self.on_exit is not None:
            self.on_exit(code)

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Block until the run ends; returns the chosen exit code (if any)."""
        self._done.wait(timeout)
        return self.exit_code

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            server, self._server = self._server, None
            thread = self._thread
        if server is None:
            return
        if thread is not None and thread.is_alive():
            server.shutdown()
        server.server_close()
        LOGGER.debug("result bridge closed")


__all__ = [
    "BridgeEvent",
    "EVENT_TYPES",
    "ResultBridge",
    "TestFailure",
    "TestRun",
    "parse_event",
]
