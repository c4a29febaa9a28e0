"""Launch, live-reload and tear down the target application instance."""

from __future__ import annotations

import logging
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import DevkitError, InstallError, LaunchError, RemoteConnectionError, RequestError
from .events import END, ERROR, PROTOCOL_ERROR, UNEXPECTED_MESSAGE, ClientEvent, EventBus, EventSubscription
from .prefs import write_profile_prefs
from .process import find_free_tcp_port, spawn_process_group, terminate_process_group
from .transport import ClientConfig, ProtocolClient

LOGGER = logging.getLogger("addonrt.supervisor")

IDLE = "idle"
LAUNCHING = "launching"
RUNNING = "running"
RELOADING = "reloading"
EXITING = "exiting"
STOPPED = "stopped"


@dataclass
class PluginSpec:
    id: str
    source_dir: Path


@dataclass
class InstalledPlugin:
    id: str
    source_dir: Path
    addon_id: Optional[str] = None
    actor: Optional[str] = None
    installed: bool = True


@dataclass
class LaunchConfig:
    binary_path: Optional[str]
    profile_dir: Path
    data_dir: Path
    plugins: List[PluginSpec] = field(default_factory=list)
    binary_args: List[str] = field(default_factory=list)
    devtools: bool = False
    prefs: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    host: str = "127.0.0.1"
    remote_port: int = 0
    connect_timeout: float = 2.0
    request_timeout: float = 30.0
    max_retries: int = 20
    backoff: float = 0.25
    max_backoff: float = 2.0
    kill_command: Optional[str] = None
    headless: bool = False
    quiet: bool = False
    quit_request: Dict[str, Any] = field(default_factory=lambda: {"to": "root", "type": "quit"})


@dataclass
class ReloadReport:
    reloaded: List[str] = field(default_factory=list)
    failures: List[InstallError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class InstanceSupervisor:
    """Owns one target process and its remote-control connection."""

    def __init__(self, config: LaunchConfig, *, event_bus: Optional[EventBus] = None) -> None:
        self.config = config
        self.events = event_bus if event_bus is not None else EventBus()
        self.port: Optional[int] = None
        self.connection_lost = False
        self._state = IDLE
        self._lock = threading.RLock()
        self._cancel = threading.Event()
        self._proc: Optional[subprocess.Popen] = None
        self._client: Optional[ProtocolClient] = None
        self._addons_actor: Optional[str] = None
        self._installed: List[InstalledPlugin] = []
        self.events.subscribe(
            EventSubscription(
                kinds=[ERROR, PROTOCOL_ERROR, UNEXPECTED_MESSAGE, END],
                handler=self._on_client_event,
            )
        )

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    @property
    def pid(self) -> Optional[int]:
        proc = self._proc
        return proc.pid if proc is not None else None

    @property
    def installed(self) -> List[InstalledPlugin]:
        with self._lock:
            return list(self._installed)

    @property
    def client(self) -> Optional[ProtocolClient]:
        return self._client

    def status(self) -> Dict[str, Any]:
        proc = self._proc
        return {
            "state": self.state,
            "pid": proc.pid if proc is not None else None,
            "returncode": proc.poll() if proc is not None else None,
            "port": self.port,
            "connected": bool(self._client and self._client.connected),
            "plugins": [
                {"id": plugin.id, "addon_id": plugin.addon_id, "installed": plugin.installed}
                for plugin in self.installed
            ],
        }

    #
    # Lifecycle
    #
    def run(self) -> None:
        """Launch the target, connect, and install every configured plugin."""
        with self._lock:
            if self._state != IDLE:
                raise LaunchError(f"instance already {self._state}")
            self._set_state(LAUNCHING)
        self.events.start()
        try:
            self._spawn()
            self._connect()
            self._install_all()
        except DevkitError as exc:
            LOGGER.error("launch failed: %s", exc)
            self.exit()
            raise
        with self._lock:
            if self._state == LAUNCHING:
                self._set_state(RUNNING)
        LOGGER.info("target running (pid %s, remote port %s)", self.pid, self.port)

    def reload(self) -> ReloadReport:
        """Uninstall then reinstall every plugin without restarting the target."""
        with self._lock:
            if self._state != RUNNING:
                raise RemoteConnectionError(f"cannot reload while {self._state}")
            self._set_state(RELOADING)
            plugins = list(self._installed)
        report = ReloadReport()
        try:
            for index, plugin in enumerate(plugins):
                try:
                    if plugin.installed:
                        self._uninstall(plugin)
                    fresh = self._install(PluginSpec(plugin.id, plugin.source_dir))
                except InstallError as exc:
                    LOGGER.error("reload of %s failed: %s", plugin.id, exc)
                    report.failures.append(exc)
                    continue
                with self._lock:
                    self._installed[index] = fresh
                report.reloaded.append(plugin.id)
        finally:
            with self._lock:
                if self._state == RELOADING:
                    self._set_state(RUNNING)
        return report

    def exit(self) -> None:
        """Tear down the connection and kill the target. Idempotent."""
        with self._lock:
            if self._state in (EXITING, STOPPED):
                return
            self._set_state(EXITING)
            self._cancel.set()
            client, self._client = self._client, None
            proc = self._proc
        if client is not None:
            if client.connected:
                try:
                    client.notify(self.config.quit_request)
                except DevkitError as exc:
                    LOGGER.debug("quit request failed: %s", exc)
            client.disconnect()
        if proc is not None:
            code = terminate_process_group(proc, kill_command=self.config.kill_command)
            LOGGER.info("target stopped (exit code %s)", code)
        with self._lock:
            self._installed.clear()
            self._addons_actor = None
            self._set_state(STOPPED)
        self.events.stop()

    #
    # Launch helpers
    #
    def build_command(self, port: int) -> List[str]:
        binary = str(self.config.binary_path)
        cmd = [
            binary,
            "--purgecaches",
            "-no-remote",
            "-profile",
            str(self.config.profile_dir),
            "-datadir",
            str(self.config.data_dir),
            "--start-debugger-server",
            str(port),
        ]
        if self.config.devtools:
            cmd.append("--jsdebugger")
        cmd.extend(self.config.binary_args)
        if self.config.headless:
            wrapper = shutil.which("xvfb-run")
            if wrapper:
                cmd = [wrapper, "-a"] + cmd
            else:
                LOGGER.warning("headless requested but xvfb-run not found; launching with a display")
        return cmd

    def _spawn(self) -> None:
        binary = self.config.binary_path
        if not binary:
            raise LaunchError("no target binary configured (set binary_path or ADDON_DEV_BINARY_PATH)")
        if not Path(binary).exists():
            raise LaunchError(f"target binary not found: {binary}")
        self.config.profile_dir.mkdir(parents=True, exist_ok=True)
        self.config.data_dir.mkdir(parents=True, exist_ok=True)
        write_profile_prefs(self.config.profile_dir, self.config.prefs)
        self.port = self.config.remote_port or find_free_tcp_port(self.config.host)
        cmd = self.build_command(self.port)
        try:
            proc = spawn_process_group(cmd, env=self.config.env, quiet=self.config.quiet)
        except OSError as exc:
            raise LaunchError(f"cannot start {binary}: {exc}") from exc
        with self._lock:
            self._proc = proc
        LOGGER.info("started %s (pid %s)", Path(binary).name, proc.pid)

    def _connect(self) -> None:
        assert self._proc is not None and self.port is not None  # mypy guard
        config = ClientConfig(
            host=self.config.host,
            port=self.port,
            connect_timeout=self.config.connect_timeout,
            request_timeout=self.config.request_timeout,
        )
        backoff = self.config.backoff
        last_error: Optional[RemoteConnectionError] = None
        attempt = 0
        while attempt < max(1, self.config.max_retries):
            attempt += 1
            code = self._proc.poll()
            if code is not None:
                raise LaunchError(f"target exited with code {code} before opening remote port {self.port}")
            client = ProtocolClient(config, event_bus=self.events)
            try:
                client.connect()
            except RemoteConnectionError as exc:
                last_error = exc
                client.disconnect()
                LOGGER.debug("connect attempt %d failed: %s", attempt, exc)
                if self._cancel.wait(backoff):
                    raise LaunchError("launch cancelled") from exc
                backoff = min(backoff * 2, self.config.max_backoff)
                continue
            with self._lock:
                if self._state != LAUNCHING:
                    client.disconnect()
                    raise LaunchError("launch cancelled")
                self._client = client
            return
        raise LaunchError(
            f"remote port {self.config.host}:{self.port} not reachable after {attempt} attempts: {last_error}"
        )

    def _install_all(self) -> None:
        client = self._require_client()
        try:
            root = client.request("getRoot")
        except (RequestError, RemoteConnectionError) as exc:
            raise LaunchError(f"cannot query root actor: {exc}") from exc
        actor = root.get("addonsActor")
        if not actor:
            raise LaunchError("target does not expose an add-ons actor")
        self._addons_actor = str(actor)
        for spec in self.config.plugins:
            plugin = self._install(spec)
            with self._lock:
                self._installed.append(plugin)

    def _install(self, spec: PluginSpec) -> InstalledPlugin:
        client = self._require_client(spec.id)
        source_dir = Path(spec.source_dir).resolve()
        try:
            reply = client.request(
                {
                    "to": self._addons_actor,
                    "type": "installTemporaryAddon",
                    "addonPath": str(source_dir),
                    "openDevTools": self.config.devtools,
                }
            )
        except (RequestError, RemoteConnectionError) as exc:
            raise InstallError(f"install of {spec.id} from {source_dir} failed: {exc}", plugin_id=spec.id) from exc
        addon = reply.get("addon") or {}
        LOGGER.info("installed %s", addon.get("id") or spec.id)
        return InstalledPlugin(
            id=spec.id,
            source_dir=source_dir,
            addon_id=str(addon.get("id") or spec.id),
            actor=addon.get("actor"),
        )

    def _uninstall(self, plugin: InstalledPlugin) -> None:
        client = self._require_client(plugin.id)
        try:
            client.request(
                {
                    "to": self._addons_actor,
                    "type": "uninstallAddon",
                    "addonId": plugin.addon_id or plugin.id,
                }
            )
        except (RequestError, RemoteConnectionError) as exc:
            raise InstallError(f"uninstall of {plugin.id} failed: {exc}", plugin_id=plugin.id) from exc
        plugin.installed = False

    def _require_client(self, plugin_id: Optional[str] = None) -> ProtocolClient:
        client = self._client
        if client is None or not client.connected:
            message = "remote connection is not open"
            if plugin_id is not None:
                raise InstallError(message, plugin_id=plugin_id)
            raise RemoteConnectionError(message)
        return client

    def _on_client_event(self, event: ClientEvent) -> None:
        state = self.state
        if event.kind == END:
            if state in (RUNNING, RELOADING):
                self.connection_lost = True
                LOGGER.warning("target closed the remote connection")
            return
        if event.kind == UNEXPECTED_MESSAGE:
            LOGGER.debug("unsolicited message: %s", getattr(event, "message", None))
            return
        if state not in (EXITING, STOPPED):
            LOGGER.warning("remote protocol %s: %s", event.kind, getattr(event, "error", None) or getattr(event, "message", None))

    def _set_state(self, new_state: str) -> None:
        if self._state != new_state:
            LOGGER.debug("instance %s -> %s", self._state, new_state)
            self._state = new_state


__all__ = [
    "InstanceSupervisor",
    "InstalledPlugin",
    "LaunchConfig",
    "PluginSpec",
    "ReloadReport",
    "IDLE",
    "LAUNCHING",
    "RUNNING",
    "RELOADING",
    "EXITING",
    "STOPPED",
]
