"""
addonrt - runtime toolkit behind the addon-dev command line.

Every piece lives in its own module:

    framing.py    → length-prefixed JSON frames
    transport.py  → actor-addressed protocol client
    events.py     → connection lifecycle events and the bus
    prefs.py      → profile preference files
    process.py    → free ports, process groups, forced termination
    supervisor.py → launch / reload / exit of the target instance
    builder.py    → build collaborator interface
    devloop.py    → source watcher and debounced rebuild scheduler
    bridge.py     → HTTP listener for test results
    hooks.py      → named lifecycle hooks
"""

from .errors import (  # noqa: F401
    BuildError,
    ConfigError,
    DevkitError,
    DownloadError,
    FrameError,
    InstallError,
    LaunchError,
    RebuildError,
    RemoteConnectionError,
    RequestError,
)
from .framing import FrameReader, FrameResult, encode_frame, try_read_frame  # noqa: F401
from .events import EventBus, EventSubscription  # noqa: F401
from .transport import ClientConfig, ProtocolClient  # noqa: F401
from .prefs import PrefsFile, write_profile_prefs  # noqa: F401
from .process import find_free_tcp_port, terminate_process_group  # noqa: F401
from .supervisor import InstanceSupervisor, LaunchConfig, PluginSpec, ReloadReport  # noqa: F401
from .builder import Builder, CommandBuilder  # noqa: F401
from .devloop import DevLoopScheduler, SourceWatcher  # noqa: F401
from .bridge import ResultBridge, TestRun  # noqa: F401
from .hooks import HookRegistry  # noqa: F401

__all__ = [
    "BuildError",
    "ConfigError",
    "DevkitError",
    "DownloadError",
    "FrameError",
    "InstallError",
    "LaunchError",
    "RebuildError",
    "RemoteConnectionError",
    "RequestError",
    "FrameReader",
    "FrameResult",
    "encode_frame",
    "try_read_frame",
    "EventBus",
    "EventSubscription",
    "ClientConfig",
    "ProtocolClient",
    "PrefsFile",
    "write_profile_prefs",
    "find_free_tcp_port",
    "terminate_process_group",
    "InstanceSupervisor",
    "LaunchConfig",
    "PluginSpec",
    "ReloadReport",
    "Builder",
    "CommandBuilder",
    "DevLoopScheduler",
    "SourceWatcher",
    "ResultBridge",
    "TestRun",
    "HookRegistry",
]

__version__ = "0.1.0"
