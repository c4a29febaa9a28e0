"""Exception hierarchy shared by the addonrt runtime toolkit."""

from __future__ import annotations

from typing import Any, Dict, Optional


class DevkitError(RuntimeError):
    """Base class for every error raised by addonrt."""


class FrameError(DevkitError):
    """Raised when an inbound frame cannot be decoded.

    ``fatal`` frames leave the stream unrecoverable (bad length prefix);
    non-fatal ones only lose the offending payload.
    """

    def __init__(self, message: str, *, fatal: bool) -> None:
        super().__init__(message)
        self.fatal = fatal


class RemoteConnectionError(DevkitError):
    """Raised when the remote-control socket cannot open or closes."""


class RequestError(DevkitError):
    """Raised when an actor replies with an error marker or a request is unroutable."""

    def __init__(self, message: str, *, reply: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.reply = reply

    @property
    def error(self) -> Optional[str]:
        if not self.reply:
            return None
        value = self.reply.get("error")
        return str(value) if value is not None else None


class LaunchError(DevkitError):
    """Raised when the target binary is missing or never opens its control port."""


class InstallError(DevkitError):
    """Raised when a plugin fails to install or uninstall."""

    def __init__(self, message: str, *, plugin_id: str) -> None:
        super().__init__(message)
        self.plugin_id = plugin_id


class BuildError(DevkitError):
    """Raised by a builder when a build step exits unsuccessfully."""


class RebuildError(DevkitError):
    """Wraps a build or reload failure triggered by the file watcher."""

    def __init__(self, message: str, *, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class ConfigError(DevkitError):
    """Raised when the project configuration cannot be loaded."""


class DownloadError(DevkitError):
    """Raised when a test library cannot be fetched."""

    def __init__(self, message: str, *, url: str) -> None:
        super().__init__(message)
        self.url = url


__all__ = [
    "DevkitError",
    "FrameError",
    "RemoteConnectionError",
    "RequestError",
    "LaunchError",
    "InstallError",
    "BuildError",
    "RebuildError",
    "ConfigError",
    "DownloadError",
]
