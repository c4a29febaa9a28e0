"""Process helpers: free ports, spawning in a new group, forced termination."""

from __future__ import annotations

import logging
import os
import shlex
import signal
import socket
import subprocess
import sys
from typing import Dict, List, Optional, Sequence

LOGGER = logging.getLogger("addonrt.process")


def find_free_tcp_port(host: str = "127.0.0.1") -> int:
    """Return a port the OS just assigned to a throwaway bind."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return int(sock.getsockname()[1])


def spawn_process_group(
    cmd: Sequence[str],
    *,
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    quiet: bool = False,
) -> subprocess.Popen:
    """Start ``cmd`` as the leader of a new process group."""
    kwargs: Dict[str, object] = {}
    if os.name == "nt":
        kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP  # type: ignore[attr-defined]
    else:
        kwargs["start_new_session"] = True
    if quiet:
        kwargs["stdout"] = subprocess.DEVNULL
        kwargs["stderr"] = subprocess.DEVNULL
    full_env = os.environ.copy()
    if env:
        full_env.update(env)
    LOGGER.debug("spawning: %s", " ".join(shlex.quote(part) for part in cmd))
    return subprocess.Popen(list(cmd), cwd=cwd, env=full_env, **kwargs)  # type: ignore[arg-type]


class ProcessKiller:
    name = "base"

    def kill(self, pid: int) -> bool:
        raise NotImplementedError


class CommandKiller(ProcessKiller):
    """Run a user-supplied command (``ADDON_DEV_KILL_COMMAND``)."""

    name = "command"

    def __init__(self, command: str) -> None:
        self.command = command

    def kill(self, pid: int) -> bool:
        argv: List[str] = [part.replace("{pid}", str(pid)) for part in shlex.split(self.command)]
        try:
            result = subprocess.run(argv, capture_output=True, text=True, timeout=10)
        except (OSError, subprocess.TimeoutExpired) as exc:
            LOGGER.error("kill command failed: %s", exc)
            return False
        if result.returncode != 0:
            LOGGER.warning("kill command exited with %s: %s", result.returncode, result.stderr.strip())
        return result.returncode == 0


class PosixGroupKiller(ProcessKiller):
    name = "posix"

    def kill(self, pid: int) -> bool:
        try:
            os.killpg(os.getpgid(pid), signal.SIGKILL)
        except ProcessLookupError:
            return False
        except PermissionError as exc:
            LOGGER.warning("cannot kill process group of %s: %s", pid, exc)
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                return False
        return True


class WindowsTaskKiller(ProcessKiller):
    name = "windows"

    def kill(self, pid: int) -> bool:
        result = subprocess.run(
            ["taskkill", "/F", "/T", "/PID", str(pid)],
            capture_output=True,
            text=True,
        )
        return result.returncode == 0


def select_killer(kill_command: Optional[str] = None) -> ProcessKiller:
    command = kill_command or os.environ.get("ADDON_DEV_KILL_COMMAND")
    if command:
        return CommandKiller(command)
    if sys.platform == "win32":
        return WindowsTaskKiller()
    return PosixGroupKiller()


def terminate_process_group(
    proc: subprocess.Popen,
    *,
    kill_command: Optional[str] = None,
    wait_timeout: float = 5.0,
) -> Optional[int]:
    """Kill ``proc`` and everything it spawned, then reap it.

    Returns the exit code, or None when the process could not be reaped.
    """
    if proc.poll() is not None:
        return proc.returncode
    killer = select_killer(kill_command)
    LOGGER.debug("terminating pid %s via %s", proc.pid, killer.name)
    if not killer.kill(proc.pid) and proc.poll() is None:
        proc.kill()
    try:
        return proc.wait(timeout=wait_timeout)
    except subprocess.TimeoutExpired:
        LOGGER.error("process %s did not exit after kill", proc.pid)
        return None


__all__ = [
    "CommandKiller",
    "PosixGroupKiller",
    "ProcessKiller",
    "WindowsTaskKiller",
    "find_free_tcp_port",
    "select_killer",
    "spawn_process_group",
    "terminate_process_group",
]
