"""Named lifecycle hooks fired by the serve and test commands."""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

LOGGER = logging.getLogger("addonrt.hooks")

Hook = Callable[..., Any]

SERVE_HOOKS = (
    "serve:init",
    "serve:prebuild",
    "serve:ready",
    "serve:onChanged",
    "serve:onReloaded",
    "serve:exit",
)
TEST_HOOKS = (
    "test:init",
    "test:prebuild",
    "test:listen",
    "test:copyAssets",
    "test:bundleTests",
    "test:run",
    "test:exit",
)
KNOWN_HOOKS = frozenset(SERVE_HOOKS + TEST_HOOKS)


class HookRegistry:
    def __init__(self) -> None:
        self._hooks: Dict[str, List[Hook]] = {}
        self._lock = threading.Lock()

    def register(self, name: str, callback: Hook) -> None:
        if name not in KNOWN_HOOKS:
            raise ValueError(f"unknown hook '{name}'")
        with self._lock:
            self._hooks.setdefault(name, []).append(callback)

    def unregister(self, name: str, callback: Hook) -> None:
        with self._lock:
            callbacks = self._hooks.get(name, [])
            if callback in callbacks:
                callbacks.remove(callback)

    def call(self, name: str, *args: Any) -> int:
        """Run every callback for ``name``; returns how many failed."""
        with self._lock:
            callbacks = list(self._hooks.get(name, ()))
        failures = 0
        for callback in callbacks:
            try:
                callback(*args)
            except Exception:
                failures += 1
                LOGGER.exception("hook %s failed", name)
        return failures


def command_hook(name: str, command: str, *, cwd: Optional[Path] = None) -> Hook:
    """Wrap a shell command as a hook; a non-zero exit counts as a failure."""

    def run(*_args: Any) -> None:
        env = dict(os.environ, ADDON_DEV_HOOK=name)
        LOGGER.info("hook %s: %s", name, command)
        result = subprocess.run(command, shell=True, cwd=str(cwd) if cwd else None, env=env)
        if result.returncode != 0:
            raise RuntimeError(f"hook command exited with {result.returncode}: {command}")

    return run


def load_command_hooks(
    hooks: HookRegistry,
    commands: Mapping[str, Union[str, Sequence[str]]],
    *,
    cwd: Optional[Path] = None,
) -> HookRegistry:
    for name, entry in commands.items():
        for command in [entry] if isinstance(entry, str) else list(entry):
            hooks.register(name, command_hook(name, command, cwd=cwd))
    return hooks


__all__ = ["HookRegistry", "KNOWN_HOOKS", "SERVE_HOOKS", "TEST_HOOKS", "command_hook", "load_command_hooks"]
