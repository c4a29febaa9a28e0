"""Build collaborator used before launch and on every dev-loop cycle."""

from __future__ import annotations

import logging
import subprocess
import time
from pathlib import Path
from typing import Optional

from .errors import BuildError

LOGGER = logging.getLogger("addonrt.builder")


class Builder:
    """Interface the dev loop drives.

    ``build`` runs the full asset pipeline and ``bundle_scripts`` only the
    script bundling step.
    """

    def build(self) -> None:
        raise NotImplementedError

    def bundle_scripts(self) -> None:
        self.build()


class CommandBuilder(Builder):
    """Run the project's own build commands through the shell."""

    def __init__(
        self,
        build_command: Optional[str],
        *,
        bundle_command: Optional[str] = None,
        cwd: Optional[Path] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.build_command = build_command
        self.bundle_command = bundle_command
        self.cwd = cwd
        self.timeout = timeout

    def build(self) -> None:
        if not self.build_command:
            LOGGER.debug("no build command configured; skipping build")
            return
        self._run(self.build_command, "build")

    def bundle_scripts(self) -> None:
        if not self.bundle_command:
            self.build()
            return
        self._run(self.bundle_command, "bundle")

    def _run(self, command: str, label: str) -> None:
        LOGGER.info("%s: %s", label, command)
        start = time.perf_counter()
        try:
            result = subprocess.run(
                command,
                shell=True,
                cwd=str(self.cwd) if self.cwd else None,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise BuildError(f"{label} timed out after {exc.timeout}s: {command}") from exc
        except OSError as exc:
            raise BuildError(f"{label} could not start: {exc}") from exc
        if result.returncode != 0:
            raise BuildError(f"{label} failed with exit code {result.returncode}: {command}")
        LOGGER.info("%s finished in %.0f ms", label, (time.perf_counter() - start) * 1000)


__all__ = ["Builder", "CommandBuilder"]
