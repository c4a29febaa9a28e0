"""Project configuration for addon-dev (``addon-dev.json`` + environment)."""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from addonrt.errors import ConfigError
from addonrt.hooks import KNOWN_HOOKS

LOGGER = logging.getLogger("addon_dev.config")

CONFIG_FILE = "addon-dev.json"

ENV_BINARY_PATH = "ADDON_DEV_BINARY_PATH"
ENV_KILL_COMMAND = "ADDON_DEV_KILL_COMMAND"
ENV_LOG_LEVEL = "ADDON_DEV_LOG"
ENV_CI = "CI"

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class ServerOptions:
    devtools: bool = True
    start_args: List[str] = field(default_factory=list)
    prefs: Dict[str, Any] = field(default_factory=dict)
    debounce: float = 0.5
    script_suffixes: List[str] = field(default_factory=lambda: [".ts", ".tsx"])
    console: bool = True


@dataclass
class TestOptions:
    entries: List[str] = field(default_factory=lambda: ["test"])
    abort_on_fail: bool = False
    exit_on_finish: bool = False
    headless: bool = False
    startup_delay: int = 1000
    wait_for_plugin: str = ""
    mocha_timeout: int = 10000
    run_timeout: Optional[float] = None
    prefs: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DevConfig:
    root: Path
    id: str = "addon@example.com"
    namespace: str = "addon"
    source: List[str] = field(default_factory=lambda: ["src", "addon"])
    dist: str = "build"
    build_command: Optional[str] = None
    bundle_command: Optional[str] = None
    binary_path: Optional[str] = None
    profile_dir: Optional[str] = None
    data_dir: Optional[str] = None
    kill_command: Optional[str] = None
    scratch_dir: str = ".scaffold"
    log_level: str = "INFO"
    hooks: Dict[str, Any] = field(default_factory=dict)
    server: ServerOptions = field(default_factory=ServerOptions)
    test: TestOptions = field(default_factory=TestOptions)

    def resolve(self, value: str) -> Path:
        path = Path(value).expanduser()
        return path if path.is_absolute() else self.root / path

    @property
    def plugin_dir(self) -> Path:
        return self.resolve(self.dist) / "addon"

    @property
    def source_dirs(self) -> List[Path]:
        return [self.resolve(entry) for entry in self.source]

    @property
    def scratch(self) -> Path:
        return self.resolve(self.scratch_dir)

    @property
    def serve_profile_dir(self) -> Path:
        if self.profile_dir:
            return self.resolve(self.profile_dir)
        return self.scratch / "serve" / "profile"

    @property
    def serve_data_dir(self) -> Path:
        if self.data_dir:
            return self.resolve(self.data_dir)
        return self.scratch / "serve" / "data"


def _env_flag(env: Mapping[str, str], name: str) -> bool:
    return str(env.get(name, "")).strip().lower() in _TRUTHY


def _build_section(cls, data: Any, name: str):
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigError(f"'{name}' must be an object")
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        LOGGER.warning("ignoring unknown %s keys: %s", name, ", ".join(unknown))
    try:
        return cls(**{key: value for key, value in data.items() if key in known})
    except TypeError as exc:
        raise ConfigError(f"invalid '{name}' section: {exc}") from exc


def load_config(
    path: Optional[Path] = None,
    *,
    root: Optional[Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> DevConfig:
    """Load ``addon-dev.json`` (defaults when absent) and apply env overrides."""
    env = os.environ if env is None else env
    base = Path(root or Path.cwd()).resolve()
    config_path = Path(path) if path else base / CONFIG_FILE
    raw: Dict[str, Any] = {}
    if config_path.exists():
        try:
            raw = json.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigError(f"cannot read {config_path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"{config_path} must contain a JSON object")
        if path:
            base = config_path.resolve().parent
    elif path:
        raise ConfigError(f"config file not found: {config_path}")

    raw = dict(raw)
    server = _build_section(ServerOptions, raw.pop("server", None), "server")
    test = _build_section(TestOptions, raw.pop("test", None), "test")
    raw.pop("root", None)
    if isinstance(raw.get("source"), str):
        raw["source"] = [raw["source"]]
    config = _build_section(DevConfig, dict(raw, root=base), "config")
    config.server = server
    config.test = test
    if not isinstance(config.hooks, dict):
        raise ConfigError("'hooks' must map hook names to shell commands")
    unknown_hooks = sorted(set(config.hooks) - KNOWN_HOOKS)
    if unknown_hooks:
        raise ConfigError(f"unknown hooks: {', '.join(unknown_hooks)}")

    if env.get(ENV_BINARY_PATH):
        config.binary_path = env[ENV_BINARY_PATH]
    if env.get(ENV_KILL_COMMAND):
        config.kill_command = env[ENV_KILL_COMMAND]
    if env.get(ENV_LOG_LEVEL):
        config.log_level = env[ENV_LOG_LEVEL]
    if _env_flag(env, ENV_CI):
        config.test.headless = True
        config.test.exit_on_finish = True
    return config


__all__ = ["CONFIG_FILE", "DevConfig", "ServerOptions", "TestOptions", "load_config"]
