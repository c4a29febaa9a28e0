"""Read and write target profile preference files (``prefs.js``/``user.js``)."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Dict, Mapping, Optional, Union

LOGGER = logging.getLogger("addonrt.prefs")

PrefValue = Union[str, int, bool]

USER_JS = "user.js"

DEFAULT_PREFS: Dict[str, PrefValue] = {
    "extensions.experiments.enabled": True,
    "extensions.autoDisableScopes": 0,
    "devtools.debugger.remote-enabled": True,
    "devtools.debugger.remote-websocket": True,
    "devtools.debugger.prompt-connection": False,
    "devtools.chrome.enabled": True,
    "browser.dom.window.dump.enabled": True,
    "app.update.enabled": False,
    "datareporting.policy.dataSubmissionEnabled": False,
    "toolkit.telemetry.reportingpolicy.firstRun": False,
}

_PREF_LINE = re.compile(
    r"""^\s*(?P<func>[A-Za-z_]+)\(\s*"(?P<key>(?:[^"\\]|\\.)*)"\s*,\s*(?P<value>.+?)\s*\)\s*;""",
)


def _parse_value(raw: str) -> PrefValue:
    if raw == "true":
        return True
    if raw == "false":
        return False
    if raw.startswith('"') and raw.endswith('"') and len(raw) >= 2:
        try:
            return str(json.loads(raw))
        except ValueError:
            return raw[1:-1]
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        number = float(raw)
    except ValueError:
        return raw
    return int(number) if number.is_integer() else raw


def _render_value(value: PrefValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    return json.dumps(str(value))


class PrefsFile:
    """In-memory preference set bound to one pref function name."""

    def __init__(self, func: str = "user_pref", prefs: Optional[Mapping[str, PrefValue]] = None) -> None:
        self.func = func
        self._prefs: Dict[str, PrefValue] = {}
        if prefs:
            self.set_prefs(prefs)

    def parse(self, text: str) -> Dict[str, PrefValue]:
        """Parse pref lines; any pref function name is accepted."""
        result: Dict[str, PrefValue] = {}
        for line in text.splitlines():
            match = _PREF_LINE.match(line)
            if not match:
                continue
            key = json.loads(f'"{match.group("key")}"')
            result[key] = _parse_value(match.group("value").strip())
        return result

    def read(self, path: Path) -> None:
        if not path.exists():
            return
        self.set_prefs(self.parse(path.read_text(encoding="utf-8")))

    def set_pref(self, key: str, value: Optional[PrefValue]) -> None:
        if value is None:
            self._prefs.pop(key, None)
            return
        self._prefs[key] = value

    def set_prefs(self, prefs: Mapping[str, Optional[PrefValue]]) -> None:
        for key, value in prefs.items():
            self.set_pref(key, value)

    def get_pref(self, key: str) -> Optional[PrefValue]:
        return self._prefs.get(key)

    def get_prefs(self) -> Dict[str, PrefValue]:
        return dict(self._prefs)

    def get_prefs_with_prefix(self, prefix: str) -> Dict[str, PrefValue]:
        """Return every pref keyed as ``<prefix>.<key>``; already-prefixed keys are kept."""
        head = prefix.rstrip(".") + "."
        return {
            key if key.startswith(head) else head + key: value
            for key, value in self._prefs.items()
        }

    def get_prefs_without_prefix(self, prefix: str) -> Dict[str, PrefValue]:
        head = prefix.rstrip(".") + "."
        return {
            key[len(head):] if key.startswith(head) else key: value
            for key, value in self._prefs.items()
        }

    def clear_prefs(self) -> None:
        self._prefs.clear()

    def render(self) -> str:
        lines = [
            f"{self.func}({json.dumps(key)}, {_render_value(value)});"
            for key, value in self._prefs.items()
        ]
        return "\n".join(lines) + ("\n" if lines else "")

    def write(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.render(), encoding="utf-8")
        LOGGER.debug("wrote %d prefs to %s", len(self._prefs), path)


def write_profile_prefs(profile_dir: Path, overrides: Optional[Mapping[str, Optional[PrefValue]]] = None) -> Path:
    """Merge defaults, existing ``user.js`` entries and overrides into ``user.js``."""
    target = profile_dir / USER_JS
    prefs = PrefsFile("user_pref", DEFAULT_PREFS)
    prefs.read(target)
    if overrides:
        prefs.set_prefs(overrides)
    prefs.write(target)
    return target


__all__ = ["DEFAULT_PREFS", "PrefsFile", "write_profile_prefs"]
