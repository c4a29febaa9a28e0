"""
Pytest fixtures shared by the addon-dev tests.
"""
import os
import stat
import sys
from pathlib import Path

import pytest

STUB = Path(__file__).resolve().parent / "rdp_stub.py"


def write_script(path: Path, body: str) -> Path:
    path.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def fake_target(tmp_path):
    """An executable stand-in for the target application."""
    if os.name == "nt":
        pytest.skip("fake target relies on a shebang script")
    return write_script(tmp_path / "fake-target", STUB.read_text(encoding="utf-8"))


@pytest.fixture
def plugin_dirs(tmp_path):
    dirs = []
    for name in ("main", "extra"):
        path = tmp_path / "plugins" / name
        path.mkdir(parents=True)
        (path / "manifest.json").write_text("{}")
        dirs.append(path)
    return dirs
