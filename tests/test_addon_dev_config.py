import json

import pytest

from addonrt.errors import ConfigError
from addon_dev.config import load_config


def _write(tmp_path, payload):
    path = tmp_path / "addon-dev.json"
    path.write_text(json.dumps(payload) if not isinstance(payload, str) else payload)
    return path


def test_defaults_without_config_file(tmp_path):
    config = load_config(root=tmp_path, env={})
    assert config.root == tmp_path.resolve()
    assert config.source_dirs == [tmp_path.resolve() / "src", tmp_path.resolve() / "addon"]
    assert config.plugin_dir == tmp_path.resolve() / "build" / "addon"
    assert config.server.debounce == 0.5
    assert config.test.entries == ["test"]
    assert config.binary_path is None


def test_file_values_and_sections(tmp_path):
    _write(
        tmp_path,
        {
            "id": "demo@example.com",
            "namespace": "demo",
            "source": "src",
            "dist": "out",
            "build_command": "npm run build",
            "server": {"devtools": False, "start_args": ["-debug"], "debounce": 0.2},
            "test": {"entries": ["spec"], "abort_on_fail": True, "prefs": {"a.b": 1}},
            "hooks": {"serve:ready": "echo ready"},
        },
    )
    config = load_config(root=tmp_path, env={})
    assert config.id == "demo@example.com"
    assert config.source == ["src"]
    assert config.plugin_dir == tmp_path.resolve() / "out" / "addon"
    assert config.server.devtools is False
    assert config.server.start_args == ["-debug"]
    assert config.test.abort_on_fail is True
    assert config.test.prefs == {"a.b": 1}
    assert config.hooks == {"serve:ready": "echo ready"}


def test_explicit_path_sets_root(tmp_path):
    project = tmp_path / "project"
    project.mkdir()
    path = _write(project, {"namespace": "x"})
    config = load_config(path, env={})
    assert config.root == project.resolve()


def test_environment_overrides(tmp_path):
    _write(tmp_path, {"binary_path": "/from/file"})
    env = {
        "ADDON_DEV_BINARY_PATH": "/from/env",
        "ADDON_DEV_KILL_COMMAND": "pkill -f target",
        "ADDON_DEV_LOG": "DEBUG",
        "CI": "true",
    }
    config = load_config(root=tmp_path, env=env)
    assert config.binary_path == "/from/env"
    assert config.kill_command == "pkill -f target"
    assert config.log_level == "DEBUG"
    assert config.test.headless and config.test.exit_on_finish


def test_unknown_keys_are_ignored(tmp_path, caplog):
    _write(tmp_path, {"colour": "blue", "server": {"turbo": True}})
    config = load_config(root=tmp_path, env={})
    assert config.server.devtools is True
    assert "colour" in caplog.text and "turbo" in caplog.text


@pytest.mark.parametrize(
    "payload",
    [
        "{not json",
        "[1, 2]",
        {"server": "fast"},
        {"hooks": {"serve:whenever": "echo"}},
        {"hooks": ["serve:ready"]},
    ],
)
def test_invalid_config_raises(tmp_path, payload):
    _write(tmp_path, payload)
    with pytest.raises(ConfigError):
        load_config(root=tmp_path, env={})


def test_missing_explicit_config_raises(tmp_path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.json", env={})
