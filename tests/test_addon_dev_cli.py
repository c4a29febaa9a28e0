import json
import urllib.error

import pytest

from addon_dev.cli import build_arg_parser, main


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("ADDON_DEV_BINARY_PATH", "ADDON_DEV_KILL_COMMAND", "ADDON_DEV_LOG", "CI"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("addon_dev.cli._install_signal_handlers", lambda: None)


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        build_arg_parser().parse_args([])
    args = build_arg_parser().parse_args(["test", "--abort-on-fail", "--timeout", "30"])
    assert args.command == "test" and args.abort_on_fail and args.timeout == 30.0


def test_bad_config_exits_with_message(tmp_path, clean_env, capsys):
    bad = tmp_path / "addon-dev.json"
    bad.write_text("{oops")
    assert main(["--config", str(bad), "serve"]) == 1
    assert "cannot read" in capsys.readouterr().err


def test_missing_binary_is_reported(tmp_path, clean_env, monkeypatch, capsys):
    cache = tmp_path / ".scaffold" / "cache"
    cache.mkdir(parents=True)
    (cache / "mocha.js").write_text("// mocha")
    (cache / "chai.js").write_text("// chai")
    (tmp_path / "addon-dev.json").write_text(json.dumps({"namespace": "demo"}))
    monkeypatch.chdir(tmp_path)
    assert main(["test", "--exit-on-finish"]) == 1
    assert "ADDON_DEV_BINARY_PATH" in capsys.readouterr().err


def test_missing_binary_path_names_the_file(tmp_path, clean_env, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    (tmp_path / "src").mkdir()
    assert main(["--binary", str(tmp_path / "no-such-target"), "serve", "--no-console"]) == 1
    assert "no-such-target" in capsys.readouterr().err


def test_offline_library_download_is_reported(tmp_path, clean_env, monkeypatch, capsys):
    def unreachable(url, timeout=None):
        raise urllib.error.URLError("network unreachable")

    monkeypatch.setattr("urllib.request.urlopen", unreachable)
    (tmp_path / "addon-dev.json").write_text(json.dumps({"namespace": "demo"}))
    monkeypatch.chdir(tmp_path)
    assert main(["test", "--exit-on-finish"]) == 1
    err = capsys.readouterr().err
    assert "error: cannot download mocha.js" in err
    assert "network unreachable" in err
    assert not list((tmp_path / ".scaffold" / "cache").glob("*.part"))
