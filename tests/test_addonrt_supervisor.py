import json

import pytest

from addonrt.errors import DevkitError, InstallError, LaunchError, RemoteConnectionError
from addonrt.supervisor import RUNNING, STOPPED, InstanceSupervisor, LaunchConfig, PluginSpec

from conftest import write_script
from rdp_stub import FakeRdpServer


def _config(tmp_path, binary, plugins, **kwargs) -> LaunchConfig:
    kwargs.setdefault("connect_timeout", 1.0)
    kwargs.setdefault("request_timeout", 5.0)
    kwargs.setdefault("backoff", 0.05)
    kwargs.setdefault("max_backoff", 0.2)
    kwargs.setdefault("max_retries", 60)
    return LaunchConfig(
        binary_path=str(binary),
        profile_dir=tmp_path / "profile",
        data_dir=tmp_path / "data",
        plugins=[PluginSpec(f"{path.name}@test", path) for path in plugins],
        **kwargs,
    )


def _log(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


def test_run_installs_every_plugin_and_exit_is_idempotent(tmp_path, fake_target, plugin_dirs):
    log = tmp_path / "rdp.log"
    supervisor = InstanceSupervisor(
        _config(tmp_path, fake_target, plugin_dirs, env={"RDP_STUB_LOG": str(log)}, prefs={"custom.pref": 1})
    )
    try:
        supervisor.run()
        assert supervisor.state == RUNNING
        assert [plugin.addon_id for plugin in supervisor.installed] == ["main@test", "extra@test"]
        assert 'user_pref("custom.pref", 1);' in (tmp_path / "profile" / "user.js").read_text()
        status = supervisor.status()
        assert status["connected"] and status["returncode"] is None
    finally:
        supervisor.exit()
    supervisor.exit()
    assert supervisor.state == STOPPED
    assert supervisor.status()["returncode"] is not None
    types = [msg["type"] for msg in _log(log)]
    assert types[:3] == ["getRoot", "installTemporaryAddon", "installTemporaryAddon"]


def test_connect_retries_until_target_listens(tmp_path, fake_target, plugin_dirs):
    supervisor = InstanceSupervisor(_config(tmp_path, fake_target, plugin_dirs[:1], env={"RDP_STUB_DELAY": "0.5"}))
    try:
        supervisor.run()
        assert supervisor.state == RUNNING
    finally:
        supervisor.exit()


def test_reload_uninstalls_then_installs_in_order(tmp_path, fake_target, plugin_dirs):
    log = tmp_path / "rdp.log"
    supervisor = InstanceSupervisor(_config(tmp_path, fake_target, plugin_dirs, env={"RDP_STUB_LOG": str(log)}))
    try:
        supervisor.run()
        report = supervisor.reload()
        assert report.ok
        assert report.reloaded == ["main@test", "extra@test"]
        assert supervisor.state == RUNNING
    finally:
        supervisor.exit()
    reload_msgs = [(msg["type"], msg.get("addonId") or msg.get("addonPath")) for msg in _log(log)[3:]]
    assert reload_msgs[:4] == [
        ("uninstallAddon", "main@test"),
        ("installTemporaryAddon", str(plugin_dirs[0].resolve())),
        ("uninstallAddon", "extra@test"),
        ("installTemporaryAddon", str(plugin_dirs[1].resolve())),
    ]


def test_reload_failure_does_not_stop_other_plugins(tmp_path, plugin_dirs):
    server = FakeRdpServer()
    idle = write_script(tmp_path / "idle-target", "import time\ntime.sleep(60)\n")
    supervisor = InstanceSupervisor(_config(tmp_path, idle, plugin_dirs, remote_port=server.port))
    try:
        supervisor.run()
        server.fail_install = {"main"}
        report = supervisor.reload()
        assert not report.ok
        assert [error.plugin_id for error in report.failures] == ["main@test"]
        assert isinstance(report.failures[0], InstallError)
        assert report.reloaded == ["extra@test"]
        main = supervisor.installed[0]
        assert main.installed is False

        server.fail_install = set()
        assert supervisor.reload().ok
        types = [msg["type"] for msg in server.received]
        # the failed plugin is only installed on the next pass
        assert types[-3:] == ["installTemporaryAddon", "uninstallAddon", "installTemporaryAddon"]

        supervisor.exit()
        assert server.quit_requested.wait(2.0)
        assert server.received[-1] == {"to": "root", "type": "quit"}
        assert supervisor.state == STOPPED
        assert supervisor.status()["returncode"] is not None
    finally:
        supervisor.exit()
        server.stop()


def test_launch_fails_when_port_never_opens(tmp_path, fake_target, plugin_dirs):
    supervisor = InstanceSupervisor(
        _config(tmp_path, fake_target, plugin_dirs, env={"RDP_STUB_NO_LISTEN": "1"}, max_retries=3)
    )
    with pytest.raises(LaunchError) as info:
        supervisor.run()
    assert "not reachable" in str(info.value)
    assert supervisor.state == STOPPED
    assert supervisor.status()["returncode"] is not None


def test_launch_fails_when_target_exits_early(tmp_path, plugin_dirs):
    crashing = write_script(tmp_path / "crash-target", "import sys\nsys.exit(3)\n")
    supervisor = InstanceSupervisor(_config(tmp_path, crashing, plugin_dirs))
    with pytest.raises(LaunchError) as info:
        supervisor.run()
    assert "exited with code 3" in str(info.value)
    assert supervisor.state == STOPPED


def test_install_failure_on_launch_tears_down(tmp_path, fake_target, plugin_dirs):
    supervisor = InstanceSupervisor(_config(tmp_path, fake_target, plugin_dirs, env={"RDP_STUB_FAIL_INSTALL": "extra"}))
    with pytest.raises(InstallError) as info:
        supervisor.run()
    assert info.value.plugin_id == "extra@test"
    assert supervisor.state == STOPPED
    assert supervisor.status()["returncode"] is not None


def test_missing_binary_is_a_launch_error(tmp_path, plugin_dirs):
    supervisor = InstanceSupervisor(_config(tmp_path, tmp_path / "nope", plugin_dirs))
    with pytest.raises(LaunchError) as info:
        supervisor.run()
    assert "not found" in str(info.value)
    with pytest.raises(DevkitError):
        supervisor.run()


def test_unset_binary_names_the_setting(tmp_path):
    config = _config(tmp_path, "", [])
    config.binary_path = None
    with pytest.raises(LaunchError) as info:
        InstanceSupervisor(config).run()
    assert "ADDON_DEV_BINARY_PATH" in str(info.value)


def test_reload_requires_running_instance(tmp_path):
    supervisor = InstanceSupervisor(_config(tmp_path, "unused", []))
    with pytest.raises(RemoteConnectionError):
        supervisor.reload()


def test_build_command(tmp_path, monkeypatch):
    config = _config(tmp_path, "/opt/target/target", [], devtools=True, binary_args=["-ZoteroDebugText"])
    supervisor = InstanceSupervisor(config)
    cmd = supervisor.build_command(6123)
    assert cmd[0] == "/opt/target/target"
    assert cmd[cmd.index("--start-debugger-server") + 1] == "6123"
    assert cmd[cmd.index("-profile") + 1] == str(tmp_path / "profile")
    assert "--jsdebugger" in cmd
    assert cmd[-1] == "-ZoteroDebugText"

    config.headless = True
    monkeypatch.setattr("addonrt.supervisor.shutil.which", lambda name: "/usr/bin/xvfb-run")
    assert supervisor.build_command(6123)[:2] == ["/usr/bin/xvfb-run", "-a"]
