import http.client
import json
import threading
import time

import pytest

from addonrt.builder import Builder
from addonrt.errors import BuildError, LaunchError
from addonrt.hooks import HookRegistry, SERVE_HOOKS, TEST_HOOKS
from addonrt.supervisor import ReloadReport
from addon_dev.config import load_config
from addon_dev.console import ServeConsole
from addon_dev.serve import ServeCommand
from addon_dev.tester import TestCommand


class NullBuilder(Builder):
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls = []

    def build(self) -> None:
        self.calls.append("build")
        if self.fail:
            raise BuildError("tsc exploded")

    def bundle_scripts(self) -> None:
        self.calls.append("bundle")


class FakeSupervisor:
    def __init__(self, config, on_run=None) -> None:
        self.config = config
        self.on_run = on_run
        self.reloads = 0
        self.exits = 0
        self.returncode = None

    def run(self) -> None:
        if self.on_run is not None:
            self.on_run(self)

    def reload(self) -> ReloadReport:
        self.reloads += 1
        return ReloadReport(reloaded=[plugin.id for plugin in self.config.plugins])

    def exit(self) -> None:
        self.exits += 1
        if self.returncode is None:
            self.returncode = -9

    def status(self):
        return {"state": "running", "pid": 1, "returncode": self.returncode, "port": 6000, "connected": True, "plugins": []}


def _recording_hooks(names):
    hooks = HookRegistry()
    fired = []
    for name in names:
        hooks.register(name, lambda *args, _name=name: fired.append(_name))
    return hooks, fired


def _post(port, payload):
    conn = http.client.HTTPConnection("127.0.0.1", port, timeout=2.0)
    try:
        conn.request("POST", "/update", body=json.dumps(payload))
        return conn.getresponse().status
    finally:
        conn.close()


@pytest.fixture
def project(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "index.ts").write_text("export {};")
    (tmp_path / "test").mkdir()
    (tmp_path / "test" / "demo.spec.js").write_text("describe('demo', () => {});")
    cache = tmp_path / ".scaffold" / "cache"
    cache.mkdir(parents=True)
    (cache / "mocha.js").write_text("// mocha")
    (cache / "chai.js").write_text("// chai")
    config = load_config(root=tmp_path, env={})
    config.binary_path = "/opt/target/target"
    config.server.debounce = 0.05
    return config


class _Console:
    def __init__(self) -> None:
        self.rebuilds = []

    def request_rebuild(self, path):
        self.rebuilds.append(path)

    def describe(self):
        return "state running"


def test_console_dispatch(capsys):
    serve = _Console()
    console = ServeConsole(serve)
    assert console.dispatch("reload") is False
    assert console.dispatch("b src/index.ts") is False
    assert serve.rebuilds == ["console", "src/index.ts"]
    console.dispatch("status")
    console.dispatch("bogus")
    console.dispatch("help")
    out = capsys.readouterr().out
    assert "state running" in out
    assert "Unknown command: bogus" in out
    assert "quit" in out
    assert console.dispatch("q") is True
    assert console.stop.is_set()


def test_serve_builds_launches_and_reloads_on_change(project):
    hooks, fired = _recording_hooks(SERVE_HOOKS)
    builder = NullBuilder()
    supervisors = []

    def factory(config):
        supervisors.append(FakeSupervisor(config))
        return supervisors[-1]

    command = ServeCommand(project, builder=builder, hooks=hooks, supervisor_factory=factory, interactive=False)
    result = {}
    thread = threading.Thread(target=lambda: result.setdefault("code", command.run()), daemon=True)
    thread.start()
    try:
        deadline = time.monotonic() + 3.0
        while "serve:ready" not in fired and time.monotonic() < deadline:
            time.sleep(0.01)
        assert "serve:ready" in fired
        launch = supervisors[0].config
        assert [plugin.id for plugin in launch.plugins] == [project.id]
        assert launch.plugins[0].source_dir == project.plugin_dir

        (project.root / "src" / "index.ts").write_text("export const changed = 1;")
        while supervisors[0].reloads == 0 and time.monotonic() < deadline:
            time.sleep(0.01)
        assert supervisors[0].reloads == 1
        assert builder.calls[:2] == ["build", "bundle"]
    finally:
        command.stop.set()
        thread.join(3.0)
    assert result["code"] == 0
    assert supervisors[0].exits == 1
    assert fired[0] == "serve:init" and fired[-1] == "serve:exit"
    assert "serve:onChanged" in fired and "serve:onReloaded" in fired
    command.exit()
    assert supervisors[0].exits == 1


def test_serve_initial_build_failure(project):
    supervisors = []
    command = ServeCommand(
        project,
        builder=NullBuilder(fail=True),
        supervisor_factory=lambda config: supervisors.append(config),
        interactive=False,
    )
    assert command.run() == 1
    assert supervisors == []


def _tester(project, on_run, **kwargs):
    hooks, fired = _recording_hooks(TEST_HOOKS)
    supervisors = []
    command = None

    def factory(config):
        supervisors.append(FakeSupervisor(config, on_run=lambda sup: on_run(command, sup)))
        return supervisors[-1]

    command = TestCommand(project, builder=NullBuilder(), hooks=hooks, supervisor_factory=factory, poll_interval=0.02, **kwargs)
    return command, supervisors, fired


def _emit(events):
    def on_run(command, supervisor):
        def target():
            for event in events:
                _post(command.bridge.port, event)

        threading.Thread(target=target, daemon=True).start()

    return on_run


def test_tester_passing_run(project, capsys):
    project.test.exit_on_finish = True
    stale = project.scratch / "test" / "profile" / "stale.txt"
    stale.parent.mkdir(parents=True)
    stale.write_text("old")
    events = [
        {"type": "start"},
        {"type": "pass", "data": {"title": "one"}},
        {"type": "pass", "data": {"title": "two"}},
        {"type": "end", "data": {"passed": 2, "failed": 0}},
    ]
    command, supervisors, fired = _tester(project, _emit(events))
    assert command.run() == 0
    assert not stale.exists()
    launch = supervisors[0].config
    assert [plugin.id for plugin in launch.plugins] == [project.id, "addon-test@only-for-testing.com"]
    assert launch.prefs["extensions.zotero.httpServer.enabled"] is True
    assert supervisors[0].exits == 1
    assert fired == list(TEST_HOOKS)
    assert command.bridge.closed
    resource = project.scratch / "test" / "resource"
    assert (resource / "content" / "units" / "demo.spec.js").exists()
    assert "2/2 tests passed" in capsys.readouterr().out


def test_tester_failing_run(project):
    project.test.exit_on_finish = True
    events = [
        {"type": "pass", "data": {"title": "one"}},
        {"type": "fail", "data": {"title": "two", "stack": "AssertionError"}},
        {"type": "end"},
    ]
    command, _, _ = _tester(project, _emit(events))
    assert command.run() == 1
    assert command.bridge.run.failed == 1


def test_tester_target_dies_before_end(project):
    def on_run(command, supervisor):
        supervisor.returncode = 0

    command, supervisors, _ = _tester(project, on_run)
    assert command.run() == 1


def test_tester_times_out(project):
    project.test.run_timeout = 0.2
    command, _, _ = _tester(project, lambda command, supervisor: None)
    assert command.run() == 1


def test_tester_launch_error_still_tears_down(project):
    def on_run(command, supervisor):
        raise LaunchError("target binary not found")

    command, supervisors, fired = _tester(project, on_run)
    with pytest.raises(LaunchError):
        command.run()
    assert command.bridge.closed
    assert supervisors[0].exits == 1
    assert fired[-1] == "test:exit"
