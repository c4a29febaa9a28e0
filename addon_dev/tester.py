"""``addon-dev test``: run the plugin's mocha specs inside the target."""

from __future__ import annotations

import logging
import shutil
import time
from pathlib import Path
from typing import Callable, Dict, Optional

from addonrt.bridge import ResultBridge
from addonrt.builder import Builder, CommandBuilder
from addonrt.errors import BuildError
from addonrt.hooks import HookRegistry, load_command_hooks
from addonrt.supervisor import InstanceSupervisor, LaunchConfig, PluginSpec

from .config import DevConfig
from .output import print_event, print_summary
from .testplugin import TestPlugin

LOG = logging.getLogger("addon_dev.tester")

SupervisorFactory = Callable[[LaunchConfig], InstanceSupervisor]

TEST_PREFS: Dict[str, object] = {
    "app.update.enabled": False,
    "extensions.zotero.sync.server.compressData": False,
    "extensions.zotero.automaticScraperUpdates": False,
    "extensions.zotero.debug.log": 5,
    "extensions.zotero.debug.level": 5,
    "extensions.zotero.debug.time": 5,
    "extensions.zotero.firstRun.skipFirefoxProfileAccessCheck": True,
    "extensions.zotero.firstRunGuidance": False,
    "extensions.zotero.firstRun2": False,
    "extensions.zotero.reportTranslationFailure": False,
    "extensions.zotero.httpServer.enabled": True,
    "extensions.zotero.httpServer.port": 23124,
    "extensions.zotero.httpServer.localAPI.enabled": True,
    "extensions.zotero.backup.numBackups": 0,
    "extensions.zotero.sync.autoSync": False,
}


def _empty_dir(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)
    path.mkdir(parents=True, exist_ok=True)


class TestCommand:
    """One headless-capable test run; ``run()`` returns the exit code."""

    __test__ = False

    def __init__(
        self,
        config: DevConfig,
        *,
        builder: Optional[Builder] = None,
        hooks: Optional[HookRegistry] = None,
        supervisor_factory: Optional[SupervisorFactory] = None,
        poll_interval: float = 0.25,
    ) -> None:
        self.config = config
        self.builder = builder or CommandBuilder(
            config.build_command,
            bundle_command=config.bundle_command,
            cwd=config.root,
        )
        self.hooks = hooks or load_command_hooks(HookRegistry(), config.hooks, cwd=config.root)
        self.supervisor_factory = supervisor_factory or InstanceSupervisor
        self.poll_interval = poll_interval
        self.bridge = ResultBridge(
            exit_on_finish=config.test.exit_on_finish,
            abort_on_fail=config.test.abort_on_fail,
            reporter=print_event,
        )
        self.supervisor: Optional[InstanceSupervisor] = None
        self.plugin: Optional[TestPlugin] = None
        self._exited = False

    @property
    def test_dir(self) -> Path:
        return self.config.scratch / "test"

    @property
    def profile_dir(self) -> Path:
        return self.test_dir / "profile"

    @property
    def data_dir(self) -> Path:
        return self.test_dir / "data"

    @property
    def plugin_dir(self) -> Path:
        return self.test_dir / "resource"

    @property
    def cache_dir(self) -> Path:
        return self.config.scratch / "cache"

    def prefs(self) -> Dict[str, object]:
        prefs = dict(TEST_PREFS)
        prefs.update(self.config.test.prefs)
        return prefs

    def launch_config(self, plugin: TestPlugin) -> LaunchConfig:
        config = self.config
        return LaunchConfig(
            binary_path=config.binary_path,
            profile_dir=self.profile_dir,
            data_dir=self.data_dir,
            plugins=[PluginSpec(config.id, config.plugin_dir), PluginSpec(plugin.id, plugin.directory)],
            binary_args=list(config.server.start_args),
            devtools=config.server.devtools,
            prefs=self.prefs(),
            kill_command=config.kill_command,
            headless=config.test.headless,
        )

    def prepare(self) -> TestPlugin:
        """Build the plugin, start the bridge and lay out the test plugin."""
        for path in (self.profile_dir, self.data_dir, self.plugin_dir):
            _empty_dir(path)
        self.hooks.call("test:init", self)
        self.builder.build()
        self.hooks.call("test:prebuild", self)
        port = self.bridge.start()
        self.hooks.call("test:listen", self)
        options = self.config.test
        plugin = TestPlugin(
            namespace=self.config.namespace,
            directory=self.plugin_dir,
            port=port,
            startup_delay=options.startup_delay,
            wait_for_plugin=options.wait_for_plugin,
            mocha_timeout=options.mocha_timeout,
            abort_on_fail=options.abort_on_fail,
        )
        plugin.write()
        plugin.install_libraries(root=self.config.root, cache_dir=self.cache_dir)
        self.hooks.call("test:copyAssets", self)
        plugin.bundle_specs(self.config.root, options.entries)
        self.hooks.call("test:bundleTests", self)
        self.plugin = plugin
        return plugin

    def run(self) -> int:
        try:
            try:
                plugin = self.prepare()
            except BuildError as exc:
                LOG.error("build failed: %s", exc)
                return 1
            self.supervisor = self.supervisor_factory(self.launch_config(plugin))
            self.supervisor.run()
            self.hooks.call("test:run", self)
            code = self.wait()
        except KeyboardInterrupt:
            LOG.info("tester shutdown by user request")
            return 0
        finally:
            self.exit()
        print_summary(self.bridge.run)
        if code:
            LOG.error("test run failed")
        else:
            LOG.info("test run completed successfully")
        return code

    def wait(self) -> int:
        """Wait for the bridge to settle, the target to die or the run to time out."""
        timeout = self.config.test.run_timeout
        deadline = time.monotonic() + timeout if timeout else None
        while not self.bridge.done:
            if self._target_exited():
                LOG.error("target exited before the test run finished")
                return 1
            if deadline is not None and time.monotonic() >= deadline:
                LOG.error("test run timed out after %ss", timeout)
                return 1
            self.bridge.wait(self.poll_interval)
        if self.bridge.exit_code is not None:
            return self.bridge.exit_code
        LOG.info("tests finished; target left open for inspection, press Ctrl+C to exit")
        while not self._target_exited():
            time.sleep(self.poll_interval)
        return self.bridge.run.exit_code

    def exit(self) -> None:
        if self._exited:
            return
        self._exited = True
        self.bridge.close()
        if self.supervisor is not None:
            self.supervisor.exit()
        self.hooks.call("test:exit", self)

    def _target_exited(self) -> bool:
        supervisor = self.supervisor
        if supervisor is None:
            return True
        return supervisor.status().get("returncode") is not None


__all__ = ["TEST_PREFS", "TestCommand"]
