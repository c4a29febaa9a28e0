"""``addon-dev serve``: build, launch, watch and live-reload."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from addonrt.builder import Builder, CommandBuilder
from addonrt.devloop import DevLoopScheduler, SourceWatcher
from addonrt.errors import BuildError
from addonrt.hooks import HookRegistry, load_command_hooks
from addonrt.supervisor import InstanceSupervisor, LaunchConfig, PluginSpec, ReloadReport

from .config import DevConfig
from .console import ServeConsole
from .output import render_status

LOG = logging.getLogger("addon_dev.serve")

SupervisorFactory = Callable[[LaunchConfig], InstanceSupervisor]


class ServeCommand:
    """Run one development session until the user stops it."""

    def __init__(
        self,
        config: DevConfig,
        *,
        builder: Optional[Builder] = None,
        hooks: Optional[HookRegistry] = None,
        supervisor_factory: Optional[SupervisorFactory] = None,
        interactive: Optional[bool] = None,
    ) -> None:
        self.config = config
        self.builder = builder or CommandBuilder(
            config.build_command,
            bundle_command=config.bundle_command,
            cwd=config.root,
        )
        self.hooks = hooks or load_command_hooks(HookRegistry(), config.hooks, cwd=config.root)
        self.supervisor_factory = supervisor_factory or InstanceSupervisor
        self.interactive = interactive if interactive is not None else config.server.console
        self.supervisor: Optional[InstanceSupervisor] = None
        self.stop = threading.Event()
        self.scheduler = DevLoopScheduler(
            self.builder,
            self.reload,
            window=config.server.debounce,
            script_suffixes=config.server.script_suffixes,
            on_change=self._on_cycle,
            on_reloaded=self._on_reloaded,
        )
        self.watcher = SourceWatcher(config.source_dirs, self.on_path_changed)
        self._exited = False

    def launch_config(self) -> LaunchConfig:
        config = self.config
        return LaunchConfig(
            binary_path=config.binary_path,
            profile_dir=config.serve_profile_dir,
            data_dir=config.serve_data_dir,
            plugins=[PluginSpec(config.id, config.plugin_dir)],
            binary_args=list(config.server.start_args),
            devtools=config.server.devtools,
            prefs=dict(config.server.prefs),
            kill_command=config.kill_command,
        )

    def run(self) -> int:
        try:
            self.hooks.call("serve:init", self)
            try:
                self.builder.build()
            except BuildError as exc:
                LOG.error("initial build failed: %s", exc)
                return 1
            self.hooks.call("serve:prebuild", self)
            self.supervisor = self.supervisor_factory(self.launch_config())
            self.supervisor.run()
            self.scheduler.start()
            self.watcher.start()
            self.hooks.call("serve:ready", self)
            LOG.info("Server Ready! Watching %s", ", ".join(str(p) for p in self.config.source_dirs))
            ServeConsole(self, stop=self.stop).run(interactive=None if self.interactive else False)
        except KeyboardInterrupt:
            LOG.info("interrupted")
        finally:
            self.exit()
        return 0

    def on_path_changed(self, path: str) -> None:
        LOG.info("%s changed", path)
        self.scheduler.notify(path)

    def request_rebuild(self, path: str) -> None:
        self.scheduler.trigger(path)

    def reload(self) -> ReloadReport:
        if self.supervisor is None:
            raise RuntimeError("target not launched")
        report = self.supervisor.reload()
        if not report.ok:
            raise report.failures[0]
        return report

    def describe(self) -> str:
        if self.supervisor is None:
            return "target not launched"
        text = render_status(self.supervisor.status())
        if self.scheduler.last_error is not None:
            text += f"\n\nlast rebuild failed: {self.scheduler.last_error}"
        return text

    def exit(self) -> None:
        if self._exited:
            return
        self._exited = True
        self.stop.set()
        self.watcher.stop()
        self.scheduler.stop()
        if self.supervisor is not None:
            self.supervisor.exit()
        self.hooks.call("serve:exit", self)

    def _on_cycle(self, path: str) -> None:
        self.hooks.call("serve:onChanged", self, path)

    def _on_reloaded(self, report: ReloadReport) -> None:
        LOG.info("reloaded %s", ", ".join(report.reloaded) or "nothing")
        self.hooks.call("serve:onReloaded", self, report)


__all__ = ["ServeCommand"]
