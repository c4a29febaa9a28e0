"""Generate the throwaway plugin that runs mocha specs inside the target."""

from __future__ import annotations

import json
import logging
import shutil
import textwrap
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from string import Template
from typing import Iterable, List, Optional

from addonrt.errors import DownloadError

LOGGER = logging.getLogger("addon_dev.testplugin")

SPEC_PATTERN = "*.spec.js"


@dataclass(frozen=True)
class TestLibrary:
    __test__ = False

    name: str
    local: Optional[str]
    remote: str


TEST_LIBRARIES = (
    TestLibrary("mocha.js", "node_modules/mocha/mocha.js", "https://cdn.jsdelivr.net/npm/mocha/mocha.js"),
    # chai's npm build is not browser ready.
    TestLibrary("chai.js", None, "https://www.chaijs.com/chai.js"),
)

_BOOTSTRAP = Template(
    textwrap.dedent(
        """\
        /* Generated by addon-dev test. */

        var chromeHandle;

        function install(data, reason) {}

        async function startup({ id, version, resourceURI, rootURI }, reason) {
          const aomStartup = Components.classes[
            "@mozilla.org/addons/addon-manager-startup;1"
          ].getService(Components.interfaces.amIAddonManagerStartup);
          const manifestURI = Services.io.newURI(rootURI + "manifest.json");
          chromeHandle = aomStartup.registerChrome(manifestURI, [
            ["content", "$ref", rootURI + "content/"],
          ]);

          launchTests().catch((error) => {
            dump(String(error) + "\\n");
            fetch("$update_url", {
              method: "POST",
              body: JSON.stringify({
                type: "fail",
                data: {
                  title: "Internal: Plugin awaiting timeout",
                  stack: "",
                  str: "Plugin awaiting timeout",
                },
              }),
            });
          });
        }

        function shutdown({ id, version, resourceURI, rootURI }, reason) {
          if (reason === APP_SHUTDOWN) {
            return;
          }
          if (chromeHandle) {
            chromeHandle.destruct();
            chromeHandle = null;
          }
        }

        function uninstall(data, reason) {}

        async function launchTests() {
          if (typeof Zotero !== "undefined" && Zotero.initializationPromise) {
            await Zotero.initializationPromise;
          }
          await new Promise((resolve) => setTimeout(resolve, $startup_delay));

          const waitForPlugin = $wait_for_plugin;
          if (waitForPlugin) {
            await waitUntil(() => {
              try {
                return !!eval(waitForPlugin)();
              } catch (error) {
                return false;
              }
            }).catch(() => {
              throw new Error("Plugin awaiting timeout");
            });
          }

          Services.ww.openWindow(
            null,
            "chrome://$ref/content/index.xhtml",
            "$window_name",
            "chrome,centerscreen,resizable=yes",
            {}
          );
        }

        function waitUntil(condition, interval = 100, timeout = 1e4) {
          return new Promise((resolve, reject) => {
            const start = Date.now();
            const intervalId = setInterval(() => {
              if (condition()) {
                clearInterval(intervalId);
                resolve();
              } else if (Date.now() - start > timeout) {
                clearInterval(intervalId);
                reject();
              }
            }, interval);
          });
        }
        """
    )
)

_SETUP = Template(
    textwrap.dedent(
        """\
        mocha.setup({ ui: "bdd", reporter: Reporter, timeout: $mocha_timeout });

        window.expect = chai.expect;
        window.assert = chai.assert;

        async function send(data) {
          try {
            const response = await fetch("$update_url", {
              method: "POST",
              body: JSON.stringify(data),
            });
            if (!response.ok) {
              dump("Error sending data to server: " + (await response.text()) + "\\n");
              return null;
            }
            return await response.json();
          } catch (error) {
            dump("Error sending data to server: " + error + "\\n");
            return null;
          }
        }

        window.debug = function (...data) {
          const str = data.join("\\n");
          send({ type: "debug", data: { str } });
        };

        function Reporter(runner) {
          let indents = 0;
          let passed = 0;
          let failed = 0;
          let aborted = false;

          function indent() {
            return Array(indents).join("  ");
          }

          function print(str) {
            document.querySelector("#mocha").innerText += str;
          }

          runner.on("start", async function () {
            await send({ type: "start" });
          });

          runner.on("suite", async function (suite) {
            ++indents;
            const str = indent() + suite.title + "\\n";
            print(str);
            await send({ type: "suite", data: { title: suite.title, str } });
          });

          runner.on("suite end", async function (suite) {
            --indents;
            const str = indents === 1 ? "\\n" : "";
            print(str);
            await send({ type: "suite-end", data: { title: suite.title, str } });
          });

          runner.on("pending", async function (test) {
            const str = indent() + "pending  -" + test.title + "\\n";
            print(str);
            await send({ type: "pending", data: { title: test.title, str } });
          });

          runner.on("pass", async function (test) {
            passed++;
            let str = indent() + Mocha.reporters.Base.symbols.ok + " " + test.title;
            if (test.speed !== "fast") {
              str += " (" + Math.round(test.duration) + " ms)";
            }
            str += "\\n";
            print(str);
            await send({ type: "pass", data: { title: test.title, duration: test.duration, str } });
          });

          runner.on("fail", async function (test, err) {
            failed++;
            const stack = String(err.stack || "").replace(/\\s*$$/, "\\n");
            const pad = indent();
            const str =
              pad + Mocha.reporters.Base.symbols.err + " [FAIL] " + test.title + "\\n" +
              pad + "  " + err.message + "\\n";
            print(str);
            if ($abort_on_fail) {
              aborted = true;
              runner.abort();
            }
            await send({ type: "fail", data: { title: test.title, stack, str } });
          });

          runner.on("end", async function () {
            const str =
              passed + "/" + (passed + failed) + " tests passed" +
              (aborted ? " -- aborting" : "") + "\\n";
            print(str);
            await send({ type: "end", data: { passed, failed, aborted, str } });
          });
        }
        """
    )
)

_INDEX = Template(
    textwrap.dedent(
        """\
        <!DOCTYPE html>
        <html lang="en" xmlns="http://www.w3.org/1999/xhtml">
        <head>
          <meta charset="UTF-8"></meta>
          <title>Plugin Test</title>
          <style>
            html { min-width: 400px; min-height: 600px; }
            body { font-family: sans-serif; }
          </style>
        </head>
        <body>
          <div id="mocha"></div>

          <script src="mocha.js"></script>
          <script src="chai.js"></script>
          <script>
        $setup
          </script>

        $units

          <script class="mocha-exec">
            mocha.run();
          </script>
        </body>
        </html>
        """
    )
)


@dataclass
class TestPlugin:
    """On-disk layout and identity of the generated test plugin."""

    __test__ = False

    namespace: str
    directory: Path
    port: int
    startup_delay: int = 1000
    wait_for_plugin: str = ""
    mocha_timeout: int = 10000
    abort_on_fail: bool = False

    @property
    def ref(self) -> str:
        return f"{self.namespace}-test"

    @property
    def id(self) -> str:
        return f"{self.ref}@only-for-testing.com"

    @property
    def content_dir(self) -> Path:
        return self.directory / "content"

    @property
    def update_url(self) -> str:
        return f"http://localhost:{self.port}/update"

    def manifest(self) -> dict:
        return {
            "manifest_version": 2,
            "name": self.ref,
            "version": "0.0.1",
            "description": "Runtime-generated plugin that runs the test suite.",
            "applications": {
                "zotero": {
                    "id": self.id,
                    "update_url": "https://invalid.com",
                    "strict_max_version": "999.*.*",
                },
                "gecko": {"id": self.id},
            },
        }

    def render_bootstrap(self) -> str:
        return _BOOTSTRAP.substitute(
            ref=self.ref,
            update_url=self.update_url,
            startup_delay=int(self.startup_delay),
            wait_for_plugin=json.dumps(self.wait_for_plugin or ""),
            window_name=f"{self.namespace}-test",
        )

    def render_index(self, units: Iterable[str]) -> str:
        setup = _SETUP.substitute(
            update_url=self.update_url,
            mocha_timeout=int(self.mocha_timeout),
            abort_on_fail="true" if self.abort_on_fail else "false",
        )
        tags = "\n".join(f'  <script src="{unit}"></script>' for unit in units)
        return _INDEX.substitute(setup=textwrap.indent(setup, "    "), units=tags)

    def write(self) -> None:
        """Write manifest.json and bootstrap.js."""
        self.content_dir.mkdir(parents=True, exist_ok=True)
        (self.directory / "manifest.json").write_text(json.dumps(self.manifest(), indent=2), encoding="utf-8")
        (self.directory / "bootstrap.js").write_text(self.render_bootstrap(), encoding="utf-8")

    def install_libraries(
        self,
        *,
        root: Path,
        cache_dir: Path,
        libraries: Iterable[TestLibrary] = TEST_LIBRARIES,
    ) -> None:
        """Copy mocha/chai from node_modules or the cache, downloading if needed."""
        self.content_dir.mkdir(parents=True, exist_ok=True)
        for lib in libraries:
            target = self.content_dir / lib.name
            local = root / lib.local if lib.local else None
            if local is not None and local.exists():
                LOGGER.debug("local %s found", lib.name)
                shutil.copyfile(local, target)
                continue
            cached = cache_dir / lib.name
            if not cached.exists():
                LOGGER.info("no local %s found; downloading %s", lib.name, lib.remote)
                download(lib.remote, cached, label=lib.name)
            else:
                LOGGER.debug("cached %s found", lib.name)
            shutil.copyfile(cached, target)

    def bundle_specs(self, root: Path, entries: Iterable[str]) -> List[str]:
        """Copy ``*.spec.js`` files into content/units and write index.xhtml."""
        units_dir = self.content_dir / "units"
        for entry in entries:
            base = Path(entry)
            base = base if base.is_absolute() else root / base
            if not base.is_dir():
                LOGGER.warning("test entry %s does not exist", base)
                continue
            for spec in sorted(base.rglob(SPEC_PATTERN)):
                target = units_dir / spec.relative_to(base)
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(spec, target)
        units = sorted(
            path.relative_to(self.content_dir).as_posix()
            for path in units_dir.rglob(SPEC_PATTERN)
        ) if units_dir.exists() else []
        self.content_dir.mkdir(parents=True, exist_ok=True)
        (self.content_dir / "index.xhtml").write_text(self.render_index(units), encoding="utf-8")
        LOGGER.info("injected %d test files", len(units))
        return units


def download(url: str, target: Path, *, timeout: float = 30.0, label: Optional[str] = None) -> None:
    """Fetch ``url`` into ``target``; raises DownloadError and leaves no partial file."""
    target.parent.mkdir(parents=True, exist_ok=True)
    partial = target.with_name(target.name + ".part")
    try:
        with urllib.request.urlopen(url, timeout=timeout) as response, partial.open("wb") as handle:
            shutil.copyfileobj(response, handle)
        partial.replace(target)
    except OSError as exc:
        partial.unlink(missing_ok=True)
        reason = getattr(exc, "reason", None) or exc
        raise DownloadError(f"cannot download {label or target.name} from {url}: {reason}", url=url) from exc


__all__ = ["TEST_LIBRARIES", "TestLibrary", "TestPlugin", "download"]
