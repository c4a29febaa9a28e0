"""addon-dev CLI entry point."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import List

from addonrt.errors import ConfigError, DevkitError

from .config import ENV_LOG_LEVEL, load_config
from .serve import ServeCommand
from .tester import TestCommand

LOG = logging.getLogger("addon_dev.cli")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _install_signal_handlers() -> None:
    # SIGTERM unwinds like Ctrl+C so the target is always torn down.
    if threading.current_thread() is threading.main_thread() and hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal.default_int_handler)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="addon-dev", description="Plugin development harness")
    parser.add_argument("--config", type=Path, help="Path to addon-dev.json (default: ./addon-dev.json)")
    parser.add_argument(
        "--log-level",
        default=os.environ.get(ENV_LOG_LEVEL),
        help="Logging level (default INFO, or $ADDON_DEV_LOG)",
    )
    parser.add_argument("--binary", help="Target application binary (overrides ADDON_DEV_BINARY_PATH)")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Launch the target and live-reload on source changes")
    serve.add_argument("--no-console", action="store_true", help="Do not open the interactive console")
    serve.add_argument("--no-devtools", action="store_true", help="Do not open the devtools window")

    test = sub.add_parser("test", help="Run the mocha specs inside the target")
    test.add_argument("--abort-on-fail", action="store_true", help="Stop at the first failing test")
    test.add_argument("--exit-on-finish", action="store_true", help="Exit once the run ends")
    test.add_argument("--headless", action="store_true", help="Run the target under xvfb-run")
    test.add_argument("--timeout", type=float, help="Fail the run after this many seconds")
    return parser


def main(argv: List[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        _configure_logging(args.log_level or "INFO")
        print(f"error: {exc}", file=sys.stderr)
        return 1
    _configure_logging(args.log_level or config.log_level)
    if args.binary:
        config.binary_path = args.binary
    _install_signal_handlers()

    if args.command == "serve":
        if args.no_console:
            config.server.console = False
        if args.no_devtools:
            config.server.devtools = False
        command = ServeCommand(config)
    else:
        options = config.test
        options.abort_on_fail = options.abort_on_fail or args.abort_on_fail
        options.exit_on_finish = options.exit_on_finish or args.exit_on_finish
        options.headless = options.headless or args.headless
        if args.timeout is not None:
            options.run_timeout = args.timeout
        command = TestCommand(config)

    try:
        return command.run()
    except DevkitError as exc:
        LOG.debug("command failed", exc_info=True)
        print(f"error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print()
        return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
