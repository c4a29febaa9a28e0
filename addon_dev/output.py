"""Output helpers for addon-dev."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from tabulate import tabulate

from addonrt.bridge import BridgeEvent, TestRun


def _indent(text: str, depth: int = 2) -> str:
    pad = " " * depth
    return "\n".join(pad + line for line in text.splitlines())


def print_event(event: BridgeEvent, run: TestRun) -> None:
    """Echo one test event as it arrives from the target."""
    text = event.text.rstrip()
    if event.type == "start":
        print("Tests started")
    elif event.type == "suite" and event.title:
        print(event.title)
    elif event.type == "pass":
        print(text or f"  ok {event.title}")
    elif event.type == "pending":
        print(text or f"  - {event.title}")
    elif event.type == "fail":
        print(text or f"  FAIL {event.title}")
        stack = str(event.data.get("stack") or "").strip()
        if stack:
            print(_indent(stack, 4))
    elif event.type == "debug" and text:
        print(text)
    elif event.type == "end":
        print(run.summary())


def render_failures(run: TestRun) -> Optional[str]:
    if not run.failures:
        return None
    rows = []
    for index, failure in enumerate(run.failures, start=1):
        first = failure.stack.strip().splitlines()[0] if failure.stack.strip() else ""
        rows.append([index, failure.title, first])
    return tabulate(rows, headers=["#", "Test", "Error"], tablefmt="github")


def print_summary(run: TestRun) -> None:
    """Print the final tally plus a failure table when needed."""
    rows = [
        ["passed", run.passed],
        ["failed", run.failed],
        ["pending", run.pending],
        ["finished", "yes" if run.finished else "no"],
    ]
    if run.aborted:
        rows.append(["aborted", "yes"])
    print(tabulate(rows, headers=["Result", "Count"], tablefmt="github"))
    table = render_failures(run)
    if table:
        print()
        print(table)


def render_status(status: Mapping[str, Any]) -> str:
    """Format ``InstanceSupervisor.status()`` for the console."""
    head = [
        ["state", status.get("state")],
        ["pid", status.get("pid") if status.get("pid") is not None else "-"],
        ["remote port", status.get("port") or "-"],
        ["connected", "yes" if status.get("connected") else "no"],
    ]
    lines = [tabulate(head, tablefmt="plain")]
    plugins = status.get("plugins") or []
    if plugins:
        rows = [
            [entry.get("id"), entry.get("addon_id") or "-", "yes" if entry.get("installed") else "no"]
            for entry in plugins
        ]
        lines.append(tabulate(rows, headers=["Plugin", "Add-on id", "Installed"], tablefmt="github"))
    return "\n\n".join(lines)


__all__ = ["print_event", "print_summary", "render_failures", "render_status"]
