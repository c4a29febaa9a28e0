import os

import pytest

from addonrt.hooks import KNOWN_HOOKS, HookRegistry, load_command_hooks


def test_hooks_run_in_registration_order():
    hooks = HookRegistry()
    calls = []
    hooks.register("serve:init", lambda ctx: calls.append(("first", ctx)))
    hooks.register("serve:init", lambda ctx: calls.append(("second", ctx)))
    assert hooks.call("serve:init", "ctx") == 0
    assert calls == [("first", "ctx"), ("second", "ctx")]


def test_failing_hook_is_counted_not_raised():
    hooks = HookRegistry()
    calls = []

    def broken(*args):
        raise RuntimeError("hook bug")

    hooks.register("test:run", broken)
    hooks.register("test:run", lambda *args: calls.append(args))
    assert hooks.call("test:run", 1) == 1
    assert calls == [(1,)]


def test_unknown_hook_name_is_rejected():
    with pytest.raises(ValueError):
        HookRegistry().register("serve:whenever", lambda: None)
    assert "test:bundleTests" in KNOWN_HOOKS


def test_unregister():
    hooks = HookRegistry()
    calls = []
    callback = calls.append
    hooks.register("serve:exit", callback)
    hooks.unregister("serve:exit", callback)
    hooks.call("serve:exit", "x")
    assert calls == []


@pytest.mark.skipif(os.name == "nt", reason="uses POSIX shell syntax")
def test_command_hooks_run_shell_commands(tmp_path):
    marker = tmp_path / "marker.txt"
    hooks = load_command_hooks(
        HookRegistry(),
        {"serve:ready": f'echo "$ADDON_DEV_HOOK" > "{marker}"', "serve:exit": ["exit 0", "exit 3"]},
        cwd=tmp_path,
    )
    assert hooks.call("serve:ready") == 0
    assert marker.read_text().strip() == "serve:ready"
    assert hooks.call("serve:exit") == 1
