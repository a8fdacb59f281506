"""Tests for the exit-callback stack."""

from __future__ import annotations

import pytest

from backup_runctl.callbacks import ExitCallbackRegistry


def test_register_rejects_non_callable() -> None:
    """Only callables can be registered."""
    registry = ExitCallbackRegistry()
    assert registry.register("not a function") is False  # type: ignore[arg-type]
    assert len(registry) == 0
    assert registry.register(print, "hello") is True
    assert len(registry) == 1


def test_exit_runs_callbacks_in_reverse_order() -> None:
    """Callbacks fire last-registered first, each exactly once."""
    registry = ExitCallbackRegistry()
    calls: list[tuple[str, ...]] = []

    def record(*args: str) -> None:
        calls.append(args)

    for i in range(5):
        registry.register(record, f"cb{i}", "x")

    with pytest.raises(SystemExit) as exc:
        registry.exit(4)
    assert exc.value.code == 4
    assert calls == [(f"cb{i}", "x") for i in reversed(range(5))]
    assert len(registry) == 0

    # a second exit has nothing left to run
    with pytest.raises(SystemExit):
        registry.exit(0)
    assert len(calls) == 5


def test_unregister_removes_most_recent_match() -> None:
    """Unregistering takes out the newest exact match and keeps the order of the rest."""
    registry = ExitCallbackRegistry()
    calls: list[tuple[str, ...]] = []

    def record(*args: str) -> None:
        calls.append(args)

    registry.register(record, "a")
    registry.register(record, "b")
    registry.register(record, "a")
    registry.register(record, "c")

    assert registry.unregister(record, "a") is True
    assert [cb.args for cb in registry.callbacks] == [("a",), ("b",), ("c",)]

    # arguments must match exactly, including trailing ones
    assert registry.unregister(record, "b", "extra") is False
    assert registry.unregister(record) is False
    assert registry.unregister(print, "b") is False

    with pytest.raises(SystemExit):
        registry.exit(0)
    assert calls == [("c",), ("b",), ("a",)]


def test_first_exit_code_wins() -> None:
    """Once an exit code is set, later ones are ignored."""
    registry = ExitCallbackRegistry()
    assert registry.exit_code is None
    registry.set_exit_code(3)
    registry.set_exit_code(7)
    assert registry.exit_code == 3
    with pytest.raises(SystemExit) as exc:
        registry.exit(0)
    assert exc.value.code == 3


def test_nested_exit_does_not_rerun_callbacks() -> None:
    """A callback that itself exits doesn't make any callback run twice."""
    registry = ExitCallbackRegistry()
    calls: list[str] = []

    registry.register(calls.append, "outer")
    registry.register(lambda: registry.exit(5))
    registry.register(calls.append, "inner")

    with pytest.raises(SystemExit) as exc:
        registry.exit(1)
    assert exc.value.code == 5
    assert calls == ["inner", "outer"]
    assert len(registry) == 0
