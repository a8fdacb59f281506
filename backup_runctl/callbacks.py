"""Ordered cleanup actions that run exactly once on the controlled exit path."""
from __future__ import annotations

import sys
from typing import Any, Callable, NoReturn, NamedTuple


class ExitCallback(NamedTuple):
    """A registered cleanup action and the arguments it will be called with."""

    action: Callable[..., Any]
    args: tuple[Any, ...]


class ExitCallbackRegistry:
    """A LIFO stack of cleanup actions plus the process exit value.

    Callbacks registered later run earlier, so a resource acquired while
    another one is held is always released first.
    """

    def __init__(self) -> None:
        self._callbacks: list[ExitCallback] = []
        self._exit_code: int | None = None

    def __len__(self) -> int:
        return len(self._callbacks)

    @property
    def callbacks(self) -> list[ExitCallback]:
        """The registered callbacks, oldest first."""
        return list(self._callbacks)

    @property
    def exit_code(self) -> int | None:
        """The first exit code that was set, if any."""
        return self._exit_code

    def set_exit_code(self, code: int) -> None:
        """Record ``code`` unless an exit code was already recorded."""
        if self._exit_code is None:
            self._exit_code = int(code)

    def register(self, action: Callable[..., Any], *args: Any) -> bool:
        """Push ``action(*args)`` onto the stack; False if it isn't callable."""
        if not callable(action):
            return False
        self._callbacks.append(ExitCallback(action, args))
        return True

    def unregister(self, action: Callable[..., Any], *args: Any) -> bool:
        """Remove the most recent entry matching ``action`` and ``args`` exactly."""
        for i in range(len(self._callbacks) - 1, -1, -1):
            callback = self._callbacks[i]
            if callback.action == action and callback.args == args:
                del self._callbacks[i]
                return True
        return False

    def run_callbacks(self) -> None:
        """Pop and run every callback, most recently registered first."""
        while self._callbacks:
            # pop before calling so a nested exit can't run it twice
            callback = self._callbacks.pop()
            callback.action(*callback.args)

    def exit(self, code: int) -> NoReturn:
        """Run all callbacks, then terminate with the first exit code set."""
        self.run_callbacks()
        self.set_exit_code(code)
        assert self._exit_code is not None
        sys.exit(self._exit_code)
