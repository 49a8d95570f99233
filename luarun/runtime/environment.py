"""
Global environment construction.

Every run gets a fresh global table: the standard library first, then the
host bindings. Host bindings are plain `NativeFunction` values, so a script
calls them exactly like a built-in.

The table's lock is taken only while host bindings are inserted. Nothing
that reads the table runs under the lock.

Key functions:
- build_globals: Build the environment for one run
- register_native: Add one host function to an environment
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Tuple

from luarun.lua.stdlib import standard_globals
from luarun.lua.value import LuaTable, NativeFunction, debug_repr

logger = logging.getLogger(__name__)

NativeCallable = Callable[[Tuple[Any, ...], Any], Tuple[Any, ...]]


def format_arguments(args: Tuple[Any, ...]) -> str:
    """Render an argument tuple the way `debug` shows it: `(1, 'a', nil)`."""
    return "(" + ", ".join(debug_repr(value) for value in args) + ")"


def debug_native(args: Tuple[Any, ...], vm: Any) -> Tuple[Any, ...]:
    """`debug(...)`: return a string rendering of the received arguments."""
    return (format_arguments(args),)


HOST_BINDINGS: Dict[str, NativeCallable] = {
    "debug": debug_native,
}


def _insert(globals: LuaTable, name: str, fn: NativeCallable) -> None:
    # Caller holds globals.lock
    globals.set(name, NativeFunction(name, fn))


def register_native(globals: LuaTable, name: str, fn: NativeCallable) -> None:
    """
    Expose a host function to scripts under `name`.

    Must not be called while the caller already holds `globals.lock`.
    """
    with globals.lock:
        _insert(globals, name, fn)
    logger.debug("registered native %r", name)


def build_globals(bindings: Dict[str, NativeCallable] = None) -> LuaTable:
    """
    Build the global environment for one run.

    Args:
        bindings: Host functions to install (default HOST_BINDINGS)

    Returns:
        Standard globals extended with the host bindings
    """
    globals = standard_globals()
    bindings = HOST_BINDINGS if bindings is None else bindings
    with globals.lock:
        for name, fn in bindings.items():
            _insert(globals, name, fn)
    logger.debug("installed %d host binding(s): %s", len(bindings), ", ".join(bindings))
    return globals
