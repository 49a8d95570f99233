"""
Lua front-end and VM exceptions.

Key classes:
- LuaError: Base class for every error raised by the Lua collaborators
- ParseError: Malformed source, raised by the parser (carries a line number)
- LuaRuntimeError: Error raised while executing a compiled chunk
- CompilerDefect: Internal inconsistency between parser and compiler
"""

from __future__ import annotations

from typing import Any, Optional

_MESSAGE = object()


class LuaError(Exception):
    """Base class for Lua errors."""


class ParseError(LuaError):
    """Raised when the token stream does not form a valid chunk."""

    def __init__(self, message: str, line: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.line = line

    def __str__(self):
        if self.line is None:
            return self.message
        return f"line {self.line}: {self.message}"


class LuaRuntimeError(LuaError):
    """
    Raised when a running script fails.

    `value` is the Lua value passed to `error()`; for errors raised by the
    VM itself it is the message string.

    `level` says which Lua frame the position prefix belongs to: 1 is the
    innermost Lua function on the way out, 2 its caller, and so on. 0 means
    no position is added.
    """

    def __init__(self, message: str, value: Any = _MESSAGE, level: int = 1):
        super().__init__(message)
        self.message = message
        self.value = message if value is _MESSAGE else value
        self.level = level

    def locate(self, line: int) -> None:
        """Prefix the message with the line of the frame it is attributed to."""
        if isinstance(self.value, str):
            self.value = f"line {line}: {self.value}"
            self.message = self.value
        self.level = 0

    def __str__(self):
        return self.message


class CompilerDefect(LuaError):
    """The compiler met a tree the parser should never have produced."""
