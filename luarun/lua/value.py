"""
Lua value representation.

Lua values map onto Python objects as follows:
- nil -> None
- boolean -> bool
- number -> int (integer subtype) or float (float subtype)
- string -> str
- table -> LuaTable
- function -> LuaFunction (compiled closure) or NativeFunction (host callable)

Python treats `True == 1`; Lua does not. Everything that compares or hashes
Lua values goes through the helpers here so the two never mix.

Key classes:
- LuaTable: Mutable associative table guarded by a lock
- LuaFunction: Closure over a compiled prototype
- NativeFunction: Host callable exposed under a Lua name
- Cell: Boxed local variable shared with closures
"""

from __future__ import annotations

import math
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, TYPE_CHECKING

from luarun.lua.errors import LuaRuntimeError

if TYPE_CHECKING:
    from luarun.lua.compiler import Prototype
    from luarun.lua.vm import VirtualMachine

# Booleans are stored under these keys so that t[true] and t[1] stay apart
_TRUE_KEY = ("boolean", True)
_FALSE_KEY = ("boolean", False)

NativeCallable = Callable[[Tuple[Any, ...], "VirtualMachine"], Tuple[Any, ...]]


class Cell:
    """A local variable slot that closures can share."""

    __slots__ = ("value",)

    def __init__(self, value: Any = None):
        self.value = value

    def __repr__(self):
        return f"Cell({self.value!r})"


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_key(key: Any) -> Any:
    if key is True:
        return _TRUE_KEY
    if key is False:
        return _FALSE_KEY
    if isinstance(key, float) and key.is_integer():
        return int(key)
    return key


def _from_key(key: Any) -> Any:
    if isinstance(key, tuple):
        return key[1]
    return key


class LuaTable:
    """
    Lua table.

    `data` holds the entries; `lock` guards it while a host mutates the table
    from outside the VM (see `luarun.runtime.environment`). The VM itself is
    single-threaded and does not take the lock.
    """

    def __init__(self, entries: Optional[Dict[Any, Any]] = None):
        self.data: Dict[Any, Any] = {}
        self.lock = threading.Lock()
        self._order: Optional[List[Any]] = None
        self._positions: Dict[Any, int] = {}
        for key, value in (entries or {}).items():
            self.set(key, value)

    @classmethod
    def from_sequence(cls, values) -> "LuaTable":
        table = cls()
        for index, value in enumerate(values, start=1):
            table.set(index, value)
        return table

    def get(self, key: Any) -> Any:
        if key is None:
            return None
        return self.data.get(_to_key(key))

    def set(self, key: Any, value: Any) -> None:
        if key is None:
            raise LuaRuntimeError("table index is nil")
        if isinstance(key, float) and math.isnan(key):
            raise LuaRuntimeError("table index is NaN")
        key = _to_key(key)
        if value is None:
            self.data.pop(key, None)
            return
        if key not in self.data:
            # New keys invalidate any traversal order built by next()
            self._order = None
        self.data[key] = value

    def __contains__(self, key: Any) -> bool:
        return key is not None and _to_key(key) in self.data

    def length(self) -> int:
        """Return a border: n such that t[n] is non-nil and t[n+1] is nil."""
        n = 0
        while (n + 1) in self.data:
            n += 1
        return n

    def keys(self) -> List[Any]:
        return [_from_key(key) for key in self.data]

    def items(self) -> Iterator[Tuple[Any, Any]]:
        for key, value in list(self.data.items()):
            yield _from_key(key), value

    def next(self, key: Any) -> Tuple[Any, Any]:
        """
        Lua `next`: the entry after `key`, or (None, None) at the end.

        Entries may be cleared while traversing; assigning to a new key during
        traversal restarts the order, matching Lua's "undefined" behaviour.
        """
        if self._order is None:
            self._order = list(self.data)
            self._positions = {k: i for i, k in enumerate(self._order)}
        if key is None:
            start = 0
        else:
            position = self._positions.get(_to_key(key))
            if position is None:
                raise LuaRuntimeError("invalid key to 'next'")
            start = position + 1
        for stored in self._order[start:]:
            if stored in self.data:
                return _from_key(stored), self.data[stored]
        return None, None

    def __repr__(self):
        return f"LuaTable({dict(self.items())!r})"


@dataclass(eq=False)
class LuaFunction:
    """A closure: compiled prototype plus captured upvalue cells."""
    prototype: "Prototype"
    upvalues: List[Cell] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.prototype.name


@dataclass(eq=False)
class NativeFunction:
    """
    A host-implemented function.

    `fn` receives the argument tuple and the running VM and returns a result
    tuple. Failures are reported by raising `LuaRuntimeError`.
    """
    name: str
    fn: NativeCallable

    def __call__(self, args: Tuple[Any, ...], vm: "VirtualMachine") -> Tuple[Any, ...]:
        return tuple(self.fn(args, vm))


def type_name(value: Any) -> str:
    if value is None:
        return "nil"
    if isinstance(value, bool):
        return "boolean"
    if is_number(value):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, LuaTable):
        return "table"
    if isinstance(value, (LuaFunction, NativeFunction)):
        return "function"
    return "userdata"


def truthy(value: Any) -> bool:
    return value is not None and value is not False


def lua_equals(a: Any, b: Any) -> bool:
    if a is b:
        return True
    if is_number(a) and is_number(b):
        return a == b
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    return False


def format_number(value: Any) -> str:
    if isinstance(value, int):
        return str(value)
    if math.isnan(value):
        return "nan" if math.copysign(1.0, value) > 0 else "-nan"
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    text = "%.14g" % value
    if re.fullmatch(r"-?\d+", text):
        text += ".0"
    return text


def tostring(value: Any) -> str:
    if value is None:
        return "nil"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if is_number(value):
        return format_number(value)
    if isinstance(value, str):
        return value
    if isinstance(value, LuaTable):
        return f"table: 0x{id(value):08x}"
    if isinstance(value, NativeFunction):
        return f"function: builtin: {value.name}"
    if isinstance(value, LuaFunction):
        return f"function: 0x{id(value):08x}"
    return f"userdata: 0x{id(value):08x}"


def debug_repr(value: Any) -> str:
    """Developer-facing rendering: like tostring but strings are quoted."""
    if isinstance(value, str):
        return repr(value)
    return tostring(value)


MAX_INTEGER = 2 ** 63 - 1
MIN_INTEGER = -(2 ** 63)
_INT_RANGE = 2 ** 64


def wrap_integer(value: int) -> int:
    """Two's-complement 64-bit wraparound, as Lua integers overflow."""
    return (value - MIN_INTEGER) % _INT_RANGE + MIN_INTEGER


def decimal_integer(text: str) -> Any:
    """
    Read a decimal integer numeral.

    Numerals that do not fit in a 64-bit integer are read as floats, so
    `9223372036854775808` is `9.2233720368548e+18`.
    """
    negative = text.startswith("-")
    digits = text.lstrip("-").lstrip("0")
    # 19 digits always covers 2^63; checking length first keeps int() bounded
    if len(digits) > 19:
        return float(text)
    value = int(digits or "0")
    if value > MAX_INTEGER + (1 if negative else 0):
        return float(text)
    return -value if negative else value


_RE_HEX_NUMBER = re.compile(r"-?0[xX][0-9a-fA-F]+")
_RE_DEC_NUMBER = re.compile(r"-?([0-9]+\.?[0-9]*|\.[0-9]+)([eE][+-]?[0-9]+)?")


def _digit_value(ch: str) -> int:
    if "0" <= ch <= "9":
        return ord(ch) - ord("0")
    if "a" <= ch.lower() <= "z":
        return ord(ch.lower()) - ord("a") + 10
    return 36


def str_to_number(text: str, base: Optional[int] = None) -> Any:
    """Convert a Lua numeral string to int/float, or None if it is not one."""
    text = text.strip()
    if base is not None:
        negative = text.startswith("-")
        body = text[1:] if negative else text
        # Every character must be a digit of `base`; int() would also take "0x"
        if not body or any(_digit_value(ch) >= base for ch in body):
            return None
        value = 0
        for ch in body:
            value = (value * base + _digit_value(ch)) % _INT_RANGE
        return wrap_integer(-value if negative else value)
    if _RE_HEX_NUMBER.fullmatch(text):
        return wrap_integer(int(text, 16))
    if _RE_DEC_NUMBER.fullmatch(text):
        body = text.lstrip("-")
        if "." in body or "e" in body or "E" in body:
            return float(text)
        return decimal_integer(text)
    return None


def to_number(value: Any) -> Any:
    """Arithmetic coercion: numbers pass through, numeric strings convert."""
    if is_number(value):
        return value
    if isinstance(value, str):
        return str_to_number(value)
    return None


def to_integer(value: Any) -> Optional[int]:
    """Exact integer conversion used by integer-only operations."""
    number = to_number(value)
    if isinstance(number, int):
        return number
    if isinstance(number, float) and number.is_integer():
        return int(number)
    return None
