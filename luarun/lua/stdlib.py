"""
Lua Standard Library

Built-in bindings installed in every global environment: the base functions
plus the `string`, `table` and `math` libraries.

Every built-in is a `NativeFunction`, the same value type host bindings use.
Argument errors follow Lua's wording:

    bad argument #1 to 'sub' (number expected, got nil)

Strings are Python `str`, so `string.len`, `string.byte` and friends count
and return Unicode code points rather than bytes.

Key functions:
- standard_globals: Build a fresh global table with every built-in
"""

from __future__ import annotations

import logging
import math
import re
from typing import Any, Callable, Dict, Optional, Tuple

from luarun.lua.errors import LuaRuntimeError
from luarun.lua.value import (
    MAX_INTEGER,
    MIN_INTEGER,
    LuaTable,
    NativeFunction,
    is_number,
    lua_equals,
    str_to_number,
    to_integer,
    to_number,
    tostring,
    truthy,
    type_name,
)

logger = logging.getLogger(__name__)

LUA_VERSION = "Lua 5.3"
MAX_UNPACK = 1_000_000
MAX_STRING_SIZE = 1 << 28

Args = Tuple[Any, ...]


# Argument checking

def _arg(args: Args, index: int) -> Any:
    return args[index] if index < len(args) else None


def _got(args: Args, index: int) -> str:
    return type_name(args[index]) if index < len(args) else "no value"


def arg_error(index: int, fname: str, message: str) -> LuaRuntimeError:
    return LuaRuntimeError(f"bad argument #{index + 1} to '{fname}' ({message})")


def check_any(args: Args, index: int, fname: str) -> Any:
    if index >= len(args):
        raise arg_error(index, fname, "value expected")
    return args[index]


def check_table(args: Args, index: int, fname: str) -> LuaTable:
    value = _arg(args, index)
    if not isinstance(value, LuaTable):
        raise arg_error(index, fname, f"table expected, got {_got(args, index)}")
    return value


def check_number(args: Args, index: int, fname: str) -> Any:
    number = to_number(_arg(args, index))
    if number is None:
        raise arg_error(index, fname, f"number expected, got {_got(args, index)}")
    return number


def check_integer(args: Args, index: int, fname: str) -> int:
    number = check_number(args, index, fname)
    integer = to_integer(number)
    if integer is None:
        raise arg_error(index, fname, "number has no integer representation")
    return integer


def check_string(args: Args, index: int, fname: str) -> str:
    value = _arg(args, index)
    if isinstance(value, str):
        return value
    if is_number(value):
        return tostring(value)
    raise arg_error(index, fname, f"string expected, got {_got(args, index)}")


def opt_integer(args: Args, index: int, fname: str, default: Optional[int]) -> Optional[int]:
    if _arg(args, index) is None:
        return default
    return check_integer(args, index, fname)


def opt_string(args: Args, index: int, fname: str, default: str) -> str:
    if _arg(args, index) is None:
        return default
    return check_string(args, index, fname)


# Base functions

def lua_print(args: Args, vm) -> Args:
    vm.output("\t".join(tostring(value) for value in args))
    return ()


def lua_type(args: Args, vm) -> Args:
    return (type_name(check_any(args, 0, "type")),)


def lua_tostring(args: Args, vm) -> Args:
    return (tostring(check_any(args, 0, "tostring")),)


_RE_BASE_NUMERAL = re.compile(r"-?[0-9a-zA-Z]+")


def lua_tonumber(args: Args, vm) -> Args:
    if _arg(args, 1) is None:
        value = check_any(args, 0, "tonumber")
        if is_number(value):
            return (value,)
        if isinstance(value, str):
            return (str_to_number(value),)
        return (None,)
    base = check_integer(args, 1, "tonumber")
    if not 2 <= base <= 36:
        raise arg_error(1, "tonumber", "base out of range")
    value = _arg(args, 0)
    if not isinstance(value, str):
        raise arg_error(0, "tonumber", f"string expected, got {_got(args, 0)}")
    text = value.strip()
    if not _RE_BASE_NUMERAL.fullmatch(text):
        return (None,)
    return (str_to_number(text, base),)


def lua_assert(args: Args, vm) -> Args:
    if truthy(check_any(args, 0, "assert")):
        return args
    if len(args) > 1:
        message = args[1]
        raise LuaRuntimeError(_error_message(message), value=message, level=0)
    raise LuaRuntimeError("assertion failed!")


def _error_message(value: Any) -> str:
    if isinstance(value, str) or is_number(value):
        return tostring(value)
    return f"(error object is a {type_name(value)} value)"


def lua_error(args: Args, vm) -> Args:
    value = _arg(args, 0)
    level = opt_integer(args, 1, "error", 1)
    raise LuaRuntimeError(_error_message(value), value=value, level=max(level, 0))


def lua_pcall(args: Args, vm) -> Args:
    func = check_any(args, 0, "pcall")
    try:
        return (True,) + vm.call(func, args[1:])
    except LuaRuntimeError as error:
        logger.debug("pcall caught: %s", error)
        return (False, error.value)


def lua_next(args: Args, vm) -> Args:
    table = check_table(args, 0, "next")
    key, value = table.next(_arg(args, 1))
    if key is None:
        return (None,)
    return (key, value)


NEXT = NativeFunction("next", lua_next)


def lua_pairs(args: Args, vm) -> Args:
    return (NEXT, check_table(args, 0, "pairs"), None)


def _ipairs_step(args: Args, vm) -> Args:
    table = check_table(args, 0, "ipairs")
    index = check_integer(args, 1, "ipairs") + 1
    value = table.get(index)
    if value is None:
        return (None,)
    return (index, value)


IPAIRS_STEP = NativeFunction("ipairs_iterator", _ipairs_step)


def lua_ipairs(args: Args, vm) -> Args:
    return (IPAIRS_STEP, check_table(args, 0, "ipairs"), 0)


def lua_select(args: Args, vm) -> Args:
    rest = args[1:]
    if _arg(args, 0) == "#":
        return (len(rest),)
    n = check_integer(args, 0, "select")
    if n < 0:
        if -n > len(rest):
            raise arg_error(0, "select", "index out of range")
        return rest[n:]
    if n == 0:
        raise arg_error(0, "select", "index out of range")
    return rest[n - 1:]


def lua_rawget(args: Args, vm) -> Args:
    return (check_table(args, 0, "rawget").get(check_any(args, 1, "rawget")),)


def lua_rawset(args: Args, vm) -> Args:
    table = check_table(args, 0, "rawset")
    check_any(args, 1, "rawset")
    table.set(args[1], check_any(args, 2, "rawset"))
    return (table,)


def lua_rawequal(args: Args, vm) -> Args:
    return (lua_equals(check_any(args, 0, "rawequal"), check_any(args, 1, "rawequal")),)


def lua_rawlen(args: Args, vm) -> Args:
    value = _arg(args, 0)
    if isinstance(value, LuaTable):
        return (value.length(),)
    if isinstance(value, str):
        return (len(value),)
    raise arg_error(0, "rawlen", "table or string expected")


def lua_unpack(args: Args, vm) -> Args:
    table = check_table(args, 0, "unpack")
    first = opt_integer(args, 1, "unpack", 1)
    last = opt_integer(args, 2, "unpack", None)
    if last is None:
        last = table.length()
    if first > last:
        return ()
    if last - first >= MAX_UNPACK:
        raise LuaRuntimeError("too many results to unpack")
    return tuple(table.get(i) for i in range(first, last + 1))


# string library

def _string_range(length: int, i: int, j: int) -> Tuple[int, int]:
    """Translate Lua's 1-based, negative-from-the-end bounds to a slice."""
    if i < 0:
        i = max(length + i + 1, 1)
    elif i == 0:
        i = 1
    if j < 0:
        j = length + j + 1
    elif j > length:
        j = length
    return i - 1, j


def str_len(args: Args, vm) -> Args:
    return (len(check_string(args, 0, "len")),)


def str_sub(args: Args, vm) -> Args:
    s = check_string(args, 0, "sub")
    i = opt_integer(args, 1, "sub", 1)
    j = opt_integer(args, 2, "sub", -1)
    start, stop = _string_range(len(s), i, j)
    return (s[start:stop] if start < stop else "",)


def str_upper(args: Args, vm) -> Args:
    return (check_string(args, 0, "upper").upper(),)


def str_lower(args: Args, vm) -> Args:
    return (check_string(args, 0, "lower").lower(),)


def str_rep(args: Args, vm) -> Args:
    s = check_string(args, 0, "rep")
    n = check_integer(args, 1, "rep")
    sep = opt_string(args, 2, "rep", "")
    if n <= 0 or not (s or sep):
        return ("",)
    if (len(s) + len(sep)) * n > MAX_STRING_SIZE:
        raise LuaRuntimeError("resulting string too large")
    return (sep.join([s] * n),)


def str_reverse(args: Args, vm) -> Args:
    return (check_string(args, 0, "reverse")[::-1],)


def str_byte(args: Args, vm) -> Args:
    s = check_string(args, 0, "byte")
    i = opt_integer(args, 1, "byte", 1)
    j = opt_integer(args, 2, "byte", i)
    start, stop = _string_range(len(s), i, j)
    return tuple(ord(c) for c in s[start:stop])


def str_char(args: Args, vm) -> Args:
    chars = []
    for index in range(len(args)):
        code = check_integer(args, index, "char")
        if not 0 <= code <= 0x10FFFF:
            raise arg_error(index, "char", "value out of range")
        chars.append(chr(code))
    return ("".join(chars),)


_RE_FORMAT_SPEC = re.compile(r"%([-+ #0]*)([0-9]{0,2})(?:\.([0-9]{0,2}))?(.?)")


def _quote(value: Any) -> str:
    if not isinstance(value, str):
        return tostring(value)
    body = (value.replace("\\", "\\\\").replace('"', '\\"')
            .replace("\n", "\\n").replace("\r", "\\r").replace("\0", "\\0"))
    return f'"{body}"'


def str_format(args: Args, vm) -> Args:
    template = check_string(args, 0, "format")
    out = []
    arg_index = 0
    pos = 0
    while True:
        percent = template.find("%", pos)
        if percent < 0:
            out.append(template[pos:])
            break
        out.append(template[pos:percent])
        if template.startswith("%%", percent):
            out.append("%")
            pos = percent + 2
            continue
        match = _RE_FORMAT_SPEC.match(template, percent)
        flags, width, precision, conversion = match.groups()
        pos = match.end()
        arg_index += 1
        spec = "%" + flags + width + ("." + precision if precision is not None else "")

        if conversion in ("d", "i"):
            out.append((spec + "d") % check_integer(args, arg_index, "format"))
        elif conversion in ("x", "X", "o"):
            value = check_integer(args, arg_index, "format") & 0xFFFFFFFFFFFFFFFF
            out.append((spec + conversion) % value)
        elif conversion == "c":
            code = check_integer(args, arg_index, "format")
            if not 0 <= code <= 0x10FFFF:
                raise arg_error(arg_index, "format", "value out of range")
            out.append(chr(code))
        elif conversion in ("f", "F", "e", "E", "g", "G"):
            out.append((spec + conversion) % float(check_number(args, arg_index, "format")))
        elif conversion == "s":
            out.append((spec + "s") % tostring(check_any(args, arg_index, "format")))
        elif conversion == "q":
            out.append(_quote(check_any(args, arg_index, "format")))
        else:
            raise LuaRuntimeError(
                f"invalid conversion '%{flags}{width}{conversion}' to 'format'")
    return ("".join(out),)


# table library

def tbl_insert(args: Args, vm) -> Args:
    table = check_table(args, 0, "insert")
    size = table.length()
    if len(args) == 2:
        table.set(size + 1, args[1])
        return ()
    if len(args) != 3:
        raise LuaRuntimeError("wrong number of arguments to 'insert'")
    position = check_integer(args, 1, "insert")
    if not 1 <= position <= size + 1:
        raise arg_error(1, "insert", "position out of bounds")
    for index in range(size, position - 1, -1):
        table.set(index + 1, table.get(index))
    table.set(position, args[2])
    return ()


def tbl_remove(args: Args, vm) -> Args:
    table = check_table(args, 0, "remove")
    size = table.length()
    position = opt_integer(args, 1, "remove", size)
    if position != size and not 1 <= position <= size + 1:
        raise arg_error(1, "remove", "position out of bounds")
    value = table.get(position)
    for index in range(position, size):
        table.set(index, table.get(index + 1))
    if position <= size:
        table.set(size, None)
    return (value,)


def tbl_concat(args: Args, vm) -> Args:
    table = check_table(args, 0, "concat")
    sep = opt_string(args, 1, "concat", "")
    first = opt_integer(args, 2, "concat", 1)
    last = opt_integer(args, 3, "concat", None)
    if last is None:
        last = table.length()
    parts = []
    for index in range(first, last + 1):
        value = table.get(index)
        if not (isinstance(value, str) or is_number(value)):
            raise LuaRuntimeError(
                f"invalid value (at index {index}) in table for 'concat'")
        parts.append(tostring(value))
    return (sep.join(parts),)


# math library

def _float_to_integer(value: float) -> Any:
    """Return an int when the float fits Lua's integer range, else the float."""
    if math.isfinite(value) and MIN_INTEGER <= value <= MAX_INTEGER:
        return int(value)
    return value


def math_floor(args: Args, vm) -> Args:
    number = check_number(args, 0, "floor")
    if isinstance(number, int):
        return (number,)
    return (_float_to_integer(float(math.floor(number)) if math.isfinite(number) else number),)


def math_ceil(args: Args, vm) -> Args:
    number = check_number(args, 0, "ceil")
    if isinstance(number, int):
        return (number,)
    return (_float_to_integer(float(math.ceil(number)) if math.isfinite(number) else number),)


def math_abs(args: Args, vm) -> Args:
    number = check_number(args, 0, "abs")
    if isinstance(number, int) and number == MIN_INTEGER:
        return (number,)
    return (abs(number),)


def _extreme(args: Args, fname: str, better: Callable[[Any, Any], bool]) -> Args:
    best = check_number(args, 0, fname)
    for index in range(1, len(args)):
        number = check_number(args, index, fname)
        if better(number, best):
            best = number
    return (best,)


def math_max(args: Args, vm) -> Args:
    return _extreme(args, "max", lambda a, b: a > b)


def math_min(args: Args, vm) -> Args:
    return _extreme(args, "min", lambda a, b: a < b)


def math_sqrt(args: Args, vm) -> Args:
    number = float(check_number(args, 0, "sqrt"))
    return (math.sqrt(number) if number >= 0 else math.nan,)


def math_tointeger(args: Args, vm) -> Args:
    value = _arg(args, 0)
    if isinstance(value, int) and not isinstance(value, bool):
        return (value,)
    if isinstance(value, float) and value.is_integer():
        return (_float_to_integer(value) if MIN_INTEGER <= value <= MAX_INTEGER else None,)
    return (None,)


def math_type(args: Args, vm) -> Args:
    value = check_any(args, 0, "type")
    if not is_number(value):
        return (None,)
    return ("integer" if isinstance(value, int) else "float",)


def math_fmod(args: Args, vm) -> Args:
    a = check_number(args, 0, "fmod")
    b = check_number(args, 1, "fmod")
    if isinstance(a, int) and isinstance(b, int):
        if b == 0:
            raise arg_error(1, "fmod", "zero")
        # Truncated remainder: the result takes the sign of the dividend
        remainder = abs(a) % abs(b)
        return (-remainder if a < 0 else remainder,)
    if b == 0:
        return (math.nan,)
    return (math.fmod(float(a), float(b)),)


BASE_FUNCTIONS: Dict[str, Callable] = {
    "print": lua_print,
    "type": lua_type,
    "tostring": lua_tostring,
    "tonumber": lua_tonumber,
    "assert": lua_assert,
    "error": lua_error,
    "pcall": lua_pcall,
    "ipairs": lua_ipairs,
    "pairs": lua_pairs,
    "select": lua_select,
    "rawget": lua_rawget,
    "rawset": lua_rawset,
    "rawequal": lua_rawequal,
    "rawlen": lua_rawlen,
    "unpack": lua_unpack,
}

STRING_FUNCTIONS: Dict[str, Callable] = {
    "len": str_len,
    "sub": str_sub,
    "upper": str_upper,
    "lower": str_lower,
    "rep": str_rep,
    "reverse": str_reverse,
    "byte": str_byte,
    "char": str_char,
    "format": str_format,
}

TABLE_FUNCTIONS: Dict[str, Callable] = {
    "insert": tbl_insert,
    "remove": tbl_remove,
    "concat": tbl_concat,
    "unpack": lua_unpack,
}

MATH_FUNCTIONS: Dict[str, Callable] = {
    "floor": math_floor,
    "ceil": math_ceil,
    "abs": math_abs,
    "max": math_max,
    "min": math_min,
    "sqrt": math_sqrt,
    "tointeger": math_tointeger,
    "type": math_type,
    "fmod": math_fmod,
}


def _library(functions: Dict[str, Callable]) -> LuaTable:
    return LuaTable({name: NativeFunction(name, fn) for name, fn in functions.items()})


def standard_globals() -> LuaTable:
    """
    Build a fresh global environment holding every standard binding.

    Each call returns new tables, so scripts cannot leak state into later
    runs through the libraries.
    """
    env = _library(BASE_FUNCTIONS)
    env.set("next", NEXT)
    env.set("_G", env)
    env.set("_VERSION", LUA_VERSION)
    env.set("string", _library(STRING_FUNCTIONS))
    env.set("table", _library(TABLE_FUNCTIONS))

    math_table = _library(MATH_FUNCTIONS)
    math_table.set("huge", math.inf)
    math_table.set("pi", math.pi)
    math_table.set("maxinteger", MAX_INTEGER)
    math_table.set("mininteger", MIN_INTEGER)
    env.set("math", math_table)

    logger.debug("standard globals ready: %d bindings", len(env.keys()))
    return env
