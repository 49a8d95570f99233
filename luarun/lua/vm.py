"""
Lua Virtual Machine

Executes compiled prototypes against a table of globals.

The VM is a plain stack machine. A call to a Lua function runs a fresh
`_execute` loop with its own value stack and slot array; native functions are
called directly with the argument tuple and the VM. Both kinds of function are
dispatched through `VirtualMachine.call`, so host bindings and built-ins are
indistinguishable to a script.

Multiple results travel on the value stack as one packed Python tuple. Lua
values are never tuples, so a tuple on the stack always means "all the values
of the last call or `...`".

Key classes:
- VirtualMachine: Executes prototypes; owns globals, output sink and limits
"""

from __future__ import annotations

import logging
import math
from typing import Any, Callable, List, Optional, Sequence, Tuple

import click

from luarun.lua.compiler import MULTI, Op, Prototype
from luarun.lua.errors import LuaRuntimeError
from luarun.lua.value import (
    MAX_INTEGER,
    MIN_INTEGER,
    Cell,
    LuaFunction,
    LuaTable,
    NativeFunction,
    is_number,
    lua_equals,
    to_number,
    tostring,
    truthy,
    type_name,
    wrap_integer,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CALL_DEPTH = 160


def _described(desc: Optional[str]) -> str:
    return f" ({desc})" if desc else ""


def _push_results(stack: List[Any], values: Sequence[Any], want: int) -> None:
    if want == MULTI:
        stack.append(tuple(values))
    elif want > 0:
        if len(values) >= want:
            stack.extend(values[:want])
        else:
            stack.extend(values)
            stack.extend([None] * (want - len(values)))


def _pop_arguments(stack: List[Any], count: int, expand: bool) -> Tuple[Any, ...]:
    if expand:
        packed = stack.pop()
        count -= 1
    else:
        packed = ()
    split = len(stack) - count
    args = tuple(stack[split:]) + packed
    del stack[split:]
    return args


class VirtualMachine:
    """
    Runs compiled Lua code.

    Args:
        globals: The global environment table scripts read and write
        output: Callable receiving each line written by `print`
        max_call_depth: Nesting limit for Lua function calls
        max_steps: Optional instruction budget per `execute` (None = unlimited)
    """

    def __init__(self,
                 globals: LuaTable,
                 output: Optional[Callable[[str], Any]] = None,
                 max_call_depth: int = DEFAULT_MAX_CALL_DEPTH,
                 max_steps: Optional[int] = None):
        self.globals = globals
        self.output = output or click.echo
        self.max_call_depth = max_call_depth
        self.max_steps = max_steps
        self.depth = 0
        self.steps = 0

    def execute(self, prototype: Prototype, args: Sequence[Any] = ()) -> Tuple[Any, ...]:
        """
        Run a compiled chunk and return its result tuple.

        Raises:
            LuaRuntimeError: The script failed
        """
        self.depth = 0
        self.steps = 0
        logger.debug("executing %s with %d argument(s)", prototype.name, len(args))
        return self.call(LuaFunction(prototype, []), tuple(args))

    def call(self, func: Any, args: Tuple[Any, ...], desc: Optional[str] = None) -> Tuple[Any, ...]:
        """Call any Lua function value with an argument tuple."""
        if isinstance(func, LuaFunction):
            if self.depth >= self.max_call_depth:
                raise LuaRuntimeError("stack overflow")
            self.depth += 1
            try:
                return self._execute(func, args)
            except RecursionError:
                raise LuaRuntimeError("stack overflow") from None
            finally:
                self.depth -= 1
        if isinstance(func, NativeFunction):
            return func(args, self)
        raise LuaRuntimeError(f"attempt to call a {type_name(func)} value{_described(desc)}")

    # Value operations

    def index(self, obj: Any, key: Any, desc: Optional[str] = None) -> Any:
        if isinstance(obj, LuaTable):
            return obj.get(key)
        if isinstance(obj, str):
            # Strings index the string library, so ("x"):upper() works
            library = self.globals.get("string")
            if isinstance(library, LuaTable):
                return library.get(key)
        raise LuaRuntimeError(f"attempt to index a {type_name(obj)} value{_described(desc)}")

    def set_index(self, obj: Any, key: Any, value: Any, desc: Optional[str] = None) -> None:
        if not isinstance(obj, LuaTable):
            raise LuaRuntimeError(
                f"attempt to index a {type_name(obj)} value{_described(desc)}")
        obj.set(key, value)

    def arith(self, op: str, a: Any, b: Any,
              desc_a: Optional[str] = None, desc_b: Optional[str] = None) -> Any:
        if op == "==":
            return lua_equals(a, b)
        if op == "~=":
            return not lua_equals(a, b)
        if op in ("<", "<=", ">", ">="):
            return self._compare(op, a, b)
        if op == "..":
            return self._concat(a, b, desc_a, desc_b)

        x, y = to_number(a), to_number(b)
        if x is None or y is None:
            bad, desc = (a, desc_a) if x is None else (b, desc_b)
            raise LuaRuntimeError(
                f"attempt to perform arithmetic on a {type_name(bad)} value{_described(desc)}")
        both_int = isinstance(x, int) and isinstance(y, int)

        if op == "+":
            return wrap_integer(x + y) if both_int else float(x) + float(y)
        if op == "-":
            return wrap_integer(x - y) if both_int else float(x) - float(y)
        if op == "*":
            return wrap_integer(x * y) if both_int else float(x) * float(y)
        if op == "/":
            return _float_divide(float(x), float(y))
        if op == "//":
            if both_int:
                if y == 0:
                    raise LuaRuntimeError("attempt to perform 'n//0'")
                return wrap_integer(x // y)
            quotient = _float_divide(float(x), float(y))
            return float(math.floor(quotient)) if math.isfinite(quotient) else quotient
        if op == "%":
            if both_int:
                if y == 0:
                    raise LuaRuntimeError("attempt to perform 'n%%0'")
                return x % y
            if y == 0:
                return math.nan
            return float(x) % float(y)
        if op == "^":
            return _power(float(x), float(y))
        raise LuaRuntimeError(f"unknown operator '{op}'")

    def _compare(self, op: str, a: Any, b: Any) -> bool:
        if not ((is_number(a) and is_number(b)) or (isinstance(a, str) and isinstance(b, str))):
            ta, tb = type_name(a), type_name(b)
            if ta == tb:
                raise LuaRuntimeError(f"attempt to compare two {ta} values")
            raise LuaRuntimeError(f"attempt to compare {ta} with {tb}")
        if op == "<":
            return a < b
        if op == "<=":
            return a <= b
        if op == ">":
            return a > b
        return a >= b

    def _concat(self, a: Any, b: Any, desc_a: Optional[str], desc_b: Optional[str]) -> str:
        for value, desc in ((a, desc_a), (b, desc_b)):
            if not (isinstance(value, str) or is_number(value)):
                raise LuaRuntimeError(
                    f"attempt to concatenate a {type_name(value)} value{_described(desc)}")
        return tostring(a) + tostring(b)

    def unary(self, op: str, value: Any, desc: Optional[str] = None) -> Any:
        if op == "not":
            return not truthy(value)
        if op == "-":
            number = to_number(value)
            if number is None:
                raise LuaRuntimeError(
                    f"attempt to perform arithmetic on a {type_name(value)} value{_described(desc)}")
            return wrap_integer(-number) if isinstance(number, int) else -number
        if op == "#":
            if isinstance(value, str):
                return len(value)
            if isinstance(value, LuaTable):
                return value.length()
            raise LuaRuntimeError(
                f"attempt to get length of a {type_name(value)} value{_described(desc)}")
        raise LuaRuntimeError(f"unknown operator '{op}'")

    def _for_prep(self, start: Any, limit: Any, step: Any) -> Tuple[Any, Any, Any]:
        for value, what in ((start, "initial"), (limit, "limit"), (step, "step")):
            if not is_number(value):
                raise LuaRuntimeError(f"'for' {what} value must be a number")
        if step == 0:
            raise LuaRuntimeError("'for' step is zero")
        if isinstance(start, int) and isinstance(step, int):
            if isinstance(limit, float):
                if math.isnan(limit):
                    return start, start - step, step
                if math.isinf(limit):
                    limit = MAX_INTEGER if limit > 0 else MIN_INTEGER
                else:
                    limit = math.floor(limit) if step > 0 else math.ceil(limit)
            return start, limit, step
        return float(start), float(limit), float(step)

    # Interpreter loop

    def _execute(self, closure: LuaFunction, args: Tuple[Any, ...]) -> Tuple[Any, ...]:
        proto = closure.prototype
        upvalues = closure.upvalues
        code = proto.code
        slots: List[Any] = [None] * proto.num_slots
        for i in range(proto.num_params):
            slots[i] = Cell(args[i] if i < len(args) else None)
        varargs = args[proto.num_params:] if proto.is_vararg else ()
        stack: List[Any] = []
        max_steps = self.max_steps
        pc = 0

        try:
            while True:
                ins = code[pc]
                pc += 1
                if max_steps is not None:
                    self.steps += 1
                    if self.steps > max_steps:
                        raise LuaRuntimeError("instruction limit exceeded", level=0)
                op = ins.op

                if op is Op.GET_LOCAL:
                    stack.append(slots[ins.a].value)
                elif op is Op.CONST:
                    stack.append(ins.a)
                elif op is Op.GET_GLOBAL:
                    stack.append(self.globals.get(ins.a))
                elif op is Op.GET_UPVAL:
                    stack.append(upvalues[ins.a].value)
                elif op is Op.SET_LOCAL:
                    slots[ins.a].value = stack.pop()
                elif op is Op.NEW_LOCAL:
                    slots[ins.a] = Cell(stack.pop())
                elif op is Op.SET_UPVAL:
                    upvalues[ins.a].value = stack.pop()
                elif op is Op.SET_GLOBAL:
                    self.globals.set(ins.a, stack.pop())
                elif op is Op.NIL:
                    stack.extend([None] * ins.a)
                elif op is Op.POP:
                    del stack[len(stack) - ins.a:]
                elif op is Op.BINARY:
                    b = stack.pop()
                    a = stack.pop()
                    stack.append(self.arith(ins.a, a, b, ins.b, ins.c))
                elif op is Op.UNARY:
                    stack.append(self.unary(ins.a, stack.pop(), ins.b))
                elif op is Op.GET_INDEX:
                    key = stack.pop()
                    obj = stack.pop()
                    stack.append(self.index(obj, key, ins.a))
                elif op is Op.SET_INDEX:
                    value = stack.pop()
                    key = stack.pop()
                    obj = stack.pop()
                    self.set_index(obj, key, value, ins.a)
                elif op is Op.SET_INDEX_FROM:
                    self.set_index(slots[ins.a].value, slots[ins.b].value, stack.pop(), ins.c)
                elif op is Op.SELF:
                    obj = stack.pop()
                    stack.append(self.index(obj, ins.a, ins.b))
                    stack.append(obj)
                elif op is Op.CALL:
                    call_args = _pop_arguments(stack, ins.a, ins.b)
                    func = stack.pop()
                    _push_results(stack, self.call(func, call_args, ins.d), ins.c)
                elif op is Op.VARARG:
                    _push_results(stack, varargs, ins.a)
                elif op is Op.RETURN:
                    return _pop_arguments(stack, ins.a, ins.b)
                elif op is Op.JUMP:
                    pc = ins.a
                elif op is Op.JUMP_IF_FALSE:
                    if not truthy(stack.pop()):
                        pc = ins.a
                elif op is Op.JUMP_IF_FALSE_OR_POP:
                    if truthy(stack[-1]):
                        stack.pop()
                    else:
                        pc = ins.a
                elif op is Op.JUMP_IF_TRUE_OR_POP:
                    if truthy(stack[-1]):
                        pc = ins.a
                    else:
                        stack.pop()
                elif op is Op.JUMP_IF_NIL:
                    if slots[ins.a].value is None:
                        pc = ins.b
                elif op is Op.NEW_TABLE:
                    stack.append(LuaTable())
                elif op is Op.TABLE_SET:
                    value = stack.pop()
                    key = stack.pop()
                    stack[-1].set(key, value)
                elif op is Op.TABLE_APPEND:
                    stack[-1].set(ins.a, stack.pop())
                elif op is Op.TABLE_EXTEND:
                    values = stack.pop()
                    table = stack[-1]
                    for offset, value in enumerate(values):
                        table.set(ins.a + offset, value)
                elif op is Op.CLOSURE:
                    child = proto.prototypes[ins.a]
                    captured = [
                        slots[desc.index] if desc.from_local else upvalues[desc.index]
                        for desc in child.upvalues
                    ]
                    stack.append(LuaFunction(child, captured))
                elif op is Op.FOR_PREP:
                    base = ins.a
                    start, limit, step = self._for_prep(
                        slots[base].value, slots[base + 1].value, slots[base + 2].value)
                    slots[base].value = start
                    slots[base + 1].value = limit
                    slots[base + 2].value = step
                    if (step > 0 and start > limit) or (step < 0 and start < limit):
                        pc = ins.b
                elif op is Op.FOR_LOOP:
                    base = ins.a
                    step = slots[base + 2].value
                    value = slots[base].value + step
                    slots[base].value = value
                    limit = slots[base + 1].value
                    if (step > 0 and value <= limit) or (step < 0 and value >= limit):
                        pc = ins.b
                else:
                    raise LuaRuntimeError(f"unknown instruction {op}")
        except LuaRuntimeError as error:
            if error.level == 1:
                error.locate(proto.lines[pc - 1])
            elif error.level > 1:
                error.level -= 1
            raise


def _float_divide(x: float, y: float) -> float:
    if y == 0:
        if x == 0 or math.isnan(x):
            return math.nan
        return math.copysign(math.inf, x) * math.copysign(1.0, y)
    return x / y


def _power(x: float, y: float) -> float:
    """`x ^ y` with C `pow` results where math.pow raises."""
    try:
        return math.pow(x, y)
    except OverflowError:
        pass
    except ValueError:
        # Negative base with a fractional exponent
        if x != 0:
            return math.nan
    # Overflow or a pole at zero: infinity, negative for odd powers of a negative base
    odd = y.is_integer() and y % 2 == 1
    return -math.inf if odd and math.copysign(1.0, x) < 0 else math.inf
