"""
Lua Compiler

Translates a parsed `Block` into a `Prototype`: a flat list of stack-machine
instructions plus nested prototypes for function literals.

Locals live in numbered slots. Each declaration stores a fresh `Cell` in its
slot, so a closure created inside a loop captures that iteration's variable.
Closures reach enclosing locals through upvalue descriptors resolved here at
compile time; names that resolve to neither are globals.

Compilation cannot fail for trees the parser accepts. A `CompilerDefect` means
the parser and compiler disagree about the tree shape.

Key classes:
- Op: Instruction opcodes
- Instruction: One opcode with up to four operands
- Prototype: Compiled function (code, line table, nested prototypes, upvalues)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from luarun.lua import ast
from luarun.lua.errors import CompilerDefect

logger = logging.getLogger(__name__)


class Op(Enum):
    CONST = "CONST"
    NIL = "NIL"
    POP = "POP"
    GET_LOCAL = "GET_LOCAL"
    SET_LOCAL = "SET_LOCAL"
    NEW_LOCAL = "NEW_LOCAL"
    GET_UPVAL = "GET_UPVAL"
    SET_UPVAL = "SET_UPVAL"
    GET_GLOBAL = "GET_GLOBAL"
    SET_GLOBAL = "SET_GLOBAL"
    GET_INDEX = "GET_INDEX"
    SET_INDEX = "SET_INDEX"
    SET_INDEX_FROM = "SET_INDEX_FROM"
    SELF = "SELF"
    BINARY = "BINARY"
    UNARY = "UNARY"
    JUMP = "JUMP"
    JUMP_IF_FALSE = "JUMP_IF_FALSE"
    JUMP_IF_FALSE_OR_POP = "JUMP_IF_FALSE_OR_POP"
    JUMP_IF_TRUE_OR_POP = "JUMP_IF_TRUE_OR_POP"
    JUMP_IF_NIL = "JUMP_IF_NIL"
    CALL = "CALL"
    VARARG = "VARARG"
    RETURN = "RETURN"
    NEW_TABLE = "NEW_TABLE"
    TABLE_SET = "TABLE_SET"
    TABLE_APPEND = "TABLE_APPEND"
    TABLE_EXTEND = "TABLE_EXTEND"
    CLOSURE = "CLOSURE"
    FOR_PREP = "FOR_PREP"
    FOR_LOOP = "FOR_LOOP"


# Result count meaning "keep every value, packed as one tuple on the stack"
MULTI = -1


class Instruction(NamedTuple):
    op: Op
    a: Any = None
    b: Any = None
    c: Any = None
    d: Any = None


class UpvalueDesc(NamedTuple):
    name: str
    from_local: bool
    index: int


@dataclass
class Prototype:
    """A compiled function."""
    name: str
    line: int = 0
    num_params: int = 0
    is_vararg: bool = False
    code: List[Instruction] = field(default_factory=list)
    lines: List[int] = field(default_factory=list)
    prototypes: List["Prototype"] = field(default_factory=list)
    upvalues: List[UpvalueDesc] = field(default_factory=list)
    num_slots: int = 0

    def disassemble(self) -> str:
        """Human-readable listing, nested prototypes included."""
        out = [f"function <{self.name}:{self.line}> "
               f"({len(self.code)} instructions, {self.num_slots} slots)"]
        for pc, (ins, line) in enumerate(zip(self.code, self.lines)):
            operands = " ".join(repr(x) for x in ins[1:] if x is not None)
            out.append(f"  {pc:4d} [{line}] {ins.op.value:<22} {operands}")
        for child in self.prototypes:
            out.append(child.disassemble())
        return "\n".join(out)


class _FunctionState:
    """Per-function compilation state: scopes, slots, upvalues, loops."""

    def __init__(self, parent: Optional["_FunctionState"], prototype: Prototype):
        self.parent = parent
        self.prototype = prototype
        self.scopes: List[Dict[str, int]] = [{}]
        self.scope_starts: List[int] = [0]
        self.next_slot = 0
        self.upvalue_map: Dict[str, int] = {}
        self.breaks: List[List[int]] = []

    def enter_scope(self) -> None:
        self.scopes.append({})
        self.scope_starts.append(self.next_slot)

    def exit_scope(self) -> None:
        self.scopes.pop()
        self.next_slot = self.scope_starts.pop()

    def allocate(self, name: Optional[str] = None) -> int:
        slot = self.next_slot
        self.next_slot += 1
        self.prototype.num_slots = max(self.prototype.num_slots, self.next_slot)
        if name is not None:
            self.scopes[-1][name] = slot
        return slot

    def resolve(self, name: str) -> Tuple[str, Any]:
        for scope in reversed(self.scopes):
            if name in scope:
                return "local", scope[name]
        if self.parent is None:
            return "global", name
        if name in self.upvalue_map:
            return "upvalue", self.upvalue_map[name]
        kind, index = self.parent.resolve(name)
        if kind == "global":
            return "global", name
        self.prototype.upvalues.append(UpvalueDesc(name, kind == "local", index))
        self.upvalue_map[name] = len(self.prototype.upvalues) - 1
        return "upvalue", self.upvalue_map[name]


class Compiler:
    """Compiles one chunk. Use `compile_block` rather than this class directly."""

    def __init__(self):
        self.state: Optional[_FunctionState] = None

    # Emission helpers

    def _emit(self, line: int, op: Op, a: Any = None, b: Any = None,
              c: Any = None, d: Any = None) -> int:
        proto = self.state.prototype
        proto.code.append(Instruction(op, a, b, c, d))
        proto.lines.append(line)
        return len(proto.code) - 1

    def _here(self) -> int:
        return len(self.state.prototype.code)

    def _patch(self, position: int, **operands) -> None:
        code = self.state.prototype.code
        code[position] = code[position]._replace(**operands)

    def _describe(self, node: ast.Node) -> Optional[str]:
        """Variable description used in runtime error messages."""
        if isinstance(node, ast.Name):
            kind, _ = self.state.resolve(node.name)
            return f"{kind} '{node.name}'"
        if isinstance(node, ast.Index) and isinstance(node.key, ast.String):
            return f"field '{node.key.value}'"
        if isinstance(node, ast.MethodCall):
            return f"method '{node.method}'"
        return None

    # Entry points

    def compile_chunk(self, block: ast.Block, name: str) -> Prototype:
        proto = Prototype(name=name, line=0, is_vararg=True)
        self.state = _FunctionState(None, proto)
        self.block(block)
        self._emit(self._last_line(block), Op.RETURN, 0, False)
        return proto

    def function(self, body: ast.FunctionBody) -> int:
        proto = Prototype(
            name=body.name,
            line=body.line,
            num_params=len(body.params),
            is_vararg=body.is_vararg,
        )
        parent = self.state
        self.state = _FunctionState(parent, proto)
        try:
            for param in body.params:
                self.state.allocate(param)
            self.block(body.block)
            self._emit(self._last_line(body.block, body.line), Op.RETURN, 0, False)
        finally:
            self.state = parent
        parent.prototype.prototypes.append(proto)
        return len(parent.prototype.prototypes) - 1

    @staticmethod
    def _last_line(block: ast.Block, default: int = 0) -> int:
        if block.statements:
            return block.statements[-1].line
        return block.line or default

    # Statements

    def block(self, block: ast.Block) -> None:
        for statement in block.statements:
            self.statement(statement)

    def scoped_block(self, block: ast.Block) -> None:
        self.state.enter_scope()
        self.block(block)
        self.state.exit_scope()

    def statement(self, node: ast.Node) -> None:
        handler = getattr(self, f"stat_{type(node).__name__}", None)
        if handler is None:
            raise CompilerDefect(f"unexpected statement node {type(node).__name__}")
        handler(node)

    def stat_Local(self, node: ast.Local) -> None:
        self.push_adjusted(node.exprs, len(node.names), node.line)
        slots = [self.state.allocate(name) for name in node.names]
        for slot in reversed(slots):
            self._emit(node.line, Op.NEW_LOCAL, slot)

    def stat_LocalFunction(self, node: ast.LocalFunction) -> None:
        slot = self.state.allocate(node.name)
        self._emit(node.line, Op.NIL, 1)
        self._emit(node.line, Op.NEW_LOCAL, slot)
        self._emit(node.line, Op.CLOSURE, self.function(node.body))
        self._emit(node.line, Op.SET_LOCAL, slot)

    def stat_Assign(self, node: ast.Assign) -> None:
        if len(node.targets) == 1:
            target = node.targets[0]
            if isinstance(target, ast.Index):
                self.expression(target.obj)
                self.expression(target.key)
                self.push_adjusted(node.exprs, 1, node.line)
                self._emit(node.line, Op.SET_INDEX, self._describe(target.obj))
            else:
                self.push_adjusted(node.exprs, 1, node.line)
                self.store(target)
            return

        # Evaluate every table/key before any right-hand side, then assign
        self.state.enter_scope()
        pending = []
        for target in node.targets:
            if isinstance(target, ast.Index):
                self.expression(target.obj)
                obj_slot = self.state.allocate()
                self._emit(node.line, Op.NEW_LOCAL, obj_slot)
                self.expression(target.key)
                key_slot = self.state.allocate()
                self._emit(node.line, Op.NEW_LOCAL, key_slot)
                pending.append((target, obj_slot, key_slot))
            else:
                pending.append((target, None, None))
        self.push_adjusted(node.exprs, len(node.targets), node.line)
        for target, obj_slot, key_slot in reversed(pending):
            if obj_slot is None:
                self.store(target)
            else:
                self._emit(node.line, Op.SET_INDEX_FROM, obj_slot, key_slot,
                           self._describe(target.obj))
        self.state.exit_scope()

    def store(self, target: ast.Node) -> None:
        if not isinstance(target, ast.Name):
            raise CompilerDefect(f"cannot assign to {type(target).__name__}")
        kind, index = self.state.resolve(target.name)
        if kind == "local":
            self._emit(target.line, Op.SET_LOCAL, index)
        elif kind == "upvalue":
            self._emit(target.line, Op.SET_UPVAL, index)
        else:
            self._emit(target.line, Op.SET_GLOBAL, index)

    def stat_CallStatement(self, node: ast.CallStatement) -> None:
        self.expression(node.call, want=0)

    def stat_Do(self, node: ast.Do) -> None:
        self.scoped_block(node.block)

    def stat_While(self, node: ast.While) -> None:
        start = self._here()
        self.expression(node.condition)
        exit_jump = self._emit(node.line, Op.JUMP_IF_FALSE, None)
        self.state.breaks.append([])
        self.scoped_block(node.block)
        self._emit(node.line, Op.JUMP, start)
        self._close_loop(exit_jump)

    def stat_Repeat(self, node: ast.Repeat) -> None:
        start = self._here()
        self.state.breaks.append([])
        # The condition sees the body's locals
        self.state.enter_scope()
        self.block(node.block)
        self.expression(node.condition)
        self._emit(node.line, Op.JUMP_IF_FALSE, start)
        self.state.exit_scope()
        self._close_loop()

    def _close_loop(self, *exit_jumps: int) -> None:
        end = self._here()
        for position in list(exit_jumps) + self.state.breaks.pop():
            self._set_target(position, end)

    def _set_target(self, position: int, target: int) -> None:
        if self.state.prototype.code[position].op in (Op.FOR_PREP, Op.JUMP_IF_NIL):
            self._patch(position, b=target)
        else:
            self._patch(position, a=target)

    def stat_If(self, node: ast.If) -> None:
        end_jumps = []
        for index, (condition, block) in enumerate(node.branches):
            self.expression(condition)
            skip = self._emit(condition.line or node.line, Op.JUMP_IF_FALSE, None)
            self.scoped_block(block)
            is_last = index == len(node.branches) - 1 and node.orelse is None
            if not is_last:
                end_jumps.append(self._emit(node.line, Op.JUMP, None))
            self._patch(skip, a=self._here())
        if node.orelse is not None:
            self.scoped_block(node.orelse)
        for position in end_jumps:
            self._patch(position, a=self._here())

    def stat_NumericFor(self, node: ast.NumericFor) -> None:
        self.state.enter_scope()
        base = self.state.allocate()
        self.state.allocate()
        self.state.allocate()
        self.expression(node.start)
        self._emit(node.line, Op.NEW_LOCAL, base)
        self.expression(node.limit)
        self._emit(node.line, Op.NEW_LOCAL, base + 1)
        if node.step is not None:
            self.expression(node.step)
        else:
            self._emit(node.line, Op.CONST, 1)
        self._emit(node.line, Op.NEW_LOCAL, base + 2)
        prep = self._emit(node.line, Op.FOR_PREP, base, None)

        body_start = self._here()
        self.state.breaks.append([])
        self.state.enter_scope()
        var = self.state.allocate(node.var)
        self._emit(node.line, Op.GET_LOCAL, base)
        self._emit(node.line, Op.NEW_LOCAL, var)
        self.block(node.block)
        self.state.exit_scope()
        self._emit(node.line, Op.FOR_LOOP, base, body_start)
        self._close_loop(prep)
        self.state.exit_scope()

    def stat_GenericFor(self, node: ast.GenericFor) -> None:
        self.state.enter_scope()
        self.push_adjusted(node.exprs, 3, node.line)
        base = self.state.allocate()
        self.state.allocate()
        self.state.allocate()
        for slot in (base + 2, base + 1, base):
            self._emit(node.line, Op.NEW_LOCAL, slot)

        loop_start = self._here()
        self.state.breaks.append([])
        self._emit(node.line, Op.GET_LOCAL, base)
        self._emit(node.line, Op.GET_LOCAL, base + 1)
        self._emit(node.line, Op.GET_LOCAL, base + 2)
        self._emit(node.line, Op.CALL, 2, False, len(node.names), "for iterator")
        self.state.enter_scope()
        slots = [self.state.allocate(name) for name in node.names]
        for slot in reversed(slots):
            self._emit(node.line, Op.NEW_LOCAL, slot)
        exit_jump = self._emit(node.line, Op.JUMP_IF_NIL, slots[0], None)
        self._emit(node.line, Op.GET_LOCAL, slots[0])
        self._emit(node.line, Op.SET_LOCAL, base + 2)
        self.block(node.block)
        self.state.exit_scope()
        self._emit(node.line, Op.JUMP, loop_start)
        self._close_loop(exit_jump)
        self.state.exit_scope()

    def stat_Return(self, node: ast.Return) -> None:
        count, expand = self.push_all(node.exprs)
        self._emit(node.line, Op.RETURN, count, expand)

    def stat_Break(self, node: ast.Break) -> None:
        if not self.state.breaks:
            raise CompilerDefect("break outside a loop reached the compiler")
        self.state.breaks[-1].append(self._emit(node.line, Op.JUMP, None))

    # Expression lists

    def push_adjusted(self, exprs: List[ast.Node], count: int, line: int) -> None:
        """Push exactly `count` values, truncating or padding with nil."""
        for index, expr in enumerate(exprs):
            is_last = index == len(exprs) - 1
            if is_last and ast.is_multi(expr):
                self.expression(expr, want=max(count - index, 0))
                return
            self.expression(expr)
            if index >= count:
                self._emit(line, Op.POP, 1)
        if len(exprs) < count:
            self._emit(line, Op.NIL, count - len(exprs))

    def push_all(self, exprs: List[ast.Node]) -> Tuple[int, bool]:
        """Push every value; a trailing call or `...` stays packed."""
        expand = False
        for index, expr in enumerate(exprs):
            if index == len(exprs) - 1 and ast.is_multi(expr):
                self.expression(expr, want=MULTI)
                expand = True
            else:
                self.expression(expr)
        return len(exprs), expand

    # Expressions

    def expression(self, node: ast.Node, want: int = 1) -> None:
        handler = getattr(self, f"expr_{type(node).__name__}", None)
        if handler is None:
            raise CompilerDefect(f"unexpected expression node {type(node).__name__}")
        if ast.is_multi(node):
            handler(node, want)
        else:
            handler(node)

    def expr_Nil(self, node: ast.Nil) -> None:
        self._emit(node.line, Op.NIL, 1)

    def expr_Boolean(self, node: ast.Boolean) -> None:
        self._emit(node.line, Op.CONST, node.value)

    def expr_Number(self, node: ast.Number) -> None:
        self._emit(node.line, Op.CONST, node.value)

    def expr_String(self, node: ast.String) -> None:
        self._emit(node.line, Op.CONST, node.value)

    def expr_Vararg(self, node: ast.Vararg, want: int) -> None:
        self._emit(node.line, Op.VARARG, want)

    def expr_Name(self, node: ast.Name) -> None:
        kind, index = self.state.resolve(node.name)
        if kind == "local":
            self._emit(node.line, Op.GET_LOCAL, index)
        elif kind == "upvalue":
            self._emit(node.line, Op.GET_UPVAL, index)
        else:
            self._emit(node.line, Op.GET_GLOBAL, index)

    def expr_Index(self, node: ast.Index) -> None:
        self.expression(node.obj)
        self.expression(node.key)
        self._emit(node.line, Op.GET_INDEX, self._describe(node.obj))

    def expr_Call(self, node: ast.Call, want: int) -> None:
        self.expression(node.func)
        count, expand = self.push_all(node.args)
        self._emit(node.line, Op.CALL, count, expand, want, self._describe(node.func))

    def expr_MethodCall(self, node: ast.MethodCall, want: int) -> None:
        self.expression(node.obj)
        self._emit(node.line, Op.SELF, node.method, self._describe(node.obj))
        count, expand = self.push_all(node.args)
        self._emit(node.line, Op.CALL, count + 1, expand, want, self._describe(node))

    def expr_Paren(self, node: ast.Paren) -> None:
        self.expression(node.expr, want=1)

    def expr_BinaryOp(self, node: ast.BinaryOp) -> None:
        # Walk the left spine iteratively; operator chains have no length limit
        spine = [node]
        while isinstance(spine[-1].left, ast.BinaryOp):
            spine.append(spine[-1].left)
        self.expression(spine[-1].left)
        for current in reversed(spine):
            if current.op in ("and", "or"):
                op = Op.JUMP_IF_FALSE_OR_POP if current.op == "and" else Op.JUMP_IF_TRUE_OR_POP
                jump = self._emit(current.line, op, None)
                self.expression(current.right)
                self._patch(jump, a=self._here())
            else:
                self.expression(current.right)
                self._emit(current.line, Op.BINARY, current.op,
                           self._describe(current.left), self._describe(current.right))

    def expr_UnaryOp(self, node: ast.UnaryOp) -> None:
        self.expression(node.operand)
        self._emit(node.line, Op.UNARY, node.op, self._describe(node.operand))

    def expr_Table(self, node: ast.Table) -> None:
        self._emit(node.line, Op.NEW_TABLE)
        position = 1
        for index, table_field in enumerate(node.fields):
            if table_field.key is not None:
                self.expression(table_field.key)
                self.expression(table_field.value)
                self._emit(table_field.line, Op.TABLE_SET)
            elif index == len(node.fields) - 1 and ast.is_multi(table_field.value):
                self.expression(table_field.value, want=MULTI)
                self._emit(table_field.line, Op.TABLE_EXTEND, position)
            else:
                self.expression(table_field.value)
                self._emit(table_field.line, Op.TABLE_APPEND, position)
                position += 1

    def expr_Function(self, node: ast.Function) -> None:
        self._emit(node.line, Op.CLOSURE, self.function(node.body))


def compile_block(block: ast.Block, name: str = "main chunk") -> Prototype:
    """Compile a parsed chunk into an executable prototype."""
    prototype = Compiler().compile_chunk(block, name)
    logger.debug("compiled %s: %d instructions, %d nested functions",
                 name, len(prototype.code), len(prototype.prototypes))
    return prototype
