"""
Lua syntax tree.

Plain dataclasses produced by the parser and consumed by the compiler.
Every node records the source line it started on for runtime messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple


@dataclass
class Node:
    pass


# Expressions

@dataclass
class Nil(Node):
    line: int = 0


@dataclass
class Boolean(Node):
    value: bool
    line: int = 0


@dataclass
class Number(Node):
    value: Any
    line: int = 0


@dataclass
class String(Node):
    value: str
    line: int = 0


@dataclass
class Vararg(Node):
    line: int = 0


@dataclass
class Name(Node):
    name: str
    line: int = 0


@dataclass
class Index(Node):
    obj: Node
    key: Node
    line: int = 0


@dataclass
class Call(Node):
    func: Node
    args: List[Node]
    line: int = 0


@dataclass
class MethodCall(Node):
    obj: Node
    method: str
    args: List[Node]
    line: int = 0


@dataclass
class BinaryOp(Node):
    op: str
    left: Node
    right: Node
    line: int = 0


@dataclass
class UnaryOp(Node):
    op: str
    operand: Node
    line: int = 0


@dataclass
class Paren(Node):
    """Parenthesised expression; truncates multiple results to one."""
    expr: Node
    line: int = 0


@dataclass
class TableField(Node):
    key: Optional[Node]
    value: Node
    line: int = 0


@dataclass
class Table(Node):
    fields: List[TableField] = field(default_factory=list)
    line: int = 0


@dataclass
class FunctionBody(Node):
    params: List[str]
    is_vararg: bool
    block: "Block"
    name: str = "anonymous"
    line: int = 0


@dataclass
class Function(Node):
    body: FunctionBody
    line: int = 0


# Statements

@dataclass
class Block(Node):
    statements: List[Node] = field(default_factory=list)
    line: int = 0


@dataclass
class Local(Node):
    names: List[str]
    exprs: List[Node]
    line: int = 0


@dataclass
class Assign(Node):
    targets: List[Node]
    exprs: List[Node]
    line: int = 0


@dataclass
class CallStatement(Node):
    call: Node
    line: int = 0


@dataclass
class Do(Node):
    block: Block
    line: int = 0


@dataclass
class While(Node):
    condition: Node
    block: Block
    line: int = 0


@dataclass
class Repeat(Node):
    block: Block
    condition: Node
    line: int = 0


@dataclass
class If(Node):
    branches: List[Tuple[Node, Block]]
    orelse: Optional[Block] = None
    line: int = 0


@dataclass
class NumericFor(Node):
    var: str
    start: Node
    limit: Node
    step: Optional[Node]
    block: Block
    line: int = 0


@dataclass
class GenericFor(Node):
    names: List[str]
    exprs: List[Node]
    block: Block
    line: int = 0


@dataclass
class LocalFunction(Node):
    name: str
    body: FunctionBody
    line: int = 0


@dataclass
class Return(Node):
    exprs: List[Node]
    line: int = 0


@dataclass
class Break(Node):
    line: int = 0


MULTI_VALUE = (Call, MethodCall, Vararg)


def is_multi(node: Node) -> bool:
    """Calls and `...` expand to every value they produce in tail position."""
    return isinstance(node, MULTI_VALUE)
