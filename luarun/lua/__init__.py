"""
Lua dialect front end and virtual machine.

The stages the runtime drives, each usable on its own:
- Lexer / TokenIterator: Source text to a peekable token stream
- parse_block: Token stream to a syntax tree (raises ParseError)
- compile_block: Syntax tree to a Prototype (infallible)
- VirtualMachine: Executes a Prototype (raises LuaRuntimeError)
- standard_globals: Fresh global table with the built-in library
"""

from luarun.lua.errors import LuaError, ParseError, LuaRuntimeError, CompilerDefect
from luarun.lua.lexer import Lexer, Token, TokenKind, TokenIterator, tokenize
from luarun.lua.parser import parse_block, parse
from luarun.lua.compiler import Prototype, compile_block
from luarun.lua.value import LuaTable, LuaFunction, NativeFunction
from luarun.lua.vm import VirtualMachine
from luarun.lua.stdlib import standard_globals

__all__ = [
    "LuaError",
    "ParseError",
    "LuaRuntimeError",
    "CompilerDefect",
    "Lexer",
    "Token",
    "TokenKind",
    "TokenIterator",
    "tokenize",
    "parse_block",
    "parse",
    "Prototype",
    "compile_block",
    "LuaTable",
    "LuaFunction",
    "NativeFunction",
    "VirtualMachine",
    "standard_globals",
]
