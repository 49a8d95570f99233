"""
luarun Runtime

The driver around the Lua stages:
- prepare_source: Shebang stripping before lexing
- build_globals: Standard library plus host bindings such as `debug`
- run / Executor: lex -> parse -> compile -> execute, fail-fast
- Interpreter: Load a file and run it in a fresh environment
- ClassifiedError: LoadFailure, ParseFailure or RuntimeFailure
"""

from luarun.runtime.preprocess import prepare_source
from luarun.runtime.environment import build_globals, register_native, HOST_BINDINGS
from luarun.runtime.errors import (
    ErrorKind,
    ClassifiedError,
    LoadFailure,
    ParseFailure,
    RuntimeFailure,
    classify,
    show_error,
)
from luarun.runtime.state import Stage, ExecutionResult
from luarun.runtime.executor import Executor, ExecutionConfig, run
from luarun.runtime.interpreter import Interpreter

__all__ = [
    "prepare_source",
    "build_globals",
    "register_native",
    "HOST_BINDINGS",
    "ErrorKind",
    "ClassifiedError",
    "LoadFailure",
    "ParseFailure",
    "RuntimeFailure",
    "classify",
    "show_error",
    "Stage",
    "ExecutionResult",
    "Executor",
    "ExecutionConfig",
    "run",
    "Interpreter",
]
