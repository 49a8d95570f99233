"""
luarun - script execution driver for a small Lua dialect

Exports:
- Interpreter: Load and run a script file in a fresh environment
- ExecutionConfig: Run configuration (shebang handling, limits)
- ExecutionResult: Outcome of one run
"""

__version__ = "0.1.0"

from luarun.runtime import (
    Interpreter,
    ExecutionConfig,
    ExecutionResult,
    build_globals,
    register_native,
    run,
)

__all__ = [
    "Interpreter",
    "ExecutionConfig",
    "ExecutionResult",
    "build_globals",
    "register_native",
    "run",
    "__version__",
]
