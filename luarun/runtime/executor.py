"""
Script Executor

Drives one run through lex -> parse -> compile -> execute. Stages run in that
order, each at most once, and the first failure ends the run.

Key classes:
- ExecutionConfig: Configuration for a run
- Executor: Runs prepared source text against a VM

Key functions:
- run: The bare stage pipeline
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import List, Optional

from luarun.lua.compiler import compile_block
from luarun.lua.errors import LuaRuntimeError, ParseError
from luarun.lua.lexer import Lexer, TokenIterator
from luarun.lua.parser import parse_block
from luarun.lua.vm import DEFAULT_MAX_CALL_DEPTH, VirtualMachine
from luarun.runtime.errors import classify
from luarun.runtime.preprocess import prepare_source
from luarun.runtime.state import ExecutionResult, Stage

logger = logging.getLogger(__name__)

# The top-level chunk always receives an empty argument tuple
ARGUMENTS = ()


@dataclass
class ExecutionConfig:
    """Configuration for script execution."""
    strip_shebang: bool = True
    max_call_depth: int = DEFAULT_MAX_CALL_DEPTH
    max_steps: Optional[int] = None

    @classmethod
    def from_env(cls, environ=None) -> "ExecutionConfig":
        """Read LUARUN_MAX_STEPS and LUARUN_MAX_CALL_DEPTH, keeping defaults otherwise."""
        environ = os.environ if environ is None else environ
        config = cls()
        if environ.get("LUARUN_MAX_STEPS"):
            config.max_steps = int(environ["LUARUN_MAX_STEPS"])
        if environ.get("LUARUN_MAX_CALL_DEPTH"):
            config.max_call_depth = int(environ["LUARUN_MAX_CALL_DEPTH"])
        return config


def run(code: str, vm: VirtualMachine, name: str = "main chunk") -> ExecutionResult:
    """
    Run prepared source text on `vm`.

    Args:
        code: Source text, already preprocessed
        vm: Machine holding the global environment
        name: Chunk name used in log messages

    Returns:
        ExecutionResult; on failure `error` is a ParseFailure or RuntimeFailure
    """
    start = time.time()
    stages: List[Stage] = []

    stages.append(Stage.LEX)
    tokens = TokenIterator(Lexer(code))
    logger.debug("%s: lexer ready (%d characters)", name, len(code))

    stages.append(Stage.PARSE)
    try:
        block = parse_block(tokens)
    except ParseError as e:
        logger.debug("%s: parse failed: %s", name, e)
        return _finish(ExecutionResult.failed(classify(e), stages), start)
    logger.debug("%s: parsed %d top-level statement(s)", name, len(block.statements))

    # Compilation of a parsed tree cannot fail; CompilerDefect is a bug
    stages.append(Stage.COMPILE)
    chunk = compile_block(block, name)

    stages.append(Stage.EXECUTE)
    try:
        values = vm.execute(chunk, ARGUMENTS)
    except LuaRuntimeError as e:
        logger.debug("%s: runtime error: %s", name, e)
        return _finish(ExecutionResult.failed(classify(e), stages), start)
    logger.debug("%s: finished with %d value(s)", name, len(values))

    return _finish(ExecutionResult(success=True, values=values, stages=stages), start)


def _finish(result: ExecutionResult, start: float) -> ExecutionResult:
    result.execution_time_ms = (time.time() - start) * 1000
    return result


class Executor:
    """
    Runs scripts with a fixed configuration.

    The executor owns no environment; each call to `execute` gets the VM to
    run on, so globals are never shared between runs by accident.
    """

    def __init__(self, config: ExecutionConfig = None):
        self.config = config or ExecutionConfig()

    def create_vm(self, globals, output=None) -> VirtualMachine:
        return VirtualMachine(
            globals,
            output=output,
            max_call_depth=self.config.max_call_depth,
            max_steps=self.config.max_steps,
        )

    def execute(self, source: str, vm: VirtualMachine, name: str = "main chunk") -> ExecutionResult:
        """Preprocess raw source text and run it on `vm`."""
        code = prepare_source(source, strip_shebang=self.config.strip_shebang)
        return run(code, vm, name)
