"""
Script Interpreter

Host entry point: load a script, build its environment, run it.

Key classes:
- Interpreter: Runs script files or already-loaded source text
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Optional, Union

from luarun.runtime.environment import build_globals
from luarun.runtime.errors import classify
from luarun.runtime.executor import ExecutionConfig, Executor
from luarun.runtime.state import ExecutionResult

logger = logging.getLogger(__name__)


class Interpreter:
    """
    Runs Lua scripts.

    Each run gets a freshly built global environment and a new VM; nothing
    a script does survives into the next run.

    Args:
        config: Execution configuration (default ExecutionConfig())
        output: Callable receiving each line the script prints
    """

    def __init__(self,
                 config: ExecutionConfig = None,
                 output: Optional[Callable[[str], Any]] = None):
        self.config = config or ExecutionConfig()
        self.output = output
        self.executor = Executor(self.config)

    def run_path(self, path: Union[str, Path]) -> ExecutionResult:
        """
        Load and run a script file.

        A file that cannot be read or decoded yields a LoadFailure result and
        no stage runs.
        """
        start = time.time()
        path = Path(path)
        try:
            source = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.debug("cannot load %s: %s", path, e)
            result = ExecutionResult.failed(classify(e))
            result.execution_time_ms = (time.time() - start) * 1000
            return result
        logger.debug("loaded %s (%d characters)", path, len(source))
        return self.interpret(source, path.name)

    def interpret(self, source: str, name: str = "main chunk") -> ExecutionResult:
        """Run raw source text (shebang handling included)."""
        vm = self.executor.create_vm(build_globals(), output=self.output)
        return self.executor.execute(source, vm, name)
