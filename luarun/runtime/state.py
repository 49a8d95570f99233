"""
Run state and results.

Key classes:
- Stage: The four pipeline stages, in execution order
- ExecutionResult: Outcome of one run
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from luarun.lua.value import debug_repr
from luarun.runtime.errors import ClassifiedError


class Stage(Enum):
    LEX = "lex"
    PARSE = "parse"
    COMPILE = "compile"
    EXECUTE = "execute"


@dataclass
class ExecutionResult:
    """
    Result of running one script.

    Exactly one of `values` (on success) or `error` (on failure) is
    meaningful. `stages` lists the stages that were entered, so a parse
    failure shows `[LEX, PARSE]` and a load failure shows nothing.
    """
    success: bool
    values: Tuple[Any, ...] = ()
    error: Optional[ClassifiedError] = None
    stages: List[Stage] = field(default_factory=list)
    execution_time_ms: float = 0.0

    @classmethod
    def failed(cls, error: ClassifiedError, stages: Optional[List[Stage]] = None) -> "ExecutionResult":
        return cls(success=False, error=error, stages=list(stages or []))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "values": [debug_repr(value) for value in self.values],
            "error": self.error.to_dict() if self.error else None,
            "stages": [stage.value for stage in self.stages],
            "execution_time_ms": self.execution_time_ms,
        }
