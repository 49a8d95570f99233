"""Test fixtures for the luarun test suite."""
import pytest
import sys
from pathlib import Path
from typing import Callable, List

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from luarun.lua.vm import VirtualMachine
from luarun.runtime.environment import build_globals
from luarun.runtime.executor import run
from luarun.runtime.state import ExecutionResult


@pytest.fixture
def printed() -> List[str]:
    """Lines written by the script's print calls."""
    return []


@pytest.fixture
def vm(printed: List[str]) -> VirtualMachine:
    """VM over a freshly built environment, capturing print output."""
    return VirtualMachine(build_globals(), output=printed.append)


@pytest.fixture
def run_lua(vm: VirtualMachine) -> Callable[[str], ExecutionResult]:
    """Run source text through the whole pipeline on the fixture VM."""
    def _run(source: str) -> ExecutionResult:
        return run(source, vm)
    return _run


@pytest.fixture
def eval_lua(run_lua) -> Callable[[str], tuple]:
    """Run source text and return its result values, failing on error."""
    def _eval(source: str) -> tuple:
        result = run_lua(source)
        assert result.success, result.error.render()
        return result.values
    return _eval


@pytest.fixture
def script_file(tmp_path) -> Callable[[str], Path]:
    """Write a script to a temporary file and return its path."""
    def _write(source: str, name: str = "script.lua") -> Path:
        path = tmp_path / name
        path.write_text(source, encoding="utf-8")
        return path
    return _write
