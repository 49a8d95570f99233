"""Run command for the luarun CLI."""

import logging
import os

import click

from luarun import __version__
from luarun.runtime.executor import ExecutionConfig
from luarun.runtime.errors import show_error
from luarun.runtime.interpreter import Interpreter

logger = logging.getLogger(__name__)


def configure_logging() -> None:
    level = os.environ.get("LUARUN_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@click.command()
@click.argument('file', type=click.Path(dir_okay=False))
@click.version_option(__version__, prog_name="luarun")
def run_command(file):
    """Run the Lua script FILE."""
    configure_logging()
    interpreter = Interpreter(ExecutionConfig.from_env())
    result = interpreter.run_path(file)
    if not result.success:
        show_error(result.error)
    # A failed script still exits with status 0
    logger.debug("run finished: success=%s in %.2f ms", result.success, result.execution_time_ms)
