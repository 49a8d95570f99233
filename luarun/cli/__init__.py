"""luarun CLI package"""

from luarun.cli.run import run_command

main = run_command

__all__ = [
    "main",
    "run_command",
]
