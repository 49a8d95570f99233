"""
Source preprocessing applied before lexing.

A script may start with a `#!` interpreter line so it can be run directly
from a shell. That line is not Lua and is removed here.

Line endings: input without a shebang keeps its original line endings. When
the shebang line is stripped, the remaining lines are re-joined with `\\n`,
which also turns CRLF endings into LF.
"""

from __future__ import annotations

SHEBANG = "#!"


def prepare_source(text: str, strip_shebang: bool = True) -> str:
    """
    Prepare raw file contents for the lexer.

    Args:
        text: Full file contents, possibly empty
        strip_shebang: Remove a leading `#!` line (default True)

    Returns:
        Trimmed text with any shebang line removed
    """
    text = text.strip()
    if not strip_shebang or not text.startswith(SHEBANG):
        return text
    lines = text.split("\n")[1:]
    return "\n".join(line.rstrip("\r") for line in lines)
