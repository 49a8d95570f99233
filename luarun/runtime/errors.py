"""
Error classification for script runs.

Failures come from different places: reading the file (OSError), parsing
(ParseError) and execution (LuaRuntimeError). They are converted at the
stage boundary into one small hierarchy so the entry point only ever deals
with three cases.

Key classes:
- ErrorKind: Stage tag with its diagnostic label
- ClassifiedError: Base class; LoadFailure, ParseFailure, RuntimeFailure

Key functions:
- classify: Map a raw exception onto a ClassifiedError
- show_error: Write the one-line diagnostic to stderr
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict

import click

from luarun.lua.errors import LuaRuntimeError, ParseError

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    LOAD = "load error"
    PARSE = "parse error"
    RUNTIME = "runtime error"

    @property
    def label(self) -> str:
        return self.value


class ClassifiedError(Exception):
    """A stage failure ready to be reported."""

    kind: ErrorKind

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def render(self) -> str:
        return f"{self.kind.label}: {self.detail}"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.name, "detail": self.detail}

    def __repr__(self):
        return f"{type(self).__name__}({self.detail!r})"


class LoadFailure(ClassifiedError):
    """The source file could not be read."""
    kind = ErrorKind.LOAD


class ParseFailure(ClassifiedError):
    """The source text is not a valid chunk."""
    kind = ErrorKind.PARSE


class RuntimeFailure(ClassifiedError):
    """The script raised an error while executing."""
    kind = ErrorKind.RUNTIME


def classify(exc: BaseException) -> ClassifiedError:
    """
    Map an exception raised by one of the stages onto its failure class.

    Raises:
        TypeError: `exc` is not a reportable stage failure
    """
    if isinstance(exc, ClassifiedError):
        return exc
    if isinstance(exc, ParseError):
        return ParseFailure(str(exc))
    if isinstance(exc, LuaRuntimeError):
        return RuntimeFailure(str(exc))
    if isinstance(exc, UnicodeDecodeError):
        return LoadFailure(f"not valid UTF-8 ({exc.reason} at byte {exc.start})")
    if isinstance(exc, OSError):
        return LoadFailure(_describe_os_error(exc))
    raise TypeError(f"cannot classify {type(exc).__name__}: {exc}")


def _describe_os_error(exc: OSError) -> str:
    reason = exc.strerror or str(exc)
    if exc.filename is not None:
        return f"{exc.filename}: {reason}"
    return reason


def show_error(error: ClassifiedError) -> None:
    """Write a single diagnostic line to stderr, label in bold red."""
    logger.debug("reporting %r", error)
    label = click.style(f"{error.kind.label}:", fg="red", bold=True)
    click.echo(f"{label} {error.detail}", err=True)
