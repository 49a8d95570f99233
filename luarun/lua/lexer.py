"""
Lua Lexer

Turns source text into a lazy stream of tokens. Lexing never raises: any
character sequence that is not a valid token (stray characters, unterminated
strings or long brackets, malformed numbers) is emitted as an ILLEGAL token
and rejected by the parser.

Key classes:
- TokenKind: Token categories, keywords and symbols
- Token: One lexeme with its line number and decoded value
- Lexer: Iterator over the tokens of a source string
- TokenIterator: One-token lookahead wrapper consumed by the parser
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, List, Optional, Tuple

from luarun.lua.value import decimal_integer, wrap_integer


class TokenKind(Enum):
    # Meta
    EOF = "<eof>"
    ILLEGAL = "illegal"
    # Identifiers and literals
    NAME = "name"
    NUMBER = "number"
    STRING = "string"
    # Keywords
    AND = "and"
    BREAK = "break"
    DO = "do"
    ELSE = "else"
    ELSEIF = "elseif"
    END = "end"
    FALSE = "false"
    FOR = "for"
    FUNCTION = "function"
    IF = "if"
    IN = "in"
    LOCAL = "local"
    NIL = "nil"
    NOT = "not"
    OR = "or"
    REPEAT = "repeat"
    RETURN = "return"
    THEN = "then"
    TRUE = "true"
    UNTIL = "until"
    WHILE = "while"
    # Operators
    ADD = "+"
    SUB = "-"
    MUL = "*"
    DIV = "/"
    IDIV = "//"
    MOD = "%"
    POW = "^"
    LEN = "#"
    CONCAT = ".."
    DOTS = "..."
    EQ = "=="
    NE = "~="
    LE = "<="
    GE = ">="
    LT = "<"
    GT = ">"
    ASSIGN = "="
    # Delimiters
    LPAREN = "("
    RPAREN = ")"
    LBRACE = "{"
    RBRACE = "}"
    LBRACKET = "["
    RBRACKET = "]"
    SEMICOLON = ";"
    COLON = ":"
    COMMA = ","
    DOT = "."

    def __str__(self):
        return self.value


KEYWORDS = {
    kind.value: kind
    for kind in TokenKind
    if kind.value.isalpha() and kind not in (TokenKind.NAME, TokenKind.NUMBER,
                                             TokenKind.STRING, TokenKind.ILLEGAL)
}

# Longest symbols first so that "..." wins over ".." and "."
SYMBOLS: List[Tuple[str, TokenKind]] = sorted(
    (
        (kind.value, kind)
        for kind in TokenKind
        if not kind.value.isalpha() and kind not in (TokenKind.EOF,)
    ),
    key=lambda item: -len(item[0]),
)

ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "a": "\a",
    "b": "\b",
    "f": "\f",
    "v": "\v",
    "\\": "\\",
    '"': '"',
    "'": "'",
    "\n": "\n",
}


def _is_digit(ch: str) -> bool:
    return ch != "" and ch in "0123456789"


def _continues_number(ch: str) -> bool:
    return ch != "" and (ch.isalnum() or ch in "_.")


@dataclass
class Token:
    kind: TokenKind
    literal: str
    line: int
    value: Any = None

    def __str__(self):
        if self.kind == TokenKind.EOF:
            return "<eof>"
        return self.literal


class Lexer:
    """Iterator over the tokens of a Lua source string."""

    RE_NAME = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
    RE_HEX = re.compile(r"0[xX][0-9a-fA-F]+")
    RE_DECIMAL = re.compile(r"([0-9]+\.?[0-9]*|\.[0-9]+)([eE][+-]?[0-9]+)?")
    RE_LONG_OPEN = re.compile(r"\[(=*)\[")

    def __init__(self, source: str):
        self.source = source
        self.position = 0
        self.line = 1
        self._done = False

    def __iter__(self) -> Iterator[Token]:
        return self

    def __next__(self) -> Token:
        if self._done:
            raise StopIteration
        token = self.next_token()
        if token.kind == TokenKind.EOF:
            self._done = True
        return token

    def _current(self) -> str:
        if self.position >= len(self.source):
            return ""
        return self.source[self.position]

    def _peek(self, offset: int = 1) -> str:
        index = self.position + offset
        if index >= len(self.source):
            return ""
        return self.source[index]

    def _advance(self, count: int = 1) -> None:
        for _ in range(count):
            if self.position >= len(self.source):
                return
            if self.source[self.position] == "\n":
                self.line += 1
            self.position += 1

    def _token(self, kind: TokenKind, start: int, line: int, value: Any = None) -> Token:
        return Token(kind, self.source[start:self.position], line, value)

    def _skip_whitespace_and_comments(self) -> Optional[Token]:
        while self.position < len(self.source):
            ch = self._current()
            if ch in " \t\r\n\f\v":
                self._advance()
                continue
            if ch == "-" and self._peek() == "-":
                start, line = self.position, self.line
                self._advance(2)
                match = self.RE_LONG_OPEN.match(self.source, self.position)
                if match:
                    if self._read_long_bracket(match) is None:
                        return self._token(TokenKind.ILLEGAL, start, line,
                                           "unfinished long comment")
                    continue
                while self.position < len(self.source) and self._current() != "\n":
                    self._advance()
                continue
            break
        return None

    def _read_long_bracket(self, match) -> Optional[str]:
        """Consume a [==[ ... ]==] body; None when the closing bracket is missing."""
        level = match.group(1)
        self._advance(match.end() - match.start())
        closing = "]" + level + "]"
        end = self.source.find(closing, self.position)
        if end < 0:
            self._advance(len(self.source) - self.position)
            return None
        body = self.source[self.position:end]
        self._advance(end + len(closing) - self.position)
        # A newline right after the opening bracket is not part of the string
        if body.startswith("\r\n"):
            body = body[2:]
        elif body.startswith("\n"):
            body = body[1:]
        return body

    def next_token(self) -> Token:
        illegal = self._skip_whitespace_and_comments()
        if illegal is not None:
            return illegal

        start, line = self.position, self.line
        if self.position >= len(self.source):
            return Token(TokenKind.EOF, "", line)

        ch = self._current()
        match = self.RE_NAME.match(self.source, self.position)
        if match:
            self._advance(match.end() - start)
            kind = KEYWORDS.get(match.group(0), TokenKind.NAME)
            return self._token(kind, start, line)

        if _is_digit(ch) or (ch == "." and _is_digit(self._peek())):
            return self._lex_number()

        if ch in "\"'":
            return self._lex_string(ch)

        if ch == "[":
            match = self.RE_LONG_OPEN.match(self.source, self.position)
            if match:
                body = self._read_long_bracket(match)
                if body is None:
                    return self._token(TokenKind.ILLEGAL, start, line,
                                       "unfinished long string")
                return self._token(TokenKind.STRING, start, line, body)

        for symbol, kind in SYMBOLS:
            if self.source.startswith(symbol, self.position):
                self._advance(len(symbol))
                return self._token(kind, start, line)

        self._advance()
        return self._token(TokenKind.ILLEGAL, start, line, "unexpected symbol")

    def _lex_number(self) -> Token:
        start, line = self.position, self.line
        hex_match = self.RE_HEX.match(self.source, self.position)
        if hex_match:
            self._advance(hex_match.end() - start)
            value: Any = wrap_integer(int(hex_match.group(0), 16))
        else:
            match = self.RE_DECIMAL.match(self.source, self.position)
            self._advance(match.end() - start)
            text = match.group(0)
            if "." in text or "e" in text or "E" in text:
                value = float(text)
            else:
                value = decimal_integer(text)
        # "3abc" or "1.2.3" is one malformed number, not two tokens
        if _continues_number(self._current()):
            while _continues_number(self._current()):
                self._advance()
            return self._token(TokenKind.ILLEGAL, start, line, "malformed number")
        return self._token(TokenKind.NUMBER, start, line, value)

    def _lex_string(self, quote: str) -> Token:
        start, line = self.position, self.line
        self._advance()
        chars: List[str] = []
        while True:
            ch = self._current()
            if ch == "" or ch == "\n":
                return self._token(TokenKind.ILLEGAL, start, line, "unfinished string")
            if ch == quote:
                self._advance()
                return self._token(TokenKind.STRING, start, line, "".join(chars))
            if ch != "\\":
                chars.append(ch)
                self._advance()
                continue

            self._advance()
            escape = self._current()
            if escape in ESCAPES:
                chars.append(ESCAPES[escape])
                self._advance()
            elif escape == "z":
                self._advance()
                while self._current() and self._current() in " \t\r\n\f\v":
                    self._advance()
            elif escape == "x":
                digits = self.source[self.position + 1:self.position + 3]
                if not re.fullmatch(r"[0-9a-fA-F]{2}", digits):
                    self._advance()
                    return self._token(TokenKind.ILLEGAL, start, line,
                                       "hexadecimal digit expected")
                chars.append(chr(int(digits, 16)))
                self._advance(3)
            elif _is_digit(escape):
                match = re.match(r"[0-9]{1,3}", self.source[self.position:])
                code = int(match.group(0))
                if code > 255:
                    self._advance(len(match.group(0)))
                    return self._token(TokenKind.ILLEGAL, start, line,
                                       "decimal escape too large")
                chars.append(chr(code))
                self._advance(len(match.group(0)))
            elif escape == "u":
                match = re.match(r"u\{([0-9a-fA-F]+)\}", self.source[self.position:])
                if not match:
                    self._advance()
                    return self._token(TokenKind.ILLEGAL, start, line,
                                       "missing '{' in \\u{xxxx}")
                code = int(match.group(1), 16)
                if code > 0x10FFFF:
                    self._advance(len(match.group(0)))
                    return self._token(TokenKind.ILLEGAL, start, line,
                                       "UTF-8 value too large")
                chars.append(chr(code))
                self._advance(len(match.group(0)))
            else:
                self._advance()
                return self._token(TokenKind.ILLEGAL, start, line,
                                   "invalid escape sequence")


class TokenIterator:
    """
    Peekable token stream.

    Once the underlying lexer is exhausted the EOF token is returned forever,
    so the parser never has to handle StopIteration.
    """

    def __init__(self, tokens: Iterator[Token]):
        self._tokens = iter(tokens)
        self._buffer: List[Token] = []
        self._eof: Optional[Token] = None

    def _pull(self) -> Token:
        if self._eof is not None:
            return self._eof
        try:
            token = next(self._tokens)
        except StopIteration:
            token = Token(TokenKind.EOF, "", 0)
        if token.kind == TokenKind.EOF:
            self._eof = token
        return token

    def peek(self) -> Token:
        if not self._buffer:
            self._buffer.append(self._pull())
        return self._buffer[0]

    def __iter__(self):
        return self

    def __next__(self) -> Token:
        return self.advance()

    def advance(self) -> Token:
        token = self.peek()
        self._buffer.pop(0)
        return token

    def push_back(self, token: Token) -> None:
        """Return an already consumed token to the front of the stream."""
        self._buffer.insert(0, token)


def tokenize(source: str) -> List[Token]:
    """Lex a whole string eagerly. Mostly useful for tests."""
    return list(Lexer(source))
