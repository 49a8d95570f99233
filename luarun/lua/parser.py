"""
Lua Parser

Recursive-descent parser producing a `Block` for one chunk. Operator
precedence follows Lua 5.3. Any problem with the token stream raises
`ParseError`; no partial tree is ever returned.

Besides grammar errors the parser also rejects `break` outside a loop and
`...` outside a vararg function, so that compilation of an accepted tree
cannot fail.
"""

from __future__ import annotations

from typing import List, Optional

from luarun.lua import ast
from luarun.lua.errors import ParseError
from luarun.lua.lexer import Lexer, Token, TokenIterator, TokenKind

# (left, right) binding power of binary operators
BINARY_PRIORITY = {
    TokenKind.OR: (1, 1),
    TokenKind.AND: (2, 2),
    TokenKind.LT: (3, 3),
    TokenKind.GT: (3, 3),
    TokenKind.LE: (3, 3),
    TokenKind.GE: (3, 3),
    TokenKind.NE: (3, 3),
    TokenKind.EQ: (3, 3),
    TokenKind.CONCAT: (9, 8),
    TokenKind.ADD: (10, 10),
    TokenKind.SUB: (10, 10),
    TokenKind.MUL: (11, 11),
    TokenKind.DIV: (11, 11),
    TokenKind.IDIV: (11, 11),
    TokenKind.MOD: (11, 11),
    TokenKind.POW: (14, 13),
}

UNARY_PRIORITY = 12

# Nesting allowed for statements and subexpressions
MAX_SYNTAX_LEVELS = 200
TOO_MANY_LEVELS = "chunk has too many syntax levels"

UNARY_OPERATORS = {
    TokenKind.NOT: "not",
    TokenKind.SUB: "-",
    TokenKind.LEN: "#",
}

BLOCK_FOLLOW = {
    TokenKind.EOF,
    TokenKind.END,
    TokenKind.ELSE,
    TokenKind.ELSEIF,
    TokenKind.UNTIL,
}


class Parser:
    """Parses one chunk from a peekable token stream."""

    def __init__(self, tokens: TokenIterator):
        self.tokens = tokens
        # One entry per enclosing function: [is_vararg, loop_depth]
        self._functions: List[List] = [[True, 0]]
        self._level = 0

    # Token helpers

    def _peek(self) -> Token:
        return self.tokens.peek()

    def _next(self) -> Token:
        return self.tokens.advance()

    def _check(self, kind: TokenKind) -> bool:
        return self._peek().kind == kind

    def _accept(self, kind: TokenKind) -> Optional[Token]:
        if self._check(kind):
            return self._next()
        return None

    def _error(self, message: str, token: Optional[Token] = None) -> ParseError:
        token = token or self._peek()
        if token.kind == TokenKind.ILLEGAL:
            message = token.value
        near = "<eof>" if token.kind == TokenKind.EOF else f"'{token.literal}'"
        return ParseError(f"{message} near {near}", token.line)

    def _expect(self, kind: TokenKind) -> Token:
        if not self._check(kind):
            raise self._error(f"'{kind}' expected")
        return self._next()

    def _expect_match(self, kind: TokenKind, opener: TokenKind, line: int) -> Token:
        if self._check(kind):
            return self._next()
        if line == self._peek().line:
            raise self._error(f"'{kind}' expected")
        raise self._error(f"'{kind}' expected (to close '{opener}' at line {line})")

    def _expect_name(self) -> str:
        return self._expect(TokenKind.NAME).literal

    def _enter_level(self) -> None:
        self._level += 1
        if self._level > MAX_SYNTAX_LEVELS:
            raise ParseError(TOO_MANY_LEVELS, self._peek().line)

    # Blocks and statements

    def chunk(self) -> ast.Block:
        block = self.block()
        if not self._check(TokenKind.EOF):
            raise self._error("'<eof>' expected")
        return block

    def block(self) -> ast.Block:
        block = ast.Block(line=self._peek().line)
        while self._peek().kind not in BLOCK_FOLLOW:
            if self._check(TokenKind.RETURN):
                block.statements.append(self.return_statement())
                break
            statement = self.statement()
            if statement is not None:
                block.statements.append(statement)
        return block

    def _loop_block(self) -> ast.Block:
        self._functions[-1][1] += 1
        try:
            return self.block()
        finally:
            self._functions[-1][1] -= 1

    def return_statement(self) -> ast.Return:
        line = self._next().line
        exprs: List[ast.Node] = []
        if self._peek().kind not in BLOCK_FOLLOW and not self._check(TokenKind.SEMICOLON):
            exprs = self.expression_list()
        self._accept(TokenKind.SEMICOLON)
        if self._peek().kind not in BLOCK_FOLLOW:
            raise self._error("'<eof>' expected")
        return ast.Return(exprs, line=line)

    def statement(self) -> Optional[ast.Node]:
        self._enter_level()
        try:
            return self._statement()
        finally:
            self._level -= 1

    def _statement(self) -> Optional[ast.Node]:
        token = self._peek()
        kind = token.kind
        if kind == TokenKind.SEMICOLON:
            self._next()
            return None
        if kind == TokenKind.IF:
            return self.if_statement()
        if kind == TokenKind.WHILE:
            self._next()
            condition = self.expression()
            self._expect(TokenKind.DO)
            block = self._loop_block()
            self._expect_match(TokenKind.END, TokenKind.WHILE, token.line)
            return ast.While(condition, block, line=token.line)
        if kind == TokenKind.DO:
            self._next()
            block = self.block()
            self._expect_match(TokenKind.END, TokenKind.DO, token.line)
            return ast.Do(block, line=token.line)
        if kind == TokenKind.FOR:
            return self.for_statement()
        if kind == TokenKind.REPEAT:
            self._next()
            block = self._loop_block()
            self._expect_match(TokenKind.UNTIL, TokenKind.REPEAT, token.line)
            condition = self.expression()
            return ast.Repeat(block, condition, line=token.line)
        if kind == TokenKind.FUNCTION:
            return self.function_statement()
        if kind == TokenKind.LOCAL:
            self._next()
            if self._accept(TokenKind.FUNCTION):
                name = self._expect_name()
                body = self.function_body(name, token.line)
                return ast.LocalFunction(name, body, line=token.line)
            names = [self._expect_name()]
            while self._accept(TokenKind.COMMA):
                names.append(self._expect_name())
            exprs: List[ast.Node] = []
            if self._accept(TokenKind.ASSIGN):
                exprs = self.expression_list()
            return ast.Local(names, exprs, line=token.line)
        if kind == TokenKind.BREAK:
            self._next()
            if self._functions[-1][1] == 0:
                raise ParseError("break outside a loop", token.line)
            return ast.Break(line=token.line)
        return self.expression_statement()

    def if_statement(self) -> ast.If:
        line = self._next().line
        condition = self.expression()
        self._expect(TokenKind.THEN)
        branches = [(condition, self.block())]
        orelse = None
        while True:
            if self._accept(TokenKind.ELSEIF):
                condition = self.expression()
                self._expect(TokenKind.THEN)
                branches.append((condition, self.block()))
                continue
            if self._accept(TokenKind.ELSE):
                orelse = self.block()
            self._expect_match(TokenKind.END, TokenKind.IF, line)
            return ast.If(branches, orelse, line=line)

    def for_statement(self) -> ast.Node:
        line = self._next().line
        first = self._expect_name()
        if self._accept(TokenKind.ASSIGN):
            start = self.expression()
            self._expect(TokenKind.COMMA)
            limit = self.expression()
            step = self.expression() if self._accept(TokenKind.COMMA) else None
            self._expect(TokenKind.DO)
            block = self._loop_block()
            self._expect_match(TokenKind.END, TokenKind.FOR, line)
            return ast.NumericFor(first, start, limit, step, block, line=line)
        if self._check(TokenKind.COMMA) or self._check(TokenKind.IN):
            names = [first]
            while self._accept(TokenKind.COMMA):
                names.append(self._expect_name())
            self._expect(TokenKind.IN)
            exprs = self.expression_list()
            self._expect(TokenKind.DO)
            block = self._loop_block()
            self._expect_match(TokenKind.END, TokenKind.FOR, line)
            return ast.GenericFor(names, exprs, block, line=line)
        raise self._error("'=' or 'in' expected")

    def function_statement(self) -> ast.Assign:
        line = self._next().line
        name_token = self._expect(TokenKind.NAME)
        target: ast.Node = ast.Name(name_token.literal, line=name_token.line)
        full_name = name_token.literal
        is_method = False
        while self._check(TokenKind.DOT) or self._check(TokenKind.COLON):
            is_method = self._next().kind == TokenKind.COLON
            key = self._expect_name()
            full_name += (":" if is_method else ".") + key
            target = ast.Index(target, ast.String(key, line=line), line=line)
            if is_method:
                break
        body = self.function_body(full_name, line, is_method=is_method)
        return ast.Assign([target], [ast.Function(body, line=line)], line=line)

    def expression_statement(self) -> ast.Node:
        token = self._peek()
        expr = self.suffixed_expression()
        if self._check(TokenKind.ASSIGN) or self._check(TokenKind.COMMA):
            targets = [expr]
            while self._accept(TokenKind.COMMA):
                targets.append(self.suffixed_expression())
            for target in targets:
                if not isinstance(target, (ast.Name, ast.Index)):
                    raise self._error("syntax error")
            self._expect(TokenKind.ASSIGN)
            exprs = self.expression_list()
            return ast.Assign(targets, exprs, line=token.line)
        if not isinstance(expr, (ast.Call, ast.MethodCall)):
            raise self._error("syntax error")
        return ast.CallStatement(expr, line=token.line)

    # Functions

    def function_body(self, name: str, line: int, is_method: bool = False) -> ast.FunctionBody:
        params: List[str] = ["self"] if is_method else []
        is_vararg = False
        self._expect(TokenKind.LPAREN)
        if not self._check(TokenKind.RPAREN):
            while True:
                if self._accept(TokenKind.DOTS):
                    is_vararg = True
                    break
                params.append(self._expect_name())
                if not self._accept(TokenKind.COMMA):
                    break
        self._expect(TokenKind.RPAREN)
        self._functions.append([is_vararg, 0])
        try:
            block = self.block()
        finally:
            self._functions.pop()
        self._expect_match(TokenKind.END, TokenKind.FUNCTION, line)
        return ast.FunctionBody(params, is_vararg, block, name=name, line=line)

    # Expressions

    def expression_list(self) -> List[ast.Node]:
        exprs = [self.expression()]
        while self._accept(TokenKind.COMMA):
            exprs.append(self.expression())
        return exprs

    def expression(self, limit: int = 0) -> ast.Node:
        self._enter_level()
        try:
            return self._subexpression(limit)
        finally:
            self._level -= 1

    def _subexpression(self, limit: int) -> ast.Node:
        token = self._peek()
        if token.kind in UNARY_OPERATORS:
            self._next()
            operand = self.expression(UNARY_PRIORITY)
            left: ast.Node = ast.UnaryOp(UNARY_OPERATORS[token.kind], operand, line=token.line)
        else:
            left = self.simple_expression()

        while True:
            op = self._peek()
            priority = BINARY_PRIORITY.get(op.kind)
            if priority is None or priority[0] <= limit:
                return left
            self._next()
            right = self.expression(priority[1])
            left = ast.BinaryOp(op.kind.value, left, right, line=op.line)

    def simple_expression(self) -> ast.Node:
        token = self._peek()
        kind = token.kind
        if kind == TokenKind.NUMBER:
            self._next()
            return ast.Number(token.value, line=token.line)
        if kind == TokenKind.STRING:
            self._next()
            return ast.String(token.value, line=token.line)
        if kind == TokenKind.NIL:
            self._next()
            return ast.Nil(line=token.line)
        if kind == TokenKind.TRUE:
            self._next()
            return ast.Boolean(True, line=token.line)
        if kind == TokenKind.FALSE:
            self._next()
            return ast.Boolean(False, line=token.line)
        if kind == TokenKind.DOTS:
            if not self._functions[-1][0]:
                raise self._error("cannot use '...' outside a vararg function")
            self._next()
            return ast.Vararg(line=token.line)
        if kind == TokenKind.LBRACE:
            return self.table_constructor()
        if kind == TokenKind.FUNCTION:
            self._next()
            return ast.Function(self.function_body("anonymous", token.line), line=token.line)
        return self.suffixed_expression()

    def primary_expression(self) -> ast.Node:
        token = self._peek()
        if token.kind == TokenKind.NAME:
            self._next()
            return ast.Name(token.literal, line=token.line)
        if token.kind == TokenKind.LPAREN:
            self._next()
            expr = self.expression()
            self._expect_match(TokenKind.RPAREN, TokenKind.LPAREN, token.line)
            return ast.Paren(expr, line=token.line)
        raise self._error("unexpected symbol")

    def suffixed_expression(self) -> ast.Node:
        expr = self.primary_expression()
        while True:
            token = self._peek()
            kind = token.kind
            if kind == TokenKind.DOT:
                self._next()
                key = self._expect_name()
                expr = ast.Index(expr, ast.String(key, line=token.line), line=token.line)
            elif kind == TokenKind.LBRACKET:
                self._next()
                key_expr = self.expression()
                self._expect(TokenKind.RBRACKET)
                expr = ast.Index(expr, key_expr, line=token.line)
            elif kind == TokenKind.COLON:
                self._next()
                method = self._expect_name()
                expr = ast.MethodCall(expr, method, self.call_arguments(), line=token.line)
            elif kind in (TokenKind.LPAREN, TokenKind.STRING, TokenKind.LBRACE):
                expr = ast.Call(expr, self.call_arguments(), line=token.line)
            else:
                return expr

    def call_arguments(self) -> List[ast.Node]:
        token = self._peek()
        if token.kind == TokenKind.STRING:
            self._next()
            return [ast.String(token.value, line=token.line)]
        if token.kind == TokenKind.LBRACE:
            return [self.table_constructor()]
        if token.kind != TokenKind.LPAREN:
            raise self._error("function arguments expected")
        self._next()
        args: List[ast.Node] = []
        if not self._check(TokenKind.RPAREN):
            args = self.expression_list()
        self._expect_match(TokenKind.RPAREN, TokenKind.LPAREN, token.line)
        return args

    def table_constructor(self) -> ast.Table:
        line = self._expect(TokenKind.LBRACE).line
        table = ast.Table(line=line)
        while not self._check(TokenKind.RBRACE):
            token = self._peek()
            if token.kind == TokenKind.LBRACKET:
                self._next()
                key = self.expression()
                self._expect(TokenKind.RBRACKET)
                self._expect(TokenKind.ASSIGN)
                table.fields.append(ast.TableField(key, self.expression(), line=token.line))
            elif token.kind == TokenKind.NAME and self._is_named_field():
                self._next()
                self._expect(TokenKind.ASSIGN)
                key = ast.String(token.literal, line=token.line)
                table.fields.append(ast.TableField(key, self.expression(), line=token.line))
            else:
                table.fields.append(ast.TableField(None, self.expression(), line=token.line))
            if not (self._accept(TokenKind.COMMA) or self._accept(TokenKind.SEMICOLON)):
                break
        self._expect_match(TokenKind.RBRACE, TokenKind.LBRACE, line)
        return table

    def _is_named_field(self) -> bool:
        """`name = value` inside a constructor needs two tokens of lookahead."""
        name = self._next()
        is_field = self._check(TokenKind.ASSIGN)
        self.tokens.push_back(name)
        return is_field


def parse_block(tokens: TokenIterator) -> ast.Block:
    """
    Parse a whole chunk from `tokens`.

    Nesting deep enough to exhaust the Python stack before MAX_SYNTAX_LEVELS
    is reported the same way as exceeding the limit.
    """
    parser = Parser(tokens)
    try:
        return parser.chunk()
    except RecursionError:
        raise ParseError(TOO_MANY_LEVELS, parser.tokens.peek().line) from None


def parse(source: str) -> ast.Block:
    """Convenience wrapper: lex and parse a source string."""
    return parse_block(TokenIterator(Lexer(source)))
