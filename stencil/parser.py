import os
import ast
import functools
from dataclasses import dataclass
from typing import Any

from lark import Lark, Token, Transformer, Tree, v_args
from lark.exceptions import (
    LarkError,
    UnexpectedCharacters,
    UnexpectedInput,
    UnexpectedToken,
    VisitError,
)

from .errors import ScriptParseError
from .lex import lex
from .nodes import (
    AliasExpression,
    ArrayExpression,
    AssignStatement,
    BinaryExpression,
    BlockStatement,
    BreakStatement,
    CaptureStatement,
    ContinueStatement,
    ExpressionStatement,
    ForStatement,
    FunctionCall,
    FunctionStatement,
    IfStatement,
    IndexerExpression,
    LiteralExpression,
    MemberExpression,
    ObjectExpression,
    PipeExpression,
    RawTextStatement,
    ReadOnlyStatement,
    ReturnStatement,
    ScopeKind,
    ScriptStatement,
    ScriptVariable,
    SourceSpan,
    UnaryExpression,
    WhileStatement,
)
from .util import trace

parser = Lark.open(
    os.path.join(os.path.dirname(__file__), 'stencil.lark'),
    parser='lalr',
    propagate_positions=True,
    maybe_placeholders=True,
)


@dataclass(frozen=True)
class ParserOptions:
    # Drop a single line break right after each `}}`.
    trim_blocks: bool = False


@functools.lru_cache(maxsize=256)
def parse_fragment(code: str) -> Tree:
    return parser.parse(code)


# Instructions that only make sense paired with others, across code blocks.


@dataclass
class _Open:
    node: ScriptStatement


@dataclass
class _Else:
    # `None` for a plain `else`.
    condition: Any
    span: SourceSpan


@dataclass
class _End:
    span: SourceSpan


def _unquote(token: Token) -> str:
    return ast.literal_eval(token.value)


@v_args(inline=True, meta=True)
class _NodeBuilder(Transformer):
    def __init__(self, origin: SourceSpan):
        super().__init__()
        self.origin = origin

    def _span(self, meta) -> SourceSpan:
        line = getattr(meta, 'line', 1)
        column = getattr(meta, 'column', 1)
        # Positions are relative to the code block.
        if line == 1:
            column += self.origin.column - 1
        return SourceSpan(self.origin.file, self.origin.line + line - 1, column)

    def _block(self, meta) -> BlockStatement:
        return BlockStatement(span=self._span(meta))

    def start(self, meta, *items):
        return [item for item in items if item is not None]

    # Statements

    def for_open(self, meta, variable, iterable):
        node = ForStatement(variable, iterable, self._block(meta), span=self._span(meta))
        return _Open(node)

    def while_open(self, meta, condition):
        return _Open(WhileStatement(condition, self._block(meta), span=self._span(meta)))

    def if_open(self, meta, condition):
        return _Open(IfStatement(condition, self._block(meta), span=self._span(meta)))

    def else_if(self, meta, condition):
        return _Else(condition, self._span(meta))

    def else_(self, meta):
        return _Else(None, self._span(meta))

    def end(self, meta):
        return _End(self._span(meta))

    def func_open(self, meta, variable, *params):
        params = [p for p in params if p is not None]
        node = FunctionStatement(variable, params, self._block(meta), span=self._span(meta))
        return _Open(node)

    def capture_open(self, meta, target):
        return _Open(CaptureStatement(target, self._block(meta), span=self._span(meta)))

    def readonly(self, meta, variable):
        return ReadOnlyStatement(variable, span=self._span(meta))

    def break_(self, meta):
        return BreakStatement(span=self._span(meta))

    def continue_(self, meta):
        return ContinueStatement(span=self._span(meta))

    def ret(self, meta, value):
        return ReturnStatement(value, span=self._span(meta))

    def assign(self, meta, target, value):
        return AssignStatement(target, value, span=self._span(meta))

    def expr_stmt(self, meta, expr):
        return ExpressionStatement(expr, span=self._span(meta))

    # Expressions

    def binary(self, meta, left, op, right):
        return BinaryExpression(op.value, left, right, span=self._span(meta))

    def unary(self, meta, op, operand):
        return UnaryExpression(op.value, operand, span=self._span(meta))

    def member(self, meta, target, name):
        return MemberExpression(target, name.value, span=self._span(meta))

    def indexer(self, meta, target, index):
        return IndexerExpression(target, index, span=self._span(meta))

    def call(self, meta, target, *args):
        args = [a for a in args if a is not None]
        return FunctionCall(target, args, span=self._span(meta))

    def alias(self, meta, target):
        return AliasExpression(target, span=self._span(meta))

    def pipe(self, meta, source, target):
        return PipeExpression(source, target, span=self._span(meta))

    def int_(self, meta, token):
        return LiteralExpression(int(token.value), span=self._span(meta))

    def float_(self, meta, token):
        return LiteralExpression(float(token.value), span=self._span(meta))

    def string(self, meta, token):
        return LiteralExpression(_unquote(token), span=self._span(meta))

    def true(self, meta):
        return LiteralExpression(True, span=self._span(meta))

    def false(self, meta):
        return LiteralExpression(False, span=self._span(meta))

    def null(self, meta):
        return LiteralExpression(None, span=self._span(meta))

    def array(self, meta, *items):
        items = [i for i in items if i is not None]
        return ArrayExpression(items, span=self._span(meta))

    def object(self, meta, *pairs):
        pairs = [p for p in pairs if p is not None]
        return ObjectExpression(pairs, span=self._span(meta))

    def pair(self, meta, key, value):
        name = _unquote(key) if key.type == 'STRING' else key.value
        return name, value

    def global_var(self, meta, token):
        return ScriptVariable(token.value, ScopeKind.GLOBAL, span=self._span(meta))

    def local_var(self, meta, token):
        return ScriptVariable(token.value[1:], ScopeKind.LOCAL, span=self._span(meta))

    def loop_var(self, meta, token):
        return ScriptVariable(token.value, ScopeKind.LOOP, span=self._span(meta))


def _parse_error_message(e: UnexpectedInput) -> str:
    match e:
        case UnexpectedToken() if e.token.type == '$END':
            return 'Unexpected end of the code block'
        case UnexpectedToken():
            return f'Unexpected token [{e.token}]'
        case UnexpectedCharacters():
            return f'Unexpected character [{e.char}]'
        case _:
            return f'{type(e).__name__}: {e}'


def parse_code(code: str, origin: SourceSpan) -> list:
    '''
    Parses the code of one `{{ ... }}` block, starting at `origin` in the
    template, into statements and the unpaired `for`/`else`/`end` instructions.
    '''
    try:
        tree = parse_fragment(code)
    except UnexpectedInput as e:
        # Lark uses '?' or -1 when it has no position.
        line = e.line if isinstance(e.line, int) and e.line > 0 else 1
        column = e.column if isinstance(e.column, int) and e.column > 0 else 1
        if line == 1:
            column += origin.column - 1
        span = SourceSpan(origin.file, origin.line + line - 1, column)
        raise ScriptParseError(span, _parse_error_message(e)) from e
    except LarkError as e:
        raise ScriptParseError(origin, f'{type(e).__name__}: {e}') from e

    trace('Parsed block at %s: %s', origin, tree)
    try:
        return _NodeBuilder(origin).transform(tree)
    except VisitError as e:
        raise ScriptParseError(
            origin, f'Invalid code: {type(e.orig_exc).__name__}: {e.orig_exc}'
        ) from e.orig_exc
    except RecursionError as e:
        raise ScriptParseError(origin, 'The code block is nested too deeply') from e


@dataclass
class _Frame:
    node: ScriptStatement
    # Where an `else` goes next, `None` once the plain `else` is seen.
    tail: IfStatement | None
    body: list[ScriptStatement]


class _Assembler:
    '''Nests the flat statements of all blocks into bodies, pairing up `end`s.'''

    def __init__(self, source_name: str):
        self.root = BlockStatement(span=SourceSpan(source_name))
        self._stack: list[_Frame] = []

    @property
    def _body(self) -> list[ScriptStatement]:
        return self._stack[-1].body if self._stack else self.root.statements

    def feed(self, item: Any):
        match item:
            case _Open(node=IfStatement() as node):
                self._body.append(node)
                self._stack.append(_Frame(node, node, node.then_body.statements))

            case _Open(node=node):
                self._body.append(node)
                self._stack.append(_Frame(node, None, node.body.statements))

            case _Else(condition=condition, span=span):
                if not self._stack or (tail := self._stack[-1].tail) is None:
                    raise ScriptParseError(span, 'Unexpected <else> without a matching <if>')
                frame = self._stack[-1]
                if condition is None:
                    tail.else_body = BlockStatement(span=span)
                    frame.tail = None
                    frame.body = tail.else_body.statements
                else:
                    nested = IfStatement(condition, BlockStatement(span=span), span=span)
                    tail.else_body = nested
                    frame.tail = nested
                    frame.body = nested.then_body.statements

            case _End(span=span):
                if not self._stack:
                    raise ScriptParseError(span, 'Unexpected <end> without a matching statement')
                self._stack.pop()

            case _:
                self._body.append(item)

    def finish(self) -> BlockStatement:
        if self._stack:
            node = self._stack[-1].node
            raise ScriptParseError(node.span, f'The <{node}> statement is missing its <end>')
        return self.root


def parse(
    text: str,
    source_name: str = '<template>',
    options: ParserOptions | None = None,
    errors: list[str] | None = None,
) -> BlockStatement:
    '''
    Parses a whole template. Recoverable lexing problems are appended to
    `errors`; anything else raises `ScriptParseError`.
    '''
    options = options or ParserOptions()
    assembler = _Assembler(source_name)
    for fragment in lex(text, trim_blocks=options.trim_blocks, errors=errors):
        span = SourceSpan(source_name, fragment.line, fragment.column)
        if fragment.is_code:
            for item in parse_code(fragment.text, span):
                assembler.feed(item)
        else:
            assembler.feed(RawTextStatement(fragment.text, span=span))
    return assembler.finish()
