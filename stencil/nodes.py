'''
Expression and statement nodes produced by the parser.

The evaluation context special-cases three expression shapes (variables,
member access and index access) to read and write through them; every other
node is evaluated through its own `evaluate` method. Nodes are immutable after
parsing and may be shared between contexts.
'''

import ast
import json
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Sequence, override

from simpleeval import DEFAULT_OPERATORS, InvalidExpression

from .convert import to_bool
from .errors import ScriptRuntimeError
from .functions import ScriptFunction, call_function, is_function
from .script_object import ScriptObject
from .util import trace

if TYPE_CHECKING:
    from .context import TemplateContext


@dataclass(frozen=True, slots=True)
class SourceSpan:
    file: str = '<template>'
    line: int = 1
    column: int = 1

    def __str__(self) -> str:
        return f'{self.file}({self.line},{self.column})'


class ScopeKind(Enum):
    GLOBAL = auto()
    LOCAL = auto()
    LOOP = auto()


class FlowState(Enum):
    NONE = auto()
    BREAK = auto()
    CONTINUE = auto()
    RETURN = auto()


@dataclass(eq=False)
class ScriptNode(ABC):
    span: SourceSpan = field(default_factory=SourceSpan, kw_only=True)

    @abstractmethod
    def evaluate(self, context: 'TemplateContext') -> Any:
        pass


class ScriptExpression(ScriptNode):
    pass


class ScriptStatement(ScriptNode):
    pass


# Expressions


@dataclass(eq=False)
class ScriptVariable(ScriptExpression):
    name: str
    scope: ScopeKind = ScopeKind.GLOBAL

    @override
    def evaluate(self, context: 'TemplateContext') -> Any:
        return context.get_value(self)

    def __str__(self) -> str:
        if self.scope is ScopeKind.LOCAL:
            return '$' + self.name
        return self.name


@dataclass(eq=False)
class MemberExpression(ScriptExpression):
    target: ScriptExpression
    member: str

    @override
    def evaluate(self, context: 'TemplateContext') -> Any:
        return context.get_value(self)

    def __str__(self) -> str:
        return f'{self.target}.{self.member}'


@dataclass(eq=False)
class IndexerExpression(ScriptExpression):
    target: ScriptExpression
    index: ScriptExpression

    @override
    def evaluate(self, context: 'TemplateContext') -> Any:
        return context.get_value(self)

    def __str__(self) -> str:
        return f'{self.target}[{self.index}]'


@dataclass(eq=False)
class LiteralExpression(ScriptExpression):
    value: Any

    @override
    def evaluate(self, context: 'TemplateContext') -> Any:
        return self.value

    def __str__(self) -> str:
        match self.value:
            case None:
                return 'null'
            case bool():
                return 'true' if self.value else 'false'
            case str():
                return json.dumps(self.value, ensure_ascii=False)
            case _:
                return str(self.value)


@dataclass(eq=False)
class ArrayExpression(ScriptExpression):
    items: list[ScriptExpression]

    @override
    def evaluate(self, context: 'TemplateContext') -> list:
        return [context.evaluate(item) for item in self.items]

    def __str__(self) -> str:
        return '[' + ', '.join(str(item) for item in self.items) + ']'


@dataclass(eq=False)
class ObjectExpression(ScriptExpression):
    members: list[tuple[str, ScriptExpression]]

    @override
    def evaluate(self, context: 'TemplateContext') -> ScriptObject:
        obj = ScriptObject()
        for name, expr in self.members:
            obj[name] = context.evaluate(expr)
        return obj

    def __str__(self) -> str:
        return '{' + ', '.join(f'{k}: {v}' for k, v in self.members) + '}'


BINARY_OPERATORS = {
    '+': DEFAULT_OPERATORS[ast.Add],
    '-': DEFAULT_OPERATORS[ast.Sub],
    '*': DEFAULT_OPERATORS[ast.Mult],
    '/': DEFAULT_OPERATORS[ast.Div],
    '//': DEFAULT_OPERATORS[ast.FloorDiv],
    '%': DEFAULT_OPERATORS[ast.Mod],
    '**': DEFAULT_OPERATORS[ast.Pow],
    '==': DEFAULT_OPERATORS[ast.Eq],
    '!=': DEFAULT_OPERATORS[ast.NotEq],
    '<': DEFAULT_OPERATORS[ast.Lt],
    '<=': DEFAULT_OPERATORS[ast.LtE],
    '>': DEFAULT_OPERATORS[ast.Gt],
    '>=': DEFAULT_OPERATORS[ast.GtE],
}

UNARY_OPERATORS = {
    '-': DEFAULT_OPERATORS[ast.USub],
    '+': DEFAULT_OPERATORS[ast.UAdd],
}


@dataclass(eq=False)
class BinaryExpression(ScriptExpression):
    operator: str
    left: ScriptExpression
    right: ScriptExpression

    @override
    def evaluate(self, context: 'TemplateContext') -> Any:
        op = self.operator
        left = context.evaluate(self.left)

        # Short-circuit.
        if op == '&&':
            return to_bool(left) and to_bool(context.evaluate(self.right))
        if op == '||':
            return to_bool(left) or to_bool(context.evaluate(self.right))

        right = context.evaluate(self.right)
        if op == '+' and (isinstance(left, str) or isinstance(right, str)):
            left = context.to_text(self.left.span, left)
            right = context.to_text(self.right.span, right)

        try:
            return BINARY_OPERATORS[op](left, right)
        except (InvalidExpression, ArithmeticError, TypeError, ValueError) as e:
            raise ScriptRuntimeError(
                self.span,
                f'Unable to evaluate [{self}] with [{left!r}] and [{right!r}]:'
                f' {type(e).__name__}: {e}',
            ) from e

    def __str__(self) -> str:
        return f'{self.left} {self.operator} {self.right}'


@dataclass(eq=False)
class UnaryExpression(ScriptExpression):
    operator: str
    operand: ScriptExpression

    @override
    def evaluate(self, context: 'TemplateContext') -> Any:
        val = context.evaluate(self.operand)
        if self.operator == '!':
            return not to_bool(val)
        try:
            return UNARY_OPERATORS[self.operator](val)
        except TypeError as e:
            raise ScriptRuntimeError(
                self.span, f'Unable to evaluate [{self}] with [{val!r}]: {e}'
            ) from e

    def __str__(self) -> str:
        return f'{self.operator}{self.operand}'


@dataclass(eq=False)
class FunctionCall(ScriptExpression):
    target: ScriptExpression
    args: list[ScriptExpression]

    @override
    def evaluate(self, context: 'TemplateContext') -> Any:
        # Resolve the function itself, not the result of an implicit call.
        func = context.evaluate(self.target, alias=True)
        if not is_function(func):
            raise ScriptRuntimeError(
                self.target.span,
                f'The target [{self.target}] is not a function'
                f' ({type(func).__name__}): {self}',
            )
        # A piped value goes first, and is taken before the arguments run their own calls.
        args = context.take_pipe_arguments()
        args.extend(context.evaluate(arg) for arg in self.args)
        return call_function(context, self, func, args)

    def __str__(self) -> str:
        return f'{self.target}(' + ', '.join(str(a) for a in self.args) + ')'


# {{ @func }} yields the function itself, uncalled.
@dataclass(eq=False)
class AliasExpression(ScriptExpression):
    target: ScriptExpression

    @override
    def evaluate(self, context: 'TemplateContext') -> Any:
        return context.evaluate(self.target, alias=True)

    def __str__(self) -> str:
        return f'@{self.target}'


# {{ x | f(a) }} is {{ f(x, a) }}; the target may also be a bare function name.
@dataclass(eq=False)
class PipeExpression(ScriptExpression):
    source: ScriptExpression
    target: ScriptExpression

    @override
    def evaluate(self, context: 'TemplateContext') -> Any:
        with context.pipe_scope(self.source, self):
            return context.evaluate(self.target)

    def __str__(self) -> str:
        return f'{self.source} | {self.target}'


# Statements


@dataclass(eq=False)
class BlockStatement(ScriptStatement):
    statements: list[ScriptStatement] = field(default_factory=list)

    @override
    def evaluate(self, context: 'TemplateContext') -> None:
        for stmt in self.statements:
            context.evaluate(stmt)
            # `break`, `continue` or `ret` was hit, let the owner handle it.
            if context.flow_state is not FlowState.NONE:
                return

    def __str__(self) -> str:
        return f'<block of {len(self.statements)}>'


@dataclass(eq=False)
class RawTextStatement(ScriptStatement):
    text: str

    @override
    def evaluate(self, context: 'TemplateContext') -> None:
        context.write(self.text)

    def __str__(self) -> str:
        return repr(self.text)


@dataclass(eq=False)
class ExpressionStatement(ScriptStatement):
    expression: ScriptExpression

    @override
    def evaluate(self, context: 'TemplateContext') -> None:
        value = context.result = context.evaluate(self.expression)
        context.write_value(self.span, value)

    def __str__(self) -> str:
        return str(self.expression)


@dataclass(eq=False)
class AssignStatement(ScriptStatement):
    target: ScriptExpression
    value: ScriptExpression

    @override
    def evaluate(self, context: 'TemplateContext') -> None:
        context.set_value(self.target, context.evaluate(self.value))

    def __str__(self) -> str:
        return f'{self.target} = {self.value}'


@dataclass(eq=False)
class IfStatement(ScriptStatement):
    condition: ScriptExpression
    then_body: BlockStatement
    # Either a plain `else` block or a chained `else if`.
    else_body: 'BlockStatement | IfStatement | None' = None

    @override
    def evaluate(self, context: 'TemplateContext') -> None:
        if to_bool(context.evaluate(self.condition)):
            context.evaluate(self.then_body)
        elif self.else_body is not None:
            context.evaluate(self.else_body)

    def __str__(self) -> str:
        return f'if {self.condition}'


class LoopStatement(ScriptStatement):
    # Returns `True` when the loop must stop.
    @staticmethod
    def _settle_flow(context: 'TemplateContext') -> bool:
        match context.flow_state:
            case FlowState.BREAK:
                context.flow_state = FlowState.NONE
                return True
            case FlowState.CONTINUE:
                context.flow_state = FlowState.NONE
                return False
            case FlowState.RETURN:
                return True
            case _:
                return False


FOR_INDEX = ScriptVariable('for.index', ScopeKind.LOOP)
FOR_FIRST = ScriptVariable('for.first', ScopeKind.LOOP)
FOR_LAST = ScriptVariable('for.last', ScopeKind.LOOP)
FOR_EVEN = ScriptVariable('for.even', ScopeKind.LOOP)
FOR_ODD = ScriptVariable('for.odd', ScopeKind.LOOP)
WHILE_INDEX = ScriptVariable('while.index', ScopeKind.LOOP)

_END = object()


@dataclass(eq=False)
class ForStatement(LoopStatement):
    variable: ScriptVariable
    iterable: ScriptExpression
    body: BlockStatement

    @override
    def evaluate(self, context: 'TemplateContext') -> None:
        items = context.evaluate(self.iterable)
        if items is None:
            return
        if isinstance(items, (str, bytes)) or not isinstance(items, Iterable):
            raise ScriptRuntimeError(
                self.iterable.span,
                f'Expecting a list for the loop, got [{type(items).__name__}]'
                f' from [{self.iterable}]: {self}',
            )

        it = iter(items)
        with context.loop_scope(self):
            index = 0
            # One item of lookahead, for `for.last`.
            upcoming = next(it, _END)
            while upcoming is not _END:
                item = upcoming
                upcoming = next(it, _END)

                context.step_loop()
                context.set_variable(self.variable, item)
                context.set_variable(FOR_INDEX, index)
                context.set_variable(FOR_FIRST, index == 0)
                context.set_variable(FOR_LAST, upcoming is _END)
                context.set_variable(FOR_EVEN, index % 2 == 0)
                context.set_variable(FOR_ODD, index % 2 == 1)

                context.evaluate(self.body)
                if self._settle_flow(context):
                    break
                index += 1

    def __str__(self) -> str:
        return f'for {self.variable} in {self.iterable}'


@dataclass(eq=False)
class WhileStatement(LoopStatement):
    condition: ScriptExpression
    body: BlockStatement

    @override
    def evaluate(self, context: 'TemplateContext') -> None:
        with context.loop_scope(self):
            index = 0
            while to_bool(context.evaluate(self.condition)):
                context.step_loop()
                context.set_variable(WHILE_INDEX, index)
                context.evaluate(self.body)
                if self._settle_flow(context):
                    break
                index += 1

    def __str__(self) -> str:
        return f'while {self.condition}'


@dataclass(eq=False)
class BreakStatement(ScriptStatement):
    @override
    def evaluate(self, context: 'TemplateContext') -> None:
        if not context.is_in_loop:
            raise ScriptRuntimeError(
                self.span, 'The <break> statement can only be used inside a loop'
            )
        context.flow_state = FlowState.BREAK

    def __str__(self) -> str:
        return 'break'


@dataclass(eq=False)
class ContinueStatement(ScriptStatement):
    @override
    def evaluate(self, context: 'TemplateContext') -> None:
        if not context.is_in_loop:
            raise ScriptRuntimeError(
                self.span, 'The <continue> statement can only be used inside a loop'
            )
        context.flow_state = FlowState.CONTINUE

    def __str__(self) -> str:
        return 'continue'


@dataclass(eq=False)
class ReturnStatement(ScriptStatement):
    value: ScriptExpression | None = None

    @override
    def evaluate(self, context: 'TemplateContext') -> None:
        context.return_value = context.evaluate(self.value)
        context.flow_state = FlowState.RETURN

    def __str__(self) -> str:
        return 'ret' if self.value is None else f'ret {self.value}'


class TemplateFunction(ScriptFunction):
    '''
    A function defined by a template with `func`. Parameters are bound as local
    variables of the frame opened by `call_function`, and the result is the
    value given to `ret`, if any.
    '''

    def __init__(
        self, name: str, params: Sequence[ScriptVariable], body: BlockStatement
    ):
        self.name = name
        self.params = tuple(params)
        self.body = body

    @override
    def invoke(
        self, context: 'TemplateContext', caller: ScriptNode, args: Sequence[Any]
    ) -> Any:
        if len(args) > len(self.params):
            raise ScriptRuntimeError(
                caller.span,
                f'Function [{self.name}] takes at most {len(self.params)} arguments,'
                f' got {len(args)}: {caller}',
            )

        for i, param in enumerate(self.params):
            context.set_variable(param, args[i] if i < len(args) else None)
        try:
            context.evaluate(self.body)
            if context.flow_state is FlowState.RETURN:
                return context.return_value
            return None
        finally:
            context.flow_state = FlowState.NONE
            context.return_value = None


@dataclass(eq=False)
class FunctionStatement(ScriptStatement):
    variable: ScriptVariable
    params: list[ScriptVariable]
    body: BlockStatement

    @override
    def evaluate(self, context: 'TemplateContext') -> None:
        func = TemplateFunction(self.variable.name, self.params, self.body)
        trace('FunctionStatement: defining %s', func)
        context.set_variable(self.variable, func)

    def __str__(self) -> str:
        params = ', '.join(str(p) for p in self.params)
        return f'func {self.variable}({params})'


@dataclass(eq=False)
class CaptureStatement(ScriptStatement):
    target: ScriptExpression
    body: BlockStatement

    @override
    def evaluate(self, context: 'TemplateContext') -> None:
        with context.output_scope() as buf:
            context.evaluate(self.body)
        context.set_value(self.target, ''.join(buf))

    def __str__(self) -> str:
        return f'capture {self.target}'


@dataclass(eq=False)
class ReadOnlyStatement(ScriptStatement):
    variable: ScriptVariable

    @override
    def evaluate(self, context: 'TemplateContext') -> None:
        context.set_read_only(self.variable)

    def __str__(self) -> str:
        return f'readonly {self.variable}'
