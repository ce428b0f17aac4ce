import sys
from collections.abc import Iterable, Mapping
from contextlib import contextmanager
from typing import Any, Callable, Iterator

from .accessors import (
    ListAccessor,
    MappingAccessor,
    MemberAccessor,
    MemberRenamer,
    NullAccessor,
    ScriptObjectAccessor,
    TypedMemberAccessor,
    describe,
    find_list_accessor,
    standard_member_renamer,
)
from .convert import is_value_type, to_int, to_text
from .errors import (
    InvalidUsageError,
    LoopLimitError,
    RecursionLimitError,
    ScriptRuntimeError,
)
from .functions import HostFunction, ScriptFunction, build_builtins, call_function, is_function
from .loader import TemplateLoader, include_func
from .nodes import (
    FlowState,
    IndexerExpression,
    MemberExpression,
    ScopeKind,
    ScriptExpression,
    ScriptNode,
    ScriptVariable,
    SourceSpan,
)
from .parser import ParserOptions
from .script_object import ScriptObject, ScriptObjectProtocol
from .util import log, trace

DEFAULT_LOOP_LIMIT = 1000
DEFAULT_RECURSION_LIMIT = 100

# Python frames spent per level of template function calls, roughly.
PY_FRAMES_PER_CALL = 30
PY_FRAMES_BASE = 1000


class TemplateContext:
    '''
    State of one render: the model, the variable scopes, the outputs, and the
    safety counters.

    Variables live in three independent stacks of frames:

    - the global chain, searched from the most recently pushed model outwards,
      whose root is the frame of built-in functions;
    - the local stack, one frame per function call (and per pushed model), of
      which only the top frame is visible;
    - the loop stack, one frame per active loop, of which only the top frame is
      visible.

    A context is not reentrant: drive it from one thread, one render at a time.
    Parsed templates hold no state and can be shared between contexts.
    '''

    def __init__(
        self,
        *,
        loop_limit: int = DEFAULT_LOOP_LIMIT,
        recursion_limit: int = DEFAULT_RECURSION_LIMIT,
        enable_output: bool = True,
        template_loader: TemplateLoader | None = None,
        parser_options: ParserOptions | None = None,
        member_renamer: MemberRenamer = standard_member_renamer,
        functions: Mapping[str, Callable[..., Any] | ScriptFunction] | None = None,
    ):
        self.loop_limit = loop_limit
        self.recursion_limit = recursion_limit
        self.enable_output = enable_output
        self.template_loader = template_loader
        self.parser_options = parser_options or ParserOptions()
        self.member_renamer = member_renamer

        # Opaque to the engine, for host metadata.
        self.tags: dict[Any, Any] = {}
        # Resolved path -> parsed template, for `include`.
        self.cached_templates: dict[str, ScriptNode] = {}

        self.builtin_object = ScriptObject()
        builtins = build_builtins(functions)
        builtins.setdefault('include', HostFunction(include_func, 'include', pass_context=True))
        for name, func in builtins.items():
            self.builtin_object.try_set_value(name, func, read_only=True)

        self._outputs: list[list[str]] = [[]]
        self._source_files: list[str] = []

        self._globals: list[ScriptObjectProtocol] = [self.builtin_object]
        self._locals: list[ScriptObject] = [ScriptObject()]
        self._loop_stores: list[ScriptObject] = []
        self._loops: list[ScriptNode] = []
        # Number of loops open when each active function was entered.
        self._loop_bases: list[int] = []
        # Cleared frames ready for reuse.
        self._available_stores: list[ScriptObject] = []

        self._member_accessors: dict[type, MemberAccessor] = {}
        self._list_accessors: dict[type, ListAccessor | None] = {}

        self.function_depth = 0
        self.loop_step = 0
        self._function_call_disabled = False

        self.flow_state = FlowState.NONE
        self.return_value: Any = None

        # Sources of the values piped with `|`, consumed by the next function call.
        self.pipe_arguments: list[ScriptExpression] = []
        # Value of the last expression statement, handed back by `Template.evaluate`.
        self.result: Any = None

    @property
    def recursion_limit(self) -> int:
        return self._recursion_limit

    @recursion_limit.setter
    def recursion_limit(self, value: int):
        self._recursion_limit = value
        # Best effort to let the template limit trip before Python's own; a
        # `RecursionError` still raised is reported by `call_function`.
        needed = value * PY_FRAMES_PER_CALL + PY_FRAMES_BASE
        if needed > sys.getrecursionlimit():
            log.debug('Raising Python recursion limit to %d', needed)
            sys.setrecursionlimit(needed)

    # Globals

    @property
    def current_global(self) -> ScriptObjectProtocol:
        return self._globals[-1]

    def push_global(self, model: ScriptObjectProtocol):
        if model is None:
            raise InvalidUsageError('push_global: model is required')
        if not isinstance(model, ScriptObjectProtocol):
            raise InvalidUsageError(
                f'push_global: expecting a ScriptObject, got {type(model).__name__}'
            )
        self._globals.append(model)
        # Free variables introduced under this model must not leak outwards.
        self._push_variable_scope(ScopeKind.LOCAL)
        trace('Push global [%d]: %r', len(self._globals), model)

    def pop_global(self) -> ScriptObjectProtocol:
        if len(self._globals) == 1:
            raise InvalidUsageError('Unexpected pop_global() not matching a push_global()')
        model = self._globals.pop()
        self._pop_variable_scope(ScopeKind.LOCAL)
        trace('Pop global [%d]: %r', len(self._globals), model)
        return model

    @contextmanager
    def global_scope(self, model: ScriptObjectProtocol) -> Iterator[ScriptObjectProtocol]:
        self.push_global(model)
        try:
            yield model
        finally:
            self.pop_global()

    # Functions

    def enter_function(self, caller: ScriptNode):
        self.function_depth += 1
        if self.function_depth > self.recursion_limit:
            # Not entered, so there will be no matching `exit_function`.
            self.function_depth -= 1
            raise RecursionLimitError(
                caller.span,
                f'Exceeding number of recursive depth limit [{self.recursion_limit}]'
                f' for function call: [{caller}]',
            )
        self._loop_bases.append(len(self._loops))
        trace('[%d] Enter function: %s', self.function_depth, caller)
        self._push_variable_scope(ScopeKind.LOCAL)

    def exit_function(self):
        self._pop_variable_scope(ScopeKind.LOCAL)
        self._loop_bases.pop()
        trace('[%d] Exit function', self.function_depth)
        self.function_depth -= 1

    @contextmanager
    def function_scope(self, caller: ScriptNode) -> Iterator[None]:
        self.enter_function(caller)
        try:
            yield
        finally:
            self.exit_function()

    # Depths of every stack, to recover from a Python stack overflow that
    # skipped the cleanups of the innermost scopes.
    def _save_state(self) -> tuple:
        return (
            len(self._outputs),
            len(self._source_files),
            len(self._globals),
            len(self._locals),
            len(self._loop_stores),
            len(self._loops),
            len(self._loop_bases),
            len(self.pipe_arguments),
            self.function_depth,
            self._function_call_disabled,
            self.flow_state,
            self.return_value,
        )

    def _restore_state(self, state: tuple):
        (outputs, files, globals_, locals_, loop_stores, loops, bases, pipes,
         self.function_depth, self._function_call_disabled,
         self.flow_state, self.return_value) = state
        del self._outputs[outputs:]
        del self._source_files[files:]
        del self._globals[globals_:]
        del self._locals[locals_:]
        del self._loop_stores[loop_stores:]
        del self._loops[loops:]
        del self._loop_bases[bases:]
        del self.pipe_arguments[pipes:]
        log.debug('Restored the context at function depth %d', self.function_depth)

    # Loops

    # Only the loops opened by the current function count: a function cannot
    # `break` out of the loop of its caller.
    @property
    def is_in_loop(self) -> bool:
        base = self._loop_bases[-1] if self._loop_bases else 0
        return len(self._loops) > base

    def enter_loop(self, loop: ScriptNode):
        if loop is None:
            raise InvalidUsageError('enter_loop: loop is required')
        self._loops.append(loop)
        self._push_variable_scope(ScopeKind.LOOP)

    def exit_loop(self):
        self._pop_variable_scope(ScopeKind.LOOP)
        self._loops.pop()

    @contextmanager
    def loop_scope(self, loop: ScriptNode) -> Iterator[None]:
        self.enter_loop(loop)
        try:
            yield
        finally:
            self.exit_loop()

    def _consume_step(self, span: SourceSpan | None, what: str):
        self.loop_step += 1
        if self.loop_step > self.loop_limit:
            raise LoopLimitError(
                span, f'Exceeding number of iteration limit [{self.loop_limit}] {what}'
            )

    # The budget is shared by all the loops of the context, nested or not.
    def step_loop(self):
        if not self._loops:
            raise InvalidUsageError('step_loop() called outside of a loop')
        loop = self._loops[-1]
        self._consume_step(loop.span, f'for statement: {loop}')

    def step_item(self, span: SourceSpan | None, what: str):
        '''
        Charges one item walked by a built-in or a text conversion to the loop
        budget, so that walking a huge `range` is bounded like looping over it.
        Unlike `step_loop`, valid outside of a loop.
        '''
        self._consume_step(span, what)

    # Frames

    def _acquire_store(self) -> ScriptObject:
        if self._available_stores:
            return self._available_stores.pop()
        return ScriptObject()

    def _push_variable_scope(self, scope: ScopeKind):
        match scope:
            case ScopeKind.LOCAL:
                self._locals.append(self._acquire_store())
            case ScopeKind.LOOP:
                self._loop_stores.append(self._acquire_store())
            case _:
                raise InvalidUsageError(f'Cannot push a variable scope of kind [{scope}]')

    def _pop_variable_scope(self, scope: ScopeKind):
        match scope:
            case ScopeKind.LOCAL:
                stores = self._locals
                # The root local frame is never popped.
                empty = len(stores) <= 1
            case ScopeKind.LOOP:
                stores = self._loop_stores
                empty = not stores
            case _:
                raise InvalidUsageError(f'Cannot pop a variable scope of kind [{scope}]')

        if empty:
            raise InvalidUsageError('Invalid number of matching push/pop variable scopes')

        store = stores.pop()
        store.clear()
        self._available_stores.append(store)

    # Innermost first.
    def _stores_for(self, variable: ScriptVariable) -> Iterable[ScriptObjectProtocol]:
        match variable.scope:
            case ScopeKind.GLOBAL:
                return reversed(self._globals)
            case ScopeKind.LOCAL:
                if self._locals:
                    return (self._locals[-1],)
                raise ScriptRuntimeError(
                    variable.span,
                    f'Invalid usage of the local variable [{variable}] in the current context',
                )
            case ScopeKind.LOOP:
                if self._loop_stores:
                    return (self._loop_stores[-1],)
                raise ScriptRuntimeError(
                    variable.span,
                    f'Invalid usage of the loop variable [{variable}] in the current context',
                )
            case _:
                raise InvalidUsageError(
                    f'Variable scope [{variable.scope}] is not implemented'
                )

    def _store_for_set(self, variable: ScriptVariable) -> ScriptObjectProtocol:
        return next(iter(self._stores_for(variable)))

    def _get_variable(self, variable: ScriptVariable) -> Any:
        name = variable.name
        for store in self._stores_for(variable):
            if store.contains(name):
                return store.get_value(name)
        return None

    def set_variable(self, variable: ScriptVariable, value: Any, read_only: bool = False):
        if variable is None:
            raise InvalidUsageError('set_variable: variable is required')
        store = self._store_for_set(variable)
        if not store.try_set_value(variable.name, value, read_only):
            raise ScriptRuntimeError(
                variable.span, f'Cannot set value on the readonly variable [{variable}]'
            )

    # Does not fail when the variable was already read-only.
    def set_read_only(self, variable: ScriptVariable, read_only: bool = True):
        if variable is None:
            raise InvalidUsageError('set_read_only: variable is required')
        self._store_for_set(variable).set_read_only(variable.name, read_only)

    # Outputs

    @property
    def output(self) -> list[str]:
        return self._outputs[-1]

    @property
    def output_text(self) -> str:
        return ''.join(self._outputs[-1])

    def push_output(self):
        self._outputs.append([])

    def pop_output(self) -> str:
        if len(self._outputs) == 1:
            raise InvalidUsageError('Unexpected pop_output() for the top level writer')
        return ''.join(self._outputs.pop())

    # Yields the nested buffer, which stays readable after the scope is left.
    @contextmanager
    def output_scope(self) -> Iterator[list[str]]:
        self.push_output()
        buf = self._outputs[-1]
        try:
            yield buf
        finally:
            self.pop_output()

    def write(self, text: str | None):
        if text and self.enable_output:
            self._outputs[-1].append(text)

    def write_value(self, span: SourceSpan | None, value: Any):
        if value is None:
            return
        self.write(self.to_text(span, value))

    # Text conversion with the items of lists and objects charged to the loop budget.
    def to_text(self, span: SourceSpan | None, value: Any) -> str:
        return to_text(
            span, value, lambda: self.step_item(span, 'while converting a value to text')
        )

    # Source files

    # Only valid when `source_file_depth` is not zero.
    @property
    def current_source_file(self) -> str:
        return self._source_files[-1]

    @property
    def source_file_depth(self) -> int:
        return len(self._source_files)

    def push_source_file(self, name: str):
        if name is None:
            raise InvalidUsageError('push_source_file: name is required')
        self._source_files.append(name)

    def pop_source_file(self) -> str:
        if not self._source_files:
            raise InvalidUsageError('Cannot pop_source_file() more than push_source_file()')
        return self._source_files.pop()

    @contextmanager
    def source_file_scope(self, name: str) -> Iterator[None]:
        self.push_source_file(name)
        try:
            yield
        finally:
            self.pop_source_file()

    # Accessors

    def get_member_accessor(self, target: Any) -> MemberAccessor:
        if target is None:
            return NullAccessor.default
        if isinstance(target, ScriptObjectProtocol):
            return ScriptObjectAccessor.default
        if isinstance(target, Mapping):
            return MappingAccessor.default

        type_ = type(target)
        if (accessor := self._member_accessors.get(type_)) is None:
            accessor = TypedMemberAccessor(type_, self.member_renamer, target)
            self._member_accessors[type_] = accessor
        return accessor

    # `None` if the target cannot be indexed by position.
    def get_list_accessor(self, target: Any) -> ListAccessor | None:
        type_ = type(target)
        try:
            return self._list_accessors[type_]
        except KeyError:
            pass
        accessor = self._list_accessors[type_] = find_list_accessor(target)
        trace('List accessor for %s: %s', type_.__name__, accessor)
        return accessor

    # Pipes

    @contextmanager
    def pipe_scope(self, source: ScriptExpression, pipe: ScriptNode) -> Iterator[None]:
        '''
        Offers the value of `source` to the next function called, for
        `source | target`. Fails when the target called no function to take it.
        '''
        depth = len(self.pipe_arguments)
        self.pipe_arguments.append(source)
        try:
            yield
            if len(self.pipe_arguments) > depth:
                raise ScriptRuntimeError(
                    pipe.span, f'Expecting a function call after the pipe: {pipe}'
                )
        finally:
            del self.pipe_arguments[depth:]

    # The piped value is evaluated only once a function is there to take it.
    def take_pipe_arguments(self) -> list[Any]:
        if not self.pipe_arguments:
            return []
        return [self.evaluate(self.pipe_arguments.pop())]

    # Evaluation

    def evaluate(self, node: ScriptNode | None, alias: bool = False) -> Any:
        '''
        Evaluates `node`. With `alias`, a function resolved as the final value
        is returned as is instead of being called.
        '''
        if node is None:
            return None
        previous = self._function_call_disabled
        self._function_call_disabled = alias
        try:
            return node.evaluate(self)
        finally:
            self._function_call_disabled = previous

    def get_value(self, target: ScriptExpression) -> Any:
        if target is None:
            raise InvalidUsageError('get_value: target is required')
        return self._get_or_set_value(target, None, False, 0)

    def set_value(self, target: ScriptExpression, value: Any):
        if target is None:
            raise InvalidUsageError('set_value: target is required')
        self._get_or_set_value(target, value, True, 0)

    def _get_or_set_value(
        self, expr: ScriptExpression, value_to_set: Any, setter: bool, level: int
    ) -> Any:
        value = None
        match expr:
            case ScriptVariable():
                if setter:
                    self.set_variable(expr, value_to_set)
                else:
                    value = self._get_variable(expr)

            case MemberExpression():
                value = self._get_or_set_member(expr, value_to_set, setter, level)

            case IndexerExpression():
                value = self._get_or_set_index(expr, value_to_set, setter, level)

            case _ if setter:
                raise ScriptRuntimeError(
                    expr.span, f'Unsupported expression for target for assignment: {expr} = ...'
                )

            case _:
                value = expr.evaluate(self)

        # Functions are called implicitly, except for the final value when aliasing.
        if (not self._function_call_disabled or level > 0) and is_function(value):
            # A function reached through a pipe receives the piped value.
            args = self.take_pipe_arguments() if level == 0 else []
            value = call_function(self, expr, value, args)

        return value

    def _get_or_set_member(
        self, expr: MemberExpression, value_to_set: Any, setter: bool, level: int
    ) -> Any:
        target = self._get_or_set_value(expr.target, None, False, level + 1)
        if target is None:
            raise ScriptRuntimeError(
                expr.span, f'Object [{expr.target}] is null. Cannot access member: {expr}'
            )
        if is_value_type(target):
            raise ScriptRuntimeError(
                expr.span,
                f'Cannot get or set a member on the primitive'
                f' [{describe(target)}/{type(target).__name__}] when accessing member: {expr}',
            )

        accessor = self.get_member_accessor(target)
        name = expr.member
        with self._host_access(expr.span, name, expr):
            if setter:
                done = accessor.try_set_value(target, name, value_to_set)
            else:
                return accessor.get_value(target, name)
        if not done:
            self._raise_set_failed(accessor, target, name, expr.span, str(expr))
        return None

    def _get_or_set_index(
        self, expr: IndexerExpression, value_to_set: Any, setter: bool, level: int
    ) -> Any:
        target = self._get_or_set_value(expr.target, None, False, level + 1)
        if target is None:
            raise ScriptRuntimeError(
                expr.target.span,
                f'Object [{expr.target}] is null. Cannot access indexer: {expr}',
            )

        index = self.evaluate(expr.index)
        if index is None:
            raise ScriptRuntimeError(
                expr.index.span,
                f'Cannot access target [{expr.target}] with a null indexer: {expr}',
            )

        if isinstance(target, (ScriptObjectProtocol, Mapping)):
            accessor = self.get_member_accessor(target)
            name = self.to_text(expr.index.span, index)
            with self._host_access(expr.span, name, expr):
                if setter:
                    done = accessor.try_set_value(target, name, value_to_set)
                else:
                    return accessor.get_value(target, name)
            if not done:
                display = f"{expr.target}['{name}']"
                self._raise_set_failed(accessor, target, name, expr.index.span, display)
            return None

        list_accessor = self.get_list_accessor(target)
        if list_accessor is None:
            raise ScriptRuntimeError(
                expr.target.span,
                f'Expecting a list. Invalid value [{describe(target)}/{type(target).__name__}]'
                f' for the target [{expr.target}] for the indexer: {expr}',
            )

        i = to_int(expr.index.span, index)
        with self._host_access(expr.span, i, expr):
            if setter:
                list_accessor.set_value(expr.span, target, i, value_to_set)
                return None
            return list_accessor.get_value(expr.span, target, i)

    # Host getters and setters may raise anything, report it like a failing host function.
    @staticmethod
    @contextmanager
    def _host_access(span: SourceSpan, name: Any, expr: ScriptExpression) -> Iterator[None]:
        try:
            yield
        except (ScriptRuntimeError, InvalidUsageError, RecursionError):
            raise
        except Exception as e:
            log.debug('Host access: %s: %s: %s', expr, type(e).__name__, e)
            raise ScriptRuntimeError(
                span,
                f'Error while accessing member [{name}]: {expr}: {type(e).__name__}: {e}',
            ) from e

    @staticmethod
    def _raise_set_failed(
        accessor: MemberAccessor, target: Any, name: str, span: SourceSpan, display: str
    ):
        if accessor.has_member(target, name):
            raise ScriptRuntimeError(
                span, f'Cannot set a value for the readonly member [{name}]: {display}'
            )
        raise ScriptRuntimeError(
            span, f'Cannot set a value for the missing member [{name}]: {display}'
        )
