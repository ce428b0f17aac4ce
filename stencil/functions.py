import time
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sized
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Mapping, Sequence, TypeGuard, override

from simpleeval import DEFAULT_FUNCTIONS

from .convert import to_int
from .errors import InvalidUsageError, RecursionLimitError, ScriptRuntimeError
from .util import log, trace

if TYPE_CHECKING:
    from .context import TemplateContext
    from .nodes import ScriptNode


class ScriptFunction(ABC):
    '''
    Marks a value as invocable from templates.

    Plain Python callables stored in a model are data, not functions; wrap them
    in a `HostFunction` to let templates call them.
    '''

    name: str

    @abstractmethod
    def invoke(
        self, context: 'TemplateContext', caller: 'ScriptNode', args: Sequence[Any]
    ) -> Any:
        pass

    def __repr__(self) -> str:
        return f'<{type(self).__name__} {self.name}>'


def is_function(value: Any) -> TypeGuard[ScriptFunction]:
    return isinstance(value, ScriptFunction)


class HostFunction(ScriptFunction):
    def __init__(
        self,
        func: Callable[..., Any],
        name: str | None = None,
        *,
        pass_context: bool = False,
    ):
        self.func = func
        self.name = name or getattr(func, '__name__', 'function')
        # With `pass_context`, `func` is called as `func(context, caller, *args)`.
        self.pass_context = pass_context

    @override
    def invoke(
        self, context: 'TemplateContext', caller: 'ScriptNode', args: Sequence[Any]
    ) -> Any:
        try:
            if self.pass_context:
                return self.func(context, caller, *args)
            return self.func(*args)
        except (ScriptRuntimeError, InvalidUsageError, RecursionError):
            raise
        except Exception as e:
            log.debug('HostFunction: %s: %s: %s', self.name, type(e).__name__, e)
            raise ScriptRuntimeError(
                caller.span,
                f'Error while calling function [{self.name}]: {type(e).__name__}: {e}',
            ) from e


def call_function(
    context: 'TemplateContext',
    caller: 'ScriptNode',
    func: ScriptFunction,
    args: Sequence[Any] = (),
) -> Any:
    trace('call_function: %s%r @ %s', func.name, tuple(args), caller.span)
    # Every call, host functions included, counts towards the recursion limit.
    if context.function_depth:
        with context.function_scope(caller):
            return func.invoke(context, caller, args)

    # Deep expressions can exhaust the Python stack within the limit. The
    # outermost call reports it, as it has the stack room to do so.
    state = context._save_state()
    try:
        with context.function_scope(caller):
            return func.invoke(context, caller, args)
    except RecursionError as e:
        # Cleanups close to the overflow may have failed.
        context._restore_state(state)
        raise RecursionLimitError(
            caller.span,
            f'Exceeding the interpreter stack depth for function call: [{caller}]',
        ) from e


def date_func() -> str:
    return datetime.today().isoformat()


def today_func() -> str:
    return datetime.today().strftime('%c')


# The functions below walk their arguments, and get the context to charge that
# walk to the loop budget.


def size_func(context: 'TemplateContext', caller: 'ScriptNode', value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, Sized):
        return len(value)
    return len(context.to_text(caller.span, value))


def upcase_func(context: 'TemplateContext', caller: 'ScriptNode', value: Any) -> str:
    return context.to_text(caller.span, value).upper()


def downcase_func(context: 'TemplateContext', caller: 'ScriptNode', value: Any) -> str:
    return context.to_text(caller.span, value).lower()


def join_func(
    context: 'TemplateContext', caller: 'ScriptNode', items: Any, separator: Any = ''
) -> str:
    if items is None:
        return ''
    if isinstance(items, (str, bytes)) or not isinstance(items, Iterable):
        raise TypeError(f'expecting a list, got {type(items).__name__}')
    sep = context.to_text(caller.span, separator)
    parts = []
    for item in items:
        context.step_item(caller.span, f'while joining the items of: {caller}')
        parts.append(context.to_text(caller.span, item))
    return sep.join(parts)


# Lazy, so that `range(1000000000)` costs nothing until something walks it, and
# every walk is charged to the loop budget.
def range_func(*args: Any) -> range:
    return range(*(to_int(None, arg) for arg in args))


BUILTIN_FUNCS: Mapping[str, Callable[..., Any]] = {
    **DEFAULT_FUNCTIONS,
    'time': time.time,
    'date': date_func,
    'today': today_func,
    'range': range_func,
}

# Called as `func(context, caller, *args)`.
CONTEXT_FUNCS: Mapping[str, Callable[..., Any]] = {
    'size': size_func,
    'upcase': upcase_func,
    'downcase': downcase_func,
    'join': join_func,
}


def build_builtins(
    extra: Mapping[str, Callable[..., Any] | ScriptFunction] | None = None,
) -> dict[str, ScriptFunction]:
    funcs: dict[str, ScriptFunction] = {
        name: HostFunction(func, name) for name, func in BUILTIN_FUNCS.items()
    }
    for name, func in CONTEXT_FUNCS.items():
        funcs[name] = HostFunction(func, name, pass_context=True)
    if extra:
        for name, func in extra.items():
            funcs[name] = func if is_function(func) else HostFunction(func, name)
    return funcs
