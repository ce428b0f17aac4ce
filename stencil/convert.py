from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any, Callable, TypeGuard

from .errors import ScriptRuntimeError
from .util import log

if TYPE_CHECKING:
    from .nodes import SourceSpan

# Scalar values on which members are never defined.
type Value = str | int | float | bool | complex | bytes


def is_value_type(v: Any) -> TypeGuard[Value]:
    return isinstance(v, (str, int, float, bool, complex, bytes))


def _to_str(v) -> str | None:
    if isinstance(v, str):
        return v
    # `bool` is an `int`, check it first.
    if isinstance(v, bool):
        return 'true' if v else 'false'
    if isinstance(v, (int, float, complex)):
        return str(v)
    if isinstance(v, bytes):
        return v.decode('utf-8', errors='replace')


def to_text(
    span: 'SourceSpan | None', value: Any, on_item: Callable[[], None] | None = None
) -> str:
    '''
    Converts a script value to the text written to the output.

    Lists and objects are rendered recursively; `on_item` is called once per
    item visited, so that the caller can charge the walk to a budget. A list or
    object containing itself fails instead of recursing forever.
    '''
    return _to_text(span, value, on_item, set())


def _to_text(
    span: 'SourceSpan | None',
    value: Any,
    on_item: Callable[[], None] | None,
    walking: set[int],
) -> str:
    if value is None:
        return ''
    if (s := _to_str(value)) is not None:
        return s
    if isinstance(value, Iterable):
        if id(value) in walking:
            raise ScriptRuntimeError(
                span,
                f'Unable to convert a {type(value).__name__} containing itself to text',
            )
        walking.add(id(value))
        try:
            parts = []
            if isinstance(value, Mapping):
                for k, v in value.items():
                    if on_item:
                        on_item()
                    parts.append(f'{k}: {_to_text(span, v, on_item, walking)}')
                return '{' + ', '.join(parts) + '}'
            for v in value:
                if on_item:
                    on_item()
                parts.append(_to_text(span, v, on_item, walking))
            return '[' + ', '.join(parts) + ']'
        finally:
            walking.discard(id(value))
    try:
        return str(value)
    except RecursionError:
        raise
    except Exception as e:
        log.debug('to_text: %s: %r', type(value).__name__, e)
        raise ScriptRuntimeError(
            span, f'Unable to convert value of type [{type(value).__name__}] to text'
        ) from e


def to_int(span: 'SourceSpan | None', value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
        try:
            return int(float(value))
        except ValueError:
            pass
    raise ScriptRuntimeError(
        span, f'Unable to convert [{value!r}/{type(value).__name__}] to an integer'
    )


def to_bool(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value != ''
    return bool(value)
