import re
import inspect
import dataclasses
from abc import ABC, abstractmethod
from collections.abc import Mapping, MutableMapping, MutableSequence, Sequence
from typing import TYPE_CHECKING, Any, Callable, ClassVar, override

from .errors import ScriptRuntimeError
from .script_object import ScriptObjectProtocol
from .util import shorten, trace

if TYPE_CHECKING:
    from .nodes import SourceSpan

type MemberRenamer = Callable[[str], str]

_ACRONYM_RE = re.compile(r'([A-Z]+)([A-Z][a-z])')
_WORD_RE = re.compile(r'([a-z\d])([A-Z])')


def standard_member_renamer(name: str) -> str:
    '''
    `firstName` -> `first_name`, `HTTPServer` -> `http_server`.
    Names already in snake case are kept as is.
    '''
    name = _ACRONYM_RE.sub(r'\1_\2', name)
    return _WORD_RE.sub(r'\1_\2', name).lower()


def describe(target: Any) -> str:
    return shorten(repr(target), 40)


class MemberAccessor(ABC):
    @abstractmethod
    def has_member(self, target: Any, name: str) -> bool:
        pass

    # Never raises for an absent member, `None` is returned instead.
    @abstractmethod
    def get_value(self, target: Any, name: str) -> Any:
        pass

    # `False` means the member cannot be written. Callers tell a read-only member
    # from an absent one with `has_member`.
    @abstractmethod
    def try_set_value(self, target: Any, name: str, value: Any) -> bool:
        pass


class NullAccessor(MemberAccessor):
    default: ClassVar['NullAccessor']

    @override
    def has_member(self, target: Any, name: str) -> bool:
        return False

    @override
    def get_value(self, target: Any, name: str) -> Any:
        return None

    @override
    def try_set_value(self, target: Any, name: str, value: Any) -> bool:
        return False


NullAccessor.default = NullAccessor()


class ScriptObjectAccessor(MemberAccessor):
    default: ClassVar['ScriptObjectAccessor']

    @override
    def has_member(self, target: ScriptObjectProtocol, name: str) -> bool:
        # A name can be locked before it is ever assigned.
        return target.contains(name) or target.is_read_only(name)

    @override
    def get_value(self, target: ScriptObjectProtocol, name: str) -> Any:
        return target.get_value(name)

    @override
    def try_set_value(self, target: ScriptObjectProtocol, name: str, value: Any) -> bool:
        return target.try_set_value(name, value)


ScriptObjectAccessor.default = ScriptObjectAccessor()


class MappingAccessor(MemberAccessor):
    default: ClassVar['MappingAccessor']

    @override
    def has_member(self, target: Mapping, name: str) -> bool:
        return name in target

    @override
    def get_value(self, target: Mapping, name: str) -> Any:
        return target.get(name)

    @override
    def try_set_value(self, target: Mapping, name: str, value: Any) -> bool:
        if not isinstance(target, MutableMapping):
            return False
        target[name] = value
        return True


MappingAccessor.default = MappingAccessor()


class TypedMemberAccessor(MemberAccessor):
    '''
    Member access for arbitrary host objects, built by reflecting over their
    type once.

    Visible members are dataclass fields, annotated attributes, slots and
    properties found along the MRO, plus the instance attributes of the object
    that triggered the construction. Private names (leading `_`) are hidden.
    Each native name is exposed under `renamer(name)`.
    '''

    def __init__(self, type_: type, renamer: MemberRenamer, sample: Any = None):
        self.type = type_
        # Template name -> native attribute name.
        self._members: dict[str, str] = {}
        self._read_only: set[str] = set()

        for native, writable in self._collect(type_, sample).items():
            if native.startswith('_'):
                continue
            name = renamer(native)
            self._members[name] = native
            if not writable:
                self._read_only.add(name)

        trace(
            'TypedMemberAccessor: %s: %s (read-only: %s)',
            type_.__name__,
            self._members,
            self._read_only,
        )

    @staticmethod
    def _collect(type_: type, sample: Any) -> dict[str, bool]:
        members: dict[str, bool] = {}
        if dataclasses.is_dataclass(type_):
            frozen = type_.__dataclass_params__.frozen  # type: ignore[attr-defined]
            for f in dataclasses.fields(type_):
                members[f.name] = not frozen

        for klass in reversed(type_.__mro__):
            if klass is object:
                continue
            try:
                annotations = inspect.get_annotations(klass)
            except NameError:
                # Unresolvable forward references on newer interpreters.
                annotations = {}
            for name in annotations:
                members.setdefault(name, True)
            slots = klass.__dict__.get('__slots__', ())
            if isinstance(slots, str):
                slots = (slots,)
            for name in slots:
                members.setdefault(name, True)
            for name, attr in klass.__dict__.items():
                if isinstance(attr, property):
                    members[name] = attr.fset is not None

        if sample is not None and hasattr(sample, '__dict__'):
            for name in vars(sample):
                members.setdefault(name, True)
        return members

    @property
    def members(self) -> list[str]:
        return list(self._members)

    def is_read_only(self, name: str) -> bool:
        return name in self._read_only

    @override
    def has_member(self, target: Any, name: str) -> bool:
        return name in self._members

    @override
    def get_value(self, target: Any, name: str) -> Any:
        if (native := self._members.get(name)) is None:
            return None
        try:
            return getattr(target, native)
        except AttributeError:
            # Declared but never assigned, like an unset slot.
            return None

    @override
    def try_set_value(self, target: Any, name: str, value: Any) -> bool:
        if (native := self._members.get(name)) is None or name in self._read_only:
            return False
        try:
            setattr(target, native, value)
        except AttributeError:
            return False
        return True


class ListAccessor(ABC):
    @abstractmethod
    def get_value(self, span: 'SourceSpan | None', target: Any, index: int) -> Any:
        pass

    @abstractmethod
    def set_value(
        self, span: 'SourceSpan | None', target: Any, index: int, value: Any
    ) -> None:
        pass

    @staticmethod
    def _check_bounds(span: 'SourceSpan | None', target: Sequence, index: int):
        if not 0 <= index < len(target):
            raise ScriptRuntimeError(
                span,
                f'Index [{index}] is out of bounds for the list {describe(target)}'
                f' of size {len(target)}',
            )


# Fixed-size sequences: `tuple`, `range` and other immutable sequences.
class SequenceAccessor(ListAccessor):
    default: ClassVar['SequenceAccessor']

    @override
    def get_value(self, span: 'SourceSpan | None', target: Sequence, index: int) -> Any:
        self._check_bounds(span, target, index)
        return target[index]

    @override
    def set_value(
        self, span: 'SourceSpan | None', target: Sequence, index: int, value: Any
    ) -> None:
        self._check_bounds(span, target, index)
        raise ScriptRuntimeError(
            span,
            f'Cannot set item [{index}] on the read-only'
            f' {type(target).__name__} {describe(target)}',
        )


SequenceAccessor.default = SequenceAccessor()


class MutableSequenceAccessor(ListAccessor):
    default: ClassVar['MutableSequenceAccessor']

    @override
    def get_value(
        self, span: 'SourceSpan | None', target: MutableSequence, index: int
    ) -> Any:
        self._check_bounds(span, target, index)
        return target[index]

    @override
    def set_value(
        self, span: 'SourceSpan | None', target: MutableSequence, index: int, value: Any
    ) -> None:
        self._check_bounds(span, target, index)
        target[index] = value


MutableSequenceAccessor.default = MutableSequenceAccessor()


def find_list_accessor(target: Any) -> ListAccessor | None:
    # Text is indexable in Python, but is a scalar for templates.
    if isinstance(target, (str, bytes, bytearray, Mapping)):
        return None
    if isinstance(target, MutableSequence):
        return MutableSequenceAccessor.default
    if isinstance(target, Sequence):
        return SequenceAccessor.default
    return None
