from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping, MutableMapping
from typing import Any, override

from .util import trace


class ScriptObjectProtocol(ABC):
    '''
    Objects that natively expose named get/set with read-only tracking.
    They are accessed as-is, without reflection or caching.
    '''

    @abstractmethod
    def contains(self, name: str) -> bool:
        pass

    @abstractmethod
    def get_value(self, name: str) -> Any:
        pass

    # Returns `False` when `name` is read-only, leaving the old value untouched.
    @abstractmethod
    def try_set_value(self, name: str, value: Any, read_only: bool = False) -> bool:
        pass

    @abstractmethod
    def is_read_only(self, name: str) -> bool:
        pass

    @abstractmethod
    def set_read_only(self, name: str, read_only: bool = True) -> None:
        pass


class ScriptObject(ScriptObjectProtocol, MutableMapping[str, Any]):
    '''
    Name to value mapping with per-name read-only flags.

    This is both the model type exposed to templates and the frame type used by
    the scopes of `TemplateContext`, which clears and reuses frames instead of
    dropping them.
    '''

    def __init__(self, data: Mapping[str, Any] | None = None, /, **kwargs: Any):
        self._data: dict[str, Any] = {}
        self._read_only: set[str] = set()
        if data is not None:
            self._data.update(data)
        if kwargs:
            self._data.update(kwargs)

    @override
    def contains(self, name: str) -> bool:
        return name in self._data

    @override
    def get_value(self, name: str) -> Any:
        return self._data.get(name)

    @override
    def try_set_value(self, name: str, value: Any, read_only: bool = False) -> bool:
        if name in self._read_only:
            trace('ScriptObject: refused to set read-only %s', name)
            return False
        self._data[name] = value
        if read_only:
            self._read_only.add(name)
        return True

    @override
    def is_read_only(self, name: str) -> bool:
        return name in self._read_only

    # The flag may be set before the name is ever assigned.
    @override
    def set_read_only(self, name: str, read_only: bool = True) -> None:
        if read_only:
            self._read_only.add(name)
        else:
            self._read_only.discard(name)

    def __contains__(self, key) -> bool:
        return key in self._data

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __setitem__(self, key: str, value: Any) -> None:
        if not self.try_set_value(key, value):
            raise KeyError(f'{key!r} is read-only')

    def __delitem__(self, key: str) -> None:
        if key in self._read_only:
            raise KeyError(f'{key!r} is read-only')
        del self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    # Drops the values and the flags, but keeps the object for reuse.
    @override
    def clear(self) -> None:
        self._data.clear()
        self._read_only.clear()

    def __repr__(self) -> str:
        return f'ScriptObject({self._data!r})'
