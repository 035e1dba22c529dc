"""
Immutable records returned by queries.

Values are opaque to the engine: nodes, relationships, temporal values and
so on are passed through exactly as the server connection produced them.
"""

from typing import Any, Dict, Iterable, List, Tuple, Union


class Record(tuple):
    """
    An ordered, immutable collection of named values.

    Values can be read by position or by key::

        >>> record = Record(["name", "age"], ["Alice", 33])
        >>> record[0], record["age"]
        ('Alice', 33)
        >>> record.data()
        {'name': 'Alice', 'age': 33}
    """

    __keys: Tuple[str, ...]

    def __new__(cls, keys: Iterable[str], values: Iterable[Any]) -> "Record":
        keys = tuple(keys)
        values = tuple(values)
        if len(keys) != len(values):
            raise ValueError(
                f"Record has {len(keys)} key(s) but {len(values)} value(s)"
            )
        inst = tuple.__new__(cls, values)
        inst.__keys = keys
        return inst

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Record":
        return cls(data.keys(), data.values())

    def __repr__(self) -> str:
        fields = " ".join(f"{k}={v!r}" for k, v in zip(self.__keys, self))
        return f"<Record {fields}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Record):
            return self.__keys == other.__keys and tuple.__eq__(self, other)
        return NotImplemented

    def __ne__(self, other: object) -> bool:
        result = self.__eq__(other)
        if result is NotImplemented:
            return result
        return not result

    def __hash__(self) -> int:
        return hash((self.__keys, tuple(self)))

    def __getitem__(self, key: Union[int, slice, str]) -> Any:
        if isinstance(key, slice):
            keys = self.__keys[key]
            values = tuple.__getitem__(self, key)
            return Record(keys, values)
        return tuple.__getitem__(self, self.index(key))

    def get(self, key: str, default: Any = None) -> Any:
        """Value for ``key``, or ``default`` when the record has no such key."""
        try:
            index = self.__keys.index(str(key))
        except ValueError:
            return default
        return tuple.__getitem__(self, index)

    def index(self, key: Union[int, str]) -> int:  # type: ignore[override]
        """
        Position of a key.

        Raises:
            IndexError: If an integer key is out of range
            KeyError: If a string key is not present
        """
        if isinstance(key, int):
            if 0 <= key < len(self.__keys):
                return key
            raise IndexError(key)
        if isinstance(key, str):
            try:
                return self.__keys.index(key)
            except ValueError:
                raise KeyError(key)
        raise TypeError(key)

    def value(self, key: Union[int, str] = 0, default: Any = None) -> Any:
        """Value for ``key`` (position or name), or ``default`` if absent."""
        try:
            index = self.index(key)
        except (IndexError, KeyError):
            return default
        return tuple.__getitem__(self, index)

    def keys(self) -> List[str]:
        return list(self.__keys)

    def values(self, *keys: Union[int, str]) -> List[Any]:
        """Values of the given keys in order, or all values when none are given."""
        if keys:
            return [self.value(key) for key in keys]
        return list(self)

    def items(self, *keys: Union[int, str]) -> List[Tuple[str, Any]]:
        if keys:
            return [(self.__keys[self.index(key)], self.value(key)) for key in keys]
        return list(zip(self.__keys, self))

    def data(self, *keys: Union[int, str]) -> Dict[str, Any]:
        """
        The record as a dictionary.

        Keys not present in the record map to None when selected explicitly
        by name.

        Raises:
            IndexError: If an integer key is out of range
        """
        if keys:
            result: Dict[str, Any] = {}
            for key in keys:
                if isinstance(key, int):
                    result[self.__keys[self.index(key)]] = self.value(key)
                else:
                    result[key] = self.get(key)
            return result
        return dict(zip(self.__keys, self))


__all__ = ["Record"]
