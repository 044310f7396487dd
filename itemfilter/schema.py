#!/usr/bin/env python3
"""Item record schema and name resolution.

Rule files refer to item fields by simple name. Names are matched
case-insensitively with underscores ignored, so ``BaseName``, ``basename``
and ``base_name`` all resolve to the ``base_name`` attribute.

The default record type is :class:`ItemData`. Hosts with their own record
type pass any dataclass (or annotated class) to the expression compiler
instead.

Example:
    >>> schema = schema_for(ItemData)
    >>> schema.resolve("BaseName").name
    'base_name'
    >>> item = ItemData.from_mapping({"BaseName": "Chaos Orb", "Rarity": "Normal"})
"""

import dataclasses
import typing
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from functools import lru_cache
from typing import Any, Dict, Iterator, Mapping, NamedTuple, Optional, Tuple

from itemfilter.core.constants import ErrorCode, FilterError


class SchemaError(FilterError, ValueError):
    """Raised when a mapping cannot be turned into a record."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.INVALID_INPUT)


class ItemRarity(IntEnum):
    """Item rarity, ordered from lowest to highest."""

    NORMAL = 0
    MAGIC = 1
    RARE = 2
    UNIQUE = 3


@dataclass(frozen=True)
class SocketInfo:
    """Socket layout of an item."""

    socket_number: int = 0
    largest_link_size: int = 0
    socket_groups: Tuple[str, ...] = ()  # e.g. ("RGB", "B")


@dataclass(frozen=True)
class ItemData:
    """Default item record evaluated by filter rules."""

    path: str = ""  # Metadata path
    class_name: str = ""  # Item class, e.g. "StackableCurrency"
    base_name: str = ""
    name: str = ""  # Unique or rare name
    rarity: ItemRarity = ItemRarity.NORMAL
    item_level: int = 0
    quality: int = 0
    stack_size: int = 1
    max_stack_size: int = 1
    width: int = 1
    height: int = 1
    map_tier: int = 0
    is_identified: bool = False
    is_corrupted: bool = False
    is_influenced: bool = False
    socket_info: SocketInfo = field(default_factory=SocketInfo)
    mods: Tuple[str, ...] = ()  # Affix names
    stats: Dict[str, float] = field(default_factory=dict, hash=False)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ItemData":
        """Build an item from a plain mapping such as parsed YAML.

        Raises:
            SchemaError: On unknown fields or values of the wrong type
        """
        return build_record(cls, data)


def normalize_name(name: str) -> str:
    """Fold a field or member name for lookup."""
    return name.replace("_", "").lower()


class FieldInfo(NamedTuple):
    """A resolved record field."""

    name: str  # Attribute name on the record
    kind: Optional[type]  # Static type, None when unknown


def kind_of(annotation: Any) -> Optional[type]:
    """Reduce a type annotation to the class used for compile-time checks."""
    origin = typing.get_origin(annotation)
    if origin is None:
        return annotation if isinstance(annotation, type) else None
    if origin in (tuple, list, set, frozenset):
        return tuple
    if origin in (dict, Mapping) or (isinstance(origin, type) and issubclass(origin, Mapping)):
        return dict
    return None


class RecordSchema:
    """Field table of a record type, keyed by folded name."""

    def __init__(self, record_type: type):
        """Build the field table.

        Args:
            record_type: Dataclass or annotated class

        Raises:
            TypeError: If the type declares no fields
        """
        self.record_type = record_type
        hints = typing.get_type_hints(record_type)

        if dataclasses.is_dataclass(record_type):
            names = [f.name for f in dataclasses.fields(record_type)]
        else:
            names = [name for name in hints if not name.startswith("_")]

        if not names:
            raise TypeError(f"Record type {record_type.__name__} declares no fields")

        self._fields: Dict[str, FieldInfo] = {
            normalize_name(name): FieldInfo(name, kind_of(hints.get(name))) for name in names
        }

    @property
    def type_name(self) -> str:
        return self.record_type.__name__

    def resolve(self, name: str) -> Optional[FieldInfo]:
        """Look up a field by simple name, or None."""
        return self._fields.get(normalize_name(name))

    def __contains__(self, name: str) -> bool:
        return normalize_name(name) in self._fields

    def __iter__(self) -> Iterator[FieldInfo]:
        return iter(self._fields.values())

    def __len__(self) -> int:
        return len(self._fields)


@lru_cache(maxsize=None)
def schema_for(record_type: type) -> RecordSchema:
    """Get the (cached) schema of a record type."""
    return RecordSchema(record_type)


def is_record_type(kind: Optional[type]) -> bool:
    """True for types whose fields can be resolved at compile time."""
    return kind is not None and dataclasses.is_dataclass(kind)


def enum_member(enum_type: typing.Type[Enum], name: str) -> Optional[Enum]:
    """Find an enum member by folded name, or None."""
    folded = normalize_name(name)
    for member in enum_type:
        if normalize_name(member.name) == folded:
            return member
    return None


def build_record(record_type: type, data: Mapping[str, Any]) -> Any:
    """Instantiate ``record_type`` from a mapping using folded field names."""
    if not isinstance(data, Mapping):
        raise SchemaError(f"Expected a mapping for {record_type.__name__}, got {type(data).__name__}")

    schema = schema_for(record_type)
    values: Dict[str, Any] = {}

    for key, value in data.items():
        info = schema.resolve(str(key))
        if info is None:
            raise SchemaError(f"Unknown field '{key}' for {schema.type_name}")
        values[info.name] = _coerce(info, value)

    return record_type(**values)


def _coerce(info: FieldInfo, value: Any) -> Any:
    kind = info.kind
    if kind is None or value is None:
        return value

    if issubclass(kind, Enum):
        if isinstance(value, kind):
            return value
        if isinstance(value, str):
            member = enum_member(kind, value)
            if member is not None:
                return member
        else:
            try:
                return kind(value)
            except ValueError:
                pass
        raise SchemaError(f"Invalid value {value!r} for field '{info.name}' ({kind.__name__})")

    if is_record_type(kind):
        return value if isinstance(value, kind) else build_record(kind, value)

    if kind is tuple and isinstance(value, (list, tuple)):
        return tuple(value)

    if kind is dict and isinstance(value, Mapping):
        return dict(value)

    if kind is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)

    if kind is int and isinstance(value, bool):
        raise SchemaError(f"Invalid value {value!r} for field '{info.name}' (int)")

    if not isinstance(value, kind):
        raise SchemaError(
            f"Invalid value {value!r} for field '{info.name}' "
            f"(expected {kind.__name__}, got {type(value).__name__})"
        )
    return value
