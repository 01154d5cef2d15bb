"""Storage layout model.

Two representations live here:

  - The persisted form (``StorageItem`` / ``TypeItem`` / ``StorageLayout``):
    frozen pydantic models that mirror the compiler's ``storageLayout`` JSON
    with types referenced by id strings. This is what the manifest stores.
  - The detailed form (``DetailedItem`` / ``DetailedType``): the same items
    with every type id parsed and resolved against the ``types`` table, so
    the comparator can walk struct members, array bases and mapping values
    without string lookups. Shared type ids resolve to the same object.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Any, Union

from pydantic import BaseModel, Field, ValidationError, field_serializer, field_validator
from pydantic.alias_generators import to_camel

from proxyguard.core.errors import LayoutImportError

CURRENT_LAYOUT_VERSION = "1.2"

_MODEL_CONFIG: dict[str, Any] = {
    "frozen": True,
    "populate_by_name": True,
    "alias_generator": to_camel,
    "extra": "ignore",
}


# ── Persisted form ───────────────────────────────────────────────────────────


class StorageItem(BaseModel):
    """One declared persistent variable (or struct member)."""

    model_config = _MODEL_CONFIG

    label: str
    type: str
    contract: str = ""
    src: str = ""
    slot: int | None = None
    offset: int | None = None
    ast_id: int | None = Field(default=None, exclude=True)
    renamed_from: str | None = None
    retyped_from: str | None = None

    @field_validator("slot", "offset", mode="before")
    @classmethod
    def _parse_int(cls, v: Any) -> Any:
        if isinstance(v, str):
            return int(v, 0)
        return v

    @field_validator("offset")
    @classmethod
    def _offset_in_slot(cls, v: int | None) -> int | None:
        if v is not None and not 0 <= v < 32:
            raise ValueError(f"offset {v} is outside a 32-byte slot")
        return v

    @field_serializer("slot")
    def _slot_as_string(self, v: int | None) -> str | None:
        # namespace roots do not fit in a JSON number
        return None if v is None else str(v)


class TypeItem(BaseModel):
    """Structural description of one type id."""

    model_config = _MODEL_CONFIG

    label: str
    encoding: str | None = None
    number_of_bytes: int | None = None
    members: Union[list[StorageItem], list[str], None] = None
    base: str | None = None
    key: str | None = None
    value: str | None = None

    @field_validator("number_of_bytes", mode="before")
    @classmethod
    def _parse_bytes(cls, v: Any) -> Any:
        if isinstance(v, str):
            return int(v)
        return v

    @field_serializer("number_of_bytes")
    def _bytes_as_string(self, v: int | None) -> str | None:
        return None if v is None else str(v)


class StorageLayout(BaseModel):
    """Full storage layout of one contract version."""

    model_config = _MODEL_CONFIG

    layout_version: str | None = CURRENT_LAYOUT_VERSION
    solc_version: str | None = None
    storage: list[StorageItem] = Field(default_factory=list)
    types: dict[str, TypeItem] = Field(default_factory=dict)
    namespaces: dict[str, list[StorageItem]] = Field(default_factory=dict)
    flat: bool = False

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def is_current_layout_version(layout: StorageLayout | None) -> bool:
    return layout is not None and layout.layout_version == CURRENT_LAYOUT_VERSION


def is_enum_members(members: list[Any]) -> bool:
    return len(members) == 0 or isinstance(members[0], str)


def is_struct_members(members: list[Any]) -> bool:
    return len(members) == 0 or not isinstance(members[0], str)


def load_layout(data: Any) -> StorageLayout:
    """Validate a raw layout mapping, raising ``LayoutImportError`` on bad shape."""
    if isinstance(data, StorageLayout):
        return data
    try:
        return StorageLayout.model_validate(data)
    except ValidationError as exc:
        raise LayoutImportError("Malformed storage layout", str(exc)) from exc


# ── Type ids ─────────────────────────────────────────────────────────────────


class TypeKind(str, enum.Enum):
    """Kind of a type, derived from the head of its id."""

    ELEMENTARY = "elementary"
    STRUCT = "struct"
    ENUM = "enum"
    ARRAY = "array"
    MAPPING = "mapping"
    CONTRACT = "contract"
    USER_DEFINED_VALUE_TYPE = "user_defined_value_type"
    FUNCTION = "function"
    BYTES = "bytes"
    STRING = "string"


@dataclass(frozen=True)
class ParsedTypeId:
    """A type id split into head, arguments, tail and return types.

    ``t_array(t_uint256)47_storage`` parses as head ``t_array``, args
    ``[t_uint256]`` and tail ``47_storage``.
    """

    id: str
    head: str
    args: tuple[ParsedTypeId, ...] | None = None
    tail: str | None = None
    rets: tuple[ParsedTypeId, ...] | None = None


def parse_type_id(type_id: str) -> ParsedTypeId:
    open_args = type_id.find("(")
    if open_args == -1:
        return ParsedTypeId(id=type_id, head=type_id)

    head = type_id[:open_args]
    args, pos = _parse_list(type_id, open_args + 1)

    open_rets = type_id.find("(", pos)
    if open_rets == -1:
        return ParsedTypeId(id=type_id, head=head, args=args, tail=type_id[pos:] or None)

    rets, _ = _parse_list(type_id, open_rets + 1)
    return ParsedTypeId(id=type_id, head=head, args=args, rets=rets)


def _parse_list(type_id: str, start: int) -> tuple[tuple[ParsedTypeId, ...], int]:
    args: list[ParsedTypeId] = []
    depth = 0
    begin = start
    for pos in range(start, len(type_id)):
        ch = type_id[pos]
        if ch == "(":
            depth += 1
        elif ch == ")" and depth > 0:
            depth -= 1
        elif ch in ",)" and depth == 0:
            if pos > begin:
                args.append(parse_type_id(type_id[begin:pos]))
            begin = pos + 1
            if ch == ")":
                return tuple(args), pos + 1
    raise LayoutImportError(f"Malformed type id {type_id}")


def type_kind(head: str) -> TypeKind:
    if head.startswith("t_function"):
        return TypeKind.FUNCTION
    if head.startswith("t_bytes_"):
        return TypeKind.BYTES
    if head.startswith("t_string"):
        return TypeKind.STRING
    return {
        "t_struct": TypeKind.STRUCT,
        "t_enum": TypeKind.ENUM,
        "t_array": TypeKind.ARRAY,
        "t_mapping": TypeKind.MAPPING,
        "t_contract": TypeKind.CONTRACT,
        "t_userDefinedValueType": TypeKind.USER_DEFINED_VALUE_TYPE,
    }.get(head, TypeKind.ELEMENTARY)


# ── Detailed form ────────────────────────────────────────────────────────────

_ARRAY_LENGTH = re.compile(r"^(\d+|dyn)")
_INTEGER = re.compile(r"^t_(u?)int(\d+)$")


@dataclass(eq=False)
class DetailedType:
    """A parsed type id joined with its TypeItem."""

    id: str
    head: str
    tail: str | None
    label: str
    number_of_bytes: int | None = None
    args: list[DetailedType] | None = field(default=None, repr=False)
    rets: list[DetailedType] | None = field(default=None, repr=False)
    members: list[DetailedItem] | list[str] | None = field(default=None, repr=False)

    @property
    def kind(self) -> TypeKind:
        return type_kind(self.head)

    @property
    def length(self) -> int | str | None:
        """Array length, ``"dynamic"`` for dynamic arrays, ``None`` otherwise."""
        if self.head != "t_array" or self.tail is None:
            return None
        m = _ARRAY_LENGTH.match(self.tail)
        if m is None:
            return None
        return "dynamic" if m.group(1) == "dyn" else int(m.group(1))

    @property
    def integer(self) -> tuple[bool, int] | None:
        """``(signed, bits)`` for integer types."""
        m = _INTEGER.match(self.head)
        if m is None:
            return None
        return (m.group(1) == "", int(m.group(2)))


@dataclass(eq=False)
class DetailedItem:
    """A StorageItem whose ``type`` is resolved."""

    label: str
    type: DetailedType
    contract: str = ""
    src: str = ""
    slot: int | None = None
    offset: int | None = None
    renamed_from: str | None = None
    retyped_from: str | None = None

    @property
    def number_of_bytes(self) -> int:
        if self.type.number_of_bytes is not None:
            return self.type.number_of_bytes
        length = self.type.length
        return 32 * length if isinstance(length, int) else 32


class _Resolver:
    def __init__(self, layout: StorageLayout) -> None:
        self.types = layout.types
        self.cache: dict[str, DetailedType] = {}

    def item(self, item: StorageItem) -> DetailedItem:
        return DetailedItem(
            label=item.label,
            type=self.type(parse_type_id(item.type)),
            contract=item.contract,
            src=item.src,
            slot=item.slot,
            offset=item.offset,
            renamed_from=item.renamed_from,
            retyped_from=item.retyped_from,
        )

    def type(self, parsed: ParsedTypeId, required: bool = True) -> DetailedType:
        if parsed.id in self.cache:
            return self.cache[parsed.id]

        type_item = self.types.get(parsed.id)
        if type_item is None and required:
            raise LayoutImportError(
                f"Unresolvable type reference {parsed.id}",
                "The layout references a type id that is missing from its types table",
            )

        detailed = DetailedType(
            id=parsed.id,
            head=parsed.head,
            tail=parsed.tail,
            label=type_item.label if type_item else parsed.id,
            number_of_bytes=type_item.number_of_bytes if type_item else None,
        )
        # registered before recursing so cyclic references terminate
        self.cache[parsed.id] = detailed

        # function signatures name argument types that are not listed separately
        args_required = required and detailed.kind not in (
            TypeKind.FUNCTION,
            TypeKind.STRUCT,
            TypeKind.ENUM,
            TypeKind.CONTRACT,
            TypeKind.USER_DEFINED_VALUE_TYPE,
        )
        if parsed.args is not None:
            detailed.args = [self.type(a, args_required) for a in parsed.args]
        if parsed.rets is not None:
            detailed.rets = [self.type(r, False) for r in parsed.rets]

        if type_item is not None and type_item.members is not None:
            if is_struct_members(type_item.members):
                detailed.members = [self.item(m) for m in type_item.members]  # type: ignore[arg-type]
            else:
                detailed.members = list(type_item.members)  # type: ignore[arg-type]
        return detailed


def get_detailed_layout(layout: StorageLayout) -> list[DetailedItem]:
    """Resolve every item of ``layout.storage``."""
    resolver = _Resolver(layout)
    return [resolver.item(item) for item in layout.storage]


def get_detailed_namespaces(layout: StorageLayout) -> dict[str, list[DetailedItem]]:
    resolver = _Resolver(layout)
    return {ns: [resolver.item(item) for item in items] for ns, items in layout.namespaces.items()}
