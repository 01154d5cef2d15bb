"""Storage layout comparator.

Decides whether moving a proxy from one implementation's storage layout to
another is safe. Items are paired along declaration order by a weighted edit
script (see ``levenshtein``); each aligned pair is then checked for renames,
type changes and slot moves. Type changes are checked structurally and
recursively through structs, enums, arrays and mappings.

Gap arrays (``__gap`` / ``_gap``) reserve slots for future variables. New
variables placed inside a gap's byte region are free, provided the gap is
shrunk (or removed) so that it still ends where it used to.

Findings are collected for the whole layout, never short-circuited.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Sequence

from proxyguard.core.errors import UpgradesError
from proxyguard.storage.layout import (
    DetailedItem,
    DetailedType,
    StorageLayout,
    TypeKind,
    get_detailed_layout,
    get_detailed_namespaces,
    is_enum_members,
    is_struct_members,
)
from proxyguard.storage.levenshtein import (
    DELETION_COST,
    EQUAL,
    INSERTION_COST,
    SUBSTITUTION_COST,
    Operation,
    levenshtein,
)
from proxyguard.storage.report import LayoutCompatibilityReport

logger = logging.getLogger(__name__)

_GAP_LABELS = ("__gap", "_gap")


# ── Operations ───────────────────────────────────────────────────────────────


@dataclass
class TypeChange:
    """Why two types are incompatible.

    ``inner`` chains through mapping values and array elements; ``ops`` holds
    member-level operations for structs and enums.
    """

    kind: str
    original: DetailedType
    updated: DetailedType
    inner: TypeChange | None = None
    ops: list = field(default_factory=list)
    allow_append: bool = False


@dataclass
class LayoutChange:
    slot: tuple[int, int] | None = None
    offset: tuple[int, int] | None = None


@dataclass
class StorageOperation:
    """An incompatibility (or, with ``note`` set, an informational change)."""

    kind: str
    original: DetailedItem | None = None
    updated: DetailedItem | None = None
    change: TypeChange | LayoutChange | None = None
    namespace: str | None = None
    note: bool = False
    hint: str | None = None

    @property
    def item(self) -> DetailedItem | None:
        if self.kind == "finishgap" or self.updated is None:
            return self.original
        return self.updated


# ── Helpers ──────────────────────────────────────────────────────────────────


def is_gap(item: DetailedItem) -> bool:
    return (
        item.label in _GAP_LABELS
        and item.type.kind is TypeKind.ARRAY
        and isinstance(item.type.length, int)
    )


def _position(item: DetailedItem) -> int | None:
    if item.slot is None:
        return None
    return item.slot * 32 + (item.offset or 0)


def _end(item: DetailedItem) -> int | None:
    start = _position(item)
    return None if start is None else start + item.number_of_bytes


def _in_gap(gap: DetailedItem, item: DetailedItem) -> bool:
    start, end, pos = _position(gap), _end(gap), _position(item)
    if start is None or end is None or pos is None:
        return False
    return start <= pos < end


def enum_size(member_count: int) -> int:
    return math.ceil(math.log2(max(2, member_count)) / 8)


# ── Comparator ───────────────────────────────────────────────────────────────


class StorageLayoutComparator:
    """Pairs and checks storage items; one instance per comparison."""

    def __init__(self, unsafe_allow_custom_types: bool = False, strict_renames: bool = False) -> None:
        self.unsafe_allow_custom_types = unsafe_allow_custom_types
        self.strict_renames = strict_renames
        self.has_allowed_unchecked_custom_types = False
        self._stack: set[tuple[str, str, bool]] = set()
        self._cache: dict[tuple[str, str, bool], TypeChange | None] = {}

    def compare_layouts(
        self,
        original: Sequence[DetailedItem],
        updated: Sequence[DetailedItem],
        original_namespaces: dict[str, list[DetailedItem]] | None = None,
        updated_namespaces: dict[str, list[DetailedItem]] | None = None,
    ) -> LayoutCompatibilityReport:
        ops = self.layout_levenshtein(original, updated, allow_append=True)

        for ns, items in (original_namespaces or {}).items():
            if updated_namespaces is None or ns not in updated_namespaces:
                ops.append(StorageOperation("delete-namespace", namespace=ns, original=items[0] if items else None))
                continue
            for op in self.layout_levenshtein(items, updated_namespaces[ns], allow_append=True):
                op.namespace = ns
                ops.append(op)

        report = LayoutCompatibilityReport(ops)
        logger.debug(
            "Compared %d/%d storage items: %d error(s), %d note(s)",
            len(original),
            len(updated),
            len(report.error_ops),
            len(report.note_ops),
        )
        return report

    # ── Alignment ────────────────────────────────────────────────────────────

    def layout_levenshtein(
        self,
        original: Sequence[DetailedItem],
        updated: Sequence[DetailedItem],
        *,
        allow_append: bool,
    ) -> list[StorageOperation]:
        last = original[-1] if original else None

        def match(o: DetailedItem, u: DetailedItem) -> StorageOperation | str:
            change = self.get_field_change(o, u, allow_append=allow_append and o is last, siblings=original)
            return EQUAL if change is None else change

        def substitution_cost(result: StorageOperation | str) -> int:
            if result == EQUAL:
                return 0
            assert isinstance(result, StorageOperation)
            return 0 if result.kind in ("layoutchange", "shrinkgap") else SUBSTITUTION_COST

        def insertion_cost(i: int, j: int) -> int:
            u = updated[j - 1]
            for k in (i - 1, i):
                if 0 <= k < len(original) and is_gap(original[k]) and _in_gap(original[k], u):
                    return 0
            return INSERTION_COST

        def deletion_cost(i: int) -> int:
            return 0 if is_gap(original[i - 1]) else DELETION_COST

        alignment = levenshtein(
            original,
            updated,
            match,
            substitution_cost=substitution_cost,
            insertion_cost=insertion_cost,
            deletion_cost=deletion_cost,
        )
        return self._classify(alignment, original, allow_append=allow_append)

    def _classify(
        self,
        alignment: list[Operation],
        original: Sequence[DetailedItem],
        *,
        allow_append: bool,
    ) -> list[StorageOperation]:
        gaps = [o for o in original if is_gap(o)]
        ops: list[StorageOperation] = []

        for index, step in enumerate(alignment):
            if step.kind == EQUAL:
                continue

            if step.kind == "substitute":
                op: StorageOperation = step.result
                if op.kind == "shrinkgap":
                    ops.append(self._check_shrink_gap(op))
                elif op.kind == "rename" and not self.strict_renames:
                    op.note = True
                    ops.append(op)
                else:
                    ops.append(op)

            elif step.kind == "append":
                if not allow_append:
                    ops.append(StorageOperation("append", updated=step.updated))

            elif step.kind == "insert":
                if not any(_in_gap(g, step.updated) for g in gaps):
                    ops.append(StorageOperation("insert", updated=step.updated))

            elif step.kind == "delete":
                if is_gap(step.original):
                    ops.append(self._check_finish_gap(step.original, alignment, index))
                else:
                    ops.append(StorageOperation("delete", original=step.original))

        return ops

    def _check_shrink_gap(self, op: StorageOperation) -> StorageOperation:
        o, u = op.original, op.updated
        assert o is not None and u is not None
        o_end, u_end, u_start = _end(o), _end(u), _position(u)
        if o_end is not None and o_end == u_end:
            op.note = True
            return op
        if o_end is not None and u_start is not None and o_end > u_start:
            length = u.type.length
            elem = u.number_of_bytes // length if isinstance(length, int) and length else 32
            op.hint = f"Set __gap array to size {(o_end - u_start) // elem}"
        return op

    def _check_finish_gap(self, gap: DetailedItem, alignment: list[Operation], index: int) -> StorageOperation:
        run: list[DetailedItem] = []
        for k in range(index - 1, -1, -1):
            if alignment[k].kind not in ("insert", "append"):
                break
            run.insert(0, alignment[k].updated)
        for k in range(index + 1, len(alignment)):
            if alignment[k].kind not in ("insert", "append"):
                break
            run.append(alignment[k].updated)

        op = StorageOperation("finishgap", original=gap)
        if run:
            starts = [_position(r) for r in run]
            ends = [_end(r) for r in run]
            gap_start, gap_end = _position(gap), _end(gap)
            if None not in starts and None not in ends and gap_start is not None:
                if min(starts) >= gap_start and max(ends) == gap_end:  # type: ignore[type-var]
                    op.note = True
            op.updated = run[-1]
        return op

    # ── Field matching ───────────────────────────────────────────────────────

    def get_field_change(
        self,
        original: DetailedItem,
        updated: DetailedItem,
        *,
        allow_append: bool = False,
        siblings: Sequence[DetailedItem] = (),
    ) -> StorageOperation | None:
        if is_gap(original) and is_gap(updated) and original.type.args and updated.type.args:
            if original.type.args[0].id == updated.type.args[0].id:
                if _position(original) == _position(updated) and original.type.length == updated.type.length:
                    return None
                return StorageOperation("shrinkgap", original, updated)

        name_change = updated.renamed_from != original.label and (
            updated.label != original.label or updated.renamed_from is not None
        )

        retyped = updated.retyped_from is not None and updated.retyped_from.strip() == original.type.label
        type_change = None
        if not retyped:
            type_change = self.get_type_change(original.type, updated.type, allow_append=allow_append)
            if type_change is not None and self._is_allowed_widening(original, updated, siblings):
                type_change = None

        layout_change = self._get_layout_change(original, updated)

        if type_change is not None and name_change:
            return StorageOperation("replace", original, updated, change=type_change)
        if name_change:
            return StorageOperation("rename", original, updated)
        if type_change is not None:
            return StorageOperation("typechange", original, updated, change=type_change)
        if layout_change is not None:
            return StorageOperation("layoutchange", original, updated, change=layout_change)
        return None

    @staticmethod
    def _get_layout_change(original: DetailedItem, updated: DetailedItem) -> LayoutChange | None:
        if original.slot is None or updated.slot is None:
            return None
        change = LayoutChange()
        if original.slot != updated.slot:
            change.slot = (original.slot, updated.slot)
        if (original.offset or 0) != (updated.offset or 0):
            change.offset = (original.offset or 0, updated.offset or 0)
        if change.slot is None and change.offset is None:
            return None
        return change

    @staticmethod
    def _is_allowed_widening(
        original: DetailedItem, updated: DetailedItem, siblings: Sequence[DetailedItem]
    ) -> bool:
        o_int, u_int = original.type.integer, updated.type.integer
        if o_int is None or u_int is None or o_int[0] or u_int[0] or u_int[1] <= o_int[1]:
            return False
        if original.slot is None or original.slot != updated.slot:
            return False
        offset = original.offset or 0
        if offset != (updated.offset or 0) or offset + u_int[1] // 8 > 32:
            return False
        return not any(
            s is not original and s.slot == original.slot and (s.offset or 0) > offset for s in siblings
        )

    # ── Type matching ────────────────────────────────────────────────────────

    def get_type_change(
        self, original: DetailedType, updated: DetailedType, *, allow_append: bool
    ) -> TypeChange | None:
        key = (original.id, updated.id, allow_append)
        if key in self._cache:
            return self._cache[key]

        if key in self._stack:
            raise UpgradesError("Recursive types are not supported", f"Recursion found in {updated.label}\n")

        self._stack.add(key)
        try:
            result = self._uncached_type_change(original, updated, allow_append=allow_append)
        finally:
            self._stack.discard(key)
        self._cache[key] = result
        return result

    def _uncached_type_change(
        self, original: DetailedType, updated: DetailedType, *, allow_append: bool
    ) -> TypeChange | None:
        if original.head != updated.head:
            return TypeChange("obvious mismatch", original, updated)

        if original.args is None or updated.args is None:
            if original.args is not updated.args and (original.args or updated.args):
                return TypeChange("obvious mismatch", original, updated)
            return None

        kind = original.kind

        if kind is TypeKind.CONTRACT:
            return None

        if kind is TypeKind.USER_DEFINED_VALUE_TYPE:
            if original.number_of_bytes is None or updated.number_of_bytes is None:
                return TypeChange("unknown", original, updated)
            if original.number_of_bytes != updated.number_of_bytes:
                return TypeChange("type resize", original, updated)
            return None

        if kind is TypeKind.STRUCT:
            o_members, u_members = original.members, updated.members
            if o_members is None or u_members is None:
                return self._missing_members(original, updated)
            assert is_struct_members(o_members) and is_struct_members(u_members)
            ops = self.layout_levenshtein(o_members, u_members, allow_append=allow_append)  # type: ignore[arg-type]
            errors = [op for op in ops if not op.note]
            if errors:
                return TypeChange("struct members", original, updated, ops=errors, allow_append=allow_append)
            return None

        if kind is TypeKind.ENUM:
            o_members, u_members = original.members, updated.members
            if o_members is None or u_members is None:
                return self._missing_members(original, updated)
            assert is_enum_members(o_members) and is_enum_members(u_members)
            if enum_size(len(o_members)) != enum_size(len(u_members)):
                return TypeChange("enum resize", original, updated)
            ops = [
                op
                for op in levenshtein(o_members, u_members, lambda a, b: EQUAL if a == b else "replace")
                if op.kind not in (EQUAL, "append")
            ]
            if ops:
                return TypeChange("enum members", original, updated, ops=ops)
            return None

        if kind is TypeKind.MAPPING:
            # keys are hashed into the slot, so key changes cannot move storage
            inner = self.get_type_change(original.args[-1], updated.args[-1], allow_append=True)
            if inner is not None:
                return TypeChange("mapping value", original, updated, inner=inner)
            return None

        if kind is TypeKind.ARRAY:
            o_len, u_len = original.length, updated.length
            if o_len is None or u_len is None:
                return TypeChange("unknown", original, updated)
            if (o_len == "dynamic") != (u_len == "dynamic"):
                return TypeChange("array dynamic", original, updated)
            if isinstance(o_len, int) and isinstance(u_len, int):
                if u_len < o_len:
                    return TypeChange("array shrink", original, updated)
                if u_len > o_len and not allow_append:
                    return TypeChange("array grow", original, updated)
            inner = self.get_type_change(original.args[0], updated.args[0], allow_append=False)
            if inner is not None:
                return TypeChange("array value", original, updated, inner=inner)
            return None

        if original.id != updated.id:
            return TypeChange("obvious mismatch", original, updated)
        return None

    def _missing_members(self, original: DetailedType, updated: DetailedType) -> TypeChange | None:
        if self.unsafe_allow_custom_types:
            self.has_allowed_unchecked_custom_types = True
            return None
        return TypeChange("missing members", original, updated)


def compare_storage_layouts(
    original: StorageLayout,
    updated: StorageLayout,
    *,
    unsafe_allow_custom_types: bool = False,
    strict_renames: bool = False,
) -> LayoutCompatibilityReport:
    """Compare two persisted layouts, namespaces included."""
    comparator = StorageLayoutComparator(unsafe_allow_custom_types, strict_renames)
    return comparator.compare_layouts(
        get_detailed_layout(original),
        get_detailed_layout(updated),
        get_detailed_namespaces(original),
        get_detailed_namespaces(updated),
    )
