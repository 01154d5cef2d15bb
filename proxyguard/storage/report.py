"""Comparator report and human-readable explanations.

``LayoutCompatibilityReport.explain()`` renders every incompatibility with its
source location and a hint, e.g.::

    contracts/Token.sol:14: Inserted `fee`
      > New variables should be placed after all existing inherited variables
"""

from __future__ import annotations

from typing import Any, Callable

from pydantic import BaseModel, Field

_RESET = "\033[0m"
_BOLD = "\033[1m"


class IncompatibilityFinding(BaseModel):
    """One structured finding: what kind, where, and a one-line message."""

    kind: str
    path: list[str] = Field(default_factory=list)
    message: str


class LayoutCompatibilityReport:
    """Outcome of a layout comparison.

    ``ok`` is true iff there are no errors. Notes (renames in lenient mode,
    consumed gaps) never affect ``ok``.
    """

    def __init__(self, ops: list[Any]) -> None:
        self.ops = ops

    @property
    def error_ops(self) -> list[Any]:
        return [op for op in self.ops if not op.note]

    @property
    def note_ops(self) -> list[Any]:
        return [op for op in self.ops if op.note]

    @property
    def ok(self) -> bool:
        return not self.error_ops

    @property
    def errors(self) -> list[IncompatibilityFinding]:
        return [f for op in self.error_ops for f in _findings(op)]

    @property
    def notes(self) -> list[IncompatibilityFinding]:
        return [f for op in self.note_ops for f in _findings(op)]

    def explain(self, color: bool = True) -> str:
        return _explain_ops(self.error_ops, color)

    def explain_notes(self, color: bool = True) -> str:
        return _explain_ops(self.note_ops, color)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "errors": [f.model_dump() for f in self.errors],
            "notes": [f.model_dump() for f in self.notes],
        }


# ── Findings ─────────────────────────────────────────────────────────────────


def _segment(op: Any) -> str:
    item = op.item
    if item is None:
        return op.namespace or ""
    return f"{item.contract}.{item.label}" if item.contract else item.label


def _findings(op: Any, prefix: tuple[str, ...] = (), struct: str | None = None) -> list[IncompatibilityFinding]:
    if op.kind == "delete-namespace":
        return [IncompatibilityFinding(kind=op.kind, path=[op.namespace], message=f"Deleted namespace `{op.namespace}`")]

    if struct is None:
        path = ([op.namespace] if op.namespace else []) + [_segment(op)]
    else:
        path = [*prefix, f"{struct}.{op.item.label}"]

    change = op.change if op.kind in ("typechange", "replace") else None
    while change is not None and change.inner is not None:
        change = change.inner

    if change is not None and change.kind == "struct members":
        struct_name = change.updated.label.removeprefix("struct ")
        nested = []
        for member_op in change.ops:
            nested.extend(_findings(member_op, tuple(path), struct_name))
        if nested:
            return nested

    message = explain_storage_operation(op, "layout" if struct is None else "struct", True)
    return [IncompatibilityFinding(kind=op.kind, path=path, message=message)]


# ── Explanations ─────────────────────────────────────────────────────────────


def _indent(text: str, amount: int, start: int = 0) -> str:
    lines = text.split("\n")
    return "\n".join(
        line if i < start or not line else " " * amount + line for i, line in enumerate(lines)
    )


def _itemize_with(bullet: str, *items: str | None) -> str:
    return "\n".join(f"{bullet} {_indent(item, 2, 1)}" for item in items if item)


def _itemize(*items: str | None) -> str:
    return _itemize_with("-", *items)


def _label(item: Any) -> str:
    return f"`{item.label}`"


def _explain_ops(ops: list[Any], color: bool) -> str:
    res = []
    for op in ops:
        item = op.item
        src = (item.src or item.contract) if item is not None else (op.namespace or "")
        if color:
            src = f"{_BOLD}{src}{_RESET}"
        res.append(f"{src}: {_indent(explain_storage_operation(op, 'layout', True), 2, 1)}")
    return "\n\n".join(res)


def explain_storage_operation(op: Any, context: str, allow_append: bool) -> str:
    kind = op.kind

    if kind == "typechange":
        basic = explain_type_change(op.change)
        details = []
        if context == "layout":
            for ch in _all_type_changes(op.change):
                detail = _explain_type_change_details(ch)
                if detail is not None and detail not in details:
                    details.append(detail)
        return f"Upgraded {_label(op.updated)} to an incompatible type\n" + _itemize(basic, *details)

    if kind == "rename":
        return f"Renamed {_label(op.original)} to {_label(op.updated)}"

    if kind == "replace":
        return f"Replaced {_label(op.original)} with {_label(op.updated)} of incompatible type"

    if kind == "layoutchange":
        change = op.change
        lines = []
        if change.slot is not None:
            lines.append(f"Slot changed from {change.slot[0]} to {change.slot[1]}")
        if change.offset is not None:
            lines.append(f"Offset changed from {change.offset[0]} to {change.offset[1]}")
        transition = f"({op.original.type.label} -> {op.updated.type.label})"
        return f"Layout changed for {_label(op.updated)} {transition}\n" + _itemize(*lines)

    if kind == "shrinkgap":
        o_len, u_len = op.original.type.length, op.updated.type.length
        if op.note:
            return f"Storage gap {_label(op.updated)} resized from {o_len} to {u_len}"
        return f"Bad storage gap resize from {o_len} to {u_len}\n" + _itemize_with(
            ">", "Size decrease must match with corresponding variable inserts", op.hint
        )

    if kind == "finishgap":
        if op.note:
            return f"Storage gap {_label(op.original)} fully consumed by new variables"
        if op.updated is None:
            return f"Deleted {_label(op.original)}\n" + _itemize_with(">", "Keep the variable even if unused")
        return f"Bad storage gap replacement of {_label(op.original)}\n" + _itemize_with(
            ">", "Variables replacing the gap must end exactly where the gap ended", op.hint
        )

    if kind == "delete-namespace":
        return f"Deleted namespace `{op.namespace}`\n" + _itemize_with(
            ">", "Keep the struct with the same storage location annotation"
        )

    title = _explain_basic_operation(op, lambda t: t.label)
    hints = []
    if kind == "insert":
        if context == "struct":
            if allow_append:
                hints.append("New struct members should be placed after existing ones")
            else:
                hints.append("New struct members are not allowed here. Define a new struct")
        else:
            hints.append("New variables should be placed after all existing inherited variables")
    elif kind == "append" and context == "struct":
        hints.append("New struct members are not allowed here. Define a new struct")
    elif kind == "delete":
        hints.append("Keep the variable even if unused")
    return title + ("\n" + _itemize_with(">", *hints) if hints else "")


def explain_type_change(ch: Any) -> str:
    kind = ch.kind

    if kind in ("obvious mismatch", "struct members", "enum members"):
        return f"Bad upgrade {_describe_transition(ch.original, ch.updated)}"

    if kind == "enum resize":
        return f"Bad upgrade {_describe_transition(ch.original, ch.updated)}\nDifferent representation sizes"

    if kind == "type resize":
        return (
            f"Bad upgrade {_describe_transition(ch.original, ch.updated)}\n"
            f"Size changed from {ch.original.number_of_bytes} to {ch.updated.number_of_bytes} bytes"
        )

    if kind in ("mapping value", "array value"):
        return f"In {ch.updated.label}\n" + _itemize(explain_type_change(ch.inner))

    if kind in ("array shrink", "array grow"):
        note = "Size cannot decrease" if kind == "array shrink" else "Size cannot increase here"
        return f"Bad array resize from {ch.original.length} to {ch.updated.length}\n{note}"

    if kind == "array dynamic":
        sizes = ("dynamic", "fixed") if ch.original.length == "dynamic" else ("fixed", "dynamic")
        return f"Bad upgrade from {sizes[0]} to {sizes[1]} size array"

    if kind == "missing members":
        type_name = ch.updated.head.removeprefix("t_")
        return (
            f"Insufficient data to compare {type_name}s\n"
            "Manually assess compatibility, then use option `unsafe_allow_custom_types`"
        )

    return f"Unknown type {ch.updated.label}"


def _all_type_changes(root: Any) -> list[Any]:
    found = [root]
    for ch in found:
        if ch.kind in ("mapping value", "array value"):
            found.append(ch.inner)
        elif ch.kind == "struct members":
            found.extend(op.change for op in ch.ops if op.kind == "typechange")
    return found


def _explain_type_change_details(ch: Any) -> str | None:
    if ch.kind == "struct members":
        return f"In {ch.updated.label}\n" + _itemize(
            *(explain_storage_operation(op, "struct", ch.allow_append) for op in ch.ops)
        )
    if ch.kind == "enum members":
        return f"In {ch.updated.label}\n" + _itemize(*(_explain_enum_operation(op) for op in ch.ops))
    return None


def _explain_enum_operation(op: Any) -> str:
    if op.kind == "substitute":
        return f"Replaced `{op.original}` with `{op.updated}`"
    return _explain_basic_operation(op, lambda t: t)


def _explain_basic_operation(op: Any, name: Callable[[Any], str]) -> str:
    if op.kind == "delete":
        return f"Deleted `{name(op.original)}`"
    if op.kind == "insert":
        return f"Inserted `{name(op.updated)}`"
    return f"Added `{name(op.updated)}`"


def _describe_transition(original: Any, updated: Any) -> str:
    if original.label == updated.label:
        return f"to {updated.label}"
    return f"from {original.label} to {updated.label}"
