"""Compiler-output importer.

Turns solc's per-contract ``storageLayout`` JSON (and, when available, the
AST from the same build) into a validated ``StorageLayout``:

  - each variable is attributed to the contract that declares it, walking the
    linearized base chain (base contracts first)
  - enum members, which solc omits, are read from the AST
  - ``@custom:oz-renamed-from`` / ``@custom:oz-retyped-from`` annotations are
    attached to the items they document
  - ERC-7201 namespaces are loaded as separate roots

Every type reference is resolved and every item's placement checked before the
layout is returned, so a dangling reference or overlapping variables fail here
with ``LayoutImportError`` rather than in the comparator.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Callable

from proxyguard.core.ast import ASTDereferencer, SrcDecoder, find_all, get_annotation_args, get_documentation
from proxyguard.core.errors import LayoutImportError
from proxyguard.storage.layout import (
    CURRENT_LAYOUT_VERSION,
    DetailedItem,
    StorageItem,
    StorageLayout,
    TypeItem,
    get_detailed_layout,
    get_detailed_namespaces,
    load_layout,
)
from proxyguard.storage.namespace import load_namespaces
from proxyguard.storage.typenames import get_type_members

logger = logging.getLogger(__name__)

_TRAILING_ID = re.compile(r"(\d+)$")


def import_storage_layout(
    raw: Any,
    *,
    contract_def: dict[str, Any] | None = None,
    deref: ASTDereferencer | None = None,
    decode_src: Callable[[dict[str, Any]], str] | None = None,
    solc_version: str | None = None,
) -> StorageLayout:
    """Convert one compiler ``storageLayout`` object."""
    if not isinstance(raw, dict) or not isinstance(raw.get("storage"), list):
        raise LayoutImportError("Malformed storage layout", "Expected an object with a `storage` list")

    base = load_layout({"storage": raw["storage"], "types": raw.get("types") or {}})
    types: dict[str, TypeItem] = {
        type_id: item.model_copy(update={"members": _strip_members(item.members)})
        for type_id, item in base.types.items()
    }
    storage: list[StorageItem] = []

    for item in base.storage:
        update: dict[str, Any] = {"contract": item.contract.rsplit(":", 1)[-1]}
        if contract_def is not None and deref is not None:
            origin = _origin_contract(contract_def, item.ast_id, deref)
            if origin is None:
                raise LayoutImportError(f"Did not find variable declaration node for '{item.label}'")
            var_decl, contract_name = origin
            update["contract"] = contract_name
            if decode_src is not None:
                update["src"] = decode_src(var_decl)
            update.update(_annotations(var_decl))
        storage.append(item.model_copy(update=update))

    if deref is not None:
        _load_enum_members(types, deref)

    namespaces: dict[str, list[StorageItem]] = {}
    if contract_def is not None and deref is not None:
        namespaces = load_namespaces(contract_def, deref, decode_src or (lambda n: ""), types)

    layout = StorageLayout(
        layout_version=CURRENT_LAYOUT_VERSION,
        solc_version=solc_version,
        storage=storage,
        types=types,
        namespaces=namespaces,
        flat=True,
    )
    _check_placement(get_detailed_layout(layout))
    for items in get_detailed_namespaces(layout).values():
        _check_placement(items)
    return layout


def _check_placement(items: list[DetailedItem]) -> None:
    """Reject items that cross their slot or share bytes with another item."""
    placed = []
    for item in items:
        if item.slot is None or item.offset is None:
            continue
        size = item.number_of_bytes
        if item.offset + min(size, 32) > 32:
            raise LayoutImportError(
                f"Variable `{item.label}` crosses its storage slot",
                f"{size} bytes at offset {item.offset} of slot {item.slot}",
            )
        start = item.slot * 32 + item.offset
        placed.append((start, start + size, item))

    placed.sort(key=lambda p: p[0])
    for (_, prev_end, prev), (start, _, item) in zip(placed, placed[1:]):
        if start < prev_end:
            raise LayoutImportError(
                f"Variables `{prev.label}` and `{item.label}` overlap in storage",
                f"`{item.label}` starts at slot {item.slot} offset {item.offset}, "
                f"inside `{prev.label}` (slot {prev.slot} offset {prev.offset})",
            )


def _strip_members(members: Any) -> Any:
    if not members or isinstance(members[0], str):
        return members
    return [m.model_copy(update={"contract": "", "src": ""}) for m in members]


def _origin_contract(
    contract_def: dict[str, Any], ast_id: int | None, deref: ASTDereferencer
) -> tuple[dict[str, Any], str] | None:
    for base_id in reversed(contract_def.get("linearizedBaseContracts", [contract_def.get("id")])):
        parent = contract_def if base_id == contract_def.get("id") else deref("ContractDefinition", base_id)
        for node in parent.get("nodes", []):
            if node.get("id") == ast_id and node.get("nodeType") == "VariableDeclaration":
                return node, parent.get("name", "")
    return None


def _annotations(var_decl: dict[str, Any]) -> dict[str, str]:
    doc = get_documentation(var_decl)
    found: dict[str, str] = {}
    renamed = get_annotation_args(doc, "oz-renamed-from")
    if renamed:
        found["renamed_from"] = renamed[0]
    retyped = get_annotation_args(doc, "oz-retyped-from")
    if retyped:
        found["retyped_from"] = " ".join(retyped)
    return found


def _load_enum_members(types: dict[str, TypeItem], deref: ASTDereferencer) -> None:
    for type_id, item in list(types.items()):
        if not type_id.startswith("t_enum(") or item.members is not None:
            continue
        m = _TRAILING_ID.search(type_id)
        if m is None:
            raise LayoutImportError(f"Unresolvable type reference {type_id}")
        enum_def = deref("EnumDefinition", int(m.group(1)))
        types[type_id] = item.model_copy(update={"members": get_type_members(enum_def)})


def extract_layouts(build_info: dict[str, Any]) -> dict[str, StorageLayout]:
    """Import every contract with a storage layout in a build-info document.

    Keys are fully qualified names (``contracts/Token.sol:Token``).
    """
    try:
        solc_input, solc_output = build_info["input"], build_info["output"]
    except (KeyError, TypeError) as exc:
        raise LayoutImportError("Malformed build info", "Expected an object with `input` and `output`") from exc

    deref = ASTDereferencer(solc_output)
    decode_src = SrcDecoder(solc_input, solc_output)
    solc_version = build_info.get("solcVersion")
    layouts: dict[str, StorageLayout] = {}

    for source, contracts in solc_output.get("contracts", {}).items():
        ast = solc_output.get("sources", {}).get(source, {}).get("ast")
        defs = {d["name"]: d for d in find_all("ContractDefinition", ast)} if ast else {}
        for name, data in contracts.items():
            raw = data.get("storageLayout")
            if raw is None:
                continue
            contract_def = defs.get(name)
            layouts[f"{source}:{name}"] = import_storage_layout(
                raw,
                contract_def=contract_def,
                deref=deref if contract_def is not None else None,
                decode_src=decode_src,
                solc_version=solc_version,
            )

    logger.info("Imported %d storage layout(s)", len(layouts))
    return layouts
