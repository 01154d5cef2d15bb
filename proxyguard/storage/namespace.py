"""ERC-7201 namespaced storage.

Structs annotated with ``@custom:storage-location erc7201:<id>`` live at a
root slot derived from ``<id>`` instead of the contract's sequential
storage. Each namespace is kept as its own ordered item list in
``StorageLayout.namespaces`` and compared by id, never by position.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from proxyguard.core.ast import (
    ASTDereferencer,
    get_annotation_args,
    get_documentation,
    has_annotation_tag,
)
from proxyguard.core.crypto import keccak256
from proxyguard.core.errors import UpgradesError
from proxyguard.storage.layout import StorageItem, TypeItem
from proxyguard.storage.typenames import get_type_members, load_layout_type

logger = logging.getLogger(__name__)

ERC7201_FORMULA_PREFIX = "erc7201:"


def calculate_erc7201_storage_location(namespace_id: str) -> str:
    """``keccak256(abi.encode(uint256(keccak256(id)) - 1)) & ~bytes32(uint256(0xff))``.

    ``namespace_id`` excludes the ``erc7201:`` prefix. Returns a 0x-prefixed,
    zero-padded 32-byte hex string.
    """
    first = int.from_bytes(keccak256(namespace_id.encode()), "big")
    second = keccak256((first - 1).to_bytes(32, "big"))
    masked = int.from_bytes(second, "big") & ~0xFF
    return f"0x{masked:064x}"


def namespace_root(storage_location: str) -> int | None:
    """Root slot for a ``@custom:storage-location`` value, if its formula is known."""
    if storage_location.startswith(ERC7201_FORMULA_PREFIX):
        return int(calculate_erc7201_storage_location(storage_location[len(ERC7201_FORMULA_PREFIX):]), 16)
    return None


class DuplicateNamespaceError(UpgradesError):
    def __init__(self, namespace_id: str, contract_name: str, srcs: list[str]) -> None:
        locations = "\n- ".join(srcs)
        super().__init__(
            f"Namespace {namespace_id} is defined multiple times for contract {contract_name}",
            f"The namespace {namespace_id} was found in structs at the following locations:\n- {locations}\n\n"
            "Use a unique namespace id for each struct annotated with "
            "'@custom:storage-location erc7201:<NAMESPACE_ID>' in your contract and its inherited contracts.",
        )


def get_storage_location_arg(node: dict[str, Any]) -> str | None:
    doc = get_documentation(node)
    if not has_annotation_tag(doc, "storage-location"):
        return None
    args = get_annotation_args(doc, "storage-location")
    if len(args) != 1:
        raise UpgradesError("@custom:storage-location annotation must have exactly one argument")
    return args[0]


def load_namespaces(
    contract_def: dict[str, Any],
    deref: ASTDereferencer,
    decode_src: Callable[[dict[str, Any]], str],
    types: dict[str, TypeItem],
) -> dict[str, list[StorageItem]]:
    """Collect namespaces declared by ``contract_def`` and its bases.

    Member types are added to ``types``. When the compiler laid the struct out
    (it appears in ``types`` with member slots), items get absolute slots
    offset from the namespace root.
    """
    found: dict[str, tuple[list[StorageItem], list[str]]] = {}

    for base_id in contract_def.get("linearizedBaseContracts", [contract_def.get("id")]):
        base = contract_def if base_id == contract_def.get("id") else deref("ContractDefinition", base_id)
        for node in base.get("nodes", []):
            if node.get("nodeType") != "StructDefinition":
                continue
            location = get_storage_location_arg(node)
            if location is None:
                continue
            src = decode_src(node)
            if location in found:
                found[location][1].append(src)
                continue
            found[location] = (_namespace_items(node, base, deref, decode_src, types, location), [src])

    namespaces: dict[str, list[StorageItem]] = {}
    for location, (items, srcs) in found.items():
        if len(srcs) > 1:
            name = contract_def.get("canonicalName") or contract_def.get("name", "")
            raise DuplicateNamespaceError(location, name, srcs)
        namespaces[location] = items

    if namespaces:
        logger.debug("Loaded %d namespace(s) for %s", len(namespaces), contract_def.get("name"))
    return namespaces


def _namespace_items(
    struct_def: dict[str, Any],
    contract_def: dict[str, Any],
    deref: ASTDereferencer,
    decode_src: Callable[[dict[str, Any]], str],
    types: dict[str, TypeItem],
    location: str,
) -> list[StorageItem]:
    root = namespace_root(location)
    laid_out = _laid_out_members(types, f"struct {struct_def.get('canonicalName', struct_def.get('name'))}")

    items = []
    for member, member_def in zip(get_type_members(struct_def), struct_def.get("members", [])):
        assert isinstance(member, StorageItem)
        slot = offset = None
        placed = laid_out.get(member.label)
        if placed is not None and placed.slot is not None:
            slot = placed.slot + (root or 0)
            offset = placed.offset
        items.append(
            member.model_copy(
                update={
                    "contract": contract_def.get("name", ""),
                    "src": decode_src(member_def),
                    "slot": slot,
                    "offset": offset,
                }
            )
        )
        if member_def.get("typeName") is not None:
            load_layout_type(member_def["typeName"], types, deref)
    return items


def _laid_out_members(types: dict[str, TypeItem], label: str) -> dict[str, StorageItem]:
    for item in types.values():
        if item.label == label and item.members:
            return {m.label: m for m in item.members if isinstance(m, StorageItem)}
    return {}
