"""Type information recovered from AST type names.

solc's ``storageLayout`` omits enum members and knows nothing about structs
that are never declared as state variables (namespaced structs). Both are
filled in from the AST here.
"""

from __future__ import annotations

from typing import Any

from proxyguard.core.ast import ASTDereferencer, find_all, normalize_type_identifier
from proxyguard.core.errors import LayoutImportError
from proxyguard.storage.layout import StorageItem, TypeItem

_TYPE_NAME_NODES = ("ArrayTypeName", "ElementaryTypeName", "FunctionTypeName", "Mapping", "UserDefinedTypeName")
_USER_DEFINED_NODES = ("StructDefinition", "EnumDefinition", "UserDefinedValueTypeDefinition")


def type_descriptions(node: dict[str, Any]) -> tuple[str, str]:
    """``(typeIdentifier, typeString)`` of a node, both required."""
    desc = node.get("typeDescriptions") or {}
    identifier, label = desc.get("typeIdentifier"), desc.get("typeString")
    if not isinstance(identifier, str) or not isinstance(label, str):
        raise LayoutImportError(f"Missing type descriptions for AST node {node.get('id')}")
    return identifier, label


def get_type_members(type_def: dict[str, Any]) -> list[StorageItem] | list[str]:
    if type_def.get("nodeType") == "StructDefinition":
        return [
            StorageItem(label=m["name"], type=normalize_type_identifier(type_descriptions(m)[0]))
            for m in type_def.get("members", [])
        ]
    return [m["name"] for m in type_def.get("members", [])]


def load_layout_type(type_name: dict[str, Any], types: dict[str, TypeItem], deref: ASTDereferencer) -> None:
    """Add every type reachable from ``type_name`` to ``types``, members included.

    Types are visited once per identifier, so recursive struct references
    terminate.
    """
    seen: dict[str, dict[str, Any]] = {}
    for node in find_all(_TYPE_NAME_NODES, type_name):
        seen.setdefault(type_descriptions(node)[0], node)
    pending = list(seen.values())

    while pending:
        node = pending.pop(0)
        identifier, label = type_descriptions(node)
        type_id = normalize_type_identifier(identifier)
        item = types.setdefault(type_id, TypeItem(label=label))

        ref = node.get("referencedDeclaration")
        if ref is None or type_id.startswith("t_contract"):
            continue

        type_def = deref(_USER_DEFINED_NODES, ref)
        if item.members is None and type_def.get("nodeType") != "UserDefinedValueTypeDefinition":
            types[type_id] = item.model_copy(update={"members": get_type_members(type_def)})

        for inner in find_all(_TYPE_NAME_NODES, type_def):
            inner_id = type_descriptions(inner)[0]
            if inner_id not in seen:
                seen[inner_id] = inner
                pending.append(inner)
