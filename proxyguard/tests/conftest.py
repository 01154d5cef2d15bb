"""Shared fixtures for the proxyguard test suite."""

from __future__ import annotations

import logging
import re
from typing import Any

import cbor2
import pytest

from proxyguard.core.config import get_settings
from proxyguard.storage.layout import StorageItem, StorageLayout, TypeItem


# ── Settings ─────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _isolated_settings(tmp_path, monkeypatch):
    """Point manifests at a per-test directory and drop the cached settings."""
    monkeypatch.setenv("PROXYGUARD_MANIFEST_DIR", str(tmp_path / "manifests"))
    monkeypatch.setenv("PROXYGUARD_DEV_TMP_DIR", str(tmp_path / "tmp"))
    monkeypatch.setenv("PROXYGUARD_LOCK_TIMEOUT_SECONDS", "5")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _restore_root_logger():
    """``setup_logging`` replaces root handlers; put pytest's back afterwards."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


# ── Layout builders ──────────────────────────────────────────────────────────

ELEMENTARY_TYPES: dict[str, TypeItem] = {
    "t_uint256": TypeItem(label="uint256", encoding="inplace", number_of_bytes=32),
    "t_uint128": TypeItem(label="uint128", encoding="inplace", number_of_bytes=16),
    "t_uint64": TypeItem(label="uint64", encoding="inplace", number_of_bytes=8),
    "t_uint8": TypeItem(label="uint8", encoding="inplace", number_of_bytes=1),
    "t_int64": TypeItem(label="int64", encoding="inplace", number_of_bytes=8),
    "t_address": TypeItem(label="address", encoding="inplace", number_of_bytes=20),
    "t_bool": TypeItem(label="bool", encoding="inplace", number_of_bytes=1),
    "t_string_storage": TypeItem(label="string", encoding="bytes", number_of_bytes=32),
}

_UINT_ARRAY = re.compile(r"^t_array\(t_uint256\)(\d+)_storage$")


def var(label: str, type_id: str, slot: int | None, offset: int = 0, contract: str = "Box", **kw: Any) -> StorageItem:
    return StorageItem(
        label=label,
        type=type_id,
        slot=slot,
        offset=offset if slot is not None else None,
        contract=contract,
        src=f"contracts/{contract}.sol:{(slot or 0) + 1}",
        **kw,
    )


def gap(length: int, slot: int, label: str = "__gap", contract: str = "Box") -> StorageItem:
    return var(label, f"t_array(t_uint256){length}_storage", slot, contract=contract)


def build_layout(
    storage: list[StorageItem],
    types: dict[str, TypeItem] | None = None,
    namespaces: dict[str, list[StorageItem]] | None = None,
) -> StorageLayout:
    """A layout whose elementary and ``uint256[N]`` types are filled in."""
    all_types = dict(ELEMENTARY_TYPES)
    items = list(storage) + [i for ns in (namespaces or {}).values() for i in ns]
    for item in items:
        m = _UINT_ARRAY.match(item.type)
        if m:
            n = int(m.group(1))
            all_types[item.type] = TypeItem(
                label=f"uint256[{n}]", encoding="inplace", number_of_bytes=32 * n, base="t_uint256"
            )
    all_types.update(types or {})
    return StorageLayout(storage=storage, types=all_types, namespaces=namespaces or {})


def struct_type(name: str, members: list[StorageItem], type_id: str | None = None) -> tuple[str, TypeItem]:
    slots = {m.slot for m in members if m.slot is not None}
    type_id = type_id or f"t_struct({name})1_storage"
    return type_id, TypeItem(
        label=f"struct Box.{name}",
        encoding="inplace",
        number_of_bytes=32 * max(1, len(slots)),
        members=members,
    )


def enum_type(name: str, members: list[str], type_id: str | None = None) -> tuple[str, TypeItem]:
    type_id = type_id or f"t_enum({name})2"
    return type_id, TypeItem(label=f"enum Box.{name}", encoding="inplace", number_of_bytes=1, members=members)


@pytest.fixture
def make_layout():
    return build_layout


@pytest.fixture
def sample_layout() -> StorageLayout:
    """``Box`` with an owner, a counter and a 48-slot gap."""
    return build_layout([var("owner", "t_address", 0), var("count", "t_uint256", 1), gap(48, 2)])


# ── Build info ───────────────────────────────────────────────────────────────

BOX_SOURCE = """// SPDX-License-Identifier: MIT
pragma solidity ^0.8.20;

contract Base {
    uint256 public value;
}

contract Box is Base {
    enum Status { Off, On }

    /// @custom:oz-renamed-from owner
    address public admin;
    Status public status;

    function setValue(uint256 v) external {
        value = v;
    }
}

contract Unsafe {
    uint256 public immutable created;
    uint256 public count = 1;

    constructor() {
        created = block.timestamp;
    }

    function kill() external {
        selfdestruct(payable(msg.sender));
    }
}
"""


def _src(snippet: str, source: str = BOX_SOURCE) -> str:
    start = source.index(snippet)
    return f"{start}:{len(snippet)}:0"


def with_metadata(code: str) -> str:
    """``code`` followed by a CBOR metadata section and its two-byte length."""
    metadata = cbor2.dumps({"ipfs": bytes(34), "solc": bytes([0, 8, 20])})
    return code + metadata.hex() + len(metadata).to_bytes(2, "big").hex()


def _uint(name: str, node_id: int, snippet: str, **kw: Any) -> dict[str, Any]:
    return {
        "nodeType": "VariableDeclaration",
        "id": node_id,
        "name": name,
        "src": _src(snippet),
        "stateVariable": True,
        "constant": False,
        "mutability": kw.pop("mutability", "mutable"),
        "typeDescriptions": {"typeIdentifier": "t_uint256", "typeString": "uint256"},
        **kw,
    }


def make_build_info() -> dict[str, Any]:
    base_def = {
        "nodeType": "ContractDefinition",
        "id": 10,
        "name": "Base",
        "src": _src("contract Base {"),
        "linearizedBaseContracts": [10],
        "nodes": [_uint("value", 11, "uint256 public value;")],
    }
    box_def = {
        "nodeType": "ContractDefinition",
        "id": 20,
        "name": "Box",
        "src": _src("contract Box is Base {"),
        "linearizedBaseContracts": [20, 10],
        "nodes": [
            {
                "nodeType": "EnumDefinition",
                "id": 21,
                "name": "Status",
                "canonicalName": "Box.Status",
                "src": _src("enum Status { Off, On }"),
                "members": [
                    {"nodeType": "EnumValue", "id": 22, "name": "Off"},
                    {"nodeType": "EnumValue", "id": 23, "name": "On"},
                ],
            },
            {
                "nodeType": "VariableDeclaration",
                "id": 24,
                "name": "admin",
                "src": _src("address public admin;"),
                "stateVariable": True,
                "constant": False,
                "mutability": "mutable",
                "documentation": {
                    "nodeType": "StructuredDocumentation",
                    "text": "@custom:oz-renamed-from owner",
                },
                "typeDescriptions": {"typeIdentifier": "t_address", "typeString": "address"},
            },
            {
                "nodeType": "VariableDeclaration",
                "id": 25,
                "name": "status",
                "src": _src("Status public status;"),
                "stateVariable": True,
                "constant": False,
                "mutability": "mutable",
                "typeDescriptions": {"typeIdentifier": "t_enum$_Status_$21", "typeString": "enum Box.Status"},
            },
            {
                "nodeType": "FunctionDefinition",
                "id": 26,
                "name": "setValue",
                "kind": "function",
                "visibility": "external",
                "src": _src("function setValue(uint256 v) external {"),
                "modifiers": [],
                "parameters": {
                    "parameters": [{"typeDescriptions": {"typeIdentifier": "t_uint256", "typeString": "uint256"}}]
                },
                "body": {"nodeType": "Block", "statements": []},
            },
        ],
    }
    unsafe_def = {
        "nodeType": "ContractDefinition",
        "id": 30,
        "name": "Unsafe",
        "src": _src("contract Unsafe {"),
        "linearizedBaseContracts": [30],
        "nodes": [
            _uint("created", 31, "uint256 public immutable created;", mutability="immutable"),
            _uint("count", 32, "uint256 public count = 1;", value={"nodeType": "Literal", "value": "1"}),
            {
                "nodeType": "FunctionDefinition",
                "id": 33,
                "name": "",
                "kind": "constructor",
                "visibility": "public",
                "src": _src("constructor() {"),
                "modifiers": [],
                "parameters": {"parameters": []},
                "body": {"nodeType": "Block", "statements": [{"nodeType": "ExpressionStatement"}]},
            },
            {
                "nodeType": "FunctionDefinition",
                "id": 34,
                "name": "kill",
                "kind": "function",
                "visibility": "external",
                "src": _src("function kill() external {"),
                "modifiers": [],
                "parameters": {"parameters": []},
                "body": {
                    "nodeType": "Block",
                    "statements": [
                        {
                            "nodeType": "ExpressionStatement",
                            "expression": {
                                "nodeType": "FunctionCall",
                                "id": 35,
                                "src": _src("selfdestruct(payable(msg.sender));"),
                                "expression": {
                                    "nodeType": "Identifier",
                                    "name": "selfdestruct",
                                    "typeDescriptions": {
                                        "typeIdentifier": "t_function_selfdestruct_nonpayable$_t_address_payable_$returns$__$",
                                        "typeString": "function (address payable)",
                                    },
                                },
                            },
                        }
                    ],
                },
            },
        ],
    }

    uint256 = {"encoding": "inplace", "label": "uint256", "numberOfBytes": "32"}
    box_layout = {
        "storage": [
            {"astId": 11, "contract": "contracts/Box.sol:Box", "label": "value", "offset": 0, "slot": "0", "type": "t_uint256"},
            {"astId": 24, "contract": "contracts/Box.sol:Box", "label": "admin", "offset": 0, "slot": "1", "type": "t_address"},
            {"astId": 25, "contract": "contracts/Box.sol:Box", "label": "status", "offset": 20, "slot": "1", "type": "t_enum(Status)21"},
        ],
        "types": {
            "t_uint256": uint256,
            "t_address": {"encoding": "inplace", "label": "address", "numberOfBytes": "20"},
            "t_enum(Status)21": {"encoding": "inplace", "label": "enum Box.Status", "numberOfBytes": "1"},
        },
    }

    return {
        "solcVersion": "0.8.20",
        "input": {"language": "Solidity", "sources": {"contracts/Box.sol": {"content": BOX_SOURCE}}},
        "output": {
            "sources": {
                "contracts/Box.sol": {
                    "id": 0,
                    "ast": {"nodeType": "SourceUnit", "id": 1, "src": f"0:{len(BOX_SOURCE)}:0", "nodes": [base_def, box_def, unsafe_def]},
                }
            },
            "contracts": {
                "contracts/Box.sol": {
                    "Base": {
                        "evm": {"bytecode": {"object": with_metadata("6080604052"), "linkReferences": {}}},
                        "storageLayout": {
                            "storage": [box_layout["storage"][0] | {"contract": "contracts/Box.sol:Base"}],
                            "types": {"t_uint256": uint256},
                        },
                    },
                    "Box": {
                        "evm": {"bytecode": {"object": with_metadata("608060405234801561001057"), "linkReferences": {}}},
                        "storageLayout": box_layout,
                    },
                    "Unsafe": {
                        "evm": {"bytecode": {"object": with_metadata("60806040526001"), "linkReferences": {}}},
                        "storageLayout": {
                            "storage": [
                                {"astId": 32, "contract": "contracts/Box.sol:Unsafe", "label": "count", "offset": 0, "slot": "0", "type": "t_uint256"}
                            ],
                            "types": {"t_uint256": uint256},
                        },
                    },
                }
            },
        },
    }


@pytest.fixture
def build_info() -> dict[str, Any]:
    return make_build_info()
