"""Solidity AST helpers shared by the layout importer and the safety checks.

Works on the JSON AST that solc emits in ``output.sources[*].ast``:
  - node lookup by id across every source unit
  - recursive node search by ``nodeType``
  - ``src`` triples (offset:length:fileIndex) to ``path:line``
  - NatSpec ``@custom:`` annotation parsing
  - type identifier decoding (``t_struct$_S_$12_storage_ptr``)
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator

from proxyguard.core.errors import LayoutImportError


# ── Source locations ─────────────────────────────────────────────────────────


@dataclass
class SourceLocation:
    """Source location from an AST ``src`` field (offset:length:fileIndex)."""

    offset: int = 0
    length: int = 0
    file_index: int = 0

    @classmethod
    def from_src(cls, src: str) -> "SourceLocation":
        parts = src.split(":")
        if len(parts) < 3:
            return cls()
        return cls(offset=int(parts[0]), length=int(parts[1]), file_index=int(parts[2]))


class SrcDecoder:
    """Maps AST nodes to ``path/File.sol:<line>`` using the compiler input."""

    def __init__(self, solc_input: dict[str, Any], solc_output: dict[str, Any]) -> None:
        self._input_sources = solc_input.get("sources", {})
        self._ids = {s.get("id"): name for name, s in solc_output.get("sources", {}).items()}
        self._contents: dict[int, tuple[str, str]] = {}

    def _source(self, file_index: int) -> tuple[str, str]:
        if file_index not in self._contents:
            name = self._ids.get(file_index)
            if name is None:
                raise LayoutImportError(f"Source file {file_index} not available")
            content = self._input_sources.get(name, {}).get("content")
            if content is None:
                raise LayoutImportError(f"Content for {name} not available")
            self._contents[file_index] = (name, content)
        return self._contents[file_index]

    def __call__(self, node: dict[str, Any]) -> str:
        loc = SourceLocation.from_src(node.get("src", ""))
        name, content = self._source(loc.file_index)
        line = content.encode()[: loc.offset].decode(errors="ignore").count("\n") + 1
        return f"{name}:{line}"


def dummy_src_decoder(node: dict[str, Any]) -> str:
    return "file.sol:1"


# ── Node search ──────────────────────────────────────────────────────────────


def find_all(
    node_types: str | Iterable[str],
    node: Any,
    prune: Callable[[dict[str, Any]], bool] | None = None,
) -> Iterator[dict[str, Any]]:
    """Yield every node below ``node`` (inclusive) whose nodeType matches.

    Subtrees rooted at a node for which ``prune`` returns true are skipped.
    """
    wanted = {node_types} if isinstance(node_types, str) else set(node_types)
    stack = [node]
    while stack:
        current = stack.pop()
        if isinstance(current, dict):
            if prune is not None and current.get("nodeType") and prune(current):
                continue
            if current.get("nodeType") in wanted:
                yield current
            stack.extend(reversed([v for v in current.values() if isinstance(v, (dict, list))]))
        elif isinstance(current, list):
            stack.extend(reversed(current))


class ASTDereferencer:
    """Looks up AST nodes by id across all source units of one solc run."""

    def __init__(self, solc_output: dict[str, Any]) -> None:
        self._asts = [s["ast"] for s in solc_output.get("sources", {}).values() if "ast" in s]
        self._cache: dict[int, dict[str, Any]] = {}

    def __call__(self, node_types: str | Iterable[str], node_id: int) -> dict[str, Any]:
        wanted = {node_types} if isinstance(node_types, str) else set(node_types)
        cached = self._cache.get(node_id)
        if cached is not None and cached.get("nodeType") in wanted:
            return cached

        for ast in self._asts:
            for node in find_all(wanted, ast):
                if node.get("id") == node_id:
                    self._cache[node_id] = node
                    return node

        raise LayoutImportError(f"No node with id {node_id} of type {sorted(wanted)}")


# ── NatSpec ──────────────────────────────────────────────────────────────────

_ANNOTATION = re.compile(r"^\s*@(?P<title>\w+)(?::(?P<tag>[a-z][a-z-]*))?[ \t]*(?P<args>.*)$")


def get_documentation(node: dict[str, Any]) -> str:
    doc = node.get("documentation")
    if isinstance(doc, dict):
        return doc.get("text", "") or ""
    return doc or ""


def get_annotation_args(doc: str, tag: str) -> list[str]:
    """Arguments of every ``@custom:<tag>`` line in ``doc``.

    Continuation lines that do not start a new ``@`` tag belong to the
    previous annotation.
    """
    result: list[str] = []
    current: list[str] | None = None
    for line in doc.splitlines():
        m = _ANNOTATION.match(line)
        if m:
            if current is not None:
                result.extend(current)
            current = m.group("args").split() if m.group("title") == "custom" and m.group("tag") == tag else None
        elif current is not None:
            current.extend(line.split())
    if current is not None:
        result.extend(current)
    return result


def has_annotation_tag(doc: str, tag: str) -> bool:
    return any(
        m is not None and m.group("title") == "custom" and m.group("tag") == tag
        for m in map(_ANNOTATION.match, doc.splitlines())
    )


# ── Type identifiers ─────────────────────────────────────────────────────────

_ENCODED = re.compile(r"(\$_|_\$_|_\$)(?=(?:\$_|_\$_|_\$)*(?:[^_$]|$))")
_DECODED = {"$_": "(", "_$": ")", "_$_": ","}


def decode_type_identifier(type_identifier: str) -> str:
    """Undo solc's escaping of parentheses and commas in type identifiers."""
    return _ENCODED.sub(lambda m: _DECODED[m.group(1)], type_identifier)


def normalize_type_identifier(type_identifier: str) -> str:
    return re.sub(r"_storage_ptr\b", "_storage", decode_type_identifier(type_identifier))
