"""Source-level upgrade-safety checks.

Walks a contract's AST for patterns that break once the code runs behind a
proxy: constructors with side effects, ``delegatecall`` / ``selfdestruct``,
initial values on state variables, immutables, and externally linked
libraries. Each check can be silenced in the source with

    /// @custom:oz-upgrades-unsafe-allow constructor delegatecall

on the contract, function or variable it applies to.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterator

from proxyguard.core.ast import find_all, get_annotation_args, get_documentation
from proxyguard.core.errors import UpgradesError
from proxyguard.core.types import UNSAFE_ALLOW_WARNINGS, SafetyErrorKind, ValidationOptions

logger = logging.getLogger(__name__)

UNSAFE_ALLOW_TAG = "oz-upgrades-unsafe-allow"

_BARE_DELEGATECALL = re.compile(r"^t_function_baredelegatecall_")
_SELFDESTRUCT = re.compile(r"^t_function_selfdestruct_")

SrcDecoderFn = Callable[[dict[str, Any]], str]


# ── Errors ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class SafetyError:
    kind: SafetyErrorKind
    src: str
    name: str | None = None
    contract: str | None = None

    def describe(self) -> str:
        msg, hint = _DESCRIPTIONS[self.kind](self)
        lines = [f"{self.src}: {msg}"]
        if hint:
            lines.append(hint)
        return "\n    ".join(lines)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value, "src": self.src}
        if self.name is not None:
            data["name"] = self.name
        if self.contract is not None:
            data["contract"] = self.contract
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SafetyError":
        return cls(
            kind=SafetyErrorKind(data["kind"]),
            src=data["src"],
            name=data.get("name"),
            contract=data.get("contract"),
        )


_DESCRIPTIONS: dict[SafetyErrorKind, Callable[[SafetyError], tuple[str, str | None]]] = {
    SafetyErrorKind.CONSTRUCTOR: lambda e: (
        f"Contract `{e.contract}` has a constructor",
        "Define an initializer instead",
    ),
    SafetyErrorKind.DELEGATECALL: lambda e: ("Use of delegatecall is not allowed", None),
    SafetyErrorKind.SELFDESTRUCT: lambda e: ("Use of selfdestruct is not allowed", None),
    SafetyErrorKind.STATE_VARIABLE_ASSIGNMENT: lambda e: (
        f"Variable `{e.name}` is assigned an initial value",
        "Move the assignment to the initializer",
    ),
    SafetyErrorKind.STATE_VARIABLE_IMMUTABLE: lambda e: (
        f"Variable `{e.name}` is immutable and will be initialized on the implementation",
        f"If by design, annotate with '@custom:{UNSAFE_ALLOW_TAG} state-variable-immutable'\n"
        "Otherwise, consider a constant variable or use a mutable variable instead",
    ),
    SafetyErrorKind.EXTERNAL_LIBRARY_LINKING: lambda e: (
        f"Linking external libraries like `{e.name}` is not yet supported",
        "Use libraries with internal functions only, or skip this check with the "
        "`unsafe_allow_linked_libraries` flag\n"
        "    if you have manually checked that the libraries are upgrade safe",
    ),
    SafetyErrorKind.MISSING_PUBLIC_UPGRADETO: lambda e: (
        "Implementation is missing a public `upgradeTo(address)` or `upgradeToAndCall(address,bytes)` function",
        "Inherit UUPSUpgradeable to include one or both of these functions in your contract",
    ),
}


# ── Annotations ──────────────────────────────────────────────────────────────


def get_allowed(node: dict[str, Any]) -> list[SafetyErrorKind]:
    """Kinds listed in ``@custom:oz-upgrades-unsafe-allow`` on ``node``."""
    allowed = []
    for arg in get_annotation_args(get_documentation(node), UNSAFE_ALLOW_TAG):
        try:
            allowed.append(SafetyErrorKind(arg))
        except ValueError:
            raise UpgradesError(f"NatSpec: {UNSAFE_ALLOW_TAG} argument not recognized: {arg}") from None
    return allowed


def skip_check(kind: SafetyErrorKind, node: dict[str, Any]) -> bool:
    return kind in get_allowed(node)


# ── Checks ───────────────────────────────────────────────────────────────────


def get_constructor_errors(contract_def: dict[str, Any], decode_src: SrcDecoderFn) -> Iterator[SafetyError]:
    prune = lambda node: skip_check(SafetyErrorKind.CONSTRUCTOR, node)  # noqa: E731
    for fn_def in find_all("FunctionDefinition", contract_def, prune):
        if fn_def.get("kind") != "constructor":
            continue
        statements = (fn_def.get("body") or {}).get("statements") or []
        if statements or fn_def.get("modifiers"):
            yield SafetyError(SafetyErrorKind.CONSTRUCTOR, decode_src(fn_def), contract=contract_def.get("name"))


def get_opcode_errors(contract_def: dict[str, Any], decode_src: SrcDecoderFn) -> Iterator[SafetyError]:
    for kind, pattern in (
        (SafetyErrorKind.DELEGATECALL, _BARE_DELEGATECALL),
        (SafetyErrorKind.SELFDESTRUCT, _SELFDESTRUCT),
    ):
        prune = lambda node, kind=kind: skip_check(kind, node)  # noqa: E731
        for fn_call in find_all("FunctionCall", contract_def, prune):
            type_id = (fn_call.get("expression", {}).get("typeDescriptions") or {}).get("typeIdentifier") or ""
            if pattern.match(type_id):
                yield SafetyError(kind, decode_src(fn_call))


def get_state_variable_errors(contract_def: dict[str, Any], decode_src: SrcDecoderFn) -> Iterator[SafetyError]:
    for var_decl in contract_def.get("nodes", []):
        if var_decl.get("nodeType") != "VariableDeclaration":
            continue
        if not var_decl.get("constant") and var_decl.get("value") is not None:
            kind = SafetyErrorKind.STATE_VARIABLE_ASSIGNMENT
            if not skip_check(kind, contract_def) and not skip_check(kind, var_decl):
                yield SafetyError(kind, decode_src(var_decl), name=var_decl.get("name"))
        if var_decl.get("mutability") == "immutable":
            kind = SafetyErrorKind.STATE_VARIABLE_IMMUTABLE
            if not skip_check(kind, contract_def) and not skip_check(kind, var_decl):
                yield SafetyError(kind, decode_src(var_decl), name=var_decl.get("name"))


def get_linking_errors(contract_def: dict[str, Any], bytecode: dict[str, Any]) -> Iterator[SafetyError]:
    if skip_check(SafetyErrorKind.EXTERNAL_LIBRARY_LINKING, contract_def):
        return
    for source, libraries in (bytecode.get("linkReferences") or {}).items():
        for lib_name in libraries:
            yield SafetyError(SafetyErrorKind.EXTERNAL_LIBRARY_LINKING, source, name=lib_name)


def check_contract(
    contract_def: dict[str, Any], bytecode: dict[str, Any], decode_src: SrcDecoderFn
) -> list[SafetyError]:
    return [
        *get_constructor_errors(contract_def, decode_src),
        *get_opcode_errors(contract_def, decode_src),
        *get_state_variable_errors(contract_def, decode_src),
        *get_linking_errors(contract_def, bytecode),
    ]


def get_public_methods(contract_def: dict[str, Any]) -> list[str]:
    """``name(type,...)`` of every public or external function."""
    methods = []
    for fn_def in find_all("FunctionDefinition", contract_def):
        if fn_def.get("visibility") not in ("public", "external") or fn_def.get("kind") != "function":
            continue
        params = (fn_def.get("parameters") or {}).get("parameters", [])
        types = [(p.get("typeDescriptions") or {}).get("typeString", "").split(" ")[0] for p in params]
        methods.append(f"{fn_def.get('name')}({','.join(types)})")
    return methods


# ── Exceptions ───────────────────────────────────────────────────────────────


def process_exceptions(
    contract_name: str, errors: list[SafetyError], opts: ValidationOptions
) -> list[SafetyError]:
    """Drop errors whose kind the caller allowed, warning once per allowed kind."""
    allowed = set(opts.with_defaults().unsafe_allow)
    remaining = []
    warned: set[SafetyErrorKind] = set()
    for error in errors:
        if error.kind in allowed:
            if error.kind not in warned:
                warned.add(error.kind)
                logger.warning(
                    "Potentially unsafe deployment of %s: %s",
                    contract_name,
                    UNSAFE_ALLOW_WARNINGS[error.kind],
                    extra={"contract": contract_name},
                )
            continue
        remaining.append(error)
    return remaining
