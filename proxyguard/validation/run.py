"""Build-info ingestion and validation data.

A *run* is the validation of one solc build (``{input, output}``): for every
contract it records the bytecode version, the storage layout, the inheritance
chain, the public methods and any source-level safety errors. ``ValidationData``
merges runs from several builds and answers lookups by contract name or by
bytecode version.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from proxyguard.core.ast import ASTDereferencer, SrcDecoder, find_all
from proxyguard.core.errors import ContractNotFound, LayoutImportError, UpgradesError
from proxyguard.core.types import ProxyKind, SafetyErrorKind
from proxyguard.storage.importer import import_storage_layout
from proxyguard.storage.layout import StorageLayout
from proxyguard.validation.safety import SafetyError, check_contract, get_public_methods
from proxyguard.validation.version import Version, get_version

logger = logging.getLogger(__name__)

UPGRADE_TO_SIGNATURES = ("upgradeTo(address)", "upgradeToAndCall(address,bytes)")


@dataclass
class ContractValidation:
    name: str
    src: str
    version: Version | None = None
    layout: StorageLayout | None = None
    inherit: list[str] = field(default_factory=list)
    libraries: list[str] = field(default_factory=list)
    methods: list[str] = field(default_factory=list)
    errors: list[SafetyError] = field(default_factory=list)
    solc_version: str | None = None


ValidationRun = dict[str, ContractValidation]


def _referenced_library_ids(contract_def: dict[str, Any]) -> list[int]:
    ids: list[int] = []
    for directive in find_all("UsingForDirective", contract_def):
        library = directive.get("libraryName")
        if library is not None and library.get("referencedDeclaration") is not None:
            ids.append(library["referencedDeclaration"])
    for identifier in find_all("Identifier", contract_def):
        type_string = (identifier.get("typeDescriptions") or {}).get("typeString") or ""
        if type_string.startswith("type(library") and identifier.get("referencedDeclaration") is not None:
            ids.append(identifier["referencedDeclaration"])
    return list(dict.fromkeys(ids))


def validate_build_info(build_info: dict[str, Any]) -> ValidationRun:
    """Validate every contract of one solc build."""
    try:
        solc_input, solc_output = build_info["input"], build_info["output"]
    except (KeyError, TypeError) as exc:
        raise LayoutImportError("Malformed build info", "Expected an object with `input` and `output`") from exc

    solc_version = build_info.get("solcVersion")
    deref = ASTDereferencer(solc_output)
    decode_src = SrcDecoder(solc_input, solc_output)

    run: ValidationRun = {}
    from_id: dict[int, str] = {}
    inherit_ids: dict[str, list[int]] = {}
    library_ids: dict[str, list[int]] = {}

    for source, contracts in solc_output.get("contracts", {}).items():
        for name, data in contracts.items():
            bytecode = ((data.get("evm") or {}).get("bytecode") or {}).get("object", "")
            run[f"{source}:{name}"] = ContractValidation(
                name=name,
                src=name,
                version=get_version(bytecode) if bytecode else None,
                solc_version=solc_version,
            )

        ast = solc_output.get("sources", {}).get(source, {}).get("ast")
        if ast is None:
            continue
        for contract_def in find_all("ContractDefinition", ast):
            key = f"{source}:{contract_def['name']}"
            from_id[contract_def["id"]] = key
            data = contracts.get(contract_def["name"])
            if data is None or key not in run:
                continue

            bytecode = (data.get("evm") or {}).get("bytecode") or {}
            validation = run[key]
            inherit_ids[key] = contract_def.get("linearizedBaseContracts", [])[1:]
            library_ids[key] = _referenced_library_ids(contract_def)
            validation.src = decode_src(contract_def)
            validation.errors = check_contract(contract_def, bytecode, decode_src)
            validation.methods = get_public_methods(contract_def)
            if data.get("storageLayout") is not None:
                validation.layout = import_storage_layout(
                    data["storageLayout"],
                    contract_def=contract_def,
                    deref=deref,
                    decode_src=decode_src,
                    solc_version=solc_version,
                )

    for key, ids in inherit_ids.items():
        run[key].inherit = [from_id[i] for i in ids if i in from_id]
    for key, ids in library_ids.items():
        run[key].libraries = [from_id[i] for i in ids if i in from_id]

    logger.info("Validated %d contract(s) from solc %s", len(run), solc_version or "unknown")
    return run


class ValidationData:
    """Validation runs from one or more builds."""

    def __init__(self, runs: Iterable[ValidationRun] = ()) -> None:
        self.runs: list[ValidationRun] = list(runs)

    def add(self, run: ValidationRun) -> None:
        self.runs.append(run)

    @classmethod
    def from_build_info_files(cls, paths: Iterable[str | Path]) -> "ValidationData":
        data = cls()
        for path in paths:
            path = Path(path)
            try:
                build_info = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise LayoutImportError(f"Build info file {path} is not valid JSON", str(exc)) from exc
            data.add(validate_build_info(build_info))
        return data

    @classmethod
    def from_directories(cls, dirs: Iterable[str | Path]) -> "ValidationData":
        """Load every ``*.json`` build-info file found in ``dirs``."""
        paths: list[Path] = []
        for directory in dirs:
            directory = Path(directory)
            if directory.is_dir():
                paths.extend(sorted(directory.glob("*.json")))
        if not paths:
            raise UpgradesError(
                "No build info files found",
                "Compile the project with storage layout output enabled, then point "
                "PROXYGUARD_BUILD_INFO_DIRS at the build-info directory",
            )
        return cls.from_build_info_files(paths)

    # ── Lookups ──────────────────────────────────────────────────────────

    def find_contract(self, name: str) -> tuple[ValidationRun, str]:
        """Locate a contract by fully qualified (``src/A.sol:A``) or bare name.

        Later runs win over earlier ones.
        """
        matches: list[tuple[ValidationRun, str]] = []
        for run in reversed(self.runs):
            if ":" in name:
                if name in run:
                    return run, name
                continue
            found = [key for key in run if key.rsplit(":", 1)[-1] == name]
            if len(found) > 1:
                raise UpgradesError(
                    f"Contract {name} is ambiguous",
                    "Use one of the following fully qualified names:\n" + "\n".join(f"  {k}" for k in found),
                )
            if found:
                matches.append((run, found[0]))
        if not matches:
            raise ContractNotFound(
                f"Could not find contract {name}",
                "Make sure the contract is compiled and its build info is available",
            )
        return matches[0]

    def find_by_version(self, version: str) -> tuple[ValidationRun, str]:
        """Locate a contract by the hash of its full bytecode."""
        for run in reversed(self.runs):
            for key, validation in run.items():
                if validation.version is not None and validation.version.with_metadata == version:
                    return run, key
        raise ContractNotFound(
            "The requested contract was not found",
            "Make sure the source code is available for compilation",
        )

    def get_errors(self, run: ValidationRun, key: str, kind: ProxyKind | None = None) -> list[SafetyError]:
        """Errors of the contract, its bases and the libraries it uses."""
        validation = run[key]
        errors = list(validation.errors)
        for name in [*validation.inherit, *validation.libraries]:
            if name in run:
                errors.extend(run[name].errors)

        if kind == ProxyKind.UUPS:
            methods = set(validation.methods)
            for name in validation.inherit:
                if name in run:
                    methods.update(run[name].methods)
            if not any(sig in methods for sig in UPGRADE_TO_SIGNATURES):
                errors.append(SafetyError(SafetyErrorKind.MISSING_PUBLIC_UPGRADETO, validation.src))
        return errors

    def get_storage_layout(self, run: ValidationRun, key: str) -> StorageLayout:
        layout = run[key].layout
        if layout is None:
            raise LayoutImportError(
                f"Storage layout for {key} is not available",
                "Enable the `storageLayout` output selection in the compiler settings",
            )
        return layout

    def find_updated_layout(self, version_without_metadata: str, layout: dict[str, Any]) -> dict[str, Any] | None:
        """Current-format layout for a contract recorded under an older manifest.

        Matches on the metadata-free bytecode hash, so a rebuild that only
        changed comments or paths still resolves.
        """
        for run in reversed(self.runs):
            for validation in run.values():
                if (
                    validation.version is not None
                    and validation.layout is not None
                    and version_without_metadata
                    in (validation.version.without_metadata, validation.version.linked_without_metadata)
                ):
                    return validation.layout.to_json_dict()
        return None
