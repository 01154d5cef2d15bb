"""Validation Orchestrator.

Decides whether a new implementation can replace an old one:

  1. source-level safety checks on the new implementation (and its bases)
  2. the old storage layout, taken from a reference contract, a raw layout,
     or the manifest record for an implementation or proxy address
  3. the storage layout comparison
  4. caller suppressions (``unsafe_allow``, ``unsafe_skip_storage_check``,
     ``unsafe_allow_custom_types``) applied to the combined findings

``assert_upgrade_safe`` raises ``ValidationErrors`` for safety findings and
``StorageLayoutError`` for layout findings; ``validate_upgrade`` returns the
report without raising.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Union

from proxyguard.core.errors import DeploymentNotFound, StorageLayoutError, UpgradesError, ValidationErrors
from proxyguard.core.types import ValidationOptions
from proxyguard.manifest.store import Manifest
from proxyguard.storage.compare import StorageLayoutComparator
from proxyguard.storage.layout import StorageLayout, get_detailed_layout, get_detailed_namespaces
from proxyguard.storage.report import LayoutCompatibilityReport
from proxyguard.validation.run import ValidationData
from proxyguard.validation.safety import SafetyError, process_exceptions

logger = logging.getLogger(__name__)

ImplResolver = Callable[[str], str]
Reference = Union[str, StorageLayout]

_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_address(value: str) -> bool:
    return bool(_ADDRESS.match(value))


@dataclass
class UpgradeSafetyReport:
    """Combined outcome of the safety checks and the layout comparison."""

    contract: str
    reference: str | None = None
    errors: list[SafetyError] = field(default_factory=list)
    storage: LayoutCompatibilityReport | None = None
    storage_skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors and (self.storage is None or self.storage.ok)

    def explain(self, color: bool = True) -> str:
        sections = []
        if self.errors:
            sections.append(str(ValidationErrors(self.contract, self.errors)))
        if self.storage is not None and not self.storage.ok:
            sections.append(f"New storage layout is incompatible\n\n{self.storage.explain(color)}")
        return "\n\n".join(sections)

    def to_dict(self) -> dict[str, Any]:
        return {
            "contract": self.contract,
            "reference": self.reference,
            "ok": self.ok,
            "errors": [e.to_dict() for e in self.errors],
            "storage": self.storage.to_dict() if self.storage is not None else None,
            "storageSkipped": self.storage_skipped,
        }


class UpgradeValidator:
    """Checks upgrades of compiled contracts against references or the manifest."""

    def __init__(
        self,
        validations: ValidationData,
        manifest: Manifest | None = None,
        impl_resolver: ImplResolver | None = None,
    ) -> None:
        self.validations = validations
        self.manifest = manifest
        self.impl_resolver = impl_resolver

    # ── Reference resolution ─────────────────────────────────────────────

    def resolve_reference(self, reference: Reference) -> tuple[str, StorageLayout]:
        """``(description, layout)`` of the version being upgraded from."""
        if isinstance(reference, StorageLayout):
            return "reference layout", reference
        if is_address(reference):
            return reference, self._layout_from_address(reference)
        run, key = self.validations.find_contract(reference)
        return key, self.validations.get_storage_layout(run, key)

    def _layout_from_address(self, address: str) -> StorageLayout:
        if self.manifest is None:
            raise UpgradesError(
                f"Cannot resolve {address} without a manifest",
                "Pass the network's manifest, or use a contract name as reference",
            )
        try:
            return self.manifest.get_deployment_from_address(address).layout
        except DeploymentNotFound:
            if self.impl_resolver is None:
                raise

        implementation = self.impl_resolver(address)
        logger.debug("Proxy %s points at implementation %s", address, implementation, extra=self.manifest.log_context())
        return self.manifest.get_deployment_from_address(implementation).layout

    # ── Validation ───────────────────────────────────────────────────────

    def validate(
        self,
        contract: str,
        reference: Reference | None = None,
        opts: ValidationOptions | None = None,
    ) -> UpgradeSafetyReport:
        opts = (opts or ValidationOptions()).with_defaults()
        started = time.monotonic()

        run, key = self.validations.find_contract(contract)
        errors = process_exceptions(key, self.validations.get_errors(run, key, opts.kind), opts)
        report = UpgradeSafetyReport(contract=key, errors=errors)

        if reference is not None:
            report.reference, old_layout = self.resolve_reference(reference)
            if opts.unsafe_skip_storage_check:
                report.storage_skipped = True
                logger.warning(
                    "Skipping storage layout check for %s: layout changes are not validated",
                    key,
                    extra={"contract": key},
                )
            else:
                new_layout = self.validations.get_storage_layout(run, key)
                report.storage = compare_layouts(old_layout, new_layout, opts)

        logger.info(
            "Validated %s: %s",
            key,
            "ok" if report.ok else "unsafe",
            extra={"contract": key, "duration_ms": round((time.monotonic() - started) * 1000, 1)},
        )
        return report


def compare_layouts(
    original: StorageLayout, updated: StorageLayout, opts: ValidationOptions | None = None
) -> LayoutCompatibilityReport:
    opts = (opts or ValidationOptions()).with_defaults()
    comparator = StorageLayoutComparator(opts.unsafe_allow_custom_types, opts.strict_renames)
    report = comparator.compare_layouts(
        get_detailed_layout(original),
        get_detailed_layout(updated),
        get_detailed_namespaces(original),
        get_detailed_namespaces(updated),
    )
    if comparator.has_allowed_unchecked_custom_types:
        logger.warning(
            "Storage layout check skipped custom types without member information "
            "(unsafe_allow_custom_types); verify struct and enum layouts manually"
        )
    return report


def validate_upgrade(
    validations: ValidationData,
    contract: str,
    reference: Reference,
    opts: ValidationOptions | None = None,
    *,
    manifest: Manifest | None = None,
    impl_resolver: ImplResolver | None = None,
) -> UpgradeSafetyReport:
    return UpgradeValidator(validations, manifest, impl_resolver).validate(contract, reference, opts)


def assert_upgrade_safe(
    validations: ValidationData,
    contract: str,
    reference: Reference | None = None,
    opts: ValidationOptions | None = None,
    *,
    manifest: Manifest | None = None,
    impl_resolver: ImplResolver | None = None,
) -> UpgradeSafetyReport:
    """Like ``validate_upgrade`` but raises on the first class of findings.

    Safety errors are reported before storage errors.
    """
    report = UpgradeValidator(validations, manifest, impl_resolver).validate(contract, reference, opts)
    if report.errors:
        raise ValidationErrors(report.contract, report.errors)
    if report.storage is not None and not report.storage.ok:
        raise StorageLayoutError(report.storage)
    return report
