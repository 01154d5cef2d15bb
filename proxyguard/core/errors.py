"""Error taxonomy shared by the importer, comparator, manifest and validator.

Every error carries a one-line message and optional details rendered below
it, so command line callers can print ``str(exc)`` as a complete report:

    New storage layout is incompatible

        contracts/Token.sol:12: Deleted `owner`
          > Keep the variable even if unused
"""

from __future__ import annotations

import textwrap
from typing import Any, Callable


class UpgradesError(Exception):
    """Base error with a short message and lazily rendered details."""

    def __init__(self, message: str, details: str | Callable[[], str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self._details = details

    def details(self) -> str:
        if callable(self._details):
            return self._details()
        return self._details or ""

    def __str__(self) -> str:
        details = self.details()
        if not details:
            return self.message
        return f"{self.message}\n\n{textwrap.indent(details, '    ')}"


# ── Compiler output ──────────────────────────────────────────────────────────


class LayoutImportError(UpgradesError):
    """Compiler output is malformed or references an unknown type."""


class ContractNotFound(UpgradesError):
    """The requested contract is not present in the validation data."""


# ── Storage / validation ─────────────────────────────────────────────────────


class StorageLayoutError(UpgradesError):
    """The new storage layout is incompatible with the previous one."""

    def __init__(self, report: Any) -> None:
        super().__init__("New storage layout is incompatible", lambda: report.explain(color=False))
        self.report = report


class ValidationErrors(UpgradesError):
    """Source-level upgrade-safety errors found in an implementation."""

    def __init__(self, contract_name: str, errors: list[Any]) -> None:
        super().__init__(
            f"Contract `{contract_name}` is not upgrade safe",
            lambda: "\n\n".join(e.describe() for e in errors),
        )
        self.contract_name = contract_name
        self.errors = errors


# ── Manifest ─────────────────────────────────────────────────────────────────


class ManifestCorrupted(UpgradesError):
    """The on-disk manifest is unreadable; never repaired automatically."""

    def __init__(self, file: str, reason: str) -> None:
        super().__init__(
            f"Manifest file {file} could not be read",
            f"{reason}\n\nFix or restore the file manually. It is never rewritten while unreadable.",
        )
        self.file = file


class LockTimeout(UpgradesError):
    """Another process held the manifest lock for longer than the wait budget."""

    def __init__(self, lock_file: str, timeout: float) -> None:
        super().__init__(
            f"Timed out after {timeout:g}s waiting for manifest lock {lock_file}",
            "Another process is using the manifest for this network. Retry the operation.",
        )
        self.lock_file = lock_file
        self.timeout = timeout


class DeploymentNotFound(UpgradesError):
    """No record for the requested address or version."""


class AdminNotFound(DeploymentNotFound):
    """No proxy admin has been recorded for this network."""


class InvalidDeployment(UpgradesError):
    """A recorded deployment has no code on chain and must be redeployed."""

    def __init__(self, deployment: Any) -> None:
        super().__init__(f"No contract at address {deployment.address} (Removed from manifest)")
        self.deployment = deployment
