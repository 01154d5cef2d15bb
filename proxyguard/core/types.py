"""Shared enums and option schemas used across proxyguard."""

from __future__ import annotations

import enum

from pydantic import BaseModel, Field

from proxyguard.core.config import get_settings


# ── Enums ────────────────────────────────────────────────────────────────────


class ProxyKind(str, enum.Enum):
    """Proxy pattern variants."""

    TRANSPARENT = "transparent"
    UUPS = "uups"
    BEACON = "beacon"


class SafetyErrorKind(str, enum.Enum):
    """Source-level patterns that make an implementation unsafe behind a proxy."""

    STATE_VARIABLE_ASSIGNMENT = "state-variable-assignment"
    STATE_VARIABLE_IMMUTABLE = "state-variable-immutable"
    EXTERNAL_LIBRARY_LINKING = "external-library-linking"
    STRUCT_DEFINITION = "struct-definition"
    ENUM_DEFINITION = "enum-definition"
    CONSTRUCTOR = "constructor"
    DELEGATECALL = "delegatecall"
    SELFDESTRUCT = "selfdestruct"
    MISSING_PUBLIC_UPGRADETO = "missing-public-upgradeto"


UNSAFE_ALLOW_WARNINGS: dict[SafetyErrorKind, str] = {
    SafetyErrorKind.STATE_VARIABLE_ASSIGNMENT: "You are using the `unsafeAllow.state-variable-assignment` flag.",
    SafetyErrorKind.STATE_VARIABLE_IMMUTABLE: "You are using the `unsafeAllow.state-variable-immutable` flag.",
    SafetyErrorKind.EXTERNAL_LIBRARY_LINKING: (
        "You are using the `unsafeAllow.external-library-linking` flag to include external libraries. "
        "Make sure you have manually checked that the linked libraries are upgrade safe."
    ),
    SafetyErrorKind.STRUCT_DEFINITION: (
        "You are using the `unsafeAllow.struct-definition` flag to skip storage checks for structs. "
        "Make sure you have manually checked the storage layout for incompatibilities."
    ),
    SafetyErrorKind.ENUM_DEFINITION: (
        "You are using the `unsafeAllow.enum-definition` flag to skip storage checks for enums. "
        "Make sure you have manually checked the storage layout for incompatibilities."
    ),
    SafetyErrorKind.CONSTRUCTOR: "You are using the `unsafeAllow.constructor` flag.",
    SafetyErrorKind.DELEGATECALL: "You are using the `unsafeAllow.delegatecall` flag.",
    SafetyErrorKind.SELFDESTRUCT: "You are using the `unsafeAllow.selfdestruct` flag.",
    SafetyErrorKind.MISSING_PUBLIC_UPGRADETO: "You are using the `unsafeAllow.missing-public-upgradeto` flag.",
}


# ── Options ──────────────────────────────────────────────────────────────────


class ValidationOptions(BaseModel):
    """Caller-requested suppressions for an upgrade check.

    ``unsafe_allow_custom_types`` and ``strict_renames`` default to the
    ``PROXYGUARD_`` settings of the same name.
    """

    kind: ProxyKind | None = None
    unsafe_allow: list[SafetyErrorKind] = Field(default_factory=list)
    unsafe_allow_custom_types: bool = Field(default_factory=lambda: get_settings().unsafe_allow_custom_types)
    unsafe_allow_linked_libraries: bool = False
    unsafe_skip_storage_check: bool = False
    strict_renames: bool = Field(default_factory=lambda: get_settings().strict_renames)

    def with_defaults(self) -> "ValidationOptions":
        """Expand the umbrella flags into their ``unsafe_allow`` kinds and back."""
        allow = list(self.unsafe_allow)
        custom_types = self.unsafe_allow_custom_types or (
            SafetyErrorKind.STRUCT_DEFINITION in allow and SafetyErrorKind.ENUM_DEFINITION in allow
        )
        linked = self.unsafe_allow_linked_libraries or SafetyErrorKind.EXTERNAL_LIBRARY_LINKING in allow

        if custom_types:
            allow += [SafetyErrorKind.ENUM_DEFINITION, SafetyErrorKind.STRUCT_DEFINITION]
        if linked:
            allow.append(SafetyErrorKind.EXTERNAL_LIBRARY_LINKING)

        return self.model_copy(
            update={
                "unsafe_allow": list(dict.fromkeys(allow)),
                "unsafe_allow_custom_types": custom_types,
                "unsafe_allow_linked_libraries": linked,
            }
        )
