"""Manifest schema migration.

Migration runs on the raw JSON mapping before it is validated, one step per
version, and is strictly forward:

  3.0 -> 3.1   layouts gain struct/enum members (refreshed from validation
               data when available)
  3.1 -> 3.2   ``proxies`` list added
  3.2 -> 3.3   ``beacons`` map added; a bare admin address becomes a record

Anything before 3.0, newer than the current version, or unversioned is
rejected; the store reports it as a corrupted manifest.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Optional

from proxyguard.core.errors import UpgradesError
from proxyguard.manifest.models import CURRENT_MANIFEST_VERSION

logger = logging.getLogger(__name__)

LayoutUpdater = Callable[[str, dict[str, Any]], Optional[dict[str, Any]]]


class MigrationError(UpgradesError):
    """The manifest version cannot be migrated."""


def parse_version(version: Any) -> tuple[int, int]:
    if not isinstance(version, str):
        raise MigrationError("Manifest has no manifestVersion")
    try:
        major, minor = version.split(".")
        return int(major), int(minor)
    except ValueError as exc:
        raise MigrationError(f"Malformed manifestVersion {version!r}") from exc


def _to_3_1(data: dict[str, Any], update_layout: LayoutUpdater | None) -> None:
    if update_layout is None:
        return
    impls = data.get("impls", {})
    if not isinstance(impls, dict):
        raise MigrationError("Manifest impls is not an object")
    for version, impl in impls.items():
        if not isinstance(impl, dict):
            raise MigrationError(f"Implementation {version} is not an object")
        layout = impl.get("layout")
        if not isinstance(layout, dict):
            continue
        updated = update_layout(version, layout)
        if updated is not None:
            impl["layout"] = updated
        else:
            logger.warning("Could not refresh storage layout of implementation %s", version)


def _to_3_2(data: dict[str, Any], update_layout: LayoutUpdater | None) -> None:
    data.setdefault("proxies", [])


def _to_3_3(data: dict[str, Any], update_layout: LayoutUpdater | None) -> None:
    data.setdefault("beacons", {})
    if isinstance(data.get("admin"), str):
        data["admin"] = {"address": data["admin"]}


_STEPS: list[tuple[str, str, Callable[[dict[str, Any], LayoutUpdater | None], None]]] = [
    ("3.0", "3.1", _to_3_1),
    ("3.1", "3.2", _to_3_2),
    ("3.2", "3.3", _to_3_3),
]


def migrate_manifest(
    data: dict[str, Any], update_layout: LayoutUpdater | None = None
) -> tuple[dict[str, Any], bool]:
    """Return ``(migrated copy, whether anything changed)``.

    ``update_layout(version_hash, layout)`` may return a refreshed layout for
    an implementation recorded under a pre-3.1 manifest.
    """
    version = parse_version(data.get("manifestVersion"))
    current = parse_version(CURRENT_MANIFEST_VERSION)

    if version < (3, 0):
        raise MigrationError(
            f"Manifest version {data['manifestVersion']} is too old",
            "Migrate the project with the legacy migration tooling first",
        )
    if version > current:
        raise MigrationError(
            f"Manifest version {data['manifestVersion']} is newer than the supported {CURRENT_MANIFEST_VERSION}",
            "Upgrade proxyguard to read this manifest",
        )
    if version == current:
        return data, False

    migrated = copy.deepcopy(data)
    for start, end, step in _STEPS:
        if parse_version(start) >= version:
            step(migrated, update_layout)
            migrated["manifestVersion"] = end
            logger.info("Migrated manifest from %s to %s", start, end)
    return migrated, True
