"""Manifest store: per-network, file-backed deployment records.

Every read-modify-write goes through ``Manifest.locked_run``:

    manifest = Manifest.for_network(80001)

    def record(data: ManifestData) -> None:
        data.proxies.append(ProxyDeployment(address=addr, kind=ProxyKind.UUPS))

    manifest.locked_run(record)

The lock is a ``filelock`` lock file next to the manifest, so cooperating
processes serialise on it. Nested ``locked_run`` calls on the same instance
(and thread) share the outer call's data; only the outermost call writes,
and only when something changed. Writes go to a temporary file in the same
directory followed by ``os.replace``, so readers never see a partial file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, TypeVar

from filelock import FileLock, Timeout
from pydantic import ValidationError

from proxyguard.core.config import get_settings
from proxyguard.core.errors import (
    AdminNotFound,
    DeploymentNotFound,
    LockTimeout,
    ManifestCorrupted,
    UpgradesError,
)
from proxyguard.core.logging import NetworkLogFilter
from proxyguard.manifest.migrate import LayoutUpdater, MigrationError, migrate_manifest
from proxyguard.manifest.models import (
    AdminDeployment,
    BeaconDeployment,
    ImplDeployment,
    ManifestData,
    ProxyDeployment,
)
from proxyguard.manifest.networks import fallback_name, manifest_base_name

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEV_SUBDIR = "proxyguard"


@dataclass(frozen=True)
class DevInstanceMetadata:
    """Identifies a local development chain instance (and what it forks)."""

    instance_id: str
    forked_chain_id: int | None = None


class Manifest:
    """Deployment records for one network."""

    def __init__(
        self,
        chain_id: int,
        dev_instance: DevInstanceMetadata | None = None,
        *,
        manifest_dir: str | Path | None = None,
        tmp_dir: str | Path | None = None,
        lock_timeout: float | None = None,
        update_layout: LayoutUpdater | None = None,
    ) -> None:
        settings = get_settings()
        self.chain_id = chain_id
        self.dev_instance = dev_instance
        self.manifest_dir = Path(manifest_dir if manifest_dir is not None else settings.manifest_dir)
        self.lock_timeout = lock_timeout if lock_timeout is not None else settings.lock_timeout_seconds
        self.update_layout = update_layout
        self._poll_interval = settings.lock_poll_interval

        self.file = self.manifest_dir / f"{manifest_base_name(chain_id)}.json"
        self.fallback_file = self.manifest_dir / f"{fallback_name(chain_id)}.json"
        self.dev_file: Path | None = None
        self.parent: Manifest | None = None

        if dev_instance is not None:
            dev_dir = Path(tmp_dir if tmp_dir is not None else settings.dev_tmp_dir) / DEV_SUBDIR
            self.dev_file = dev_dir / f"dev-{chain_id}-{dev_instance.instance_id}.json"
            self.lock_file = dev_dir / f"chain-{chain_id}-{dev_instance.instance_id}.lock"
            if dev_instance.forked_chain_id is not None:
                self.parent = Manifest(
                    dev_instance.forked_chain_id,
                    manifest_dir=self.manifest_dir,
                    lock_timeout=self.lock_timeout,
                    update_layout=update_layout,
                )
        else:
            self.lock_file = self.manifest_dir / f"chain-{chain_id}.lock"

        self._lock = FileLock(str(self.lock_file))
        self._local = threading.local()

    @classmethod
    def for_network(cls, chain_id: int, dev_instance: DevInstanceMetadata | None = None, **kwargs: Any) -> "Manifest":
        return cls(chain_id, dev_instance, **kwargs)

    @property
    def network(self) -> str:
        return manifest_base_name(self.chain_id)

    def log_context(self) -> dict[str, Any]:
        return {"network": self.network, "manifest_file": str(self.dev_file or self.file)}

    def log_filter(self) -> NetworkLogFilter:
        """A filter stamping this manifest's network on every record a handler emits."""
        return NetworkLogFilter(**self.log_context())

    # ── Locking ──────────────────────────────────────────────────────────

    @property
    def _depth(self) -> int:
        return getattr(self._local, "depth", 0)

    def locked_run(self, fn: Callable[[ManifestData], T]) -> T:
        """Run ``fn`` on the manifest data under the exclusive lock.

        Reentrant: a nested call receives the same in-memory data and leaves
        writing to the outermost call.
        """
        if self._depth > 0:
            self._local.depth += 1
            try:
                return fn(self._local.data)
            finally:
                self._local.depth -= 1

        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        started = time.monotonic()
        try:
            self._lock.acquire(timeout=self.lock_timeout, poll_interval=self._poll_interval)
        except Timeout as exc:
            logger.error("Manifest lock timed out", extra=self.log_context())
            raise LockTimeout(str(self.lock_file), self.lock_timeout) from exc

        try:
            data, needs_write = self._read_unlocked()
            before = data.to_json_dict()
            self._local.depth = 1
            self._local.data = data
            result = fn(data)
            after = self._local.data
            if needs_write or after.to_json_dict() != before:
                self._write_unlocked(after)
            return result
        finally:
            self._local.depth = 0
            self._local.data = None
            self._lock.release()
            logger.debug(
                "Manifest lock held for %.1f ms",
                (time.monotonic() - started) * 1000,
                extra={**self.log_context(), "duration_ms": round((time.monotonic() - started) * 1000, 1)},
            )

    # ── Read / write ─────────────────────────────────────────────────────

    def read(self) -> ManifestData:
        """Current data; inside ``locked_run`` this is the shared in-flight copy.

        Outside a lock this is the last committed state, which may be stale.
        """
        if self._depth > 0:
            return self._local.data
        data, _ = self._read_unlocked()
        return data

    def write(self, data: ManifestData) -> None:
        """Replace the manifest data (committed when the outermost lock exits)."""
        if self._depth > 0:
            self._local.data = data
            return

        def replace(_: ManifestData) -> None:
            self._local.data = data

        self.locked_run(replace)

    def _read_path(self) -> Path | None:
        if self.dev_file is not None:
            if self.dev_file.exists():
                return self.dev_file
            return self.parent._read_path() if self.parent is not None else None

        file_exists = self.file.exists()
        if self.fallback_file != self.file and self.fallback_file.exists():
            if file_exists:
                raise UpgradesError(
                    f"Network files with different names {self.fallback_file} and {self.file} "
                    "were found for the same network.",
                    f"More than one network file was found for chain ID {self.chain_id}. "
                    f"Determine which file is the most up to date version, then take a backup of "
                    f"and delete the other file.",
                )
            return self.fallback_file
        return self.file if file_exists else None

    def _read_unlocked(self) -> tuple[ManifestData, bool]:
        """``(data, needs_write)``; a migrated or legacy-named file needs rewriting."""
        path = self._read_path()
        if path is None:
            return ManifestData(), False

        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ManifestCorrupted(str(path), f"Invalid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise ManifestCorrupted(str(path), "Top-level value is not an object")

        try:
            raw, migrated = migrate_manifest(raw, self.update_layout)
            data = ManifestData.model_validate(raw)
        except MigrationError as exc:
            raise ManifestCorrupted(str(path), str(exc)) from exc
        except ValidationError as exc:
            raise ManifestCorrupted(str(path), str(exc)) from exc

        legacy_name = self.dev_file is None and path == self.fallback_file and path != self.file
        from_parent = self.dev_file is not None and path != self.dev_file
        return data, migrated or legacy_name or from_parent

    def _write_unlocked(self, data: ManifestData) -> None:
        target = self.dev_file or self.file
        target.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(data.to_json_dict(), indent=2) + "\n"

        fd, tmp_path = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, target)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        if self.dev_file is None and self.fallback_file != self.file and self.fallback_file.exists():
            self.fallback_file.unlink()
            logger.info("Renamed %s to %s", self.fallback_file, self.file, extra=self.log_context())
        logger.debug("Wrote manifest", extra=self.log_context())

    # ── Records ──────────────────────────────────────────────────────────

    def add_proxy(self, proxy: ProxyDeployment) -> None:
        def update(data: ManifestData) -> None:
            data.proxies = [p for p in data.proxies if p.address.lower() != proxy.address.lower()]
            data.proxies.append(proxy)

        self.locked_run(update)
        logger.info("Recorded %s proxy at %s", proxy.kind.value, proxy.address, extra=self.log_context())

    def remove_proxy(self, address: str) -> None:
        def update(data: ManifestData) -> None:
            data.proxies = [p for p in data.proxies if p.address.lower() != address.lower()]

        self.locked_run(update)

    def get_proxy_from_address(self, address: str) -> ProxyDeployment:
        def find(data: ManifestData) -> ProxyDeployment:
            for proxy in data.proxies:
                if proxy.address.lower() == address.lower():
                    return proxy
            raise DeploymentNotFound(f"Proxy at address {address} is not registered")

        return self.locked_run(find)

    def add_deployment(self, version: str, deployment: ImplDeployment) -> None:
        """Record an implementation under its version hash.

        Redeploying the same version keeps every address it was deployed at.
        """

        def update(data: ManifestData) -> None:
            existing = data.impls.get(version)
            if existing is not None and existing.address.lower() != deployment.address.lower():
                addresses = [existing.address, *(existing.all_addresses or [])]
                for address in [deployment.address, *(deployment.all_addresses or [])]:
                    if address.lower() not in (a.lower() for a in addresses):
                        addresses.append(address)
                data.impls[version] = deployment.model_copy(update={"all_addresses": addresses})
            else:
                data.impls[version] = deployment

        self.locked_run(update)
        logger.info("Recorded implementation %s at %s", version, deployment.address, extra=self.log_context())

    def get_deployment(self, version: str) -> ImplDeployment:
        def find(data: ManifestData) -> ImplDeployment:
            deployment = data.impls.get(version)
            if deployment is None:
                raise DeploymentNotFound(f"No implementation registered for version {version}")
            return deployment

        return self.locked_run(find)

    def get_deployment_from_address(self, address: str) -> ImplDeployment:
        def find(data: ManifestData) -> ImplDeployment:
            for deployment in data.impls.values():
                if deployment.has_address(address):
                    return deployment
            raise DeploymentNotFound(
                f"Deployment at address {address} is not registered",
                "Import the implementation into the manifest before validating an upgrade from it",
            )

        return self.locked_run(find)

    def get_admin(self) -> AdminDeployment:
        def find(data: ManifestData) -> AdminDeployment:
            if data.admin is None:
                raise AdminNotFound(f"No proxy admin registered on {self.network}")
            return data.admin

        return self.locked_run(find)

    def set_admin(self, admin: AdminDeployment | None) -> None:
        def update(data: ManifestData) -> None:
            data.admin = admin

        self.locked_run(update)

    def add_beacon(self, beacon: BeaconDeployment) -> None:
        def update(data: ManifestData) -> None:
            data.beacons[beacon.address] = beacon

        self.locked_run(update)
        logger.info("Recorded beacon at %s", beacon.address, extra=self.log_context())

    def get_beacon_from_address(self, address: str) -> BeaconDeployment:
        def find(data: ManifestData) -> BeaconDeployment:
            for key, beacon in data.beacons.items():
                if key.lower() == address.lower():
                    return beacon
            raise DeploymentNotFound(f"Beacon at address {address} is not registered")

        return self.locked_run(find)
