"""Persisted manifest records."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from proxyguard.core.types import ProxyKind
from proxyguard.storage.layout import StorageLayout

CURRENT_MANIFEST_VERSION = "3.3"

_MODEL_CONFIG: dict[str, Any] = {
    "populate_by_name": True,
    "alias_generator": to_camel,
    "extra": "ignore",
}


class Deployment(BaseModel):
    model_config = _MODEL_CONFIG

    address: str
    tx_hash: str | None = None


class AdminDeployment(Deployment):
    pass


class ProxyDeployment(Deployment):
    kind: ProxyKind


class BeaconDeployment(Deployment):
    abi: list[Any] | None = None


class ImplDeployment(Deployment):
    """An implementation contract, keyed in the manifest by its version hash."""

    layout: StorageLayout
    abi: list[Any] | None = None
    all_addresses: list[str] | None = None
    all_versions: dict[str, StorageLayout] | None = None

    def has_address(self, address: str) -> bool:
        wanted = address.lower()
        return self.address.lower() == wanted or any(a.lower() == wanted for a in self.all_addresses or [])


class ManifestData(BaseModel):
    """Everything recorded for one network."""

    model_config = _MODEL_CONFIG

    manifest_version: str = CURRENT_MANIFEST_VERSION
    admin: AdminDeployment | None = None
    proxies: list[ProxyDeployment] = Field(default_factory=list)
    impls: dict[str, ImplDeployment] = Field(default_factory=dict)
    beacons: dict[str, BeaconDeployment] = Field(default_factory=dict)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
