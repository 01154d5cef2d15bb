"""Fetch-or-deploy helpers over the manifest.

The deploy callable is injected; this module never talks to a chain. It
decides, under the manifest lock, whether a recorded deployment can be
reused, and otherwise runs ``deploy`` and records the result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from proxyguard.core.errors import InvalidDeployment
from proxyguard.manifest.models import AdminDeployment, Deployment, ImplDeployment, ManifestData
from proxyguard.manifest.store import Manifest

logger = logging.getLogger(__name__)

D = TypeVar("D", bound=Deployment)

CodeExists = Callable[[str], bool]


@dataclass
class ManifestField(Generic[D]):
    """A single deployment slot inside the manifest data."""

    description: str
    get: Callable[[ManifestData], Optional[D]]
    set: Callable[[ManifestData, Optional[D]], None]


def _impl_field(version: str) -> ManifestField[ImplDeployment]:
    def set_impl(data: ManifestData, value: Optional[ImplDeployment]) -> None:
        if value is None:
            data.impls.pop(version, None)
        else:
            data.impls[version] = value

    return ManifestField(
        description="implementation",
        get=lambda data: data.impls.get(version),
        set=set_impl,
    )


def _admin_field() -> ManifestField[AdminDeployment]:
    def set_admin(data: ManifestData, value: Optional[AdminDeployment]) -> None:
        data.admin = value

    return ManifestField(description="admin", get=lambda data: data.admin, set=set_admin)


def fetch_or_deploy_generic(
    manifest: Manifest,
    field: ManifestField[D],
    deploy: Callable[[], D],
    code_exists: CodeExists,
) -> D:
    def run(data: ManifestData) -> D:
        stored = field.get(data)
        if stored is not None and code_exists(stored.address):
            logger.debug("Reusing %s at %s", field.description, stored.address, extra=manifest.log_context())
            return stored
        if stored is not None:
            logger.warning(
                "Recorded %s at %s has no code; redeploying",
                field.description,
                stored.address,
                extra=manifest.log_context(),
            )
        deployment = deploy()
        field.set(data, deployment)
        logger.info("Deployed %s at %s", field.description, deployment.address, extra=manifest.log_context())
        return deployment

    deployment = manifest.locked_run(run)

    if not code_exists(deployment.address):
        def remove(data: ManifestData) -> None:
            stored = field.get(data)
            if stored is not None and stored.tx_hash == deployment.tx_hash:
                field.set(data, None)

        manifest.locked_run(remove)
        raise InvalidDeployment(deployment)

    return deployment


def fetch_or_deploy(
    manifest: Manifest,
    version: str,
    deploy: Callable[[], ImplDeployment],
    code_exists: CodeExists,
) -> ImplDeployment:
    """Return the implementation recorded for ``version``, deploying it if needed.

    Raises ``InvalidDeployment`` (and drops the record) when the resulting
    address has no code, e.g. after a development chain was reset.
    """
    return fetch_or_deploy_generic(manifest, _impl_field(version), deploy, code_exists)


def fetch_or_deploy_admin(
    manifest: Manifest,
    deploy: Callable[[], AdminDeployment],
    code_exists: CodeExists,
) -> AdminDeployment:
    return fetch_or_deploy_generic(manifest, _admin_field(), deploy, code_exists)
