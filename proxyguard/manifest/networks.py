"""Chain id to manifest file naming."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class NetworkConfig:
    """A network whose manifest file is named after it."""

    chain_id: int
    name: str
    is_testnet: bool = False


# ── Network Registry ─────────────────────────────────────────────────────────

NETWORKS: dict[int, NetworkConfig] = {
    n.chain_id: n
    for n in (
        NetworkConfig(1, "mainnet"),
        NetworkConfig(5, "goerli", is_testnet=True),
        NetworkConfig(10, "optimism"),
        NetworkConfig(56, "bsc"),
        NetworkConfig(97, "bsc-testnet", is_testnet=True),
        NetworkConfig(100, "gnosis"),
        NetworkConfig(137, "polygon"),
        NetworkConfig(250, "fantom"),
        NetworkConfig(324, "zksync"),
        NetworkConfig(1284, "moonbeam"),
        NetworkConfig(8453, "base"),
        NetworkConfig(42161, "arbitrum-one"),
        NetworkConfig(42220, "celo"),
        NetworkConfig(43113, "avalanche-fuji", is_testnet=True),
        NetworkConfig(43114, "avalanche"),
        NetworkConfig(59144, "linea"),
        NetworkConfig(80001, "polygon-mumbai", is_testnet=True),
        NetworkConfig(84532, "base-sepolia", is_testnet=True),
        NetworkConfig(421614, "arbitrum-sepolia", is_testnet=True),
        NetworkConfig(534352, "scroll"),
        NetworkConfig(11155111, "sepolia", is_testnet=True),
        NetworkConfig(11155420, "optimism-sepolia", is_testnet=True),
    )
}


def get_network_name(chain_id: int) -> str | None:
    network = NETWORKS.get(chain_id)
    return network.name if network else None


def fallback_name(chain_id: int) -> str:
    return f"unknown-{chain_id}"


def manifest_base_name(chain_id: int) -> str:
    """File stem for a chain: its network name, or ``unknown-<id>``."""
    return get_network_name(chain_id) or fallback_name(chain_id)
