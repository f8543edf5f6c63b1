"""Network and process configuration.

Settings are read once from the environment (or a .env file) at process start
and are immutable afterwards.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

# ==============================================================================
# Networks
# ==============================================================================

@dataclass(frozen=True)
class NetworkConfig:
    """Network-specific configuration"""
    name: str
    chain_id: int
    rpc_url: str
    explorer_url: Optional[str] = None

NETWORKS: Dict[str, NetworkConfig] = {
    "localhost": NetworkConfig(
        name="Local Hardhat/Anvil node",
        chain_id=31337,
        rpc_url="http://127.0.0.1:8545",
    ),
    "sepolia": NetworkConfig(
        name="Sepolia Testnet",
        chain_id=11155111,
        rpc_url="https://rpc.sepolia.org",
        explorer_url="https://sepolia.etherscan.io",
    ),
    "mainnet": NetworkConfig(
        name="Ethereum Mainnet",
        chain_id=1,
        rpc_url="https://eth.llamarpc.com",
        explorer_url="https://etherscan.io",
    ),
}

DEFAULT_GAS_LIMIT = 2_100_000
DEFAULT_CONFIRMATION_TIMEOUT = 120

# ==============================================================================
# Settings
# ==============================================================================

@dataclass(frozen=True)
class Settings:
    network: NetworkConfig
    rpc_url: str
    private_key: str
    gas_limit: int = DEFAULT_GAS_LIMIT
    confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT
    target_version: Optional[str] = None
    artifacts_dir: Path = Path("out")
    registry_path: Path = Path("deployments/registry.json")
    proxy_artifact: str = "ERC1967Proxy"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def load_settings(
    network: str = "localhost",
    env_file: Optional[str] = None,
    require_key: bool = True,
    **overrides,
) -> Settings:
    """
    Build Settings from the environment.

    Recognised variables: RPC_URL, PRIVATE_KEY, GAS_LIMIT, CONFIRMATION_TIMEOUT,
    TARGET_VERSION, ARTIFACTS_DIR, REGISTRY_PATH, PROXY_ARTIFACT. Keyword
    overrides win over the environment.
    """
    load_dotenv(env_file)

    if network not in NETWORKS:
        raise ConfigurationError(f"Unknown network {network!r} (known: {', '.join(sorted(NETWORKS))})")
    network_config = NETWORKS[network]

    pk = overrides.get("private_key") or os.getenv("PRIVATE_KEY") or ""
    if not pk and require_key:
        raise ConfigurationError("PRIVATE_KEY environment variable not set")
    if pk and not pk.startswith("0x"):
        pk = "0x" + pk

    values = {
        "rpc_url": os.getenv("RPC_URL", network_config.rpc_url),
        "gas_limit": _int_env("GAS_LIMIT", DEFAULT_GAS_LIMIT),
        "confirmation_timeout": _int_env("CONFIRMATION_TIMEOUT", DEFAULT_CONFIRMATION_TIMEOUT),
        "target_version": os.getenv("TARGET_VERSION") or None,
        "artifacts_dir": Path(os.getenv("ARTIFACTS_DIR", "out")),
        "registry_path": Path(os.getenv("REGISTRY_PATH", "deployments/registry.json")),
        "proxy_artifact": os.getenv("PROXY_ARTIFACT", "ERC1967Proxy"),
    }
    values.update({k: v for k, v in overrides.items() if v is not None and k != "private_key"})

    if values["gas_limit"] <= 0:
        raise ConfigurationError("GAS_LIMIT must be positive")

    return Settings(network=network_config, private_key=pk, **values)
