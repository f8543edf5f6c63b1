from pathlib import Path

import pytest

from proxy_upgrader.config import DEFAULT_GAS_LIMIT, NETWORKS, load_settings
from proxy_upgrader.errors import ConfigurationError

ENV_VARS = (
    "RPC_URL", "PRIVATE_KEY", "GAS_LIMIT", "CONFIRMATION_TIMEOUT", "TARGET_VERSION",
    "ARTIFACTS_DIR", "REGISTRY_PATH", "PROXY_ARTIFACT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)


def test_defaults(monkeypatch):
    monkeypatch.setenv("PRIVATE_KEY", "ab" * 32)
    settings = load_settings("localhost")

    assert settings.network is NETWORKS["localhost"]
    assert settings.network.chain_id == 31337
    assert settings.rpc_url == NETWORKS["localhost"].rpc_url
    assert settings.private_key == "0x" + "ab" * 32
    assert settings.gas_limit == DEFAULT_GAS_LIMIT == 2_100_000
    assert settings.confirmation_timeout == 120
    assert settings.artifacts_dir == Path("out")
    assert settings.target_version is None


def test_environment_and_overrides(monkeypatch):
    monkeypatch.setenv("PRIVATE_KEY", "0x" + "cd" * 32)
    monkeypatch.setenv("RPC_URL", "http://node:8545")
    monkeypatch.setenv("GAS_LIMIT", "3000000")
    monkeypatch.setenv("TARGET_VERSION", "0.8.11")
    monkeypatch.setenv("ARTIFACTS_DIR", "artifacts")

    settings = load_settings("sepolia", artifacts_dir=Path("build"), registry_path=None)

    assert settings.network.chain_id == 11155111
    assert settings.rpc_url == "http://node:8545"
    assert settings.gas_limit == 3_000_000
    assert settings.target_version == "0.8.11"
    assert settings.artifacts_dir == Path("build")
    assert settings.registry_path == Path("deployments/registry.json")


def test_missing_key():
    with pytest.raises(ConfigurationError, match="PRIVATE_KEY"):
        load_settings("localhost")
    assert load_settings("localhost", require_key=False).private_key == ""


def test_unknown_network():
    with pytest.raises(ConfigurationError, match="Unknown network"):
        load_settings("rinkeby", require_key=False)


@pytest.mark.parametrize("value", ["lots", "0", "-5"])
def test_bad_gas_limit(monkeypatch, value):
    monkeypatch.setenv("GAS_LIMIT", value)
    with pytest.raises(ConfigurationError, match="GAS_LIMIT"):
        load_settings("localhost", require_key=False)
