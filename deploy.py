#!/usr/bin/env python3
"""
Box Proxy Deployer

Deploys the Box contract behind a UUPS (ERC-1967) proxy and upgrades it
in place, keeping the proxy address and its storage.

Commands:
  deploy     - Deploy an implementation + proxy and run its initializer
  upgrade    - Check a new implementation's storage layout and repoint the proxy
  status     - Show what the local registry knows about deployed proxies
  reconcile  - Re-sync the registry with the proxy's on-chain implementation

Usage:
  # First deployment (runs Box.initialize() through the proxy)
  python deploy.py deploy Box

  # Upgrade an existing proxy to BoxV2
  python deploy.py upgrade 0xProxyAddress BoxV2

  # Upgrade and call a reinitializer in the same transaction
  python deploy.py upgrade 0xProxyAddress BoxV2 --call initializeV2 --call-args '[42]'

  # Deploy to sepolia (default is localhost)
  python deploy.py --network sepolia deploy Box

Environment variables (or .env file):
  PRIVATE_KEY           - Deployer/admin private key (with 0x prefix)
  RPC_URL               - Optional override for RPC URL
  GAS_LIMIT             - Gas ceiling per transaction (default 2100000)
  CONFIRMATION_TIMEOUT  - Seconds to wait for a receipt (default 120)
  TARGET_VERSION        - Required solc version prefix of the artifacts, e.g. 0.8.11
  ARTIFACTS_DIR         - Compiled artifacts directory (default out/)
  REGISTRY_PATH         - Proxy registry file (default deployments/registry.json)

Exit codes: 0 on success, otherwise the failure's own code (see
proxy_upgrader/errors.py), 1 for unexpected errors.
"""

import argparse
import json
import logging
import subprocess
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from proxy_upgrader.artifacts import Implementation, load_implementation
from proxy_upgrader.config import NETWORKS, Settings, load_settings
from proxy_upgrader.errors import (
    ConfigurationError,
    IncompatibleUpgradeError,
    SchemaExtractionError,
    UncertainOutcomeError,
    UpgradeToolError,
)
from proxy_upgrader.initializer import DeploymentInitializer
from proxy_upgrader.ledger import Web3Ledger
from proxy_upgrader.orchestrator import UpgradeOrchestrator
from proxy_upgrader.registry import ProxyRecord, ProxyRegistry

# ==============================================================================
# Helper Functions
# ==============================================================================

def compile_contracts(contracts_dir: Path):
    """Compile contracts using forge"""
    print("\nCompiling contracts...")

    result = subprocess.run(
        ["forge", "build", "--extra-output", "storageLayout"],
        cwd=contracts_dir,
        capture_output=True,
        text=True
    )

    if result.returncode != 0:
        raise ConfigurationError(f"Compilation failed:\n{result.stderr}")

    print("  ✓ Contracts compiled successfully")


def build_ledger(settings: Settings) -> Web3Ledger:
    return Web3Ledger.from_settings(settings)


def load_artifact(settings: Settings, contract: str, source_file: Optional[str] = None) -> Implementation:
    try:
        implementation = load_implementation(contract, settings.artifacts_dir, source_file)
    except FileNotFoundError as e:
        raise SchemaExtractionError(str(e)) from e

    if settings.target_version and implementation.compiler_version:
        if not implementation.compiler_version.startswith(settings.target_version):
            raise ConfigurationError(
                f"{implementation.name} was compiled with solc {implementation.compiler_version}, "
                f"expected {settings.target_version}"
            )
    return implementation


def parse_json_args(raw: Optional[str]) -> List[Any]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Arguments must be a JSON list: {e}") from e
    if not isinstance(value, list):
        raise ConfigurationError("Arguments must be a JSON list")
    return value


def record_summary(record: ProxyRecord) -> Dict[str, Any]:
    return {
        "proxy": record.proxy_address,
        "implementation": record.implementation.address,
        "implementation_name": record.implementation.name,
        "implementation_id": record.implementation.identity,
        "admin": record.admin,
        "initialized": record.initialized,
        "storage_slots": len(record.storage_schema),
        "previous_implementations": [h.address for h in record.history],
    }


def save_deployment(deployment_data: Dict, filename: str):
    """Save deployment data to JSON file"""
    with open(filename, "w") as f:
        json.dump(deployment_data, f, indent=2)
    print(f"\nDeployment info saved to: {filename}")


def print_header(settings: Settings, ledger: Web3Ledger):
    print(f"\n{'='*60}")
    print("Box Proxy Deployer")
    print(f"{'='*60}")
    print(f"Network:  {settings.network.name} (Chain ID: {settings.network.chain_id})")
    print(f"RPC:      {settings.rpc_url}")
    print(f"Deployer: {ledger.address}")
    print(f"{'='*60}\n")

# ==============================================================================
# Commands
# ==============================================================================

def cmd_deploy(args, settings: Settings, registry: ProxyRegistry) -> Dict[str, Any]:
    implementation = load_artifact(settings, args.contract, args.source)
    proxy_artifact = load_artifact(settings, settings.proxy_artifact)
    ledger = build_ledger(settings)
    print_header(settings, ledger)

    print(f"Deploying {implementation.name} behind a proxy...")
    initializer = DeploymentInitializer(ledger, registry, proxy_artifact)
    record = initializer.deploy_new(
        implementation,
        parse_json_args(args.args),
        admin=args.admin or ledger.address,
        initializer=args.initializer,
    )

    print(f"  ✓ Proxy deployed at: {record.proxy_address}")
    print(f"  ✓ Implementation:    {record.implementation.address}")
    return {"action": "deploy", **record_summary(record)}


def cmd_upgrade(args, settings: Settings, registry: ProxyRegistry) -> Dict[str, Any]:
    candidate = load_artifact(settings, args.contract, args.source)
    ledger = build_ledger(settings)
    print_header(settings, ledger)

    call_data = b""
    if args.call:
        try:
            call_data = ledger.encode_call(candidate.abi, args.call, parse_json_args(args.call_args))
        except ValueError as e:
            raise ConfigurationError(f"Cannot encode {candidate.name}.{args.call}: {e}") from e

    print(f"Upgrading {args.proxy} to {candidate.name}...")
    orchestrator = UpgradeOrchestrator(ledger, registry)
    result = orchestrator.upgrade(args.proxy, candidate, ledger.address, call_data=call_data)

    for warning in result.warnings:
        print(f"  ! {warning}")
    if result.noop:
        print(f"  ✓ {candidate.name} is already live at {result.new_implementation_address}, nothing to do")
    else:
        print(f"  ✓ Proxy upgraded: {result.previous_implementation_address} -> {result.new_implementation_address}")
        print(f"  TX: {result.tx_hash}")

    return {
        "action": "upgrade",
        "proxy": result.proxy_address,
        "implementation": result.new_implementation_address,
        "previous_implementation": result.previous_implementation_address,
        "tx_hash": result.tx_hash,
        "noop": result.noop,
        "target_version": settings.target_version,
    }


def cmd_status(args, settings: Settings, registry: ProxyRegistry) -> Dict[str, Any]:
    if args.proxy:
        records = [registry.lookup(args.proxy)]
    else:
        records = registry.records()

    if not records:
        print("No proxies registered.")
    for record in records:
        print(f"{record.proxy_address} -> {record.implementation.address} ({record.implementation.name})")
        pending = registry.pending(record.proxy_address)
        if pending is not None:
            print(f"  ! pending upgrade to {pending.implementation.address} (tx {pending.implementation.tx_hash})")

    return {"action": "status", "proxies": [record_summary(r) for r in records]}


def cmd_reconcile(args, settings: Settings, registry: ProxyRegistry) -> Dict[str, Any]:
    ledger = build_ledger(settings)
    print_header(settings, ledger)

    record = UpgradeOrchestrator(ledger, registry).reconcile(args.proxy)
    print(f"  ✓ {record.proxy_address} -> {record.implementation.address} ({record.implementation.name})")
    return {"action": "reconcile", **record_summary(record)}


COMMANDS = {
    "deploy": cmd_deploy,
    "upgrade": cmd_upgrade,
    "status": cmd_status,
    "reconcile": cmd_reconcile,
}

# ==============================================================================
# Main CLI
# ==============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Deploy and upgrade the Box contract behind a UUPS proxy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Deploy Box and its proxy
  python deploy.py deploy Box

  # Upgrade the proxy to BoxV2
  python deploy.py upgrade 0xProxyAddress BoxV2

  # Show registered proxies
  python deploy.py status
        """
    )

    # Network
    parser.add_argument("--network", choices=sorted(NETWORKS), default="localhost", help="Target network (default: localhost)")

    # Options
    parser.add_argument("--artifacts-dir", type=Path, help="Compiled artifacts directory (overrides ARTIFACTS_DIR)")
    parser.add_argument("--registry", type=Path, help="Registry file (overrides REGISTRY_PATH)")
    parser.add_argument("--compile", metavar="CONTRACTS_DIR", type=Path, help="Run forge build in this directory first")
    parser.add_argument("--output", "-o", type=str, help="Output deployment info to JSON file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("deploy", help="Deploy implementation + proxy and initialize it")
    p.add_argument("contract", help="Contract name or path to an artifact JSON")
    p.add_argument("--source", help="Source file name if it differs from <contract>.sol")
    p.add_argument("--args", help="Initializer arguments as a JSON list")
    p.add_argument("--initializer", default="initialize", help="Initializer function (default: initialize)")
    p.add_argument("--admin", help="Admin address recorded for the proxy (default: deployer)")

    p = sub.add_parser("upgrade", help="Upgrade a proxy to a new implementation")
    p.add_argument("proxy", help="Proxy address")
    p.add_argument("contract", help="Contract name or path to an artifact JSON")
    p.add_argument("--source", help="Source file name if it differs from <contract>.sol")
    p.add_argument("--call", help="Function to call on the new implementation during the upgrade")
    p.add_argument("--call-args", help="Arguments for --call as a JSON list")

    p = sub.add_parser("status", help="Show registered proxies")
    p.add_argument("proxy", nargs="?", help="Only this proxy")

    p = sub.add_parser("reconcile", help="Re-sync the registry with the chain")
    p.add_argument("proxy", help="Proxy address")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(
            args.network,
            require_key=args.command != "status",
            artifacts_dir=args.artifacts_dir,
            registry_path=args.registry,
        )
        if args.compile:
            compile_contracts(args.compile)

        registry = ProxyRegistry(settings.registry_path)
        summary = COMMANDS[args.command](args, settings, registry)

        summary["network"] = args.network
        print(f"\n{'='*60}")
        print(f"{args.command.upper()} COMPLETE")
        print(f"{'='*60}")
        print(json.dumps(summary, indent=2))

        if args.output:
            save_deployment(summary, args.output)
        return 0

    except IncompatibleUpgradeError as e:
        print(f"\n❌ {e.kind}: {e}")
        for violation in e.violations:
            print(f"   - {violation}")
        return e.exit_code
    except UpgradeToolError as e:
        print(f"\n❌ {e.kind}: {e}")
        if isinstance(e, UncertainOutcomeError):
            print(f"   Check transaction status manually: {e.tx_hash}")
            if args.command != "deploy":
                print(f"   Then run: python deploy.py reconcile {args.proxy}")
        return e.exit_code
    except Exception as e:
        print(f"\n❌ Failed: {e}")
        import traceback
        traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
