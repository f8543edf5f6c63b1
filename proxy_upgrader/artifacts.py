"""Compiled contract artifacts.

An Implementation is the immutable, content-addressed form of a compiled
contract: ABI, creation bytecode and the storage metadata the compiler emitted
for it. Foundry (``out/<Source>.sol/<Name>.json``) and Hardhat
(``artifacts/contracts/<Source>.sol/<Name>.json``) layouts are both understood.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from web3 import Web3

from .errors import SchemaExtractionError

UPGRADE_ENTRYPOINTS = ("upgradeToAndCall", "upgradeTo")


@dataclass(frozen=True)
class Implementation:
    name: str
    abi: List[Dict[str, Any]]
    bytecode: str
    storage_metadata: Dict[str, Any] = field(default_factory=dict)
    compiler_version: Optional[str] = None

    @property
    def identity(self) -> str:
        """keccak256 over the creation bytecode and canonical storage metadata"""
        code = Web3.to_bytes(hexstr=self.bytecode) if self.bytecode else b""
        meta = json.dumps(self.storage_metadata, sort_keys=True, separators=(",", ":")).encode()
        return Web3.to_hex(Web3.keccak(code + meta))

    def functions(self, name: str) -> List[Dict[str, Any]]:
        return [e for e in self.abi if e.get("type") == "function" and e.get("name") == name]

    def has_function(self, name: str) -> bool:
        return bool(self.functions(name))

    def constructor_inputs(self) -> List[Dict[str, Any]]:
        for entry in self.abi:
            if entry.get("type") == "constructor":
                return list(entry.get("inputs", []))
        return []

    @classmethod
    def from_artifact(cls, name: str, artifact: Dict[str, Any]) -> "Implementation":
        if "abi" not in artifact or "bytecode" not in artifact:
            raise SchemaExtractionError(f"Artifact for {name} has no abi/bytecode")

        bytecode = artifact["bytecode"]
        # Foundry nests the hex under "object"; Hardhat stores it directly
        if isinstance(bytecode, dict):
            bytecode = bytecode.get("object", "")
        if not isinstance(bytecode, str):
            raise SchemaExtractionError(f"Artifact for {name} has malformed bytecode")
        if bytecode and not bytecode.startswith("0x"):
            bytecode = "0x" + bytecode

        storage_metadata: Dict[str, Any] = {}
        if "storageLayout" in artifact:
            storage_metadata["storageLayout"] = artifact["storageLayout"]
        if "storageSchema" in artifact:
            storage_metadata["storageSchema"] = artifact["storageSchema"]

        metadata = artifact.get("metadata")
        if isinstance(metadata, str):
            # raw solc metadata output is a JSON string
            try:
                metadata = json.loads(metadata)
            except json.JSONDecodeError:
                metadata = None
        compiler_version = None
        if isinstance(metadata, dict):
            compiler_version = metadata.get("compiler", {}).get("version")

        return cls(
            name=artifact.get("contractName", name),
            abi=list(artifact["abi"]),
            bytecode=bytecode,
            storage_metadata=storage_metadata,
            compiler_version=compiler_version,
        )


def get_artifact_path(contract_name: str, artifacts_dir: Path, source_file: Optional[str] = None) -> Path:
    """Get the path to a compiled contract artifact"""
    source = source_file or f"{contract_name}.sol"
    candidates = [
        artifacts_dir / source / f"{contract_name}.json",
        artifacts_dir / "contracts" / source / f"{contract_name}.json",
    ]
    for path in candidates:
        if path.exists():
            return path
    return candidates[0]


def load_implementation(
    contract_name: str,
    artifacts_dir: Path,
    source_file: Optional[str] = None,
) -> Implementation:
    """Load compiled contract ABI, bytecode and storage metadata"""
    if contract_name.endswith(".json"):
        artifact_path = Path(contract_name)
        contract_name = artifact_path.stem
    else:
        artifact_path = get_artifact_path(contract_name, artifacts_dir, source_file)

    if not artifact_path.exists():
        raise FileNotFoundError(
            f"Contract artifact not found: {artifact_path}\n"
            f"Run 'forge build' (with extra_output = [\"storageLayout\"]) first."
        )

    with open(artifact_path) as f:
        try:
            artifact = json.load(f)
        except json.JSONDecodeError as e:
            raise SchemaExtractionError(f"Artifact {artifact_path} is not valid JSON: {e}") from e

    return Implementation.from_artifact(contract_name, artifact)
