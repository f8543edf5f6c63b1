"""
Shared fixtures.

FakeLedger is an in-memory stand-in for the chain: it hands out sequential
addresses, keeps an ERC-1967 implementation slot per proxy, runs initializer
calls passed as proxy constructor data and can be told to revert or to lose a
receipt. An upgrade whose receipt was lost without being mined stays pending
until the test calls mine() or replace() on it.
"""

import itertools
import json
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest
from web3 import Web3

from proxy_upgrader.artifacts import Implementation
from proxy_upgrader.errors import TransactionRevertedError, TransportError, UncertainOutcomeError
from proxy_upgrader.initializer import DeploymentInitializer
from proxy_upgrader.ledger import ERC1967_IMPLEMENTATION_SLOT, Deployment, TxStatus
from proxy_upgrader.orchestrator import UpgradeOrchestrator
from proxy_upgrader.registry import ProxyRegistry

ADMIN = Web3.to_checksum_address("0x" + "aa" * 20)
OTHER = Web3.to_checksum_address("0x" + "bb" * 20)

PROXY_BYTECODE = "0xfeedface"

UUPS_ENTRYPOINTS = [
    {
        "type": "function",
        "name": "upgradeToAndCall",
        "inputs": [{"name": "newImplementation", "type": "address"}, {"name": "data", "type": "bytes"}],
        "outputs": [],
        "stateMutability": "payable",
    },
    {
        "type": "function",
        "name": "proxiableUUID",
        "inputs": [],
        "outputs": [{"name": "", "type": "bytes32"}],
        "stateMutability": "view",
    },
]

BOX_V1 = [(0, "_value", "uint256", 32)]
BOX_V2 = [(0, "_value", "uint256", 32), (1, "_owner", "address", 20)]
BOX_BAD = [(0, "_value", "address", 20)]


def declared(schema: Sequence[Tuple[int, str, str, int]]) -> List[Dict[str, Any]]:
    return [{"slot": s, "name": n, "type": t, "bytes": b} for s, n, t, b in schema]


def make_impl(
    name: str,
    schema: Sequence[Tuple[int, str, str, int]] = BOX_V1,
    uups: bool = True,
    initializer: Optional[str] = "initialize",
    initializer_inputs: Sequence[str] = (),
    constructor_inputs: Sequence[str] = (),
) -> Implementation:
    abi: List[Dict[str, Any]] = []
    if uups:
        abi.extend(UUPS_ENTRYPOINTS)
    if initializer:
        abi.append({
            "type": "function",
            "name": initializer,
            "inputs": [{"name": f"a{i}", "type": t} for i, t in enumerate(initializer_inputs)],
            "outputs": [],
            "stateMutability": "nonpayable",
        })
    if constructor_inputs:
        abi.append({
            "type": "constructor",
            "inputs": [{"name": f"c{i}", "type": t} for i, t in enumerate(constructor_inputs)],
            "stateMutability": "nonpayable",
        })
    return Implementation(
        name=name,
        abi=abi,
        bytecode="0x" + name.encode().hex(),
        storage_metadata={"storageSchema": declared(schema)},
    )


PROXY_ARTIFACT = Implementation(
    name="ERC1967Proxy",
    abi=[{
        "type": "constructor",
        "inputs": [{"name": "implementation", "type": "address"}, {"name": "_data", "type": "bytes"}],
        "stateMutability": "payable",
    }],
    bytecode=PROXY_BYTECODE,
)


class FakeLedger:
    """In-memory ledger with failure switches"""

    def __init__(self, address: str = ADMIN):
        self.address = address
        self.code: Dict[str, str] = {}
        self.abis: Dict[str, List[Dict]] = {}
        self.impl_slots: Dict[str, str] = {}
        self.initializer_calls: List[Tuple[str, str, List[Any]]] = []
        self.deployments: List[str] = []
        self.sent: List[Tuple[str, str, tuple]] = []
        self.tx_states: Dict[str, TxStatus] = {}
        self.unmined: Dict[str, Tuple[str, str]] = {}

        self.reverting_initializers = set()
        self.revert_next_send = False
        # None, "applied" (tx mined but receipt lost) or "unmined" (submitted, not mined yet)
        self.lose_next_receipt: Optional[str] = None
        self.lose_next_proxy_receipt = False

        self._addresses = itertools.count(0x1000)
        self._hashes = itertools.count(1)
        self._nonces = itertools.count(0)

    def _new_address(self) -> str:
        return Web3.to_checksum_address(f"0x{next(self._addresses):040x}")

    def _tx_hash(self) -> str:
        return f"0x{next(self._hashes):064x}"

    @property
    def mutations(self) -> int:
        return len(self.deployments) + len(self.sent)

    def encode_call(self, abi, function_name, args=()) -> bytes:
        entries = [e for e in abi if e.get("type") == "function" and e.get("name") == function_name]
        if not entries:
            raise ValueError(f"no function {function_name}")
        if len(entries[0].get("inputs", [])) != len(args):
            raise ValueError(f"{function_name} expects {len(entries[0]['inputs'])} arguments")
        return json.dumps({"fn": function_name, "args": list(args)}).encode()

    def deploy_contract(self, abi, bytecode, constructor_args=()) -> Deployment:
        address = self._new_address()
        if bytecode == PROXY_BYTECODE:
            implementation, data = constructor_args
            if data:
                call = json.loads(data.decode())
                if call["fn"] in self.reverting_initializers:
                    raise TransactionRevertedError(f"{call['fn']} reverted", tx_hash=self._tx_hash())
                self.initializer_calls.append((address, call["fn"], call["args"]))
            self.impl_slots[address] = Web3.to_checksum_address(implementation)
            if self.lose_next_proxy_receipt:
                self.lose_next_proxy_receipt = False
                self.code[address] = bytecode
                raise UncertainOutcomeError("no receipt for proxy deployment", tx_hash=self._tx_hash())
        self.code[address] = bytecode
        self.abis[address] = abi
        self.deployments.append(address)
        return Deployment(address=address, tx_hash=self._tx_hash(), gas_used=21000)

    def call(self, address, abi, function_name, *args):
        if address not in self.code:
            raise TransportError(f"no contract at {address}")
        if function_name == "proxiableUUID":
            if not any(e.get("name") == "proxiableUUID" for e in self.abis[address]):
                raise TransportError("execution reverted")
            return ERC1967_IMPLEMENTATION_SLOT.to_bytes(32, "big")
        raise TransportError(f"unsupported call {function_name}")

    def send_transaction(self, address, abi, function_name, *args) -> Dict[str, Any]:
        self.sent.append((address, function_name, args))
        tx_hash = self._tx_hash()
        nonce = next(self._nonces)
        if self.revert_next_send:
            self.revert_next_send = False
            self.tx_states[tx_hash] = TxStatus.REVERTED
            raise TransactionRevertedError(f"{function_name} reverted", tx_hash=tx_hash)

        self.tx_states[tx_hash] = TxStatus.CONFIRMED
        if function_name == "upgradeToAndCall":
            outcome, self.lose_next_receipt = self.lose_next_receipt, None
            if outcome == "unmined":
                self.tx_states[tx_hash] = TxStatus.PENDING
                self.unmined[tx_hash] = (address, Web3.to_checksum_address(args[0]))
            else:
                self.impl_slots[address] = Web3.to_checksum_address(args[0])
            if outcome is not None:
                raise UncertainOutcomeError(f"no receipt for {tx_hash}", tx_hash=tx_hash, nonce=nonce)

        return {"transactionHash": tx_hash, "status": 1}

    def mine(self, tx_hash: str) -> None:
        """Late confirmation of an upgrade whose receipt was lost"""
        proxy, implementation = self.unmined.pop(tx_hash)
        self.impl_slots[proxy] = implementation
        self.tx_states[tx_hash] = TxStatus.CONFIRMED

    def replace(self, tx_hash: str) -> None:
        """Another transaction took the unmined upgrade's nonce"""
        self.unmined.pop(tx_hash)
        self.tx_states[tx_hash] = TxStatus.REPLACED

    def transaction_status(self, tx_hash, nonce=None) -> TxStatus:
        return self.tx_states.get(tx_hash, TxStatus.PENDING)

    def has_code(self, address) -> bool:
        return address in self.code

    def implementation_of(self, proxy_address) -> str:
        return self.impl_slots[Web3.to_checksum_address(proxy_address)]


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def registry(tmp_path):
    return ProxyRegistry(tmp_path / "registry.json")


@pytest.fixture
def initializer(ledger, registry):
    return DeploymentInitializer(ledger, registry, PROXY_ARTIFACT)


@pytest.fixture
def orchestrator(ledger, registry):
    return UpgradeOrchestrator(ledger, registry)


@pytest.fixture
def box_proxy(initializer):
    """A Box V1 proxy administered by ADMIN"""
    return initializer.deploy_new(make_impl("Box", BOX_V1), [], admin=ADMIN)
