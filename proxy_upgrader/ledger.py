"""
Ledger access.

``Ledger`` is the surface the deployer and upgrader need from the chain.
``Web3Ledger`` implements it over a JSON-RPC node with a local signing key.

Failure mapping:
  - anything that goes wrong before a transaction is accepted by the node
    (connection, gas estimation revert, rejected raw transaction) raises
    TransportError; nothing happened on chain.
  - a mined transaction with status 0 raises TransactionRevertedError.
  - a submitted transaction whose receipt is not observed within the
    confirmation timeout raises UncertainOutcomeError; it may still be mined.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception

from .config import DEFAULT_CONFIRMATION_TIMEOUT, DEFAULT_GAS_LIMIT, Settings
from .errors import ConfigurationError, TransactionRevertedError, TransportError, UncertainOutcomeError

logger = logging.getLogger(__name__)

# bytes32(uint256(keccak256("eip1967.proxy.implementation")) - 1)
ERC1967_IMPLEMENTATION_SLOT = 0x360894A13BA1A3210667C828492DB98DCA3E2076CC3735A920A3CA505D382BBC

# ==============================================================================
# Interfaces
# ==============================================================================

@dataclass
class Deployment:
    """Result of a contract creation transaction"""
    address: str
    tx_hash: str
    gas_used: int = 0


class TxStatus(str, Enum):
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    # known to the node but not mined, or not known at all and its nonce still free
    PENDING = "pending"
    # never mined; its nonce was taken by another transaction
    REPLACED = "replaced"


class Ledger(Protocol):
    def deploy_contract(self, abi: List[Dict], bytecode: str, constructor_args: Sequence = ()) -> Deployment: ...

    def call(self, address: str, abi: List[Dict], function_name: str, *args) -> Any: ...

    def send_transaction(self, address: str, abi: List[Dict], function_name: str, *args) -> Dict[str, Any]: ...

    def encode_call(self, abi: List[Dict], function_name: str, args: Sequence = ()) -> bytes: ...

    def has_code(self, address: str) -> bool: ...

    def implementation_of(self, proxy_address: str) -> str: ...

    def transaction_status(self, tx_hash: str, nonce: Optional[int] = None) -> TxStatus: ...


class LocalSigner:
    """Signs transactions with a private key held in process"""

    def __init__(self, account: LocalAccount):
        self.account = account

    @classmethod
    def from_key(cls, private_key: str) -> "LocalSigner":
        try:
            return cls(Account.from_key(private_key))
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"PRIVATE_KEY is not a valid key: {e}") from e

    @property
    def address(self) -> str:
        return self.account.address

    def sign(self, tx: Dict[str, Any]):
        return self.account.sign_transaction(tx)

# ==============================================================================
# Web3 implementation
# ==============================================================================

class Web3Ledger:
    """Ledger backed by a web3.py provider"""

    def __init__(
        self,
        w3: Web3,
        signer: LocalSigner,
        chain_id: int,
        gas_limit: int = DEFAULT_GAS_LIMIT,
        confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT,
    ):
        self.w3 = w3
        self.signer = signer
        self.chain_id = chain_id
        self.gas_limit = gas_limit
        self.confirmation_timeout = confirmation_timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "Web3Ledger":
        w3 = Web3(Web3.HTTPProvider(settings.rpc_url))
        if not w3.is_connected():
            raise TransportError(f"Failed to connect to {settings.rpc_url}")

        remote_chain_id = w3.eth.chain_id
        if remote_chain_id != settings.network.chain_id:
            raise ConfigurationError(
                f"{settings.rpc_url} serves chain {remote_chain_id}, "
                f"expected {settings.network.chain_id} ({settings.network.name})"
            )

        return cls(
            w3,
            LocalSigner.from_key(settings.private_key),
            settings.network.chain_id,
            gas_limit=settings.gas_limit,
            confirmation_timeout=settings.confirmation_timeout,
        )

    @property
    def address(self) -> str:
        return self.signer.address

    def _get_nonce(self) -> int:
        return self.w3.eth.get_transaction_count(self.signer.address, "pending")

    def _base_tx(self) -> Dict[str, Any]:
        try:
            return {
                "from": self.signer.address,
                "chainId": self.chain_id,
                "nonce": self._get_nonce(),
                "gasPrice": self.w3.eth.gas_price,
            }
        except (Web3Exception, OSError) as e:
            raise TransportError(f"Could not prepare transaction: {e}") from e

    def _estimate_gas(self, tx: Dict) -> int:
        estimate_tx = {k: v for k, v in tx.items() if k != "gas"}
        try:
            gas = self.w3.eth.estimate_gas(estimate_tx)
        except ContractLogicError as e:
            raise TransactionRevertedError(f"Transaction would revert: {e}") from e
        except OSError as e:
            raise TransportError(f"Gas estimation failed: {e}") from e
        except (Web3Exception, ValueError) as e:
            logger.warning("Gas estimation failed (%s), using gas ceiling %d", e, self.gas_limit)
            return self.gas_limit

        if gas > self.gas_limit:
            raise TransportError(f"Estimated gas {gas:,} exceeds the configured ceiling {self.gas_limit:,}")
        return gas

    def _send_transaction(self, tx: Dict) -> Dict[str, Any]:
        """Sign and send a transaction, return its receipt once confirmed"""
        signed = self.signer.sign(tx)
        try:
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except (Web3Exception, ValueError, OSError) as e:
            raise TransportError(f"Transaction rejected by node: {e}") from e

        tx_hash_hex = Web3.to_hex(tx_hash)
        logger.info("Transaction sent: %s, waiting for confirmation", tx_hash_hex)

        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.confirmation_timeout)
        except TimeExhausted as e:
            raise UncertainOutcomeError(
                f"No receipt for {tx_hash_hex} after {self.confirmation_timeout}s",
                tx_hash=tx_hash_hex,
                nonce=tx.get("nonce"),
            ) from e
        except (Web3Exception, OSError) as e:
            raise UncertainOutcomeError(
                f"Lost contact while waiting for {tx_hash_hex}: {e}", tx_hash=tx_hash_hex, nonce=tx.get("nonce")
            ) from e

        if receipt["status"] != 1:
            raise TransactionRevertedError(f"Transaction {tx_hash_hex} reverted", tx_hash=tx_hash_hex)

        return dict(receipt, transactionHash=tx_hash_hex)

    def deploy_contract(self, abi: List[Dict], bytecode: str, constructor_args: Sequence = ()) -> Deployment:
        contract = self.w3.eth.contract(abi=abi, bytecode=bytecode)
        construct_tx = contract.constructor(*constructor_args)

        tx = self._base_tx()
        tx["data"] = construct_tx.data_in_transaction
        tx["gas"] = self._estimate_gas(tx)

        receipt = self._send_transaction(tx)
        address = receipt["contractAddress"]
        logger.info("Contract deployed at %s (gas used %s)", address, receipt.get("gasUsed"))
        return Deployment(address=address, tx_hash=receipt["transactionHash"], gas_used=receipt.get("gasUsed", 0))

    def call(self, address: str, abi: List[Dict], function_name: str, *args) -> Any:
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
        try:
            return getattr(contract.functions, function_name)(*args).call()
        except (Web3Exception, ValueError, OSError) as e:
            raise TransportError(f"{function_name} call on {address} failed: {e}") from e

    def send_transaction(self, address: str, abi: List[Dict], function_name: str, *args) -> Dict[str, Any]:
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
        func = getattr(contract.functions, function_name)(*args)

        params = self._base_tx()
        params["gas"] = self.gas_limit
        try:
            tx = func.build_transaction(params)
        except (Web3Exception, ValueError, OSError) as e:
            raise TransportError(f"Could not build {function_name} transaction: {e}") from e
        tx["gas"] = self._estimate_gas(tx)

        return self._send_transaction(tx)

    def encode_call(self, abi: List[Dict], function_name: str, args: Sequence = ()) -> bytes:
        contract = self.w3.eth.contract(abi=abi)
        try:
            encoded = contract.encode_abi(function_name, args=list(args))
        except (Web3Exception, TypeError) as e:
            raise ValueError(str(e)) from e
        return Web3.to_bytes(hexstr=encoded)

    def has_code(self, address: str) -> bool:
        try:
            return len(self.w3.eth.get_code(Web3.to_checksum_address(address))) > 0
        except (Web3Exception, OSError) as e:
            raise TransportError(f"Could not read code at {address}: {e}") from e

    def implementation_of(self, proxy_address: str) -> str:
        """Read the ERC-1967 implementation slot of a proxy"""
        try:
            raw = self.w3.eth.get_storage_at(Web3.to_checksum_address(proxy_address), ERC1967_IMPLEMENTATION_SLOT)
        except (Web3Exception, OSError) as e:
            raise TransportError(f"Could not read implementation slot of {proxy_address}: {e}") from e
        return Web3.to_checksum_address(bytes(raw)[-20:])


    def transaction_status(self, tx_hash: str, nonce: Optional[int] = None) -> TxStatus:
        """
        Where a previously submitted transaction stands.

        A transaction the node no longer knows is only final once the signer's
        mined nonce has moved past ``nonce``; until then it could still be
        rebroadcast and mined.
        """
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            receipt = None
        except (Web3Exception, OSError) as e:
            raise TransportError(f"Could not read receipt of {tx_hash}: {e}") from e
        if receipt is not None:
            return TxStatus.CONFIRMED if receipt["status"] == 1 else TxStatus.REVERTED

        try:
            self.w3.eth.get_transaction(tx_hash)
            return TxStatus.PENDING
        except TransactionNotFound:
            pass
        except (Web3Exception, OSError) as e:
            raise TransportError(f"Could not read transaction {tx_hash}: {e}") from e

        if nonce is None:
            return TxStatus.PENDING
        try:
            mined_nonce = self.w3.eth.get_transaction_count(self.signer.address, "latest")
        except (Web3Exception, OSError) as e:
            raise TransportError(f"Could not read nonce of {self.signer.address}: {e}") from e
        return TxStatus.REPLACED if mined_nonce > nonce else TxStatus.PENDING
