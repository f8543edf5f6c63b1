"""
Upgrade orchestration.

An upgrade is validated completely before anything is sent to the ledger:
authorization, initialization state, storage layout compatibility and the
candidate's UUPS entrypoints. Only then is the candidate deployed (unless an
identical build is already on chain) and the proxy repointed with a single
``upgradeToAndCall`` transaction. The registry is updated only after that
transaction's receipt has been observed.

Scenario when the receipt never arrives: the attempt is remembered as pending
and UncertainOutcomeError is raised. The next upgrade of the same proxy
reconciles against the proxy's ERC-1967 slot before doing anything else.
A pending upgrade is only dropped once its transaction is final (reverted, or
its nonce used by another transaction); while it could still be mined,
further upgrades of that proxy are refused.

Every upgrade also compares the live slot with the registry, so a candidate
is never checked against a layout that is no longer the one on chain.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from web3 import Web3

from .artifacts import Implementation
from .compat import SchemaViolation, ViolationKind, check, check_implementation
from .errors import (
    IncompatibleUpgradeError,
    InitializationError,
    StateDivergenceError,
    UnauthorizedError,
    UncertainOutcomeError,
)
from .layout import StorageSchema, analyze
from .ledger import ERC1967_IMPLEMENTATION_SLOT, Ledger, TxStatus
from .registry import ImplementationRef, PendingUpgrade, ProxyRecord, ProxyRegistry, normalize_address

logger = logging.getLogger(__name__)

UUPS_ABI = [
    {
        "type": "function",
        "name": "upgradeToAndCall",
        "inputs": [
            {"name": "newImplementation", "type": "address"},
            {"name": "data", "type": "bytes"},
        ],
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


@dataclass(frozen=True)
class UpgradeProposal:
    record: ProxyRecord
    candidate: Implementation


@dataclass(frozen=True)
class UpgradeResult:
    success: bool
    proxy_address: str
    new_implementation_address: str
    previous_implementation_address: str
    tx_hash: Optional[str] = None
    noop: bool = False
    warnings: tuple = ()


class UpgradeOrchestrator:
    def __init__(self, ledger: Ledger, registry: ProxyRegistry):
        self.ledger = ledger
        self.registry = registry

    # =========================================================================
    # Validation
    # =========================================================================

    def _authorize(self, record: ProxyRecord, authorization: str) -> None:
        try:
            caller = Web3.to_checksum_address(authorization)
        except (ValueError, TypeError):
            raise UnauthorizedError(f"{authorization!r} is not a valid identity")
        if caller != record.admin:
            raise UnauthorizedError(f"{caller} is not the admin of {record.proxy_address}")

    def validate(self, proposal: UpgradeProposal) -> Tuple[StorageSchema, List[str]]:
        """Return the candidate schema and layout warnings, or raise IncompatibleUpgradeError"""
        record, candidate = proposal.record, proposal.candidate
        new_schema = analyze(candidate)
        verdict = check(record.storage_schema, new_schema)
        for warning in verdict.warnings:
            logger.warning("%s: %s", record.proxy_address, warning)

        violations: List[SchemaViolation] = list(verdict.violations) + check_implementation(candidate)
        if violations:
            raise IncompatibleUpgradeError(
                f"{candidate.name} is not upgrade-compatible with {record.implementation.name} "
                f"at {record.proxy_address} ({len(violations)} violation(s))",
                violations,
            )
        return new_schema, verdict.warnings

    # =========================================================================
    # Ledger steps
    # =========================================================================

    def _ensure_deployed(self, candidate: Implementation) -> ImplementationRef:
        known = self.registry.deployed_address(candidate.identity)
        if known is not None and self.ledger.has_code(known):
            logger.info("%s already deployed at %s", candidate.name, known)
            return ImplementationRef(address=known, identity=candidate.identity, name=candidate.name)

        deployment = self.ledger.deploy_contract(candidate.abi, candidate.bytecode)
        self.registry.remember_implementation(candidate.identity, deployment.address)
        return ImplementationRef(
            address=normalize_address(deployment.address),
            identity=candidate.identity,
            name=candidate.name,
        )

    def _check_proxiable(self, implementation: ImplementationRef) -> None:
        uuid = self.ledger.call(implementation.address, UUPS_ABI, "proxiableUUID")
        if int.from_bytes(bytes(uuid), "big") != ERC1967_IMPLEMENTATION_SLOT:
            raise IncompatibleUpgradeError(
                f"{implementation.name} at {implementation.address} reports an unsupported proxiableUUID",
                [SchemaViolation(ViolationKind.MISSING_UPGRADE_ENTRYPOINT, None, "proxiableUUID")],
            )

    # =========================================================================
    # Public operations
    # =========================================================================

    def upgrade(
        self,
        proxy_address: str,
        candidate: Implementation,
        authorization: str,
        call_data: bytes = b"",
    ) -> UpgradeResult:
        """
        Validate and apply an upgrade of ``proxy_address`` to ``candidate``.

        Raises NotFoundError, UnauthorizedError, InitializationError or
        IncompatibleUpgradeError without touching the ledger; TransportError
        if the ledger rejected the upgrade; UncertainOutcomeError if the
        upgrade transaction was sent but not confirmed, or an earlier one is
        still unconfirmed; StateDivergenceError if the proxy does not point
        where the registry says.
        """
        record = self.registry.lookup(proxy_address)
        self._authorize(record, authorization)

        with self.registry.lock(record.proxy_address):
            if self.registry.pending(record.proxy_address) is not None:
                self._reconcile_locked(record.proxy_address)
            record = self.registry.lookup(record.proxy_address)

            if not record.initialized:
                raise InitializationError(f"Proxy {record.proxy_address} was never initialized")

            on_chain = normalize_address(self.ledger.implementation_of(record.proxy_address))
            if on_chain != record.implementation.address:
                raise StateDivergenceError(
                    f"Proxy {record.proxy_address} points at {on_chain}, but the registry expects "
                    f"{record.implementation.address}; run reconcile"
                )

            if record.implementation.identity == candidate.identity and not call_data:
                logger.info("%s already runs %s, nothing to do", record.proxy_address, candidate.name)
                return UpgradeResult(
                    success=True,
                    proxy_address=record.proxy_address,
                    new_implementation_address=record.implementation.address,
                    previous_implementation_address=record.implementation.address,
                    noop=True,
                )

            proposal = UpgradeProposal(record=record, candidate=candidate)
            new_schema, warnings = self.validate(proposal)

            implementation = self._ensure_deployed(candidate)
            self._check_proxiable(implementation)

            try:
                receipt = self.ledger.send_transaction(
                    record.proxy_address, UUPS_ABI, "upgradeToAndCall", implementation.address, call_data
                )
            except UncertainOutcomeError as e:
                self.registry.mark_pending(
                    record.proxy_address,
                    PendingUpgrade(
                        implementation=ImplementationRef(
                            address=implementation.address,
                            identity=implementation.identity,
                            name=implementation.name,
                            tx_hash=e.tx_hash,
                        ),
                        storage_schema=new_schema,
                        nonce=e.nonce,
                    ),
                )
                logger.warning("Upgrade of %s is in an uncertain state (tx %s)", record.proxy_address, e.tx_hash)
                raise

            tx_hash = receipt.get("transactionHash")
            committed = self.registry.commit_upgrade(
                record.proxy_address,
                ImplementationRef(
                    address=implementation.address,
                    identity=implementation.identity,
                    name=implementation.name,
                    tx_hash=tx_hash,
                ),
                new_schema,
            )

        return UpgradeResult(
            success=True,
            proxy_address=committed.proxy_address,
            new_implementation_address=committed.implementation.address,
            previous_implementation_address=record.implementation.address,
            tx_hash=tx_hash,
            warnings=tuple(warnings),
        )

    def reconcile(self, proxy_address: str) -> ProxyRecord:
        """Bring the registry in line with the proxy's on-chain implementation"""
        record = self.registry.lookup(proxy_address)
        with self.registry.lock(record.proxy_address):
            return self._reconcile_locked(record.proxy_address)

    def _reconcile_locked(self, proxy_address: str) -> ProxyRecord:
        record = self.registry.lookup(proxy_address)
        pending = self.registry.pending(proxy_address)
        on_chain = normalize_address(self.ledger.implementation_of(proxy_address))

        if pending is not None and on_chain == pending.implementation.address:
            logger.info("Pending upgrade of %s confirmed on chain", proxy_address)
            return self.registry.commit_upgrade(proxy_address, pending.implementation, pending.storage_schema)

        if on_chain == record.implementation.address:
            if pending is None:
                return record
            tx_hash = pending.implementation.tx_hash
            status = self.ledger.transaction_status(tx_hash, pending.nonce) if tx_hash else TxStatus.PENDING
            if status in (TxStatus.REVERTED, TxStatus.REPLACED):
                logger.info("Pending upgrade of %s was %s; discarding it", proxy_address, status.value)
                self.registry.clear_pending(proxy_address)
                return record
            if status is TxStatus.PENDING:
                raise UncertainOutcomeError(
                    f"Upgrade of {proxy_address} to {pending.implementation.address} is still unconfirmed",
                    tx_hash=tx_hash,
                    nonce=pending.nonce,
                )

        raise StateDivergenceError(
            f"Proxy {proxy_address} points at {on_chain}, but the registry expects "
            f"{record.implementation.address}"
            + (f" or pending {pending.implementation.address}" if pending else "")
        )
