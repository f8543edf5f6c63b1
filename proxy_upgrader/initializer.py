"""
First-time deployment of an implementation behind a new ERC-1967 proxy.

A proxy cannot rely on its implementation's constructor: the constructor runs
against the implementation's own storage, not the proxy's. Instead the proxy
is created with the encoded initializer call as constructor data, so the
initializer runs exactly once, through delegatecall, in the proxy's storage.
"""

import logging
from typing import Optional, Sequence

from .artifacts import Implementation
from .compat import check_implementation, check_initializer
from .errors import IncompatibleUpgradeError, InitializationError, TransactionRevertedError, UncertainOutcomeError
from .layout import analyze
from .ledger import Ledger
from .registry import ImplementationRef, ProxyRecord, ProxyRegistry

logger = logging.getLogger(__name__)


class DeploymentInitializer:
    def __init__(self, ledger: Ledger, registry: ProxyRegistry, proxy_artifact: Implementation):
        self.ledger = ledger
        self.registry = registry
        self.proxy_artifact = proxy_artifact

    def deploy_new(
        self,
        implementation: Implementation,
        init_args: Sequence = (),
        admin: Optional[str] = None,
        initializer: str = "initialize",
    ) -> ProxyRecord:
        """
        Deploy ``implementation``, a proxy pointing at it, run the initializer
        through the proxy and register the result.

        If the initializer reverts nothing is registered; the implementation
        deployed so far is left on chain as an orphan.
        If the proxy deployment is unconfirmed, UncertainOutcomeError names the
        implementation address and nothing is registered either.
        """
        # all off-chain checks come before the first transaction
        schema = analyze(implementation)
        violations = check_implementation(implementation) + check_initializer(implementation, initializer)
        if violations:
            raise IncompatibleUpgradeError(
                f"{implementation.name} cannot be deployed behind a UUPS proxy", violations
            )
        admin = admin or getattr(self.ledger, "address", None)
        if not admin:
            raise InitializationError("No admin identity given for the new proxy")

        try:
            init_data = self.ledger.encode_call(implementation.abi, initializer, list(init_args))
        except ValueError as e:
            raise InitializationError(f"Bad arguments for {implementation.name}.{initializer}: {e}") from e

        logger.info("Deploying implementation %s", implementation.name)
        impl_deployment = self.ledger.deploy_contract(implementation.abi, implementation.bytecode)
        self.registry.remember_implementation(implementation.identity, impl_deployment.address)

        logger.info("Deploying proxy for %s at implementation %s", implementation.name, impl_deployment.address)
        try:
            proxy_deployment = self.ledger.deploy_contract(
                self.proxy_artifact.abi,
                self.proxy_artifact.bytecode,
                [impl_deployment.address, init_data],
            )
        except TransactionRevertedError as e:
            raise InitializationError(
                f"{implementation.name}.{initializer} reverted; implementation at "
                f"{impl_deployment.address} left orphaned: {e}"
            ) from e
        except UncertainOutcomeError as e:
            # the proxy may exist; nothing is registered until it is confirmed
            raise UncertainOutcomeError(
                f"Proxy deployment for {implementation.name} (implementation at "
                f"{impl_deployment.address}) is unconfirmed: {e}",
                tx_hash=e.tx_hash,
                nonce=e.nonce,
            ) from e

        return self.registry.register(
            proxy_deployment.address,
            ImplementationRef(
                address=impl_deployment.address,
                identity=implementation.identity,
                name=implementation.name,
                tx_hash=impl_deployment.tx_hash,
            ),
            schema,
            admin,
            initialized=True,
        )
