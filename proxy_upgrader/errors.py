"""Error types raised by the deployer and upgrader.

Every error carries the process exit code the CLI reports for it.
"""

from typing import List, Optional, Sequence


class UpgradeToolError(Exception):
    """Base class for all deployment/upgrade failures"""

    exit_code = 1
    kind = "error"


class ConfigurationError(UpgradeToolError):
    exit_code = 11
    kind = "configuration"


class SchemaExtractionError(UpgradeToolError):
    """Artifact storage metadata is missing or malformed"""

    exit_code = 2
    kind = "schema-extraction"


class DuplicateProxyError(UpgradeToolError):
    exit_code = 3
    kind = "duplicate-proxy"


class NotFoundError(UpgradeToolError):
    exit_code = 4
    kind = "not-found"


class UnauthorizedError(UpgradeToolError):
    exit_code = 5
    kind = "unauthorized"


class IncompatibleUpgradeError(UpgradeToolError):
    """The candidate implementation would corrupt the proxy's storage"""

    exit_code = 6
    kind = "incompatible-upgrade"

    def __init__(self, message: str, violations: Sequence = ()):
        super().__init__(message)
        self.violations: List = list(violations)


class InitializationError(UpgradeToolError):
    exit_code = 7
    kind = "initialization"


class UncertainOutcomeError(UpgradeToolError):
    """
    A transaction was submitted but its confirmation was never observed.

    The transaction may still be mined. Callers must reconcile against the
    ledger before retrying.
    """

    exit_code = 8
    kind = "uncertain-outcome"

    def __init__(self, message: str, tx_hash: Optional[str] = None, nonce: Optional[int] = None):
        super().__init__(message)
        self.tx_hash = tx_hash
        self.nonce = nonce


class TransportError(UpgradeToolError):
    """The ledger rejected or never received a transaction"""

    exit_code = 9
    kind = "transport"


class TransactionRevertedError(TransportError):
    def __init__(self, message: str, tx_hash: Optional[str] = None):
        super().__init__(message)
        self.tx_hash = tx_hash


class StateDivergenceError(UpgradeToolError):
    """The ledger shows an implementation the registry knows nothing about"""

    exit_code = 10
    kind = "state-divergence"
