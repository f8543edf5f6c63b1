"""Deploy and upgrade a contract behind a UUPS (ERC-1967) proxy."""

from .artifacts import Implementation, load_implementation
from .compat import CompatibilityVerdict, SchemaViolation, ViolationKind, check
from .errors import (
    ConfigurationError,
    DuplicateProxyError,
    IncompatibleUpgradeError,
    InitializationError,
    NotFoundError,
    SchemaExtractionError,
    StateDivergenceError,
    TransportError,
    UnauthorizedError,
    UncertainOutcomeError,
    UpgradeToolError,
)
from .initializer import DeploymentInitializer
from .layout import StorageSchema, StorageSlot, analyze
from .orchestrator import UpgradeOrchestrator, UpgradeResult
from .registry import ProxyRecord, ProxyRegistry

__version__ = "0.2.0"
