"""
Proxy registry.

The registry is the indirection table proxy address -> live implementation.
It mirrors ledger truth: a record is created once a proxy is deployed and
initialized, and its implementation is replaced only after an upgrade
transaction has been confirmed.

Writers to a given proxy are serialized through ``lock(proxy_address)``;
``commit_upgrade`` refuses to run unless the calling thread holds that lock.
Different proxies lock independently.
"""

import json
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from web3 import Web3

from .errors import DuplicateProxyError, NotFoundError
from .layout import StorageSchema, schema_from_json, schema_to_json

logger = logging.getLogger(__name__)

REGISTRY_FORMAT_VERSION = 1


@dataclass(frozen=True)
class ImplementationRef:
    address: str
    identity: str
    name: str
    tx_hash: Optional[str] = None


@dataclass(frozen=True)
class ProxyRecord:
    proxy_address: str
    implementation: ImplementationRef
    storage_schema: StorageSchema
    admin: str
    initialized: bool = True
    kind: str = "uups"
    history: Tuple[ImplementationRef, ...] = ()

    @property
    def implementation_address(self) -> str:
        return self.implementation.address

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proxy_address": self.proxy_address,
            "implementation": asdict(self.implementation),
            "storage_schema": schema_to_json(self.storage_schema),
            "admin": self.admin,
            "initialized": self.initialized,
            "kind": self.kind,
            "history": [asdict(h) for h in self.history],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ProxyRecord":
        return cls(
            proxy_address=d["proxy_address"],
            implementation=ImplementationRef(**d["implementation"]),
            storage_schema=schema_from_json(d["storage_schema"]),
            admin=d["admin"],
            initialized=d.get("initialized", True),
            kind=d.get("kind", "uups"),
            history=tuple(ImplementationRef(**h) for h in d.get("history", [])),
        )


@dataclass(frozen=True)
class PendingUpgrade:
    """An upgrade submitted to the ledger whose confirmation was never observed"""
    implementation: ImplementationRef
    storage_schema: StorageSchema = field(default=())
    nonce: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "implementation": asdict(self.implementation),
            "storage_schema": schema_to_json(self.storage_schema),
            "nonce": self.nonce,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "PendingUpgrade":
        return cls(
            implementation=ImplementationRef(**d["implementation"]),
            storage_schema=schema_from_json(d["storage_schema"]),
            nonce=d.get("nonce"),
        )


def normalize_address(address: str) -> str:
    try:
        return Web3.to_checksum_address(address)
    except (ValueError, TypeError):
        raise NotFoundError(f"{address!r} is not a valid address")


class ProxyRegistry:
    """Registry of deployed proxies, optionally persisted to a JSON file"""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else None
        self._records: Dict[str, ProxyRecord] = {}
        self._implementations: Dict[str, str] = {}
        self._pending: Dict[str, PendingUpgrade] = {}

        self._state_lock = threading.RLock()
        self._proxy_locks: Dict[str, threading.Lock] = {}
        self._holders: Dict[str, int] = {}

        if self.path is not None and self.path.exists():
            self._load()

    # =========================================================================
    # Persistence
    # =========================================================================

    def _load(self) -> None:
        with open(self.path) as f:
            data = json.load(f)
        self._records = {k: ProxyRecord.from_dict(v) for k, v in data.get("proxies", {}).items()}
        self._implementations = dict(data.get("implementations", {}))
        self._pending = {k: PendingUpgrade.from_dict(v) for k, v in data.get("pending", {}).items()}
        logger.debug("Loaded %d proxy records from %s", len(self._records), self.path)

    def _save(self) -> None:
        if self.path is None:
            return
        data = {
            "version": REGISTRY_FORMAT_VERSION,
            "proxies": {k: r.to_dict() for k, r in self._records.items()},
            "implementations": self._implementations,
            "pending": {k: p.to_dict() for k, p in self._pending.items()},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, self.path)

    # =========================================================================
    # Locking
    # =========================================================================

    @contextmanager
    def lock(self, proxy_address: str) -> Iterator[None]:
        """Exclusive writer lock for one proxy"""
        key = normalize_address(proxy_address)
        with self._state_lock:
            proxy_lock = self._proxy_locks.setdefault(key, threading.Lock())
        with proxy_lock:
            self._holders[key] = threading.get_ident()
            try:
                yield
            finally:
                self._holders.pop(key, None)

    def _require_lock(self, key: str) -> None:
        if self._holders.get(key) != threading.get_ident():
            raise RuntimeError(f"{key}: registry writes require holding the proxy lock")

    # =========================================================================
    # Records
    # =========================================================================

    def register(
        self,
        proxy_address: str,
        implementation: ImplementationRef,
        storage_schema: StorageSchema,
        admin: str,
        initialized: bool = True,
    ) -> ProxyRecord:
        key = normalize_address(proxy_address)
        with self._state_lock:
            if key in self._records:
                raise DuplicateProxyError(f"Proxy {key} is already registered")
            record = ProxyRecord(
                proxy_address=key,
                implementation=implementation,
                storage_schema=tuple(storage_schema),
                admin=normalize_address(admin),
                initialized=initialized,
            )
            self._records[key] = record
            self._implementations[implementation.identity] = implementation.address
            self._save()

        logger.info("Registered proxy %s -> %s (%s)", key, implementation.address, implementation.name)
        return record

    def lookup(self, proxy_address: str) -> ProxyRecord:
        key = normalize_address(proxy_address)
        with self._state_lock:
            record = self._records.get(key)
        if record is None:
            raise NotFoundError(f"No proxy registered at {key}")
        return record

    def records(self) -> List[ProxyRecord]:
        with self._state_lock:
            return list(self._records.values())

    def commit_upgrade(
        self,
        proxy_address: str,
        implementation: ImplementationRef,
        storage_schema: StorageSchema,
    ) -> ProxyRecord:
        """Swap the live implementation. Caller must hold ``lock(proxy_address)``."""
        key = normalize_address(proxy_address)
        self._require_lock(key)
        with self._state_lock:
            current = self._records.get(key)
            if current is None:
                raise NotFoundError(f"No proxy registered at {key}")
            record = replace(
                current,
                implementation=implementation,
                storage_schema=tuple(storage_schema),
                history=current.history + (current.implementation,),
            )
            self._records[key] = record
            self._implementations[implementation.identity] = implementation.address
            self._pending.pop(key, None)
            self._save()

        logger.info("Committed upgrade of %s: %s -> %s", key, current.implementation.address, implementation.address)
        return record

    # =========================================================================
    # Implementation deployments and pending upgrades
    # =========================================================================

    def deployed_address(self, identity: str) -> Optional[str]:
        with self._state_lock:
            return self._implementations.get(identity)

    def remember_implementation(self, identity: str, address: str) -> None:
        with self._state_lock:
            self._implementations[identity] = normalize_address(address)
            self._save()

    def pending(self, proxy_address: str) -> Optional[PendingUpgrade]:
        key = normalize_address(proxy_address)
        with self._state_lock:
            return self._pending.get(key)

    def mark_pending(self, proxy_address: str, pending: PendingUpgrade) -> None:
        key = normalize_address(proxy_address)
        self._require_lock(key)
        with self._state_lock:
            self._pending[key] = pending
            self._save()

    def clear_pending(self, proxy_address: str) -> None:
        key = normalize_address(proxy_address)
        self._require_lock(key)
        with self._state_lock:
            if self._pending.pop(key, None) is not None:
                self._save()
