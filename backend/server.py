import os
import asyncio
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from web3 import Web3
from web3.exceptions import Web3Exception

from proxy_upgrader.errors import NotFoundError
from proxy_upgrader.ledger import ERC1967_IMPLEMENTATION_SLOT
from proxy_upgrader.registry import ProxyRecord, ProxyRegistry

load_dotenv()

# -----------------------------
# ENV / CONFIG
# -----------------------------
REGISTRY_PATH = Path(os.getenv("REGISTRY_PATH", "deployments/registry.json"))
EVM_RPC_HTTP_URL = os.getenv("EVM_RPC_HTTP_URL")

# -----------------------------
# Response models
# -----------------------------
class ImplementationOut(BaseModel):
    address: str
    name: str
    identity: str
    txHash: Optional[str] = None


class StorageSlotOut(BaseModel):
    index: int
    slot: int
    offset: int
    label: str
    typeTag: str
    byteWidth: int


class ProxyOut(BaseModel):
    proxyAddress: str
    admin: str
    initialized: bool
    kind: str
    implementation: ImplementationOut
    pendingImplementation: Optional[ImplementationOut] = None
    onChainImplementation: Optional[str] = None
    inSync: Optional[bool] = None


class HistoryOut(BaseModel):
    proxyAddress: str
    current: ImplementationOut
    previous: List[ImplementationOut]
    storageLayout: List[StorageSlotOut]

# -----------------------------
# Helpers
# -----------------------------
def implementation_out(ref) -> ImplementationOut:
    return ImplementationOut(address=ref.address, name=ref.name, identity=ref.identity, txHash=ref.tx_hash)


def proxy_out(registry: ProxyRegistry, record: ProxyRecord) -> ProxyOut:
    pending = registry.pending(record.proxy_address)
    return ProxyOut(
        proxyAddress=record.proxy_address,
        admin=record.admin,
        initialized=record.initialized,
        kind=record.kind,
        implementation=implementation_out(record.implementation),
        pendingImplementation=implementation_out(pending.implementation) if pending else None,
    )


async def read_implementation_slot(w3: Web3, proxy_address: str) -> str:
    raw = await asyncio.to_thread(w3.eth.get_storage_at, proxy_address, ERC1967_IMPLEMENTATION_SLOT)
    return Web3.to_checksum_address(bytes(raw)[-20:])

# -----------------------------
# App
# -----------------------------
def create_app(load_registry: Callable[[], ProxyRegistry], w3: Optional[Web3] = None) -> FastAPI:
    app = FastAPI(title="Proxy Registry Status", version="1.0.0")

    def lookup(registry: ProxyRegistry, address: str) -> ProxyRecord:
        try:
            return registry.lookup(address)
        except NotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        registry = load_registry()
        out: Dict[str, Any] = {
            "ok": True,
            "proxies": len(registry.records()),
            "ledgerConfigured": w3 is not None,
        }
        if w3 is not None:
            out["ledgerConnected"] = await asyncio.to_thread(w3.is_connected)
        return out

    @app.get("/proxies", response_model=List[ProxyOut])
    async def list_proxies() -> List[ProxyOut]:
        registry = load_registry()
        return [proxy_out(registry, r) for r in registry.records()]

    @app.get("/proxies/{address}", response_model=ProxyOut)
    async def get_proxy(address: str, verify: bool = False) -> ProxyOut:
        registry = load_registry()
        record = lookup(registry, address)
        out = proxy_out(registry, record)
        if verify:
            if w3 is None:
                raise HTTPException(status_code=503, detail="EVM_RPC_HTTP_URL not configured")
            try:
                on_chain = await read_implementation_slot(w3, record.proxy_address)
            except (Web3Exception, OSError, ValueError) as e:
                raise HTTPException(status_code=503, detail=f"ledger read failed: {e}")
            out.onChainImplementation = on_chain
            out.inSync = on_chain == record.implementation.address
        return out

    @app.get("/proxies/{address}/history", response_model=HistoryOut)
    async def get_history(address: str) -> HistoryOut:
        registry = load_registry()
        record = lookup(registry, address)
        return HistoryOut(
            proxyAddress=record.proxy_address,
            current=implementation_out(record.implementation),
            previous=[implementation_out(h) for h in record.history],
            storageLayout=[
                StorageSlotOut(
                    index=s.index,
                    slot=s.slot,
                    offset=s.offset,
                    label=s.label,
                    typeTag=s.type_tag,
                    byteWidth=s.byte_width,
                )
                for s in record.storage_schema
            ],
        )

    return app


# registry file is rewritten by deploy.py; reload it per request
app = create_app(
    lambda: ProxyRegistry(REGISTRY_PATH),
    Web3(Web3.HTTPProvider(EVM_RPC_HTTP_URL)) if EVM_RPC_HTTP_URL else None,
)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "127.0.0.1"), port=int(os.getenv("PORT", "8000")))
