"""
Storage layout analysis.

Turns the storage metadata of an Implementation into an ordered StorageSchema:
one StorageSlot per state variable, flattened across inheritance, in
declaration order, positioned the way the EVM packs them into 32-byte words.

Two metadata forms are accepted:

  solc "storageLayout" output (Foundry/Hardhat with storageLayout selected):
    {"storage": [{"label": "x", "slot": "0", "offset": 0, "type": "t_uint256"}],
     "types": {"t_uint256": {"label": "uint256", "numberOfBytes": "32", "encoding": "inplace"}}}

  a compact declared schema:
    [{"slot": 0, "name": "x", "type": "uint256", "bytes": 32}]
"""

import logging
import threading
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .artifacts import Implementation
from .errors import SchemaExtractionError

logger = logging.getLogger(__name__)

WORD_SIZE = 32


class Encoding(str, Enum):
    INPLACE = "inplace"
    MAPPING = "mapping"
    DYNAMIC_ARRAY = "dynamic_array"
    BYTES = "bytes"


@dataclass(frozen=True)
class StorageSlot:
    index: int
    slot: int
    offset: int
    label: str
    type_tag: str
    byte_width: int
    encoding: Encoding = Encoding.INPLACE

    @property
    def start(self) -> int:
        return self.slot * WORD_SIZE + self.offset

    @property
    def end(self) -> int:
        return self.start + self.byte_width

    def describe(self) -> str:
        return f"slot {self.slot}+{self.offset} {self.type_tag} {self.label} ({self.byte_width} bytes)"

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["encoding"] = self.encoding.value
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "StorageSlot":
        return cls(
            index=int(d["index"]),
            slot=int(d["slot"]),
            offset=int(d["offset"]),
            label=d["label"],
            type_tag=d["type_tag"],
            byte_width=int(d["byte_width"]),
            encoding=Encoding(d.get("encoding", "inplace")),
        )


StorageSchema = Tuple[StorageSlot, ...]

# ------------------------------------------------------------------------------
# Metadata models
# ------------------------------------------------------------------------------

class _SolcStorageEntry(BaseModel):
    label: str
    slot: int = Field(ge=0)
    offset: int = Field(default=0, ge=0, lt=WORD_SIZE)
    type: str


class _SolcTypeInfo(BaseModel):
    label: str
    numberOfBytes: int = Field(gt=0)
    encoding: Encoding = Encoding.INPLACE


class _SolcStorageLayout(BaseModel):
    storage: List[_SolcStorageEntry]
    types: Optional[Dict[str, _SolcTypeInfo]] = None


class _DeclaredSlot(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    slot: int = Field(ge=0)
    name: str
    type_tag: str = Field(alias="type")
    byte_width: int = Field(alias="bytes", gt=0)


def _infer_encoding(type_tag: str) -> Encoding:
    if type_tag.startswith("mapping("):
        return Encoding.MAPPING
    if type_tag.endswith("[]"):
        return Encoding.DYNAMIC_ARRAY
    if type_tag in ("string", "bytes"):
        return Encoding.BYTES
    return Encoding.INPLACE

# ------------------------------------------------------------------------------
# Parsing
# ------------------------------------------------------------------------------

def _from_solc_layout(raw: Any) -> List[StorageSlot]:
    layout = _SolcStorageLayout.model_validate(raw)
    types = layout.types or {}
    slots = []
    for i, entry in enumerate(layout.storage):
        info = types.get(entry.type)
        if info is None:
            raise SchemaExtractionError(f"storage entry {entry.label!r} references unknown type {entry.type!r}")
        slots.append(StorageSlot(
            index=i,
            slot=entry.slot,
            offset=entry.offset,
            label=entry.label,
            type_tag=info.label,
            byte_width=info.numberOfBytes,
            encoding=info.encoding,
        ))
    return slots


def _from_declared_schema(raw: Any) -> List[StorageSlot]:
    if not isinstance(raw, list):
        raise SchemaExtractionError("storageSchema must be a list of slot declarations")
    declared = [_DeclaredSlot.model_validate(item) for item in raw]

    slots: List[StorageSlot] = []
    for i, d in enumerate(declared):
        offset = 0
        if slots and slots[-1].slot == d.slot:
            # packed behind the previous variable in the same word
            offset = slots[-1].offset + slots[-1].byte_width
        slots.append(StorageSlot(
            index=i,
            slot=d.slot,
            offset=offset,
            label=d.name,
            type_tag=d.type_tag,
            byte_width=d.byte_width,
            encoding=_infer_encoding(d.type_tag),
        ))
    return slots


def _validate_positions(name: str, slots: List[StorageSlot]) -> None:
    previous: Optional[StorageSlot] = None
    for s in slots:
        if s.byte_width <= WORD_SIZE and s.offset + s.byte_width > WORD_SIZE:
            raise SchemaExtractionError(f"{name}: {s.label!r} does not fit in slot {s.slot} at offset {s.offset}")
        if s.byte_width > WORD_SIZE and s.offset != 0:
            raise SchemaExtractionError(f"{name}: multi-slot variable {s.label!r} must start at offset 0")
        if previous is not None:
            if (s.slot, s.offset) <= (previous.slot, previous.offset):
                raise SchemaExtractionError(
                    f"{name}: {s.label!r} at slot {s.slot}+{s.offset} is not after "
                    f"{previous.label!r} at slot {previous.slot}+{previous.offset}"
                )
            if s.start < previous.end:
                raise SchemaExtractionError(f"{name}: {s.label!r} overlaps {previous.label!r}")
        previous = s


def extract_schema(name: str, storage_metadata: Dict[str, Any]) -> StorageSchema:
    """Parse storage metadata without caching"""
    try:
        if "storageLayout" in storage_metadata:
            slots = _from_solc_layout(storage_metadata["storageLayout"])
        elif "storageSchema" in storage_metadata:
            slots = _from_declared_schema(storage_metadata["storageSchema"])
        else:
            raise SchemaExtractionError(
                f"{name}: artifact carries no storage metadata "
                f"(compile with storageLayout output or declare storageSchema)"
            )
    except ValidationError as e:
        raise SchemaExtractionError(f"{name}: malformed storage metadata: {e}") from e

    _validate_positions(name, slots)
    return tuple(slots)

# ------------------------------------------------------------------------------
# Cached entry point
# ------------------------------------------------------------------------------

_cache: Dict[str, StorageSchema] = {}
_cache_lock = threading.Lock()


def analyze(implementation: Implementation) -> StorageSchema:
    """Return the storage schema of an implementation, cached by its identity"""
    key = implementation.identity
    with _cache_lock:
        cached = _cache.get(key)
    if cached is not None:
        return cached

    schema = extract_schema(implementation.name, implementation.storage_metadata)
    logger.debug("Analyzed %s: %d storage entries", implementation.name, len(schema))

    with _cache_lock:
        _cache[key] = schema
    return schema


def schema_to_json(schema: StorageSchema) -> List[Dict[str, Any]]:
    return [s.to_dict() for s in schema]


def schema_from_json(data: List[Dict[str, Any]]) -> StorageSchema:
    return tuple(StorageSlot.from_dict(d) for d in data)
