"""
Upgrade compatibility checks.

Storage on the ledger is keyed by slot position, so a new implementation must
read every existing variable at exactly the position, with exactly the type
and width, the live implementation wrote it. The only permitted evolution is
appending new variables after the last existing one.

The checks are conservative: nothing is treated as a benign reinterpretation
(uint256 -> int256, address -> contract type, ...). Any divergence is a
violation.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .artifacts import UPGRADE_ENTRYPOINTS, Implementation
from .layout import StorageSchema, StorageSlot


class ViolationKind(str, Enum):
    TYPE_CHANGED = "type_changed"
    WIDTH_CHANGED = "width_changed"
    SLOT_REMOVED = "slot_removed"
    SLOT_REORDERED = "slot_reordered"
    SLOT_MOVED = "slot_moved"
    MISSING_UPGRADE_ENTRYPOINT = "missing_upgrade_entrypoint"
    MISSING_INITIALIZER = "missing_initializer"
    CONSTRUCTOR_PRESENT = "constructor_present"


@dataclass(frozen=True)
class SchemaViolation:
    kind: ViolationKind
    index: Optional[int]
    label: str
    old: Optional[str] = None
    new: Optional[str] = None

    def __str__(self) -> str:
        where = f"slot #{self.index} {self.label!r}" if self.index is not None else self.label
        text = f"{self.kind.value}: {where}"
        if self.old is not None or self.new is not None:
            text += f" ({self.old or '-'} -> {self.new or '-'})"
        return text


@dataclass(frozen=True)
class CompatibilityVerdict:
    violations: List[SchemaViolation] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def safe(self) -> bool:
        return not self.violations


def _same_shape(old: StorageSlot, new: StorageSlot) -> bool:
    return (
        old.type_tag == new.type_tag
        and old.encoding == new.encoding
        and old.byte_width == new.byte_width
        and (old.slot, old.offset) == (new.slot, new.offset)
    )


def _compare(old: StorageSlot, new: StorageSlot, new_labels: dict) -> Optional[SchemaViolation]:
    if old.label != new.label:
        if old.label in new_labels:
            return SchemaViolation(
                ViolationKind.SLOT_REORDERED, old.index, old.label,
                old=f"#{old.index}", new=f"#{new_labels[old.label]}",
            )
        if _same_shape(old, new):
            return None
        # a different variable now occupies this index
        return SchemaViolation(ViolationKind.SLOT_REMOVED, old.index, old.label, old=old.describe(), new=new.describe())
    if old.type_tag != new.type_tag or old.encoding != new.encoding:
        return SchemaViolation(ViolationKind.TYPE_CHANGED, old.index, old.label, old=old.type_tag, new=new.type_tag)
    if old.byte_width != new.byte_width:
        return SchemaViolation(
            ViolationKind.WIDTH_CHANGED, old.index, old.label,
            old=str(old.byte_width), new=str(new.byte_width),
        )
    if (old.slot, old.offset) != (new.slot, new.offset):
        return SchemaViolation(
            ViolationKind.SLOT_MOVED, old.index, old.label,
            old=f"{old.slot}+{old.offset}", new=f"{new.slot}+{new.offset}",
        )
    return None


def check(old: StorageSchema, new: StorageSchema) -> CompatibilityVerdict:
    """Compare the live schema with a candidate schema, slot by slot"""
    violations: List[SchemaViolation] = []
    warnings: List[str] = []
    new_labels = {s.label: s.index for s in new}

    for o, n in zip(old, new):
        violation = _compare(o, n, new_labels)
        if violation is not None:
            violations.append(violation)
        elif o.label != n.label:
            warnings.append(f"slot #{o.index} renamed {o.label!r} -> {n.label!r}")

    for o in old[len(new):]:
        if o.label in new_labels:
            violations.append(SchemaViolation(
                ViolationKind.SLOT_REORDERED, o.index, o.label,
                old=f"#{o.index}", new=f"#{new_labels[o.label]}",
            ))
        else:
            violations.append(SchemaViolation(ViolationKind.SLOT_REMOVED, o.index, o.label, old=o.describe()))

    return CompatibilityVerdict(violations=violations, warnings=warnings)


def check_implementation(candidate: Implementation) -> List[SchemaViolation]:
    """Checks a UUPS implementation must pass before a proxy may point at it"""
    violations = []
    if not any(candidate.has_function(name) for name in UPGRADE_ENTRYPOINTS):
        # without it the proxy could never be upgraded again
        violations.append(SchemaViolation(ViolationKind.MISSING_UPGRADE_ENTRYPOINT, None, "upgradeToAndCall"))
    if not candidate.has_function("proxiableUUID"):
        violations.append(SchemaViolation(ViolationKind.MISSING_UPGRADE_ENTRYPOINT, None, "proxiableUUID"))
    if candidate.constructor_inputs():
        violations.append(SchemaViolation(
            ViolationKind.CONSTRUCTOR_PRESENT, None, "constructor",
            old=None, new=", ".join(i.get("type", "?") for i in candidate.constructor_inputs()),
        ))
    return violations


def check_initializer(implementation: Implementation, initializer: str) -> List[SchemaViolation]:
    if implementation.has_function(initializer):
        return []
    return [SchemaViolation(ViolationKind.MISSING_INITIALIZER, None, initializer)]
