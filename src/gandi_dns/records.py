"""DNS record model, normalization and comparison.

Desired records come from the Protos registry, observed records from Gandi.
Both are mapped into `CanonicalRecord` before being compared.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Tuple

# MX priority is not part of the registry data model, so every MX record
# is published with this fixed priority.
MX_PRIORITY = 10

# Gandi may round or cache TTLs; records within this band are considered equal.
TTL_TOLERANCE = 120

APEX_HOST = "@"

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class DesiredRecord:
    """A DNS record requested through the registry."""

    id: str
    host: str
    type: str
    ttl: int
    value: str


@dataclass(frozen=True)
class Resource:
    """A registry resource. Only resources of type "dns" carry a DesiredRecord."""

    id: str
    type: str
    value: Any = None
    status: str = ""

    @property
    def is_dns(self) -> bool:
        return self.type.lower() == "dns" and isinstance(self.value, DesiredRecord)


@dataclass(frozen=True)
class CanonicalRecord:
    """Provider-agnostic record shape used for comparisons and remote calls."""

    name: str
    type: str
    ttl: int
    values: Tuple[str, ...]
    origin_id: Optional[str] = None

    @property
    def value(self) -> str:
        return self.values[0] if self.values else ""


def record_to_string(record: Any) -> str:
    """Render a desired or canonical record for log lines."""
    if isinstance(record, DesiredRecord):
        return f'{{"{record.host}" {record.type} {record.ttl} "{record.value}"}}'
    return f'{{"{record.name}" {record.type} {record.ttl} "{record.value}"}}'


# =============================================================================
# Normalizer
# =============================================================================


def normalize(desired: DesiredRecord, managed_domain: str) -> CanonicalRecord:
    """Map a desired record into the canonical shape.

    MX values get the fixed priority prefix and the apex host "@" is replaced
    by the managed domain. Nothing else is touched or validated.
    """
    value = desired.value
    if desired.type.upper() == "MX":
        prefix = f"{MX_PRIORITY} "
        if not value.startswith(prefix):
            value = prefix + value

    name = desired.host
    if name == APEX_HOST:
        name = managed_domain

    return CanonicalRecord(
        name=name,
        type=desired.type,
        ttl=desired.ttl,
        values=(value,),
        origin_id=desired.id,
    )


# =============================================================================
# Comparator
# =============================================================================


def trim_trailing_dot(value: str) -> str:
    if value.endswith("."):
        return value[:-1]
    return value


def names_match(a: str, b: str) -> bool:
    return a.lower() == b.lower()


def records_equal(a: CanonicalRecord, b: CanonicalRecord) -> bool:
    """Return True when two records are semantically the same.

    Values are compared without a trailing dot, name and type
    case-insensitively, and TTLs within an exclusive +/-TTL_TOLERANCE band.
    Only the first value of each record is considered.
    """
    return (
        trim_trailing_dot(a.value) == trim_trailing_dot(b.value)
        and names_match(a.name, b.name)
        and a.type.lower() == b.type.lower()
        and a.ttl - TTL_TOLERANCE < b.ttl
        and a.ttl + TTL_TOLERANCE > b.ttl
    )
