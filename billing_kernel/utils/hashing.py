"""
Audit chain hashing.

Each tenant owns one hash chain.  An event hash covers the tenant, its
position in the chain (seq), the entity and action, the payload digest and
the previous event hash, so a row moved between tenants, renumbered or
edited no longer verifies.
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

_FIELD_SEPARATOR = "|"


def _encode_value(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        # Amounts are cent-quantized, str() keeps "50.00" distinct from "50"
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonicalize_json(data: Any) -> str:
    """Sorted keys, no whitespace, ledger types rendered as strings."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_encode_value)


def to_json_safe(data: dict) -> dict:
    """The payload exactly as it will be stored in the JSON column."""
    return json.loads(canonicalize_json(data))


def hash_payload(payload: dict) -> str:
    return hashlib.sha256(canonicalize_json(payload).encode("utf-8")).hexdigest()


def genesis_marker(tenant_id: UUID | str) -> str:
    """Stands in for prev_hash on the first event of a tenant's chain."""
    return f"GENESIS:{tenant_id}"


def hash_audit_event(
    tenant_id: UUID | str,
    seq: int,
    entity_type: str,
    entity_id: UUID | str,
    action: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """SHA-256 over the event's identity, payload digest and predecessor."""
    link = _FIELD_SEPARATOR.join(
        (
            str(tenant_id),
            str(seq),
            entity_type,
            str(entity_id),
            action,
            payload_hash,
            prev_hash or genesis_marker(tenant_id),
        )
    )
    return hashlib.sha256(link.encode("utf-8")).hexdigest()
