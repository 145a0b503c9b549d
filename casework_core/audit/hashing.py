"""
Audit Hashing
=============
Canonical serialization, hash computation and integrity proofs for the
per-organization audit chain.

The canonical form is UTF-8 JSON with sorted keys and compact separators.
Timestamps are rendered in UTC with microsecond precision and floats with an
integral value are encoded as integers, so the bytes do not depend on field
insertion order or numeric formatting.
"""

import base64
import json
import hashlib
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, Mapping, Optional

import structlog

from .exceptions import InvalidAuditEntryError
from .models import AuditLogEntry

logger = structlog.get_logger(__name__)

GENESIS_HASH = "GENESIS"
DEFAULT_MAX_DETAILS_BYTES = 10_000
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

HASHED_FIELDS = (
    "org_id",
    "user_id",
    "action",
    "resource",
    "resource_id",
    "details",
    "timestamp",
    "previous_hash",
)


def format_timestamp(timestamp: datetime) -> str:
    """Render a timestamp in the canonical UTC form."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def _normalize(value: Any, path: str) -> Any:
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, Enum):
        return _normalize(value.value, path)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise InvalidAuditEntryError(f"Non-finite number at {path}")
        if value.is_integer():
            return int(value)
        return value
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, Mapping):
        normalized = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise InvalidAuditEntryError(f"Non-string key {key!r} at {path}")
            normalized[key] = _normalize(item, f"{path}.{key}")
        return normalized
    if isinstance(value, (list, tuple)):
        return [_normalize(item, f"{path}[{i}]") for i, item in enumerate(value)]
    raise InvalidAuditEntryError(
        f"Unsupported value of type {type(value).__name__} at {path}"
    )


def _dumps(value: Any) -> str:
    return json.dumps(
        value,
        sort_keys=True,
        separators=(',', ':'),
        ensure_ascii=False,
        allow_nan=False,
    )


def canonical_json(value: Any) -> str:
    """Canonical JSON text of any JSON-compatible value (reports, exports)."""
    return _dumps(_normalize(value, "value"))


def normalize_details(
    details: Optional[Mapping[str, Any]],
    max_bytes: int = DEFAULT_MAX_DETAILS_BYTES,
) -> Dict[str, Any]:
    """
    Normalize an entry's details map and enforce its size bound.

    Raises:
        InvalidAuditEntryError: For non-JSON values or oversized details
    """
    if details is None:
        return {}
    if not isinstance(details, Mapping):
        raise InvalidAuditEntryError("details must be a mapping")
    normalized = _normalize(details, "details")
    size = len(_dumps(normalized).encode("utf-8"))
    if size > max_bytes:
        raise InvalidAuditEntryError(
            f"details is {size} bytes, limit is {max_bytes}"
        )
    return normalized


def canonicalize(
    org_id: str,
    user_id: Optional[str],
    action: str,
    resource: str,
    resource_id: Optional[str],
    details: Optional[Mapping[str, Any]],
    timestamp: datetime,
    previous_hash: str,
) -> bytes:
    """Byte-stable serialization of the hashed fields of an entry."""
    document = {
        "org_id": org_id,
        "user_id": user_id,
        "action": _normalize(action, "action"),
        "resource": _normalize(resource, "resource"),
        "resource_id": resource_id,
        "details": _normalize(details or {}, "details"),
        "timestamp": format_timestamp(timestamp),
        "previous_hash": previous_hash,
    }
    return _dumps(document).encode("utf-8")


def compute_entry_hash(
    org_id: str,
    user_id: Optional[str],
    action: str,
    resource: str,
    resource_id: Optional[str],
    details: Optional[Mapping[str, Any]],
    timestamp: datetime,
    previous_hash: str,
) -> str:
    """
    Compute the SHA-256 hash of an entry linked to its predecessor.

    Args:
        org_id: Organization owning the chain
        user_id: Actor, None for system entries
        action: Audited action
        resource: Resource kind
        resource_id: Resource identity
        details: Opaque action context
        timestamp: Server-assigned timestamp
        previous_hash: Hash of the previous entry, or GENESIS_HASH

    Returns:
        64-character hex digest
    """
    payload = canonicalize(
        org_id, user_id, action, resource, resource_id, details, timestamp, previous_hash
    )
    return hashlib.sha256(payload).hexdigest()


def compute_hash(fields: Mapping[str, Any], previous_hash: str) -> str:
    """Mapping form of compute_entry_hash; ``fields`` excludes the hashes."""
    return compute_entry_hash(
        fields["org_id"],
        fields.get("user_id"),
        fields["action"],
        fields["resource"],
        fields.get("resource_id"),
        fields.get("details"),
        fields["timestamp"],
        previous_hash,
    )


def hash_entry(entry: AuditLogEntry) -> str:
    """Recompute a stored entry's hash from its own recorded fields."""
    return compute_entry_hash(
        entry.org_id,
        entry.user_id,
        entry.action,
        entry.resource,
        entry.resource_id,
        entry.details,
        entry.timestamp,
        entry.previous_hash,
    )


def generate_integrity_proof(entry: AuditLogEntry) -> str:
    """
    Build a self-contained proof bundle for one entry.

    The bundle carries the hashed fields, the stored hash and the hash
    recomputed at proof time, base64-encoded for transport.
    """
    bundle = {
        "version": 1,
        "entry_id": entry.id,
        "sequence": entry.sequence,
        "fields": {
            "org_id": entry.org_id,
            "user_id": entry.user_id,
            "action": entry.action,
            "resource": entry.resource,
            "resource_id": entry.resource_id,
            "details": entry.details,
            "timestamp": format_timestamp(entry.timestamp),
            "previous_hash": entry.previous_hash,
        },
        "stored_hash": entry.hash,
        "computed_hash": hash_entry(entry),
        "algorithm": "sha256",
    }
    return base64.b64encode(_dumps(bundle).encode("utf-8")).decode("ascii")


def verify_integrity_proof(proof: str) -> bool:
    """Check that a proof's fields still hash to its stored hash."""
    try:
        bundle = json.loads(base64.b64decode(proof.encode("ascii")).decode("utf-8"))
        fields = bundle["fields"]
        timestamp = datetime.strptime(fields["timestamp"], TIMESTAMP_FORMAT).replace(
            tzinfo=timezone.utc
        )
        recomputed = compute_entry_hash(
            fields["org_id"],
            fields["user_id"],
            fields["action"],
            fields["resource"],
            fields["resource_id"],
            fields["details"],
            timestamp,
            fields["previous_hash"],
        )
    except (ValueError, KeyError, TypeError, InvalidAuditEntryError) as e:
        logger.warning("Malformed integrity proof", error=str(e))
        return False

    if recomputed != bundle.get("stored_hash"):
        logger.warning(
            "Integrity proof does not match",
            entry_id=bundle.get("entry_id"),
            expected_hash=recomputed[:16],
            actual_hash=str(bundle.get("stored_hash"))[:16],
        )
        return False
    return True
