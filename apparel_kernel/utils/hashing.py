"""
SHA-256 digests over canonical JSON.

Audit payloads, the audit hash chain and the configuration checksum are
all computed here, so equal inputs always give equal digests: keys are
sorted, separators carry no whitespace, and decimals are normalised
(``10.50`` and ``10.5`` digest the same).
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from functools import singledispatch
from typing import Any
from uuid import UUID

GENESIS = "GENESIS"


@singledispatch
def _encode(obj: Any) -> Any:
    raise TypeError(f"{type(obj).__name__} has no canonical JSON form")


@_encode.register
def _(obj: Decimal) -> str:
    return str(obj.normalize())


@_encode.register(date)
@_encode.register(datetime)
def _(obj) -> str:
    return obj.isoformat()


@_encode.register
def _(obj: UUID) -> str:
    return str(obj)


@_encode.register
def _(obj: Enum) -> Any:
    return obj.value


@_encode.register
def _(obj: bytes) -> str:
    return obj.hex()


def canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=_encode)


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def to_json_safe(data: dict[str, Any]) -> dict[str, Any]:
    """The payload as plain JSON types, ready for a JSON column."""
    return json.loads(canonical_json(data))


def hash_payload(payload: dict) -> str:
    return sha256_hex(canonical_json(payload))


def hash_audit_event(
    entity_type: str,
    entity_id: str,
    action: str,
    payload_hash: str,
    prev_hash: str | None,
) -> str:
    """
    Link hash of one audit event.

    Folds the previous event's hash in, so rewriting any event changes the
    hash of every event after it.  The first event links to ``GENESIS``.
    """
    link = (entity_type, str(entity_id), action, payload_hash, prev_hash or GENESIS)
    return sha256_hex("|".join(link))
