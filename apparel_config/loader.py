"""
Configuration Loader (``apparel_config.loader``).

Responsibility
--------------
Loads a YAML configuration document and parses it into the frozen
``apparel_config.schema`` types.  The runtime entry point is
``apparel_config.get_active_config()``.

Invariants enforced
-------------------
* Parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; required fields have no silent defaults.
* Money-like values are parsed as ``Decimal`` from their string form.
* ``compute_checksum`` is a deterministic SHA-256 over canonical JSON.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Unknown account role  -> ``ValueError``.
"""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml

from apparel_config.schema import AccountMapping, AccountRole, LedgerConfig, PostingPolicy
from apparel_kernel.utils.hashing import canonical_json, sha256_hex


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def parse_accounts(data: dict[str, Any]) -> AccountMapping:
    bindings: dict[AccountRole, str] = {}
    for role_name, code in data.items():
        try:
            role = AccountRole(role_name)
        except ValueError:
            raise ValueError(f"Unknown account role: {role_name!r}") from None
        bindings[role] = str(code)
    return AccountMapping(bindings=bindings)


def parse_policy(data: dict[str, Any]) -> PostingPolicy:
    return PostingPolicy(
        max_bom_depth=int(data.get("max_bom_depth", 10)),
        lock_timeout_seconds=float(data.get("lock_timeout_seconds", 10.0)),
        receipt_tolerance_percent=Decimal(str(data.get("receipt_tolerance_percent", "0"))),
    )


def merge_documents(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursive dict merge; ``override`` wins on scalar conflicts."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_documents(merged[key], value)
        else:
            merged[key] = value
    return merged


def parse_config(data: dict[str, Any]) -> LedgerConfig:
    """
    Parse a full configuration document.

    Raises:
        KeyError: ``config_id`` or ``accounts`` missing.
        ValueError: invalid role or policy value.
    """
    return LedgerConfig(
        config_id=data["config_id"],
        version=int(data.get("version", 1)),
        accounts=parse_accounts(data["accounts"]),
        policy=parse_policy(data.get("policy", {})),
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 of the canonical JSON serialization of ``data``."""
    return sha256_hex(canonical_json(data))
