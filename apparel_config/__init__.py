"""
apparel_config -- single public entrypoint for ledger configuration.

Responsibility:
    Provides the way to obtain configuration at runtime through
    ``get_active_config()``: the packaged defaults, optionally overlaid with
    a YAML document named by an explicit path or by the
    ``APPAREL_LEDGER_CONFIG`` environment variable.

Architecture position:
    Configuration -- sits above ``apparel_kernel`` and beside
    ``apparel_modules``.  The kernel MUST NEVER import from
    ``apparel_config``; ``apparel_config.bridges`` applies settings to it.

Invariants enforced:
    - Every account role is bound to a code, or loading fails.
    - Same documents always produce the same checksum.

Failure modes:
    - ``FileNotFoundError`` -- override path does not exist.
    - ``ValueError`` / ``KeyError`` -- schema validation failures.

Audit relevance:
    Every successful ``get_active_config()`` call emits an
    ``APPAREL_CONFIG_TRACE`` log entry with config_id, version and checksum.
"""

from __future__ import annotations

import os
from pathlib import Path

from apparel_config.loader import load_yaml_file, merge_documents, parse_config
from apparel_config.schema import AccountMapping, AccountRole, LedgerConfig, PostingPolicy
from apparel_kernel.logging_config import get_logger

_logger = get_logger("config")

CONFIG_ENV_VAR = "APPAREL_LEDGER_CONFIG"

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults" / "ledger.yaml"


def get_active_config(path: Path | str | None = None) -> LedgerConfig:
    """
    The public configuration entrypoint.

    Args:
        path: YAML document overriding the defaults.  When omitted,
            ``APPAREL_LEDGER_CONFIG`` is consulted; when that is unset the
            packaged defaults are used alone.

    Raises:
        FileNotFoundError: override file missing.
        ValueError / KeyError: invalid configuration.
    """
    data = load_yaml_file(DEFAULT_CONFIG_PATH)

    override = path or os.environ.get(CONFIG_ENV_VAR)
    if override:
        data = merge_documents(data, load_yaml_file(Path(override)))

    config = parse_config(data)

    _logger.info(
        "APPAREL_CONFIG_TRACE",
        extra={
            "trace_type": "APPAREL_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "override": str(override) if override else None,
        },
    )
    return config


__all__ = [
    "CONFIG_ENV_VAR",
    "AccountMapping",
    "AccountRole",
    "LedgerConfig",
    "PostingPolicy",
    "get_active_config",
]
