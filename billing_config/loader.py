"""
Configuration Loader (``billing_config.loader``).

Responsibility
--------------
Loads YAML configuration files and parses them into typed
``billing_config.schema`` dataclass instances.  Runtime callers go through
``billing_config.get_active_config()``; this module is the machinery behind
it.

Invariants enforced
-------------------
* Every parsed object is a frozen dataclass from ``schema.py``.
* Invalid values raise ``ValueError`` with a descriptive message; unknown
  calculator types and a default calculator that is not enabled are
  rejected.
* ``compute_checksum`` produces a deterministic SHA-256 hash of the merged
  configuration data.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
"""

from __future__ import annotations

import copy
import hashlib
import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from billing_config.schema import (
    CALCULATOR_TYPES,
    IMPORT_FIELDS,
    BillingConfiguration,
    ImportSettings,
    InvoiceSettings,
    LedgerSettings,
    PaymentSettings,
    RetrySettings,
)


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def deep_merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Return ``base`` with ``overrides`` merged in; nested dicts merge by key."""
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _positive_int(data: dict[str, Any], key: str, default: int, *, allow_zero: bool = False) -> int:
    value = int(data.get(key, default))
    if value < 0 or (value == 0 and not allow_zero):
        raise ValueError(f"{key} must be {'non-negative' if allow_zero else 'positive'}, got {value}")
    return value


def parse_invoice_settings(data: dict[str, Any]) -> InvoiceSettings:
    enabled = tuple(data.get("enabled_calculators", CALCULATOR_TYPES))
    unknown = [c for c in enabled if c not in CALCULATOR_TYPES]
    if unknown:
        raise ValueError(f"Unknown calculator types: {unknown}")
    if not enabled:
        raise ValueError("enabled_calculators cannot be empty")

    default = data.get("default_calculator", enabled[0])
    if default not in enabled:
        raise ValueError(
            f"default_calculator '{default}' is not in enabled_calculators {list(enabled)}"
        )

    prefix = str(data.get("number_prefix", "INV-"))
    if not prefix.strip():
        raise ValueError("number_prefix cannot be empty")

    return InvoiceSettings(
        number_prefix=prefix,
        number_padding=_positive_int(data, "number_padding", 6),
        default_calculator=default,
        enabled_calculators=enabled,
        default_payment_terms_days=_positive_int(
            data, "default_payment_terms_days", 30, allow_zero=True
        ),
    )


def parse_ledger_settings(data: dict[str, Any]) -> LedgerSettings:
    return LedgerSettings(
        currency_places=_positive_int(data, "currency_places", 2, allow_zero=True),
        max_cas_attempts=_positive_int(data, "max_cas_attempts", 3),
    )


def parse_payment_settings(data: dict[str, Any]) -> PaymentSettings:
    try:
        tolerance = Decimal(str(data.get("match_tolerance", "0.01")))
    except InvalidOperation as exc:
        raise ValueError(f"match_tolerance is not numeric: {data.get('match_tolerance')!r}") from exc
    if tolerance < 0:
        raise ValueError("match_tolerance must be non-negative")

    methods = tuple(data.get("payment_methods", PaymentSettings.payment_methods))
    if not methods:
        raise ValueError("payment_methods cannot be empty")

    return PaymentSettings(
        match_tolerance=tolerance,
        notes_max_length=_positive_int(data, "notes_max_length", 500),
        payment_methods=methods,
    )


def parse_import_settings(data: dict[str, Any]) -> ImportSettings:
    raw = data.get("column_synonyms", {})
    unknown = [name for name in raw if name not in IMPORT_FIELDS]
    if unknown:
        raise ValueError(f"Unknown import fields: {unknown}")
    if "date" not in raw:
        raise ValueError("column_synonyms must define 'date'")

    synonyms = tuple(
        (name, tuple(str(s).strip().lower() for s in values))
        for name, values in raw.items()
    )
    formats = tuple(data.get("date_formats", ImportSettings.date_formats))
    if not formats:
        raise ValueError("date_formats cannot be empty")

    try:
        tolerance = Decimal(str(data.get("balance_tolerance", "0.01")))
    except InvalidOperation as exc:
        raise ValueError(
            f"balance_tolerance is not numeric: {data.get('balance_tolerance')!r}"
        ) from exc
    if tolerance < 0:
        raise ValueError("balance_tolerance must be non-negative")

    return ImportSettings(
        column_synonyms=synonyms, date_formats=formats, balance_tolerance=tolerance,
    )


def parse_retry_settings(data: dict[str, Any]) -> RetrySettings:
    jitter = float(data.get("jitter_ratio", 0.3))
    if not 0 <= jitter <= 1:
        raise ValueError(f"jitter_ratio must be between 0 and 1, got {jitter}")
    return RetrySettings(
        max_retries=_positive_int(data, "max_retries", 3, allow_zero=True),
        base_delay_ms=_positive_int(data, "base_delay_ms", 1000, allow_zero=True),
        max_delay_ms=_positive_int(data, "max_delay_ms", 10000, allow_zero=True),
        jitter_ratio=jitter,
        retryable_fragments=tuple(
            str(s).lower() for s in data.get("retryable_fragments", ())
        ),
        auth_fragments=tuple(str(s).lower() for s in data.get("auth_fragments", ())),
    )


def parse_configuration(data: dict[str, Any]) -> BillingConfiguration:
    """Parse a merged configuration dict into a ``BillingConfiguration``."""
    return BillingConfiguration(
        config_id=data["config_id"],
        version=int(data.get("version", 1)),
        invoices=parse_invoice_settings(data.get("invoices", {})),
        ledger=parse_ledger_settings(data.get("ledger", {})),
        payments=parse_payment_settings(data.get("payments", {})),
        imports=parse_import_settings(data.get("imports", {})),
        retry=parse_retry_settings(data.get("retry", {})),
        checksum=compute_checksum(data),
    )


def compute_checksum(data: dict[str, Any]) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical ``data`` always produces identical checksums.
    """
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
