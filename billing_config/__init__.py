"""
billing_config -- single public entrypoint for billing configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration files
    directly.  Returns a frozen ``BillingConfiguration``.

Architecture position:
    Configuration layer.  Sits above ``billing_kernel`` and below
    ``billing_modules``.  The kernel MUST NEVER import from
    ``billing_config``.

Invariants enforced:
    - Single entrypoint: runtime config flows through ``get_active_config()``.
    - Validation happens while parsing; an invalid file never yields a
      configuration object.
    - Deterministic: the same YAML and overrides always produce the same
      checksum.

Failure modes:
    - ``FileNotFoundError`` -- the configuration file does not exist.
    - ``ValueError`` -- a value failed validation.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``BILLING_CONFIG_TRACE`` log entry with config_id, version and checksum.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from billing_config.loader import deep_merge, load_yaml_file, parse_configuration
from billing_config.schema import (
    BillingConfiguration,
    ImportSettings,
    InvoiceSettings,
    LedgerSettings,
    PaymentSettings,
    RetrySettings,
)

_logger = logging.getLogger("billing_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"

__all__ = [
    "BillingConfiguration",
    "ImportSettings",
    "InvoiceSettings",
    "LedgerSettings",
    "PaymentSettings",
    "RetrySettings",
    "get_active_config",
]


def get_active_config(
    config_path: Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> BillingConfiguration:
    """The ONLY public configuration entrypoint.

    Args:
        config_path: YAML file to load.  Defaults to the packaged
            ``defaults.yaml``.
        overrides: Nested dict deep-merged over the file contents.

    Returns:
        A validated, frozen ``BillingConfiguration``.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
        ValueError: If validation fails.
    """
    data = load_yaml_file(config_path or DEFAULT_CONFIG_PATH)
    if overrides:
        data = deep_merge(data, overrides)

    config = parse_configuration(data)

    _logger.info(
        "BILLING_CONFIG_TRACE",
        extra={
            "trace_type": "BILLING_CONFIG_TRACE",
            "config_id": config.config_id,
            "config_version": config.version,
            "checksum": config.checksum,
            "enabled_calculators": list(config.invoices.enabled_calculators),
        },
    )
    return config
