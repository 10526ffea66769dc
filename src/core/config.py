"""Runtime configuration model for logstore.

This module owns all environment variable parsing and validation.
Other modules consume a typed config object instead of raw env reads.
"""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path

from core.constants import DEFAULT_STORE_ROOT, DEFAULT_WRITE_BUFFER_SIZE
from core.errors import LogStoreConfigError


@dataclass(frozen=True)
class StoreConfig:
    """Validated runtime configuration.

    Attributes:
        store_root: Root directory of the datastore (core, cache, incoming).
        compress: Whether imports store identity-bearing files zstd-compressed.
        write_buffer_size: Size of the normalizer's per-output write buffer.
    """

    store_root: Path
    compress: bool = False
    write_buffer_size: int = DEFAULT_WRITE_BUFFER_SIZE

    @classmethod
    def from_env(cls) -> "StoreConfig":
        """Build config from process environment variables.

        Returns:
            A validated config object.

        Raises:
            LogStoreConfigError: If environment values are invalid.
        """
        store_root_value = os.getenv("LOGSTORE_ROOT", str(DEFAULT_STORE_ROOT))
        compress = _parse_flag("LOGSTORE_COMPRESS", os.getenv("LOGSTORE_COMPRESS", "0"))
        buffer_size = _parse_buffer_size(
            os.getenv("LOGSTORE_WRITE_BUFFER_SIZE", str(DEFAULT_WRITE_BUFFER_SIZE))
        )
        return cls(
            store_root=Path(store_root_value).expanduser().resolve(),
            compress=compress,
            write_buffer_size=buffer_size,
        )


def _parse_flag(name: str, raw_value: str) -> bool:
    """Parse a boolean environment flag.

    Args:
        name: Environment variable name, used in error messages.
        raw_value: Raw string from environment.

    Returns:
        Parsed flag value.

    Raises:
        LogStoreConfigError: If value is not a recognized boolean.
    """
    normalized = raw_value.strip().lower()
    if normalized in ("1", "true", "yes", "on"):
        return True
    if normalized in ("0", "false", "no", "off", ""):
        return False
    raise LogStoreConfigError(
        f"Invalid {name} value: expected 0 or 1, got '{raw_value}'. "
        f"Set {name} to 0 or 1."
    )


def _parse_buffer_size(raw_value: str) -> int:
    """Parse the write buffer size environment value.

    Args:
        raw_value: Raw string from environment.

    Returns:
        Parsed positive buffer size in bytes.

    Raises:
        LogStoreConfigError: If value is not a positive integer.
    """
    try:
        value = int(raw_value)
    except ValueError as error:
        raise LogStoreConfigError(
            "Invalid LOGSTORE_WRITE_BUFFER_SIZE value: "
            f"expected integer, got '{raw_value}'. "
            "Set LOGSTORE_WRITE_BUFFER_SIZE to a positive byte count."
        ) from error
    if value <= 0:
        raise LogStoreConfigError(
            f"Invalid LOGSTORE_WRITE_BUFFER_SIZE value: {value} is not positive. "
            "Set LOGSTORE_WRITE_BUFFER_SIZE to a positive byte count."
        )
    return value
