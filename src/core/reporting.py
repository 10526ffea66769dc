"""Caller-visible progress and diagnostics reporting.

Long-running operations (normalization, import, index builds, repairs)
report degraded results and byte progress through a ``Reporter``.
Every message is also emitted as a structured log event.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from core.logging_config import get_logger

_LOGGER = get_logger(__name__)


@dataclass
class Reporter:
    """Record diagnostics and byte progress for one operation.

    Attributes:
        messages: ``(level, message)`` pairs in emission order.
        current: Bytes processed so far.
        total: Total bytes expected, when known.
    """

    messages: list[tuple[str, str]] = field(default_factory=list)
    current: int = 0
    total: int | None = None

    def info(self, message: str, **fields: object) -> None:
        """Record and log an informational message."""
        self.messages.append(("info", message))
        _LOGGER.info("report_info", message=message, **fields)

    def warn(self, message: str, **fields: object) -> None:
        """Record and log a warning about a degraded result."""
        self.messages.append(("warning", message))
        _LOGGER.warning("report_warning", message=message, **fields)

    def error(self, message: str, **fields: object) -> None:
        """Record and log an error that did not abort the operation."""
        self.messages.append(("error", message))
        _LOGGER.error("report_error", message=message, **fields)

    def reset_progress(self, total: int | None) -> None:
        """Start a new progress phase."""
        self.current = 0
        self.total = total

    def advance(self, byte_count: int) -> None:
        """Add ``byte_count`` processed bytes to the current phase."""
        self.current += byte_count

    @property
    def warnings(self) -> list[str]:
        """Return recorded warning messages."""
        return [message for level, message in self.messages if level == "warning"]

    @property
    def errors(self) -> list[str]:
        """Return recorded error messages."""
        return [message for level, message in self.messages if level == "error"]
