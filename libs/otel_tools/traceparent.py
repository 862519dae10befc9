"""W3C Trace Context ``traceparent`` parsing and the TRACEPARENT variable.

Shell scripts and batch jobs pass trace identity to child processes through
the ``TRACEPARENT`` environment variable, formatted as::

    {version}-{trace-id}-{parent-id}-{trace-flags}
    00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01

See https://www.w3.org/TR/trace-context/#traceparent-header
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from typing import MutableMapping

logger = logging.getLogger(__name__)

# The expected environment variable for carrying W3C traceparents between
# processes
TRACEPARENT = "TRACEPARENT"

SUPPORTED_VERSION = 0
INVALID_VERSION = 0xFF
SAMPLED_FLAG = 0x01

_VERSION_PATTERN = re.compile(r"^[0-9a-f]{2}$")
_TRACE_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")
_PARENT_ID_PATTERN = re.compile(r"^[0-9a-f]{16}$")
_FLAGS_PATTERN = re.compile(r"^[0-9a-f]{2}$")


class TraceparentError(ValueError):
    """Raised when a traceparent string is malformed."""

    pass


@dataclass(frozen=True)
class Traceparent:
    """A parsed traceparent value."""

    version: int
    trace_id: int
    parent_id: int
    flags: int

    @property
    def sampled(self) -> bool:
        return bool(self.flags & SAMPLED_FLAG)

    @property
    def trace_id_hex(self) -> str:
        return format(self.trace_id, "032x")

    @property
    def parent_id_hex(self) -> str:
        return format(self.parent_id, "016x")

    def __str__(self) -> str:
        return (
            f"{self.version:02x}-{self.trace_id_hex}-"
            f"{self.parent_id_hex}-{self.flags:02x}"
        )


def parse(value: str) -> Traceparent:
    """Parse a traceparent string.

    Version 00 values must have exactly four fields. Values with a higher
    version may carry extra trailing fields, which are ignored.

    Args:
        value: The traceparent string.

    Returns:
        The parsed Traceparent.

    Raises:
        TraceparentError: If the value does not follow the W3C format.
    """
    if not isinstance(value, str):
        raise TraceparentError(f"traceparent must be a string, got {type(value).__name__}")

    parts = value.strip().split("-")
    if len(parts) < 4:
        raise TraceparentError(f"Expected 4 fields in traceparent, got {len(parts)}")

    version_hex, trace_hex, parent_hex, flags_hex = parts[:4]

    if not _VERSION_PATTERN.match(version_hex):
        raise TraceparentError(f"Invalid traceparent version: {version_hex!r}")
    version = int(version_hex, 16)
    if version == INVALID_VERSION:
        raise TraceparentError("Traceparent version ff is forbidden")
    if version == SUPPORTED_VERSION and len(parts) != 4:
        raise TraceparentError(
            f"Version 00 traceparent must have exactly 4 fields, got {len(parts)}"
        )

    if not _TRACE_ID_PATTERN.match(trace_hex):
        raise TraceparentError(f"Invalid trace id: {trace_hex!r}")
    trace_id = int(trace_hex, 16)
    if trace_id == 0:
        raise TraceparentError("Trace id must not be all zeros")

    if not _PARENT_ID_PATTERN.match(parent_hex):
        raise TraceparentError(f"Invalid parent id: {parent_hex!r}")
    parent_id = int(parent_hex, 16)
    if parent_id == 0:
        raise TraceparentError("Parent id must not be all zeros")

    if not _FLAGS_PATTERN.match(flags_hex):
        raise TraceparentError(f"Invalid trace flags: {flags_hex!r}")

    return Traceparent(
        version=version,
        trace_id=trace_id,
        parent_id=parent_id,
        flags=int(flags_hex, 16),
    )


def make(sampled: bool) -> Traceparent:
    """Create a traceparent with freshly generated ids."""
    from opentelemetry.sdk.trace.id_generator import RandomIdGenerator

    generator = RandomIdGenerator()
    return Traceparent(
        version=SUPPORTED_VERSION,
        trace_id=generator.generate_trace_id(),
        parent_id=generator.generate_span_id(),
        flags=SAMPLED_FLAG if sampled else 0,
    )


def read_traceparent(
    environ: MutableMapping[str, str] | None = None,
) -> Traceparent | None:
    """Parse the TRACEPARENT environment variable.

    Returns:
        The parsed Traceparent, or None if the variable is unset or malformed.
    """
    env = os.environ if environ is None else environ
    value = env.get(TRACEPARENT)
    if value is None:
        return None

    try:
        return parse(value)
    except TraceparentError as e:
        logger.debug(f"Ignoring malformed {TRACEPARENT}: {e}")
        return None


def update_traceparent(
    new_traceparent: str,
    environ: MutableMapping[str, str] | None = None,
) -> bool:
    """Store a new traceparent in the TRACEPARENT environment variable.

    The variable is only updated when new_traceparent is valid and differs
    from the current value.

    Returns:
        True if the variable was changed.
    """
    env = os.environ if environ is None else environ

    try:
        parsed = parse(new_traceparent)
    except TraceparentError as e:
        logger.debug(f"Not updating {TRACEPARENT}: {e}")
        return False

    if parsed == read_traceparent(env):
        return False

    env[TRACEPARENT] = str(parsed)
    return True


def generate_traceparent() -> str | None:
    """Serialize the currently active span context as a traceparent.

    Only the sampled bit of the trace flags is carried over.

    Returns:
        A version 00 traceparent string, or None if there is no valid
        active span.
    """
    from opentelemetry import trace

    span_context = trace.get_current_span().get_span_context()
    if not span_context.is_valid:
        return None

    return str(
        Traceparent(
            version=SUPPORTED_VERSION,
            trace_id=span_context.trace_id,
            parent_id=span_context.span_id,
            flags=span_context.trace_flags & SAMPLED_FLAG,
        )
    )
