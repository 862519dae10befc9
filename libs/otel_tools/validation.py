"""Validation utilities for tracing inputs."""

from typing import Any, Mapping


# Upper bound for service and span names
MAX_NAME_LENGTH = 255

_PRIMITIVE_TYPES = (str, bool, int, float)


def validate_name(kind: str, value: str) -> None:
    """Validate a service or span name.

    Args:
        kind: What the name is for, used in error messages (e.g. "Service name").
        value: The name to validate.

    Raises:
        ValueError: If the name fails validation.

    Requirements:
        - Must be a string
        - Must not be empty or whitespace-only
        - Length must be <= 255 characters
    """
    if not isinstance(value, str):
        raise ValueError(
            f"{kind} must be a string, got {type(value).__name__}: {value!r}"
        )

    if not value.strip():
        raise ValueError(f"{kind} must not be empty")

    if len(value) > MAX_NAME_LENGTH:
        raise ValueError(
            f"{kind} exceeds maximum length of {MAX_NAME_LENGTH} characters: "
            f"'{value[:40]}...' ({len(value)} characters)"
        )


def validate_attributes(attributes: Mapping[str, Any]) -> None:
    """Validate that span attributes use OpenTelemetry-compatible values.

    Values must be str, bool, int, or float, or a list/tuple whose items
    all share one of those types.

    Raises:
        ValueError: If a key or value is not supported.
    """
    if not isinstance(attributes, Mapping):
        raise ValueError(
            f"Attributes must be a mapping, got {type(attributes).__name__}"
        )

    for key, value in attributes.items():
        if not isinstance(key, str) or not key:
            raise ValueError(f"Attribute keys must be non-empty strings, got {key!r}")

        if isinstance(value, _PRIMITIVE_TYPES):
            continue

        if isinstance(value, (list, tuple)):
            item_types = {type(item) for item in value}
            if len(item_types) <= 1 and all(
                issubclass(t, _PRIMITIVE_TYPES) for t in item_types
            ):
                continue
            raise ValueError(
                f"Attribute '{key}' must be a homogeneous sequence of primitives"
            )

        raise ValueError(
            f"Attribute '{key}' has unsupported type {type(value).__name__}"
        )
