"""Exporter configuration read from the OTLP environment variables.

Follows the OpenTelemetry SDK environment variable conventions
(https://opentelemetry.io/docs/languages/sdk-configuration/otlp-exporter/).
A YAML file may supply defaults; values in it support ``${VAR}`` substitution.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal, Mapping
from urllib.parse import unquote, urlparse

logger = logging.getLogger(__name__)

DEFAULT_HTTP_ENDPOINT = "http://localhost:4318"
DEFAULT_GRPC_ENDPOINT = "http://localhost:4317"
DEFAULT_TIMEOUT_MILLIS = 10000
HTTP_TRACES_PATH = "/v1/traces"

VALID_EXPORTERS = frozenset({"otlp", "console", "none"})
VALID_PROTOCOLS = frozenset({"grpc", "http/protobuf"})
VALID_LOG_LEVELS = frozenset({"debug", "info", "warning", "warn", "error", "critical"})
VALID_SAMPLERS = frozenset(
    {
        "always_on",
        "always_off",
        "traceidratio",
        "parentbased_always_on",
        "parentbased_always_off",
        "parentbased_traceidratio",
    }
)

_TRUE_VALUES = frozenset({"true", "1", "yes", "on"})
_FALSE_VALUES = frozenset({"false", "0", "no", "off", ""})


class ConfigurationError(Exception):
    """Raised when exporter configuration is invalid."""

    pass


@dataclass
class ExporterConfig:
    """Configuration for the trace exporter and the provider around it."""

    service_name: str = "unknown-service"
    exporter: Literal["otlp", "console", "none"] = "otlp"
    protocol: Literal["grpc", "http/protobuf"] = "http/protobuf"
    endpoint: str | None = None  # None means the protocol's default
    insecure: bool = False  # Only honored by the grpc exporter
    headers: str = ""  # Format: "key1=value1,key2=value2"
    timeout_millis: int = DEFAULT_TIMEOUT_MILLIS
    sampler: str = "parentbased_traceidratio"
    traces_sample_rate: float = 1.0
    log_level: str = "info"

    @property
    def resolved_endpoint(self) -> str:
        """Return the endpoint the exporter should send traces to."""
        if self.endpoint:
            return self.endpoint
        if self.protocol == "grpc":
            return DEFAULT_GRPC_ENDPOINT
        return DEFAULT_HTTP_ENDPOINT + HTTP_TRACES_PATH

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_millis / 1000

    def validate(self) -> None:
        """Validate the configuration.

        Raises:
            ConfigurationError: If any validation errors are found. All
                problems are reported in a single message.
        """
        errors: list[str] = []

        if not self.service_name or not self.service_name.strip():
            errors.append("Service name must be a non-empty string.")

        if self.exporter not in VALID_EXPORTERS:
            errors.append(
                f"Invalid exporter: '{self.exporter}'. "
                f"Value must be one of: {', '.join(sorted(VALID_EXPORTERS))}."
            )

        if self.protocol not in VALID_PROTOCOLS:
            errors.append(
                f"Invalid OTLP protocol: '{self.protocol}'. "
                f"Value must be one of: {', '.join(sorted(VALID_PROTOCOLS))}."
            )

        if self.exporter == "otlp":
            endpoint_error = _check_endpoint(self.resolved_endpoint)
            if endpoint_error:
                errors.append(endpoint_error)

        if self.timeout_millis <= 0:
            errors.append(
                f"Invalid timeout: {self.timeout_millis}. Value must be positive."
            )

        if self.sampler not in VALID_SAMPLERS:
            errors.append(
                f"Invalid sampler: '{self.sampler}'. "
                f"Value must be one of: {', '.join(sorted(VALID_SAMPLERS))}."
            )

        if not (0.0 <= self.traces_sample_rate <= 1.0):
            errors.append(
                f"Invalid traces_sample_rate: {self.traces_sample_rate}. "
                "Value must be between 0.0 and 1.0."
            )

        if self.log_level.lower() not in VALID_LOG_LEVELS:
            errors.append(
                f"Invalid log level: '{self.log_level}'. "
                f"Value must be one of: {', '.join(sorted(VALID_LOG_LEVELS))}."
            )

        if errors:
            error_message = "Configuration validation failed:\n" + "\n".join(
                f"  - {error}" for error in errors
            )
            raise ConfigurationError(error_message)


def _check_endpoint(endpoint: str) -> str | None:
    """Return an error message if endpoint is not an http(s) URL with a host."""
    try:
        parsed = urlparse(endpoint)
        # Accessing port validates it is numeric and in range
        parsed.port
    except ValueError as e:
        return f"Malformed endpoint '{endpoint}': {e}."

    if parsed.scheme not in ("http", "https"):
        return (
            f"Malformed endpoint '{endpoint}': scheme must be http or https."
        )
    if not parsed.hostname:
        return f"Malformed endpoint '{endpoint}': missing host."
    return None


def parse_otlp_headers(headers_str: str) -> dict[str, str]:
    """Parse OTLP headers string into a dictionary.

    Format: "key1=value1,key2=value2"
    Returns: {"key1": "value1", "key2": "value2"}

    Values are URL-decoded (e.g., %20 -> space). Empty keys
    or values are skipped. Headers containing control characters are rejected
    to prevent header injection.
    """
    if not headers_str:
        return {}

    control_chars = frozenset("\r\n\x00\x0b\x0c")

    headers: dict[str, str] = {}
    for pair in headers_str.split(","):
        if "=" in pair:
            key, value = pair.split("=", 1)
            key = unquote(key.strip())
            value = unquote(value.strip())
            if key and value:
                if any(c in key for c in control_chars) or any(
                    c in value for c in control_chars
                ):
                    logger.warning(
                        f"Skipping header with control characters: {key!r}"
                    )
                    continue
                headers[key] = value
    return headers


def _parse_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"Invalid boolean for {name}: {value!r}")


def _parse_int(name: str, value: Any) -> int:
    try:
        return int(str(value).strip())
    except ValueError:
        raise ConfigurationError(f"Invalid integer for {name}: {value!r}") from None


def _parse_float(name: str, value: Any) -> float:
    try:
        return float(str(value).strip())
    except ValueError:
        raise ConfigurationError(f"Invalid number for {name}: {value!r}") from None


def _substitute_env_vars(value: str, environ: Mapping[str, str]) -> str:
    """Substitute ${VAR} or ${VAR:default} patterns with environment values."""
    pattern = r"\$\{([^}]+)\}"

    def replace(match: re.Match[str]) -> str:
        var_expr = match.group(1)
        if ":" in var_expr:
            var_name, default = var_expr.split(":", 1)
            return environ.get(var_name, default)
        return environ.get(var_expr, "")

    return re.sub(pattern, replace, value)


def _load_yaml(path: Path, environ: Mapping[str, str]) -> dict[str, Any]:
    """Load a flat YAML mapping, substituting environment variables in strings."""
    import yaml

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")

    return {
        key: _substitute_env_vars(value, environ) if isinstance(value, str) else value
        for key, value in data.items()
    }


def _first_env(environ: Mapping[str, str], *names: str) -> str | None:
    """Return the first non-empty value among names."""
    for name in names:
        value = environ.get(name)
        if value is not None and value.strip() != "":
            return value.strip()
    return None


def _env_values(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect config values from the OTEL_* environment variables."""
    values: dict[str, Any] = {}

    service_name = _first_env(environ, "OTEL_SERVICE_NAME")
    if service_name is not None:
        values["service_name"] = service_name

    exporter = _first_env(environ, "OTEL_TRACES_EXPORTER")
    if exporter is not None:
        values["exporter"] = exporter.lower()

    protocol = _first_env(
        environ, "OTEL_EXPORTER_OTLP_TRACES_PROTOCOL", "OTEL_EXPORTER_OTLP_PROTOCOL"
    )
    if protocol is not None:
        values["protocol"] = protocol.lower()

    # The signal-specific endpoint is used as-is; the generic one is a base URL
    traces_endpoint = _first_env(environ, "OTEL_EXPORTER_OTLP_TRACES_ENDPOINT")
    base_endpoint = _first_env(environ, "OTEL_EXPORTER_OTLP_ENDPOINT")
    if traces_endpoint is not None:
        values["endpoint"] = traces_endpoint
    elif base_endpoint is not None:
        values["_base_endpoint"] = base_endpoint

    insecure = _first_env(
        environ, "OTEL_EXPORTER_OTLP_TRACES_INSECURE", "OTEL_EXPORTER_OTLP_INSECURE"
    )
    if insecure is not None:
        values["insecure"] = insecure

    headers = _first_env(
        environ, "OTEL_EXPORTER_OTLP_TRACES_HEADERS", "OTEL_EXPORTER_OTLP_HEADERS"
    )
    if headers is not None:
        values["headers"] = headers

    timeout = _first_env(
        environ, "OTEL_EXPORTER_OTLP_TRACES_TIMEOUT", "OTEL_EXPORTER_OTLP_TIMEOUT"
    )
    if timeout is not None:
        values["timeout_millis"] = timeout

    sampler = _first_env(environ, "OTEL_TRACES_SAMPLER")
    if sampler is not None:
        values["sampler"] = sampler.lower()

    sample_rate = _first_env(environ, "OTEL_TRACES_SAMPLER_ARG")
    if sample_rate is not None:
        values["traces_sample_rate"] = sample_rate

    log_level = _first_env(environ, "OTEL_LOG_LEVEL")
    if log_level is not None:
        values["log_level"] = log_level

    return values


def _dict_to_config(data: dict[str, Any]) -> ExporterConfig:
    """Convert a merged dictionary of raw values to ExporterConfig."""
    protocol = str(data.get("protocol", "http/protobuf"))
    # YAML may hold non-string scalars; validate() reports them as malformed
    endpoint = data.get("endpoint")
    if endpoint is not None:
        endpoint = str(endpoint)

    base_endpoint = data.get("_base_endpoint")
    if endpoint is None and base_endpoint:
        if protocol == "grpc":
            endpoint = str(base_endpoint)
        else:
            endpoint = str(base_endpoint).rstrip("/") + HTTP_TRACES_PATH

    return ExporterConfig(
        service_name=str(data.get("service_name", "unknown-service")),
        exporter=str(data.get("exporter", "otlp")),  # type: ignore[arg-type]
        protocol=protocol,  # type: ignore[arg-type]
        endpoint=endpoint,
        insecure=_parse_bool("insecure", data.get("insecure", False)),
        headers=str(data.get("headers", "") or ""),
        timeout_millis=_parse_int(
            "timeout_millis", data.get("timeout_millis", DEFAULT_TIMEOUT_MILLIS)
        ),
        sampler=str(data.get("sampler", "parentbased_traceidratio")),
        traces_sample_rate=_parse_float(
            "traces_sample_rate", data.get("traces_sample_rate", 1.0)
        ),
        log_level=str(data.get("log_level", "info")),
    )


def load_config(
    service_name: str,
    config_path: str | None = None,
    environ: Mapping[str, str] | None = None,
    **overrides: Any,
) -> ExporterConfig:
    """Load exporter configuration.

    Configuration is loaded from (in order of precedence):
    1. Explicit overrides passed to this function
    2. OTEL_* environment variables
    3. The YAML config file at config_path, if given
    4. Default values, with service_name as the service name

    Args:
        service_name: Service name used when OTEL_SERVICE_NAME is unset.
        config_path: Path to a YAML configuration file.
        environ: Environment mapping to read (defaults to os.environ).
        **overrides: Field overrides, e.g. ``endpoint="http://collector:4318"``.

    Returns:
        A validated ExporterConfig instance.

    Raises:
        ConfigurationError: If a value cannot be parsed or fails validation.
    """
    env = os.environ if environ is None else environ

    config_data: dict[str, Any] = {"service_name": service_name}

    if config_path:
        path = Path(config_path)
        if path.exists():
            config_data.update(_load_yaml(path, env))
        else:
            logger.warning(f"Config file {config_path} not found, ignoring")

    env_data = _env_values(env)
    if "endpoint" in env_data:
        config_data.pop("_base_endpoint", None)
    if "_base_endpoint" in env_data:
        config_data.pop("endpoint", None)
    config_data.update(env_data)

    for key, value in overrides.items():
        if key not in ExporterConfig.__dataclass_fields__:
            raise ConfigurationError(f"Unknown configuration option: {key}")
        config_data[key] = value

    config = _dict_to_config(config_data)
    config.validate()
    return config
