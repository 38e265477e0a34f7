"""Configuration loader for dbcertscan.

Configuration values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/dbcertscan/config.yml`` (or an override path).
3. Environment variables prefixed with ``DBCERTSCAN_``.
4. Explicit overrides supplied programmatically (used by CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export DBCERTSCAN_TRANSPORT=winrm
    export DBCERTSCAN_WINRM__SCHEME=https
    export DBCERTSCAN_WINRM__SERVER_CERT_VALIDATION=ignore

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resolved configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
import re
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure is environmental
    raise RuntimeError(
        "PyYAML is required to load dbcertscan configuration. Install with "
        "`pip install dbcertscan` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "DBCERTSCAN_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
USERNAME_ENV_VAR = f"{ENV_PREFIX}USERNAME"
PASSWORD_ENV_VAR = f"{ENV_PREFIX}PASSWORD"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR, USERNAME_ENV_VAR, PASSWORD_ENV_VAR}

DEFAULT_DISPLAY_PATTERN = r"^SQL Server \((?P<instance>[^)]+)\)$"

ALLOWED_TRANSPORTS = {"auto", "winrm", "local"}
ALLOWED_WINRM_SCHEMES = {"http", "https"}
ALLOWED_WINRM_AUTH = {"ntlm", "kerberos", "basic", "credssp", "certificate", "plaintext", "ssl"}
ALLOWED_CERT_VALIDATION = {"validate", "ignore"}
DEFAULT_WINRM_PORTS = {"http": 5985, "https": 5986}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class WinRMConfig:
    """Connection settings for the WinRM transport."""

    scheme: str = "http"
    port: int = 5985
    transport: str = "ntlm"
    server_cert_validation: str = "validate"
    read_timeout: float = 30.0
    operation_timeout: float = 20.0

    def endpoint(self, host: str) -> str:
        """Return the WS-Management endpoint URL for *host*."""
        return f"{self.scheme}://{host}:{self.port}/wsman"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "scheme": self.scheme,
            "port": self.port,
            "transport": self.transport,
            "server_cert_validation": self.server_cert_validation,
            "read_timeout": self.read_timeout,
            "operation_timeout": self.operation_timeout,
        }


@dataclass(frozen=True)
class ServicesConfig:
    """How database engine services are recognised and decoded."""

    display_pattern: str = DEFAULT_DISPLAY_PATTERN
    root_property: str = "REGROOT"
    address_property: str = "VSNAME"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "display_pattern": self.display_pattern,
            "root_property": self.root_property,
            "address_property": self.address_property,
        }


@dataclass(frozen=True)
class RegistryConfig:
    """Location of the configured certificate below an instance root."""

    network_subkey: str = "MSSQLServer\\SuperSocketNetLib"
    certificate_value: str = "Certificate"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "network_subkey": self.network_subkey,
            "certificate_value": self.certificate_value,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for dbcertscan."""

    config_file: Path
    logs_dir: Path
    transport: str
    winrm: WinRMConfig
    services: ServicesConfig
    registry: RegistryConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "transport": self.transport,
            "winrm": self.winrm.to_dict(),
            "services": self.services.to_dict(),
            "registry": self.registry.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/dbcertscan/config.yml",
    "logs_dir": "~/.local/state/dbcertscan/logs",
    "transport": "auto",
    "winrm": {
        "scheme": "http",
        "port": None,  # derived from scheme when absent
        "transport": "ntlm",
        "server_cert_validation": "validate",
        "read_timeout": 30.0,
        "operation_timeout": 20.0,
    },
    "services": {
        "display_pattern": DEFAULT_DISPLAY_PATTERN,
        "root_property": "REGROOT",
        "address_property": "VSNAME",
    },
    "registry": {
        "network_subkey": "MSSQLServer\\SuperSocketNetLib",
        "certificate_value": "Certificate",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_NESTED_KEYS: dict[str, set[str]] = {
    "winrm": set(cast(Mapping[str, object], DEFAULTS["winrm"]).keys()),
    "services": set(cast(Mapping[str, object], DEFAULTS["services"]).keys()),
    "registry": set(cast(Mapping[str, object], DEFAULTS["registry"]).keys()),
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    transport = str(raw.get("transport", "auto")).strip().lower()
    if transport not in ALLOWED_TRANSPORTS:
        allowed = ", ".join(sorted(ALLOWED_TRANSPORTS))
        raise ConfigError(f"Unsupported transport '{transport}'. Allowed: {allowed}.")

    for section, allowed_keys in _NESTED_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed_keys
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    winrm_map = _as_dict(raw.get("winrm"), "winrm")
    _expect_choice(winrm_map.get("scheme"), "winrm.scheme", ALLOWED_WINRM_SCHEMES)
    _expect_choice(winrm_map.get("transport"), "winrm.transport", ALLOWED_WINRM_AUTH)
    _expect_choice(
        winrm_map.get("server_cert_validation"),
        "winrm.server_cert_validation",
        ALLOWED_CERT_VALIDATION,
    )

    services_map = _as_dict(raw.get("services"), "services")
    pattern = services_map.get("display_pattern")
    if pattern is not None:
        _compile_display_pattern(pattern)


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    logs_dir = _to_path(raw.get("logs_dir"))
    transport = str(raw.get("transport", "auto")).strip().lower()

    winrm_mapping = _as_dict(raw.get("winrm"), "winrm")
    scheme = str(winrm_mapping.get("scheme") or "http").strip().lower()
    port = _expect_int(winrm_mapping.get("port"), "winrm.port", default=DEFAULT_WINRM_PORTS[scheme])
    if not 0 < port < 65536:
        raise ConfigError(f"winrm.port must be between 1 and 65535. Got {port}.")
    read_timeout = _expect_positive_float(
        winrm_mapping.get("read_timeout"), "winrm.read_timeout", default=30.0
    )
    operation_timeout = _expect_positive_float(
        winrm_mapping.get("operation_timeout"), "winrm.operation_timeout", default=20.0
    )
    if operation_timeout >= read_timeout:
        # pywinrm rejects sessions where the read timeout does not exceed the operation timeout.
        raise ConfigError(
            "winrm.read_timeout must be greater than winrm.operation_timeout "
            f"({read_timeout} <= {operation_timeout})."
        )
    winrm = WinRMConfig(
        scheme=scheme,
        port=port,
        transport=str(winrm_mapping.get("transport") or "ntlm").strip().lower(),
        server_cert_validation=str(
            winrm_mapping.get("server_cert_validation") or "validate"
        ).strip().lower(),
        read_timeout=read_timeout,
        operation_timeout=operation_timeout,
    )

    services_mapping = _as_dict(raw.get("services"), "services")
    services = ServicesConfig(
        display_pattern=str(services_mapping.get("display_pattern") or DEFAULT_DISPLAY_PATTERN),
        root_property=_expect_non_empty(
            services_mapping.get("root_property"), "services.root_property", "REGROOT"
        ),
        address_property=_expect_non_empty(
            services_mapping.get("address_property"), "services.address_property", "VSNAME"
        ),
    )

    registry_mapping = _as_dict(raw.get("registry"), "registry")
    registry = RegistryConfig(
        network_subkey=_expect_non_empty(
            registry_mapping.get("network_subkey"),
            "registry.network_subkey",
            "MSSQLServer\\SuperSocketNetLib",
        ).strip("\\"),
        certificate_value=_expect_non_empty(
            registry_mapping.get("certificate_value"), "registry.certificate_value", "Certificate"
        ),
    )

    return AppConfig(
        config_file=config_file,
        logs_dir=logs_dir,
        transport=transport,
        winrm=winrm,
        services=services,
        registry=registry,
    )


def _compile_display_pattern(value: object) -> re.Pattern[str]:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError("services.display_pattern must be a non-empty string.")
    try:
        compiled = re.compile(value)
    except re.error as exc:
        raise ConfigError(f"Invalid services.display_pattern {value!r}: {exc}") from exc
    if "instance" not in compiled.groupindex:
        raise ConfigError(
            "services.display_pattern must define a named group 'instance', "
            "e.g. '^SQL Server \\((?P<instance>[^)]+)\\)$'."
        )
    return compiled


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _expect_choice(value: object | None, label: str, allowed: set[str]) -> None:
    if value is None:
        return
    normalized = str(value).strip().lower()
    if normalized not in allowed:
        joined = ", ".join(sorted(allowed))
        raise ConfigError(f"Unsupported value '{value}' for {label}. Allowed: {joined}.")


def _expect_non_empty(value: object | None, label: str, default: str) -> str:
    if value is None:
        return default
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label} must be a non-empty string.")
    return value.strip()


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "RegistryConfig",
    "ServicesConfig",
    "WinRMConfig",
    "load_config",
]
