"""Configuration file loading.

``config.json`` may contain ``${VAR}`` and ``${VAR:-default}`` placeholders.
Each is looked up in command-line overrides first, then the process
environment, then the encrypted secrets file, and finally falls back to the
inline default.  A placeholder with neither a value nor a default is an
error.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, TypeVar
from urllib.parse import urlparse

import jsonschema
import orjson

logger = logging.getLogger(__name__)

_VAR_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_SCHEMA_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "config.schema.json"

_T = TypeVar("_T")


@dataclass
class BrokerConfig:
    """MQTT broker connection settings.

    ``retry_interval_s`` is a fixed reconnect delay with unlimited attempts.
    After the broker refuses the connection the monitor starts a new
    connect cycle every ``error_retry_s``.
    """

    host: str = "localhost"
    port: int = 8883
    transport: str = "tcp"          # tcp | websockets
    ws_path: str = "/mqtt"
    tls: bool = True
    tls_insecure: bool = False
    ca_cert: str = ""
    username: str = ""
    password: str = ""
    client_id: str = ""
    namespace: str = "als"
    keepalive_s: int = 60
    connect_timeout_s: float = 4.0
    retry_interval_s: float = 1.0
    error_retry_s: float = 30.0
    clean_session: bool = True

    @property
    def subscription(self) -> str:
        """Wildcard filter covering every device and message kind."""
        return f"{self.namespace}/+/+"


@dataclass
class LivenessConfig:
    """Liveness sweep timing."""

    sweep_interval_s: float = 5.0
    stale_after_s: float = 35.0


@dataclass
class StateConfig:
    """Fleet-state reducer settings."""

    history_limit: int = 500
    update_policy: str = "replace"  # replace | merge


@dataclass
class RotationConfig:
    """When the active NDJSON file is sealed."""

    interval_seconds: int = 600
    max_size_bytes: int = 52428800


@dataclass
class FlushConfig:
    """When buffered NDJSON lines reach the disk."""

    interval_ms: int = 1000
    every_n_events: int = 50


@dataclass
class PersistenceConfig:
    """Where accepted messages are forwarded."""

    output: str = "file"            # file | stdout | none
    output_dir: str = "/var/lib/als-fleet-monitor/data"
    file_prefix: str = "fleet"
    rotation: RotationConfig = field(default_factory=RotationConfig)
    flush: FlushConfig = field(default_factory=FlushConfig)


@dataclass
class SnapshotConfig:
    """Periodic read-model export.  Disabled when ``path`` is empty."""

    path: str = ""
    interval_s: float = 5.0
    history_limit: int = 50


@dataclass
class LogFileConfig:
    """Rotating log file, written alongside stderr when ``enabled``."""

    enabled: bool = False
    path: str = "/var/log/als-fleet-monitor/app.log"
    max_size_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5


@dataclass
class LoggingConfig:
    """Log level, optional file output and redaction patterns."""

    level: str = "info"
    file: LogFileConfig = field(default_factory=LogFileConfig)
    redact_patterns: list[str] = field(
        default_factory=lambda: ["*password*", "*token*", "*secret*", "*key*"]
    )


@dataclass
class AppConfig:
    """Everything read from ``config.json``."""

    instance_id: str = "monitor-01"
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    liveness: LivenessConfig = field(default_factory=LivenessConfig)
    state: StateConfig = field(default_factory=StateConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    assignments_path: str = ""
    snapshot: SnapshotConfig = field(default_factory=SnapshotConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _resolve(
    name: str,
    default: Optional[str],
    overrides: Optional[Mapping[str, str]],
    secrets: Optional[Mapping[str, str]],
) -> str:
    for source in (overrides or {}, os.environ, secrets or {}):
        if name in source:
            return source[name]
    if default is None:
        raise ValueError(
            f"${{{name}}} has no value: pass it on the command line, export it, "
            f"or store it in the secrets file"
        )
    return default


def _interpolate_value(
    value: str,
    overrides: Optional[Mapping[str, str]] = None,
    secrets: Optional[Mapping[str, str]] = None,
) -> str:
    """Substitute every placeholder in *value*."""
    return _VAR_RE.sub(
        lambda m: _resolve(m.group(1), m.group(2), overrides, secrets),
        value,
    )


def _walk_and_interpolate(
    obj: Any,
    overrides: Optional[Mapping[str, str]] = None,
    secrets: Optional[Mapping[str, str]] = None,
) -> Any:
    """Interpolate strings anywhere inside a parsed JSON document."""
    def walk(node: Any) -> Any:
        if isinstance(node, str):
            return _interpolate_value(node, overrides, secrets)
        if isinstance(node, list):
            return [walk(item) for item in node]
        if isinstance(node, dict):
            return {key: walk(item) for key, item in node.items()}
        return node

    return walk(obj)


def _section(cls: type[_T], raw: Optional[dict[str, Any]]) -> _T:
    """Build dataclass *cls* from *raw*, recursing into nested sections.

    Unknown keys are ignored; missing keys take the dataclass default.
    """
    raw = raw or {}
    kwargs: dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in raw:
            continue
        value = raw[f.name]
        if f.default_factory is not MISSING and is_dataclass(f.default_factory):
            value = _section(f.default_factory, value)
        kwargs[f.name] = value
    return cls(**kwargs)


def _coerce_broker(broker: BrokerConfig) -> None:
    """Normalise values that may arrive as strings after interpolation."""
    for name in ("port", "keepalive_s"):
        setattr(broker, name, int(getattr(broker, name)))
    for name in ("connect_timeout_s", "retry_interval_s", "error_retry_s"):
        setattr(broker, name, float(getattr(broker, name)))
    for name in ("tls", "tls_insecure", "clean_session"):
        value = getattr(broker, name)
        if isinstance(value, str):
            setattr(broker, name, value.strip().lower() in ("1", "true", "yes", "on"))


def validate_config(cfg: AppConfig) -> None:
    """Cross-field checks that JSON Schema cannot express.

    Raises
    ------
    ValueError
        On inconsistent settings.
    """
    lv = cfg.liveness
    if lv.sweep_interval_s <= 0:
        raise ValueError("liveness.sweep_interval_s must be positive")
    if lv.stale_after_s <= lv.sweep_interval_s:
        raise ValueError(
            "liveness.stale_after_s must exceed liveness.sweep_interval_s "
            f"({lv.stale_after_s} <= {lv.sweep_interval_s})"
        )
    if cfg.state.update_policy not in ("replace", "merge"):
        raise ValueError(f"Unknown state.update_policy: {cfg.state.update_policy!r}")
    if cfg.state.history_limit < 1:
        raise ValueError("state.history_limit must be at least 1")
    if cfg.broker.transport not in ("tcp", "websockets"):
        raise ValueError(f"Unknown broker.transport: {cfg.broker.transport!r}")
    if cfg.persistence.output not in ("file", "stdout", "none"):
        raise ValueError(f"Unknown persistence.output: {cfg.persistence.output!r}")
    if not cfg.broker.namespace or any(c in cfg.broker.namespace for c in "+#"):
        raise ValueError(f"Invalid broker.namespace: {cfg.broker.namespace!r}")


def apply_broker_url(broker: BrokerConfig, url: str) -> None:
    """Override host/port/transport/TLS from a broker URL.

    Accepts ``mqtt://``, ``mqtts://``, ``ws://`` and ``wss://`` URLs, e.g.
    ``wss://broker.example.com:8884/mqtt``.
    """
    parsed = urlparse(url)
    schemes = {
        "mqtt": ("tcp", False, 1883),
        "mqtts": ("tcp", True, 8883),
        "ws": ("websockets", False, 80),
        "wss": ("websockets", True, 443),
    }
    if parsed.scheme not in schemes or not parsed.hostname:
        raise ValueError(f"Unsupported broker URL: {url!r}")

    transport, tls, default_port = schemes[parsed.scheme]
    broker.host = parsed.hostname
    broker.port = parsed.port or default_port
    broker.transport = transport
    broker.tls = tls
    if transport == "websockets" and parsed.path:
        broker.ws_path = parsed.path


def load_config(
    path: str | Path,
    overrides: Optional[Mapping[str, str]] = None,
    secrets: Optional[Mapping[str, str]] = None,
    schema_path: str | Path | None = None,
) -> AppConfig:
    """Read ``config.json`` and return a validated :class:`AppConfig`.

    Placeholders are substituted before schema validation, so the schema
    sees final values.  *schema_path* defaults to the schema shipped in the
    repository's ``config/`` directory; validation is skipped with a
    warning when that file is absent.

    Raises
    ------
    ValueError
        An unresolvable placeholder or inconsistent settings.
    jsonschema.ValidationError
        The document does not match the schema.
    """
    document = _walk_and_interpolate(
        orjson.loads(Path(path).read_bytes()), overrides=overrides, secrets=secrets
    )

    schema_file = Path(schema_path) if schema_path else _SCHEMA_PATH
    if schema_file.exists():
        jsonschema.validate(instance=document, schema=orjson.loads(schema_file.read_bytes()))
    else:
        logger.warning("Schema file not found at %s; skipping validation", schema_file)

    cfg = _section(AppConfig, document)
    _coerce_broker(cfg.broker)
    validate_config(cfg)
    logger.debug("Loaded config from %s (instance %s)", path, cfg.instance_id)
    return cfg
