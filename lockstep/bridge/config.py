"""
Bridge Configuration

Layered configuration with YAML files, environment variables, validation and
runtime overrides.

Configuration sources (in order of precedence):
    1. Environment variables (LOCKSTEP_*)
    2. Runtime overrides (ConfigManager.set)
    3. YAML files (./lockstep.yaml, ./config/lockstep.yaml, ~/.lockstep/config.yaml)
    4. Default values

YAML documents are checked against a JSON schema derived from the sections
below before any value is applied, so a typo'd key fails loudly instead of being
ignored.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml
from jsonschema import Draft202012Validator

T = TypeVar("T")

LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    secret: bool = False  # masked in to_dict(redact=True)
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[T, T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        if isinstance(value, str) and not isinstance(self.default, str):
            value = self._coerce(value)
        elif isinstance(self.default, float) and isinstance(value, int) and not isinstance(value, bool):
            value = float(value)  # type: ignore[assignment]
        if self.validator and not self.validator(value):
            raise ValidationError(f"Invalid value for config: {value!r}")
        old_value = self._value
        self._value = value
        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        target_type = type(self.default)
        try:
            if target_type == bool:
                return value.strip().lower() in ("true", "1", "yes", "on")  # type: ignore
            if target_type == int:
                return int(value)  # type: ignore
            if target_type == float:
                return float(value)  # type: ignore
        except ValueError as exc:
            raise ValidationError(f"{self.env_var or 'value'}: cannot parse {value!r}") from exc
        return value  # type: ignore

    def on_change(self, callback: Callable[[T, T], None]) -> None:
        self._callbacks.append(callback)


def _positive(x: Any) -> bool:
    return x > 0


def _non_negative(x: Any) -> bool:
    return x >= 0


def _chain_value(prefix: str, key: str, default: Any, description: str,
                 validator: Optional[Callable[[Any], bool]] = None, secret: bool = False) -> Any:
    return field(default_factory=lambda: ConfigValue(
        default=default,
        env_var=f"LOCKSTEP_{prefix}_{key}",
        description=description,
        validator=validator,
        secret=secret,
    ))


@dataclass
class OriginChainConfig:
    """The ledger where assets are native."""
    name: ConfigValue[str] = _chain_value("ORIGIN", "NAME", "ethereum", "Ledger name", lambda x: bool(x))
    rpc_url: ConfigValue[str] = _chain_value("ORIGIN", "RPC_URL", "", "JSON-RPC endpoint")
    verifier_address: ConfigValue[str] = _chain_value("ORIGIN", "VERIFIER", "", "Verifier contract address")
    chain_id: ConfigValue[int] = _chain_value("ORIGIN", "CHAIN_ID", 1, "EIP-155 chain id", _positive)
    poll_interval_seconds: ConfigValue[float] = _chain_value(
        "ORIGIN", "POLL_INTERVAL", 12.0, "Head polling interval in seconds", _positive)
    block_time_seconds: ConfigValue[float] = _chain_value(
        "ORIGIN", "BLOCK_TIME", 12.0, "Average block time in seconds", _positive)
    min_balance: ConfigValue[float] = _chain_value(
        "ORIGIN", "MIN_BALANCE", 0.1, "Relayer balance alert threshold (native units)", _non_negative)


@dataclass
class MirrorChainConfig:
    """The ledger where assets are minted on first arrival."""
    name: ConfigValue[str] = _chain_value("MIRROR", "NAME", "megaeth", "Ledger name", lambda x: bool(x))
    rpc_url: ConfigValue[str] = _chain_value("MIRROR", "RPC_URL", "", "JSON-RPC endpoint")
    verifier_address: ConfigValue[str] = _chain_value("MIRROR", "VERIFIER", "", "Verifier contract address")
    chain_id: ConfigValue[int] = _chain_value("MIRROR", "CHAIN_ID", 42069, "EIP-155 chain id", _positive)
    poll_interval_seconds: ConfigValue[float] = _chain_value(
        "MIRROR", "POLL_INTERVAL", 1.0, "Head polling interval in seconds", _positive)
    block_time_seconds: ConfigValue[float] = _chain_value(
        "MIRROR", "BLOCK_TIME", 1.0, "Average block time in seconds", _positive)
    min_balance: ConfigValue[float] = _chain_value(
        "MIRROR", "MIN_BALANCE", 1.0, "Relayer balance alert threshold (native units)", _non_negative)


@dataclass
class IndexerConfig:
    """Lock event indexing."""
    window_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1000,
        env_var="LOCKSTEP_INDEXER_WINDOW",
        description="Maximum blocks per catch-up window",
        validator=lambda x: 0 < x <= 10000,
    ))
    confirmation_blocks: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="LOCKSTEP_CONFIRMATION_BLOCKS",
        description="Blocks to wait before building a block's commitment",
        validator=_non_negative,
    ))


@dataclass
class RelayerConfig:
    """Root submission and unlock driving."""
    private_key: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="LOCKSTEP_RELAYER_PRIVATE_KEY",
        description="Relayer signing key (hex)",
        secret=True,
    ))
    relay_interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="LOCKSTEP_RELAY_INTERVAL",
        description="Seconds between sweeps of pending commitments",
        validator=_positive,
    ))
    balance_check_interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=300.0,
        env_var="LOCKSTEP_BALANCE_CHECK_INTERVAL",
        description="Seconds between relayer balance checks",
        validator=_positive,
    ))
    gas_multiplier: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=1.2,
        env_var="LOCKSTEP_GAS_MULTIPLIER",
        description="Safety margin applied to gas estimates",
        validator=lambda x: 1.0 <= x <= 5.0,
    ))
    confirmation_blocks: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="LOCKSTEP_RELAYER_CONFIRMATIONS",
        description="Confirmations to wait for before a submission counts",
        validator=_positive,
    ))
    tx_timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=120.0,
        env_var="LOCKSTEP_TX_TIMEOUT",
        description="Upper bound on waiting for a transaction",
        validator=_positive,
    ))
    unlock_batch_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1,
        env_var="LOCKSTEP_UNLOCK_BATCH_SIZE",
        description="Unlocks per transaction (1 disables batching)",
        validator=lambda x: 1 <= x <= 100,
    ))
    unlock_max_deferrals: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5,
        env_var="LOCKSTEP_UNLOCK_MAX_DEFERRALS",
        description="Sweeps an unlock may be deferred by an unavailable ledger before it is recorded as failed",
        validator=_positive,
    ))
    rpc_max_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="LOCKSTEP_RPC_MAX_ATTEMPTS",
        description="Attempts per ledger read",
        validator=_positive,
    ))
    rpc_base_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=1.0,
        env_var="LOCKSTEP_RPC_BASE_DELAY",
        description="Base backoff between ledger read attempts",
        validator=_non_negative,
    ))


@dataclass
class QueueConfig:
    """Durable work queue."""
    build_concurrency: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5,
        env_var="LOCKSTEP_PROOF_GENERATION_CONCURRENCY",
        description="Concurrent commitment builds",
        validator=_positive,
    ))
    submit_concurrency: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=2,
        env_var="LOCKSTEP_ROOT_SUBMISSION_CONCURRENCY",
        description="Concurrent root submissions",
        validator=_positive,
    ))
    build_max_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="LOCKSTEP_BUILD_MAX_ATTEMPTS",
        description="Attempts per commitment build job",
        validator=_positive,
    ))
    build_backoff_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=5.0,
        env_var="LOCKSTEP_BUILD_BACKOFF",
        description="Base exponential backoff for build jobs",
        validator=_non_negative,
    ))
    submit_max_attempts: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5,
        env_var="LOCKSTEP_SUBMIT_MAX_ATTEMPTS",
        description="Attempts per root submission job",
        validator=_positive,
    ))
    submit_backoff_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=10.0,
        env_var="LOCKSTEP_SUBMIT_BACKOFF",
        description="Base exponential backoff for submission jobs",
        validator=_non_negative,
    ))
    poll_interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=1.0,
        env_var="LOCKSTEP_QUEUE_POLL_INTERVAL",
        description="Seconds between queue polls when idle",
        validator=_positive,
    ))


@dataclass
class StorageConfig:
    database_url: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="sqlite:///lockstep.db",
        env_var="LOCKSTEP_DATABASE_URL",
        description="SQLAlchemy database URL",
        validator=lambda x: "://" in x,
        secret=True,
    ))


@dataclass
class SafetyConfig:
    pause_on_error: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="LOCKSTEP_PAUSE_ON_ERROR",
        description="Back off and alert when a relay cycle fails",
    ))
    error_pause_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=60.0,
        env_var="LOCKSTEP_ERROR_PAUSE",
        description="Pause after a failed relay cycle when pause_on_error is set",
        validator=_non_negative,
    ))
    failed_replay_max_retries: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="LOCKSTEP_FAILED_MAX_RETRIES",
        description="Replays allowed per failed transaction",
        validator=_non_negative,
    ))
    failed_replay_delay_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=300.0,
        env_var="LOCKSTEP_FAILED_REPLAY_DELAY",
        description="Delay before a failed transaction is replayed",
        validator=_non_negative,
    ))


@dataclass
class AlertConfig:
    webhook_url: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="LOCKSTEP_ALERT_WEBHOOK_URL",
        description="Webhook receiving JSON alerts (empty logs only)",
        validator=lambda x: x == "" or x.startswith(("http://", "https://")),
        secret=True,
    ))
    timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=10.0,
        env_var="LOCKSTEP_ALERT_TIMEOUT",
        description="Webhook request timeout",
        validator=_positive,
    ))


@dataclass
class ObservabilityConfig:
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="LOCKSTEP_LOG_LEVEL",
        description="Log level (debug, info, warning, error, critical)",
        validator=lambda x: x in LOG_LEVELS,
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="LOCKSTEP_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class BridgeConfig:
    """
    Root configuration for the bridge.

    Aggregates all component configurations and provides
    serialization and schema export.
    """
    origin: OriginChainConfig = field(default_factory=OriginChainConfig)
    mirror: MirrorChainConfig = field(default_factory=MirrorChainConfig)
    indexer: IndexerConfig = field(default_factory=IndexerConfig)
    relayer: RelayerConfig = field(default_factory=RelayerConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self, redact: bool = False) -> Dict[str, Any]:
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                value = obj.get()
                if redact and obj.secret and value:
                    return "********"
                return value
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self, redact: bool = True) -> str:
        return yaml.safe_dump(self.to_dict(redact=redact), default_flow_style=False, sort_keys=False)

    def apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply a nested mapping of values. Unknown keys raise ConfigError."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], path: str) -> None:
            for key, value in values.items():
                key_path = f"{path}.{key}" if path else key
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown config key: {key_path}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    try:
                        attr.set(value)
                    except ValidationError as exc:
                        raise ValidationError(f"{key_path}: {exc}") from exc
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, key_path)
                else:
                    raise ConfigError(f"Expected a mapping at {key_path}")

        apply_to_config(self, data, "")


_JSON_TYPES = {bool: "boolean", int: "integer", float: "number", str: "string"}


def config_json_schema(config: Optional[BridgeConfig] = None) -> Dict[str, Any]:
    """JSON schema (draft 2020-12) describing a configuration document."""
    def schema_for(obj: Any) -> Dict[str, Any]:
        if isinstance(obj, ConfigValue):
            json_type = _JSON_TYPES.get(type(obj.default), "string")
            node: Dict[str, Any] = {"description": obj.description}
            # YAML writes 1 for 1.0; accept integers for number fields.
            node["type"] = ["number", "integer"] if json_type == "number" else json_type
            if not obj.secret:
                node["default"] = obj.default
            if obj.env_var:
                node["x-env-var"] = obj.env_var
            return node
        props = {name: schema_for(getattr(obj, name)) for name in obj.__dataclass_fields__}
        return {"type": "object", "properties": props, "additionalProperties": False}

    schema = schema_for(config or BridgeConfig())
    schema["$schema"] = "https://json-schema.org/draft/2020-12/schema"
    schema["title"] = "lockstep bridge configuration"
    return schema


def validate_document(data: Any) -> List[str]:
    """Schema errors for a configuration document, as ``path: message`` strings."""
    validator = Draft202012Validator(config_json_schema())
    errors = []
    for e in sorted(validator.iter_errors(data), key=str):
        path = ".".join(str(p) for p in e.absolute_path) or "<root>"
        errors.append(f"{path}: {e.message}")
    return errors


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self._config = BridgeConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[BridgeConfig], None]] = []
        self._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton (tests, CLI re-entry)."""
        with cls._lock:
            cls._instance = None

    @property
    def config(self) -> BridgeConfig:
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load, schema-check and apply a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as exc:
                raise ConfigError(f"{path}: invalid YAML: {exc}") from exc
        if not data:
            return
        errors = validate_document(data)
        if errors:
            raise ValidationError(f"{path}: " + "; ".join(errors))
        self._config.apply_dict(data)
        if path not in self._config_paths:
            self._config_paths.append(path)

    def load_defaults(self) -> Optional[Path]:
        """Load the first default config file that exists."""
        default_paths = [
            Path("lockstep.yaml"),
            Path("config/lockstep.yaml"),
            Path.home() / ".lockstep" / "config.yaml",
        ]
        for path in default_paths:
            if path.exists():
                self.load_from_file(path)
                return path
        return None

    def set(self, path: str, value: Any) -> None:
        """Set a value by dotted path, e.g. ``set("relayer.gas_multiplier", 1.5)``."""
        parts = path.split(".")
        obj: Any = self._config
        for part in parts[:-1]:
            obj = getattr(obj, part, None)
            if obj is None:
                raise ConfigError(f"Invalid config path: {path}")
        attr = getattr(obj, parts[-1], None)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def watch(self, callback: Callable[[BridgeConfig], None]) -> None:
        self._watchers.append(callback)

    def reload(self) -> None:
        for path in self._config_paths:
            if path.exists():
                self.load_from_file(path)
        for watcher in self._watchers:
            watcher(self._config)

    def validate(self) -> List[str]:
        """Validate every effective value, environment included. Returns error strings."""
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value!r}")
                except Exception as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        if self._config.origin.name.get() == self._config.mirror.name.get():
            errors.append("origin.name and mirror.name must differ")
        return errors

    def export_schema(self) -> Dict[str, Any]:
        return config_json_schema(self._config)


def get_config() -> BridgeConfig:
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    return ConfigManager()
