"""
RELAYWATCH Configuration

Layered configuration for the probe engine with YAML files, environment
variables and validation.

Configuration Sources (in order of precedence):
    1. Environment variables (RELAYWATCH_*)
    2. Runtime overrides (ConfigManager.set)
    3. Config file (./relaywatch.yaml, ./config/relaywatch.yaml,
       ~/.relaywatch/config.yaml)
    4. Default values

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from relaywatch.observability import RelayLayer, RelayLogger, get_logger

T = TypeVar("T")

ENV_PREFIX = "RELAYWATCH_"


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding and validation.
    A default of None marks a value as optional; its environment override
    is taken verbatim as a string.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if value is not None and self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for {self.env_var or 'config'}: {value!r}")
        self._value = value

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.strip().lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == float:
            return float(value)  # type: ignore
        else:
            return value  # type: ignore


def _env(name: str) -> str:
    return f"{ENV_PREFIX}{name}"


def _positive(x: Any) -> bool:
    return x > 0


def _non_empty(x: Any) -> bool:
    return isinstance(x, str) and bool(x.strip())


@dataclass
class SourceChainConfig:
    """The ledger probes are submitted on."""
    rpc: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="http://localhost:26657",
        env_var=_env("SOURCE_RPC"),
        description="CometBFT RPC endpoint of the source ledger",
        validator=_non_empty,
    ))
    chain_id: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var=_env("SOURCE_CHAIN_ID"),
        description="Chain id of the source ledger",
    ))
    prefix: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var=_env("SOURCE_PREFIX"),
        description="Bech32 address prefix on the source ledger",
    ))


@dataclass
class DestinationChainConfig:
    """The ledger deliveries are observed on."""
    rpc: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="http://localhost:36657",
        env_var=_env("DESTINATION_RPC"),
        description="CometBFT RPC endpoint of the destination ledger",
        validator=_non_empty,
    ))
    chain_id: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var=_env("DESTINATION_CHAIN_ID"),
        description="Chain id of the destination ledger",
    ))
    prefix: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var=_env("DESTINATION_PREFIX"),
        description="Bech32 address prefix on the destination ledger",
    ))


@dataclass
class ChannelConfig:
    """The IBC channel the probes travel over."""
    port_id: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="transfer",
        env_var=_env("PORT_ID"),
        description="Source port id",
        validator=_non_empty,
    ))
    channel_id: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="channel-0",
        env_var=_env("CHANNEL_ID"),
        description="Source channel id",
        validator=_non_empty,
    ))
    connection_id: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="connection-0",
        env_var=_env("CONNECTION_ID"),
        description="Connection id backing the channel",
    ))
    revision_number: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=5,
        env_var=_env("REVISION_NUMBER"),
        description="Revision number of the destination ledger used in timeout heights",
        validator=lambda x: x >= 0,
    ))
    timeout_height_offset: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1000,
        env_var=_env("TIMEOUT_HEIGHT_OFFSET"),
        description="Blocks above the destination height at which a probe times out",
        validator=_positive,
    ))


@dataclass
class FeeConfig:
    """Transaction fee policy for probe submissions."""
    gas_limit: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=150000,
        env_var=_env("GAS_LIMIT"),
        description="Gas limit per probe transaction",
        validator=_positive,
    ))
    gas_price: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="25000000000",
        env_var=_env("GAS_PRICE"),
        description="Unit gas price (integer string, smallest denom)",
        validator=lambda x: str(x).isdigit(),
    ))
    denom: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="peaka",
        env_var=_env("FEE_DENOM"),
        description="Fee denomination",
        validator=_non_empty,
    ))
    amount: ConfigValue[Optional[str]] = field(default_factory=lambda: ConfigValue(
        default=None,
        env_var=_env("FEE_AMOUNT"),
        description="Fixed fee amount; overrides price based computation when set",
        validator=lambda x: str(x).isdigit(),
    ))
    adjustment: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=1.5,
        env_var=_env("GAS_ADJUSTMENT"),
        description="Multiplier applied to simulated gas under automatic estimation",
        validator=lambda x: x >= 1.0,
    ))
    auto: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var=_env("AUTO_GAS"),
        description="Delegate fee estimation to the signer",
    ))


@dataclass
class ProbeConfig:
    """Probe shape and the acknowledgement wait budget."""
    amount: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="1000000000",
        env_var=_env("PROBE_AMOUNT"),
        description="Amount transferred by each probe",
        validator=lambda x: str(x).isdigit(),
    ))
    denom: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="peaka",
        env_var=_env("PROBE_DENOM"),
        description="Denomination transferred by each probe",
        validator=_non_empty,
    ))
    receiver: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var=_env("RECEIVER"),
        description="Receiving address on the destination ledger",
    ))
    timeout_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=60,
        env_var=_env("TIMEOUT_SECONDS"),
        description="How long to wait for an acknowledgement",
        validator=_positive,
    ))
    poll_interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=3.0,
        env_var=_env("POLL_INTERVAL_SECONDS"),
        description="Delay between acknowledgement poll ticks",
        validator=_positive,
    ))
    search_window_blocks: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=10,
        env_var=_env("SEARCH_WINDOW_BLOCKS"),
        description="Half width of the destination height window searched per tick",
        validator=_positive,
    ))
    block_scan_enabled: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var=_env("BLOCK_SCAN_ENABLED"),
        description="Enable the block-by-block scan fallback strategy",
    ))
    batch_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=10,
        env_var=_env("BATCH_SIZE"),
        description="Probes per batch run",
        validator=_positive,
    ))
    batch_interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=2.0,
        env_var=_env("BATCH_INTERVAL_SECONDS"),
        description="Delay between probes of a batch",
        validator=lambda x: x >= 0,
    ))
    stability_count: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=12,
        env_var=_env("STABILITY_COUNT"),
        description="Probes per stability run",
        validator=_positive,
    ))
    stability_interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=5.0,
        env_var=_env("STABILITY_INTERVAL_SECONDS"),
        description="Delay between probes of a stability run",
        validator=lambda x: x >= 0,
    ))
    continuous_interval_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var=_env("CONTINUOUS_INTERVAL_SECONDS"),
        description="Start-to-start spacing of probes in continuous mode (minimum 5s)",
        validator=lambda x: x >= 5,
    ))
    memo_prefix: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="IBC-relay-test",
        env_var=_env("MEMO_PREFIX"),
        description="Reserved memo prefix that marks the engine's own probes",
        validator=_non_empty,
    ))


@dataclass
class StorageConfig:
    """Persisted files."""
    log_file: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="relayer-test-logs.json",
        env_var=_env("LOG_FILE"),
        description="Observation log (JSON array, rewritten on every save)",
        validator=_non_empty,
    ))
    metrics_file: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="relayer-metrics.json",
        env_var=_env("METRICS_FILE"),
        description="Derived per-relayer metrics (JSON array)",
        validator=_non_empty,
    ))


@dataclass
class ObservabilityConfig:
    """Logging output."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var=_env("LOG_LEVEL"),
        description="Minimum log level",
        validator=lambda x: x.lower() in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var=_env("LOG_FORMAT"),
        description="Log output format: json or text",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class RelayWatchConfig:
    """
    Root configuration.

    Aggregates all section configurations and provides YAML export.
    """
    source: SourceChainConfig = field(default_factory=SourceChainConfig)
    destination: DestinationChainConfig = field(default_factory=DestinationChainConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    fee: FeeConfig = field(default_factory=FeeConfig)
    probe: ProbeConfig = field(default_factory=ProbeConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a plain dictionary of effective values."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)


DEFAULT_CONFIG_PATHS = (
    Path("relaywatch.yaml"),
    Path("config/relaywatch.yaml"),
    Path.home() / ".relaywatch" / "config.yaml",
)


class ConfigManager:
    """Configuration manager with file loading and environment binding."""

    def __init__(
        self,
        config: Optional[RelayWatchConfig] = None,
        logger: Optional[RelayLogger] = None,
    ):
        self._config = config or RelayWatchConfig()
        self._config_paths: List[Path] = []
        self._log = logger or get_logger("config", RelayLayer.CONFIG)

    @property
    def config(self) -> RelayWatchConfig:
        return self._config

    @property
    def loaded_paths(self) -> List[Path]:
        return list(self._config_paths)

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration root must be a mapping: {path}")

        self._apply_dict(data)
        self._config_paths.append(path)
        self._log.info("Configuration loaded", path=str(path))

    def load_defaults(self, paths: Optional[List[Path]] = None) -> None:
        """Load the first default configuration file that exists."""
        for path in paths if paths is not None else DEFAULT_CONFIG_PATHS:
            if path.exists():
                self.load_from_file(path)
                return

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply nested dictionary values onto the configuration tree."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                path = f"{prefix}.{key}" if prefix else key
                if not hasattr(config_obj, key):
                    self._log.warning("Unknown configuration key ignored", key=path)
                    continue
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, path)
                else:
                    raise ConfigError(f"Expected a mapping for section {path}")

        apply_to_config(self._config, data, "")

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: manager.set("probe.timeout_seconds", 90)
        """
        attr = self._resolve(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: manager.get("channel.channel_id")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if value is not None and obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value!r}")
                except (TypeError, ValueError) as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get the process configuration manager, loading default files once."""
    global _manager
    if _manager is None:
        _manager = ConfigManager()
        _manager.load_defaults()
    return _manager


def get_config() -> RelayWatchConfig:
    return get_config_manager().config
