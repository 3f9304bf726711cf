"""
Configuration for Sentinel Shield.

Every knob has a documented default; ``ShieldConfig.from_env`` overlays
``SENTINEL_*`` environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Mapping

from sentinel_shield.errors import ConfigurationError
from sentinel_shield.models.decision import ThresholdPolicy
from sentinel_shield.models.heuristics import AnalyzerConfig


@dataclass
class ConnectionConfig:
    """Remote monitoring channel."""

    ws_url: str = "ws://localhost:9000"
    base_delay: float = 3.0
    backoff_factor: float = 1.5
    max_delay: float = 30.0
    min_reconnect_interval: float = 3.0
    connect_timeout: float = 3.0
    rate_limit_max_messages: int = 10
    rate_limit_window: float = 1.0

    def __post_init__(self) -> None:
        if self.base_delay <= 0 or self.backoff_factor < 1 or self.max_delay < self.base_delay:
            raise ConfigurationError(
                "backoff requires base_delay > 0, backoff_factor >= 1 and max_delay >= base_delay"
            )


@dataclass
class JournalConfig:
    db_path: str = "data/sentinel_shield.db"
    max_live_events: int = 100
    max_persisted_events: int = 500
    storage_key: str = "sentinel_event_logs"
    per_contract: bool = False


@dataclass
class ExecutorConfig:
    """How pauses are executed.

    ``mode`` is ``direct`` (sign and submit with the local key) or ``remote``
    (call the emergency-pause endpoint of a sentinel node).
    """

    mode: str = "direct"
    rpc_url: str | None = None
    private_key: str | None = None
    confirmation_timeout: float = 120.0
    auto_pause: bool = True
    api_url: str = "http://localhost:9001"
    api_key: str | None = None
    request_timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.mode not in ("direct", "remote"):
            raise ConfigurationError(f"Unknown executor mode: {self.mode}")


@dataclass
class WatcherConfig:
    registry_address: str | None = None
    guardian_address: str | None = None
    poll_interval: float = 2.0
    enable_block_scan: bool = False


@dataclass
class ApiConfig:
    host: str = "0.0.0.0"
    port: int = 9001
    api_key: str | None = None


@dataclass
class ScannerConfig:
    etherscan_api_key: str | None = None
    etherscan_url: str = "https://api.etherscan.io/v2/api"
    chain_id: int = 1
    timeout: float = 15.0


@dataclass
class ShieldConfig:
    connection: ConnectionConfig = field(default_factory=ConnectionConfig)
    thresholds: ThresholdPolicy = field(default_factory=ThresholdPolicy)
    analyzer: AnalyzerConfig = field(default_factory=AnalyzerConfig)
    journal: JournalConfig = field(default_factory=JournalConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    log_level: str = "info"
    json_logs: bool = False

    def validate(self) -> None:
        if self.executor.auto_pause and self.executor.mode == "direct":
            if not self.executor.private_key:
                raise ConfigurationError("auto_pause in direct mode requires SENTINEL_PRIVATE_KEY")
            if not self.executor.rpc_url:
                raise ConfigurationError("auto_pause in direct mode requires SENTINEL_RPC_URL")
        if self.executor.mode == "remote" and not self.executor.api_key:
            raise ConfigurationError("remote executor mode requires SENTINEL_API_KEY")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ShieldConfig:
        env = os.environ if environ is None else environ

        def get(name: str, default: Any = None) -> Any:
            return env.get(f"SENTINEL_{name}", default)

        def get_bool(name: str, default: bool) -> bool:
            raw = get(name)
            if raw is None:
                return default
            return raw.strip().lower() in ("1", "true", "yes", "on")

        def get_number(name: str, default: Any, kind: type = float) -> Any:
            raw = get(name)
            if raw is None:
                return default
            try:
                return kind(raw)
            except ValueError:
                raise ConfigurationError(f"SENTINEL_{name} must be {kind.__name__}, got {raw!r}") from None

        connection = ConnectionConfig(
            ws_url=get("WS_URL", ConnectionConfig.ws_url),
            base_delay=get_number("RECONNECT_BASE_DELAY", ConnectionConfig.base_delay),
            backoff_factor=get_number("RECONNECT_BACKOFF_FACTOR", ConnectionConfig.backoff_factor),
            max_delay=get_number("RECONNECT_MAX_DELAY", ConnectionConfig.max_delay),
            min_reconnect_interval=get_number("MIN_RECONNECT_INTERVAL", ConnectionConfig.min_reconnect_interval),
            connect_timeout=get_number("CONNECT_TIMEOUT", ConnectionConfig.connect_timeout),
            rate_limit_max_messages=get_number("RATE_LIMIT_MAX_MESSAGES", ConnectionConfig.rate_limit_max_messages, int),
            rate_limit_window=get_number("RATE_LIMIT_WINDOW", ConnectionConfig.rate_limit_window),
        )

        thresholds = ThresholdPolicy(
            critical=get_number("THRESHOLD_CRITICAL", ThresholdPolicy.critical, int),
            auto_pause=get_number("THRESHOLD_AUTO_PAUSE", ThresholdPolicy.auto_pause, int),
            high=get_number("THRESHOLD_HIGH", ThresholdPolicy.high, int),
            medium=get_number("THRESHOLD_MEDIUM", ThresholdPolicy.medium, int),
            low=get_number("THRESHOLD_LOW", ThresholdPolicy.low, int),
            name=get("THRESHOLD_POLICY", ThresholdPolicy.name),
        )

        journal = JournalConfig(
            db_path=get("DB_PATH", JournalConfig.db_path),
            max_live_events=get_number("MAX_LIVE_EVENTS", JournalConfig.max_live_events, int),
            max_persisted_events=get_number("MAX_PERSISTED_EVENTS", JournalConfig.max_persisted_events, int),
            storage_key=get("STORAGE_KEY", JournalConfig.storage_key),
            per_contract=get_bool("JOURNAL_PER_CONTRACT", False),
        )

        executor = ExecutorConfig(
            mode=get("EXECUTOR_MODE", "direct"),
            rpc_url=get("RPC_URL"),
            private_key=get("PRIVATE_KEY"),
            confirmation_timeout=get_number("CONFIRMATION_TIMEOUT", ExecutorConfig.confirmation_timeout),
            auto_pause=get_bool("AUTO_PAUSE", True),
            api_url=get("API_URL", ExecutorConfig.api_url),
            api_key=get("API_KEY"),
        )

        watcher = WatcherConfig(
            registry_address=get("REGISTRY_ADDRESS"),
            guardian_address=get("GUARDIAN_ADDRESS"),
            poll_interval=get_number("POLL_INTERVAL", WatcherConfig.poll_interval),
            enable_block_scan=get_bool("ENABLE_BLOCK_SCAN", False),
        )

        api = ApiConfig(
            host=get("API_HOST", ApiConfig.host),
            port=get_number("API_PORT", ApiConfig.port, int),
            api_key=get("API_KEY"),
        )

        scanner = ScannerConfig(
            etherscan_api_key=get("ETHERSCAN_API_KEY"),
            chain_id=get_number("CHAIN_ID", ScannerConfig.chain_id, int),
        )

        return cls(
            connection=connection,
            thresholds=thresholds,
            journal=journal,
            executor=executor,
            watcher=watcher,
            api=api,
            scanner=scanner,
            log_level=get("LOG_LEVEL", "info"),
            json_logs=get_bool("JSON_LOGS", False),
        )
