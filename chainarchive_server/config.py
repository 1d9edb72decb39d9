"""
Configuration management for Chain Archive Server.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set CONTRACT_ADDRESS and LEDGER_RPC_URL
    - Every ledger read and store operation has a finite timeout

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class LedgerBackend(Enum):
    """Supported ledger backends."""

    WEB3 = "web3"
    MEMORY = "memory"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass(frozen=True)
class LedgerConfig:
    """Ledger connection configuration.

    Attributes:
        rpc_url: Node RPC endpoint (ws:// or wss:// needed for event subscription)
        contract_address: Address of the supply chain contract
        contract_artifact: Path to the contract's Truffle/Hardhat JSON artifact
        read_timeout_seconds: Timeout for each individual ledger read
        history_concurrency: Maximum history entries read in parallel
    """

    rpc_url: str = "ws://127.0.0.1:8545"
    contract_address: str = ""
    contract_artifact: str = "contracts/SupplyChain.json"
    read_timeout_seconds: float = 10.0
    history_concurrency: int = 4

    @classmethod
    def from_env(cls) -> LedgerConfig:
        """Load configuration from environment variables."""
        return cls(
            rpc_url=os.getenv("LEDGER_RPC_URL", "ws://127.0.0.1:8545"),
            contract_address=os.getenv("CONTRACT_ADDRESS", ""),
            contract_artifact=os.getenv("CONTRACT_ARTIFACT", "contracts/SupplyChain.json"),
            read_timeout_seconds=float(os.getenv("LEDGER_READ_TIMEOUT_SECONDS", "10")),
            history_concurrency=int(os.getenv("HISTORY_CONCURRENCY", "4")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Archive store configuration.

    Attributes:
        data_dir: Directory for the SQLite database
        db_name: Database file name
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        timeout_seconds: Timeout for each store operation
    """

    data_dir: str = "/var/lib/chainarchive"
    db_name: str = "archive.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DATA_DIR", "/var/lib/chainarchive"),
            db_name=os.getenv("ARCHIVE_DB_NAME", "archive.db"),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            timeout_seconds=float(os.getenv("STORE_TIMEOUT_SECONDS", "10")),
        )


@dataclass(frozen=True)
class SubscriberConfig:
    """Completion event subscriber configuration.

    Attributes:
        enabled: Whether the live subscription is started with the server
    """

    enabled: bool = True

    @classmethod
    def from_env(cls) -> SubscriberConfig:
        """Load configuration from environment variables."""
        return cls(enabled=_env_bool("SUBSCRIBER_ENABLED", "true"))


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class ServerConfig:
    """Complete server configuration.

    Attributes:
        ledger_backend: Which ledger backend to use
        ledger: Ledger configuration
        storage: Archive store configuration
        subscriber: Subscriber configuration
        observability: Logging configuration
    """

    ledger_backend: LedgerBackend = LedgerBackend.WEB3
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    subscriber: SubscriberConfig = field(default_factory=SubscriberConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Load complete configuration from environment variables.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("LEDGER_BACKEND", "web3").lower()
        try:
            ledger_backend = LedgerBackend(backend_str)
        except ValueError:
            raise ValueError(f"Invalid LEDGER_BACKEND '{backend_str}'. Must be one of: web3, memory")

        config = cls(
            ledger_backend=ledger_backend,
            ledger=LedgerConfig.from_env(),
            storage=StorageConfig.from_env(),
            subscriber=SubscriberConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.ledger_backend == LedgerBackend.WEB3:
            if not self.ledger.rpc_url:
                raise ValueError("LEDGER_RPC_URL is required when LEDGER_BACKEND=web3")
            if not self.ledger.contract_address:
                raise ValueError("CONTRACT_ADDRESS is required when LEDGER_BACKEND=web3")
            if self.subscriber.enabled and not self.ledger.rpc_url.startswith("ws"):
                raise ValueError(
                    "LEDGER_RPC_URL must be a ws:// or wss:// URL when SUBSCRIBER_ENABLED=true"
                )

        if self.ledger.read_timeout_seconds <= 0:
            raise ValueError("LEDGER_READ_TIMEOUT_SECONDS must be positive")
        if self.storage.timeout_seconds <= 0:
            raise ValueError("STORE_TIMEOUT_SECONDS must be positive")
        if self.ledger.history_concurrency < 1:
            raise ValueError("HISTORY_CONCURRENCY must be at least 1")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on first write."
            )

    def log_config(self) -> None:
        """Log configuration."""
        logger.info(
            "Server configuration loaded",
            extra={
                "ledger_backend": self.ledger_backend.value,
                "rpc_url": self.ledger.rpc_url,
                "contract_address": self.ledger.contract_address,
                "data_dir": self.storage.data_dir,
                "subscriber_enabled": self.subscriber.enabled,
                "log_level": self.observability.log_level,
            },
        )
