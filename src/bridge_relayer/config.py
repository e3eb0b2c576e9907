#!/usr/bin/env python3
"""Configuration management for the bridge relayer.

This module provides type-safe configuration dataclasses with validation.
Configuration is loaded from environment variables with sensible defaults
where appropriate, built once at startup and passed into every component.
"""

import logging
import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

from web3 import Web3

from .models import Direction

# Get logger for this module
logger = logging.getLogger(__name__)

DEFAULT_SOURCE_RPC_URLS: tuple[str, ...] = (
    "https://bsc-dataseed1.binance.org",
    "https://bsc-dataseed2.binance.org",
    "https://bsc-dataseed3.binance.org",
    "https://bsc-dataseed4.binance.org",
    "https://bsc.publicnode.com",
    "https://bsc-rpc.publicnode.com",
)
DEFAULT_DEST_RPC_URLS: tuple[str, ...] = ("https://rpc.mainnet.ucchain.org",)


def _parse_url_list(raw: str) -> tuple[str, ...]:
    return tuple(url.strip() for url in raw.split(",") if url.strip())


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() not in ("false", "0", "no", "off", "")


@dataclass(frozen=True, slots=True)
class ChainConfig:
    """Configuration for one side of the bridge.

    Attributes:
        name: Short chain name used as state key and in logs (e.g. 'bsc')
        rpc_urls: Ordered candidate RPC endpoints, first is preferred
        bridge_address: Checksummed bridge contract address on this chain
        chain_id: EVM chain ID
        average_block_time: Seconds per block, used by the confirmation gate
        required_confirmations: Blocks required past an event's block
        start_block: First block to scan when no cursor is persisted (None = head)
    """

    name: str
    rpc_urls: tuple[str, ...]
    bridge_address: str
    chain_id: int
    average_block_time: float = 3.0
    required_confirmations: int = 6
    start_block: int | None = None

    def __post_init__(self) -> None:
        """Validate chain configuration."""
        if not self.name:
            raise ValueError("Chain name is required")

        if not self.rpc_urls:
            raise ValueError(f"At least one RPC URL is required for chain '{self.name}'")
        for url in self.rpc_urls:
            parsed = urlparse(url)
            if parsed.scheme not in ('http', 'https'):
                raise ValueError(
                    f"Invalid RPC URL scheme for {self.name}: {parsed.scheme}. "
                    "Expected http or https"
                )

        if not self.bridge_address:
            raise ValueError(f"Bridge contract address is required for chain '{self.name}'")
        if not Web3.is_address(self.bridge_address):
            raise ValueError(f"Invalid bridge contract address for {self.name}: {self.bridge_address}")
        checksummed = Web3.to_checksum_address(self.bridge_address)
        if checksummed != self.bridge_address:
            # Use object.__setattr__ since dataclass is frozen
            object.__setattr__(self, 'bridge_address', checksummed)

        if self.chain_id <= 0:
            raise ValueError(f"Chain ID must be positive, got {self.chain_id}")
        if self.average_block_time <= 0:
            raise ValueError(f"Average block time must be positive, got {self.average_block_time}")
        if self.required_confirmations < 0:
            raise ValueError(f"Required confirmations must be non-negative, got {self.required_confirmations}")
        if self.start_block is not None and self.start_block < 0:
            raise ValueError(f"Start block must be non-negative, got {self.start_block}")


@dataclass(frozen=True, slots=True)
class MonitoringConfig:
    """Polling, retry and backoff settings."""
    poll_interval: float = 5.0  # seconds between head checks when caught up
    backoff_base: float = 5.0  # first rate-limit backoff
    backoff_cap: float = 60.0
    network_retry_delay: float = 10.0
    error_retry_delay: float = 15.0
    retry_count: int = 3  # attempts per RPC invocation
    request_timeout: int = 30  # HTTP request timeout in seconds
    receipt_timeout: int = 180  # wait for our own destination tx
    watchers_enabled: bool = True
    unrelayed_retry_interval: float = 300.0  # re-dispatch of relays that ran out of retries

    def __post_init__(self) -> None:
        """Validate monitoring configuration."""
        if self.poll_interval <= 0:
            raise ValueError(f"Poll interval must be positive, got {self.poll_interval}")
        if self.poll_interval > 300:
            raise ValueError(f"Poll interval too long (max 300s), got {self.poll_interval}")

        if self.backoff_base <= 0:
            raise ValueError(f"Backoff base must be positive, got {self.backoff_base}")
        if self.backoff_cap < self.backoff_base:
            raise ValueError(
                f"Backoff cap ({self.backoff_cap}) must not be below backoff base ({self.backoff_base})"
            )

        if self.network_retry_delay < 0 or self.error_retry_delay < 0:
            raise ValueError("Retry delays must be non-negative")

        if self.retry_count < 1:
            raise ValueError(f"Retry count must be at least 1, got {self.retry_count}")
        if self.retry_count > 10:
            raise ValueError(f"Retry count too high (max 10), got {self.retry_count}")

        if self.request_timeout <= 0:
            raise ValueError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ValueError(f"Request timeout too long (max 120s), got {self.request_timeout}")

        if self.receipt_timeout <= 0:
            raise ValueError(f"Receipt timeout must be positive, got {self.receipt_timeout}")

        if self.unrelayed_retry_interval <= 0:
            raise ValueError(
                f"Unrelayed retry interval must be positive, got {self.unrelayed_retry_interval}"
            )


@dataclass(frozen=True, slots=True)
class ApiConfig:
    """HTTP control surface settings."""
    host: str = "0.0.0.0"
    port: int = 3001
    # Browser origins allowed to call the API; "*" allows any, empty disables CORS
    cors_allow_origins: tuple[str, ...] = ("*",)

    def __post_init__(self) -> None:
        if not 0 < self.port < 65536:
            raise ValueError(f"Invalid API port: {self.port}")

    def resolve_cors_origin(self, request_origin: str | None) -> str | None:
        """Value of Access-Control-Allow-Origin for ``request_origin``, or None."""
        if not request_origin or not self.cors_allow_origins:
            return None
        origin = request_origin.strip().rstrip("/")
        if not origin:
            return None
        if "*" in self.cors_allow_origins:
            return "*"
        return origin if origin in self.cors_allow_origins else None


@dataclass(frozen=True, slots=True)
class RelayerConfig:
    """Main configuration for the bridge relayer.

    Attributes:
        source_chain: Chain that emits Deposit and exposes unlock
        destination_chain: Chain that emits Burn and exposes mint
        private_key: Relayer admin key used for every destination call
        monitoring: Polling, retry and backoff settings
        api: HTTP control surface settings
        state_file: Path of the persisted state document
    """

    source_chain: ChainConfig
    destination_chain: ChainConfig
    private_key: str
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    state_file: str = "relayer-state.json"

    def __post_init__(self) -> None:
        """Validate relayer configuration."""
        if self.source_chain.name == self.destination_chain.name:
            raise ValueError(
                f"Source and destination chains must have different names, both are '{self.source_chain.name}'"
            )

        if not self.private_key:
            raise ValueError("RELAYER_PRIVATE_KEY environment variable is required")
        # Basic private key validation (should be 64 hex chars, optionally with 0x prefix)
        key = self.private_key[2:] if self.private_key.startswith('0x') else self.private_key
        if len(key) != 64:
            raise ValueError(
                f"Invalid private key length. Expected 64 hex characters, got {len(key)}"
            )
        try:
            int(key, 16)
        except ValueError:
            raise ValueError(
                "Invalid private key format. Must be hexadecimal"
            ) from None

        if not self.state_file:
            raise ValueError("State file path is required (STATE_FILE)")

    @property
    def chains(self) -> dict[str, ChainConfig]:
        return {
            self.source_chain.name: self.source_chain,
            self.destination_chain.name: self.destination_chain,
        }

    def event_chain(self, direction: Direction) -> ChainConfig:
        """Chain whose bridge emits the events of ``direction``."""
        return self.source_chain if direction is Direction.DEPOSIT else self.destination_chain

    def submission_chain(self, direction: Direction) -> ChainConfig:
        """Chain that receives the mint/unlock call for ``direction``."""
        return self.destination_chain if direction is Direction.DEPOSIT else self.source_chain

    @staticmethod
    def _chain_from_env(
        prefix: str,
        default_name: str,
        default_urls: tuple[str, ...],
        default_chain_id: int,
        default_block_time: float,
        required_confirmations: int,
    ) -> ChainConfig:
        urls_raw = os.environ.get(f"{prefix}_RPC_URLS") or os.environ.get(f"{prefix}_RPC_URL", "")
        rpc_urls = _parse_url_list(urls_raw) or default_urls

        bridge_address = os.environ.get(f"{prefix}_BRIDGE_ADDRESS", "")
        if not bridge_address:
            raise ValueError(
                f"{prefix}_BRIDGE_ADDRESS environment variable is required. "
                "This should be the bridge contract address on that chain."
            )

        start_raw = os.environ.get(f"{prefix}_START_BLOCK", "latest").strip().lower()
        start_block = None if start_raw in ("", "latest") else int(start_raw)

        return ChainConfig(
            name=os.environ.get(f"{prefix}_CHAIN_NAME", default_name),
            rpc_urls=rpc_urls,
            bridge_address=bridge_address,
            chain_id=int(os.environ.get(f"{prefix}_CHAIN_ID", str(default_chain_id))),
            average_block_time=float(os.environ.get(f"{prefix}_BLOCK_TIME", str(default_block_time))),
            required_confirmations=required_confirmations,
            start_block=start_block,
        )

    @classmethod
    def from_env(cls) -> "RelayerConfig":
        """Load configuration from environment variables.

        Returns:
            RelayerConfig instance with loaded values

        Raises:
            ValueError: If required environment variables are missing or invalid
        """
        required_confirmations = int(os.environ.get("REQUIRED_CONFIRMATIONS", "6"))

        source_chain = cls._chain_from_env(
            "SOURCE", "bsc", DEFAULT_SOURCE_RPC_URLS, 56, 3.0, required_confirmations
        )
        destination_chain = cls._chain_from_env(
            "DEST", "uc", DEFAULT_DEST_RPC_URLS, 1137, 5.0, required_confirmations
        )

        monitoring = MonitoringConfig(
            poll_interval=float(os.environ.get("POLL_INTERVAL", "5")),
            backoff_base=float(os.environ.get("BACKOFF_BASE", "5")),
            backoff_cap=float(os.environ.get("BACKOFF_CAP", "60")),
            network_retry_delay=float(os.environ.get("NETWORK_RETRY_DELAY", "10")),
            error_retry_delay=float(os.environ.get("ERROR_RETRY_DELAY", "15")),
            retry_count=int(os.environ.get("RETRY_COUNT", "3")),
            request_timeout=int(os.environ.get("REQUEST_TIMEOUT", "30")),
            receipt_timeout=int(os.environ.get("RECEIPT_TIMEOUT", "180")),
            watchers_enabled=_parse_bool(os.environ.get("WATCHERS_ENABLED", "true")),
            unrelayed_retry_interval=float(os.environ.get("UNRELAYED_RETRY_INTERVAL", "300")),
        )

        api = ApiConfig(
            host=os.environ.get("API_HOST", "0.0.0.0"),
            port=int(os.environ.get("PORT", "3001")),
            cors_allow_origins=tuple(
                origin.strip().rstrip("/")
                for origin in os.environ.get("CORS_ALLOW_ORIGINS", "*").split(",")
                if origin.strip()
            ),
        )

        return cls(
            source_chain=source_chain,
            destination_chain=destination_chain,
            private_key=os.environ.get("RELAYER_PRIVATE_KEY", ""),
            monitoring=monitoring,
            api=api,
            state_file=os.environ.get("STATE_FILE", "relayer-state.json"),
        )

    def log_config(self) -> None:
        """Log the configuration in a readable format, hiding the private key."""
        logger.info("=" * 60)
        logger.info("Bridge Relayer Configuration")
        logger.info("=" * 60)

        for role, chain in (("Source", self.source_chain), ("Destination", self.destination_chain)):
            logger.info(f"{role} Chain ({chain.name}):")
            logger.info(f"  Chain ID: {chain.chain_id}")
            logger.info(f"  Bridge: {chain.bridge_address}")
            logger.info(f"  RPC endpoints: {len(chain.rpc_urls)} (primary {chain.rpc_urls[0]})")
            logger.info(f"  Block time: {chain.average_block_time}s, confirmations: {chain.required_confirmations}")
            logger.info(f"  Start block: {chain.start_block if chain.start_block is not None else 'latest'}")

        logger.info("Monitoring Settings:")
        logger.info(f"  Watchers: {'enabled' if self.monitoring.watchers_enabled else 'disabled (on-demand only)'}")
        logger.info(f"  Poll Interval: {self.monitoring.poll_interval} seconds")
        logger.info(f"  Backoff: {self.monitoring.backoff_base}s doubling to {self.monitoring.backoff_cap}s")
        logger.info(f"  Retry Count: {self.monitoring.retry_count}")
        logger.info(f"  Request Timeout: {self.monitoring.request_timeout} seconds")

        logger.info("Relayer Settings:")
        logger.info(f"  API: {self.api.host}:{self.api.port}")
        logger.info(f"  CORS origins: {', '.join(self.api.cors_allow_origins) or 'disabled'}")
        logger.info(f"  State file: {self.state_file}")
        logger.info(f"  Private Key: {'[SET]' if self.private_key else '[NOT SET]'}")

        logger.info("=" * 60)
