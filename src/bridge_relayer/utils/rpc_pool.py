"""
RPC endpoint pool with failover for one chain.

Holds the ordered candidate RPC URLs of a chain, hands out the active AsyncWeb3
client, rotates round-robin on rate limiting and applies exponential backoff.
"""

import asyncio
import logging
from collections import Counter
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

import aiohttp
from web3 import AsyncWeb3
from web3.exceptions import (
    BadResponseFormat,
    ContractLogicError,
    TransactionNotFound,
    Web3ValidationError,
)

from ..errors import RpcUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_MARKERS = ("rate limit", "429", "limit exceeded", "too many requests")
MISSING_RESPONSE_MARKERS = ("missing response", "unexpected format", "no response")
NETWORK_MARKERS = ("timeout", "timed out", "network", "connection")


class FailureKind(Enum):
    """Classification of an RPC failure."""
    RATE_LIMIT = "rate_limit"
    MISSING_RESPONSE = "missing_response"
    NETWORK = "network"
    NON_RETRYABLE = "non_retryable"

    @property
    def rotates(self) -> bool:
        return self in (FailureKind.RATE_LIMIT, FailureKind.MISSING_RESPONSE)


def classify_rpc_error(error: BaseException) -> FailureKind:
    """
    Map an exception raised by an RPC call to a FailureKind.

    Reverts, validation errors and unknown transactions are never retried;
    they describe the call, not the endpoint.
    """
    if isinstance(error, (ContractLogicError, TransactionNotFound, Web3ValidationError)):
        return FailureKind.NON_RETRYABLE

    if isinstance(error, aiohttp.ClientResponseError) and error.status == 429:
        return FailureKind.RATE_LIMIT

    message = str(error).lower()
    if any(marker in message for marker in RATE_LIMIT_MARKERS):
        return FailureKind.RATE_LIMIT
    if isinstance(error, BadResponseFormat) or any(marker in message for marker in MISSING_RESPONSE_MARKERS):
        return FailureKind.MISSING_RESPONSE

    if isinstance(error, (asyncio.TimeoutError, aiohttp.ClientError, ConnectionError)):
        return FailureKind.NETWORK
    if any(marker in message for marker in NETWORK_MARKERS):
        return FailureKind.NETWORK

    return FailureKind.NON_RETRYABLE


class RpcEndpointPool:
    """
    Ordered RPC endpoints for a single chain.

    Dependents fetch ``current()`` for every call, so a rotation reconnects all
    of them to the new endpoint.
    """

    def __init__(
        self,
        chain_name: str,
        rpc_urls: tuple[str, ...] | list[str],
        client_factory: Callable[[str], AsyncWeb3],
        backoff_base: float = 5.0,
        backoff_cap: float = 60.0,
        network_retry_delay: float = 10.0,
        error_retry_delay: float = 15.0,
        retry_count: int = 3,
    ) -> None:
        """
        Initialize the pool.

        Args:
            chain_name: Chain name used in logs and errors
            rpc_urls: Candidate endpoints, first one is used first
            client_factory: Builds an AsyncWeb3 client for a URL
            backoff_base: First backoff delay after a rate limit, in seconds
            backoff_cap: Maximum backoff delay
            network_retry_delay: Delay after a timeout or connection error
            error_retry_delay: Delay after an unclassified error (watcher loops)
            retry_count: Attempts per ``call()`` before giving up
        """
        if not rpc_urls:
            raise ValueError(f"No RPC URLs configured for {chain_name}")

        self.chain_name = chain_name
        self.rpc_urls = list(rpc_urls)
        self.client_factory = client_factory
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.network_retry_delay = network_retry_delay
        self.error_retry_delay = error_retry_delay
        self.retry_count = retry_count

        self._index = 0
        self._client: AsyncWeb3 | None = None
        self._retired: list[AsyncWeb3] = []

        self.consecutive_failures = 0
        self.rotations = 0
        self.failure_counts: Counter[FailureKind] = Counter()

    @property
    def current_url(self) -> str:
        return self.rpc_urls[self._index]

    def current(self) -> AsyncWeb3:
        """Return the client for the active endpoint."""
        if self._client is None:
            self._client = self.client_factory(self.current_url)
        return self._client

    def rotate(self) -> AsyncWeb3:
        """Advance to the next endpoint and return its client."""
        previous = self.current_url
        self._index = (self._index + 1) % len(self.rpc_urls)
        if self._client is not None:
            self._retired.append(self._client)
        self._client = self.client_factory(self.current_url)
        self.rotations += 1
        logger.info(
            f"Switching {self.chain_name} RPC {previous} -> {self.current_url} "
            f"(index {self._index}/{len(self.rpc_urls)})"
        )
        return self._client

    def backoff_delay(self, consecutive_failures: int) -> float:
        """Exponential backoff: base, 2*base, 4*base, ... capped."""
        exponent = max(consecutive_failures - 1, 0)
        return min(self.backoff_base * (2 ** exponent), self.backoff_cap)

    def record_failure(self, kind: FailureKind) -> float:
        """
        Record a failed call and apply the failover policy.

        Returns:
            Seconds to wait before the next attempt
        """
        self.consecutive_failures += 1
        self.failure_counts[kind] += 1

        match kind:
            case FailureKind.RATE_LIMIT | FailureKind.MISSING_RESPONSE:
                self.rotate()
                delay = self.backoff_delay(self.consecutive_failures)
                logger.warning(
                    f"{self.chain_name} RPC {kind.value} ({self.consecutive_failures} consecutive), "
                    f"backing off {delay:.1f}s"
                )
                return delay
            case FailureKind.NETWORK:
                return self.network_retry_delay
            case _:
                return self.error_retry_delay

    def record_success(self) -> None:
        if self.consecutive_failures:
            logger.info(f"{self.chain_name} RPC recovered after {self.consecutive_failures} failures")
        self.consecutive_failures = 0

    async def call(
        self,
        operation: Callable[[AsyncWeb3], Awaitable[T]],
        *,
        attempts: int | None = None,
        description: str = "rpc call",
    ) -> T:
        """
        Run ``operation`` against the active endpoint with failover.

        Non-retryable errors propagate immediately. Transient errors rotate
        and/or back off; after ``attempts`` tries RpcUnavailableError is raised.
        """
        max_attempts = attempts or self.retry_count
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await operation(self.current())
            except Exception as e:
                kind = classify_rpc_error(e)
                if kind is FailureKind.NON_RETRYABLE:
                    raise

                delay = self.record_failure(kind)
                if attempt >= max_attempts:
                    raise RpcUnavailableError(self.chain_name, attempt, e) from e

                logger.warning(
                    f"{description} on {self.chain_name} failed ({kind.value}, attempt "
                    f"{attempt}/{max_attempts}): {e}; retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
            else:
                self.record_success()
                return result

    async def close(self) -> None:
        """Disconnect every client this pool created."""
        clients = self._retired + ([self._client] if self._client is not None else [])
        for client in clients:
            provider = getattr(client, "provider", None)
            if provider is not None and hasattr(provider, "disconnect"):
                try:
                    await provider.disconnect()
                except Exception as e:
                    logger.warning(f"Error disconnecting {self.chain_name} RPC client: {e}")
        self._retired.clear()
        self._client = None

    def get_status(self) -> dict[str, Any]:
        return {
            "chain": self.chain_name,
            "active_rpc": self.current_url,
            "endpoints": len(self.rpc_urls),
            "rotations": self.rotations,
            "consecutive_failures": self.consecutive_failures,
            "failures": {kind.value: count for kind, count in self.failure_counts.items()},
        }
