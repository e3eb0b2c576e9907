#!/usr/bin/env python3
"""Tests for the RPC endpoint pool and error classification."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest
from web3.exceptions import BadResponseFormat, ContractLogicError, TransactionNotFound

from bridge_relayer.errors import RpcUnavailableError
from bridge_relayer.utils.rpc_pool import FailureKind, RpcEndpointPool, classify_rpc_error

URLS = ["https://rpc-1.example", "https://rpc-2.example", "https://rpc-3.example"]


@pytest.fixture
def client_factory():
    """Returns a distinct MagicMock client per URL, remembering the URL."""
    def _build(url):
        client = MagicMock(name=f"w3[{url}]")
        client.url = url
        return client
    return MagicMock(side_effect=_build)


@pytest.fixture
def pool(client_factory):
    return RpcEndpointPool(
        chain_name="bsc",
        rpc_urls=URLS,
        client_factory=client_factory,
        backoff_base=5.0,
        backoff_cap=60.0,
        network_retry_delay=10.0,
        error_retry_delay=15.0,
        retry_count=3,
    )


class TestClassifyRpcError:
    """Tests for classify_rpc_error."""

    @pytest.mark.parametrize("message", [
        "429 Too Many Requests",
        "rate limit exceeded",
        "daily request limit exceeded",
        "Too many requests, slow down",
    ])
    def test_rate_limit_messages(self, message):
        assert classify_rpc_error(Exception(message)) is FailureKind.RATE_LIMIT

    def test_http_429(self):
        error = aiohttp.ClientResponseError(MagicMock(), (), status=429, message="Too Many Requests")
        assert classify_rpc_error(error) is FailureKind.RATE_LIMIT

    def test_missing_response(self):
        assert classify_rpc_error(Exception("missing response for request")) is FailureKind.MISSING_RESPONSE
        assert classify_rpc_error(BadResponseFormat("bad")) is FailureKind.MISSING_RESPONSE

    def test_network(self):
        assert classify_rpc_error(asyncio.TimeoutError()) is FailureKind.NETWORK
        assert classify_rpc_error(aiohttp.ClientConnectionError("refused")) is FailureKind.NETWORK
        assert classify_rpc_error(Exception("network is unreachable")) is FailureKind.NETWORK

    def test_non_retryable(self):
        assert classify_rpc_error(ContractLogicError("execution reverted")) is FailureKind.NON_RETRYABLE
        assert classify_rpc_error(TransactionNotFound("unknown")) is FailureKind.NON_RETRYABLE
        assert classify_rpc_error(ValueError("bad argument")) is FailureKind.NON_RETRYABLE


class TestRotationAndBackoff:
    """Endpoint rotation policy."""

    def test_requires_urls(self, client_factory):
        with pytest.raises(ValueError, match="No RPC URLs"):
            RpcEndpointPool("bsc", [], client_factory)

    def test_current_is_cached(self, pool, client_factory):
        assert pool.current() is pool.current()
        assert pool.current().url == URLS[0]
        client_factory.assert_called_once_with(URLS[0])

    def test_rotate_is_round_robin(self, pool):
        seen = [pool.rotate().url for _ in range(4)]

        assert seen == [URLS[1], URLS[2], URLS[0], URLS[1]]
        assert pool.rotations == 4

    @pytest.mark.parametrize("failures,expected", [(1, 5.0), (2, 10.0), (3, 20.0), (4, 40.0), (5, 60.0), (9, 60.0)])
    def test_backoff_delay(self, pool, failures, expected):
        assert pool.backoff_delay(failures) == expected

    def test_rate_limit_rotates_and_backs_off(self, pool):
        pool.current()

        assert pool.record_failure(FailureKind.RATE_LIMIT) == 5.0
        assert pool.current_url == URLS[1]
        assert pool.record_failure(FailureKind.RATE_LIMIT) == 10.0
        assert pool.current_url == URLS[2]

    def test_network_failure_does_not_rotate(self, pool):
        assert pool.record_failure(FailureKind.NETWORK) == 10.0
        assert pool.current_url == URLS[0]

    def test_success_resets_backoff(self, pool):
        pool.record_failure(FailureKind.RATE_LIMIT)
        pool.record_failure(FailureKind.RATE_LIMIT)
        pool.record_success()

        assert pool.consecutive_failures == 0
        assert pool.record_failure(FailureKind.RATE_LIMIT) == 5.0


class TestCall:
    """RpcEndpointPool.call."""

    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self, pool):
        operation = AsyncMock(return_value=42)

        assert await pool.call(operation) == 42
        operation.assert_awaited_once_with(pool.current())

    @pytest.mark.asyncio
    async def test_rate_limit_moves_to_next_endpoint(self, pool):
        async def operation(w3):
            if w3.url == URLS[0]:
                raise Exception("429 Too Many Requests")
            return w3.url

        with patch("bridge_relayer.utils.rpc_pool.asyncio.sleep", AsyncMock()) as sleep:
            result = await pool.call(operation)

        assert result == URLS[1]
        sleep.assert_awaited_once_with(5.0)
        assert pool.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_non_retryable_propagates_immediately(self, pool):
        operation = AsyncMock(side_effect=ContractLogicError("execution reverted"))

        with pytest.raises(ContractLogicError):
            await pool.call(operation)

        operation.assert_awaited_once()
        assert pool.rotations == 0

    @pytest.mark.asyncio
    async def test_gives_up_after_retry_count(self, pool):
        operation = AsyncMock(side_effect=asyncio.TimeoutError())

        with patch("bridge_relayer.utils.rpc_pool.asyncio.sleep", AsyncMock()) as sleep:
            with pytest.raises(RpcUnavailableError) as exc_info:
                await pool.call(operation)

        assert operation.await_count == 3
        assert sleep.await_count == 2
        assert exc_info.value.attempts == 3
        assert exc_info.value.chain == "bsc"


class TestStatus:
    """Status reporting and shutdown."""

    def test_get_status(self, pool):
        pool.record_failure(FailureKind.RATE_LIMIT)

        status = pool.get_status()

        assert status["chain"] == "bsc"
        assert status["active_rpc"] == URLS[1]
        assert status["rotations"] == 1
        assert status["failures"] == {"rate_limit": 1}

    @pytest.mark.asyncio
    async def test_close_disconnects_every_client(self, pool):
        first = pool.current()
        first.provider.disconnect = AsyncMock()
        second = pool.rotate()
        second.provider.disconnect = AsyncMock()

        await pool.close()

        first.provider.disconnect.assert_awaited_once()
        second.provider.disconnect.assert_awaited_once()
