#!/usr/bin/env python3
"""Tests for the confirmation gate."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from bridge_relayer.confirmation_gate import ConfirmationGate
from bridge_relayer.errors import RpcUnavailableError


def make_gate(relayer_config, heads):
    pool = MagicMock()
    pool.call = AsyncMock(side_effect=heads)
    return ConfirmationGate({"bsc": pool, "uc": pool}, relayer_config.chains), pool


class TestConfirmationGate:
    """ConfirmationGate.await_confirmations."""

    @pytest.mark.asyncio
    async def test_already_confirmed(self, relayer_config):
        gate, pool = make_gate(relayer_config, [1010])

        with patch("bridge_relayer.confirmation_gate.asyncio.sleep", AsyncMock()) as sleep:
            confirmations = await gate.await_confirmations("bsc", 1000, 6)

        assert confirmations == 10
        sleep.assert_not_awaited()
        pool.call.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_waits_proportionally_to_missing_blocks(self, relayer_config):
        gate, pool = make_gate(relayer_config, [1002, 1005, 1006])

        with patch("bridge_relayer.confirmation_gate.asyncio.sleep", AsyncMock()) as sleep:
            confirmations = await gate.await_confirmations("bsc", 1000, 6)

        assert confirmations == 6
        # 4 then 1 missing confirmations at 3 s per block
        assert [call.args[0] for call in sleep.await_args_list] == [12.0, 3.0]
        assert pool.call.await_count == 3

    @pytest.mark.asyncio
    async def test_uses_chain_block_time_and_default_requirement(self, relayer_config):
        gate, _ = make_gate(relayer_config, [1000, 1006])

        with patch("bridge_relayer.confirmation_gate.asyncio.sleep", AsyncMock()) as sleep:
            await gate.await_confirmations("uc", 1000)

        sleep.assert_awaited_once_with(30.0)

    @pytest.mark.asyncio
    async def test_head_behind_event_block_counts_as_zero(self, relayer_config):
        # A lagging endpoint after rotation may report an older head
        gate, _ = make_gate(relayer_config, [998, 1006])

        with patch("bridge_relayer.confirmation_gate.asyncio.sleep", AsyncMock()) as sleep:
            await gate.await_confirmations("bsc", 1000, 6)

        sleep.assert_awaited_once_with(18.0)

    @pytest.mark.asyncio
    async def test_rpc_failure_propagates(self, relayer_config):
        gate, _ = make_gate(relayer_config, RpcUnavailableError("bsc", 3, Exception("429")))

        with pytest.raises(RpcUnavailableError):
            await gate.await_confirmations("bsc", 1000, 6)
