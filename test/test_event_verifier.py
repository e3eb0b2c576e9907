#!/usr/bin/env python3
"""Tests for EventVerifier, decoding real ABI-encoded logs."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from web3 import Web3
from web3.exceptions import TransactionNotFound

from bridge_relayer.errors import (
    EventNotFound,
    InvalidDestinationAddress,
    ReceiptNotFound,
    TransactionReverted,
)
from bridge_relayer.event_verifier import EventVerifier
from bridge_relayer.models import Direction
from bridge_relayer.utils.contract_utility import ContractUtility

from conftest import BURN_ID, DEPOSIT_ID, DEST_BRIDGE, PRIVATE_KEY, RECIPIENT, SOURCE_TX, USER


def make_verifier(config, receipt=None, side_effect=None):
    pool = MagicMock()
    pool.call = AsyncMock(return_value=receipt, side_effect=side_effect)
    pools = {"bsc": pool, "uc": pool}
    return EventVerifier(config, pools, ContractUtility(secret=PRIVATE_KEY)), pool


class TestVerify:
    """EventVerifier.verify."""

    @pytest.mark.asyncio
    async def test_deposit_event(self, relayer_config, make_bridge_log, make_receipt):
        receipt = make_receipt([make_bridge_log(log_index=3)])
        verifier, pool = make_verifier(relayer_config, receipt)

        event = await verifier.verify("bsc", SOURCE_TX, Direction.DEPOSIT)

        assert event.direction is Direction.DEPOSIT
        assert event.event_id == DEPOSIT_ID
        assert event.amount == 100_000_000
        assert event.user == USER
        assert event.destination_address == RECIPIENT
        assert event.source_chain == "bsc"
        assert event.destination_chain == "uc"
        assert event.source_tx_hash == SOURCE_TX
        assert event.block_number == 1000
        assert event.log_index == 3
        pool.call.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_burn_event(self, relayer_config, make_bridge_log, make_receipt):
        log = make_bridge_log(Direction.BURN, address=DEST_BRIDGE, event_id=BURN_ID, destination_chain="bsc")
        verifier, _ = make_verifier(relayer_config, make_receipt([log]))

        event = await verifier.verify("uc", SOURCE_TX, Direction.BURN)

        assert event.event_id == BURN_ID
        assert event.source_chain == "uc"
        assert event.destination_chain == "bsc"

    @pytest.mark.asyncio
    async def test_lowercase_destination_is_checksummed(self, relayer_config, make_bridge_log, make_receipt):
        log = make_bridge_log(destination_address=RECIPIENT.lower())
        verifier, _ = make_verifier(relayer_config, make_receipt([log]))

        event = await verifier.verify("bsc", SOURCE_TX, Direction.DEPOSIT)

        assert event.destination_address == RECIPIENT

    @pytest.mark.asyncio
    async def test_event_id_hint_selects_matching_log(self, relayer_config, make_bridge_log, make_receipt):
        second_id = "0x" + "03" * 32
        receipt = make_receipt([
            make_bridge_log(amount=1, log_index=0),
            make_bridge_log(amount=2, event_id=second_id, log_index=1),
        ])
        verifier, _ = make_verifier(relayer_config, receipt)

        first = await verifier.verify("bsc", SOURCE_TX, Direction.DEPOSIT)
        hinted = await verifier.verify("bsc", SOURCE_TX, Direction.DEPOSIT, event_id=second_id)

        assert first.amount == 1
        assert hinted.event_id == second_id
        assert hinted.amount == 2

    @pytest.mark.asyncio
    async def test_wrong_chain_for_direction(self, relayer_config):
        verifier, _ = make_verifier(relayer_config)

        with pytest.raises(ValueError, match="emitted on bsc"):
            await verifier.verify("uc", SOURCE_TX, Direction.DEPOSIT)


class TestVerifyFailures:
    """Chain-semantic failures."""

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, relayer_config):
        verifier, _ = make_verifier(relayer_config, side_effect=TransactionNotFound("not found"))

        with pytest.raises(ReceiptNotFound):
            await verifier.verify("bsc", SOURCE_TX, Direction.DEPOSIT)

    @pytest.mark.asyncio
    async def test_missing_receipt(self, relayer_config):
        verifier, _ = make_verifier(relayer_config, receipt=None)

        with pytest.raises(ReceiptNotFound):
            await verifier.verify("bsc", SOURCE_TX, Direction.DEPOSIT)

    @pytest.mark.asyncio
    async def test_reverted_transaction(self, relayer_config, make_bridge_log, make_receipt):
        verifier, _ = make_verifier(relayer_config, make_receipt([make_bridge_log()], status=0))

        with pytest.raises(TransactionReverted) as exc_info:
            await verifier.verify("bsc", SOURCE_TX, Direction.DEPOSIT)
        assert exc_info.value.status == 0

    @pytest.mark.asyncio
    async def test_no_bridge_event(self, relayer_config, make_receipt):
        verifier, _ = make_verifier(relayer_config, make_receipt([]))

        with pytest.raises(EventNotFound):
            await verifier.verify("bsc", SOURCE_TX, Direction.DEPOSIT)

    @pytest.mark.asyncio
    async def test_event_from_other_contract_is_ignored(self, relayer_config, make_bridge_log, make_receipt):
        impostor = Web3.to_checksum_address("0x" + "99" * 20)
        verifier, _ = make_verifier(relayer_config, make_receipt([make_bridge_log(address=impostor)]))

        with pytest.raises(EventNotFound):
            await verifier.verify("bsc", SOURCE_TX, Direction.DEPOSIT)

    @pytest.mark.asyncio
    async def test_wrong_event_type(self, relayer_config, make_bridge_log, make_receipt):
        # A Burn-shaped log from the source bridge is not a Deposit
        log = make_bridge_log(Direction.BURN)
        verifier, _ = make_verifier(relayer_config, make_receipt([log]))

        with pytest.raises(EventNotFound):
            await verifier.verify("bsc", SOURCE_TX, Direction.DEPOSIT)

    @pytest.mark.asyncio
    async def test_unmatched_hint(self, relayer_config, make_bridge_log, make_receipt):
        verifier, _ = make_verifier(relayer_config, make_receipt([make_bridge_log()]))

        with pytest.raises(EventNotFound):
            await verifier.verify("bsc", SOURCE_TX, Direction.DEPOSIT, event_id="0x" + "ff" * 32)

    @pytest.mark.asyncio
    async def test_invalid_destination_address(self, relayer_config, make_bridge_log, make_receipt):
        log = make_bridge_log(destination_address="not-an-address")
        verifier, _ = make_verifier(relayer_config, make_receipt([log]))

        with pytest.raises(InvalidDestinationAddress):
            await verifier.verify("bsc", SOURCE_TX, Direction.DEPOSIT)
