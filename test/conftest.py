"""Shared fixtures for the bridge relayer tests."""

import pytest
from eth_abi import encode
from hexbytes import HexBytes
from web3 import Web3

from bridge_relayer.config import ApiConfig, ChainConfig, MonitoringConfig, RelayerConfig
from bridge_relayer.models import Direction

PRIVATE_KEY = "0x" + "11" * 32
SOURCE_BRIDGE = Web3.to_checksum_address("0x" + "a1" * 20)
DEST_BRIDGE = Web3.to_checksum_address("0x" + "b2" * 20)
USER = Web3.to_checksum_address("0x" + "c3" * 20)
RECIPIENT = Web3.to_checksum_address("0x" + "d4" * 20)
SOURCE_TX = "0x" + "ab" * 32
DEST_TX = "0x" + "cd" * 32
DEPOSIT_ID = "0x" + "01" * 32
BURN_ID = "0x" + "02" * 32


@pytest.fixture
def relayer_config(tmp_path):
    """RelayerConfig with two chains and delays small enough for tests."""
    return RelayerConfig(
        source_chain=ChainConfig(
            name="bsc",
            rpc_urls=("https://bsc-1.example", "https://bsc-2.example", "https://bsc-3.example"),
            bridge_address=SOURCE_BRIDGE,
            chain_id=56,
            average_block_time=3.0,
        ),
        destination_chain=ChainConfig(
            name="uc",
            rpc_urls=("https://uc-1.example",),
            bridge_address=DEST_BRIDGE,
            chain_id=1137,
            average_block_time=5.0,
        ),
        private_key=PRIVATE_KEY,
        monitoring=MonitoringConfig(
            poll_interval=0.01,
            backoff_base=0.01,
            backoff_cap=0.04,
            network_retry_delay=0.0,
            error_retry_delay=0.0,
            retry_count=3,
        ),
        api=ApiConfig(host="127.0.0.1", port=3001),
        state_file=str(tmp_path / "relayer-state.json"),
    )


@pytest.fixture
def make_bridge_log():
    """Factory for an ABI-encoded Deposit/Burn log as it appears in a receipt."""

    def _make(
        direction=Direction.DEPOSIT,
        *,
        address=SOURCE_BRIDGE,
        user=USER,
        amount=100_000_000,
        event_id=DEPOSIT_ID,
        destination_chain="uc",
        destination_address=RECIPIENT,
        tx_hash=SOURCE_TX,
        block_number=1000,
        log_index=0,
    ):
        signature = f"{direction.event_name}(address,uint256,bytes32,string,string)"
        return {
            "address": address,
            "topics": [Web3.keccak(text=signature), HexBytes(encode(["address"], [user]))],
            "data": HexBytes(
                encode(
                    ["uint256", "bytes32", "string", "string"],
                    [amount, HexBytes(event_id), destination_chain, destination_address],
                )
            ),
            "logIndex": log_index,
            "transactionIndex": 0,
            "transactionHash": HexBytes(tx_hash),
            "blockHash": HexBytes("0x" + "ee" * 32),
            "blockNumber": block_number,
        }

    return _make


@pytest.fixture
def make_receipt():
    """Factory for a mined receipt holding ``logs``."""

    def _make(logs, status=1, block_number=1000, tx_hash=SOURCE_TX):
        return {
            "status": status,
            "blockNumber": block_number,
            "transactionHash": HexBytes(tx_hash),
            "logs": logs,
        }

    return _make
