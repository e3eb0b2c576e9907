#!/usr/bin/env python3
"""Destination-chain submission for the bridge relayer.

This module signs and sends the admin ``mint``/``unlock`` call for a verified
event and waits for its receipt. Submissions are never retried here; a failure
after the event was marked processed needs an operator.
"""

import asyncio
import logging
from typing import TYPE_CHECKING

from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TimeExhausted
from web3.types import TxReceipt

from .errors import DestinationReceiptError, DestinationReceiptTimeout, DestinationTransactionReverted
from .models import Direction

if TYPE_CHECKING:
    from .config import RelayerConfig
    from .utils.contract_utility import ContractUtility
    from .utils.rpc_pool import RpcEndpointPool

logger = logging.getLogger(__name__)


class RelayExecutor:
    """Submits relay transactions, one at a time per destination chain."""

    def __init__(
        self,
        config: "RelayerConfig",
        pools: dict[str, "RpcEndpointPool"],
        contract_util: "ContractUtility",
    ) -> None:
        """
        Initialize the RelayExecutor.

        Args:
            config: Relayer configuration
            pools: RPC pool per chain name
            contract_util: Signing account and ABI loader
        """
        self.config = config
        self.pools = pools
        self.contract_util = contract_util
        self.receipt_timeout = config.monitoring.receipt_timeout
        # One outstanding relayer transaction per chain keeps nonces ordered
        self._locks: dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in config.chains}
        self.submitted = 0

        logger.info(f"RelayExecutor initialized for relayer account {contract_util.address}")

    async def submit(
        self,
        direction: Direction,
        recipient: str,
        amount: int,
        event_id: str,
    ) -> str:
        """
        Call ``mint`` (deposits) or ``unlock`` (burns) and wait for the receipt.

        Args:
            direction: Relay direction of the source event
            recipient: Checksummed address receiving the net amount
            amount: Net amount in the token's smallest unit
            event_id: depositId/burnId passed through to the contract

        Returns:
            Destination transaction hash (0x hex)

        Raises:
            DestinationTransactionReverted: If the mined receipt has status != 1
            DestinationReceiptTimeout: If no receipt arrives within the receipt timeout
            DestinationReceiptError: If waiting for the receipt fails otherwise
        """
        chain = self.config.submission_chain(direction)
        method = direction.destination_method

        async with self._locks[chain.name]:
            w3 = self.pools[chain.name].current()
            contract = w3.eth.contract(
                address=chain.bridge_address,
                abi=self.contract_util.get_contract_abi(
                    self.contract_util.submission_contract_name(direction)
                ),
            )
            function = getattr(contract.functions, method)(
                Web3.to_checksum_address(recipient),
                amount,
                HexBytes(event_id),
            )

            logger.info(f"Submitting {method}({recipient}, {amount}, {event_id[:10]}...) on {chain.name}")
            tx_hash = await function.transact({"from": self.contract_util.address})
            tx_hex = HexBytes(tx_hash).to_0x_hex()
            self.submitted += 1
            logger.info(f"✓ {method} transaction sent on {chain.name}: {tx_hex}")

            # The transaction exists from here on; every failure carries its hash
            try:
                receipt: TxReceipt = await w3.eth.wait_for_transaction_receipt(
                    tx_hash, timeout=self.receipt_timeout
                )
            except TimeExhausted as e:
                logger.error(f"✗ No receipt for {method} transaction {tx_hex} after {self.receipt_timeout}s")
                raise DestinationReceiptTimeout(chain.name, tx_hex, self.receipt_timeout) from e
            except Exception as e:
                logger.error(f"✗ Waiting for {method} transaction {tx_hex} failed: {e}")
                raise DestinationReceiptError(chain.name, tx_hex, e) from e

        if (status := receipt.get("status", 0)) != 1:
            logger.error(f"✗ {method} transaction {tx_hex} failed with status={status}")
            raise DestinationTransactionReverted(chain.name, tx_hex, status)

        logger.info(f"✓ {method} confirmed on {chain.name} in block {receipt['blockNumber']}")
        return tx_hex
