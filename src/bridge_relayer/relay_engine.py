#!/usr/bin/env python3
"""Relay orchestration for the bridge relayer.

``RelayEngine.process`` is the single entry point for both the chain watchers
and the HTTP gateway. It takes one source transaction through verification,
confirmation, a second verification of the confirmed receipt, fee computation,
the processed-id commit and the destination submission, and maps every failure
onto a RelayOutcome.
"""

import logging
import re
import time
from typing import TYPE_CHECKING

from .errors import (
    ChainSemanticError,
    InputInvalidError,
    InvalidTransactionHash,
    SourceEventChanged,
    SubmissionError,
    TransientRpcError,
)
from .fees import FeeEngine
from .models import (
    BridgeEvent,
    Direction,
    FeeBreakdown,
    ProcessedRecord,
    RelayOutcome,
    RelayResult,
)
from .utils.rpc_pool import FailureKind, classify_rpc_error
from .utils.state_store import normalize_event_id

if TYPE_CHECKING:
    from .confirmation_gate import ConfirmationGate
    from .config import RelayerConfig
    from .event_verifier import EventVerifier
    from .relay_executor import RelayExecutor
    from .utils.state_store import StateStore

logger = logging.getLogger(__name__)
# Audit trail of every relay decision, routed to its own file by main.py
tx_logger = logging.getLogger("bridge_relayer.transactions")

TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")


def is_valid_tx_hash(value: object) -> bool:
    return isinstance(value, str) and TX_HASH_PATTERN.fullmatch(value) is not None


class RelayEngine:
    """
    Drives one event from source transaction to destination payout.

    The processed id is committed before submission, so an event is paid at
    most once. A failure after that commit leaves a stuck record for an
    operator instead of being retried.
    """

    def __init__(
        self,
        config: "RelayerConfig",
        state_store: "StateStore",
        verifier: "EventVerifier",
        gate: "ConfirmationGate",
        executor: "RelayExecutor",
        fee_engine: FeeEngine | None = None,
    ) -> None:
        self.config = config
        self.state_store = state_store
        self.verifier = verifier
        self.gate = gate
        self.executor = executor
        self.fee_engine = fee_engine or FeeEngine()

        self.stats: dict[str, int] = {outcome.value: 0 for outcome in RelayOutcome}

    async def process(
        self,
        source_tx_hash: str,
        direction: Direction,
        event_id: str | None = None,
    ) -> RelayResult:
        """
        Relay the bridge event contained in ``source_tx_hash``.

        Args:
            source_tx_hash: Transaction that emitted the Deposit/Burn
            direction: Which event to relay
            event_id: Optional id hint from a watcher log

        Returns:
            RelayResult describing what happened; never raises for relay failures
        """
        started = time.monotonic()
        result = await self._process(source_tx_hash, direction, event_id, started)
        self.stats[result.outcome.value] += 1
        return result

    async def _process(
        self,
        source_tx_hash: str,
        direction: Direction,
        event_id: str | None,
        started: float,
    ) -> RelayResult:
        def finish(outcome: RelayOutcome, **fields) -> RelayResult:
            return RelayResult(
                outcome=outcome,
                direction=direction,
                source_tx_hash=source_tx_hash,
                elapsed_ms=int((time.monotonic() - started) * 1000),
                **fields,
            )

        # 1. Input
        if not is_valid_tx_hash(source_tx_hash):
            error = InvalidTransactionHash(source_tx_hash)
            logger.warning(str(error))
            return finish(RelayOutcome.INVALID_INPUT, error=str(error), error_kind=error.kind)
        if event_id is not None and self.state_store.is_processed(direction, event_id):
            return self._already_processed(finish, normalize_event_id(event_id))

        chain = self.config.event_chain(direction)

        # 2.-4. Verification and confirmations, no state is touched
        try:
            event = await self.verifier.verify(chain.name, source_tx_hash, direction, event_id)
            tx_logger.info(
                f"VERIFIED {direction.value} {event.event_id} tx={source_tx_hash} "
                f"amount={event.amount} to={event.destination_address}"
            )

            if self.state_store.is_processed(direction, event.event_id):
                return self._already_processed(finish, event.event_id)

            confirmations = await self.gate.await_confirmations(
                chain.name, event.block_number, chain.required_confirmations
            )
            # The receipt must still be there, unchanged, once it is confirmed
            confirmed = await self.verifier.verify(chain.name, source_tx_hash, direction, event.event_id)
            if changed := self._changed_fields(event, confirmed):
                raise SourceEventChanged(chain.name, source_tx_hash, changed)
        except InputInvalidError as e:
            return finish(RelayOutcome.INVALID_INPUT, error=str(e), error_kind=e.kind)
        except ChainSemanticError as e:
            logger.warning(f"Rejected {direction.value} {source_tx_hash}: {e}")
            tx_logger.warning(f"REJECTED {direction.value} tx={source_tx_hash} reason={e.kind}")
            return finish(RelayOutcome.REJECTED, error=str(e), error_kind=e.kind)
        except TransientRpcError as e:
            logger.warning(f"Transient failure relaying {direction.value} {source_tx_hash}: {e}")
            return finish(RelayOutcome.RETRYABLE_FAILURE, error=str(e), error_kind=e.kind)
        except Exception as e:
            # Raw RPC errors that escaped the pool are classified here
            if classify_rpc_error(e) is FailureKind.NON_RETRYABLE:
                raise
            logger.warning(f"Transient failure relaying {direction.value} {source_tx_hash}: {e}")
            return finish(RelayOutcome.RETRYABLE_FAILURE, error=str(e), error_kind="transient_rpc")

        # 5. Another task may have relayed the event while we waited
        if self.state_store.is_processed(direction, event.event_id):
            return self._already_processed(finish, event.event_id)

        # 6. Fee
        fees = self.fee_engine.breakdown(event.amount)

        # 7. Commit; from here on the event is never submitted again
        pending = self._pending_record(event, fees)
        try:
            committed = self.state_store.mark_processed(direction, event.event_id, pending)
        except Exception as e:
            # Nothing was committed, the store reverted its memory
            logger.error(f"Could not commit {direction.value} {event.event_id}: {e}", exc_info=True)
            return finish(
                RelayOutcome.RETRYABLE_FAILURE,
                event_id=event.event_id,
                error=str(e),
                error_kind="state_write_failed",
            )
        if not committed:
            return self._already_processed(finish, event.event_id)

        # 8. Submit
        try:
            destination_tx_hash = await self.executor.submit(
                direction, event.destination_address, fees.net, event.event_id
            )
        except Exception as e:
            error_kind = getattr(e, "kind", "submission_failed")
            # Set when the transaction was broadcast before the failure
            sent_tx_hash = e.tx_hash if isinstance(e, SubmissionError) else None
            logger.error(f"Destination submission failed for {event.event_id}: {e}", exc_info=True)
            self._mark_stuck(event.event_id, f"{error_kind}: {e}", sent_tx_hash)
            tx_logger.critical(
                f"NEEDS_RECONCILIATION {direction.value} {event.event_id} tx={source_tx_hash} "
                f"dest_tx={sent_tx_hash or '-'} net={fees.net} to={event.destination_address} error={e}"
            )
            return finish(
                RelayOutcome.NEEDS_RECONCILIATION,
                event_id=event.event_id,
                destination_tx_hash=sent_tx_hash,
                gross_amount=fees.gross,
                fee_amount=fees.fee,
                net_amount=fees.net,
                confirmations=confirmations,
                error=str(e),
                error_kind=error_kind,
            )

        # 9. Record
        try:
            self.state_store.put_tx_hashes(
                event.event_id,
                direction,
                event.source_tx_hash,
                destination_tx_hash,
                event.source_chain,
                event.destination_chain,
            )
        except Exception as e:
            # Paid, but the record on disk still says pending
            logger.error(f"Could not record destination tx for {event.event_id}: {e}", exc_info=True)
            tx_logger.critical(
                f"NEEDS_RECONCILIATION {direction.value} {event.event_id} tx={source_tx_hash} "
                f"dest_tx={destination_tx_hash} net={fees.net} error=state write failed: {e}"
            )
            return finish(
                RelayOutcome.NEEDS_RECONCILIATION,
                event_id=event.event_id,
                destination_tx_hash=destination_tx_hash,
                gross_amount=fees.gross,
                fee_amount=fees.fee,
                net_amount=fees.net,
                confirmations=confirmations,
                error=str(e),
                error_kind="state_write_failed",
            )
        tx_logger.info(
            f"COMPLETED {direction.value} {event.event_id} tx={source_tx_hash} "
            f"dest_tx={destination_tx_hash} gross={fees.gross} fee={fees.fee} net={fees.net}"
        )

        # 10. Result
        return finish(
            RelayOutcome.COMPLETED,
            event_id=event.event_id,
            destination_tx_hash=destination_tx_hash,
            gross_amount=fees.gross,
            fee_amount=fees.fee,
            net_amount=fees.net,
            confirmations=confirmations,
        )

    @staticmethod
    def _changed_fields(before: BridgeEvent, after: BridgeEvent) -> list[str]:
        fields = ("event_id", "amount", "destination_address", "block_number", "log_index")
        return [name for name in fields if getattr(before, name) != getattr(after, name)]

    def _mark_stuck(self, event_id: str, error: str, destination_tx_hash: str | None) -> None:
        try:
            self.state_store.mark_stuck(event_id, error, destination_tx_hash)
        except Exception as e:
            # The record stays pending, which still lists it for reconciliation
            logger.error(f"Could not mark {event_id} as stuck: {e}", exc_info=True)

    def _already_processed(self, finish, event_id: str) -> RelayResult:
        record = self.state_store.get_tx_hashes(event_id)
        logger.info(f"Event {event_id} already processed, skipping")
        return finish(
            RelayOutcome.ALREADY_PROCESSED,
            event_id=event_id,
            destination_tx_hash=record.destination_tx_hash if record else None,
            gross_amount=record.gross_amount if record else None,
            net_amount=record.net_amount if record else None,
        )

    @staticmethod
    def _pending_record(event: BridgeEvent, fees: FeeBreakdown) -> ProcessedRecord:
        return ProcessedRecord(
            event_id=event.event_id,
            direction=event.direction,
            source_tx_hash=event.source_tx_hash,
            source_chain=event.source_chain,
            destination_chain=event.destination_chain,
            destination_address=event.destination_address,
            gross_amount=fees.gross,
            net_amount=fees.net,
        )

    def get_stats(self) -> dict[str, int]:
        return dict(self.stats)
