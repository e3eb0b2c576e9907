#!/usr/bin/env python3
"""Data models for the bridge relayer.

This module provides the event, record and state types shared by the relay
engine, the state store and the HTTP gateway.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class Direction(Enum):
    """Relay direction.

    DEPOSIT: ``Deposit`` on the source chain is relayed as ``mint`` on the
    destination chain. BURN: ``Burn`` on the destination chain is relayed as
    ``unlock`` on the source chain.
    """
    DEPOSIT = "deposit"
    BURN = "burn"

    @property
    def event_name(self) -> str:
        return "Deposit" if self is Direction.DEPOSIT else "Burn"

    @property
    def id_field(self) -> str:
        return "depositId" if self is Direction.DEPOSIT else "burnId"

    @property
    def destination_method(self) -> str:
        return "mint" if self is Direction.DEPOSIT else "unlock"


class RecordStatus(Enum):
    """Lifecycle of a processed record."""
    PENDING = "pending"
    COMPLETED = "completed"
    STUCK = "stuck"
    RESOLVED = "resolved"


class RelayOutcome(Enum):
    """Result of one RelayEngine.process invocation."""
    COMPLETED = "completed"
    ALREADY_PROCESSED = "already_processed"
    INVALID_INPUT = "invalid_input"
    REJECTED = "rejected"
    RETRYABLE_FAILURE = "retryable_failure"
    NEEDS_RECONCILIATION = "needs_reconciliation"

    @property
    def succeeded(self) -> bool:
        return self in (RelayOutcome.COMPLETED, RelayOutcome.ALREADY_PROCESSED)

    @property
    def retryable(self) -> bool:
        return self is RelayOutcome.RETRYABLE_FAILURE


@dataclass(frozen=True, slots=True)
class BridgeEvent:
    """A Deposit or Burn event re-derived from a mined receipt.

    Attributes:
        direction: Relay direction the event belongs to
        event_id: depositId/burnId as 0x-prefixed lowercase hex
        user: Address that emitted the deposit or burn
        destination_address: Checksummed recipient on the other chain
        amount: Gross amount in the token's smallest unit
        source_chain: Name of the chain that emitted the event
        destination_chain: Name of the chain the relay is submitted to
        source_tx_hash: Transaction hash containing the event
        block_number: Block the transaction was mined in
        log_index: Index of the log inside the block
    """

    direction: Direction
    event_id: str
    user: str
    destination_address: str
    amount: int
    source_chain: str
    destination_chain: str
    source_tx_hash: str
    block_number: int
    log_index: int = 0

    def __str__(self) -> str:
        return (
            f"BridgeEvent({self.direction.value}, id={self.event_id[:10]}..., "
            f"amount={self.amount}, block={self.block_number})"
        )


@dataclass(frozen=True, slots=True)
class FeeBreakdown:
    """Gross amount split into fee and net payout."""
    gross: int
    fee: int
    net: int


@dataclass(frozen=True, slots=True)
class ProcessedRecord:
    """Correlation of one event with its source and destination transactions."""

    event_id: str
    direction: Direction
    source_tx_hash: str
    source_chain: str
    destination_chain: str
    destination_tx_hash: str | None = None
    status: RecordStatus = RecordStatus.PENDING
    recorded_at: str = field(default_factory=utc_now_iso)
    destination_address: str | None = None
    gross_amount: int | None = None
    net_amount: int | None = None
    error: str | None = None
    note: str | None = None

    @property
    def needs_attention(self) -> bool:
        return self.status in (RecordStatus.PENDING, RecordStatus.STUCK)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase form used on disk and over HTTP."""
        return {
            "eventId": self.event_id,
            "type": self.direction.value,
            "sourceTxHash": self.source_tx_hash,
            "destinationTxHash": self.destination_tx_hash,
            "sourceChain": self.source_chain,
            "destinationChain": self.destination_chain,
            "status": self.status.value,
            "recordedAt": self.recorded_at,
            "destinationAddress": self.destination_address,
            "grossAmount": str(self.gross_amount) if self.gross_amount is not None else None,
            "netAmount": str(self.net_amount) if self.net_amount is not None else None,
            "error": self.error,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProcessedRecord":
        gross = data.get("grossAmount")
        net = data.get("netAmount")
        return cls(
            event_id=data["eventId"],
            direction=Direction(data["type"]),
            source_tx_hash=data["sourceTxHash"],
            source_chain=data["sourceChain"],
            destination_chain=data["destinationChain"],
            destination_tx_hash=data.get("destinationTxHash"),
            status=RecordStatus(data.get("status", RecordStatus.COMPLETED.value)),
            recorded_at=data.get("recordedAt") or utc_now_iso(),
            destination_address=data.get("destinationAddress"),
            gross_amount=int(gross) if gross is not None else None,
            net_amount=int(net) if net is not None else None,
            error=data.get("error"),
            note=data.get("note"),
        )


@dataclass(frozen=True, slots=True)
class UnrelayedEvent:
    """An event a watcher discovered but could not relay within its retry budget.

    Kept until a later attempt ends in a final outcome, so an event behind the
    block cursor is never lost.
    """

    direction: Direction
    source_tx_hash: str
    event_id: str | None = None
    error: str | None = None
    error_kind: str | None = None
    attempts: int = 1
    recorded_at: str = field(default_factory=utc_now_iso)
    last_attempt_at: str = field(default_factory=utc_now_iso)

    @property
    def key(self) -> str:
        return unrelayed_key(self.direction, self.source_tx_hash, self.event_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.direction.value,
            "sourceTxHash": self.source_tx_hash,
            "eventId": self.event_id,
            "error": self.error,
            "errorKind": self.error_kind,
            "attempts": self.attempts,
            "recordedAt": self.recorded_at,
            "lastAttemptAt": self.last_attempt_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "UnrelayedEvent":
        recorded_at = data.get("recordedAt") or utc_now_iso()
        return cls(
            direction=Direction(data["type"]),
            source_tx_hash=data["sourceTxHash"],
            event_id=data.get("eventId"),
            error=data.get("error"),
            error_kind=data.get("errorKind"),
            attempts=int(data.get("attempts", 1)),
            recorded_at=recorded_at,
            last_attempt_at=data.get("lastAttemptAt") or recorded_at,
        )


def unrelayed_key(direction: Direction, source_tx_hash: str, event_id: str | None) -> str:
    """Identity of an unrelayed entry: the event id when known, else the source tx."""
    return f"{direction.value}:{(event_id or source_tx_hash).lower()}"


@dataclass(slots=True)
class RelayerState:
    """Root persisted object of the relayer."""

    last_scanned_block: dict[str, int] = field(default_factory=dict)
    processed_event_ids: dict[Direction, set[str]] = field(
        default_factory=lambda: {direction: set() for direction in Direction}
    )
    records: OrderedDict[str, ProcessedRecord] = field(default_factory=OrderedDict)
    unrelayed: dict[str, UnrelayedEvent] = field(default_factory=dict)
    last_saved_at: str | None = None
    started_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastScannedBlock": dict(self.last_scanned_block),
            "processedEventIds": {
                direction.value: sorted(ids)
                for direction, ids in self.processed_event_ids.items()
            },
            "records": {event_id: record.to_dict() for event_id, record in self.records.items()},
            "unrelayed": [entry.to_dict() for entry in self.unrelayed.values()],
            "lastSavedAt": self.last_saved_at,
            "startedAt": self.started_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RelayerState":
        processed = data.get("processedEventIds", {})
        records: OrderedDict[str, ProcessedRecord] = OrderedDict()
        for event_id, raw in data.get("records", {}).items():
            records[event_id] = ProcessedRecord.from_dict(raw)
        unrelayed = [UnrelayedEvent.from_dict(raw) for raw in data.get("unrelayed", [])]
        return cls(
            last_scanned_block={chain: int(block) for chain, block in data.get("lastScannedBlock", {}).items()},
            processed_event_ids={
                direction: set(processed.get(direction.value, []))
                for direction in Direction
            },
            records=records,
            unrelayed={entry.key: entry for entry in unrelayed},
            last_saved_at=data.get("lastSavedAt"),
            started_at=data.get("startedAt") or utc_now_iso(),
        )


@dataclass(frozen=True, slots=True)
class RelayResult:
    """Outcome of processing one source transaction."""

    outcome: RelayOutcome
    direction: Direction
    source_tx_hash: str
    event_id: str | None = None
    destination_tx_hash: str | None = None
    gross_amount: int | None = None
    fee_amount: int | None = None
    net_amount: int | None = None
    confirmations: int | None = None
    elapsed_ms: int = 0
    error: str | None = None
    error_kind: str | None = None

    @property
    def success(self) -> bool:
        return self.outcome.succeeded

    def to_dict(self) -> dict[str, Any]:
        """Convert to the JSON response body; amounts become decimal strings."""
        body: dict[str, Any] = {
            "success": self.success,
            "outcome": self.outcome.value,
            "direction": self.direction.value,
            "eventId": self.event_id,
            "sourceTxHash": self.source_tx_hash,
            "destinationTxHash": self.destination_tx_hash,
            "grossAmount": str(self.gross_amount) if self.gross_amount is not None else None,
            "feeAmount": str(self.fee_amount) if self.fee_amount is not None else None,
            "netAmount": str(self.net_amount) if self.net_amount is not None else None,
            "confirmations": self.confirmations,
            "elapsedMs": self.elapsed_ms,
        }
        if self.error is not None:
            body["error"] = self.error
            body["errorKind"] = self.error_kind
        return body
