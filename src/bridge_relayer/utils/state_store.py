"""
Durable state management for the bridge relayer.

This module keeps all relayer state in one JSON document that is rewritten
atomically (write temp file, fsync, rename) after every mutation.
"""

import json
import logging
import os
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path
from typing import Any

from ..models import (
    Direction,
    ProcessedRecord,
    RecordStatus,
    RelayerState,
    UnrelayedEvent,
    unrelayed_key,
    utc_now_iso,
)

logger = logging.getLogger(__name__)


def normalize_event_id(event_id: str | bytes) -> str:
    """Canonical form of a depositId/burnId: 0x-prefixed lowercase hex."""
    if isinstance(event_id, (bytes, bytearray)):
        return "0x" + bytes(event_id).hex()
    value = event_id.strip().lower()
    return value if value.startswith("0x") else "0x" + value


class StateStore:
    """
    Crash-safe store for relayer state.

    Every mutating call persists before it returns, so callers may assume
    durability as soon as the call completes. A failed write reverts the
    in-memory change and re-raises. Mutations are synchronous and
    never yield to the event loop, which makes ``mark_processed`` an atomic
    check-and-set for all tasks sharing this store.
    """

    MAX_RECORDS: int = 10_000

    def __init__(self, path: str | Path, max_records: int | None = None):
        """
        Initialize the store and load existing state.

        Args:
            path: Location of the JSON state document
            max_records: Bound on kept records (processed ids are never trimmed)
        """
        self.path = Path(path)
        if max_records is not None:
            self.MAX_RECORDS = max_records
        self.state = self.load()
        logger.info(
            f"State store initialized from {self.path}: "
            f"cursors={self.state.last_scanned_block}, "
            f"deposits={len(self.state.processed_event_ids[Direction.DEPOSIT])}, "
            f"burns={len(self.state.processed_event_ids[Direction.BURN])}, "
            f"records={len(self.state.records)}"
        )

    def load(self) -> RelayerState:
        """Load state from disk, or return a fresh empty state if none exists."""
        if not self.path.exists():
            logger.info(f"No state file at {self.path}, starting with empty state")
            return RelayerState()

        with self.path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        state = RelayerState.from_dict(data)
        logger.info(f"Loaded state saved at {state.last_saved_at}")
        return state

    def save(self, state: RelayerState | None = None) -> None:
        """
        Persist ``state`` (default: the current state) atomically.

        A crash during the write leaves the previous document in place.
        """
        if state is not None:
            self.state = state
        self.state.last_saved_at = utc_now_iso()

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(self.state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise

    def _persist(self, undo: Callable[[], None]) -> None:
        """
        Save the current state, reverting the in-memory mutation with ``undo``
        if the write fails, so memory never claims more than the disk holds.
        """
        last_saved_at = self.state.last_saved_at
        try:
            self.save()
        except Exception as e:
            undo()
            self.state.last_saved_at = last_saved_at
            logger.error(f"Failed to persist state to {self.path}, change reverted: {e}")
            raise

    def _restore_records(self) -> Callable[[], None]:
        """Undo callback putting the record table back as it is now."""
        snapshot = OrderedDict(self.state.records)

        def undo() -> None:
            self.state.records = snapshot

        return undo

    # Processed ids

    def is_processed(self, direction: Direction, event_id: str) -> bool:
        return normalize_event_id(event_id) in self.state.processed_event_ids[direction]

    def mark_processed(
        self,
        direction: Direction,
        event_id: str,
        record: ProcessedRecord | None = None,
    ) -> bool:
        """
        Atomically mark an event as processed.

        Args:
            direction: Relay direction
            event_id: depositId/burnId
            record: Optional pending record written in the same save

        Returns:
            False if the event was already marked (nothing changed), True otherwise

        Raises:
            OSError: If the state could not be written; the event is left unmarked
        """
        event_id = normalize_event_id(event_id)
        processed = self.state.processed_event_ids[direction]
        if event_id in processed:
            return False

        restore_records = self._restore_records()

        def undo() -> None:
            processed.discard(event_id)
            restore_records()

        processed.add(event_id)
        if record is not None:
            self._put_record(replace(record, event_id=event_id))
        self._persist(undo)
        logger.debug(f"Marked {direction.value} {event_id} as processed")
        return True

    # Records

    def put_tx_hashes(
        self,
        event_id: str,
        direction: Direction,
        source_tx_hash: str,
        destination_tx_hash: str | None,
        source_chain: str | None = None,
        destination_chain: str | None = None,
        **extra: Any,
    ) -> ProcessedRecord:
        """
        Store the source/destination transaction pair for an event.

        A record with a destination hash is marked completed. Fields of an
        existing record that are not given here are kept.
        """
        event_id = normalize_event_id(event_id)
        existing = self.state.records.get(event_id)
        if existing is not None:
            record = replace(
                existing,
                direction=direction,
                source_tx_hash=source_tx_hash,
                destination_tx_hash=destination_tx_hash,
                source_chain=source_chain or existing.source_chain,
                destination_chain=destination_chain or existing.destination_chain,
                **extra,
            )
        else:
            if source_chain is None or destination_chain is None:
                raise ValueError(f"Chains are required for a new record ({event_id})")
            record = ProcessedRecord(
                event_id=event_id,
                direction=direction,
                source_tx_hash=source_tx_hash,
                destination_tx_hash=destination_tx_hash,
                source_chain=source_chain,
                destination_chain=destination_chain,
                **extra,
            )
        if destination_tx_hash is not None and "status" not in extra:
            record = replace(record, status=RecordStatus.COMPLETED, error=None)

        undo = self._restore_records()
        self._put_record(record)
        self._persist(undo)
        logger.debug(f"Stored tx hashes for {event_id}: {source_tx_hash} -> {destination_tx_hash}")
        return record

    def get_tx_hashes(self, event_id: str) -> ProcessedRecord | None:
        return self.state.records.get(normalize_event_id(event_id))

    def all_records(self) -> dict[str, ProcessedRecord]:
        return dict(self.state.records)

    def mark_stuck(
        self,
        event_id: str,
        error: str,
        destination_tx_hash: str | None = None,
    ) -> ProcessedRecord | None:
        """
        Flag a record whose destination call failed after it was marked processed.

        ``destination_tx_hash`` is the broadcast transaction, if the failure
        happened after broadcast.
        """
        event_id = normalize_event_id(event_id)
        record = self.state.records.get(event_id)
        if record is None:
            logger.error(f"Cannot mark unknown record {event_id} as stuck")
            return None
        record = replace(
            record,
            status=RecordStatus.STUCK,
            error=error,
            destination_tx_hash=destination_tx_hash or record.destination_tx_hash,
        )
        undo = self._restore_records()
        self._put_record(record)
        self._persist(undo)
        return record

    def resolve(
        self,
        event_id: str,
        destination_tx_hash: str | None = None,
        note: str | None = None,
    ) -> ProcessedRecord:
        """
        Close a pending or stuck record after manual reconciliation.

        Raises:
            KeyError: If no record exists for ``event_id``
        """
        event_id = normalize_event_id(event_id)
        record = self.state.records.get(event_id)
        if record is None:
            raise KeyError(event_id)
        record = replace(
            record,
            status=RecordStatus.RESOLVED,
            destination_tx_hash=destination_tx_hash or record.destination_tx_hash,
            note=note,
        )
        undo = self._restore_records()
        self._put_record(record)
        self._persist(undo)
        logger.info(f"Record {event_id} resolved (destination tx {record.destination_tx_hash})")
        return record

    def records_needing_attention(self) -> list[ProcessedRecord]:
        return [record for record in self.state.records.values() if record.needs_attention]

    def _put_record(self, record: ProcessedRecord) -> None:
        """Insert or update a record, trimming the oldest settled ones over capacity."""
        records = self.state.records
        records[record.event_id] = record
        records.move_to_end(record.event_id)

        if len(records) <= self.MAX_RECORDS:
            return
        # Pending and stuck records are kept; they still need an operator
        for event_id in list(records):
            if len(records) <= self.MAX_RECORDS:
                break
            if not records[event_id].needs_attention:
                del records[event_id]

    # Unrelayed events

    def add_unrelayed(
        self,
        direction: Direction,
        source_tx_hash: str,
        event_id: str | None,
        error: str | None,
        error_kind: str | None = None,
    ) -> UnrelayedEvent:
        """Remember an event whose relay ran out of retries; repeated calls count attempts."""
        if event_id is not None:
            event_id = normalize_event_id(event_id)
        key = unrelayed_key(direction, source_tx_hash, event_id)
        existing = self.state.unrelayed.get(key)
        if existing is not None:
            entry = replace(
                existing,
                error=error,
                error_kind=error_kind,
                attempts=existing.attempts + 1,
                last_attempt_at=utc_now_iso(),
            )
        else:
            entry = UnrelayedEvent(
                direction=direction,
                source_tx_hash=source_tx_hash,
                event_id=event_id,
                error=error,
                error_kind=error_kind,
            )

        def undo() -> None:
            if existing is None:
                self.state.unrelayed.pop(key, None)
            else:
                self.state.unrelayed[key] = existing

        self.state.unrelayed[key] = entry
        self._persist(undo)
        logger.warning(f"Recorded unrelayed {direction.value} {event_id or source_tx_hash} (attempts {entry.attempts})")
        return entry

    def clear_unrelayed(self, direction: Direction, source_tx_hash: str, event_id: str | None) -> bool:
        """Drop an unrelayed entry once its relay reached a final outcome."""
        if event_id is not None:
            event_id = normalize_event_id(event_id)
        key = unrelayed_key(direction, source_tx_hash, event_id)
        entry = self.state.unrelayed.pop(key, None)
        if entry is None:
            return False

        def undo() -> None:
            self.state.unrelayed[key] = entry

        self._persist(undo)
        logger.info(f"Cleared unrelayed {direction.value} {event_id or source_tx_hash}")
        return True

    def unrelayed_entries(self, direction: Direction | None = None) -> list[UnrelayedEvent]:
        return [
            entry for entry in self.state.unrelayed.values()
            if direction is None or entry.direction is direction
        ]

    # Block cursors

    def get_last_scanned_block(self, chain: str) -> int | None:
        return self.state.last_scanned_block.get(chain)

    def set_last_scanned_block(self, chain: str, block_number: int) -> None:
        """
        Persist the block cursor of ``chain``.

        Raises:
            ValueError: If ``block_number`` would move the cursor backwards
        """
        current = self.state.last_scanned_block.get(chain)
        if current is not None and block_number < current:
            raise ValueError(
                f"Block cursor for {chain} cannot move backwards ({current} -> {block_number})"
            )
        if current == block_number:
            return

        def undo() -> None:
            if current is None:
                self.state.last_scanned_block.pop(chain, None)
            else:
                self.state.last_scanned_block[chain] = current

        self.state.last_scanned_block[chain] = block_number
        self._persist(undo)

    def get_stats(self) -> dict[str, Any]:
        """
        Get current state statistics.

        Returns:
            Dictionary with state metrics
        """
        statuses: dict[str, int] = {status.value: 0 for status in RecordStatus}
        for record in self.state.records.values():
            statuses[record.status.value] += 1
        return {
            "last_scanned_block": dict(self.state.last_scanned_block),
            "processed_deposits": len(self.state.processed_event_ids[Direction.DEPOSIT]),
            "processed_burns": len(self.state.processed_event_ids[Direction.BURN]),
            "records": len(self.state.records),
            "records_by_status": statuses,
            "unrelayed": len(self.state.unrelayed),
            "last_saved_at": self.state.last_saved_at,
            "started_at": self.state.started_at,
        }
