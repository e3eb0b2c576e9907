#!/usr/bin/env python3
"""Tests for the command line entry point."""

import argparse
import logging

import pytest

import main
from bridge_relayer.models import Direction, ProcessedRecord, RecordStatus
from bridge_relayer.utils.state_store import StateStore

from conftest import DEPOSIT_ID, DEST_TX, RECIPIENT, SOURCE_TX

OTHER_TX = "0x" + "ef" * 32


@pytest.fixture
def state_path(tmp_path):
    return str(tmp_path / "relayer-state.json")


@pytest.fixture
def stuck_store(state_path):
    store = StateStore(state_path)
    store.mark_processed(
        Direction.DEPOSIT,
        DEPOSIT_ID,
        ProcessedRecord(
            event_id=DEPOSIT_ID,
            direction=Direction.DEPOSIT,
            source_tx_hash=SOURCE_TX,
            source_chain="bsc",
            destination_chain="uc",
            destination_address=RECIPIENT,
            gross_amount=100_000_000,
            net_amount=99_000_000,
        ),
    )
    store.mark_stuck(DEPOSIT_ID, "destination_receipt_timeout: no receipt after 180s", DEST_TX)
    return store


def run_cli(*argv):
    args = main.build_parser().parse_args(list(argv))
    return main.reconcile(args)


class TestReconcileList:
    """reconcile list."""

    def test_nothing_to_reconcile(self, state_path, capsys):
        assert run_cli("--state-file", state_path, "reconcile", "list") == 0

        assert capsys.readouterr().out.strip() == "No records need reconciliation"

    def test_lists_stuck_record_with_error(self, state_path, stuck_store, capsys):
        assert run_cli("--state-file", state_path, "reconcile", "list") == 0

        lines = capsys.readouterr().out.splitlines()
        assert lines[0].startswith(DEPOSIT_ID)
        assert "stuck" in lines[0]
        assert f"source={SOURCE_TX}" in lines[0]
        assert f"dest={DEST_TX}" in lines[0]
        assert "net=99000000" in lines[0]
        assert lines[1] == "    error: destination_receipt_timeout: no receipt after 180s"

    def test_lists_unrelayed_events(self, state_path, capsys):
        StateStore(state_path).add_unrelayed(Direction.DEPOSIT, OTHER_TX, None, "RPC unavailable")

        assert run_cli("--state-file", state_path, "reconcile", "list") == 0

        out = capsys.readouterr().out
        assert "unrelayed" in out
        assert f"source={OTHER_TX}" in out
        assert "attempts=1" in out
        assert "error: RPC unavailable" in out


class TestReconcileResolve:
    """reconcile resolve."""

    def test_resolve_stuck_record(self, state_path, stuck_store, capsys):
        code = run_cli(
            "--state-file", state_path, "reconcile", "resolve", DEPOSIT_ID, "--note", "checked on explorer"
        )

        assert code == 0
        assert capsys.readouterr().out.strip() == f"Resolved {DEPOSIT_ID} (destination tx {DEST_TX})"
        record = StateStore(state_path).get_tx_hashes(DEPOSIT_ID)
        assert record.status is RecordStatus.RESOLVED
        assert record.note == "checked on explorer"

    def test_resolve_with_namespace(self, state_path, stuck_store):
        args = argparse.Namespace(
            state_file=state_path,
            reconcile_command="resolve",
            event_id=DEPOSIT_ID[2:].upper(),
            destination_tx=OTHER_TX,
            note=None,
        )

        assert main.reconcile(args) == 0
        assert StateStore(state_path).get_tx_hashes(DEPOSIT_ID).destination_tx_hash == OTHER_TX

    def test_unknown_event_exits_with_error(self, state_path, caplog, capsys):
        with caplog.at_level(logging.ERROR):
            code = run_cli("--state-file", state_path, "reconcile", "resolve", DEPOSIT_ID)

        assert code == 1
        assert f"No record for {DEPOSIT_ID}" in caplog.text
        assert capsys.readouterr().out == ""

    def test_dismiss_unrelayed_event(self, state_path, capsys):
        StateStore(state_path).add_unrelayed(Direction.BURN, OTHER_TX, None, "RPC unavailable")

        assert run_cli("--state-file", state_path, "reconcile", "resolve", OTHER_TX) == 0

        assert "Dismissed unrelayed burn" in capsys.readouterr().out
        assert StateStore(state_path).unrelayed_entries() == []


class TestParser:
    """Argument parsing."""

    def test_reconcile_requires_subcommand(self, capsys):
        with pytest.raises(SystemExit):
            main.build_parser().parse_args(["reconcile"])

    def test_default_command_is_run(self):
        args = main.build_parser().parse_args([])

        assert args.command is None
        assert args.log_level in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
