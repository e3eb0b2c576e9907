#!/usr/bin/env python3
"""Entry point for the bridge relayer.

``run`` starts the relayer service (watchers plus control API). ``reconcile``
lists and resolves records whose destination call did not complete; it edits
the state file directly and must only be used while the service is stopped.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys

from dotenv import load_dotenv


# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO", transaction_log_file: str | None = None) -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        transaction_log_file: Optional file receiving the relay audit trail
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    if transaction_log_file:
        handler = logging.FileHandler(transaction_log_file)
        handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        logging.getLogger("bridge_relayer.transactions").addHandler(handler)


# Get logger for this module
logger = logging.getLogger(__name__)

from bridge_relayer.relayer import BridgeRelayer
from bridge_relayer.utils.state_store import StateStore, normalize_event_id


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bridge Relayer - relay Deposit/Burn events between two EVM chains",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  RELAYER_PRIVATE_KEY      - Admin key signing mint/unlock calls
  SOURCE_BRIDGE_ADDRESS    - Bridge contract on the source chain
  DEST_BRIDGE_ADDRESS      - Bridge contract on the destination chain
  SOURCE_RPC_URLS          - Comma-separated source RPC endpoints
  DEST_RPC_URLS            - Comma-separated destination RPC endpoints
  REQUIRED_CONFIRMATIONS   - Confirmations before relaying (default: 6)
  STATE_FILE               - State document (default: relayer-state.json)
  PORT                     - Control API port (default: 3001)
  LOG_LEVEL                - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", help="Run the relayer service (default)")

    reconcile = subparsers.add_parser("reconcile", help="Inspect and resolve stuck relays")
    reconcile_commands = reconcile.add_subparsers(dest="reconcile_command", required=True)
    reconcile_commands.add_parser("list", help="List pending, stuck and unrelayed events")
    resolve = reconcile_commands.add_parser(
        "resolve", help="Mark a record as resolved, or dismiss an unrelayed event"
    )
    resolve.add_argument("event_id", help="depositId/burnId of the record (or source tx of an unrelayed event)")
    resolve.add_argument("--destination-tx", help="Destination transaction hash found on-chain")
    resolve.add_argument("--note", help="Free-form note stored with the record")
    parser.add_argument(
        "--state-file",
        default=os.environ.get("STATE_FILE", "relayer-state.json"),
        help="State document used by reconcile (default: $STATE_FILE)"
    )
    return parser


def reconcile(args: argparse.Namespace) -> int:
    """Run a reconcile sub-command against the state file."""
    store = StateStore(args.state_file)

    if args.reconcile_command == "list":
        records = store.records_needing_attention()
        unrelayed = store.unrelayed_entries()
        if not records and not unrelayed:
            print("No records need reconciliation")
            return 0
        for record in records:
            print(
                f"{record.event_id}  {record.status.value:<9} {record.direction.value:<8} "
                f"source={record.source_tx_hash} dest={record.destination_tx_hash or '-'} "
                f"net={record.net_amount} to={record.destination_address}"
            )
            if record.error:
                print(f"    error: {record.error}")
        for entry in unrelayed:
            print(
                f"{entry.event_id or '-'}  unrelayed {entry.direction.value:<8} "
                f"source={entry.source_tx_hash} attempts={entry.attempts} since={entry.recorded_at}"
            )
            if entry.error:
                print(f"    error: {entry.error}")
        return 0

    try:
        record = store.resolve(args.event_id, args.destination_tx, args.note)
    except KeyError:
        return dismiss_unrelayed(store, args)
    print(f"Resolved {record.event_id} (destination tx {record.destination_tx_hash or '-'})")
    return 0


def dismiss_unrelayed(store: StateStore, args: argparse.Namespace) -> int:
    """Drop an unrelayed entry, matched by event id or source transaction."""
    wanted = normalize_event_id(args.event_id)
    for entry in store.unrelayed_entries():
        if wanted in (entry.event_id, entry.source_tx_hash.lower()):
            store.clear_unrelayed(entry.direction, entry.source_tx_hash, entry.event_id)
            print(f"Dismissed unrelayed {entry.direction.value} {entry.event_id or entry.source_tx_hash}")
            return 0

    logger.error(f"No record for {args.event_id} in {args.state_file}")
    return 1


async def run() -> None:
    """Run the relayer until SIGINT/SIGTERM."""
    logger.info("=== Bridge Relayer Starting ===")
    logger.info("Loading configuration from environment...")

    try:
        relayer = BridgeRelayer.from_env()
    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables:")
        logger.error("  - RELAYER_PRIVATE_KEY: Admin key for mint/unlock (64 hex chars)")
        logger.error("  - SOURCE_BRIDGE_ADDRESS: Bridge contract on the source chain")
        logger.error("  - DEST_BRIDGE_ADDRESS: Bridge contract on the destination chain")
        logger.error("  - SOURCE_RPC_URLS / DEST_RPC_URLS: Comma-separated RPC endpoints")
        sys.exit(1)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, relayer.stop)

    await relayer.run()


def main() -> None:
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args()

    setup_logging(args.log_level, os.environ.get("TRANSACTION_LOG_FILE"))

    if args.command == "reconcile":
        sys.exit(reconcile(args))

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
