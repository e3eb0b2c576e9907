"""Named failure kinds raised by relayer components.

Components raise these; only the RelayEngine decides whether a failure is
retryable, needs an operator, or is benign.
"""


class RelayerError(Exception):
    """Base class for all relayer failures."""

    kind = "relayer_error"


class InputInvalidError(RelayerError):
    """Caller supplied something that can never be processed."""

    kind = "input_invalid"


class InvalidTransactionHash(InputInvalidError):
    kind = "invalid_transaction_hash"

    def __init__(self, value: object) -> None:
        super().__init__(f"Invalid transaction hash: {value!r}")
        self.value = value


class ChainSemanticError(RelayerError):
    """The chain does not (yet) show what the relay needs. Safe to retry later."""

    kind = "chain_semantic"


class ReceiptNotFound(ChainSemanticError):
    kind = "receipt_not_found"

    def __init__(self, chain: str, tx_hash: str) -> None:
        super().__init__(f"Transaction receipt not found on {chain}: {tx_hash}")
        self.chain = chain
        self.tx_hash = tx_hash


class TransactionReverted(ChainSemanticError):
    kind = "transaction_reverted"

    def __init__(self, chain: str, tx_hash: str, status: object) -> None:
        super().__init__(f"Transaction failed on {chain} (status={status}): {tx_hash}")
        self.chain = chain
        self.tx_hash = tx_hash
        self.status = status


class EventNotFound(ChainSemanticError):
    kind = "event_not_found"

    def __init__(self, chain: str, tx_hash: str, event_name: str) -> None:
        super().__init__(f"{event_name} event not found in transaction {tx_hash} on {chain}")
        self.chain = chain
        self.tx_hash = tx_hash
        self.event_name = event_name


class InvalidDestinationAddress(ChainSemanticError):
    kind = "invalid_destination_address"

    def __init__(self, value: str) -> None:
        super().__init__(f"Event destination address is not a valid EVM address: {value!r}")
        self.value = value


class SourceEventChanged(ChainSemanticError):
    """The receipt read after the confirmation wait no longer matches the one verified before."""

    kind = "source_event_changed"

    def __init__(self, chain: str, tx_hash: str, fields: list[str]) -> None:
        super().__init__(
            f"Event in {tx_hash} on {chain} changed while awaiting confirmations ({', '.join(fields)})"
        )
        self.chain = chain
        self.tx_hash = tx_hash
        self.fields = fields


class TransientRpcError(RelayerError):
    """RPC infrastructure failure (rate limit, timeout, network)."""

    kind = "transient_rpc"


class RpcUnavailableError(TransientRpcError):
    kind = "rpc_unavailable"

    def __init__(self, chain: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"RPC for {chain} unavailable after {attempts} attempts: {last_error}")
        self.chain = chain
        self.attempts = attempts
        self.last_error = last_error


class SubmissionError(RelayerError):
    """Destination-chain call failed. ``tx_hash`` is set once the transaction was broadcast."""

    kind = "submission_failed"

    def __init__(self, message: str, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class DestinationTransactionReverted(SubmissionError):
    kind = "destination_reverted"

    def __init__(self, chain: str, tx_hash: str, status: object) -> None:
        super().__init__(
            f"Destination transaction reverted on {chain} (status={status}): {tx_hash}", tx_hash
        )
        self.chain = chain
        self.status = status


class DestinationReceiptTimeout(SubmissionError):
    kind = "destination_receipt_timeout"

    def __init__(self, chain: str, tx_hash: str, timeout: float) -> None:
        super().__init__(f"No receipt on {chain} after {timeout}s for destination transaction {tx_hash}", tx_hash)
        self.chain = chain
        self.timeout = timeout


class DestinationReceiptError(SubmissionError):
    kind = "destination_receipt_failed"

    def __init__(self, chain: str, tx_hash: str, cause: BaseException) -> None:
        super().__init__(f"Waiting for destination transaction {tx_hash} on {chain} failed: {cause}", tx_hash)
        self.chain = chain
        self.cause = cause
