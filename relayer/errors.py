"""
Relayer error taxonomy.

ConfigurationError is fatal and raised at construction time.
TransientPollError aborts a whole poll; the watermark stays put and the
range is scanned again on the next tick.
DisbursementError is raised by the executor when an outbound transfer
fails; the processor turns it into a `failed` ledger row, or leaves the
row `pending` when the transfer was broadcast but never confirmed.
LedgerWriteError means the chain moved but the ledger could not be
settled. It is logged and swallowed.
"""


class RelayerError(Exception):
    """Base class for all relayer errors."""
    pass


class ConfigurationError(RelayerError):
    """Missing/invalid settings or signer/relayer address mismatch."""
    pass


class TransientPollError(RelayerError):
    """Whole-poll failure (RPC unreachable, ledger unavailable, timeout)."""
    pass


class DisbursementError(RelayerError):
    """
    Outbound transfer failed: RPC error, revert, gas.

    `unconfirmed` means the transfer was broadcast (tx_hash set) but its
    outcome is unknown; it may still land.
    """

    def __init__(self, message: str, tx_hash: str = "", unconfirmed: bool = False):
        super().__init__(message)
        self.tx_hash = tx_hash
        self.unconfirmed = unconfirmed


class LedgerWriteError(RelayerError):
    """Ledger row could not be persisted after an on-chain action."""
    pass
