"""
Event Processor - decision state machine for one inbound V1 transfer.

    dedup → allocation read → remaining → decide → claim → disburse → settle

Decisions:
- allocation == 0                      → return V1 (not_whitelisted)
- amount > allocation - claimed - relayed → return V1 (over_allocation)
- relayer V2 balance < amount          → return V1 (insufficient_v2)
- otherwise                            → send V2, 1:1

"relayed" always comes from the ledger, never from memory, so restarts and
earlier events in the same batch are accounted for. Events must be fed in
block order, one at a time.

A `pending` row is written before any transfer is submitted. If the process
dies mid-disbursement, that row blocks reprocessing and still counts
against the sender's allocation until an operator settles it. The same
holds for a transfer that was broadcast but never confirmed: its row stays
`pending` with the outbound hash attached.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .chain import Asset, TransferEvent
from .errors import DisbursementError, LedgerWriteError
from .ledger import RelayReason, RelayRecord, RelayStatus

logger = logging.getLogger("migration.processor")


def evaluate_allocation(
    amount: int,
    allocation: int,
    claimed: int,
    already_relayed: int,
) -> Optional[RelayReason]:
    """Return the refund reason, or None if the amount fits the allocation."""
    if allocation == 0:
        return RelayReason.NOT_WHITELISTED
    remaining = allocation - claimed - already_relayed
    if amount > remaining:
        return RelayReason.OVER_ALLOCATION
    return None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventProcessor:
    """
    Turns one inbound V1 transfer into one ledger row and at most one
    outbound transfer.

    Usage:
        processor = EventProcessor(oracle, ledger, executor)
        record = await processor.process(event)   # None if already handled
    """

    def __init__(self, oracle, ledger, executor, clock: Optional[Callable[[], datetime]] = None):
        self._oracle = oracle
        self._ledger = ledger
        self._executor = executor
        self._clock = clock or _utcnow

    async def process(self, event: TransferEvent) -> Optional[RelayRecord]:
        """
        Handle one transfer end to end. Returns the resulting record, or None
        if it was already processed.

        Ledger read/claim failures propagate (nothing has moved on-chain yet);
        the caller treats them as a failed poll.
        """
        sender = event.sender
        amount = event.amount

        # 1. Dedup
        if await self._ledger.exists(event.tx_hash):
            logger.debug(f"Transfer already processed, skipping: {event.tx_hash}")
            return None

        logger.info(
            f"Processing V1 transfer: {amount} from {sender} | "
            f"tx:{event.tx_hash} | block {event.block_number}"
        )

        # 2. Allocation read
        try:
            snapshot = await self._oracle.read(sender)
        except Exception as e:
            logger.error(f"Failed to read migrator state for {sender}: {e}")
            return await self._record_failure(event, f"allocation read failed: {type(e).__name__}: {e}")

        # 3. Remaining
        already_relayed = await self._ledger.sum_sent_amount(sender)

        # 4. Decide
        reason = evaluate_allocation(amount, snapshot.allocation, snapshot.claimed, already_relayed)

        if reason is RelayReason.NOT_WHITELISTED:
            logger.info(f"Sender {sender} not whitelisted, returning V1")
        elif reason is RelayReason.OVER_ALLOCATION:
            logger.info(
                f"Amount {amount} exceeds remaining allocation "
                f"{snapshot.remaining(already_relayed)} for {sender}, returning V1"
            )
        else:
            try:
                v2_balance = await self._executor.v2_balance()
            except Exception as e:
                logger.error(f"Failed to read relayer V2 balance: {e}")
                return await self._record_failure(event, f"V2 balance read failed: {type(e).__name__}: {e}")
            if v2_balance < amount:
                logger.error(
                    f"Insufficient V2 balance to relay: needed {amount}, available {v2_balance}; returning V1"
                )
                reason = RelayReason.INSUFFICIENT_V2

        # 5. Disburse
        asset = Asset.V2 if reason is None else Asset.V1
        return await self._disburse(event, asset, reason)

    async def _disburse(
        self,
        event: TransferEvent,
        asset: Asset,
        reason: Optional[RelayReason],
    ) -> Optional[RelayRecord]:
        record = RelayRecord(
            tx_hash_in=event.tx_hash,
            sender_address=event.sender,
            v1_amount=event.amount,
            block_number=event.block_number,
            status=RelayStatus.PENDING,
            v2_amount_sent=event.amount if asset is Asset.V2 else None,
            asset_out=asset.value,
            reason=reason.value if reason else None,
        )

        # Claim before touching the chain
        if not await self._ledger.insert_if_absent(record):
            logger.warning(f"Transfer {event.tx_hash} claimed concurrently, skipping")
            return None

        try:
            tx_hash_out = await self._executor.disburse(asset, event.sender, event.amount)
        except DisbursementError as e:
            if e.unconfirmed:
                return await self._leave_unconfirmed(record, asset, e)
            self._fail(record, asset, e)
        except Exception as e:
            self._fail(record, asset, e)
        else:
            record.status = RelayStatus.SENT if asset is Asset.V2 else RelayStatus.RETURNED
            record.tx_hash_out = tx_hash_out
            if asset is Asset.V2:
                logger.info(f"V2 tokens sent to {event.sender}: {event.amount} tx:{tx_hash_out}")
            else:
                logger.info(
                    f"V1 tokens returned to {event.sender}: {event.amount} "
                    f"tx:{tx_hash_out} ({record.reason})"
                )

        record.processed_at = self._clock()
        await self._settle(record)
        return record

    def _fail(self, record: RelayRecord, asset: Asset, exc: Exception) -> None:
        """Nothing left the wallet: the row goes `failed` and frees its allocation."""
        msg = str(exc) or type(exc).__name__
        logger.error(
            f"Failed to {'send V2' if asset is Asset.V2 else 'return V1'} "
            f"to {record.sender_address} ({record.v1_amount}): {msg}"
        )
        record.status = RelayStatus.FAILED
        record.v2_amount_sent = None
        record.tx_hash_out = getattr(exc, "tx_hash", "") or None
        record.error = msg

    async def _leave_unconfirmed(
        self,
        record: RelayRecord,
        asset: Asset,
        exc: DisbursementError,
    ) -> RelayRecord:
        """
        Broadcast but not confirmed. The row stays `pending`, so its V2 keeps
        counting against the sender's allocation until an operator settles it.
        """
        msg = str(exc) or type(exc).__name__
        logger.error(
            f"Unconfirmed {'V2 send' if asset is Asset.V2 else 'V1 return'} "
            f"to {record.sender_address} ({record.v1_amount}) tx:{exc.tx_hash}; "
            f"row left pending: {msg}"
        )
        record.tx_hash_out = exc.tx_hash
        record.error = msg
        try:
            await self._ledger.mark_unconfirmed(
                record.tx_hash_in, tx_hash_out=exc.tx_hash, error=msg,
            )
        except LedgerWriteError as e:
            logger.error(f"Failed to record outbound hash for pending relay {record.tx_hash_in}: {e}")
        return record

    async def _settle(self, record: RelayRecord) -> None:
        """The chain is authoritative; a settle failure is logged, never raised."""
        try:
            settled = await self._ledger.settle(
                record.tx_hash_in,
                record.status,
                v2_amount_sent=record.v2_amount_sent,
                tx_hash_out=record.tx_hash_out,
                error=record.error,
                processed_at=record.processed_at,
            )
        except LedgerWriteError as e:
            logger.error(
                f"Failed to record relay in DB (row left pending): {record.tx_hash_in} "
                f"-> {record.status.value} out:{record.tx_hash_out}: {e}"
            )
            return
        if not settled:
            logger.error(f"Relay row {record.tx_hash_in} was not pending; settle ignored")

    async def _record_failure(self, event: TransferEvent, error: str) -> Optional[RelayRecord]:
        """Terminal `failed` row for a transfer that never reached disbursement."""
        record = RelayRecord(
            tx_hash_in=event.tx_hash,
            sender_address=event.sender,
            v1_amount=event.amount,
            block_number=event.block_number,
            status=RelayStatus.FAILED,
            error=error,
            processed_at=self._clock(),
        )
        if not await self._ledger.insert_if_absent(record):
            return None
        return record
