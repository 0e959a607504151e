"""
Migration Relayer - lifecycle and status.

Watches for V1 token transfers to the relayer hot wallet.
If the sender has allocation left on the migrator: sends V2 back 1:1.
Otherwise: returns the V1.

One instance per hot wallet. Two live instances would share a nonce
sequence and double-spend allocations; nothing here prevents that.

Scheduling is self-pacing: poll, then sleep poll_interval, then poll again.
Polls never overlap, across stop/start cycles too: start() waits for a
previous loop to exit. stop() only prevents the next poll; a poll already
running (including a disbursement wait) is allowed to finish.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .allocation import AllocationOracle
from .config import DEFAULTS, RelayerConfig
from .errors import TransientPollError
from .executor import DisbursementExecutor
from .ledger import LedgerStore, RelayStatus
from .poller import ChainPoller
from .processor import EventProcessor

logger = logging.getLogger("migration.relayer")


class MigrationRelayer:
    """
    Usage:
        relayer = MigrationRelayer(chain, ledger)
        await relayer.start()
        ...
        relayer.stop()
        await relayer.wait_stopped()
    """

    def __init__(
        self,
        chain,
        ledger: LedgerStore,
        oracle=None,
        executor=None,
        *,
        poll_interval_seconds: float = DEFAULTS.POLL_INTERVAL_SECONDS,
        confirmations: int = DEFAULTS.CONFIRMATIONS,
        max_blocks_per_poll: int = DEFAULTS.MAX_BLOCKS_PER_POLL,
        lookback_blocks: int = DEFAULTS.LOOKBACK_BLOCKS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.relayer_address: str = chain.address
        self.ledger = ledger
        self.oracle = oracle or AllocationOracle(chain)
        self.executor = executor or DisbursementExecutor(chain)
        self.poller = ChainPoller(chain, confirmations, max_blocks_per_poll, lookback_blocks)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.processor = EventProcessor(self.oracle, ledger, self.executor, clock=self._clock)
        self.poll_interval_seconds = poll_interval_seconds

        # Runtime state (not persisted)
        self.is_running: bool = False
        self.relay_count: int = 0
        self.return_count: int = 0
        self.failed_count: int = 0
        self.unconfirmed_count: int = 0
        self.last_error: Optional[str] = None
        self.started_at: Optional[datetime] = None
        self.last_poll_at: Optional[datetime] = None

        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._poll_lock = asyncio.Lock()

    # ============================================================
    # LIFECYCLE
    # ============================================================

    async def start(self) -> None:
        """
        Schedule the poll loop and return. The first poll runs right away
        inside the loop; a chain that is unreachable at boot only sets
        last_error, and the watermark is initialized on the first poll that
        reaches it.
        """
        if self.is_running:
            return
        self.is_running = True

        # A loop stopped earlier may still be finishing its last poll
        previous, self._task = self._task, None
        if previous is not None:
            await previous
        if not self.is_running:
            return

        self.started_at = self._clock()
        self.relay_count = 0
        self.return_count = 0
        self.failed_count = 0
        self.unconfirmed_count = 0
        self.last_error = None
        self.poller.reset()
        stop_event = asyncio.Event()
        self._stop_event = stop_event

        logger.info(f"Migration relayer starting | relayer={self.relayer_address}")
        self._task = asyncio.create_task(self._poll_loop(stop_event))

    def stop(self) -> None:
        if not self.is_running:
            return
        self.is_running = False
        if self._stop_event is not None:
            self._stop_event.set()
        logger.info(
            f"Migration relayer stopped | relays={self.relay_count} | returns={self.return_count} | "
            f"failed={self.failed_count} | unconfirmed={self.unconfirmed_count}"
        )

    async def wait_stopped(self) -> None:
        """Wait for the loop (and any in-flight poll) to exit after stop()."""
        if self._task is not None:
            await self._task
            self._task = None

    async def _poll_loop(self, stop_event: asyncio.Event) -> None:
        # Poll immediately, then on a fixed delay after each poll
        while not stop_event.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

    # ============================================================
    # POLL
    # ============================================================

    async def poll_once(self) -> int:
        """
        One scan + process cycle. Returns the number of events handed to the
        processor. Never raises: a failed poll sets last_error and leaves the
        watermark where it was. Concurrent callers queue behind each other.
        """
        async with self._poll_lock:
            self.last_poll_at = self._clock()
            try:
                return await self._poll()
            except Exception as e:
                if not isinstance(e, TransientPollError):
                    e = TransientPollError(f"{type(e).__name__}: {e}")
                self.last_error = str(e)
                logger.error(f"Poll cycle failed: {self.last_error}")
                return 0

    async def _poll(self) -> int:
        batch = await self.poller.scan()
        if batch is None:
            return 0

        for event in batch.events:
            record = await self.processor.process(event)
            if record is None:
                continue
            if record.status is RelayStatus.SENT:
                self.relay_count += 1
            elif record.status is RelayStatus.RETURNED:
                self.return_count += 1
            elif record.status is RelayStatus.FAILED:
                self.failed_count += 1
                self.last_error = f"{record.tx_hash_in}: {record.error}"
            elif record.status is RelayStatus.PENDING:
                self.unconfirmed_count += 1
                self.last_error = f"{record.tx_hash_in}: unconfirmed {record.tx_hash_out}: {record.error}"

        # Per-event failures do not hold the watermark back
        self.poller.advance(batch.to_block)
        return len(batch.events)

    # ============================================================
    # STATUS
    # ============================================================

    def get_status(self) -> dict:
        return {
            "running": self.is_running,
            "relayer_address": self.relayer_address,
            "watermark": self.poller.watermark,
            "relay_count": self.relay_count,
            "return_count": self.return_count,
            "failed_count": self.failed_count,
            "unconfirmed_count": self.unconfirmed_count,
            "last_error": self.last_error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
        }


def build_relayer(config: RelayerConfig, ledger: Optional[LedgerStore] = None) -> MigrationRelayer:
    """Wire a relayer against the real chain and ledger described by `config`."""
    from .chain import ChainClient

    chain = ChainClient.from_config(config)
    if ledger is None:
        ledger = LedgerStore(config.database_url)
        ledger.init_schema()
    return MigrationRelayer(
        chain,
        ledger,
        poll_interval_seconds=config.poll_interval_seconds,
        confirmations=config.confirmations,
        max_blocks_per_poll=config.max_blocks_per_poll,
        lookback_blocks=config.lookback_blocks,
    )
