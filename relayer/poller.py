"""
Chain Poller - gap-free scan of confirmed blocks for V1 transfers in.

The watermark is the last block fully handed to the processor. It only
moves forward, and only via advance() once a whole batch was processed.
It starts unset and is initialized by the first scan that reaches the chain.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from .chain import TransferEvent

logger = logging.getLogger("migration.poller")


@dataclass
class ScanBatch:
    from_block: int
    to_block: int
    events: list[TransferEvent] = field(default_factory=list)


class ChainPoller:
    """
    Watermark cursor over confirmed blocks.

    Usage:
        poller = ChainPoller(chain, confirmations=2, max_blocks_per_poll=2000, lookback_blocks=20)
        await poller.initialize()
        batch = await poller.scan()
        ...process batch.events...
        poller.advance(batch.to_block)
    """

    def __init__(self, chain, confirmations: int, max_blocks_per_poll: int, lookback_blocks: int):
        self._chain = chain
        self.confirmations = confirmations
        self.max_blocks_per_poll = max_blocks_per_poll
        self.lookback_blocks = lookback_blocks
        self.watermark: Optional[int] = None

    async def initialize(self) -> int:
        """Start from a short recent window; full history is never replayed."""
        current = await self._chain.get_block_number()
        self.watermark = max(0, current - self.lookback_blocks)
        return self.watermark

    async def scan(self) -> Optional[ScanBatch]:
        """
        Next confirmed range after the watermark, or None if nothing is final yet.
        Initializes the watermark first if nothing has done so yet.
        Events come back sorted by (block, log index) whatever order the RPC used.
        """
        if self.watermark is None:
            start_block = await self.initialize()
            logger.info(f"Scanning for V1 transfers after block {start_block}")

        current = await self._chain.get_block_number()
        safe_block = current - self.confirmations
        if safe_block <= self.watermark:
            return None

        from_block = self.watermark + 1
        to_block = min(safe_block, self.watermark + self.max_blocks_per_poll)

        events = await self._chain.get_transfers_to(from_block, to_block)
        events = sorted(events, key=lambda e: (e.block_number, e.log_index))

        if events:
            logger.info(f"Found {len(events)} V1 transfers to relayer in blocks {from_block}-{to_block}")
        else:
            logger.debug(f"No V1 transfers in blocks {from_block}-{to_block}")

        return ScanBatch(from_block=from_block, to_block=to_block, events=events)

    def reset(self) -> None:
        """Forget the watermark; the next scan starts from the lookback window."""
        self.watermark = None

    def advance(self, to_block: int) -> None:
        if self.watermark is None or to_block > self.watermark:
            self.watermark = to_block
