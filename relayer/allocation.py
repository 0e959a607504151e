"""
Allocation Oracle - read-only view of the migration contract.

allocation(sender) is the snapshot entitlement; claimed(sender) is what the
contract itself already paid out. Neither is ever written by the relayer.
"""

import asyncio
import logging
from dataclasses import dataclass

logger = logging.getLogger("migration.allocation")


@dataclass(frozen=True)
class AllocationSnapshot:
    allocation: int
    claimed: int

    @property
    def is_whitelisted(self) -> bool:
        return self.allocation > 0

    def remaining(self, already_relayed: int = 0) -> int:
        """Entitlement left after on-chain claims and our own relays. May be negative."""
        return self.allocation - self.claimed - already_relayed


class AllocationOracle:

    def __init__(self, chain):
        self._chain = chain

    async def read(self, sender: str) -> AllocationSnapshot:
        allocation, claimed = await asyncio.gather(
            self._chain.allocation(sender),
            self._chain.claimed(sender),
        )
        logger.debug(f"Allocation {sender[:10]}...: allocation={allocation} claimed={claimed}")
        return AllocationSnapshot(allocation=int(allocation), claimed=int(claimed))

    async def is_paused(self) -> bool:
        return await self._chain.paused()
