"""
Disbursement Executor - exactly one outbound transfer per call.

No retry loop here: a failed disbursement is recorded as `failed` by the
processor and left for an operator. A transfer that was broadcast but not
confirmed is never treated as failed, since it may still land.
"""

import logging

from .chain import Asset
from .errors import DisbursementError

logger = logging.getLogger("migration.executor")


class DisbursementExecutor:
    """
    Sends V2 (or returns V1) from the relayer wallet, one transfer per call.

    Usage:
        executor = DisbursementExecutor(chain)
        tx_hash = await executor.disburse(Asset.V2, sender, amount)
    """

    def __init__(self, chain):
        self._chain = chain

    async def v2_balance(self) -> int:
        return await self._chain.token_balance(Asset.V2, self._chain.address)

    async def disburse(self, asset: Asset, recipient: str, amount: int) -> str:
        """
        Send `amount` of `asset` to `recipient`; returns the outbound tx hash.

        Raises DisbursementError on failure. The error carries the tx hash
        when one exists, and `unconfirmed=True` when the outcome is unknown.
        """
        if amount <= 0:
            raise DisbursementError(f"refusing to send non-positive amount {amount}")

        result = await self._chain.transfer(asset, recipient, amount)
        if not result.success:
            raise DisbursementError(
                result.error or "transfer failed",
                tx_hash=result.tx_hash,
                unconfirmed=result.outcome_unknown,
            )

        logger.info(
            f"Disbursed {amount} {asset.value.upper()} to {recipient[:10]}... tx:{result.tx_hash[:16]}..."
        )
        return result.tx_hash
