"""
Shared fixtures: an in-process fake chain and a real SQLite ledger.

The fake chain implements the coroutine surface of relayer.chain.ChainClient
that the poller, oracle and executor use.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest

from relayer.chain import Asset, ChainTxResult, TransferEvent
from relayer.ledger import LedgerStore

RELAYER = "0x" + "ee" * 20
ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
CAROL = "0x" + "c3" * 20


def tx_in(n: int) -> str:
    return f"0x{n:064x}"


def make_event(n: int, block: int, sender: str, amount: int, log_index: int = 0) -> TransferEvent:
    return TransferEvent(
        tx_hash=tx_in(n),
        log_index=log_index,
        block_number=block,
        sender=sender,
        recipient=RELAYER,
        amount=amount,
    )


class FakeChain:
    def __init__(self, address: str = RELAYER):
        self.address = address
        self.block_number = 1000
        self.events: list[TransferEvent] = []
        self.allocations: dict[str, int] = {}
        self.claimed_amounts: dict[str, int] = {}
        self.balances = {Asset.V1: 10**24, Asset.V2: 10**24}
        self.is_paused = False
        self.transfers: list[tuple[Asset, str, int]] = []
        self.log_queries: list[tuple[int, int]] = []

        self.fail_block_number = False
        self.fail_get_logs = False
        self.fail_reads = False
        self.fail_transfers = False
        self.unconfirmed_transfers = False
        self.revert_transfers = False
        # When set, get_transfers_to blocks until the event is released
        self.logs_gate: Optional[asyncio.Event] = None
        self.active_scans = 0
        self.peak_scans = 0

    async def get_block_number(self) -> int:
        if self.fail_block_number:
            raise ConnectionError("rpc unreachable")
        return self.block_number

    async def get_transfers_to(self, from_block: int, to_block: int) -> list[TransferEvent]:
        if self.fail_get_logs:
            raise ConnectionError("eth_getLogs failed")
        self.active_scans += 1
        self.peak_scans = max(self.peak_scans, self.active_scans)
        try:
            if self.logs_gate is not None:
                await self.logs_gate.wait()
        finally:
            self.active_scans -= 1
        self.log_queries.append((from_block, to_block))
        return [e for e in self.events if from_block <= e.block_number <= to_block]

    async def allocation(self, account: str) -> int:
        if self.fail_reads:
            raise ConnectionError("eth_call failed")
        return self.allocations.get(account.lower(), 0)

    async def claimed(self, account: str) -> int:
        if self.fail_reads:
            raise ConnectionError("eth_call failed")
        return self.claimed_amounts.get(account.lower(), 0)

    async def paused(self) -> bool:
        return self.is_paused

    async def token_balance(self, asset: Asset, account: str) -> int:
        return self.balances[asset]

    async def transfer(self, asset: Asset, to: str, amount: int) -> ChainTxResult:
        if self.fail_transfers:
            return ChainTxResult(success=False, error="execution reverted")
        self.transfers.append((asset, to, amount))
        tx_hash = f"0xf{len(self.transfers):063x}"
        if self.revert_transfers:
            return ChainTxResult(success=False, tx_hash=tx_hash, error=f"TX reverted: {tx_hash}", reverted=True)
        if self.unconfirmed_transfers:
            # Broadcast, receipt never arrived
            return ChainTxResult(success=False, tx_hash=tx_hash, error="TimeoutError: receipt not found")
        self.balances[asset] -= amount
        return ChainTxResult(success=True, tx_hash=tx_hash)


class FixedClock:
    def __init__(self, start: datetime = datetime(2026, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def ledger(tmp_path: Path):
    store = LedgerStore(f"sqlite:///{tmp_path / 'ledger.db'}")
    store.init_schema()
    yield store
    store.dispose()
