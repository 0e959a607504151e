import asyncio

from relayer.chain import Asset
from relayer.ledger import RelayStatus
from relayer.relayer import MigrationRelayer

from conftest import ALICE, BOB, CAROL, make_event, tx_in


def _relayer(chain, ledger, clock=None, interval=0.01):
    return MigrationRelayer(
        chain,
        ledger,
        poll_interval_seconds=interval,
        confirmations=2,
        max_blocks_per_poll=100,
        lookback_blocks=20,
        clock=clock,
    )


async def test_poll_processes_events_in_block_order(chain, ledger):
    relayer = _relayer(chain, ledger)
    relayer.poller.watermark = 100
    chain.block_number = 105
    chain.allocations[ALICE] = 1000
    # Discovery order 101, 103, 102 from a single get_logs call
    chain.events = [
        make_event(1, 101, ALICE, 1),
        make_event(3, 103, ALICE, 3),
        make_event(2, 102, ALICE, 2),
    ]

    assert await relayer.poll_once() == 3
    assert [amount for _, _, amount in chain.transfers] == [1, 2, 3]


async def test_same_batch_relays_share_one_allocation(chain, ledger):
    relayer = _relayer(chain, ledger)
    relayer.poller.watermark = 100
    chain.block_number = 105
    chain.allocations[ALICE] = 500
    chain.events = [
        make_event(2, 102, ALICE, 300),
        make_event(1, 101, ALICE, 300),
    ]

    await relayer.poll_once()

    assert (await ledger.get(tx_in(1))).status is RelayStatus.SENT
    second = await ledger.get(tx_in(2))
    assert second.status is RelayStatus.RETURNED
    assert second.reason == "over_allocation"
    assert relayer.relay_count == 1
    assert relayer.return_count == 1


async def test_watermark_advances_past_failed_events(chain, ledger):
    relayer = _relayer(chain, ledger)
    relayer.poller.watermark = 100
    chain.block_number = 112  # safe block 110
    chain.allocations[ALICE] = 1000
    chain.fail_transfers = True
    chain.events = [make_event(1, 101, ALICE, 10), make_event(2, 107, BOB, 10)]

    await relayer.poll_once()

    assert relayer.poller.watermark == 110
    assert relayer.failed_count == 2
    assert (await ledger.count_by_status())["failed"] == 2
    assert relayer.last_error is not None


async def test_rpc_failure_leaves_watermark_in_place(chain, ledger):
    relayer = _relayer(chain, ledger)
    relayer.poller.watermark = 100
    chain.block_number = 105
    chain.fail_get_logs = True

    assert await relayer.poll_once() == 0
    assert relayer.poller.watermark == 100
    assert "eth_getLogs failed" in relayer.last_error

    # Next tick retries the same range
    chain.fail_get_logs = False
    await relayer.poll_once()
    assert chain.log_queries == [(101, 103)]
    assert relayer.poller.watermark == 103


async def test_ledger_outage_aborts_poll_before_any_transfer(chain, ledger, monkeypatch):
    relayer = _relayer(chain, ledger)
    relayer.poller.watermark = 100
    chain.block_number = 105
    chain.allocations[ALICE] = 1000
    chain.events = [make_event(1, 101, ALICE, 10)]

    async def broken_exists(tx_hash_in):
        raise ConnectionError("database unavailable")

    monkeypatch.setattr(ledger, "exists", broken_exists)

    await relayer.poll_once()

    assert chain.transfers == []
    assert relayer.poller.watermark == 100
    assert "database unavailable" in relayer.last_error


async def test_restart_does_not_double_spend(chain, ledger):
    chain.allocations[ALICE] = 1000
    chain.events = [make_event(1, 101, ALICE, 600)]
    chain.block_number = 105

    first = _relayer(chain, ledger)
    first.poller.watermark = 100
    await first.poll_once()
    assert chain.transfers == [(Asset.V2, ALICE, 600)]

    # Fresh process, overlapping window, plus a new transfer
    chain.events.append(make_event(2, 104, ALICE, 500))
    chain.block_number = 106
    second = _relayer(chain, ledger)
    second.poller.watermark = 100
    await second.poll_once()

    assert chain.transfers == [(Asset.V2, ALICE, 600), (Asset.V1, ALICE, 500)]
    assert (await ledger.get(tx_in(2))).reason == "over_allocation"
    assert await ledger.sum_sent_amount(ALICE) == 600


async def _until(condition, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


async def test_start_polls_immediately_and_stop_ends_loop(chain, ledger, clock):
    chain.block_number = 1000
    chain.allocations[CAROL] = 50
    chain.events = [make_event(1, 990, CAROL, 50)]
    relayer = _relayer(chain, ledger, clock=clock)

    await relayer.start()
    await _until(lambda: relayer.relay_count == 1)

    status = relayer.get_status()
    assert status["running"] is True
    assert status["watermark"] == 998
    assert status["started_at"] == "2026-01-01T00:00:01+00:00"

    # Let the loop tick a few times; the same range is never re-processed
    await asyncio.sleep(0.05)
    assert len(chain.transfers) == 1

    relayer.stop()
    await asyncio.wait_for(relayer.wait_stopped(), timeout=1)
    assert relayer.get_status()["running"] is False


async def test_loop_picks_up_new_blocks(chain, ledger):
    chain.block_number = 1000
    chain.allocations[ALICE] = 1000
    relayer = _relayer(chain, ledger)
    await relayer.start()
    await _until(lambda: relayer.poller.watermark == 998)

    chain.events.append(make_event(7, 1001, ALICE, 25))
    chain.block_number = 1003
    await _until(lambda: bool(chain.transfers))

    relayer.stop()
    await relayer.wait_stopped()
    assert chain.transfers == [(Asset.V2, ALICE, 25)]
    assert relayer.poller.watermark == 1001


async def test_unreachable_chain_at_start_is_retried(chain, ledger):
    chain.fail_block_number = True
    relayer = _relayer(chain, ledger)

    await asyncio.wait_for(relayer.start(), timeout=1)
    await _until(lambda: relayer.last_error is not None)

    assert relayer.is_running is True
    assert "rpc unreachable" in relayer.last_error
    assert relayer.poller.watermark is None

    chain.fail_block_number = False
    await _until(lambda: relayer.poller.watermark == 998)

    # Already running: a second start is a no-op
    task = relayer._task
    await relayer.start()
    assert relayer._task is task

    relayer.stop()
    await relayer.wait_stopped()


async def test_restart_during_in_flight_poll_keeps_one_loop(chain, ledger):
    chain.block_number = 1000
    chain.logs_gate = asyncio.Event()
    relayer = _relayer(chain, ledger)

    await relayer.start()
    await _until(lambda: chain.active_scans == 1)
    first_loop = relayer._task

    # Stop and start again while the first poll is still blocked
    relayer.stop()
    restart = asyncio.create_task(relayer.start())
    await asyncio.sleep(0.02)
    assert chain.active_scans == 1
    assert not restart.done()

    chain.logs_gate.set()
    await asyncio.wait_for(restart, timeout=1)
    assert first_loop.done()
    assert relayer._task is not first_loop

    await _until(lambda: len(chain.log_queries) >= 2)
    await asyncio.sleep(0.05)

    relayer.stop()
    await asyncio.wait_for(relayer.wait_stopped(), timeout=1)
    assert chain.peak_scans == 1
    assert relayer._task is None


async def test_unconfirmed_send_is_counted_and_reported(chain, ledger):
    relayer = _relayer(chain, ledger)
    relayer.poller.watermark = 100
    chain.block_number = 105
    chain.allocations[ALICE] = 1000
    chain.unconfirmed_transfers = True
    chain.events = [make_event(1, 101, ALICE, 400)]

    await relayer.poll_once()

    assert relayer.unconfirmed_count == 1
    assert relayer.failed_count == 0
    assert "unconfirmed" in relayer.last_error
    assert relayer.get_status()["unconfirmed_count"] == 1
    assert relayer.poller.watermark == 103
    assert (await ledger.get(tx_in(1))).status is RelayStatus.PENDING


async def test_get_status_is_a_pure_read(chain, ledger):
    relayer = _relayer(chain, ledger)
    before = relayer.get_status()
    relayer.get_status()

    assert before == relayer.get_status()
    assert set(before) >= {
        "running", "watermark", "relay_count", "return_count", "last_error", "started_at",
    }
    assert chain.log_queries == []


async def test_start_does_not_wait_for_first_poll(chain, ledger):
    chain.logs_gate = asyncio.Event()
    relayer = _relayer(chain, ledger)

    await asyncio.wait_for(relayer.start(), timeout=1)
    await _until(lambda: chain.active_scans == 1)
    assert relayer.get_status()["running"] is True

    chain.logs_gate.set()
    relayer.stop()
    await asyncio.wait_for(relayer.wait_stopped(), timeout=1)
