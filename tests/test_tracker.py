import asyncio

import pytest

import crud
from fakes import ALICE, BOB, ONE, TX_HASH, track_request
from ledger import LedgerError
from tracker import TrackerState, YieldTracker

DROPPED = 95 * 10 ** 16


def test_stop_and_close_before_start_are_safe(config, ledger, engine):
    tracker = YieldTracker(config, ledger=ledger, engine=engine)
    tracker.stop()
    tracker.close()
    tracker.close()
    assert tracker.is_running is False

def test_start_is_idempotent_and_stopped_tracker_cannot_restart(tracker, ledger):
    async def scenario():
        await tracker.start()
        await tracker.start()
        running = tracker.is_running
        tracker.stop()
        with pytest.raises(RuntimeError):
            await tracker.start()
        return running

    assert asyncio.run(scenario()) is True
    assert tracker.is_running is False
    # one subscription means the second start did nothing
    assert len(ledger.subscriptions) == 1

def test_track_payment_records_baseline_and_snapshot(tracker, ledger):
    ledger.credits[ALICE] = 100 * ONE
    ledger.block_number = 1_500

    payment = asyncio.run(tracker.track_payment(track_request(address=ALICE.upper().replace("0X", "0x"))))
    assert payment.address == ALICE
    assert payment.initial_amount == "100"
    assert payment.initial_credits == str(100 * ONE)
    assert payment.initial_credits_per_token == str(ONE)
    assert payment.tx_hash == TX_HASH
    assert payment.block_number == 1_500
    assert payment.is_rebasing is True

    history = asyncio.run(tracker.get_yield_history(ALICE))
    assert len(history.history) == 1
    assert history.history[0].balance == "100"
    assert history.total_yield_earned == "0"
    assert history.first_tracked == payment.timestamp

def test_track_payment_for_non_rebasing_account(tracker, ledger):
    ledger.non_rebasing.add(BOB)
    payment = asyncio.run(tracker.track_payment(track_request(address=BOB, amount="7.5")))
    assert payment.is_rebasing is False

def test_payment_ids_are_unique(tracker):
    async def scenario():
        first = await tracker.track_payment(track_request())
        second = await tracker.track_payment(track_request())
        return first, second

    first, second = asyncio.run(scenario())
    assert first.id != second.id
    assert [p.id for p in asyncio.run(tracker.get_payments(ALICE))] in ([first.id, second.id], [second.id, first.id])

def test_rebase_triggers_snapshot_sweep(tracker, ledger):
    ledger.credits[ALICE] = 100 * ONE
    ledger.credits[BOB] = 50 * ONE

    async def scenario():
        await tracker.start()
        await tracker.track_payment(track_request(address=ALICE))
        await tracker.track_payment(track_request(address=BOB, amount="50"))
        ledger.credits_per_token = DROPPED
        ledger.block_number = 1_010
        ledger.timestamp += 86400
        event = await tracker.rebase_monitor.poll_once()
        history = await tracker.get_yield_history(ALICE)
        tracker.stop()
        return event, history

    event, history = asyncio.run(scenario())
    assert event is not None
    assert [p.balance for p in history.history] == ["105.263157894736842105", "100"]
    assert history.history[0].cumulative_yield == "5.263157894736842105"
    assert history.total_yield_earned == "5.263157894736842105"
    assert history.last_tracked == history.history[0].timestamp

def test_snapshot_sweep_isolates_failing_address(tracker, ledger):
    async def scenario():
        await tracker.track_payment(track_request(address=ALICE))
        await tracker.track_payment(track_request(address=BOB))
        ledger.failing_addresses.add(ALICE)
        return await tracker.update_all_snapshots()

    assert asyncio.run(scenario()) == 1
    with tracker.session_factory() as db:
        assert len(crud.get_yield_history(db, BOB)) == 2
        assert len(crud.get_yield_history(db, ALICE)) == 1

def test_history_limit(tracker, ledger):
    async def scenario():
        await tracker.track_payment(track_request())
        for _ in range(4):
            ledger.timestamp += 60
            await tracker.update_all_snapshots()
        return await tracker.get_yield_history(ALICE, limit=3)

    history = asyncio.run(scenario())
    timestamps = [p.timestamp for p in history.history]
    assert len(timestamps) == 3
    assert timestamps == sorted(timestamps, reverse=True)
    assert timestamps[0] == ledger.timestamp

def test_history_for_unknown_address(tracker):
    history = asyncio.run(tracker.get_yield_history(BOB))
    assert history.history == []
    assert history.total_yield_earned == "0"
    assert history.first_tracked == 0

def test_payment_yield_for_missing_payment(tracker):
    assert asyncio.run(tracker.calculate_payment_yield("missing")) is None

def test_status(tracker):
    async def scenario():
        await tracker.track_payment(track_request())
        await tracker.start()
        status = await tracker.get_status()
        tracker.stop()
        return status

    status = asyncio.run(scenario())
    assert status.is_running is True
    assert status.state == TrackerState.RUNNING.value
    assert status.network == "mainnet"
    assert status.tracked_addresses == 1
    assert status.rebase_monitor.is_running is True

def test_rebase_sweep_registered_once_across_failed_start(tracker, ledger):
    async def scenario():
        ledger.fail = True
        with pytest.raises(LedgerError):
            await tracker.start()
        ledger.fail = False
        await tracker.track_payment(track_request())
        await tracker.start()
        ledger.credits_per_token = DROPPED
        ledger.timestamp += 60
        await tracker.rebase_monitor.poll_once()
        tracker.stop()

    asyncio.run(scenario())
    with tracker.session_factory() as db:
        # one snapshot from tracking, one from a single sweep
        assert len(crud.get_yield_history(db, ALICE)) == 2

def test_rebase_sweep_runs_even_when_monitor_started_directly(tracker, ledger):
    async def scenario():
        await tracker.track_payment(track_request())
        await tracker.rebase_monitor.start()
        ledger.credits_per_token = DROPPED
        ledger.timestamp += 60
        await tracker.rebase_monitor.poll_once()
        tracker.rebase_monitor.stop()

    asyncio.run(scenario())
    with tracker.session_factory() as db:
        assert len(crud.get_yield_history(db, ALICE)) == 2
