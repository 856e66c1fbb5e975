import asyncio
from decimal import Decimal

import pytest

import crud
from fakes import ONE
from ledger import LedgerError, RawRebaseLog
from rebase_monitor import (
    LAST_CREDITS_PER_TOKEN_KEY,
    EventSource,
    MonitorState,
    RebaseMonitor,
    build_rebase_event,
)

DROPPED = 95 * 10 ** 16


def make_monitor(ledger, session_factory, **kwargs):
    kwargs.setdefault("poll_interval", 3600)
    kwargs.setdefault("lookback_blocks", 100)
    return RebaseMonitor(ledger, session_factory, **kwargs)

def stored_count(session_factory):
    with session_factory() as db:
        return crud.get_rebase_count(db)

def stored_event(session_factory, block_number):
    with session_factory() as db:
        return crud.get_rebase_event_by_block(db, block_number)


def test_build_rebase_event_percentages():
    event = build_rebase_event(EventSource.LIVE, 10, "0xabc", 1, ONE, DROPPED)
    assert event.rebase_percentage == "5.263158"
    expected_apy = ((1 + Decimal("0.05263157894736842105263157894736842")) ** 365 - 1) * 100
    assert abs(Decimal(event.estimated_apy) - expected_apy) < Decimal("0.01") * expected_apy / 100
    assert event.source == "live"

def test_build_rebase_event_without_decrease_is_zero():
    flat = build_rebase_event(EventSource.POLL, 10, "0xabc", 1, ONE, ONE)
    up = build_rebase_event(EventSource.POLL, 10, "0xabc", 1, DROPPED, ONE)
    assert (flat.rebase_percentage, flat.estimated_apy) == ("0", "0")
    assert (up.rebase_percentage, up.estimated_apy) == ("0", "0")

def test_periods_per_year_changes_annualisation():
    daily = build_rebase_event(EventSource.LIVE, 10, "0xabc", 1, 1_000_100, 1_000_000)
    weekly = build_rebase_event(EventSource.LIVE, 10, "0xabc", 1, 1_000_100, 1_000_000, periods_per_year=52)
    assert Decimal(daily.estimated_apy) > Decimal(weekly.estimated_apy)


def test_backfill_and_live_converge_on_one_row(ledger, session_factory):
    ledger.past_events = [
        RawRebaseLog(980, "0x01", 0, 0, ONE),
        RawRebaseLog(990, "0x02", 0, 0, DROPPED),
    ]
    ledger.credits_per_token = DROPPED
    monitor = make_monitor(ledger, session_factory)

    async def scenario():
        await monitor.start()
        await ledger.emit(RawRebaseLog(990, "0x02", 0, 0, DROPPED))
        monitor.stop()

    asyncio.run(scenario())
    assert stored_count(session_factory) == 2
    event = stored_event(session_factory, 990)
    assert event.source == "backfill"
    assert event.previous_credits_per_token == str(ONE)
    assert event.rebase_percentage == "5.263158"

def test_backfill_fetches_block_timestamps(ledger, session_factory):
    ledger.past_events = [RawRebaseLog(950, "0x01", 0, 0, ONE)]
    ledger.block_timestamps[950] = 1_234
    monitor = make_monitor(ledger, session_factory)

    async def scenario():
        await monitor.start()
        again = await monitor.backfill()
        monitor.stop()
        return again

    assert asyncio.run(scenario()) == 0
    assert stored_event(session_factory, 950).timestamp == 1_234

def test_backfill_transport_error_does_not_stop_start(ledger, session_factory):
    ledger.fail_logs = True
    monitor = make_monitor(ledger, session_factory)

    async def scenario():
        await monitor.start()
        state = monitor.state
        monitor.stop()
        return state

    assert asyncio.run(scenario()) is MonitorState.RUNNING
    assert stored_count(session_factory) == 0

def test_start_persists_baseline(ledger, session_factory):
    monitor = make_monitor(ledger, session_factory)

    async def scenario():
        await monitor.start()
        monitor.stop()

    asyncio.run(scenario())
    with session_factory() as db:
        assert crud.get_global_state(db, LAST_CREDITS_PER_TOKEN_KEY) == str(ONE)
    assert monitor.last_credits_per_token == ONE
    assert ledger.subscriptions[0].cancelled

def test_poll_detects_change_and_notifies(ledger, session_factory):
    monitor = make_monitor(ledger, session_factory)
    received = []
    monitor.on_rebase(received.append)

    async def scenario():
        await monitor.start()
        ledger.credits_per_token = DROPPED
        ledger.block_number = 1_010
        first = await monitor.poll_once()
        second = await monitor.poll_once()
        monitor.stop()
        return first, second

    first, second = asyncio.run(scenario())
    assert first.source == "poll"
    assert first.block_number == 1_010
    assert first.previous_credits_per_token == str(ONE)
    assert first.rebase_percentage == "5.263158"
    assert second is None
    assert received == [first]
    with session_factory() as db:
        assert crud.get_global_state(db, LAST_CREDITS_PER_TOKEN_KEY) == str(DROPPED)

def test_live_event_after_poll_is_not_recorded_twice(ledger, session_factory):
    monitor = make_monitor(ledger, session_factory)

    async def scenario():
        await monitor.start()
        ledger.credits_per_token = DROPPED
        ledger.block_number = 1_010
        await monitor.poll_once()
        await ledger.emit(RawRebaseLog(1_005, "0x05", 0, 0, DROPPED))
        monitor.stop()

    asyncio.run(scenario())
    assert stored_count(session_factory) == 1

def test_live_event_is_recorded_and_notifies_async_callbacks(ledger, session_factory):
    monitor = make_monitor(ledger, session_factory)
    received = []

    async def on_rebase(event):
        received.append(event.block_number)

    monitor.on_rebase(on_rebase)

    async def scenario():
        await monitor.start()
        ledger.block_timestamps[1_001] = 5_000
        await ledger.emit(RawRebaseLog(1_001, "0x0a", 0, 0, DROPPED))
        await ledger.emit(RawRebaseLog(1_001, "0x0a", 0, 0, DROPPED))
        monitor.stop()

    asyncio.run(scenario())
    event = stored_event(session_factory, 1_001)
    assert event.timestamp == 5_000
    assert event.previous_credits_per_token == str(ONE)
    assert received == [1_001]
    assert monitor.last_credits_per_token == DROPPED

def test_failing_callback_does_not_block_others(ledger, session_factory):
    monitor = make_monitor(ledger, session_factory)
    received = []

    def broken(event):
        raise RuntimeError("boom")

    monitor.on_rebase(broken)
    monitor.on_rebase(received.append)

    async def scenario():
        await monitor.start()
        ledger.credits_per_token = DROPPED
        event = await monitor.poll_once()
        monitor.stop()
        return event

    event = asyncio.run(scenario())
    assert received == [event]

def test_poll_surfaces_transport_error_to_caller(ledger, session_factory):
    monitor = make_monitor(ledger, session_factory)

    async def scenario():
        await monitor.start()
        ledger.fail = True
        try:
            with pytest.raises(LedgerError):
                await monitor.poll_once()
        finally:
            monitor.stop()

    asyncio.run(scenario())

def test_poll_loop_survives_errors_and_retries(ledger, session_factory):
    monitor = make_monitor(ledger, session_factory, poll_interval=0.01)

    async def scenario():
        await monitor.start()
        ledger.fail = True
        await asyncio.sleep(0.05)
        still_running = monitor.is_running
        ledger.fail = False
        ledger.credits_per_token = DROPPED
        await asyncio.sleep(0.2)
        monitor.stop()
        return still_running

    assert asyncio.run(scenario()) is True
    assert stored_count(session_factory) == 1

def test_results_after_stop_are_discarded(ledger, session_factory):
    monitor = make_monitor(ledger, session_factory)

    async def scenario():
        await monitor.start()
        monitor.stop()
        ledger.credits_per_token = DROPPED
        polled = await monitor.poll_once()
        await monitor._on_live_event(RawRebaseLog(1_001, "0x0a", 0, 0, DROPPED))
        return polled

    assert asyncio.run(scenario()) is None
    assert stored_count(session_factory) == 0
    assert monitor.state is MonitorState.STOPPED

def test_restart_records_change_missed_while_down(ledger, session_factory):
    with session_factory() as db:
        crud.set_global_state(db, LAST_CREDITS_PER_TOKEN_KEY, str(ONE))
    ledger.credits_per_token = DROPPED
    monitor = make_monitor(ledger, session_factory)

    async def scenario():
        await monitor.start()
        monitor.stop()

    asyncio.run(scenario())
    event = stored_event(session_factory, ledger.block_number)
    assert event.source == "restart"
    assert event.previous_credits_per_token == str(ONE)
    assert event.new_credits_per_token == str(DROPPED)

def test_restart_skips_change_already_backfilled(ledger, session_factory):
    with session_factory() as db:
        crud.set_global_state(db, LAST_CREDITS_PER_TOKEN_KEY, str(ONE))
    ledger.credits_per_token = DROPPED
    ledger.past_events = [RawRebaseLog(990, "0x02", 0, 0, DROPPED)]
    monitor = make_monitor(ledger, session_factory)

    async def scenario():
        await monitor.start()
        monitor.stop()

    asyncio.run(scenario())
    assert stored_count(session_factory) == 1

def test_status_reports_counts(ledger, session_factory):
    ledger.past_events = [RawRebaseLog(990, "0x02", 0, 0, ONE)]
    monitor = make_monitor(ledger, session_factory)

    async def scenario():
        await monitor.start()
        status = await monitor.get_status()
        monitor.stop()
        return status

    status = asyncio.run(scenario())
    assert status.is_running is True
    assert status.state == "running"
    assert status.total_rebases == 1
    assert status.last_rebase.block_number == 990
    assert status.last_credits_per_token == str(ONE)

def test_backfill_after_restart_skips_rebase_already_polled(ledger, session_factory):
    ledger.past_events = [RawRebaseLog(980, "0x01", 0, 0, ONE)]

    async def scenario():
        first = make_monitor(ledger, session_factory)
        await first.start()
        ledger.credits_per_token = DROPPED
        ledger.block_number = 1_010
        await first.poll_once()
        first.stop()

        # The real log for the polled rebase sits at an earlier block than the poll row.
        ledger.past_events.append(RawRebaseLog(1_005, "0x05", 0, 0, DROPPED))
        ledger.block_number = 1_020
        second = make_monitor(ledger, session_factory)
        await second.start()
        second.stop()

    asyncio.run(scenario())
    with session_factory() as db:
        events = crud.get_rebase_events(db, 0)
    ending_at_dropped = [e for e in events if e.new_credits_per_token == str(DROPPED)]
    assert [(e.block_number, e.source) for e in ending_at_dropped] == [(1_010, "poll")]
    assert stored_count(session_factory) == 2

def test_backfill_keeps_log_when_a_later_rebase_follows_the_poll(ledger, session_factory):
    twice_dropped = 90 * 10 ** 16
    ledger.credits_per_token = DROPPED
    monitor = make_monitor(ledger, session_factory)

    async def scenario():
        await monitor.start()
        ledger.credits_per_token = twice_dropped
        ledger.block_number = 1_010
        await monitor.poll_once()
        # A log for an unrelated, older denominator is not matched against the poll row.
        ledger.past_events = [RawRebaseLog(1_005, "0x05", 0, 0, DROPPED)]
        stored = await monitor.backfill()
        monitor.stop()
        return stored

    assert asyncio.run(scenario()) == 1
    assert stored_event(session_factory, 1_005).source == "backfill"

@pytest.mark.parametrize("poll_first", [True, False])
def test_concurrent_poll_and_live_event_store_one_rebase(ledger, session_factory, poll_first):
    monitor = make_monitor(ledger, session_factory)
    received = []
    monitor.on_rebase(received.append)

    async def scenario():
        await monitor.start()
        ledger.credits_per_token = DROPPED
        ledger.block_number = 1_010
        live = ledger.emit(RawRebaseLog(1_005, "0x05", 0, 0, DROPPED))
        if poll_first:
            await asyncio.gather(monitor.poll_once(), live)
        else:
            await asyncio.gather(live, monitor.poll_once())
        monitor.stop()

    asyncio.run(scenario())
    assert stored_count(session_factory) == 1
    assert len(received) == 1
    assert received[0].new_credits_per_token == str(DROPPED)
