# rebase_monitor.py
"""
Watches USDs for rebases and records each one exactly once.

Two detectors feed the same table: a log subscription on TotalSupplyUpdatedHighres
and a fixed-interval poll of rebasingCreditsPerToken. Subscriptions over public RPC
drop logs now and then, so the poll catches what the subscription misses. Both
write through build_rebase_event() and the block_number unique key, so whichever
one reports a block second is a no-op.
"""
import asyncio
import inspect
import logging
from decimal import Decimal, localcontext
from enum import Enum
from typing import Any, Callable, List, Optional

import crud
import schemas
from database import run_in_session
from ledger import LedgerError, RawRebaseLog

logger = logging.getLogger(__name__)

LAST_CREDITS_PER_TOKEN_KEY = "lastCreditsPerToken"
POLL_TX_HASH = "polling-detected"
RESTART_TX_HASH = "restart-detected"

class MonitorState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"

class EventSource(str, Enum):
    LIVE = "live"
    BACKFILL = "backfill"
    POLL = "poll"
    RESTART = "restart"


def build_rebase_event(
    source: EventSource,
    block_number: int,
    tx_hash: str,
    timestamp: int,
    previous_credits_per_token: int,
    new_credits_per_token: int,
    periods_per_year: int = 365,
) -> schemas.RebaseEvent:
    """
    Normalises a detection from any channel into a RebaseEvent.

    rebase_percentage is how much rebasing balances grew, (prev - new) / new * 100.
    estimated_apy compounds that one-period rate over periods_per_year periods.
    Both stay "0" unless the denominator actually went down.
    """
    rebase_percentage = "0"
    estimated_apy = "0"
    if new_credits_per_token > 0 and previous_credits_per_token > new_credits_per_token:
        with localcontext() as ctx:
            ctx.prec = 80
            percentage = Decimal(previous_credits_per_token - new_credits_per_token) * 100 / Decimal(new_credits_per_token)
            apy = ((1 + percentage / 100) ** periods_per_year - 1) * 100
            rebase_percentage = str(percentage.quantize(Decimal("0.000001")))
            estimated_apy = str(apy.quantize(Decimal("0.01")))

    return schemas.RebaseEvent(
        block_number=block_number,
        tx_hash=tx_hash,
        timestamp=timestamp,
        previous_credits_per_token=str(previous_credits_per_token),
        new_credits_per_token=str(new_credits_per_token),
        rebase_percentage=rebase_percentage,
        estimated_apy=estimated_apy,
        source=source.value,
    )


class RebaseMonitor:
    def __init__(
        self,
        ledger,
        session_factory,
        poll_interval: float = 60,
        lookback_blocks: int = 50_000,
        subscription_interval: float = 15,
        periods_per_year: int = 365,
    ):
        self._ledger = ledger
        self._session_factory = session_factory
        self.poll_interval = poll_interval
        self.lookback_blocks = lookback_blocks
        self.subscription_interval = subscription_interval
        self.periods_per_year = periods_per_year

        self._state = MonitorState.STOPPED
        self._last_credits_per_token: Optional[int] = None
        self._subscription = None
        self._poll_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        # Detection handlers run one at a time so the last known denominator never goes stale
        self._detect_lock = asyncio.Lock()
        self._callbacks: List[Callable[[schemas.RebaseEvent], Any]] = []

    @property
    def state(self) -> MonitorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is MonitorState.RUNNING

    @property
    def last_credits_per_token(self) -> Optional[int]:
        return self._last_credits_per_token

    def _accepting(self) -> bool:
        return self._state is not MonitorState.STOPPED

    async def _store(self, fn, *args):
        return await run_in_session(self._session_factory, fn, *args)

    def on_rebase(self, callback: Callable[[schemas.RebaseEvent], Any]) -> None:
        """Registers a sync or async callable invoked with every newly stored rebase."""
        self._callbacks.append(callback)

    async def start(self) -> None:
        if self._state is not MonitorState.STOPPED:
            logger.info("MONITOR: Already running.")
            return

        logger.info("MONITOR: Starting rebase monitoring...")
        self._state = MonitorState.STARTING
        self._stop_event = asyncio.Event()
        try:
            live = await self._ledger.get_credits_per_token()
            persisted = await self._store(crud.get_global_state, LAST_CREDITS_PER_TOKEN_KEY)
            self._last_credits_per_token = live

            await self.backfill()
            await self._reconcile_restart(persisted, live)

            self._last_credits_per_token = live
            await self._store(crud.set_global_state, LAST_CREDITS_PER_TOKEN_KEY, str(live))
        except Exception:
            self._state = MonitorState.STOPPED
            raise

        try:
            self._subscription = await self._ledger.subscribe_rebase_events(
                self._on_live_event, self.subscription_interval
            )
        except LedgerError as e:
            logger.error(f"MONITOR: Failed to start event watcher, relying on polling: {e}")

        self._poll_task = asyncio.create_task(self._poll_loop())
        self._state = MonitorState.RUNNING
        logger.info(f"MONITOR: Monitoring started. Baseline creditsPerToken={live}, poll every {self.poll_interval}s.")

    def stop(self) -> None:
        """Stops both detectors. Reads already in flight finish, and their results are dropped."""
        if self._state is MonitorState.STOPPED:
            return
        logger.info("MONITOR: Stopping...")
        self._state = MonitorState.STOPPED
        self._stop_event.set()
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        self._poll_task = None
        logger.info("MONITOR: Stopped.")

    async def backfill(self) -> int:
        """
        Seeds the store with rebases from the look-back window.
        Returns how many new events were stored. Transport errors are logged, not raised.
        """
        try:
            current_block = await self._ledger.get_block_number()
            from_block = max(0, current_block - self.lookback_blocks)
            logger.info(f"MONITOR: Syncing events from block {from_block} to {current_block}")
            logs = await self._ledger.get_past_rebase_events(from_block, current_block)
            logger.info(f"MONITOR: Found {len(logs)} historical rebase events.")
            if not logs:
                return 0
            timestamps = await asyncio.gather(
                *(self._ledger.get_block_timestamp(log.block_number) for log in logs)
            )
        except LedgerError as e:
            logger.error(f"MONITOR: Error syncing historical events: {e}")
            return 0

        ordered = sorted(zip(logs, timestamps), key=lambda pair: pair[0].block_number)
        stored = 0
        async with self._detect_lock:
            if not self._accepting():
                return 0
            before = await self._store(crud.get_rebase_event_before, ordered[0][0].block_number)
            previous = int(before.new_credits_per_token) if before else None
            for log, timestamp in ordered:
                if await self._recorded_by_fallback(log):
                    logger.info(f"MONITOR: Rebase at block {log.block_number} already recorded by the fallback detector.")
                    previous = log.rebasing_credits_per_token
                    continue
                event = build_rebase_event(
                    EventSource.BACKFILL,
                    log.block_number,
                    log.tx_hash,
                    timestamp,
                    previous if previous is not None else log.rebasing_credits_per_token,
                    log.rebasing_credits_per_token,
                    self.periods_per_year,
                )
                if await self._store(crud.add_rebase_event, event):
                    stored += 1
                previous = log.rebasing_credits_per_token

        logger.info(f"MONITOR: Backfill stored {stored} new rebase events.")
        return stored

    async def _recorded_by_fallback(self, log: RawRebaseLog) -> bool:
        """
        True when the nearest stored event at or after the log's block is a poll or
        restart detection that already ended at the log's denominator.
        """
        following = await self._store(crud.get_rebase_event_at_or_after, log.block_number)
        return (
            following is not None
            and following.source in (EventSource.POLL.value, EventSource.RESTART.value)
            and int(following.new_credits_per_token) == log.rebasing_credits_per_token
        )

    async def _reconcile_restart(self, persisted: Optional[str], live: int) -> None:
        """Records a rebase that happened while the process was down and the backfill window missed."""
        if persisted is None or int(persisted) == live:
            return
        latest = await self._store(crud.get_latest_rebase_event)
        if latest is not None and int(latest.new_credits_per_token) == live:
            return
        block_number, timestamp = await asyncio.gather(
            self._ledger.get_block_number(), self._ledger.get_block_timestamp()
        )
        logger.warning(f"MONITOR: creditsPerToken moved from {persisted} to {live} while stopped.")
        event = build_rebase_event(
            EventSource.RESTART, block_number, RESTART_TX_HASH, timestamp, int(persisted), live, self.periods_per_year
        )
        await self._store(crud.add_rebase_event, event)

    async def _on_live_event(self, log: RawRebaseLog) -> None:
        if not self._accepting():
            return
        logger.info(f"MONITOR: New rebase event at block {log.block_number}")
        timestamp = await self._ledger.get_block_timestamp(log.block_number)

        event = None
        async with self._detect_lock:
            if not self._accepting():
                return
            new = log.rebasing_credits_per_token
            latest = await self._store(crud.get_latest_rebase_event)
            if (
                latest is not None
                and latest.source in (EventSource.POLL.value, EventSource.RESTART.value)
                and int(latest.new_credits_per_token) == new
                and latest.block_number >= log.block_number
            ):
                logger.info(f"MONITOR: Rebase at block {log.block_number} already recorded by the fallback detector.")
            else:
                if self._last_credits_per_token is not None and self._last_credits_per_token != new:
                    previous = self._last_credits_per_token
                else:
                    before = await self._store(crud.get_rebase_event_before, log.block_number)
                    previous = int(before.new_credits_per_token) if before else new
                candidate = build_rebase_event(
                    EventSource.LIVE, log.block_number, log.tx_hash, timestamp, previous, new, self.periods_per_year
                )
                if await self._store(crud.add_rebase_event, candidate):
                    event = candidate
                else:
                    logger.debug(f"MONITOR: Block {log.block_number} already stored.")
            await self._remember(new)

        if event is not None:
            await self._notify(event)

    async def poll_once(self) -> Optional[schemas.RebaseEvent]:
        """One run of the polling detector. Returns the stored event, if any."""
        current = await self._ledger.get_credits_per_token()
        if not self._accepting():
            return None

        event = None
        async with self._detect_lock:
            if not self._accepting():
                return None
            if self._last_credits_per_token is None or current == self._last_credits_per_token:
                return None
            logger.info("MONITOR: Detected credits per token change via polling.")
            block_number, timestamp = await asyncio.gather(
                self._ledger.get_block_number(), self._ledger.get_block_timestamp()
            )
            if not self._accepting():
                return None

            latest = await self._store(crud.get_latest_rebase_event)
            if latest is None or int(latest.new_credits_per_token) != current:
                candidate = build_rebase_event(
                    EventSource.POLL,
                    block_number,
                    POLL_TX_HASH,
                    timestamp,
                    self._last_credits_per_token,
                    current,
                    self.periods_per_year,
                )
                if await self._store(crud.add_rebase_event, candidate):
                    event = candidate
            await self._remember(current)

        if event is not None:
            await self._notify(event)
        return event

    async def _poll_loop(self) -> None:
        stop_event = self._stop_event
        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
                break
            except asyncio.TimeoutError:
                pass
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"MONITOR: Polling error: {e}", exc_info=True)

    async def _remember(self, credits_per_token: int) -> None:
        self._last_credits_per_token = credits_per_token
        await self._store(crud.set_global_state, LAST_CREDITS_PER_TOKEN_KEY, str(credits_per_token))

    async def _notify(self, event: schemas.RebaseEvent) -> None:
        logger.info(
            f"MONITOR: Rebase at block {event.block_number}: {event.rebase_percentage}% "
            f"(~{event.estimated_apy}% APY). Notifying {len(self._callbacks)} listeners."
        )
        for callback in list(self._callbacks):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"MONITOR: Callback error: {e}", exc_info=True)

    async def get_status(self) -> schemas.MonitorStatus:
        latest = await self._store(crud.get_latest_rebase_event)
        total = await self._store(crud.get_rebase_count)
        return schemas.MonitorStatus(
            is_running=self.is_running,
            state=self._state.value,
            last_credits_per_token=str(self._last_credits_per_token) if self._last_credits_per_token is not None else None,
            last_rebase=latest,
            total_rebases=total,
        )
