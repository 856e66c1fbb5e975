# tracker.py
"""
Core yield tracking service.

Ties the USDs ledger reader, the rebase monitor, the yield calculator and the
event store together and exposes the API the HTTP layer calls.
"""
import asyncio
import logging
import time
import uuid
from enum import Enum
from typing import List, Optional

from sqlalchemy.engine import Engine

import crud
import schemas
from config import TrackerConfig
from database import init_db, make_engine, make_session_factory, run_in_session
from ledger import UsdsLedger, format_units
from rebase_monitor import RebaseMonitor
from yield_calculator import YieldCalculator

logger = logging.getLogger(__name__)

class TrackerState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"


class YieldTracker:
    def __init__(self, config: Optional[TrackerConfig] = None, ledger=None, engine: Optional[Engine] = None):
        self.config = config or TrackerConfig()
        self.ledger = ledger or UsdsLedger(self.config.rpc_url, self.config.usds_address, self.config.token_decimals)
        self.engine = engine or make_engine(self.config.database_url)
        init_db(self.engine)
        self.session_factory = make_session_factory(self.engine)

        self.rebase_monitor = RebaseMonitor(
            self.ledger,
            self.session_factory,
            poll_interval=self.config.poll_interval,
            lookback_blocks=self.config.lookback_blocks,
            subscription_interval=self.config.subscription_interval,
            periods_per_year=self.config.periods_per_year,
        )
        self.rebase_monitor.on_rebase(self._on_rebase)
        self.yield_calculator = YieldCalculator(
            self.ledger,
            self.session_factory,
            fallback_apy=self.config.fallback_apy,
            periods_per_year=self.config.periods_per_year,
        )
        self._state = TrackerState.CREATED
        self._snapshot_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def is_running(self) -> bool:
        return self._state is TrackerState.RUNNING

    async def _store(self, fn, *args):
        return await run_in_session(self.session_factory, fn, *args)

    async def start(self) -> None:
        if self._state is TrackerState.RUNNING:
            logger.info("TRACKER: Already running.")
            return
        if self._state is TrackerState.STOPPED:
            raise RuntimeError("YieldTracker was stopped; create a new instance to run again")

        logger.info("TRACKER: Starting yield tracker...")
        await self.rebase_monitor.start()
        self._snapshot_task = asyncio.create_task(self._run_snapshots_periodically())
        self._state = TrackerState.RUNNING
        logger.info(f"TRACKER: Started. Snapshot sweep every {self.config.snapshot_interval} seconds.")

    def stop(self) -> None:
        """Safe to call in any state, including before start()."""
        if self._state is TrackerState.STOPPED:
            return
        logger.info("TRACKER: Stopping...")
        self._state = TrackerState.STOPPED
        self.rebase_monitor.stop()
        if self._snapshot_task is not None:
            self._snapshot_task.cancel()
            self._snapshot_task = None
        logger.info("TRACKER: Stopped.")

    def close(self) -> None:
        self.stop()
        if not self._closed:
            self.engine.dispose()
            self._closed = True

    async def _on_rebase(self, event: schemas.RebaseEvent) -> None:
        logger.info(f"TRACKER: Rebase detected: {event.rebase_percentage}% yield")
        await self.update_all_snapshots()

    async def _run_snapshots_periodically(self) -> None:
        while True:
            await asyncio.sleep(self.config.snapshot_interval)
            try:
                await self.update_all_snapshots()
            except Exception as e:
                logger.error(f"TRACKER: Snapshot sweep failed: {e}", exc_info=True)

    async def update_all_snapshots(self) -> int:
        """Snapshots every tracked address. Returns how many succeeded."""
        addresses = await self._store(crud.get_tracked_addresses)
        logger.info(f"TRACKER: Updating snapshots for {len(addresses)} addresses")
        updated = 0
        for address in addresses:
            try:
                await self.yield_calculator.record_yield_snapshot(address)
                updated += 1
            except Exception as e:
                logger.error(f"TRACKER: Failed to update snapshot for {address}: {e}", exc_info=True)
        logger.info(f"TRACKER: Snapshot sweep finished. {updated}/{len(addresses)} addresses updated.")
        return updated

    async def track_payment(self, request: schemas.TrackPaymentRequest) -> schemas.TrackedPayment:
        """
        Records the address's credit baseline for a received payment and takes a first snapshot.
        The request is expected to be validated already.
        """
        address = request.address.lower()
        logger.info(f"TRACKER: Tracking payment for {address}")

        credit_balance, credits_per_token, non_rebasing, block_number, timestamp = await asyncio.gather(
            self.ledger.get_credit_balance(address),
            self.ledger.get_credits_per_token(),
            self.ledger.is_non_rebasing_account(address),
            self.ledger.get_block_number(),
            self.ledger.get_block_timestamp(),
        )

        payment = schemas.TrackedPayment(
            id=str(uuid.uuid4()),
            address=address,
            initial_amount=request.amount,
            initial_credits=str(credit_balance.credits),
            initial_credits_per_token=str(credits_per_token),
            tx_hash=request.tx_hash,
            block_number=block_number,
            timestamp=timestamp,
            description=request.description,
            is_rebasing=not non_rebasing,
        )
        stored = await self._store(crud.create_payment, payment)
        await self.yield_calculator.record_yield_snapshot(address)

        logger.info(f"TRACKER: Payment tracked: {stored.id}")
        return stored

    async def get_yield_info(self, address: str) -> schemas.YieldInfo:
        return await self.yield_calculator.get_yield_info(address)

    async def get_yield_history(self, address: str, limit: int = 100) -> schemas.YieldHistory:
        history = await self._store(crud.get_yield_history, address, limit)
        payments = await self._store(crud.get_payments_by_address, address)
        total_yield = 0
        if payments:
            credits_per_token = await self.ledger.get_credits_per_token()
            total_yield = self.yield_calculator.total_yield(payments, credits_per_token)

        return schemas.YieldHistory(
            address=address.lower(),
            history=history,
            total_yield_earned=format_units(total_yield, self.ledger.decimals),
            first_tracked=min((p.timestamp for p in payments), default=0),
            last_tracked=history[0].timestamp if history else int(time.time()),
        )

    async def get_apy_info(self) -> schemas.APYInfo:
        return await self.yield_calculator.get_apy_info()

    async def get_latest_rebase(self) -> Optional[schemas.RebaseEvent]:
        return await self._store(crud.get_latest_rebase_event)

    async def get_rebase_events(
        self, from_timestamp: int, to_timestamp: Optional[int] = None, limit: int = 100
    ) -> List[schemas.RebaseEvent]:
        return await self._store(crud.get_rebase_events, from_timestamp, to_timestamp, limit)

    async def get_payments(self, address: str) -> List[schemas.TrackedPayment]:
        return await self._store(crud.get_payments_by_address, address)

    async def get_payment(self, payment_id: str) -> Optional[schemas.TrackedPayment]:
        return await self._store(crud.get_payment, payment_id)

    async def get_contract_state(self) -> schemas.ContractState:
        return await self.ledger.get_contract_state()

    async def estimate_future_yield(self, current_balance: str, days: int) -> schemas.YieldEstimate:
        return await self.yield_calculator.estimate_future_yield(current_balance, days)

    async def calculate_yield_between(self, address: str, from_timestamp: int, to_timestamp: int) -> schemas.YieldBetween:
        return await self.yield_calculator.calculate_yield_between(address, from_timestamp, to_timestamp)

    async def calculate_payment_yield(self, payment_id: str) -> Optional[schemas.PaymentYield]:
        payment = await self.get_payment(payment_id)
        if payment is None:
            return None
        return await self.yield_calculator.calculate_payment_yield(payment)

    async def get_status(self) -> schemas.TrackerStatus:
        addresses = await self._store(crud.get_tracked_addresses)
        return schemas.TrackerStatus(
            is_running=self.is_running,
            state=self._state.value,
            network=self.config.network,
            tracked_addresses=len(addresses),
            rebase_monitor=await self.rebase_monitor.get_status(),
        )
