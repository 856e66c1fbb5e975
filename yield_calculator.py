# yield_calculator.py
"""
Yield and APY figures for tracked USDs payments.

USDs yield mechanics:
- Each holder owns a fixed number of credits.
- When yield is distributed, rebasingCreditsPerToken DECREASES,
  so balance = credits / creditsPerToken INCREASES.
- Rebases land roughly once a day.

Balances are handled as raw integers and rates as Decimal; floats never touch money.
"""
import asyncio
import logging
import time
from decimal import Decimal, localcontext
from typing import Iterable, List

import crud
import schemas
from database import run_in_session
from ledger import CreditsYield, format_units, parse_units, yield_from_credits_change

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400
SECONDS_PER_WEEK = 604800
SECONDS_PER_MONTH = 2592000 # 30 days

# High enough to return every event in a 30-day window
WINDOW_EVENT_LIMIT = 10_000

_PERCENT_PLACES = Decimal("0.0001")
_APY_PLACES = Decimal("0.01")
_ESTIMATE_PLACES = Decimal("0.000001")


def _percentage(part: int, whole: int) -> str:
    if whole <= 0:
        return "0"
    with localcontext() as ctx:
        ctx.prec = 80
        return str((Decimal(part) * 100 / Decimal(whole)).quantize(_PERCENT_PLACES))

def _compound(period_rate: Decimal, periods) -> Decimal:
    """Annualised percent from a per-period fractional rate."""
    with localcontext() as ctx:
        ctx.prec = 80
        return ((1 + period_rate) ** periods - 1) * 100

def format_apy(apy: Decimal) -> str:
    return f"{apy.quantize(_APY_PLACES)}%"


class YieldCalculator:
    def __init__(self, ledger, session_factory, fallback_apy: str = "8.5", periods_per_year: int = 365):
        self._ledger = ledger
        self._session_factory = session_factory
        self.fallback_apy = Decimal(fallback_apy)
        self.periods_per_year = periods_per_year

    @property
    def decimals(self) -> int:
        return self._ledger.decimals

    async def _store(self, fn, *args):
        return await run_in_session(self._session_factory, fn, *args)

    def payment_yield(self, payment: schemas.TrackedPayment, credits_per_token: int) -> CreditsYield:
        """Yield on one payment at a given denominator. Non-rebasing payments earn nothing."""
        if not payment.is_rebasing:
            return CreditsYield(0, 0, 0)
        return yield_from_credits_change(
            int(payment.initial_credits),
            int(payment.initial_credits_per_token),
            credits_per_token,
            self.decimals,
        )

    def total_yield(self, payments: Iterable[schemas.TrackedPayment], credits_per_token: int) -> int:
        return sum(self.payment_yield(p, credits_per_token).yield_amount for p in payments)

    async def get_yield_info(self, address: str) -> schemas.YieldInfo:
        balance, non_rebasing, credits_per_token = await asyncio.gather(
            self._ledger.get_balance(address),
            self._ledger.is_non_rebasing_account(address),
            self._ledger.get_credits_per_token(),
        )
        payments = await self._store(crud.get_payments_by_address, address)

        total_initial = 0
        total_yield = 0
        for payment in payments:
            if not payment.is_rebasing:
                continue
            total_initial += parse_units(payment.initial_amount, self.decimals)
            total_yield += self.payment_yield(payment, credits_per_token).yield_amount

        apy_info = await self.get_apy_info()

        return schemas.YieldInfo(
            address=address.lower(),
            current_balance=format_units(balance, self.decimals),
            total_initial_deposits=format_units(total_initial, self.decimals),
            total_yield_earned=format_units(total_yield, self.decimals),
            yield_percentage=_percentage(total_yield, total_initial),
            current_apy=apy_info.current_apy,
            payment_count=len(payments),
            is_rebasing=not non_rebasing,
            last_updated=int(time.time()),
        )

    async def get_apy_info(self) -> schemas.APYInfo:
        credits_per_token = await self._ledger.get_credits_per_token()
        now = int(time.time())
        weekly_events, monthly_events, latest, total = await asyncio.gather(
            self._store(crud.get_rebase_events, now - SECONDS_PER_WEEK, None, WINDOW_EVENT_LIMIT),
            self._store(crud.get_rebase_events, now - SECONDS_PER_MONTH, None, WINDOW_EVENT_LIMIT),
            self._store(crud.get_latest_rebase_event),
            self._store(crud.get_rebase_count),
        )

        weekly_apy = self.calculate_apy_from_events(weekly_events, 7)
        monthly_apy = self.calculate_apy_from_events(monthly_events, 30)

        return schemas.APYInfo(
            current_apy=format_apy(weekly_apy),
            weekly_average_apy=format_apy(weekly_apy),
            monthly_average_apy=format_apy(monthly_apy),
            current_credits_per_token=str(credits_per_token),
            last_rebase_timestamp=latest.timestamp if latest else 0,
            total_rebases_tracked=total,
        )

    def calculate_apy_from_events(self, events: List[schemas.RebaseEvent], window_days: int) -> Decimal:
        """
        Averages the window's rebases into a daily rate and compounds it to a year.
        With no events the configured fallback is returned; "0%" would read as no yield at all.
        """
        if not events:
            return self.fallback_apy

        with localcontext() as ctx:
            ctx.prec = 80
            total_percent = sum((Decimal(event.rebase_percentage) for event in events), Decimal(0))
            daily_rate = total_percent / 100 / window_days
        return max(Decimal(0), _compound(daily_rate, self.periods_per_year))

    async def calculate_yield_between(self, address: str, from_timestamp: int, to_timestamp: int) -> schemas.YieldBetween:
        events = await self._store(crud.get_rebase_events, from_timestamp, to_timestamp, WINDOW_EVENT_LIMIT)
        start_point = await self._store(crud.get_snapshot_at_or_before, address, from_timestamp)
        end_point = await self._store(crud.get_snapshot_at_or_before, address, to_timestamp)

        start_balance = start_point.balance if start_point else "0"
        if end_point is not None:
            end_balance = end_point.balance
        else:
            end_balance = format_units(await self._ledger.get_balance(address), self.decimals)

        earned = max(0, parse_units(end_balance, self.decimals) - parse_units(start_balance, self.decimals))

        return schemas.YieldBetween(
            address=address.lower(),
            from_timestamp=from_timestamp,
            to_timestamp=to_timestamp,
            yield_earned=format_units(earned, self.decimals),
            start_balance=start_balance,
            end_balance=end_balance,
            rebase_events=len(events),
        )

    async def estimate_future_yield(self, current_balance: str, days: int) -> schemas.YieldEstimate:
        apy_info = await self.get_apy_info()
        apy_percent = Decimal(apy_info.current_apy.rstrip("%"))

        with localcontext() as ctx:
            ctx.prec = 80
            # APY = (1 + dailyRate)^periods - 1  =>  dailyRate = (1 + APY)^(1/periods) - 1
            daily_rate = (1 + apy_percent / 100) ** (Decimal(1) / self.periods_per_year) - 1
            balance = Decimal(current_balance)
            future_balance = balance * (1 + daily_rate) ** days
            estimated_yield = future_balance - balance

        return schemas.YieldEstimate(
            estimated_yield=str(estimated_yield.quantize(_ESTIMATE_PLACES)),
            estimated_balance=str(future_balance.quantize(_ESTIMATE_PLACES)),
            estimated_apy=apy_info.current_apy,
        )

    async def calculate_payment_yield(self, payment: schemas.TrackedPayment) -> schemas.PaymentYield:
        credits_per_token = await self._ledger.get_credits_per_token()
        result = self.payment_yield(payment, credits_per_token)

        if payment.is_rebasing:
            current_value = format_units(result.current_balance, self.decimals)
        else:
            current_value = payment.initial_amount
        yield_percentage = _percentage(result.yield_amount, result.initial_balance)

        with localcontext() as ctx:
            ctx.prec = 80
            days_held = max(Decimal(1), Decimal(int(time.time()) - payment.timestamp) / SECONDS_PER_DAY)
            daily_rate = Decimal(yield_percentage) / 100 / days_held
        effective_apy = _compound(daily_rate, self.periods_per_year)

        return schemas.PaymentYield(
            payment_id=payment.id,
            original_amount=payment.initial_amount,
            current_value=current_value,
            yield_earned=format_units(result.yield_amount, self.decimals),
            yield_percentage=yield_percentage,
            days_held=int(days_held),
            effective_apy=format_apy(effective_apy),
        )

    async def record_yield_snapshot(self, address: str) -> schemas.YieldHistoryPoint:
        """Writes one history point for an address from live chain state."""
        balance, credits_per_token, block_number, timestamp = await asyncio.gather(
            self._ledger.get_balance(address),
            self._ledger.get_credits_per_token(),
            self._ledger.get_block_number(),
            self._ledger.get_block_timestamp(),
        )
        payments = await self._store(crud.get_payments_by_address, address)
        cumulative = self.total_yield(payments, credits_per_token)

        point = schemas.YieldHistoryPoint(
            address=address.lower(),
            timestamp=timestamp,
            balance=format_units(balance, self.decimals),
            credits_per_token=str(credits_per_token),
            cumulative_yield=format_units(cumulative, self.decimals),
            block_number=block_number,
        )
        logger.debug(f"SNAPSHOT: {point.address} balance={point.balance} yield={point.cumulative_yield}")
        return await self._store(crud.add_yield_snapshot, point)
