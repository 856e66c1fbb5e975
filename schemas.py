# schemas.py
from typing import List, Optional
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"
TX_HASH_PATTERN = r"^0x[a-fA-F0-9]{64}$"
AMOUNT_PATTERN = r"^\d+\.?\d*$"

class CamelModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True

class TrackPaymentRequest(CamelModel):
    address: str = Field(pattern=ADDRESS_PATTERN)
    tx_hash: str = Field(pattern=TX_HASH_PATTERN)
    amount: str = Field(pattern=AMOUNT_PATTERN)
    description: Optional[str] = None

class TrackedPayment(CamelModel):
    id: str
    address: str
    initial_amount: str
    initial_credits: str
    initial_credits_per_token: str
    tx_hash: str
    block_number: int
    timestamp: int
    description: Optional[str] = None
    is_rebasing: bool

class PaymentList(CamelModel):
    address: str
    payments: List[TrackedPayment]
    count: int

class RebaseEventBase(CamelModel):
    block_number: int
    tx_hash: str
    timestamp: int
    previous_credits_per_token: str
    new_credits_per_token: str

class RebaseEvent(RebaseEventBase):
    rebase_percentage: str
    estimated_apy: str = Field(alias="estimatedAPY")
    source: str = "live"

class RebaseHistory(CamelModel):
    events: List[RebaseEvent]
    count: int
    from_timestamp: int
    to_timestamp: int

class YieldHistoryPoint(CamelModel):
    address: str
    timestamp: int
    balance: str
    credits_per_token: str
    cumulative_yield: str
    block_number: int

class YieldHistory(CamelModel):
    address: str
    history: List[YieldHistoryPoint]
    total_yield_earned: str
    first_tracked: int
    last_tracked: int

class YieldInfo(CamelModel):
    address: str
    current_balance: str
    total_initial_deposits: str
    total_yield_earned: str
    yield_percentage: str
    current_apy: str = Field(alias="currentAPY")
    payment_count: int
    is_rebasing: bool
    last_updated: int

class APYInfo(CamelModel):
    current_apy: str = Field(alias="currentAPY")
    weekly_average_apy: str = Field(alias="weeklyAverageAPY")
    monthly_average_apy: str = Field(alias="monthlyAverageAPY")
    current_credits_per_token: str
    last_rebase_timestamp: int
    total_rebases_tracked: int

class YieldBetween(CamelModel):
    address: str
    from_timestamp: int
    to_timestamp: int
    yield_earned: str
    start_balance: str
    end_balance: str
    rebase_events: int

class YieldEstimate(CamelModel):
    estimated_yield: str
    estimated_balance: str
    estimated_apy: str = Field(alias="estimatedAPY")

class PaymentYield(CamelModel):
    payment_id: str
    original_amount: str
    current_value: str
    yield_earned: str
    yield_percentage: str
    days_held: int
    effective_apy: str = Field(alias="effectiveAPY")

class ContractState(CamelModel):
    total_supply: str
    non_rebasing_supply: str
    rebasing_supply: str
    credits_per_token: str
    rebasing_credits: str

class MonitorStatus(CamelModel):
    is_running: bool
    state: str
    last_credits_per_token: Optional[str] = None
    last_rebase: Optional[RebaseEvent] = None
    total_rebases: int

class TrackerStatus(CamelModel):
    is_running: bool
    state: str
    network: str
    tracked_addresses: int
    rebase_monitor: MonitorStatus
