# ledger.py
"""
Read-only access to the Sperax USDs contract.

USDs is an auto-yield stablecoin. Holders own *credits*; the displayed balance is
credits / rebasingCreditsPerToken. A rebase lowers creditsPerToken, so every
rebasing balance grows without a transfer.
"""
import asyncio
import logging
from decimal import Decimal, localcontext
from typing import Awaitable, Callable, List, NamedTuple, Optional

import aiohttp
from web3 import AsyncWeb3, AsyncHTTPProvider
from web3.exceptions import ContractLogicError, Web3Exception

import schemas

logger = logging.getLogger(__name__)

# Wide enough for uint256 values at any decimal scale
_PRECISION = 100

USDS_ABI = [
    {"name": "balanceOf", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "account", "type": "address"}],
     "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "totalSupply", "type": "function", "stateMutability": "view",
     "inputs": [], "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "rebasingCreditsPerToken", "type": "function", "stateMutability": "view",
     "inputs": [], "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "rebasingCreditsPerTokenHighres", "type": "function", "stateMutability": "view",
     "inputs": [], "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "nonRebasingSupply", "type": "function", "stateMutability": "view",
     "inputs": [], "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "rebasingCredits", "type": "function", "stateMutability": "view",
     "inputs": [], "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "creditBalanceOf", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "account", "type": "address"}],
     "outputs": [{"name": "", "type": "uint256"}, {"name": "", "type": "uint256"}]},
    {"name": "isNonRebasingAccount", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "account", "type": "address"}],
     "outputs": [{"name": "", "type": "bool"}]},
    {"name": "TotalSupplyUpdatedHighres", "type": "event", "anonymous": False,
     "inputs": [
         {"name": "totalSupply", "type": "uint256", "indexed": False},
         {"name": "rebasingCredits", "type": "uint256", "indexed": False},
         {"name": "rebasingCreditsPerToken", "type": "uint256", "indexed": False},
     ]},
]


class LedgerError(Exception):
    """The chain could not be read (RPC down, timeout, malformed reply). Safe to retry."""


class CreditBalance(NamedTuple):
    credits: int
    credits_per_token: int
    balance: int


# Returned for accounts the contract has no credit balance for
NO_CREDIT_BALANCE = CreditBalance(0, 0, 0)


class RawRebaseLog(NamedTuple):
    block_number: int
    tx_hash: str
    total_supply: int
    rebasing_credits: int
    rebasing_credits_per_token: int


class CreditsYield(NamedTuple):
    initial_balance: int
    current_balance: int
    yield_amount: int


def format_units(value: int, decimals: int = 18) -> str:
    """Raw integer amount to a plain decimal string: 5263157894736842105 -> '5.263157894736842105'."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        text = format(Decimal(value).scaleb(-decimals).normalize(), "f")
    return text

def parse_units(amount: str, decimals: int = 18) -> int:
    """Decimal string to raw integer units, truncating digits beyond `decimals`."""
    with localcontext() as ctx:
        ctx.prec = _PRECISION
        return int(Decimal(amount).scaleb(decimals))

def yield_from_credits_change(
    credits: int, credits_per_token_baseline: int, credits_per_token_now: int, decimals: int = 18
) -> CreditsYield:
    """
    Yield on a fixed credit balance between two denominators.
    A lower denominator means a higher balance; the yield never goes below zero.
    """
    if credits_per_token_baseline <= 0 or credits_per_token_now <= 0:
        return CreditsYield(0, 0, 0)
    unit = 10 ** decimals
    initial_balance = credits * unit // credits_per_token_baseline
    current_balance = credits * unit // credits_per_token_now
    return CreditsYield(initial_balance, current_balance, max(0, current_balance - initial_balance))


class Subscription:
    """Handle for a running log watcher. cancel() stops it; in-flight reads finish on their own."""

    def __init__(self, task: asyncio.Task):
        self._task = task

    @property
    def active(self) -> bool:
        return not self._task.done()

    def cancel(self) -> None:
        self._task.cancel()


class UsdsLedger:
    """Async reader for the USDs contract over JSON-RPC."""

    def __init__(self, rpc_url: str, contract_address: str, decimals: int = 18):
        self.decimals = decimals
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self.address = AsyncWeb3.to_checksum_address(contract_address)
        self.contract = self.w3.eth.contract(address=self.address, abi=USDS_ABI)

    async def _call(self, what: str, awaitable: Awaitable, allow_revert: bool = False):
        """Runs one RPC read. Reverts surface as ContractLogicError only when allow_revert is set."""
        try:
            return await awaitable
        except ContractLogicError as e:
            if allow_revert:
                raise
            raise LedgerError(f"{what} reverted: {e}") from e
        except (Web3Exception, aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError) as e:
            raise LedgerError(f"{what} failed: {e}") from e

    async def get_block_number(self) -> int:
        return int(await self._call("eth_blockNumber", self.w3.eth.block_number))

    async def get_block_timestamp(self, block_number: Optional[int] = None) -> int:
        block = await self._call(
            "eth_getBlockByNumber",
            self.w3.eth.get_block(block_number if block_number is not None else "latest"),
        )
        return int(block["timestamp"])

    async def get_credits_per_token(self) -> int:
        return await self._call(
            "rebasingCreditsPerToken", self.contract.functions.rebasingCreditsPerToken().call()
        )

    async def get_credits_per_token_highres(self) -> int:
        try:
            return await self._call(
                "rebasingCreditsPerTokenHighres",
                self.contract.functions.rebasingCreditsPerTokenHighres().call(),
                allow_revert=True,
            )
        except ContractLogicError:
            return await self.get_credits_per_token()

    async def get_balance(self, address: str) -> int:
        account = AsyncWeb3.to_checksum_address(address)
        return await self._call("balanceOf", self.contract.functions.balanceOf(account).call())

    async def get_credit_balance(self, address: str) -> CreditBalance:
        account = AsyncWeb3.to_checksum_address(address)
        try:
            credits, credits_per_token = await self._call(
                "creditBalanceOf", self.contract.functions.creditBalanceOf(account).call(), allow_revert=True
            )
        except ContractLogicError:
            logger.info(f"No credit balance for {address}")
            return NO_CREDIT_BALANCE
        balance = credits * 10 ** self.decimals // credits_per_token if credits_per_token > 0 else 0
        return CreditBalance(credits, credits_per_token, balance)

    async def is_non_rebasing_account(self, address: str) -> bool:
        account = AsyncWeb3.to_checksum_address(address)
        return await self._call(
            "isNonRebasingAccount", self.contract.functions.isNonRebasingAccount(account).call()
        )

    async def get_contract_state(self) -> schemas.ContractState:
        fns = self.contract.functions
        total_supply, non_rebasing_supply, credits_per_token, rebasing_credits = await asyncio.gather(
            self._call("totalSupply", fns.totalSupply().call()),
            self._call("nonRebasingSupply", fns.nonRebasingSupply().call()),
            self._call("rebasingCreditsPerToken", fns.rebasingCreditsPerToken().call()),
            self._call("rebasingCredits", fns.rebasingCredits().call()),
        )
        return schemas.ContractState(
            total_supply=format_units(total_supply, self.decimals),
            non_rebasing_supply=format_units(non_rebasing_supply, self.decimals),
            rebasing_supply=format_units(total_supply - non_rebasing_supply, self.decimals),
            credits_per_token=str(credits_per_token),
            rebasing_credits=str(rebasing_credits),
        )

    async def get_past_rebase_events(self, from_block: int, to_block: int) -> List[RawRebaseLog]:
        logs = await self._call(
            "eth_getLogs",
            self.contract.events.TotalSupplyUpdatedHighres.get_logs(from_block=from_block, to_block=to_block),
        )
        return [
            RawRebaseLog(
                block_number=int(entry["blockNumber"]),
                tx_hash=AsyncWeb3.to_hex(entry["transactionHash"]),
                total_supply=entry["args"]["totalSupply"],
                rebasing_credits=entry["args"]["rebasingCredits"],
                rebasing_credits_per_token=entry["args"]["rebasingCreditsPerToken"],
            )
            for entry in logs
        ]

    async def subscribe_rebase_events(
        self, on_event: Callable[[RawRebaseLog], Awaitable[None]], interval: float = 15
    ) -> Subscription:
        """
        Watches for new TotalSupplyUpdatedHighres logs from the current head onwards.
        Plain HTTP RPC has no push channel, so this polls a log filter window.
        """
        start_block = await self.get_block_number() + 1
        task = asyncio.create_task(self._watch(on_event, interval, start_block))
        return Subscription(task)

    async def _watch(self, on_event, interval: float, next_block: int) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                head = await self.get_block_number()
                if head < next_block:
                    continue
                logs = await self.get_past_rebase_events(next_block, head)
            except LedgerError as e:
                logger.warning(f"WATCHER: Log poll failed, retrying next tick: {e}")
                continue
            next_block = head + 1
            for entry in logs:
                try:
                    # A cancelled subscription lets the handler already running finish
                    await asyncio.shield(on_event(entry))
                except Exception as e:
                    logger.error(f"WATCHER: Handler failed for block {entry.block_number}: {e}", exc_info=True)
