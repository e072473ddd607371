from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .abi import AbiRegistry
from .config import Settings
from .errors import LazyLottoError, UsageError
from .execution import CallRequest, ExecutionOptions, ExecutionPipeline, ExportedTransaction
from .gas import GasPolicy
from .ids import AccountRef, ContractRef, EntityId, EntityKind, TokenKind, TokenRef, is_zero_address
from .indexer import PoolIndexer, pool_status
from .mirror import MirrorClient
from .preflight import Preflight, PreflightPlan, PreflightReport, Spenders
from .project_constants import GAS_STATION_MIN_HBAR, GAS_STATION_MIN_LAZY_TOKENS, PROPAGATION_DELAY_S
from .results import CallResult, Revert, Success
from .units import format_amount, format_hbar, to_display_amount

log = logging.getLogger("lotto")

# Fallback gas when the mirror cannot simulate the call
BUY_FALLBACK_GAS = 500_000
ROLL_FALLBACK_GAS = 800_000
CLAIM_FALLBACK_GAS = 800_000
ADMIN_FALLBACK_GAS = 300_000

PENDING_PAGE_SIZE = 50

REVERT_HINTS = {
    "NotAdmin": "not authorized: the operator is not an admin of this contract",
    "PoolIsClosed": "pool is closed",
    "PoolOnPause": "pool is paused",
    "EntriesStillOutstanding": "pool has outstanding entries",
    "NotEnoughTickets": "not enough entries to roll or redeem",
    "NoPendingPrizes": "no pending prizes to claim",
    "LazyLottoAlreadySet": "pool manager is already linked",
}


def revert_hint(result: CallResult) -> Optional[str]:
    if not isinstance(result, Revert) or not result.reason:
        return None
    name = result.reason.split("(", 1)[0]
    return REVERT_HINTS.get(name)


@dataclass(frozen=True)
class TimeBonus:
    start: int
    end: int
    bonus_bps: int


@dataclass(frozen=True)
class BonusConfig:
    time_bonuses: Tuple[TimeBonus, ...]
    nft_bonuses: Dict[str, int]
    lazy_balance_threshold: int
    lazy_balance_bonus_bps: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timeBonuses": [
                {
                    "start": datetime.fromtimestamp(b.start, timezone.utc).isoformat(),
                    "end": datetime.fromtimestamp(b.end, timezone.utc).isoformat(),
                    "bonusBps": b.bonus_bps,
                }
                for b in self.time_bonuses
            ],
            "nftBonuses": dict(self.nft_bonuses),
            "lazyBalanceBonus": {
                "threshold": self.lazy_balance_threshold,
                "bonusBps": self.lazy_balance_bonus_bps,
            },
        }


@dataclass(frozen=True)
class LottoContracts:
    lazy_lotto: ContractRef
    lazy_token: Optional[EntityId] = None
    gas_station: Optional[ContractRef] = None
    pool_manager: Optional[ContractRef] = None
    trade_lotto: Optional[ContractRef] = None

    @staticmethod
    def from_settings(settings: Settings, contract_override: Optional[Union[str, EntityId]] = None) -> "LottoContracts":
        def opt_contract(component: str) -> Optional[ContractRef]:
            value = settings.contracts.get(component)
            return ContractRef.from_id(value) if value else None

        token = settings.contracts.get("lazyToken")
        return LottoContracts(
            lazy_lotto=ContractRef.from_id(contract_override or settings.require_contract("lazyLotto")),
            lazy_token=EntityId.parse(token) if token else None,
            gas_station=opt_contract("lazyGasStation"),
            pool_manager=opt_contract("poolManager"),
            trade_lotto=opt_contract("tradeLotto"),
        )


@dataclass(frozen=True)
class PoolInfo:
    id: int
    win_rate: int
    entry_fee: int
    prize_count: int
    outstanding_entries: int
    pool_token: str
    paused: bool
    closed: bool
    fee_token: TokenRef

    @property
    def status(self) -> str:
        return pool_status(self.paused, self.closed)


@dataclass(frozen=True)
class RollOutcome:
    result: CallResult
    pool_id: int
    entries_rolled: int
    wins: Optional[int] = None


Submitted = Union[CallResult, ExportedTransaction]


class LottoService:
    """User, query and admin operations against a deployed LazyLotto."""

    def __init__(
        self,
        mirror: MirrorClient,
        registry: AbiRegistry,
        operator: AccountRef,
        contracts: LottoContracts,
        pipeline: Optional[ExecutionPipeline] = None,
        network=None,
        lazy_decimals: int = 8,
        propagation_delay_s: float = PROPAGATION_DELAY_S,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.mirror = mirror
        self.registry = registry
        self.operator = operator
        self.contracts = contracts
        self.pipeline = pipeline
        self.network = network
        self.lazy_decimals = lazy_decimals
        self.propagation_delay_s = propagation_delay_s
        self._sleep = sleep
        self._main = registry.get("LazyLotto")
        self._spenders: Optional[Spenders] = None

    @property
    def main(self) -> ContractRef:
        return self.contracts.lazy_lotto

    async def _read(self, function: str, *args: Any) -> Any:
        return await self.mirror.call_value(self._main, self.main, function, *args, sender=self.operator)

    async def _contract_at(self, address: str) -> ContractRef:
        return ContractRef.from_id(await self.mirror.resolve_evm_address(address, EntityKind.CONTRACT))

    # Writes

    def _require_pipeline(self) -> ExecutionPipeline:
        if self.pipeline is None:
            raise UsageError("This command needs an operator key to submit transactions")
        return self.pipeline

    async def submit(self, request: CallRequest, options: Optional[ExecutionOptions] = None) -> Submitted:
        pipeline = self._require_pipeline()
        options = options or ExecutionOptions()
        if options.multisig is not None and options.multisig.export_only:
            return await pipeline.export(request, options)
        result = await pipeline.execute(request, options)
        if isinstance(result, Revert):
            log.warning("%s reverted: %s", request.function, result.reason)
        return result

    def _request(
        self,
        function: str,
        *args: Any,
        payable: int = 0,
        policy: GasPolicy = GasPolicy.STATE_CHANGE,
        fallback: Optional[int] = None,
        contract: Optional[ContractRef] = None,
        artifact: str = "LazyLotto",
    ) -> CallRequest:
        return CallRequest(
            contract=contract or self.main,
            artifact=artifact,
            function=function,
            args=tuple(args),
            payable_amount=payable,
            gas_policy=policy,
            fallback_gas=fallback,
            sender=self.operator,
        )

    async def spenders(self) -> Spenders:
        if self._spenders is None:
            lazy_token = self.contracts.lazy_token
            if lazy_token is None:
                lazy_token = await self.mirror.resolve_evm_address(await self._read("lazyToken"), EntityKind.TOKEN)
            gas_station = self.contracts.gas_station or await self._contract_at(await self._read("lazyGasStation"))
            storage = await self._contract_at(await self._read("storageContract"))
            self._spenders = Spenders(lazy_token=lazy_token, gas_station=gas_station, storage=storage)
        return self._spenders

    async def _preflight(
        self, plan: PreflightPlan, options: Optional[ExecutionOptions] = None
    ) -> Optional[PreflightReport]:
        if options is not None and options.multisig is not None and options.multisig.merges_export:
            # Allowances and associations were settled before the export was signed
            log.info("Skipping preflight for a previously exported transaction")
            return None
        if self.network is None:
            raise UsageError("Preflight needs a network client")
        preflight = Preflight(
            self.network,
            self.mirror,
            self.operator,
            await self.spenders(),
            delay_s=self.propagation_delay_s,
            sleep=self._sleep,
        )
        return await preflight.run(plan)

    async def _open_pool(self, pool_id: int) -> PoolInfo:
        pool = await self.pool_info(pool_id)
        if pool.closed:
            raise UsageError(f"Pool #{pool_id} is closed")
        if pool.paused:
            raise UsageError(f"Pool #{pool_id} is paused")
        return pool

    @staticmethod
    def _check_count(count: int) -> None:
        if count <= 0:
            raise UsageError("Ticket count must be a positive integer")

    async def buy(self, pool_id: int, count: int, options: Optional[ExecutionOptions] = None) -> Submitted:
        self._check_count(count)
        pool = await self._open_pool(pool_id)
        total = pool.entry_fee * count
        await self._preflight(PreflightPlan(fee_token=pool.fee_token, fee_amount=total), options)
        payable = total if pool.fee_token.is_hbar else 0
        log.info("Buying %d entries in pool #%d for %s", count, pool_id, self.format_fee(pool.fee_token, total))
        return await self.submit(
            self._request("buyEntry", pool_id, count, payable=payable, fallback=BUY_FALLBACK_GAS), options
        )

    async def buy_and_roll(
        self, pool_id: int, count: int, options: Optional[ExecutionOptions] = None
    ) -> Union[RollOutcome, ExportedTransaction]:
        self._check_count(count)
        pool = await self._open_pool(pool_id)
        total = pool.entry_fee * count
        await self._preflight(PreflightPlan(fee_token=pool.fee_token, fee_amount=total), options)
        payable = total if pool.fee_token.is_hbar else 0
        request = self._request(
            "buyAndRollEntry", pool_id, count,
            payable=payable, policy=GasPolicy.RANDOMNESS, fallback=ROLL_FALLBACK_GAS,
        )
        return await self._submit_roll(request, pool_id, count, options)

    async def roll(
        self, pool_id: int, count: Optional[int] = None, options: Optional[ExecutionOptions] = None
    ) -> Union[RollOutcome, ExportedTransaction]:
        entries = await self._read("getUsersEntries", pool_id, self.operator.evm_address)
        if entries == 0:
            raise UsageError(f"No entries to roll in pool #{pool_id}")
        if count is None:
            request = self._request("rollAll", pool_id, policy=GasPolicy.RANDOMNESS, fallback=ROLL_FALLBACK_GAS)
            rolled = entries
        else:
            self._check_count(count)
            if count > entries:
                raise UsageError(f"Only {entries} entries in pool #{pool_id}, cannot roll {count}")
            request = self._request(
                "rollBatch", pool_id, count, policy=GasPolicy.RANDOMNESS, fallback=ROLL_FALLBACK_GAS
            )
            rolled = count
        return await self._submit_roll(request, pool_id, rolled, options)

    async def _submit_roll(
        self, request: CallRequest, pool_id: int, rolled: int, options: Optional[ExecutionOptions]
    ) -> Union[RollOutcome, ExportedTransaction]:
        submitted = await self.submit(request, options)
        if isinstance(submitted, ExportedTransaction):
            return submitted
        return RollOutcome(submitted, pool_id, rolled, self.wins_of(submitted))

    @staticmethod
    def wins_of(result: CallResult) -> Optional[int]:
        if not isinstance(result, Success):
            return None
        events = result.events("RollCompleted")
        if events:
            return sum(int(e.args["wins"]) for e in events)
        if result.values:
            return int(result.values[0])
        return None

    async def _prize_plan(self, prizes: Sequence[Dict[str, Any]]) -> PreflightPlan:
        collections: List[EntityId] = []
        nft = False
        for entry in prizes:
            prize = entry["prize"]
            if prize["amount"] > 0 and not is_zero_address(prize["token"]):
                collections.append(await self.mirror.resolve_evm_address(prize["token"], EntityKind.TOKEN))
            for token in prize["nftTokens"]:
                if not is_zero_address(token):
                    nft = True
                    collections.append(await self.mirror.resolve_evm_address(token, EntityKind.TOKEN))
        return PreflightPlan(prize_collections=tuple(collections), nft_transfers=nft)

    async def claim(self, index: Optional[int] = None, options: Optional[ExecutionOptions] = None) -> Submitted:
        pending = await self.pending_prizes()
        if not pending:
            raise UsageError("No pending prizes to claim")
        if index is not None and not 0 <= index < len(pending):
            raise UsageError(f"Prize index {index} out of range (0..{len(pending) - 1})")

        selected = pending if index is None else [pending[index]]
        await self._preflight(await self._prize_plan(selected), options)
        if index is None:
            request = self._request("claimAllPrizes", fallback=CLAIM_FALLBACK_GAS)
        else:
            request = self._request("claimPrize", index, fallback=CLAIM_FALLBACK_GAS)
        return await self.submit(request, options)

    async def redeem_entries(self, pool_id: int, count: int, options: Optional[ExecutionOptions] = None) -> Submitted:
        self._check_count(count)
        pool = await self.pool_info(pool_id)
        collections = ()
        if not is_zero_address(pool.pool_token):
            collections = (await self.mirror.resolve_evm_address(pool.pool_token, EntityKind.TOKEN),)
        await self._preflight(PreflightPlan(prize_collections=collections, nft_transfers=True), options)
        return await self.submit(
            self._request("redeemEntriesToNFT", pool_id, count, fallback=CLAIM_FALLBACK_GAS), options
        )

    async def redeem_prizes(self, indices: Sequence[int], options: Optional[ExecutionOptions] = None) -> Submitted:
        if not indices:
            raise UsageError("Give at least one pending prize index")
        pending = await self.pending_prizes()
        bad = [i for i in indices if not 0 <= i < len(pending)]
        if bad:
            raise UsageError(f"Prize index out of range: {', '.join(map(str, bad))}")

        collections: List[EntityId] = []
        for pool_id in sorted({pending[i]["poolId"] for i in indices}):
            pool = await self.pool_info(pool_id)
            if not is_zero_address(pool.pool_token):
                collections.append(await self.mirror.resolve_evm_address(pool.pool_token, EntityKind.TOKEN))
        await self._preflight(PreflightPlan(prize_collections=tuple(collections), nft_transfers=True), options)
        return await self.submit(
            self._request("redeemPrizeToNFT", list(indices), fallback=CLAIM_FALLBACK_GAS), options
        )

    # Queries

    def format_fee(self, token: TokenRef, amount: int) -> str:
        if token.is_hbar:
            return format_hbar(amount)
        return format_amount(amount, token.decimals, token.symbol)

    async def pool_info(self, pool_id: int) -> PoolInfo:
        values = await self.mirror.call_function(
            self._main, self.main, "getPoolBasicInfo", pool_id, sender=self.operator
        )
        (_ticket_cid, _win_cid, win_rate, entry_fee, prize_count,
         outstanding, pool_token, paused, closed, fee_token) = values
        fee = await self.mirror.token_ref(fee_token)
        if fee.kind is TokenKind.NFT:
            raise UsageError(f"Pool #{pool_id} reports an NFT collection ({fee}) as its fee token")
        return PoolInfo(
            id=pool_id,
            win_rate=win_rate,
            entry_fee=entry_fee,
            prize_count=prize_count,
            outstanding_entries=outstanding,
            pool_token=pool_token,
            paused=paused,
            closed=closed,
            fee_token=fee,
        )

    def indexer(self, environment: str = "") -> PoolIndexer:
        return PoolIndexer(
            self.mirror,
            self.registry,
            self.main,
            environment=environment,
            pool_manager=self.contracts.pool_manager,
            sender=self.operator,
            sleep=self._sleep,
        )

    async def pools(self, active_only: bool = False) -> List[Dict[str, Any]]:
        document = await self.indexer().build(active_only=active_only)
        return document["pools"]

    async def pool(self, pool_id: int) -> Dict[str, Any]:
        total = await self._read("totalPools")
        if not 0 <= pool_id < total:
            raise UsageError(f"Pool #{pool_id} does not exist ({total} pools)")
        summary = (await self.indexer().fetch_pool(pool_id)).to_dict()
        summary["bonuses"] = (await self.bonus_config()).to_dict()
        return summary

    async def pending_prizes(self, account: Optional[AccountRef] = None) -> List[Dict[str, Any]]:
        user = (account or self.operator).evm_address
        count = await self._read("getPendingPrizesCount", user)
        prizes: List[Dict[str, Any]] = []
        while len(prizes) < count:
            page = await self._read("getPendingPrizesPage", user, len(prizes), min(PENDING_PAGE_SIZE, count - len(prizes)))
            if not page:
                break
            prizes.extend(page)
        return prizes

    async def user_state(self, account: Optional[AccountRef] = None) -> Dict[str, Any]:
        account = account or self.operator
        total = await self._read("totalPools")
        entries = {}
        for pool_id in range(total):
            n = await self._read("getUsersEntries", pool_id, account.evm_address)
            if n:
                entries[pool_id] = n
        pending = await self.pending_prizes(account)
        boost = await self._read("calculateBoost", account.evm_address)
        return {
            "account": str(account.id),
            "entries": [{"poolId": pid, "entries": n} for pid, n in entries.items()],
            "pendingPrizes": [
                {
                    "index": i,
                    "poolId": p["poolId"],
                    "asNFT": p["asNFT"],
                    "token": p["prize"]["token"],
                    "amount": p["prize"]["amount"],
                    "nftCollections": sum(1 for t in p["prize"]["nftTokens"] if not is_zero_address(t)),
                }
                for i, p in enumerate(pending)
            ],
            "boostBps": boost,
        }

    async def bonus_config(self) -> BonusConfig:
        time_bonuses = []
        for i in range(await self._read("totalTimeBonuses")):
            start, end, bps = await self.mirror.call_function(
                self._main, self.main, "timeBonuses", i, sender=self.operator
            )
            time_bonuses.append(TimeBonus(start, end, bps))

        nft_bonuses = {}
        for i in range(await self._read("totalNFTBonusTokens")):
            token = await self._read("nftBonusTokens", i)
            token_id = await self.mirror.resolve_evm_address(token, EntityKind.TOKEN)
            nft_bonuses[str(token_id)] = await self._read("nftBonusBps", token)

        return BonusConfig(
            time_bonuses=tuple(time_bonuses),
            nft_bonuses=nft_bonuses,
            lazy_balance_threshold=await self._read("lazyBalanceThreshold"),
            lazy_balance_bonus_bps=await self._read("lazyBalanceBonusBps"),
        )

    async def _check_main(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"configured": True, "contractId": str(self.main)}
        if not await self.mirror.contract_exists(self.main):
            return dict(out, status="not_found")
        paused = await self._read("paused")
        total = await self._read("totalPools")
        return dict(out, status="paused" if paused else "operational", details={"paused": paused, "totalPools": total})

    async def _check_trade_lotto(self) -> Dict[str, Any]:
        contract = self.contracts.trade_lotto
        if contract is None:
            return {"configured": False, "status": "not_configured"}
        out: Dict[str, Any] = {"configured": True, "contractId": str(contract)}
        if not await self.mirror.contract_exists(contract):
            return dict(out, status="not_found")
        artifact = self.registry.get("LazyTradeLotto")
        paused = await self.mirror.call_value(artifact, contract, "isPaused", sender=self.operator)
        jackpot = await self.mirror.call_value(artifact, contract, "jackpotPool", sender=self.operator)
        return dict(
            out,
            status="paused" if paused else "operational",
            details={"paused": paused, "jackpot": f"{to_display_amount(jackpot, self.lazy_decimals):f}"},
        )

    async def _check_gas_station(self) -> Dict[str, Any]:
        contract = self.contracts.gas_station
        if contract is None:
            return {"configured": False, "status": "not_configured"}
        out: Dict[str, Any] = {"configured": True, "contractId": str(contract)}
        if not await self.mirror.contract_exists(contract):
            return dict(out, status="not_found")
        hbar = await self.mirror.hbar_balance(contract)
        lazy = 0
        if self.contracts.lazy_token is not None:
            lazy = await self.mirror.token_balance(contract, self.contracts.lazy_token) or 0
        low = hbar < GAS_STATION_MIN_HBAR or lazy < GAS_STATION_MIN_LAZY_TOKENS * 10 ** self.lazy_decimals
        return dict(
            out,
            status="low_balance" if low else "operational",
            details={
                "hbarBalance": format_hbar(hbar),
                "lazyBalance": f"{to_display_amount(lazy, self.lazy_decimals):f}",
            },
        )

    async def health(self) -> Dict[str, Any]:
        async def guarded(check: Callable[[], Awaitable[Dict[str, Any]]], contract) -> Dict[str, Any]:
            try:
                return await check()
            except LazyLottoError as e:
                return {"configured": True, "contractId": str(contract), "status": "error", "error": str(e)}

        main, trade, station = await asyncio.gather(
            guarded(self._check_main, self.main),
            guarded(self._check_trade_lotto, self.contracts.trade_lotto),
            guarded(self._check_gas_station, self.contracts.gas_station),
        )
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "contracts": {"lazyLotto": main, "lazyTradeLotto": trade, "lazyGasStation": station},
        }

    async def info(self) -> Dict[str, Any]:
        wiring = {}
        for getter in ("lazyToken", "lazyGasStation", "lazyDelegateRegistry", "prng", "storageContract", "poolManager"):
            address = await self._read(getter)
            entity = EntityId.from_evm_address(address)
            wiring[getter] = str(entity) if entity is not None and not is_zero_address(address) else address

        out: Dict[str, Any] = {
            "contractId": str(self.main),
            "wiring": wiring,
            "burnPercentage": await self._read("burnPercentage"),
            "paused": await self._read("paused"),
            "totalPools": await self._read("totalPools"),
            "operatorIsAdmin": await self._read("isAdmin", self.operator.evm_address),
        }
        if self.contracts.pool_manager is not None:
            manager = self.registry.get("LazyLottoPoolManager")
            pm = self.contracts.pool_manager

            async def read(fn: str) -> Any:
                return await self.mirror.call_value(manager, pm, fn, sender=self.operator)

            out["poolManager"] = {
                "contractId": str(pm),
                "platformProceedsPercentage": await read("platformProceedsPercentage"),
                "totalGlobalPools": await read("totalGlobalPools"),
                "totalCommunityPools": await read("totalCommunityPools"),
            }
        return out

    # Admin

    def admin_request(self, function: str, *args: Any) -> CallRequest:
        if function == "setPlatformProceedsPercentage":
            if self.contracts.pool_manager is None:
                raise UsageError("LAZY_LOTTO_POOL_MANAGER_ID is required for set-platform-fee")
            return self._request(
                function, *args, fallback=ADMIN_FALLBACK_GAS,
                contract=self.contracts.pool_manager, artifact="LazyLottoPoolManager",
            )
        return self._request(function, *args, fallback=ADMIN_FALLBACK_GAS)

    async def admin(self, function: str, *args: Any, options: Optional[ExecutionOptions] = None) -> Submitted:
        return await self.submit(self.admin_request(function, *args), options)

    async def pause_pool(self, pool_id: int, options: Optional[ExecutionOptions] = None) -> Submitted:
        return await self.admin("pausePool", pool_id, options=options)

    async def unpause_pool(self, pool_id: int, options: Optional[ExecutionOptions] = None) -> Submitted:
        return await self.admin("unpausePool", pool_id, options=options)

    async def close_pool(self, pool_id: int, options: Optional[ExecutionOptions] = None) -> Submitted:
        pool = await self.pool_info(pool_id)
        if pool.outstanding_entries:
            raise UsageError(
                f"Pool #{pool_id} has {pool.outstanding_entries} outstanding entries; it cannot be closed yet"
            )
        return await self.admin("closePool", pool_id, options=options)

    async def set_time_bonus(
        self, start: int, end: int, bonus_bps: int, options: Optional[ExecutionOptions] = None
    ) -> Submitted:
        if end <= start:
            raise UsageError("Time bonus end must be after start")
        return await self.admin("setTimeBonus", start, end, bonus_bps, options=options)

    async def set_nft_bonus(self, token: str, bonus_bps: int, options: Optional[ExecutionOptions] = None) -> Submitted:
        return await self.admin("setNFTBonus", token, bonus_bps, options=options)

    async def set_lazy_balance_bonus(
        self, threshold: int, bonus_bps: int, options: Optional[ExecutionOptions] = None
    ) -> Submitted:
        return await self.admin("setLazyBalanceBonus", threshold, bonus_bps, options=options)

    async def set_burn_percentage(self, percent: int, options: Optional[ExecutionOptions] = None) -> Submitted:
        if not 0 <= percent <= 100:
            raise UsageError("Burn percentage must be between 0 and 100")
        return await self.admin("setBurnPercentage", percent, options=options)

    async def set_platform_fee(self, percent: int, options: Optional[ExecutionOptions] = None) -> Submitted:
        if not 0 <= percent <= 100:
            raise UsageError("Platform fee must be between 0 and 100")
        return await self.admin("setPlatformProceedsPercentage", percent, options=options)
