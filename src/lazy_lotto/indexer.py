from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .abi import AbiRegistry
from .errors import LazyLottoError
from .ids import AccountRef, ContractRef, EntityKind, is_zero_address
from .mirror import MirrorClient
from .project_constants import INDEX_FORMAT_VERSION, INDEXER_PRIZE_CAP, INDEXER_REQUEST_DELAY_S
from .units import format_amount, format_hbar, format_win_rate

log = logging.getLogger("indexer")

STATUS_ACTIVE = "active"
STATUS_PAUSED = "paused"
STATUS_CLOSED = "closed"
STATUS_ERROR = "error"


def pool_status(paused: bool, closed: bool) -> str:
    if closed:
        return STATUS_CLOSED
    if paused:
        return STATUS_PAUSED
    return STATUS_ACTIVE


@dataclass
class PoolSummary:
    id: int
    status: str = "unknown"
    win_rate: int = 0
    entry_fee: int = 0
    fee_token: str = "HBAR"
    entry_fee_display: str = ""
    prize_count: int = 0
    outstanding_entries: int = 0
    pool_token: Optional[str] = None
    owner: Optional[str] = None
    is_community_pool: bool = False
    prizes: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "id": self.id,
            "status": self.status,
            "winRate": self.win_rate,
            "winRateDisplay": format_win_rate(self.win_rate),
            "entryFee": self.entry_fee,
            "entryFeeToken": self.fee_token,
            "entryFeeDisplay": self.entry_fee_display,
            "prizeCount": self.prize_count,
            "outstandingEntries": self.outstanding_entries,
            "poolTokenId": self.pool_token,
            "owner": self.owner,
            "isCommunityPool": self.is_community_pool,
            "prizes": list(self.prizes),
        }
        if self.error is not None:
            out["error"] = self.error
        return out


class PoolIndexer:
    """Walks every pool id in ascending order and builds the discovery document."""

    def __init__(
        self,
        mirror: MirrorClient,
        registry: AbiRegistry,
        lazy_lotto: ContractRef,
        environment: str,
        pool_manager: Optional[ContractRef] = None,
        sender: Optional[AccountRef] = None,
        request_delay_s: float = INDEXER_REQUEST_DELAY_S,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.mirror = mirror
        self.registry = registry
        self.lazy_lotto = lazy_lotto
        self.environment = environment
        self.pool_manager = pool_manager
        self.sender = sender
        self.request_delay_s = request_delay_s
        self._sleep = sleep
        self._main = registry.get("LazyLotto")
        self._manager = registry.get("LazyLottoPoolManager") if pool_manager is not None else None

    async def _token_id(self, address: str) -> str:
        if is_zero_address(address):
            return "HBAR"
        return str(await self.mirror.resolve_evm_address(address, EntityKind.TOKEN))

    async def _fee_display(self, fee_token: str, amount: int) -> str:
        if fee_token == "HBAR":
            return format_hbar(amount)
        try:
            info = await self.mirror.token_info(fee_token)
        except LazyLottoError:
            return f"{amount} (raw)"
        return format_amount(amount, info.decimals, info.symbol)

    async def _prizes(self, pool_id: int, count: int) -> List[Dict[str, Any]]:
        if count == 0:
            return []
        if count > INDEXER_PRIZE_CAP:
            return [{"note": f"{count} prizes (too many to index individually)"}]

        prizes = []
        for i in range(count):
            try:
                pkg = await self.mirror.call_value(
                    self._main, self.lazy_lotto, "getPrizePackage", pool_id, i, sender=self.sender
                )
                prizes.append({
                    "index": i,
                    "hasTokenPrize": pkg["amount"] > 0,
                    "tokenAmount": pkg["amount"],
                    "token": await self._token_id(pkg["token"]),
                    "nftCollectionCount": sum(1 for t in pkg["nftTokens"] if not is_zero_address(t)),
                })
            except LazyLottoError as e:
                log.debug("Pool %d prize %d: %s", pool_id, i, e)
        return prizes

    async def _owner(self, pool_id: int) -> Optional[str]:
        try:
            owner = await self.mirror.call_value(
                self._manager, self.pool_manager, "getPoolOwner", pool_id, sender=self.sender
            )
        except LazyLottoError as e:
            log.debug("Pool %d owner: %s", pool_id, e)
            return None
        if is_zero_address(owner):
            return None
        return str(await self.mirror.resolve_evm_address(owner, EntityKind.ACCOUNT))

    async def fetch_pool(self, pool_id: int) -> PoolSummary:
        pool = PoolSummary(id=pool_id)
        try:
            info = await self.mirror.call_function(
                self._main, self.lazy_lotto, "getPoolBasicInfo", pool_id, sender=self.sender
            )
            (_ticket_cid, _win_cid, win_rate, entry_fee, prize_count,
             outstanding, pool_token, paused, closed, fee_token) = info

            pool.status = pool_status(paused, closed)
            pool.win_rate = win_rate
            pool.entry_fee = entry_fee
            pool.prize_count = prize_count
            pool.outstanding_entries = outstanding
            pool.fee_token = await self._token_id(fee_token)
            pool.entry_fee_display = await self._fee_display(pool.fee_token, entry_fee)
            if not is_zero_address(pool_token):
                pool.pool_token = await self._token_id(pool_token)

            if self.pool_manager is not None:
                pool.owner = await self._owner(pool_id)
                pool.is_community_pool = pool.owner is not None

            pool.prizes = await self._prizes(pool_id, prize_count)
        except LazyLottoError as e:
            log.warning("Pool #%d: %s", pool_id, e)
            pool.status = STATUS_ERROR
            pool.error = str(e)
        return pool

    async def build(self, active_only: bool = False) -> Dict[str, Any]:
        total = await self.mirror.call_value(self._main, self.lazy_lotto, "totalPools", sender=self.sender)
        log.info("Found %d pools", total)

        by_status = {STATUS_ACTIVE: 0, STATUS_PAUSED: 0, STATUS_CLOSED: 0}
        errors = 0
        community = 0
        pools: List[Dict[str, Any]] = []

        for pool_id in range(total):
            pool = await self.fetch_pool(pool_id)
            if pool.status in by_status:
                by_status[pool.status] += 1
            elif pool.status == STATUS_ERROR:
                errors += 1
            if pool.is_community_pool:
                community += 1

            if active_only and pool.status != STATUS_ACTIVE:
                log.info("Pool %d/%d skipped (%s)", pool_id + 1, total, pool.status)
            else:
                pools.append(pool.to_dict())
                log.info("Pool %d/%d %s", pool_id + 1, total, pool.status)

            if pool_id + 1 < total:
                await self._sleep(self.request_delay_s)

        return {
            "metadata": {
                "version": INDEX_FORMAT_VERSION,
                "generatedAt": datetime.now(timezone.utc).isoformat(),
                "environment": self.environment,
                "lazyLottoContract": str(self.lazy_lotto),
                "poolManagerContract": str(self.pool_manager) if self.pool_manager else None,
                "filters": {"activeOnly": active_only},
            },
            "stats": {
                "totalPoolsOnChain": total,
                "indexedPools": len(pools),
                "byStatus": by_status,
                "communityPools": community,
                "globalPools": total - community,
                "errors": errors,
            },
            "pools": pools,
        }


def write_index(document: Dict[str, Any], path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(document, f, indent=2)
