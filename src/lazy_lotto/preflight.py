from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, FrozenSet, List, Optional, Sequence, Tuple

from .errors import AllowanceFailed, AssociationFailed, InsufficientBalance, UnsupportedTokenKind
from .ids import AccountRef, ContractRef, EntityId, TokenKind, TokenRef
from .mirror import MirrorClient, write_then_read_back
from .project_constants import NFT_TRANSFER_HBAR_BUFFER, PROPAGATION_DELAY_S
from .units import format_amount, format_hbar

log = logging.getLogger("preflight")

ALREADY_ASSOCIATED = "TOKEN_ALREADY_ASSOCIATED_TO_ACCOUNT"

# Steps a caller may waive
WAIVE_ASSOCIATION = "association"
WAIVE_BALANCE = "balance"
WAIVE_ALLOWANCE = "allowance"
WAIVE_PRIZE_ASSOCIATION = "prize_association"
WAIVE_HBAR_BUFFER = "hbar_buffer"


@dataclass(frozen=True)
class Spenders:
    lazy_token: EntityId
    gas_station: ContractRef
    storage: ContractRef


def select_spender(token: TokenRef, spenders: Spenders) -> ContractRef:
    """LAZY is pulled by the gas station; everything else by the storage contract."""
    if token.kind is TokenKind.NFT:
        raise UnsupportedTokenKind(f"{token} is an NFT collection; allowances are only set for fungibles")
    if token.kind is TokenKind.FUNGIBLE:
        if token.id == spenders.lazy_token:
            return spenders.gas_station
        return spenders.storage
    if token.kind is TokenKind.HBAR:
        return spenders.storage
    raise UnsupportedTokenKind(f"Unknown token kind {token.kind!r}")


@dataclass(frozen=True)
class PreflightPlan:
    fee_token: Optional[TokenRef] = None
    fee_amount: int = 0
    prize_collections: Tuple[EntityId, ...] = ()
    nft_transfers: bool = False
    waive: FrozenSet[str] = frozenset()


@dataclass
class PreflightReport:
    associated: List[str] = field(default_factory=list)
    allowances: List[Tuple[str, str, int]] = field(default_factory=list)
    hbar_allowance: Optional[int] = None
    balance: Optional[int] = None


class Preflight:
    def __init__(
        self,
        network,
        mirror: MirrorClient,
        operator: AccountRef,
        spenders: Spenders,
        delay_s: float = PROPAGATION_DELAY_S,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.network = network
        self.mirror = mirror
        self.operator = operator
        self.spenders = spenders
        self.delay_s = delay_s
        self._sleep = sleep

    async def _associate(self, tokens: Sequence[EntityId], report: PreflightReport) -> None:
        log.info("Associating %s with %s", ", ".join(str(t) for t in tokens), self.operator)
        receipt, observed = await write_then_read_back(
            lambda: self.network.associate_tokens(self.operator.id, list(tokens)),
            lambda: self._unassociated(tokens),
            until=lambda missing: not missing,
            delay_s=self.delay_s,
            attempts=3,
            sleep=self._sleep,
        )
        if receipt.status not in ("SUCCESS", ALREADY_ASSOCIATED):
            raise AssociationFailed(f"Association of {', '.join(map(str, tokens))} failed: {receipt.status}")
        if observed:
            raise AssociationFailed(
                f"Mirror still shows {', '.join(map(str, observed))} as not associated",
                hint="Wait a few seconds and retry; the mirror may be lagging.",
            )
        report.associated.extend(str(t) for t in tokens)

    async def _unassociated(self, tokens: Sequence[EntityId]) -> List[EntityId]:
        missing = []
        for token in tokens:
            if await self.mirror.token_balance(self.operator, token) is None:
                missing.append(token)
        return missing

    async def _ensure_allowance(self, token: TokenRef, amount: int, report: PreflightReport) -> None:
        spender = select_spender(token, self.spenders)
        current = await self.mirror.token_allowance(self.operator, spender, token)
        if current >= amount:
            log.debug("Allowance of %s to %s already %d", token, spender, current)
            return

        log.info(
            "Approving %s to %s", format_amount(amount, token.decimals, token.symbol), spender
        )
        receipt, observed = await write_then_read_back(
            lambda: self.network.approve_token_allowance(token.id, self.operator.id, spender.id, amount),
            lambda: self.mirror.token_allowance(self.operator, spender, token),
            until=lambda value: value >= amount,
            delay_s=self.delay_s,
            attempts=3,
            sleep=self._sleep,
        )
        if receipt.status != "SUCCESS":
            raise AllowanceFailed(f"Allowance of {amount} {token.symbol} to {spender} failed: {receipt.status}")
        if observed < amount:
            raise AllowanceFailed(
                f"Allowance to {spender} reads {observed}, need {amount} {token.symbol}",
                hint="Wait a few seconds and retry; the mirror may be lagging.",
            )
        report.allowances.append((str(token), str(spender), amount))

    async def _ensure_hbar_buffer(self, report: PreflightReport) -> None:
        storage = self.spenders.storage
        current = await self.mirror.hbar_allowance(self.operator, storage)
        report.hbar_allowance = current
        if current >= NFT_TRANSFER_HBAR_BUFFER:
            return
        log.info("Approving %s to %s for NFT transfer fees", format_hbar(NFT_TRANSFER_HBAR_BUFFER), storage)
        receipt, observed = await write_then_read_back(
            lambda: self.network.approve_hbar_allowance(self.operator.id, storage.id, NFT_TRANSFER_HBAR_BUFFER),
            lambda: self.mirror.hbar_allowance(self.operator, storage),
            until=lambda value: value >= NFT_TRANSFER_HBAR_BUFFER,
            delay_s=self.delay_s,
            attempts=3,
            sleep=self._sleep,
        )
        if receipt.status != "SUCCESS":
            raise AllowanceFailed(f"HBAR allowance to {storage} failed: {receipt.status}")
        if observed < NFT_TRANSFER_HBAR_BUFFER:
            raise AllowanceFailed(
                f"HBAR allowance to {storage} reads {format_hbar(observed)}, "
                f"need {format_hbar(NFT_TRANSFER_HBAR_BUFFER)}",
                hint="Wait a few seconds and retry; the mirror may be lagging.",
            )
        report.hbar_allowance = observed

    async def run(self, plan: PreflightPlan) -> PreflightReport:
        """Association, then balance, then allowance, then prize associations, then HBAR buffer."""
        report = PreflightReport()
        fee = plan.fee_token
        waive = plan.waive

        if fee is not None and fee.kind is TokenKind.NFT:
            raise UnsupportedTokenKind(f"{fee} is an NFT collection and cannot be a fee token")

        if fee is not None and fee.kind is TokenKind.FUNGIBLE and plan.fee_amount > 0:
            balance = await self.mirror.token_balance(self.operator, fee)
            if balance is None:
                if WAIVE_ASSOCIATION in waive:
                    log.warning("%s is not associated with %s (waived)", fee, self.operator)
                else:
                    await self._associate([fee.id], report)
                    balance = await self.mirror.token_balance(self.operator, fee)
            report.balance = balance

            if WAIVE_BALANCE not in waive and (balance or 0) < plan.fee_amount:
                raise InsufficientBalance(
                    f"Need {format_amount(plan.fee_amount, fee.decimals, fee.symbol)}, "
                    f"have {format_amount(balance or 0, fee.decimals, fee.symbol)}"
                )
            if WAIVE_ALLOWANCE not in waive:
                await self._ensure_allowance(fee, plan.fee_amount, report)

        elif fee is not None and fee.is_hbar and plan.fee_amount > 0:
            balance = await self.mirror.hbar_balance(self.operator)
            report.balance = balance
            if WAIVE_BALANCE not in waive and balance < plan.fee_amount:
                raise InsufficientBalance(
                    f"Need {format_hbar(plan.fee_amount)}, have {format_hbar(balance)}"
                )

        if plan.prize_collections and WAIVE_PRIZE_ASSOCIATION not in waive:
            distinct = sorted(set(plan.prize_collections))
            missing = await self._unassociated(distinct)
            if missing:
                await self._associate(missing, report)

        if plan.nft_transfers and WAIVE_HBAR_BUFFER not in waive:
            await self._ensure_hbar_buffer(report)

        return report
