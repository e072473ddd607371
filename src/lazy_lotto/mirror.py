from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import httpx

from .abi import ContractArtifact
from .errors import DecodeError, MirrorRequestRejected, MirrorUnavailable, NotFound, UsageError
from .ids import (
    HBAR,
    AccountRef,
    ContractRef,
    EntityId,
    EntityKind,
    TokenKind,
    TokenRef,
    is_long_zero,
    is_zero_address,
    normalize_evm_address,
    parse_entity_or_address,
    to_mirror_transaction_id,
)
from .project_constants import (
    MIRROR_BACKOFF_BASE_S,
    MIRROR_MAX_ATTEMPTS,
    MIRROR_TIMEOUT_S,
    PROPAGATION_DELAY_S,
)

log = logging.getLogger("mirror")

API_PREFIX = "/api/v1"

Addressable = Union[str, EntityId, ContractRef, AccountRef, TokenRef]

_PROBE_ORDER = (EntityKind.CONTRACT, EntityKind.TOKEN, EntityKind.ACCOUNT)
_ID_FIELD = {
    EntityKind.CONTRACT: "contract_id",
    EntityKind.TOKEN: "token_id",
    EntityKind.ACCOUNT: "account",
}


def to_evm_address(value: Addressable) -> str:
    if isinstance(value, (ContractRef, AccountRef, TokenRef)):
        return value.evm_address
    if isinstance(value, EntityId):
        return value.evm_address
    if value.count(".") == 2:
        return EntityId.parse(value).evm_address
    return normalize_evm_address(value)


def to_entity_path(value: Addressable) -> str:
    """Form used in mirror URL paths: the Hedera id when known, else the EVM address."""
    if isinstance(value, (ContractRef, AccountRef)):
        return str(value.id)
    if isinstance(value, TokenRef):
        if value.id is None:
            raise ValueError("HBAR has no mirror entity")
        return str(value.id)
    if isinstance(value, EntityId):
        return str(value)
    if value.count(".") == 2:
        return str(EntityId.parse(value))
    addr = normalize_evm_address(value)
    entity = EntityId.from_evm_address(addr)
    return str(entity) if entity is not None else addr


@dataclass(frozen=True)
class TokenInfo:
    id: EntityId
    name: str
    symbol: str
    decimals: int
    max_supply: int
    kind: TokenKind
    treasury: Optional[str] = None

    def to_ref(self) -> TokenRef:
        return TokenRef(
            id=self.id,
            evm_address=self.id.evm_address,
            decimals=self.decimals,
            symbol=self.symbol,
            kind=self.kind,
        )


def _rejection_detail(resp: httpx.Response) -> str:
    try:
        messages = resp.json().get("_status", {}).get("messages", [])
    except ValueError:
        return resp.text[:200]
    parts = []
    for m in messages:
        text = m.get("message", "")
        if m.get("detail"):
            text = f"{text}: {m['detail']}"
        parts.append(text)
    return "; ".join(parts) or resp.text[:200]


class MirrorClient:
    """Read side of the ledger, via the mirror node REST API."""

    def __init__(
        self,
        base_url: str,
        timeout_s: float = MIRROR_TIMEOUT_S,
        max_attempts: int = MIRROR_MAX_ATTEMPTS,
        backoff_base_s: float = MIRROR_BACKOFF_BASE_S,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.backoff_base_s = backoff_base_s
        self._sleep = sleep
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout_s, transport=transport)
        self._entity_cache: Dict[Tuple[str, Optional[EntityKind]], EntityId] = {}
        self._token_cache: Dict[str, TokenInfo] = {}

    async def close(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "MirrorClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _request(
        self, method: str, url: str, params: Optional[Dict[str, Any]] = None, payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        last_error = ""
        for attempt in range(1, self.max_attempts + 1):
            try:
                resp = await self.client.request(method, url, params=params, json=payload)
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
            else:
                if resp.status_code == 404:
                    raise NotFound(f"Mirror has no record for {url}")
                if resp.status_code == 429 or resp.status_code >= 500:
                    last_error = f"HTTP {resp.status_code}"
                elif resp.status_code >= 400:
                    raise MirrorRequestRejected(
                        f"Mirror rejected {method} {url}: HTTP {resp.status_code} {_rejection_detail(resp)}"
                    )
                else:
                    try:
                        return resp.json()
                    except ValueError as e:
                        raise DecodeError(f"Mirror returned non-JSON for {url}: {e}")

            if attempt < self.max_attempts:
                delay = self.backoff_base_s * 2 ** (attempt - 1)
                log.debug("Mirror %s %s failed (%s); retry %d in %.1fs", method, url, last_error, attempt, delay)
                await self._sleep(delay)

        raise MirrorUnavailable(f"Mirror unavailable after {self.max_attempts} attempts ({url}): {last_error}")

    async def _get(self, path: str, **params: Any) -> Dict[str, Any]:
        return await self._request("GET", API_PREFIX + path, params=params or None)

    async def _get_pages(self, path: str, key: str, **params: Any) -> List[Dict[str, Any]]:
        body = await self._get(path, **params)
        items = list(body.get(key, []))
        next_link = (body.get("links") or {}).get("next")
        while next_link:
            body = await self._request("GET", next_link)
            items.extend(body.get(key, []))
            next_link = (body.get("links") or {}).get("next")
        return items

    # EVM calls

    async def call(
        self,
        contract: Addressable,
        data: bytes,
        sender: Optional[Addressable] = None,
        estimate: bool = False,
        value: int = 0,
        gas: Optional[int] = None,
    ) -> bytes:
        """Simulated EVM call; returns the raw result (or the gas estimate when estimate=True)."""
        payload: Dict[str, Any] = {
            "block": "latest",
            "data": "0x" + data.hex(),
            "estimate": estimate,
            "to": to_evm_address(contract),
        }
        if sender is not None:
            payload["from"] = to_evm_address(sender)
        if value:
            payload["value"] = int(value)
        if gas:
            payload["gas"] = int(gas)

        body = await self._request("POST", API_PREFIX + "/contracts/call", payload=payload)
        result = body.get("result")
        if not isinstance(result, str):
            raise DecodeError(f"Mirror call returned no result: {body}")
        try:
            return bytes.fromhex(result[2:] if result.startswith("0x") else result)
        except ValueError:
            raise DecodeError(f"Mirror call result is not hex: {result[:40]}")

    async def call_function(
        self,
        artifact: ContractArtifact,
        contract: Addressable,
        function: str,
        *args: Any,
        sender: Optional[Addressable] = None,
    ) -> tuple:
        fn = artifact.function(function, args)
        raw = await self.call(contract, fn.encode(args), sender=sender)
        return fn.decode_output(raw)

    async def call_value(
        self,
        artifact: ContractArtifact,
        contract: Addressable,
        function: str,
        *args: Any,
        sender: Optional[Addressable] = None,
    ) -> Any:
        values = await self.call_function(artifact, contract, function, *args, sender=sender)
        if not values:
            raise DecodeError(f"{artifact.name}.{function} returned nothing")
        return values[0]

    # Entity translation

    async def _probe(self, address: str, kind: EntityKind) -> Optional[EntityId]:
        try:
            body = await self._get(f"/{kind.value}s/{address}")
        except NotFound:
            return None
        raw_id = body.get(_ID_FIELD[kind])
        return EntityId.parse(raw_id) if raw_id else None

    async def resolve_evm_address(self, address: str, kind: Optional[EntityKind] = None) -> EntityId:
        addr = normalize_evm_address(address)
        cache_key = (addr, kind)
        cached = self._entity_cache.get(cache_key)
        if cached is not None:
            return cached

        if is_long_zero(addr):
            # shard/realm/num are encoded directly in the address
            entity = EntityId.from_evm_address(addr)
        elif kind is not None:
            entity = await self._probe(addr, kind)
        else:
            entity = None
            for candidate in _PROBE_ORDER:
                entity = await self._probe(addr, candidate)
                if entity is None:
                    continue
                if candidate is EntityKind.CONTRACT:
                    as_account = await self._probe(addr, EntityKind.ACCOUNT)
                    if as_account is not None and as_account != entity:
                        log.warning(
                            "%s resolves to contract %s and account %s; using the contract",
                            addr, entity, as_account,
                        )
                break

        if entity is None:
            raise NotFound(f"No {kind.value if kind else 'entity'} found for {addr}")
        self._entity_cache[cache_key] = entity
        return entity

    async def resolve_entity(self, text: str, kind: Optional[EntityKind] = None) -> EntityId:
        """User-supplied id or EVM address; malformed input is a UsageError."""
        try:
            parsed = parse_entity_or_address(text)
        except ValueError as e:
            raise UsageError(str(e))
        if isinstance(parsed, EntityId):
            return parsed
        return await self.resolve_evm_address(parsed, kind)

    async def evm_address_of(self, entity: Union[str, EntityId], kind: EntityKind) -> str:
        entity_id = entity if isinstance(entity, EntityId) else EntityId.parse(entity)
        if kind is EntityKind.TOKEN:
            return entity_id.evm_address
        body = await self._get(f"/{kind.value}s/{entity_id}")
        evm = body.get("evm_address")
        return normalize_evm_address(evm) if evm else entity_id.evm_address

    async def account_ref(self, account: Union[str, EntityId]) -> AccountRef:
        entity_id = account if isinstance(account, EntityId) else EntityId.parse(account)
        return AccountRef.from_id(entity_id, await self.evm_address_of(entity_id, EntityKind.ACCOUNT))

    # Balances and allowances

    async def hbar_balance(self, account: Addressable) -> int:
        body = await self._get(f"/accounts/{to_entity_path(account)}")
        return int((body.get("balance") or {}).get("balance", 0))

    async def token_balance(self, account: Addressable, token: Addressable) -> Optional[int]:
        """None when the account is not associated with the token; 0 is a real balance."""
        body = await self._get(f"/accounts/{to_entity_path(account)}/tokens", **{"token.id": to_entity_path(token)})
        rows = body.get("tokens", [])
        if not rows:
            return None
        return int(rows[0].get("balance", 0))

    async def nft_serials(self, account: Addressable, token: Addressable) -> List[int]:
        rows = await self._get_pages(
            f"/accounts/{to_entity_path(account)}/nfts",
            "nfts",
            **{"token.id": to_entity_path(token), "limit": 100},
        )
        return sorted(int(r["serial_number"]) for r in rows)

    async def token_allowance(self, owner: Addressable, spender: Addressable, token: Addressable) -> int:
        body = await self._get(
            f"/accounts/{to_entity_path(owner)}/allowances/tokens",
            **{"spender.id": to_entity_path(spender), "token.id": to_entity_path(token)},
        )
        rows = body.get("allowances", [])
        return int(rows[0].get("amount", 0)) if rows else 0

    async def hbar_allowance(self, owner: Addressable, spender: Addressable) -> int:
        body = await self._get(
            f"/accounts/{to_entity_path(owner)}/allowances/crypto",
            **{"spender.id": to_entity_path(spender)},
        )
        rows = body.get("allowances", [])
        return int(rows[0].get("amount", 0)) if rows else 0

    # Token metadata

    async def token_info(self, token: Addressable) -> TokenInfo:
        path = to_entity_path(token)
        cached = self._token_cache.get(path)
        if cached is not None:
            return cached
        body = await self._get(f"/tokens/{path}")
        try:
            info = TokenInfo(
                id=EntityId.parse(body["token_id"]),
                name=body.get("name", ""),
                symbol=body.get("symbol", ""),
                decimals=int(body.get("decimals", 0)),
                max_supply=int(body.get("max_supply") or 0),
                kind=TokenKind(body.get("type", TokenKind.FUNGIBLE.value)),
                treasury=body.get("treasury_account_id"),
            )
        except (KeyError, ValueError) as e:
            raise DecodeError(f"Unexpected token payload for {path}: {e}")
        self._token_cache[path] = info
        self._token_cache[str(info.id)] = info
        return info

    async def token_ref(self, token: Addressable) -> TokenRef:
        if isinstance(token, TokenRef):
            return token
        if isinstance(token, str) and token.startswith("0x") and is_zero_address(token):
            return HBAR
        return (await self.token_info(token)).to_ref()

    # Contracts and results

    async def contract_info(self, contract: Addressable) -> Dict[str, Any]:
        return await self._get(f"/contracts/{to_entity_path(contract)}")

    async def contract_exists(self, contract: Addressable) -> bool:
        try:
            body = await self.contract_info(contract)
        except NotFound:
            return False
        return not body.get("deleted", False)

    async def token_exists(self, token: Addressable) -> bool:
        try:
            body = await self._get(f"/tokens/{to_entity_path(token)}")
        except NotFound:
            return False
        return not body.get("deleted", False)

    async def contract_result(self, transaction_id: str) -> Dict[str, Any]:
        return await self._get(f"/contracts/results/{to_mirror_transaction_id(transaction_id)}")


async def write_then_read_back(
    write: Callable[[], Awaitable[Any]],
    read: Callable[[], Awaitable[Any]],
    expected: Any = None,
    until: Optional[Callable[[Any], bool]] = None,
    delay_s: float = PROPAGATION_DELAY_S,
    attempts: int = 2,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Tuple[Any, Any]:
    """
    Run a write, then read it back from the mirror once it has caught up.

    The mirror trails consensus by a few seconds, so every read is preceded by
    the propagation delay. Returns (write_result, last_observed); callers decide
    what a mismatch means.
    """
    result = await write()
    observed = None
    for attempt in range(attempts):
        await sleep(delay_s)
        observed = await read()
        if until is not None:
            if until(observed):
                break
        elif expected is None or observed == expected:
            break
        log.debug("Read-back attempt %d saw %r", attempt + 1, observed)
    return result, observed
