from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from .project_constants import HBAR_DECIMALS, ZERO_ADDRESS

_ENTITY_RE = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")
_EVM_RE = re.compile(r"^(0x)?[0-9a-fA-F]{40}$")


class EntityKind(str, Enum):
    ACCOUNT = "account"
    CONTRACT = "contract"
    TOKEN = "token"


class TokenKind(str, Enum):
    HBAR = "HBAR"
    FUNGIBLE = "FUNGIBLE_COMMON"
    NFT = "NON_FUNGIBLE_UNIQUE"


@dataclass(frozen=True, order=True)
class EntityId:
    """Hedera shard.realm.num identifier."""

    shard: int
    realm: int
    num: int

    @staticmethod
    def parse(text: str) -> "EntityId":
        m = _ENTITY_RE.match(text.strip())
        if not m:
            raise ValueError(f"Not a Hedera id (shard.realm.num): {text!r}")
        return EntityId(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    @staticmethod
    def from_evm_address(address: str) -> Optional["EntityId"]:
        """
        Decode a long-zero address (shard:4 | realm:8 | num:8 bytes).
        Returns None for alias-style addresses, which need a mirror lookup.
        """
        addr = normalize_evm_address(address)
        raw = bytes.fromhex(addr[2:])
        if not is_long_zero(addr):
            return None
        shard = int.from_bytes(raw[0:4], "big")
        realm = int.from_bytes(raw[4:12], "big")
        num = int.from_bytes(raw[12:20], "big")
        return EntityId(shard, realm, num)

    @property
    def evm_address(self) -> str:
        raw = (
            self.shard.to_bytes(4, "big")
            + self.realm.to_bytes(8, "big")
            + self.num.to_bytes(8, "big")
        )
        return "0x" + raw.hex()

    def __str__(self) -> str:
        return f"{self.shard}.{self.realm}.{self.num}"


def normalize_evm_address(address: str) -> str:
    if not _EVM_RE.match(address.strip()):
        raise ValueError(f"Not a 20-byte EVM address: {address!r}")
    addr = address.strip().lower()
    return addr if addr.startswith("0x") else "0x" + addr


def parse_entity_or_address(text: str) -> Union[EntityId, str]:
    """
    Accept either input form: shard.realm.num, or an EVM address. Long-zero
    addresses decode to an EntityId here; aliases come back as a normalized
    address string for the caller to resolve on the mirror.
    """
    value = text.strip()
    if _ENTITY_RE.match(value):
        return EntityId.parse(value)
    if not _EVM_RE.match(value):
        raise ValueError(f"Not a Hedera id (shard.realm.num) or EVM address: {text!r}")
    addr = normalize_evm_address(value)
    return EntityId.from_evm_address(addr) or addr


def is_long_zero(address: str) -> bool:
    # Long-zero addresses keep the 12 high bytes for shard+realm, which are 0 on
    # all public networks; aliases are keccak-derived and almost never match.
    addr = normalize_evm_address(address)
    return addr[2:26] == "0" * 24


def is_zero_address(address: str) -> bool:
    return normalize_evm_address(address) == ZERO_ADDRESS


@dataclass(frozen=True)
class ContractRef:
    id: EntityId
    evm_address: str

    @staticmethod
    def from_id(value: Union[str, EntityId]) -> "ContractRef":
        entity = value if isinstance(value, EntityId) else EntityId.parse(value)
        return ContractRef(entity, entity.evm_address)

    def __str__(self) -> str:
        return str(self.id)


@dataclass(frozen=True)
class AccountRef:
    id: EntityId
    evm_address: str

    @staticmethod
    def from_id(value: Union[str, EntityId], evm_address: Optional[str] = None) -> "AccountRef":
        entity = value if isinstance(value, EntityId) else EntityId.parse(value)
        addr = normalize_evm_address(evm_address) if evm_address else entity.evm_address
        return AccountRef(entity, addr)

    def __str__(self) -> str:
        return str(self.id)


@dataclass(frozen=True)
class TokenRef:
    id: Optional[EntityId]
    evm_address: str
    decimals: int
    symbol: str
    kind: TokenKind

    @property
    def is_hbar(self) -> bool:
        return self.kind is TokenKind.HBAR

    def __str__(self) -> str:
        return "HBAR" if self.id is None else str(self.id)


HBAR = TokenRef(
    id=None,
    evm_address=ZERO_ADDRESS,
    decimals=HBAR_DECIMALS,
    symbol="HBAR",
    kind=TokenKind.HBAR,
)


def to_mirror_transaction_id(transaction_id: str) -> str:
    """0.0.1001@1700000000.000000123 -> 0.0.1001-1700000000-000000123"""
    txid = transaction_id.strip()
    if "@" not in txid:
        return txid
    account, stamp = txid.split("@", 1)
    seconds, _, nanos = stamp.partition(".")
    return f"{account}-{seconds}-{nanos.rjust(9, '0') if nanos else '000000000'}"
