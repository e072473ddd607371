from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError, EncodingError
from eth_utils import keccak

from .errors import AbiMismatch, ArtifactMissing, DecodeError
from .ids import AccountRef, ContractRef, EntityId, TokenRef, normalize_evm_address
from .project_constants import DEPLOY_GAS

log = logging.getLogger("abi")

PACKAGED_ABI_DIR = Path(__file__).parent / "abi"

ERROR_STRING_SELECTOR = bytes.fromhex("08c379a0")
PANIC_SELECTOR = bytes.fromhex("4e487b71")


def canonical_type(param: Dict[str, Any]) -> str:
    """ABI param -> canonical type string, expanding tuples: (address,uint256)[]"""
    typ = param["type"]
    if typ.startswith("tuple"):
        inner = ",".join(canonical_type(c) for c in param.get("components", []))
        return f"({inner}){typ[len('tuple'):]}"
    return typ


def _array_suffix(typ: str) -> Tuple[str, Optional[str]]:
    """'uint256[][3]' -> ('uint256[]', '3'); 'uint256' -> ('uint256', None)"""
    if not typ.endswith("]"):
        return typ, None
    base, _, size = typ[:-1].rpartition("[")
    return base, size


def _coerce(param: Dict[str, Any], value: Any) -> Any:
    typ = param["type"]
    base, size = _array_suffix(typ)
    if size is not None:
        element = dict(param, type=base)
        return [_coerce(element, v) for v in value]

    if typ == "tuple":
        components = param.get("components", [])
        if isinstance(value, dict):
            value = [value[c["name"]] for c in components]
        return tuple(_coerce(c, v) for c, v in zip(components, value))

    if typ == "address":
        if isinstance(value, (ContractRef, AccountRef, TokenRef)):
            return value.evm_address
        if isinstance(value, EntityId):
            return value.evm_address
        if isinstance(value, str) and value.count(".") == 2:
            return EntityId.parse(value).evm_address
        return normalize_evm_address(value)

    if typ.startswith("bytes") and isinstance(value, str):
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)

    return value


def _shape(param: Dict[str, Any], value: Any) -> Any:
    typ = param["type"]
    base, size = _array_suffix(typ)
    if size is not None:
        element = dict(param, type=base)
        return [_shape(element, v) for v in value]

    if typ == "tuple":
        components = param.get("components", [])
        if components and all(c.get("name") for c in components):
            return {c["name"]: _shape(c, v) for c, v in zip(components, value)}
        return tuple(_shape(c, v) for c, v in zip(components, value))

    if typ == "address":
        return value.lower()

    return value


@dataclass(frozen=True)
class AbiFunction:
    name: str
    inputs: Tuple[Dict[str, Any], ...]
    outputs: Tuple[Dict[str, Any], ...]
    state_mutability: str = "nonpayable"

    @property
    def input_types(self) -> List[str]:
        return [canonical_type(p) for p in self.inputs]

    @property
    def output_types(self) -> List[str]:
        return [canonical_type(p) for p in self.outputs]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.input_types)})"

    @property
    def selector(self) -> bytes:
        return keccak(text=self.signature)[:4]

    @property
    def payable(self) -> bool:
        return self.state_mutability == "payable"

    @property
    def read_only(self) -> bool:
        return self.state_mutability in ("view", "pure")

    def encode_args(self, args: Sequence[Any]) -> bytes:
        if len(args) != len(self.inputs):
            raise AbiMismatch(
                f"{self.signature} takes {len(self.inputs)} argument(s), got {len(args)}"
            )
        try:
            values = [_coerce(p, a) for p, a in zip(self.inputs, args)]
            return encode(self.input_types, values)
        except (EncodingError, ValueError, TypeError, KeyError) as e:
            raise AbiMismatch(f"Arguments do not match {self.signature}: {e}")

    def encode(self, args: Sequence[Any]) -> bytes:
        return self.selector + self.encode_args(args)

    def decode_output(self, data: bytes) -> tuple:
        if not self.outputs:
            return ()
        if not data:
            raise DecodeError(f"{self.name} returned no data")
        try:
            raw = decode(self.output_types, data)
        except (DecodingError, ValueError) as e:
            raise DecodeError(f"Could not decode {self.name} return data: {e}")
        return tuple(_shape(p, v) for p, v in zip(self.outputs, raw))

    def decode_named(self, data: bytes) -> Dict[str, Any]:
        values = self.decode_output(data)
        return {(p.get("name") or str(i)): v for i, (p, v) in enumerate(zip(self.outputs, values))}


@dataclass(frozen=True)
class DecodedEvent:
    name: str
    args: Dict[str, Any]


@dataclass(frozen=True)
class AbiEvent:
    name: str
    inputs: Tuple[Dict[str, Any], ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(canonical_type(p) for p in self.inputs)})"

    @property
    def topic(self) -> bytes:
        return keccak(text=self.signature)

    def decode(self, topics: Sequence[bytes], data: bytes) -> DecodedEvent:
        indexed = [p for p in self.inputs if p.get("indexed")]
        plain = [p for p in self.inputs if not p.get("indexed")]
        if len(topics) - 1 != len(indexed):
            raise DecodeError(f"{self.name}: expected {len(indexed)} indexed topic(s)")

        values: Dict[str, Any] = {}
        for p, topic in zip(indexed, topics[1:]):
            typ = canonical_type(p)
            dynamic = typ in ("string", "bytes") or typ.endswith("]") or typ.startswith("(")
            # Dynamic indexed values are only present as their keccak hash
            values[p["name"]] = topic if dynamic else _shape(p, decode([typ], topic)[0])
        try:
            decoded = decode([canonical_type(p) for p in plain], data) if plain else ()
        except (DecodingError, ValueError) as e:
            raise DecodeError(f"Could not decode {self.name} log data: {e}")
        for p, v in zip(plain, decoded):
            values[p["name"]] = _shape(p, v)
        return DecodedEvent(self.name, values)


@dataclass(frozen=True)
class AbiCustomError:
    name: str
    inputs: Tuple[Dict[str, Any], ...]

    @property
    def selector(self) -> bytes:
        return keccak(text=f"{self.name}({','.join(canonical_type(p) for p in self.inputs)})")[:4]


@dataclass
class ContractArtifact:
    name: str
    abi: List[Dict[str, Any]]
    bytecode: Optional[str] = None
    functions: Dict[str, List[AbiFunction]] = field(default_factory=dict)
    events: Dict[bytes, AbiEvent] = field(default_factory=dict)
    errors: Dict[bytes, AbiCustomError] = field(default_factory=dict)
    constructor: Optional[AbiFunction] = None

    def __post_init__(self) -> None:
        for entry in self.abi:
            kind = entry.get("type", "function")
            inputs = tuple(entry.get("inputs", []))
            if kind == "function":
                fn = AbiFunction(
                    name=entry["name"],
                    inputs=inputs,
                    outputs=tuple(entry.get("outputs", [])),
                    state_mutability=entry.get("stateMutability", "nonpayable"),
                )
                self.functions.setdefault(fn.name, []).append(fn)
            elif kind == "event":
                ev = AbiEvent(entry["name"], inputs)
                self.events[ev.topic] = ev
            elif kind == "error":
                err = AbiCustomError(entry["name"], inputs)
                self.errors[err.selector] = err
            elif kind == "constructor":
                self.constructor = AbiFunction(
                    name="constructor",
                    inputs=inputs,
                    outputs=(),
                    state_mutability=entry.get("stateMutability", "nonpayable"),
                )

    def function(self, name: str, args: Optional[Sequence[Any]] = None) -> AbiFunction:
        overloads = self.functions.get(name)
        if not overloads:
            raise AbiMismatch(f"{self.name} has no function named {name!r}")
        if args is None:
            if len(overloads) > 1:
                raise AbiMismatch(f"{self.name}.{name} is overloaded; pass arguments to choose")
            return overloads[0]

        candidates = [f for f in overloads if len(f.inputs) == len(args)]
        for fn in candidates:
            try:
                fn.encode_args(args)
            except AbiMismatch:
                continue
            return fn
        sigs = ", ".join(f.signature for f in overloads)
        raise AbiMismatch(f"No overload of {self.name}.{name} accepts {len(args)} argument(s): {sigs}")

    def encode_constructor(self, args: Sequence[Any]) -> bytes:
        if self.constructor is None:
            if args:
                raise AbiMismatch(f"{self.name} has no constructor arguments")
            return b""
        return self.constructor.encode_args(args)

    def bytecode_bytes(self) -> bytes:
        if not self.bytecode or self.bytecode in ("0x", ""):
            raise ArtifactMissing(f"No bytecode available for {self.name}")
        code = self.bytecode[2:] if self.bytecode.startswith("0x") else self.bytecode
        return bytes.fromhex(code)

    def decode_log(self, topics: Sequence[bytes], data: bytes) -> Optional[DecodedEvent]:
        if not topics:
            return None
        event = self.events.get(bytes(topics[0]))
        if event is None:
            return None
        return event.decode(topics, data)

    def decode_revert(self, data: bytes) -> Optional[str]:
        if len(data) < 4:
            return None
        selector, body = data[:4], data[4:]
        try:
            if selector == ERROR_STRING_SELECTOR:
                return decode(["string"], body)[0]
            if selector == PANIC_SELECTOR:
                return f"Panic(0x{decode(['uint256'], body)[0]:02x})"
            err = self.errors.get(selector)
            if err is not None:
                values = decode([canonical_type(p) for p in err.inputs], body) if err.inputs else ()
                return f"{err.name}({', '.join(str(v) for v in values)})"
        except (DecodingError, ValueError):
            return None
        return None


class AbiRegistry:
    """Loads contract artifacts by logical name and caches the parsed form."""

    def __init__(self, artifacts_dir: Optional[str] = None, include_packaged: bool = True) -> None:
        self.artifacts_dir = Path(artifacts_dir) if artifacts_dir else None
        self.include_packaged = include_packaged
        self._cache: Dict[str, ContractArtifact] = {}

    def _candidates(self, name: str) -> List[Path]:
        paths: List[Path] = []
        if self.artifacts_dir is not None:
            root = self.artifacts_dir
            paths += [
                root / "contracts" / f"{name}.sol" / f"{name}.json",
                root / "contracts" / "legacy" / f"{name}.sol" / f"{name}.json",
                root / f"{name}.json",
            ]
        if self.include_packaged:
            paths.append(PACKAGED_ABI_DIR / f"{name}.json")
        return paths

    def get(self, name: str) -> ContractArtifact:
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        for path in self._candidates(name):
            if not path.is_file():
                continue
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            if isinstance(raw, list):
                artifact = ContractArtifact(name=name, abi=raw)
            else:
                artifact = ContractArtifact(
                    name=name, abi=raw.get("abi", []), bytecode=raw.get("bytecode")
                )
            log.debug("Loaded %s from %s", name, path)
            self._cache[name] = artifact
            return artifact

        raise ArtifactMissing(f"Artifact for {name} not found")

    def get_deployable(self, name: str) -> ContractArtifact:
        artifact = self.get(name)
        if not artifact.bytecode or artifact.bytecode == "0x":
            # Packaged descriptors carry only the ABI; look for a full build
            raise ArtifactMissing(f"Bytecode for {name} not found under {self.artifacts_dir}")
        return artifact

    def encode(self, contract: str, function: str, args: Sequence[Any] = ()) -> bytes:
        return self.get(contract).function(function, args).encode(args)

    def decode_return(self, contract: str, function: str, data: bytes) -> tuple:
        return self.get(contract).function(function).decode_output(data)

    def decode_log(self, contract: str, topics: Sequence[bytes], data: bytes) -> Optional[DecodedEvent]:
        return self.get(contract).decode_log(topics, data)

    @staticmethod
    def deploy_gas(name: str) -> int:
        try:
            return DEPLOY_GAS[name]
        except KeyError:
            raise ArtifactMissing(f"No deployment gas budget recorded for {name}")
