from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import (
    Expired,
    InsufficientSignatures,
    InvalidSignatureFile,
    UsageError,
    WrongTransaction,
)
from .ids import ContractRef
from .keys import KeyAlgorithm, KeySource, verify_signature
from .project_constants import MULTISIG_DEADLINE_BUFFER_S, TX_VALID_DURATION_S

log = logging.getLogger("multisig")

EXPORT_FORMAT_VERSION = 1


@dataclass(frozen=True)
class PendingCall:
    """A contract call that has not been frozen yet."""

    contract: ContractRef
    calldata: bytes
    gas: int
    payable_amount: int = 0
    description: str = ""


@dataclass(frozen=True)
class FrozenTransaction:
    transaction_id: str
    node_account_id: str
    body_bytes: bytes = field(repr=False)
    transaction_bytes: bytes = field(repr=False)
    valid_start: float
    valid_duration: int = TX_VALID_DURATION_S
    description: str = ""
    # The call frozen into the body, kept so a later merge can be matched to its request
    contract_id: str = ""
    calldata: bytes = field(default=b"", repr=False)
    payable_amount: int = 0

    @property
    def fingerprint(self) -> str:
        return hashlib.sha256(self.body_bytes).hexdigest()

    @property
    def expires_at(self) -> float:
        return self.valid_start + self.valid_duration

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "version": EXPORT_FORMAT_VERSION,
            "transactionId": self.transaction_id,
            "nodeAccountId": self.node_account_id,
            "validStart": self.valid_start,
            "validDuration": self.valid_duration,
            "expiresAt": datetime.fromtimestamp(self.expires_at, timezone.utc).isoformat(),
            "description": self.description,
            "contractId": self.contract_id,
            "calldata": self.calldata.hex(),
            "payableAmount": self.payable_amount,
            "bodySha256": self.fingerprint,
            "bodyBytes": self.body_bytes.hex(),
        }


@dataclass(frozen=True)
class SignatureDescriptor:
    public_key: bytes
    algorithm: KeyAlgorithm
    signature: bytes
    transaction_id: str
    body_sha256: str
    account_id: Optional[str] = None
    signed_at: Optional[str] = None

    @property
    def public_key_hex(self) -> str:
        return self.public_key.hex()

    def verifies(self, frozen: FrozenTransaction) -> bool:
        return verify_signature(self.algorithm, self.public_key, frozen.body_bytes, self.signature)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": EXPORT_FORMAT_VERSION,
            "transactionId": self.transaction_id,
            "bodySha256": self.body_sha256,
            "publicKey": self.public_key.hex(),
            "keyType": self.algorithm.value,
            "signature": self.signature.hex(),
            "accountId": self.account_id,
            "signedAt": self.signed_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any], source: str = "signature") -> "SignatureDescriptor":
        try:
            return SignatureDescriptor(
                public_key=bytes.fromhex(data["publicKey"]),
                algorithm=KeyAlgorithm(data["keyType"]),
                signature=bytes.fromhex(data["signature"]),
                transaction_id=data["transactionId"],
                body_sha256=data["bodySha256"],
                account_id=data.get("accountId"),
                signed_at=data.get("signedAt"),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise InvalidSignatureFile(f"{source} is not a valid signature descriptor: {e}")


@dataclass(frozen=True)
class SignedTransaction:
    frozen: FrozenTransaction
    signatures: Tuple[SignatureDescriptor, ...]


@dataclass
class MultiSigRequest:
    frozen: FrozenTransaction
    threshold: int
    expires_at: float
    signatures: Dict[str, SignatureDescriptor] = field(default_factory=dict)

    def add(self, descriptor: SignatureDescriptor) -> bool:
        """False when this signer already contributed."""
        if descriptor.public_key_hex in self.signatures:
            return False
        self.signatures[descriptor.public_key_hex] = descriptor
        return True

    @property
    def complete(self) -> bool:
        return len(self.signatures) >= self.threshold


@dataclass(frozen=True)
class MultiSigConfig:
    threshold: int = 1
    workflow: str = "interactive"
    export_only: bool = False
    signature_files: Tuple[str, ...] = ()
    signers: Tuple[KeySource, ...] = ()
    transaction_file: str = "tx.json"

    def __post_init__(self) -> None:
        if self.threshold < 1:
            raise UsageError("--threshold must be at least 1")
        if self.workflow not in ("interactive", "offline"):
            raise UsageError("--workflow must be interactive or offline")

    @property
    def merges_export(self) -> bool:
        """True when this run submits a previously exported transaction."""
        return self.workflow == "offline" and bool(self.signature_files)


# Offline file exchange


def export_transaction(frozen: FrozenTransaction, json_path: str) -> Tuple[str, str]:
    """Write tx.bin (SDK bytes) next to tx.json (metadata + body to sign)."""
    bin_path = os.path.splitext(json_path)[0] + ".bin"
    with open(bin_path, "wb") as f:
        f.write(frozen.transaction_bytes)
    meta = frozen.to_metadata()
    meta["transactionFile"] = os.path.basename(bin_path)
    with open(json_path, "w", encoding="utf-8") as f:
        json.dump(meta, f, indent=2)
    return bin_path, json_path


def load_transaction(json_path: str) -> FrozenTransaction:
    try:
        with open(json_path, "r", encoding="utf-8") as f:
            meta = json.load(f)
        bin_path = os.path.join(
            os.path.dirname(json_path),
            meta.get("transactionFile") or os.path.basename(os.path.splitext(json_path)[0] + ".bin"),
        )
        with open(bin_path, "rb") as f:
            transaction_bytes = f.read()
        frozen = FrozenTransaction(
            transaction_id=meta["transactionId"],
            node_account_id=meta["nodeAccountId"],
            body_bytes=bytes.fromhex(meta["bodyBytes"]),
            transaction_bytes=transaction_bytes,
            valid_start=float(meta["validStart"]),
            valid_duration=int(meta["validDuration"]),
            description=meta.get("description", ""),
            contract_id=meta.get("contractId", ""),
            calldata=bytes.fromhex(meta.get("calldata", "")),
            payable_amount=int(meta.get("payableAmount", 0)),
        )
    except (OSError, json.JSONDecodeError, KeyError, ValueError) as e:
        raise InvalidSignatureFile(f"Cannot load exported transaction {json_path}: {e}")

    if frozen.fingerprint != meta.get("bodySha256"):
        raise InvalidSignatureFile(f"{json_path}: body bytes do not match bodySha256")
    if frozen.calldata not in frozen.body_bytes:
        raise InvalidSignatureFile(f"{json_path}: calldata is not part of the signed body")
    return frozen


def write_signature_file(descriptor: SignatureDescriptor, path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(descriptor.to_dict(), f, indent=2)


def load_signature_file(path: str) -> SignatureDescriptor:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise InvalidSignatureFile(f"Cannot read signature file {path}: {e}")
    if not isinstance(data, dict):
        raise InvalidSignatureFile(f"{path} does not hold a JSON object")
    return SignatureDescriptor.from_dict(data, source=path)


class MultiSigCoordinator:
    """
    Collects signatures on one frozen transaction and submits it before the
    validity window closes. The internal deadline sits a fixed buffer before
    the network's own expiry.
    """

    def __init__(
        self,
        network,
        clock: Callable[[], float] = time.time,
        deadline_buffer_s: float = MULTISIG_DEADLINE_BUFFER_S,
    ) -> None:
        self.network = network
        self.clock = clock
        self.deadline_buffer_s = deadline_buffer_s

    def deadline(self, frozen: FrozenTransaction) -> float:
        return frozen.expires_at - self.deadline_buffer_s

    def seconds_left(self, frozen: FrozenTransaction) -> float:
        return self.deadline(frozen) - self.clock()

    def _check_deadline(self, frozen: FrozenTransaction) -> None:
        if self.seconds_left(frozen) <= 0:
            raise Expired(f"Transaction {frozen.transaction_id} is past its signing deadline")

    async def freeze(self, call) -> FrozenTransaction:
        if isinstance(call, FrozenTransaction):
            return call
        frozen = await self.network.freeze_contract_call(
            call.contract,
            call.calldata,
            call.gas,
            payable_amount=call.payable_amount,
            description=call.description,
        )
        return replace(
            frozen, contract_id=str(call.contract), calldata=call.calldata, payable_amount=call.payable_amount
        )

    def sign(self, frozen: FrozenTransaction, key_source: KeySource, account_id: Optional[str] = None) -> SignatureDescriptor:
        key = key_source.load()
        return SignatureDescriptor(
            public_key=key.public_key_bytes,
            algorithm=key.algorithm,
            signature=key.sign(frozen.body_bytes),
            transaction_id=frozen.transaction_id,
            body_sha256=frozen.fingerprint,
            account_id=account_id,
            signed_at=datetime.now(timezone.utc).isoformat(),
        )

    def assemble(
        self,
        frozen: FrozenTransaction,
        descriptors: Sequence[SignatureDescriptor],
        threshold: int,
    ) -> SignedTransaction:
        self._check_deadline(frozen)
        request = MultiSigRequest(frozen, threshold, self.deadline(frozen))
        for d in descriptors:
            if d.transaction_id != frozen.transaction_id or d.body_sha256 != frozen.fingerprint:
                raise WrongTransaction(
                    f"Signature by {d.public_key_hex[:16]}... is for {d.transaction_id}, not {frozen.transaction_id}"
                )
            if not d.verifies(frozen):
                raise WrongTransaction(f"Signature by {d.public_key_hex[:16]}... does not verify")
            if not request.add(d):
                log.debug("Ignoring duplicate signature from %s", d.public_key_hex)

        if not request.complete:
            raise InsufficientSignatures(
                f"{len(request.signatures)} unique signature(s), {threshold} required"
            )
        ordered = tuple(sorted(request.signatures.values(), key=lambda d: d.public_key_hex))
        return SignedTransaction(frozen, ordered)

    async def submit(self, signed: SignedTransaction):
        self._check_deadline(signed.frozen)
        log.info(
            "Submitting %s with %d signature(s)", signed.frozen.transaction_id, len(signed.signatures)
        )
        return await self.network.submit_signed(signed.frozen, signed.signatures)

    async def collect_interactive(
        self, frozen: FrozenTransaction, sources: Sequence[KeySource], threshold: int
    ) -> List[SignatureDescriptor]:
        request = MultiSigRequest(frozen, threshold, self.deadline(frozen))

        silent = [s for s in sources if not s.prompts]
        prompted = [s for s in sources if s.prompts]
        if silent:
            signed = await asyncio.gather(*(asyncio.to_thread(self.sign, frozen, s) for s in silent))
            for d in signed:
                request.add(d)

        for source in prompted:
            if request.complete:
                break
            self._check_deadline(frozen)
            try:
                d = await asyncio.wait_for(
                    asyncio.to_thread(self.sign, frozen, source), timeout=self.seconds_left(frozen)
                )
            except asyncio.TimeoutError:
                raise Expired(f"Signing deadline passed while waiting for {source.label}")
            if request.add(d):
                log.info("Signature %d/%d collected (%s)", len(request.signatures), threshold, source.label)

        self._check_deadline(frozen)
        return list(request.signatures.values())

    async def run_interactive(self, call, sources: Sequence[KeySource], threshold: int):
        frozen = await self.freeze(call)
        descriptors = await self.collect_interactive(frozen, sources, threshold)
        return await self.submit(self.assemble(frozen, descriptors, threshold))

    async def merge_and_submit(
        self, frozen: FrozenTransaction, signature_files: Sequence[str], threshold: int
    ):
        descriptors = [load_signature_file(p) for p in signature_files]
        return await self.submit(self.assemble(frozen, descriptors, threshold))
