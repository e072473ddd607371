from __future__ import annotations

import getpass
import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from eth_account import Account
from eth_keys import keys as eth_keys
from eth_keys.exceptions import BadSignature, ValidationError
from eth_utils import keccak

from .errors import InvalidKeyAlgorithm, InvalidOperator, MissingSetting
from .ids import EntityId

log = logging.getLogger("keys")

ED25519_DER_PREFIX = "302e020100300506032b657004220420"
ECDSA_DER_PREFIX = "3030020100300706052b8104000a04220420"


class KeyAlgorithm(str, Enum):
    ED25519 = "ed25519"
    ECDSA = "ecdsa"


@dataclass(frozen=True)
class SigningKey:
    algorithm: KeyAlgorithm
    raw: bytes = field(repr=False)

    @property
    def public_key_bytes(self) -> bytes:
        if self.algorithm is KeyAlgorithm.ED25519:
            return (
                Ed25519PrivateKey.from_private_bytes(self.raw)
                .public_key()
                .public_bytes(serialization.Encoding.Raw, serialization.PublicFormat.Raw)
            )
        return eth_keys.PrivateKey(self.raw).public_key.to_compressed_bytes()

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    @property
    def evm_address(self) -> str:
        if self.algorithm is not KeyAlgorithm.ECDSA:
            raise InvalidKeyAlgorithm("Only ECDSA keys have an EVM address")
        return eth_keys.PrivateKey(self.raw).public_key.to_address().lower()

    def sign(self, message: bytes) -> bytes:
        """Ed25519 signs the message itself; ECDSA signs keccak256(message) as r||s."""
        if self.algorithm is KeyAlgorithm.ED25519:
            return Ed25519PrivateKey.from_private_bytes(self.raw).sign(message)
        sig = eth_keys.PrivateKey(self.raw).sign_msg_hash(keccak(message))
        return sig.r.to_bytes(32, "big") + sig.s.to_bytes(32, "big")

    def to_der_hex(self) -> str:
        prefix = ED25519_DER_PREFIX if self.algorithm is KeyAlgorithm.ED25519 else ECDSA_DER_PREFIX
        return prefix + self.raw.hex()


def verify_signature(
    algorithm: KeyAlgorithm, public_key: bytes, message: bytes, signature: bytes
) -> bool:
    if algorithm is KeyAlgorithm.ED25519:
        try:
            Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
            return True
        except (InvalidSignature, ValueError):
            return False

    if len(signature) != 64:
        return False
    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:], "big")
    digest = keccak(message)
    # r||s carries no recovery id; accept if either candidate recovers the key
    for v in (0, 1):
        try:
            recovered = eth_keys.Signature(vrs=(v, r, s)).recover_public_key_from_msg_hash(digest)
        except (BadSignature, ValidationError):
            continue
        if recovered.to_compressed_bytes() == public_key:
            return True
    return False


def parse_private_key(text: str, algorithm_hint: Optional[KeyAlgorithm] = None) -> SigningKey:
    """
    Accepts DER hex (302e... Ed25519, 3030... ECDSA), 0x-prefixed hex (ECDSA)
    or bare 32-byte hex (Ed25519 unless a hint says otherwise).
    """
    value = (text or "").strip().lower()
    if not value:
        raise MissingSetting("Private key is empty")

    if value.startswith(ED25519_DER_PREFIX):
        algorithm, hex_key = KeyAlgorithm.ED25519, value[len(ED25519_DER_PREFIX):]
    elif value.startswith(ECDSA_DER_PREFIX):
        algorithm, hex_key = KeyAlgorithm.ECDSA, value[len(ECDSA_DER_PREFIX):]
    elif value.startswith("0x"):
        algorithm, hex_key = KeyAlgorithm.ECDSA, value[2:]
    else:
        algorithm, hex_key = algorithm_hint or KeyAlgorithm.ED25519, value

    try:
        raw = bytes.fromhex(hex_key)
    except ValueError:
        raise InvalidOperator("Private key is not valid hex")
    if len(raw) != 32:
        raise InvalidOperator(f"Private key must be 32 bytes, got {len(raw)}")

    key = SigningKey(algorithm, raw)
    try:
        key.public_key_bytes
    except (ValidationError, ValueError) as e:
        raise InvalidOperator(f"Private key rejected for {algorithm.value}: {e}")
    return key


def parse_signing_key(text: str) -> SigningKey:
    """The trade-lotto signature validator only understands secp256k1."""
    key = parse_private_key(text, algorithm_hint=KeyAlgorithm.ECDSA)
    if key.algorithm is not KeyAlgorithm.ECDSA:
        raise InvalidKeyAlgorithm(
            "SIGNING_KEY must be an ECDSA (secp256k1) key; Ed25519 is not accepted"
        )
    return key


@dataclass(frozen=True)
class OperatorIdentity:
    account_id: EntityId
    key: SigningKey


# Key sources


class KeySource:
    label: str = "key"
    production: bool = True
    prompts: bool = True

    def load(self) -> SigningKey:
        raise NotImplementedError


class DevelopmentOnly:
    """Marker for key sources that must never back a production run."""

    production = False


class EncryptedFileKeySource(KeySource):
    def __init__(
        self,
        path: str,
        passphrase: Optional[str] = None,
        prompt: Callable[[str], str] = getpass.getpass,
    ) -> None:
        self.path = path
        self.label = os.path.basename(path)
        self._passphrase = passphrase
        self._prompt = prompt
        self.prompts = passphrase is None

    def load(self) -> SigningKey:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                keystore = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise InvalidOperator(f"Cannot read key file {self.path}: {e}")

        passphrase = self._passphrase
        if passphrase is None:
            passphrase = self._prompt(f"Passphrase for {self.label}: ")
        try:
            raw = bytes(Account.decrypt(keystore, passphrase))
        except ValueError as e:
            raise InvalidOperator(f"Could not unlock {self.path}: {e}")

        algorithm = KeyAlgorithm(keystore.get("keyType", KeyAlgorithm.ECDSA.value))
        return SigningKey(algorithm, raw)


class PromptKeySource(KeySource):
    def __init__(self, label: str = "signer", prompt: Callable[[str], str] = getpass.getpass) -> None:
        self.label = label
        self._prompt = prompt

    def load(self) -> SigningKey:
        return parse_private_key(self._prompt(f"Private key for {self.label}: "))


class EnvKeySource(DevelopmentOnly, KeySource):
    prompts = False

    def __init__(self, variable: str = "PRIVATE_KEY") -> None:
        self.variable = variable
        self.label = variable

    def load(self) -> SigningKey:
        value = os.getenv(self.variable, "").strip()
        if not value:
            raise MissingSetting(f"{self.variable} is not set")
        log.warning("Using key from %s: development only, not for production", self.variable)
        return parse_private_key(value)


def write_encrypted_key_file(
    path: str,
    key: SigningKey,
    passphrase: str,
    kdf: Optional[str] = None,
    iterations: Optional[int] = None,
) -> None:
    keystore = Account.encrypt(key.raw, passphrase, kdf=kdf, iterations=iterations)
    keystore["keyType"] = key.algorithm.value
    with open(path, "w", encoding="utf-8") as f:
        json.dump(keystore, f, indent=2)
    os.chmod(path, 0o600)


def resolve_operator(account_id: EntityId, source: KeySource) -> OperatorIdentity:
    key = source.load()
    log.debug("Operator %s uses %s key %s", account_id, key.algorithm.value, key.public_key_hex)
    return OperatorIdentity(account_id, key)
