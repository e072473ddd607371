import logging
import os

import pytest

from lazy_lotto.errors import InvalidKeyAlgorithm, InvalidOperator, MissingSetting
from lazy_lotto.ids import EntityId
from lazy_lotto.keys import (
    ECDSA_DER_PREFIX,
    ED25519_DER_PREFIX,
    EncryptedFileKeySource,
    EnvKeySource,
    KeyAlgorithm,
    SigningKey,
    parse_private_key,
    parse_signing_key,
    resolve_operator,
    verify_signature,
    write_encrypted_key_file,
)

RAW = bytes(range(1, 33))


def test_parse_der_and_hex_forms():
    assert parse_private_key(ED25519_DER_PREFIX + RAW.hex()).algorithm is KeyAlgorithm.ED25519
    assert parse_private_key(ECDSA_DER_PREFIX + RAW.hex()).algorithm is KeyAlgorithm.ECDSA
    assert parse_private_key("0x" + RAW.hex()).algorithm is KeyAlgorithm.ECDSA
    assert parse_private_key(RAW.hex()).algorithm is KeyAlgorithm.ED25519
    assert parse_private_key(RAW.hex(), KeyAlgorithm.ECDSA).algorithm is KeyAlgorithm.ECDSA
    assert parse_private_key(RAW.hex().upper()).raw == RAW


@pytest.mark.parametrize("text", ["0x1234", "zz" * 32, ED25519_DER_PREFIX + "00" * 31])
def test_parse_rejects_bad_keys(text):
    with pytest.raises(InvalidOperator):
        parse_private_key(text)


def test_empty_key():
    with pytest.raises(MissingSetting):
        parse_private_key("  ")


def test_signing_key_must_be_ecdsa():
    assert parse_signing_key(RAW.hex()).algorithm is KeyAlgorithm.ECDSA
    with pytest.raises(InvalidKeyAlgorithm):
        parse_signing_key(ED25519_DER_PREFIX + RAW.hex())


def test_only_ecdsa_has_an_evm_address():
    ecdsa = SigningKey(KeyAlgorithm.ECDSA, RAW)
    assert ecdsa.evm_address.startswith("0x") and len(ecdsa.evm_address) == 42
    with pytest.raises(InvalidKeyAlgorithm):
        SigningKey(KeyAlgorithm.ED25519, RAW).evm_address


@pytest.mark.parametrize("algorithm", list(KeyAlgorithm))
def test_signatures_verify_against_the_public_key(algorithm):
    key = SigningKey(algorithm, RAW)
    body = b"transaction body bytes"
    signature = key.sign(body)

    assert verify_signature(algorithm, key.public_key_bytes, body, signature)
    assert not verify_signature(algorithm, key.public_key_bytes, body + b"!", signature)

    other = SigningKey(algorithm, bytes(range(2, 34)))
    assert not verify_signature(algorithm, other.public_key_bytes, body, signature)


def test_der_export_keeps_algorithm():
    key = SigningKey(KeyAlgorithm.ED25519, RAW)
    assert parse_private_key(key.to_der_hex()) == key


@pytest.mark.parametrize("algorithm", list(KeyAlgorithm))
def test_encrypted_key_file(tmp_path, algorithm):
    path = str(tmp_path / "operator.json")
    key = SigningKey(algorithm, RAW)
    write_encrypted_key_file(path, key, "correct horse", kdf="pbkdf2", iterations=2)

    assert oct(os.stat(path).st_mode & 0o777) == "0o600"
    loaded = EncryptedFileKeySource(path, passphrase="correct horse").load()
    assert loaded == key


def test_encrypted_key_file_prompts_and_rejects_wrong_passphrase(tmp_path):
    path = str(tmp_path / "operator.json")
    write_encrypted_key_file(path, SigningKey(KeyAlgorithm.ECDSA, RAW), "secret", kdf="pbkdf2", iterations=2)

    asked = []

    def prompt(question):
        asked.append(question)
        return "wrong"

    source = EncryptedFileKeySource(path, prompt=prompt)
    assert source.prompts
    with pytest.raises(InvalidOperator):
        source.load()
    assert asked == ["Passphrase for operator.json: "]


def test_missing_key_file(tmp_path):
    with pytest.raises(InvalidOperator):
        EncryptedFileKeySource(str(tmp_path / "nope.json"), passphrase="x").load()


def test_env_key_source_is_development_only(monkeypatch, caplog):
    source = EnvKeySource("PRIVATE_KEY")
    assert not source.production
    with pytest.raises(MissingSetting):
        source.load()

    monkeypatch.setenv("PRIVATE_KEY", "0x" + RAW.hex())
    with caplog.at_level(logging.WARNING):
        identity = resolve_operator(EntityId.parse("0.0.1001"), source)
    assert identity.key.algorithm is KeyAlgorithm.ECDSA
    assert identity.account_id == EntityId(0, 0, 1001)
    assert "development only" in caplog.text
