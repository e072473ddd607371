import pytest

from lazy_lotto.ids import (
    ContractRef,
    EntityId,
    is_long_zero,
    is_zero_address,
    normalize_evm_address,
    parse_entity_or_address,
    to_mirror_transaction_id,
)


def test_entity_id_to_long_zero_address():
    assert EntityId.parse("0.0.1234").evm_address == "0x00000000000000000000000000000000000004d2"


def test_long_zero_address_decodes_locally():
    entity = EntityId.from_evm_address("0x00000000000000000000000000000000000004D2")
    assert entity == EntityId(0, 0, 1234)
    assert str(entity) == "0.0.1234"


def test_alias_address_is_not_decoded():
    alias = "0x8a6f1c9e2b3d4f5a6b7c8d9e0f1a2b3c4d5e6f70"
    assert not is_long_zero(alias)
    assert EntityId.from_evm_address(alias) is None


def test_large_entity_numbers_round_trip():
    entity = EntityId(0, 0, 2**40 + 7)
    assert EntityId.from_evm_address(entity.evm_address) == entity


@pytest.mark.parametrize("text", ["0.0", "abc", "0.0.x", "1.2.3.4", ""])
def test_parse_rejects_malformed_ids(text):
    with pytest.raises(ValueError):
        EntityId.parse(text)


def test_normalize_adds_prefix_and_lowercases():
    assert normalize_evm_address("ABCDEF0000000000000000000000000000000001") == (
        "0xabcdef0000000000000000000000000000000001"
    )
    with pytest.raises(ValueError):
        normalize_evm_address("0x1234")


def test_zero_address_means_hbar():
    assert is_zero_address("0x" + "0" * 40)
    assert not is_zero_address(ContractRef.from_id("0.0.1").evm_address)


def test_mirror_transaction_id_format():
    assert to_mirror_transaction_id("0.0.1001@1700000000.000000123") == "0.0.1001-1700000000-000000123"
    assert to_mirror_transaction_id("0.0.1001@1700000000.5") == "0.0.1001-1700000000-000000005"
    assert to_mirror_transaction_id("0.0.1001-1700000000-000000123") == "0.0.1001-1700000000-000000123"


def test_parse_entity_or_address():
    assert parse_entity_or_address(" 0.0.5005 ") == EntityId(0, 0, 5005)
    assert parse_entity_or_address("0x000000000000000000000000000000000000138D") == EntityId(0, 0, 5005)
    alias = "AB" * 20
    assert parse_entity_or_address(alias) == "0x" + alias.lower()
    for bad in ("", "0.0", "0x1234", "lotto"):
        with pytest.raises(ValueError):
            parse_entity_or_address(bad)
