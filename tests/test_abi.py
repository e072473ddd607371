import json

import pytest
from eth_abi import encode
from eth_utils import keccak

from lazy_lotto.abi import AbiRegistry
from lazy_lotto.errors import AbiMismatch, ArtifactMissing
from lazy_lotto.ids import ContractRef

USER = "0x" + "11" * 20


@pytest.fixture
def registry():
    return AbiRegistry()


def test_selector_and_encoding(registry):
    fn = registry.get("LazyLotto").function("buyEntry")
    assert fn.signature == "buyEntry(uint256,uint256)"
    assert fn.selector == keccak(text="buyEntry(uint256,uint256)")[:4]
    assert fn.payable
    assert fn.encode([3, 2]) == fn.selector + encode(["uint256", "uint256"], [3, 2])


def test_entity_ids_encode_as_addresses(registry):
    fn = registry.get("LazyLottoStorage").function("setContractUser")
    by_id = fn.encode(["0.0.5005"])
    assert by_id == fn.encode([ContractRef.from_id("0.0.5005")])
    assert by_id == fn.encode(["0x000000000000000000000000000000000000138d"])


def test_argument_mismatch(registry):
    fn = registry.get("LazyLotto").function("buyEntry")
    with pytest.raises(AbiMismatch):
        fn.encode([1])
    with pytest.raises(AbiMismatch):
        fn.encode(["not a number", 1])
    with pytest.raises(AbiMismatch):
        registry.get("LazyLotto").function("noSuchFunction")


def test_named_tuples_decode_to_dicts(registry):
    fn = registry.get("LazyLotto").function("getPrizePackage")
    token = "0x" + "00" * 19 + "2a"
    data = encode(["(address,uint256,address[],uint256[][])"], [(token, 5, [USER], [[1, 2]])])
    (pkg,) = fn.decode_output(data)
    assert pkg == {"token": token, "amount": 5, "nftTokens": [USER], "nftSerials": [[1, 2]]}


def test_multiple_outputs_by_name(registry):
    fn = registry.get("LazyLotto").function("rollAll")
    assert fn.decode_named(encode(["uint256", "uint256"], [2, 7])) == {"wins": 2, "offset": 7}


def test_event_decoding(registry):
    artifact = registry.get("LazyLotto")
    topic = keccak(text="RollCompleted(address,uint256,uint256,uint256)")
    event = artifact.decode_log(
        [topic, encode(["address"], [USER]), encode(["uint256"], [4])],
        encode(["uint256", "uint256"], [10, 3]),
    )
    assert event.name == "RollCompleted"
    assert event.args == {"user": USER, "poolId": 4, "entriesRolled": 10, "wins": 3}
    assert artifact.decode_log([keccak(text="Other()")], b"") is None


def test_revert_decoding(registry):
    artifact = registry.get("LazyLotto")
    assert artifact.decode_revert(keccak(text="PoolIsClosed()")[:4]) == "PoolIsClosed()"
    assert artifact.decode_revert(bytes.fromhex("08c379a0") + encode(["string"], ["nope"])) == "nope"
    assert artifact.decode_revert(bytes.fromhex("4e487b71") + encode(["uint256"], [0x11])) == "Panic(0x11)"
    assert artifact.decode_revert(b"\x01\x02") is None


def test_packaged_descriptors_are_not_deployable(registry):
    with pytest.raises(ArtifactMissing):
        registry.get_deployable("LazyLotto")
    with pytest.raises(ArtifactMissing):
        registry.get("Nonexistent")


def test_build_artifacts_take_precedence(tmp_path):
    build = tmp_path / "contracts" / "LazyLotto.sol"
    build.mkdir(parents=True)
    abi = [
        {"type": "constructor", "inputs": [{"name": "burn", "type": "uint256"}]},
        {"type": "function", "name": "paused", "stateMutability": "view", "inputs": [],
         "outputs": [{"name": "", "type": "bool"}]},
    ]
    (build / "LazyLotto.json").write_text(json.dumps({"abi": abi, "bytecode": "0x6080"}))

    artifact = AbiRegistry(str(tmp_path)).get_deployable("LazyLotto")
    assert artifact.bytecode_bytes() == b"\x60\x80"
    assert artifact.encode_constructor([5]) == encode(["uint256"], [5])
    assert set(artifact.functions) == {"paused"}


def test_deploy_gas_budgets():
    assert AbiRegistry.deploy_gas("LazyLotto") == 6_000_000
    with pytest.raises(ArtifactMissing):
        AbiRegistry.deploy_gas("Unknown")
