import asyncio

import pytest
from eth_abi import encode
from eth_utils import keccak

from lazy_lotto.errors import NonPayableCall, SubmissionTimeout, UsageError
from lazy_lotto.execution import CallRequest, ExecutionOptions, ExecutionPipeline
from lazy_lotto.gas import GasPolicy
from lazy_lotto.ids import AccountRef, ContractRef
from lazy_lotto.lotto import LottoService, revert_hint
from lazy_lotto.results import CallStatus, NetworkError, Revert, Success, Timeout, result_to_dict

from fakes import FakeNetwork, MirrorStub, contract_result, no_sleep

OPERATOR = AccountRef.from_id("0.0.1001")
MAIN = ContractRef.from_id("0.0.5005")
FIRST_TX = "0.0.1001-1700000000-000000001"


def _pipeline(stub, network):
    mirror = stub.client()
    return ExecutionPipeline(network, mirror, stub.registry, OPERATOR, propagation_delay_s=0, sleep=no_sleep)


def _roll(pool_id=1, **kwargs):
    kwargs.setdefault("gas_policy", GasPolicy.RANDOMNESS)
    return CallRequest(contract=MAIN, artifact="LazyLotto", function="rollAll", args=(pool_id,), **kwargs)


def test_value_on_non_payable_function_is_refused_before_any_io():
    stub, network = MirrorStub(), FakeNetwork()
    pipeline = _pipeline(stub, network)

    with pytest.raises(NonPayableCall):
        asyncio.run(pipeline.execute(_roll(), ExecutionOptions(value=5)))
    with pytest.raises(UsageError):
        pipeline.prepare(_roll(payable_amount=-1))
    assert stub.requests == []
    assert network.executed == []


def test_success_carries_values_events_and_gas_policy():
    stub, network = MirrorStub(), FakeNetwork()
    stub.on_estimate("LazyLotto", "0.0.5005", "rollAll", 200_000)
    user = "0x" + "11" * 20
    stub.on_get(f"/contracts/results/{FIRST_TX}", contract_result(
        encode(["uint256", "uint256"], [2, 7]),
        logs=[{
            "topics": [
                "0x" + keccak(text="RollCompleted(address,uint256,uint256,uint256)").hex(),
                "0x" + encode(["address"], [user]).hex(),
                "0x" + encode(["uint256"], [1]).hex(),
            ],
            "data": "0x" + encode(["uint256", "uint256"], [5, 2]).hex(),
        }],
    ))

    result = asyncio.run(_pipeline(stub, network).execute(_roll()))

    assert isinstance(result, Success)
    assert result.values == (2, 7)
    assert result.gas_used == 91_000
    assert [e.name for e in result.logs] == ["RollCompleted"]
    assert LottoService.wins_of(result) == 2
    # randomness policy: 200k x 2.0 x 1.2
    (_, _, gas, payable) = network.executed[0]
    assert (gas, payable) == (480_000, 0)

    out = result_to_dict(result)
    assert out["status"] == "SUCCESS"
    assert out["events"][0]["args"]["entriesRolled"] == 5


def test_revert_is_a_value_with_decoded_reason():
    stub, network = MirrorStub(), FakeNetwork(status="CONTRACT_REVERT_EXECUTED")
    stub.on_get(f"/contracts/results/{FIRST_TX}", contract_result(
        error_message="0x" + keccak(text="PoolOnPause()")[:4].hex()
    ))

    result = asyncio.run(_pipeline(stub, network).execute(_roll(gas_limit=400_000)))

    assert isinstance(result, Revert)
    assert result.status is CallStatus.REVERT
    assert result.reason == "PoolOnPause()"
    assert revert_hint(result) == "pool is paused"
    assert network.executed[0][2] == 400_000


def test_revert_without_mirror_record_falls_back_to_receipt_status():
    stub, network = MirrorStub(), FakeNetwork(status="INSUFFICIENT_GAS")
    result = asyncio.run(_pipeline(stub, network).execute(_roll(gas_limit=100_000)))
    assert isinstance(result, Revert)
    assert result.reason == "INSUFFICIENT_GAS"


def test_explicit_gas_is_capped():
    stub, network = MirrorStub(), FakeNetwork()
    asyncio.run(_pipeline(stub, network).execute(_roll(gas_limit=99_000_000)))
    assert network.executed[0][2] == 15_000_000


def test_simulation_rejection_becomes_network_error():
    stub, network = MirrorStub(), FakeNetwork()
    result = asyncio.run(_pipeline(stub, network).execute(_roll()))
    assert isinstance(result, NetworkError)
    assert "Gas estimation rejected" in result.message
    assert network.executed == []


def test_fallback_gas_when_simulation_fails():
    stub, network = MirrorStub(), FakeNetwork()
    asyncio.run(_pipeline(stub, network).execute(_roll(fallback_gas=800_000)))
    assert network.executed[0][2] == 1_920_000


def test_submission_timeout_becomes_timeout():
    stub, network = MirrorStub(), FakeNetwork()
    network.raise_on_execute = SubmissionTimeout("no receipt")
    result = asyncio.run(_pipeline(stub, network).execute(_roll(gas_limit=100_000)))
    assert isinstance(result, Timeout)
    assert result.ok is False
