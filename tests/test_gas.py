import asyncio

import pytest

from lazy_lotto.errors import MirrorRequestRejected
from lazy_lotto.gas import GasEstimator, GasPolicy, apply_policy
from lazy_lotto.project_constants import MAX_GAS

from fakes import MirrorStub


@pytest.mark.parametrize(
    "estimate,policy,expected",
    [
        (100_000, GasPolicy.STATE_CHANGE, 120_000),
        (100_000, GasPolicy.RANDOMNESS, 240_000),
        (100_000, GasPolicy.RAW, 100_000),
        (10_000_000, GasPolicy.STATE_CHANGE, 12_000_000),
        (10_000_000, GasPolicy.RANDOMNESS, MAX_GAS),
        (20_000_000, GasPolicy.DEPLOY, MAX_GAS),
    ],
)
def test_policies(estimate, policy, expected):
    assert apply_policy(estimate, policy) == expected


def _estimate(stub, fallback=None):
    fn = stub.registry.get("LazyLotto").function("rollAll")

    async def run():
        async with stub.client() as mirror:
            return await GasEstimator(mirror, sender="0.0.1001").estimate("0.0.5005", fn, [1], fallback=fallback)

    return asyncio.run(run())


def test_estimate_comes_from_the_simulator():
    stub = MirrorStub()
    stub.on_estimate("LazyLotto", "0.0.5005", "rollAll", 321_000)
    assert _estimate(stub) == 321_000
    assert stub.requests[0].method == "POST"


def test_rejected_simulation_uses_fallback():
    assert _estimate(MirrorStub(), fallback=800_000) == 800_000


def test_rejected_simulation_without_fallback_raises():
    with pytest.raises(MirrorRequestRejected):
        _estimate(MirrorStub())
