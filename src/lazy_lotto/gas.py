from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional, Sequence

from .abi import AbiFunction
from .errors import MirrorRequestRejected, MirrorUnavailable
from .mirror import Addressable, MirrorClient
from .project_constants import (
    MAX_GAS,
    RANDOMNESS_MULTIPLIER,
    RANDOMNESS_SAFETY_MARGIN,
    STATE_CHANGE_MULTIPLIER,
)

log = logging.getLogger("gas")


class GasPolicy(str, Enum):
    STATE_CHANGE = "state_change"
    RANDOMNESS = "randomness"
    DEPLOY = "deploy"
    RAW = "raw"


def apply_policy(estimate: int, policy: GasPolicy) -> int:
    if policy is GasPolicy.STATE_CHANGE:
        gas = estimate * STATE_CHANGE_MULTIPLIER
    elif policy is GasPolicy.RANDOMNESS:
        gas = estimate * RANDOMNESS_MULTIPLIER * RANDOMNESS_SAFETY_MARGIN
    else:
        gas = estimate
    return min(int(gas), MAX_GAS)


class GasEstimator:
    """
    Asks the mirror's simulator for a gas figure. Multipliers are the caller's
    business (see apply_policy); this only returns what the mirror says, or the
    caller's fallback when the simulation cannot run.
    """

    def __init__(self, mirror: MirrorClient, sender: Optional[Addressable] = None) -> None:
        self.mirror = mirror
        self.sender = sender

    async def estimate(
        self,
        contract: Addressable,
        fn: AbiFunction,
        args: Sequence[Any],
        payable_amount: int = 0,
        fallback: Optional[int] = None,
    ) -> int:
        try:
            raw = await self.mirror.call(
                contract,
                fn.encode(args),
                sender=self.sender,
                estimate=True,
                value=payable_amount,
            )
        except (MirrorRequestRejected, MirrorUnavailable) as e:
            if fallback is None:
                raise
            log.warning("Gas estimate for %s failed (%s); using fallback %d", fn.name, e, fallback)
            return fallback

        estimate = int.from_bytes(raw, "big") if raw else 0
        if estimate <= 0:
            if fallback is None:
                raise MirrorRequestRejected(f"Mirror returned no gas estimate for {fn.name}")
            return fallback
        log.debug("Gas estimate for %s: %d", fn.name, estimate)
        return estimate
