from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .abi import AbiRegistry
from .errors import LazyLottoError, VerificationFailed
from .ids import AccountRef, EntityId
from .mirror import MirrorClient

log = logging.getLogger("verify")


@dataclass(frozen=True)
class Check:
    name: str
    expected: str
    observed: str
    passed: bool


@dataclass(frozen=True)
class VerificationReport:
    checks: Tuple[Check, ...]

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def failures(self) -> List[Check]:
        return [c for c in self.checks if not c.passed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "checks": [
                {"name": c.name, "expected": c.expected, "observed": c.observed, "passed": c.passed}
                for c in self.checks
            ],
        }


def _display(address: str) -> str:
    entity = EntityId.from_evm_address(address)
    return str(entity) if entity is not None else address


# (check name, artifact, holder component, getter, expected component)
LINKAGES = (
    ("main.lazyToken", "LazyLotto", "lazyLotto", "lazyToken", "lazyToken"),
    ("main.lazyGasStation", "LazyLotto", "lazyLotto", "lazyGasStation", "lazyGasStation"),
    ("main.storageContract", "LazyLotto", "lazyLotto", "storageContract", "lazyLottoStorage"),
    ("main.poolManager", "LazyLotto", "lazyLotto", "poolManager", "poolManager"),
    ("poolManager.lazyLotto", "LazyLottoPoolManager", "poolManager", "lazyLotto", "lazyLotto"),
    ("storage.contractUser", "LazyLottoStorage", "lazyLottoStorage", "getContractUser", "lazyLotto"),
)


async def verify_deployment(
    mirror: MirrorClient,
    registry: AbiRegistry,
    contracts: Dict[str, Optional[str]],
    operator: AccountRef,
) -> VerificationReport:
    """Read every linkage back from the mirror. Never writes."""
    checks: List[Check] = []

    for name, artifact_name, holder, getter, target in LINKAGES:
        holder_id = contracts.get(holder)
        target_id = contracts.get(target)
        if not holder_id or not target_id:
            missing = holder if not holder_id else target
            checks.append(Check(name, target_id or "?", f"{missing} missing from state", False))
            continue

        expected = EntityId.parse(target_id).evm_address
        try:
            observed = await mirror.call_value(registry.get(artifact_name), holder_id, getter, sender=operator)
        except LazyLottoError as e:
            checks.append(Check(name, target_id, f"read failed: {e}", False))
            continue
        checks.append(Check(name, target_id, _display(observed), observed == expected))

    main_id = contracts.get("lazyLotto")
    if main_id:
        try:
            is_admin = await mirror.call_value(
                registry.get("LazyLotto"), main_id, "isAdmin", operator.evm_address, sender=operator
            )
            checks.append(Check("main.isAdmin(operator)", "true", str(bool(is_admin)).lower(), bool(is_admin)))
        except LazyLottoError as e:
            checks.append(Check("main.isAdmin(operator)", "true", f"read failed: {e}", False))
    else:
        checks.append(Check("main.isAdmin(operator)", "true", "lazyLotto missing from state", False))

    for c in checks:
        log.info("%s %s: expected=%s observed=%s", "ok  " if c.passed else "FAIL", c.name, c.expected, c.observed)
    return VerificationReport(tuple(checks))


def assert_verified(report: VerificationReport) -> None:
    if report.passed:
        return
    details = "; ".join(
        f"{c.name} mismatch: expected={c.expected} observed={c.observed}" for c in report.failures
    )
    raise VerificationFailed(f"Deployment verification failed: {details}", report)
