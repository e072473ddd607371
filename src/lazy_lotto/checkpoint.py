from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import CheckpointError, CheckpointLocked

log = logging.getLogger("checkpoint")


class DeploymentStep(str, Enum):
    INIT = "init"
    LAZY_TOKEN = "lazy_token"
    GAS_STATION = "gas_station"
    DELEGATE_REGISTRY = "delegate_registry"
    PRNG = "prng"
    STORAGE = "storage"
    LAZY_LOTTO = "lazy_lotto"
    CONFIGURE_STORAGE = "configure_storage"
    CONFIGURE_GAS_STATION = "configure_gas_station"
    FUND_GAS_STATION = "fund_gas_station"
    POOL_MANAGER = "pool_manager"
    LINK_POOL_MANAGER = "link_pool_manager"
    TRADE_LOTTO = "trade_lotto"
    CONFIGURE_TRADE_LOTTO = "configure_trade_lotto"
    VERIFY = "verify"
    COMPLETE = "complete"

    @property
    def position(self) -> int:
        return STEP_ORDER.index(self)


STEP_ORDER: Tuple[DeploymentStep, ...] = tuple(DeploymentStep)
TRADE_LOTTO_STEPS = (DeploymentStep.TRADE_LOTTO, DeploymentStep.CONFIGURE_TRADE_LOTTO)

# Components tracked in the checkpoint, in deployment order
COMPONENTS = (
    "lazyToken",
    "lazySCT",
    "lazyGasStation",
    "lazyDelegateRegistry",
    "prng",
    "lazyLottoStorage",
    "lazyLotto",
    "poolManager",
    "tradeLotto",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ErrorEntry:
    step: str
    error: str
    timestamp: str


@dataclass(frozen=True)
class DeploymentState:
    """Immutable snapshot; every transition returns a new state."""

    environment: str
    current_step: DeploymentStep = DeploymentStep.INIT
    started_at: str = field(default_factory=_now)
    completed_at: Optional[str] = None
    contracts: Dict[str, Optional[str]] = field(default_factory=lambda: {c: None for c in COMPONENTS})
    errors: Tuple[ErrorEntry, ...] = ()
    completed_steps: Tuple[str, ...] = ()

    @property
    def is_complete(self) -> bool:
        return self.current_step is DeploymentStep.COMPLETE

    def is_done(self, step: DeploymentStep) -> bool:
        return step.value in self.completed_steps

    def contract(self, component: str) -> Optional[str]:
        return self.contracts.get(component)

    def with_contract(self, component: str, entity_id: Optional[str]) -> "DeploymentState":
        contracts = dict(self.contracts)
        contracts[component] = entity_id
        return replace(self, contracts=contracts)

    def start(self, step: DeploymentStep) -> "DeploymentState":
        if step.position < self.current_step.position:
            raise CheckpointError(
                f"Refusing to move back from {self.current_step.value} to {step.value}"
            )
        return replace(self, current_step=step)

    def finish(self, step: DeploymentStep) -> "DeploymentState":
        done = self.completed_steps if self.is_done(step) else self.completed_steps + (step.value,)
        return replace(self, current_step=max(step, self.current_step, key=lambda s: s.position), completed_steps=done)

    def complete(self) -> "DeploymentState":
        return replace(
            self,
            current_step=DeploymentStep.COMPLETE,
            completed_at=_now(),
            completed_steps=self.completed_steps
            + (() if self.is_done(DeploymentStep.COMPLETE) else (DeploymentStep.COMPLETE.value,)),
        )

    def reopen(self, step: DeploymentStep) -> "DeploymentState":
        """Reopen a completed deployment at `step` so newly enabled steps can run.

        Verification is dropped from the completed steps and runs again.
        """
        if not self.is_complete:
            raise CheckpointError("Only a completed deployment can be reopened")
        dropped = (DeploymentStep.VERIFY.value, DeploymentStep.COMPLETE.value)
        return replace(
            self,
            current_step=step,
            completed_at=None,
            completed_steps=tuple(s for s in self.completed_steps if s not in dropped),
        )

    def with_error(self, step: DeploymentStep, message: str) -> "DeploymentState":
        return replace(self, errors=self.errors + (ErrorEntry(step.value, message, _now()),))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currentStep": self.current_step.value,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "environment": self.environment,
            "contracts": dict(self.contracts),
            "errors": [{"step": e.step, "error": e.error, "timestamp": e.timestamp} for e in self.errors],
            "completedSteps": list(self.completed_steps),
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "DeploymentState":
        try:
            contracts = {c: None for c in COMPONENTS}
            contracts.update(data.get("contracts") or {})
            return DeploymentState(
                environment=data["environment"],
                current_step=DeploymentStep(data["currentStep"]),
                started_at=data.get("startedAt") or _now(),
                completed_at=data.get("completedAt"),
                contracts=contracts,
                errors=tuple(
                    ErrorEntry(e["step"], e["error"], e["timestamp"]) for e in data.get("errors", [])
                ),
                completed_steps=tuple(data.get("completedSteps", [])),
            )
        except (KeyError, ValueError, TypeError) as e:
            raise CheckpointError(f"Checkpoint file is malformed: {e}")


class CheckpointStore:
    """
    Single JSON file, written atomically (temp file + rename). A sibling .lock
    file created with O_EXCL keeps two orchestrators off the same state.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self.lock_path = path + ".lock"
        self._locked = False

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def load(self) -> Optional[DeploymentState]:
        if not self.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise CheckpointError(f"Cannot read checkpoint {self.path}: {e}")
        return DeploymentState.from_dict(data)

    def save(self, state: DeploymentState) -> None:
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, self.path)
        log.debug("Checkpoint saved at %s", state.current_step.value)

    def acquire(self) -> None:
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            raise CheckpointLocked(f"{self.lock_path} exists")
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        self._locked = True

    def release(self) -> None:
        if self._locked:
            try:
                os.remove(self.lock_path)
            except FileNotFoundError:
                pass
            self._locked = False

    def __enter__(self) -> "CheckpointStore":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()


def pending_steps(state: DeploymentState, include_trade_lotto: bool) -> List[DeploymentStep]:
    steps = []
    for step in STEP_ORDER:
        if step in (DeploymentStep.INIT, DeploymentStep.COMPLETE):
            continue
        if step in TRADE_LOTTO_STEPS and not include_trade_lotto:
            continue
        if not state.is_done(step):
            steps.append(step)
    return steps
