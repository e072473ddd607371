from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple

from .abi import AbiFunction, AbiRegistry, ContractArtifact
from .errors import (
    MirrorRequestRejected,
    MirrorUnavailable,
    NonPayableCall,
    SubmissionError,
    SubmissionTimeout,
    UsageError,
    WrongTransaction,
)
from .gas import GasEstimator, GasPolicy, apply_policy
from .ids import AccountRef, ContractRef
from .keys import KeySource
from .mirror import MirrorClient
from .multisig import (
    FrozenTransaction,
    MultiSigConfig,
    MultiSigCoordinator,
    PendingCall,
    export_transaction,
    load_transaction,
)
from .project_constants import MAX_GAS, PROPAGATION_DELAY_S
from .results import CallResult, NetworkError, Timeout, resolve_call_result

log = logging.getLogger("execution")


@dataclass(frozen=True)
class CallRequest:
    contract: ContractRef
    artifact: str
    function: str
    args: Tuple[Any, ...] = ()
    payable_amount: int = 0
    gas_limit: Optional[int] = None
    gas_policy: GasPolicy = GasPolicy.STATE_CHANGE
    fallback_gas: Optional[int] = None
    sender: Optional[AccountRef] = None

    @property
    def description(self) -> str:
        return f"{self.artifact}.{self.function}{tuple(self.args)!r} on {self.contract}"


@dataclass(frozen=True)
class ExecutionOptions:
    multisig: Optional[MultiSigConfig] = None
    value: Optional[int] = None
    signer_override: Optional[KeySource] = None


@dataclass(frozen=True)
class ExportedTransaction:
    frozen: FrozenTransaction
    bin_path: str
    json_path: str


@dataclass(frozen=True)
class PreparedCall:
    artifact: ContractArtifact
    fn: AbiFunction
    calldata: bytes
    payable_amount: int


class ExecutionPipeline:
    """
    encode -> estimate gas -> submit (direct or multi-sig) -> receipt -> CallResult.
    Reverts come back as values; only configuration and usage problems raise.
    """

    def __init__(
        self,
        network,
        mirror: MirrorClient,
        registry: AbiRegistry,
        operator: AccountRef,
        clock: Callable[[], float] = time.time,
        propagation_delay_s: float = PROPAGATION_DELAY_S,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.network = network
        self.mirror = mirror
        self.registry = registry
        self.operator = operator
        self.coordinator = MultiSigCoordinator(network, clock=clock)
        self.propagation_delay_s = propagation_delay_s
        self._sleep = sleep

    def prepare(self, request: CallRequest, options: Optional[ExecutionOptions] = None) -> PreparedCall:
        options = options or ExecutionOptions()
        artifact = self.registry.get(request.artifact)
        fn = artifact.function(request.function, request.args)

        payable = options.value if options.value is not None else request.payable_amount
        if payable < 0:
            raise UsageError("Payable amount cannot be negative")
        if payable and not fn.payable:
            raise NonPayableCall(
                f"{artifact.name}.{fn.signature} is not payable; refusing to attach {payable} tinybars"
            )
        return PreparedCall(artifact, fn, fn.encode(request.args), payable)

    async def gas_limit(self, request: CallRequest, prepared: PreparedCall) -> int:
        if request.gas_limit:
            return min(int(request.gas_limit), MAX_GAS)
        estimator = GasEstimator(self.mirror, sender=request.sender or self.operator)
        estimate = await estimator.estimate(
            request.contract,
            prepared.fn,
            request.args,
            payable_amount=prepared.payable_amount,
            fallback=request.fallback_gas,
        )
        gas = apply_policy(estimate, request.gas_policy)
        log.debug("%s: estimate %d, limit %d (%s)", prepared.fn.name, estimate, gas, request.gas_policy.value)
        return gas

    def _pending(self, request: CallRequest, prepared: PreparedCall, gas: int) -> PendingCall:
        return PendingCall(
            contract=request.contract,
            calldata=prepared.calldata,
            gas=gas,
            payable_amount=prepared.payable_amount,
            description=request.description,
        )

    @staticmethod
    def _check_export(frozen: FrozenTransaction, request: CallRequest, prepared: PreparedCall, path: str) -> None:
        exported = (frozen.contract_id, frozen.calldata, frozen.payable_amount)
        if exported != (str(request.contract), prepared.calldata, prepared.payable_amount):
            raise WrongTransaction(
                f"{path} holds {frozen.description or frozen.transaction_id}, not {request.description}",
                hint="Re-run the same command that exported it, or export a new transaction.",
            )

    async def execute(self, request: CallRequest, options: Optional[ExecutionOptions] = None) -> CallResult:
        options = options or ExecutionOptions()
        prepared = self.prepare(request, options)
        multisig = options.multisig

        try:
            if multisig is not None and multisig.merges_export:
                # Gas was fixed when the transaction was exported
                frozen = load_transaction(multisig.transaction_file)
                self._check_export(frozen, request, prepared, multisig.transaction_file)
                receipt = await self.coordinator.merge_and_submit(
                    frozen, multisig.signature_files, multisig.threshold
                )
            else:
                gas = await self.gas_limit(request, prepared)
                pending = self._pending(request, prepared, gas)
                if multisig is None and options.signer_override is None:
                    receipt = await self.network.execute_contract(
                        request.contract, prepared.calldata, gas, prepared.payable_amount
                    )
                elif multisig is None:
                    receipt = await self.coordinator.run_interactive(pending, [options.signer_override], 1)
                elif multisig.workflow == "offline":
                    raise UsageError(
                        "Offline workflow needs --export-only first, then --signatures to submit"
                    )
                else:
                    sources = list(multisig.signers)
                    if options.signer_override is not None:
                        sources.append(options.signer_override)
                    if not sources:
                        raise UsageError("Interactive multi-sig needs --signers")
                    receipt = await self.coordinator.run_interactive(pending, sources, multisig.threshold)
        except SubmissionTimeout as e:
            return Timeout(str(e))
        except (SubmissionError, MirrorUnavailable) as e:
            return NetworkError(str(e))
        except MirrorRequestRejected as e:
            # The simulator refused the call: it would revert on-chain too
            return NetworkError(f"Gas estimation rejected: {e}")

        return await resolve_call_result(
            self.mirror,
            prepared.artifact,
            prepared.fn,
            receipt,
            delay_s=self.propagation_delay_s,
            sleep=self._sleep,
        )

    async def export(self, request: CallRequest, options: ExecutionOptions) -> ExportedTransaction:
        if options.multisig is None:
            raise UsageError("--export-only requires --multisig")
        prepared = self.prepare(request, options)
        gas = await self.gas_limit(request, prepared)
        frozen = await self.coordinator.freeze(self._pending(request, prepared, gas))
        bin_path, json_path = export_transaction(frozen, options.multisig.transaction_file)
        log.info("Exported %s to %s and %s", frozen.transaction_id, bin_path, json_path)
        return ExportedTransaction(frozen, bin_path, json_path)
