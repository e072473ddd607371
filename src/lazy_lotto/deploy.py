from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .abi import AbiRegistry
from .checkpoint import CheckpointStore, DeploymentState, DeploymentStep, pending_steps
from .config import REUSE_VARIABLES, EnvironmentProfile, Settings
from .errors import (
    DeploymentAborted,
    DeploymentFailed,
    CheckpointError,
    MissingSetting,
    UsageError,
    VerificationFailed,
)
from .execution import CallRequest, ExecutionPipeline
from .gas import GasPolicy
from .ids import AccountRef, ContractRef, EntityId, is_zero_address
from .keys import SigningKey, parse_signing_key
from .mirror import MirrorClient
from .network import require_mainnet_confirmation
from .project_constants import PROPAGATION_DELAY_S, TINYBARS_PER_HBAR
from .results import Success
from .verification import VerificationReport, assert_verified, verify_deployment

log = logging.getLogger("deploy")

LSH_VARIABLES = ("LSH_GEN1_TOKEN_ID", "LSH_GEN2_TOKEN_ID", "LSH_GEN1_MUTANT_TOKEN_ID")

# Gas for wiring calls, fixed as the setters are cheap and deterministic
WIRING_GAS = 500_000
LINK_GAS = 150_000
TOKEN_CREATE_GAS = 800_000


def _yes(answer: Optional[str]) -> bool:
    return (answer or "").strip().lower() in ("y", "yes")


@dataclass(frozen=True)
class DeploymentConfig:
    environment: EnvironmentProfile
    reuse: Dict[str, str] = field(default_factory=dict)
    interactive: bool = True
    include_trade_lotto: bool = False
    verify_only: bool = False
    resume: bool = False
    lazy_decimals: int = 8
    lazy_max_supply: int = 1_000_000_000
    lazy_burn_percent: int = 0
    lazy_creation_fee_hbar: int = 20
    trade_lotto_burn_percent: int = 25
    initial_lotto_jackpot: int = 2_000
    lotto_loss_increment: int = 50
    lsh_tokens: Dict[str, str] = field(default_factory=dict)
    signing_key: Optional[SigningKey] = field(default=None, repr=False)
    gas_station_funding_hbar: Optional[int] = None

    @staticmethod
    def from_settings(
        settings: Settings,
        interactive: bool = True,
        include_trade_lotto: bool = False,
        resume: bool = False,
        verify_only: bool = False,
    ) -> "DeploymentConfig":
        verify_only = verify_only or settings.verify_only
        if resume and verify_only:
            raise UsageError("--resume and --verify-only cannot be combined")

        signing_key = None
        if include_trade_lotto:
            if not settings.signing_key:
                raise MissingSetting("SIGNING_KEY is required with --include-trade-lotto")
            signing_key = parse_signing_key(settings.signing_key)
            missing = [v for v in LSH_VARIABLES if v not in settings.lsh_tokens]
            if missing:
                raise MissingSetting(f"{', '.join(missing)} required with --include-trade-lotto")

        return DeploymentConfig(
            environment=settings.environment,
            reuse=dict(settings.contracts),
            interactive=interactive,
            include_trade_lotto=include_trade_lotto,
            verify_only=verify_only,
            resume=resume,
            lazy_decimals=settings.lazy_decimals,
            lazy_max_supply=settings.lazy_max_supply,
            lazy_burn_percent=settings.lazy_burn_percent,
            lazy_creation_fee_hbar=settings.lazy_creation_fee_hbar,
            trade_lotto_burn_percent=settings.trade_lotto_burn_percent,
            initial_lotto_jackpot=settings.initial_lotto_jackpot,
            lotto_loss_increment=settings.lotto_loss_increment,
            lsh_tokens=dict(settings.lsh_tokens),
            signing_key=signing_key,
            gas_station_funding_hbar=settings.gas_station_funding_hbar,
        )


def load_initial_state(
    store: CheckpointStore,
    config: DeploymentConfig,
    prompt: Optional[Callable[[str], str]] = None,
) -> DeploymentState:
    """Pick the state a run starts from: saved (resume), offered (interactive) or fresh."""
    env_name = config.environment.name
    fresh = DeploymentState(environment=env_name)

    if config.verify_only:
        state = fresh
        for component, entity_id in config.reuse.items():
            state = state.with_contract(component, entity_id)
        return state

    saved = store.load()
    if saved is not None and saved.environment != env_name:
        raise CheckpointError(
            f"{store.path} belongs to {saved.environment}, not {env_name}",
            hint="Point DEPLOYMENT_STATE_FILE at a separate file per environment.",
        )

    if config.resume:
        if saved is None:
            log.info("No saved state found; starting fresh")
            return fresh
        log.info("Resuming from step %s", saved.current_step.value)
        return saved

    if saved is not None and not saved.is_complete:
        log.info("Found incomplete deployment from %s (last step %s)", saved.started_at, saved.current_step.value)
        if not config.interactive or prompt is None:
            raise DeploymentAborted(
                f"Incomplete deployment found in {store.path}",
                hint="Re-run with --resume, or move the state file away to start over.",
            )
        if _yes(prompt("Resume from last checkpoint? (yes/no): ")):
            return saved
    return fresh


def env_lines(state: DeploymentState) -> List[str]:
    lines = []
    for component, var in REUSE_VARIABLES.items():
        value = state.contract(component)
        if value:
            lines.append(f"{var}={value}")
    return lines


class DeploymentOrchestrator:
    """
    Drives the staged deployment. Each step reads from and returns a
    DeploymentState; the store is written after every transition so an
    interrupted run can pick up where it stopped.
    """

    def __init__(
        self,
        config: DeploymentConfig,
        store: CheckpointStore,
        network,
        mirror: MirrorClient,
        registry: AbiRegistry,
        pipeline: ExecutionPipeline,
        operator: AccountRef,
        prompt: Optional[Callable[[str], str]] = None,
        confirmed: bool = False,
        propagation_delay_s: float = PROPAGATION_DELAY_S,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.store = store
        self.network = network
        self.mirror = mirror
        self.registry = registry
        self.pipeline = pipeline
        self.operator = operator
        self.prompt = prompt if config.interactive else None
        self.confirmed = confirmed
        self.propagation_delay_s = propagation_delay_s
        self._sleep = sleep
        self.last_report: Optional[VerificationReport] = None
        self._handlers: Dict[DeploymentStep, Callable[[DeploymentState], Awaitable[DeploymentState]]] = {
            DeploymentStep.LAZY_TOKEN: self._step_lazy_token,
            DeploymentStep.GAS_STATION: self._step_gas_station,
            DeploymentStep.DELEGATE_REGISTRY: self._step_delegate_registry,
            DeploymentStep.PRNG: self._step_prng,
            DeploymentStep.STORAGE: self._step_storage,
            DeploymentStep.LAZY_LOTTO: self._step_lazy_lotto,
            DeploymentStep.CONFIGURE_STORAGE: self._step_configure_storage,
            DeploymentStep.CONFIGURE_GAS_STATION: self._step_configure_gas_station,
            DeploymentStep.FUND_GAS_STATION: self._step_fund_gas_station,
            DeploymentStep.POOL_MANAGER: self._step_pool_manager,
            DeploymentStep.LINK_POOL_MANAGER: self._step_link_pool_manager,
            DeploymentStep.TRADE_LOTTO: self._step_trade_lotto,
            DeploymentStep.CONFIGURE_TRADE_LOTTO: self._step_configure_trade_lotto,
            DeploymentStep.VERIFY: self._step_verify,
        }

    # Entry points

    def guard_mainnet(self) -> None:
        if self.config.environment.is_mainnet and not self.confirmed:
            require_mainnet_confirmation(self.config.environment, self.prompt)
            self.confirmed = True

    async def verify(self, state: DeploymentState) -> VerificationReport:
        report = await verify_deployment(self.mirror, self.registry, state.contracts, self.operator)
        self.last_report = report
        return report

    async def run(self, state: DeploymentState) -> DeploymentState:
        self.guard_mainnet()

        if self.config.verify_only:
            assert_verified(await self.verify(state))
            return state

        steps = pending_steps(state, self.config.include_trade_lotto)
        if state.is_complete:
            if not steps:
                log.info("Deployment already complete (%s)", state.completed_at)
                return state
            log.info("Extending completed deployment from step %s", steps[0].value)
            state = state.reopen(steps[0])
            steps = pending_steps(state, self.config.include_trade_lotto)

        with self.store:
            for step in steps:
                state = state.start(step)
                self.store.save(state)
                log.info("Step: %s", step.value)
                try:
                    state = await self._handlers[step](state)
                except VerificationFailed:
                    raise
                except (Exception, KeyboardInterrupt, asyncio.CancelledError) as e:
                    state = state.with_error(step, str(e) or type(e).__name__)
                    self.store.save(state)
                    log.error("Step %s failed; state saved, re-run with --resume", step.value)
                    raise
                state = state.finish(step)
                self.store.save(state)

            state = state.complete()
            self.store.save(state)
        return state

    # Helpers

    def _ask(self, question: str) -> Optional[str]:
        return self.prompt(question) if self.prompt is not None else None

    def _require(self, state: DeploymentState, component: str) -> ContractRef:
        value = state.contract(component)
        if not value:
            raise DeploymentFailed(f"{component} is not recorded in the deployment state")
        return ContractRef.from_id(value)

    def _address(self, state: DeploymentState, component: str) -> str:
        return self._require(state, component).evm_address

    async def _reuse(self, state: DeploymentState, component: str, label: str, is_token: bool) -> Optional[DeploymentState]:
        reuse = self.config.reuse.get(component)
        if not reuse:
            return None
        try:
            entity = EntityId.parse(reuse)
        except ValueError as e:
            raise UsageError(f"{REUSE_VARIABLES[component]}: {e}")

        exists = await (self.mirror.token_exists(entity) if is_token else self.mirror.contract_exists(entity))
        if not exists:
            raise DeploymentFailed(
                f"{REUSE_VARIABLES[component]}={reuse} does not exist on {self.config.environment.name}"
            )
        log.info("Found existing %s: %s", label, reuse)
        if self.prompt is not None and not _yes(self._ask(f"Use existing {label} {reuse}? (yes/no): ")):
            raise DeploymentAborted(f"Not reusing {label}", hint="Update .env and restart.")

        state = state.with_contract(component, str(entity))
        self.store.save(state)
        return state

    async def _deploy_or_reuse(
        self,
        state: DeploymentState,
        component: str,
        artifact_name: str,
        constructor_args: Callable[[], Tuple[Any, ...]] = tuple,
    ) -> DeploymentState:
        if state.contract(component):
            log.info("%s already recorded: %s", artifact_name, state.contract(component))
            return state

        reused = await self._reuse(state, component, artifact_name, is_token=False)
        if reused is not None:
            return reused

        artifact = self.registry.get_deployable(artifact_name)
        params = artifact.encode_constructor(constructor_args())
        log.info("Deploying %s...", artifact_name)
        receipt = await self.network.deploy_contract(
            artifact.bytecode_bytes(), params, self.registry.deploy_gas(artifact_name), memo=artifact_name
        )
        if receipt.status != "SUCCESS" or not receipt.entity_id:
            raise DeploymentFailed(f"{artifact_name} deployment failed: {receipt.status}")

        log.info("%s deployed: %s", artifact_name, receipt.entity_id)
        # Record the id before anything else can fail
        state = state.with_contract(component, receipt.entity_id)
        self.store.save(state)
        return state

    async def _call(
        self, state: DeploymentState, component: str, artifact: str, function: str, *args: Any,
        gas: int = WIRING_GAS, payable: int = 0,
    ):
        request = CallRequest(
            contract=self._require(state, component),
            artifact=artifact,
            function=function,
            args=tuple(args),
            payable_amount=payable,
            gas_limit=gas,
            gas_policy=GasPolicy.STATE_CHANGE,
            sender=self.operator,
        )
        return await self.pipeline.execute(request)

    # Steps

    async def _step_lazy_token(self, state: DeploymentState) -> DeploymentState:
        if not state.contract("lazyToken"):
            reused = await self._reuse(state, "lazyToken", "LAZY token", is_token=True)
            if reused is not None:
                state = reused

        if state.contract("lazyToken"):
            # A reused token keeps the creator that controls it
            if state.contract("lazySCT"):
                return state
            reused = await self._reuse(state, "lazySCT", "LAZYTokenCreator", is_token=False)
            if reused is None:
                raise DeploymentFailed(
                    f"LAZY token {state.contract('lazyToken')} is reused but no token creator is recorded",
                    hint=f"Set {REUSE_VARIABLES['lazySCT']} to the LAZYTokenCreator that controls the token.",
                )
            return reused

        state = await self._deploy_or_reuse(state, "lazySCT", "LAZYTokenCreator", lambda: (0,))

        c = self.config
        log.info("Creating LAZY fungible token...")
        result = await self._call(
            state, "lazySCT", "LAZYTokenCreator", "createFungibleWithBurn",
            "LAZY", "$LAZY", "Lazy Superheroes Token", c.lazy_max_supply, c.lazy_decimals, c.lazy_max_supply,
            gas=TOKEN_CREATE_GAS,
            payable=c.lazy_creation_fee_hbar * TINYBARS_PER_HBAR,
        )
        if not isinstance(result, Success) or not result.values:
            raise DeploymentFailed(f"Token creation failed: {getattr(result, 'reason', None) or result.status.value}")
        token = EntityId.from_evm_address(result.values[0])
        if token is None:
            token = await self.mirror.resolve_evm_address(result.values[0])
        log.info("LAZY token created: %s", token)
        state = state.with_contract("lazyToken", str(token))
        self.store.save(state)
        return state

    async def _step_gas_station(self, state: DeploymentState) -> DeploymentState:
        return await self._deploy_or_reuse(
            state, "lazyGasStation", "LazyGasStation",
            lambda: (self._address(state, "lazyToken"), self._address(state, "lazySCT")),
        )

    async def _step_delegate_registry(self, state: DeploymentState) -> DeploymentState:
        return await self._deploy_or_reuse(state, "lazyDelegateRegistry", "LazyDelegateRegistry")

    async def _step_prng(self, state: DeploymentState) -> DeploymentState:
        return await self._deploy_or_reuse(state, "prng", "PrngSystemContract")

    async def _step_storage(self, state: DeploymentState) -> DeploymentState:
        return await self._deploy_or_reuse(
            state, "lazyLottoStorage", "LazyLottoStorage",
            lambda: (self._address(state, "lazyGasStation"), self._address(state, "lazyToken")),
        )

    async def _step_lazy_lotto(self, state: DeploymentState) -> DeploymentState:
        return await self._deploy_or_reuse(
            state, "lazyLotto", "LazyLotto",
            lambda: (
                self._address(state, "lazyToken"),
                self._address(state, "lazyGasStation"),
                self._address(state, "lazyDelegateRegistry"),
                self._address(state, "prng"),
                self.config.lazy_burn_percent,
                self._address(state, "lazyLottoStorage"),
            ),
        )

    async def _step_configure_storage(self, state: DeploymentState) -> DeploymentState:
        # contractUser is write-once: only ever the main contract id recorded in state
        main = self._require(state, "lazyLotto")
        storage = self._require(state, "lazyLottoStorage")

        await self._sleep(self.propagation_delay_s)
        current = await self.mirror.call_value(
            self.registry.get("LazyLottoStorage"), storage, "getContractUser", sender=self.operator
        )
        if current == main.evm_address:
            log.info("Storage contractUser already set to %s", main)
            return state
        if not is_zero_address(current):
            raise DeploymentFailed(
                f"Storage {storage} already has contractUser {current}; expected {main}",
                hint="contractUser cannot be changed. Deploy a fresh storage contract.",
            )

        log.info("Setting %s as contract user on storage %s", main, storage)
        result = await self._call(state, "lazyLottoStorage", "LazyLottoStorage", "setContractUser", main.evm_address)
        if not result.ok:
            raise DeploymentFailed(f"setContractUser failed: {getattr(result, 'reason', None) or result.status.value}")
        return state

    async def _step_configure_gas_station(self, state: DeploymentState) -> DeploymentState:
        for component in ("lazyLottoStorage", "lazyLotto"):
            user = self._require(state, component)
            result = await self._call(state, "lazyGasStation", "LazyGasStation", "addContractUser", user.evm_address)
            if result.ok:
                log.info("%s added to LazyGasStation", user)
            else:
                log.warning("Adding %s to LazyGasStation may have failed (might already be added)", user)
        return state

    async def _step_fund_gas_station(self, state: DeploymentState) -> DeploymentState:
        amount = self.config.gas_station_funding_hbar
        if amount is None and self.prompt is not None:
            answer = (self._ask("HBAR to send to LazyGasStation (blank to skip): ") or "").strip()
            if answer:
                try:
                    amount = Decimal(answer)
                except InvalidOperation:
                    raise UsageError(f"Not an HBAR amount: {answer!r}")
        if not amount or amount <= 0:
            log.info("Skipping LazyGasStation funding")
            return state

        gas_station = self._require(state, "lazyGasStation")
        tinybars = int(Decimal(amount) * TINYBARS_PER_HBAR)
        receipt = await self.network.transfer_hbar(gas_station.id, tinybars)
        if receipt.status != "SUCCESS":
            raise DeploymentFailed(f"Funding LazyGasStation failed: {receipt.status}")
        log.info("Sent %s HBAR to LazyGasStation %s", amount, gas_station)
        return state

    async def _step_pool_manager(self, state: DeploymentState) -> DeploymentState:
        return await self._deploy_or_reuse(
            state, "poolManager", "LazyLottoPoolManager",
            lambda: (
                self._address(state, "lazyToken"),
                self._address(state, "lazyGasStation"),
                self._address(state, "lazyDelegateRegistry"),
            ),
        )

    async def _step_link_pool_manager(self, state: DeploymentState) -> DeploymentState:
        main = self._require(state, "lazyLotto")
        manager = self._require(state, "poolManager")
        await self._sleep(self.propagation_delay_s)

        linked = await self.mirror.call_value(
            self.registry.get("LazyLottoPoolManager"), manager, "lazyLotto", sender=self.operator
        )
        if linked != main.evm_address:
            result = await self._call(
                state, "poolManager", "LazyLottoPoolManager", "setLazyLotto", main.evm_address, gas=LINK_GAS
            )
            if not result.ok:
                raise DeploymentFailed(f"setLazyLotto failed: {getattr(result, 'reason', None) or result.status.value}")

        linked = await self.mirror.call_value(
            self.registry.get("LazyLotto"), main, "poolManager", sender=self.operator
        )
        if linked != manager.evm_address:
            result = await self._call(
                state, "lazyLotto", "LazyLotto", "setPoolManager", manager.evm_address, gas=LINK_GAS
            )
            if not result.ok:
                raise DeploymentFailed(f"setPoolManager failed: {getattr(result, 'reason', None) or result.status.value}")
        return state

    async def _step_trade_lotto(self, state: DeploymentState) -> DeploymentState:
        c = self.config
        if c.signing_key is None:
            raise MissingSetting("SIGNING_KEY is required to deploy LazyTradeLotto")
        scale = 10 ** c.lazy_decimals
        return await self._deploy_or_reuse(
            state, "tradeLotto", "LazyTradeLotto",
            lambda: (
                self._address(state, "prng"),
                self._address(state, "lazyGasStation"),
                self._address(state, "lazyDelegateRegistry"),
                EntityId.parse(c.lsh_tokens["LSH_GEN1_TOKEN_ID"]).evm_address,
                EntityId.parse(c.lsh_tokens["LSH_GEN2_TOKEN_ID"]).evm_address,
                EntityId.parse(c.lsh_tokens["LSH_GEN1_MUTANT_TOKEN_ID"]).evm_address,
                c.signing_key.evm_address,
                c.initial_lotto_jackpot * scale,
                c.lotto_loss_increment * scale,
                c.trade_lotto_burn_percent,
            ),
        )

    async def _step_configure_trade_lotto(self, state: DeploymentState) -> DeploymentState:
        trade = self._require(state, "tradeLotto")
        result = await self._call(state, "lazyGasStation", "LazyGasStation", "addContractUser", trade.evm_address)
        if not result.ok:
            log.warning("Adding LazyTradeLotto to LazyGasStation may have failed (might already be added)")
        return state

    async def _step_verify(self, state: DeploymentState) -> DeploymentState:
        await self._sleep(self.propagation_delay_s)
        assert_verified(await self.verify(state))
        return state
