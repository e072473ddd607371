import asyncio
import json

import pytest

from lazy_lotto.abi import AbiRegistry
from lazy_lotto.checkpoint import CheckpointStore, DeploymentState, DeploymentStep
from lazy_lotto.config import Settings, resolve_environment
from lazy_lotto.deploy import DeploymentConfig, DeploymentOrchestrator, env_lines, load_initial_state
from lazy_lotto.errors import (
    CheckpointError,
    DeploymentAborted,
    DeploymentFailed,
    MainnetConfirmationRequired,
    SubmissionError,
    UsageError,
    VerificationFailed,
)
from lazy_lotto.ids import AccountRef
from lazy_lotto.keys import KeyAlgorithm, SigningKey
from lazy_lotto.project_constants import TINYBARS_PER_HBAR

from fakes import Answers, FakeChain, address_of, never_prompt, no_sleep, write_artifacts

OPERATOR = AccountRef.from_id("0.0.1001")
CORE_ORDER = [
    "LAZYTokenCreator",
    "LazyGasStation",
    "LazyDelegateRegistry",
    "PrngSystemContract",
    "LazyLottoStorage",
    "LazyLotto",
    "LazyLottoPoolManager",
]


@pytest.fixture
def chain(tmp_path):
    artifacts = tmp_path / "artifacts"
    artifacts.mkdir()
    return FakeChain(AbiRegistry(write_artifacts(artifacts)))


@pytest.fixture
def store(tmp_path):
    return CheckpointStore(str(tmp_path / "deployment-state.json"))


def _config(env="TEST", **kw):
    kw.setdefault("interactive", False)
    return DeploymentConfig(environment=resolve_environment(env), **kw)


def _orchestrator(chain, store, config, prompt=None):
    return DeploymentOrchestrator(
        config, store, chain, chain, chain.registry, chain, OPERATOR,
        prompt=prompt, propagation_delay_s=0, sleep=no_sleep,
    )


def _run(chain, store, config, prompt=None, state=None):
    state = state or load_initial_state(store, config, prompt)
    return asyncio.run(_orchestrator(chain, store, config, prompt).run(state))


def test_full_deployment(chain, store, tmp_path):
    state = _run(chain, store, _config())

    assert chain.deployed == CORE_ORDER
    assert state.is_complete
    c = state.contracts
    assert c["lazySCT"] == "0.0.5000"
    assert c["lazyToken"] == "0.0.5001"
    assert c["lazyLotto"] == "0.0.5006"
    assert c["poolManager"] == "0.0.5007"
    assert c["tradeLotto"] is None

    # Wiring
    assert chain.contracts["0.0.5005"]["getContractUser"] == address_of("0.0.5006")
    assert chain.contracts["0.0.5007"]["lazyLotto"] == address_of("0.0.5006")
    assert chain.contracts["0.0.5006"]["poolManager"] == address_of("0.0.5007")
    users = [args[0] for _, _, args in chain.called("addContractUser")]
    assert users == [address_of("0.0.5005"), address_of("0.0.5006")]

    # Token creation pays the creation fee and uses the configured supply
    (create,) = chain.called("createFungibleWithBurn")
    assert create[2][:3] == ("LAZY", "$LAZY", "Lazy Superheroes Token")

    saved = json.loads((tmp_path / "deployment-state.json").read_text())
    assert saved["currentStep"] == "complete"
    assert saved["completedAt"]
    assert "verify" in saved["completedSteps"]
    assert not (tmp_path / "deployment-state.json.lock").exists()

    assert "LAZY_TOKEN_ID=0.0.5001" in env_lines(state)
    assert "LAZY_LOTTO_CONTRACT_ID=0.0.5006" in env_lines(state)


def test_failed_step_is_resumed_without_redeploying(chain, store):
    chain.fail_deploy = "LazyLotto"
    with pytest.raises(SubmissionError):
        _run(chain, store, _config())

    saved = store.load()
    assert saved.current_step is DeploymentStep.LAZY_LOTTO
    assert saved.contract("lazyLottoStorage") == "0.0.5005"
    assert saved.contract("lazyLotto") is None
    assert saved.errors[-1].step == "lazy_lotto"
    assert "INSUFFICIENT_GAS" in saved.errors[-1].error

    chain.fail_deploy = None
    before = list(chain.deployed)
    state = _run(chain, store, _config(resume=True))

    assert chain.deployed[len(before):] == ["LazyLotto", "LazyLottoPoolManager"]
    assert state.is_complete
    assert state.contract("lazyLottoStorage") == "0.0.5005"


def test_interrupt_saves_state(chain, store):
    chain.interrupt_deploy = "PrngSystemContract"
    with pytest.raises(KeyboardInterrupt):
        _run(chain, store, _config())

    saved = store.load()
    assert saved.current_step is DeploymentStep.PRNG
    assert saved.contract("lazyDelegateRegistry") == "0.0.5003"
    assert saved.errors[-1].error == "KeyboardInterrupt"


def test_mainnet_without_confirmation_does_nothing(chain, store, tmp_path):
    config = _config("MAIN")
    with pytest.raises(MainnetConfirmationRequired):
        _run(chain, store, config, state=DeploymentState("MAIN"))

    assert chain.deployed == []
    assert not (tmp_path / "deployment-state.json").exists()


def test_mainnet_wrong_confirmation(chain, store):
    config = _config("MAIN", interactive=True)
    with pytest.raises(MainnetConfirmationRequired):
        _run(chain, store, config, prompt=Answers("yes"), state=DeploymentState("MAIN"))
    assert chain.deployed == []


def test_completed_run_is_a_no_op(chain, store):
    state = _run(chain, store, _config())
    deployed = list(chain.deployed)

    again = _run(chain, store, _config(), state=state)

    assert chain.deployed == deployed
    assert again.contracts == state.contracts


def test_completed_checkpoint_starts_fresh(chain, store):
    _run(chain, store, _config())
    state = load_initial_state(store, _config())
    assert state.current_step is DeploymentStep.INIT
    assert state.contract("lazyLotto") is None


def test_incomplete_checkpoint_needs_resume_when_non_interactive(chain, store):
    store.save(DeploymentState("TEST").finish(DeploymentStep.LAZY_TOKEN))
    with pytest.raises(DeploymentAborted):
        load_initial_state(store, _config())


def test_incomplete_checkpoint_offered_interactively(store):
    saved = DeploymentState("TEST").finish(DeploymentStep.LAZY_TOKEN)
    store.save(saved)

    answers = Answers("yes")
    assert load_initial_state(store, _config(interactive=True), answers) == saved
    assert "Resume" in answers.questions[0]

    fresh = load_initial_state(store, _config(interactive=True), Answers("no"))
    assert fresh.completed_steps == ()


def test_checkpoint_from_another_environment(store):
    store.save(DeploymentState("MAIN"))
    with pytest.raises(CheckpointError):
        load_initial_state(store, _config(resume=True))


def test_resume_and_verify_only_conflict():
    settings = Settings.from_env("TEST")
    with pytest.raises(UsageError):
        DeploymentConfig.from_settings(settings, resume=True, verify_only=True)


def test_existing_contracts_are_reused(chain, store):
    sct = chain.add_contract("LAZYTokenCreator")
    token = chain._new_id()
    chain.tokens.add(token)
    registry = chain.add_contract("LazyDelegateRegistry")

    state = _run(chain, store, _config(reuse={
        "lazySCT": sct, "lazyToken": token, "lazyDelegateRegistry": registry,
    }))

    assert "LAZYTokenCreator" not in chain.deployed
    assert "LazyDelegateRegistry" not in chain.deployed
    assert chain.called("createFungibleWithBurn") == []
    assert state.contract("lazyToken") == token
    assert state.contract("lazyDelegateRegistry") == registry
    assert state.is_complete


def test_reused_token_keeps_its_creator(chain, store):
    sct = chain.add_contract("LAZYTokenCreator")
    token = chain._new_id()
    chain.tokens.add(token)

    state = _run(chain, store, _config(reuse={"lazyToken": token, "lazySCT": sct}))

    assert "LAZYTokenCreator" not in chain.deployed
    assert state.contract("lazySCT") == sct
    gas_station = chain.contracts[state.contract("lazyGasStation")]
    assert gas_station["lazySCT"] == address_of(sct)


def test_reused_token_without_creator_is_refused(chain, store):
    token = chain._new_id()
    chain.tokens.add(token)

    with pytest.raises(DeploymentFailed) as info:
        _run(chain, store, _config(reuse={"lazyToken": token}))

    assert chain.deployed == []
    assert "LAZY_SCT_CONTRACT_ID" in info.value.hint
    saved = store.load()
    assert saved.current_step is DeploymentStep.LAZY_TOKEN
    assert saved.contract("lazyToken") == token
    assert saved.contract("lazySCT") is None


def test_reuse_is_confirmed_interactively(chain, store):
    prng = chain.add_contract("PrngSystemContract")
    answers = Answers("yes", "")
    _run(chain, store, _config(interactive=True, reuse={"prng": prng}), prompt=answers)

    assert "PrngSystemContract" not in chain.deployed
    assert prng in answers.questions[0]
    assert "LazyGasStation" in answers.questions[1]
    assert chain.transfers == []


def test_reuse_of_missing_contract_fails(chain, store):
    with pytest.raises(DeploymentFailed):
        _run(chain, store, _config(reuse={"prng": "0.0.999"}))
    assert "PrngSystemContract" not in chain.deployed


def test_storage_with_foreign_contract_user_is_refused(chain, store):
    storage = chain.add_contract("LazyLottoStorage", {"getContractUser": address_of("0.0.777")})

    with pytest.raises(DeploymentFailed) as info:
        _run(chain, store, _config(reuse={"lazyLottoStorage": storage}))

    assert "contractUser" in str(info.value)
    assert chain.called("setContractUser") == []
    assert store.load().current_step is DeploymentStep.CONFIGURE_STORAGE


def test_gas_station_funding(chain, store):
    state = _run(chain, store, _config(gas_station_funding_hbar=5))
    assert chain.transfers == [(state.contract("lazyGasStation"), 5 * TINYBARS_PER_HBAR)]


def test_trade_lotto_deployment(chain, store):
    key = SigningKey(KeyAlgorithm.ECDSA, bytes(range(1, 33)))
    config = _config(
        include_trade_lotto=True,
        signing_key=key,
        lsh_tokens={
            "LSH_GEN1_TOKEN_ID": "0.0.48461",
            "LSH_GEN2_TOKEN_ID": "0.0.48462",
            "LSH_GEN1_MUTANT_TOKEN_ID": "0.0.48463",
        },
        initial_lotto_jackpot=10,
        lazy_decimals=1,
    )
    state = _run(chain, store, config)

    assert chain.deployed[-1] == "LazyTradeLotto"
    trade = state.contract("tradeLotto")
    values = chain.contracts[trade]
    assert values["systemWallet"] == key.evm_address
    assert values["lshGen2"] == address_of("0.0.48462")
    assert values["initialJackpot"] == 100
    users = [args[0] for _, _, args in chain.called("addContractUser")]
    assert users[-1] == address_of(trade)


def test_resuming_completed_run_keeps_completion_time(chain, store):
    first = _run(chain, store, _config())
    deployed = list(chain.deployed)

    again = _run(chain, store, _config(resume=True))

    assert chain.deployed == deployed
    assert again.completed_at == first.completed_at
    assert store.load().completed_at == first.completed_at


def test_completed_run_extended_with_trade_lotto(chain, store):
    first = _run(chain, store, _config())
    core = dict(first.contracts)

    config = _config(
        resume=True,
        include_trade_lotto=True,
        signing_key=SigningKey(KeyAlgorithm.ECDSA, bytes(range(1, 33))),
        lsh_tokens={
            "LSH_GEN1_TOKEN_ID": "0.0.48461",
            "LSH_GEN2_TOKEN_ID": "0.0.48462",
            "LSH_GEN1_MUTANT_TOKEN_ID": "0.0.48463",
        },
    )
    state = _run(chain, store, config)

    assert chain.deployed == CORE_ORDER + ["LazyTradeLotto"]
    assert state.is_complete
    assert state.contract("tradeLotto")
    assert {k: v for k, v in state.contracts.items() if k != "tradeLotto"} == {
        k: v for k, v in core.items() if k != "tradeLotto"
    }
    saved = store.load()
    assert saved.completed_steps[-4:] == ("trade_lotto", "configure_trade_lotto", "verify", "complete")
    assert saved.completed_at


def test_verify_only_reads_without_writing(chain, store, tmp_path):
    state = _run(chain, store, _config())
    deployed = list(chain.deployed)
    calls = list(chain.calls)
    (tmp_path / "deployment-state.json").unlink()

    config = _config(verify_only=True, reuse={k: v for k, v in state.contracts.items() if v})
    orchestrator = _orchestrator(chain, store, config)
    asyncio.run(orchestrator.run(load_initial_state(store, config, never_prompt)))

    assert orchestrator.last_report.passed
    assert chain.deployed == deployed
    assert chain.calls == calls
    assert not (tmp_path / "deployment-state.json").exists()

    chain.contracts[state.contract("poolManager")]["lazyLotto"] = address_of("0.0.1")
    with pytest.raises(VerificationFailed):
        asyncio.run(orchestrator.run(load_initial_state(store, config)))
    failed = [c.name for c in orchestrator.last_report.failures]
    assert failed == ["poolManager.lazyLotto"]
