import pytest

from lazy_lotto.config import Settings, resolve_environment
from lazy_lotto.errors import ConfigurationError, InvalidEnvironment, InvalidOperator, MissingSetting
from lazy_lotto.ids import EntityId


@pytest.mark.parametrize(
    "name,canonical,kind",
    [
        ("test", "TEST", "testnet"),
        ("TESTNET", "TEST", "testnet"),
        ("main", "MAIN", "mainnet"),
        ("Preview", "PREVIEW", "previewnet"),
        ("local", "LOCAL", "local"),
    ],
)
def test_environment_aliases(name, canonical, kind):
    profile = resolve_environment(name)
    assert profile.name == canonical
    assert profile.network_kind == kind
    assert profile.is_mainnet == (kind == "mainnet")


def test_unknown_environment():
    with pytest.raises(InvalidEnvironment):
        resolve_environment("staging")


def test_local_profile_has_a_node_and_mirror_override():
    profile = resolve_environment("LOCAL", "http://mirror.local:5551/")
    assert profile.mirror_url == "http://mirror.local:5551"
    assert profile.node_endpoints == (("127.0.0.1:50211", "0.0.3"),)


def test_settings_need_environment():
    with pytest.raises(MissingSetting):
        Settings.from_env()


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "TEST")
    monkeypatch.setenv("ACCOUNT_ID", "0.0.1001")
    monkeypatch.setenv("LAZY_LOTTO_CONTRACT_ID", "0.0.5005")
    monkeypatch.setenv("LAZY_TOKEN_ID", " 0.0.5001 ")
    monkeypatch.setenv("LAZY_DECIMALS", "6")
    monkeypatch.setenv("GAS_STATION_FUNDING_HBAR", "25")

    s = Settings.from_env()
    assert s.environment.name == "TEST"
    assert s.environment.mirror_url == "https://testnet.mirrornode.hedera.com"
    assert s.operator_account() == EntityId(0, 0, 1001)
    assert s.contracts == {"lazyLotto": "0.0.5005", "lazyToken": "0.0.5001"}
    assert s.lazy_decimals == 6
    assert s.gas_station_funding_hbar == 25
    assert s.require_contract("lazyLotto") == "0.0.5005"
    with pytest.raises(MissingSetting):
        s.require_contract("poolManager")


def test_environment_override_wins(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "TEST")
    assert Settings.from_env("main").environment.name == "MAIN"


def test_bad_integer_setting(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "TEST")
    monkeypatch.setenv("LAZY_DECIMALS", "eight")
    with pytest.raises(MissingSetting):
        Settings.from_env()


def test_operator_account_validation(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "TEST")
    with pytest.raises(MissingSetting):
        Settings.from_env().operator_account()
    monkeypatch.setenv("ACCOUNT_ID", "1001")
    with pytest.raises(InvalidOperator):
        Settings.from_env().operator_account()


def test_contract_ids_accept_long_zero_addresses(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "TEST")
    monkeypatch.setenv("LAZY_LOTTO_CONTRACT_ID", "0x000000000000000000000000000000000000138D")
    monkeypatch.setenv("LSH_GEN1_TOKEN_ID", "0.0.48461")

    s = Settings.from_env()
    assert s.contracts == {"lazyLotto": "0.0.5005"}
    assert s.lsh_tokens == {"LSH_GEN1_TOKEN_ID": "0.0.48461"}


@pytest.mark.parametrize("value", ["lotto", "0.0", "0x" + "ab" * 20])
def test_bad_contract_id_setting(monkeypatch, value):
    monkeypatch.setenv("ENVIRONMENT", "TEST")
    monkeypatch.setenv("LAZY_LOTTO_CONTRACT_ID", value)
    with pytest.raises(ConfigurationError) as info:
        Settings.from_env()
    assert "LAZY_LOTTO_CONTRACT_ID" in str(info.value)

