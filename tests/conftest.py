import pytest

from lazy_lotto.config import REUSE_VARIABLES

ENV_VARS = [
    "ENVIRONMENT",
    "MIRROR_URL",
    "ACCOUNT_ID",
    "PRIVATE_KEY",
    "SIGNING_KEY",
    "VERIFY_ONLY",
    "LAZY_DECIMALS",
    "LAZY_MAX_SUPPLY",
    "LAZY_BURN_PERCENT",
    "LAZY_CREATION_FEE_HBAR",
    "INITIAL_LOTTO_JACKPOT",
    "LOTTO_LOSS_INCREMENT",
    "LSH_GEN1_TOKEN_ID",
    "LSH_GEN2_TOKEN_ID",
    "LSH_GEN1_MUTANT_TOKEN_ID",
    "GAS_STATION_FUNDING_HBAR",
    "ARTIFACTS_DIR",
    "DEPLOYMENT_STATE_FILE",
] + list(REUSE_VARIABLES.values())


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
