"""
Fixed parameters shared by every LazyLotto operator command.

Values here describe how the toolkit talks to the network, not the rules
of the lottery itself (those live on-chain). Changing gas budgets or
propagation delays changes operator behaviour and should be reviewed.
"""

# HBAR sentinel: fee token / prize token address for native HBAR
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# HBAR uses 8 decimals (1 HBAR = 100,000,000 tinybars)
HBAR_DECIMALS = 8
TINYBARS_PER_HBAR = 10**HBAR_DECIMALS

# Win rate is stored as parts per hundred-million: 1,000,000 == 1%
WIN_RATE_SCALE = 100_000_000
WIN_RATE_PER_PERCENT = WIN_RATE_SCALE // 100

# Mirror REST endpoints per network kind
MIRROR_URLS = {
    "testnet": "https://testnet.mirrornode.hedera.com",
    "mainnet": "https://mainnet-public.mirrornode.hedera.com",
    "previewnet": "https://previewnet.mirrornode.hedera.com",
    "local": "http://localhost:5551",
}

# Consensus node used for the local network (solo / local-node)
LOCAL_NODE_ENDPOINT = "127.0.0.1:50211"
LOCAL_NODE_ACCOUNT = "0.0.3"

# Mirror follows consensus with a small lag; wait this long before read-back
PROPAGATION_DELAY_S = 5.0

# Bounded retry for transient mirror failures
MIRROR_MAX_ATTEMPTS = 4
MIRROR_BACKOFF_BASE_S = 0.5
MIRROR_TIMEOUT_S = 30.0

# Gas multipliers applied by callers to the mirror estimate
STATE_CHANGE_MULTIPLIER = 1.2
RANDOMNESS_MULTIPLIER = 2.0
RANDOMNESS_SAFETY_MARGIN = 1.2
MAX_GAS = 15_000_000

# Fixed per-artifact deployment budgets
DEPLOY_GAS = {
    "LAZYTokenCreator": 3_500_000,
    "LazyGasStation": 4_000_000,
    "LazyDelegateRegistry": 2_100_000,
    "PrngSystemContract": 1_800_000,
    "LazyLottoStorage": 3_500_000,
    "LazyLotto": 6_000_000,
    "LazyLottoPoolManager": 2_500_000,
    "LazyTradeLotto": 2_500_000,
}

# Network validity window of a transaction and the buffer we keep before it
TX_VALID_DURATION_S = 120
MULTISIG_DEADLINE_BUFFER_S = 15

# Node submission timeout
SUBMIT_TIMEOUT_S = 60.0

# HBAR allowance granted to the storage contract for per-NFT transfer fees
NFT_TRANSFER_HBAR_BUFFER = 1 * TINYBARS_PER_HBAR

# Indexer pacing and prize detail cap
INDEXER_REQUEST_DELAY_S = 0.2
INDEXER_PRIZE_CAP = 10
INDEX_FORMAT_VERSION = "1.0"

# Gas station health thresholds
GAS_STATION_MIN_HBAR = 10 * TINYBARS_PER_HBAR
GAS_STATION_MIN_LAZY_TOKENS = 1_000

# Literal the operator must type before any mainnet deployment
MAINNET_CONFIRMATION = "MAINNET"

DEFAULT_STATE_FILE = "deployment-state.json"
DEFAULT_ARTIFACTS_DIR = "artifacts"

TOOL_VERSION = "1.0.0"
