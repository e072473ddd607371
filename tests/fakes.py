import json
from typing import Any, Dict, List, Optional, Tuple

import httpx
from eth_abi import decode, encode

from lazy_lotto.abi import PACKAGED_ABI_DIR, AbiRegistry
from lazy_lotto.errors import SubmissionError
from lazy_lotto.ids import EntityId
from lazy_lotto.mirror import MirrorClient
from lazy_lotto.multisig import FrozenTransaction
from lazy_lotto.project_constants import ZERO_ADDRESS
from lazy_lotto.results import SubmissionReceipt, Success


async def no_sleep(_seconds: float) -> None:
    return None


def address_of(entity: str) -> str:
    return EntityId.parse(entity).evm_address


class MirrorStub:
    """httpx handler that plays the mirror node: REST fixtures plus /contracts/call."""

    def __init__(self, registry: Optional[AbiRegistry] = None) -> None:
        self.registry = registry or AbiRegistry()
        self.rest: Dict[str, Any] = {}
        self.calls: Dict[Tuple[str, bytes], Tuple[Any, Any]] = {}
        self.estimates: Dict[Tuple[str, bytes], int] = {}
        self.requests: List[httpx.Request] = []

    def on_get(self, path: str, body: Any) -> None:
        self.rest["/api/v1" + path] = body

    def on_call(self, artifact: str, contract: str, function: str, result: Any) -> None:
        """result is a tuple of return values, or a callable taking the decoded args."""
        fn = self.registry.get(artifact).function(function)
        self.calls[(address_of(contract), fn.selector)] = (fn, result)

    def on_estimate(self, artifact: str, contract: str, function: str, gas: int) -> None:
        fn = self.registry.get(artifact).function(function)
        self.estimates[(address_of(contract), fn.selector)] = gas

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if request.method == "POST" and path == "/api/v1/contracts/call":
            return self._call(json.loads(request.content))

        body = self.rest.get(path)
        if body is None:
            return httpx.Response(404, json={"_status": {"messages": [{"message": "Not found"}]}})
        if callable(body):
            body = body(request)
        if isinstance(body, httpx.Response):
            return body
        return httpx.Response(200, json=body)

    def _call(self, payload: Dict[str, Any]) -> httpx.Response:
        data = bytes.fromhex(payload["data"][2:])
        key = (payload["to"], data[:4])
        if payload.get("estimate"):
            gas = self.estimates.get(key)
            if gas is None:
                return revert_response()
            return httpx.Response(200, json={"result": "0x" + gas.to_bytes(32, "big").hex()})

        entry = self.calls.get(key)
        if entry is None:
            return revert_response()
        fn, result = entry
        if callable(result):
            result = result(*decode(fn.input_types, data[4:]))
            if isinstance(result, httpx.Response):
                return result
        return httpx.Response(200, json={"result": "0x" + encode(fn.output_types, list(result)).hex()})

    def client(self, **kwargs: Any) -> MirrorClient:
        kwargs.setdefault("max_attempts", 1)
        kwargs.setdefault("sleep", no_sleep)
        return MirrorClient("https://mirror.test", transport=httpx.MockTransport(self.handler), **kwargs)

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]


# Deployment fakes

CONSTRUCTORS = {
    "LAZYTokenCreator": [("uint256", "dummy")],
    "LazyGasStation": [("address", "lazyToken"), ("address", "lazySCT")],
    "LazyDelegateRegistry": [],
    "PrngSystemContract": [],
    "LazyLottoStorage": [("address", "lazyGasStation"), ("address", "lazyToken")],
    "LazyLotto": [
        ("address", "lazyToken"),
        ("address", "lazyGasStation"),
        ("address", "lazyDelegateRegistry"),
        ("address", "prng"),
        ("uint256", "burnPercentage"),
        ("address", "storageContract"),
    ],
    "LazyLottoPoolManager": [
        ("address", "lazyToken"),
        ("address", "lazyGasStation"),
        ("address", "lazyDelegateRegistry"),
    ],
    "LazyTradeLotto": [
        ("address", "prng"),
        ("address", "lazyGasStation"),
        ("address", "lazyDelegateRegistry"),
        ("address", "lshGen1"),
        ("address", "lshGen2"),
        ("address", "lshGen1Mutant"),
        ("address", "systemWallet"),
        ("uint256", "initialJackpot"),
        ("uint256", "lossIncrement"),
        ("uint256", "burnPercentage"),
    ],
}


def write_artifacts(root) -> str:
    """Full build artifacts (ABI + constructor + bytecode) for every deployable contract."""
    for name, ctor in CONSTRUCTORS.items():
        packaged = PACKAGED_ABI_DIR / f"{name}.json"
        abi = json.loads(packaged.read_text())["abi"] if packaged.is_file() else []
        abi = abi + [{
            "type": "constructor",
            "stateMutability": "nonpayable",
            "inputs": [{"name": n, "type": t} for t, n in ctor],
        }]
        (root / f"{name}.json").write_text(json.dumps({"abi": abi, "bytecode": "0x6080604052"}))
    return str(root)


class FakeChain:
    """
    In-memory ledger standing in for both the consensus node and the mirror
    during deployment tests. Constructor arguments become getter values.
    """

    def __init__(self, registry: AbiRegistry, first_num: int = 5000) -> None:
        self.registry = registry
        self.next_num = first_num
        self.contracts: Dict[str, Dict[str, Any]] = {}
        self.artifacts: Dict[str, str] = {}
        self.tokens: set = set()
        self.deployed: List[str] = []
        self.calls: List[Tuple[str, str, tuple]] = []
        self.transfers: List[Tuple[str, int]] = []
        self.fail_deploy: Optional[str] = None
        self.interrupt_deploy: Optional[str] = None

    def _new_id(self) -> str:
        entity = f"0.0.{self.next_num}"
        self.next_num += 1
        return entity

    def add_contract(self, name: str, values: Optional[Dict[str, Any]] = None) -> str:
        entity = self._new_id()
        self.contracts[entity] = dict(values or {})
        self.artifacts[entity] = name
        return entity

    # Network side

    async def deploy_contract(self, bytecode: bytes, params: bytes, gas: int, memo: str = "") -> SubmissionReceipt:
        if memo == self.interrupt_deploy:
            raise KeyboardInterrupt()
        if memo == self.fail_deploy:
            raise SubmissionError(f"{memo} deployment failed: INSUFFICIENT_GAS")

        ctor = CONSTRUCTORS[memo]
        args = decode([t for t, _ in ctor], params) if ctor else ()
        values = {n: (v.lower() if isinstance(v, str) else v) for (_, n), v in zip(ctor, args)}
        if memo == "LazyLotto":
            values.update(poolManager=ZERO_ADDRESS, isAdmin=True)
        elif memo == "LazyLottoStorage":
            values["getContractUser"] = ZERO_ADDRESS
        elif memo == "LazyLottoPoolManager":
            values["lazyLotto"] = ZERO_ADDRESS

        entity = self.add_contract(memo, values)
        self.deployed.append(memo)
        return SubmissionReceipt(f"0.0.2@{self.next_num}.000000000", "SUCCESS", entity_id=entity)

    async def transfer_hbar(self, receiver: EntityId, amount: int) -> SubmissionReceipt:
        self.transfers.append((str(receiver), amount))
        return SubmissionReceipt("0.0.2@1.000000001", "SUCCESS")

    # Pipeline side

    async def execute(self, request, options=None):
        contract = str(request.contract)
        args = tuple(request.args)
        self.calls.append((contract, request.function, args))
        values: tuple = ()
        if request.function == "createFungibleWithBurn":
            token = self._new_id()
            self.tokens.add(token)
            values = (address_of(token),)
        elif request.function == "setContractUser":
            self.contracts[contract]["getContractUser"] = args[0]
        elif request.function == "setLazyLotto":
            self.contracts[contract]["lazyLotto"] = args[0]
        elif request.function == "setPoolManager":
            self.contracts[contract]["poolManager"] = args[0]
        return Success(transaction_id="0.0.2@1.000000002", values=values)

    # Mirror side

    async def call_value(self, artifact, contract, function: str, *args: Any, sender=None) -> Any:
        return self.contracts[str(contract)][function]

    async def contract_exists(self, entity) -> bool:
        return str(entity) in self.contracts

    async def token_exists(self, entity) -> bool:
        return str(entity) in self.tokens

    async def resolve_evm_address(self, address: str, kind=None) -> EntityId:
        return EntityId.from_evm_address(address)

    def called(self, function: str) -> List[Tuple[str, str, tuple]]:
        return [c for c in self.calls if c[1] == function]


class Answers:
    """Scripted prompt: pops answers in order and records each question."""

    def __init__(self, *answers: str) -> None:
        self.answers = list(answers)
        self.questions: List[str] = []

    def __call__(self, question: str) -> str:
        self.questions.append(question)
        if not self.answers:
            raise AssertionError(f"Unexpected prompt: {question}")
        return self.answers.pop(0)


def never_prompt(question: str) -> str:
    raise AssertionError(f"Unexpected prompt: {question}")


class FakeNetwork:
    """Consensus-node stand-in: records every submission and answers with scripted statuses."""

    def __init__(self, status: str = "SUCCESS", valid_start: float = 1_700_000_000.0) -> None:
        self.status = status
        self.valid_start = valid_start
        self.executed: List[Tuple[Any, bytes, int, int]] = []
        self.frozen: List[Any] = []
        self.submitted: List[Tuple[Any, tuple]] = []
        self.associations: List[Tuple[str, List[str]]] = []
        self.token_allowances: List[Tuple[str, str, str, int]] = []
        self.hbar_allowances: List[Tuple[str, str, int]] = []
        self.on_associate = None
        self.on_token_allowance = None
        self.on_hbar_allowance = None
        self.raise_on_execute: Optional[BaseException] = None
        self._seq = 0

    def _txid(self) -> str:
        self._seq += 1
        return f"0.0.1001@{int(self.valid_start)}.{self._seq:09d}"

    async def execute_contract(self, contract, calldata: bytes, gas: int, payable_amount: int = 0):
        if self.raise_on_execute is not None:
            raise self.raise_on_execute
        self.executed.append((contract, calldata, gas, payable_amount))
        return SubmissionReceipt(self._txid(), self.status)

    async def freeze_contract_call(self, contract, calldata, gas, payable_amount=0, description=""):
        txid = self._txid()
        frozen = FrozenTransaction(
            transaction_id=txid,
            node_account_id="0.0.3",
            body_bytes=b"body:" + txid.encode() + calldata + gas.to_bytes(8, "big"),
            transaction_bytes=b"sdk:" + txid.encode(),
            valid_start=self.valid_start,
            description=description,
        )
        self.frozen.append(frozen)
        return frozen

    async def submit_signed(self, frozen, signatures):
        self.submitted.append((frozen, tuple(signatures)))
        return SubmissionReceipt(frozen.transaction_id, self.status)

    async def associate_tokens(self, account, tokens):
        self.associations.append((str(account), [str(t) for t in tokens]))
        if self.on_associate is not None:
            self.on_associate(tokens)
        return SubmissionReceipt(self._txid(), "SUCCESS")

    async def approve_token_allowance(self, token, owner, spender, amount):
        self.token_allowances.append((str(token), str(owner), str(spender), amount))
        if self.on_token_allowance is not None:
            self.on_token_allowance(token, spender, amount)
        return SubmissionReceipt(self._txid(), "SUCCESS")

    async def approve_hbar_allowance(self, owner, spender, amount):
        self.hbar_allowances.append((str(owner), str(spender), amount))
        if self.on_hbar_allowance is not None:
            self.on_hbar_allowance(spender, amount)
        return SubmissionReceipt(self._txid(), "SUCCESS")


def contract_result(call_result: bytes = b"", logs: Optional[List[Dict[str, Any]]] = None, **extra: Any) -> Dict[str, Any]:
    body = {"call_result": "0x" + call_result.hex(), "logs": logs or [], "gas_used": 91_000}
    body.update(extra)
    return body


def revert_response() -> httpx.Response:
    return httpx.Response(400, json={"_status": {"messages": [{"message": "CONTRACT_REVERT_EXECUTED"}]}})
