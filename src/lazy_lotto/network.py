from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Sequence

import hiero_sdk_python as hiero

from .config import EnvironmentProfile
from .errors import MainnetConfirmationRequired, SubmissionError, SubmissionTimeout
from .ids import ContractRef, EntityId
from .keys import KeyAlgorithm, OperatorIdentity, SigningKey
from .multisig import FrozenTransaction, SignatureDescriptor
from .project_constants import MAINNET_CONFIRMATION, SUBMIT_TIMEOUT_S, TX_VALID_DURATION_S
from .results import SubmissionReceipt

log = logging.getLogger("network")

# Hedera file service caps each create/append at roughly 4 KB
FILE_CHUNK_SIZE = 4096

# Every network exposes node 0.0.3; pinning one node keeps a single body to sign
DEFAULT_NODE_ACCOUNT = "0.0.3"

_SDK_NETWORK_NAMES = {
    "testnet": "testnet",
    "mainnet": "mainnet",
    "previewnet": "previewnet",
    "local": "localhost",
}


def _status_name(status) -> str:
    name = getattr(status, "name", None)
    if name:
        return name
    return hiero.ResponseCode(int(status)).name


def _sdk_private_key(key: SigningKey):
    if key.algorithm is KeyAlgorithm.ED25519:
        return hiero.PrivateKey.from_bytes_ed25519(key.raw)
    return hiero.PrivateKey.from_bytes_ecdsa(key.raw)


def _sdk_public_key(algorithm: KeyAlgorithm, public_key: bytes):
    if algorithm is KeyAlgorithm.ED25519:
        return hiero.PublicKey.from_bytes_ed25519(public_key)
    return hiero.PublicKey.from_bytes_ecdsa(public_key)


def require_mainnet_confirmation(
    profile: EnvironmentProfile, prompt: Optional[Callable[[str], str]]
) -> None:
    """Mainnet needs the operator to type the literal confirmation; nothing else passes."""
    if not profile.is_mainnet:
        return
    if prompt is None:
        raise MainnetConfirmationRequired("Mainnet requires an interactive confirmation")
    answer = prompt(f'You are about to act on MAINNET. Type "{MAINNET_CONFIRMATION}" to continue: ')
    if answer != MAINNET_CONFIRMATION:
        raise MainnetConfirmationRequired("Mainnet confirmation was not given")


class HederaNetworkClient:
    """
    Consensus-node side of the toolkit. Every SDK call runs in a worker thread
    under a timeout so the rest of the code stays on the event loop.
    """

    def __init__(
        self,
        profile: EnvironmentProfile,
        operator: OperatorIdentity,
        submit_timeout_s: float = SUBMIT_TIMEOUT_S,
        node_account_id: str = DEFAULT_NODE_ACCOUNT,
    ) -> None:
        self.profile = profile
        self.operator = operator
        self.submit_timeout_s = submit_timeout_s
        self.node_account_id = node_account_id
        self._operator_key = _sdk_private_key(operator.key)
        network = hiero.Network(network=_SDK_NETWORK_NAMES[profile.network_kind])
        self._client = hiero.Client(network)
        self._client.set_operator(hiero.AccountId.from_string(str(operator.account_id)), self._operator_key)

    async def close(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            await asyncio.to_thread(close)

    async def _run(self, label: str, fn: Callable[[], SubmissionReceipt]) -> SubmissionReceipt:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self.submit_timeout_s)
        except asyncio.TimeoutError:
            raise SubmissionTimeout(f"{label} did not complete within {self.submit_timeout_s:.0f}s")
        except SubmissionError:
            raise
        except Exception as e:
            raise SubmissionError(f"{label} failed: {e}")

    def _execute(self, tx, entity_attr: Optional[str] = None) -> SubmissionReceipt:
        tx.freeze_with(self._client)
        tx.sign(self._operator_key)
        receipt = tx.execute(self._client)
        entity = getattr(receipt, entity_attr, None) if entity_attr else None
        result = SubmissionReceipt(
            transaction_id=str(tx.transaction_id),
            status=_status_name(receipt.status),
            entity_id=str(entity) if entity is not None else None,
        )
        log.debug("%s -> %s", result.transaction_id, result.status)
        return result

    def _contract_call(self, contract: ContractRef, calldata: bytes, gas: int, payable_amount: int):
        tx = (
            hiero.ContractExecuteTransaction()
            .set_contract_id(hiero.ContractId.from_string(str(contract.id)))
            .set_gas(gas)
            .set_function_parameters(calldata)
        )
        if payable_amount:
            tx.set_payable_amount(hiero.Hbar.from_tinybars(payable_amount))
        return tx

    async def execute_contract(
        self, contract: ContractRef, calldata: bytes, gas: int, payable_amount: int = 0
    ) -> SubmissionReceipt:
        tx = self._contract_call(contract, calldata, gas, payable_amount)
        return await self._run(f"Contract call to {contract}", lambda: self._execute(tx))

    async def freeze_contract_call(
        self,
        contract: ContractRef,
        calldata: bytes,
        gas: int,
        payable_amount: int = 0,
        description: str = "",
    ) -> FrozenTransaction:
        def freeze() -> FrozenTransaction:
            tx = self._contract_call(contract, calldata, gas, payable_amount)
            tx.set_node_account_id(hiero.AccountId.from_string(self.node_account_id))
            tx.freeze_with(self._client)
            valid_start = tx.transaction_id.valid_start
            return FrozenTransaction(
                transaction_id=str(tx.transaction_id),
                node_account_id=self.node_account_id,
                body_bytes=tx.build_transaction_body().SerializeToString(),
                transaction_bytes=tx.to_bytes(),
                valid_start=valid_start.seconds + valid_start.nanos / 1e9,
                valid_duration=TX_VALID_DURATION_S,
                description=description,
            )

        try:
            return await asyncio.wait_for(asyncio.to_thread(freeze), timeout=self.submit_timeout_s)
        except asyncio.TimeoutError:
            raise SubmissionTimeout("Freezing the transaction timed out")

    async def submit_signed(
        self, frozen: FrozenTransaction, signatures: Sequence[SignatureDescriptor]
    ) -> SubmissionReceipt:
        def submit() -> SubmissionReceipt:
            tx = hiero.Transaction.from_bytes(frozen.transaction_bytes)
            for sig in signatures:
                tx.add_signature(_sdk_public_key(sig.algorithm, sig.public_key), sig.signature)
            receipt = tx.execute(self._client)
            return SubmissionReceipt(frozen.transaction_id, _status_name(receipt.status))

        return await self._run(f"Multi-signature submission {frozen.transaction_id}", submit)

    async def deploy_contract(
        self, bytecode: bytes, constructor_params: bytes, gas: int, memo: str = ""
    ) -> SubmissionReceipt:
        """Upload bytecode to a file (create + appends), then create the contract from it."""
        contents = bytecode.hex().encode("ascii")
        chunks = [contents[i:i + FILE_CHUNK_SIZE] for i in range(0, len(contents), FILE_CHUNK_SIZE)]

        def deploy() -> SubmissionReceipt:
            file_tx = (
                hiero.FileCreateTransaction()
                .set_keys([self._operator_key.public_key()])
                .set_contents(chunks[0])
            )
            file_receipt = self._execute(file_tx, "file_id")
            if file_receipt.status != "SUCCESS":
                return file_receipt
            file_id = hiero.FileId.from_string(file_receipt.entity_id)
            for chunk in chunks[1:]:
                append = hiero.FileAppendTransaction().set_file_id(file_id).set_contents(chunk)
                appended = self._execute(append)
                if appended.status != "SUCCESS":
                    return appended

            create = (
                hiero.ContractCreateTransaction()
                .set_bytecode_file_id(file_id)
                .set_gas(gas)
                .set_constructor_parameters(constructor_params)
                .set_contract_memo(memo)
            )
            return self._execute(create, "contract_id")

        return await self._run(f"Deployment ({memo or 'contract'})", deploy)

    async def associate_tokens(self, account: EntityId, tokens: Sequence[EntityId]) -> SubmissionReceipt:
        tx = hiero.TokenAssociateTransaction().set_account_id(hiero.AccountId.from_string(str(account)))
        for token in tokens:
            tx.add_token_id(hiero.TokenId.from_string(str(token)))
        return await self._run(f"Token association for {account}", lambda: self._execute(tx))

    async def approve_token_allowance(
        self, token: EntityId, owner: EntityId, spender: EntityId, amount: int
    ) -> SubmissionReceipt:
        tx = hiero.AccountAllowanceApproveTransaction().approve_token_allowance(
            hiero.TokenId.from_string(str(token)),
            hiero.AccountId.from_string(str(owner)),
            hiero.AccountId.from_string(str(spender)),
            amount,
        )
        return await self._run(f"Allowance of {token} to {spender}", lambda: self._execute(tx))

    async def approve_hbar_allowance(self, owner: EntityId, spender: EntityId, amount: int) -> SubmissionReceipt:
        tx = hiero.AccountAllowanceApproveTransaction().approve_hbar_allowance(
            hiero.AccountId.from_string(str(owner)),
            hiero.AccountId.from_string(str(spender)),
            hiero.Hbar.from_tinybars(amount),
        )
        return await self._run(f"HBAR allowance to {spender}", lambda: self._execute(tx))

    async def transfer_hbar(self, receiver: EntityId, amount: int) -> SubmissionReceipt:
        sender = hiero.AccountId.from_string(str(self.operator.account_id))
        tx = (
            hiero.TransferTransaction()
            .add_hbar_transfer(sender, -amount)
            .add_hbar_transfer(hiero.AccountId.from_string(str(receiver)), amount)
        )
        return await self._run(f"HBAR transfer to {receiver}", lambda: self._execute(tx))


def create_client(
    profile: EnvironmentProfile,
    operator: OperatorIdentity,
    require_confirmation: bool = False,
    prompt: Optional[Callable[[str], str]] = None,
) -> HederaNetworkClient:
    if require_confirmation:
        require_mainnet_confirmation(profile, prompt)
    log.info("Using %s (%s) as %s", profile.name, profile.network_kind, operator.account_id)
    return HederaNetworkClient(profile, operator)
