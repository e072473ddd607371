from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from .abi import AbiFunction, ContractArtifact, DecodedEvent
from .errors import DecodeError, MirrorUnavailable, NotFound
from .mirror import MirrorClient
from .project_constants import PROPAGATION_DELAY_S

log = logging.getLogger("results")


class CallStatus(str, Enum):
    SUCCESS = "SUCCESS"
    REVERT = "REVERT"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"


@dataclass(frozen=True)
class SubmissionReceipt:
    """What the consensus node told us: transaction id plus the receipt status name."""

    transaction_id: str
    status: str
    entity_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "SUCCESS"


@dataclass(frozen=True)
class Success:
    transaction_id: str
    values: tuple = ()
    logs: Tuple[DecodedEvent, ...] = ()
    gas_used: Optional[int] = None
    entity_id: Optional[str] = None
    status: CallStatus = field(default=CallStatus.SUCCESS, init=False)

    @property
    def ok(self) -> bool:
        return True

    def events(self, name: str) -> List[DecodedEvent]:
        return [e for e in self.logs if e.name == name]


@dataclass(frozen=True)
class Revert:
    transaction_id: str
    reason: Optional[str]
    receipt_status: str
    logs: Tuple[DecodedEvent, ...] = ()
    status: CallStatus = field(default=CallStatus.REVERT, init=False)

    @property
    def ok(self) -> bool:
        return False


@dataclass(frozen=True)
class NetworkError:
    message: str
    transaction_id: Optional[str] = None
    status: CallStatus = field(default=CallStatus.NETWORK_ERROR, init=False)

    @property
    def ok(self) -> bool:
        return False


@dataclass(frozen=True)
class Timeout:
    message: str
    transaction_id: Optional[str] = None
    status: CallStatus = field(default=CallStatus.TIMEOUT, init=False)

    @property
    def ok(self) -> bool:
        return False


CallResult = Union[Success, Revert, NetworkError, Timeout]


def _json_safe(value: Any) -> Any:
    if isinstance(value, bytes):
        return "0x" + value.hex()
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, int) and not isinstance(value, bool) and value.bit_length() > 53:
        return str(value)
    return value


def result_to_dict(result: CallResult) -> Dict[str, Any]:
    out: Dict[str, Any] = {
        "status": result.status.value,
        "transactionId": result.transaction_id,
    }
    if isinstance(result, Success):
        out["values"] = _json_safe(list(result.values))
        out["events"] = [{"name": e.name, "args": _json_safe(e.args)} for e in result.logs]
        if result.gas_used is not None:
            out["gasUsed"] = result.gas_used
        if result.entity_id:
            out["entityId"] = result.entity_id
    elif isinstance(result, Revert):
        out["reason"] = result.reason
        out["receiptStatus"] = result.receipt_status
        out["events"] = [{"name": e.name, "args": _json_safe(e.args)} for e in result.logs]
    else:
        out["message"] = result.message
    return out


def _hex_bytes(value: Optional[str]) -> bytes:
    if not value or value == "0x":
        return b""
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def decode_logs(artifact: ContractArtifact, raw_logs: List[Dict[str, Any]]) -> Tuple[DecodedEvent, ...]:
    events: List[DecodedEvent] = []
    for entry in raw_logs:
        topics = [_hex_bytes(t) for t in entry.get("topics", [])]
        try:
            event = artifact.decode_log(topics, _hex_bytes(entry.get("data")))
        except DecodeError as e:
            log.debug("Skipping undecodable log: %s", e)
            continue
        if event is not None:
            events.append(event)
    return tuple(events)


def revert_reason(artifact: ContractArtifact, record: Optional[Dict[str, Any]]) -> Optional[str]:
    if not record:
        return None
    message = record.get("error_message") or ""
    if message.startswith("0x"):
        decoded = artifact.decode_revert(_hex_bytes(message))
        if decoded:
            return decoded
    return message or None


async def resolve_call_result(
    mirror: MirrorClient,
    artifact: ContractArtifact,
    fn: AbiFunction,
    receipt: SubmissionReceipt,
    delay_s: float = PROPAGATION_DELAY_S,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> CallResult:
    """Turn a node receipt into a CallResult, pulling return data and logs from the mirror."""
    await sleep(delay_s)
    record: Optional[Dict[str, Any]]
    try:
        record = await mirror.contract_result(receipt.transaction_id)
    except (NotFound, MirrorUnavailable) as e:
        log.warning("Mirror has no contract result for %s yet: %s", receipt.transaction_id, e)
        record = None

    logs = decode_logs(artifact, record.get("logs", [])) if record else ()

    if not receipt.succeeded:
        return Revert(
            transaction_id=receipt.transaction_id,
            reason=revert_reason(artifact, record) or receipt.status,
            receipt_status=receipt.status,
            logs=logs,
        )

    values: tuple = ()
    if fn.outputs and record:
        data = _hex_bytes(record.get("call_result"))
        if data:
            values = fn.decode_output(data)

    gas_used = record.get("gas_used") if record else None
    return Success(
        transaction_id=receipt.transaction_id,
        values=values,
        logs=logs,
        gas_used=int(gas_used) if gas_used is not None else None,
        entity_id=receipt.entity_id,
    )
