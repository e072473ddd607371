from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from .abi import AbiRegistry
from .checkpoint import CheckpointStore
from .config import Settings
from .deploy import DeploymentConfig, DeploymentOrchestrator, env_lines, load_initial_state
from .errors import Expired, LazyLottoError, UsageError, VerificationFailed
from .execution import ExecutionOptions, ExecutionPipeline, ExportedTransaction
from .ids import AccountRef, EntityId, EntityKind
from .indexer import write_index
from .keys import (
    EncryptedFileKeySource,
    EnvKeySource,
    KeyAlgorithm,
    KeySource,
    parse_private_key,
    resolve_operator,
    write_encrypted_key_file,
)
from .lotto import LottoContracts, LottoService, RollOutcome, revert_hint
from .mirror import MirrorClient
from .multisig import MultiSigConfig, MultiSigCoordinator, load_transaction, write_signature_file
from .network import HederaNetworkClient, create_client, require_mainnet_confirmation
from .project_constants import MIRROR_TIMEOUT_S, TOOL_VERSION
from .results import CallResult, result_to_dict

log = logging.getLogger("cli")


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def _split(value: Optional[str]) -> List[str]:
    return [v.strip() for v in (value or "").split(",") if v.strip()]


def _emit(args: argparse.Namespace, payload: Dict[str, Any], render: Callable[[], None]) -> None:
    if args.json:
        print(json.dumps(payload, indent=2, default=str))
    else:
        render()


def _key_source(args: argparse.Namespace) -> KeySource:
    if args.key_file:
        return EncryptedFileKeySource(args.key_file)
    return EnvKeySource("PRIVATE_KEY")


def _options(args: argparse.Namespace) -> ExecutionOptions:
    if not getattr(args, "multisig", False):
        if getattr(args, "export_only", False) or getattr(args, "signatures", None):
            raise UsageError("--export-only and --signatures require --multisig")
        return ExecutionOptions()
    return ExecutionOptions(
        multisig=MultiSigConfig(
            threshold=args.threshold,
            workflow=args.workflow,
            export_only=args.export_only,
            signature_files=tuple(_split(args.signatures)),
            signers=tuple(EncryptedFileKeySource(p) for p in _split(args.signers)),
            transaction_file=args.tx_file,
        )
    )


@dataclass
class Session:
    settings: Settings
    mirror: MirrorClient
    registry: AbiRegistry
    operator: AccountRef
    network: Optional[HederaNetworkClient] = None
    pipeline: Optional[ExecutionPipeline] = None

    def lotto(self, contract_override: Optional[EntityId] = None) -> LottoService:
        return LottoService(
            self.mirror,
            self.registry,
            self.operator,
            LottoContracts.from_settings(self.settings, contract_override),
            pipeline=self.pipeline,
            network=self.network,
            lazy_decimals=self.settings.lazy_decimals,
        )


@asynccontextmanager
async def open_session(
    args: argparse.Namespace,
    signing: bool = False,
    settings: Optional[Settings] = None,
) -> AsyncIterator[Session]:
    settings = settings or Settings.from_env(args.env, args.mirror_url)
    account = settings.operator_account()
    registry = AbiRegistry(settings.artifacts_dir)
    # Keys are unlocked before any network traffic
    identity = resolve_operator(account, _key_source(args)) if signing else None

    mirror = MirrorClient(settings.environment.mirror_url, timeout_s=args.timeout)
    network = None
    try:
        operator = await mirror.account_ref(account)
        pipeline = None
        if identity is not None:
            network = create_client(settings.environment, identity)
            pipeline = ExecutionPipeline(network, mirror, registry, operator)
        yield Session(settings, mirror, registry, operator, network, pipeline)
    finally:
        if network is not None:
            await network.close()
        await mirror.close()


def _render_submitted(args: argparse.Namespace, submitted, title: str) -> int:
    if isinstance(submitted, ExportedTransaction):
        frozen = submitted.frozen
        payload = {
            "success": True,
            "exported": True,
            "transactionId": frozen.transaction_id,
            "files": [submitted.bin_path, submitted.json_path],
            "expiresAt": frozen.to_metadata()["expiresAt"],
        }

        def render() -> None:
            print(f"Exported {title}")
            print(f"Transaction : {frozen.transaction_id}")
            print(f"Files       : {submitted.bin_path}, {submitted.json_path}")
            print(f"Expires     : {payload['expiresAt']}")
            print("Collect signatures with `lazy-lotto multisig sign`, then re-run with --signatures.")

        _emit(args, payload, render)
        return 0

    outcome = submitted if isinstance(submitted, RollOutcome) else None
    result: CallResult = outcome.result if outcome else submitted
    payload = dict(result_to_dict(result), success=result.ok)
    hint = revert_hint(result)
    if hint:
        payload["hint"] = hint
    if outcome is not None:
        payload.update(poolId=outcome.pool_id, entriesRolled=outcome.entries_rolled, wins=outcome.wins)

    def render() -> None:
        print("========================================")
        print(f"{title}: {result.status.value}")
        print(f"Transaction : {result.transaction_id}")
        if outcome is not None and outcome.wins is not None:
            print(f"Rolled      : {outcome.entries_rolled}")
            print(f"Wins        : {outcome.wins}")
            if outcome.wins:
                print("Claim with `lazy-lotto claim`.")
        if not result.ok:
            print(f"Reason      : {getattr(result, 'reason', None) or getattr(result, 'message', '')}")
            if hint:
                print(f"Hint        : {hint}")

    _emit(args, payload, render)
    return 0 if result.ok else 1


# Deployment


def cmd_deploy(args: argparse.Namespace) -> int:
    settings = Settings.from_env(args.env, args.mirror_url)
    config = DeploymentConfig.from_settings(
        settings,
        interactive=not args.non_interactive,
        include_trade_lotto=args.include_trade_lotto,
        resume=args.resume,
        verify_only=args.verify_only,
    )
    prompt = None if args.non_interactive else input
    require_mainnet_confirmation(settings.environment, prompt)
    return asyncio.run(_deploy(args, settings, config, prompt))


async def _deploy(args, settings: Settings, config: DeploymentConfig, prompt) -> int:
    store = CheckpointStore(settings.state_file)
    state = load_initial_state(store, config, prompt)

    async with open_session(args, signing=not config.verify_only, settings=settings) as s:
        orchestrator = DeploymentOrchestrator(
            config,
            store,
            s.network,
            s.mirror,
            s.registry,
            s.pipeline,
            s.operator,
            prompt=prompt,
            confirmed=True,
        )
        try:
            state = await orchestrator.run(state)
        except VerificationFailed as e:
            report = e.report

            def render_failure() -> None:
                for c in report.checks:
                    print(f"{'ok  ' if c.passed else 'FAIL'} {c.name}: expected={c.expected} observed={c.observed}")
                print(f"State preserved in {store.path}")

            _emit(args, {"success": False, "error": str(e), "verification": report.to_dict()}, render_failure)
            return 1

    report = orchestrator.last_report
    payload = {
        "success": True,
        "environment": state.environment,
        "contracts": state.contracts,
        "verification": report.to_dict() if report else None,
    }

    def render() -> None:
        print("========================================")
        print("LAZYLOTTO DEPLOYMENT " + ("VERIFIED" if config.verify_only else "COMPLETE"))
        print("========================================")
        for name, value in state.contracts.items():
            if value:
                print(f"{name:<22}: {value}")
        if not config.verify_only:
            print("----------------------------------------")
            print("Add to .env:")
            for line in env_lines(state):
                print(line)

    _emit(args, payload, render)
    return 0


# Indexer and queries


def cmd_index(args: argparse.Namespace) -> int:
    return asyncio.run(_index(args))


async def _index(args: argparse.Namespace) -> int:
    async with open_session(args) as s:
        contract = await s.mirror.resolve_entity(args.contract, EntityKind.CONTRACT) if args.contract else None
        service = s.lotto(contract)
        document = await service.indexer(s.settings.environment.name).build(active_only=args.active_only)

    output = args.output or "pools-{}-{}.json".format(
        document["metadata"]["environment"].lower(),
        datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S"),
    )
    write_index(document, output)
    stats = document["stats"]

    def render() -> None:
        print("========================================")
        print("LAZYLOTTO POOL INDEX")
        print("========================================")
        print(f"Pools on chain : {stats['totalPoolsOnChain']}")
        print(f"Indexed        : {stats['indexedPools']}")
        by = stats["byStatus"]
        print(f"Active/Paused/Closed: {by['active']}/{by['paused']}/{by['closed']}")
        print(f"Community/Global    : {stats['communityPools']}/{stats['globalPools']}")
        if stats["errors"]:
            print(f"Errors         : {stats['errors']}")
        print(f"Wrote index: {output}")

    _emit(args, {"success": True, "output": output, "stats": stats}, render)
    return 0


def cmd_pools(args: argparse.Namespace) -> int:
    return asyncio.run(_pools(args))


async def _pools(args: argparse.Namespace) -> int:
    async with open_session(args) as s:
        pools = await s.lotto().pools(active_only=args.active_only)

    def render() -> None:
        print(f"{'ID':>4}  {'STATUS':<8}  {'WIN RATE':>10}  {'ENTRY FEE':<24}  PRIZES")
        for p in pools:
            print(
                f"{p['id']:>4}  {p['status']:<8}  {p['winRateDisplay']:>10}  "
                f"{p['entryFeeDisplay']:<24}  {p['prizeCount']}"
            )

    _emit(args, {"success": True, "pools": pools}, render)
    return 0


def cmd_pool(args: argparse.Namespace) -> int:
    return asyncio.run(_pool(args))


async def _pool(args: argparse.Namespace) -> int:
    async with open_session(args) as s:
        pool = await s.lotto().pool(args.pool_id)

    def render() -> None:
        print("========================================")
        print(f"POOL #{pool['id']} ({pool['status']})")
        print("========================================")
        print(f"Win rate    : {pool['winRateDisplay']}")
        print(f"Entry fee   : {pool['entryFeeDisplay']} ({pool['entryFeeToken']})")
        print(f"Outstanding : {pool['outstandingEntries']}")
        print(f"Ticket NFT  : {pool['poolTokenId']}")
        print(f"Owner       : {pool['owner'] or 'global pool'}")
        print(f"Prizes      : {pool['prizeCount']}")
        for prize in pool["prizes"]:
            if "note" in prize:
                print(f"  {prize['note']}")
            else:
                print(
                    f"  #{prize['index']}: {prize['tokenAmount']} of {prize['token']}, "
                    f"{prize['nftCollectionCount']} NFT collection(s)"
                )
        bonuses = pool["bonuses"]
        print(f"Time bonuses: {len(bonuses['timeBonuses'])}")
        print(f"NFT bonuses : {len(bonuses['nftBonuses'])}")
        lazy = bonuses["lazyBalanceBonus"]
        print(f"LAZY bonus  : {lazy['bonusBps']} bps above {lazy['threshold']}")

    _emit(args, dict(pool, success=True), render)
    return 0


def cmd_user(args: argparse.Namespace) -> int:
    return asyncio.run(_user(args))


async def _user(args: argparse.Namespace) -> int:
    async with open_session(args) as s:
        account = None
        if args.account:
            account = await s.mirror.account_ref(await s.mirror.resolve_entity(args.account, EntityKind.ACCOUNT))
        state = await s.lotto().user_state(account)

    def render() -> None:
        print(f"Account       : {state['account']}")
        print(f"Boost         : {state['boostBps']} bps")
        print("Entries:")
        for e in state["entries"] or [{"poolId": "-", "entries": 0}]:
            print(f"  pool {e['poolId']}: {e['entries']}")
        print(f"Pending prizes: {len(state['pendingPrizes'])}")
        for p in state["pendingPrizes"]:
            kind = "NFT" if p["asNFT"] else "memory"
            print(f"  #{p['index']} pool {p['poolId']} ({kind}): {p['amount']} + {p['nftCollections']} NFT collection(s)")

    _emit(args, dict(state, success=True), render)
    return 0


def cmd_health(args: argparse.Namespace) -> int:
    return asyncio.run(_health(args))


_STATUS_LABELS = {
    "operational": "OK",
    "paused": "PAUSED",
    "low_balance": "LOW BALANCE",
    "not_configured": "not configured",
    "not_found": "NOT FOUND",
}


async def _health(args: argparse.Namespace) -> int:
    async with open_session(args) as s:
        health = await s.lotto().health()
        environment = s.settings.environment.name
    health["environment"] = environment

    def render() -> None:
        print("LazyLotto System Health Check")
        print("=" * 40)
        print(f"Environment: {environment}")
        print(f"Timestamp:   {health['timestamp']}")
        for name, check in health["contracts"].items():
            print(f"{name:<16}: {_STATUS_LABELS.get(check['status'], 'ERROR')}")
            for key, value in (check.get("details") or {}).items():
                print(f"  {key}: {value}")
            if check.get("error"):
                print(f"  error: {check['error']}")

    _emit(args, dict(health, success=True), render)
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    return asyncio.run(_info(args))


async def _info(args: argparse.Namespace) -> int:
    async with open_session(args) as s:
        info = await s.lotto().info()

    def render() -> None:
        print(f"LazyLotto     : {info['contractId']}")
        for name, value in info["wiring"].items():
            print(f"  {name:<20}: {value}")
        print(f"Burn          : {info['burnPercentage']}%")
        print(f"Paused        : {info['paused']}")
        print(f"Pools         : {info['totalPools']}")
        print(f"Operator admin: {info['operatorIsAdmin']}")
        pm = info.get("poolManager")
        if pm:
            print(f"Pool manager  : {pm['contractId']}")
            print(f"  platform fee: {pm['platformProceedsPercentage']}%")
            print(f"  pools       : {pm['totalGlobalPools']} global, {pm['totalCommunityPools']} community")

    _emit(args, dict(info, success=True), render)
    return 0


# User writes


def _writer(title: str, call: Callable[[LottoService, argparse.Namespace, ExecutionOptions], Any]):
    def cmd(args: argparse.Namespace) -> int:
        options = _options(args)

        async def run() -> int:
            async with open_session(args, signing=True) as s:
                submitted = await call(s.lotto(), args, options)
            return _render_submitted(args, submitted, title)

        return asyncio.run(run())

    return cmd


cmd_buy = _writer("Buy", lambda svc, a, o: svc.buy(a.pool_id, a.count, o))
cmd_buy_and_roll = _writer("Buy and roll", lambda svc, a, o: svc.buy_and_roll(a.pool_id, a.count, o))
cmd_roll = _writer("Roll", lambda svc, a, o: svc.roll(a.pool_id, a.count, o))
cmd_claim = _writer("Claim", lambda svc, a, o: svc.claim(a.index, o))
cmd_redeem_entries = _writer("Redeem entries", lambda svc, a, o: svc.redeem_entries(a.pool_id, a.count, o))
cmd_redeem_prizes = _writer(
    "Redeem prizes", lambda svc, a, o: svc.redeem_prizes([int(i) for i in _split(a.indices)], o)
)

# Admin

cmd_admin_pause_pool = _writer("Pause pool", lambda svc, a, o: svc.pause_pool(a.pool_id, o))
cmd_admin_unpause_pool = _writer("Unpause pool", lambda svc, a, o: svc.unpause_pool(a.pool_id, o))
cmd_admin_close_pool = _writer("Close pool", lambda svc, a, o: svc.close_pool(a.pool_id, o))
cmd_admin_set_time_bonus = _writer(
    "Set time bonus", lambda svc, a, o: svc.set_time_bonus(a.start, a.end, a.bps, o)
)
cmd_admin_set_nft_bonus = _writer("Set NFT bonus", lambda svc, a, o: svc.set_nft_bonus(a.token, a.bps, o))
cmd_admin_set_lazy_balance_bonus = _writer(
    "Set LAZY balance bonus", lambda svc, a, o: svc.set_lazy_balance_bonus(a.threshold_amount, a.bps, o)
)
cmd_admin_set_burn_percentage = _writer(
    "Set burn percentage", lambda svc, a, o: svc.set_burn_percentage(a.percent, o)
)
cmd_admin_set_platform_fee = _writer("Set platform fee", lambda svc, a, o: svc.set_platform_fee(a.percent, o))


# Offline signing and keys


def cmd_multisig_sign(args: argparse.Namespace) -> int:
    if not args.key_file:
        raise UsageError("multisig sign needs --key-file")
    frozen = load_transaction(args.tx)
    coordinator = MultiSigCoordinator(network=None)
    left = coordinator.seconds_left(frozen)
    if left <= 0:
        raise Expired(f"{frozen.transaction_id} expired {-left:.0f}s ago", hint="Ask for a fresh export.")

    descriptor = coordinator.sign(frozen, EncryptedFileKeySource(args.key_file), args.account)
    write_signature_file(descriptor, args.out)
    payload = {
        "success": True,
        "transactionId": frozen.transaction_id,
        "publicKey": descriptor.public_key_hex,
        "signatureFile": args.out,
        "secondsLeft": int(left),
    }

    def render() -> None:
        print(f"Signed {frozen.transaction_id}")
        print(f"Public key : {descriptor.public_key_hex}")
        print(f"Wrote      : {args.out}")
        print(f"Time left  : {int(left)}s")

    _emit(args, payload, render)
    return 0


def cmd_multisig_inspect(args: argparse.Namespace) -> int:
    frozen = load_transaction(args.tx)
    left = MultiSigCoordinator(network=None).seconds_left(frozen)
    meta = frozen.to_metadata()
    meta.pop("bodyBytes")
    meta["secondsLeft"] = int(left)

    def render() -> None:
        print(f"Transaction : {frozen.transaction_id}")
        print(f"Description : {frozen.description}")
        print(f"Node        : {frozen.node_account_id}")
        print(f"Body SHA-256: {frozen.fingerprint}")
        print(f"Expires     : {meta['expiresAt']}")
        print(f"Time left   : {int(left)}s" if left > 0 else "Time left   : EXPIRED")

    _emit(args, dict(meta, success=True), render)
    return 0


def cmd_keys_encrypt(args: argparse.Namespace) -> int:
    hint = KeyAlgorithm(args.algorithm) if args.algorithm else None
    key = parse_private_key(getpass.getpass("Private key: "), hint)
    passphrase = getpass.getpass("New passphrase: ")
    if not passphrase or passphrase != getpass.getpass("Repeat passphrase: "):
        raise UsageError("Passphrases are empty or do not match")

    write_encrypted_key_file(args.out, key, passphrase)
    payload = {
        "success": True,
        "file": args.out,
        "keyType": key.algorithm.value,
        "publicKey": key.public_key_hex,
    }

    def render() -> None:
        print(f"Wrote {key.algorithm.value} key file: {args.out}")
        print(f"Public key: {key.public_key_hex}")

    _emit(args, payload, render)
    return 0


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--json", action="store_true", help="Machine-readable output.")
    common.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    common.add_argument("--env", default=None, help="Override ENVIRONMENT.")
    common.add_argument("--mirror-url", default=None, help="Override the mirror node URL.")
    common.add_argument("--key-file", default=None, help="Encrypted operator key file (else PRIVATE_KEY, dev only).")
    common.add_argument("--timeout", type=float, default=MIRROR_TIMEOUT_S, help="Mirror timeout seconds.")

    ms = argparse.ArgumentParser(add_help=False)
    ms.add_argument("--multisig", action="store_true", help="Collect signatures before submitting.")
    ms.add_argument("--workflow", choices=("interactive", "offline"), default="interactive")
    ms.add_argument("--export-only", action="store_true", help="Freeze and write tx.bin + tx.json, do not submit.")
    ms.add_argument("--signatures", default=None, help="Comma list of signature files to merge.")
    ms.add_argument("--threshold", type=int, default=1, help="Signatures required.")
    ms.add_argument("--signers", default=None, help="Comma list of encrypted key files.")
    ms.add_argument("--tx-file", default="tx.json", help="Exported transaction metadata path.")

    p = argparse.ArgumentParser(
        prog="lazy-lotto",
        description="Deploy, operate and index the LazyLotto contracts on Hedera.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {TOOL_VERSION}")
    sub = p.add_subparsers(dest="cmd", required=True)

    d = sub.add_parser("deploy", parents=[common], help="Deploy and wire the full contract set.")
    mode = d.add_mutually_exclusive_group()
    mode.add_argument("--resume", action="store_true", help="Continue from the saved checkpoint.")
    mode.add_argument("--verify-only", action="store_true", help="Only verify an existing deployment.")
    d.add_argument("--include-trade-lotto", action="store_true", help="Also deploy LazyTradeLotto.")
    d.add_argument("--non-interactive", action="store_true", help="Never prompt; refuse on mainnet.")
    d.set_defaults(func=cmd_deploy)

    i = sub.add_parser("index", parents=[common], help="Write an offline JSON index of all pools.")
    i.add_argument("--active-only", action="store_true", help="Only include active pools.")
    i.add_argument("--output", default=None, help="Output path (default pools-<env>-<time>.json).")
    i.add_argument("--contract", default=None, help="Override LAZY_LOTTO_CONTRACT_ID.")
    i.set_defaults(func=cmd_index)

    b = sub.add_parser("buy", parents=[common, ms], help="Buy entries in a pool.")
    b.add_argument("pool_id", type=int)
    b.add_argument("count", type=int)
    b.set_defaults(func=cmd_buy)

    br = sub.add_parser("buy-and-roll", parents=[common, ms], help="Buy entries and roll them at once.")
    br.add_argument("pool_id", type=int)
    br.add_argument("count", type=int)
    br.set_defaults(func=cmd_buy_and_roll)

    r = sub.add_parser("roll", parents=[common, ms], help="Roll entries (all, or a batch).")
    r.add_argument("pool_id", type=int)
    r.add_argument("count", type=int, nargs="?", default=None)
    r.set_defaults(func=cmd_roll)

    c = sub.add_parser("claim", parents=[common, ms], help="Claim all pending prizes, or one by index.")
    c.add_argument("index", type=int, nargs="?", default=None)
    c.set_defaults(func=cmd_claim)

    re_ = sub.add_parser("redeem-entries", parents=[common, ms], help="Convert entries to ticket NFTs.")
    re_.add_argument("pool_id", type=int)
    re_.add_argument("count", type=int)
    re_.set_defaults(func=cmd_redeem_entries)

    rp = sub.add_parser("redeem-prizes", parents=[common, ms], help="Convert pending prizes to prize NFTs.")
    rp.add_argument("indices", help="Comma list of pending prize indices.")
    rp.set_defaults(func=cmd_redeem_prizes)

    ps = sub.add_parser("pools", parents=[common], help="List pools.")
    ps.add_argument("--active-only", action="store_true")
    ps.set_defaults(func=cmd_pools)

    po = sub.add_parser("pool", parents=[common], help="Show one pool.")
    po.add_argument("pool_id", type=int)
    po.set_defaults(func=cmd_pool)

    u = sub.add_parser("user", parents=[common], help="Show entries, pending prizes and boost.")
    u.add_argument("account", nargs="?", default=None, help="Account id (default: ACCOUNT_ID).")
    u.set_defaults(func=cmd_user)

    h = sub.add_parser("health", parents=[common], help="Check contract health.")
    h.set_defaults(func=cmd_health)

    inf = sub.add_parser("info", parents=[common], help="Show contract wiring.")
    inf.set_defaults(func=cmd_info)

    a = sub.add_parser("admin", help="Admin operations (multi-sig capable).")
    asub = a.add_subparsers(dest="admin_cmd", required=True)
    for name, func in (
        ("pause-pool", cmd_admin_pause_pool),
        ("unpause-pool", cmd_admin_unpause_pool),
        ("close-pool", cmd_admin_close_pool),
    ):
        ap = asub.add_parser(name, parents=[common, ms])
        ap.add_argument("pool_id", type=int)
        ap.set_defaults(func=func)

    tb = asub.add_parser("set-time-bonus", parents=[common, ms])
    tb.add_argument("start", type=int, help="Unix seconds.")
    tb.add_argument("end", type=int, help="Unix seconds.")
    tb.add_argument("bps", type=int)
    tb.set_defaults(func=cmd_admin_set_time_bonus)

    nb = asub.add_parser("set-nft-bonus", parents=[common, ms])
    nb.add_argument("token", help="NFT collection id or address.")
    nb.add_argument("bps", type=int)
    nb.set_defaults(func=cmd_admin_set_nft_bonus)

    lb = asub.add_parser("set-lazy-balance-bonus", parents=[common, ms])
    lb.add_argument("threshold_amount", type=int, help="LAZY balance threshold in base units.")
    lb.add_argument("bps", type=int)
    lb.set_defaults(func=cmd_admin_set_lazy_balance_bonus)

    bp = asub.add_parser("set-burn-percentage", parents=[common, ms])
    bp.add_argument("percent", type=int)
    bp.set_defaults(func=cmd_admin_set_burn_percentage)

    pf = asub.add_parser("set-platform-fee", parents=[common, ms])
    pf.add_argument("percent", type=int)
    pf.set_defaults(func=cmd_admin_set_platform_fee)

    m = sub.add_parser("multisig", help="Offline multi-signature tools.")
    msub = m.add_subparsers(dest="multisig_cmd", required=True)
    sg = msub.add_parser("sign", parents=[common], help="Sign an exported transaction.")
    sg.add_argument("--tx", required=True, help="Path to tx.json.")
    sg.add_argument("--account", default=None, help="Signer account id, for the record.")
    sg.add_argument("--out", required=True, help="Signature file to write.")
    sg.set_defaults(func=cmd_multisig_sign)

    ins = msub.add_parser("inspect", parents=[common], help="Show an exported transaction.")
    ins.add_argument("tx", help="Path to tx.json.")
    ins.set_defaults(func=cmd_multisig_inspect)

    k = sub.add_parser("keys", help="Key file tools.")
    ksub = k.add_subparsers(dest="keys_cmd", required=True)
    ke = ksub.add_parser("encrypt", parents=[common], help="Write a passphrase-encrypted key file.")
    ke.add_argument("--out", required=True, help="Key file to write.")
    ke.add_argument("--algorithm", choices=[a.value for a in KeyAlgorithm], default=None)
    ke.set_defaults(func=cmd_keys_encrypt)

    return p


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    try:
        code = args.func(args)
    except LazyLottoError as e:
        if args.json:
            print(json.dumps({"success": False, "error": str(e), "hint": e.hint}, indent=2))
        else:
            print(f"error: {e}", file=sys.stderr)
            if e.hint:
                print(f"hint: {e.hint}", file=sys.stderr)
        code = 1
    raise SystemExit(code)
