from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Sequence

from dotenv import load_dotenv

from subscription_orchestrator.chain import (
    JsonRpcClient,
    LocalOwnerSigner,
    MembershipEligibility,
    SmartAccountClient,
    SubgraphAssetIndexer,
)
from subscription_orchestrator.common import log_event
from subscription_orchestrator.creation import (
    AllowanceManager,
    ConfirmationFallbackPoller,
    CreationAttemptState,
    CreationOrchestrator,
    CreationParameters,
    GasPaymentStrategySelector,
    OrchestratorError,
    PendingOperationLedger,
    PreflightChecker,
    RecoveryReconciler,
)
from subscription_orchestrator.runtime import (
    AppSettings,
    bootstrap_dependencies,
    close_all,
    describe_settings,
    setup_logger,
    wait_with_stop,
)
from subscription_orchestrator.storage import StorageGateway, StorageSettings


@dataclass(slots=True)
class Runtime:
    orchestrator: CreationOrchestrator
    account: SmartAccountClient
    indexer: SubgraphAssetIndexer
    membership_rpc: JsonRpcClient


def parse_amount(raw: str, decimals: int) -> int:
    try:
        amount = Decimal(raw.strip())
    except InvalidOperation as error:
        raise argparse.ArgumentTypeError(f"Invalid amount: {raw!r}") from error
    if amount < 0:
        raise argparse.ArgumentTypeError("Amount must not be negative.")
    return int(amount * (Decimal(10) ** decimals))


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create on-chain assets through a smart account and reconcile pending creations.",
    )
    parser.add_argument("--log-level", default="INFO")
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="Create a new asset subscription.")
    create.add_argument("--name", required=True)
    create.add_argument("--symbol", required=True)
    create.add_argument("--hub-id", type=int, required=True)
    create.add_argument(
        "--deposit",
        default="0",
        help="Deposit in whole token units, for example 12.5. Zero skips balance and approval steps.",
    )
    create.add_argument("--decimals", type=int, default=18, help="Deposit token decimals.")

    commands.add_parser("reconcile", help="Run one reconciliation pass over the pending ledger.")
    commands.add_parser("watch", help="Reconcile periodically until SIGINT or SIGTERM.")
    commands.add_parser("list", help="Print pending ledger entries.")

    retry = commands.add_parser("retry", help="Re-check a pending creation; create it again if not found.")
    retry.add_argument("handle")

    clear = commands.add_parser("clear", help="Remove a pending ledger entry.")
    clear.add_argument("handle")

    return parser.parse_args(argv)


def build_runtime(
    *,
    logger: logging.Logger,
    app_settings: AppSettings,
    storage: StorageGateway,
) -> Runtime:
    signer = LocalOwnerSigner(logger=logger, private_key=app_settings.private_key)
    rpc = JsonRpcClient(app_settings.rpc_url, logger=logger)
    bundler = JsonRpcClient(app_settings.bundler_url, logger=logger)
    membership_rpc = JsonRpcClient(app_settings.rpc_url, logger=logger)

    account = SmartAccountClient(
        logger=logger,
        rpc=rpc,
        bundler=bundler,
        signer=signer,
        owner=signer.address,
        entry_point=app_settings.entry_point,
        chain_id=app_settings.chain_id,
        creation_contract=app_settings.creation_contract_address,
        account_address=app_settings.account_address,
        factory_address=app_settings.account_factory_address,
    )
    indexer = SubgraphAssetIndexer(logger=logger, url=app_settings.subgraph_url)
    eligibility = MembershipEligibility(
        logger=logger,
        rpc=membership_rpc,
        lock_address=app_settings.membership_lock_address,
    )

    ledger = PendingOperationLedger(
        logger=logger,
        store=storage,
        max_age_seconds=app_settings.ledger_max_age_seconds,
    )
    gas = GasPaymentStrategySelector(
        logger=logger,
        submitter=account,
        balances=account,
        eligibility=eligibility,
        sponsored_policy_id=app_settings.sponsored_policy_id,
        token_paymaster_policy_id=app_settings.token_paymaster_policy_id,
        token_paymaster_token=app_settings.token_paymaster_token,
        min_self_funded_gas_wei=app_settings.min_self_funded_gas_wei,
    )
    poller = ConfirmationFallbackPoller(
        logger=logger,
        indexer=indexer,
        chain=account,
        interval_seconds=app_settings.poll_interval_seconds,
        max_attempts=app_settings.poll_max_attempts,
        page_size=app_settings.indexer_page_size,
    )
    orchestrator = CreationOrchestrator(
        logger=logger,
        ledger=ledger,
        preflight=PreflightChecker(
            logger=logger,
            balances=account,
            deposit_token=app_settings.deposit_token_address,
        ),
        allowances=AllowanceManager(
            logger=logger,
            allowances=account,
            gas=gas,
            receipts=account,
            submit_timeout_seconds=app_settings.submit_timeout_seconds,
            receipt_timeout_seconds=app_settings.approval_timeout_seconds,
            verify_delays=app_settings.approval_verify_delays,
        ),
        gas=gas,
        receipts=account,
        chain=account,
        poller=poller,
        reconciler=RecoveryReconciler(
            logger=logger,
            ledger=ledger,
            poller=poller,
            attempts=app_settings.recovery_poll_attempts,
        ),
        deposit_token=app_settings.deposit_token_address,
        creation_contract=app_settings.creation_contract_address,
        record_sync=storage,
        publish_event=storage.publish_event,
        submit_timeout_seconds=app_settings.submit_timeout_seconds,
        confirm_timeout_seconds=app_settings.confirm_timeout_seconds,
        indexing_grace_seconds=app_settings.indexing_grace_seconds,
        recovery_attempts=app_settings.recovery_poll_attempts,
    )
    return Runtime(orchestrator=orchestrator, account=account, indexer=indexer, membership_rpc=membership_rpc)


def emit(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


async def run_watch(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    orchestrator: CreationOrchestrator,
) -> None:
    while not stop_event.is_set():
        try:
            await storage.healthcheck()
            await orchestrator.reconcile()
            wait_seconds = app_settings.reconcile_interval_seconds
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="reconcile_loop_error",
                message="Reconciliation pass failed",
                error=str(error),
            )
            wait_seconds = app_settings.error_backoff_seconds
        await wait_with_stop(stop_event, wait_seconds)


async def run_command(
    args: argparse.Namespace,
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    runtime: Runtime,
) -> int:
    orchestrator = runtime.orchestrator

    if args.command == "list":
        emit([entry.to_dict() for entry in await orchestrator.pending_operations()])
        return 0

    if args.command == "clear":
        removed = await orchestrator.clear(args.handle)
        emit({"handle": args.handle, "removed": removed})
        return 0 if removed else 1

    if args.command == "reconcile":
        emit((await orchestrator.reconcile()).to_dict())
        return 0

    # becoming connected runs a reconciliation pass first
    startup_summary = await orchestrator.set_initiator(await runtime.account.account_address())
    if startup_summary is not None:
        log_event(
            logger,
            level="info",
            event="startup_reconciled",
            message="Startup reconciliation finished",
            **startup_summary.to_dict(),
        )

    if args.command == "watch":
        await run_watch(
            logger=logger,
            stop_event=stop_event,
            app_settings=app_settings,
            storage=storage,
            orchestrator=orchestrator,
        )
        return 0

    def on_state(state: CreationAttemptState) -> None:
        log_event(
            logger,
            level="info",
            event="creation_state",
            message=state.message or state.status,
            status=state.status,
            progress=state.progress,
            operation_handle=state.operation_handle,
            transaction_hash=state.transaction_hash,
            result_address=state.result_address,
            unresolved=state.unresolved,
        )

    unsubscribe = orchestrator.subscribe(on_state)
    try:
        if args.command == "retry":
            final_state = await orchestrator.retry(args.handle)
        else:
            parameters = CreationParameters(
                name=args.name,
                symbol=args.symbol,
                hub_id=args.hub_id,
                deposit_amount=parse_amount(args.deposit, args.decimals),
            )
            final_state = await orchestrator.create(parameters)
    except OrchestratorError as error:
        emit({"status": "error", "code": error.code, "error": error.user_message})
        return 1
    finally:
        unsubscribe()

    emit(final_state.to_dict())
    return 0 if final_state.status == "success" or final_state.unresolved else 1


async def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    load_dotenv()
    logger = setup_logger(args.log_level)

    app_settings = AppSettings.from_env()
    storage_settings = StorageSettings.from_env()

    storage = StorageGateway(storage_settings, logger)
    runtime = build_runtime(logger=logger, app_settings=app_settings, storage=storage)
    clients = [runtime.account, runtime.indexer, runtime.membership_rpc]

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        logger.info(
            "Shutdown signal received",
            extra={"event": "shutdown_signal_received", "signal": sig.name},
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    needs_chain = args.command not in {"list", "clear"}
    await bootstrap_dependencies(
        logger=logger,
        stop_event=stop_event,
        app_settings=app_settings,
        storage=storage,
        clients=clients if needs_chain else (),
    )

    await storage.publish_event(
        level="INFO",
        event="orchestrator_started",
        message="Orchestrator command started",
        details={"command": args.command, **describe_settings(app_settings)},
    )

    try:
        return await run_command(
            args,
            logger=logger,
            stop_event=stop_event,
            app_settings=app_settings,
            storage=storage,
            runtime=runtime,
        )
    finally:
        await storage.publish_event(
            level="INFO",
            event="orchestrator_stopped",
            message="Orchestrator command finished",
            details={"command": args.command},
        )
        await close_all(logger=logger, storage=storage, clients=clients)
        logger.info("Shutdown completed", extra={"event": "shutdown_completed"})


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
