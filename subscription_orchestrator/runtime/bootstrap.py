from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol, Sequence

from ..common import guarded_call, log_event
from ..storage import StorageGateway
from .settings import AppSettings


class Connectable(Protocol):
    async def connect(self) -> None: ...

    async def close(self) -> None: ...


async def wait_with_stop(stop_event: asyncio.Event, timeout_seconds: float) -> None:
    if timeout_seconds <= 0:
        return

    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        pass


async def bootstrap_dependencies(
    *,
    logger: logging.Logger,
    stop_event: asyncio.Event,
    app_settings: AppSettings,
    storage: StorageGateway,
    clients: Sequence[Connectable] = (),
) -> None:
    while not stop_event.is_set():
        try:
            await storage.connect()
            for client in clients:
                await client.connect()
            return
        except Exception as error:
            log_event(
                logger,
                level="exception",
                event="bootstrap_error",
                message="Dependency bootstrap failed",
                error=str(error),
            )
            await guarded_call(
                lambda: storage.publish_event(
                    level="ERROR",
                    event="bootstrap_error",
                    message="Failed to initialize dependencies",
                    details={"error": str(error)},
                ),
                logger=logger,
                event="bootstrap_publish_error_failed",
                message="Failed to publish bootstrap error",
            )
            await close_all(logger=logger, storage=storage, clients=clients)

            await wait_with_stop(stop_event, app_settings.error_backoff_seconds)

    raise RuntimeError("Shutdown requested before dependencies were initialized.")


async def close_all(
    *,
    logger: logging.Logger,
    storage: StorageGateway,
    clients: Sequence[Connectable] = (),
) -> None:
    for client in clients:
        await guarded_call(
            client.close,
            logger=logger,
            event="client_close_failed",
            message="Failed to close client",
            client=type(client).__name__,
        )
    await guarded_call(
        storage.close,
        logger=logger,
        event="storage_close_failed",
        message="Failed to close storage",
    )


def describe_settings(app_settings: AppSettings) -> dict[str, Any]:
    return {
        "chain_id": app_settings.chain_id,
        "creation_contract": app_settings.creation_contract_address,
        "sponsored_policy": bool(app_settings.sponsored_policy_id),
        "token_paymaster_policy": bool(app_settings.token_paymaster_policy_id),
        "membership_lock": bool(app_settings.membership_lock_address),
        "submit_timeout_seconds": app_settings.submit_timeout_seconds,
        "confirm_timeout_seconds": app_settings.confirm_timeout_seconds,
    }
