from __future__ import annotations

import asyncio
import logging

from ..common import guarded_call, log_event
from .capabilities import AssetIndexer, ChainStateReader
from .types import same_address


class ConfirmationFallbackPoller:
    """Finds the asset created for an operation by scanning the indexer.

    The newest indexed assets are listed and each candidate's owner is read on
    chain; the first one owned by the initiator is taken as the result. An
    initiator that already owns an older asset can therefore match that one.

    A caller that joins a running poll waits on that poll's attempt budget,
    not its own ``max_attempts``.
    """

    def __init__(
        self,
        *,
        logger: logging.Logger,
        indexer: AssetIndexer,
        chain: ChainStateReader,
        interval_seconds: float = 10.0,
        max_attempts: int = 30,
        page_size: int = 50,
    ) -> None:
        self._logger = logger
        self._indexer = indexer
        self._chain = chain
        self._interval_seconds = max(0.0, interval_seconds)
        self._max_attempts = max(1, max_attempts)
        self._page_size = max(1, page_size)
        self._active: dict[str, asyncio.Task[str | None]] = {}

    def is_polling(self, handle: str) -> bool:
        task = self._active.get(handle)
        return task is not None and not task.done()

    async def poll(
        self,
        handle: str,
        initiator: str,
        *,
        max_attempts: int | None = None,
    ) -> str | None:
        active = self._active.get(handle)
        if active is not None and not active.done():
            log_event(
                self._logger,
                level="info",
                event="poll_joined",
                message="Joining active status poll",
                operation_handle=handle,
            )
            return await asyncio.shield(active)

        attempts = max(1, max_attempts) if max_attempts is not None else self._max_attempts
        task = asyncio.create_task(self._run(handle, initiator, attempts))
        self._active[handle] = task

        def forget(done_task: asyncio.Task[str | None]) -> None:
            if self._active.get(handle) is done_task:
                self._active.pop(handle, None)

        task.add_done_callback(forget)
        return await asyncio.shield(task)

    async def _run(self, handle: str, initiator: str, attempts: int) -> str | None:
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                await asyncio.sleep(self._interval_seconds)

            try:
                candidates = await self._indexer.list_assets(self._page_size, 0)
            except asyncio.CancelledError:
                raise
            except Exception as error:
                log_event(
                    self._logger,
                    level="warning",
                    event="poll_indexer_failed",
                    message="Indexer query failed during status poll",
                    operation_handle=handle,
                    attempt=attempt,
                    error=str(error),
                )
                continue

            for candidate in candidates:
                owner = await guarded_call(
                    lambda: self._chain.read_asset_owner(candidate),
                    logger=self._logger,
                    event="poll_owner_read_failed",
                    message="Failed to read candidate owner",
                    level="debug",
                    operation_handle=handle,
                    candidate=candidate,
                )
                if same_address(owner, initiator):
                    log_event(
                        self._logger,
                        level="info",
                        event="poll_match_found",
                        message="Created asset found by status poll",
                        operation_handle=handle,
                        attempt=attempt,
                        result_address=candidate,
                    )
                    return candidate

            log_event(
                self._logger,
                level="info",
                event="poll_attempt_empty",
                message="No matching asset yet",
                operation_handle=handle,
                attempt=attempt,
                max_attempts=attempts,
                candidates=len(candidates),
            )

        log_event(
            self._logger,
            level="warning",
            event="poll_exhausted",
            message="Status poll exhausted without a match",
            operation_handle=handle,
            attempts=attempts,
        )
        return None
