from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp

from ..common import log_event

RECENT_SUBSCRIBES_QUERY = """
query RecentSubscribes($first: Int!, $skip: Int!) {
  subscribes(first: $first, skip: $skip, orderBy: blockTimestamp, orderDirection: desc) {
    id
    meToken
    hubId
    assetsDeposited
    blockTimestamp
    blockNumber
    transactionHash
  }
}
"""


class SubgraphError(RuntimeError):
    pass


class SubgraphAssetIndexer:
    """Lists recently created assets, newest first."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        url: str,
        timeout_seconds: float = 15.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._logger = logger
        self._url = url.strip()
        self._timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self._timeout_seconds))
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def list_assets(self, page_size: int, offset: int) -> list[str]:
        if not self._url:
            raise SubgraphError("SUBGRAPH_URL is not configured.")
        await self.connect()
        assert self._session is not None

        payload = {
            "query": RECENT_SUBSCRIBES_QUERY,
            "variables": {"first": max(1, page_size), "skip": max(0, offset)},
        }
        async with self._session.post(self._url, json=payload) as response:
            status = response.status
            raw_text = await response.text()

        if status >= 400:
            raise SubgraphError(f"Subgraph query failed: status={status} body={str(raw_text)[:240]!r}")

        try:
            parsed: Any = json.loads(raw_text) if raw_text else {}
        except json.JSONDecodeError as error:
            raise SubgraphError(f"Subgraph returned invalid JSON: {str(raw_text)[:240]!r}") from error

        if isinstance(parsed, dict) and parsed.get("errors"):
            raise SubgraphError(f"Subgraph query failed: {parsed['errors']}")

        rows = ((parsed or {}).get("data") or {}).get("subscribes")
        if not isinstance(rows, list):
            raise SubgraphError(f"Unexpected subgraph response: {str(raw_text)[:240]!r}")

        assets = [str(row.get("meToken")) for row in rows if isinstance(row, dict) and row.get("meToken")]
        log_event(
            self._logger,
            level="debug",
            event="subgraph_assets_listed",
            message="Fetched recent assets from subgraph",
            count=len(assets),
            page_size=page_size,
            offset=offset,
        )
        return assets
