from __future__ import annotations

import itertools
import json
import logging
from typing import Any

import aiohttp

from ..common import log_event


class RpcTransportError(RuntimeError):
    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class RpcMethodError(RuntimeError):
    def __init__(self, method: str, error: Any) -> None:
        if isinstance(error, dict):
            message = str(error.get("message") or error)
            code = error.get("code")
            data = error.get("data")
        else:
            message = str(error)
            code = None
            data = None
        super().__init__(f"{method} failed: {message}")
        self.method = method
        self.code = code
        self.data = data
        self.rpc_message = message

    @property
    def detail(self) -> str:
        if self.data is None:
            return self.rpc_message
        return f"{self.rpc_message} {json.dumps(self.data, default=str)}"


class JsonRpcClient:
    def __init__(
        self,
        url: str,
        *,
        logger: logging.Logger,
        timeout_seconds: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._url = url.strip()
        self._logger = logger
        self._timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        if not self._url:
            raise RpcTransportError(f"No endpoint configured for {method}.")
        await self.connect()
        assert self._session is not None

        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }

        try:
            async with self._session.post(self._url, json=payload) as response:
                status = response.status
                raw_text = await response.text()
        except aiohttp.ClientError as error:
            log_event(
                self._logger,
                level="warning",
                event="rpc_transport_error",
                message="JSON-RPC request failed",
                method=method,
                endpoint=self._url,
                error=str(error),
            )
            raise RpcTransportError(f"{method} request failed: {error}") from error

        parsed: Any = None
        try:
            parsed = json.loads(raw_text) if raw_text else {}
        except json.JSONDecodeError:
            parsed = {"raw": raw_text}

        if isinstance(parsed, dict) and parsed.get("error") is not None:
            raise RpcMethodError(method, parsed["error"])

        if status >= 400:
            raise RpcTransportError(
                f"{method} failed: status={status} body={str(raw_text)[:240]!r}",
                status=status,
            )

        if not isinstance(parsed, dict) or "result" not in parsed:
            raise RpcTransportError(f"Unexpected {method} response: {str(raw_text)[:240]!r}", status=status)
        return parsed["result"]
