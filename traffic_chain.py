"""Thin asynchronous JSON-RPC adapter for the target chain endpoint."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any, List, Optional

import aiohttp

from traffic_errors import RpcError

LOGGER = logging.getLogger("traffic_generator.chain")


def normalize_url(hostname: str) -> str:
    """Expand a bare host:port into a full http URL."""

    if hostname.startswith("http://") or hostname.startswith("https://"):
        return hostname.rstrip("/")
    return f"http://{hostname}".rstrip("/")


def _parse_quantity(method: str, value: Any) -> int:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise RpcError(method, f"malformed quantity {value!r}")
    try:
        return int(value, 16)
    except ValueError:
        raise RpcError(method, f"malformed quantity {value!r}") from None


class ChainClient:
    """One shared connection to the RPC endpoint, used by every instance.

    Calls are plain pass-throughs: no caching, no retries. Any failure is raised
    as :class:`RpcError` to the caller.
    """

    def __init__(self, url: str, timeout: float = 10.0) -> None:
        self.url = normalize_url(url)
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._ids = itertools.count(1)

    async def open(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "ChainClient":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        assert self._session is not None, "ChainClient must be opened before use"
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params or [],
            "id": next(self._ids),
        }
        try:
            async with self._session.post(self.url, json=payload) as response:
                response.raise_for_status()
                body = await response.json(content_type=None)
        except asyncio.TimeoutError:
            raise RpcError(method, f"timed out after {self.timeout}s") from None
        except aiohttp.ClientResponseError as exc:
            raise RpcError(method, f"HTTP {exc.status} {exc.message}") from exc
        except aiohttp.ClientError as exc:
            raise RpcError(method, f"{exc.__class__.__name__}: {exc}") from exc
        except ValueError as exc:
            raise RpcError(method, f"invalid JSON response: {exc}") from exc

        if not isinstance(body, dict):
            raise RpcError(method, f"unexpected response {body!r}")
        if body.get("error") is not None:
            error = body["error"]
            if isinstance(error, dict):
                raise RpcError(method, f"{error.get('message')} (code {error.get('code')})")
            raise RpcError(method, str(error))
        if "result" not in body:
            raise RpcError(method, "response carries no result")
        LOGGER.debug("%s -> %r", method, body["result"])
        return body["result"]

    async def pending_nonce(self, address: str) -> int:
        method = "eth_getTransactionCount"
        return _parse_quantity(method, await self._call(method, [address, "pending"]))

    async def chain_id(self) -> int:
        method = "eth_chainId"
        return _parse_quantity(method, await self._call(method))

    async def balance(self, address: str) -> int:
        method = "eth_getBalance"
        return _parse_quantity(method, await self._call(method, [address, "latest"]))

    async def send_raw_transaction(self, raw: bytes) -> str:
        method = "eth_sendRawTransaction"
        result = await self._call(method, ["0x" + bytes(raw).hex()])
        if not isinstance(result, str):
            raise RpcError(method, f"unexpected transaction hash {result!r}")
        return result
