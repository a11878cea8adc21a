from __future__ import annotations

import asyncio
import logging
from typing import Optional

import aiohttp

from ..errors import ProviderUnavailable
from ..models import normalize_pair

log = logging.getLogger("mexc")

DEFAULT_BASE_URL = "https://contract.mexc.com/api/v1"


def to_contract_symbol(pair: str) -> str:
    """'BTC/USDT' -> 'BTC_USDT' (MEXC contract naming)."""
    return normalize_pair(pair).replace("/", "_")


class MexcPriceProvider:
    """Fair price per pair from the MEXC contract API.

    One attempt per call; the scheduler interval is the retry policy.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        timeout_s: float = 5.0,
        conn_limit: int = 40,
        conn_limit_per_host: int = 10,
    ):
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.timeout_s = float(timeout_s)
        self.conn_limit = conn_limit
        self.conn_limit_per_host = conn_limit_per_host
        self._session: Optional[aiohttp.ClientSession] = None

    async def close(self) -> None:
        """Close the shared aiohttp session (best-effort)."""
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(
            total=self.timeout_s,
            connect=min(3.0, self.timeout_s),
            sock_read=self.timeout_s,
        )

    def _connector(self) -> aiohttp.TCPConnector:
        return aiohttp.TCPConnector(
            limit=self.conn_limit,
            limit_per_host=self.conn_limit_per_host,
            ttl_dns_cache=300,
            enable_cleanup_closed=True,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout(), connector=self._connector())
        return self._session

    async def fetch_price(self, pair: str) -> float:
        symbol = to_contract_symbol(pair)
        if not symbol:
            raise ProviderUnavailable(pair, "empty pair")
        url = f"{self.base_url}/contract/fair_price/{symbol}"
        sess = await self._get_session()

        try:
            async with sess.get(url) as resp:
                if resp.status != 200:
                    txt = await resp.text()
                    raise ProviderUnavailable(pair, f"HTTP {resp.status} {txt[:200]}")
                # Some proxies return a wrong content-type; be tolerant.
                payload = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise ProviderUnavailable(pair, f"timeout after {self.timeout_s:g}s") from e
        except aiohttp.ClientError as e:
            raise ProviderUnavailable(pair, f"client error {e!r}") from e

        return parse_fair_price(pair, payload)


def parse_fair_price(pair: str, payload) -> float:
    """Extract ``data.fairPrice`` from a ``{"success": true, "data": {...}}`` envelope."""
    if not isinstance(payload, dict) or not payload.get("success"):
        raise ProviderUnavailable(pair, f"unsuccessful response {str(payload)[:200]}")
    data = payload.get("data") or {}
    raw = data.get("fairPrice") if isinstance(data, dict) else None
    try:
        price = float(raw)
    except (TypeError, ValueError):
        raise ProviderUnavailable(pair, f"missing fairPrice in {str(data)[:200]}") from None
    if not price > 0:
        raise ProviderUnavailable(pair, f"non-positive fairPrice {raw!r}")
    return price
