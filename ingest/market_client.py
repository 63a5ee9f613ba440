import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import aiohttp

from config.settings import MarketDataSettings
from strategy.models import InstrumentQuote


logger = logging.getLogger(__name__)


class MarketDataError(Exception):
    def __init__(self, status: Optional[int], msg: str, body: str = ''):
        self.status = status
        self.msg = msg
        self.body = body
        super().__init__(f"Market data error (status={status}, msg={msg})")


class MarketDataSource(ABC):
    """Anything that can list every tradable instrument with its latest stats."""

    @abstractmethod
    async def fetch_instruments(self) -> List[InstrumentQuote]:
        pass

    async def close(self) -> None:
        return None


class MarketDataClient(MarketDataSource):
    """REST client for the venue's ``/v1/markets`` listing."""

    def __init__(self, settings: MarketDataSettings):
        self.base_url = settings.base_url.rstrip("/")
        self.markets_path = settings.markets_path
        self.timeout = aiohttp.ClientTimeout(total=settings.timeout_s)
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession(timeout=self.timeout)
            return self._session

    async def close(self) -> None:
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        async with session.get(url, params=params) as resp:
            text = await resp.text()
            if resp.status >= 400:
                raise MarketDataError(resp.status, resp.reason or 'http error', text)
            try:
                return json.loads(text)
            except ValueError as exc:
                raise MarketDataError(resp.status, 'invalid json', text) from exc

    async def fetch_instruments(self) -> List[InstrumentQuote]:
        payload = await self._get(self.markets_path)
        rows = payload.get("markets") if isinstance(payload, dict) else payload
        if not isinstance(rows, list):
            raise MarketDataError(None, 'unexpected markets payload', str(payload)[:200])

        quotes: List[InstrumentQuote] = []
        for row in rows:
            try:
                quotes.append(InstrumentQuote.from_payload(row))
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping malformed market row: %s", exc)
        return quotes
