"""Market data access: Binance REST client plus a retrying, caching wrapper.

BinanceMarketData speaks the exchange's public kline/ticker endpoints.
CachedMarketData is what the pipeline talks to: it bounds in-flight requests,
retries transient failures with exponential backoff, and falls back to the
last good response when the upstream stays down.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Protocol

import httpx
from loguru import logger

from signal_agent.config import TIMEFRAMES, settings
from signal_agent.errors import InvalidInputError, RateLimitedError, UpstreamUnavailableError
from signal_agent.models.market import Bar, PriceSeries, Quote


class MarketDataProvider(Protocol):
    async def get_price_series(self, symbol: str, timeframe: str, min_bars: int) -> PriceSeries: ...

    async def get_latest_quote(self, symbol: str) -> Quote: ...


def exchange_symbol(symbol: str) -> str:
    """BTC/USDT -> BTCUSDT"""
    return symbol.replace("/", "").upper()


def _ms_to_dt(ms) -> datetime:
    return datetime.fromtimestamp(int(ms) / 1000, tz=timezone.utc)


class BinanceMarketData:
    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or settings.binance_base_url).rstrip("/")
        self.timeout = timeout or settings.fetch_timeout_seconds
        self._client = client
        self._owns_client = client is None

    async def connect(self):
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
            self._owns_client = True
            logger.info(f"Market data client ready: {self.base_url}")

    async def disconnect(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
            logger.info("Market data client closed")

    async def _get(self, path: str, params: dict) -> object:
        if self._client is None:
            await self.connect()
        try:
            resp = await self._client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise UpstreamUnavailableError(f"Timeout on {path}: {e}") from e
        except httpx.HTTPError as e:
            raise UpstreamUnavailableError(f"Request to {path} failed: {e}") from e

        if resp.status_code in (418, 429):
            retry_after = resp.headers.get("Retry-After")
            raise RateLimitedError(
                f"Rate limited on {path} (HTTP {resp.status_code})",
                retry_after=float(retry_after) if retry_after else None,
            )
        if resp.status_code == 400:
            raise InvalidInputError(f"Rejected request {path} {params}: {resp.text[:200]}")
        if resp.status_code >= 400:
            raise UpstreamUnavailableError(f"HTTP {resp.status_code} from {path}")
        try:
            return resp.json()
        except ValueError as e:
            raise UpstreamUnavailableError(f"Malformed JSON from {path}") from e

    async def get_price_series(self, symbol: str, timeframe: str, min_bars: int) -> PriceSeries:
        if timeframe not in TIMEFRAMES:
            raise InvalidInputError(f"Unsupported timeframe: {timeframe}")
        rows = await self._get(
            "/api/v3/klines",
            {"symbol": exchange_symbol(symbol), "interval": timeframe, "limit": min_bars},
        )
        # [open_time, open, high, low, close, volume, close_time, ...]
        try:
            bars = tuple(
                Bar(
                    timestamp=_ms_to_dt(r[0]),
                    open=r[1],
                    high=r[2],
                    low=r[3],
                    close=r[4],
                    volume=r[5],
                )
                for r in rows
            )
        except (IndexError, TypeError, ValueError) as e:
            raise UpstreamUnavailableError(f"Unexpected kline payload for {symbol}/{timeframe}") from e
        return PriceSeries(symbol=symbol, timeframe=timeframe, bars=bars)

    async def get_latest_quote(self, symbol: str) -> Quote:
        d = await self._get("/api/v3/ticker/price", {"symbol": exchange_symbol(symbol)})
        try:
            return Quote(symbol=symbol, price=d["price"], timestamp=datetime.now(timezone.utc))
        except (KeyError, TypeError) as e:
            raise UpstreamUnavailableError(f"Unexpected ticker payload for {symbol}") from e


class CachedMarketData:
    """Bounded, retrying, cache-backed view over a MarketDataProvider."""

    def __init__(
        self,
        provider: MarketDataProvider,
        concurrency: int | None = None,
        retries: int | None = None,
        backoff: float | None = None,
        timeout: float | None = None,
        ttl: float | None = None,
        max_backoff: float | None = None,
    ):
        self.provider = provider
        self.retries = settings.fetch_retries if retries is None else retries
        self.backoff = settings.fetch_backoff_seconds if backoff is None else backoff
        self.max_backoff = settings.fetch_max_backoff_seconds if max_backoff is None else max_backoff
        self.timeout = timeout or settings.fetch_timeout_seconds
        self.ttl = settings.cache_ttl_seconds if ttl is None else ttl
        self._semaphore = asyncio.Semaphore(concurrency or settings.fetch_concurrency)

        # {(symbol, timeframe, min_bars): (fetched_at_monotonic, PriceSeries)}
        self._history: dict[tuple[str, str, int], tuple[float, PriceSeries]] = {}
        # {symbol: (fetched_at_monotonic, Quote)}
        self._quotes: dict[str, tuple[float, Quote]] = {}
        self.stale_hits = 0

    async def _fetch(self, label: str, factory):
        """Run factory() under the semaphore with timeout and backoff retries."""
        last: Exception | None = None
        for attempt in range(self.retries + 1):
            try:
                async with self._semaphore:
                    return await asyncio.wait_for(factory(), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                last = UpstreamUnavailableError(f"{label}: timed out after {self.timeout}s")
                last.__cause__ = e
            except UpstreamUnavailableError as e:
                last = e
            if attempt < self.retries:
                delay = self.backoff * (2 ** attempt)
                if isinstance(last, RateLimitedError) and last.retry_after:
                    if last.retry_after > self.max_backoff:
                        logger.warning(
                            f"{label}: rate limited for {last.retry_after:.0f}s, "
                            f"over the {self.max_backoff:.0f}s limit; not retrying"
                        )
                        break
                    delay = max(delay, last.retry_after)
                delay = min(delay, self.max_backoff)
                logger.warning(f"{label}: {last} (attempt {attempt + 1}/{self.retries + 1}, retry in {delay:.2f}s)")
                await asyncio.sleep(delay)
        raise last

    async def get_price_series(self, symbol: str, timeframe: str, min_bars: int) -> PriceSeries:
        key = (symbol, timeframe, min_bars)
        cached = self._history.get(key)
        if cached and time.monotonic() - cached[0] < self.ttl:
            return cached[1]
        try:
            series = await self._fetch(
                f"{symbol}/{timeframe}",
                lambda: self.provider.get_price_series(symbol, timeframe, min_bars),
            )
        except UpstreamUnavailableError as e:
            if cached is None:
                raise
            self.stale_hits += 1
            logger.warning(f"{symbol}/{timeframe}: upstream unavailable ({e}), serving cached series")
            return cached[1]
        self._history[key] = (time.monotonic(), series)
        return series

    async def get_latest_quote(self, symbol: str) -> Quote:
        cached = self._quotes.get(symbol)
        if cached and time.monotonic() - cached[0] < self.ttl:
            return cached[1]
        try:
            quote = await self._fetch(symbol, lambda: self.provider.get_latest_quote(symbol))
        except UpstreamUnavailableError as e:
            if cached is None:
                raise
            self.stale_hits += 1
            logger.warning(f"{symbol}: quote unavailable ({e}), serving cached quote")
            return cached[1]
        self._quotes[symbol] = (time.monotonic(), quote)
        return quote
