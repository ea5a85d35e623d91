"""
Market data layer using the public Binance spot API.
REST klines for history, the kline websocket stream for live updates.
Docs: https://developers.binance.com/docs/binance-spot-api-docs
"""
import json
import logging
from collections import deque
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import requests
import websockets

from backend.models.trade import Candle
from config.settings import settings

logger = logging.getLogger("ghostcoach.feed")

INTERVALS = ("1m", "5m", "15m", "1h")
MAX_BUFFERED_CANDLES = 200


@dataclass(frozen=True)
class MarketUpdate:
    price: float
    is_candle_closed: bool
    candle: Candle


def _check_interval(interval: str) -> str:
    if interval not in INTERVALS:
        raise ValueError(f"Unsupported interval {interval!r}, expected one of {INTERVALS}")
    return interval


def parse_kline_row(row: list) -> Candle:
    """REST kline row: [open_time_ms, open, high, low, close, volume, ...]"""
    return Candle(
        time=int(row[0]) // 1000,
        open=float(row[1]),
        high=float(row[2]),
        low=float(row[3]),
        close=float(row[4]),
        volume=float(row[5]) if len(row) > 5 else None,
    )


def parse_kline_event(message: dict) -> Optional[MarketUpdate]:
    """Normalize a websocket kline event. Returns None for anything else."""
    k = message.get("k")
    if not isinstance(k, dict):
        return None
    price = float(k["c"])
    candle = Candle(
        time=int(k["t"]) // 1000,
        open=float(k["o"]),
        high=float(k["h"]),
        low=float(k["l"]),
        close=price,
        volume=float(k["v"]) if "v" in k else None,
    )
    return MarketUpdate(price=price, is_candle_closed=bool(k.get("x")), candle=candle)


class MarketFeed:
    def __init__(self, rest_url: str = None, ws_url: str = None, timeout: float = 10.0):
        self.rest_url = rest_url or settings.BINANCE_REST_URL
        self.ws_url = (ws_url or settings.BINANCE_WS_URL).rstrip("/")
        self.timeout = timeout

    def fetch_history(self, symbol: str, interval: str, limit: int = 100) -> list[Candle]:
        """Fetch closed candles, oldest first."""
        _check_interval(interval)
        resp = requests.get(
            self.rest_url,
            params={"symbol": symbol.upper(), "interval": interval, "limit": limit},
            timeout=self.timeout,
        )
        resp.raise_for_status()
        rows = resp.json()
        candles = [parse_kline_row(r) for r in rows]
        candles.sort(key=lambda c: c.time)
        return candles

    def stream_url(self, symbol: str, interval: str) -> str:
        return f"{self.ws_url}/{symbol.lower()}@kline_{_check_interval(interval)}"

    async def subscribe(self, symbol: str, interval: str) -> AsyncIterator[MarketUpdate]:
        """
        Yield live updates until the caller stops iterating.
        Closing the generator (aclose, break, task cancellation) closes the socket.
        """
        url = self.stream_url(symbol, interval)
        async with websockets.connect(url) as ws:
            logger.info("Subscribed to %s", url)
            try:
                async for raw in ws:
                    try:
                        update = parse_kline_event(json.loads(raw))
                    except (ValueError, KeyError, TypeError) as e:
                        logger.warning("Skipping malformed kline message: %s", e)
                        continue
                    if update is not None:
                        yield update
            finally:
                logger.info("Unsubscribed from %s", url)


class CandleBuffer:
    """Latest price plus the most recent closed candles, oldest first."""

    def __init__(self, candles: list[Candle] = None, maxlen: int = MAX_BUFFERED_CANDLES):
        self._candles: deque[Candle] = deque(candles or [], maxlen=maxlen)
        self.latest_price: float = self._candles[-1].close if self._candles else 0.0

    def apply(self, update: MarketUpdate) -> None:
        self.latest_price = update.price
        if update.is_candle_closed:
            self._candles.append(update.candle)

    def replace(self, candles: list[Candle]) -> None:
        self._candles.clear()
        self._candles.extend(candles)
        if self._candles:
            self.latest_price = self._candles[-1].close

    @property
    def candles(self) -> list[Candle]:
        return list(self._candles)

    def recent(self, n: int) -> list[Candle]:
        return self.candles[-n:]

    def __len__(self) -> int:
        return len(self._candles)
