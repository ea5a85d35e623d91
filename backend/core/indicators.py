"""
Technical indicator calculations using the `ta` library.
Functions take a pandas DataFrame with OHLC columns and return enriched DataFrames.
Used to tag each trade with the market regime it was opened in and to give the
coach a compact indicator snapshot instead of raw candles.
"""
import pandas as pd
import numpy as np
import ta

from backend.models.trade import Candle, MarketCondition

MIN_CANDLES_FOR_REGIME = 30
ADX_TREND_THRESHOLD = 25.0
# Latest ATR this many times the window's median ATR counts as a volatility spike
VOLATILITY_EXPANSION = 2.0


def candles_to_frame(candles: list[Candle]) -> pd.DataFrame:
    df = pd.DataFrame([c.model_dump() for c in candles])
    if df.empty:
        return pd.DataFrame(columns=["open", "high", "low", "close", "volume"])
    df["datetime"] = pd.to_datetime(df["time"], unit="s")
    df = df.set_index("datetime")
    df["volume"] = df["volume"].fillna(0.0).astype(float)
    return df[["open", "high", "low", "close", "volume"]]


def add_all_indicators(df: pd.DataFrame, config: dict = None) -> pd.DataFrame:
    """Add all configured indicators to the dataframe."""
    config = config or DEFAULT_CONFIG
    result = df.copy()

    for indicator_name, params in config.items():
        func = INDICATOR_REGISTRY.get(indicator_name)
        if func:
            # Support list of param dicts for multi-period indicators (e.g., EMA)
            if isinstance(params, list):
                for p in params:
                    result = func(result, **p)
            else:
                result = func(result, **params)

    return result


def add_rsi(df: pd.DataFrame, period: int = 14) -> pd.DataFrame:
    df[f"RSI_{period}"] = ta.momentum.RSIIndicator(
        close=df["close"], window=period
    ).rsi()
    return df


def add_ema(df: pd.DataFrame, period: int = 20) -> pd.DataFrame:
    df[f"EMA_{period}"] = ta.trend.EMAIndicator(
        close=df["close"], window=period
    ).ema_indicator()
    return df


def add_bollinger_bands(df: pd.DataFrame, period: int = 20, std: int = 2) -> pd.DataFrame:
    bb = ta.volatility.BollingerBands(
        close=df["close"], window=period, window_dev=std
    )
    df["BB_upper"] = bb.bollinger_hband()
    df["BB_middle"] = bb.bollinger_mavg()
    df["BB_lower"] = bb.bollinger_lband()
    df["BB_width"] = bb.bollinger_wband()
    return df


def add_atr(df: pd.DataFrame, period: int = 14) -> pd.DataFrame:
    df[f"ATR_{period}"] = ta.volatility.AverageTrueRange(
        high=df["high"], low=df["low"], close=df["close"], window=period
    ).average_true_range()
    return df


def add_adx(df: pd.DataFrame, period: int = 14) -> pd.DataFrame:
    adx = ta.trend.ADXIndicator(
        high=df["high"], low=df["low"], close=df["close"], window=period
    )
    df[f"ADX_{period}"] = adx.adx()
    df["DI_plus"] = adx.adx_pos()
    df["DI_minus"] = adx.adx_neg()
    return df


def get_indicator_snapshot(df: pd.DataFrame, index: int = -1) -> dict:
    """Get all indicator values at a specific candle index."""
    row = df.iloc[index]
    snapshot = {}
    indicator_cols = [
        c for c in df.columns if c not in ["open", "high", "low", "close", "volume", "datetime", "index"]
    ]
    for col in indicator_cols:
        val = row[col]
        if pd.notna(val):
            snapshot[col] = round(float(val), 5)
    return snapshot


def market_snapshot(candles: list[Candle]) -> dict:
    """Indicator values on the latest candle, or {} when history is too short."""
    if len(candles) < MIN_CANDLES_FOR_REGIME:
        return {}
    df = add_all_indicators(candles_to_frame(candles))
    return get_indicator_snapshot(df)


def classify_market_condition(candles: list[Candle]) -> MarketCondition:
    """
    Volatility spike wins over trend; trend needs ADX above threshold with the
    fast EMA on the matching side of the slow EMA. Everything else is ranging.
    """
    if len(candles) < MIN_CANDLES_FOR_REGIME:
        return MarketCondition.RANGING

    df = candles_to_frame(candles)
    df = add_atr(df, 14)
    df = add_adx(df, 14)
    df = add_ema(df, 9)
    df = add_ema(df, 21)

    atr = df["ATR_14"].replace(0, np.nan).dropna()
    if not atr.empty:
        median_atr = float(atr.median())
        if median_atr > 0 and float(atr.iloc[-1]) > VOLATILITY_EXPANSION * median_atr:
            return MarketCondition.VOLATILE

    last = df.iloc[-1]
    adx = last["ADX_14"]
    if pd.notna(adx) and adx >= ADX_TREND_THRESHOLD:
        if last["EMA_9"] > last["EMA_21"]:
            return MarketCondition.TRENDING_UP
        if last["EMA_9"] < last["EMA_21"]:
            return MarketCondition.TRENDING_DOWN
    return MarketCondition.RANGING


INDICATOR_REGISTRY = {
    "RSI": add_rsi,
    "EMA": add_ema,
    "Bollinger": add_bollinger_bands,
    "ATR": add_atr,
    "ADX": add_adx,
}

DEFAULT_CONFIG = {
    "RSI": {"period": 14},
    "EMA": [
        {"period": 9},
        {"period": 21},
    ],
    "Bollinger": {"period": 20, "std": 2},
    "ATR": {"period": 14},
    "ADX": {"period": 14},
}
