"""
Layer 4 – 技术指标（序列计算）
纯函数：输入普通数值序列，输出派生序列；无状态、无副作用，可重复调用。

长度约定：
  SMA / Bollinger / Stochastic / Williams %R  → len - period + 1（数据不足返回空列表）
  EMA / MACD                                  → 与输入等长（首点为种子值，非真正的 period 均值）
  RSI                                         → len - period（数据不足返回空列表）
"""

import math
from typing import Dict, List, Sequence

import pandas as pd


def _check_period(period: int) -> None:
    if period < 1:
        raise ValueError(f"period 必须为正整数，实际为 {period}")


def _series(values: Sequence[float]) -> pd.Series:
    return pd.Series(list(values), dtype="float64")


# ── 均线 ──────────────────────────────────────────────────

def sma(values: Sequence[float], period: int) -> List[float]:
    """简单移动平均：第 i 点为以 period-1+i 结尾的窗口均值"""
    _check_period(period)
    if period > len(values):
        return []
    return _series(values).rolling(window=period).mean().iloc[period - 1:].tolist()


def ema(values: Sequence[float], period: int) -> List[float]:
    """指数移动平均：种子为 values[0]，乘数 2/(period+1)"""
    _check_period(period)
    if len(values) == 0:
        return []
    return _series(values).ewm(span=period, adjust=False).mean().tolist()


# ── RSI ───────────────────────────────────────────────────

def _rsi_point(avg_gain: float, avg_loss: float) -> float:
    if avg_loss == 0:
        # 纯上涨时 RS 为无穷大，RSI 饱和为 100；无涨无跌时无定义
        return math.nan if avg_gain == 0 else 100.0
    return 100 - 100 / (1 + avg_gain / avg_loss)


def rsi(prices: Sequence[float], period: int = 14) -> List[float]:
    """相对强弱指数（Wilder 平滑），首个均值取前 period 步的简单平均"""
    _check_period(period)
    if len(prices) < period + 1:
        return []
    deltas = [prices[i] - prices[i - 1] for i in range(1, len(prices))]
    gains = [d if d > 0 else 0.0 for d in deltas]
    losses = [-d if d < 0 else 0.0 for d in deltas]

    avg_gain = sum(gains[:period]) / period
    avg_loss = sum(losses[:period]) / period
    result = [_rsi_point(avg_gain, avg_loss)]
    for gain, loss in zip(gains[period:], losses[period:]):
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
        result.append(_rsi_point(avg_gain, avg_loss))
    return result


# ── MACD ──────────────────────────────────────────────────

def macd(
    prices: Sequence[float],
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> Dict[str, List[float]]:
    """MACD 线、信号线、柱状图（三者与输入等长）"""
    fast_ema = ema(prices, fast)
    slow_ema = ema(prices, slow)
    line = [f - s for f, s in zip(fast_ema, slow_ema)]
    signal_line = ema(line, signal)
    histogram = [m - s for m, s in zip(line, signal_line)]
    return {"macd": line, "signal": signal_line, "histogram": histogram}


# ── 布林带 ────────────────────────────────────────────────

def bollinger_bands(
    prices: Sequence[float], period: int = 20, std_dev: float = 2.0
) -> Dict[str, List[float]]:
    """布林带：中轨为 SMA，带宽为窗口总体标准差 × std_dev"""
    middle = sma(prices, period)
    if not middle:
        return {"upper": [], "middle": [], "lower": []}
    std = _series(prices).rolling(window=period).std(ddof=0).iloc[period - 1:]
    width = [std_dev * max(s, 0.0) for s in std.tolist()]
    return {
        "upper": [m + w for m, w in zip(middle, width)],
        "middle": middle,
        "lower": [m - w for m, w in zip(middle, width)],
    }


# ── 随机指标 / 威廉指标 ───────────────────────────────────

def _window_extremes(highs: Sequence[float], lows: Sequence[float], period: int):
    highest = _series(highs).rolling(window=period).max().iloc[period - 1:]
    lowest = _series(lows).rolling(window=period).min().iloc[period - 1:]
    return highest.tolist(), lowest.tolist()


def safe_div(numerator: float, denominator: float) -> float:
    """IEEE 语义的除法：x/0 → ±inf，0/0 → NaN"""
    if denominator == 0:
        return math.nan if numerator == 0 else math.copysign(math.inf, numerator)
    return numerator / denominator


def stochastic(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    k_period: int = 14,
    d_period: int = 3,
) -> Dict[str, List[float]]:
    """随机指标 %K / %D（%D 为 %K 的 SMA）"""
    _check_period(k_period)
    if k_period > len(closes):
        return {"k": [], "d": []}
    highest, lowest = _window_extremes(highs, lows, k_period)
    k = [
        safe_div(close - lo, hi - lo) * 100
        for close, hi, lo in zip(closes[k_period - 1:], highest, lowest)
    ]
    return {"k": k, "d": sma(k, d_period)}


def williams_r(
    highs: Sequence[float],
    lows: Sequence[float],
    closes: Sequence[float],
    period: int = 14,
) -> List[float]:
    """威廉指标 %R，取值 [-100, 0]"""
    _check_period(period)
    if period > len(closes):
        return []
    highest, lowest = _window_extremes(highs, lows, period)
    return [
        safe_div(hi - close, hi - lo) * -100
        for close, hi, lo in zip(closes[period - 1:], highest, lowest)
    ]
