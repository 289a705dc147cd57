"""
Layer 4 – 技术分析层
在指标序列之上计算价格 / 突破 / 成交量分析、四因子综合信号与指标摘要
"""

import logging
import math
from typing import List, Optional, Sequence

from market_service.layers import indicators
from market_service.layers.indicators import safe_div
from market_service.models.market import (
    BreakoutAnalysis,
    Confidence,
    Direction,
    IndicatorBundle,
    OHLCVSeries,
    PriceAnalysis,
    Signal,
    VolumeAnalysis,
)

logger = logging.getLogger(__name__)

SIGNAL_WINDOW = 20
RSI_PERIOD = 14

# 看涨票占比下限 → (方向, 置信度, 描述)，自上而下匹配
_SIGNAL_LEVELS = [
    (75, Direction.STRONG_BUY, Confidence.HIGH, "放量突破确认，强烈看涨信号"),
    (60, Direction.BUY, Confidence.MEDIUM, "多项看涨指标共振，前景偏多"),
    (40, Direction.HOLD, Confidence.LOW, "信号分歧，等待方向明朗"),
    (25, Direction.SELL, Confidence.MEDIUM, "多项看跌指标，考虑减仓"),
]
_STRONG_SELL = (Direction.STRONG_SELL, Confidence.HIGH, "多项强烈看跌信号，风险较高")


def _finite(value: Optional[float]) -> Optional[float]:
    if value is None or math.isnan(value) or math.isinf(value):
        return None
    return float(value)


def _last(values: List[float]) -> Optional[float]:
    """序列最后一个值；序列为空或值无定义时返回 None"""
    return _finite(values[-1]) if values else None


def _check_inputs(prices: Sequence[float], *others: Sequence[float]) -> None:
    if len(prices) < 2:
        raise ValueError(f"至少需要 2 个价格点，实际为 {len(prices)} 个")
    if any(len(o) != len(prices) for o in others):
        raise ValueError("价格、最高价、最低价、成交量序列长度必须一致")


# ── 价格 / 突破 / 成交量 ──────────────────────────────────

def price_analysis(
    prices: Sequence[float], highs: Sequence[float], lows: Sequence[float]
) -> PriceAnalysis:
    """涨跌额、涨跌幅及当前价在近 20 根区间中的位置"""
    _check_inputs(prices, highs, lows)
    window = min(SIGNAL_WINDOW, len(prices))
    current, previous = prices[-1], prices[-2]
    change = current - previous
    range_high = max(highs[-window:])
    range_low = min(lows[-window:])
    return PriceAnalysis(
        current_price=current,
        change=change,
        change_percent=_finite(safe_div(change, previous) * 100),
        range_high=range_high,
        range_low=range_low,
        range_position=_finite(safe_div(current - range_low, range_high - range_low) * 100),
    )


def breakout_analysis(
    prices: Sequence[float], highs: Sequence[float], lows: Sequence[float]
) -> BreakoutAnalysis:
    """以近 20 根最高 / 最低价作为阻力 / 支撑判断突破"""
    _check_inputs(prices, highs, lows)
    window = min(SIGNAL_WINDOW, len(prices))
    current = prices[-1]
    resistance = max(highs[-window:])
    support = min(lows[-window:])

    if current >= resistance * 0.99:
        signal, description = "BREAKOUT", "价格突破近期高点，上行动能可能延续"
    elif current <= support * 1.01:
        signal, description = "BREAKDOWN", "价格跌破近期低点，存在下行压力"
    elif current > resistance * 0.95:
        signal, description = "APPROACHING RESISTANCE", "价格逼近阻力位，关注能否突破"
    else:
        signal, description = "NEUTRAL", "价格在正常区间内运行"
    return BreakoutAnalysis(
        signal=signal, resistance=resistance, support=support, description=description
    )


def volume_analysis(volumes: Sequence[int]) -> VolumeAnalysis:
    """当前成交量与近 20 根均量之比"""
    if not volumes:
        raise ValueError("成交量序列为空")
    window = min(SIGNAL_WINDOW, len(volumes))
    average = sum(volumes[-window:]) / window
    ratio = safe_div(volumes[-1], average)

    if ratio >= 2.0:
        signal, description = "HIGH VOLUME", "成交量显著放大，当前走势关注度高"
    elif ratio >= 1.5:
        signal, description = "ABOVE AVERAGE", "成交量高于均值，支撑当前价格走势"
    elif ratio <= 0.5:
        signal, description = "LOW VOLUME", "成交量低迷，当前走势信心不足"
    else:
        signal, description = "NORMAL VOLUME", "成交量处于正常范围"
    return VolumeAnalysis(
        signal=signal,
        current_volume=int(volumes[-1]),
        average_volume=average,
        volume_ratio=_finite(ratio),
        description=description,
    )


# ── 综合信号 ──────────────────────────────────────────────

def composite_signal(
    prices: Sequence[float],
    highs: Sequence[float],
    lows: Sequence[float],
    volumes: Sequence[int],
) -> Signal:
    """
    四因子投票：RSI、价格 vs SMA、量比、价格 vs 近期高点

    RSI 与 SMA 无定义时跳过该因子；量比与突破两项无论是否越过阈值
    都计入总票数，因此未投票的因子会拉低看涨占比。
    """
    _check_inputs(prices, highs, lows, volumes)
    n = len(prices)
    window = min(SIGNAL_WINDOW, n)
    current_price = prices[-1]

    current_rsi = _last(indicators.rsi(prices, min(RSI_PERIOD, n - 1)))
    current_sma = _last(indicators.sma(prices, window))
    recent_volumes = volumes[-window:]
    volume_ratio = safe_div(volumes[-1], sum(recent_volumes) / window)
    price_vs_resistance = safe_div(current_price, max(highs[-window:]))

    bullish = bearish = total = 0

    if current_rsi is not None:
        total += 1
        if current_rsi > 70:
            bearish += 1
        elif current_rsi < 30:
            bullish += 1
        elif current_rsi > 50:
            bullish += 1
        else:
            bearish += 1

    if current_sma is not None:
        total += 1
        if current_price > current_sma:
            bullish += 1
        else:
            bearish += 1

    total += 1
    if volume_ratio > 1.5:
        bullish += 1
    elif volume_ratio < 0.7:
        bearish += 1

    total += 1
    if price_vs_resistance > 0.99:
        bullish += 1
    elif price_vs_resistance < 0.90:
        bearish += 1

    bullish_pct = bullish / total * 100
    direction, confidence, description = _STRONG_SELL
    for threshold, level_direction, level_confidence, level_description in _SIGNAL_LEVELS:
        if bullish_pct >= threshold:
            direction, confidence, description = level_direction, level_confidence, level_description
            break

    logger.debug(
        f"综合信号: {direction.value} (看涨 {bullish} / 看跌 {bearish} / 总计 {total})"
    )
    return Signal(
        direction=direction,
        confidence=confidence,
        description=description,
        timeframe=window,
        bullish_votes=bullish,
        bearish_votes=bearish,
        total_votes=total,
        bullish_pct=round(bullish_pct, 2),
    )


# ── 指标摘要 ──────────────────────────────────────────────

def indicator_bundle(series: OHLCVSeries) -> IndicatorBundle:
    """由整段 K 线序列重算全部当前指标值与综合信号"""
    closes, highs, lows, volumes = (
        series.closes(), series.highs(), series.lows(), series.volumes()
    )
    _check_inputs(closes, highs, lows, volumes)
    n = len(closes)
    window = min(SIGNAL_WINDOW, n)
    current_price = closes[-1]

    macd_data = indicators.macd(closes)
    macd_diff = _finite(macd_data["macd"][-1] - macd_data["signal"][-1])

    bands = indicators.bollinger_bands(closes, window)
    bollinger_position = None
    if bands["upper"]:
        upper, lower = bands["upper"][-1], bands["lower"][-1]
        bollinger_position = _finite(safe_div(current_price - lower, upper - lower) * 100)

    oscillator_period = min(RSI_PERIOD, n)
    stoch = indicators.stochastic(highs, lows, closes, oscillator_period)

    return IndicatorBundle(
        rsi=_last(indicators.rsi(closes, min(RSI_PERIOD, n - 1))),
        sma=_last(indicators.sma(closes, window)),
        ema=_last(indicators.ema(closes, window)),
        macd=macd_diff,
        bollinger_position=bollinger_position,
        stochastic_k=_last(stoch["k"]),
        stochastic_d=_last(stoch["d"]),
        williams_r=_last(indicators.williams_r(highs, lows, closes, oscillator_period)),
        price=price_analysis(closes, highs, lows),
        breakout=breakout_analysis(closes, highs, lows),
        volume=volume_analysis(volumes),
        signal=composite_signal(closes, highs, lows, volumes),
    )
