"""
技术分析服务
整合行情服务 + 分析层，提供技术指标计算的高级接口
"""

import logging
import math
from typing import Any, Dict, List, Optional

from market_service.layers import analysis, indicators
from market_service.services.market_service import MarketService

logger = logging.getLogger(__name__)


def _clean(values: List[float]) -> List[Optional[float]]:
    """NaN / inf 转为 None，便于 JSON 序列化"""
    return [None if math.isnan(v) or math.isinf(v) else round(v, 4) for v in values]


class TechnicalService:
    """技术分析服务"""

    def __init__(self, market: MarketService):
        self._market = market

    async def get_indicators(
        self,
        symbol: str,
        period: Optional[str] = None,
        range_: Optional[str] = None,
        include_series: bool = False,
    ) -> Dict[str, Any]:
        """
        获取指定股票的技术指标摘要与综合信号

        Returns:
            {
                "symbol": "...",
                "indicators": { "rsi": ..., "signal": {...}, ... },
                "series": { "sma": [...], ... }     # include_series=True 时
            }

        Raises:
            ValueError: K 线数量少于 2 根
        """
        series = await self._market.get_series(symbol, period, range_)
        if len(series.bars) < 2:
            raise ValueError(f"{symbol} 的 K 线数量不足，至少需要 2 根")

        bundle = analysis.indicator_bundle(series)
        logger.info(
            f"技术指标计算完成: {symbol} → {bundle.signal.direction.value} "
            f"({bundle.signal.confidence.value})"
        )

        result = {
            "symbol": series.symbol,
            "period": series.period,
            "range": series.range,
            "count": len(series.bars),
            "indicators": bundle.model_dump(mode="json"),
        }
        if include_series:
            result["series"] = self._derived_series(series.closes())
        return result

    @staticmethod
    def _derived_series(closes: List[float]) -> Dict[str, Any]:
        window = min(analysis.SIGNAL_WINDOW, len(closes))
        macd_data = indicators.macd(closes)
        bands = indicators.bollinger_bands(closes, window)
        return {
            "sma": _clean(indicators.sma(closes, window)),
            "ema": _clean(indicators.ema(closes, window)),
            "rsi": _clean(indicators.rsi(closes, min(analysis.RSI_PERIOD, len(closes) - 1))),
            "macd": {k: _clean(v) for k, v in macd_data.items()},
            "bollinger": {k: _clean(v) for k, v in bands.items()},
        }
