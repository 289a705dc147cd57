"""
Layer 3 – 数据处理层
将上游返回的异构结构清洗、标准化为 K 线序列 / 报价 / 公司资料 / 搜索结果，
并生成前端图表使用的平行数组结构 {t, o, h, l, c, v}。
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pandas as pd

from market_service.models.market import OHLCVSeries

logger = logging.getLogger(__name__)

_BAR_COLUMNS = ["t", "open", "high", "low", "close", "volume"]


def now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def _num(value: Any) -> Optional[float]:
    """转换为 float，缺失 / 非数值 / NaN 返回 None"""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(result) or math.isinf(result) else result


def _first(info: Dict[str, Any], *keys: str) -> Optional[float]:
    for key in keys:
        value = _num(info.get(key))
        if value is not None:
            return value
    return None


class ProcessingLayer:
    """数据处理层：清洗 + 格式化 + 标准化"""

    # ── K 线 ──────────────────────────────────────────────

    def normalize_ohlcv(self, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        将原始 K 线记录标准化为按 t 升序、t 唯一的记录列表

        缺失的开 / 高 / 低价以收盘价填充，缺失成交量记为 0；
        无时间戳或无收盘价的记录被丢弃。
        """
        if not records:
            return []

        df = pd.DataFrame(records)
        for col in _BAR_COLUMNS:
            if col not in df.columns:
                df[col] = float("nan")
            df[col] = pd.to_numeric(df[col], errors="coerce")

        df = df.dropna(subset=["t", "close"])
        df = df[df["close"] >= 0]
        if df.empty:
            return []

        for col in ["open", "high", "low"]:
            df[col] = df[col].where(df[col] > 0, df["close"])
        df["volume"] = df["volume"].fillna(0).clip(lower=0).astype("int64")
        df["t"] = df["t"].astype("int64")

        # 同一时间戳保留最后一条
        df = df.drop_duplicates(subset=["t"], keep="last")
        df = df.sort_values("t").reset_index(drop=True)

        return [
            {
                "t": int(row.t),
                "open": float(row.open),
                "high": float(row.high),
                "low": float(row.low),
                "close": float(row.close),
                "volume": int(row.volume),
            }
            for row in df[_BAR_COLUMNS].itertuples(index=False)
        ]

    def build_series(
        self, symbol: str, period: str, range_: str, records: List[Dict[str, Any]]
    ) -> OHLCVSeries:
        return OHLCVSeries(
            symbol=symbol,
            period=period,
            range=range_,
            fetchTime=now_iso(),
            bars=self.normalize_ohlcv(records),
        )

    def to_chart_payload(self, series: OHLCVSeries) -> Dict[str, List]:
        """K 线序列转换为图表使用的平行数组"""
        bars = series.bars
        return {
            "t": [b.t for b in bars],
            "o": [b.open for b in bars],
            "h": [b.high for b in bars],
            "l": [b.low for b in bars],
            "c": [b.close for b in bars],
            "v": [b.volume for b in bars],
        }

    # ── 报价 ──────────────────────────────────────────────

    def normalize_quote(self, info: Dict[str, Any]) -> Dict[str, Any]:
        """报价快照标准化为 {c, d, dp, h, l, o, pc, t}"""
        price = _first(info, "regularMarketPrice", "currentPrice")
        previous = _first(info, "regularMarketPreviousClose", "previousClose")
        change = _first(info, "regularMarketChange")
        if change is None and price is not None and previous is not None:
            change = price - previous
        change_pct = None
        if change is not None and previous:
            change_pct = change / previous * 100

        now = datetime.now(tz=timezone.utc)
        return {
            "c": price,
            "d": change,
            "dp": change_pct,
            "h": _first(info, "regularMarketDayHigh", "dayHigh"),
            "l": _first(info, "regularMarketDayLow", "dayLow"),
            "o": _first(info, "regularMarketOpen", "open"),
            "pc": previous,
            "t": int(now.timestamp()),
            "fetchTime": now.isoformat(),
        }

    # ── 公司资料 ──────────────────────────────────────────

    def normalize_profile(self, info: Dict[str, Any]) -> Dict[str, Any]:
        """公司资料标准化，缺失文本字段记为 N/A，缺失数值记为 0"""
        def text(*keys: str, default: str = "N/A") -> str:
            for key in keys:
                value = info.get(key)
                if value:
                    return str(value)
            return default

        industry = text("industry")
        return {
            "name": text("shortName", "longName"),
            "industry": industry,
            "sector": text("sector"),
            "country": text("country"),
            "website": text("website"),
            "description": text("longBusinessSummary"),
            "employees": int(_first(info, "fullTimeEmployees") or 0),
            "marketCap": _first(info, "marketCap") or 0,
            "exchange": text("fullExchangeName", "exchange"),
            "currency": text("currency", default="USD"),
            "finnhubIndustry": industry,
            "fetchTime": now_iso(),
        }

    # ── 搜索结果 ──────────────────────────────────────────

    def normalize_search_results(self, quotes: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """只保留有交易所信息的股票类结果"""
        results = []
        for quote in quotes:
            kind = str(quote.get("typeDisp") or quote.get("quoteType") or "")
            if kind.lower() != "equity" or not quote.get("exchange"):
                continue
            symbol = quote.get("symbol")
            if not symbol:
                continue
            results.append({
                "symbol": symbol,
                "description": quote.get("longname") or quote.get("shortname") or symbol,
                "type": "Common Stock",
                "exchange": quote["exchange"],
            })
        return results
