"""行情数据模型：K 线、综合信号、指标摘要"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class Bar(BaseModel):
    """单根 K 线，t 为 Unix 秒"""
    t: int
    open: float
    high: float
    low: float
    close: float = Field(ge=0)
    volume: int = Field(ge=0)


class OHLCVSeries(BaseModel):
    """按时间升序排列的 K 线序列（缓存的历史数据值）"""
    symbol: str
    period: str
    range: str
    fetchTime: str
    bars: List[Bar]

    def closes(self) -> List[float]:
        return [b.close for b in self.bars]

    def highs(self) -> List[float]:
        return [b.high for b in self.bars]

    def lows(self) -> List[float]:
        return [b.low for b in self.bars]

    def volumes(self) -> List[int]:
        return [b.volume for b in self.bars]


class Direction(str, Enum):
    STRONG_SELL = "STRONG_SELL"
    SELL = "SELL"
    HOLD = "HOLD"
    BUY = "BUY"
    STRONG_BUY = "STRONG_BUY"


class Confidence(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class Signal(BaseModel):
    direction: Direction
    confidence: Confidence
    description: str
    timeframe: int
    bullish_votes: int
    bearish_votes: int
    total_votes: int
    bullish_pct: float


class PriceAnalysis(BaseModel):
    current_price: float
    change: float
    change_percent: Optional[float] = None
    range_high: float
    range_low: float
    range_position: Optional[float] = None


class BreakoutAnalysis(BaseModel):
    signal: str
    resistance: float
    support: float
    description: str


class VolumeAnalysis(BaseModel):
    signal: str
    current_volume: int
    average_volume: float
    volume_ratio: Optional[float] = None
    description: str


class IndicatorBundle(BaseModel):
    """由当前 K 线序列整体重算的指标摘要，不持有独立状态"""
    rsi: Optional[float] = None
    sma: Optional[float] = None
    ema: Optional[float] = None
    macd: Optional[float] = None
    bollinger_position: Optional[float] = None
    stochastic_k: Optional[float] = None
    stochastic_d: Optional[float] = None
    williams_r: Optional[float] = None
    price: PriceAnalysis
    breakout: BreakoutAnalysis
    volume: VolumeAnalysis
    signal: Signal
