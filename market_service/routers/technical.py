"""
技术分析路由
GET /api/technical/{symbol}  - 获取技术指标摘要与综合信号
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from market_service.dependencies import get_technical_service
from market_service.models.response import ApiResponse
from market_service.services.technical_service import TechnicalService

router = APIRouter(prefix="/api/technical", tags=["技术分析"])


@router.get("/{symbol}", response_model=ApiResponse)
async def get_technical_indicators(
    symbol: str,
    period: Optional[str] = Query(default=None, description="K 线周期，默认 1d"),
    range_: Optional[str] = Query(default=None, alias="range", description="时间区间，默认 1mo"),
    include_series: bool = Query(default=False, description="是否返回完整指标序列"),
    svc: TechnicalService = Depends(get_technical_service),
):
    """
    获取股票技术分析指标

    - 摘要: RSI / SMA / EMA / MACD / 布林带位置 / 随机指标 / 威廉指标
    - 综合信号: STRONG_SELL / SELL / HOLD / BUY / STRONG_BUY
    """
    try:
        result = await svc.get_indicators(
            symbol, period, range_, include_series=include_series
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        )
    return ApiResponse.ok(data=result)
