"""
行情数据路由
GET /api/stock/{symbol}     - 历史 K 线（缓存 1 小时）
GET /api/quote/{symbol}     - 实时报价（缓存 1 分钟）
GET /api/company/{symbol}   - 公司资料（缓存 24 小时）
GET /api/search             - 代码搜索（实时，不缓存）

上游错误由全局异常处理器映射：DataNotFoundError → 404，ProviderError → 502
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from market_service.dependencies import get_market_service
from market_service.models.response import ApiResponse
from market_service.services.market_service import MarketService

router = APIRouter(prefix="/api", tags=["行情数据"])


@router.get("/stock/{symbol}", response_model=ApiResponse)
async def get_stock_data(
    symbol: str,
    period: Optional[str] = Query(default=None, description="K 线周期，如 1d / 1h / 5m"),
    range_: Optional[str] = Query(default=None, alias="range", description="时间区间，如 1mo / 1y"),
    force_refresh: bool = Query(default=False),
    svc: MarketService = Depends(get_market_service),
):
    """获取历史 K 线（图表结构）"""
    data = await svc.get_chart(symbol, period, range_, force_refresh=force_refresh)
    return ApiResponse.ok(data=data)


@router.get("/quote/{symbol}", response_model=ApiResponse)
async def get_quote(
    symbol: str,
    force_refresh: bool = Query(default=False),
    svc: MarketService = Depends(get_market_service),
):
    """获取实时报价"""
    return ApiResponse.ok(data=await svc.get_quote(symbol, force_refresh=force_refresh))


@router.get("/company/{symbol}", response_model=ApiResponse)
async def get_company(
    symbol: str,
    force_refresh: bool = Query(default=False),
    svc: MarketService = Depends(get_market_service),
):
    """获取公司资料"""
    return ApiResponse.ok(data=await svc.get_profile(symbol, force_refresh=force_refresh))


@router.get("/search", response_model=ApiResponse)
async def search_stocks(
    q: Optional[str] = Query(default=None, description="搜索关键词（代码或名称）"),
    svc: MarketService = Depends(get_market_service),
):
    """根据关键词实时搜索股票"""
    data = await svc.search(q)
    return ApiResponse.ok(data=data, message=f"共 {len(data['results'])} 条结果")
