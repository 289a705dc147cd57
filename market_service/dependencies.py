"""
依赖注入：从应用状态获取生命周期内创建的服务实例
"""

from fastapi import Request

from market_service.layers.cache import CacheLayer
from market_service.services.market_service import MarketService
from market_service.services.technical_service import TechnicalService


def get_cache_layer(request: Request) -> CacheLayer:
    return request.app.state.cache


def get_market_service(request: Request) -> MarketService:
    return request.app.state.market_service


def get_technical_service(request: Request) -> TechnicalService:
    return request.app.state.technical_service
