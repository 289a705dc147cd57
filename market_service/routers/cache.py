"""
缓存管理路由（管理 / 调试用途，热路径不依赖）
GET    /api/cache/status         - 缓存连接状态
GET    /api/cache/keys           - 列出全部缓存键
GET    /api/cache/inspect/{key}  - 查看单个缓存键
DELETE /api/cache/clear          - 清空缓存
DELETE /api/cache/key/{key}      - 删除单个缓存键

Redis 未连接时（CacheUnavailableError）由全局异常处理器返回 503
"""

from fastapi import APIRouter, Depends, HTTPException, status

from market_service.dependencies import get_cache_layer
from market_service.layers.cache import CacheLayer, CacheUnavailableError
from market_service.models.response import ApiResponse

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


@router.get("/status", response_model=ApiResponse)
async def cache_status(cache: CacheLayer = Depends(get_cache_layer)):
    """获取缓存连接状态"""
    return ApiResponse.ok(data=await cache.status())


@router.get("/keys", response_model=ApiResponse)
async def cache_keys(cache: CacheLayer = Depends(get_cache_layer)):
    """列出缓存键及剩余 TTL、类别"""
    keys = await cache.list_keys()
    return ApiResponse.ok(data={"totalKeys": len(keys), "keys": keys})


@router.get("/inspect/{key:path}", response_model=ApiResponse)
async def inspect_key(key: str, cache: CacheLayer = Depends(get_cache_layer)):
    """查看缓存键的值、TTL、类型与大小"""
    info = await cache.inspect(key)
    if info is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"缓存键不存在: {key}")
    return ApiResponse.ok(data=info)


@router.delete("/clear", response_model=ApiResponse)
async def clear_cache(cache: CacheLayer = Depends(get_cache_layer)):
    """清空全部缓存"""
    success = await cache.clear()
    return ApiResponse(
        success=success,
        message="缓存已清空" if success else "缓存清空失败",
    )


@router.delete("/key/{key:path}", response_model=ApiResponse)
async def delete_key(key: str, cache: CacheLayer = Depends(get_cache_layer)):
    """删除单个缓存键"""
    if not cache.is_connected:
        raise CacheUnavailableError("Redis 未连接")
    success = await cache.delete(key)
    return ApiResponse(
        success=success,
        message="缓存键已删除" if success else f"缓存键不存在: {key}",
    )
