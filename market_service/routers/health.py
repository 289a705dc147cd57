"""健康检查路由"""

import time

from fastapi import APIRouter, Request

from market_service import __version__

router = APIRouter(tags=["健康检查"])


@router.get("/health")
async def health(request: Request):
    """服务健康检查（Redis 不可用时服务仍以降级模式运行）"""
    redis_health = await request.app.state.redis.check_health()
    return {
        "success": True,
        "data": {
            "status": "ok" if redis_health["status"] == "healthy" else "degraded",
            "version": __version__,
            "timestamp": int(time.time()),
            "service": "Market Data Service",
            "redis": redis_health,
        },
        "message": "服务运行正常",
    }


@router.get("/healthz")
async def healthz():
    """Kubernetes liveness probe"""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz():
    """Kubernetes readiness probe（无缓存也可对外服务）"""
    return {"ready": True}
