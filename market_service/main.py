"""
行情数据服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn market_service.main:app --host 0.0.0.0 --port 3001
    python -m market_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from market_service import __version__
from market_service.config import settings
from market_service.db import RedisConnection
from market_service.layers.acquisition import AcquisitionLayer, DataNotFoundError, ProviderError
from market_service.layers.cache import CacheLayer, CacheUnavailableError
from market_service.models.response import ApiResponse
from market_service.routers import cache, health, stocks, technical
from market_service.services.market_service import MarketService
from market_service.services.technical_service import TechnicalService

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子：创建并注入 Redis 连接与各服务实例"""
    logger.info("=" * 60)
    logger.info(f"🚀 Market Data Service v{__version__} 启动中")
    logger.info(f"   Redis     : {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    logger.info("=" * 60)

    connection = RedisConnection.from_settings(settings)
    # 连接失败不阻断启动，降级为无缓存模式
    if await connection.connect():
        logger.info("✅ Redis 缓存就绪")
    else:
        logger.warning("⚠️ Redis 不可用，所有请求将直连数据源")

    cache_layer = CacheLayer(connection)
    market_service = MarketService(cache_layer, AcquisitionLayer())
    app.state.redis = connection
    app.state.cache = cache_layer
    app.state.market_service = market_service
    app.state.technical_service = TechnicalService(market_service)

    yield

    logger.info("🔄 行情数据服务正在关闭...")
    await connection.close()
    logger.info("✅ 行情数据服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="Market Data Service",
    description=(
        "行情数据聚合微服务，提供以下功能：\n"
        "- 📊 历史 K 线 / 实时报价 / 公司资料 / 代码搜索\n"
        "- 🗄️ Redis 缓存（K 线 1 小时 / 报价 1 分钟 / 公司资料 24 小时，搜索不缓存）\n"
        "- 📈 技术指标（SMA / EMA / RSI / MACD / 布林带 / 随机指标 / 威廉指标）\n"
        "- 🧭 四因子综合信号（STRONG_SELL → STRONG_BUY）\n\n"
        "**分层架构**\n"
        "```\n"
        "Acquisition Layer  ← 从 Yahoo Finance 拉取原始数据\n"
        "Cache Layer        ← Redis 缓存（不可用时自动降级）\n"
        "Processing Layer   ← 数据清洗、格式化、标准化\n"
        "Analysis Layer     ← 技术指标与综合信号\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 异常处理 ──────────────────────────────────────────────
def _error_response(status_code: int, error: str, message: str) -> JSONResponse:
    body = ApiResponse.fail(error=error, message=message)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(DataNotFoundError)
async def data_not_found_handler(request: Request, exc: DataNotFoundError):
    return _error_response(status.HTTP_404_NOT_FOUND, "数据不存在", str(exc))


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    logger.error(f"上游数据源错误: {exc}")
    return _error_response(status.HTTP_502_BAD_GATEWAY, "上游数据源错误", str(exc))


@app.exception_handler(CacheUnavailableError)
async def cache_unavailable_handler(request: Request, exc: CacheUnavailableError):
    return _error_response(status.HTTP_503_SERVICE_UNAVAILABLE, "Redis 未连接", str(exc))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "内部服务错误", str(exc))


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(stocks.router)
app.include_router(technical.router)
app.include_router(cache.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Market Data Service",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "market_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
