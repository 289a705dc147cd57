"""
行情数据服务单元测试

覆盖范围：
  - 数据获取层（周期 / 区间映射、yfinance 调用与错误分类）
  - 数据处理层（K 线清洗、报价 / 公司资料 / 搜索结果标准化）
  - 单飞合并
  - MarketService 读穿缓存、降级、错误传播
  - TechnicalService
  - FastAPI 路由（TestClient + 内存 Redis 替身）
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pandas as pd
import pytest
from fastapi.testclient import TestClient

from conftest import FakeRedis, make_connection, sample_records


# ─────────────────────────────────────────────────────────
# 1. 数据获取层测试
# ─────────────────────────────────────────────────────────

class TestAcquisitionLayer:
    def test_resolve_interval(self):
        from market_service.layers.acquisition import resolve_interval
        assert resolve_interval("1wk") == "1wk"
        assert resolve_interval("5m") == "5m"
        assert resolve_interval("7d") == "1d"

    def test_resolve_start(self):
        from market_service.layers.acquisition import resolve_start
        now = datetime(2024, 6, 30, tzinfo=timezone.utc)
        assert resolve_start("1y", now) == now - timedelta(days=365)
        assert resolve_start("5d", now) == now - timedelta(days=5)
        assert resolve_start("max", now) == now - timedelta(days=30)

    def test_get_history(self):
        from market_service.layers.acquisition import AcquisitionLayer
        index = pd.date_range("2024-01-02", periods=3, freq="D", tz="UTC")
        df = pd.DataFrame(
            {
                "Open": [1.0, 2.0, 3.0],
                "High": [1.5, 2.5, 3.5],
                "Low": [0.5, 1.5, 2.5],
                "Close": [1.2, 2.2, 3.2],
                "Volume": [100, 200, 300],
            },
            index=index,
        )
        with patch("yfinance.Ticker") as ticker:
            ticker.return_value.history.return_value = df
            records = AcquisitionLayer().get_history("AAPL", "1d", "5d")

        kwargs = ticker.return_value.history.call_args.kwargs
        assert kwargs["interval"] == "1d"
        assert len(records) == 3
        assert records[0]["t"] == int(index[0].timestamp())
        assert records[2]["close"] == 3.2

    def test_get_history_empty(self):
        from market_service.layers.acquisition import AcquisitionLayer, DataNotFoundError
        with patch("yfinance.Ticker") as ticker:
            ticker.return_value.history.return_value = pd.DataFrame()
            with pytest.raises(DataNotFoundError):
                AcquisitionLayer().get_history("NOPE", "1d", "1mo")

    def test_get_history_provider_failure(self):
        from market_service.layers.acquisition import AcquisitionLayer, ProviderError
        with patch("yfinance.Ticker", side_effect=RuntimeError("rate limited")):
            with pytest.raises(ProviderError):
                AcquisitionLayer().get_history("AAPL", "1d", "1mo")

    def test_quote_not_found(self):
        from market_service.layers.acquisition import AcquisitionLayer, DataNotFoundError
        with patch("yfinance.Ticker") as ticker:
            ticker.return_value.info = {}
            with pytest.raises(DataNotFoundError):
                AcquisitionLayer().get_quote("NOPE")

    def test_search(self):
        from market_service.layers.acquisition import AcquisitionLayer
        with patch("yfinance.Search") as search:
            search.return_value.quotes = [{"symbol": "AAPL"}]
            assert AcquisitionLayer(search_max_results=5).search("apple") == [{"symbol": "AAPL"}]
        assert search.call_args.kwargs["max_results"] == 5


# ─────────────────────────────────────────────────────────
# 2. 数据处理层测试
# ─────────────────────────────────────────────────────────

class TestProcessingLayer:
    def setup_method(self):
        from market_service.layers.processing import ProcessingLayer
        self.proc = ProcessingLayer()

    def test_normalize_empty(self):
        assert self.proc.normalize_ohlcv([]) == []

    def test_normalize_sorts_by_time(self):
        records = sample_records(5)
        bars = self.proc.normalize_ohlcv(records[::-1])
        assert [b["t"] for b in bars] == sorted(r["t"] for r in records)

    def test_normalize_dedupes_keeping_last(self):
        records = sample_records(3)
        duplicate = dict(records[1], close=999.0)
        bars = self.proc.normalize_ohlcv(records + [duplicate])
        assert len(bars) == 3
        assert bars[1]["close"] == 999.0

    def test_normalize_fills_missing_fields(self):
        bars = self.proc.normalize_ohlcv([
            {"t": 100, "open": None, "high": 0, "low": float("nan"), "close": 10.0, "volume": None},
            {"t": 200, "open": 1.0, "high": 2.0, "low": 0.5, "close": None, "volume": 5},
            {"t": None, "close": 3.0},
        ])
        assert bars == [
            {"t": 100, "open": 10.0, "high": 10.0, "low": 10.0, "close": 10.0, "volume": 0}
        ]

    def test_build_series_and_chart(self):
        series = self.proc.build_series("AAPL", "1d", "1mo", sample_records(10))
        assert series.symbol == "AAPL"
        assert len(series.bars) == 10
        chart = self.proc.to_chart_payload(series)
        assert set(chart) == {"t", "o", "h", "l", "c", "v"}
        assert all(len(v) == 10 for v in chart.values())
        assert chart["c"] == series.closes()

    def test_normalize_quote(self):
        quote = self.proc.normalize_quote({
            "regularMarketPrice": 110.0,
            "regularMarketPreviousClose": 100.0,
            "dayHigh": 112.0,
            "dayLow": 99.0,
            "open": 101.0,
        })
        assert quote["c"] == 110.0
        assert quote["d"] == pytest.approx(10.0)
        assert quote["dp"] == pytest.approx(10.0)
        assert quote["h"] == 112.0
        assert quote["l"] == 99.0
        assert quote["o"] == 101.0
        assert quote["pc"] == 100.0
        assert isinstance(quote["t"], int)

    def test_normalize_quote_without_previous_close(self):
        quote = self.proc.normalize_quote({"currentPrice": 50.0})
        assert quote["c"] == 50.0
        assert quote["d"] is None
        assert quote["dp"] is None

    def test_normalize_profile_defaults(self):
        profile = self.proc.normalize_profile({"longName": "Apple Inc.", "industry": "Consumer Electronics"})
        assert profile["name"] == "Apple Inc."
        assert profile["sector"] == "N/A"
        assert profile["employees"] == 0
        assert profile["marketCap"] == 0
        assert profile["currency"] == "USD"
        assert profile["finnhubIndustry"] == "Consumer Electronics"

    def test_normalize_search_results(self):
        results = self.proc.normalize_search_results([
            {"symbol": "AAPL", "longname": "Apple Inc.", "quoteType": "EQUITY", "exchange": "NMS"},
            {"symbol": "AAPL.MX", "shortname": "APPLE INC", "typeDisp": "Equity", "exchange": "MEX"},
            {"symbol": "APLE", "quoteType": "EQUITY"},
            {"symbol": "AAPL240621C00190000", "quoteType": "OPTION", "exchange": "OPR"},
        ])
        assert results == [
            {"symbol": "AAPL", "description": "Apple Inc.", "type": "Common Stock", "exchange": "NMS"},
            {"symbol": "AAPL.MX", "description": "APPLE INC", "type": "Common Stock", "exchange": "MEX"},
        ]


# ─────────────────────────────────────────────────────────
# 3. 单飞合并
# ─────────────────────────────────────────────────────────

class TestSingleFlight:
    def test_concurrent_calls_share_one_fetch(self):
        from market_service.services.singleflight import SingleFlight
        calls = []

        async def fetch():
            calls.append(1)
            await asyncio.sleep(0.01)
            return {"value": 42}

        async def scenario():
            flight = SingleFlight()
            results = await asyncio.gather(*(flight.do("k", fetch) for _ in range(5)))
            assert len(flight) == 0
            return results

        results = asyncio.run(scenario())
        assert len(calls) == 1
        assert all(r == {"value": 42} for r in results)

    def test_error_reaches_every_waiter(self):
        from market_service.services.singleflight import SingleFlight

        async def fetch():
            await asyncio.sleep(0.01)
            raise RuntimeError("upstream down")

        async def scenario():
            flight = SingleFlight()
            results = await asyncio.gather(
                *(flight.do("k", fetch) for _ in range(3)), return_exceptions=True
            )
            assert len(flight) == 0
            return results

        results = asyncio.run(scenario())
        assert all(isinstance(r, RuntimeError) for r in results)

    def test_cancelled_leader_does_not_cancel_waiters(self):
        """发起方被取消后，等待方重新执行拉取而不是跟着被取消"""
        from market_service.services.singleflight import SingleFlight
        calls = []

        async def fetch():
            calls.append(1)
            await asyncio.sleep(0.05)
            return len(calls)

        async def scenario():
            flight = SingleFlight()
            leader = asyncio.ensure_future(flight.do("k", fetch))
            await asyncio.sleep(0)
            waiter = asyncio.ensure_future(flight.do("k", fetch))
            await asyncio.sleep(0)

            leader.cancel()
            result = await waiter
            assert leader.cancelled()
            assert len(flight) == 0
            return result

        assert asyncio.run(scenario()) == 2
        assert len(calls) == 2


# ─────────────────────────────────────────────────────────
# 4. MarketService 读穿缓存
# ─────────────────────────────────────────────────────────

def _acquisition():
    from market_service.layers.acquisition import AcquisitionLayer
    acq = MagicMock(spec=AcquisitionLayer)
    acq.get_history.return_value = sample_records(30)
    acq.get_quote.return_value = {"regularMarketPrice": 110.0, "regularMarketPreviousClose": 100.0}
    acq.get_profile.return_value = {"shortName": "Apple", "industry": "Technology"}
    acq.search.return_value = [
        {"symbol": "AAPL", "longname": "Apple Inc.", "quoteType": "EQUITY", "exchange": "NMS"}
    ]
    return acq


async def _service(fake, acq, **kwargs):
    from market_service.layers.cache import CacheLayer
    from market_service.services.market_service import MarketService
    conn = make_connection(fake, **kwargs)
    await conn.connect()
    cache = CacheLayer(conn)
    return cache, MarketService(cache, acquisition=acq)


class TestMarketService:
    def test_history_read_through(self, fake_redis):
        acq = _acquisition()

        async def scenario():
            cache, svc = await _service(fake_redis, acq)
            first = await svc.get_history("AAPL")
            second = await svc.get_history("aapl")
            assert await cache.exists("stock:aapl:1d:1mo")
            return first, second

        first, second = asyncio.run(scenario())
        assert first["cached"] is False
        assert second["cached"] is True
        assert first["bars"] == second["bars"]
        assert first["period"] == "1d" and first["range"] == "1mo"
        acq.get_history.assert_called_once_with("AAPL", "1d", "1mo")

    def test_force_refresh_bypasses_cache(self, fake_redis):
        acq = _acquisition()

        async def scenario():
            _, svc = await _service(fake_redis, acq)
            await svc.get_quote("AAPL")
            return await svc.get_quote("AAPL", force_refresh=True)

        result = asyncio.run(scenario())
        assert result["cached"] is False
        assert acq.get_quote.call_count == 2

    def test_quote_expires_after_ttl(self, fake_redis):
        acq = _acquisition()

        async def scenario():
            _, svc = await _service(fake_redis, acq)
            await svc.get_quote("AAPL")
            fake_redis.now += 61
            return await svc.get_quote("AAPL")

        assert asyncio.run(scenario())["cached"] is False
        assert acq.get_quote.call_count == 2

    def test_profile_cached(self, fake_redis):
        acq = _acquisition()

        async def scenario():
            _, svc = await _service(fake_redis, acq)
            await svc.get_profile("AAPL")
            return await svc.get_profile("AAPL")

        result = asyncio.run(scenario())
        assert result["cached"] is True
        assert result["name"] == "Apple"
        acq.get_profile.assert_called_once()

    def test_provider_error_propagates_and_is_not_cached(self, fake_redis):
        from market_service.layers.acquisition import ProviderError
        acq = _acquisition()
        acq.get_quote.side_effect = ProviderError("rate limited")

        async def scenario():
            cache, svc = await _service(fake_redis, acq)
            with pytest.raises(ProviderError):
                await svc.get_quote("AAPL")
            assert await cache.exists("quote:aapl") is False

        asyncio.run(scenario())

    def test_history_without_valid_bars(self, fake_redis):
        from market_service.layers.acquisition import DataNotFoundError
        acq = _acquisition()
        acq.get_history.return_value = [{"t": 1, "close": None}]

        async def scenario():
            cache, svc = await _service(fake_redis, acq)
            with pytest.raises(DataNotFoundError):
                await svc.get_history("AAPL")
            assert await cache.list_keys() == []

        asyncio.run(scenario())

    def test_degraded_cache_still_serves(self, fake_redis):
        acq = _acquisition()
        fake_redis.fail = True

        async def scenario():
            _, svc = await _service(fake_redis, acq, max_attempts=1, reconnect_interval=3600)
            first = await svc.get_quote("AAPL")
            second = await svc.get_quote("AAPL")
            return first, second

        first, second = asyncio.run(scenario())
        assert first["cached"] is False and second["cached"] is False
        assert first["c"] == 110.0
        assert acq.get_quote.call_count == 2

    def test_concurrent_misses_coalesce(self, fake_redis):
        acq = _acquisition()

        def slow_history(symbol, period, range_):
            time.sleep(0.05)
            return sample_records(30)

        acq.get_history.side_effect = slow_history

        async def scenario():
            _, svc = await _service(fake_redis, acq)
            return await asyncio.gather(*(svc.get_history("AAPL") for _ in range(5)))

        results = asyncio.run(scenario())
        assert acq.get_history.call_count == 1
        assert all(r["bars"] == results[0]["bars"] for r in results)

    def test_invalid_cached_series_is_refetched(self, fake_redis):
        acq = _acquisition()

        async def scenario():
            _, svc = await _service(fake_redis, acq)
            await fake_redis.set("stock:aapl:1d:1mo", '{"symbol": "AAPL"}')
            return await svc.get_series("AAPL")

        series = asyncio.run(scenario())
        assert len(series.bars) == 30
        acq.get_history.assert_called_once()

    def test_non_object_cached_values_are_misses(self, fake_redis):
        """缓存中为合法 JSON 但不是对象的值按未命中处理，并被新数据覆盖"""
        acq = _acquisition()

        async def scenario():
            cache, svc = await _service(fake_redis, acq)
            await fake_redis.set("stock:aapl:1d:1mo", "[1, 2]")
            await fake_redis.set("quote:aapl", '"stale"')
            await fake_redis.set("company:aapl", "42")
            series = await svc.get_series("AAPL")
            quote = await svc.get_quote("AAPL")
            profile = await svc.get_profile("AAPL")
            assert isinstance(await cache.get("quote:aapl"), dict)
            return series, quote, profile

        series, quote, profile = asyncio.run(scenario())
        assert len(series.bars) == 30
        assert quote["cached"] is False and quote["c"] == 110.0
        assert profile["cached"] is False and profile["name"] == "Apple"
        acq.get_history.assert_called_once()
        acq.get_quote.assert_called_once()
        acq.get_profile.assert_called_once()

    def test_chart_payload(self, fake_redis):
        acq = _acquisition()

        async def scenario():
            _, svc = await _service(fake_redis, acq)
            return await svc.get_chart("AAPL", "1d", "1mo")

        chart = asyncio.run(scenario())
        assert chart["count"] == 30
        assert len(chart["chart"]["c"]) == 30
        assert chart["cached"] is False

    def test_search_never_cached(self, fake_redis):
        acq = _acquisition()

        async def scenario():
            cache, svc = await _service(fake_redis, acq)
            first = await svc.search("apple")
            second = await svc.search("apple")
            assert await cache.list_keys() == []
            return first, second

        first, second = asyncio.run(scenario())
        assert first["cached"] is False and second["cached"] is False
        assert first["results"][0]["symbol"] == "AAPL"
        assert acq.search.call_count == 2

    def test_blank_search(self, fake_redis):
        acq = _acquisition()

        async def scenario():
            _, svc = await _service(fake_redis, acq)
            return await svc.search("   ")

        assert asyncio.run(scenario())["results"] == []
        acq.search.assert_not_called()


# ─────────────────────────────────────────────────────────
# 5. TechnicalService
# ─────────────────────────────────────────────────────────

class TestTechnicalService:
    def _run(self, fake, acq, **kwargs):
        from market_service.services.technical_service import TechnicalService

        async def scenario():
            _, market = await _service(fake, acq)
            return await TechnicalService(market).get_indicators("AAPL", **kwargs)

        return asyncio.run(scenario())

    def test_indicators(self, fake_redis):
        result = self._run(fake_redis, _acquisition())
        assert result["symbol"] == "AAPL"
        assert result["count"] == 30
        assert result["indicators"]["signal"]["direction"] in {
            "STRONG_SELL", "SELL", "HOLD", "BUY", "STRONG_BUY"
        }
        assert "series" not in result

    def test_include_series(self, fake_redis):
        result = self._run(fake_redis, _acquisition(), include_series=True)
        series = result["series"]
        assert len(series["sma"]) == 11
        assert len(series["ema"]) == 30
        assert len(series["rsi"]) == 16
        assert len(series["macd"]["histogram"]) == 30
        assert len(series["bollinger"]["upper"]) == 11

    def test_single_bar_rejected(self, fake_redis):
        acq = _acquisition()
        acq.get_history.return_value = sample_records(1)
        with pytest.raises(ValueError):
            self._run(fake_redis, acq)


# ─────────────────────────────────────────────────────────
# 6. HTTP 路由测试（TestClient，内存 Redis 替身）
# ─────────────────────────────────────────────────────────

def _app_client(fake):
    connection = make_connection(fake, max_attempts=1, reconnect_interval=3600)
    patcher = patch("market_service.main.RedisConnection.from_settings", return_value=connection)
    patcher.start()
    from market_service.main import app
    return patcher, TestClient(app)


@pytest.fixture
def client(fake_redis):
    """Redis 可用的测试客户端"""
    patcher, test_client = _app_client(fake_redis)
    with test_client as c:
        yield c
    patcher.stop()


@pytest.fixture
def degraded_client():
    """Redis 不可用的测试客户端"""
    fake = FakeRedis()
    fake.fail = True
    patcher, test_client = _app_client(fake)
    with test_client as c:
        yield c
    patcher.stop()


@pytest.fixture
def provider():
    """替换上游数据源"""
    from market_service.layers.acquisition import AcquisitionLayer
    acq = _acquisition()
    with patch.object(AcquisitionLayer, "get_history", acq.get_history), \
         patch.object(AcquisitionLayer, "get_quote", acq.get_quote), \
         patch.object(AcquisitionLayer, "get_profile", acq.get_profile), \
         patch.object(AcquisitionLayer, "search", acq.search):
        yield acq


class TestHealthRoutes:
    def test_health_endpoint(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["data"]["status"] == "ok"
        assert body["data"]["redis"]["status"] == "healthy"

    def test_health_degraded(self, degraded_client):
        body = degraded_client.get("/health").json()
        assert body["data"]["status"] == "degraded"

    def test_probes(self, client):
        assert client.get("/healthz").json()["status"] == "ok"
        assert client.get("/readyz").json()["ready"] is True

    def test_root_endpoint(self, client):
        body = client.get("/").json()
        assert "version" in body
        assert "docs" in body

    def test_process_time_header(self, client):
        resp = client.get("/healthz")
        assert resp.headers["X-Process-Time"].endswith("ms")


class TestStockRoutes:
    def test_stock_cached_on_second_call(self, client, provider):
        first = client.get("/api/stock/AAPL", params={"period": "1d", "range": "1mo"})
        second = client.get("/api/stock/AAPL", params={"period": "1d", "range": "1mo"})
        assert first.status_code == 200
        assert first.json()["data"]["cached"] is False
        assert second.json()["data"]["cached"] is True
        assert len(second.json()["data"]["chart"]["t"]) == 30
        provider.get_history.assert_called_once_with("AAPL", "1d", "1mo")

    def test_quote(self, client, provider):
        data = client.get("/api/quote/AAPL").json()["data"]
        assert data["c"] == 110.0
        assert data["dp"] == pytest.approx(10.0)

    def test_company(self, client, provider):
        data = client.get("/api/company/AAPL").json()["data"]
        assert data["name"] == "Apple"

    def test_not_found(self, client, provider):
        from market_service.layers.acquisition import DataNotFoundError
        provider.get_quote.side_effect = DataNotFoundError("未找到 NOPE 的报价")
        resp = client.get("/api/quote/NOPE")
        assert resp.status_code == 404
        assert resp.json()["success"] is False

    def test_provider_error(self, client, provider):
        from market_service.layers.acquisition import ProviderError
        provider.get_profile.side_effect = ProviderError("rate limited")
        resp = client.get("/api/company/AAPL")
        assert resp.status_code == 502
        assert "rate limited" in resp.json()["message"]

    def test_search(self, client, provider):
        body = client.get("/api/search", params={"q": "apple"}).json()
        assert body["data"]["results"][0]["symbol"] == "AAPL"
        assert body["data"]["cached"] is False

    def test_search_without_query(self, client, provider):
        body = client.get("/api/search").json()
        assert body["data"]["results"] == []
        provider.search.assert_not_called()

    def test_degraded_mode_serves_uncached(self, degraded_client, provider):
        for _ in range(2):
            resp = degraded_client.get("/api/quote/AAPL")
            assert resp.status_code == 200
            assert resp.json()["data"]["cached"] is False
        assert provider.get_quote.call_count == 2


class TestTechnicalRoutes:
    def test_indicators(self, client, provider):
        resp = client.get("/api/technical/AAPL", params={"include_series": "true"})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["indicators"]["signal"]["timeframe"] == 20
        assert "series" in data

    def test_insufficient_bars(self, client, provider):
        provider.get_history.return_value = sample_records(1)
        assert client.get("/api/technical/AAPL").status_code == 422


class TestCacheRoutes:
    def test_status(self, client):
        data = client.get("/api/cache/status").json()["data"]
        assert data["connected"] is True

    def test_keys_and_inspect(self, client, provider):
        client.get("/api/quote/AAPL")
        data = client.get("/api/cache/keys").json()["data"]
        assert data["totalKeys"] == 1
        assert data["keys"][0]["key"] == "quote:aapl"

        info = client.get("/api/cache/inspect/quote:aapl").json()["data"]
        assert info["value"]["c"] == 110.0
        assert client.get("/api/cache/inspect/quote:none").status_code == 404

    def test_delete_and_clear(self, client, provider):
        client.get("/api/quote/AAPL")
        client.get("/api/company/AAPL")
        assert client.delete("/api/cache/key/quote:aapl").json()["success"] is True
        assert client.delete("/api/cache/key/quote:aapl").json()["success"] is False
        assert client.delete("/api/cache/clear").json()["success"] is True
        assert client.get("/api/cache/keys").json()["data"]["totalKeys"] == 0

    def test_unavailable(self, degraded_client):
        assert degraded_client.get("/api/cache/keys").status_code == 503
        assert degraded_client.get("/api/cache/inspect/quote:aapl").status_code == 503
        assert degraded_client.delete("/api/cache/key/quote:aapl").status_code == 503
        assert degraded_client.get("/api/cache/status").json()["data"]["connected"] is False
