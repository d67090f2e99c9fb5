"""
HTTP adapters against a local aiohttp server
"""
import asyncio
import sys
sys.path.insert(0, '.')

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from ingest.market_data_source import DataUnavailable
from ingest.valuation_rest import RESTMarketDataSource
from strategy.execution_types import Direction, ExecutionFailure, ExecutionFailureReason, SourceUnavailable
from strategy.transports.http_gateway import HttpExecutionGateway


def _gateway_app(seen):
    async def quote(request):
        seen.append(('quote', request.headers.get('X-API-KEY'), await request.json()))
        return web.json_response({'amountOut': 950.0})

    async def swap(request):
        body = await request.json()
        seen.append(('swap', request.headers.get('X-API-KEY'), body))
        if body['assetId'] == 'slow':
            await asyncio.sleep(0.5)
        if body['assetId'] == 'thin':
            return web.json_response({'reason': 'SLIPPAGE_EXCEEDED', 'error': 'min out not met'}, status=409)
        if body['assetId'] == 'weird':
            return web.json_response({'reason': 'SOMETHING_NEW'}, status=400)
        return web.json_response({'amountOut': 940.0, 'feePaid': 0.001, 'executionTimeMs': 12, 'txId': 'abc'})

    app = web.Application()
    app.router.add_post('/quote', quote)
    app.router.add_post('/swap', swap)
    return app


def _valuation_app():
    async def snapshot(request):
        asset_id = request.match_info['asset_id']
        if asset_id == 'down':
            return web.json_response({'error': 'upstream'}, status=503)
        if asset_id == 'odd':
            return web.json_response({'liquidity': 1.0})
        return web.json_response({'marketCap': 12.5, 'liquidity': 4.0, 'progress': 1.7})

    async def asset(request):
        asset_id = request.match_info['asset_id']
        return web.json_response({
            'name': 'Token', 'symbol': 'TOK', 'decimals': 6, 'totalSupply': '1000000000',
            'migrated': asset_id == 'old',
        })

    app = web.Application()
    app.router.add_get('/assets/{asset_id}/snapshot', snapshot)
    app.router.add_get('/assets/{asset_id}', asset)
    return app


def test_http_gateway_quote_and_swap():
    async def _run():
        seen = []
        server = TestServer(_gateway_app(seen))
        await server.start_server()
        gateway = HttpExecutionGateway(str(server.make_url('/')), api_key='secret', timeout_s=2.0)
        try:
            assert await gateway.quote('tok', Direction.BUY, 0.1) == 950.0
            result = await gateway.swap('tok', Direction.BUY, 0.1, 902.5, 1_700_000_000.0)
            assert result.amount_out == 940.0
            assert result.fee_paid == 0.001
            assert result.execution_time_ms == 12.0
            assert result.tx_id == 'abc'
        finally:
            await gateway.close()
            await server.close()

        assert seen[0] == ('quote', 'secret', {'assetId': 'tok', 'direction': 'BUY', 'amountIn': 0.1})
        assert seen[1][2] == {
            'assetId': 'tok', 'direction': 'BUY', 'amountIn': 0.1,
            'minAmountOut': 902.5, 'deadline': 1_700_000_000.0,
        }

    asyncio.run(_run())


@pytest.mark.parametrize('asset_id,expected', [
    ('thin', ExecutionFailureReason.SLIPPAGE_EXCEEDED),
    ('weird', ExecutionFailureReason.REJECTED),
])
def test_http_gateway_maps_rejections(asset_id, expected):
    async def _run():
        server = TestServer(_gateway_app([]))
        await server.start_server()
        gateway = HttpExecutionGateway(str(server.make_url('/')), timeout_s=2.0)
        try:
            with pytest.raises(ExecutionFailure) as excinfo:
                await gateway.swap(asset_id, Direction.SELL, 100.0, 0.09, 0.0)
        finally:
            await gateway.close()
            await server.close()
        assert excinfo.value.reason is expected

    asyncio.run(_run())


def test_http_gateway_timeout_and_unreachable_quote():
    async def _run():
        server = TestServer(_gateway_app([]))
        await server.start_server()
        gateway = HttpExecutionGateway(str(server.make_url('/')), timeout_s=0.05)
        try:
            with pytest.raises(ExecutionFailure) as excinfo:
                await gateway.swap('slow', Direction.BUY, 0.1, 0.0, 0.0)
            assert excinfo.value.reason is ExecutionFailureReason.TIMEOUT
        finally:
            await gateway.close()
            await server.close()

        with pytest.raises(SourceUnavailable):
            await gateway.quote('tok', Direction.SELL, 1.0)
        await gateway.close()

    asyncio.run(_run())


def test_rest_source_snapshot_and_metadata():
    async def _run():
        server = TestServer(_valuation_app())
        await server.start_server()
        source = RESTMarketDataSource(str(server.make_url('/')), timeout_s=2.0)
        try:
            first = await source.fetch_snapshot('tok')
            second = await source.fetch_snapshot('tok')
            asset = await source.fetch_asset('tok')
            old = await source.fetch_asset('old')
        finally:
            await source.close()
            await server.close()

        assert first.market_cap == 12.5
        assert first.liquidity == 4.0
        assert first.bonding_curve_progress == 1.0
        assert second.timestamp >= first.timestamp
        assert asset.symbol == 'TOK'
        assert asset.decimals == 6
        assert asset.total_supply == 1e9
        assert asset.migrated is False
        assert old.migrated is True

    asyncio.run(_run())


@pytest.mark.parametrize('asset_id', ['down', 'odd'])
def test_rest_source_failures_become_data_unavailable(asset_id):
    async def _run():
        server = TestServer(_valuation_app())
        await server.start_server()
        source = RESTMarketDataSource(str(server.make_url('/')), timeout_s=2.0)
        try:
            with pytest.raises(DataUnavailable) as excinfo:
                await source.fetch_snapshot(asset_id)
        finally:
            await source.close()
            await server.close()
        assert excinfo.value.asset_id == asset_id

    asyncio.run(_run())
