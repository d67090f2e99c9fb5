import asyncio
import sys
import time
sys.path.insert(0, '.')

import pytest

from strategy.execution_types import Direction, ExecutionFailure, ExecutionFailureReason, SourceUnavailable
from strategy.simulators.paper import PaperExecutionGateway


def _gateway(**kwargs):
    gateway = PaperExecutionGateway(**kwargs)
    gateway.seed_pool('tok', 100.0, 100_000.0)
    return gateway


def _deadline():
    return time.time() + 60


def test_buy_then_sell_pays_fees_both_ways():
    async def _run():
        gateway = _gateway(fee_rate=0.01, initial_equity=10.0)
        quoted = await gateway.quote('tok', Direction.BUY, 1.0)
        bought = await gateway.swap('tok', Direction.BUY, 1.0, quoted * 0.95, _deadline())
        assert bought.amount_out == pytest.approx(quoted)
        assert bought.fee_paid == pytest.approx(0.01)
        assert bought.tx_id.startswith('paper-')
        assert gateway.cash == pytest.approx(9.0)
        assert gateway.holdings['tok'] == pytest.approx(bought.amount_out)

        sold = await gateway.swap('tok', Direction.SELL, bought.amount_out, 0.0, _deadline())
        assert 0.97 < sold.amount_out < 1.0
        assert 'tok' not in gateway.holdings
        assert gateway.cash == pytest.approx(9.0 + sold.amount_out)
        assert gateway.equity < 10.0

    asyncio.run(_run())


def test_slippage_guard_leaves_state_untouched():
    async def _run():
        gateway = _gateway()
        quoted = await gateway.quote('tok', Direction.BUY, 1.0)
        with pytest.raises(ExecutionFailure) as excinfo:
            await gateway.swap('tok', Direction.BUY, 1.0, quoted * 1.5, _deadline())
        assert excinfo.value.reason is ExecutionFailureReason.SLIPPAGE_EXCEEDED
        assert gateway.cash == pytest.approx(10.0)
        assert dict(gateway.holdings) == {}
        assert gateway.pool('tok').quote_reserve == pytest.approx(100.0)

    asyncio.run(_run())


def test_injected_failures_are_consumed_in_order():
    async def _run():
        gateway = _gateway()
        gateway.fail_next('tok', ExecutionFailureReason.TIMEOUT, count=2)
        for _ in range(2):
            with pytest.raises(ExecutionFailure) as excinfo:
                await gateway.swap('tok', Direction.BUY, 1.0, 0.0, _deadline())
            assert excinfo.value.reason is ExecutionFailureReason.TIMEOUT
        result = await gateway.swap('tok', Direction.BUY, 1.0, 0.0, _deadline())
        assert result.amount_out > 0

    asyncio.run(_run())


def test_expired_deadline_times_out():
    async def _run():
        gateway = _gateway()
        with pytest.raises(ExecutionFailure) as excinfo:
            await gateway.swap('tok', Direction.BUY, 1.0, 0.0, time.time() - 1)
        assert excinfo.value.reason is ExecutionFailureReason.TIMEOUT

    asyncio.run(_run())


@pytest.mark.parametrize('direction,amount', [
    (Direction.BUY, 50.0),
    (Direction.SELL, 1.0),
    (Direction.BUY, 0.0),
])
def test_unfunded_swaps_are_rejected(direction, amount):
    async def _run():
        gateway = _gateway(initial_equity=10.0)
        with pytest.raises(ExecutionFailure) as excinfo:
            await gateway.swap('tok', direction, amount, 0.0, _deadline())
        assert excinfo.value.reason is ExecutionFailureReason.REJECTED

    asyncio.run(_run())


def test_unavailable_quotes():
    async def _run():
        gateway = _gateway()
        gateway.set_unavailable('tok')
        with pytest.raises(SourceUnavailable):
            await gateway.quote('tok', Direction.SELL, 10.0)
        gateway.set_unavailable('tok', False)
        assert await gateway.quote('tok', Direction.SELL, 10.0) > 0

    asyncio.run(_run())


def test_mark_price_moves_quotes():
    async def _run():
        gateway = _gateway(fee_rate=0.0)
        assert gateway.pool('tok').price == pytest.approx(0.001)
        before = await gateway.quote('tok', Direction.SELL, 10.0)
        gateway.mark_price('tok', 0.002)
        assert gateway.pool('tok').price == pytest.approx(0.002)
        after = await gateway.quote('tok', Direction.SELL, 10.0)
        assert after == pytest.approx(before * 2, rel=1e-3)

        gateway.mark_price('tok', 0.0)
        assert gateway.pool('tok').price == pytest.approx(0.002)

    asyncio.run(_run())


def test_pools_seed_on_first_use():
    gateway = PaperExecutionGateway(default_quote_reserve=30.0, default_token_reserve=1e9)
    assert gateway.pool('fresh').price == pytest.approx(3e-8)
    with pytest.raises(ValueError):
        PaperExecutionGateway(fee_rate=1.0)
