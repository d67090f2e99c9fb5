"""
End-to-end wiring of MigrationSniper with in-memory market data and venue
"""
import asyncio
import sys
sys.path.insert(0, '.')

import pytest

from api.alerts import AlertWebhook
from main import MigrationSniper
from orchestration.persistence import PositionStateStore
from strategy.positions import PROFIT_TARGET_REASON, PositionStatus
from strategy.simulators.paper import PaperExecutionGateway
from tests.sniper_fakes import FakeGateway, FakeSource, settings_dict


SCENARIO_A = [17.6, 17.9, 18.2, 18.3, 18.4, 18.5, 18.6]


class RecordingAlerts(AlertWebhook):
    def __init__(self):
        super().__init__(url='')
        self.sent = []

    async def send_alert(self, alert_type, message, severity='warning', metadata=None):
        self.sent.append((alert_type, severity, metadata or {}))


async def _until(predicate, timeout_s=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_s
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def test_crossing_opens_and_exit_closes_position():
    async def _run():
        source = FakeSource({'tok': SCENARIO_A}, metadata={'tok': {'symbol': 'TOK'}})
        gateway = FakeGateway(price=0.001)
        alerts = RecordingAlerts()
        sniper = MigrationSniper(settings_dict(), source=source, gateway=gateway, alerts=alerts)
        await sniper.dispatcher.start()
        await sniper.add_asset('tok')

        for _ in range(4):
            await sniper.sampler.sample_all()
        await sniper.dispatcher.join()
        assert sniper.list_active_positions() == []

        await sniper.sampler.sample_all()
        await sniper.dispatcher.join()
        active = sniper.list_active_positions()
        assert len(active) == 1
        assert active[0].asset_id == 'tok'
        assert active[0].symbol == 'TOK'
        assert [a[0] for a in alerts.sent] == ['threshold_crossed']
        assert alerts.sent[0][2]['market_cap'] == 18.4

        for _ in range(2):
            await sniper.sampler.sample_all()
        await sniper.dispatcher.join()
        assert len(sniper.dispatcher.history('thresholdCrossed')) == 1
        assert len(sniper.dispatcher.history('positionOpened')) == 1

        gateway.set_price('tok', 0.0016)
        await sniper._monitor_tick()
        await sniper.positions.drain(1.0)
        await sniper.dispatcher.join()
        completed = sniper.list_completed_positions()
        assert completed[0].exit_reason == PROFIT_TARGET_REASON
        assert completed[0].status is PositionStatus.CLOSED

        status = sniper.get_status()
        assert status['detector']['migrated_assets'] == ['tok']
        assert status['positions']['completed_count'] == 1
        assert status['exposure'] == 0.0
        assert status['risk']['level'] == 'LOW'
        await sniper.dispatcher.close()

    asyncio.run(_run())


def test_risk_and_failure_alerts_are_forwarded():
    async def _run():
        alerts = RecordingAlerts()
        gateway = FakeGateway(price=0.001)
        sniper = MigrationSniper(settings_dict(), source=FakeSource(), gateway=gateway, alerts=alerts)
        await sniper.dispatcher.start()
        await sniper.positions.open_position('tok')
        gateway.set_price('tok', 0.0007)
        gateway.sell_failures.extend(['TIMEOUT'] * 3)
        for _ in range(3):
            await sniper._monitor_tick()
            await sniper.positions.drain(1.0)
        await sniper.dispatcher.join()

        sent = {kind: (severity, meta) for kind, severity, meta in alerts.sent}
        assert sorted(sent) == ['position_failed', 'risk_level']
        assert sent['position_failed'][0] == 'critical'
        assert sent['position_failed'][1]['exit_attempts'] == 3
        assert sent['risk_level'][1]['level'] == 'MEDIUM'
        assert sniper.get_position_stats()['failed_count'] == 1
        await sniper.dispatcher.close()

    asyncio.run(_run())


def test_paper_mode_follows_sampled_market():
    async def _run():
        settings = settings_dict(trading={'paper_mode': True})
        source = FakeSource({'tok': SCENARIO_A}, metadata={'tok': {'symbol': 'TOK', 'total_supply': 1e9}})
        sniper = MigrationSniper(settings, source=source, alerts=RecordingAlerts())
        assert isinstance(sniper.gateway, PaperExecutionGateway)
        await sniper.dispatcher.start()
        await sniper.add_asset('tok')
        for _ in range(5):
            await sniper.sampler.sample_all()
        await sniper.dispatcher.join()

        assert len(sniper.list_active_positions()) == 1
        assert sniper.gateway.cash == pytest.approx(10.0 - 0.1)
        assert sniper.gateway.holdings['tok'] > 0
        await sniper.dispatcher.close()

    asyncio.run(_run())


def test_run_loops_persist_and_restore(tmp_path):
    state_file = tmp_path / 'positions.json'
    settings = settings_dict(
        detector={'sample_interval_s': 0.01},
        trading={'monitor_interval_s': 0.01},
        market_data={'base_url': 'http://valuation.test', 'assets': ['tok']},
        monitoring={
            'shutdown_grace_s': 0.5,
            'position_state_file': str(state_file),
            'position_state_interval_s': 0,
        },
    )

    async def _first_run():
        source = FakeSource({'tok': SCENARIO_A})
        gateway = FakeGateway(price=0.001)
        sniper = MigrationSniper(settings, source=source, gateway=gateway, alerts=RecordingAlerts())
        await sniper.start()
        assert sniper.running
        await _until(lambda: sniper.list_active_positions())
        opened = sniper.list_active_positions()[0]
        await sniper.stop()
        assert not sniper.running
        assert source.closed and gateway.closed
        return opened

    opened = asyncio.run(_first_run())
    persisted = PositionStateStore(state_file).load()
    assert [p.id for p in persisted] == [opened.id]

    async def _second_run():
        source = FakeSource({'tok': [10.0]})
        gateway = FakeGateway(price=0.001)
        sniper = MigrationSniper(settings, source=source, gateway=gateway, alerts=RecordingAlerts())
        await sniper.start()
        restored = sniper.list_active_positions()
        fresh = await sniper.positions.open_position('other')
        await sniper.stop()
        return restored, fresh

    restored, fresh = asyncio.run(_second_run())
    assert [p.id for p in restored] == [opened.id]
    assert restored[0].entry_token_quantity == pytest.approx(opened.entry_token_quantity)
    assert fresh.id == 'pos_2'
