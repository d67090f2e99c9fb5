import asyncio
import sys
sys.path.insert(0, '.')

import pytest

from ingest.market_data_source import MarketSnapshot, MonitoredAsset
from ingest.sampler import CapacityExceeded, MarketStateSampler
from monitoring.async_utils import run_every
from tests.sniper_fakes import FakeSource, Recorder, make_settings


def _sampler(source, recorder=None, sleeps=None, **detector):
    settings = make_settings(detector=detector)

    async def fake_sleep(delay):
        if sleeps is not None:
            sleeps.append(delay)

    return MarketStateSampler(source, settings.detector, publish=recorder, sleep=fake_sleep)


def test_scenario_a_crossing_published_once():
    async def _run():
        source = FakeSource({'tok': [17.6, 17.9, 18.2, 18.3, 18.4, 18.5, 18.6]})
        recorder = Recorder()
        sampler = _sampler(source, recorder)
        await sampler.add_asset('tok')
        crossed_at = []
        for tick in range(1, 8):
            await sampler.sample_all()
            if 'thresholdCrossed' in recorder.topics() and not crossed_at:
                crossed_at.append(tick)
        assert crossed_at == [5]
        assert recorder.topics().count('thresholdCrossed') == 1
        assert recorder.topics().count('statusUpdate') == 7
        crossing = recorder.payloads('thresholdCrossed')[0]
        assert crossing['id'] == 'tok'
        assert crossing['snapshot']['market_cap'] == 18.4
        assert 'crossingTime' in crossing
        assert sampler.get_asset('tok').migrated

    asyncio.run(_run())


def test_add_asset_is_idempotent_and_capped():
    async def _run():
        source = FakeSource(metadata={'a': {'name': 'Alpha', 'symbol': 'ALP'}})
        recorder = Recorder()
        sampler = _sampler(source, recorder, max_tokens_to_monitor=2)
        first = await sampler.add_asset('a')
        again = await sampler.add_asset('a')
        assert first.symbol == 'ALP'
        assert again is first
        assert recorder.topics().count('assetAdded') == 1

        bare = await sampler.add_asset('b')
        assert bare.symbol == ''
        with pytest.raises(CapacityExceeded):
            await sampler.add_asset('c')
        assert sampler.asset_count == 2

        assert await sampler.remove_asset('b') is True
        assert await sampler.remove_asset('b') is False
        assert recorder.topics().count('assetRemoved') == 1
        await sampler.add_asset('c')
        assert sampler.asset_count == 2

    asyncio.run(_run())


def test_transient_failures_retry_with_backoff():
    async def _run():
        source = FakeSource({'tok': [10.0]})
        source.failures['tok'] = 2
        sleeps = []
        sampler = _sampler(source, Recorder(), sleeps)
        await sampler.add_asset('tok')
        status = await sampler.sample_asset('tok')
        assert status is not None
        assert source.fetches['tok'] == 3
        assert sleeps == [0.25, 0.5]
        assert sampler.failure_counts()['tok'] == 0

    asyncio.run(_run())


def test_backoff_is_capped():
    async def _run():
        source = FakeSource({'tok': [10.0]})
        source.failures['tok'] = 4
        sleeps = []
        sampler = _sampler(source, Recorder(), sleeps, max_sample_attempts=5,
                           retry_backoff_base_s=1.0, retry_backoff_max_s=2.0)
        await sampler.add_asset('tok')
        await sampler.sample_asset('tok')
        assert sleeps == [1.0, 2.0, 2.0, 2.0]

    asyncio.run(_run())


def test_exhausted_retries_skip_only_that_asset():
    async def _run():
        source = FakeSource({'bad': [10.0], 'good': [11.0]})
        source.failures['bad'] = 3
        recorder = Recorder()
        sampler = _sampler(source, recorder, [])
        await sampler.add_asset('bad')
        await sampler.add_asset('good')
        statuses = await sampler.sample_all()
        assert statuses[0] is None
        assert statuses[1] is not None and statuses[1].asset_id == 'good'
        assert sampler.failure_counts()['bad'] == 1
        assert [p['id'] for p in recorder.payloads('statusUpdate')] == ['good']

        await sampler.sample_all()
        assert sampler.failure_counts()['bad'] == 0
        assert sampler.get_status('bad') is not None

    asyncio.run(_run())


def test_slow_source_times_out():
    async def _run():
        source = FakeSource({'tok': [10.0]})
        source.delay_s = 1.0
        sampler = _sampler(source, Recorder(), [], request_timeout_s=0.01, max_sample_attempts=2)
        await sampler.add_asset('tok')
        assert await sampler.sample_asset('tok') is None
        assert source.fetches['tok'] == 2

    asyncio.run(_run())


def test_out_of_order_snapshot_is_dropped():
    class BackwardsSource(FakeSource):
        def __init__(self):
            super().__init__()
            self.times = [5.0, 4.0, 6.0]

        async def fetch_snapshot(self, asset_id):
            ts = self.times.pop(0)
            return MarketSnapshot(asset_id=asset_id, timestamp=ts, market_cap=ts,
                                  liquidity=1.0, bonding_curve_progress=0.1)

    async def _run():
        source = BackwardsSource()
        sampler = _sampler(source, Recorder(), [])
        await sampler.add_asset('tok')
        assert await sampler.sample_asset('tok') is not None
        assert await sampler.sample_asset('tok') is None
        assert await sampler.sample_asset('tok') is not None
        assert [s.timestamp for s in sampler.history('tok')] == [5.0, 6.0]

    asyncio.run(_run())


def test_readding_migrated_asset_never_fires_again():
    async def _run():
        source = FakeSource({'tok': [18.5]})
        recorder = Recorder()
        sampler = _sampler(source, recorder, [], confirmation_window=1)
        await sampler.add_asset('tok')
        await sampler.sample_all()
        await sampler.remove_asset('tok')
        readded = await sampler.add_asset('tok')
        assert readded.migrated
        await sampler.sample_all()
        await sampler.sample_all()
        assert recorder.topics().count('thresholdCrossed') == 1
        assert recorder.topics().count('statusUpdate') == 3

    asyncio.run(_run())


def test_hanging_asset_does_not_hold_back_the_tick():
    class HangingSource(FakeSource):
        async def fetch_snapshot(self, asset_id):
            if asset_id == 'slow':
                self.fetches['slow'] = self.fetches.get('slow', 0) + 1
                await asyncio.Event().wait()
            return await super().fetch_snapshot(asset_id)

    async def _run():
        source = HangingSource({'fast': [10.0]})
        settings = make_settings(detector={'request_timeout_s': 5.0})
        sampler = MarketStateSampler(source, settings.detector, publish=Recorder())
        await sampler.add_asset('slow')
        await sampler.add_asset('fast')

        stop = asyncio.Event()
        loop_task = asyncio.create_task(run_every(0.05, sampler.tick, 'sampling', stop))
        await asyncio.sleep(1.0)
        stop.set()
        await loop_task

        assert source.fetches['fast'] >= 12
        assert source.fetches['slow'] == 1
        assert len(sampler.history('fast')) >= 12
        assert sampler.history('slow') == []
        assert [task.get_name() for task in sampler.in_flight()] == ['sample:slow']

        assert await sampler.drain(0.0) == 1
        assert sampler.in_flight() == []

    asyncio.run(_run())


def test_removing_asset_cancels_its_pending_sample():
    class HangingSource(FakeSource):
        async def fetch_snapshot(self, asset_id):
            await asyncio.Event().wait()

    async def _run():
        settings = make_settings(detector={'request_timeout_s': 5.0})
        sampler = MarketStateSampler(HangingSource(), settings.detector, publish=Recorder())
        await sampler.add_asset('tok')
        started = sampler.start_tick()
        await asyncio.sleep(0)
        assert await sampler.remove_asset('tok') is True
        await asyncio.gather(*started.values(), return_exceptions=True)
        assert started['tok'].cancelled()
        assert sampler.in_flight() == []

    asyncio.run(_run())


def test_slow_metadata_does_not_block_other_registrations():
    class SlowMetadataSource(FakeSource):
        def __init__(self):
            super().__init__()
            self.gate = asyncio.Event()

        async def fetch_asset(self, asset_id):
            if asset_id == 'slow':
                await self.gate.wait()
            return MonitoredAsset(address=asset_id, symbol=asset_id.upper())

    async def _run():
        source = SlowMetadataSource()
        sampler = _sampler(source, Recorder(), max_tokens_to_monitor=1)
        pending = asyncio.create_task(sampler.add_asset('slow'))
        await asyncio.sleep(0)

        added = await asyncio.wait_for(sampler.add_asset('quick'), timeout=0.5)
        assert added.symbol == 'QUICK'

        source.gate.set()
        with pytest.raises(CapacityExceeded):
            await pending
        assert [a['address'] for a in sampler.get_assets()] == ['quick']

    asyncio.run(_run())
