"""BackgroundScheduler expiry sweep"""
import asyncio

import pytest

from core.scheduler import BackgroundScheduler


class _Reconciler:
    def __init__(self):
        self.calls = 0

    async def expire_lapsed_cancellations(self):
        self.calls += 1
        return {"success": True, "processed": 2, "results": []}


@pytest.mark.asyncio
async def test_run_expiry_sweep_delegates_to_reconciler():
    reconciler = _Reconciler()
    scheduler = BackgroundScheduler(reconciler, interval_seconds=3600)

    result = await scheduler.run_expiry_sweep()

    assert result["processed"] == 2
    assert reconciler.calls == 1


@pytest.mark.asyncio
async def test_loop_runs_sweep_and_stops_cleanly():
    reconciler = _Reconciler()
    scheduler = BackgroundScheduler(reconciler, interval_seconds=0)

    await scheduler.start()
    await asyncio.sleep(0.05)
    await scheduler.stop()

    assert reconciler.calls >= 1
    assert scheduler.tasks == []
    assert scheduler.running is False
