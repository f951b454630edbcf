import asyncio

from leadflow.jobs.periodic import PeriodicTask


async def test_runs_until_stopped():
    calls = []

    async def cycle():
        calls.append(1)

    task = PeriodicTask("test", interval=0.01, cycle=cycle)
    task.start()
    await asyncio.sleep(0.1)
    await task.stop()
    seen = len(calls)
    await asyncio.sleep(0.05)

    assert seen >= 2
    assert len(calls) == seen
    assert task.running is False


async def test_failing_cycle_does_not_kill_loop():
    calls = []

    async def cycle():
        calls.append(1)
        raise RuntimeError("database unavailable")

    task = PeriodicTask("test", interval=0.01, cycle=cycle)
    task.start()
    await asyncio.sleep(0.1)
    await task.stop()

    assert len(calls) >= 2


async def test_stop_waits_for_cycle_in_flight():
    started, finished = asyncio.Event(), []

    async def cycle():
        started.set()
        await asyncio.sleep(0.05)
        finished.append(1)

    task = PeriodicTask("test", interval=10, cycle=cycle)
    task.start()
    await started.wait()
    await task.stop()

    assert finished == [1]


async def test_delayed_first_run():
    calls = []

    async def cycle():
        calls.append(1)

    task = PeriodicTask("test", interval=10, cycle=cycle, run_immediately=False)
    task.start()
    await asyncio.sleep(0.05)
    await task.stop()

    assert calls == []
