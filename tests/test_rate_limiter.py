import asyncio

import pytest

from holder_snapshot import RateLimiter

# loop.call_later may fire a hair early relative to loop.time(); starts are
# measured inside the task, one loop iteration after dispatch.
SLACK = 0.005


@pytest.mark.asyncio
async def test_starts_are_spaced_by_interval_and_fifo():
    limiter = RateLimiter(25)
    loop = asyncio.get_running_loop()
    starts = []

    def make_task(i):
        async def task():
            starts.append((i, loop.time()))
            return i

        return task

    futures = [limiter.add(make_task(i)) for i in range(12)]
    results = await asyncio.gather(*futures)

    assert results == list(range(12))
    assert [i for i, _ in starts] == list(range(12))
    gaps = [b - a for (_, a), (_, b) in zip(starts, starts[1:])]
    assert all(gap >= 0.040 - SLACK for gap in gaps), gaps
    assert limiter.dispatched == 12
    assert limiter.pending == 0


@pytest.mark.asyncio
async def test_errors_are_passed_through_unchanged():
    limiter = RateLimiter(100)
    boom = RuntimeError("boom")

    async def failing():
        raise boom

    async def ok():
        return "ok"

    bad = limiter.add(failing)
    good = limiter.add(ok)

    with pytest.raises(RuntimeError) as excinfo:
        await bad
    assert excinfo.value is boom
    assert await good == "ok"


@pytest.mark.asyncio
async def test_slow_tasks_do_not_hold_back_next_start():
    limiter = RateLimiter(50)
    loop = asyncio.get_running_loop()
    starts = []
    release = asyncio.Event()

    async def slow():
        starts.append(loop.time())
        await release.wait()
        return True

    futures = [limiter.add(slow) for _ in range(4)]
    await asyncio.sleep(0.2)

    # all four started while none had finished
    assert len(starts) == 4
    release.set()
    assert await asyncio.gather(*futures) == [True] * 4


@pytest.mark.asyncio
async def test_independent_limiters_do_not_share_state():
    fast = RateLimiter(1000)
    slow = RateLimiter(2)

    async def value():
        return 1

    slow_first = slow.add(value)
    slow_second = slow.add(value)
    fast_results = await asyncio.wait_for(
        asyncio.gather(*[fast.add(value) for _ in range(5)]), timeout=0.3
    )

    assert fast_results == [1] * 5
    assert await slow_first == 1
    assert not slow_second.done()
    assert await slow_second == 1


@pytest.mark.asyncio
async def test_late_add_after_idle_dispatches_immediately():
    limiter = RateLimiter(25)
    loop = asyncio.get_running_loop()

    async def stamp():
        return loop.time()

    await limiter.add(stamp)
    await asyncio.sleep(0.06)
    before = loop.time()
    started = await limiter.add(stamp)
    assert started - before < 0.02


def test_rejects_non_positive_rate():
    with pytest.raises(ValueError):
        RateLimiter(0)


@pytest.mark.asyncio
async def test_cancelled_queued_task_is_skipped():
    limiter = RateLimiter(20)
    ran = []

    def make_task(i):
        async def task():
            ran.append(i)
            return i

        return task

    first = limiter.add(make_task(0))
    second = limiter.add(make_task(1))
    third = limiter.add(make_task(2))
    second.cancel()

    assert limiter.pending == 1
    assert await third == 2
    assert await first == 0
    assert ran == [0, 2]
    assert limiter.dispatched == 2


@pytest.mark.asyncio
async def test_cancelling_future_cancels_running_task():
    limiter = RateLimiter(100)
    started = asyncio.Event()
    interrupted = []

    async def long_running():
        started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            interrupted.append(True)
            raise

    future = limiter.add(long_running)
    await started.wait()
    future.cancel()
    await asyncio.sleep(0.05)

    assert interrupted == [True]
