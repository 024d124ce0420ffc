import asyncio

import pytest

from request_queue import QueueTimeout, RequestSerializer


def _timed_op(loop, log, name, duration, fail=False):
    async def _op():
        start = loop.time()
        await asyncio.sleep(duration)
        end = loop.time()
        log.append((name, start, end))
        if fail:
            raise ValueError(f"{name} failed")
        return name

    return _op


@pytest.mark.asyncio
async def test_fifo_order_even_when_later_work_is_faster():
    loop = asyncio.get_running_loop()
    serializer = RequestSerializer(cooldown_seconds=0.01)
    log = []

    results = await asyncio.gather(
        serializer.submit(_timed_op(loop, log, "A", 0.05)),
        serializer.submit(_timed_op(loop, log, "B", 0.001)),
        serializer.submit(_timed_op(loop, log, "C", 0.01)),
    )

    assert results == ["A", "B", "C"]
    assert [name for name, _, _ in log] == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_operations_never_overlap_and_respect_cooldown():
    loop = asyncio.get_running_loop()
    cooldown = 0.05
    serializer = RequestSerializer(cooldown_seconds=cooldown)
    log = []

    await asyncio.gather(*(serializer.submit(_timed_op(loop, log, str(i), 0.01)) for i in range(4)))

    for (_, _, prev_end), (_, next_start, _) in zip(log, log[1:]):
        assert next_start >= prev_end + cooldown - 0.005


@pytest.mark.asyncio
async def test_three_operations_take_work_plus_two_cooldowns():
    loop = asyncio.get_running_loop()
    serializer = RequestSerializer(cooldown_seconds=0.1)
    log = []

    started = loop.time()
    results = await asyncio.gather(*(serializer.submit(_timed_op(loop, log, n, 0.01)) for n in "ABC"))
    elapsed = loop.time() - started

    assert results == ["A", "B", "C"]
    # 3 x 10 ms of work + 2 x 100 ms of cooldown
    assert 0.22 <= elapsed < 0.4


@pytest.mark.asyncio
async def test_failure_reaches_only_its_caller_and_queue_keeps_draining():
    loop = asyncio.get_running_loop()
    cooldown = 0.05
    serializer = RequestSerializer(cooldown_seconds=cooldown)
    log = []

    first, second, third = await asyncio.gather(
        serializer.submit(_timed_op(loop, log, "A", 0.01, fail=True)),
        serializer.submit(_timed_op(loop, log, "B", 0.01)),
        serializer.submit(_timed_op(loop, log, "C", 0.01)),
        return_exceptions=True,
    )

    assert isinstance(first, ValueError)
    assert str(first) == "A failed"
    assert second == "B"
    assert third == "C"
    # cooldown applies after the failure too
    assert log[1][1] >= log[0][2] + cooldown - 0.005


@pytest.mark.asyncio
async def test_idle_serializer_starts_immediately():
    loop = asyncio.get_running_loop()
    serializer = RequestSerializer(cooldown_seconds=0.2)
    log = []

    submitted = loop.time()
    await serializer.submit(_timed_op(loop, log, "A", 0))
    assert log[0][1] - submitted < 0.05

    # after sitting idle longer than the cooldown the next call also starts at once
    await asyncio.sleep(0.25)
    submitted = loop.time()
    await serializer.submit(_timed_op(loop, log, "B", 0))
    assert log[1][1] - submitted < 0.05
    assert serializer.pending == 0
    assert not serializer.busy


@pytest.mark.asyncio
async def test_submission_during_cooldown_waits_for_it():
    loop = asyncio.get_running_loop()
    serializer = RequestSerializer(cooldown_seconds=0.1)
    log = []

    await serializer.submit(_timed_op(loop, log, "A", 0))
    await serializer.submit(_timed_op(loop, log, "B", 0))

    assert log[1][1] >= log[0][2] + 0.095


@pytest.mark.asyncio
async def test_caller_timeout_does_not_cancel_the_operation():
    serializer = RequestSerializer(cooldown_seconds=0)
    finished = asyncio.Event()

    async def slow():
        await asyncio.sleep(0.1)
        finished.set()
        return "done"

    with pytest.raises(QueueTimeout):
        await serializer.submit(slow, timeout=0.01)

    await asyncio.wait_for(finished.wait(), timeout=1)
    assert await serializer.submit(lambda: asyncio.sleep(0, result="next")) == "next"


@pytest.mark.asyncio
async def test_close_fails_pending_work():
    serializer = RequestSerializer(cooldown_seconds=0)
    gate = asyncio.Event()

    async def blocked():
        await gate.wait()

    first = asyncio.ensure_future(serializer.submit(blocked))
    second = asyncio.ensure_future(serializer.submit(lambda: asyncio.sleep(0)))
    await asyncio.sleep(0.01)

    await serializer.close()

    with pytest.raises(asyncio.CancelledError):
        await first
    with pytest.raises(RuntimeError):
        await second
    with pytest.raises(RuntimeError):
        await serializer.submit(lambda: asyncio.sleep(0))


def test_negative_cooldown_rejected():
    with pytest.raises(ValueError):
        RequestSerializer(cooldown_seconds=-1)
