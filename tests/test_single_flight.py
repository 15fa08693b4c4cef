import asyncio

import pytest

from managed_indexer.single_flight import SingleFlight

pytestmark = pytest.mark.unit


class Counter:
    def __init__(self, result="value", error=None):
        self.calls = 0
        self.gate = asyncio.Event()
        self.result = result
        self.error = error

    async def __call__(self):
        self.calls += 1
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_execution():
    flights = SingleFlight()
    fn = Counter(result={"files": []})

    callers = [asyncio.ensure_future(flights.do("k", fn)) for _ in range(4)]
    await asyncio.sleep(0)
    assert flights.in_flight("k")
    assert len(flights) == 1

    fn.gate.set()
    results = await asyncio.gather(*callers)

    assert fn.calls == 1
    assert all(r is results[0] for r in results)
    assert not flights.in_flight("k")


@pytest.mark.asyncio
async def test_distinct_keys_run_independently():
    flights = SingleFlight()
    a, b = Counter("a"), Counter("b")
    a.gate.set()
    b.gate.set()

    assert await asyncio.gather(flights.do(("root", "main"), a), flights.do(("root", "dev"), b)) == ["a", "b"]
    assert (a.calls, b.calls) == (1, 1)


@pytest.mark.asyncio
async def test_failure_reaches_every_caller_and_clears_entry():
    flights = SingleFlight()
    fn = Counter(error=RuntimeError("manifest unavailable"))

    callers = [asyncio.ensure_future(flights.do("k", fn)) for _ in range(2)]
    await asyncio.sleep(0)
    fn.gate.set()
    results = await asyncio.gather(*callers, return_exceptions=True)

    assert all(isinstance(r, RuntimeError) for r in results)
    assert flights.keys() == []

    fn.error = None
    assert await flights.do("k", fn) == "value"
    assert fn.calls == 2


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_cancel_shared_work():
    flights = SingleFlight()
    fn = Counter()

    first = asyncio.ensure_future(flights.do("k", fn))
    second = asyncio.ensure_future(flights.do("k", fn))
    await asyncio.sleep(0)
    first.cancel()
    await asyncio.sleep(0)

    fn.gate.set()
    assert await second == "value"
    assert first.cancelled()
    assert fn.calls == 1

