import asyncio
from dataclasses import dataclass

from orderbridge.events import EventBus
from orderbridge.keyed_locks import KeyedLocks


@dataclass(frozen=True)
class Ping:
    n: int


@dataclass(frozen=True)
class Pong:
    n: int


def test_handlers_run_in_subscription_order():
    bus = EventBus()
    calls = []

    async def first(event):
        calls.append(("first", event.n))

    async def second(event):
        calls.append(("second", event.n))

    bus.subscribe(Ping, first)
    bus.subscribe(Ping, second)
    asyncio.run(bus.publish(Ping(1)))
    assert calls == [("first", 1), ("second", 1)]


def test_failing_handler_is_isolated():
    bus = EventBus()
    calls = []

    async def broken(event):
        raise ValueError("nope")

    async def ok(event):
        calls.append(event.n)

    bus.subscribe(Ping, broken)
    bus.subscribe(Ping, ok)
    assert asyncio.run(bus.publish(Ping(7))) == 1
    assert calls == [7]


def test_publish_only_reaches_matching_type():
    bus = EventBus()
    calls = []

    async def on_pong(event):
        calls.append(event)

    bus.subscribe(Pong, on_pong)
    assert asyncio.run(bus.publish(Ping(1))) == 0
    assert calls == []
    assert bus.handlers_for(Pong) == [on_pong]


def test_keyed_locks_serialize_same_key_and_clean_up():
    locks = KeyedLocks()
    trace = []

    async def worker(key, tag):
        async with locks.hold(key):
            trace.append(f"{tag}-in")
            await asyncio.sleep(0.01)
            trace.append(f"{tag}-out")

    async def scenario():
        await asyncio.gather(worker("a", "x"), worker("a", "y"))

    asyncio.run(scenario())
    assert trace == ["x-in", "x-out", "y-in", "y-out"]
    assert len(locks) == 0
