import anyio
import pytest

from aiohttp_mcp_resumable.events import EventLog
from aiohttp_mcp_resumable.storage import InMemoryKeyValueStore

from .utils import FakeClock

# Set the pytest marker for async tests/fixtures
pytestmark = pytest.mark.anyio


@pytest.fixture
def events(store: InMemoryKeyValueStore, clock: FakeClock) -> EventLog:
    return EventLog(store, event_ttl=100, clock=clock)


def message(n: int) -> dict:
    return {"jsonrpc": "2.0", "method": "notifications/progress", "params": {"n": n}}


async def replay(events: EventLog, session_id: str, token: str | None) -> list[tuple[str, object]]:
    return [item async for item in events.since(session_id, token)]


async def test_tokens_increase(events: EventLog) -> None:
    tokens = [await events.append("s1", message(n)) for n in range(3)]
    assert tokens == ["1", "2", "3"]


async def test_tokens_are_per_session(events: EventLog) -> None:
    assert await events.append("s1", message(1)) == "1"
    assert await events.append("s2", message(1)) == "1"


async def test_since_replays_strictly_after(events: EventLog) -> None:
    for n in range(1, 6):
        await events.append("s1", message(n))

    replayed = await replay(events, "s1", "3")
    assert replayed == [("4", message(4)), ("5", message(5))]


async def test_since_zero_replays_everything(events: EventLog) -> None:
    for n in range(1, 4):
        await events.append("s1", message(n))
    assert [token for token, _ in await replay(events, "s1", "0")] == ["1", "2", "3"]


async def test_since_numeric_order_past_nine(events: EventLog) -> None:
    for n in range(1, 13):
        await events.append("s1", message(n))
    assert [token for token, _ in await replay(events, "s1", "9")] == ["10", "11", "12"]


async def test_since_last_token_is_empty(events: EventLog) -> None:
    token = await events.append("s1", message(1))
    assert await replay(events, "s1", token) == []


@pytest.mark.parametrize("token", [None, "", "abc", "-1", "1.5", "٣", "1" * 21])
async def test_since_malformed_token_yields_nothing(events: EventLog, token: str | None) -> None:
    await events.append("s1", message(1))
    assert await replay(events, "s1", token) == []


async def test_since_does_not_cross_sessions(events: EventLog) -> None:
    await events.append("s1", message(1))
    await events.append("s10", message(2))
    assert await replay(events, "s1", "0") == [("1", message(1))]


async def test_batches_are_stored_as_one_event(events: EventLog) -> None:
    batch = [message(1), message(2)]
    token = await events.append("s1", batch)
    assert await replay(events, "s1", "0") == [(token, batch)]


async def test_events_expire(events: EventLog, clock: FakeClock) -> None:
    await events.append("s1", message(1))
    clock.advance(50)
    await events.append("s1", message(2))
    clock.advance(60)
    assert [token for token, _ in await replay(events, "s1", "0")] == ["2"]


async def test_purge(events: EventLog) -> None:
    await events.append("s1", message(1))
    await events.append("s2", message(1))

    await events.purge("s1")

    assert await replay(events, "s1", "0") == []
    assert len(await replay(events, "s2", "0")) == 1
    # The counter starts over
    assert await events.append("s1", message(1)) == "1"


async def test_concurrent_appends_get_distinct_tokens(events: EventLog) -> None:
    tokens: list[str] = []

    async def append(n: int) -> None:
        tokens.append(await events.append("s1", message(n)))

    async with anyio.create_task_group() as tg:
        for n in range(20):
            tg.start_soon(append, n)

    assert sorted(tokens, key=int) == [str(n) for n in range(1, 21)]
    assert [token for token, _ in await replay(events, "s1", "0")] == [str(n) for n in range(1, 21)]


async def test_events_of_a_live_session_do_not_pile_up(store: InMemoryKeyValueStore, clock: FakeClock) -> None:
    events = EventLog(store, event_ttl=10, clock=clock)
    for n in range(1000):
        await events.append("s1", message(n))
        clock.advance(1)

    stored = [key for key in store._keys if key.startswith("events:s1:")]
    assert len(stored) <= 10
    # Tokens keep increasing while old events go away
    assert await events.append("s1", message(1000)) == "1001"
