import pytest

from aiohttp_mcp_resumable import AiohttpMCP, InMemoryKeyValueStore

from .utils import FakeClock


@pytest.fixture
def anyio_backend() -> str:
    """Return the backend name for anyio. Test only against asyncio. Trio is not supported."""
    return "asyncio"


@pytest.fixture
def mcp() -> AiohttpMCP:
    return AiohttpMCP()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore(clock=clock)
