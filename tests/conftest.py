import pytest

from matrixci.cache import CacheResolver, MemoryCacheBackend
from matrixci.model import RunContext
from matrixci.ui.console import Console, set_console

from helpers import FakeProvider


class Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(quiet=True)
    set_console(console)
    yield console
    set_console(Console())


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def cache(clock):
    return CacheResolver(MemoryCacheBackend(clock=clock))


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def context():
    return RunContext(event="push", ref="refs/heads/master", branch="master", sha="abc123")
