import pytest

from dash_model import ServerSchema
from dash_server import ServerConfig, create_app
from dash_sessions import SessionTable


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StepClock:
    """Clock that moves forward by a fixed step on every reading."""

    def __init__(self, step: float = 1.0):
        self.t = 0.0
        self.step = step

    def __call__(self) -> float:
        value = self.t
        self.t += self.step
        return value


class MemoryStore:
    def __init__(self):
        self.saved: list[tuple[ServerSchema, float]] = []

    def save(self, schema: ServerSchema, created_at: float) -> str:
        self.saved.append((schema, created_at))
        return f"memory://{len(self.saved)}"


class FailingStore:
    def save(self, schema: ServerSchema, created_at: float) -> str:
        raise OSError("disk full")


def zero_bytes(n: int) -> bytes:
    return bytes(n)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def table():
    return SessionTable(max_iterations=17)


@pytest.fixture
def dash_app(table, store):
    return create_app(ServerConfig(), table=table, store=store, random_bytes=zero_bytes)
