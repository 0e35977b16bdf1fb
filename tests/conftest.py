from __future__ import annotations

import pytest

from dispatch_engine.directory import InMemoryResponderDirectory
from dispatch_engine.engine import DispatchEngine
from dispatch_engine.permissions import Actor, Role
from dispatch_engine.store import InMemoryIncidentStore
from support import FakeClock, officer


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def directory() -> InMemoryResponderDirectory:
    return InMemoryResponderDirectory([officer("of-1"), officer("of-2"), officer("of-3")])


@pytest.fixture
def engine(directory, clock) -> DispatchEngine:
    return DispatchEngine(store=InMemoryIncidentStore(), directory=directory, clock=clock)


@pytest.fixture
def requester() -> Actor:
    return Actor(id="civ-1", role=Role.CIVIL)


@pytest.fixture
def operator() -> Actor:
    return Actor(id="op-1", role=Role.OPERATOR)
