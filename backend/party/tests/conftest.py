import pytest

from party.identity import PlayerProfile
from party.service import PartyService
from party.store import MemoryPartyStore
from party.tests.helpers.parties import FrozenClock


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store(clock: FrozenClock) -> MemoryPartyStore:
    return MemoryPartyStore(clock=clock.timestamp)


@pytest.fixture
def service(store: MemoryPartyStore, clock: FrozenClock) -> PartyService:
    return PartyService(store, clock=clock)


@pytest.fixture
def alice() -> PlayerProfile:
    return PlayerProfile.build("alice", "Alice", 3)


@pytest.fixture
def bob() -> PlayerProfile:
    return PlayerProfile.build("bob", "Bob", 1)
