import pytest

from oracle.bridge import OracleBridge
from oracle.client import InMemoryLedgerClient
from oracle.signer import OracleSigner
from rewards.cache import TTLCache
from rewards.events import EventBus
from rewards.service import RewardsService
from rewards.store import InMemoryStorage, LedgerStore

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
CAROL = "0x" + "c3" * 20

ORACLE_HOLDINGS = 10 ** 30


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return TTLCache(clock=clock)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def store():
    return LedgerStore(InMemoryStorage())


@pytest.fixture
def signer():
    return OracleSigner.generate()


@pytest.fixture
def ledger_client(signer):
    client = InMemoryLedgerClient()
    client.authorize(signer.address, holdings=ORACLE_HOLDINGS)
    return client


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def bridge(ledger_client, signer, sleeps):
    return OracleBridge(ledger_client, signer, sleep=sleeps.append)


@pytest.fixture
def service(cache, bus):
    return RewardsService(cache=cache, bus=bus)


@pytest.fixture
def oracle_service(cache, bus, bridge):
    return RewardsService(cache=cache, bus=bus, bridge=bridge)
