import pytest

import db as dbmod
from bets import BetIntake
from custody import SqliteKeyCustody
from games import GameRegistry
from locks import SettlementLocks
from mocks import OPERATOR_WALLET, SERVICE_WALLET, FakeLedger
from scheduler import CycleMonitor
from scores import ScoreLedger
from settlement import SettlementEngine
from treasury import TreasurySweep


# ============================================================================
# Store
# ============================================================================


@pytest.fixture
async def database(tmp_path):
    database = await dbmod.connect(str(tmp_path / "potcycle.db"))
    yield database
    await database.close()


@pytest.fixture
def custody(database):
    return SqliteKeyCustody(database)


@pytest.fixture
def registry(database, custody):
    return GameRegistry(database, custody, default_tax=10, default_cycle_seconds=7200)


@pytest.fixture
def scores(database):
    return ScoreLedger(database)


@pytest.fixture
def locks(database):
    return SettlementLocks(database, ttl_seconds=300)


# ============================================================================
# Services
# ============================================================================


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def bets(registry, ledger, locks):
    return BetIntake(registry, ledger, locks)


@pytest.fixture
def engine(database, registry, scores, ledger, custody, locks):
    return SettlementEngine(database, registry, scores, ledger, custody, locks, service_wallet=SERVICE_WALLET)


@pytest.fixture
def monitor(registry, engine):
    return CycleMonitor(registry, engine, interval_seconds=0.01)


@pytest.fixture
def treasury(registry, ledger, custody, locks):
    return TreasurySweep(registry, ledger, custody, locks, operator_wallet=OPERATOR_WALLET)


@pytest.fixture
async def game(registry):
    return await registry.create("Cube Rush", game_id="cube-rush", tax_percentage=10)
