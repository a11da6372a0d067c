"""
Réservations concurrentes sur une vraie base SQLite (fichier).

Avec N réservations d'une unité lancées en même temps sur k unités
disponibles, exactement min(N, k) réussissent, les autres échouent en
stock insuffisant, jamais en conflit, avec le nombre de réessais par défaut.
"""

import threading

import pytest

from inventory.adapters.outbox import SqlAlchemyOutbox
from inventory.adapters.repository import Locator
from inventory.domain import commands
from inventory.domain.model import ErrorKind
from inventory.service_layer import bootstrap, unit_of_work

from fakes import make_settings


@pytest.fixture
def settings(tmp_path):
    return make_settings(**{"database.uri": f"sqlite:///{tmp_path / 'inventory.db'}"})


@pytest.fixture
def file_bus(settings):
    return bootstrap.bootstrap(settings=settings, create_tables=True)


def stock(bus, quantity):
    assert bus.handle(commands.CreateCell("P1", "H1")).ok
    assert bus.handle(commands.Restock("P1", "H1", quantity)).ok


def reserve_concurrently(bus, count):
    barrier = threading.Barrier(count)
    results = [None] * count

    def worker(i):
        barrier.wait()
        results[i] = bus.handle(commands.Reserve("P1", "H1", 1, f"O{i}"))

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results


def current_cell(bus):
    uow = bus.uow_factory()
    with uow:
        return uow.cells.read_snapshot(Locator.of_pair("P1", "H1"))


def test_les_retries_par_défaut_suffisent(file_bus, settings):
    assert settings.retry_max_attempts == 3
    stock(file_bus, 15)

    results = reserve_concurrently(file_bus, 20)

    assert sum(r.ok for r in results) == 15
    assert [r.error for r in results if not r.ok] == [ErrorKind.INSUFFICIENT_STOCK] * 5
    cell = current_cell(file_bus)
    assert (cell.on_hand, cell.reserved, cell.version) == (15, 15, 16)


def test_les_perdants_voient_un_stock_insuffisant(file_bus):
    stock(file_bus, 5)

    results = reserve_concurrently(file_bus, 12)

    assert sum(r.ok for r in results) == 5
    assert {r.error for r in results if not r.ok} == {ErrorKind.INSUFFICIENT_STOCK}
    assert current_cell(file_bus).reserved == 5


def test_une_version_un_enregistrement_d_outbox(file_bus, settings):
    stock(file_bus, 8)
    reserve_concurrently(file_bus, 8)

    outbox = SqlAlchemyOutbox(unit_of_work.make_session_factory(settings))
    versions = [r.cell_version for r in outbox.pending(100)]

    assert versions == list(range(10))
