"""
Tests d'intégration de l'outbox et du unit of work SQLAlchemy.

Le moteur tourne ici sur une vraie base SQLite : une mutation écrit la
cellule et son enregistrement d'outbox ensemble, puis le publisher
relaie les enregistrements vers un transport factice.
"""

from datetime import datetime, timedelta

import pytest

from inventory.adapters.outbox import SqlAlchemyOutbox
from inventory.adapters.repository import Locator
from inventory.domain import commands
from inventory.domain.model import ErrorKind, StockCell
from inventory.service_layer import bootstrap, unit_of_work
from inventory.service_layer.publisher import OutboxPublisher

from fakes import FakeTransport, FixedClock, make_settings


@pytest.fixture
def sqlite_bus(session_factory, clock):
    return bootstrap.bootstrap(
        settings=make_settings(),
        uow_factory=lambda: unit_of_work.SqlAlchemyUnitOfWork(session_factory),
        clock=clock,
        sleep=lambda seconds: None,
    )


class TestUnitOfWork:
    def test_rollback_sans_commit(self, session_factory):
        uow = unit_of_work.SqlAlchemyUnitOfWork(session_factory)
        with uow:
            cell = StockCell.create("P1", "H1", "A-1-1", 10, datetime(2024, 1, 1), "system").cell
            uow.cells.commit(None, cell, [], datetime(2024, 1, 1))

        with uow:
            assert uow.cells.read_snapshot(Locator.of_pair("P1", "H1")) is None

    def test_mutation_et_outbox_validées_ensemble(self, sqlite_bus, session_factory):
        sqlite_bus.handle(commands.CreateCell("P1", "H1"))
        sqlite_bus.handle(commands.Restock("P1", "H1", 10))
        result = sqlite_bus.handle(commands.Reserve("P1", "H1", 5, "O1"))
        assert result.ok
        assert result.cell.version == 2

        records = SqlAlchemyOutbox(session_factory).pending(10)
        assert [r.cell_version for r in records] == [0, 1, 2]
        assert [m.topic for m in records[2].messages] == ["inventory-reserved", "inventory-low-stock"]

    def test_échec_métier_sans_écriture(self, sqlite_bus, session_factory):
        sqlite_bus.handle(commands.CreateCell("P1", "H1"))
        result = sqlite_bus.handle(commands.Reserve("P1", "H1", 1, "O1"))
        assert result.error is ErrorKind.INSUFFICIENT_STOCK
        assert len(SqlAlchemyOutbox(session_factory).pending(10)) == 1

    def test_créer_deux_fois_le_même_couple(self, sqlite_bus):
        assert sqlite_bus.handle(commands.CreateCell("P1", "H1")).ok
        assert sqlite_bus.handle(commands.CreateCell("P1", "H1")).error is ErrorKind.ALREADY_EXISTS


class TestSqlAlchemyOutbox:
    def test_relais_complet(self, sqlite_bus, session_factory, clock):
        sqlite_bus.handle(commands.CreateCell("P1", "H1"))
        sqlite_bus.handle(commands.Restock("P1", "H1", 20))
        outbox = SqlAlchemyOutbox(session_factory)
        transport = FakeTransport()

        published = OutboxPublisher(outbox, transport, make_settings(), clock=clock).drain_once()

        assert published == 2
        assert outbox.pending(10) == []
        assert [p["eventType"] for _, _, p in transport.published] == [
            "INVENTORY_CREATED", "INVENTORY_RESTOCKED",
        ]

    def test_nouvel_essai_planifié(self, sqlite_bus, session_factory):
        sqlite_bus.handle(commands.CreateCell("P1", "H1"))
        outbox = SqlAlchemyOutbox(session_factory)
        [record] = outbox.pending(10)
        retry_at = datetime(2024, 3, 1, 9, 0, 30)

        outbox.mark_retry(record.record_id, "bus injoignable", retry_at)
        outbox.mark_retry(record.record_id, "bus injoignable", retry_at)

        [record] = outbox.pending(10)
        assert record.attempts == 2
        assert record.last_error == "bus injoignable"
        assert not record.is_due(retry_at - timedelta(seconds=1))
        assert record.is_due(retry_at)

    def test_envoyé_et_empoisonné_sortent_de_la_file(self, sqlite_bus, session_factory):
        sqlite_bus.handle(commands.CreateCell("P1", "H1"))
        sqlite_bus.handle(commands.CreateCell("P2", "H1"))
        outbox = SqlAlchemyOutbox(session_factory)
        first, second = outbox.pending(10)

        outbox.mark_sent(first.record_id, FixedClock()())
        assert outbox.mark_poisoned(second.record_id, "payload refusé")

        assert outbox.pending(10) == []
        assert not outbox.mark_poisoned(second.record_id, "payload refusé")
        assert not outbox.mark_poisoned("inconnu", "payload refusé")

    def test_cellule_en_attente_écartée_du_lot(self, sqlite_bus, session_factory):
        sqlite_bus.handle(commands.CreateCell("P1", "H1"))
        sqlite_bus.handle(commands.Restock("P1", "H1", 5))
        sqlite_bus.handle(commands.CreateCell("P2", "H1"))
        outbox = SqlAlchemyOutbox(session_factory)
        head = outbox.pending(10)[0]
        retry_at = datetime(2024, 3, 1, 9, 0, 30)
        outbox.mark_retry(head.record_id, "bus injoignable", retry_at)

        waiting = outbox.pending(10, now=retry_at - timedelta(seconds=1))
        due = outbox.pending(10, now=retry_at)

        assert [r.cell_id for r in waiting] == [r.cell_id for r in due][2:]
        assert len(waiting) == 1
        assert [r.cell_version for r in due] == [0, 1, 0]
