"""
Tests du publisher de l'outbox.

Les enregistrements sont produits par le vrai moteur (via le bus de
test), puis relayés vers un transport factice.
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from inventory.adapters.event_transport import partition_for, stream_name
from inventory.adapters.outbox import FAILED, PENDING, SENT
from inventory.domain import commands
from inventory.service_layer.publisher import OutboxPublisher, backoff_delay

from fakes import FakeOutbox, FakeTransport, make_cell, make_settings


def make_publisher(db, transport, clock, **overrides):
    settings = make_settings(**{"publisher.backoff.baseSeconds": 1, "publisher.backoff.maxSeconds": 8, **overrides})
    return OutboxPublisher(FakeOutbox(db), transport, settings, clock=clock)


class TestPublication:
    def test_publie_dans_l_ordre_de_commit(self, bus, db, clock):
        db.cells["C1"] = make_cell(cell_id="C1", on_hand=100, safety_floor=0)
        bus.handle(commands.Reserve("P1", "H1", 10, "O1"))
        bus.handle(commands.ConfirmShipment("P1", "H1", 10, "O1"))
        bus.handle(commands.Restock("P1", "H1", 5))
        transport = FakeTransport()

        published = make_publisher(db, transport, clock).drain_once()

        assert published == 3
        assert [topic for topic, _, _ in transport.published] == [
            "inventory-reserved", "stock-decreased", "inventory-restocked",
        ]
        assert [p["cellVersionAtCommit"] for _, _, p in transport.published] == [1, 2, 3]
        assert all(r.status == SENT for r in db.outbox)

    def test_clés_de_partition(self, bus, db, clock):
        db.cells["C1"] = make_cell(cell_id="C1", on_hand=10, safety_floor=10)
        bus.handle(commands.Reserve("P1", "H1", 1, "O1"))
        transport = FakeTransport()
        make_publisher(db, transport, clock).drain_once()
        assert [(topic, key) for topic, key, _ in transport.published] == [
            ("inventory-reserved", "O1"),
            ("inventory-low-stock", "P1"),
        ]

    def test_rien_à_publier(self, db, clock):
        assert make_publisher(db, FakeTransport(), clock).drain_once() == 0


class TestÉchecs:
    def test_échec_bloque_la_suite_de_la_cellule(self, bus, db, clock):
        db.cells["C1"] = make_cell(cell_id="C1", on_hand=100, safety_floor=0)
        bus.handle(commands.Restock("P1", "H1", 1))
        bus.handle(commands.Restock("P1", "H1", 2))
        transport = FakeTransport(failures=1)
        publisher = make_publisher(db, transport, clock)

        assert publisher.drain_once() == 0
        first, second = db.outbox
        assert (first.status, first.attempts) == (PENDING, 1)
        assert first.next_attempt_at == clock.now + timedelta(seconds=1)
        assert second.attempts == 0

        # Toujours en attente du délai : rien ne part.
        assert publisher.drain_once() == 0

        clock.now += timedelta(seconds=1)
        assert publisher.drain_once() == 2
        assert [p["restockedQuantity"] for _, _, p in transport.published] == [1, 2]

    def test_une_cellule_en_échec_ne_bloque_pas_les_autres(self, bus, db, clock):
        db.cells["C1"] = make_cell(cell_id="C1", on_hand=100, safety_floor=0)
        db.cells["C2"] = make_cell("P2", cell_id="C2", on_hand=100, safety_floor=0)
        bus.handle(commands.Restock("P1", "H1", 1))
        bus.handle(commands.Restock("P2", "H1", 1))
        transport = FakeTransport(failing_keys={"P1"})

        assert make_publisher(db, transport, clock).drain_once() == 1
        assert [key for _, key, _ in transport.published] == ["P2"]

    def test_une_cellule_en_attente_ne_monopolise_pas_le_lot(self, bus, db, clock):
        db.cells["C1"] = make_cell(cell_id="C1", on_hand=100, safety_floor=0)
        db.cells["C2"] = make_cell("P2", cell_id="C2", on_hand=100, safety_floor=0)
        for quantity in (1, 2, 3):
            bus.handle(commands.Restock("P1", "H1", quantity))
        bus.handle(commands.Restock("P2", "H1", 1))
        transport = FakeTransport(failing_keys={"P1"})
        publisher = make_publisher(db, transport, clock, **{"publisher.batchSize": 2})

        assert publisher.drain_once() == 0
        transport.failing_keys.clear()

        # La tête de P1 attend son délai : le lot suivant passe à P2.
        assert publisher.drain_once() == 1
        assert [key for _, key, _ in transport.published] == ["P2"]

        clock.now += timedelta(seconds=1)
        assert publisher.drain_once() == 2
        assert publisher.drain_once() == 1
        assert [p["restockedQuantity"] for _, key, p in transport.published if key == "P1"] == [1, 2, 3]

    def test_enregistrement_empoisonné_ignoré(self, bus, db, clock):
        db.cells["C1"] = make_cell(cell_id="C1", on_hand=100, safety_floor=0)
        bus.handle(commands.Restock("P1", "H1", 1))
        outbox = FakeOutbox(db)
        outbox.mark_poisoned(db.outbox[0].record_id, "schéma refusé")

        transport = FakeTransport()
        assert make_publisher(db, transport, clock).drain_once() == 0
        assert db.outbox[0].status == FAILED


@pytest.mark.parametrize(
    "attempts, expected",
    [(1, 1), (2, 2), (3, 4), (4, 8), (5, 8), (30, 8)],
)
def test_attente_exponentielle_plafonnée(attempts, expected):
    assert backoff_delay(attempts, 1, 8) == expected


class TestPartitions:
    def test_un_seul_stream_par_défaut(self):
        assert stream_name("inventory-reserved", "O1", 1) == "inventory-reserved"

    def test_même_clé_même_partition(self):
        assert stream_name("t", "O1", 4) == stream_name("t", "O1", 4)
        assert stream_name("t", "O1", 4) == f"t.p{partition_for('O1', 4)}"
        assert 0 <= partition_for("O1", 4) < 4
