"""
Tests d'intégration de la gate avec SQLite en mémoire.

Ces tests vérifient le contrat de la gate sur une vraie base :
- aller-retour d'une cellule et numérotation des versions
- écriture conditionnelle (conflit de version)
- unicité du couple parmi les cellules vivantes
- outbox écrite dans la même transaction que la cellule
"""

from datetime import datetime

from sqlalchemy import select

from inventory.adapters.orm import inventory_outbox
from inventory.adapters.outbox import OutboxMessage
from inventory.adapters.repository import CommitStatus, Locator, SqlAlchemyCellStore
from inventory.domain.model import StockCell

NOW = datetime(2024, 3, 1, 9, 0, 0)


def new_cell(product_id="P1", hub_id="H1", safety_floor=10) -> StockCell:
    return StockCell.create(product_id, hub_id, "A-1-1", safety_floor, NOW, "system").cell


def insert(session, cell, outbox=()):
    store = SqlAlchemyCellStore(session)
    status = store.commit(None, cell, list(outbox), NOW)
    session.commit()
    return status


MESSAGE = OutboxMessage(topic="inventory-created", partition_key="P1", payload={"eventId": "e1"})


class TestSqlAlchemyCellStore:
    def test_sauvegarder_et_recharger(self, session):
        cell = new_cell()
        assert insert(session, cell) is CommitStatus.OK

        store = SqlAlchemyCellStore(session)
        by_pair = store.read_snapshot(Locator.of_pair("P1", "H1"))
        by_id = store.load_for_update(Locator.of_cell(cell.cell_id))
        assert by_pair == by_id
        assert by_pair.version == 0
        assert by_pair.created_at == NOW
        assert by_pair.location == "A-1-1"

    def test_commit_incrémente_la_version(self, session):
        cell = new_cell()
        insert(session, cell)
        store = SqlAlchemyCellStore(session)

        before = store.load_for_update(Locator.of_cell(cell.cell_id))
        after = before.restock(5, NOW, "u1").cell
        assert store.commit(before, after, [], NOW) is CommitStatus.OK
        session.commit()

        reloaded = store.read_snapshot(Locator.of_cell(cell.cell_id))
        assert (reloaded.on_hand, reloaded.version, reloaded.updated_by) == (5, 1, "u1")

    def test_version_périmée(self, session):
        cell = new_cell()
        insert(session, cell)
        store = SqlAlchemyCellStore(session)
        stale = store.load_for_update(Locator.of_cell(cell.cell_id))

        store.commit(stale, stale.restock(1, NOW, "a").cell, [], NOW)
        session.commit()
        status = store.commit(stale, stale.restock(2, NOW, "b").cell, [MESSAGE], NOW)
        session.commit()

        assert status is CommitStatus.CONCURRENT_MODIFICATION
        assert store.read_snapshot(Locator.of_cell(cell.cell_id)).on_hand == 1
        assert session.execute(select(inventory_outbox)).all() == []

    def test_outbox_écrite_avec_la_cellule(self, session):
        cell = new_cell()
        insert(session, cell, [MESSAGE])
        [row] = session.execute(select(inventory_outbox)).all()
        assert row.cell_id == cell.cell_id
        assert row.cell_version == 0
        assert row.status == "pending"
        assert row.messages == [MESSAGE.to_dict()]

    def test_outbox_annulée_avec_la_transaction(self, session):
        store = SqlAlchemyCellStore(session)
        store.commit(None, new_cell(), [MESSAGE], NOW)
        session.rollback()
        assert session.execute(select(inventory_outbox)).all() == []
        assert store.read_snapshot(Locator.of_pair("P1", "H1")) is None

    def test_couple_vivant_unique(self, session):
        insert(session, new_cell())
        store = SqlAlchemyCellStore(session)
        assert store.commit(None, new_cell(), [MESSAGE], NOW) is CommitStatus.CONSTRAINT_VIOLATION
        session.rollback()
        assert session.execute(select(inventory_outbox)).all() == []

    def test_suppression_logique(self, session):
        cell = new_cell()
        insert(session, cell)
        insert(session, new_cell(hub_id="H2"))
        insert(session, new_cell(product_id="P2"))
        store = SqlAlchemyCellStore(session)

        assert store.delete_by_product("P1", NOW, "u1") == 2
        session.commit()

        assert store.read_snapshot(Locator.of_cell(cell.cell_id)) is None
        deleted = store.load_for_update(Locator.of_cell(cell.cell_id), include_deleted=True)
        assert deleted.deleted and deleted.deleted_by == "u1"
        assert deleted.version == 1
        assert [c.product_id for c in store.find_by_product("P2")] == ["P2"]
        assert store.find_by_product("P1") == []
        assert not store.exists(cell.cell_id)

        # Le couple supprimé est libéré pour une nouvelle cellule.
        assert insert(session, new_cell()) is CommitStatus.OK

    def test_listes_et_pagination(self, session):
        for hub in ("H1", "H2", "H3"):
            insert(session, new_cell(hub_id=hub))
        store = SqlAlchemyCellStore(session)
        before = store.load_for_update(Locator.of_pair("P1", "H1"))
        store.commit(before, before.restock(50, NOW, "u1").cell, [], NOW)
        session.commit()

        assert {c.hub_id for c in store.find_low_stock()} == {"H2", "H3"}
        assert {c.hub_id for c in store.find_out_of_stock()} == {"H2", "H3"}

        page = store.page(0, 2)
        assert (len(page.content), page.total, page.total_pages) == (2, 3, 2)
        assert len(store.page(1, 2).content) == 1
        assert [c.hub_id for c in store.page(0, 10, hub_id="H2").content] == ["H2"]
