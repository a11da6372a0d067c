"""
Persistence gate.

La gate détient l'unique copie durable des cellules. Elle expose au
moteur trois primitives :

- load_for_update : lecture d'une cellule vivante avant mutation ;
- commit : écriture conditionnelle (contrôle optimiste sur `version`)
  de la cellule ET de son enregistrement d'outbox, atomiquement ;
- read_snapshot : lecture pure pour les requêtes.

Le pattern Template Method est conservé : les méthodes publiques
normalisent les arguments puis délèguent aux méthodes abstraites
préfixées _ que les sous-classes implémentent.
"""

from __future__ import annotations

import abc
import enum
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import false, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inventory.adapters.orm import inventory_cell, inventory_outbox
from inventory.adapters.outbox import OutboxMessage, OutboxRecord, record_to_row
from inventory.domain import model

logger = logging.getLogger(__name__)


class CommitStatus(enum.Enum):
    OK = "ok"
    CONCURRENT_MODIFICATION = "concurrent_modification"
    CONSTRAINT_VIOLATION = "constraint_violation"


@dataclass(frozen=True)
class Locator:
    """Désigne une cellule par son identifiant ou par son couple (produit, hub)."""

    cell_id: Optional[str] = None
    product_id: Optional[str] = None
    hub_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.cell_id is None and (self.product_id is None or self.hub_id is None):
            raise ValueError("Locator : cell_id ou (product_id, hub_id) requis")

    @classmethod
    def of_cell(cls, cell_id: str) -> Locator:
        return cls(cell_id=cell_id)

    @classmethod
    def of_pair(cls, product_id: str, hub_id: str) -> Locator:
        return cls(product_id=product_id, hub_id=hub_id)


@dataclass(frozen=True)
class Page:
    content: list[model.StockCell]
    page: int
    size: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.size) if self.size else 0


class AbstractCellStore(abc.ABC):
    """Interface abstraite de la gate."""

    def load_for_update(
        self, locator: Locator, include_deleted: bool = False
    ) -> Optional[model.StockCell]:
        """
        Charge une cellule en vue d'une mutation.

        Les cellules supprimées sont invisibles, sauf pour une restauration
        (`include_deleted=True`).
        """
        return self._load(locator, include_deleted=include_deleted, for_update=True)

    def read_snapshot(
        self, locator: Locator, include_deleted: bool = False
    ) -> Optional[model.StockCell]:
        return self._load(locator, include_deleted=include_deleted, for_update=False)

    def commit(
        self,
        before: Optional[model.StockCell],
        after: model.StockCell,
        outbox: list[OutboxMessage],
        now: datetime,
    ) -> CommitStatus:
        """
        Écrit `after` si la version stockée est toujours `before.version`.

        `before` à None signifie une création. En cas de succès, la version
        stockée vaut `before.version + 1` (0 pour une création) et un
        enregistrement d'outbox est ajouté si `outbox` n'est pas vide.
        Rien n'est validé ici : c'est l'appelant (unit of work) qui valide
        la transaction.
        """
        expected_version = after.version if before is None else before.version + 1
        if after.version != expected_version:
            after = after.evolve(version=expected_version)

        if before is None:
            status = self._insert(after)
        else:
            status = self._update(before.version, after)

        if status is CommitStatus.OK and outbox:
            self._append_outbox(
                OutboxRecord(cell_id=after.cell_id, cell_version=after.version, messages=list(outbox)),
                now,
            )
        logger.debug("Commit %s v%s : %s", after.cell_id, after.version, status.value)
        return status

    def delete_by_product(self, product_id: str, now: datetime, actor: str) -> int:
        """Suppression logique de toutes les cellules vivantes d'un produit."""
        return self._delete_by_product(product_id, now, actor)

    def find_by_product(self, product_id: str) -> list[model.StockCell]:
        return self._find(product_id=product_id)

    def find_low_stock(self) -> list[model.StockCell]:
        return self._find(low_stock=True)

    def find_out_of_stock(self) -> list[model.StockCell]:
        return self._find(out_of_stock=True)

    def page(self, page: int, size: int, hub_id: Optional[str] = None) -> Page:
        content, total = self._page(page * size, size, hub_id)
        return Page(content=content, page=page, size=size, total=total)

    def exists(self, cell_id: str) -> bool:
        return self.read_snapshot(Locator.of_cell(cell_id)) is not None

    @abc.abstractmethod
    def _load(
        self, locator: Locator, include_deleted: bool, for_update: bool
    ) -> Optional[model.StockCell]:
        raise NotImplementedError

    @abc.abstractmethod
    def _insert(self, cell: model.StockCell) -> CommitStatus:
        raise NotImplementedError

    @abc.abstractmethod
    def _update(self, expected_version: int, cell: model.StockCell) -> CommitStatus:
        raise NotImplementedError

    @abc.abstractmethod
    def _append_outbox(self, record: OutboxRecord, now: datetime) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def _delete_by_product(self, product_id: str, now: datetime, actor: str) -> int:
        raise NotImplementedError

    @abc.abstractmethod
    def _find(
        self,
        product_id: Optional[str] = None,
        low_stock: bool = False,
        out_of_stock: bool = False,
    ) -> list[model.StockCell]:
        raise NotImplementedError

    @abc.abstractmethod
    def _page(
        self, offset: int, limit: int, hub_id: Optional[str]
    ) -> tuple[list[model.StockCell], int]:
        raise NotImplementedError


def cell_to_row(cell: model.StockCell) -> dict[str, Any]:
    return dict(
        id=cell.cell_id,
        product_id=cell.product_id,
        hub_id=cell.hub_id,
        quantity_in_hub=cell.on_hand,
        reserved_quantity=cell.reserved,
        safety_stock=cell.safety_floor,
        reorder_point=cell.reorder_point,
        location=cell.location,
        last_restocked_at=cell.last_restock_at,
        version=cell.version,
        created_at=cell.created_at,
        created_by=cell.created_by,
        updated_at=cell.updated_at,
        updated_by=cell.updated_by,
        is_deleted=cell.deleted,
        deleted_at=cell.deleted_at,
        deleted_by=cell.deleted_by,
    )


def row_to_cell(row) -> model.StockCell:
    return model.StockCell(
        cell_id=row.id,
        product_id=row.product_id,
        hub_id=row.hub_id,
        on_hand=row.quantity_in_hub,
        reserved=row.reserved_quantity,
        safety_floor=row.safety_stock,
        reorder_point=row.reorder_point,
        location=row.location,
        last_restock_at=row.last_restocked_at,
        version=row.version,
        created_at=row.created_at,
        created_by=row.created_by,
        updated_at=row.updated_at,
        updated_by=row.updated_by,
        deleted=row.is_deleted,
        deleted_at=row.deleted_at,
        deleted_by=row.deleted_by,
    )


class SqlAlchemyCellStore(AbstractCellStore):
    """Implémentation concrète de la gate avec SQLAlchemy Core."""

    def __init__(self, session: Session):
        self.session = session

    def _load(
        self, locator: Locator, include_deleted: bool, for_update: bool
    ) -> Optional[model.StockCell]:
        query = select(inventory_cell)
        if locator.cell_id is not None:
            query = query.where(inventory_cell.c.id == locator.cell_id)
        else:
            query = query.where(
                inventory_cell.c.product_id == locator.product_id,
                inventory_cell.c.hub_id == locator.hub_id,
            )
        if not include_deleted:
            query = query.where(inventory_cell.c.is_deleted == false())
        else:
            # Une cellule vivante est préférée à une ancienne cellule supprimée.
            query = query.order_by(inventory_cell.c.is_deleted, inventory_cell.c.deleted_at.desc())
        if for_update:
            query = query.with_for_update()
        row = self.session.execute(query.limit(1)).first()
        return row_to_cell(row) if row is not None else None

    def _insert(self, cell: model.StockCell) -> CommitStatus:
        try:
            self.session.execute(insert(inventory_cell).values(**cell_to_row(cell)))
        except IntegrityError:
            return CommitStatus.CONSTRAINT_VIOLATION
        return CommitStatus.OK

    def _update(self, expected_version: int, cell: model.StockCell) -> CommitStatus:
        values = cell_to_row(cell)
        del values["id"]
        try:
            result = self.session.execute(
                update(inventory_cell)
                .where(
                    inventory_cell.c.id == cell.cell_id,
                    inventory_cell.c.version == expected_version,
                )
                .values(**values)
            )
        except IntegrityError:
            return CommitStatus.CONSTRAINT_VIOLATION
        if result.rowcount != 1:
            return CommitStatus.CONCURRENT_MODIFICATION
        return CommitStatus.OK

    def _append_outbox(self, record: OutboxRecord, now: datetime) -> None:
        self.session.execute(insert(inventory_outbox).values(**record_to_row(record, now)))

    def _delete_by_product(self, product_id: str, now: datetime, actor: str) -> int:
        result = self.session.execute(
            update(inventory_cell)
            .where(
                inventory_cell.c.product_id == product_id,
                inventory_cell.c.is_deleted == false(),
            )
            .values(
                is_deleted=True,
                deleted_at=now,
                deleted_by=actor,
                updated_at=now,
                updated_by=actor,
                version=inventory_cell.c.version + 1,
            )
        )
        return result.rowcount

    def _find(
        self,
        product_id: Optional[str] = None,
        low_stock: bool = False,
        out_of_stock: bool = False,
    ) -> list[model.StockCell]:
        query = select(inventory_cell).where(inventory_cell.c.is_deleted == false())
        if product_id is not None:
            query = query.where(inventory_cell.c.product_id == product_id)
        if low_stock:
            query = query.where(inventory_cell.c.quantity_in_hub <= inventory_cell.c.safety_stock)
        if out_of_stock:
            query = query.where(
                inventory_cell.c.quantity_in_hub == inventory_cell.c.reserved_quantity
            )
        query = query.order_by(inventory_cell.c.product_id, inventory_cell.c.hub_id)
        return [row_to_cell(row) for row in self.session.execute(query)]

    def _page(
        self, offset: int, limit: int, hub_id: Optional[str]
    ) -> tuple[list[model.StockCell], int]:
        live = inventory_cell.c.is_deleted == false()
        conditions = [live] if hub_id is None else [live, inventory_cell.c.hub_id == hub_id]
        total = self.session.execute(
            select(func.count()).select_from(inventory_cell).where(*conditions)
        ).scalar_one()
        rows = self.session.execute(
            select(inventory_cell)
            .where(*conditions)
            .order_by(inventory_cell.c.created_at, inventory_cell.c.id)
            .offset(offset)
            .limit(limit)
        )
        return [row_to_cell(row) for row in rows], total
