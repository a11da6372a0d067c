"""
Modèle de domaine pour le stock réservable.

Une StockCell porte les compteurs d'un couple (produit, hub) :
quantité en stock (on_hand), quantité réservée et seuil de sécurité.
C'est l'unique agrégat du service.

La cellule est un enregistrement immuable : chaque commande produit une
nouvelle version de la cellule (via `evolve`) et la liste des events à
émettre. Rien n'est écrit ici, la persistance est le rôle de la gate
(adapters.repository) et du moteur (service_layer.handlers).

Les règles métier ne lèvent pas d'exception : elles renvoient un Result,
succès (nouvel état + events) ou échec (ErrorKind + message).
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional

from inventory.config import LOCATION_PATTERN
from inventory.domain import events

# Les compteurs sont des entiers 32 bits signés côté base.
MAX_QUANTITY = 2**31 - 1


class ErrorKind(str, enum.Enum):
    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    VALIDATION = "VALIDATION"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    OVER_RELEASE = "OVER_RELEASE"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    CONFLICT = "CONFLICT"
    UNKNOWN = "UNKNOWN"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"


@dataclass(frozen=True)
class Result:
    """
    Résultat d'une commande : soit un état (et ses events), soit une erreur.

    `cell` vaut None pour les commandes qui ne portent pas sur une
    seule cellule (suppression par produit) ou en cas d'échec.
    """

    cell: Optional[StockCell] = None
    events: tuple[events.CellEvent, ...] = ()
    error: Optional[ErrorKind] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(
        cls,
        cell: Optional[StockCell] = None,
        emitted: tuple[events.CellEvent, ...] | list[events.CellEvent] = (),
    ) -> Result:
        return cls(cell=cell, events=tuple(emitted))

    @classmethod
    def failure(cls, kind: ErrorKind, message: str = "") -> Result:
        return cls(error=kind, message=message or kind.value)


@dataclass(frozen=True)
class BatchItemOutcome:
    product_id: str
    hub_id: str
    quantity: int
    success: bool
    error: Optional[ErrorKind] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class BatchResult:
    """Issue d'une réservation multi-lignes : une entrée par ligne, sans rollback."""

    order_id: str
    items: tuple[BatchItemOutcome, ...]
    reservation_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def all_success(self) -> bool:
        return all(item.success for item in self.items)


def is_valid_location(location: Optional[str]) -> bool:
    return bool(location) and LOCATION_PATTERN.match(location) is not None


def new_cell_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Horloge du domaine : UTC naïf, à la seconde (format des events)."""
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


@dataclass(frozen=True)
class StockCell:
    """
    Stock d'un produit dans un hub.

    Invariants : on_hand >= reserved >= 0, reorder_point >= safety_floor >= 0,
    location au format `A-1-3` tant que la cellule est vivante.
    `version` est incrémentée par la gate à chaque commit.
    """

    cell_id: str
    product_id: str
    hub_id: str
    on_hand: int
    reserved: int
    safety_floor: int
    reorder_point: int
    location: str
    last_restock_at: Optional[datetime] = None
    version: int = 0
    deleted: bool = False
    deleted_at: Optional[datetime] = None
    deleted_by: Optional[str] = None
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None

    def __repr__(self) -> str:
        return f"<StockCell {self.product_id}@{self.hub_id} v{self.version}>"

    # --- Quantités dérivées ---

    @property
    def available(self) -> int:
        """Quantité pouvant encore être réservée."""
        return self.on_hand - self.reserved

    @property
    def below_safety(self) -> bool:
        return self.on_hand <= self.safety_floor

    @property
    def needs_reorder(self) -> bool:
        return self.on_hand <= self.reorder_point

    @property
    def out_of_stock(self) -> bool:
        return self.available == 0

    @property
    def is_live(self) -> bool:
        return not self.deleted

    def evolve(self, **changes) -> StockCell:
        """Petit builder : copie de la cellule avec les champs modifiés."""
        return replace(self, **changes)

    # --- Création ---

    @classmethod
    def create(
        cls,
        product_id: str,
        hub_id: str,
        location: str,
        safety_floor: int,
        now: datetime,
        actor: str,
        cell_id: Optional[str] = None,
    ) -> Result:
        """
        Nouvelle cellule vide : on_hand = reserved = 0, point de
        réapprovisionnement aligné sur le seuil de sécurité.
        """
        if not is_valid_location(location):
            return Result.failure(
                ErrorKind.VALIDATION, f"Emplacement invalide (ex. A-1-3) : {location!r}"
            )
        if safety_floor < 0 or safety_floor > MAX_QUANTITY:
            return Result.failure(ErrorKind.VALIDATION, "Le seuil de sécurité doit être >= 0")

        cell = cls(
            cell_id=cell_id or new_cell_id(),
            product_id=product_id,
            hub_id=hub_id,
            on_hand=0,
            reserved=0,
            safety_floor=safety_floor,
            reorder_point=safety_floor,
            location=location,
            last_restock_at=now,
            created_at=now,
            created_by=actor,
            updated_at=now,
            updated_by=actor,
        )
        return Result.success(
            cell,
            [
                events.InventoryCreated(
                    inventory_id=cell.cell_id,
                    product_id=product_id,
                    hub_id=hub_id,
                    quantity=cell.on_hand,
                    occurred_at=now,
                )
            ],
        )

    # --- Commandes de quantité ---

    def restock(self, quantity: int, now: datetime, actor: str) -> Result:
        if quantity <= 0:
            return Result.failure(ErrorKind.VALIDATION, "La quantité d'entrée doit être > 0")
        if self.on_hand > MAX_QUANTITY - quantity:
            return Result.failure(
                ErrorKind.LIMIT_EXCEEDED,
                f"Dépassement de capacité : en stock {self.on_hand}, entrée {quantity}",
            )
        after = self.evolve(
            on_hand=self.on_hand + quantity,
            last_restock_at=now,
            updated_at=now,
            updated_by=actor,
        )
        return Result.success(
            after,
            [
                events.InventoryRestocked(
                    inventory_id=self.cell_id,
                    product_id=self.product_id,
                    hub_id=self.hub_id,
                    restocked_quantity=quantity,
                    current_quantity=after.on_hand,
                    occurred_at=now,
                )
            ],
        )

    def reserve(self, quantity: int, order_id: str, now: datetime, actor: str) -> Result:
        if quantity <= 0:
            return Result.failure(ErrorKind.VALIDATION, "La quantité à réserver doit être > 0")
        if self.available < quantity:
            return Result.failure(
                ErrorKind.INSUFFICIENT_STOCK,
                f"Quantité demandée : {quantity}, disponible : {self.available}",
            )
        after = self.evolve(reserved=self.reserved + quantity, updated_at=now, updated_by=actor)
        emitted: list[events.CellEvent] = [
            events.InventoryReserved(
                inventory_id=self.cell_id,
                product_id=self.product_id,
                hub_id=self.hub_id,
                order_id=order_id,
                reserved_quantity=quantity,
                available_quantity=after.available,
                occurred_at=now,
            )
        ]
        emitted.extend(after._low_stock_events(now))
        return Result.success(after, emitted)

    def release(self, quantity: int, order_id: str, now: datetime, actor: str) -> Result:
        if quantity <= 0:
            return Result.failure(ErrorKind.VALIDATION, "La quantité à libérer doit être > 0")
        if self.reserved < quantity:
            return Result.failure(
                ErrorKind.OVER_RELEASE,
                f"Quantité réservée : {self.reserved}, libération demandée : {quantity}",
            )
        after = self.evolve(reserved=self.reserved - quantity, updated_at=now, updated_by=actor)
        return Result.success(
            after,
            [
                events.StockRestored(
                    inventory_id=self.cell_id,
                    product_id=self.product_id,
                    hub_id=self.hub_id,
                    order_id=order_id,
                    restored_quantity=quantity,
                    current_quantity=after.on_hand,
                    occurred_at=now,
                )
            ],
        )

    def confirm_shipment(self, quantity: int, order_id: str, now: datetime, actor: str) -> Result:
        """Sortie de stock : la quantité quitte à la fois le réservé et le stock."""
        if quantity <= 0:
            return Result.failure(ErrorKind.VALIDATION, "La quantité expédiée doit être > 0")
        if self.reserved < quantity:
            return Result.failure(
                ErrorKind.OVER_RELEASE,
                f"Impossible d'expédier plus que la quantité réservée ({self.reserved})",
            )
        after = self.evolve(
            reserved=self.reserved - quantity,
            on_hand=self.on_hand - quantity,
            updated_at=now,
            updated_by=actor,
        )
        emitted: list[events.CellEvent] = [
            events.StockDecreased(
                inventory_id=self.cell_id,
                product_id=self.product_id,
                hub_id=self.hub_id,
                order_id=order_id,
                decreased_quantity=quantity,
                remaining_quantity=after.on_hand,
                occurred_at=now,
            )
        ]
        emitted.extend(after._low_stock_events(now))
        return Result.success(after, emitted)

    def adjust(self, delta: int, reason: str, now: datetime, actor: str) -> Result:
        """Correction après inventaire physique. Aucun event n'est émis."""
        if delta == 0:
            return Result.failure(ErrorKind.VALIDATION, "L'ajustement doit être non nul")
        new_on_hand = self.on_hand + delta
        if new_on_hand > MAX_QUANTITY:
            return Result.failure(ErrorKind.LIMIT_EXCEEDED, "Dépassement de capacité")
        if new_on_hand < self.reserved:
            return Result.failure(
                ErrorKind.INSUFFICIENT_STOCK,
                f"Le stock ajusté ({new_on_hand}) serait inférieur au réservé ({self.reserved})",
            )
        return Result.success(
            self.evolve(on_hand=new_on_hand, updated_at=now, updated_by=actor)
        )

    # --- Paramétrage ---

    def set_safety_floor(self, safety_floor: int, now: datetime, actor: str) -> Result:
        if safety_floor < 0 or safety_floor > MAX_QUANTITY:
            return Result.failure(ErrorKind.VALIDATION, "Le seuil de sécurité doit être >= 0")
        return Result.success(
            self.evolve(
                safety_floor=safety_floor,
                reorder_point=max(self.reorder_point, safety_floor),
                updated_at=now,
                updated_by=actor,
            )
        )

    def set_reorder_point(self, reorder_point: int, now: datetime, actor: str) -> Result:
        if reorder_point < self.safety_floor or reorder_point > MAX_QUANTITY:
            return Result.failure(
                ErrorKind.VALIDATION,
                f"Le point de commande doit être >= au seuil de sécurité ({self.safety_floor})",
            )
        return Result.success(
            self.evolve(reorder_point=reorder_point, updated_at=now, updated_by=actor)
        )

    def relocate(self, location: str, now: datetime, actor: str) -> Result:
        if not is_valid_location(location):
            return Result.failure(
                ErrorKind.VALIDATION, f"Emplacement invalide (ex. A-1-3) : {location!r}"
            )
        return Result.success(self.evolve(location=location, updated_at=now, updated_by=actor))

    # --- Cycle de vie ---

    def delete(self, now: datetime, actor: str) -> Result:
        if self.deleted:
            return Result.success(self)
        return Result.success(
            self.evolve(deleted=True, deleted_at=now, deleted_by=actor, updated_at=now, updated_by=actor)
        )

    def restore(self, now: datetime, actor: str) -> Result:
        if not self.deleted:
            return Result.failure(ErrorKind.VALIDATION, "La cellule n'est pas supprimée")
        return Result.success(
            self.evolve(deleted=False, deleted_at=None, deleted_by=None, updated_at=now, updated_by=actor)
        )

    def _low_stock_events(self, now: datetime) -> list[events.CellEvent]:
        if not self.below_safety:
            return []
        return [
            events.InventoryLowStock(
                inventory_id=self.cell_id,
                product_id=self.product_id,
                hub_id=self.hub_id,
                current_quantity=self.on_hand,
                safety_stock=self.safety_floor,
                occurred_at=now,
            )
        ]
