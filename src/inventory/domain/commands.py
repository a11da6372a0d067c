"""
Commands du domaine.

Les commands représentent des intentions : quelque chose que
le système doit faire. Contrairement aux events (faits passés),
les commands sont des demandes qui peuvent échouer.

`validate()` ne contrôle que la forme (champs requis, quantités
positives, format d'emplacement) ; les règles qui dépendent de l'état
d'une cellule restent dans le modèle. Le message bus rejette une command
invalide avant qu'elle n'atteigne son handler.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from inventory.domain.model import MAX_QUANTITY, is_valid_location

SYSTEM_ACTOR = "system"


class Command:
    """Classe de base pour toutes les commands."""

    def validate(self) -> Optional[str]:
        """Retourne un message d'erreur si la command est mal formée."""
        return None


def _missing(**values: object) -> Optional[str]:
    for name, value in values.items():
        if value is None or (isinstance(value, str) and not value.strip()):
            return f"Champ requis manquant : {name}"
    return None


def _positive(name: str, value: object) -> Optional[str]:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        return f"{name} doit être un entier > 0"
    if value > MAX_QUANTITY:
        return f"{name} dépasse la limite autorisée"
    return None


def _non_negative(name: str, value: object) -> Optional[str]:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        return f"{name} doit être un entier >= 0"
    return None


@dataclass(frozen=True)
class CreateCell(Command):
    """Création explicite du stock d'un produit dans un hub."""

    product_id: str
    hub_id: str
    location: Optional[str] = None
    safety_floor: Optional[int] = None
    actor: str = SYSTEM_ACTOR

    def validate(self) -> Optional[str]:
        error = _missing(productId=self.product_id, hubId=self.hub_id)
        if error:
            return error
        if self.location is not None and not is_valid_location(self.location):
            return f"Emplacement invalide (ex. A-1-3) : {self.location!r}"
        if self.safety_floor is not None:
            return _non_negative("safetyFloor", self.safety_floor)
        return None


@dataclass(frozen=True)
class CreateCellsForAllHubs(Command):
    """Création dans tous les hubs configurés (ancien mode, conservé pour compatibilité)."""

    product_id: str
    actor: str = SYSTEM_ACTOR

    def validate(self) -> Optional[str]:
        return _missing(productId=self.product_id)


@dataclass(frozen=True)
class Restock(Command):
    product_id: str
    hub_id: str
    quantity: int
    actor: str = SYSTEM_ACTOR

    def validate(self) -> Optional[str]:
        return _missing(productId=self.product_id, hubId=self.hub_id) or _positive(
            "quantity", self.quantity
        )


@dataclass(frozen=True)
class Reserve(Command):
    product_id: str
    hub_id: str
    quantity: int
    order_id: str
    actor: str = SYSTEM_ACTOR

    def validate(self) -> Optional[str]:
        return _missing(
            orderId=self.order_id, productId=self.product_id, hubId=self.hub_id
        ) or _positive("quantity", self.quantity)


@dataclass(frozen=True)
class Release(Command):
    product_id: str
    hub_id: str
    quantity: int
    order_id: str
    actor: str = SYSTEM_ACTOR

    def validate(self) -> Optional[str]:
        return _missing(
            orderId=self.order_id, productId=self.product_id, hubId=self.hub_id
        ) or _positive("quantity", self.quantity)


@dataclass(frozen=True)
class ConfirmShipment(Command):
    product_id: str
    hub_id: str
    quantity: int
    order_id: str
    actor: str = SYSTEM_ACTOR

    def validate(self) -> Optional[str]:
        return _missing(
            orderId=self.order_id, productId=self.product_id, hubId=self.hub_id
        ) or _positive("quantity", self.quantity)


@dataclass(frozen=True)
class ReservationItem:
    product_id: str
    hub_id: str
    quantity: int


@dataclass(frozen=True)
class ReserveBatch(Command):
    """
    Réservation de plusieurs lignes pour une même commande.

    Chaque ligne est traitée indépendamment : l'échec d'une ligne
    n'annule pas les autres.
    """

    order_id: str
    items: tuple[ReservationItem, ...] = field(default_factory=tuple)
    actor: str = SYSTEM_ACTOR

    def validate(self) -> Optional[str]:
        error = _missing(orderId=self.order_id)
        if error:
            return error
        if not self.items:
            return "La liste des lignes à réserver est vide"
        for item in self.items:
            error = _missing(productId=item.product_id, hubId=item.hub_id) or _positive(
                "quantity", item.quantity
            )
            if error:
                return error
        return None


@dataclass(frozen=True)
class Adjust(Command):
    cell_id: str
    delta: int
    reason: str
    actor: str = SYSTEM_ACTOR

    def validate(self) -> Optional[str]:
        error = _missing(inventoryId=self.cell_id, reason=self.reason)
        if error:
            return error
        if not isinstance(self.delta, int) or isinstance(self.delta, bool) or self.delta == 0:
            return "adjustmentQuantity doit être un entier non nul"
        return None


@dataclass(frozen=True)
class SetSafetyFloor(Command):
    cell_id: str
    safety_floor: int
    actor: str = SYSTEM_ACTOR

    def validate(self) -> Optional[str]:
        return _missing(inventoryId=self.cell_id) or _non_negative(
            "safetyStock", self.safety_floor
        )


@dataclass(frozen=True)
class SetReorderPoint(Command):
    cell_id: str
    reorder_point: int
    actor: str = SYSTEM_ACTOR

    def validate(self) -> Optional[str]:
        return _missing(inventoryId=self.cell_id) or _non_negative(
            "reorderPoint", self.reorder_point
        )


@dataclass(frozen=True)
class Relocate(Command):
    cell_id: str
    location: str
    actor: str = SYSTEM_ACTOR

    def validate(self) -> Optional[str]:
        error = _missing(inventoryId=self.cell_id, location=self.location)
        if error:
            return error
        if not is_valid_location(self.location):
            return f"Emplacement invalide (ex. A-1-3) : {self.location!r}"
        return None


@dataclass(frozen=True)
class DeleteByProduct(Command):
    product_id: str
    actor: str = SYSTEM_ACTOR

    def validate(self) -> Optional[str]:
        return _missing(productId=self.product_id)


@dataclass(frozen=True)
class Restore(Command):
    cell_id: str
    actor: str = SYSTEM_ACTOR

    def validate(self) -> Optional[str]:
        return _missing(inventoryId=self.cell_id)


@dataclass(frozen=True)
class PoisonOutboxRecord(Command):
    """Retire de la publication un enregistrement d'outbox refusé durablement."""

    record_id: str
    reason: str
    actor: str = SYSTEM_ACTOR

    def validate(self) -> Optional[str]:
        return _missing(recordId=self.record_id, reason=self.reason)
