"""
Events du domaine.

Les events représentent des faits qui se sont produits dans le système.
Ils sont immuables et nommés au passé.

Deux familles :
- les events sortants, émis par une StockCell et publiés via l'outbox ;
- les events entrants, publiés par le service produit (cycle de vie).

Chaque event sortant connaît son topic par défaut et sa clé de partition :
c'est cette clé qui garantit l'ordre vu par les consommateurs en aval
(par produit pour le service produit, par commande pour le service commande).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, ClassVar, Optional

SOURCE = "inventory-service"


def _new_event_id() -> str:
    return str(uuid.uuid4())


def _camel(name: str) -> str:
    head, *tail = name.split("_")
    return head + "".join(part.title() for part in tail)


class Event:
    """Classe de base pour tous les events du domaine."""
    pass


@dataclass(frozen=True)
class CellEvent(Event):
    """Event sortant rattaché à une StockCell."""

    topic: ClassVar[str]
    event_type: ClassVar[str]

    inventory_id: str
    product_id: str
    hub_id: str
    occurred_at: datetime
    event_id: str = field(default_factory=_new_event_id, kw_only=True)

    @property
    def partition_key(self) -> str:
        return self.product_id

    def to_payload(self, cell_version: int) -> dict[str, Any]:
        """
        Sérialise l'event au format publié sur le bus.

        L'enveloppe (eventId, eventType, source, occurredAt,
        cellVersionAtCommit) sert aux consommateurs pour dédupliquer.
        """
        payload: dict[str, Any] = {
            "eventId": self.event_id,
            "eventType": self.event_type,
            "source": SOURCE,
            "occurredAt": self.occurred_at.replace(microsecond=0, tzinfo=None).isoformat(),
            "cellVersionAtCommit": cell_version,
        }
        for f in fields(self):
            if f.name in ("event_id", "occurred_at"):
                continue
            payload[_camel(f.name)] = getattr(self, f.name)
        return payload


@dataclass(frozen=True)
class InventoryCreated(CellEvent):
    topic = "inventory-created"
    event_type = "INVENTORY_CREATED"

    quantity: int


@dataclass(frozen=True)
class InventoryRestocked(CellEvent):
    topic = "inventory-restocked"
    event_type = "INVENTORY_RESTOCKED"

    restocked_quantity: int
    current_quantity: int


@dataclass(frozen=True)
class InventoryLowStock(CellEvent):
    topic = "inventory-low-stock"
    event_type = "INVENTORY_LOW_STOCK"

    current_quantity: int
    safety_stock: int


@dataclass(frozen=True)
class InventoryReserved(CellEvent):
    topic = "inventory-reserved"
    event_type = "INVENTORY_RESERVED"

    order_id: str
    reserved_quantity: int
    available_quantity: int

    @property
    def partition_key(self) -> str:
        return self.order_id


@dataclass(frozen=True)
class StockDecreased(CellEvent):
    topic = "stock-decreased"
    event_type = "STOCK_DECREASED"

    order_id: str
    decreased_quantity: int
    remaining_quantity: int

    @property
    def partition_key(self) -> str:
        return self.order_id


@dataclass(frozen=True)
class StockRestored(CellEvent):
    topic = "stock-restored"
    event_type = "STOCK_RESTORED"

    order_id: str
    restored_quantity: int
    current_quantity: int

    @property
    def partition_key(self) -> str:
        return self.order_id


# --- Events entrants (service produit) ---


@dataclass(frozen=True)
class ProductEvent(Event):
    """Event du cycle de vie produit, reçu en at-least-once."""

    topic: ClassVar[str]

    event_id: str
    product_id: str
    producer_id: str = "product-service"

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        return (self.topic, self.producer_id, self.event_id)

    def validate(self) -> Optional[str]:
        for name, value in (("eventId", self.event_id), ("productId", self.product_id)):
            if not value:
                return f"Champ requis manquant : {name}"
        return None


@dataclass(frozen=True)
class ProductCreated(ProductEvent):
    topic = "product-created"

    hub_id: Optional[str] = None
    seller_id: Optional[str] = None
    name: Optional[str] = None

    def validate(self) -> Optional[str]:
        error = super().validate()
        if error is None and not self.hub_id:
            return "Champ requis manquant : hubId"
        return error


@dataclass(frozen=True)
class ProductDeleted(ProductEvent):
    topic = "product-deleted"

    seller_id: Optional[str] = None
