"""
Views (lecture) pour le pattern CQRS.

Les views sont des fonctions de lecture pure : elles passent par
`read_snapshot` et les listes de la gate, sans verrou ni écriture,
et renvoient des dictionnaires prêts à être sérialisés en JSON.

C'est le côté Query de CQRS : les écritures passent par le message
bus et le moteur, les lectures viennent directement ici.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from inventory.adapters.repository import Locator, Page
from inventory.domain import model
from inventory.service_layer import unit_of_work


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def cell_to_dict(cell: model.StockCell) -> dict[str, Any]:
    return {
        "inventoryId": cell.cell_id,
        "productId": cell.product_id,
        "hubId": cell.hub_id,
        "quantityInHub": cell.on_hand,
        "reservedQuantity": cell.reserved,
        "availableQuantity": cell.available,
        "safetyStock": cell.safety_floor,
        "reorderPoint": cell.reorder_point,
        "location": cell.location,
        "lastRestockedAt": _iso(cell.last_restock_at),
        "isLowStock": cell.below_safety,
        "needsReorder": cell.needs_reorder,
        "version": cell.version,
        "isDeleted": cell.deleted,
        "deletedAt": _iso(cell.deleted_at),
        "deletedBy": cell.deleted_by,
        "createdAt": _iso(cell.created_at),
        "createdBy": cell.created_by,
        "updatedAt": _iso(cell.updated_at),
        "updatedBy": cell.updated_by,
    }


def page_to_dict(page: Page) -> dict[str, Any]:
    return {
        "content": [cell_to_dict(c) for c in page.content],
        "page": page.page,
        "size": page.size,
        "totalElements": page.total,
        "totalPages": page.total_pages,
    }


def availability(product_id: str, hub_id: str, uow: unit_of_work.AbstractUnitOfWork) -> dict[str, Any]:
    """
    Disponibilité d'un produit dans un hub.

    Une cellule absente n'est pas une erreur : la réponse indique
    simplement que rien n'est disponible.
    """
    with uow:
        cell = uow.cells.read_snapshot(Locator.of_pair(product_id, hub_id))
    if cell is None:
        return {
            "productId": product_id,
            "hubId": hub_id,
            "available": 0,
            "reserved": 0,
            "total": 0,
            "isAvailable": False,
            "error": f"Stock introuvable : {product_id}@{hub_id}",
        }
    return {
        "productId": product_id,
        "hubId": hub_id,
        "available": cell.available,
        "reserved": cell.reserved,
        "total": cell.on_hand,
        "isAvailable": cell.available > 0,
    }


def check_availability(
    hub_id: str, items: list[tuple[str, int]], uow: unit_of_work.AbstractUnitOfWork
) -> dict[str, Any]:
    """Vérifie en lecture seule qu'une liste de (produit, quantité) est disponible dans un hub."""
    results = []
    for product_id, quantity in items:
        entry = availability(product_id, hub_id, uow)
        entry["requestedQuantity"] = quantity
        entry["isAvailable"] = entry["available"] >= quantity
        results.append(entry)
    return {
        "hubId": hub_id,
        "allAvailable": all(r["isAvailable"] for r in results),
        "results": results,
    }


def cell(cell_id: str, uow: unit_of_work.AbstractUnitOfWork) -> Optional[dict[str, Any]]:
    with uow:
        found = uow.cells.read_snapshot(Locator.of_cell(cell_id))
    return cell_to_dict(found) if found is not None else None


def exists(cell_id: str, uow: unit_of_work.AbstractUnitOfWork) -> bool:
    with uow:
        return uow.cells.exists(cell_id)


def by_product(product_id: str, uow: unit_of_work.AbstractUnitOfWork) -> list[dict[str, Any]]:
    with uow:
        return [cell_to_dict(c) for c in uow.cells.find_by_product(product_id)]


def low_stock(uow: unit_of_work.AbstractUnitOfWork) -> list[dict[str, Any]]:
    with uow:
        return [cell_to_dict(c) for c in uow.cells.find_low_stock()]


def out_of_stock(uow: unit_of_work.AbstractUnitOfWork) -> list[dict[str, Any]]:
    with uow:
        return [cell_to_dict(c) for c in uow.cells.find_out_of_stock()]


def hub_page(
    hub_id: str, page: int, size: int, uow: unit_of_work.AbstractUnitOfWork
) -> dict[str, Any]:
    with uow:
        return page_to_dict(uow.cells.page(page, size, hub_id=hub_id))


def all_page(page: int, size: int, uow: unit_of_work.AbstractUnitOfWork) -> dict[str, Any]:
    with uow:
        return page_to_dict(uow.cells.page(page, size))
