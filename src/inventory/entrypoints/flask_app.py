"""
Point d'entrée Flask.

L'API Flask est un thin adapter : elle se contente de
convertir les requêtes HTTP en commands, les envoie au
message bus, et convertit les Results en réponses HTTP.

Trois surfaces :
- /v1/inventory/internal : appels des autres services (commande, produit) ;
- /v1/inventory/web/producer : gestion du stock par le vendeur ;
- /v1/inventory/web/admin : consultation et restauration.

Les routes /web exigent l'en-tête X-User-Id, enregistré comme auteur
des modifications.

L'API ne contient aucune logique métier.
"""

from __future__ import annotations

import functools
import logging
import os
from typing import Any, Optional

from flask import Flask, g, jsonify, request

from inventory.domain import commands
from inventory.domain.model import BatchResult, ErrorKind, Result
from inventory.service_layer import bootstrap, unit_of_work
from inventory.views import views

logger = logging.getLogger(__name__)

INTERNAL = "/v1/inventory/internal"
PRODUCER = "/v1/inventory/web/producer"
ADMIN = "/v1/inventory/web/admin"

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

STATUS_BY_ERROR = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ALREADY_EXISTS: 409,
    ErrorKind.CONFLICT: 409,
    ErrorKind.VALIDATION: 400,
    ErrorKind.INSUFFICIENT_STOCK: 400,
    ErrorKind.OVER_RELEASE: 400,
    ErrorKind.LIMIT_EXCEEDED: 400,
    ErrorKind.UNKNOWN: 503,
    ErrorKind.UPSTREAM_UNAVAILABLE: 503,
}


app = Flask(__name__)
bus = bootstrap.bootstrap()


class BadRequest(Exception):
    pass


def error_response(kind: ErrorKind, message: str):
    return jsonify({"error": kind.value, "message": message}), STATUS_BY_ERROR[kind]


def result_error(result: Result):
    return error_response(result.error, result.message)


@app.errorhandler(BadRequest)
def bad_request(e: BadRequest):
    return error_response(ErrorKind.VALIDATION, str(e))


@app.errorhandler(unit_of_work.UpstreamUnavailable)
def upstream_unavailable(e: unit_of_work.UpstreamUnavailable):
    logger.error("Base de données indisponible : %s", e)
    return error_response(ErrorKind.UPSTREAM_UNAVAILABLE, "Service momentanément indisponible")


def requires_user(view):
    """Exige l'en-tête X-User-Id et le range dans `g.actor`."""

    @functools.wraps(view)
    def wrapper(*args, **kwargs):
        user_id = request.headers.get("X-User-Id", "").strip()
        if not user_id:
            return error_response(ErrorKind.VALIDATION, "En-tête X-User-Id requis")
        g.actor = user_id
        return view(*args, **kwargs)

    return wrapper


def _actor() -> str:
    return getattr(g, "actor", None) or request.headers.get("X-User-Id") or commands.SYSTEM_ACTOR


def _body() -> dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequest("Corps JSON attendu")
    return data


def _int_arg(name: str, default: Optional[int] = None) -> int:
    raw = request.args.get(name)
    if raw is None:
        if default is None:
            raise BadRequest(f"Paramètre requis manquant : {name}")
        return default
    try:
        return int(raw)
    except ValueError:
        raise BadRequest(f"{name} doit être un entier : {raw!r}") from None


def _required_arg(name: str) -> str:
    value = request.args.get(name)
    if not value:
        raise BadRequest(f"Paramètre requis manquant : {name}")
    return value


def _paging() -> tuple[int, int]:
    page = _int_arg("page", 0)
    size = _int_arg("size", DEFAULT_PAGE_SIZE)
    if page < 0:
        raise BadRequest("page doit être >= 0")
    if not 1 <= size <= MAX_PAGE_SIZE:
        raise BadRequest(f"size doit être compris entre 1 et {MAX_PAGE_SIZE}")
    return page, size


def _uow():
    return bus.uow_factory()


@app.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "ok", "service": "inventory-service"}), 200


# --- API interne ---


@app.route(f"{INTERNAL}/products/<product_id>/hubs/<hub_id>/availability", methods=["GET"])
def availability_endpoint(product_id: str, hub_id: str):
    """Disponibilité d'un produit dans un hub (jamais de 404)."""
    return jsonify(views.availability(product_id, hub_id, _uow())), 200


@app.route(f"{INTERNAL}/products/check-availability", methods=["POST"])
def check_availability_endpoint():
    """
    POST /products/check-availability
    Body JSON : { hubId, items: [{ productId, quantity }] }
    """
    data = _body()
    hub_id = data.get("hubId")
    items = data.get("items")
    if not hub_id or not isinstance(items, list) or not items:
        raise BadRequest("hubId et une liste items non vide sont requis")
    wanted = []
    for item in items:
        if not isinstance(item, dict) or not item.get("productId"):
            raise BadRequest("Chaque ligne doit porter un productId")
        quantity = item.get("quantity")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
            raise BadRequest("quantity doit être un entier > 0")
        wanted.append((item["productId"], quantity))
    return jsonify(views.check_availability(hub_id, wanted, _uow())), 200


@app.route(f"{INTERNAL}/reservations", methods=["POST"])
def reserve_endpoint():
    """
    POST /reservations
    Body JSON : { orderId, items: [{ productId, hubId, quantity }] }

    200 si toutes les lignes sont réservées, 206 sinon.
    """
    data = _body()
    items = data.get("items")
    if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
        raise BadRequest("items doit être une liste de lignes")
    cmd = commands.ReserveBatch(
        order_id=data.get("orderId"),
        items=tuple(
            commands.ReservationItem(
                product_id=item.get("productId"),
                hub_id=item.get("hubId"),
                quantity=item.get("quantity"),
            )
            for item in items
        ),
        actor=_actor(),
    )
    result = bus.handle(cmd)
    if isinstance(result, Result):
        return result_error(result)
    return jsonify(reservation_to_dict(result)), 200 if result.all_success else 206


def reservation_to_dict(batch: BatchResult) -> dict[str, Any]:
    reserved_items = []
    for item in batch.items:
        entry: dict[str, Any] = {
            "productId": item.product_id,
            "hubId": item.hub_id,
            "quantity": item.quantity,
            "success": item.success,
        }
        if not item.success:
            entry["errorKind"] = item.error.value
            entry["errorMessage"] = item.message
        reserved_items.append(entry)
    return {
        "reservationId": batch.reservation_id,
        "orderId": batch.order_id,
        "allSuccess": batch.all_success,
        "reservedItems": reserved_items,
    }


def _order_line(order_id: str) -> dict[str, Any]:
    return dict(
        order_id=order_id,
        product_id=_required_arg("productId"),
        hub_id=_required_arg("hubId"),
        quantity=_int_arg("quantity"),
    )


@app.route(f"{INTERNAL}/reservations/<order_id>", methods=["DELETE"])
def release_endpoint(order_id: str):
    line = _order_line(order_id)
    result = bus.handle(commands.Release(**line, actor=_actor()))
    if not result.ok:
        return result_error(result)
    return jsonify({
        "orderId": order_id,
        "productId": line["product_id"],
        "hubId": line["hub_id"],
        "quantity": line["quantity"],
        "released": True,
    }), 200


@app.route(f"{INTERNAL}/reservations/<order_id>/confirm", methods=["POST"])
def confirm_endpoint(order_id: str):
    line = _order_line(order_id)
    result = bus.handle(commands.ConfirmShipment(**line, actor=_actor()))
    if not result.ok:
        return result_error(result)
    return jsonify({
        "orderId": order_id,
        "productId": line["product_id"],
        "hubId": line["hub_id"],
        "quantity": line["quantity"],
        "confirmed": True,
    }), 200


@app.route(f"{INTERNAL}/inventories", methods=["POST"])
def create_endpoint():
    """
    POST /inventories
    Body JSON : { productId, hubId, location?, safetyFloor? }
    """
    data = _body()
    cmd = commands.CreateCell(
        product_id=data.get("productId"),
        hub_id=data.get("hubId"),
        location=data.get("location"),
        safety_floor=data.get("safetyFloor"),
        actor=_actor(),
    )
    result = bus.handle(cmd)
    if not result.ok:
        return result_error(result)
    return jsonify(views.cell_to_dict(result.cell)), 201


@app.route(f"{INTERNAL}/products/<product_id>/initialize", methods=["POST"])
def initialize_endpoint(product_id: str):
    """Ancien mode : crée le stock du produit dans tous les hubs configurés."""
    results = bus.handle(commands.CreateCellsForAllHubs(product_id=product_id, actor=_actor()))
    if isinstance(results, Result):
        return result_error(results)
    failed = next((r for r in results if not r.ok), None)
    if failed is not None:
        return result_error(failed)
    return jsonify([views.cell_to_dict(r.cell) for r in results]), 201


@app.route(f"{INTERNAL}/inventories/<cell_id>/exists", methods=["GET"])
def exists_endpoint(cell_id: str):
    return jsonify({"inventoryId": cell_id, "exists": views.exists(cell_id, _uow())}), 200


@app.route(f"{INTERNAL}/products/<product_id>/inventories", methods=["GET"])
def product_inventories_endpoint(product_id: str):
    return jsonify(views.by_product(product_id, _uow())), 200


# --- API vendeur ---


@app.route(f"{PRODUCER}/restock", methods=["POST"])
@requires_user
def restock_endpoint():
    """
    POST /restock
    Body JSON : { productId, hubId, quantity }
    """
    data = _body()
    cmd = commands.Restock(
        product_id=data.get("productId"),
        hub_id=data.get("hubId"),
        quantity=data.get("quantity"),
        actor=g.actor,
    )
    result = bus.handle(cmd)
    if not result.ok:
        return result_error(result)
    return jsonify(views.cell_to_dict(result.cell)), 200


@app.route(f"{PRODUCER}/inventories/<cell_id>/adjust", methods=["PUT"])
@requires_user
def adjust_endpoint(cell_id: str):
    """
    PUT /inventories/<id>/adjust
    Body JSON : { adjustmentQuantity, reason }

    L'ajustement est signé : négatif pour une perte constatée.
    """
    data = _body()
    cmd = commands.Adjust(
        cell_id=cell_id,
        delta=data.get("adjustmentQuantity"),
        reason=data.get("reason"),
        actor=g.actor,
    )
    result = bus.handle(cmd)
    if not result.ok:
        return result_error(result)
    cell = result.cell
    return jsonify({
        "inventoryId": cell.cell_id,
        "productId": cell.product_id,
        "hubId": cell.hub_id,
        "previousQuantity": cell.on_hand - cmd.delta,
        "adjustmentQuantity": cmd.delta,
        "currentQuantity": cell.on_hand,
        "reason": cmd.reason,
    }), 200


def _setting_endpoint(cmd: commands.Command):
    result = bus.handle(cmd)
    if not result.ok:
        return result_error(result)
    return jsonify(views.cell_to_dict(result.cell)), 200


@app.route(f"{PRODUCER}/inventories/<cell_id>/safety-stock", methods=["PUT"])
@requires_user
def safety_stock_endpoint(cell_id: str):
    data = _body()
    return _setting_endpoint(
        commands.SetSafetyFloor(cell_id=cell_id, safety_floor=data.get("safetyStock"), actor=g.actor)
    )


@app.route(f"{PRODUCER}/inventories/<cell_id>/reorder-point", methods=["PUT"])
@requires_user
def reorder_point_endpoint(cell_id: str):
    data = _body()
    return _setting_endpoint(
        commands.SetReorderPoint(cell_id=cell_id, reorder_point=data.get("reorderPoint"), actor=g.actor)
    )


@app.route(f"{PRODUCER}/inventories/<cell_id>/location", methods=["PUT"])
@requires_user
def location_endpoint(cell_id: str):
    data = _body()
    return _setting_endpoint(
        commands.Relocate(cell_id=cell_id, location=data.get("location"), actor=g.actor)
    )


@app.route(f"{PRODUCER}/inventories/<cell_id>", methods=["GET"])
@requires_user
def producer_cell_endpoint(cell_id: str):
    found = views.cell(cell_id, _uow())
    if found is None:
        return error_response(ErrorKind.NOT_FOUND, f"Stock introuvable : {cell_id}")
    return jsonify(found), 200


@app.route(f"{PRODUCER}/hubs/<hub_id>/inventories", methods=["GET"])
@requires_user
def producer_hub_endpoint(hub_id: str):
    page, size = _paging()
    return jsonify(views.hub_page(hub_id, page, size, _uow())), 200


@app.route(f"{PRODUCER}/products/<product_id>/inventories", methods=["GET"])
@requires_user
def producer_product_endpoint(product_id: str):
    return jsonify(views.by_product(product_id, _uow())), 200


# --- API administrateur ---


@app.route(f"{ADMIN}/inventories", methods=["GET"])
@requires_user
def admin_list_endpoint():
    page, size = _paging()
    return jsonify(views.all_page(page, size, _uow())), 200


@app.route(f"{ADMIN}/inventories/low-stock", methods=["GET"])
@requires_user
def admin_low_stock_endpoint():
    return jsonify(views.low_stock(_uow())), 200


@app.route(f"{ADMIN}/inventories/out-of-stock", methods=["GET"])
@requires_user
def admin_out_of_stock_endpoint():
    return jsonify(views.out_of_stock(_uow())), 200


@app.route(f"{ADMIN}/inventories/<cell_id>/restore", methods=["POST"])
@requires_user
def admin_restore_endpoint(cell_id: str):
    result = bus.handle(commands.Restore(cell_id=cell_id, actor=g.actor))
    if not result.ok:
        return result_error(result)
    return jsonify(views.cell_to_dict(result.cell)), 200


@app.route(f"{ADMIN}/outbox/<record_id>/poison", methods=["POST"])
@requires_user
def admin_poison_outbox_endpoint(record_id: str):
    data = request.get_json(silent=True) or {}
    reason = data.get("reason") or "écarté par un opérateur"
    result = bus.handle(commands.PoisonOutboxRecord(record_id=record_id, reason=reason, actor=g.actor))
    if not result.ok:
        return result_error(result)
    return jsonify({"recordId": record_id, "status": "failed"}), 200


def main() -> None:
    global bus
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    bus = bootstrap.bootstrap(create_tables=True)
    settings = bus.dependencies["settings"]
    app.run(host="0.0.0.0", port=settings.api_port)


if __name__ == "__main__":
    main()
