"""
Handlers pour les commands et events.

C'est ici que vit le moteur de réservation : chaque command de mutation
suit le même cycle

    charger -> décider (modèle) -> commit conditionnel (gate) -> réessayer

Le modèle décide, la gate écrit. Un conflit de version (une autre
écriture est passée entre la lecture et le commit) déclenche une
relecture, au plus `engine.retry.maxAttempts` fois. Le premier
réessai est immédiat, les suivants attendent un délai exponentiel.

Tous les handlers renvoient un model.Result. Seules les pannes
d'infrastructure (UpstreamUnavailable) remontent en exception.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from inventory.adapters.outbox import AbstractOutbox, OutboxMessage
from inventory.adapters.repository import CommitStatus, Locator
from inventory.domain import commands, events, model
from inventory.domain.model import ErrorKind, Result
from inventory.service_layer.unit_of_work import CommitOutcomeUnknown

if TYPE_CHECKING:
    from inventory.config import Settings
    from inventory.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

Decision = Callable[[model.StockCell, datetime], Result]


def outbox_messages(
    emitted: tuple[events.CellEvent, ...] | list[events.CellEvent],
    cell_version: int,
    settings: Settings,
) -> list[OutboxMessage]:
    """Traduit les events du modèle en messages d'outbox (topic configuré + clé)."""
    return [
        OutboxMessage(
            topic=settings.topic(event.topic),
            partition_key=event.partition_key,
            payload=event.to_payload(cell_version),
        )
        for event in emitted
    ]


def _log_low_stock(emitted: tuple[events.CellEvent, ...]) -> None:
    for event in emitted:
        if isinstance(event, events.InventoryLowStock):
            logger.warning(
                "Stock bas : produit %s / hub %s (en stock %d, seuil %d)",
                event.product_id, event.hub_id, event.current_quantity, event.safety_stock,
            )


def _mutate(
    uow: AbstractUnitOfWork,
    locator: Locator,
    decide: Decision,
    settings: Settings,
    clock: Callable[[], datetime],
    sleep: Callable[[float], None],
    include_deleted: bool = False,
) -> Result:
    """
    Boucle du moteur : relit et redécide tant que la gate signale un conflit.

    Les échecs métier sont renvoyés tels quels, sans réessai.
    """
    attempts = settings.retry_max_attempts
    for attempt in range(1, attempts + 1):
        if attempt > 2:
            sleep(settings.retry_backoff_seconds * 2 ** (attempt - 3))
        now = clock()
        with uow:
            before = uow.cells.load_for_update(locator, include_deleted=include_deleted)
            if before is None:
                return Result.failure(ErrorKind.NOT_FOUND, f"Stock introuvable : {_describe(locator)}")
            decision = decide(before, now)
            if not decision.ok:
                return decision
            after = decision.cell.evolve(version=before.version + 1)
            status = uow.cells.commit(
                before, after, outbox_messages(decision.events, after.version, settings), now
            )
            if status is CommitStatus.OK:
                try:
                    uow.commit()
                except CommitOutcomeUnknown as e:
                    logger.error("Issue du commit inconnue pour %s : %s", after.cell_id, e)
                    return Result.failure(ErrorKind.UNKNOWN, "Issue du commit inconnue")
                _log_low_stock(decision.events)
                return Result.success(after, decision.events)
            if status is CommitStatus.CONSTRAINT_VIOLATION:
                return Result.failure(
                    ErrorKind.ALREADY_EXISTS, f"Une cellule vivante existe déjà : {_describe(locator)}"
                )
        logger.debug("Conflit de version sur %s (tentative %d/%d)", _describe(locator), attempt, attempts)

    logger.warning("Abandon après %d conflits sur %s", attempts, _describe(locator))
    return Result.failure(ErrorKind.CONFLICT, "Modification concurrente, réessayez")


def _describe(locator: Locator) -> str:
    if locator.cell_id is not None:
        return locator.cell_id
    return f"{locator.product_id}@{locator.hub_id}"


def _create(
    uow: AbstractUnitOfWork,
    product_id: str,
    hub_id: str,
    location: str,
    safety_floor: int,
    actor: str,
    settings: Settings,
    clock: Callable[[], datetime],
) -> Result:
    now = clock()
    with uow:
        existing = uow.cells.load_for_update(
            Locator.of_pair(product_id, hub_id), include_deleted=True
        )
        if existing is not None:
            return Result.failure(
                ErrorKind.ALREADY_EXISTS,
                f"Le stock existe déjà pour {product_id}@{hub_id}",
            )
        decision = model.StockCell.create(
            product_id=product_id,
            hub_id=hub_id,
            location=location,
            safety_floor=safety_floor,
            now=now,
            actor=actor,
        )
        if not decision.ok:
            return decision
        cell = decision.cell
        status = uow.cells.commit(None, cell, outbox_messages(decision.events, cell.version, settings), now)
        if status is not CommitStatus.OK:
            # Création concurrente : l'index unique a tranché.
            return Result.failure(
                ErrorKind.ALREADY_EXISTS,
                f"Le stock existe déjà pour {product_id}@{hub_id}",
            )
        try:
            uow.commit()
        except CommitOutcomeUnknown as e:
            logger.error("Issue du commit inconnue pour %s@%s : %s", product_id, hub_id, e)
            return Result.failure(ErrorKind.UNKNOWN, "Issue du commit inconnue")
    logger.info("Stock créé : produit %s / hub %s (%s)", product_id, hub_id, cell.cell_id)
    return Result.success(cell, decision.events)


# --- Command Handlers ---


def create_cell(
    cmd: commands.CreateCell,
    uow: AbstractUnitOfWork,
    settings: Settings,
    clock: Callable[[], datetime],
) -> Result:
    """
    Crée le stock d'un produit dans un hub.

    Échoue en ALREADY_EXISTS si une cellule existe pour ce couple,
    y compris une cellule supprimée (elle doit être restaurée).
    """
    location = cmd.location or settings.default_location
    safety_floor = settings.default_safety_floor if cmd.safety_floor is None else cmd.safety_floor
    return _create(uow, cmd.product_id, cmd.hub_id, location, safety_floor, cmd.actor, settings, clock)


def create_cells_for_all_hubs(
    cmd: commands.CreateCellsForAllHubs,
    uow: AbstractUnitOfWork,
    settings: Settings,
    clock: Callable[[], datetime],
) -> list[Result]:
    """
    Ancien mode de création : une cellule par hub configuré.

    Les hubs déjà pourvus sont ignorés. Retourne un Result par hub créé.
    """
    created: list[Result] = []
    for hub_id in settings.available_hubs:
        result = _create(
            uow,
            cmd.product_id,
            hub_id,
            settings.default_location,
            settings.default_safety_floor,
            cmd.actor,
            settings,
            clock,
        )
        if result.ok:
            created.append(result)
        elif result.error is ErrorKind.ALREADY_EXISTS:
            logger.debug("Hub %s déjà pourvu pour %s", hub_id, cmd.product_id)
        else:
            return [result]
    return created


def restock(
    cmd: commands.Restock,
    uow: AbstractUnitOfWork,
    settings: Settings,
    clock: Callable[[], datetime],
    sleep: Callable[[float], None],
) -> Result:
    result = _mutate(
        uow,
        Locator.of_pair(cmd.product_id, cmd.hub_id),
        lambda cell, now: cell.restock(cmd.quantity, now, cmd.actor),
        settings, clock, sleep,
    )
    if result.ok:
        logger.info(
            "Entrée en stock : %s@%s +%d (en stock %d)",
            cmd.product_id, cmd.hub_id, cmd.quantity, result.cell.on_hand,
        )
    return result


def reserve(
    cmd: commands.Reserve,
    uow: AbstractUnitOfWork,
    settings: Settings,
    clock: Callable[[], datetime],
    sleep: Callable[[float], None],
) -> Result:
    """Réserve `quantity` unités pour la commande `order_id`."""
    result = _mutate(
        uow,
        Locator.of_pair(cmd.product_id, cmd.hub_id),
        lambda cell, now: cell.reserve(cmd.quantity, cmd.order_id, now, cmd.actor),
        settings, clock, sleep,
    )
    if result.ok:
        logger.info(
            "Réservation %s : %s@%s x%d (disponible %d)",
            cmd.order_id, cmd.product_id, cmd.hub_id, cmd.quantity, result.cell.available,
        )
    return result


def reserve_batch(
    cmd: commands.ReserveBatch,
    uow: AbstractUnitOfWork,
    settings: Settings,
    clock: Callable[[], datetime],
    sleep: Callable[[float], None],
) -> model.BatchResult:
    """
    Réserve chaque ligne dans sa propre transaction.

    Pas de rollback : une ligne déjà réservée le reste même si une
    ligne suivante échoue. L'appelant compense via release.
    """
    outcomes: list[model.BatchItemOutcome] = []
    for item in cmd.items:
        result = reserve(
            commands.Reserve(
                product_id=item.product_id,
                hub_id=item.hub_id,
                quantity=item.quantity,
                order_id=cmd.order_id,
                actor=cmd.actor,
            ),
            uow=uow,
            settings=settings,
            clock=clock,
            sleep=sleep,
        )
        outcomes.append(
            model.BatchItemOutcome(
                product_id=item.product_id,
                hub_id=item.hub_id,
                quantity=item.quantity,
                success=result.ok,
                error=result.error,
                message=None if result.ok else result.message,
            )
        )
    batch = model.BatchResult(order_id=cmd.order_id, items=tuple(outcomes))
    if not batch.all_success:
        logger.warning(
            "Réservation partielle pour la commande %s : %d/%d lignes",
            cmd.order_id, sum(item.success for item in outcomes), len(outcomes),
        )
    return batch


def release(
    cmd: commands.Release,
    uow: AbstractUnitOfWork,
    settings: Settings,
    clock: Callable[[], datetime],
    sleep: Callable[[float], None],
) -> Result:
    result = _mutate(
        uow,
        Locator.of_pair(cmd.product_id, cmd.hub_id),
        lambda cell, now: cell.release(cmd.quantity, cmd.order_id, now, cmd.actor),
        settings, clock, sleep,
    )
    if result.ok:
        logger.info("Réservation libérée %s : %s@%s x%d", cmd.order_id, cmd.product_id, cmd.hub_id, cmd.quantity)
    return result


def confirm_shipment(
    cmd: commands.ConfirmShipment,
    uow: AbstractUnitOfWork,
    settings: Settings,
    clock: Callable[[], datetime],
    sleep: Callable[[float], None],
) -> Result:
    result = _mutate(
        uow,
        Locator.of_pair(cmd.product_id, cmd.hub_id),
        lambda cell, now: cell.confirm_shipment(cmd.quantity, cmd.order_id, now, cmd.actor),
        settings, clock, sleep,
    )
    if result.ok:
        logger.info(
            "Expédition confirmée %s : %s@%s x%d (reste %d)",
            cmd.order_id, cmd.product_id, cmd.hub_id, cmd.quantity, result.cell.on_hand,
        )
    return result


def adjust(
    cmd: commands.Adjust,
    uow: AbstractUnitOfWork,
    settings: Settings,
    clock: Callable[[], datetime],
    sleep: Callable[[float], None],
) -> Result:
    result = _mutate(
        uow,
        Locator.of_cell(cmd.cell_id),
        lambda cell, now: cell.adjust(cmd.delta, cmd.reason, now, cmd.actor),
        settings, clock, sleep,
    )
    if result.ok:
        logger.info("Ajustement %s : %+d (%s)", cmd.cell_id, cmd.delta, cmd.reason)
    return result


def set_safety_floor(
    cmd: commands.SetSafetyFloor,
    uow: AbstractUnitOfWork,
    settings: Settings,
    clock: Callable[[], datetime],
    sleep: Callable[[float], None],
) -> Result:
    return _mutate(
        uow,
        Locator.of_cell(cmd.cell_id),
        lambda cell, now: cell.set_safety_floor(cmd.safety_floor, now, cmd.actor),
        settings, clock, sleep,
    )


def set_reorder_point(
    cmd: commands.SetReorderPoint,
    uow: AbstractUnitOfWork,
    settings: Settings,
    clock: Callable[[], datetime],
    sleep: Callable[[float], None],
) -> Result:
    return _mutate(
        uow,
        Locator.of_cell(cmd.cell_id),
        lambda cell, now: cell.set_reorder_point(cmd.reorder_point, now, cmd.actor),
        settings, clock, sleep,
    )


def relocate(
    cmd: commands.Relocate,
    uow: AbstractUnitOfWork,
    settings: Settings,
    clock: Callable[[], datetime],
    sleep: Callable[[float], None],
) -> Result:
    return _mutate(
        uow,
        Locator.of_cell(cmd.cell_id),
        lambda cell, now: cell.relocate(cmd.location, now, cmd.actor),
        settings, clock, sleep,
    )


def delete_by_product(
    cmd: commands.DeleteByProduct,
    uow: AbstractUnitOfWork,
    clock: Callable[[], datetime],
) -> Result:
    """
    Suppression logique de toutes les cellules d'un produit, en une transaction.

    Idempotent : un second appel ne touche aucune ligne.
    """
    with uow:
        affected = uow.cells.delete_by_product(cmd.product_id, clock(), cmd.actor)
        try:
            uow.commit()
        except CommitOutcomeUnknown as e:
            logger.error("Issue du commit inconnue pour la suppression de %s : %s", cmd.product_id, e)
            return Result.failure(ErrorKind.UNKNOWN, "Issue du commit inconnue")
    logger.info("Stock supprimé pour le produit %s : %d cellule(s)", cmd.product_id, affected)
    return Result.success()


def restore(
    cmd: commands.Restore,
    uow: AbstractUnitOfWork,
    settings: Settings,
    clock: Callable[[], datetime],
    sleep: Callable[[float], None],
) -> Result:
    """Restaure une cellule supprimée. Échoue si une cellule vivante occupe le couple."""
    result = _mutate(
        uow,
        Locator.of_cell(cmd.cell_id),
        lambda cell, now: cell.restore(now, cmd.actor),
        settings, clock, sleep,
        include_deleted=True,
    )
    if result.ok:
        logger.info("Cellule restaurée : %s", cmd.cell_id)
    return result


def poison_outbox_record(cmd: commands.PoisonOutboxRecord, outbox: AbstractOutbox) -> Result:
    """
    Sort un enregistrement de la file de publication (statut `failed`).

    Les enregistrements suivants de la même cellule peuvent alors partir.
    """
    if not outbox.mark_poisoned(cmd.record_id, cmd.reason):
        return Result.failure(
            ErrorKind.NOT_FOUND, f"Aucun enregistrement d'outbox en attente : {cmd.record_id}"
        )
    logger.warning("Enregistrement d'outbox %s écarté par %s : %s", cmd.record_id, cmd.actor, cmd.reason)
    return Result.success()


# --- Event Handlers (service produit) ---


def create_cell_for_product(
    event: events.ProductCreated,
    uow: AbstractUnitOfWork,
    settings: Settings,
    clock: Callable[[], datetime],
) -> Result:
    """
    Produit créé : ouvre le stock dans le hub annoncé.

    Un stock déjà présent n'est pas une erreur (redélivrance).
    """
    result = _create(
        uow,
        event.product_id,
        event.hub_id,
        settings.default_location,
        settings.default_safety_floor,
        commands.SYSTEM_ACTOR,
        settings,
        clock,
    )
    if result.error is ErrorKind.ALREADY_EXISTS:
        logger.info("Stock déjà présent pour %s@%s, rien à faire", event.product_id, event.hub_id)
        return Result.success()
    return result


def delete_cells_for_product(
    event: events.ProductDeleted,
    uow: AbstractUnitOfWork,
    clock: Callable[[], datetime],
) -> Result:
    return delete_by_product(
        commands.DeleteByProduct(product_id=event.product_id), uow=uow, clock=clock
    )
