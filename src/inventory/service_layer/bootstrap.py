"""
Bootstrap : assemblage de l'application (Composition Root).

Ce module construit le message bus et le publisher de l'outbox avec
toutes leurs dépendances. On y assemble les composants concrets (ou
les fakes pour les tests).

C'est le seul endroit de l'application qui connaît les
implémentations concrètes de chaque abstraction.
"""

from __future__ import annotations

import time
from typing import Any, Callable

import redis
from sqlalchemy.orm import sessionmaker

from inventory import config
from inventory.adapters import event_transport, outbox
from inventory.domain import commands, events, model
from inventory.service_layer import handlers, messagebus, publisher, unit_of_work
from inventory.service_layer.idempotency import IdempotencyGuard


def bootstrap(
    settings: config.Settings | None = None,
    uow_factory: Callable[[], unit_of_work.AbstractUnitOfWork] | None = None,
    guard: IdempotencyGuard | None = None,
    create_tables: bool = False,
    **extra_dependencies: Any,
) -> messagebus.MessageBus:
    """
    Construit et retourne un MessageBus configuré.

    En production, utilise les implémentations concrètes.
    En test, on injecte des fakes via les paramètres (uow_factory,
    clock, sleep...).
    """
    if settings is None:
        settings = config.load_settings()

    dependencies: dict[str, Any] = {
        "settings": settings,
        "clock": model.utcnow,
        "sleep": time.sleep,
    }

    if uow_factory is None:
        session_factory = unit_of_work.make_session_factory(settings, create_tables=create_tables)
        dependencies["outbox"] = outbox.SqlAlchemyOutbox(session_factory)

        def uow_factory() -> unit_of_work.AbstractUnitOfWork:
            return unit_of_work.SqlAlchemyUnitOfWork(session_factory)

    if guard is None:
        guard = IdempotencyGuard(settings.guard_max_entries, settings.guard_ttl_seconds)

    dependencies.update(extra_dependencies)

    return messagebus.MessageBus(
        uow_factory=uow_factory,
        event_handlers=EVENT_HANDLERS,
        command_handlers=COMMAND_HANDLERS,
        guard=guard,
        dependencies=dependencies,
    )


def outbox_publisher(
    settings: config.Settings,
    session_factory: sessionmaker | None = None,
    transport: event_transport.AbstractEventTransport | None = None,
) -> publisher.OutboxPublisher:
    if session_factory is None:
        session_factory = unit_of_work.make_session_factory(settings)
    if transport is None:
        client = redis.Redis(**config.get_redis_host_and_port(settings))
        transport = event_transport.RedisStreamTransport(client, settings.publisher_partitions)
    return publisher.OutboxPublisher(outbox.SqlAlchemyOutbox(session_factory), transport, settings)


# --- Routage des messages vers les handlers ---

EVENT_HANDLERS: dict[type[events.Event], list] = {
    events.ProductCreated: [handlers.create_cell_for_product],
    events.ProductDeleted: [handlers.delete_cells_for_product],
}

COMMAND_HANDLERS: dict[type[commands.Command], Any] = {
    commands.CreateCell: handlers.create_cell,
    commands.CreateCellsForAllHubs: handlers.create_cells_for_all_hubs,
    commands.Restock: handlers.restock,
    commands.Reserve: handlers.reserve,
    commands.ReserveBatch: handlers.reserve_batch,
    commands.Release: handlers.release,
    commands.ConfirmShipment: handlers.confirm_shipment,
    commands.Adjust: handlers.adjust,
    commands.SetSafetyFloor: handlers.set_safety_floor,
    commands.SetReorderPoint: handlers.set_reorder_point,
    commands.Relocate: handlers.relocate,
    commands.DeleteByProduct: handlers.delete_by_product,
    commands.Restore: handlers.restore,
    commands.PoisonOutboxRecord: handlers.poison_outbox_record,
}
