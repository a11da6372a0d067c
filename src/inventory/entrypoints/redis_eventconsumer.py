"""
Consommateur Redis des events du service produit.

Lit les streams `product-created` et `product-deleted` dans le groupe
de consommateurs configuré (XREADGROUP) et transmet chaque event au
message bus. L'acquittement (XACK) est manuel :

- handler terminé (succès, doublon ou échec métier définitif) -> XACK ;
- payload illisible -> log + XACK, pour ne pas bloquer le stream ;
- panne d'infrastructure -> pas d'XACK, l'entrée reste en attente
  et sera relue au prochain passage.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import threading
from typing import Any

import redis

from inventory import config
from inventory.domain import events
from inventory.service_layer import bootstrap, messagebus

logger = logging.getLogger(__name__)

BATCH_SIZE = 10
BLOCK_MS = 1000
RETRY_SECONDS = 1.0


class MalformedMessage(Exception):
    pass


def stream_events(settings: config.Settings) -> dict[str, type[events.ProductEvent]]:
    return {
        settings.topic(events.ProductCreated.topic): events.ProductCreated,
        settings.topic(events.ProductDeleted.topic): events.ProductDeleted,
    }


def to_event(event_class: type[events.ProductEvent], fields: dict[str, Any]) -> events.ProductEvent:
    """Construit l'event du domaine à partir des champs d'une entrée de stream."""
    try:
        data = json.loads(fields["payload"])
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedMessage(f"payload illisible : {e}") from e
    if not isinstance(data, dict):
        raise MalformedMessage("payload JSON objet attendu")

    common = dict(
        event_id=data.get("eventId"),
        product_id=data.get("productId"),
        producer_id=data.get("source") or "product-service",
    )
    if event_class is events.ProductCreated:
        return events.ProductCreated(
            **common,
            hub_id=data.get("hubId"),
            seller_id=data.get("sellerId"),
            name=data.get("name"),
        )
    return events.ProductDeleted(**common, seller_id=data.get("sellerId"))


def handle_message(
    client: redis.Redis,
    bus: messagebus.MessageBus,
    group: str,
    stream: str,
    entry_id: str,
    fields: dict[str, Any],
    event_class: type[events.ProductEvent],
) -> None:
    """
    Traite une entrée puis l'acquitte.

    Les exceptions du bus remontent sans acquittement.
    """
    try:
        event = to_event(event_class, fields)
    except MalformedMessage as e:
        logger.error("Message %s/%s ignoré : %s", stream, entry_id, e)
        client.xack(stream, group, entry_id)
        return

    result = bus.handle(event)
    logger.info(
        "Event %s %s traité : %s",
        type(event).__name__, event.event_id, "ok" if result.ok else result.error.value,
    )
    client.xack(stream, group, entry_id)


def ensure_groups(client: redis.Redis, streams: list[str], group: str) -> None:
    for stream in streams:
        try:
            client.xgroup_create(stream, group, id="0", mkstream=True)
        except redis.ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise


def consume(
    client: redis.Redis,
    bus: messagebus.MessageBus,
    settings: config.Settings,
    consumer_name: str,
    stop: threading.Event,
) -> None:
    """
    Boucle de consommation.

    Relit d'abord les entrées en attente de ce consommateur (id "0"),
    puis passe aux nouvelles (id ">").
    """
    by_stream = stream_events(settings)
    group = settings.consumer_group_id
    ensure_groups(client, list(by_stream), group)
    backlog = True

    while not stop.is_set():
        start = "0" if backlog else ">"
        response = client.xreadgroup(
            group,
            consumer_name,
            {stream: start for stream in by_stream},
            count=BATCH_SIZE,
            block=None if backlog else BLOCK_MS,
        )
        entries = [(stream, entry) for stream, batch in response or [] for entry in batch]
        if backlog and not entries:
            backlog = False
            continue

        for stream, (entry_id, fields) in entries:
            try:
                handle_message(client, bus, group, stream, entry_id, fields, by_stream[stream])
            except Exception:
                logger.exception("Échec du traitement de %s/%s, relivraison prévue", stream, entry_id)
                backlog = True
                stop.wait(RETRY_SECONDS)
                break


def main() -> None:
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    settings = config.load_settings()
    bus = bootstrap.bootstrap(settings)
    client = redis.Redis(**config.get_redis_host_and_port(settings), decode_responses=True)
    consumer_name = f"{settings.consumer_group_id}-{socket.gethostname()}-{os.getpid()}"
    logger.info("Consommateur %s démarré", consumer_name)
    stop = threading.Event()
    try:
        consume(client, bus, settings, consumer_name, stop)
    except KeyboardInterrupt:
        stop.set()
    finally:
        client.close()


if __name__ == "__main__":
    main()
