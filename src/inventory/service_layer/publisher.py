"""
Publisher de l'outbox.

Relaye vers le bus les enregistrements écrits par la gate. Les garanties :

- at-least-once : un enregistrement n'est marqué `sent` qu'après
  l'accusé de réception du bus, il peut donc être publié deux fois ;
- ordre par cellule : les enregistrements d'une même cellule partent
  dans l'ordre de commit. Un enregistrement en échec bloque les
  suivants de sa cellule jusqu'à ce qu'il passe ;
- les cellules indépendantes sont publiées en parallèle.

Un échec de publication ne remonte jamais à la mutation qui l'a produit.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable

from inventory import config
from inventory.adapters.event_transport import AbstractEventTransport, TransportError
from inventory.adapters.outbox import AbstractOutbox, OutboxRecord
from inventory.domain import model

logger = logging.getLogger(__name__)


def backoff_delay(attempts: int, base: float, maximum: float) -> float:
    """Délai avant la tentative suivante, après `attempts` échecs (>= 1)."""
    return min(base * 2 ** max(attempts - 1, 0), maximum)


def group_by_cell(records: list[OutboxRecord]) -> dict[str, list[OutboxRecord]]:
    groups: dict[str, list[OutboxRecord]] = {}
    for record in records:
        groups.setdefault(record.cell_id, []).append(record)
    for group in groups.values():
        group.sort(key=lambda r: (r.cell_version, r.seq or 0))
    return groups


class OutboxPublisher:
    def __init__(
        self,
        outbox: AbstractOutbox,
        transport: AbstractEventTransport,
        settings: config.Settings,
        clock: Callable[[], datetime] = model.utcnow,
    ):
        self.outbox = outbox
        self.transport = transport
        self.settings = settings
        self.clock = clock

    def drain_once(self) -> int:
        """
        Un passage sur les enregistrements en attente.

        Retourne le nombre d'enregistrements publiés.
        """
        records = self.outbox.pending(self.settings.publisher_batch_size, now=self.clock())
        if not records:
            return 0
        groups = group_by_cell(records)
        workers = min(self.settings.publisher_workers, len(groups))
        if workers <= 1:
            return sum(self._publish_group(group) for group in groups.values())
        with ThreadPoolExecutor(max_workers=workers) as executor:
            return sum(executor.map(self._publish_group, groups.values()))

    def _publish_group(self, group: list[OutboxRecord]) -> int:
        published = 0
        for record in group:
            now = self.clock()
            if not record.is_due(now):
                break
            if not self._publish_record(record, now):
                break
            published += 1
        return published

    def _publish_record(self, record: OutboxRecord, now: datetime) -> bool:
        try:
            for message in record.messages:
                self.transport.publish(message.topic, message.partition_key, message.payload)
        except TransportError as e:
            delay = backoff_delay(
                record.attempts + 1,
                self.settings.publisher_backoff_base,
                self.settings.publisher_backoff_max,
            )
            logger.warning(
                "Publication de %s (cellule %s v%d) en échec, nouvel essai dans %.1fs : %s",
                record.record_id, record.cell_id, record.cell_version, delay, e,
            )
            self.outbox.mark_retry(record.record_id, str(e), now + timedelta(seconds=delay))
            return False
        self.outbox.mark_sent(record.record_id, now)
        logger.debug("Publié : %s (cellule %s v%d)", record.record_id, record.cell_id, record.cell_version)
        return True

    def run_forever(self, stop: threading.Event, idle_seconds: float = 1.0) -> None:
        logger.info("Publisher de l'outbox démarré")
        while not stop.is_set():
            try:
                published = self.drain_once()
            except Exception:
                logger.exception("Erreur lors du passage sur l'outbox")
                published = 0
            if not published:
                stop.wait(idle_seconds)
        logger.info("Publisher de l'outbox arrêté")
