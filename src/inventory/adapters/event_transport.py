"""
Adapter pour le bus de messages.

Ce module fournit une abstraction sur la publication des events vers
l'extérieur, ce qui découple le publisher de l'outbox du transport concret.

L'implémentation Redis utilise des Streams : un stream par topic (ou par
partition de topic). La clé de partition est hachée pour choisir le
stream, ce qui garantit l'ordre par clé pour les consommateurs.
"""

from __future__ import annotations

import abc
import json
import zlib
from typing import Any

import redis


class TransportError(Exception):
    """Levée quand le bus est injoignable ou refuse un message."""
    pass


class AbstractEventTransport(abc.ABC):
    """Interface abstraite du transport."""

    @abc.abstractmethod
    def publish(self, topic: str, key: str, payload: dict[str, Any]) -> str:
        """Publie un message et retourne l'accusé de réception du bus."""
        raise NotImplementedError


def partition_for(key: str, partitions: int) -> int:
    return zlib.crc32(key.encode("utf-8")) % partitions


def stream_name(topic: str, key: str, partitions: int) -> str:
    if partitions <= 1:
        return topic
    return f"{topic}.p{partition_for(key, partitions)}"


class RedisStreamTransport(AbstractEventTransport):
    """Implémentation concrète publiant dans des Redis Streams (XADD)."""

    def __init__(self, client: redis.Redis, partitions: int = 1):
        self.client = client
        self.partitions = partitions

    def publish(self, topic: str, key: str, payload: dict[str, Any]) -> str:
        stream = stream_name(topic, key, self.partitions)
        try:
            entry_id = self.client.xadd(
                stream, {"key": key, "payload": json.dumps(payload, default=str)}
            )
        except redis.RedisError as e:
            raise TransportError(f"Publication impossible sur {stream} : {e}") from e
        if isinstance(entry_id, bytes):
            entry_id = entry_id.decode()
        return entry_id
