"""
Outbox transactionnelle.

Les events d'une mutation sont écrits dans inventory_outbox par la gate,
dans la même transaction que la cellule. Ce module fournit le côté lecture :
le publisher y récupère les enregistrements en attente, dans l'ordre du
commit, et y note le résultat de chaque tentative de publication.
"""

from __future__ import annotations

import abc
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import sessionmaker

from inventory.adapters.orm import inventory_outbox

PENDING = "pending"
SENT = "sent"
FAILED = "failed"


@dataclass(frozen=True)
class OutboxMessage:
    """Un message à publier : topic, clé de partition, contenu JSON."""

    topic: str
    partition_key: str
    payload: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {"topic": self.topic, "key": self.partition_key, "payload": self.payload}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OutboxMessage:
        return cls(topic=data["topic"], partition_key=data["key"], payload=data["payload"])


@dataclass
class OutboxRecord:
    cell_id: str
    cell_version: int
    messages: list[OutboxMessage]
    record_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: str = PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    seq: Optional[int] = None

    def is_due(self, now: datetime) -> bool:
        return self.next_attempt_at is None or self.next_attempt_at <= now


class AbstractOutbox(abc.ABC):
    @abc.abstractmethod
    def pending(self, limit: int, now: Optional[datetime] = None) -> list[OutboxRecord]:
        """
        Enregistrements en attente, dans l'ordre de commit.

        Avec `now`, les cellules dont la tête de file attend encore son
        prochain essai sont écartées en entier.
        """
        raise NotImplementedError

    @abc.abstractmethod
    def mark_sent(self, record_id: str, now: datetime) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def mark_retry(self, record_id: str, error: str, next_attempt_at: datetime) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def mark_poisoned(self, record_id: str, reason: str) -> bool:
        """
        Intervention opérateur : l'enregistrement ne sera plus publié.

        Retourne False si aucun enregistrement en attente ne porte cet id.
        """
        raise NotImplementedError


def record_to_row(record: OutboxRecord, now: datetime) -> dict[str, Any]:
    return dict(
        record_id=record.record_id,
        cell_id=record.cell_id,
        cell_version=record.cell_version,
        messages=[m.to_dict() for m in record.messages],
        status=record.status,
        attempts=record.attempts,
        created_at=now,
    )


def row_to_record(row) -> OutboxRecord:
    return OutboxRecord(
        seq=row.seq,
        record_id=row.record_id,
        cell_id=row.cell_id,
        cell_version=row.cell_version,
        messages=[OutboxMessage.from_dict(m) for m in row.messages],
        status=row.status,
        attempts=row.attempts,
        last_error=row.last_error,
        next_attempt_at=row.next_attempt_at,
    )


class SqlAlchemyOutbox(AbstractOutbox):
    """
    Implémentation SQLAlchemy. Chaque appel est une courte transaction :
    le publisher ne garde aucune connexion entre deux publications.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def pending(self, limit: int, now: Optional[datetime] = None) -> list[OutboxRecord]:
        query = select(inventory_outbox).where(inventory_outbox.c.status == PENDING)
        if now is not None:
            backing_off = select(inventory_outbox.c.cell_id).where(
                inventory_outbox.c.status == PENDING,
                inventory_outbox.c.next_attempt_at > now,
            )
            query = query.where(inventory_outbox.c.cell_id.not_in(backing_off))
        with self.session_factory() as session:
            rows = session.execute(query.order_by(inventory_outbox.c.seq).limit(limit))
            return [row_to_record(row) for row in rows]

    def mark_sent(self, record_id: str, now: datetime) -> None:
        self._update(record_id, status=SENT, sent_at=now, last_error=None)

    def mark_retry(self, record_id: str, error: str, next_attempt_at: datetime) -> None:
        self._update(
            record_id,
            attempts=inventory_outbox.c.attempts + 1,
            last_error=error,
            next_attempt_at=next_attempt_at,
        )

    def mark_poisoned(self, record_id: str, reason: str) -> bool:
        return self._update(record_id, status=FAILED, last_error=reason, only_pending=True) == 1

    def _update(self, record_id: str, only_pending: bool = False, **values: Any) -> int:
        query = update(inventory_outbox).where(inventory_outbox.c.record_id == record_id)
        if only_pending:
            query = query.where(inventory_outbox.c.status == PENDING)
        with self.session_factory() as session:
            rowcount = session.execute(query.values(**values)).rowcount
            session.commit()
        return rowcount
