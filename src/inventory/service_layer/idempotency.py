"""
Garde d'idempotence pour les events entrants.

Le service produit publie en at-least-once : un même event peut être
livré plusieurs fois. La garde mémorise, pour une durée de rétention
donnée, le résultat obtenu pour chaque clé (topic, producteur, eventId) ;
une redélivrance renvoie ce résultat sans rejouer la command.

Le cache est borné et local au processus. Perdre une entrée n'est pas
grave : la création et la suppression sont elles-mêmes idempotentes.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, Optional


class IdempotencyGuard:
    def __init__(
        self,
        max_entries: int = 10_000,
        ttl_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: OrderedDict[Hashable, tuple[float, Any]] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: Hashable) -> Optional[Any]:
        """Résultat mémorisé pour `key`, ou None si absent ou expiré."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, outcome = entry
            if self.clock() - stored_at > self.ttl_seconds:
                del self._entries[key]
                return None
            return outcome

    def remember(self, key: Hashable, outcome: Any) -> None:
        with self._lock:
            self._entries[key] = (self.clock(), outcome)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                # Les plus anciennes entrées partent en premier.
                self._entries.popitem(last=False)
