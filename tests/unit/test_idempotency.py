"""Tests de la garde d'idempotence (cache borné avec rétention)."""

from inventory.service_layer.idempotency import IdempotencyGuard


class FakeMonotonic:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestIdempotencyGuard:
    def test_mémorise_un_résultat(self):
        guard = IdempotencyGuard()
        guard.remember(("t", "p", "e1"), "ok")
        assert guard.get(("t", "p", "e1")) == "ok"
        assert guard.get(("t", "p", "e2")) is None

    def test_expiration(self):
        clock = FakeMonotonic()
        guard = IdempotencyGuard(ttl_seconds=10, clock=clock)
        guard.remember("k", "ok")
        clock.now = 10
        assert guard.get("k") == "ok"
        clock.now = 10.5
        assert guard.get("k") is None
        assert len(guard) == 0

    def test_capacité_bornée(self):
        guard = IdempotencyGuard(max_entries=2)
        guard.remember("a", 1)
        guard.remember("b", 2)
        guard.remember("c", 3)
        assert len(guard) == 2
        assert guard.get("a") is None
        assert guard.get("c") == 3
