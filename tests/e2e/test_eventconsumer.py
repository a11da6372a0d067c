"""
Tests end-to-end du consommateur Redis.

Un client Redis factice fournit les entrées de stream et enregistre
les acquittements ; le bus est branché sur SQLite en mémoire.
"""

import json
import threading

import pytest

from inventory.adapters.repository import Locator
from inventory.domain import events
from inventory.entrypoints import redis_eventconsumer
from inventory.service_layer import bootstrap, unit_of_work

from fakes import make_settings


class StubRedis:
    """Streams en mémoire avec groupes de consommateurs minimalistes."""

    def __init__(self):
        self.streams: dict[str, list[tuple[str, dict]]] = {}
        self.delivered: set[tuple[str, str]] = set()
        self.acked: list[tuple[str, str, str]] = []
        self.groups: set[tuple[str, str]] = set()

    def add(self, stream: str, payload) -> str:
        entries = self.streams.setdefault(stream, [])
        entry_id = f"{len(entries) + 1}-0"
        data = payload if isinstance(payload, str) else json.dumps(payload)
        entries.append((entry_id, {"payload": data}))
        return entry_id

    def xgroup_create(self, stream, group, id="0", mkstream=False):
        self.groups.add((stream, group))
        self.streams.setdefault(stream, [])

    def xreadgroup(self, group, consumer, streams, count=None, block=None):
        response = []
        acked = {(s, e) for s, _, e in self.acked}
        for stream, start in streams.items():
            entries = []
            for entry_id, fields in self.streams.get(stream, []):
                if (stream, entry_id) in acked:
                    continue
                seen = (stream, entry_id) in self.delivered
                if (start == ">" and not seen) or (start == "0" and seen):
                    entries.append((entry_id, fields))
                    self.delivered.add((stream, entry_id))
            if entries:
                response.append((stream, entries[:count]))
        return response

    def xack(self, stream, group, entry_id):
        self.acked.append((stream, group, entry_id))
        return 1


@pytest.fixture
def sqlite_bus(session_factory, clock):
    return bootstrap.bootstrap(
        settings=make_settings(),
        uow_factory=lambda: unit_of_work.SqlAlchemyUnitOfWork(session_factory),
        clock=clock,
        sleep=lambda seconds: None,
    )


def live_cell(bus, product_id, hub_id):
    uow = bus.uow_factory()
    with uow:
        return uow.cells.read_snapshot(Locator.of_pair(product_id, hub_id))


def handle(client, bus, stream, entry_id, event_class):
    fields = dict(client.streams[stream])[entry_id]
    redis_eventconsumer.handle_message(
        client, bus, "inventory-service", stream, entry_id, fields, event_class
    )


class TestHandleMessage:
    def test_produit_créé_puis_acquitté(self, sqlite_bus):
        client = StubRedis()
        entry = client.add("product-created", {
            "eventId": "e1", "productId": "P1", "hubId": "H1", "sellerId": "S1", "name": "Lampe",
        })

        handle(client, sqlite_bus, "product-created", entry, events.ProductCreated)

        assert live_cell(sqlite_bus, "P1", "H1").safety_floor == 10
        assert client.acked == [("product-created", "inventory-service", entry)]

    def test_redélivrance_sans_double_création(self, sqlite_bus):
        client = StubRedis()
        payload = {"eventId": "e1", "productId": "P1", "hubId": "H1"}
        first = client.add("product-created", payload)
        second = client.add("product-created", payload)

        handle(client, sqlite_bus, "product-created", first, events.ProductCreated)
        handle(client, sqlite_bus, "product-created", second, events.ProductCreated)

        assert len(client.acked) == 2
        uow = sqlite_bus.uow_factory()
        with uow:
            assert len(uow.cells.find_by_product("P1")) == 1

    def test_produit_supprimé(self, sqlite_bus):
        client = StubRedis()
        handle(client, sqlite_bus, "product-created", client.add("product-created", {
            "eventId": "e1", "productId": "P1", "hubId": "H1",
        }), events.ProductCreated)
        entry = client.add("product-deleted", {"eventId": "e2", "productId": "P1"})

        handle(client, sqlite_bus, "product-deleted", entry, events.ProductDeleted)

        assert live_cell(sqlite_bus, "P1", "H1") is None
        assert ("product-deleted", "inventory-service", entry) in client.acked

    def test_payload_illisible_acquitté(self, sqlite_bus):
        client = StubRedis()
        entry = client.add("product-created", "{pas du json")
        handle(client, sqlite_bus, "product-created", entry, events.ProductCreated)
        assert client.acked == [("product-created", "inventory-service", entry)]

    def test_échec_métier_acquitté(self, sqlite_bus):
        client = StubRedis()
        entry = client.add("product-created", {"eventId": "e1", "productId": "P1"})
        handle(client, sqlite_bus, "product-created", entry, events.ProductCreated)
        assert len(client.acked) == 1

    def test_panne_sans_acquittement(self):
        def broken_uow():
            raise unit_of_work.UpstreamUnavailable("base injoignable")

        bus = bootstrap.bootstrap(settings=make_settings(), uow_factory=broken_uow)
        client = StubRedis()
        entry = client.add("product-deleted", {"eventId": "e2", "productId": "P1"})

        with pytest.raises(unit_of_work.UpstreamUnavailable):
            handle(client, bus, "product-deleted", entry, events.ProductDeleted)
        assert client.acked == []


def test_source_comme_producteur():
    event = redis_eventconsumer.to_event(
        events.ProductDeleted,
        {"payload": json.dumps({"eventId": "e1", "productId": "P1", "source": "catalog"})},
    )
    assert event.dedup_key == ("product-deleted", "catalog", "e1")


class TestConsume:
    def test_boucle_relit_les_entrées_en_attente(self, sqlite_bus):
        client = StubRedis()
        stop = threading.Event()
        settings = make_settings()
        calls = {"n": 0}
        original = client.xreadgroup

        def xreadgroup(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] > 4:
                stop.set()
            return original(*args, **kwargs)

        client.xreadgroup = xreadgroup
        client.add("product-created", {"eventId": "e1", "productId": "P1", "hubId": "H1"})

        redis_eventconsumer.consume(client, sqlite_bus, settings, "c1", stop)

        assert ("product-created", "inventory-service") in client.groups
        assert live_cell(sqlite_bus, "P1", "H1") is not None
        assert [e for _, _, e in client.acked] == ["1-0"]
