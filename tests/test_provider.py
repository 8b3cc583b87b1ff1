"""Tests for the Provider reconciliation engine."""

import asyncio
import json
from typing import List

import httpx
import pytest

from modelsync.errors import RequestError, UnknownModelError
from modelsync.model.base import Model
from modelsync.models.provider import ProviderConfig, RequestOptions
from modelsync.provider.reconciler import (
    EVENT_ADDED,
    EVENT_CHANGED,
    EVENT_COMPLETED,
    EVENT_DELETED,
    EVENT_ERROR,
    EVENT_STARTED,
    Provider,
)
from modelsync.provider.transport import HTTPXFetcher
from modelsync.schema.registry import SchemaRegistry

ALL_EVENTS = (
    EVENT_STARTED,
    EVENT_COMPLETED,
    EVENT_ERROR,
    EVENT_ADDED,
    EVENT_CHANGED,
    EVENT_DELETED,
)


class Item(Model):
    pass


class Broken(Model):
    pass


def _make_registry() -> SchemaRegistry:
    registry = SchemaRegistry()
    registry.register(Item, {"key": "string", "value": "number"})
    registry.register(Broken, {"key": "string", "part": "Ghost"})
    return registry


class StaticFetcher:
    """Returns queued responses in order and records every request."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests = []

    async def fetch(self, url, options):
        self.requests.append((url, options))
        return self.responses.pop(0)


class GatedFetcher:
    """Each fetch waits until the test releases it with a response."""

    def __init__(self):
        self.gates: List[asyncio.Future] = []

    async def fetch(self, url, options):
        gate = asyncio.get_running_loop().create_future()
        self.gates.append(gate)
        return await gate


def _record(provider: Provider) -> list:
    events = []
    for name in ALL_EVENTS:
        provider.on(name, lambda sender, *args, name=name: events.append((name, args)))
    return events


def _values(provider: Provider) -> dict:
    return {obj.key: obj.value for obj in provider.objects}


class TestSetReconciliation:
    def setup_method(self):
        self.registry = _make_registry()
        self.provider = Provider(Item, registry=self.registry, fetcher=StaticFetcher())

    def test_add_change_delete(self):
        self.provider.reconcile([{"key": "A", "value": 1}, {"key": "B", "value": 2}])
        old_b = self.provider.object_for_key("B")
        events = _record(self.provider)

        changed = self.provider.reconcile(
            [{"key": "B", "value": 3}, {"key": "C", "value": 4}]
        )

        assert changed is True
        assert [name for name, _ in events] == [EVENT_CHANGED, EVENT_ADDED, EVENT_DELETED]
        new_b, existing = events[0][1]
        assert existing is old_b
        assert (existing.value, new_b.value) == (2, 3)
        assert events[1][1][0].key == "C"
        assert events[2][1][0].key == "A"
        assert _values(self.provider) == {"B": 3, "C": 4}
        assert self.provider.keys == ["B", "C"]

    def test_same_snapshot_twice_is_a_no_op(self):
        snapshot = [{"key": "A", "value": 1}, {"key": "B", "value": 2}]
        assert self.provider.reconcile(snapshot) is True
        events = _record(self.provider)

        assert self.provider.reconcile(snapshot) is False
        assert events == []

    def test_replace_never_mutates(self):
        self.provider.reconcile([{"key": "A", "value": 1}])
        held = self.provider.object_for_key("A")

        self.provider.reconcile([{"key": "A", "value": 1}])
        assert self.provider.object_for_key("A") is not held
        assert self.provider.object_for_key("A") == held

        self.provider.reconcile([{"key": "A", "value": 5}])
        assert held.value == 1

    def test_empty_snapshot_deletes_everything(self):
        self.provider.reconcile([{"key": "A", "value": 1}, {"key": "B", "value": 2}])
        events = _record(self.provider)
        assert self.provider.reconcile([]) is True
        assert [name for name, _ in events] == [EVENT_DELETED, EVENT_DELETED]
        assert [args[0].key for _, args in events] == ["A", "B"]
        assert len(self.provider) == 0

    def test_keyless_elements_are_added_not_stored(self):
        events = _record(self.provider)
        assert self.provider.reconcile([{"value": 1}, {"value": 1}]) is True
        assert [name for name, _ in events] == [EVENT_ADDED, EVENT_ADDED]
        assert len(self.provider) == 0

    def test_bad_element_leaves_collection_untouched(self):
        self.provider.reconcile([{"key": "A", "value": 1}])
        events = _record(self.provider)
        with pytest.raises(RequestError, match="Unexpected response body"):
            self.provider.reconcile([{"key": "B", "value": 2}, "C"])
        assert events == []
        assert self.provider.keys == ["A"]


class TestSingleObjectReconciliation:
    def setup_method(self):
        self.registry = _make_registry()
        self.provider = Provider(Item, registry=self.registry, fetcher=StaticFetcher())
        self.events = _record(self.provider)

    def test_new_key_is_added(self):
        assert self.provider.reconcile({"key": "A", "value": 1}) is True
        assert [name for name, _ in self.events] == [EVENT_ADDED]
        assert "A" in self.provider

    def test_keyless_object(self):
        assert self.provider.reconcile({"value": 1}) is True
        assert [name for name, _ in self.events] == [EVENT_ADDED]
        assert self.provider.objects == []
        assert self.provider.object_for_key(None) is None

    def test_changed_and_unchanged(self):
        self.provider.reconcile({"key": "A", "value": 1})
        assert self.provider.reconcile({"key": "A", "value": 1}) is False
        assert self.provider.reconcile({"key": "A", "value": 2}) is True
        assert [name for name, _ in self.events] == [EVENT_ADDED, EVENT_CHANGED]

    def test_single_object_does_not_delete(self):
        self.provider.reconcile([{"key": "A", "value": 1}])
        self.provider.reconcile({"key": "B", "value": 2})
        assert self.provider.keys == ["A", "B"]

    def test_clear_is_silent(self):
        self.provider.reconcile([{"key": "A", "value": 1}])
        self.events.clear()
        self.provider.clear()
        assert self.provider.keys == []
        assert self.events == []


class TestPlainObjects:
    def test_mappings_are_stored_as_received(self):
        provider = Provider(fetcher=StaticFetcher())
        events = _record(provider)
        data = {"key": "A", "nested": {"x": [1, 2]}}
        provider.reconcile([data])
        assert provider.object_for_key("A") is data

        # Equal data in a different order is not a change
        assert provider.reconcile([{"nested": {"x": [1, 2]}, "key": "A"}]) is False
        assert [name for name, _ in events] == [EVENT_ADDED]

    def test_custom_key_accessor(self):
        provider = Provider(fetcher=StaticFetcher(), key=lambda obj: obj.get("uid"))
        provider.reconcile([{"uid": 7, "key": "ignored"}])
        assert provider.keys == [7]

    def test_configured_key_field(self):
        registry = _make_registry()
        provider = Provider(
            Item,
            registry=registry,
            fetcher=StaticFetcher(),
            config=ProviderConfig(key_field="value"),
        )
        provider.reconcile([{"key": "A", "value": 10}])
        assert provider.keys == [10]

    def test_unregistered_model(self):
        with pytest.raises(UnknownModelError):
            Provider(Item, registry=SchemaRegistry(), fetcher=StaticFetcher())


class TestUrlFor:
    def test_origin_and_endpoint(self):
        provider = Provider(origin="https://api.test", fetcher=StaticFetcher())
        assert provider.url_for("items") == "https://api.test/items"
        assert provider.url_for("/items") == "https://api.test/items"
        assert provider.url_for(None) == "https://api.test/"

    def test_without_origin(self):
        provider = Provider(fetcher=StaticFetcher())
        assert provider.url_for("items") == "/items"

    def test_origin_from_config(self):
        provider = Provider(
            fetcher=StaticFetcher(), config=ProviderConfig(origin="https://api.test/")
        )
        assert provider.url_for("items") == "https://api.test/items"


class TestFetch:
    def setup_method(self):
        self.registry = _make_registry()

    def _provider(self, fetcher, model=Item, **kwargs) -> Provider:
        return Provider(
            model, "https://api.test", registry=self.registry, fetcher=fetcher, **kwargs
        )

    @pytest.mark.asyncio
    async def test_successful_pass(self):
        fetcher = StaticFetcher(httpx.Response(200, json=[{"key": "A", "value": 1}]))
        provider = self._provider(fetcher)
        events = _record(provider)

        changed = await provider.fetch_once("items", {"headers": {"X-Test": "1"}})

        assert changed is True
        assert events == [
            (EVENT_STARTED, ("https://api.test/items",)),
            (EVENT_ADDED, (provider.object_for_key("A"),)),
            (EVENT_COMPLETED, (True,)),
        ]
        url, options = fetcher.requests[0]
        assert url == "https://api.test/items"
        assert options.headers == {"X-Test": "1"}

    @pytest.mark.asyncio
    async def test_error_body_with_reason_and_code(self):
        fetcher = StaticFetcher(
            httpx.Response(404, json={"reason": "No such list", "code": 42})
        )
        provider = self._provider(fetcher)
        provider.reconcile([{"key": "A", "value": 1}])
        events = _record(provider)

        assert await provider.fetch_once("items") is False

        assert [name for name, _ in events] == [EVENT_STARTED, EVENT_ERROR]
        error = events[1][1][0]
        assert isinstance(error, RequestError)
        assert error.reason == "No such list"
        assert error.code == 42
        assert provider.keys == ["A"]

    @pytest.mark.asyncio
    async def test_error_falls_back_to_status_line(self):
        fetcher = StaticFetcher(httpx.Response(503, text="down"))
        provider = self._provider(fetcher)
        events = _record(provider)

        await provider.fetch_once("items")

        error = events[-1][1][0]
        assert events[-1][0] == EVENT_ERROR
        assert error.reason == "Service Unavailable"
        assert error.code == 503

    @pytest.mark.asyncio
    async def test_invalid_json_is_an_error(self):
        fetcher = StaticFetcher(
            httpx.Response(200, content=b"{oops", headers={"content-type": "application/json"})
        )
        provider = self._provider(fetcher)
        events = _record(provider)
        await provider.fetch_once("items")
        assert [name for name, _ in events] == [EVENT_STARTED, EVENT_ERROR]
        assert "Invalid JSON" in events[1][1][0].reason

    @pytest.mark.asyncio
    async def test_text_body_on_success_is_an_error(self):
        fetcher = StaticFetcher(httpx.Response(200, text="hello"))
        provider = self._provider(fetcher)
        events = _record(provider)
        await provider.fetch_once("items")
        assert events[-1][0] == EVENT_ERROR
        assert "str" in events[-1][1][0].reason

    @pytest.mark.asyncio
    async def test_binary_body_on_success_is_an_error(self):
        fetcher = StaticFetcher(
            httpx.Response(200, content=b"\x00\x01", headers={"content-type": "image/png"})
        )
        provider = self._provider(fetcher)
        events = _record(provider)
        await provider.fetch_once("items")
        assert "bytes" in events[-1][1][0].reason

    @pytest.mark.asyncio
    async def test_unknown_model_becomes_error_event(self):
        fetcher = StaticFetcher(httpx.Response(200, json={"key": "A", "part": {}}))
        provider = self._provider(fetcher, model=Broken)
        events = _record(provider)
        assert await provider.fetch_once("items") is False
        assert isinstance(events[-1][1][0], UnknownModelError)

    @pytest.mark.asyncio
    async def test_transport_failure_becomes_error_event(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        provider = self._provider(HTTPXFetcher(client))
        events = _record(provider)

        assert await provider.fetch_once("items") is False
        assert [name for name, _ in events] == [EVENT_STARTED, EVENT_ERROR]
        assert events[1][1][0].reason == "connection refused"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_subscriber_failure_propagates(self):
        fetcher = StaticFetcher(httpx.Response(200, json={"key": "A", "value": 1}))
        provider = self._provider(fetcher)
        events = _record(provider)

        def explode(sender, obj):
            raise RuntimeError("subscriber bug")

        provider.on(EVENT_ADDED, explode)
        with pytest.raises(RuntimeError, match="subscriber bug"):
            await provider.fetch_once("items")
        assert EVENT_ERROR not in [name for name, _ in events]


class TestHTTPXFetcher:
    @pytest.mark.asyncio
    async def test_request_is_sent(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        async with HTTPXFetcher(client) as fetcher:
            response = await fetcher.fetch(
                "https://api.test/items",
                RequestOptions(
                    method="POST",
                    headers={"Authorization": "Bearer t"},
                    params={"page": 2},
                    json_body={"q": "x"},
                ),
            )
        assert response.json() == {"ok": True}
        request = seen[0]
        assert request.method == "POST"
        assert request.url.params["page"] == "2"
        assert request.headers["authorization"] == "Bearer t"
        assert json.loads(request.content) == {"q": "x"}
        # Borrowed clients stay open
        assert not client.is_closed
        await client.aclose()

    @pytest.mark.asyncio
    async def test_owned_client_is_closed(self):
        fetcher = HTTPXFetcher()
        await fetcher.aclose()
        assert fetcher.client.is_closed


class TestOverlappingPasses:
    def setup_method(self):
        self.registry = _make_registry()

    async def _race(self, provider: Provider, fetcher: GatedFetcher):
        first = asyncio.create_task(provider.fetch_once("items"))
        second = asyncio.create_task(provider.fetch_once("items"))
        while len(fetcher.gates) < 2:
            await asyncio.sleep(0)

        fetcher.gates[1].set_result(httpx.Response(200, json=[{"key": "B", "value": 2}]))
        second_changed = await second
        fetcher.gates[0].set_result(httpx.Response(200, json=[{"key": "A", "value": 1}]))
        first_changed = await first
        return first_changed, second_changed

    @pytest.mark.asyncio
    async def test_late_response_is_dropped(self):
        fetcher = GatedFetcher()
        provider = Provider(Item, registry=self.registry, fetcher=fetcher)
        events = _record(provider)

        first_changed, second_changed = await self._race(provider, fetcher)

        assert (first_changed, second_changed) == (False, True)
        assert provider.keys == ["B"]
        completed = [args for name, args in events if name == EVENT_COMPLETED]
        assert completed == [(True,), (False,)]

    @pytest.mark.asyncio
    async def test_arrival_order_when_not_dropping(self):
        fetcher = GatedFetcher()
        provider = Provider(
            Item,
            registry=self.registry,
            fetcher=fetcher,
            config=ProviderConfig(drop_stale=False),
        )
        first_changed, _ = await self._race(provider, fetcher)
        assert first_changed is True
        assert provider.keys == ["A"]


class TestPolling:
    def setup_method(self):
        self.registry = _make_registry()
        self.count = 0

    async def _fetch(self, url, options):
        self.count += 1
        return httpx.Response(200, json=[{"key": "A", "value": self.count}])

    def _provider(self) -> Provider:
        fetcher = StaticFetcher()
        fetcher.fetch = self._fetch
        return Provider(Item, registry=self.registry, fetcher=fetcher)

    @pytest.mark.asyncio
    async def test_request_without_interval_fetches_once(self):
        provider = self._provider()
        assert await provider.request("items") is True
        assert not provider.polling
        await asyncio.sleep(0.03)
        assert self.count == 1

    @pytest.mark.asyncio
    async def test_interval_repeats_until_cancelled(self):
        provider = self._provider()
        changes = []
        provider.on(EVENT_CHANGED, lambda sender, obj, existing: changes.append(obj.value))

        await provider.request("items", interval_ms=10)
        assert provider.polling
        await asyncio.sleep(0.1)
        provider.cancel()
        provider.cancel()
        assert not provider.polling

        assert self.count >= 3
        assert changes[:2] == [2, 3]

        await asyncio.sleep(0.02)
        settled = self.count
        await asyncio.sleep(0.05)
        assert self.count == settled

    @pytest.mark.asyncio
    async def test_new_request_replaces_timer(self):
        provider = self._provider()
        await provider.request("items", interval_ms=1000)
        await provider.request("other", interval_ms=1000)
        assert provider.polling
        assert self.count == 2
        await provider.aclose()
        assert not provider.polling

    @pytest.mark.asyncio
    async def test_interval_below_one_is_rejected(self):
        provider = self._provider()
        for interval_ms in (-1, 0):
            with pytest.raises(ValueError, match="interval_ms"):
                await provider.request("items", interval_ms=interval_ms)
        assert not provider.polling
        assert self.count == 0


class TestFalsyKeys:
    def test_zero_is_a_key(self):
        provider = Provider(fetcher=StaticFetcher())
        provider.reconcile([{"key": 0, "v": 1}, {"key": "", "v": 2}])
        assert provider.keys == [0]
