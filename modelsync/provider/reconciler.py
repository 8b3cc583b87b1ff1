"""
Provider — keeps a keyed collection of objects in sync with a remote endpoint.

One reconciliation pass:
  started → fetch → parse by content type → (set | single-object) diff → completed
or, on any failure along the way, started → error. Exactly one of
completed/error is emitted per pass.

Behavioral Contract:
- At most one live object per key; an update swaps the binding in the
  collection, the previous object is never mutated
- A set pass is mark-and-sweep: keys absent from the snapshot are deleted
- Events within a set pass: added/changed in input order, then deleted in
  collection order
- Request failures become `provider:error` events, never raised to the caller
- Overlapping passes: a response older than the last applied pass is dropped
  (last writer by start order wins) unless ProviderConfig.drop_stale is False
"""

import asyncio
import logging
from collections.abc import Mapping
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Type, Union

import httpx

from modelsync.casting.engine import deep_equal
from modelsync.errors import ModelSyncError, RequestError
from modelsync.events.emitter import EventEmitter
from modelsync.model.base import Model
from modelsync.models.provider import ProviderConfig, RequestOptions
from modelsync.provider.transport import Fetcher, HTTPXFetcher
from modelsync.schema.registry import SchemaRegistry, default_registry

logger = logging.getLogger(__name__)

EVENT_STARTED = "provider:started"        # (url)
EVENT_COMPLETED = "provider:completed"    # (changed)
EVENT_ERROR = "provider:error"            # (error)
EVENT_ADDED = "provider:added"            # (obj)
EVENT_CHANGED = "provider:changed"        # (obj, existing)
EVENT_DELETED = "provider:deleted"        # (obj)

JSON_TYPES = ("application/json", "text/json")
TEXT_TYPES = ("text/plain", "text/html")


class Provider(EventEmitter):
    """
    Fetches objects from an endpoint and reconciles them into a keyed collection.

    `model` is the registered Model subclass built from each received object;
    when omitted, received mappings are stored as they are. `key` extracts the
    identity of an object; by default the `key` field is read from a mapping
    or a model (see ProviderConfig.key_field).
    """

    def __init__(
        self,
        model: Optional[Type[Model]] = None,
        origin: Optional[str] = None,
        *,
        registry: Optional[SchemaRegistry] = None,
        fetcher: Optional[Fetcher] = None,
        key: Optional[Callable[[Any], Any]] = None,
        config: Optional[ProviderConfig] = None,
    ):
        super().__init__()
        self.config = config or ProviderConfig()
        self.origin = self.config.origin if origin is None else origin
        self.registry = registry or default_registry
        self.model = model
        if model is not None:
            self.registry.schema_for(model)

        self._owns_fetcher = fetcher is None
        self._fetcher = fetcher or HTTPXFetcher()
        self._key_fn = key or self._default_key

        self._objects: Dict[Any, Any] = {}
        self._timer: Optional[asyncio.Task] = None
        self._ticks: Set[asyncio.Task] = set()
        self._issued = 0
        self._applied = 0

    # --- Collection accessors ---

    @property
    def objects(self) -> List[Any]:
        """Snapshot of the objects currently held."""
        return list(self._objects.values())

    @property
    def keys(self) -> List[Any]:
        return list(self._objects.keys())

    def object_for_key(self, key: Any) -> Optional[Any]:
        """Get the object registered under a key."""
        return self._objects.get(key)

    def clear(self) -> None:
        """Remove every object without emitting deleted events."""
        self._objects.clear()

    def __len__(self) -> int:
        return len(self._objects)

    def __contains__(self, key: Any) -> bool:
        return key in self._objects

    # --- Requests ---

    @property
    def polling(self) -> bool:
        return self._timer is not None

    def url_for(self, endpoint: Optional[str]) -> str:
        """Resolve an endpoint against the origin."""
        path = endpoint or ""
        if not path.startswith("/"):
            path = "/" + path
        return self.origin.rstrip("/") + path

    async def request(
        self,
        endpoint: str,
        options: Optional[Union[RequestOptions, Mapping]] = None,
        interval_ms: Optional[int] = None,
    ) -> bool:
        """
        Fetch once now and, with an interval, keep fetching on that period.

        Cancels any existing repeating fetch first. Returns the changed flag
        of the immediate pass. Raises ValueError for an interval below 1 ms.
        """
        if interval_ms is None:
            interval_ms = self.config.interval_ms
        if interval_ms is not None and interval_ms < 1:
            raise ValueError(f"interval_ms must be at least 1, got {interval_ms}")
        self.cancel()
        if interval_ms is not None:
            self._timer = asyncio.create_task(
                self._repeat(endpoint, options, interval_ms / 1000.0)
            )
        return await self.fetch_once(endpoint, options)

    def cancel(self) -> None:
        """Stop the repeating fetch. In-flight fetches still complete."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def aclose(self) -> None:
        """Cancel polling and release the fetcher if this provider created it."""
        self.cancel()
        if self._owns_fetcher:
            await self._fetcher.aclose()

    async def _repeat(self, endpoint: str, options: Any, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            # Ticks run as their own tasks; the timer never waits on a fetch.
            task = asyncio.create_task(self.fetch_once(endpoint, options))
            self._ticks.add(task)
            task.add_done_callback(self._tick_done)

    def _tick_done(self, task: asyncio.Task) -> None:
        self._ticks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "Scheduled fetch failed", exc_info=task.exception()
            )

    async def fetch_once(
        self,
        endpoint: str,
        options: Optional[Union[RequestOptions, Mapping]] = None,
    ) -> bool:
        """
        Run one reconciliation pass without touching the repeating fetch.

        Returns the changed flag, or False when the pass emitted an error.
        """
        if options is None:
            options = RequestOptions()
        elif not isinstance(options, RequestOptions):
            options = RequestOptions.model_validate(options)

        url = self.url_for(endpoint)
        self._issued += 1
        sequence = self._issued

        self.emit(EVENT_STARTED, url)
        logger.debug("Fetch %d started: %s", sequence, url)
        try:
            changed = await self._run_pass(url, options, sequence)
        except httpx.HTTPError as exc:
            self._fail(RequestError(str(exc) or type(exc).__name__))
            return False
        except ModelSyncError as exc:
            self._fail(exc)
            return False

        logger.debug("Fetch %d completed, changed=%s", sequence, changed)
        self.emit(EVENT_COMPLETED, changed)
        return changed

    async def _run_pass(self, url: str, options: RequestOptions, sequence: int) -> bool:
        response = await self._fetcher.fetch(url, options)
        body = self._parse_body(response)

        if not response.is_success:
            raise self._request_error(response, body)

        if self.config.drop_stale and sequence < self._applied:
            logger.debug(
                "Fetch %d dropped: pass %d already applied", sequence, self._applied
            )
            return False
        self._applied = sequence
        return self.reconcile(body)

    def _fail(self, error: ModelSyncError) -> None:
        logger.warning("Fetch failed: %s (code=%s)", error.reason, error.code)
        self.emit(EVENT_ERROR, error)

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        """Parse a response body according to its declared content type."""
        content_type = response.headers.get("content-type", "")
        category = content_type.split(";")[0].strip().lower()
        if category in JSON_TYPES or category.endswith("+json"):
            if not response.content:
                return None
            try:
                return response.json()
            except ValueError as exc:
                raise RequestError(
                    f"Invalid JSON response: {exc}", response.status_code
                ) from exc
        if category in TEXT_TYPES:
            return response.text
        return response.content

    @staticmethod
    def _request_error(response: httpx.Response, body: Any) -> RequestError:
        if isinstance(body, Mapping) and body.get("reason"):
            return RequestError(str(body["reason"]), body.get("code"))
        reason = response.reason_phrase or f"HTTP {response.status_code}"
        return RequestError(reason, response.status_code)

    # --- Reconciliation ---

    def reconcile(self, data: Any) -> bool:
        """
        Diff already-parsed data against the collection.

        A list is treated as the complete set of objects; anything else as a
        single object. Returns True when the collection changed.
        """
        if isinstance(data, list):
            return self._reconcile_set(data)
        _, changed = self._apply(self._construct(data))
        return changed

    def _reconcile_set(self, data: List[Any]) -> bool:
        # Build every object before the collection is touched.
        incoming = [self._construct(elem) for elem in data]

        # Mark
        pending = dict.fromkeys(self._objects)
        changed = False

        for obj in incoming:
            key, obj_changed = self._apply(obj)
            if _has_key(key):
                pending.pop(key, None)
            if obj_changed:
                changed = True

        # Sweep
        for key in list(self._objects):
            if key in pending:
                removed = self._objects.pop(key)
                changed = True
                self.emit(EVENT_DELETED, removed)

        return changed

    def _apply(self, obj: Any) -> Tuple[Any, bool]:
        """Insert or replace one object. Returns its key and whether anything changed."""
        key = self._key_fn(obj)
        if _has_key(key) and key in self._objects:
            existing = self._objects[key]
            self._objects[key] = obj
            if self._same(obj, existing):
                return key, False
            self.emit(EVENT_CHANGED, obj, existing)
            return key, True

        if _has_key(key):
            self._objects[key] = obj
        self.emit(EVENT_ADDED, obj)
        return key, True

    def _construct(self, data: Any) -> Any:
        if not isinstance(data, Mapping):
            raise RequestError(
                f"Unexpected response body of type {type(data).__name__}"
            )
        if self.model is None:
            return data
        return self.model(data, registry=self.registry)

    def _default_key(self, obj: Any) -> Any:
        field = self.config.key_field
        if isinstance(obj, Mapping):
            return obj.get(field)
        if isinstance(obj, Model):
            return obj.get(field) if field in obj.schema.fields else None
        return getattr(obj, field, None)

    @staticmethod
    def _same(a: Any, b: Any) -> bool:
        if isinstance(a, Model):
            return a.equals(b)
        return deep_equal(a, b)


def _has_key(key: Any) -> bool:
    return key is not None and key != ""
