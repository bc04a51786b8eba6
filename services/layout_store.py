import json
import logging
import sqlite3
import threading
import urllib.error
import urllib.parse
import urllib.request

import db
from services import layout_settings, stack_resolver
from services.catalog import normalize_direction
from services.layout_errors import PersistenceError
from services.placement import normalize_placement, to_document

logger = logging.getLogger(__name__)

_COLUMN_FOR_FIELD = {
    "kind": "item_type",
    "unit_id": "item_id",
    "x": "x_position",
    "y": "y_position",
    "width": "width",
    "length": "length",
    "rotation": "rotation",
    "customer_id": "customer_id",
    "customer_name": "customer_name",
    "stack_id": "stack_id",
    "stack_position": "stack_position",
}


def serialize_layout(placements):
    # Stacks are derived on load and never written.
    return {"placements": [to_document(p) for p in placements or []]}


def deserialize_layout(document):
    if isinstance(document, dict):
        rows = document.get("placements")
        if rows is None:
            rows = document.get("layout")
    else:
        rows = document
    if rows is None:
        return []
    if not isinstance(rows, list):
        raise PersistenceError("Layout document placements must be a list.")

    placements = []
    for index, row in enumerate(rows):
        placement = normalize_placement(row)
        if placement is None:
            logger.warning("Dropping unusable layout row %s: %r", index, row)
            continue
        placements.append(placement)
    return placements


def reconcile_layout(placements):
    """Densify stored stack positions and derive stacks from the flat list."""
    normalized = _merge_shared_origins(stack_resolver.normalize_stack_positions(placements))
    stacks = stack_resolver.rebuild_stacks(normalized)
    return {
        "placements": normalized,
        "stacks": stacks,
        "next_stack_id": stack_resolver.next_stack_id(normalized),
    }


def _merge_shared_origins(placements):
    # Rows sharing a cell but not a stack id are folded into the first stack seen there.
    owner = {}
    merged = []
    changed = False
    for placement in placements:
        origin = (placement["x"], placement["y"])
        stack_id = owner.setdefault(origin, placement["stack_id"])
        if stack_id is not None and placement["stack_id"] != stack_id:
            placement = dict(placement, stack_id=stack_id, stack_position=None)
            changed = True
        elif stack_id is None and _shares_origin(placements, placement):
            stack_id = stack_resolver.next_stack_id(placements + merged)
            owner[origin] = stack_id
            placement = dict(placement, stack_id=stack_id, stack_position=None)
            changed = True
        merged.append(placement)
    return stack_resolver.normalize_stack_positions(merged) if changed else merged


def _shares_origin(placements, placement):
    return sum(1 for p in placements if p["x"] == placement["x"] and p["y"] == placement["y"]) > 1


class SqliteLayoutBackend:
    """Layouts kept in the ``trailer_layouts`` / ``trailer_layout_items`` tables."""

    def __init__(self, updated_by=None):
        self.updated_by = updated_by

    def fetch(self, truckload_id, direction):
        try:
            rows = db.get_trailer_layout_items(truckload_id, direction)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not read {direction} layout for truckload {truckload_id}: {exc}")
        return [
            {field: row.get(column) for field, column in _COLUMN_FOR_FIELD.items()}
            for row in rows
        ]

    def store(self, truckload_id, direction, documents):
        items = [
            {column: document.get(field) for field, column in _COLUMN_FOR_FIELD.items()}
            for document in documents or []
        ]
        try:
            db.replace_trailer_layout_items(
                truckload_id,
                direction,
                items,
                updated_by=self.updated_by,
            )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not save {direction} layout for truckload {truckload_id}: {exc}")


class HttpLayoutBackend:
    """Client for a remote layout service speaking the same GET/PUT contract."""

    def __init__(self, base_url, timeout_ms=5000, retries=0):
        self.base_url = (base_url or "").strip().rstrip("/")
        self.timeout_seconds = max(float(timeout_ms or 5000) / 1000.0, 0.5)
        self.retries = max(int(retries or 0), 0)

    def _path(self, truckload_id, direction):
        query = urllib.parse.urlencode({"direction": direction})
        return f"/api/truckloads/{truckload_id}/layout?{query}"

    def fetch(self, truckload_id, direction):
        data = self._request_json("GET", self._path(truckload_id, direction))
        placements = data.get("placements") if isinstance(data, dict) else data
        return placements or []

    def store(self, truckload_id, direction, documents):
        self._request_json(
            "PUT",
            self._path(truckload_id, direction),
            {"placements": list(documents or [])},
        )

    def _request_json(self, method, path, payload=None):
        if not self.base_url:
            raise PersistenceError("Missing layout store URL.")

        url = f"{self.base_url}{path}"
        body = json.dumps(payload).encode("utf-8") if payload is not None else None
        headers = {"Accept": "application/json"}
        if body is not None:
            headers["Content-Type"] = "application/json"

        last_error = None
        for attempt in range(self.retries + 1):
            request = urllib.request.Request(
                url=url,
                data=body,
                headers=headers,
                method=method,
            )
            try:
                with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                    raw = response.read().decode("utf-8")
                    return json.loads(raw) if raw else {}
            except urllib.error.HTTPError as exc:
                raw = exc.read().decode("utf-8", errors="replace")
                message = raw.strip() or str(exc)
                last_error = PersistenceError(f"Layout store HTTP {exc.code} for {method} {path}: {message}")
                if exc.code in {429, 500, 502, 503, 504} and attempt < self.retries:
                    continue
                break
            except (urllib.error.URLError, TimeoutError, ValueError) as exc:
                last_error = PersistenceError(f"Layout store request failed for {method} {path}: {exc}")
                if attempt < self.retries:
                    continue
                break

        raise last_error or PersistenceError(f"Layout store request failed for {method} {path}.")


class PersistNow:
    """Writes every call straight through to the backend."""

    def __init__(self, backend):
        self.backend = backend

    def save(self, truckload_id, direction, placements):
        document = serialize_layout(placements)
        self.backend.store(truckload_id, direction, document["placements"])


class PersistCoalesced:
    """Collapses rapid saves per ``(truckload_id, direction)`` into one write.

    Each call restarts the quiet period for its key and replaces the pending
    document, so only the last call inside the window reaches the backend.
    Failures are logged and kept on ``last_error``.
    """

    def __init__(self, backend, delay_seconds=None):
        self.backend = backend
        if delay_seconds is None:
            delay_seconds = layout_settings.get_save_debounce_seconds()
        self.delay_seconds = max(float(delay_seconds), 0.0)
        self.last_error = None
        self._lock = threading.Lock()
        self._pending = {}
        self._timers = {}

    @property
    def pending_count(self):
        with self._lock:
            return len(self._pending)

    def save(self, truckload_id, direction, placements):
        key = (truckload_id, direction)
        document = serialize_layout(placements)
        with self._lock:
            self._pending[key] = document
            timer = self._timers.pop(key, None)
            if timer is not None:
                timer.cancel()
            timer = threading.Timer(self.delay_seconds, self._fire, args=(key,))
            timer.daemon = True
            self._timers[key] = timer
            timer.start()

    def _fire(self, key):
        with self._lock:
            self._timers.pop(key, None)
            document = self._pending.pop(key, None)
        if document is not None:
            self._write(key, document)

    def _write(self, key, document):
        truckload_id, direction = key
        try:
            self.backend.store(truckload_id, direction, document["placements"])
        except PersistenceError as exc:
            self.last_error = exc
            logger.warning(
                "Debounced save of %s layout for truckload %s failed: %s",
                direction,
                truckload_id,
                exc,
            )
        else:
            self.last_error = None

    def flush(self):
        with self._lock:
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            pending = list(self._pending.items())
            self._pending.clear()
        for key, document in pending:
            self._write(key, document)
        return len(pending)

    def discard(self, truckload_id, direction):
        key = (truckload_id, direction)
        with self._lock:
            timer = self._timers.pop(key, None)
            if timer is not None:
                timer.cancel()
            self._pending.pop(key, None)


class LayoutStore:
    def __init__(self, backend, debounce_seconds=None):
        self.backend = backend
        self.immediate = PersistNow(backend)
        self.coalesced = PersistCoalesced(backend, delay_seconds=debounce_seconds)

    def load(self, truckload_id, direction):
        direction = normalize_direction(direction)
        rows = self.backend.fetch(truckload_id, direction)
        return reconcile_layout(deserialize_layout({"placements": rows}))

    def save_immediate(self, truckload_id, direction, placements):
        direction = normalize_direction(direction)
        # A structural save supersedes any manual save still waiting.
        self.coalesced.discard(truckload_id, direction)
        self.immediate.save(truckload_id, direction, placements)

    def save_debounced(self, truckload_id, direction, placements):
        self.coalesced.save(truckload_id, normalize_direction(direction), placements)

    def flush(self):
        return self.coalesced.flush()

    @property
    def last_error(self):
        return self.coalesced.last_error


def build_layout_store():
    base_url = layout_settings.get_layout_store_url()
    if base_url:
        backend = HttpLayoutBackend(
            base_url,
            timeout_ms=layout_settings.get_layout_store_timeout_ms(),
        )
    else:
        backend = SqliteLayoutBackend()
    return LayoutStore(backend)
