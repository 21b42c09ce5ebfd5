"""
Replicated store – Firebase Realtime Database over its REST API.

Wire shape: three top-level maps (``patients``, ``visits``, ``users``) keyed by
entity id. Reads and writes are plain JSON requests; subscriptions hold a
``text/event-stream`` connection per collection on a daemon thread and keep a
local mirror of the map that each ``put``/``patch`` event is applied to.
"""

import json
import sys
import threading
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple
from urllib.parse import quote

import requests

from clinicflow.config import REQUEST_TIMEOUT_SECONDS, STREAM_RETRY_SECONDS
from clinicflow.errors import BackendUnavailableError
from clinicflow.models import ENTITY_TYPES
from clinicflow.storage.base import VISITS, StoragePort, Subscription


# ── Wire helpers ─────────────────────────────────────────────────────

def _as_map(data: Any) -> Dict[str, Any]:
    """Firebase returns maps with small integer keys as JSON arrays."""
    if isinstance(data, dict):
        return data
    if isinstance(data, list):
        return {str(i): v for i, v in enumerate(data) if v is not None}
    return {}


def to_entities(collection: str, data: Any) -> list:
    """Flatten a keyed map into a list of entities, skipping malformed records."""
    entity_cls = ENTITY_TYPES[collection]
    items = []
    for key, record in _as_map(data).items():
        if not isinstance(record, dict):
            continue
        record = dict(record)
        record.setdefault("id", key)
        try:
            items.append(entity_cls.from_dict(record))
        except (TypeError, ValueError, AttributeError) as e:
            print(f"[WARN] Skipping malformed {collection}/{key}: {e}", file=sys.stderr)
    return items


def iter_sse(lines: Iterable[str]) -> Iterator[Tuple[str, Any]]:
    """Group raw event-stream lines into (event, decoded JSON data) pairs."""
    event: Optional[str] = None
    data_lines: List[str] = []
    for line in lines:
        if line is None:
            continue
        if isinstance(line, bytes):
            line = line.decode("utf-8")
        if line == "":
            if event is not None:
                payload = json.loads("\n".join(data_lines)) if data_lines else None
                yield event, payload
            event, data_lines = None, []
        elif line.startswith(":"):
            continue
        elif line.startswith("event:"):
            event = line[len("event:"):].strip()
        elif line.startswith("data:"):
            data_lines.append(line[len("data:"):].strip())


def apply_event(mirror: Dict[str, Any], event: str, payload: Dict[str, Any]) -> None:
    """Apply one ``put`` or ``patch`` event to the mirrored collection map in place."""
    path = (payload or {}).get("path", "/")
    data = (payload or {}).get("data")
    keys = [k for k in path.split("/") if k]

    if not keys:
        if event == "put":
            mirror.clear()
            mirror.update(_as_map(data))
        else:
            for k, v in _as_map(data).items():
                if v is None:
                    mirror.pop(k, None)
                else:
                    mirror[k] = v
        return

    target = mirror
    for k in keys[:-1]:
        node = target.get(k)
        if not isinstance(node, dict):
            node = _as_map(node)
            target[k] = node
        target = node

    last = keys[-1]
    if event == "put":
        if data is None:
            target.pop(last, None)
        else:
            target[last] = data
        return

    node = target.get(last)
    if not isinstance(node, dict):
        node = _as_map(node)
        target[last] = node
    for k, v in _as_map(data).items():
        if v is None:
            node.pop(k, None)
        else:
            node[k] = v


# ── Store ────────────────────────────────────────────────────────────

class ReplicatedStore(StoragePort):
    """Multi-client storage port; every client sees every other client's writes."""

    name = "replicated"

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        http: Optional[requests.Session] = None,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        retry_seconds: float = STREAM_RETRY_SECONDS,
    ):
        super().__init__()
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.http = http or requests.Session()
        self.timeout = timeout
        self.retry_seconds = retry_seconds
        self._subscriptions: List[Subscription] = []
        self._subs_lock = threading.Lock()

    def _url(self, *parts: str) -> str:
        return f"{self.base_url}/" + "/".join(quote(p, safe="") for p in parts) + ".json"

    def _params(self) -> Optional[Dict[str, str]]:
        return {"auth": self.auth_token} if self.auth_token else None

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            resp = self.http.request(method, url, params=self._params(), timeout=self.timeout, **kwargs)
            resp.raise_for_status()
        except requests.RequestException as e:
            self.connected = False
            raise BackendUnavailableError(f"Replicated store unreachable: {e}") from e
        self.connected = True
        return resp

    # ── Raw primitives ───────────────────────────────────────────────

    def _read(self, collection: str) -> list:
        resp = self._request("GET", self._url(collection))
        try:
            data = resp.json()
        except ValueError as e:
            raise BackendUnavailableError(f"Replicated store sent invalid JSON: {e}") from e
        return to_entities(collection, data)

    def _put(self, collection: str, entity) -> None:
        self._request("PUT", self._url(collection, entity.id), json=entity.to_dict())

    def _patch_status(self, visit_id: str, status: str) -> None:
        self._request("PATCH", self._url(VISITS, visit_id), json={"status": status})

    def _remove(self, collection: str, entity_id: str) -> None:
        self._request("DELETE", self._url(collection, entity_id))

    # ── Subscriptions ────────────────────────────────────────────────

    def subscribe(self, collection: str, callback: Callable[[list], None]) -> Subscription:
        stop = threading.Event()
        holder: Dict[str, Any] = {"response": None}

        def on_cancel():
            stop.set()
            resp = holder["response"]
            if resp is not None:
                resp.close()
            with self._subs_lock:
                if sub in self._subscriptions:
                    self._subscriptions.remove(sub)

        sub = Subscription(collection, on_cancel)
        with self._subs_lock:
            self._subscriptions.append(sub)
        thread = threading.Thread(
            target=self._stream,
            args=(collection, callback, stop, holder),
            name=f"stream-{collection}",
            daemon=True,
        )
        thread.start()
        return sub

    def _stream(self, collection: str, callback, stop: threading.Event, holder: Dict[str, Any]) -> None:
        url = self._url(collection)
        while not stop.is_set():
            try:
                if self._consume(url, collection, callback, stop, holder):
                    return
            except (requests.RequestException, OSError, ValueError) as e:
                if stop.is_set():
                    return
                self.connected = False
                print(f"[WARN] Stream for {collection} dropped: {e}", file=sys.stderr)
            stop.wait(self.retry_seconds)

    def _consume(self, url: str, collection: str, callback, stop: threading.Event, holder: Dict[str, Any]) -> bool:
        """Read one stream connection. Returns True when the stream must not be reopened."""
        mirror: Dict[str, Any] = {}
        with self.http.get(
            url,
            params=self._params(),
            headers={"Accept": "text/event-stream"},
            stream=True,
            timeout=(self.timeout, None),
        ) as resp:
            holder["response"] = resp
            resp.raise_for_status()
            resp.encoding = "utf-8"
            self.connected = True
            for event, payload in iter_sse(resp.iter_lines(decode_unicode=True)):
                if stop.is_set():
                    return True
                if event in ("cancel", "auth_revoked"):
                    print(f"[WARN] Stream for {collection} closed by server ({event})", file=sys.stderr)
                    self.connected = False
                    return True
                if event not in ("put", "patch"):
                    continue
                apply_event(mirror, event, payload)
                callback(to_entities(collection, mirror))
        return stop.is_set()

    def close(self) -> None:
        with self._subs_lock:
            subs = list(self._subscriptions)
        for sub in subs:
            sub.cancel()
        self.http.close()
