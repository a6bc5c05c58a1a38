"""Durable replica adapters.

Two implementations of :class:`~aquasync.core.protocols.ReplicaStore`:

- :class:`FirebaseReplicaStore` speaks the Firebase Realtime Database REST
  protocol over aiohttp. Writes are ``PUT <url>/<path>.json``; observation
  uses the server-sent event stream the database exposes for the same URL.
- :class:`InMemoryReplicaStore` keeps the tree in process. It backs the test
  suite and offline runs.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from ..core.protocols import SnapshotCallback

LOGGER = logging.getLogger(__name__)

STREAM_RETRY_INITIAL_SECONDS = 1.0
STREAM_RETRY_MAX_SECONDS = 30.0


class ReplicaError(RuntimeError):
    """Raised when the replica cannot be reached or rejects a request."""


class ReplicaWriteError(ReplicaError):
    """Raised when a write is not acknowledged by the replica."""


def _split_path(path: str) -> List[str]:
    return [segment for segment in path.strip("/").split("/") if segment]


def read_path(tree: Any, path: str) -> Any:
    node = tree
    for segment in _split_path(path):
        if not isinstance(node, dict) or segment not in node:
            return None
        node = node[segment]
    return node


def apply_at_path(tree: Any, path: str, value: Any) -> Any:
    """Return ``tree`` with ``value`` stored at ``path``; ``None`` deletes."""

    segments = _split_path(path)
    if not segments:
        return value

    root = tree if isinstance(tree, dict) else {}
    node = root
    for segment in segments[:-1]:
        child = node.get(segment)
        if not isinstance(child, dict):
            child = {}
            node[segment] = child
        node = child

    if value is None:
        node.pop(segments[-1], None)
    else:
        node[segments[-1]] = value
    return root


def _paths_overlap(first: str, second: str) -> bool:
    a = _split_path(first)
    b = _split_path(second)
    shortest = min(len(a), len(b))
    return a[:shortest] == b[:shortest]


async def _deliver(callback: SnapshotCallback, value: Any) -> None:
    try:
        result = callback(value)
        if asyncio.iscoroutine(result):
            await result
    except Exception:
        LOGGER.exception("Replica observer callback failed")


@dataclass(eq=False)
class _Observer:
    path: str
    callback: SnapshotCallback
    cancelled: bool = False
    task: Optional[asyncio.Task[None]] = field(default=None, repr=False)
    registry: Optional[List["_Observer"]] = field(default=None, repr=False)

    def cancel(self) -> None:
        self.cancelled = True
        if self.registry is not None and self in self.registry:
            self.registry.remove(self)
        self.registry = None
        if self.task is not None and not self.task.done():
            self.task.cancel()


class InMemoryReplicaStore:
    """Replica tree held in memory."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._root: Any = copy.deepcopy(initial) if initial else {}
        self._observers: List[_Observer] = []
        self.writes: List[tuple[str, Any]] = []

    def read(self, path: str) -> Any:
        return copy.deepcopy(read_path(self._root, path))

    async def write(self, path: str, value: Any) -> None:
        self.writes.append((path, copy.deepcopy(value)))
        self._root = apply_at_path(self._root, path, copy.deepcopy(value))
        for observer in list(self._observers):
            if observer.cancelled or not _paths_overlap(observer.path, path):
                continue
            await _deliver(observer.callback, self.read(observer.path))

    def observe(self, path: str, callback: SnapshotCallback) -> _Observer:
        observer = _Observer(path=path, callback=callback, registry=self._observers)
        self._observers.append(observer)
        loop = asyncio.get_running_loop()
        observer.task = loop.create_task(self._initial_delivery(observer))
        return observer

    async def _initial_delivery(self, observer: _Observer) -> None:
        await asyncio.sleep(0)
        if not observer.cancelled:
            await _deliver(observer.callback, self.read(observer.path))

    async def aclose(self) -> None:
        for observer in list(self._observers):
            observer.cancel()


class FirebaseReplicaStore:
    """Firebase Realtime Database client over the REST streaming API."""

    def __init__(
        self,
        database_url: str,
        *,
        auth_token: Optional[str] = None,
        session: Optional[aiohttp.ClientSession] = None,
        request_timeout: float = 10.0,
        retry_initial: float = STREAM_RETRY_INITIAL_SECONDS,
        retry_max: float = STREAM_RETRY_MAX_SECONDS,
    ) -> None:
        if not database_url:
            raise ReplicaError("Firebase database URL is not configured")
        self._base_url = database_url.rstrip("/")
        self._auth_token = auth_token
        self._session = session
        self._owns_session = session is None
        self._request_timeout = request_timeout
        self._retry_initial = retry_initial
        self._retry_max = max(retry_initial, retry_max)
        self._observers: List[_Observer] = []

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{'/'.join(_split_path(path))}.json"

    def _params(self) -> Dict[str, str]:
        return {"auth": self._auth_token} if self._auth_token else {}

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def write(self, path: str, value: Any) -> None:
        session = self._ensure_session()
        try:
            async with session.put(
                self._url(path),
                json=value,
                params=self._params(),
                timeout=aiohttp.ClientTimeout(total=self._request_timeout),
            ) as response:
                if response.status != 200:
                    detail = await response.text()
                    raise ReplicaWriteError(
                        f"Replica rejected write to {path} ({response.status}): {detail.strip()}"
                    )
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise ReplicaWriteError(f"Replica write to {path} failed: {exc}") from exc

    def observe(self, path: str, callback: SnapshotCallback) -> _Observer:
        observer = _Observer(path=path, callback=callback, registry=self._observers)
        observer.task = asyncio.create_task(self._stream(observer))
        self._observers.append(observer)
        return observer

    async def aclose(self) -> None:
        observers = list(self._observers)
        for observer in observers:
            observer.cancel()
        for observer in observers:
            if observer.task is not None:
                with contextlib.suppress(asyncio.CancelledError):
                    await observer.task
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def _stream(self, observer: _Observer) -> None:
        delay = self._retry_initial
        while not observer.cancelled:
            try:
                keep_open = await self._consume_stream(observer)
                delay = self._retry_initial
                if not keep_open:
                    return
            except (aiohttp.ClientError, asyncio.TimeoutError, ReplicaError) as exc:
                LOGGER.warning(
                    "Replica stream for %s failed: %s, retrying in %.1fs",
                    observer.path,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._retry_max)

    async def _consume_stream(self, observer: _Observer) -> bool:
        """Read one event-stream connection.

        Returns False when the server cancelled the listener for good.
        """

        session = self._ensure_session()
        snapshot: Any = None
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=self._request_timeout)
        async with session.get(
            self._url(observer.path),
            params=self._params(),
            headers={"Accept": "text/event-stream"},
            timeout=timeout,
        ) as response:
            if response.status != 200:
                detail = await response.text()
                raise ReplicaError(
                    f"Replica refused stream for {observer.path} ({response.status}): {detail.strip()}"
                )

            event_name: Optional[str] = None
            data_lines: List[str] = []
            async for raw_line in response.content:
                line = raw_line.decode("utf-8").rstrip("\r\n")
                if line.startswith("event:"):
                    event_name = line[len("event:"):].strip()
                    continue
                if line.startswith("data:"):
                    data_lines.append(line[len("data:"):].strip())
                    continue
                if line or event_name is None:
                    continue

                name, data = event_name, "\n".join(data_lines)
                event_name, data_lines = None, []

                if name in ("put", "patch"):
                    snapshot = self._apply_event(name, data, snapshot)
                    if not observer.cancelled:
                        await _deliver(observer.callback, copy.deepcopy(snapshot))
                elif name == "keep-alive":
                    continue
                elif name == "cancel":
                    LOGGER.error(
                        "Replica cancelled stream for %s: %s", observer.path, data
                    )
                    return False
                elif name == "auth_revoked":
                    raise ReplicaError(f"Replica credentials revoked: {data}")
                else:
                    LOGGER.debug("Ignoring replica event %s", name)

        return True

    @staticmethod
    def _apply_event(name: str, data: str, snapshot: Any) -> Any:
        try:
            message = json.loads(data)
        except json.JSONDecodeError as exc:
            raise ReplicaError(f"Malformed replica event payload: {data!r}") from exc
        if not isinstance(message, dict):
            raise ReplicaError(f"Unexpected replica event payload: {data!r}")

        path = str(message.get("path", "/"))
        value = message.get("data")

        if name == "put":
            return apply_at_path(snapshot, path, value)

        if isinstance(value, dict):
            for key, child in value.items():
                child_path = f"{path.rstrip('/')}/{key}"
                snapshot = apply_at_path(snapshot, child_path, child)
        return snapshot
