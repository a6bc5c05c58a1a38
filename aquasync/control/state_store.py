"""Control state held in memory and mirrored to the durable replica."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from dataclasses import replace
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, List, Optional

from .. import constants
from ..core.models import ControlState
from ..core.protocols import ReplicaStore, Subscription

LOGGER = logging.getLogger(__name__)

_UNSET: Any = object()
_PENDING_ECHO_LIMIT = 32


class ChangeOrigin(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


StateListener = Callable[[ControlState, ChangeOrigin], None]


class ControlStateStore:
    """Owns the canonical :class:`ControlState`.

    Every local change is applied in memory first and then written to the
    replica as a whole record. Writes are serialized so the replica always
    ends up holding the latest record, and each write is retried with
    exponential backoff before the store flags itself as out of sync.

    Replica notifications replace the whole record (last writer wins).
    Notifications that merely echo one of our own writes, or that equal the
    current record, are ignored.
    """

    def __init__(
        self,
        replica: ReplicaStore,
        *,
        path: str = constants.CONTROL_STATE_PATH,
        write_attempts: int = 3,
        retry_delay: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._replica = replica
        self._path = path
        self._write_attempts = max(1, write_attempts)
        self._retry_delay = max(0.0, retry_delay)
        self._sleep = sleep

        self._state = ControlState()
        self._listeners: List[StateListener] = []
        self._sync_listeners: List[Callable[[bool], None]] = []
        self._pending_echoes: Deque[ControlState] = deque(maxlen=_PENDING_ECHO_LIMIT)
        self._write_lock = asyncio.Lock()
        self._subscription: Optional[Subscription] = None
        self._loaded = asyncio.Event()
        self._sync_failed = False

    @property
    def path(self) -> str:
        return self._path

    @property
    def sync_failed(self) -> bool:
        return self._sync_failed

    @property
    def loaded(self) -> bool:
        return self._loaded.is_set()

    def get(self) -> ControlState:
        return self._state

    def on_change(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def on_sync_status(self, listener: Callable[[bool], None]) -> None:
        """Register ``listener(in_sync)``, called whenever the sync flag flips."""

        self._sync_listeners.append(listener)

    def on_remote_change(self, listener: Callable[[ControlState], None]) -> None:
        def _filtered(state: ControlState, origin: ChangeOrigin) -> None:
            if origin is ChangeOrigin.REMOTE:
                listener(state)

        self._listeners.append(_filtered)

    async def start(self, timeout: float = 10.0) -> None:
        """Observe the replica and wait for the first snapshot."""

        if self._subscription is None:
            self._subscription = self._replica.observe(self._path, self._on_snapshot)

        try:
            await asyncio.wait_for(self._loaded.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning(
                "No control state received from replica within %.1fs; using %s",
                timeout,
                self._state,
            )

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        # Let an in-flight write finish so the replica keeps the final record.
        async with self._write_lock:
            pass

    async def set(
        self,
        *,
        hour: Any = _UNSET,
        mode: Any = _UNSET,
        time_left: Any = _UNSET,
    ) -> bool:
        """Apply a patch locally, then write the full record to the replica.

        Returns False when the replica write ultimately failed.
        """

        changes = {}
        if hour is not _UNSET:
            changes["hour"] = hour
        if mode is not _UNSET:
            changes["mode"] = mode
        if time_left is not _UNSET:
            if time_left is not None and time_left < 0:
                raise ValueError("time_left cannot be negative")
            changes["time_left"] = time_left

        new_state = replace(self._state, **changes)
        if new_state != self._state:
            self._state = new_state
            self._notify(new_state, ChangeOrigin.LOCAL)

        return await self._write_through()

    def apply_remote(self, record: Any) -> bool:
        """Replace the in-memory record with a replica snapshot.

        Returns True when the state changed.
        """

        if record is None:
            LOGGER.debug("Replica holds no control state at %s", self._path)
            return False

        remote = ControlState.from_record(record)
        if remote in self._pending_echoes:
            while self._pending_echoes:
                if self._pending_echoes.popleft() == remote:
                    break
            return False

        if remote == self._state:
            return False

        LOGGER.info("Control state replaced from replica: %s", remote)
        self._state = remote
        self._notify(remote, ChangeOrigin.REMOTE)
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _on_snapshot(self, record: Any) -> None:
        self.apply_remote(record)
        self._loaded.set()

    def _notify(self, state: ControlState, origin: ChangeOrigin) -> None:
        for listener in list(self._listeners):
            try:
                listener(state, origin)
            except Exception:
                LOGGER.exception("Control state listener failed")

    def _mark_sync(self, in_sync: bool) -> None:
        if self._sync_failed == (not in_sync):
            return
        self._sync_failed = not in_sync
        for listener in list(self._sync_listeners):
            try:
                listener(in_sync)
            except Exception:
                LOGGER.exception("Control sync listener failed")

    async def _write_through(self) -> bool:
        async with self._write_lock:
            delay = self._retry_delay
            for attempt in range(1, self._write_attempts + 1):
                state = self._state
                self._pending_echoes.append(state)
                try:
                    await self._replica.write(self._path, state.as_record())
                except Exception as exc:
                    with contextlib.suppress(ValueError):
                        self._pending_echoes.remove(state)
                    if attempt >= self._write_attempts:
                        if not self._sync_failed:
                            LOGGER.error(
                                "Control state write failed after %d attempts: %s",
                                attempt,
                                exc,
                            )
                        self._mark_sync(False)
                        return False
                    LOGGER.warning(
                        "Control state write attempt %d failed: %s, retrying in %.1fs",
                        attempt,
                        exc,
                        delay,
                    )
                    await self._sleep(delay)
                    delay *= 2
                    continue

                if self._sync_failed:
                    LOGGER.info("Control state replica back in sync")
                self._mark_sync(True)
                return True
        return False
