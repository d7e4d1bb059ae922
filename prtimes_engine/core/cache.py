"""Lifecycle of the process-wide search snapshot."""

import logging
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from enum import Enum
from typing import Callable, Optional

from prtimes_engine.models import SearchSnapshot

logger = logging.getLogger(__name__)


class SnapshotUnavailableError(RuntimeError):
    """Raised when no snapshot can be served (build failed or timed out)."""


class SnapshotState(str, Enum):
    UNINITIALIZED = "uninitialized"
    BUILDING = "building"
    READY = "ready"


class CacheLifecycleManager:
    """Owns the current ``SearchSnapshot`` and rebuilds it one build at a time.

    ``builder`` produces a complete snapshot; it is only ever invoked by the
    thread that won the single-flight guard. Readers that arrive during a
    first build wait for it; readers that arrive during a refresh keep
    getting the previous snapshot until the new one replaces it.
    """

    def __init__(
        self,
        builder: Callable[[], SearchSnapshot],
        *,
        debounce_seconds: float = 2.0,
        wait_timeout: Optional[float] = 90.0,
    ) -> None:
        self._builder = builder
        self._debounce_seconds = debounce_seconds
        self._wait_timeout = wait_timeout
        self._lock = threading.Lock()
        self._snapshot: Optional[SearchSnapshot] = None
        self._inflight: Optional[Future] = None
        self._timer: Optional[threading.Timer] = None
        self.builds_started = 0

    @property
    def state(self) -> SnapshotState:
        with self._lock:
            if self._inflight is not None:
                return SnapshotState.BUILDING
            if self._snapshot is not None:
                return SnapshotState.READY
            return SnapshotState.UNINITIALIZED

    @property
    def snapshot(self) -> Optional[SearchSnapshot]:
        return self._snapshot

    def ensure_ready(self, timeout: Optional[float] = None) -> SearchSnapshot:
        """Return the current snapshot, building it first if none exists yet."""
        snapshot, _ = self.acquire(timeout)
        return snapshot

    def acquire(self, timeout: Optional[float] = None):
        """Like ``ensure_ready`` but also report whether this call had to wait for a build."""
        with self._lock:
            if self._snapshot is not None:
                return self._snapshot, False
            future, owner = self._claim_build()

        if owner:
            self._run_build(future)
        wait = self._wait_timeout if timeout is None else timeout
        try:
            return future.result(timeout=wait), True
        except FutureTimeoutError as exc:
            raise SnapshotUnavailableError(f"snapshot build did not finish within {wait}s") from exc
        except SnapshotUnavailableError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise SnapshotUnavailableError(f"snapshot build failed: {exc}") from exc

    def refresh(self) -> bool:
        """Rebuild now unless a build is already in flight. Returns True if this call built."""
        with self._lock:
            if self._inflight is not None:
                logger.debug("Snapshot refresh coalesced into in-flight build")
                return False
            future, _ = self._claim_build()
        self._run_build(future)
        return future.exception() is None

    def refresh_in_background(self) -> None:
        """Schedule a refresh after the debounce window; repeated calls share one timer."""
        with self._lock:
            if self._timer is not None:
                return
            timer = threading.Timer(self._debounce_seconds, self._fire_timer)
            timer.daemon = True
            self._timer = timer
        logger.info("Snapshot refresh scheduled in %.1fs", self._debounce_seconds)
        timer.start()

    def close(self) -> None:
        with self._lock:
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def _fire_timer(self) -> None:
        with self._lock:
            self._timer = None
        self.refresh()

    def _claim_build(self):
        # Caller holds self._lock.
        if self._inflight is not None:
            return self._inflight, False
        self._inflight = Future()
        self.builds_started += 1
        return self._inflight, True

    def _run_build(self, future: Future) -> None:
        try:
            snapshot = self._builder()
        except Exception as exc:  # noqa: BLE001
            logger.error("Snapshot build failed: %s", exc)
            with self._lock:
                self._snapshot = None
                self._inflight = None
            future.set_exception(SnapshotUnavailableError(f"snapshot build failed: {exc}"))
            return
        with self._lock:
            self._snapshot = snapshot
            self._inflight = None
        future.set_result(snapshot)
