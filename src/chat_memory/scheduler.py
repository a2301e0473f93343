"""
Background compression.

Compression calls a summarisation model and can take seconds, so it never
runs on the chat path. The scheduler hands sessions to a small worker pool,
keeps at most one pending job per session, and can sweep every user on a
fixed interval.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from .memory.errors import MemoryEngineError
from .memory.models import MemorySummary
from .memory.store import MemoryStore
from .memory.summarizer import CompressionEngine

logger = logging.getLogger(__name__)


class CompressionScheduler:
    """
    Worker pool for session compression.

    Usage:
        scheduler = CompressionScheduler(compression, store, worker_count=2)
        scheduler.submit_session(session_id)
        scheduler.start()       # optional periodic sweep
        scheduler.shutdown()
    """

    def __init__(
        self,
        compression: CompressionEngine,
        store: MemoryStore,
        worker_count: int = 2,
        interval_seconds: float = 3600.0,
    ):
        self.compression = compression
        self.store = store
        self.interval_seconds = interval_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=worker_count, thread_name_prefix="memory-compress"
        )
        self._pending: dict[str, Future] = {}
        self._guard = threading.RLock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

    def submit_session(self, session_id: str) -> Future:
        """Queue a session. Returns the already-pending job if there is one."""
        with self._guard:
            existing = self._pending.get(session_id)
            if existing is not None and not existing.done():
                return existing
            future = self._executor.submit(self._run_session, session_id)
            self._pending[session_id] = future
            future.add_done_callback(lambda f, sid=session_id: self._forget(sid, f))
            return future

    def submit_user(self, user_id: str) -> list[Future]:
        """Queue every session of a user that compression may touch."""
        include_active = self.compression.config.compress_active_sessions
        return [
            self.submit_session(session.id)
            for session in self.store.list_sessions(user_id)
            if include_active or not session.is_active
        ]

    def sweep(self) -> int:
        """Queue eligible sessions of all users. Returns the number of jobs queued."""
        queued = 0
        for user_id in self.store.list_user_ids():
            queued += len(self.submit_user(user_id))
        logger.debug("Compression sweep queued %d sessions", queued)
        return queued

    def pending_count(self) -> int:
        with self._guard:
            return sum(1 for f in self._pending.values() if not f.done())

    def _run_session(self, session_id: str) -> Optional[MemorySummary]:
        try:
            return self.compression.compress_session(session_id)
        except MemoryEngineError as e:
            logger.warning("Background compression of session %s failed: %s", session_id, e)
            return None

    def _forget(self, session_id: str, future: Future) -> None:
        with self._guard:
            if self._pending.get(session_id) is future:
                del self._pending[session_id]

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.sweep()
            except MemoryEngineError as e:
                logger.warning("Compression sweep failed: %s", e)
            except Exception:
                logger.exception("Compression sweep crashed, retrying next interval")

    def start(self) -> None:
        """Start the periodic sweep thread (idempotent)."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, name="memory-compress-sweep", daemon=True
        )
        self._sweeper.start()
        logger.info("Compression sweep started (every %.0fs)", self.interval_seconds)

    def shutdown(self, wait: bool = True) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None
        self._executor.shutdown(wait=wait)
